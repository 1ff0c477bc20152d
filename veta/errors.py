class VetaError(Exception):
    """Base class for note store errors that map onto a client-visible response."""


class ValidationError(VetaError):
    """Rejected input: blank title, malformed pattern and the like. Nothing was written."""


class NotFoundError(VetaError):
    """The requested note does not exist."""

    def __init__(self, note_id: int):
        super().__init__(f"note {note_id} not found")
        self.note_id = note_id
