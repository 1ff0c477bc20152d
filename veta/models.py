import json
import logging
from datetime import datetime, timezone
from typing import List

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Table, Text
from sqlalchemy.orm import relationship

from veta.db import Base

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current time as naive UTC, the representation stored in timestamp columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


note_tags = Table(
    "note_tags",
    Base.metadata,
    Column("note_id", Integer, ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
    Index("idx_note_tags_tag_id", "tag_id"),
)


class Note(Base):
    """SQLAlchemy model representing a note."""
    __tablename__ = "notes"
    __table_args__ = (Index("idx_notes_updated_at", "updated_at"), {"sqlite_autoincrement": True})

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(Text, nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    references_json = Column("references", Text, nullable=False, default="[]", server_default="[]")

    tags = relationship(
        "Tag",
        secondary=note_tags,
        back_populates="notes",
        order_by="Tag.name",
        passive_deletes=True,
    )

    @property
    def references(self) -> List[str]:
        try:
            value = json.loads(self.references_json or "[]")
        except ValueError:
            logger.warning("Note %s has unreadable references %r", self.id, self.references_json)
            return []
        return [str(item) for item in value] if isinstance(value, list) else []

    @references.setter
    def references(self, value: List[str]) -> None:
        self.references_json = json.dumps(list(value))

    @property
    def tag_names(self) -> List[str]:
        return sorted(tag.name for tag in self.tags)

    def touch(self) -> None:
        self.updated_at = max(utcnow(), self.created_at or utcnow())


class Tag(Base):
    """A deduplicated label; name uniqueness is enforced by the database."""
    __tablename__ = "tags"
    __table_args__ = (Index("idx_tags_name", "name"), {"sqlite_autoincrement": True})

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False, unique=True)

    notes = relationship("Note", secondary=note_tags, back_populates="tags", passive_deletes=True)
