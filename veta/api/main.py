import logging
import os
from datetime import datetime
from typing import Any, Dict, List

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from veta.db import engine, get_db
from veta.errors import NotFoundError, ValidationError
from veta.migrations import run_migrations
from veta.schemas import (
    CountOut,
    DeleteResult,
    IdOut,
    MigrateOut,
    NoteCreate,
    NoteOut,
    NoteSummary,
    NoteUpdate,
    OkOut,
    PruneOut,
    TagCount,
)
from veta.service import NoteService, parse_tag_filter

logging.basicConfig(
    level=getattr(logging, (os.getenv("VETA_LOG_LEVEL") or "INFO").upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "Health", "description": "Service health and readiness endpoints."},
    {"name": "Notes", "description": "Create, read, update, delete and search notes."},
    {"name": "Tags", "description": "Tag vocabulary and maintenance."},
    {"name": "Maintenance", "description": "Schema migrations."},
]

app = FastAPI(
    title="Veta API",
    description="Note store for agents: titled, tagged notes with references and regex search.",
    version="0.2.0",
    openapi_tags=openapi_tags,
)


def _parse_allowed_origins() -> List[str]:
    """
    Parse comma-separated ALLOWED_ORIGINS from env.

    Falls back to localhost dev origins when not set.
    """
    raw = (os.getenv("ALLOWED_ORIGINS") or "").strip()
    if not raw:
        return ["http://localhost:3000", "http://127.0.0.1:3000"]

    origins = [o.strip() for o in raw.split(",")]
    return [o for o in origins if o]


def _parse_allowed_origin_regex() -> str | None:
    """Return ALLOWED_ORIGIN_REGEX from env, or None to rely on the explicit origin list."""
    raw = (os.getenv("ALLOWED_ORIGIN_REGEX") or "").strip()
    return raw or None


app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_allowed_origins(),
    allow_origin_regex=_parse_allowed_origin_regex(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ValidationError)
async def _validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def _not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "Note not found"})


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed bodies and query strings as 400 with a readable message."""
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "; ".join(problems) or "Invalid request"},
    )


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Return JSON for unexpected errors.

    Store failures end up here; they are logged and reported as a 500 without retrying.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal Server Error"},
    )


@app.on_event("startup")
def _startup_run_migrations() -> None:
    """
    Bring the schema up to date.

    Important: do NOT fail application startup if the DB is unavailable/misconfigured.
    The service should still bind to its port and expose /health/db to report readiness.
    """
    try:
        run_migrations(engine)
    except Exception:
        logger.exception("Database migration failed during startup.")


# PUBLIC_INTERFACE
def get_service(db: Session = Depends(get_db)) -> NoteService:
    """FastAPI dependency giving each request its own NoteService over its own session."""
    return NoteService(db)


def _parse_ids(raw: str) -> List[int]:
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="ids must be comma-separated integers")


# PUBLIC_INTERFACE
@app.get("/", tags=["Health"], summary="Health check", description="Returns a simple health payload.")
def health_check() -> Dict[str, str]:
    """Health check endpoint used by previews/monitoring."""
    return {"message": "Veta API"}


# PUBLIC_INTERFACE
@app.get(
    "/health/db",
    tags=["Health"],
    summary="Database health check",
    description=(
        "Verifies database connectivity by running a lightweight read-only query (SELECT 1). "
        "Returns status=up when the query succeeds, otherwise status=down with error details."
    ),
)
def health_check_db(db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Database readiness endpoint used to verify DB connectivity."""
    try:
        value = db.execute(text("SELECT 1")).scalar_one()
        return {"status": "up", "query": "SELECT 1", "result": int(value)}
    except Exception as exc:
        return {"status": "down", "error": str(exc)}


# PUBLIC_INTERFACE
@app.post(
    "/notes",
    response_model=IdOut,
    status_code=status.HTTP_201_CREATED,
    tags=["Notes"],
    summary="Create note",
    description="Create a note with a title, body, tags and optional references. Unknown tags are created.",
)
def create_note(payload: NoteCreate, service: NoteService = Depends(get_service)) -> IdOut:
    """Create a note."""
    logger.info("Creating note title_len=%s body_len=%s", len(payload.title), len(payload.body))
    note_id = service.create_note(payload.title, payload.body, payload.tags, payload.references)
    return IdOut(id=note_id)


# PUBLIC_INTERFACE
@app.get(
    "/notes",
    response_model=List[NoteSummary],
    tags=["Notes"],
    summary="List notes",
    description=(
        "Return note summaries, most recently updated first. `tags` is comma-joined and a note must "
        "carry all of them. `from`/`to` bound updated_at; `limit` of 0 or absent means no limit."
    ),
)
def list_notes(
    tags: str | None = Query(None, description="Comma-separated tag names; all must match."),
    updated_from: datetime | None = Query(None, alias="from"),
    updated_to: datetime | None = Query(None, alias="to"),
    limit: int | None = Query(None, ge=0),
    service: NoteService = Depends(get_service),
) -> List[NoteSummary]:
    """List notes."""
    return service.list_notes(parse_tag_filter(tags), updated_from, updated_to, limit)


# PUBLIC_INTERFACE
@app.get(
    "/notes/count",
    response_model=CountOut,
    tags=["Notes"],
    summary="Count notes",
    description="Count notes matching the same filters as the listing, ignoring limit.",
)
def count_notes(
    tags: str | None = Query(None),
    updated_from: datetime | None = Query(None, alias="from"),
    updated_to: datetime | None = Query(None, alias="to"),
    service: NoteService = Depends(get_service),
) -> CountOut:
    """Count notes."""
    return CountOut(count=service.count_notes(parse_tag_filter(tags), updated_from, updated_to))


# PUBLIC_INTERFACE
@app.delete(
    "/notes",
    response_model=List[DeleteResult],
    tags=["Notes"],
    summary="Delete several notes",
    description="Delete each listed id independently and report the outcome per id, in request order.",
)
def delete_notes(
    ids: str = Query(..., description="Comma-separated note ids."),
    service: NoteService = Depends(get_service),
) -> List[DeleteResult]:
    """Bulk delete."""
    return service.delete_notes(_parse_ids(ids))


# PUBLIC_INTERFACE
@app.get(
    "/notes/{note_id}",
    response_model=NoteOut,
    tags=["Notes"],
    summary="Get note",
    description="Fetch a single note by ID, including tags and references.",
)
def get_note(note_id: int, service: NoteService = Depends(get_service)) -> NoteOut:
    """Get a note by id."""
    return service.get_note(note_id)


# PUBLIC_INTERFACE
@app.patch(
    "/notes/{note_id}",
    response_model=OkOut,
    tags=["Notes"],
    summary="Update note",
    description="Replace any of title, body, tags and references. Omitted fields remain unchanged.",
)
def update_note(note_id: int, payload: NoteUpdate, service: NoteService = Depends(get_service)) -> OkOut:
    """Update a note by id."""
    service.update_note(note_id, payload)
    return OkOut()


# PUBLIC_INTERFACE
@app.delete(
    "/notes/{note_id}",
    response_model=OkOut,
    tags=["Notes"],
    summary="Delete note",
    description="Delete a note by ID. Its tags are kept even when no other note uses them.",
)
def delete_note(note_id: int, service: NoteService = Depends(get_service)) -> OkOut:
    """Delete a note by id."""
    if not service.delete_note(note_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Note not found")
    return OkOut()


# PUBLIC_INTERFACE
@app.get(
    "/grep",
    response_model=List[NoteSummary],
    tags=["Notes"],
    summary="Search notes",
    description=(
        "Match a regular expression against note titles and bodies, optionally restricted to notes "
        "carrying all of `tags`. Case-insensitive unless case_sensitive is set. Results are in id order."
    ),
)
def grep_notes(
    q: str = Query("", description="Regular expression; empty matches every note."),
    tags: str | None = Query(None),
    case_sensitive: bool = Query(False),
    service: NoteService = Depends(get_service),
) -> List[NoteSummary]:
    """Search notes."""
    return service.grep(q, parse_tag_filter(tags), case_sensitive)


# PUBLIC_INTERFACE
@app.get(
    "/tags",
    response_model=List[TagCount],
    tags=["Tags"],
    summary="List tags",
    description="Every tag with the number of notes using it, ordered by name. Unused tags report 0.",
)
def list_tags(service: NoteService = Depends(get_service)) -> List[TagCount]:
    """List tags."""
    return service.list_tags()


# PUBLIC_INTERFACE
@app.post(
    "/tags/prune",
    response_model=PruneOut,
    tags=["Tags"],
    summary="Prune unused tags",
    description="Delete tags no note refers to and return their names.",
)
def prune_tags(service: NoteService = Depends(get_service)) -> PruneOut:
    """Remove orphan tags."""
    return PruneOut(removed=service.prune_orphan_tags())


# PUBLIC_INTERFACE
@app.post(
    "/migrate",
    response_model=MigrateOut,
    tags=["Maintenance"],
    summary="Run migrations",
    description="Apply pending schema migrations and report the resulting schema version.",
)
def migrate(db: Session = Depends(get_db)) -> MigrateOut:
    """Run pending migrations."""
    return MigrateOut(version=run_migrations(db.get_bind()))
