"""
Note store business logic.

``NoteService`` wraps one SQLAlchemy session. The API builds a fresh service per
request from the ``get_db`` dependency, so nothing here keeps state between
requests. Every mutation commits (or rolls back) before returning.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import delete, exists, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from veta.errors import NotFoundError, ValidationError
from veta.models import Note, Tag, note_tags, utcnow
from veta.schemas import DeleteResult, NoteOut, NoteSummary, NoteUpdate, TagCount

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 140


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Trim and lower-case tag names, dropping blanks and duplicates. Result is sorted."""
    return sorted({t.strip().lower() for t in tags or [] if t and t.strip()})


def normalize_references(references: Optional[Iterable[str]]) -> List[str]:
    """Trim references and drop blanks and repeats, keeping first-seen order."""
    seen: List[str] = []
    for ref in references or []:
        ref = (ref or "").strip()
        if ref and ref not in seen:
            seen.append(ref)
    return seen


def parse_tag_filter(raw: Optional[str]) -> Optional[List[str]]:
    """Turn a comma-joined ``tags`` query value into a normalized list, or None when empty."""
    if raw is None:
        return None
    tags = normalize_tags(raw.split(","))
    return tags or None


def body_preview(body: str, max_len: int = PREVIEW_LENGTH) -> str:
    flattened = body.replace("\r", " ").replace("\n", " ").strip()
    if len(flattened) > max_len:
        return flattened[:max_len] + "..."
    return flattened


def _as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_summary(note: Note) -> NoteSummary:
    return NoteSummary(
        id=note.id,
        title=note.title,
        body_preview=body_preview(note.body),
        tags=note.tag_names,
        updated_at=note.updated_at,
    )


def to_out(note: Note) -> NoteOut:
    return NoteOut(
        id=note.id,
        title=note.title,
        body=note.body,
        tags=note.tag_names,
        references=note.references,
        created_at=note.created_at,
        updated_at=note.updated_at,
    )


class NoteService:
    """Note lifecycle operations over a single database session."""

    def __init__(self, db: Session):
        self.db = db

    def _find_tag(self, name: str) -> Optional[Tag]:
        return self.db.execute(select(Tag).where(Tag.name == name)).scalar_one_or_none()

    def _get_or_create_tag(self, name: str) -> Tag:
        tag = self._find_tag(name)
        if tag is not None:
            return tag
        try:
            with self.db.begin_nested():
                tag = Tag(name=name)
                self.db.add(tag)
        except IntegrityError:
            # Another request created the same name between our read and insert.
            logger.info("Tag %r created concurrently, reusing existing row", name)
            tag = self._find_tag(name)
            if tag is None:
                raise
        return tag

    def _resolve_tags(self, names: Sequence[str]) -> List[Tag]:
        return [self._get_or_create_tag(name) for name in names]

    @staticmethod
    def _filters(
        tags: Optional[Sequence[str]] = None,
        updated_from: Optional[datetime] = None,
        updated_to: Optional[datetime] = None,
    ) -> list:
        conditions = []
        tags = normalize_tags(tags)
        if tags:
            # A note qualifies only when it carries every requested tag.
            tagged = (
                select(note_tags.c.note_id)
                .join(Tag, Tag.id == note_tags.c.tag_id)
                .where(Tag.name.in_(tags))
                .group_by(note_tags.c.note_id)
                .having(func.count(Tag.id) == len(tags))
            )
            conditions.append(Note.id.in_(tagged))
        if updated_from is not None:
            conditions.append(Note.updated_at >= _as_naive_utc(updated_from))
        if updated_to is not None:
            conditions.append(Note.updated_at <= _as_naive_utc(updated_to))
        return conditions

    def create_note(
        self,
        title: str,
        body: str,
        tags: Optional[Iterable[str]] = None,
        references: Optional[Iterable[str]] = None,
    ) -> int:
        """Insert a note with its tags and references and return the new id."""
        title = (title or "").strip()
        if not title:
            raise ValidationError("title cannot be empty")
        if body is None:
            raise ValidationError("body is required")

        now = utcnow()
        note = Note(title=title, body=body, created_at=now, updated_at=now)
        note.references = normalize_references(references)
        try:
            self.db.add(note)
            self.db.flush()
            note.tags = self._resolve_tags(normalize_tags(tags))
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        logger.info("Created note id=%s title_len=%s tags=%s", note.id, len(title), note.tag_names)
        return note.id

    def get_note(self, note_id: int) -> NoteOut:
        note = self.db.get(Note, note_id)
        if note is None:
            raise NotFoundError(note_id)
        return to_out(note)

    def list_notes(
        self,
        tags: Optional[Sequence[str]] = None,
        updated_from: Optional[datetime] = None,
        updated_to: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[NoteSummary]:
        """Summaries of matching notes, most recently updated first. A limit of 0 or None means no limit."""
        if limit is not None and limit < 0:
            raise ValidationError("limit must not be negative")
        stmt = (
            select(Note)
            .options(selectinload(Note.tags))
            .where(*self._filters(tags, updated_from, updated_to))
            .order_by(Note.updated_at.desc(), Note.id.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        return [to_summary(note) for note in self.db.execute(stmt).scalars()]

    def count_notes(
        self,
        tags: Optional[Sequence[str]] = None,
        updated_from: Optional[datetime] = None,
        updated_to: Optional[datetime] = None,
    ) -> int:
        stmt = select(func.count(Note.id)).where(*self._filters(tags, updated_from, updated_to))
        return int(self.db.execute(stmt).scalar_one())

    def update_note(self, note_id: int, update: NoteUpdate) -> None:
        """Replace the provided fields of a note and refresh its updated_at."""
        title = update.title.strip() if update.title is not None else None
        if title is not None and not title:
            raise ValidationError("title cannot be empty")

        note = self.db.get(Note, note_id)
        if note is None:
            raise NotFoundError(note_id)

        try:
            if title is not None:
                note.title = title
            if update.body is not None:
                note.body = update.body
            if update.references is not None:
                note.references = normalize_references(update.references)
            if update.tags is not None:
                note.tags = self._resolve_tags(normalize_tags(update.tags))
            note.touch()
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        logger.info("Updated note id=%s", note_id)

    def delete_note(self, note_id: int) -> bool:
        """Delete a note and its tag links. Returns False when the id is unknown; tags stay."""
        note = self.db.get(Note, note_id)
        if note is None:
            return False
        try:
            self.db.delete(note)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        logger.info("Deleted note id=%s", note_id)
        return True

    def delete_notes(self, note_ids: Iterable[int]) -> List[DeleteResult]:
        """
        Delete several notes, each in its own transaction.

        A failure on one id is logged and reported as ``ok=False`` for that id only.
        """
        results = []
        for note_id in note_ids:
            try:
                ok = self.delete_note(note_id)
            except SQLAlchemyError:
                logger.exception("Failed deleting note id=%s", note_id)
                ok = False
            results.append(DeleteResult(id=note_id, ok=ok))
        return results

    def list_tags(self) -> List[TagCount]:
        """Every tag with its number of notes, by name. Orphans are included with count 0."""
        stmt = (
            select(Tag.name, func.count(note_tags.c.note_id))
            .outerjoin(note_tags, Tag.id == note_tags.c.tag_id)
            .group_by(Tag.id, Tag.name)
            .order_by(Tag.name)
        )
        return [TagCount(name=name, count=count) for name, count in self.db.execute(stmt)]

    def prune_orphan_tags(self) -> List[str]:
        """Remove tags no note refers to and return their names."""
        orphan = ~exists().where(note_tags.c.tag_id == Tag.id)
        try:
            names = list(self.db.execute(select(Tag.name).where(orphan).order_by(Tag.name)).scalars())
            if names:
                self.db.execute(delete(Tag).where(Tag.name.in_(names)))
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        logger.info("Pruned %s orphan tag(s)", len(names))
        return names

    def grep(
        self,
        pattern: str,
        tags: Optional[Sequence[str]] = None,
        case_sensitive: bool = False,
    ) -> List[NoteSummary]:
        """Notes whose title or body matches the regular expression, in id order."""
        try:
            regex = re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
        except re.error as exc:
            raise ValidationError(f"invalid regex: {exc}") from exc

        stmt = (
            select(Note)
            .options(selectinload(Note.tags))
            .where(*self._filters(tags))
            .order_by(Note.id)
        )
        return [
            to_summary(note)
            for note in self.db.execute(stmt).scalars()
            if regex.search(note.title) or regex.search(note.body)
        ]
