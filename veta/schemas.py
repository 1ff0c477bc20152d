from datetime import datetime
from typing import List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NoteCreate(BaseModel):
    """Schema for creating a note."""
    title: str = Field(..., description="Note title; must not be blank.")
    body: str = Field(..., description="Note content; may be an empty string.")
    tags: List[str] = Field(default_factory=list, description="Tag names attached to the note.")
    references: List[str] = Field(
        default_factory=list,
        description="Pointers to external material (source paths, URLs, documentation links).",
    )

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title cannot be empty")
        return value


class NoteUpdate(BaseModel):
    """Schema for updating a note (partial update)."""
    title: str | None = Field(None, description="Replacement title; must not be blank.")
    body: str | None = Field(None, description="Replacement body.")
    tags: List[str] | None = Field(None, description="Replacement tag set.")
    references: List[str] | None = Field(None, description="Replacement references.")


class NoteOut(BaseModel):
    """Schema returned for a single note."""
    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="Database ID of the note.")
    title: str
    body: str
    tags: List[str] = Field(default_factory=list)
    references: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class NoteSummary(BaseModel):
    """A note as shown in listings and search results, with a truncated body."""
    id: int
    title: str
    body_preview: str
    tags: List[str] = Field(default_factory=list)
    updated_at: datetime


class TagCount(BaseModel):
    name: str
    count: int


class IdOut(BaseModel):
    id: int


class OkOut(BaseModel):
    ok: bool = True


class CountOut(BaseModel):
    count: int


class DeleteResult(BaseModel):
    """Outcome of deleting one id within a bulk request."""
    id: int
    ok: bool


class PruneOut(BaseModel):
    removed: List[str] = Field(default_factory=list)


class MigrateOut(BaseModel):
    ok: bool = True
    version: int
