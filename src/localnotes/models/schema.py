"""Data models for the localnotes store.

Records serialize with camelCase aliases so the persisted index keeps the
layout the notes UI reads (``createdAt``, ``linksTo``, ...).
"""

import datetime
import re
import uuid
from datetime import timezone
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from localnotes.exceptions import InvalidPathError
from localnotes.storage.paths import validate_segment

# Tags are lowercase slugs
TAG_PATTERN = re.compile(r"^[a-z0-9_-]+$")

DAILY_TAG = "daily"
NOTE_FILE_SUFFIX = ".txt"


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC."""
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def monotonic_now(previous: Optional[datetime.datetime]) -> datetime.datetime:
    """Current UTC time, never earlier than ``previous``.

    Keeps updatedAt non-decreasing even if the wall clock steps back.
    """
    now = utc_now()
    if previous is not None and ensure_timezone_aware(previous) > now:
        return ensure_timezone_aware(previous)
    return now


def generate_id() -> str:
    """Generate an opaque, unique record id."""
    return str(uuid.uuid4())


def note_filename(note_id: str) -> str:
    """Content filename of a note; a pure function of its id."""
    return f"{note_id}{NOTE_FILE_SUFFIX}"


def _normalize_tag_list(tags) -> List[str]:
    tags = list(tags)
    for tag in tags:
        if not isinstance(tag, str) or not TAG_PATTERN.match(tag):
            raise ValueError(f"Invalid tag: {tag!r}")
    return sorted(set(tags))


def _check_segment(value: str, field_name: str) -> str:
    try:
        return validate_segment(value, field_name)
    except InvalidPathError as e:
        raise ValueError(e.message) from None


class _Record(BaseModel):
    """Base for persisted records: camelCase on disk, snake_case in code."""

    model_config = {"populate_by_name": True, "extra": "ignore"}

    def to_dict(self) -> dict:
        """JSON-compatible dict using the on-disk field names."""
        return self.model_dump(mode="json", by_alias=True)


class ImageRef(_Record):
    """An attachment stored under the note's image directory."""

    name: str = Field(..., description="Display name")
    path: str = Field(..., description="Store-relative path images/<noteId>/<file>")
    added_at: datetime.datetime = Field(default_factory=utc_now, alias="addedAt")
    size: Optional[int] = Field(default=None, description="Size in bytes, if known")


class NoteMeta(_Record):
    """Index record of a note. The body lives in notes/<id>.txt."""

    id: str = Field(default_factory=generate_id)
    title: str = Field(default="")
    created_at: datetime.datetime = Field(default_factory=utc_now, alias="createdAt")
    updated_at: datetime.datetime = Field(default_factory=utc_now, alias="updatedAt")
    important: bool = False
    filename: str = Field(default="")
    images: List[ImageRef] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    links_to: List[str] = Field(default_factory=list, alias="linksTo")
    is_daily: bool = Field(default=False, alias="isDaily")
    notebook_id: Optional[str] = Field(default=None, alias="notebookId")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate that the ID is safe for filesystem use."""
        return _check_segment(v, "Note ID")

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: List[str]) -> List[str]:
        """Tags are unique lowercase slugs, kept sorted."""
        return _normalize_tag_list(v)

    @field_validator("links_to")
    @classmethod
    def validate_links(cls, v: List[str]) -> List[str]:
        return sorted(set(v))

    @model_validator(mode="after")
    def _derive_fields(self) -> "NoteMeta":
        self.created_at = ensure_timezone_aware(self.created_at)
        self.updated_at = ensure_timezone_aware(self.updated_at)
        if self.updated_at < self.created_at:
            self.updated_at = self.created_at
        self.filename = note_filename(self.id)
        if self.id in self.links_to:
            self.links_to = [i for i in self.links_to if i != self.id]
        return self

    def set_tags(self, tags) -> None:
        """Replace the tag set, keeping it sorted and unique."""
        self.tags = _normalize_tag_list(tags)

    def set_links(self, note_ids) -> None:
        """Replace the resolved outgoing links (self-links dropped)."""
        self.links_to = sorted({i for i in note_ids if i != self.id})

    def touch(self) -> None:
        """Bump updatedAt without letting it move backwards."""
        self.updated_at = monotonic_now(self.updated_at)


class Notebook(_Record):
    """A user-defined grouping of notes; archived instead of deleted."""

    id: str = Field(default_factory=generate_id)
    name: str
    archived: bool = False
    created_at: datetime.datetime = Field(default_factory=utc_now, alias="createdAt")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return _check_segment(v, "Notebook ID")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate that the name is not empty."""
        if not v.strip():
            raise ValueError("Notebook name cannot be empty")
        return v.strip()


class NoteTemplate(_Record):
    """A note template; built-ins live in code, custom ones in the index."""

    id: str
    name: str
    body: str
    default_title_pattern: Optional[str] = Field(
        default=None, alias="defaultTitlePattern"
    )
    is_custom: bool = Field(default=False, alias="isCustom")


class VersionSnapshot(_Record):
    """A full (title, body) copy of a note at a point in time."""

    saved_at: datetime.datetime = Field(..., alias="savedAt")
    title: str
    body: str

    @property
    def key(self) -> str:
        """The identity used to address the snapshot."""
        return format_timestamp(self.saved_at)


class VersionItem(_Record):
    """A snapshot as listed in the edit timeline, with a body preview."""

    saved_at: str = Field(..., alias="savedAt")
    title: str
    body_preview: str = Field(..., alias="bodyPreview")


class NoteContent(_Record):
    """A note's metadata together with its body."""

    meta: NoteMeta
    body: str


class IndexFile(_Record):
    """The whole metadata index as persisted in meta/index.json."""

    notes: List[NoteMeta] = Field(default_factory=list)
    notebooks: List[Notebook] = Field(default_factory=list)
    templates: List[NoteTemplate] = Field(default_factory=list)
    sync_folder: Optional[str] = Field(default=None, alias="syncFolder")

    def find_note(self, note_id: str) -> Optional[NoteMeta]:
        return next((n for n in self.notes if n.id == note_id), None)

    def find_notebook(self, notebook_id: str) -> Optional[Notebook]:
        return next((nb for nb in self.notebooks if nb.id == notebook_id), None)

    def find_template(self, template_id: str) -> Optional[NoteTemplate]:
        return next((t for t in self.templates if t.id == template_id), None)


def format_timestamp(value: datetime.datetime) -> str:
    """Render a timestamp the way it is stored: ISO 8601 UTC, microseconds."""
    value = ensure_timezone_aware(value).astimezone(timezone.utc)
    return value.isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime.datetime:
    """Parse a stored timestamp (accepts a trailing 'Z')."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_timezone_aware(datetime.datetime.fromisoformat(value))
