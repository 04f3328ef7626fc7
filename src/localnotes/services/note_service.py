"""Store handle and command surface of the localnotes store.

``NoteService`` owns one store root: the metadata index, the content,
version and attachment stores, search and backup. Every command validates
its input, writes the filesystem half first and commits the metadata half
in one index transaction afterwards.

Locking: one reentrant lock per note id serializes content and metadata
changes of the same note; the index lock serializes all index writes. When
both are needed the note lock is always taken first.
"""
import base64
import binascii
import datetime
import logging
import threading
import uuid
import weakref
from contextlib import ExitStack
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from localnotes.backup import BackupManager
from localnotes.config import config
from localnotes.exceptions import (
    ErrorCode,
    InvalidPathError,
    NotFoundError,
    NoteNotFoundError,
    StorageError,
    ValidationError,
)
from localnotes.models.schema import (
    IndexFile,
    NoteContent,
    NoteMeta,
    Notebook,
    NoteTemplate,
    VersionItem,
    VersionSnapshot,
    generate_id,
)
from localnotes.observability import traced
from localnotes.services.link_resolver import (
    backlinks,
    derive_tags,
    extract_link_titles,
    normalize_tag,
    resolve_links,
    retract_links,
    title_tag,
)
from localnotes.services.search_service import SearchService, sort_notes
from localnotes.storage.attachment_store import AttachmentStore
from localnotes.storage.content_store import NoteContentStore
from localnotes.storage.index_store import MetadataIndex
from localnotes.storage.markdown_export import MarkdownExporter
from localnotes.storage.paths import is_within, validate_segment
from localnotes.storage.version_archive import VersionArchive

logger = logging.getLogger(__name__)

CUSTOM_TEMPLATE_PREFIX = "custom-"
UNTITLED = "Untitled"

BUILTIN_TEMPLATES = (
    NoteTemplate(
        id="daily-journal",
        name="Daily journal",
        body=(
            "# Daily Journal — {{date}}\n\n## What happened today\n- \n\n"
            "## Thoughts & reflections\n- \n\n## Tomorrow\n- \n"
        ),
        default_title_pattern="Journal {{date}}",
    ),
    NoteTemplate(
        id="meeting-notes",
        name="Meeting notes",
        body=(
            "# Meeting: {{title}}\n\n**Date:** {{date}}\n**Attendees:** \n"
            "**Agenda:**\n- \n\n**Notes:**\n- \n\n**Action items:**\n- [ ] \n- [ ] \n"
        ),
        default_title_pattern="Meeting {{date}}",
    ),
    NoteTemplate(
        id="project-planning",
        name="Project planning",
        body=(
            "# Project: {{title}}\n\n## Overview\n- **Goal:** \n- **Timeline:** \n\n"
            "## Tasks\n- [ ] \n- [ ] \n\n## Notes\n- \n"
        ),
        default_title_pattern="Project",
    ),
)


def local_today() -> datetime.date:
    """The current calendar date in the local timezone."""
    return datetime.datetime.now().astimezone().date()


def apply_placeholders(text: str, title: str, date: str) -> str:
    """Replace ``{{date}}`` and ``{{title}}`` in template text."""
    return text.replace("{{date}}", date).replace("{{title}}", title)


class NoteService:
    """Explicit handle on one note store.

    Commands take this handle as their dependency instead of reaching for
    module-level state, so several stores can be open side by side (tests
    do exactly that).
    """

    NOTES_DIR = "notes"
    VERSIONS_DIR = "versions"
    META_DIR = "meta"
    IMAGES_DIR = "images"

    def __init__(
        self,
        store_root: Optional[Union[str, Path]] = None,
        max_versions: Optional[int] = None,
    ):
        """Open (and initialize if needed) a store.

        Args:
            store_root: Root directory. Defaults to config.store_dir.
            max_versions: Snapshot cap per note. Defaults to config.max_versions.
        """
        if store_root is not None:
            self.root = Path(store_root).expanduser().resolve()
        else:
            self.root = config.get_store_dir().resolve()
        self.index = MetadataIndex(self.root / self.META_DIR)
        self.content = NoteContentStore(self.root / self.NOTES_DIR)
        self.versions = VersionArchive(
            self.root / self.VERSIONS_DIR, max_versions=max_versions
        )
        self.attachments = AttachmentStore(self.root)
        self.searcher = SearchService(self.index, self.content)
        self.backups = BackupManager(self.root, self.index)
        self.exporter = MarkdownExporter()

        # Per-note locks, garbage collected once no caller holds them
        self._note_locks: weakref.WeakValueDictionary[str, threading.RLock] = (
            weakref.WeakValueDictionary()
        )
        self._note_locks_lock = threading.Lock()
        self._daily_lock = threading.Lock()

        self.init_store()

    # =========================================================================
    # Store lifecycle
    # =========================================================================

    def init_store(self) -> Dict[str, Any]:
        """Create the store layout and load the index.

        A corrupt index does not fail initialization: it is moved aside and
        the store starts empty, with the problem reported as a warning.

        Returns:
            Store root, note count and a warning if recovery happened
        """
        for name in (self.NOTES_DIR, self.VERSIONS_DIR, self.META_DIR, self.IMAGES_DIR):
            try:
                (self.root / name).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(
                    f"Failed to create store directory {name}",
                    operation="init_store",
                    path=str(self.root / name),
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e
        loaded = self.index.load()
        self.index.ensure_file()
        warning = self.index.last_load_error
        logger.info(f"Opened store at {self.root} ({len(loaded.notes)} notes)")
        return {
            "root": str(self.root),
            "notes": len(loaded.notes),
            "warning": warning.message if warning else None,
        }

    def _get_note_lock(self, note_id: str) -> threading.RLock:
        """Get or create the lock for a specific note."""
        with self._note_locks_lock:
            lock = self._note_locks.get(note_id)
            if lock is None:
                lock = threading.RLock()
                self._note_locks[note_id] = lock
            return lock

    @staticmethod
    def _require_note(idx: IndexFile, note_id: str) -> NoteMeta:
        note = idx.find_note(note_id)
        if note is None:
            raise NoteNotFoundError(note_id)
        return note

    # =========================================================================
    # Listing and reading
    # =========================================================================

    def list_notes(self) -> List[NoteMeta]:
        """All notes, most recently updated first."""
        return sort_notes(self.index.list_notes())

    def list_notebooks(self) -> List[Notebook]:
        """Active notebooks first, then archived ones, each by creation time."""
        notebooks = sorted(self.index.list_notebooks(), key=lambda nb: nb.created_at)
        return [nb for nb in notebooks if not nb.archived] + [
            nb for nb in notebooks if nb.archived
        ]

    def list_tags(self) -> List[str]:
        """Every tag used by at least one note, sorted."""
        tags = set()
        for note in self.index.list_notes():
            tags.update(note.tags)
        return sorted(tags)

    def notes_by_tag(self, tag: str) -> List[NoteMeta]:
        tag = normalize_tag(tag)
        return sort_notes([n for n in self.index.list_notes() if tag in n.tags])

    def list_templates(self) -> List[NoteTemplate]:
        """Built-in templates followed by custom ones."""
        return [t.model_copy(deep=True) for t in BUILTIN_TEMPLATES] + (
            self.index.list_templates()
        )

    def read_note(self, note_id: str) -> NoteContent:
        """Read a note's metadata and body.

        Raises:
            NotFoundError: If the note does not exist
        """
        validate_segment(note_id, "Note ID")
        meta = self.index.get(note_id)
        return NoteContent(meta=meta, body=self.content.read_or_empty(note_id))

    # =========================================================================
    # Saving
    # =========================================================================

    @traced("save_note")
    def save_note(self, note_id: Optional[str], title: str, body: str) -> NoteMeta:
        """Create or update a note.

        Args:
            note_id: Existing id, a new id chosen by the caller, or None
            title: Full title
            body: Full body text

        Returns:
            The fresh metadata record

        Raises:
            ValidationError: When creating a note with empty title and body
            InvalidPathError: If note_id is not a safe identifier
        """
        if note_id is None:
            note_id = generate_id()
        validate_segment(note_id, "Note ID")
        with self._get_note_lock(note_id):
            return self._save(note_id, title, body)

    def _save(
        self,
        note_id: str,
        title: str,
        body: str,
        is_daily: bool = False,
    ) -> NoteMeta:
        """Save under the caller's note lock: content, snapshot, then index."""
        title = title or ""
        body = body or ""
        existing = self.index.snapshot().find_note(note_id)
        if existing is None and not title.strip() and not body.strip():
            raise ValidationError(
                "Cannot create an empty note",
                field="body",
                code=ErrorCode.NOTE_EMPTY,
            )

        if existing is not None:
            previous_body = self.content.read_or_empty(note_id)
            if existing.title != title or previous_body != body:
                self.versions.record_snapshot(note_id, existing.title, previous_body)

        self.content.write(note_id, body)

        with self.index.transaction() as idx:
            note = idx.find_note(note_id)
            old_title = None
            if note is None:
                note = NoteMeta(id=note_id, title=title, is_daily=is_daily)
                idx.notes.append(note)
            else:
                old_title = note.title
            note.title = title
            note.set_tags(derive_tags(note.tags, old_title, title, body, note.is_daily))
            note.set_links(resolve_links(body, idx.notes, exclude_id=note_id))
            note.touch()
            affected = set()
            if old_title is None or old_title.strip().lower() != title.strip().lower():
                affected = {title, old_title}
            if self._title_is_shared(idx, note):
                affected.add(title)
            self._refresh_inbound_links(idx, affected, skip_id=note_id)
            result = note.model_copy(deep=True)
        logger.debug(f"Saved note {note_id} ({len(body)} chars)")
        return result

    def _refresh_inbound_links(
        self, idx: IndexFile, titles: Iterable[str], skip_id: Optional[str] = None
    ) -> None:
        """Re-resolve links of notes whose bodies mention one of titles.

        Called inside an index transaction when a title appears, changes or
        disappears, so ``[[Title]]`` written before the target existed still
        resolves. Only ``linksTo`` changes; ``updatedAt`` is left alone.
        """
        wanted = {t.strip().lower() for t in titles if t and t.strip()}
        if not wanted:
            return
        for other in idx.notes:
            if other.id == skip_id:
                continue
            body = self.content.read_or_empty(other.id)
            mentioned = {t.lower() for t in extract_link_titles(body)}
            if mentioned & wanted:
                other.set_links(resolve_links(body, idx.notes, exclude_id=other.id))

    @staticmethod
    def _title_is_shared(idx: IndexFile, note: NoteMeta) -> bool:
        key = note.title.strip().lower()
        return bool(key) and any(
            other.id != note.id and other.title.strip().lower() == key
            for other in idx.notes
        )

    def _touch(self, idx: IndexFile, note: NoteMeta) -> None:
        """Bump updatedAt inside a transaction.

        A newer updatedAt can make this note the winner for a title it
        shares with other notes, so links to that title are re-resolved.
        """
        note.touch()
        if self._title_is_shared(idx, note):
            self._refresh_inbound_links(idx, {note.title}, skip_id=note.id)

    @traced("update_title")
    def update_title(self, note_id: str, title: str) -> NoteMeta:
        """Change only the title; a normal save of the current body."""
        validate_segment(note_id, "Note ID")
        with self._get_note_lock(note_id):
            self.index.get(note_id)
            return self._save(note_id, title, self.content.read_or_empty(note_id))

    # =========================================================================
    # Flags, tags, notebooks on notes
    # =========================================================================

    def _update_meta(self, note_id: str, mutate) -> NoteMeta:
        validate_segment(note_id, "Note ID")
        with self._get_note_lock(note_id):
            with self.index.transaction() as idx:
                note = self._require_note(idx, note_id)
                mutate(note)
                self._touch(idx, note)
                return note.model_copy(deep=True)

    @traced("toggle_star")
    def toggle_star(self, note_id: str, important: bool) -> NoteMeta:
        def apply(note: NoteMeta) -> None:
            note.important = bool(important)

        return self._update_meta(note_id, apply)

    @traced("batch_star")
    def batch_star(self, note_ids: List[str], important: bool) -> List[NoteMeta]:
        """Set the star flag on several notes; unknown ids fail the whole call."""
        note_ids = self._existing_ids(note_ids)
        return [self.toggle_star(note_id, important) for note_id in note_ids]

    @traced("add_tag")
    def add_tag(self, note_ids: Union[str, List[str]], tag: str) -> List[NoteMeta]:
        """Add an explicit tag to one or more notes.

        Raises:
            ValidationError: If the tag does not match the tag grammar
            NotFoundError: If any note id is unknown (nothing is changed)
        """
        tag = normalize_tag(tag)
        if isinstance(note_ids, str):
            note_ids = [note_ids]
        note_ids = self._existing_ids(note_ids)

        def apply(note: NoteMeta) -> None:
            note.set_tags(set(note.tags) | {tag})

        return [self._update_meta(note_id, apply) for note_id in note_ids]

    @traced("remove_tag")
    def remove_tag(self, note_id: str, tag: str) -> NoteMeta:
        """Remove a tag from a note.

        The body is not touched: if it still contains ``#tag``, the next
        save of the note adds the tag again.
        """
        tag = normalize_tag(tag)

        def apply(note: NoteMeta) -> None:
            note.set_tags(t for t in note.tags if t != tag)

        return self._update_meta(note_id, apply)

    @traced("move_to_notebook")
    def move_to_notebook(self, note_id: str, notebook_id: Optional[str]) -> NoteMeta:
        """File a note into a notebook, or unfile it with None.

        Raises:
            NotFoundError: If the note or the notebook does not exist
        """
        if notebook_id is not None:
            self.index.get_notebook(notebook_id)

        def apply(note: NoteMeta) -> None:
            note.notebook_id = notebook_id

        return self._update_meta(note_id, apply)

    def _existing_ids(self, note_ids: Iterable[str]) -> List[str]:
        """Validate and de-duplicate ids, failing on the first unknown one."""
        unique = list(dict.fromkeys(note_ids))
        snapshot = self.index.snapshot()
        for note_id in unique:
            validate_segment(note_id, "Note ID")
            if snapshot.find_note(note_id) is None:
                raise NoteNotFoundError(note_id)
        return unique

    # =========================================================================
    # Attachments
    # =========================================================================

    @traced("attach_files")
    def attach_files(self, note_id: str, source_paths: List[str]) -> NoteMeta:
        """Import files as attachments of a note."""
        validate_segment(note_id, "Note ID")
        with self._get_note_lock(note_id):
            self.index.get(note_id)
            refs = self.attachments.attach(note_id, source_paths)
            try:
                with self.index.transaction() as idx:
                    note = self._require_note(idx, note_id)
                    note.images.extend(refs)
                    self._touch(idx, note)
                    result = note.model_copy(deep=True)
            except Exception:
                for ref in refs:
                    self.attachments.remove_file(note_id, ref.path)
                raise
            logger.info(f"Attached {len(refs)} file(s) to note {note_id}")
            return result

    @traced("attach_from_clipboard")
    def attach_from_clipboard(
        self, note_id: str, data: Union[str, bytes], suggested_name: Optional[str] = None
    ) -> NoteMeta:
        """Attach pasted data; str input is decoded as base64.

        Raises:
            ValidationError: If data is empty or not valid base64
        """
        if isinstance(data, str):
            try:
                data = base64.b64decode(data.strip(), validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValidationError(
                    f"Invalid base64 attachment data: {e}", field="data"
                ) from e
        validate_segment(note_id, "Note ID")
        with self._get_note_lock(note_id):
            self.index.get(note_id)
            ref = self.attachments.attach_from_data(note_id, data, suggested_name)
            try:
                with self.index.transaction() as idx:
                    note = self._require_note(idx, note_id)
                    note.images.append(ref)
                    self._touch(idx, note)
                    return note.model_copy(deep=True)
            except Exception:
                self.attachments.remove_file(note_id, ref.path)
                raise

    def _find_attachment(self, note: NoteMeta, relative_path: str) -> int:
        for position, image in enumerate(note.images):
            if image.path == relative_path:
                return position
        raise NotFoundError(
            "attachment", relative_path, code=ErrorCode.ATTACHMENT_NOT_FOUND
        )

    @traced("remove_attachment")
    def remove_attachment(self, note_id: str, relative_path: str) -> NoteMeta:
        """Delete an attachment file and its reference.

        Runs under the index lock so an export never sees the reference
        without the file.
        """
        validate_segment(note_id, "Note ID")
        with self._get_note_lock(note_id), self.index.lock:
            self._find_attachment(self.index.get(note_id), relative_path)
            self.attachments.remove_file(note_id, relative_path)
            with self.index.transaction() as idx:
                note = self._require_note(idx, note_id)
                del note.images[self._find_attachment(note, relative_path)]
                self._touch(idx, note)
                return note.model_copy(deep=True)

    @traced("rename_attachment")
    def rename_attachment(
        self, note_id: str, relative_path: str, new_name: str
    ) -> NoteMeta:
        """Rename an attachment on disk, then update its reference.

        The reference changes only after the file was renamed, so a failed
        rename leaves the metadata untouched. Both halves run under the
        index lock.

        Raises:
            InvalidPathError: If relative_path or new_name is unsafe
            NotFoundError: If the note or attachment does not exist
        """
        validate_segment(note_id, "Note ID")
        with self._get_note_lock(note_id), self.index.lock:
            self._find_attachment(self.index.get(note_id), relative_path)
            new_path, display = self.attachments.rename_file(
                note_id, relative_path, new_name
            )
            try:
                with self.index.transaction() as idx:
                    note = self._require_note(idx, note_id)
                    image = note.images[self._find_attachment(note, relative_path)]
                    image.name = display
                    image.path = new_path
                    self._touch(idx, note)
                    return note.model_copy(deep=True)
            except Exception:
                self.attachments.move_file(note_id, new_path, relative_path)
                raise

    def resolve_attachment_path(self, relative_path: str) -> str:
        """Absolute path of a stored attachment, re-validated."""
        return str(self.attachments.resolve(relative_path))

    # =========================================================================
    # Deleting, duplicating, merging
    # =========================================================================

    @traced("delete_note")
    def delete_note(self, note_id: str) -> None:
        """Delete a note with its content, attachments and history.

        Other notes' links to it are retracted in the same index write.
        """
        validate_segment(note_id, "Note ID")
        with self._get_note_lock(note_id):
            self._delete_locked([note_id])

    @traced("batch_delete")
    def batch_delete(self, note_ids: List[str]) -> int:
        """Delete several notes in one index write.

        Returns:
            Number of deleted notes
        """
        note_ids = self._existing_ids(note_ids)
        if not note_ids:
            return 0
        with ExitStack() as stack:
            for note_id in sorted(note_ids):
                stack.enter_context(self._get_note_lock(note_id))
            self._delete_locked(note_ids)
        return len(note_ids)

    def _delete_locked(self, note_ids: List[str]) -> None:
        with self.index.transaction() as idx:
            titles = []
            for note_id in note_ids:
                titles.append(self._require_note(idx, note_id).title)
            idx.notes = [n for n in idx.notes if n.id not in set(note_ids)]
            retract_links(idx.notes, note_ids)
            # Links to a duplicate title may now resolve to another note
            self._refresh_inbound_links(idx, titles)
        for note_id in note_ids:
            self.content.delete(note_id)
            self.attachments.delete_all(note_id)
            self.versions.delete_all(note_id)
            logger.info(f"Deleted note {note_id}")

    @traced("duplicate_note")
    def duplicate_note(self, note_id: str) -> NoteMeta:
        """Copy a note: title "<title> (copy)", same body, copied attachments."""
        source = self.read_note(note_id)
        new_id = generate_id()
        with self._get_note_lock(new_id):
            title = f"{source.meta.title.strip()} (copy)".strip()
            self._save(new_id, title, source.body)
            refs = self.attachments.copy_all(note_id, new_id, source.meta.images)
            with self.index.transaction() as idx:
                note = self._require_note(idx, new_id)
                note.images.extend(refs)
                # Explicit tags carry over; the old title slug does not
                inherited = set(source.meta.tags) - {title_tag(source.meta.title)}
                note.set_tags(set(note.tags) | inherited)
                return note.model_copy(deep=True)

    @traced("merge_notes")
    def merge_notes(self, note_ids: List[str]) -> NoteMeta:
        """Merge notes into the first id.

        Bodies are concatenated oldest-updated first, each under a
        ``## <title>`` heading; the merged note takes the oldest title.
        Attachments and tags of the other notes move into it, then the
        other notes are deleted.

        Raises:
            ValidationError: If no ids are given
            NotFoundError: If any id is unknown
        """
        note_ids = self._existing_ids(note_ids)
        if not note_ids:
            raise ValidationError("No notes to merge", field="note_ids")
        keep_id = note_ids[0]
        if len(note_ids) == 1:
            return self.index.get(keep_id)

        with ExitStack() as stack:
            for note_id in sorted(note_ids):
                stack.enter_context(self._get_note_lock(note_id))
            # Attachment moves must not interleave with a backup export
            stack.enter_context(self.index.lock)
            parts = [self.read_note(note_id) for note_id in note_ids]
            ordered = sorted(parts, key=lambda p: (p.meta.updated_at, p.meta.id))
            title = ordered[0].meta.title
            body = "\n\n".join(
                f"## {p.meta.title}\n\n{p.body.strip()}" for p in ordered
            ).strip()

            moved = []
            for part in parts[1:]:
                moved.extend(
                    self.attachments.move_all(part.meta.id, keep_id, part.meta.images)
                )
            self._save(keep_id, title, body)
            others = [p.meta.id for p in parts[1:]]
            with self.index.transaction() as idx:
                note = self._require_note(idx, keep_id)
                note.images.extend(moved)
                merged_tags = set(note.tags)
                for part in parts[1:]:
                    merged_tags.update(part.meta.tags)
                note.set_tags(merged_tags)
            self._delete_locked(others)
            logger.info(f"Merged {len(others)} note(s) into {keep_id}")
            return self.index.get(keep_id)

    # =========================================================================
    # Export of single notes
    # =========================================================================

    def export_note(self, note_id: str) -> str:
        """Plain-text export: title, blank line, body."""
        note = self.read_note(note_id)
        return self.exporter.render_plain(note.meta, note.body)

    def export_note_as_markdown(self, note_id: str) -> str:
        """Markdown export with YAML frontmatter."""
        note = self.read_note(note_id)
        notebook_name = None
        if note.meta.notebook_id:
            try:
                notebook_name = self.index.get_notebook(note.meta.notebook_id).name
            except NotFoundError:
                logger.warning(
                    f"Note {note_id} references missing notebook {note.meta.notebook_id}"
                )
        return self.exporter.render_note(note.meta, note.body, notebook_name)

    @traced("write_text_file")
    def write_text_file(self, path: str, content: str) -> str:
        """Write text to a user-chosen file (for exports).

        Raises:
            InvalidPathError: If the path contains NUL or points into the store
            ValidationError: If the path is empty or an existing directory
            StorageError: If the write fails
        """
        if not path or not path.strip():
            raise ValidationError("Path cannot be empty", field="path")
        if "\x00" in path:
            raise InvalidPathError("Path contains a NUL byte", value=path)
        target = Path(path).expanduser().resolve()
        if is_within(self.root, target):
            raise InvalidPathError(
                "Cannot write export files inside the store",
                value=path,
                code=ErrorCode.PATH_TRAVERSAL_DETECTED,
            )
        if target.is_dir():
            raise ValidationError("Path is a directory", field="path", value=path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as e:
            raise StorageError(
                "Failed to write file",
                operation="write_text_file",
                path=str(target),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        return str(target)

    # =========================================================================
    # Daily notes and backlinks
    # =========================================================================

    @traced("get_or_create_daily_note")
    def get_or_create_daily_note(
        self, today: Optional[datetime.date] = None
    ) -> NoteMeta:
        """Return today's daily note, creating it on first use.

        Args:
            today: Local date to use (defaults to the current local date)
        """
        date = (today or local_today()).isoformat()
        with self._daily_lock:
            for note in self.index.list_notes():
                if note.is_daily and note.title == date:
                    return note
            note_id = generate_id()
            with self._get_note_lock(note_id):
                note = self._save(note_id, date, f"# {date}\n", is_daily=True)
            logger.info(f"Created daily note for {date}")
            return note

    def get_backlinks(self, note_id: str) -> List[NoteMeta]:
        """Notes whose bodies link to this note, most recent first."""
        validate_segment(note_id, "Note ID")
        self.index.get(note_id)
        return backlinks(note_id, self.index.list_notes())

    # =========================================================================
    # Search
    # =========================================================================

    @traced("search")
    def search(
        self, query: str, now: Optional[datetime.datetime] = None
    ) -> List[NoteMeta]:
        return self.searcher.search(query, now=now)

    # =========================================================================
    # Versions
    # =========================================================================

    def list_versions(self, note_id: str) -> List[VersionItem]:
        """A note's snapshots, newest first."""
        validate_segment(note_id, "Note ID")
        self.index.get(note_id)
        return self.versions.list(note_id)

    def get_version(self, note_id: str, saved_at: str) -> VersionSnapshot:
        validate_segment(note_id, "Note ID")
        self.index.get(note_id)
        return self.versions.get(note_id, saved_at)

    @traced("restore_version")
    def restore_version(self, note_id: str, saved_at: str) -> NoteMeta:
        """Restore a snapshot's title and body through a normal save.

        The pre-restore state becomes a new snapshot, so nothing is lost.
        """
        validate_segment(note_id, "Note ID")
        with self._get_note_lock(note_id):
            self.index.get(note_id)
            snapshot = self.versions.get(note_id, saved_at)
            logger.info(f"Restoring note {note_id} to version {snapshot.key}")
            return self._save(note_id, snapshot.title, snapshot.body)

    # =========================================================================
    # Templates
    # =========================================================================

    def _find_template(self, template_id: str) -> NoteTemplate:
        for template in BUILTIN_TEMPLATES:
            if template.id == template_id:
                return template.model_copy(deep=True)
        return self.index.get_template(template_id)

    @traced("save_custom_template")
    def save_custom_template(
        self, name: str, body: str, default_title_pattern: Optional[str] = None
    ) -> NoteTemplate:
        """Store a user template under a new ``custom-<uuid>`` id."""
        if not name or not name.strip():
            raise ValidationError(
                "Template name cannot be empty",
                field="name",
                code=ErrorCode.NAME_REQUIRED,
            )
        template = NoteTemplate(
            id=f"{CUSTOM_TEMPLATE_PREFIX}{uuid.uuid4()}",
            name=name.strip(),
            body=body or "",
            default_title_pattern=default_title_pattern or name.strip(),
            is_custom=True,
        )
        self.index.upsert(template)
        return template

    @traced("delete_custom_template")
    def delete_custom_template(self, template_id: str) -> None:
        """Delete a custom template; built-ins are read-only.

        Raises:
            ValidationError: For built-in template ids
            NotFoundError: If no custom template has this id
        """
        if not template_id.startswith(CUSTOM_TEMPLATE_PREFIX):
            raise ValidationError(
                f"Template '{template_id}' is built in and cannot be deleted",
                field="template_id",
                value=template_id,
                code=ErrorCode.TEMPLATE_READ_ONLY,
            )
        self.index.get_template(template_id)
        self.index.remove(template_id)

    @traced("create_note_from_template")
    def create_note_from_template(
        self, template_id: str, title: Optional[str] = None
    ) -> NoteMeta:
        """Create a note from a template.

        Args:
            template_id: Built-in or custom template id
            title: Title override; defaults to the template's title pattern

        Raises:
            NotFoundError: If the template does not exist
        """
        template = self._find_template(template_id)
        raw_title = title if title is not None else template.default_title_pattern
        raw_title = (raw_title or "").strip() or UNTITLED
        date = local_today().isoformat()
        note_title = apply_placeholders(raw_title, raw_title, date)
        body = apply_placeholders(template.body, note_title, date)
        return self.save_note(None, note_title, body)

    # =========================================================================
    # Notebooks
    # =========================================================================

    @staticmethod
    def _notebook_name(name: str) -> str:
        if not name or not name.strip():
            raise ValidationError(
                "Notebook name cannot be empty",
                field="name",
                code=ErrorCode.NAME_REQUIRED,
            )
        return name.strip()

    @traced("create_notebook")
    def create_notebook(self, name: str) -> Notebook:
        notebook = Notebook(name=self._notebook_name(name))
        self.index.upsert(notebook)
        return notebook

    @traced("rename_notebook")
    def rename_notebook(self, notebook_id: str, name: str) -> Notebook:
        name = self._notebook_name(name)
        with self.index.transaction() as idx:
            notebook = idx.find_notebook(notebook_id)
            if notebook is None:
                raise NotFoundError(
                    "notebook", notebook_id, code=ErrorCode.NOTEBOOK_NOT_FOUND
                )
            notebook.name = name
            return notebook.model_copy(deep=True)

    @traced("archive_notebook")
    def archive_notebook(self, notebook_id: str, archived: bool = True) -> Notebook:
        """Archive (or unarchive) a notebook; its notes stay assigned."""
        with self.index.transaction() as idx:
            notebook = idx.find_notebook(notebook_id)
            if notebook is None:
                raise NotFoundError(
                    "notebook", notebook_id, code=ErrorCode.NOTEBOOK_NOT_FOUND
                )
            notebook.archived = bool(archived)
            return notebook.model_copy(deep=True)

    # =========================================================================
    # Sync folder and backups
    # =========================================================================

    def get_sync_folder(self) -> Optional[str]:
        return self.index.get_sync_folder()

    @traced("set_sync_folder")
    def set_sync_folder(self, folder: Optional[str]) -> Optional[str]:
        """Persist the sync folder (None or blank clears it)."""
        if folder is None or not folder.strip():
            self.index.set_sync_folder(None)
            return None
        if "\x00" in folder:
            raise InvalidPathError("Sync folder contains a NUL byte", value=folder)
        resolved = str(Path(folder).expanduser().resolve())
        self.index.set_sync_folder(resolved)
        return resolved

    @traced("export_backup")
    def export_backup(self, target_dir: Union[str, Path]) -> Dict[str, Any]:
        return self.backups.export_backup(target_dir)

    @traced("import_backup")
    def import_backup(self, source_dir: Union[str, Path]) -> Dict[str, Any]:
        return self.backups.import_backup(source_dir)

    @traced("push")
    def push(self) -> Dict[str, Any]:
        """Export to the configured sync folder."""
        return self.backups.push()

    @traced("pull")
    def pull(self) -> Dict[str, Any]:
        """Import from the configured sync folder."""
        return self.backups.pull()
