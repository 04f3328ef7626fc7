"""Metadata index: the single JSON document describing the whole store.

Holds every note record, notebook, custom template and the sync-folder
setting. The in-memory copy is authoritative for readers; every write goes
through ``transaction()``, which serializes the new state to a temporary
file and atomically swaps it into place.
"""
import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from localnotes.exceptions import (
    ErrorCode,
    IndexCorruptError,
    NotFoundError,
    NoteNotFoundError,
    StorageError,
)
from localnotes.models.schema import (
    IndexFile,
    NoteMeta,
    Notebook,
    NoteTemplate,
    utc_now,
)

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.json"

Record = Union[NoteMeta, Notebook, NoteTemplate]


def write_json_atomic(path: Path, payload: str) -> None:
    """Write text to path via temp file + fsync + rename.

    A crash at any point leaves either the old file or the new one,
    never a truncated mix.

    Raises:
        StorageError: If any step fails (the temp file is removed)
    """
    temp_path = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError as e:
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as cleanup_err:
            logger.warning(f"Failed to remove temp file {temp_path.name}: {cleanup_err}")
        raise StorageError(
            f"Failed to write {path.name}",
            operation="write_index",
            path=str(path),
            code=ErrorCode.STORAGE_WRITE_FAILED,
            original_error=e,
        ) from e


class MetadataIndex:
    """Atomic, lock-serialized access to ``meta/index.json``.

    One instance per store. All read-modify-write cycles take the same
    reentrant lock, so concurrent upserts to different ids never lose
    each other's changes.
    """

    def __init__(self, meta_dir: Path):
        """Initialize the index store.

        Args:
            meta_dir: The store's meta/ directory. Created if missing.
        """
        self.meta_dir = meta_dir
        self.path = meta_dir / INDEX_FILENAME
        self.lock = threading.RLock()
        self._index = IndexFile()
        self.last_load_error: Optional[IndexCorruptError] = None

    # =========================================================================
    # Loading and persistence
    # =========================================================================

    def load(self) -> IndexFile:
        """Load the persisted index into memory.

        Returns empty structures when the file is absent. Unparseable content
        is moved aside and replaced by an empty index; the failure is kept in
        ``last_load_error`` and logged as a warning instead of crashing.

        Returns:
            A copy of the loaded index.
        """
        with self.lock:
            self.last_load_error = None
            try:
                self._index = self.read_file(self.path)
            except FileNotFoundError:
                self._index = IndexFile()
            except IndexCorruptError as e:
                backup = self._quarantine()
                self.last_load_error = IndexCorruptError(
                    e.message, backup_path=backup, original_error=e.original_error
                )
                logger.warning(
                    f"Metadata index is corrupt, starting empty "
                    f"(unreadable copy kept at {backup}): {e.original_error}"
                )
                self._index = IndexFile()
            return self._index.model_copy(deep=True)

    @staticmethod
    def read_file(path: Path) -> IndexFile:
        """Parse an index file without touching any store state.

        Raises:
            FileNotFoundError: If the file does not exist
            IndexCorruptError: If the content is not a valid index
            StorageError: If the file exists but cannot be read
        """
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise
        except OSError as e:
            raise StorageError(
                "Failed to read metadata index",
                operation="read_index",
                path=str(path),
                original_error=e,
            ) from e
        try:
            return IndexFile.model_validate(json.loads(raw))
        except (json.JSONDecodeError, PydanticValidationError, TypeError) as e:
            raise IndexCorruptError(
                "Metadata index could not be parsed", original_error=e
            ) from e

    def _quarantine(self) -> Optional[str]:
        stamp = utc_now().strftime("%Y%m%dT%H%M%S%f")
        target = self.path.with_name(f"{INDEX_FILENAME}.corrupt-{stamp}")
        try:
            os.replace(self.path, target)
            return str(target)
        except OSError as e:
            logger.warning(f"Could not move corrupt index aside: {e}")
            return None

    def _persist(self, index: IndexFile) -> None:
        payload = json.dumps(index.to_dict(), indent=2, ensure_ascii=False)
        write_json_atomic(self.path, payload)

    def ensure_file(self) -> None:
        """Write an empty index if none exists yet."""
        with self.lock:
            if not self.path.exists():
                self._persist(self._index)

    @contextmanager
    def transaction(self) -> Iterator[IndexFile]:
        """Read-modify-write cycle under the store's write lock.

        Yields a working copy of the index. On normal exit the copy is
        persisted atomically and becomes the in-memory state; if the block
        raises, nothing is written and the in-memory state is unchanged.

        Example:
            with index.transaction() as idx:
                idx.find_note(note_id).important = True
        """
        with self.lock:
            working = self._index.model_copy(deep=True)
            yield working
            # Round-trip through validation so derived fields stay consistent
            validated = IndexFile.model_validate(working.to_dict())
            self._persist(validated)
            self._index = validated

    def replace(self, index: IndexFile) -> None:
        """Swap in a whole new index (used by backup import)."""
        with self.lock:
            self._persist(index)
            self._index = index.model_copy(deep=True)

    def snapshot(self) -> IndexFile:
        """A deep copy of the current index for read-only scans."""
        with self.lock:
            return self._index.model_copy(deep=True)

    # =========================================================================
    # Record access
    # =========================================================================

    def list_notes(self) -> List[NoteMeta]:
        with self.lock:
            return [n.model_copy(deep=True) for n in self._index.notes]

    def list_notebooks(self) -> List[Notebook]:
        with self.lock:
            return [nb.model_copy(deep=True) for nb in self._index.notebooks]

    def list_templates(self) -> List[NoteTemplate]:
        """Custom templates only; built-ins are never persisted."""
        with self.lock:
            return [t.model_copy(deep=True) for t in self._index.templates]

    def get(self, note_id: str) -> NoteMeta:
        """Get a note record by id.

        Raises:
            NotFoundError: If no note has this id
        """
        with self.lock:
            note = self._index.find_note(note_id)
            if note is None:
                raise NoteNotFoundError(note_id)
            return note.model_copy(deep=True)

    def get_notebook(self, notebook_id: str) -> Notebook:
        with self.lock:
            notebook = self._index.find_notebook(notebook_id)
            if notebook is None:
                raise NotFoundError(
                    "notebook", notebook_id, code=ErrorCode.NOTEBOOK_NOT_FOUND
                )
            return notebook.model_copy(deep=True)

    def get_template(self, template_id: str) -> NoteTemplate:
        with self.lock:
            template = self._index.find_template(template_id)
            if template is None:
                raise NotFoundError(
                    "template", template_id, code=ErrorCode.TEMPLATE_NOT_FOUND
                )
            return template.model_copy(deep=True)

    def contains(self, note_id: str) -> bool:
        with self.lock:
            return self._index.find_note(note_id) is not None

    def upsert(self, record: Record) -> Record:
        """Insert or replace a note, notebook or template by id."""
        with self.transaction() as idx:
            if isinstance(record, NoteMeta):
                collection = idx.notes
            elif isinstance(record, Notebook):
                collection = idx.notebooks
            elif isinstance(record, NoteTemplate):
                collection = idx.templates
            else:
                raise TypeError(f"Unsupported record type: {type(record).__name__}")
            for i, existing in enumerate(collection):
                if existing.id == record.id:
                    collection[i] = record.model_copy(deep=True)
                    break
            else:
                collection.append(record.model_copy(deep=True))
        return record

    def remove(self, record_id: str) -> None:
        """Remove a note, notebook or template by id.

        Raises:
            NotFoundError: If nothing has this id
        """
        with self.transaction() as idx:
            for collection in (idx.notes, idx.notebooks, idx.templates):
                for i, existing in enumerate(collection):
                    if existing.id == record_id:
                        del collection[i]
                        return
            raise NotFoundError("record", record_id, code=ErrorCode.NOTE_NOT_FOUND)

    # =========================================================================
    # Settings
    # =========================================================================

    def get_sync_folder(self) -> Optional[str]:
        with self.lock:
            return self._index.sync_folder

    def set_sync_folder(self, folder: Optional[str]) -> None:
        with self.transaction() as idx:
            idx.sync_folder = folder
