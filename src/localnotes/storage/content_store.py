"""Plain-text body storage: one ``notes/<id>.txt`` file per note."""
import logging
import os
from pathlib import Path

from localnotes.exceptions import ErrorCode, NotFoundError, StorageError
from localnotes.models.schema import note_filename
from localnotes.storage.paths import validate_segment

logger = logging.getLogger(__name__)


class NoteContentStore:
    """Durable body text per note id.

    Writes go through a temp file and an atomic rename, so a reader never
    sees a half-written body. Callers write content before updating the
    metadata index; a crash in between leaves stale-but-valid metadata.
    """

    def __init__(self, notes_dir: Path):
        self.notes_dir = notes_dir

    def path_for(self, note_id: str) -> Path:
        """Absolute path of a note's body file (id validated first)."""
        validate_segment(note_id, "Note ID")
        return self.notes_dir / note_filename(note_id)

    def exists(self, note_id: str) -> bool:
        return self.path_for(note_id).is_file()

    def read(self, note_id: str) -> str:
        """Read a note's body.

        Raises:
            NotFoundError: If the body file does not exist
            StorageError: If the file cannot be read
        """
        path = self.path_for(note_id)
        try:
            with open(path, "r", encoding="utf-8", newline="") as f:
                return f.read()
        except FileNotFoundError:
            raise NotFoundError(
                "note",
                note_id,
                code=ErrorCode.NOTE_NOT_FOUND,
                message=f"Content of note '{note_id}' not found",
            ) from None
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(
                f"Failed to read note {note_id}",
                operation="read",
                path=str(path),
                original_error=e,
            ) from e

    def read_or_empty(self, note_id: str) -> str:
        """Read a body, treating a missing file as an empty note."""
        try:
            return self.read(note_id)
        except NotFoundError:
            return ""

    def write(self, note_id: str, body: str) -> None:
        """Durably replace a note's body.

        Raises:
            StorageError: If the write or rename fails
        """
        path = self.path_for(note_id)
        temp_path = path.with_name(path.name + ".tmp")
        try:
            self.notes_dir.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8", newline="") as f:
                f.write(body)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except OSError as e:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError as cleanup_err:
                    logger.warning(
                        f"Failed to remove temp body {temp_path.name}: {cleanup_err}"
                    )
            raise StorageError(
                f"Failed to write note {note_id}",
                operation="write",
                path=str(path),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    def delete(self, note_id: str) -> None:
        """Remove a note's body; an already-missing file is not an error."""
        path = self.path_for(note_id)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug(f"Body of note {note_id} already absent")
        except OSError as e:
            raise StorageError(
                f"Failed to delete note {note_id}",
                operation="delete",
                path=str(path),
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e
