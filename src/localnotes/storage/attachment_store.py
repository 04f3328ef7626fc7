"""Attachment files stored under ``images/<noteId>/``.

Stored names are ``<epoch-ms>-<sanitized stem>[.<ext>]``; the timestamp
prefix keeps repeated imports of the same file apart. This module only
touches the filesystem and returns the ``ImageRef`` values to record; the
note service applies them to the metadata index afterwards, so a failed
copy or rename never leaves a dangling reference.
"""
import logging
import os
import re
import shutil
import time
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional, Tuple

from localnotes.config import config
from localnotes.exceptions import (
    ErrorCode,
    InvalidPathError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from localnotes.models.schema import ImageRef, utc_now
from localnotes.storage.paths import (
    resolve_within,
    sanitize_filename,
    validate_relative_path,
    validate_segment,
    validate_user_filename,
)

logger = logging.getLogger(__name__)

IMAGES_DIRNAME = "images"
DEFAULT_PASTE_STEM = "paste"
DEFAULT_PASTE_EXTENSION = "png"
DEFAULT_FILE_STEM = "file"

# "<digits>-<rest>" as produced by _stored_name
_STORED_NAME = re.compile(r"^(\d+)-(.+)$")


def _split_name(name: str) -> Tuple[str, str]:
    """Split a filename into (stem, extension without dot)."""
    path = PurePosixPath(name.replace("\\", "/"))
    suffix = path.suffix
    stem = path.name[: -len(suffix)] if suffix else path.name
    return stem, suffix[1:]


class AttachmentStore:
    """Per-note attachment directories inside the store root."""

    def __init__(self, root: Path):
        self.root = root
        self.images_dir = root / IMAGES_DIRNAME

    # =========================================================================
    # Paths
    # =========================================================================

    def note_dir(self, note_id: str) -> Path:
        validate_segment(note_id, "Note ID")
        return self.images_dir / note_id

    @staticmethod
    def relative_path(note_id: str, stored_name: str) -> str:
        return f"{IMAGES_DIRNAME}/{note_id}/{stored_name}"

    def resolve(self, relative_path: str) -> Path:
        """Map a stored relative path to an absolute path under images/.

        Re-validates the path, so a corrupted index entry cannot point
        anywhere else on disk.

        Raises:
            InvalidPathError: If the path is unsafe or not under images/
        """
        rel = validate_relative_path(relative_path)
        if rel.parts[0] != IMAGES_DIRNAME or len(rel.parts) < 2:
            raise InvalidPathError(
                "Attachment path must be under images/",
                value=relative_path,
                code=ErrorCode.PATH_TRAVERSAL_DETECTED,
            )
        return resolve_within(self.root, rel)

    def _note_file(self, note_id: str, relative_path: str) -> Path:
        """Resolve a path that must be a file directly in the note's directory."""
        rel = validate_relative_path(relative_path)
        if rel.parts[:2] != (IMAGES_DIRNAME, note_id) or len(rel.parts) != 3:
            raise InvalidPathError(
                f"Attachment path must be inside images/{note_id}/",
                value=relative_path,
                code=ErrorCode.PATH_TRAVERSAL_DETECTED,
            )
        return resolve_within(self.root, rel)

    def _stored_name(self, directory: Path, stem: str, ext: str) -> str:
        """Build a timestamp-prefixed name that does not exist in directory yet."""
        suffix = f".{ext}" if ext else ""
        millis = int(time.time() * 1000)
        budget = config.max_filename_length - len(str(millis)) - len(suffix) - 1
        safe_stem = sanitize_filename(stem, max_length=max(budget, 1))
        while True:
            candidate = f"{millis}-{safe_stem}{suffix}"
            if not (directory / candidate).exists():
                return candidate
            millis += 1

    @staticmethod
    def _safe_ext(ext: str) -> str:
        return sanitize_filename(ext, max_length=16).replace(".", "_")

    # =========================================================================
    # Import
    # =========================================================================

    def attach(self, note_id: str, source_paths: Iterable[str]) -> List[ImageRef]:
        """Copy source files into the note's attachment directory.

        Sources that are missing or not regular files are skipped with a
        warning. If a copy fails, files already copied by this call are
        removed again before the error propagates.

        Args:
            note_id: The owning note
            source_paths: Files to import (absolute or relative to the CWD)

        Returns:
            ImageRefs for the imported files, in input order

        Raises:
            InvalidPathError: If a source path contains a NUL byte
            StorageError: If a copy fails
        """
        directory = self.note_dir(note_id)
        refs: List[ImageRef] = []
        copied: List[Path] = []
        for source in source_paths:
            if "\x00" in source:
                raise InvalidPathError("Source path contains a NUL byte", value=source)
            src = Path(source).expanduser()
            if not src.is_file():
                logger.warning(f"Skipping attachment source that is not a file: {source}")
                continue
            stem, ext = _split_name(src.name)
            stored = self._stored_name(
                directory, stem or DEFAULT_FILE_STEM, self._safe_ext(ext)
            )
            dest = directory / stored
            try:
                directory.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(src, dest)
            except OSError as e:
                self._discard(copied)
                raise StorageError(
                    f"Failed to import attachment {src.name}",
                    operation="attach",
                    path=str(src),
                    code=ErrorCode.STORAGE_COPY_FAILED,
                    original_error=e,
                ) from e
            copied.append(dest)
            refs.append(
                ImageRef(
                    name=src.name,
                    path=self.relative_path(note_id, stored),
                    added_at=utc_now(),
                    size=dest.stat().st_size,
                )
            )
        return refs

    def attach_from_data(
        self, note_id: str, data: bytes, suggested_name: Optional[str] = None
    ) -> ImageRef:
        """Store raw bytes (a clipboard paste) as a new attachment.

        Args:
            note_id: The owning note
            data: File content; must not be empty
            suggested_name: Display name; stem defaults to "paste" and the
                extension to "png"

        Raises:
            ValidationError: If data is empty
            InvalidPathError: If suggested_name tries to address a path
            StorageError: If the file cannot be written
        """
        if not data:
            raise ValidationError("Attachment data is empty", field="data")
        if suggested_name:
            validate_user_filename(suggested_name, "Attachment name")
            stem, ext = _split_name(suggested_name.strip())
        else:
            stem, ext = "", ""
        stem = stem or DEFAULT_PASTE_STEM
        ext = self._safe_ext(ext).lower() or DEFAULT_PASTE_EXTENSION

        directory = self.note_dir(note_id)
        stored = self._stored_name(directory, stem, ext)
        dest = directory / stored
        try:
            directory.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(data)
        except OSError as e:
            self._discard([dest])
            raise StorageError(
                "Failed to store pasted attachment",
                operation="attach_from_data",
                path=str(dest),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        display = sanitize_filename(suggested_name.strip()) if suggested_name else ""
        return ImageRef(
            name=display or f"{DEFAULT_PASTE_STEM}.{ext}",
            path=self.relative_path(note_id, stored),
            added_at=utc_now(),
            size=len(data),
        )

    # =========================================================================
    # Mutation
    # =========================================================================

    def remove_file(self, note_id: str, relative_path: str) -> None:
        """Delete one attachment file; an already-missing file is tolerated."""
        path = self._note_file(note_id, relative_path)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug(f"Attachment {relative_path} already absent")
        except OSError as e:
            raise StorageError(
                f"Failed to delete attachment of note {note_id}",
                operation="remove_attachment",
                path=str(path),
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e

    def rename_file(
        self, note_id: str, relative_path: str, new_name: str
    ) -> Tuple[str, str]:
        """Rename an attachment on disk.

        The timestamp prefix of the stored name is kept; when new_name has
        no extension the original one is kept as well.

        Args:
            note_id: The owning note
            relative_path: Current stored path (images/<noteId>/<file>)
            new_name: New display name

        Returns:
            (new relative path, new display name)

        Raises:
            InvalidPathError: If either argument tries to address another path
            NotFoundError: If the attachment file does not exist
            ValidationError: If nothing usable remains of new_name
            StorageError: If the rename fails
        """
        validate_user_filename(new_name, "Attachment name")
        source = self._note_file(note_id, relative_path)
        if not source.is_file():
            raise NotFoundError(
                "attachment", relative_path, code=ErrorCode.ATTACHMENT_NOT_FOUND
            )

        display = sanitize_filename(new_name.strip())
        new_stem, new_ext = _split_name(display)
        if not display or not new_stem:
            raise ValidationError(
                "Attachment name cannot be empty",
                field="new_name",
                value=new_name,
                code=ErrorCode.NAME_REQUIRED,
            )
        _, old_ext = _split_name(source.name)
        ext = self._safe_ext(new_ext) or old_ext
        if not new_ext and old_ext:
            display = f"{display}.{old_ext}"

        match = _STORED_NAME.match(source.name)
        prefix = int(match.group(1)) if match else int(time.time() * 1000)
        suffix = f".{ext}" if ext else ""
        budget = config.max_filename_length - len(str(prefix)) - len(suffix) - 1
        safe_stem = sanitize_filename(new_stem, max_length=max(budget, 1))

        directory = source.parent
        while True:
            stored = f"{prefix}-{safe_stem}{suffix}"
            target = directory / stored
            if target == source or not target.exists():
                break
            prefix += 1

        if target != source:
            try:
                os.replace(source, target)
            except OSError as e:
                raise StorageError(
                    f"Failed to rename attachment of note {note_id}",
                    operation="rename_attachment",
                    path=str(source),
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e
            logger.debug(f"Renamed attachment {source.name} -> {stored}")
        return self.relative_path(note_id, stored), display

    def move_file(self, note_id: str, from_path: str, to_path: str) -> None:
        """Move one attachment back to an earlier stored path (rename undo)."""
        source = self._note_file(note_id, from_path)
        target = self._note_file(note_id, to_path)
        try:
            os.replace(source, target)
        except OSError as e:
            raise StorageError(
                f"Failed to move attachment of note {note_id}",
                operation="move_attachment",
                path=str(source),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    def copy_all(
        self, src_note_id: str, dst_note_id: str, images: List[ImageRef]
    ) -> List[ImageRef]:
        """Copy a note's attachments into another note's directory."""
        return self._transfer(src_note_id, dst_note_id, images, move=False)

    def move_all(
        self, src_note_id: str, dst_note_id: str, images: List[ImageRef]
    ) -> List[ImageRef]:
        """Move a note's attachments into another note's directory."""
        return self._transfer(src_note_id, dst_note_id, images, move=True)

    def _transfer(
        self,
        src_note_id: str,
        dst_note_id: str,
        images: List[ImageRef],
        move: bool,
    ) -> List[ImageRef]:
        dst_dir = self.note_dir(dst_note_id)
        refs: List[ImageRef] = []
        for image in images:
            try:
                source = self._note_file(src_note_id, image.path)
            except InvalidPathError:
                logger.warning(f"Skipping attachment with invalid path {image.path!r}")
                continue
            if not source.is_file():
                logger.warning(f"Skipping missing attachment file {image.path}")
                continue
            stored = source.name
            while (dst_dir / stored).exists():
                stem, ext = _split_name(stored)
                match = _STORED_NAME.match(stem)
                stored = self._stored_name(
                    dst_dir, match.group(2) if match else stem, ext
                )
            try:
                dst_dir.mkdir(parents=True, exist_ok=True)
                if move:
                    shutil.move(str(source), str(dst_dir / stored))
                else:
                    shutil.copyfile(source, dst_dir / stored)
            except OSError as e:
                raise StorageError(
                    f"Failed to {'move' if move else 'copy'} attachment {image.name}",
                    operation="move_attachments" if move else "copy_attachments",
                    path=str(source),
                    code=ErrorCode.STORAGE_COPY_FAILED,
                    original_error=e,
                ) from e
            refs.append(
                image.model_copy(
                    update={"path": self.relative_path(dst_note_id, stored)}
                )
            )
        return refs

    def delete_all(self, note_id: str) -> None:
        """Remove the note's whole attachment directory (idempotent)."""
        directory = self.note_dir(note_id)
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(
                f"Failed to delete attachments of note {note_id}",
                operation="delete_attachments",
                path=str(directory),
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e

    @staticmethod
    def _discard(paths: List[Path]) -> None:
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to clean up attachment {path.name}: {e}")
