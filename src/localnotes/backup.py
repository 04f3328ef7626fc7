"""Whole-store export and import for the localnotes store.

Provides directory-level backup capabilities:
- Export: copy notes/, versions/, images/ and meta/ to a target directory
- Import: replace the live store with a previously exported directory
- Push/pull: the same two operations against the configured sync folder

There is no diffing and no conflict detection; the later import wins.
"""
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

from localnotes.exceptions import (
    ErrorCode,
    IndexCorruptError,
    InvalidPathError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from localnotes.models.schema import utc_now
from localnotes.storage.index_store import (
    INDEX_FILENAME,
    MetadataIndex,
    write_json_atomic,
)
from localnotes.storage.paths import is_within

logger = logging.getLogger(__name__)

# Directories copied verbatim; meta/ is handled separately
CONTENT_DIRS = ("notes", "versions", "images")
META_DIRNAME = "meta"

# Never carried into or out of a backup
_IGNORED = shutil.ignore_patterns("*.tmp", f"{INDEX_FILENAME}.corrupt-*")


def _copy_if_present(src: str, dst: str) -> str:
    """copy2 that skips files removed after the directory was listed.

    Only files of notes absent from the exported index can vanish, since
    deleting a listed note's files waits for the index lock.
    """
    try:
        return shutil.copy2(src, dst)
    except FileNotFoundError:
        logger.debug(f"Skipping {Path(src).name}, removed during export")
        return dst


class BackupManager:
    """Exports and imports a whole store directory.

    Import copies the incoming content into staging directories inside the
    store root first, swaps them in, and replaces the metadata index last.
    A failure before the swap leaves the live store untouched.
    """

    def __init__(self, root: Path, index: MetadataIndex):
        """Initialize the backup manager.

        Args:
            root: The store root
            index: The store's metadata index (its lock guards the swap)
        """
        self.root = root
        self.index = index

    # =========================================================================
    # Export
    # =========================================================================

    def export_backup(self, target_dir: Union[str, Path]) -> Dict[str, Any]:
        """Copy the entire store into target_dir.

        The target is created if missing; same-named files are overwritten.
        The index snapshot is taken before any content is copied and the
        index lock is held until the copy is done, so every exported note
        record has its content in the export. Content saved during the copy
        may be newer than the exported index, never the other way round.

        Args:
            target_dir: Destination directory (outside the store root)

        Returns:
            Summary with the resolved target and the exported note count

        Raises:
            InvalidPathError: If the target lies inside the store root
            StorageError: If copying fails
        """
        target = self._resolve_dir(target_dir)
        if is_within(self.root, target):
            raise InvalidPathError(
                "Backup target cannot be inside the store",
                value=str(target_dir),
                code=ErrorCode.PATH_TRAVERSAL_DETECTED,
            )
        if target.exists() and not target.is_dir():
            raise ValidationError(
                "Backup target is not a directory", field="target_dir", value=target
            )

        with self.index.lock:
            snapshot = self.index.snapshot()
            self._copy_content(target)
            write_json_atomic(
                target / META_DIRNAME / INDEX_FILENAME,
                json.dumps(snapshot.to_dict(), indent=2, ensure_ascii=False),
            )
        logger.info(f"Exported {len(snapshot.notes)} notes to {target}")
        return {
            "target": str(target),
            "notes": len(snapshot.notes),
            "notebooks": len(snapshot.notebooks),
            "templates": len(snapshot.templates),
        }

    def _copy_content(self, target: Path) -> None:
        try:
            target.mkdir(parents=True, exist_ok=True)
            for name in CONTENT_DIRS:
                source = self.root / name
                if source.is_dir():
                    shutil.copytree(
                        source,
                        target / name,
                        ignore=_IGNORED,
                        copy_function=_copy_if_present,
                        dirs_exist_ok=True,
                    )
                else:
                    (target / name).mkdir(parents=True, exist_ok=True)
            meta_source = self.root / META_DIRNAME
            if meta_source.is_dir():
                shutil.copytree(
                    meta_source,
                    target / META_DIRNAME,
                    ignore=shutil.ignore_patterns(
                        INDEX_FILENAME, "*.tmp", f"{INDEX_FILENAME}.corrupt-*"
                    ),
                    dirs_exist_ok=True,
                )
        except (OSError, shutil.Error) as e:
            raise StorageError(
                "Failed to export backup",
                operation="export_backup",
                path=str(target),
                code=ErrorCode.STORAGE_COPY_FAILED,
                original_error=e,
            ) from e

    # =========================================================================
    # Import
    # =========================================================================

    def import_backup(self, source_dir: Union[str, Path]) -> Dict[str, Any]:
        """Replace the live store with the contents of source_dir.

        The device-local sync-folder setting of the live store is kept.

        Args:
            source_dir: A directory previously produced by export_backup

        Returns:
            Summary with the resolved source and the imported note count

        Raises:
            NotFoundError: If source_dir does not exist
            InvalidPathError: If source_dir lies inside the store root
            IndexCorruptError: If the source has no parseable index
            StorageError: If copying or swapping fails
        """
        source = self._resolve_dir(source_dir)
        if not source.is_dir():
            raise NotFoundError(
                "directory", str(source_dir), code=ErrorCode.DIRECTORY_NOT_FOUND
            )
        if is_within(self.root, source):
            raise InvalidPathError(
                "Backup source cannot be inside the store",
                value=str(source_dir),
                code=ErrorCode.PATH_TRAVERSAL_DETECTED,
            )
        try:
            incoming = MetadataIndex.read_file(source / META_DIRNAME / INDEX_FILENAME)
        except FileNotFoundError:
            raise IndexCorruptError(
                f"Backup at {source} has no {META_DIRNAME}/{INDEX_FILENAME}"
            ) from None

        with self.index.lock:
            staging = self.root / f".import-{utc_now().strftime('%Y%m%dT%H%M%S%f')}"
            try:
                self._stage(source, staging)
                swapped = self._swap(staging)
                incoming.sync_folder = self.index.get_sync_folder()
                try:
                    self.index.replace(incoming)
                except StorageError:
                    self._rollback(swapped)
                    raise
            finally:
                self._discard(staging)

        logger.info(f"Imported {len(incoming.notes)} notes from {source}")
        return {
            "source": str(source),
            "notes": len(incoming.notes),
            "notebooks": len(incoming.notebooks),
            "templates": len(incoming.templates),
        }

    def _stage(self, source: Path, staging: Path) -> None:
        try:
            staging.mkdir(parents=True)
            for name in CONTENT_DIRS:
                if (source / name).is_dir():
                    shutil.copytree(source / name, staging / name, ignore=_IGNORED)
                else:
                    (staging / name).mkdir()
        except (OSError, shutil.Error) as e:
            raise StorageError(
                "Failed to copy backup content",
                operation="import_backup",
                path=str(source),
                code=ErrorCode.STORAGE_COPY_FAILED,
                original_error=e,
            ) from e

    def _swap(self, staging: Path) -> List[Tuple[Path, Path]]:
        """Move staged directories into place, rolling back on failure.

        Returns:
            (live, retired) pairs, needed to undo the swap
        """
        swapped: List[Tuple[Path, Path]] = []
        try:
            for name in CONTENT_DIRS:
                live = self.root / name
                retired = staging / f"{name}.old"
                if live.exists():
                    os.replace(live, retired)
                swapped.append((live, retired))
                os.replace(staging / name, live)
        except OSError as e:
            self._rollback(swapped)
            raise StorageError(
                "Failed to swap imported content into the store",
                operation="import_backup",
                path=str(staging),
                code=ErrorCode.STORAGE_COPY_FAILED,
                original_error=e,
            ) from e
        return swapped

    @staticmethod
    def _rollback(swapped: List[Tuple[Path, Path]]) -> None:
        for live, retired in reversed(swapped):
            try:
                if live.exists():
                    shutil.rmtree(live)
                if retired.exists():
                    os.replace(retired, live)
            except OSError as e:
                logger.error(f"Rollback of {live.name} failed: {e}")

    @staticmethod
    def _discard(staging: Path) -> None:
        try:
            shutil.rmtree(staging)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove import staging directory {staging}: {e}")

    # =========================================================================
    # Sync folder
    # =========================================================================

    def _sync_folder(self) -> str:
        folder = self.index.get_sync_folder()
        if not folder:
            raise ValidationError(
                "No sync folder is configured",
                field="sync_folder",
                code=ErrorCode.SYNC_FOLDER_MISSING,
            )
        return folder

    def push(self) -> Dict[str, Any]:
        """Export the store to the configured sync folder."""
        return self.export_backup(self._sync_folder())

    def pull(self) -> Dict[str, Any]:
        """Import the store from the configured sync folder."""
        return self.import_backup(self._sync_folder())

    @staticmethod
    def _resolve_dir(value: Union[str, Path]) -> Path:
        if isinstance(value, str):
            if not value.strip():
                raise ValidationError("Directory path cannot be empty", field="path")
            if "\x00" in value:
                raise InvalidPathError("Directory path contains a NUL byte", value=value)
        return Path(value).expanduser().resolve()
