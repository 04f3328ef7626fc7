"""Bounded, append-only version history per note.

Each snapshot is a full (title, body) copy stored as
``versions/<noteId>/<savedAt>.json`` (colons in the timestamp replaced by
dashes so the name is portable). At most ``max_versions`` snapshots are kept;
the oldest are evicted first.

Next to the snapshots, ``timeline.idx`` lists every snapshot's savedAt,
title and body preview, so listing a history never loads full bodies. It
is rebuilt from the snapshots whenever it is missing or out of step with
them (for example in stores written before it existed).
"""
import datetime
import json
import logging
import shutil
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from localnotes.config import config
from localnotes.exceptions import ErrorCode, NotFoundError, StorageError
from localnotes.models.schema import (
    VersionItem,
    VersionSnapshot,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from localnotes.storage.index_store import write_json_atomic
from localnotes.storage.paths import validate_segment

logger = logging.getLogger(__name__)

SNAPSHOT_SUFFIX = ".json"
TIMELINE_FILENAME = "timeline.idx"


def version_filename(saved_at: str) -> str:
    """Filename for a snapshot key ('2026-01-02T03:04:05.000006Z')."""
    return f"{saved_at.replace(':', '-')}{SNAPSHOT_SUFFIX}"


def make_preview(body: str, length: int) -> str:
    """First ``length`` characters of body, with an ellipsis when cut."""
    if len(body) <= length:
        return body
    return body[:length] + "…"


class VersionArchive:
    """Per-note snapshot log with FIFO eviction."""

    def __init__(
        self,
        versions_dir: Path,
        max_versions: Optional[int] = None,
        preview_length: Optional[int] = None,
    ):
        self.versions_dir = versions_dir
        self.max_versions = max_versions or config.max_versions
        self.preview_length = preview_length or config.preview_length

    def _note_dir(self, note_id: str) -> Path:
        validate_segment(note_id, "Note ID")
        return self.versions_dir / note_id

    def _snapshot_files(self, note_id: str) -> List[Path]:
        """Snapshot files oldest-first (names sort chronologically)."""
        note_dir = self._note_dir(note_id)
        if not note_dir.is_dir():
            return []
        return sorted(
            p
            for p in note_dir.iterdir()
            if p.is_file() and p.name.endswith(SNAPSHOT_SUFFIX)
        )

    @staticmethod
    def _load(path: Path) -> VersionSnapshot:
        with open(path, "r", encoding="utf-8") as f:
            return VersionSnapshot.model_validate(json.load(f))

    def latest(self, note_id: str) -> Optional[VersionSnapshot]:
        """The newest readable snapshot of a note, if any."""
        for path in reversed(self._snapshot_files(note_id)):
            try:
                return self._load(path)
            except (OSError, ValueError, PydanticValidationError) as e:
                logger.warning(f"Skipping unreadable snapshot {path.name}: {e}")
        return None

    def record_snapshot(
        self, note_id: str, title: str, body: str
    ) -> Optional[VersionSnapshot]:
        """Append a snapshot, evicting the oldest beyond the cap.

        A snapshot identical to the newest one is not recorded again.

        Args:
            note_id: The note the snapshot belongs to
            title: Title at snapshot time
            body: Full body at snapshot time

        Returns:
            The written snapshot, or None when suppressed as a duplicate.

        Raises:
            StorageError: If the snapshot cannot be written
        """
        latest = self.latest(note_id)
        if latest is not None and latest.title == title and latest.body == body:
            logger.debug(f"Snapshot of note {note_id} unchanged, not recorded")
            return None

        saved_at = utc_now()
        if latest is not None and saved_at <= latest.saved_at:
            # savedAt is the snapshot's identity; keep it strictly increasing
            saved_at = latest.saved_at + datetime.timedelta(microseconds=1)

        snapshot = VersionSnapshot(saved_at=saved_at, title=title, body=body)
        timeline = self._timeline(note_id)
        path = self._note_dir(note_id) / version_filename(snapshot.key)
        write_json_atomic(
            path, json.dumps(snapshot.to_dict(), indent=2, ensure_ascii=False)
        )
        self._evict(note_id)

        timeline.append(self._item(snapshot))
        kept = {p.name for p in self._snapshot_files(note_id)}
        self._write_timeline(
            note_id, [i for i in timeline if version_filename(i.saved_at) in kept]
        )
        return snapshot

    def _evict(self, note_id: str) -> None:
        files = self._snapshot_files(note_id)
        excess = len(files) - self.max_versions
        for path in files[: max(excess, 0)]:
            try:
                path.unlink()
                logger.debug(f"Evicted snapshot {path.name} of note {note_id}")
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StorageError(
                    f"Failed to evict snapshot of note {note_id}",
                    operation="evict_version",
                    path=str(path),
                    code=ErrorCode.STORAGE_DELETE_FAILED,
                    original_error=e,
                ) from e

    # =========================================================================
    # Timeline
    # =========================================================================

    def _item(self, snapshot: VersionSnapshot) -> VersionItem:
        return VersionItem(
            saved_at=snapshot.key,
            title=snapshot.title,
            body_preview=make_preview(snapshot.body, self.preview_length),
        )

    def _read_timeline(self, note_id: str) -> Optional[List[VersionItem]]:
        path = self._note_dir(note_id) / TIMELINE_FILENAME
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return [VersionItem.model_validate(entry) for entry in raw]
        except FileNotFoundError:
            return None
        except (OSError, ValueError, TypeError, PydanticValidationError) as e:
            logger.warning(f"Rebuilding unreadable timeline of note {note_id}: {e}")
            return None

    def _write_timeline(self, note_id: str, items: List[VersionItem]) -> None:
        write_json_atomic(
            self._note_dir(note_id) / TIMELINE_FILENAME,
            json.dumps([i.to_dict() for i in items], indent=2, ensure_ascii=False),
        )

    def _timeline(self, note_id: str) -> List[VersionItem]:
        """Timeline entries oldest-first, rebuilt if out of step with the files."""
        files = self._snapshot_files(note_id)
        items = self._read_timeline(note_id)
        if items is not None and [version_filename(i.saved_at) for i in items] == [
            p.name for p in files
        ]:
            return items

        items = []
        for path in files:
            try:
                items.append(self._item(self._load(path)))
            except (OSError, ValueError, PydanticValidationError) as e:
                logger.warning(f"Skipping unreadable snapshot {path.name}: {e}")
        if files:
            self._write_timeline(note_id, items)
            logger.debug(f"Rebuilt timeline of note {note_id} ({len(items)} entries)")
        return items

    def list(self, note_id: str) -> List[VersionItem]:
        """Snapshots of a note, newest first, with body previews."""
        return list(reversed(self._timeline(note_id)))

    def get(self, note_id: str, saved_at: str) -> VersionSnapshot:
        """Load one full snapshot by its savedAt key.

        Raises:
            NotFoundError: If no snapshot has this savedAt
        """
        try:
            key = format_timestamp(parse_timestamp(saved_at))
        except (ValueError, TypeError):
            raise NotFoundError(
                "version", str(saved_at), code=ErrorCode.VERSION_NOT_FOUND
            ) from None
        filename = validate_segment(version_filename(key), "Version")
        path = self._note_dir(note_id) / filename
        try:
            return self._load(path)
        except FileNotFoundError:
            raise NotFoundError(
                "version", saved_at, code=ErrorCode.VERSION_NOT_FOUND
            ) from None
        except (OSError, ValueError, PydanticValidationError) as e:
            raise StorageError(
                f"Failed to read version {saved_at} of note {note_id}",
                operation="read_version",
                path=str(path),
                original_error=e,
            ) from e

    def delete_all(self, note_id: str) -> None:
        """Drop a note's whole history (tolerates a missing directory)."""
        note_dir = self._note_dir(note_id)
        try:
            shutil.rmtree(note_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(
                f"Failed to delete versions of note {note_id}",
                operation="delete_versions",
                path=str(note_dir),
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e
