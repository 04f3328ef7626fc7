"""Tests for whole-store export/import and sync-folder push/pull."""
import json
import shutil
from pathlib import Path

import pytest

from localnotes import backup as backup_module
from localnotes.exceptions import (
    ErrorCode,
    IndexCorruptError,
    InvalidPathError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from localnotes.services.note_service import NoteService


@pytest.fixture
def populated(note_service, sample_file):
    """A store with a note carrying an attachment and some history."""
    note = note_service.save_note(None, "Keep me", "first")
    note_service.save_note(note.id, "Keep me", "second")
    note_service.attach_files(note.id, [str(sample_file)])
    note_service.create_notebook("Work")
    note_service.save_custom_template("Weekly", "Week {{date}}")
    return note_service.read_note(note.id).meta


class TestExport:
    """Tests for export_backup."""

    def test_export_writes_store_layout(self, note_service, populated, outside_dir):
        target = outside_dir / "backup"
        summary = note_service.export_backup(str(target))

        assert summary["notes"] == 1
        assert summary["notebooks"] == 1
        assert summary["templates"] == 1
        assert (target / "notes" / populated.filename).read_text(encoding="utf-8") == "second"
        assert (target / populated.images[0].path).is_file()
        assert len(list((target / "versions" / populated.id).glob("*.json"))) == 1
        data = json.loads((target / "meta" / "index.json").read_text(encoding="utf-8"))
        assert [n["id"] for n in data["notes"]] == [populated.id]

    def test_export_skips_temp_and_corrupt_files(self, note_service, populated, outside_dir):
        (note_service.root / "meta" / "index.json.corrupt-1").write_text("x", encoding="utf-8")
        (note_service.root / "notes" / "stray.txt.tmp").write_text("x", encoding="utf-8")
        target = outside_dir / "backup"
        note_service.export_backup(target)
        assert not (target / "meta" / "index.json.corrupt-1").exists()
        assert not (target / "notes" / "stray.txt.tmp").exists()

    def test_export_into_store_rejected(self, note_service, populated):
        with pytest.raises(InvalidPathError):
            note_service.export_backup(str(note_service.root / "inside"))

    def test_note_saved_during_export_stays_out_of_exported_index(
        self, note_service, populated, outside_dir, monkeypatch
    ):
        real_copytree = shutil.copytree

        def copytree_then_save(src, dst, *args, **kwargs):
            result = real_copytree(src, dst, *args, **kwargs)
            if Path(src).name == "notes":
                note_service.save_note(None, "Racer", "written mid-export")
            return result

        monkeypatch.setattr(backup_module.shutil, "copytree", copytree_then_save)
        target = outside_dir / "backup"
        summary = note_service.export_backup(target)
        monkeypatch.undo()

        data = json.loads((target / "meta" / "index.json").read_text(encoding="utf-8"))
        assert summary["notes"] == 1
        assert [n["title"] for n in data["notes"]] == ["Keep me"]
        for record in data["notes"]:
            assert (target / "notes" / f"{record['id']}.txt").is_file()
        assert "Racer" in [n.title for n in note_service.list_notes()]

        other = NoteService(outside_dir / "other-store")
        other.import_backup(target)
        assert [n.title for n in other.list_notes()] == ["Keep me"]
        assert other.read_note(populated.id).body == "second"

    def test_file_removed_during_copy_is_skipped(self, outside_dir):
        missing = outside_dir / "gone.txt"
        dst = outside_dir / "copy.txt"
        assert backup_module._copy_if_present(str(missing), str(dst)) == str(dst)
        assert not dst.exists()


class TestImport:
    """Tests for import_backup."""

    def test_roundtrip_into_new_store(self, note_service, populated, outside_dir):
        target = outside_dir / "backup"
        note_service.export_backup(target)

        other = NoteService(outside_dir / "other-store")
        summary = other.import_backup(str(target))

        assert summary["notes"] == 1
        restored = other.read_note(populated.id)
        assert restored.body == "second"
        assert (other.root / restored.meta.images[0].path).is_file()
        assert [v.body_preview for v in other.list_versions(populated.id)] == ["first"]
        assert [nb.name for nb in other.list_notebooks()] == ["Work"]
        assert any(t.is_custom for t in other.list_templates())

    def test_import_replaces_live_content(self, note_service, populated, outside_dir):
        target = outside_dir / "backup"
        note_service.export_backup(target)
        later = note_service.save_note(None, "Later", "after export")

        note_service.import_backup(target)

        assert [n.id for n in note_service.list_notes()] == [populated.id]
        assert not (note_service.root / "notes" / later.filename).exists()
        assert not list(note_service.root.glob(".import-*"))

    def test_import_keeps_live_sync_folder(self, note_service, populated, outside_dir):
        target = outside_dir / "backup"
        note_service.export_backup(target)
        local_sync = note_service.set_sync_folder(str(outside_dir / "mine"))

        note_service.import_backup(target)

        assert note_service.get_sync_folder() == local_sync

    def test_missing_source(self, note_service, outside_dir):
        with pytest.raises(NotFoundError) as exc_info:
            note_service.import_backup(outside_dir / "nope")
        assert exc_info.value.code == ErrorCode.DIRECTORY_NOT_FOUND

    def test_source_without_index(self, note_service, outside_dir):
        (outside_dir / "empty").mkdir()
        with pytest.raises(IndexCorruptError):
            note_service.import_backup(outside_dir / "empty")

    def test_source_inside_store_rejected(self, note_service):
        with pytest.raises(InvalidPathError):
            note_service.import_backup(note_service.root / "notes")

    def test_failed_index_write_rolls_back(
        self, note_service, populated, outside_dir, monkeypatch
    ):
        target = outside_dir / "backup"
        note_service.export_backup(target)
        note_service.delete_note(populated.id)
        survivor = note_service.save_note(None, "Survivor", "still here")

        def fail_persist(index):
            raise StorageError("disk full", operation="write_index")

        monkeypatch.setattr(note_service.index, "_persist", fail_persist)
        with pytest.raises(StorageError):
            note_service.import_backup(target)

        assert note_service.read_note(survivor.id).body == "still here"
        assert not (note_service.root / "notes" / populated.filename).exists()
        assert not list(note_service.root.glob(".import-*"))


class TestPushPull:
    """Tests for the sync-folder shortcuts."""

    def test_requires_sync_folder(self, note_service):
        for action in (note_service.push, note_service.pull):
            with pytest.raises(ValidationError) as exc_info:
                action()
            assert exc_info.value.code == ErrorCode.SYNC_FOLDER_MISSING

    def test_push_then_pull(self, note_service, populated, outside_dir):
        note_service.set_sync_folder(str(outside_dir / "sync"))
        note_service.push()
        note_service.save_note(populated.id, "Keep me", "edited locally")

        note_service.pull()

        assert note_service.read_note(populated.id).body == "second"

    def test_clear_sync_folder(self, note_service, outside_dir):
        note_service.set_sync_folder(str(outside_dir))
        assert note_service.set_sync_folder("  ") is None
        assert note_service.get_sync_folder() is None
