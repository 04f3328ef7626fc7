"""Tests for note attachments (import, paste, rename, delete)."""
import base64
from pathlib import Path

import pytest

from localnotes.exceptions import (
    ErrorCode,
    InvalidPathError,
    NotFoundError,
    StorageError,
    ValidationError,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\npasted"


@pytest.fixture
def note(note_service):
    return note_service.save_note(None, "With images", "see attachments")


class TestAttachFiles:
    """Tests for importing files as attachments."""

    def test_attach_copies_file(self, note_service, note, sample_file):
        updated = note_service.attach_files(note.id, [str(sample_file)])

        assert len(updated.images) == 1
        image = updated.images[0]
        assert image.name == "diagram.png"
        assert image.path.startswith(f"images/{note.id}/")
        assert image.path.endswith("-diagram.png")
        assert image.size == sample_file.stat().st_size
        stored = Path(note_service.resolve_attachment_path(image.path))
        assert stored.read_bytes() == sample_file.read_bytes()
        assert sample_file.exists()

    def test_same_file_twice_gets_distinct_names(self, note_service, note, sample_file):
        note_service.attach_files(note.id, [str(sample_file), str(sample_file)])
        images = note_service.read_note(note.id).meta.images
        assert len(images) == 2
        assert images[0].path != images[1].path

    def test_missing_source_is_skipped(self, note_service, note, outside_dir):
        updated = note_service.attach_files(note.id, [str(outside_dir / "nope.png")])
        assert updated.images == []

    def test_nul_in_source_path_rejected(self, note_service, note):
        with pytest.raises(InvalidPathError):
            note_service.attach_files(note.id, ["/tmp/a\x00b.png"])

    def test_unknown_note(self, note_service, sample_file):
        with pytest.raises(NotFoundError):
            note_service.attach_files("missing", [str(sample_file)])

    def test_index_failure_removes_copied_files(
        self, note_service, note, sample_file, monkeypatch
    ):
        def fail_persist(index):
            raise StorageError("disk full", operation="write_index")

        monkeypatch.setattr(note_service.index, "_persist", fail_persist)
        with pytest.raises(StorageError):
            note_service.attach_files(note.id, [str(sample_file)])

        note_dir = note_service.root / "images" / note.id
        assert not note_dir.exists() or not any(note_dir.iterdir())


class TestAttachFromClipboard:
    """Tests for pasted data."""

    def test_paste_defaults(self, note_service, note):
        data = base64.b64encode(PNG_BYTES).decode("ascii")
        updated = note_service.attach_from_clipboard(note.id, data)

        image = updated.images[0]
        assert image.name == "paste.png"
        assert image.path.endswith("-paste.png")
        assert image.size == len(PNG_BYTES)
        assert Path(note_service.resolve_attachment_path(image.path)).read_bytes() == PNG_BYTES

    def test_paste_raw_bytes_with_name(self, note_service, note):
        updated = note_service.attach_from_clipboard(note.id, PNG_BYTES, "Screen Shot.JPG")
        image = updated.images[0]
        assert image.name == "Screen Shot.JPG"
        assert image.path.endswith("-Screen Shot.jpg")

    @pytest.mark.parametrize("name", ["../evil.png", "/etc/passwd", "a\x00b.png"])
    def test_paste_rejects_path_names(self, note_service, note, name):
        with pytest.raises(InvalidPathError):
            note_service.attach_from_clipboard(note.id, PNG_BYTES, name)
        assert note_service.read_note(note.id).meta.images == []

    def test_paste_rejects_empty_data(self, note_service, note):
        with pytest.raises(ValidationError):
            note_service.attach_from_clipboard(note.id, b"")

    def test_paste_rejects_invalid_base64(self, note_service, note):
        with pytest.raises(ValidationError):
            note_service.attach_from_clipboard(note.id, "!!not base64!!")


class TestRenameAndRemove:
    """Tests for renaming and deleting attachments."""

    @pytest.fixture
    def attached(self, note_service, note, sample_file):
        return note_service.attach_files(note.id, [str(sample_file)]).images[0]

    def test_rename_keeps_prefix_and_extension(self, note_service, note, attached):
        updated = note_service.rename_attachment(note.id, attached.path, "architecture")

        image = updated.images[0]
        assert image.name == "architecture.png"
        old_prefix = attached.path.rsplit("/", 1)[1].split("-", 1)[0]
        assert image.path == f"images/{note.id}/{old_prefix}-architecture.png"
        assert Path(note_service.resolve_attachment_path(image.path)).is_file()
        assert not (note_service.root / attached.path).exists()

    @pytest.mark.parametrize("new_name", ["../../etc/passwd", "/etc/passwd", "a\x00b"])
    def test_rename_rejects_path_names(self, note_service, note, attached, new_name):
        with pytest.raises(InvalidPathError):
            note_service.rename_attachment(note.id, attached.path, new_name)
        assert note_service.read_note(note.id).meta.images[0].path == attached.path
        assert (note_service.root / attached.path).is_file()

    def test_rename_rejects_empty_name(self, note_service, note, attached):
        with pytest.raises(InvalidPathError):
            note_service.rename_attachment(note.id, attached.path, "   ")

    def test_rename_unknown_attachment(self, note_service, note, attached):
        with pytest.raises(NotFoundError) as exc_info:
            note_service.rename_attachment(note.id, f"images/{note.id}/nope.png", "x")
        assert exc_info.value.code == ErrorCode.ATTACHMENT_NOT_FOUND

    def test_rename_is_undone_when_index_write_fails(
        self, note_service, note, attached, monkeypatch
    ):
        def fail_persist(index):
            raise StorageError("disk full", operation="write_index")

        monkeypatch.setattr(note_service.index, "_persist", fail_persist)
        with pytest.raises(StorageError):
            note_service.rename_attachment(note.id, attached.path, "renamed")

        assert (note_service.root / attached.path).is_file()
        assert note_service.read_note(note.id).meta.images[0].path == attached.path

    def test_remove_deletes_file_and_reference(self, note_service, note, attached):
        updated = note_service.remove_attachment(note.id, attached.path)
        assert updated.images == []
        assert not (note_service.root / attached.path).exists()

    def test_remove_unknown_reference(self, note_service, note):
        with pytest.raises(NotFoundError):
            note_service.remove_attachment(note.id, f"images/{note.id}/nope.png")

    def test_other_notes_attachment_is_not_found(self, note_service, note, attached):
        other = note_service.save_note(None, "Other", "body")
        with pytest.raises(NotFoundError):
            note_service.remove_attachment(other.id, attached.path)
        assert (note_service.root / attached.path).is_file()


class TestResolvePath:
    """Tests for resolve_attachment_path."""

    @pytest.mark.parametrize(
        "path",
        ["/etc/passwd", "images/../../etc/passwd", "notes/x.txt", "images", "C:/Windows"],
    )
    def test_rejects_paths_outside_images(self, note_service, path):
        with pytest.raises(InvalidPathError):
            note_service.resolve_attachment_path(path)

    def test_resolves_inside_store(self, note_service, note, sample_file):
        image = note_service.attach_files(note.id, [str(sample_file)]).images[0]
        resolved = Path(note_service.resolve_attachment_path(image.path))
        assert resolved.is_relative_to(note_service.root / "images")

    def test_delete_note_removes_attachment_dir(self, note_service, note, sample_file):
        note_service.attach_files(note.id, [str(sample_file)])
        note_service.delete_note(note.id)
        assert not (note_service.root / "images" / note.id).exists()
