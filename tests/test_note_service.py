"""Tests for the NoteService command surface."""
import datetime
import time

import frontmatter
import pytest

from localnotes.exceptions import (
    ErrorCode,
    InvalidPathError,
    NoteNotFoundError,
    NotFoundError,
    ValidationError,
)
from localnotes.services.note_service import NoteService, local_today


class TestSaveNote:
    """Tests for creating and updating notes."""

    def test_create_note(self, note_service):
        note = note_service.save_note(None, "Project Alpha", "Kickoff #planning")

        assert note.filename == f"{note.id}.txt"
        assert note.tags == ["planning", "project-alpha"]
        assert note.created_at <= note.updated_at
        body_file = note_service.root / "notes" / note.filename
        assert body_file.read_text(encoding="utf-8") == "Kickoff #planning"
        assert note_service.read_note(note.id).body == "Kickoff #planning"

    def test_caller_chosen_id(self, note_service):
        note = note_service.save_note("my-note", "Mine", "body")
        assert note.id == "my-note"
        assert note_service.read_note("my-note").meta.title == "Mine"

    @pytest.mark.parametrize("note_id", ["../escape", "a/b", "a\x00b", ".."])
    def test_unsafe_id_rejected(self, note_service, note_id):
        with pytest.raises(InvalidPathError):
            note_service.save_note(note_id, "t", "b")
        assert note_service.list_notes() == []

    def test_empty_create_rejected(self, note_service):
        with pytest.raises(ValidationError) as exc_info:
            note_service.save_note(None, "  ", "\n")
        assert exc_info.value.code == ErrorCode.NOTE_EMPTY
        assert note_service.list_notes() == []

    def test_existing_note_may_be_emptied(self, note_service):
        note = note_service.save_note(None, "Temp", "text")
        updated = note_service.save_note(note.id, "", "")
        assert updated.title == ""
        assert note_service.read_note(note.id).body == ""

    def test_updated_at_never_decreases(self, note_service):
        note = note_service.save_note(None, "T", "1")
        second = note_service.save_note(note.id, "T", "2")
        assert second.updated_at >= note.updated_at
        assert second.created_at == note.created_at

    def test_update_title_keeps_body(self, note_service):
        note = note_service.save_note(None, "Project Alpha", "body")
        updated = note_service.update_title(note.id, "Project Beta")
        assert updated.title == "Project Beta"
        assert "project-beta" in updated.tags
        assert "project-alpha" not in updated.tags
        assert note_service.read_note(note.id).body == "body"

    def test_read_missing_note(self, note_service):
        with pytest.raises(NoteNotFoundError):
            note_service.read_note("missing")

    def test_persisted_across_handles(self, note_service, store_root):
        note = note_service.save_note(None, "Kept", "on disk")
        reopened = NoteService(store_root)
        assert reopened.read_note(note.id).body == "on disk"


class TestTagsAndStars:
    """Tests for explicit tag and star commands."""

    def test_add_tag_to_several_notes(self, note_service):
        a = note_service.save_note(None, "A1", "x")
        b = note_service.save_note(None, "B1", "y")
        updated = note_service.add_tag([a.id, b.id], "#Urgent")
        assert all("urgent" in n.tags for n in updated)
        assert note_service.list_tags() == ["a1", "b1", "urgent"]
        assert {n.id for n in note_service.notes_by_tag("urgent")} == {a.id, b.id}

    def test_add_tag_unknown_note_changes_nothing(self, note_service):
        a = note_service.save_note(None, "A1", "x")
        with pytest.raises(NotFoundError):
            note_service.add_tag([a.id, "missing"], "urgent")
        assert "urgent" not in note_service.read_note(a.id).meta.tags

    def test_add_invalid_tag(self, note_service):
        a = note_service.save_note(None, "A1", "x")
        with pytest.raises(ValidationError):
            note_service.add_tag(a.id, "not valid")

    def test_removed_tag_returns_while_body_has_it(self, note_service):
        note = note_service.save_note(None, "Note", "text #idea")
        assert "idea" not in note_service.remove_tag(note.id, "idea").tags
        resaved = note_service.save_note(note.id, "Note", "text #idea more")
        assert "idea" in resaved.tags

    def test_tag_survives_removal_from_body(self, note_service):
        note = note_service.save_note(None, "Note", "text #idea")
        resaved = note_service.save_note(note.id, "Note", "text")
        assert "idea" in resaved.tags

    def test_star_and_batch_star(self, note_service):
        a = note_service.save_note(None, "A1", "x")
        b = note_service.save_note(None, "B1", "y")
        assert note_service.toggle_star(a.id, True).important is True
        results = note_service.batch_star([a.id, b.id, a.id], False)
        assert len(results) == 2
        assert not any(n.important for n in note_service.list_notes())


class TestLinks:
    """Tests for [[Title]] links and backlinks."""

    def test_link_and_backlink(self, note_service):
        target = note_service.save_note(None, "Beta", "target")
        source = note_service.save_note(None, "Alpha", "see [[beta]]")
        assert source.links_to == [target.id]
        assert [n.id for n in note_service.get_backlinks(target.id)] == [source.id]

    def test_link_written_before_target_exists(self, note_service):
        source = note_service.save_note(None, "Alpha", "see [[Gamma]]")
        assert source.links_to == []
        target = note_service.save_note(None, "Gamma", "late")
        assert note_service.read_note(source.id).meta.links_to == [target.id]

    def test_rename_target_breaks_link(self, note_service):
        target = note_service.save_note(None, "Beta", "target")
        source = note_service.save_note(None, "Alpha", "see [[Beta]]")
        note_service.update_title(target.id, "Renamed")
        assert note_service.read_note(source.id).meta.links_to == []

    def test_delete_target_retracts_links(self, note_service):
        target = note_service.save_note(None, "Beta", "target")
        source = note_service.save_note(None, "Alpha", "see [[Beta]]")
        note_service.delete_note(target.id)
        assert note_service.read_note(source.id).meta.links_to == []

    def test_self_link_ignored(self, note_service):
        note = note_service.save_note(None, "Loop", "[[Loop]]")
        assert note.links_to == []

    @pytest.fixture
    def shared_title(self, note_service):
        """Two notes titled "Target" and a note linking to that title."""
        older = note_service.save_note(None, "Target", "first")
        time.sleep(0.01)
        newer = note_service.save_note(None, "Target", "second")
        source = note_service.save_note(None, "Source", "see [[Target]]")
        assert source.links_to == [newer.id]
        time.sleep(0.01)
        return older, newer, source

    def test_resaving_shared_title_takes_over_links(self, note_service, shared_title):
        older, newer, source = shared_title
        note_service.save_note(older.id, "Target", "first, edited")

        assert [n.id for n in note_service.get_backlinks(older.id)] == [source.id]
        assert note_service.get_backlinks(newer.id) == []
        assert note_service.read_note(source.id).meta.links_to == [older.id]

    def test_metadata_change_on_shared_title_takes_over_links(
        self, note_service, shared_title
    ):
        older, newer, source = shared_title
        before = note_service.read_note(source.id).meta.updated_at
        note_service.toggle_star(older.id, True)

        assert [n.id for n in note_service.get_backlinks(older.id)] == [source.id]
        assert note_service.get_backlinks(newer.id) == []
        assert note_service.read_note(source.id).meta.updated_at == before

    def test_backlinks_of_missing_note(self, note_service):
        with pytest.raises(NotFoundError):
            note_service.get_backlinks("missing")


class TestDeleteDuplicateMerge:
    """Tests for delete, duplicate and merge."""

    def test_delete_note(self, note_service):
        note = note_service.save_note(None, "Gone", "soon")
        note_service.delete_note(note.id)
        assert note_service.list_notes() == []
        assert not (note_service.root / "notes" / note.filename).exists()
        with pytest.raises(NoteNotFoundError):
            note_service.delete_note(note.id)

    def test_batch_delete(self, note_service):
        ids = [note_service.save_note(None, f"N{i}", "x").id for i in range(3)]
        assert note_service.batch_delete(ids[:2]) == 2
        assert [n.id for n in note_service.list_notes()] == [ids[2]]

    def test_duplicate_note(self, note_service, sample_file):
        source = note_service.save_note(None, "Alpha Note", "body #topic")
        note_service.add_tag(source.id, "keep")
        note_service.attach_files(source.id, [str(sample_file)])

        copy = note_service.duplicate_note(source.id)

        assert copy.id != source.id
        assert copy.title == "Alpha Note (copy)"
        assert note_service.read_note(copy.id).body == "body #topic"
        assert "keep" in copy.tags and "topic" in copy.tags
        assert "alpha-note" not in copy.tags
        assert len(copy.images) == 1
        assert copy.images[0].path.startswith(f"images/{copy.id}/")
        assert (note_service.root / copy.images[0].path).is_file()
        original = note_service.read_note(source.id).meta
        assert (note_service.root / original.images[0].path).is_file()

    def test_merge_notes(self, note_service, sample_file):
        first = note_service.save_note(None, "First", "one #a")
        second = note_service.save_note(None, "Second", "two #b")
        note_service.attach_files(first.id, [str(sample_file)])
        note_service.save_note(second.id, "Second", "two #b edited")

        merged = note_service.merge_notes([second.id, first.id])

        assert merged.id == second.id
        assert merged.title == "First"
        assert note_service.read_note(merged.id).body == (
            "## First\n\none #a\n\n## Second\n\ntwo #b edited"
        )
        assert {"a", "b"} <= set(merged.tags)
        assert len(merged.images) == 1
        assert merged.images[0].path.startswith(f"images/{second.id}/")
        assert (note_service.root / merged.images[0].path).is_file()
        assert [n.id for n in note_service.list_notes()] == [second.id]
        assert not (note_service.root / "images" / first.id).exists()

    def test_merge_requires_ids(self, note_service):
        with pytest.raises(ValidationError):
            note_service.merge_notes([])


class TestDailyNotes:
    """Tests for the daily note."""

    def test_create_once_per_day(self, note_service):
        day = datetime.date(2026, 1, 2)
        note = note_service.get_or_create_daily_note(today=day)
        again = note_service.get_or_create_daily_note(today=day)

        assert note.id == again.id
        assert note.title == "2026-01-02"
        assert note.is_daily
        assert "daily" in note.tags
        assert note_service.read_note(note.id).body == "# 2026-01-02\n"

    def test_other_day_gets_new_note(self, note_service):
        a = note_service.get_or_create_daily_note(today=datetime.date(2026, 1, 2))
        b = note_service.get_or_create_daily_note(today=datetime.date(2026, 1, 3))
        assert a.id != b.id

    def test_defaults_to_local_today(self, note_service):
        note = note_service.get_or_create_daily_note()
        assert note.title == local_today().isoformat()


class TestTemplates:
    """Tests for built-in and custom templates."""

    def test_builtins_listed(self, note_service):
        ids = [t.id for t in note_service.list_templates()]
        assert ids == ["daily-journal", "meeting-notes", "project-planning"]

    def test_custom_template_roundtrip(self, note_service):
        template = note_service.save_custom_template("Weekly", "Week of {{date}}: {{title}}")
        assert template.id.startswith("custom-")
        assert template.is_custom

        note = note_service.create_note_from_template(template.id, title="Plan")
        body = note_service.read_note(note.id).body
        assert note.title == "Plan"
        assert body == f"Week of {local_today().isoformat()}: Plan"

        note_service.delete_custom_template(template.id)
        assert template.id not in [t.id for t in note_service.list_templates()]

    def test_builtin_template_note_title(self, note_service):
        note = note_service.create_note_from_template("meeting-notes")
        assert note.title == f"Meeting {local_today().isoformat()}"
        assert "- [ ]" in note_service.read_note(note.id).body

    def test_builtin_templates_are_read_only(self, note_service):
        with pytest.raises(ValidationError) as exc_info:
            note_service.delete_custom_template("daily-journal")
        assert exc_info.value.code == ErrorCode.TEMPLATE_READ_ONLY

    def test_unknown_template(self, note_service):
        with pytest.raises(NotFoundError):
            note_service.create_note_from_template("custom-missing")
        with pytest.raises(NotFoundError):
            note_service.delete_custom_template("custom-missing")

    def test_template_name_required(self, note_service):
        with pytest.raises(ValidationError) as exc_info:
            note_service.save_custom_template("  ", "body")
        assert exc_info.value.code == ErrorCode.NAME_REQUIRED


class TestNotebooks:
    """Tests for notebooks."""

    def test_create_rename_archive(self, note_service):
        work = note_service.create_notebook(" Work ")
        home = note_service.create_notebook("Home")
        assert work.name == "Work"

        assert note_service.rename_notebook(work.id, "Job").name == "Job"
        note_service.archive_notebook(work.id)

        listed = note_service.list_notebooks()
        assert [nb.name for nb in listed] == ["Home", "Job"]
        assert listed[1].archived is True
        assert note_service.archive_notebook(work.id, archived=False).archived is False
        assert home.archived is False

    def test_move_note_into_and_out_of_notebook(self, note_service):
        notebook = note_service.create_notebook("Work")
        note = note_service.save_note(None, "Task", "do it")
        assert note_service.move_to_notebook(note.id, notebook.id).notebook_id == notebook.id
        assert note_service.move_to_notebook(note.id, None).notebook_id is None

    def test_unknown_notebook(self, note_service):
        note = note_service.save_note(None, "Task", "do it")
        with pytest.raises(NotFoundError) as exc_info:
            note_service.move_to_notebook(note.id, "missing")
        assert exc_info.value.code == ErrorCode.NOTEBOOK_NOT_FOUND
        with pytest.raises(NotFoundError):
            note_service.rename_notebook("missing", "x")

    def test_notebook_name_required(self, note_service):
        with pytest.raises(ValidationError) as exc_info:
            note_service.create_notebook("")
        assert exc_info.value.code == ErrorCode.NAME_REQUIRED


class TestExport:
    """Tests for single-note export."""

    def test_markdown_export(self, note_service):
        notebook = note_service.create_notebook("Work")
        note = note_service.save_note(None, "Report", "Findings #q3")
        note_service.move_to_notebook(note.id, notebook.id)
        note_service.toggle_star(note.id, True)

        post = frontmatter.loads(note_service.export_note_as_markdown(note.id))

        assert post.metadata["id"] == note.id
        assert post.metadata["title"] == "Report"
        assert post.metadata["tags"] == ["q3", "report"]
        assert post.metadata["starred"] is True
        assert post.metadata["notebook"] == "Work"
        assert post.content.strip() == "# Report\n\nFindings #q3"

    def test_plain_export(self, note_service):
        note = note_service.save_note(None, "Report", "Findings")
        assert note_service.export_note(note.id) == "Report\n\nFindings\n"

    def test_write_text_file(self, note_service, outside_dir):
        target = outside_dir / "exports" / "report.md"
        written = note_service.write_text_file(str(target), "# Report\n")
        assert written == str(target.resolve())
        assert target.read_text(encoding="utf-8") == "# Report\n"

    def test_write_text_file_refuses_store_paths(self, note_service):
        with pytest.raises(InvalidPathError):
            note_service.write_text_file(str(note_service.root / "notes" / "x.txt"), "x")
        with pytest.raises(InvalidPathError):
            note_service.write_text_file("/tmp/a\x00b.md", "x")


class TestStoreRecovery:
    """Tests for opening a store with a damaged index."""

    def test_corrupt_index_opens_empty(self, note_service, store_root):
        note_service.save_note(None, "Lost", "index will break")
        (store_root / "meta" / "index.json").write_text("[[[", encoding="utf-8")

        reopened = NoteService(store_root)
        status = reopened.init_store()

        assert reopened.list_notes() == []
        assert reopened.index.last_load_error is None
        assert status["notes"] == 0
        assert list((store_root / "meta").glob("index.json.corrupt-*"))

    def test_init_store_reports_warning(self, note_service, store_root):
        (store_root / "meta" / "index.json").write_text("[[[", encoding="utf-8")
        status = note_service.init_store()
        assert status["warning"] is not None
        assert note_service.list_notes() == []
