"""Tests for smart tags and [[Title]] link resolution."""
import datetime
from datetime import timezone

import pytest

from localnotes.exceptions import ErrorCode, ValidationError
from localnotes.models.schema import NoteMeta
from localnotes.services.link_resolver import (
    backlinks,
    derive_tags,
    extract_body_tags,
    extract_link_titles,
    normalize_tag,
    resolve_links,
    retract_links,
    slugify,
    title_tag,
)

T0 = datetime.datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_note(note_id, title, minutes=0, links=()):
    return NoteMeta(
        id=note_id,
        title=title,
        created_at=T0,
        updated_at=T0 + datetime.timedelta(minutes=minutes),
        links_to=list(links),
    )


class TestSlugs:
    """Tests for title slugs."""

    @pytest.mark.parametrize(
        "title,expected",
        [
            ("Project Alpha", "project-alpha"),
            ("  Hello,   World!  ", "hello-world"),
            ("Café Déjà vu", "cafe-deja-vu"),
            ("snake_case-title", "snake_case-title"),
            ("2026-01-02", "2026-01-02"),
        ],
    )
    def test_slugify(self, title, expected):
        assert slugify(title) == expected

    @pytest.mark.parametrize("title", ["Project Alpha", "Ünïcödé  Title!", "a - b", "x_y"])
    def test_slugify_is_idempotent(self, title):
        assert slugify(slugify(title)) == slugify(title)

    @pytest.mark.parametrize("title", ["", "A", "!!", "--", "日本語"])
    def test_title_without_usable_slug(self, title):
        assert title_tag(title) is None

    def test_title_tag(self):
        assert title_tag("Hi") == "hi"


class TestTags:
    """Tests for tag extraction and normalization."""

    def test_extract_body_tags(self):
        body = "#Work notes, email#not-a-tag and (#todo-list) #a_b"
        assert extract_body_tags(body) == {"work", "todo-list", "a_b"}

    def test_normalize_tag(self):
        assert normalize_tag("#Work") == "work"
        assert normalize_tag("  road-map ") == "road-map"

    @pytest.mark.parametrize("tag", ["", "#", "two words", "tag!", "ümlaut"])
    def test_normalize_rejects_invalid(self, tag):
        with pytest.raises(ValidationError) as exc_info:
            normalize_tag(tag)
        assert exc_info.value.code == ErrorCode.TAG_INVALID

    def test_derive_adds_body_title_and_daily_tags(self):
        tags = derive_tags([], None, "Project Alpha", "#meeting notes", is_daily=True)
        assert tags == ["daily", "meeting", "project-alpha"]

    def test_removed_body_tag_is_kept(self):
        first = derive_tags([], None, "Note", "#keep me")
        second = derive_tags(first, "Note", "Note", "no tags any more")
        assert "keep" in second

    def test_title_change_drops_old_title_slug(self):
        tags = derive_tags(
            ["project-alpha", "manual"], "Project Alpha", "Project Beta", "body"
        )
        assert tags == ["manual", "project-beta"]

    def test_old_title_slug_kept_when_body_mentions_it(self):
        tags = derive_tags(
            ["project-alpha"], "Project Alpha", "Project Beta", "see #project-alpha"
        )
        assert "project-alpha" in tags


class TestLinks:
    """Tests for link extraction and resolution."""

    def test_extract_link_titles(self):
        body = "See [[Alpha]], [[alpha]] and [[ Beta ]].\n[[broken\nlink]] [[]]"
        assert extract_link_titles(body) == ["Alpha", "Beta"]

    def test_resolve_case_insensitive(self):
        notes = [make_note("a", "Alpha"), make_note("b", "Beta")]
        assert resolve_links("[[ALPHA]] [[beta]] [[Gamma]]", notes) == ["a", "b"]

    def test_self_link_ignored(self):
        notes = [make_note("a", "Alpha")]
        assert resolve_links("[[Alpha]]", notes, exclude_id="a") == []

    def test_duplicate_titles_most_recent_wins(self):
        notes = [make_note("a", "Same", minutes=1), make_note("b", "Same", minutes=5)]
        assert resolve_links("[[Same]]", notes) == ["b"]

    def test_duplicate_titles_same_time_lowest_id_wins(self):
        notes = [make_note("b", "Same"), make_note("a", "Same"), make_note("ab", "Same")]
        assert resolve_links("[[Same]]", notes) == ["a"]

    def test_backlinks_most_recent_first(self):
        notes = [
            make_note("target", "Target"),
            make_note("old", "Old", minutes=1, links=["target"]),
            make_note("new", "New", minutes=9, links=["target"]),
            make_note("other", "Other", minutes=5),
        ]
        assert [n.id for n in backlinks("target", notes)] == ["new", "old"]

    def test_retract_links(self):
        notes = [
            make_note("x", "X", links=["gone", "kept"]),
            make_note("y", "Y", links=["kept"]),
        ]
        assert retract_links(notes, ["gone"]) == 1
        assert notes[0].links_to == ["kept"]
