"""Derived fields of a note: smart tags, resolved links, backlinks.

Tags come from three sources on every save: ``#token`` occurrences in the
body, a slug of the title, and the fixed ``daily`` tag of daily notes. They
are merged with the tags already on the note, so deleting a ``#token`` from
the body never removes a tag; only an explicit ``remove_tag`` does that.

Links come from ``[[Title]]`` occurrences, matched case-insensitively
against existing titles. When several notes share a title the most
recently updated one wins, then the lowest id.
"""
import logging
import re
import unicodedata
from typing import Dict, Iterable, List, Optional, Set

from localnotes.exceptions import ErrorCode, ValidationError
from localnotes.models.schema import DAILY_TAG, TAG_PATTERN, NoteMeta

logger = logging.getLogger(__name__)

# '#token' at the start of text or after a non-word character
BODY_TAG_PATTERN = re.compile(r"(?<!\w)#([A-Za-z0-9_-]+)")

# '[[Title]]'; the title may not span lines
WIKI_LINK_PATTERN = re.compile(r"\[\[([^\n]+?)\]\]")

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9\s_-]")
_WHITESPACE = re.compile(r"\s+")


def extract_body_tags(body: str) -> Set[str]:
    """Lowercased ``#token`` tags found in a body."""
    return {match.group(1).lower() for match in BODY_TAG_PATTERN.finditer(body)}


def slugify(text: str) -> str:
    """Slug a title: "Project Alpha" -> "project-alpha".

    Accents are folded to ASCII, characters outside ``[a-z0-9_-]`` are
    dropped and whitespace runs become a single hyphen. Applying it to an
    existing slug returns the slug unchanged.
    """
    folded = (
        unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    )
    cleaned = _NON_SLUG_CHARS.sub("", folded.lower()).strip()
    return _WHITESPACE.sub("-", cleaned)


def title_tag(title: str) -> Optional[str]:
    """The smart tag derived from a title, if it yields a usable slug."""
    slug = slugify(title)
    if len(slug) >= 2 and any(c.isalnum() for c in slug):
        return slug
    return None


def normalize_tag(tag: str) -> str:
    """Normalize a user-entered tag (leading '#' dropped, lowercased).

    Raises:
        ValidationError: If the result does not match the tag grammar
    """
    value = (tag or "").strip()
    if value.startswith("#"):
        value = value[1:]
    value = value.lower()
    if not TAG_PATTERN.match(value):
        raise ValidationError(
            f"Invalid tag: {tag!r} (allowed: letters, digits, '_' and '-')",
            field="tag",
            value=tag,
            code=ErrorCode.TAG_INVALID,
        )
    return value


def derive_tags(
    existing: Iterable[str],
    old_title: Optional[str],
    title: str,
    body: str,
    is_daily: bool = False,
) -> List[str]:
    """Compute a note's tag set after a save.

    Args:
        existing: Tags currently on the note (explicit chips included)
        old_title: Title before the save, None for a new note
        title: Title being saved
        body: Body being saved
        is_daily: Whether the note is a daily note

    Returns:
        Sorted, unique tags
    """
    body_tags = extract_body_tags(body)
    tags = set(existing) | body_tags
    if old_title is not None and old_title != title:
        stale = title_tag(old_title)
        if stale and stale not in body_tags:
            tags.discard(stale)
    new_slug = title_tag(title)
    if new_slug:
        tags.add(new_slug)
    if is_daily:
        tags.add(DAILY_TAG)
    return sorted(tags)


def extract_link_titles(body: str) -> List[str]:
    """Distinct ``[[Title]]`` targets in order of first appearance."""
    seen: Set[str] = set()
    titles = []
    for match in WIKI_LINK_PATTERN.finditer(body):
        title = match.group(1).strip()
        key = title.lower()
        if title and key not in seen:
            seen.add(key)
            titles.append(title)
    return titles


def _title_lookup(notes: Iterable[NoteMeta], exclude_id: Optional[str]) -> Dict[str, str]:
    """Map lowercased title -> winning note id under the tie-break rule."""
    winners: Dict[str, NoteMeta] = {}
    for note in notes:
        if note.id == exclude_id or not note.title.strip():
            continue
        key = note.title.strip().lower()
        current = winners.get(key)
        if (
            current is None
            or note.updated_at > current.updated_at
            or (note.updated_at == current.updated_at and note.id < current.id)
        ):
            winners[key] = note
    return {key: note.id for key, note in winners.items()}


def resolve_links(
    body: str, notes: Iterable[NoteMeta], exclude_id: Optional[str] = None
) -> List[str]:
    """Resolve a body's ``[[Title]]`` links to note ids.

    Unmatched titles are ignored. A note never links to itself.

    Returns:
        Sorted, unique note ids
    """
    titles = extract_link_titles(body)
    if not titles:
        return []
    lookup = _title_lookup(notes, exclude_id)
    resolved = {lookup[t.lower()] for t in titles if t.lower() in lookup}
    return sorted(resolved)


def backlinks(note_id: str, notes: Iterable[NoteMeta]) -> List[NoteMeta]:
    """Notes whose ``linksTo`` contains note_id, most recent first."""
    found = [n for n in notes if note_id in n.links_to and n.id != note_id]
    found.sort(key=lambda n: n.id)
    found.sort(key=lambda n: n.updated_at, reverse=True)
    return found


def retract_links(notes: Iterable[NoteMeta], removed_ids: Iterable[str]) -> int:
    """Remove deleted note ids from every note's ``linksTo`` in place.

    Returns:
        The number of notes that changed
    """
    removed = set(removed_ids)
    changed = 0
    for note in notes:
        if removed.intersection(note.links_to):
            note.set_links(i for i in note.links_to if i not in removed)
            changed += 1
    return changed
