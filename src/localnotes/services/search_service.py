"""Query-language search over the metadata index and note bodies.

Queries mix free text with operators::

    tag:meeting is:starred "action items" budget

Every operator and every free-text term must match (conjunction). Free
text is a case-insensitive substring test against title or body; quoted
phrases count as one term. Results are ordered most recently updated
first, ties broken by id. There is no relevance scoring.
"""
import datetime
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from localnotes.exceptions import ValidationError
from localnotes.models.schema import NoteMeta, ensure_timezone_aware, utc_now
from localnotes.services.link_resolver import normalize_tag
from localnotes.storage.content_store import NoteContentStore
from localnotes.storage.index_store import MetadataIndex

logger = logging.getLogger(__name__)

# A double-quoted phrase or a run of non-space characters
_TOKEN = re.compile(r'"([^"]*)"|(\S+)')

# Markdown task list item: "- [ ]", "* [x]", "+ [X]" with optional indent
CHECKLIST_PATTERN = re.compile(r"^\s*[-*+]\s+\[( |x|X)\]", re.MULTILINE)

DATE_WINDOWS = {"today": 0, "week": 7, "month": 30}


@dataclass
class ParsedQuery:
    """A search query split into operator filters and free-text terms."""

    tags: List[str] = field(default_factory=list)
    starred: bool = False
    completed: bool = False
    uncompleted: bool = False
    has_tasks: bool = False
    has_attachments: bool = False
    daily: bool = False
    date_window: Optional[str] = None
    notebook_id: Optional[str] = None
    terms: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self == ParsedQuery()

    @property
    def needs_tasks(self) -> bool:
        return self.has_tasks or self.completed or self.uncompleted


def parse_query(query: str) -> ParsedQuery:
    """Split a query string into operators and free-text terms.

    Operator names are case-insensitive. Tokens that look like operators
    but are not recognized are kept as free text.
    """
    parsed = ParsedQuery()
    for match in _TOKEN.finditer(query or ""):
        phrase, word = match.group(1), match.group(2)
        if phrase is not None:
            if phrase.strip():
                parsed.terms.append(phrase.lower())
            continue

        lowered = word.lower()
        name, sep, value = lowered.partition(":")
        if not sep or not value:
            parsed.terms.append(lowered)
        elif name == "tag":
            try:
                tag = normalize_tag(value)
            except ValidationError:
                parsed.terms.append(lowered)
                continue
            if tag not in parsed.tags:
                parsed.tags.append(tag)
        elif lowered == "is:starred":
            parsed.starred = True
        elif lowered == "is:completed":
            parsed.completed = True
        elif lowered == "is:uncompleted":
            parsed.uncompleted = True
        elif lowered == "is:daily":
            parsed.daily = True
        elif lowered == "has:tasks":
            parsed.has_tasks = True
        elif lowered == "has:attachments":
            parsed.has_attachments = True
        elif name == "date" and value in DATE_WINDOWS:
            parsed.date_window = value
        elif name == "notebook":
            # ids are case-sensitive, keep the original spelling
            parsed.notebook_id = word.partition(":")[2]
        else:
            parsed.terms.append(lowered)
    return parsed


def checklist_state(body: str) -> tuple:
    """Count (checked, unchecked) task list items in a body."""
    checked = unchecked = 0
    for match in CHECKLIST_PATTERN.finditer(body):
        if match.group(1) == " ":
            unchecked += 1
        else:
            checked += 1
    return checked, unchecked


def _local_date(value: datetime.datetime) -> datetime.date:
    return ensure_timezone_aware(value).astimezone().date()


def sort_notes(notes: List[NoteMeta]) -> List[NoteMeta]:
    """Order notes most recently updated first, then by id."""
    notes = sorted(notes, key=lambda n: n.id)
    notes.sort(key=lambda n: n.updated_at, reverse=True)
    return notes


class SearchService:
    """Evaluates search queries against one store."""

    def __init__(self, index: MetadataIndex, content: NoteContentStore):
        self.index = index
        self.content = content

    def search(
        self, query: str, now: Optional[datetime.datetime] = None
    ) -> List[NoteMeta]:
        """Find notes matching a query.

        Args:
            query: Free text and operators; empty returns every note
            now: Evaluation time for date windows (defaults to now)

        Returns:
            Matching notes, most recently updated first
        """
        parsed = parse_query(query)
        notes = self.index.snapshot().notes
        if parsed.is_empty:
            return sort_notes(notes)

        today = _local_date(now or utc_now())
        matches = [n for n in notes if self._matches(n, parsed, today)]
        logger.debug(f"Search {query!r} matched {len(matches)} of {len(notes)} notes")
        return sort_notes(matches)

    def _matches(
        self, note: NoteMeta, parsed: ParsedQuery, today: datetime.date
    ) -> bool:
        # Metadata filters first; bodies are only read when still needed
        if parsed.tags and not set(parsed.tags).issubset(note.tags):
            return False
        if parsed.starred and not note.important:
            return False
        if parsed.daily and not note.is_daily:
            return False
        if parsed.has_attachments and not note.images:
            return False
        if parsed.notebook_id is not None and note.notebook_id != parsed.notebook_id:
            return False
        if parsed.date_window is not None:
            updated = _local_date(note.updated_at)
            start = today - datetime.timedelta(days=DATE_WINDOWS[parsed.date_window])
            if not start <= updated <= today:
                return False

        title = note.title.lower()
        pending_terms = [t for t in parsed.terms if t not in title]
        if not pending_terms and not parsed.needs_tasks:
            return True

        body = self.content.read_or_empty(note.id)
        if parsed.needs_tasks:
            checked, unchecked = checklist_state(body)
            if parsed.has_tasks and checked + unchecked == 0:
                return False
            if parsed.completed and (checked == 0 or unchecked > 0):
                return False
            if parsed.uncompleted and unchecked == 0:
                return False

        lowered = body.lower()
        return all(term in lowered for term in pending_terms)
