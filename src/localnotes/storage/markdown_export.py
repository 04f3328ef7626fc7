"""Markdown rendering of notes for export.

A note is written as YAML frontmatter followed by a ``# title`` heading and
the body. ``[[Title]]`` links are left untouched so the result stays
readable in other wiki-style editors.
"""
import logging
from typing import Any, Dict, Optional

import frontmatter

from localnotes.models.schema import NoteMeta, format_timestamp

logger = logging.getLogger(__name__)


class MarkdownExporter:
    """Serializes notes as markdown with frontmatter."""

    def build_metadata(
        self, note: NoteMeta, notebook_name: Optional[str] = None
    ) -> Dict[str, Any]:
        """Frontmatter fields for a note; empty optional fields are omitted."""
        metadata: Dict[str, Any] = {
            "id": note.id,
            "title": note.title,
            "created": format_timestamp(note.created_at),
            "updated": format_timestamp(note.updated_at),
        }
        if note.tags:
            metadata["tags"] = list(note.tags)
        if note.important:
            metadata["starred"] = True
        if note.is_daily:
            metadata["daily"] = True
        if notebook_name:
            metadata["notebook"] = notebook_name
        return metadata

    def render_note(
        self, note: NoteMeta, body: str, notebook_name: Optional[str] = None
    ) -> str:
        """Convert a note to markdown with frontmatter.

        Args:
            note: The note's metadata record
            body: The note's body text
            notebook_name: Name of the note's notebook, if filed

        Returns:
            Markdown string ending in a newline
        """
        # Don't repeat the heading if the body already starts with it
        heading = f"# {note.title}" if note.title else ""
        if heading and not body.lstrip().startswith(heading):
            content = f"{heading}\n\n{body}"
        else:
            content = body

        post = frontmatter.Post(content, **self.build_metadata(note, notebook_name))
        rendered = frontmatter.dumps(post)
        if not rendered.endswith("\n"):
            rendered += "\n"
        return rendered

    @staticmethod
    def render_plain(note: NoteMeta, body: str) -> str:
        """Plain-text export: title, blank line, body."""
        return f"{note.title}\n\n{body}\n"
