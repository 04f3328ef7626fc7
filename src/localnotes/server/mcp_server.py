"""MCP server exposing the localnotes command surface as tools."""

import json
import logging
import uuid
from typing import Any, List, Optional

from mcp.server.fastmcp import FastMCP

from localnotes.config import config
from localnotes.exceptions import LocalNotesError, ValidationError
from localnotes.observability import metrics
from localnotes.services.note_service import NoteService

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_CONTENT_LENGTH = 1_000_000  # 1 MB


def _validate_input_lengths(
    title: Optional[str] = None, content: Optional[str] = None
) -> None:
    """Validate input string lengths at the MCP boundary."""
    if title and len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(
            f"Title exceeds maximum length of {MAX_TITLE_LENGTH} characters",
            field="title",
        )
    if content and len(content) > MAX_CONTENT_LENGTH:
        raise ValidationError(
            f"Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters",
            field="body",
        )


def _split_ids(note_ids: str) -> List[str]:
    """Parse a comma-separated id list."""
    return [i.strip() for i in note_ids.split(",") if i.strip()]


def _to_json(value: Any) -> str:
    """Serialize records (or lists of records) for a tool response."""
    if isinstance(value, list):
        value = [v.to_dict() if hasattr(v, "to_dict") else v for v in value]
    elif hasattr(value, "to_dict"):
        value = value.to_dict()
    return json.dumps(value, indent=2, ensure_ascii=False)


class LocalNotesMcpServer:
    """MCP server for a local note store."""

    def __init__(self, service: Optional[NoteService] = None):
        """Initialize the MCP server.

        Args:
            service: Store handle to serve. Opens config.store_dir when None.
        """
        self.mcp = FastMCP(
            config.server_name,
            instructions="Local-first note store: notes, tags, links, versions.",
        )
        self.service = service or NoteService()
        self.initialize()
        self._register_tools()

    def initialize(self) -> None:
        """Initialize services."""
        logger.info(f"localnotes MCP server initialized for {self.service.root}")

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Args:
            error: The exception that occurred

        Returns:
            Formatted error message with appropriate level of detail
        """
        # Generate a unique error ID for traceability in logs
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, LocalNotesError):
            # Structured domain errors - use the error code and message
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, ValueError):
            # Log full detail but return generic ref to avoid leaking internals
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        elif isinstance(error, (IOError, OSError)):
            # File system errors - don't expose paths or detailed error messages
            logger.error(f"File system error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: A file system error occurred (ref: {error_id})"
        else:
            # Unexpected errors - log with full stack trace but return generic message
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _register_tools(self) -> None:
        """Register MCP tools."""
        self._register_note_tools()
        self._register_organization_tools()
        self._register_history_tools()
        self._register_sync_tools()

    # =========================================================================
    # Notes
    # =========================================================================

    def _register_note_tools(self) -> None:
        @self.mcp.tool(name="notes_list")
        def notes_list() -> str:
            """List all notes, most recently updated first."""
            try:
                return _to_json(self.service.list_notes())
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_read")
        def notes_read(note_id: str) -> str:
            """Read a note's metadata and body.
            Args:
                note_id: The note's ID
            """
            try:
                return _to_json(self.service.read_note(note_id))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_save")
        def notes_save(title: str, body: str, note_id: Optional[str] = None) -> str:
            """Create a note, or update it when note_id is given.
            Args:
                title: Full title
                body: Full body text; #tags and [[Title]] links are picked up
                note_id: Existing note ID (omit to create a new note)
            """
            try:
                _validate_input_lengths(title=title, content=body)
                return _to_json(self.service.save_note(note_id, title, body))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_update_title")
        def notes_update_title(note_id: str, title: str) -> str:
            """Change a note's title, keeping its body."""
            try:
                _validate_input_lengths(title=title)
                return _to_json(self.service.update_title(note_id, title))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_delete")
        def notes_delete(note_id: str) -> str:
            """Delete a note with its attachments and version history."""
            try:
                self.service.delete_note(note_id)
                return f"Note {note_id} deleted successfully"
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_batch_delete")
        def notes_batch_delete(note_ids: str) -> str:
            """Delete several notes.
            Args:
                note_ids: Comma-separated note IDs
            """
            try:
                count = self.service.batch_delete(_split_ids(note_ids))
                return f"Deleted {count} note(s)"
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_duplicate")
        def notes_duplicate(note_id: str) -> str:
            """Duplicate a note, including its attachments."""
            try:
                return _to_json(self.service.duplicate_note(note_id))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_merge")
        def notes_merge(note_ids: str) -> str:
            """Merge notes into the first one listed.
            Args:
                note_ids: Comma-separated note IDs; the first ID is kept
            """
            try:
                return _to_json(self.service.merge_notes(_split_ids(note_ids)))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_export")
        def notes_export(
            note_id: str, format: str = "markdown", path: Optional[str] = None
        ) -> str:
            """Export a note as markdown (with frontmatter) or plain text.
            Args:
                note_id: The note's ID
                format: "markdown" (default) or "plain"
                path: Optional file to write the export to
            """
            try:
                if format == "markdown":
                    text = self.service.export_note_as_markdown(note_id)
                elif format == "plain":
                    text = self.service.export_note(note_id)
                else:
                    return f"Invalid format: {format}. Valid formats are: markdown, plain"
                if path:
                    written = self.service.write_text_file(path, text)
                    return f"Note exported to {written}"
                return text
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_daily")
        def notes_daily() -> str:
            """Get (or create) today's daily note."""
            try:
                return _to_json(self.service.get_or_create_daily_note())
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_backlinks")
        def notes_backlinks(note_id: str) -> str:
            """List notes that link to this note with [[Title]]."""
            try:
                return _to_json(self.service.get_backlinks(note_id))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_search")
        def notes_search(query: str = "") -> str:
            """Search notes.
            Args:
                query: Free text plus operators: tag:X, is:starred, is:completed,
                    is:uncompleted, is:daily, has:tasks, has:attachments,
                    date:today|week|month, notebook:<id>. "Quoted phrases"
                    are matched as one term.
            """
            try:
                return _to_json(self.service.search(query))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_attach_files")
        def notes_attach_files(note_id: str, file_paths: List[str]) -> str:
            """Copy files into a note's attachment folder."""
            try:
                return _to_json(self.service.attach_files(note_id, file_paths))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_attach_data")
        def notes_attach_data(
            note_id: str, base64_data: str, suggested_name: Optional[str] = None
        ) -> str:
            """Attach base64-encoded data (e.g. a pasted image) to a note."""
            try:
                return _to_json(
                    self.service.attach_from_clipboard(
                        note_id, base64_data, suggested_name
                    )
                )
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_remove_attachment")
        def notes_remove_attachment(note_id: str, path: str) -> str:
            """Delete an attachment (path as stored, images/<id>/<file>)."""
            try:
                return _to_json(self.service.remove_attachment(note_id, path))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_rename_attachment")
        def notes_rename_attachment(note_id: str, path: str, new_name: str) -> str:
            """Rename an attachment on disk and in the note."""
            try:
                return _to_json(
                    self.service.rename_attachment(note_id, path, new_name)
                )
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_attachment_path")
        def notes_attachment_path(path: str) -> str:
            """Resolve a stored attachment path to an absolute file path."""
            try:
                return self.service.resolve_attachment_path(path)
            except Exception as e:
                return self.format_error_response(e)

    # =========================================================================
    # Tags, stars, notebooks, templates
    # =========================================================================

    def _register_organization_tools(self) -> None:
        @self.mcp.tool(name="notes_star")
        def notes_star(note_ids: str, starred: bool = True) -> str:
            """Star or unstar notes.
            Args:
                note_ids: Comma-separated note IDs
                starred: True to star, False to unstar
            """
            try:
                return _to_json(self.service.batch_star(_split_ids(note_ids), starred))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_list_tags")
        def notes_list_tags() -> str:
            """List every tag in use."""
            try:
                return _to_json(self.service.list_tags())
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_by_tag")
        def notes_by_tag(tag: str) -> str:
            """List notes carrying a tag."""
            try:
                return _to_json(self.service.notes_by_tag(tag))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_add_tag")
        def notes_add_tag(note_ids: str, tag: str) -> str:
            """Add a tag to one or more notes.
            Args:
                note_ids: Comma-separated note IDs
                tag: Tag (letters, digits, '_' and '-'; a leading '#' is ignored)
            """
            try:
                return _to_json(self.service.add_tag(_split_ids(note_ids), tag))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_remove_tag")
        def notes_remove_tag(note_id: str, tag: str) -> str:
            """Remove a tag from a note (a #tag still in the body returns on save)."""
            try:
                return _to_json(self.service.remove_tag(note_id, tag))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_list_notebooks")
        def notes_list_notebooks() -> str:
            """List notebooks, active first."""
            try:
                return _to_json(self.service.list_notebooks())
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_create_notebook")
        def notes_create_notebook(name: str) -> str:
            """Create a notebook."""
            try:
                return _to_json(self.service.create_notebook(name))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_rename_notebook")
        def notes_rename_notebook(notebook_id: str, name: str) -> str:
            """Rename a notebook."""
            try:
                return _to_json(self.service.rename_notebook(notebook_id, name))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_archive_notebook")
        def notes_archive_notebook(notebook_id: str, archived: bool = True) -> str:
            """Archive or unarchive a notebook."""
            try:
                return _to_json(self.service.archive_notebook(notebook_id, archived))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_move_to_notebook")
        def notes_move_to_notebook(
            note_id: str, notebook_id: Optional[str] = None
        ) -> str:
            """File a note into a notebook (omit notebook_id to unfile)."""
            try:
                return _to_json(self.service.move_to_notebook(note_id, notebook_id))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_list_templates")
        def notes_list_templates() -> str:
            """List built-in and custom templates."""
            try:
                return _to_json(self.service.list_templates())
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_save_template")
        def notes_save_template(name: str, body: str) -> str:
            """Save a custom template ({{date}} and {{title}} are placeholders)."""
            try:
                _validate_input_lengths(title=name, content=body)
                return _to_json(self.service.save_custom_template(name, body))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_delete_template")
        def notes_delete_template(template_id: str) -> str:
            """Delete a custom template."""
            try:
                self.service.delete_custom_template(template_id)
                return f"Template {template_id} deleted successfully"
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_from_template")
        def notes_from_template(template_id: str, title: Optional[str] = None) -> str:
            """Create a note from a template, optionally overriding its title."""
            try:
                return _to_json(
                    self.service.create_note_from_template(template_id, title)
                )
            except Exception as e:
                return self.format_error_response(e)

    # =========================================================================
    # Version history
    # =========================================================================

    def _register_history_tools(self) -> None:
        @self.mcp.tool(name="notes_list_versions")
        def notes_list_versions(note_id: str) -> str:
            """List a note's saved versions, newest first."""
            try:
                return _to_json(self.service.list_versions(note_id))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_get_version")
        def notes_get_version(note_id: str, saved_at: str) -> str:
            """Get one saved version in full."""
            try:
                return _to_json(self.service.get_version(note_id, saved_at))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_restore_version")
        def notes_restore_version(note_id: str, saved_at: str) -> str:
            """Restore a saved version; the current state is kept in history."""
            try:
                return _to_json(self.service.restore_version(note_id, saved_at))
            except Exception as e:
                return self.format_error_response(e)

    # =========================================================================
    # Sync and backup
    # =========================================================================

    def _register_sync_tools(self) -> None:
        @self.mcp.tool(name="notes_store_info")
        def notes_store_info() -> str:
            """Show the store location, note count, sync folder and any index warning."""
            try:
                load_error = self.service.index.last_load_error
                return _to_json(
                    {
                        "root": str(self.service.root),
                        "notes": len(self.service.list_notes()),
                        "syncFolder": self.service.get_sync_folder(),
                        "warning": load_error.message if load_error else None,
                    }
                )
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_set_sync_folder")
        def notes_set_sync_folder(folder: Optional[str] = None) -> str:
            """Set the sync folder used by push/pull (omit to clear)."""
            try:
                resolved = self.service.set_sync_folder(folder)
                if resolved is None:
                    return "Sync folder cleared"
                return f"Sync folder set to {resolved}"
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_export_backup")
        def notes_export_backup(target_dir: str) -> str:
            """Copy the whole store into a directory."""
            try:
                return _to_json(self.service.export_backup(target_dir))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_import_backup")
        def notes_import_backup(source_dir: str) -> str:
            """Replace the store with a previously exported directory."""
            try:
                return _to_json(self.service.import_backup(source_dir))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_push")
        def notes_push() -> str:
            """Export the store to the sync folder."""
            try:
                return _to_json(self.service.push())
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_pull")
        def notes_pull() -> str:
            """Import the store from the sync folder."""
            try:
                return _to_json(self.service.pull())
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="notes_metrics")
        def notes_metrics() -> str:
            """Show per-operation timing metrics for this session."""
            try:
                return _to_json(
                    {"summary": metrics.get_summary(), "operations": metrics.get_metrics()}
                )
            except Exception as e:
                return self.format_error_response(e)

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
