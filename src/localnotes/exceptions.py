"""Custom exceptions for the localnotes store.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Every component operation either
returns a value or raises one of these kinds; the UI layer turns them
into user-facing messages.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Path errors (1xxx)
    PATH_TRAVERSAL_DETECTED = 1001
    PATH_INVALID = 1002

    # Lookup errors (2xxx)
    NOTE_NOT_FOUND = 2001
    NOTEBOOK_NOT_FOUND = 2002
    TEMPLATE_NOT_FOUND = 2003
    VERSION_NOT_FOUND = 2004
    ATTACHMENT_NOT_FOUND = 2005
    DIRECTORY_NOT_FOUND = 2006

    # Index errors (3xxx)
    INDEX_CORRUPTED = 3001

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    STORAGE_COPY_FAILED = 4004

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    NOTE_EMPTY = 7002
    TAG_INVALID = 7003
    NAME_REQUIRED = 7004
    TEMPLATE_READ_ONLY = 7005
    SYNC_FOLDER_MISSING = 7006


class LocalNotesError(Exception):
    """Base exception for all localnotes errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class InvalidPathError(LocalNotesError):
    """Raised when a filename or identifier is unsafe or escapes the store root."""

    def __init__(
        self,
        message: str,
        value: Optional[str] = None,
        code: ErrorCode = ErrorCode.PATH_INVALID,
    ):
        details = {}
        if value is not None:
            # repr() keeps control characters visible, truncated for safety
            details["value"] = repr(value)[:100]
        super().__init__(message, code=code, details=details)
        self.value = value


class NotFoundError(LocalNotesError):
    """Raised when a note, notebook, template, version or attachment is missing."""

    def __init__(
        self,
        kind: str,
        identifier: str,
        code: ErrorCode = ErrorCode.NOTE_NOT_FOUND,
        message: Optional[str] = None,
    ):
        super().__init__(
            message or f"{kind.capitalize()} '{identifier}' not found",
            code=code,
            details={f"{kind}_id": identifier},
        )
        self.kind = kind
        self.identifier = identifier


class NoteNotFoundError(NotFoundError):
    """Raised when a note cannot be found."""

    def __init__(self, note_id: str, message: Optional[str] = None):
        super().__init__(
            "note", note_id, code=ErrorCode.NOTE_NOT_FOUND, message=message
        )
        self.note_id = note_id


class IndexCorruptError(LocalNotesError):
    """Raised when the metadata index cannot be parsed.

    The index store recovers from this by starting empty and keeping the
    unreadable file aside; the error is surfaced as a warning, never a crash.

    Attributes:
        backup_path: Where the unreadable index was moved, if anywhere
    """

    def __init__(
        self,
        message: str,
        backup_path: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if backup_path:
            details["backup_path"] = backup_path
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(message, code=ErrorCode.INDEX_CORRUPTED, details=details)
        self.backup_path = backup_path
        self.original_error = original_error


class StorageError(LocalNotesError):
    """Raised when an underlying read, write, copy or delete fails."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages
            details["path_hint"] = path.replace("\\", "/").split("/")[-1]
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class ValidationError(LocalNotesError):
    """Raised for invalid input: empty notes, bad tags, empty names."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value
