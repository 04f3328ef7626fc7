"""Path sanitizing and traversal protection for store operations.

Every component that touches the filesystem routes user-supplied names,
identifiers and relative paths through this module before any read, write
or delete.
"""
import logging
import re
from pathlib import Path, PurePosixPath
from typing import Optional, Union

from localnotes.config import config
from localnotes.exceptions import ErrorCode, InvalidPathError

logger = logging.getLogger(__name__)

# Characters that are never allowed in a stored filename
_UNSAFE_FILENAME_CHARS = re.compile(r'[/\\:*?"<>|\x00-\x1f\x7f]')

# Windows drive prefix such as "C:" at the start of a relative path
_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")


def _has_control_chars(value: str) -> bool:
    return any(ord(c) < 32 or ord(c) == 127 for c in value)


def sanitize_filename(name: str, max_length: Optional[int] = None) -> str:
    """Turn an arbitrary display name into a safe single filename.

    Path separators, reserved characters, NUL and other control characters
    are replaced with underscores; the result is trimmed and capped.

    Examples:
        "../../etc/passwd" -> ".._.._etc_passwd"
        "Screen Shot: 1.png" -> "Screen Shot_ 1.png"

    Args:
        name: The raw name (from a file dialog, clipboard or user input).
        max_length: Maximum length, defaults to config.max_filename_length.

    Returns:
        A sanitized name, possibly empty if nothing usable remained.
    """
    limit = max_length or config.max_filename_length
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", name).strip()[:limit].strip()
    # A bare dot-name would still address the directory itself or its parent
    if cleaned.strip(".") == "":
        return ""
    return cleaned


def validate_segment(value: str, field_name: str = "value") -> str:
    """Validate that a value is safe to use as a single path component.

    Rejects empty values, '.' and '..', path separators, NUL and other
    control characters, and overlong values.

    Args:
        value: The string to validate (note id, notebook id, stored filename)
        field_name: Name of the field for error messages

    Returns:
        The validated value (unchanged)

    Raises:
        InvalidPathError: If the value is unsafe
    """
    if not isinstance(value, str) or not value:
        raise InvalidPathError(f"{field_name} cannot be empty", value=value)
    if value in (".", ".."):
        raise InvalidPathError(
            f"{field_name} cannot be '.' or '..'",
            value=value,
            code=ErrorCode.PATH_TRAVERSAL_DETECTED,
        )
    if "/" in value or "\\" in value:
        raise InvalidPathError(
            f"{field_name} cannot contain path separators",
            value=value,
            code=ErrorCode.PATH_TRAVERSAL_DETECTED,
        )
    if "\x00" in value or _has_control_chars(value):
        raise InvalidPathError(
            f"{field_name} cannot contain control characters", value=value
        )
    if len(value) > config.max_filename_length:
        raise InvalidPathError(
            f"{field_name} exceeds {config.max_filename_length} characters",
            value=value,
        )
    return value


def validate_user_filename(name: str, field_name: str = "name") -> str:
    """Reject user-supplied filenames that try to address another location.

    Unlike sanitize_filename, which quietly repairs reserved characters,
    this refuses absolute paths, '..' components, NUL and control
    characters outright. Callers sanitize the accepted name afterwards.

    Raises:
        InvalidPathError: If the name is empty or unsafe
    """
    if not isinstance(name, str) or not name.strip():
        raise InvalidPathError(f"{field_name} cannot be empty", value=name)
    if "\x00" in name or _has_control_chars(name):
        raise InvalidPathError(
            f"{field_name} cannot contain control characters", value=name
        )
    stripped = name.strip()
    if stripped.startswith(("/", "\\")) or _DRIVE_PREFIX.match(stripped):
        raise InvalidPathError(
            f"{field_name} cannot be an absolute path",
            value=name,
            code=ErrorCode.PATH_TRAVERSAL_DETECTED,
        )
    if any(part.strip() == ".." for part in re.split(r"[/\\]", stripped)):
        raise InvalidPathError(
            f"{field_name} cannot contain '..' (path traversal)",
            value=name,
            code=ErrorCode.PATH_TRAVERSAL_DETECTED,
        )
    return name


def validate_relative_path(value: str) -> PurePosixPath:
    """Validate a store-relative path such as ``images/<id>/<file>``.

    Args:
        value: The relative path as stored in the index

    Returns:
        The parsed path

    Raises:
        InvalidPathError: On absolute paths, drive letters, '..' components,
            empty components, NUL or control characters
    """
    if not isinstance(value, str) or not value:
        raise InvalidPathError("Path cannot be empty", value=value)
    if "\x00" in value or _has_control_chars(value):
        raise InvalidPathError("Path cannot contain control characters", value=value)
    if value.startswith(("/", "\\")) or _DRIVE_PREFIX.match(value):
        raise InvalidPathError(
            "Path must be relative to the store root",
            value=value,
            code=ErrorCode.PATH_TRAVERSAL_DETECTED,
        )
    parts = value.replace("\\", "/").split("/")
    if any(part == ".." for part in parts):
        raise InvalidPathError(
            "Path cannot contain '..' (path traversal)",
            value=value,
            code=ErrorCode.PATH_TRAVERSAL_DETECTED,
        )
    if any(part in ("", ".") for part in parts):
        raise InvalidPathError("Path cannot contain empty segments", value=value)
    return PurePosixPath(*parts)


def resolve_within(root: Path, relative: Union[str, PurePosixPath]) -> Path:
    """Resolve a relative path and verify it stays within root.

    Symlinks are resolved before the containment check, so a link that
    points outside the store is rejected as well.

    Args:
        root: The directory the result must stay inside
        relative: A relative path (validated first when given as a string)

    Returns:
        The resolved absolute path

    Raises:
        InvalidPathError: If the path is unsafe or escapes root
    """
    rel = validate_relative_path(relative) if isinstance(relative, str) else relative
    resolved_root = root.resolve()
    candidate = (resolved_root / Path(*rel.parts)).resolve()
    try:
        candidate.relative_to(resolved_root)
    except ValueError:
        logger.warning(f"Path traversal blocked: {str(rel)!r} escapes {resolved_root}")
        raise InvalidPathError(
            "Path escapes the store root",
            value=str(rel),
            code=ErrorCode.PATH_TRAVERSAL_DETECTED,
        ) from None
    return candidate


def is_within(root: Path, path: Path) -> bool:
    """Check whether path (after resolution) is root itself or inside it."""
    try:
        path.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False
