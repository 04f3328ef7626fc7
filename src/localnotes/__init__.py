"""
localnotes - a local-first document store for a note-taking application.

This package implements the storage and retrieval engine behind the notes UI:
plain-text notes with attachments, a JSON metadata index, a hyperlink graph
between notes, bounded version history, operator search, and whole-store
export/import.

All operations are synchronous; a single store handle serializes index writes.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("localnotes")
except PackageNotFoundError:
    __version__ = "0.3.0"
