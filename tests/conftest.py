"""Common test fixtures for the localnotes store."""

import tempfile
from pathlib import Path

import pytest

from localnotes.observability import metrics
from localnotes.services.note_service import NoteService


@pytest.fixture
def temp_dirs():
    """Create temporary directories for the store and for files outside it."""
    with tempfile.TemporaryDirectory() as store_dir:
        with tempfile.TemporaryDirectory() as outside_dir:
            yield Path(store_dir), Path(outside_dir)


@pytest.fixture
def store_root(temp_dirs):
    """Root directory of a fresh store."""
    store_dir, _ = temp_dirs
    return store_dir / "store"


@pytest.fixture
def outside_dir(temp_dirs):
    """A scratch directory that is not inside the store."""
    _, outside = temp_dirs
    return outside


@pytest.fixture
def note_service(store_root):
    """Create a NoteService on an empty store."""
    yield NoteService(store_root)


@pytest.fixture
def sample_file(outside_dir):
    """A small file to import as an attachment."""
    path = outside_dir / "diagram.png"
    path.write_bytes(b"\x89PNG\r\n\x1a\nfake image data")
    return path


@pytest.fixture(autouse=True)
def _reset_metrics():
    """Keep the global metrics collector isolated between tests."""
    metrics.reset()
    yield
    metrics.reset()
