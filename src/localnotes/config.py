"""Configuration module for the localnotes store."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from localnotes import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: lives alongside the default store
_USER_ENV = Path.home() / ".localnotes" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

DEFAULT_STORE_DIR = Path.home() / ".localnotes" / "store"


class LocalNotesConfig(BaseModel):
    """Configuration for the note store and its tool server."""

    # Root directory holding notes/, versions/, meta/ and images/
    store_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv("LOCALNOTES_STORE_DIR", str(DEFAULT_STORE_DIR))
        ).expanduser()
    )
    # Version history: snapshots kept per note (oldest evicted first)
    max_versions: int = Field(
        default_factory=lambda: int(os.getenv("LOCALNOTES_MAX_VERSIONS", "30"))
    )
    # Characters of body shown in version listings
    preview_length: int = Field(
        default_factory=lambda: int(os.getenv("LOCALNOTES_PREVIEW_LENGTH", "150"))
    )
    # Upper bound for any single sanitized path segment
    max_filename_length: int = Field(
        default_factory=lambda: int(
            os.getenv("LOCALNOTES_MAX_FILENAME_LENGTH", "200")
        )
    )
    # Logging configuration
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("LOCALNOTES_LOG_DIR")).expanduser()
            if os.getenv("LOCALNOTES_LOG_DIR")
            else None
        )
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("LOCALNOTES_LOG_LEVEL", "INFO")
    )
    # Server configuration
    server_name: str = Field(
        default=os.getenv("LOCALNOTES_SERVER_NAME", "localnotes")
    )
    server_version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_limits(self) -> "LocalNotesConfig":
        """Reject limits that would make the store unusable."""
        if self.max_versions < 1:
            raise ValueError("max_versions must be >= 1")
        if self.preview_length < 1:
            raise ValueError("preview_length must be >= 1")
        if self.max_filename_length < 16:
            raise ValueError("max_filename_length must be >= 16")
        return self

    def get_store_dir(self) -> Path:
        """Get the absolute store root, creating it if needed."""
        store = self.store_dir.expanduser()
        if not store.is_absolute():
            store = Path.cwd() / store
        store.mkdir(parents=True, exist_ok=True)
        return store


# Create a global config instance
config = LocalNotesConfig()
