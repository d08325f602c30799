"""Platform-aware path resolution for the metadata database."""

import os
import sys
from pathlib import Path

METADATA_DB_ENV = "AICHAT_METADATA_DB"
METADATA_DB_NAME = "metadata.db"


def get_metadata_dir() -> Path:
    """Return the directory that holds aichat-metadata's own data."""
    if sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "")) / "aichat-history"
    else:  # macOS and Linux
        return Path.home() / ".aichat-history"


def get_metadata_db_path() -> Path:
    """Return the path to the session metadata SQLite file.

    Does not create anything; the store creates the file on first use.
    """
    env = os.environ.get(METADATA_DB_ENV)
    if env:
        return Path(env).expanduser()

    return get_metadata_dir() / METADATA_DB_NAME
