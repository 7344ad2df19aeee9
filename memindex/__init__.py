"""memindex package initialization."""

from __future__ import annotations

from .config import (
    MemorySettings,
    config_dir_context,
    load_settings,
    set_config_dir,
    settings_from_json,
)
from .errors import (
    BatchUnavailableError,
    EmbeddingError,
    EmbeddingTimeoutError,
    MemoryIndexError,
    PathNotAllowedError,
)
from .manager import IndexStatus, ManagerRegistry, MemoryIndexManager, ReadFileResult
from .services.search_service import SearchResult

__all__ = [
    "__version__",
    "BatchUnavailableError",
    "EmbeddingError",
    "EmbeddingTimeoutError",
    "IndexStatus",
    "ManagerRegistry",
    "MemoryIndexError",
    "MemoryIndexManager",
    "MemorySettings",
    "PathNotAllowedError",
    "ReadFileResult",
    "SearchResult",
    "config_dir_context",
    "get_version",
    "load_settings",
    "set_config_dir",
    "settings_from_json",
]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
