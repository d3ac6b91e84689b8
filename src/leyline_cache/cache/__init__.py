"""Content-addressed cache package."""

from .file_cache import KEY_MAP_FILENAME, FileCache, open_file_cache
from .handler import ACTION_ABORT, ACTION_FALLBACK, ACTION_RETRY, Action, CacheErrorHandler
from .stats import CacheStats, CacheStatsSnapshot, format_bytes
from .store import (
    EMPTY_CONTENT_HASH,
    CacheEntry,
    ContentStore,
    EvictionReport,
    content_hash,
    is_content_hash,
)

__all__ = [
    "ACTION_ABORT",
    "ACTION_FALLBACK",
    "ACTION_RETRY",
    "Action",
    "CacheEntry",
    "CacheErrorHandler",
    "CacheStats",
    "CacheStatsSnapshot",
    "ContentStore",
    "EMPTY_CONTENT_HASH",
    "EvictionReport",
    "FileCache",
    "KEY_MAP_FILENAME",
    "content_hash",
    "format_bytes",
    "is_content_hash",
    "open_file_cache",
]
