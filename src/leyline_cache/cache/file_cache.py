"""Cache-aside file cache over the content store with graceful degradation."""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from pathlib import Path

from leyline_cache.cache.handler import CacheErrorHandler
from leyline_cache.cache.stats import CacheStats
from leyline_cache.cache.store import ContentStore, is_content_hash
from leyline_cache.errors import LeylineError, translate_os_error
from leyline_cache.logging.events import LEVEL_WARNING, JsonlEventLogger

KEY_MAP_FILENAME = "keys.json"


class FileCache:
    """Get/put/fetch with stats, error policy, and single-flight population per key."""

    def __init__(
        self,
        store: ContentStore,
        stats: CacheStats,
        handler: CacheErrorHandler,
        key_map_path: Path | None = None,
        logger: JsonlEventLogger | None = None,
        enabled: bool = True,
    ) -> None:
        self._store = store
        self._stats = stats
        self._handler = handler
        self._key_map_path = key_map_path
        self._logger = logger
        self._enabled = enabled
        self._lock = threading.Lock()
        self._inflight: dict[str, Future[bytes]] = {}
        self._keys: dict[str, str] = self._load_key_map()
        self._keys_dirty = False
        self._errors: list[LeylineError] = []

    @property
    def store(self) -> ContentStore:
        """Return the backing content store."""
        return self._store

    @property
    def stats(self) -> CacheStats:
        """Return the shared counters."""
        return self._stats

    @property
    def enabled(self) -> bool:
        """Return False once the cache has degraded to pass-through mode."""
        return self._enabled

    @property
    def errors(self) -> tuple[LeylineError, ...]:
        """Return cache errors absorbed by degraded operation."""
        return tuple(self._errors)

    def fetch(
        self,
        key: str,
        loader: Callable[[], bytes],
        content_hash: str | None = None,
        category: str | None = None,
    ) -> bytes:
        """Return cached bytes for a key, or load, cache, and return them."""
        cached = self._cached_bytes(key, content_hash)
        if cached is not None:
            return cached

        with self._lock:
            future = self._inflight.get(key)
            owner = future is None
            if future is None:
                future = Future()
                self._inflight[key] = future
        if not owner:
            data = future.result()
            self._stats.record_hit(len(data))
            return data

        try:
            cached = self._cached_bytes(key, content_hash)
            if cached is not None:
                future.set_result(cached)
                return cached
            data = loader()
            self._stats.record_miss()
            self.put(data, key=key, category=category)
            future.set_result(data)
            return data
        except BaseException as error:
            if not future.done():
                future.set_exception(error)
            raise
        finally:
            with self._lock:
                self._inflight.pop(key, None)

    def get(self, digest: str) -> bytes | None:
        """Return verified bytes for a hash, recording a hit or miss."""
        data = self._read(digest, key=None)
        if data is None:
            self._stats.record_miss()
            return None
        self._stats.record_hit(len(data))
        return data

    def put(
        self,
        data: bytes,
        key: str | None = None,
        category: str | None = None,
    ) -> str | None:
        """Store bytes best-effort; returns the hash, or None when caching failed."""
        if not self._enabled:
            return None
        try:
            digest = self._handler.run(
                lambda: self._store.put(data, category=category),
                context={"operation": "put", "path": key or ""},
            )
        except LeylineError as error:
            self._degrade(error, "put")
            return None
        self._stats.record_put()
        if key is not None:
            with self._lock:
                if self._keys.get(key) != digest:
                    self._keys[key] = digest
                    self._keys_dirty = True
        return digest

    def lookup(self, key: str) -> str | None:
        """Return the hash currently associated with a key."""
        with self._lock:
            return self._keys.get(key)

    def invalidate(self, key: str) -> bool:
        """Drop the key association; the blob itself stays content-addressed."""
        with self._lock:
            removed = self._keys.pop(key, None)
            if removed is not None:
                self._keys_dirty = True
        return removed is not None

    def flush(self) -> None:
        """Persist the key map when it changed; failures degrade silently."""
        if self._key_map_path is None or not self._enabled:
            return
        with self._lock:
            if not self._keys_dirty:
                return
            payload = dict(sorted(self._keys.items()))
            self._keys_dirty = False
        tmp = self._key_map_path.with_suffix(self._key_map_path.suffix + ".tmp")
        try:
            self._key_map_path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, sort_keys=True)
                handle.write("\n")
            tmp.replace(self._key_map_path)
        except OSError as error:
            self._degrade(translate_os_error(error, str(self._key_map_path)), "flush")

    def _cached_bytes(self, key: str, expected: str | None) -> bytes | None:
        if not self._enabled:
            return None
        digest = expected or self.lookup(key)
        if digest is None:
            return None
        data = self._read(digest, key=key)
        if data is None:
            return None
        self._stats.record_hit(len(data))
        if expected is not None and self.lookup(key) != expected:
            with self._lock:
                self._keys[key] = expected
                self._keys_dirty = True
        return data

    def _read(self, digest: str, key: str | None) -> bytes | None:
        if not self._enabled or not is_content_hash(digest):
            return None
        corruptions_before = self._store.corruption_count
        try:
            data = self._handler.run(
                lambda: self._store.get(digest),
                context={"operation": "get", "path": key or digest},
                fallback=lambda: None,
            )
        except LeylineError as error:
            self._degrade(error, "get")
            return None
        if data is None and self._store.corruption_count > corruptions_before:
            if self._logger is not None:
                self._logger.log(
                    event="cache_corruption",
                    message="Corrupted cache entry removed; reloading from source.",
                    level=LEVEL_WARNING,
                    operation="get",
                    category="corruption",
                    metadata={"path": key or digest},
                )
        return data

    def _degrade(self, error: LeylineError, operation: str) -> None:
        self._errors.append(error)
        if self._logger is not None:
            self._logger.log(
                event="cache_degraded",
                message=f"Cache {operation} failed; continuing without cache: {error.reason}",
                level=LEVEL_WARNING,
                operation=operation,
                category=error.category,
                metadata={"path": error.path or ""},
            )
        self._enabled = False

    def _load_key_map(self) -> dict[str, str]:
        if self._key_map_path is None or not self._key_map_path.exists():
            return {}
        try:
            with self._key_map_path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError):
            return {}
        if not isinstance(payload, dict):
            return {}
        return {
            str(key): value
            for key, value in payload.items()
            if isinstance(key, str) and is_content_hash(value)
        }


def open_file_cache(
    cache_dir: Path,
    stats: CacheStats,
    logger: JsonlEventLogger | None = None,
    max_bytes: int | None = None,
    ttl_seconds: float | None = None,
    max_attempts: int = 3,
    base_delay_seconds: float = 0.1,
    sleep: Callable[[float], None] | None = None,
) -> FileCache:
    """Build a FileCache rooted at cache_dir, degrading when the directory is unusable."""
    store = ContentStore(cache_dir, max_bytes=max_bytes, ttl_seconds=ttl_seconds)
    handler = CacheErrorHandler(
        cache_dir,
        logger=logger,
        max_attempts=max_attempts,
        base_delay_seconds=base_delay_seconds,
        sleep=sleep or time.sleep,
    )
    enabled = True
    try:
        cache_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        handler.handle(error, {"operation": "open", "path": str(cache_dir)})
        enabled = False
    return FileCache(
        store,
        stats,
        handler,
        key_map_path=cache_dir / KEY_MAP_FILENAME,
        logger=logger,
        enabled=enabled,
    )
