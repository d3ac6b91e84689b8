"""Content-addressed blob storage with verified reads and atomic writes."""

from __future__ import annotations

import hashlib
import json
import os
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from leyline_cache.errors import CorruptionError, NotFoundError, translate_os_error

HASH_PATTERN = re.compile(r"^[0-9a-f]{64}$")
EMPTY_CONTENT_HASH = hashlib.sha256(b"").hexdigest()
CONTENT_DIRNAME = "content"
CATEGORY_INDEX_FILENAME = "index.jsonl"
_TMP_SUFFIX = ".tmp"


@dataclass(slots=True, frozen=True)
class CacheEntry:
    """Metadata for one stored blob."""

    content_hash: str
    size: int
    stored_at: float
    category: str | None


@dataclass(slots=True, frozen=True)
class EvictionReport:
    """Outcome of one maintenance pass."""

    zero_byte_removed: int
    temp_removed: int
    stale_removed: int
    bytes_freed: int
    remaining_bytes: int


def content_hash(data: bytes) -> str:
    """Return the SHA-256 hex digest used as a blob identifier."""
    return hashlib.sha256(data).hexdigest()


def is_content_hash(value: object) -> bool:
    """Return True for a lowercase 64-character hex digest."""
    return isinstance(value, str) and HASH_PATTERN.match(value) is not None


class ContentStore:
    """Maps content hashes to bytes on local disk, sharded by hash prefix."""

    def __init__(
        self,
        cache_dir: Path,
        max_bytes: int | None = None,
        ttl_seconds: float | None = None,
    ) -> None:
        self._root = cache_dir / CONTENT_DIRNAME
        self._max_bytes = max_bytes
        self._ttl_seconds = ttl_seconds
        self._category_index_path = self._root / CATEGORY_INDEX_FILENAME
        self._categories: dict[str, str] | None = None
        self._categories_lock = threading.Lock()
        self._corruptions = 0

    @property
    def root(self) -> Path:
        """Return the content directory."""
        return self._root

    @property
    def corruption_count(self) -> int:
        """Return how many corrupted blobs were removed by this instance."""
        return self._corruptions

    def blob_path(self, digest: str) -> Path:
        """Return the on-disk location for a hash."""
        return self._root / digest[:2] / digest

    def put(self, data: bytes, category: str | None = None) -> str:
        """Store bytes under their hash; existing blobs are never rewritten."""
        digest = content_hash(data)
        path = self.blob_path(digest)
        if self._holds(path, data, digest):
            self._remember_category(digest, category)
            return digest
        tmp = path.with_name(f"{digest}.{os.getpid()}.{threading.get_ident()}{_TMP_SUFFIX}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            tmp.replace(path)
        except OSError as error:
            _unlink_quietly(tmp)
            raise translate_os_error(error, str(path)) from error
        self._remember_category(digest, category)
        return digest

    def get(self, digest: str) -> bytes | None:
        """Return verified bytes, or None when absent or corrupted."""
        if not is_content_hash(digest):
            return None
        path = self.blob_path(digest)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except IsADirectoryError as error:
            raise CorruptionError(
                "Cache entry is a directory instead of a blob.",
                hint=f"Remove the directory: rm -r '{path}'",
                path=str(path),
            ) from error
        except OSError as error:
            raise translate_os_error(error, str(path)) from error
        if content_hash(data) == digest:
            return data
        self._corruptions += 1
        try:
            path.unlink(missing_ok=True)
        except OSError as error:
            raise CorruptionError(
                "Corrupted cache entry could not be removed.",
                hint=f"Delete the blob manually: rm '{path}'",
                path=str(path),
            ) from error
        return None

    def read(self, digest: str) -> bytes:
        """Return verified bytes or raise NotFoundError."""
        data = self.get(digest)
        if data is None:
            raise NotFoundError(
                f"Blob {digest[:12]} is not cached.",
                path=str(self.blob_path(digest)),
            )
        return data

    def has(self, digest: str) -> bool:
        """Fast existence check without integrity verification."""
        if not is_content_hash(digest):
            return False
        return self.blob_path(digest).is_file()

    def entry(self, digest: str) -> CacheEntry | None:
        """Return entry metadata for a stored blob."""
        if not is_content_hash(digest):
            return None
        try:
            stat = self.blob_path(digest).stat()
        except FileNotFoundError:
            return None
        except OSError as error:
            raise translate_os_error(error, str(self.blob_path(digest))) from error
        return CacheEntry(
            content_hash=digest,
            size=stat.st_size,
            stored_at=stat.st_mtime,
            category=self._load_categories().get(digest),
        )

    def entries(self) -> list[CacheEntry]:
        """Return all stored entries sorted by hash."""
        output: list[CacheEntry] = []
        for path in self._blob_files():
            entry = self.entry(path.name)
            if entry is not None:
                output.append(entry)
        return output

    def delete(self, digest: str) -> bool:
        """Remove one blob; returns True when something was deleted."""
        if not is_content_hash(digest):
            return False
        path = self.blob_path(digest)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as error:
            raise translate_os_error(error, str(path)) from error
        return True

    def clear(self) -> int:
        """Remove every blob and the category index; returns blobs removed."""
        removed = 0
        for path in self._blob_files():
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as error:
                raise translate_os_error(error, str(path)) from error
            removed += 1
        _unlink_quietly(self._category_index_path)
        with self._categories_lock:
            self._categories = {}
        return removed

    def evict_zero_byte_and_stale(self, now: float | None = None) -> EvictionReport:
        """Remove zero-byte blobs and temp files; evict stale entries when over max_bytes."""
        current_time = time.time() if now is None else now
        zero_byte_removed = 0
        temp_removed = 0
        stale_removed = 0
        bytes_freed = 0
        survivors: list[tuple[float, str, int, Path]] = []

        for path in self._shard_files():
            try:
                stat = path.stat()
            except OSError:
                continue
            if path.name.endswith(_TMP_SUFFIX):
                if _unlink_quietly(path):
                    temp_removed += 1
                    bytes_freed += stat.st_size
                continue
            if not is_content_hash(path.name):
                continue
            if stat.st_size == 0 and path.name != EMPTY_CONTENT_HASH:
                if _unlink_quietly(path):
                    zero_byte_removed += 1
                continue
            survivors.append((stat.st_mtime, path.name, stat.st_size, path))

        total = sum(item[2] for item in survivors)
        if self._max_bytes is not None and total > self._max_bytes:
            survivors.sort(key=lambda item: (item[0], item[1]))
            for mtime, _, size, path in survivors:
                if total <= self._max_bytes:
                    break
                if self._ttl_seconds is not None and current_time - mtime < self._ttl_seconds:
                    continue
                if _unlink_quietly(path):
                    stale_removed += 1
                    bytes_freed += size
                    total -= size

        return EvictionReport(
            zero_byte_removed=zero_byte_removed,
            temp_removed=temp_removed,
            stale_removed=stale_removed,
            bytes_freed=bytes_freed,
            remaining_bytes=total,
        )

    def directory_stats(self) -> dict[str, object]:
        """Return location, size, file count and utilization of the store."""
        size = 0
        file_count = 0
        for path in self._blob_files():
            try:
                size += path.stat().st_size
            except OSError:
                continue
            file_count += 1
        utilization = 0.0
        if self._max_bytes:
            utilization = round(size / self._max_bytes * 100, 1)
        return {
            "path": str(self._root),
            "size": size,
            "file_count": file_count,
            "utilization_percent": utilization,
        }

    def _holds(self, path: Path, data: bytes, digest: str) -> bool:
        try:
            size = path.stat().st_size
        except OSError:
            return False
        if size != len(data):
            return False
        if digest == EMPTY_CONTENT_HASH:
            return True
        try:
            existing = path.read_bytes()
        except OSError:
            return False
        if content_hash(existing) == digest:
            return True
        self._corruptions += 1
        return False

    def _shard_files(self) -> list[Path]:
        if not self._root.is_dir():
            return []
        files: list[Path] = []
        for shard in sorted(self._root.iterdir(), key=lambda item: item.name):
            if not shard.is_dir() or len(shard.name) != 2:
                continue
            for path in sorted(shard.iterdir(), key=lambda item: item.name):
                if path.is_file():
                    files.append(path)
        return files

    def _blob_files(self) -> list[Path]:
        return [path for path in self._shard_files() if is_content_hash(path.name)]

    def _load_categories(self) -> dict[str, str]:
        with self._categories_lock:
            if self._categories is not None:
                return self._categories
            categories: dict[str, str] = {}
            if self._category_index_path.exists():
                with self._category_index_path.open("r", encoding="utf-8") as handle:
                    for line in handle:
                        try:
                            row = json.loads(line)
                        except json.JSONDecodeError:
                            continue
                        if not isinstance(row, dict):
                            continue
                        digest = row.get("content_hash")
                        category = row.get("category")
                        if is_content_hash(digest) and isinstance(category, str):
                            categories[digest] = category
            self._categories = categories
            return categories

    def _remember_category(self, digest: str, category: str | None) -> None:
        if category is None:
            return
        categories = self._load_categories()
        with self._categories_lock:
            if categories.get(digest) == category:
                return
            categories[digest] = category
            try:
                with self._category_index_path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps({"category": category, "content_hash": digest}))
                    handle.write("\n")
            except OSError as error:
                raise translate_os_error(error, str(self._category_index_path)) from error


def _unlink_quietly(path: Path) -> bool:
    try:
        path.unlink()
    except OSError:
        return False
    return True
