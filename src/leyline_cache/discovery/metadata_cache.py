"""Category and search metadata over the synced docs tree, warmed in the background."""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path

from leyline_cache.cache.file_cache import FileCache
from leyline_cache.cache.store import is_content_hash
from leyline_cache.discovery.documents import DocumentMetadata, build_document
from leyline_cache.discovery.search import SearchIndex, SearchResult
from leyline_cache.errors import LeylineError, translate_os_error
from leyline_cache.layout import category_for_path, is_document_path
from leyline_cache.logging.events import LEVEL_WARNING, JsonlEventLogger
from leyline_cache.sync.comparator import FileComparator

METADATA_FILENAME = "metadata.json"
METADATA_SCHEMA_VERSION = 2
DEFAULT_SEARCH_LIMIT = 10


class MetadataCache:
    """Maintains DocumentMetadata and a SearchIndex keyed by docs-relative path."""

    def __init__(
        self,
        docs_root: Path,
        file_cache: FileCache | None = None,
        cache_dir: Path | None = None,
        workers: int = 2,
        default_limit: int = DEFAULT_SEARCH_LIMIT,
        logger: JsonlEventLogger | None = None,
        comparator: FileComparator | None = None,
    ) -> None:
        self._docs_root = docs_root
        self._file_cache = file_cache
        self._persist_path = cache_dir / METADATA_FILENAME if cache_dir is not None else None
        self._default_limit = default_limit
        self._logger = logger
        self._comparator = comparator or FileComparator()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, workers),
            thread_name_prefix="leyline-metadata",
        )
        self._lock = threading.RLock()
        self._index = SearchIndex()
        self._unparsed: dict[str, str] = {}
        self._categories: tuple[str, ...] | None = None
        self._warm_future: Future[int] | None = None
        self._warm = False
        self._hydrated = False
        self._hits = 0
        self._misses = 0
        self._timings: dict[str, list[float]] = {}

    def close(self) -> None:
        """Stop the warming pool; pending work is finished first."""
        self._executor.shutdown(wait=True)

    def __enter__(self) -> MetadataCache:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def warm(self, categories: tuple[str, ...] | None = None) -> Future[int]:
        """Start a background build; returns a Future resolving to the document count."""
        with self._lock:
            if self._warm_future is not None and not self._warm_future.done():
                return self._warm_future
            self._categories = tuple(sorted(set(categories))) if categories else None
            self._warm = False
            self._warm_future = self._executor.submit(self._build)
            return self._warm_future

    def is_warm(self) -> bool:
        """Return True once a build has completed."""
        return self._warm

    def wait(self, timeout: float | None = None) -> bool:
        """Block until warming finishes; returns False on timeout."""
        future = self._warm_future
        if future is None:
            return self._warm
        try:
            future.result(timeout=timeout)
        except TimeoutError:
            return False
        return True

    def list_categories(self, wait: bool = False) -> list[str]:
        """Return sorted categories with at least one document."""
        with self._timed("list_categories"):
            self._ensure_ready(wait)
            with self._lock:
                return sorted({item.category for item in self._index.documents()})

    def documents_in(self, category: str, wait: bool = False) -> list[DocumentMetadata]:
        """Return documents of one category sorted by path."""
        with self._timed("documents_in"):
            self._ensure_ready(wait)
            with self._lock:
                return [item for item in self._index.documents() if item.category == category]

    def document(self, path: str, wait: bool = False) -> DocumentMetadata | None:
        """Return metadata for one docs-relative path."""
        self._ensure_ready(wait)
        with self._lock:
            return self._index.document(path)

    def search(
        self,
        query: str,
        limit: int | None = None,
        wait: bool = False,
    ) -> list[SearchResult]:
        """Return ranked results for a free-text query."""
        with self._timed("search"):
            self._ensure_ready(wait)
            with self._lock:
                return self._index.search(query, limit or self._default_limit)

    def suggest_corrections(self, query: str, limit: int = 3) -> list[str]:
        """Return indexed tokens close to misspelled query tokens."""
        with self._timed("suggest_corrections"):
            self._ensure_ready(wait=True)
            with self._lock:
                return self._index.suggest(query, limit)

    def invalidate_paths(self, changed: dict[str, str | None]) -> None:
        """Re-derive only the named documents; None drops a path."""
        with self._timed("invalidate_paths"):
            with self._lock:
                if self._warm_future is None and not self._hydrated:
                    for metadata, weights in self._load_persisted().values():
                        self._index.add_weights(metadata, weights)
                    self._hydrated = True
                for path, digest in sorted(changed.items()):
                    if digest is None:
                        self._index.remove(path)
                        self._unparsed.pop(path, None)
                        continue
                    if not is_document_path(path):
                        continue
                    self._refresh_path(path, digest, {})
            self._persist()

    def performance_stats(self) -> dict[str, object]:
        """Return per-operation timings plus document, category and hit counters."""
        with self._lock:
            documents = self._index.documents()
            operations = {
                name: {
                    "count": len(samples),
                    "avg_ms": round(sum(samples) / len(samples), 3),
                    "min_ms": round(min(samples), 3),
                    "max_ms": round(max(samples), 3),
                }
                for name, samples in sorted(self._timings.items())
                if samples
            }
            lookups = self._hits + self._misses
            return {
                "document_count": len(documents),
                "category_count": len({item.category for item in documents}),
                "hit_ratio": self._hits / lookups if lookups else 0.0,
                "hits": self._hits,
                "misses": self._misses,
                "warm": self._warm,
                "operations": operations,
            }

    def _ensure_ready(self, wait: bool) -> None:
        future = self._warm_future
        if future is None:
            self.warm().result()
            return
        if wait:
            future.result()

    def _build(self) -> int:
        with self._timed("warm"):
            persisted = self._load_persisted()
            current = self._comparator.scan_tree(self._docs_root)
            wanted = {
                path: digest
                for path, digest in current.items()
                if is_document_path(path) and self._wanted(path)
            }
            with self._lock:
                for path in [item.path for item in self._index.documents()]:
                    if path not in wanted:
                        self._index.remove(path)
                for path in list(self._unparsed):
                    if path not in wanted:
                        del self._unparsed[path]
            for path, digest in wanted.items():
                with self._lock:
                    self._refresh_path(path, digest, persisted)
            self._persist()
            with self._lock:
                self._warm = True
                return len(self._index)

    def _refresh_path(
        self,
        path: str,
        digest: str,
        persisted: dict[str, tuple[DocumentMetadata, dict[str, int]]],
    ) -> None:
        indexed = self._index.document(path)
        if indexed is not None and indexed.content_hash == digest:
            self._hits += 1
            return
        if self._unparsed.get(path) == digest:
            self._hits += 1
            return
        stored = persisted.get(path)
        if stored is not None and stored[0].content_hash == digest:
            self._index.add_weights(stored[0], stored[1])
            self._hits += 1
            return
        self._misses += 1
        data = self._read(path, digest)
        parsed = build_document(path, data) if data is not None else None
        if parsed is None:
            self._index.remove(path)
            self._unparsed[path] = digest
            return
        self._unparsed.pop(path, None)
        self._index.add(parsed.metadata, parsed.body)

    def _read(self, path: str, digest: str) -> bytes | None:
        full_path = self._docs_root / path

        def load() -> bytes:
            try:
                return full_path.read_bytes()
            except OSError as error:
                raise translate_os_error(error, str(full_path)) from error

        try:
            if self._file_cache is None:
                return load()
            return self._file_cache.fetch(path, load, content_hash=digest)
        except LeylineError as error:
            self._warn("metadata_read_failed", f"Could not read {path}: {error.reason}", path)
            return None

    def _wanted(self, path: str) -> bool:
        if self._categories is None:
            return True
        category = category_for_path(path)
        return category in self._categories or category in ("core", "tenets")

    def _load_persisted(self) -> dict[str, tuple[DocumentMetadata, dict[str, int]]]:
        if self._persist_path is None or not self._persist_path.exists():
            return {}
        try:
            with self._persist_path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError) as error:
            self._warn("metadata_unreadable", f"Ignoring metadata cache: {error}", "")
            return {}
        if not isinstance(payload, dict) or payload.get("version") != METADATA_SCHEMA_VERSION:
            return {}
        documents = payload.get("documents")
        if not isinstance(documents, dict):
            return {}
        output: dict[str, tuple[DocumentMetadata, dict[str, int]]] = {}
        for path, item in documents.items():
            if not isinstance(item, dict):
                continue
            weights = item.get("weights")
            metadata_payload = item.get("metadata")
            if not isinstance(weights, dict) or not isinstance(metadata_payload, dict):
                continue
            try:
                metadata = DocumentMetadata.from_dict(metadata_payload)
            except ValueError:
                continue
            if metadata.path != path or not is_content_hash(metadata.content_hash):
                continue
            output[path] = (
                metadata,
                {str(token): int(weight) for token, weight in weights.items()},
            )
        return output

    def _persist(self) -> None:
        if self._persist_path is None:
            return
        with self._lock:
            documents = {
                item.path: {
                    "metadata": item.to_dict(),
                    "weights": self._index.weights(item.path) or {},
                }
                for item in self._index.documents()
            }
        payload = {"version": METADATA_SCHEMA_VERSION, "documents": documents}
        tmp = self._persist_path.with_suffix(".json.tmp")
        try:
            self._persist_path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, sort_keys=True)
                handle.write("\n")
            tmp.replace(self._persist_path)
        except OSError as error:
            self._warn("metadata_persist_failed", f"Metadata cache not saved: {error}", "")

    @contextmanager
    def _timed(self, operation: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            with self._lock:
                samples = self._timings.setdefault(operation, [])
                samples.append(elapsed_ms)
                if len(samples) > 100:
                    del samples[0]

    def _warn(self, event: str, message: str, path: str) -> None:
        if self._logger is None:
            return
        self._logger.log(
            event=event,
            message=message,
            level=LEVEL_WARNING,
            operation="discovery",
            metadata={"path": path},
        )
