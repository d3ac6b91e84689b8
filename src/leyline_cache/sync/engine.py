"""Sync state machine: fetch, populate the cache and working copy, commit the manifest."""

from __future__ import annotations

import contextlib
import os
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path

from leyline_cache.cache.file_cache import FileCache
from leyline_cache.cache.handler import CacheErrorHandler
from leyline_cache.cache.store import content_hash
from leyline_cache.config import DEFAULT_CACHE_THRESHOLD, DEFAULT_REF
from leyline_cache.errors import (
    CATEGORY_UNKNOWN,
    CorruptionError,
    InvalidManifestError,
    LeylineError,
    ManifestWriteError,
    SyncFailedError,
    translate_os_error,
)
from leyline_cache.layout import (
    UnsafePathError,
    category_for_path,
    normalize_relative_path,
    sparse_paths_for,
)
from leyline_cache.logging.events import (
    LEVEL_ERROR,
    LEVEL_INFO,
    LEVEL_WARNING,
    JsonlEventLogger,
)
from leyline_cache.sync.comparator import FileComparator
from leyline_cache.sync.git import GitProvider
from leyline_cache.sync.models import (
    STATE_FAILED,
    STATE_FETCHING,
    STATE_FINALIZING,
    STATE_IDLE,
    STATE_POPULATING,
    STATE_SYNCED,
    FetchedFile,
    FileFailure,
    SyncManifest,
    SyncResult,
    UpdatePlan,
)
from leyline_cache.sync.state import SyncState

ChangeListener = Callable[[dict[str, str | None]], None]

_FILE_ATTEMPTS = 2

_WRITE = "write"
_UNCHANGED = "unchanged"
_KEEP_LOCAL = "keep_local"


class GitSyncEngine:
    """Drives one sync from the git provider into the cache and working copy."""

    def __init__(
        self,
        provider: GitProvider,
        file_cache: FileCache,
        sync_state: SyncState,
        target_dir: Path,
        comparator: FileComparator | None = None,
        handler: CacheErrorHandler | None = None,
        logger: JsonlEventLogger | None = None,
        ref: str = DEFAULT_REF,
        cache_threshold: float = DEFAULT_CACHE_THRESHOLD,
        workers: int = 1,
        listener: ChangeListener | None = None,
    ) -> None:
        self._provider = provider
        self._file_cache = file_cache
        self._sync_state = sync_state
        self._target_dir = target_dir
        self._comparator = comparator or FileComparator()
        self._handler = handler or CacheErrorHandler(sync_state.path.parent, logger=logger)
        self._logger = logger
        self._ref = ref
        self._cache_threshold = cache_threshold
        self._workers = max(1, workers)
        self._listener = listener
        self._state = STATE_IDLE
        self._history: list[str] = [STATE_IDLE]
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        """Return the current state machine state."""
        return self._state

    @property
    def history(self) -> tuple[str, ...]:
        """Return every state entered since construction."""
        return tuple(self._history)

    def sync(
        self,
        categories: tuple[str, ...] = (),
        ref: str | None = None,
        force_git: bool = False,
        force: bool = False,
        dry_run: bool = False,
    ) -> SyncResult:
        """Run one sync and return its result; raises when no manifest is committed.

        A local file that differs from both the incoming and the last synced
        version is kept and reported in ``skipped`` unless ``force`` is set.
        ``dry_run`` fetches and reports what would happen without touching the
        cache, the working copy or the manifest.
        """
        started = time.perf_counter()
        selected = tuple(sorted(set(categories)))
        effective_ref = ref or self._ref
        sparse_paths = sparse_paths_for(selected)
        previous = self._load_previous()
        try:
            if not force_git and not dry_run:
                cached = self._serve_from_cache(previous, selected, effective_ref, started)
                if cached is not None:
                    return cached
            hit_ratio = self._cache_hit_ratio(previous)
            files = self._fetch(effective_ref, sparse_paths)
            return self._apply(
                files, previous, selected, effective_ref, hit_ratio, started, force, dry_run
            )
        except BaseException:
            if self._state != STATE_FAILED:
                self._transition(STATE_FAILED)
            raise

    def update(
        self,
        categories: tuple[str, ...] = (),
        ref: str | None = None,
        force: bool = False,
        dry_run: bool = False,
    ) -> UpdatePlan:
        """Fetch once, plan upstream changes against the last sync, apply when safe.

        The plan is applied unless ``dry_run`` is set or conflicts were found
        without ``force``; ``UpdatePlan.result`` is None when nothing was applied.
        """
        started = time.perf_counter()
        selected = tuple(sorted(set(categories)))
        effective_ref = ref or self._ref
        sparse_paths = sparse_paths_for(selected)
        previous = self._load_previous()
        try:
            hit_ratio = self._cache_hit_ratio(previous)
            files = self._fetch(effective_ref, sparse_paths)
            plan = self._plan_update(files, previous, selected, effective_ref)
            if dry_run or (plan.conflicted and not force):
                self._transition(STATE_IDLE)
                self._log(
                    "update_planned",
                    f"Update plan: {plan.total_changes} changes, {len(plan.conflicts)} conflicts.",
                    metadata={"ref": effective_ref, "count": plan.total_changes},
                )
                return plan
            result = self._apply(
                files, previous, selected, effective_ref, hit_ratio, started, force, False
            )
        except BaseException:
            if self._state != STATE_FAILED:
                self._transition(STATE_FAILED)
            raise
        return replace(plan, result=result)

    def _apply(
        self,
        files: list[FetchedFile],
        previous: SyncManifest | None,
        categories: tuple[str, ...],
        ref: str,
        hit_ratio: float,
        started: float,
        force: bool,
        dry_run: bool,
    ) -> SyncResult:
        baseline = previous.entries if previous is not None else {}
        entries, written, kept, failures = self._populate(files, baseline, force, dry_run)
        if dry_run:
            self._transition(STATE_IDLE)
            duration_ms = _elapsed_ms(started)
            self._log(
                "sync_planned",
                f"Dry run: {len(written)} files would be written at {ref}.",
                metadata={"ref": ref, "count": len(entries), "duration_ms": duration_ms},
            )
            return self._result(
                STATE_IDLE, ref, categories, entries, written, kept, failures, duration_ms, True
            )

        manifest = self._finalize(categories, entries, failures, ref, hit_ratio, started)
        self._transition(STATE_SYNCED)
        duration_ms = _elapsed_ms(started)
        self._log(
            "sync_completed",
            f"Synced {len(manifest.entries)} files at {ref}.",
            metadata={
                "ref": ref,
                "count": len(manifest.entries),
                "written": len(written),
                "kept_local": len(kept),
                "failures": len(failures),
                "duration_ms": duration_ms,
            },
        )
        self._notify(previous, manifest)
        return self._result(
            STATE_SYNCED,
            ref,
            categories,
            manifest.entries,
            written,
            kept,
            failures,
            duration_ms,
            False,
        )

    def _result(
        self,
        state: str,
        ref: str,
        categories: tuple[str, ...],
        entries: dict[str, str],
        written: list[str],
        kept: list[str],
        failures: list[FileFailure],
        duration_ms: int,
        dry_run: bool,
    ) -> SyncResult:
        return SyncResult(
            state=state,
            ref=ref,
            categories=categories,
            entries=dict(sorted(entries.items())),
            written=tuple(sorted(written)),
            failures=tuple(sorted(failures, key=lambda item: item.path)),
            category_counts=_category_counts(entries),
            duration_ms=duration_ms,
            git_operations_skipped=False,
            stats=self._file_cache.stats.snapshot(),
            skipped=tuple(sorted(kept)),
            dry_run=dry_run,
        )

    def _serve_from_cache(
        self,
        previous: SyncManifest | None,
        categories: tuple[str, ...],
        ref: str,
        started: float,
    ) -> SyncResult | None:
        if previous is None or not previous.entries:
            return None
        if previous.categories != categories or previous.metadata.get("ref") != ref:
            return None
        hit_ratio = self._cache_hit_ratio(previous)
        if hit_ratio < self._cache_threshold:
            return None
        current = self._comparator.scan_tree(self._target_dir)
        if current != previous.entries:
            return None
        self._transition(STATE_SYNCED)
        duration_ms = _elapsed_ms(started)
        self._log(
            "sync_skipped",
            f"Serving from cache ({hit_ratio * 100:.1f}% hit ratio).",
            metadata={"ref": ref, "count": len(previous.entries), "duration_ms": duration_ms},
        )
        return SyncResult(
            state=STATE_SYNCED,
            ref=ref,
            categories=categories,
            entries=dict(previous.entries),
            written=(),
            failures=(),
            category_counts=_category_counts(previous.entries),
            duration_ms=duration_ms,
            git_operations_skipped=True,
            stats=self._file_cache.stats.snapshot(),
        )

    def _fetch(self, ref: str, sparse_paths: tuple[str, ...]) -> list[FetchedFile]:
        self._transition(STATE_FETCHING)
        try:
            return self._handler.run(
                lambda: self._provider.fetch(ref, sparse_paths),
                context={"operation": "fetch", "ref": ref},
            )
        except LeylineError as error:
            self._transition(STATE_FAILED)
            self._log(
                "sync_failed",
                f"Fetch failed: {error.reason}",
                level=LEVEL_ERROR,
                category=error.category,
                metadata={"ref": ref, "error_class": type(error).__name__},
            )
            raise SyncFailedError(
                f"Sync failed while fetching {ref}: {error.reason}",
                suggestions=tuple(error.recovery_suggestions()),
            ) from error

    def _plan_update(
        self,
        files: list[FetchedFile],
        previous: SyncManifest | None,
        categories: tuple[str, ...],
        ref: str,
    ) -> UpdatePlan:
        remote: dict[str, str] = {}
        for fetched in files:
            try:
                path = normalize_relative_path(fetched.path)
            except UnsafePathError:
                continue
            remote[path] = content_hash(fetched.data)
        baseline = previous.entries if previous is not None else {}
        current = self._comparator.scan_tree(self._target_dir)
        added, modified, removed, conflicts = self._comparator.plan_update(
            current, baseline, remote
        )
        return UpdatePlan(
            ref=ref,
            categories=categories,
            added=tuple(added),
            modified=tuple(modified),
            removed=tuple(removed),
            conflicts=tuple(conflicts),
            baseline_exists=previous is not None,
        )

    def _populate(
        self,
        files: list[FetchedFile],
        baseline: dict[str, str],
        force: bool,
        dry_run: bool,
    ) -> tuple[dict[str, str], list[str], list[str], list[FileFailure]]:
        self._transition(STATE_POPULATING)
        entries: dict[str, str] = {}
        written: list[str] = []
        kept: list[str] = []
        failures: list[FileFailure] = []

        def populate(fetched: FetchedFile) -> tuple[str, str, str] | FileFailure:
            return self._populate_one(fetched, baseline, force, dry_run)

        if self._workers > 1 and len(files) > 1:
            with ThreadPoolExecutor(max_workers=self._workers) as pool:
                outcomes = list(pool.map(populate, files))
        else:
            outcomes = [populate(item) for item in files]
        for outcome in outcomes:
            if isinstance(outcome, FileFailure):
                failures.append(outcome)
                self._log(
                    "sync_file_skipped",
                    f"Skipped {outcome.path}: {outcome.reason}",
                    level=LEVEL_WARNING,
                    category=outcome.category,
                    metadata={"path": outcome.path},
                )
                continue
            path, digest, action = outcome
            entries[path] = digest
            if action == _WRITE:
                written.append(path)
            elif action == _KEEP_LOCAL:
                kept.append(path)
                self._log(
                    "sync_local_kept",
                    f"Kept local changes in {path}; use --force to overwrite.",
                    level=LEVEL_WARNING,
                    metadata={"path": path},
                )
        return entries, written, kept, failures

    def _populate_one(
        self,
        fetched: FetchedFile,
        baseline: dict[str, str],
        force: bool,
        dry_run: bool,
    ) -> tuple[str, str, str] | FileFailure:
        try:
            path = normalize_relative_path(fetched.path)
        except UnsafePathError as error:
            return FileFailure(path=fetched.path, reason=str(error), category=CATEGORY_UNKNOWN)
        attempt = 1
        while True:
            try:
                return self._store_file(path, fetched, baseline.get(path), force, dry_run)
            except LeylineError as error:
                if attempt >= _FILE_ATTEMPTS:
                    return FileFailure(path=path, reason=error.reason, category=error.category)
                attempt += 1

    def _store_file(
        self,
        path: str,
        fetched: FetchedFile,
        synced: str | None,
        force: bool,
        dry_run: bool,
    ) -> tuple[str, str, str]:
        digest = content_hash(fetched.data)
        if fetched.content_hash is not None and fetched.content_hash != digest:
            raise CorruptionError(
                f"Fetched content does not match its declared hash: {path}",
                path=path,
            )
        action = self._local_action(path, fetched.data, synced, force)
        if dry_run:
            return path, digest, action
        self._file_cache.put(fetched.data, key=path, category=category_for_path(path))
        if action == _WRITE:
            self._write_working_copy(path, fetched.data)
        return path, digest, action

    def _local_action(self, path: str, data: bytes, synced: str | None, force: bool) -> str:
        destination = self._target_dir / path
        try:
            local = destination.read_bytes()
        except FileNotFoundError:
            return _WRITE
        except OSError as error:
            raise translate_os_error(error, str(destination)) from error
        if local == data:
            return _UNCHANGED
        if force or content_hash(local) == synced:
            return _WRITE
        return _KEEP_LOCAL

    def _write_working_copy(self, path: str, data: bytes) -> None:
        destination = self._target_dir / path
        tmp = destination.with_name(
            f".{destination.name}.{os.getpid()}.{threading.get_ident()}.tmp"
        )
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, destination)
        except OSError as error:
            with contextlib.suppress(OSError):
                tmp.unlink(missing_ok=True)
            raise translate_os_error(error, str(destination)) from error

    def _finalize(
        self,
        categories: tuple[str, ...],
        entries: dict[str, str],
        failures: list[FileFailure],
        ref: str,
        hit_ratio: float,
        started: float,
    ) -> SyncManifest:
        self._transition(STATE_FINALIZING)
        store = self._file_cache.store
        verified: dict[str, str] = {}
        for path, digest in sorted(entries.items()):
            if store.has(digest):
                verified[path] = digest
                continue
            failures.append(
                FileFailure(
                    path=path,
                    reason="Content was written locally but could not be cached.",
                    category=CATEGORY_UNKNOWN,
                )
            )
        self._file_cache.flush()
        metadata: dict[str, object] = {
            "ref": ref,
            "cache_hit_ratio": round(hit_ratio, 4),
            "sync_duration_ms": _elapsed_ms(started),
        }
        try:
            return self._sync_state.record_sync(categories, verified, metadata=metadata)
        except ManifestWriteError as error:
            self._transition(STATE_FAILED)
            self._log(
                "sync_failed",
                f"Manifest commit failed: {error.reason}",
                level=LEVEL_ERROR,
                category=error.category,
                metadata={"ref": ref, "path": error.path or ""},
            )
            raise

    def _cache_hit_ratio(self, previous: SyncManifest | None) -> float:
        if previous is None or not previous.entries:
            return 0.0
        store = self._file_cache.store
        hits = sum(1 for digest in previous.entries.values() if store.has(digest))
        return hits / len(previous.entries)

    def _load_previous(self) -> SyncManifest | None:
        try:
            return self._sync_state.load()
        except InvalidManifestError as error:
            self._log(
                "manifest_invalid",
                f"Ignoring unreadable manifest: {error.reason}",
                level=LEVEL_WARNING,
                category=error.category,
                metadata={"path": error.path or ""},
            )
            return None

    def _notify(self, previous: SyncManifest | None, manifest: SyncManifest) -> None:
        if self._listener is None:
            return
        before = previous.entries if previous is not None else {}
        changed: dict[str, str | None] = {}
        for path in sorted(set(before) | set(manifest.entries)):
            current = manifest.entries.get(path)
            if before.get(path) != current:
                changed[path] = current
        if changed:
            self._listener(changed)

    def _transition(self, state: str) -> None:
        with self._lock:
            self._state = state
            self._history.append(state)

    def _log(
        self,
        event: str,
        message: str,
        level: str = LEVEL_INFO,
        category: str | None = None,
        metadata: dict[str, object] | None = None,
    ) -> None:
        if self._logger is None:
            return
        self._logger.log(
            event=event,
            message=message,
            level=level,
            operation="sync",
            category=category,
            metadata=metadata,
        )


def _category_counts(entries: dict[str, str]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for path in entries:
        category = category_for_path(path)
        counts[category] = counts.get(category, 0) + 1
    return dict(sorted(counts.items()))


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
