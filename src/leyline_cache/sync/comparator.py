"""Working-copy scanning and delta detection against the sync manifest."""

from __future__ import annotations

import difflib
import hashlib
import os
import time
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from pathlib import Path

from leyline_cache.layout import DOCUMENT_SUFFIX
from leyline_cache.sync.models import (
    CONFLICT_BOTH_MODIFIED,
    CONFLICT_LOCAL_ADDED,
    DELTA_STATUSES,
    STATUS_ADDED,
    STATUS_MODIFIED,
    STATUS_REMOVED,
    STATUS_UNMODIFIED,
    FileDelta,
    SyncManifest,
    UpdateConflict,
)


@dataclass(slots=True, frozen=True)
class ScanProfile:
    """Deterministic diagnostics for one working-copy scan."""

    scanned_files: int
    hashed_files: int
    skipped_files: tuple[str, ...]
    total_seconds: float


class FileComparator:
    """Hashes the working copy and classifies paths against a manifest."""

    def scan_tree(
        self,
        root: Path,
        profile: dict[str, object] | None = None,
    ) -> dict[str, str]:
        """Hash every markdown file below root, keyed by relative posix path."""
        started = time.perf_counter()
        hashes: dict[str, str] = {}
        skipped: list[str] = []
        scanned = 0
        for relative, full_path in _walk_documents(root):
            scanned += 1
            try:
                hashes[relative] = sha256_file(full_path)
            except OSError:
                skipped.append(relative)
        if profile is not None:
            payload = ScanProfile(
                scanned_files=scanned,
                hashed_files=len(hashes),
                skipped_files=tuple(skipped),
                total_seconds=time.perf_counter() - started,
            )
            profile.update(asdict(payload))
        return dict(sorted(hashes.items()))

    def diff(
        self,
        current_tree: Mapping[str, str],
        manifest: SyncManifest | None,
    ) -> list[FileDelta]:
        """Classify the union of current and baseline paths, sorted by path."""
        baseline = manifest.entries if manifest is not None else {}
        deltas: list[FileDelta] = []
        for path in sorted(set(current_tree) | set(baseline)):
            current = current_tree.get(path)
            previous = baseline.get(path)
            if previous is None:
                status = STATUS_ADDED
            elif current is None:
                status = STATUS_REMOVED
            elif current == previous:
                status = STATUS_UNMODIFIED
            else:
                status = STATUS_MODIFIED
            deltas.append(FileDelta(path=path, status=status))
        return deltas

    def summarize(self, deltas: list[FileDelta]) -> dict[str, int]:
        """Count deltas per status; every status is present."""
        counts = {status: 0 for status in DELTA_STATUSES}
        for delta in deltas:
            counts[delta.status] += 1
        return counts

    def content_diff(
        self,
        path: str,
        baseline: bytes | None,
        current: bytes | None,
    ) -> str:
        """Return unified diff text between the synced and local versions."""
        before = _decode_lines(baseline)
        after = _decode_lines(current)
        lines = difflib.unified_diff(
            before,
            after,
            fromfile=f"a/{path}" if baseline is not None else "/dev/null",
            tofile=f"b/{path}" if current is not None else "/dev/null",
        )
        return "".join(lines)

    def plan_update(
        self,
        current_tree: Mapping[str, str],
        baseline: Mapping[str, str],
        remote: Mapping[str, str],
    ) -> tuple[list[str], list[str], list[str], list[UpdateConflict]]:
        """Three-way compare local, last-synced and upstream hashes per path."""
        added: list[str] = []
        modified: list[str] = []
        removed: list[str] = []
        conflicts: list[UpdateConflict] = []
        for path in sorted(set(baseline) | set(remote)):
            synced = baseline.get(path)
            upstream = remote.get(path)
            local = current_tree.get(path)
            if upstream is None:
                removed.append(path)
                continue
            if synced is None:
                added.append(path)
                if local is not None and local != upstream:
                    conflicts.append(UpdateConflict(path=path, kind=CONFLICT_LOCAL_ADDED))
                continue
            if upstream == synced:
                continue
            modified.append(path)
            if local is not None and local not in (synced, upstream):
                conflicts.append(UpdateConflict(path=path, kind=CONFLICT_BOTH_MODIFIED))
        return added, modified, removed, conflicts


def changed_paths(deltas: list[FileDelta]) -> list[str]:
    """Return paths whose status is anything but unmodified."""
    return [delta.path for delta in deltas if delta.status != STATUS_UNMODIFIED]


def sha256_file(path: Path) -> str:
    """Compute SHA-256 hash in chunked reads."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        while True:
            chunk = handle.read(1024 * 128)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def _walk_documents(root: Path) -> list[tuple[str, Path]]:
    output: list[tuple[str, Path]] = []
    if not root.is_dir():
        return output
    stack: list[Path] = [root]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as entries:
                ordered = sorted(entries, key=lambda item: item.name)
        except OSError:
            continue
        for entry in reversed(ordered):
            full_path = Path(entry.path)
            if entry.is_dir(follow_symlinks=False):
                stack.append(full_path)
                continue
            if not entry.is_file(follow_symlinks=False):
                continue
            if full_path.suffix.lower() != DOCUMENT_SUFFIX:
                continue
            output.append((full_path.relative_to(root).as_posix(), full_path))
    output.sort(key=lambda item: item[0])
    return output


def _decode_lines(data: bytes | None) -> list[str]:
    if data is None:
        return []
    text = data.decode("utf-8", errors="replace")
    lines = text.splitlines(keepends=True)
    if lines and not lines[-1].endswith("\n"):
        lines[-1] += "\n"
    return lines
