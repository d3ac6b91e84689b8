"""Typed models for sync state and deltas."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field

from leyline_cache.cache.stats import CacheStatsSnapshot

MANIFEST_SCHEMA_VERSION = 1

STATUS_UNMODIFIED = "unmodified"
STATUS_MODIFIED = "modified"
STATUS_ADDED = "added"
STATUS_REMOVED = "removed"
DELTA_STATUSES = (STATUS_ADDED, STATUS_MODIFIED, STATUS_REMOVED, STATUS_UNMODIFIED)

STATE_IDLE = "idle"
STATE_FETCHING = "fetching"
STATE_POPULATING = "populating"
STATE_FINALIZING = "finalizing"
STATE_SYNCED = "synced"
STATE_FAILED = "failed"

CONFLICT_BOTH_MODIFIED = "both_modified"
CONFLICT_LOCAL_ADDED = "local_added"


@dataclass(slots=True, frozen=True)
class FetchedFile:
    """One file returned by the git provider, relative to the docs root."""

    path: str
    data: bytes
    content_hash: str | None = None


@dataclass(slots=True, frozen=True)
class SyncManifest:
    """Last-known-synced baseline for one working directory."""

    synced_at: str
    categories: tuple[str, ...]
    entries: dict[str, str]
    version: int = MANIFEST_SCHEMA_VERSION
    metadata: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return the JSON document persisted as manifest.json."""
        return {
            "version": self.version,
            "synced_at": self.synced_at,
            "categories": list(self.categories),
            "entries": dict(sorted(self.entries.items())),
            "metadata": dict(self.metadata),
        }


@dataclass(slots=True, frozen=True)
class FileDelta:
    """Classification of one tracked path against the manifest."""

    path: str
    status: str


@dataclass(slots=True, frozen=True)
class FileFailure:
    """A fetched file that was skipped during population."""

    path: str
    reason: str
    category: str


@dataclass(slots=True, frozen=True)
class SyncResult:
    """Outcome of one sync attempt."""

    state: str
    ref: str
    categories: tuple[str, ...]
    entries: dict[str, str]
    written: tuple[str, ...]
    failures: tuple[FileFailure, ...]
    category_counts: dict[str, int]
    duration_ms: int
    git_operations_skipped: bool
    stats: CacheStatsSnapshot | None
    skipped: tuple[str, ...] = ()
    dry_run: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serializable summary for command output."""
        return {
            "state": self.state,
            "ref": self.ref,
            "categories": list(self.categories),
            "file_count": len(self.entries),
            "written": list(self.written),
            "skipped": list(self.skipped),
            "failures": [asdict(failure) for failure in self.failures],
            "category_counts": dict(sorted(self.category_counts.items())),
            "duration_ms": self.duration_ms,
            "git_operations_skipped": self.git_operations_skipped,
            "dry_run": self.dry_run,
            "stats": asdict(self.stats) if self.stats is not None else None,
        }


@dataclass(slots=True, frozen=True)
class UpdateConflict:
    """A path changed both locally and upstream since the last sync."""

    path: str
    kind: str

    def resolution_options(self) -> tuple[str, ...]:
        """Return the ways a user can resolve this conflict."""
        if self.kind == CONFLICT_BOTH_MODIFIED:
            return (
                "Keep the local version (no action needed).",
                "Use the upstream version: update --force.",
                "Merge the two versions manually.",
            )
        return (
            "Keep the local file.",
            "Replace it with the upstream version: update --force.",
        )


@dataclass(slots=True, frozen=True)
class UpdatePlan:
    """Upstream changes against the last sync, with local conflicts."""

    ref: str
    categories: tuple[str, ...]
    added: tuple[str, ...]
    modified: tuple[str, ...]
    removed: tuple[str, ...]
    conflicts: tuple[UpdateConflict, ...]
    baseline_exists: bool
    result: SyncResult | None = None

    @property
    def total_changes(self) -> int:
        return len(self.added) + len(self.modified) + len(self.removed)

    @property
    def conflicted(self) -> bool:
        return bool(self.conflicts)

    def to_dict(self) -> dict[str, object]:
        """Return a serializable summary for command output."""
        return {
            "ref": self.ref,
            "categories": list(self.categories),
            "added": list(self.added),
            "modified": list(self.modified),
            "removed": list(self.removed),
            "conflicts": [
                {
                    "path": item.path,
                    "kind": item.kind,
                    "resolution_options": list(item.resolution_options()),
                }
                for item in self.conflicts
            ],
            "baseline_exists": self.baseline_exists,
            "total_changes": self.total_changes,
            "applied": self.result is not None,
        }
