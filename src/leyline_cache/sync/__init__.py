"""Sync state, delta detection and the git sync engine."""

from .comparator import FileComparator, changed_paths, sha256_file
from .engine import GitSyncEngine
from .git import GitProvider, SubprocessGitProvider
from .models import (
    CONFLICT_BOTH_MODIFIED,
    CONFLICT_LOCAL_ADDED,
    STATE_FAILED,
    STATE_FETCHING,
    STATE_FINALIZING,
    STATE_IDLE,
    STATE_POPULATING,
    STATE_SYNCED,
    STATUS_ADDED,
    STATUS_MODIFIED,
    STATUS_REMOVED,
    STATUS_UNMODIFIED,
    FetchedFile,
    FileDelta,
    FileFailure,
    SyncManifest,
    SyncResult,
    UpdateConflict,
    UpdatePlan,
)
from .state import MANIFEST_FILENAME, SyncState

__all__ = [
    "CONFLICT_BOTH_MODIFIED",
    "CONFLICT_LOCAL_ADDED",
    "FetchedFile",
    "FileComparator",
    "FileDelta",
    "FileFailure",
    "GitProvider",
    "GitSyncEngine",
    "MANIFEST_FILENAME",
    "STATE_FAILED",
    "STATE_FETCHING",
    "STATE_FINALIZING",
    "STATE_IDLE",
    "STATE_POPULATING",
    "STATE_SYNCED",
    "STATUS_ADDED",
    "STATUS_MODIFIED",
    "STATUS_REMOVED",
    "STATUS_UNMODIFIED",
    "SubprocessGitProvider",
    "SyncManifest",
    "SyncResult",
    "SyncState",
    "UpdateConflict",
    "UpdatePlan",
    "changed_paths",
    "sha256_file",
]
