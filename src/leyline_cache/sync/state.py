"""Persisted sync manifest with atomic replace semantics."""

from __future__ import annotations

import contextlib
import json
import os
import threading
import time
from collections.abc import Mapping
from pathlib import Path

from leyline_cache.cache.store import is_content_hash
from leyline_cache.errors import InvalidManifestError, ManifestWriteError
from leyline_cache.logging.events import utc_timestamp
from leyline_cache.sync.models import MANIFEST_SCHEMA_VERSION, SyncManifest

MANIFEST_FILENAME = "manifest.json"


class SyncState:
    """Loads and atomically saves the manifest of the last successful sync.

    Concurrent writers from separate processes are not coordinated: the last
    completed ``os.replace`` wins. Readers never observe a partial file.
    """

    def __init__(self, cache_dir: Path) -> None:
        self._cache_dir = cache_dir
        self._path = cache_dir / MANIFEST_FILENAME

    @property
    def path(self) -> Path:
        """Return manifest location."""
        return self._path

    def exists(self) -> bool:
        """Return True when a manifest has been committed."""
        return self._path.exists()

    def load(self) -> SyncManifest | None:
        """Return the committed manifest, or None before the first sync."""
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as error:
            raise InvalidManifestError(
                f"Sync state could not be read: {error}",
                path=str(self._path),
            ) from error
        return _manifest_from_payload(payload, str(self._path))

    def save(self, manifest: SyncManifest) -> None:
        """Write the manifest via temp file and atomic rename."""
        validate_entries(manifest.entries)
        tmp = self._path.with_name(
            f"{MANIFEST_FILENAME}.{os.getpid()}.{threading.get_ident()}.tmp"
        )
        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as handle:
                json.dump(manifest.to_dict(), handle, sort_keys=True, indent=2)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp, self._path)
        except OSError as error:
            with contextlib.suppress(OSError):
                tmp.unlink(missing_ok=True)
            raise ManifestWriteError(
                f"Failed to write sync manifest: {error.strerror or error}",
                path=str(self._path),
            ) from error

    def record_sync(
        self,
        categories: tuple[str, ...],
        entries: Mapping[str, str],
        metadata: dict[str, object] | None = None,
    ) -> SyncManifest:
        """Build a manifest stamped with the current time and commit it."""
        manifest = SyncManifest(
            synced_at=utc_timestamp(),
            categories=tuple(sorted(set(categories))),
            entries=dict(sorted(entries.items())),
            metadata={"total_files": len(entries), **(metadata or {})},
        )
        self.save(manifest)
        return manifest

    def clear(self) -> bool:
        """Delete the manifest; returns True when one existed."""
        try:
            self._path.unlink()
        except FileNotFoundError:
            return False
        return True

    def age_seconds(self) -> float | None:
        """Return seconds since the manifest was last written."""
        try:
            return time.time() - self._path.stat().st_mtime
        except OSError:
            return None


def validate_entries(entries: Mapping[str, str]) -> None:
    """Raise ValueError unless every entry maps a path to a SHA-256 hex digest."""
    for path, digest in entries.items():
        if not isinstance(path, str) or not path:
            raise ValueError(f"Invalid manifest path: {path!r}")
        if not is_content_hash(digest):
            raise ValueError(f"Invalid hash for file {path}: {digest!r}")


def _manifest_from_payload(payload: object, path: str) -> SyncManifest:
    if not isinstance(payload, dict):
        raise InvalidManifestError("Invalid state structure.", path=path)
    version = payload.get("version")
    if not isinstance(version, int) or isinstance(version, bool):
        raise InvalidManifestError("Missing version.", path=path)
    if version > MANIFEST_SCHEMA_VERSION:
        raise InvalidManifestError(
            f"Incompatible state version {version} (expected <= {MANIFEST_SCHEMA_VERSION}).",
            path=path,
        )
    synced_at = payload.get("synced_at")
    if not isinstance(synced_at, str):
        raise InvalidManifestError("Missing synced_at timestamp.", path=path)
    categories = payload.get("categories")
    if not isinstance(categories, list) or not all(isinstance(c, str) for c in categories):
        raise InvalidManifestError("Missing categories.", path=path)
    entries = payload.get("entries")
    if not isinstance(entries, dict):
        raise InvalidManifestError("Missing entries.", path=path)
    try:
        validate_entries(entries)
    except ValueError as error:
        raise InvalidManifestError(str(error), path=path) from error
    metadata = payload.get("metadata", {})
    if not isinstance(metadata, dict):
        metadata = {}
    return SyncManifest(
        synced_at=synced_at,
        categories=tuple(categories),
        entries=dict(sorted(entries.items())),
        version=version,
        metadata=metadata,
    )
