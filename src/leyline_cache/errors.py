"""Typed error taxonomy with actionable recovery guidance."""

from __future__ import annotations

import errno

CATEGORY_TRANSIENT = "transient"
CATEGORY_PERMISSION = "permission"
CATEGORY_DISK_FULL = "disk_full"
CATEGORY_CORRUPTION = "corruption"
CATEGORY_NOT_FOUND = "not_found"
CATEGORY_UNKNOWN = "unknown"

_TRANSIENT_ERRNOS = frozenset(
    {
        errno.EAGAIN,
        errno.EBUSY,
        errno.EINTR,
        errno.ETIMEDOUT,
        errno.EMFILE,
        errno.ENFILE,
    }
)
_PERMISSION_ERRNOS = frozenset({errno.EACCES, errno.EPERM, errno.EROFS})
_DISK_FULL_ERRNOS = frozenset({errno.ENOSPC, errno.EDQUOT, errno.EFBIG})


class LeylineError(Exception):
    """Base error carrying a reason, a remediation hint, and an optional path."""

    category = CATEGORY_UNKNOWN

    def __init__(self, reason: str, hint: str | None = None, path: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.hint = hint
        self.path = path

    def recovery_suggestions(self) -> list[str]:
        """Return ordered, actionable suggestions for the user."""
        suggestions: list[str] = []
        if self.hint:
            suggestions.append(self.hint)
        suggestions.extend(self._default_suggestions())
        return suggestions

    def _default_suggestions(self) -> list[str]:
        return []

    def to_dict(self) -> dict[str, object]:
        """Return a serializable error envelope."""
        return {
            "type": type(self).__name__,
            "category": self.category,
            "reason": self.reason,
            "path": self.path,
            "suggestions": self.recovery_suggestions(),
        }


class TransientIOError(LeylineError):
    """Temporary I/O failure that is safe to retry."""

    category = CATEGORY_TRANSIENT

    def _default_suggestions(self) -> list[str]:
        return ["Retry the command; the resource may be temporarily busy."]


class CachePermissionError(LeylineError):
    """Cache directory or blob is not accessible to the current user."""

    category = CATEGORY_PERMISSION

    def _default_suggestions(self) -> list[str]:
        return [
            "Check ~/.cache/leyline permissions or set LEYLINE_CACHE_DIR to a writable directory.",
            "Check file permissions with 'ls -la'.",
        ]


class DiskFullError(LeylineError):
    """No space left on the device holding the cache."""

    category = CATEGORY_DISK_FULL

    def _default_suggestions(self) -> list[str]:
        suggestions = ["Free disk space or move the cache with LEYLINE_CACHE_DIR."]
        if self.path:
            suggestions.append(f"Check disk usage: df -h '{self.path}'")
        return suggestions


class CorruptionError(LeylineError):
    """Stored bytes do not match their content hash."""

    category = CATEGORY_CORRUPTION

    def _default_suggestions(self) -> list[str]:
        return ["The corrupted entry was removed; re-run the command to repopulate it."]


class NotFoundError(LeylineError):
    """Requested blob, file, or document does not exist."""

    category = CATEGORY_NOT_FOUND


class CacheIOError(LeylineError):
    """Unclassified filesystem failure."""

    category = CATEGORY_UNKNOWN

    def _default_suggestions(self) -> list[str]:
        return [
            "Re-run with --verbose for details.",
            "Clear the cache directory if the problem persists.",
        ]


class ManifestWriteError(LeylineError):
    """The sync manifest could not be committed."""

    category = CATEGORY_UNKNOWN

    def _default_suggestions(self) -> list[str]:
        return [
            "The previous manifest was left untouched; fix the cause and run sync again.",
            "Check disk space and permissions in the cache directory.",
        ]


class InvalidManifestError(LeylineError):
    """Persisted sync manifest is unreadable or structurally invalid."""

    category = CATEGORY_CORRUPTION

    def _default_suggestions(self) -> list[str]:
        suggestions = ["Run sync again to rebuild the manifest."]
        if self.path:
            suggestions.append(f"Delete the corrupted state file: rm '{self.path}'")
        return suggestions


class GitProviderError(LeylineError):
    """Remote fetch through the git provider failed."""

    category = CATEGORY_UNKNOWN

    def __init__(
        self,
        reason: str,
        hint: str | None = None,
        path: str | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(reason, hint=hint, path=path)
        self.retryable = retryable
        if retryable:
            self.category = CATEGORY_TRANSIENT

    def _default_suggestions(self) -> list[str]:
        return [
            "Check network connectivity and the remote URL.",
            "Verify git is installed and on PATH.",
        ]


class SyncFailedError(LeylineError):
    """Sync did not reach the synced state."""

    category = CATEGORY_UNKNOWN

    def __init__(
        self,
        reason: str,
        hint: str | None = None,
        failures: tuple[dict[str, str], ...] = (),
        suggestions: tuple[str, ...] = (),
    ) -> None:
        super().__init__(reason, hint=hint)
        self.failures = failures
        self.suggestions = suggestions

    def _default_suggestions(self) -> list[str]:
        return [
            *self.suggestions,
            "Check network connectivity and that the ref exists on the remote.",
            "Run sync again with --force-git to bypass the cached fast path.",
        ]

    def to_dict(self) -> dict[str, object]:
        payload = LeylineError.to_dict(self)
        payload["failures"] = [dict(item) for item in self.failures]
        return payload


class ConflictDetectedError(LeylineError):
    """Upstream changes collide with local edits made since the last sync."""

    category = CATEGORY_UNKNOWN

    def __init__(self, reason: str, conflicts: tuple[dict[str, str], ...] = ()) -> None:
        super().__init__(reason)
        self.conflicts = conflicts

    def _default_suggestions(self) -> list[str]:
        return [
            "Review conflicts with: leyline-cache update --dry-run",
            "Accept upstream changes: leyline-cache update --force",
            "Keep local changes: cancel the update and commit your edits.",
        ]

    def to_dict(self) -> dict[str, object]:
        payload = LeylineError.to_dict(self)
        payload["conflicts"] = [dict(item) for item in self.conflicts]
        return payload


class ConfigError(ValueError):
    """Raised when leyline.toml or overrides contain invalid values."""


def translate_os_error(error: OSError, path: str | None = None) -> LeylineError:
    """Map an OSError onto the cache error taxonomy."""
    target = path or (str(error.filename) if error.filename else None)
    message = error.strerror or str(error)
    code = error.errno
    if isinstance(error, FileNotFoundError) or code == errno.ENOENT:
        return NotFoundError(f"Not found: {message}", path=target)
    if isinstance(error, PermissionError) or code in _PERMISSION_ERRNOS:
        return CachePermissionError(
            f"Permission denied accessing cache: {message}",
            path=target,
        )
    if code in _DISK_FULL_ERRNOS:
        return DiskFullError(f"Disk full while writing cache: {message}", path=target)
    if isinstance(error, (BlockingIOError, InterruptedError, TimeoutError)):
        return TransientIOError(f"Temporary I/O failure: {message}", path=target)
    if code in _TRANSIENT_ERRNOS:
        return TransientIOError(f"Temporary I/O failure: {message}", path=target)
    return CacheIOError(f"Cache I/O error: {message}", path=target)


def format_error(error: LeylineError) -> str:
    """Render an error with numbered recovery suggestions."""
    lines = [f"Error: {error.reason}"]
    if error.path:
        lines.append(f"  path: {error.path}")
    lines.append(f"  category: {error.category}")
    suggestions = error.recovery_suggestions()
    if suggestions:
        lines.append("Recovery suggestions:")
        for index, suggestion in enumerate(suggestions, start=1):
            lines.append(f"  {index}. {suggestion}")
    return "\n".join(lines)
