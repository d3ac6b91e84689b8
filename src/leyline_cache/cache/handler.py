"""Error classification and retry/fallback/abort policy for cache operations."""

from __future__ import annotations

import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from leyline_cache.errors import (
    CATEGORY_CORRUPTION,
    CATEGORY_DISK_FULL,
    CATEGORY_NOT_FOUND,
    CATEGORY_TRANSIENT,
    CATEGORY_UNKNOWN,
    LeylineError,
    translate_os_error,
)
from leyline_cache.logging.events import LEVEL_ERROR, LEVEL_WARNING, JsonlEventLogger

ACTION_RETRY = "retry"
ACTION_FALLBACK = "fallback"
ACTION_ABORT = "abort"

LARGE_CACHE_BYTES = 500 * 1024 * 1024

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class Action:
    """Decision produced for one failed cache operation."""

    kind: str
    category: str
    attempt: int
    delay_seconds: float
    message: str
    suggestions: tuple[str, ...]


class CacheErrorHandler:
    """Classifies cache failures and decides whether to retry, fall back, or abort."""

    def __init__(
        self,
        cache_dir: Path,
        logger: JsonlEventLogger | None = None,
        max_attempts: int = 3,
        base_delay_seconds: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._cache_dir = cache_dir
        self._logger = logger
        self._max_attempts = max_attempts
        self._base_delay_seconds = base_delay_seconds
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        """Return the transient retry budget."""
        return self._max_attempts

    def classify(self, error: BaseException) -> str:
        """Return the error category used to pick an action."""
        if isinstance(error, LeylineError):
            return error.category
        if isinstance(error, OSError):
            return translate_os_error(error).category
        return CATEGORY_UNKNOWN

    def handle(
        self,
        error: BaseException,
        context: dict[str, object] | None = None,
        attempt: int = 1,
    ) -> Action:
        """Map an error and attempt number onto a retry, fallback, or abort action."""
        category = self.classify(error)
        message = _error_message(error)
        if category == CATEGORY_CORRUPTION:
            if attempt <= 1:
                action = self._action(ACTION_RETRY, category, attempt, 0.0, message)
            else:
                action = self._action(ACTION_FALLBACK, category, attempt, 0.0, message)
        elif category == CATEGORY_TRANSIENT:
            if attempt < self._max_attempts:
                delay = self._base_delay_seconds * (2 ** (attempt - 1))
                action = self._action(ACTION_RETRY, category, attempt, delay, message)
            else:
                action = self._action(ACTION_FALLBACK, category, attempt, 0.0, message)
        elif category == CATEGORY_NOT_FOUND:
            action = self._action(ACTION_FALLBACK, category, attempt, 0.0, message)
        elif category == CATEGORY_DISK_FULL:
            action = self._action(
                ACTION_ABORT,
                category,
                attempt,
                0.0,
                "Disk full: the cache cannot be repaired automatically.",
                self._suggestions(error),
            )
        else:
            action = self._action(
                ACTION_ABORT, category, attempt, 0.0, message, self._suggestions(error)
            )
        self._log(error, action, context or {})
        return action

    def run(
        self,
        operation: Callable[[], T],
        context: dict[str, object] | None = None,
        fallback: Callable[[], T] | None = None,
    ) -> T:
        """Run an operation under the retry/fallback/abort policy."""
        attempt = 1
        while True:
            try:
                return operation()
            except (LeylineError, OSError) as error:
                action = self.handle(error, context, attempt)
                if action.kind == ACTION_RETRY:
                    if action.delay_seconds > 0:
                        self._sleep(action.delay_seconds)
                    attempt += 1
                    continue
                if action.kind == ACTION_FALLBACK and fallback is not None:
                    return fallback()
                if isinstance(error, LeylineError):
                    raise
                raise translate_os_error(error) from error

    def check_cache_health(self, max_bytes: int = LARGE_CACHE_BYTES) -> list[dict[str, object]]:
        """Report missing, unreadable, unwritable or oversized cache directories."""
        issues: list[dict[str, object]] = []
        path = str(self._cache_dir)
        if not self._cache_dir.is_dir():
            issues.append({"type": "missing_directory", "path": path})
            return issues
        if not os.access(self._cache_dir, os.R_OK):
            issues.append({"type": "not_readable", "path": path})
        if not os.access(self._cache_dir, os.W_OK):
            issues.append({"type": "not_writable", "path": path})
        size = 0
        for root, _, files in os.walk(self._cache_dir):
            for name in files:
                try:
                    size += os.stat(os.path.join(root, name)).st_size
                except OSError:
                    continue
        if size > max_bytes:
            issues.append({"type": "large_cache", "path": path, "size": size})
        return issues

    def _action(
        self,
        kind: str,
        category: str,
        attempt: int,
        delay_seconds: float,
        message: str,
        suggestions: tuple[str, ...] = (),
    ) -> Action:
        return Action(
            kind=kind,
            category=category,
            attempt=attempt,
            delay_seconds=delay_seconds,
            message=message,
            suggestions=suggestions,
        )

    def _suggestions(self, error: BaseException) -> tuple[str, ...]:
        suggestions: list[str] = []
        if isinstance(error, LeylineError):
            suggestions.extend(error.recovery_suggestions())
        elif isinstance(error, OSError):
            suggestions.extend(translate_os_error(error).recovery_suggestions())
        location = f"Check {self._cache_dir} permissions or set LEYLINE_CACHE_DIR."
        if location not in suggestions:
            suggestions.append(location)
        return tuple(suggestions)

    def _log(self, error: BaseException, action: Action, context: dict[str, object]) -> None:
        if self._logger is None:
            return
        level = LEVEL_ERROR if action.kind == ACTION_ABORT else LEVEL_WARNING
        operation = context.get("operation")
        metadata = {key: value for key, value in context.items() if key != "operation"}
        metadata["action"] = action.kind
        metadata["attempt"] = action.attempt
        metadata["error_class"] = type(error).__name__
        self._logger.log(
            event="cache_error" if level == LEVEL_ERROR else "cache_warning",
            message=action.message,
            level=level,
            operation=operation if isinstance(operation, str) else None,
            category=action.category,
            metadata=metadata,
        )


def _error_message(error: BaseException) -> str:
    if isinstance(error, LeylineError):
        return error.reason
    if isinstance(error, OSError):
        return translate_os_error(error).reason
    return str(error) or type(error).__name__

