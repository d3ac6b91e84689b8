"""Structured JSONL event log for cache and sync operations."""

from __future__ import annotations

import json
import os
import sys
from collections import deque
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

LEVEL_INFO = "info"
LEVEL_WARNING = "warning"
LEVEL_ERROR = "error"

_VERBATIM_TEXT = frozenset(
    {"action", "category", "error_class", "operation", "path", "ref", "state"}
)


@dataclass(slots=True, frozen=True)
class CacheEvent:
    """Sanitized representation of one cache or sync event."""

    timestamp: str
    event: str
    level: str
    operation: str | None
    category: str | None
    message: str
    metadata: dict[str, object]


def utc_timestamp() -> str:
    """Current time as a millisecond ISO-8601 string with a Z suffix."""
    now = datetime.now(tz=UTC)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def sanitize_metadata(metadata: dict[str, object]) -> dict[str, object]:
    """Keep paths and counters, reduce free text and containers to shape only."""
    cleaned: dict[str, object] = {}
    for name in sorted(metadata):
        cleaned.update(_describe(name, metadata[name]))
    return cleaned


class JsonlEventLogger:
    """Append-only JSONL event logger and bounded reader."""

    def __init__(
        self,
        path: Path,
        enabled: bool | None = None,
        echo: TextIO | None = None,
    ) -> None:
        self._path = path
        if enabled is None:
            enabled = os.getenv("LEYLINE_CACHE_WARNINGS", "").strip().lower() != "false"
        self._enabled = enabled
        self._echo = echo

    @property
    def path(self) -> Path:
        """Location of the events file."""
        return self._path

    def log(
        self,
        event: str,
        message: str,
        level: str = LEVEL_INFO,
        operation: str | None = None,
        category: str | None = None,
        metadata: dict[str, object] | None = None,
    ) -> CacheEvent:
        """Build, sanitize, and append one event."""
        entry = CacheEvent(
            timestamp=utc_timestamp(),
            event=event,
            level=level,
            operation=operation,
            category=category,
            message=message,
            metadata=sanitize_metadata(metadata or {}),
        )
        self.append(entry)
        return entry

    def append(self, event: CacheEvent) -> None:
        """Append an event as one JSON object per line; never raises."""
        if self._echo is not None and event.level != LEVEL_INFO:
            self._echo.write(_echo_line(event))
        if not self._enabled:
            return
        line = json.dumps(asdict(event), sort_keys=True) + "\n"
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as sink:
                sink.write(line)
        except OSError as error:
            if self._echo is not None:
                self._echo.write(f"WARNING: [Cache] event log unavailable: {error}\n")

    def read(self, since: str | None = None, limit: int = 50) -> list[dict[str, object]]:
        """Return the newest `limit` events at or after `since`, oldest first."""
        if limit < 1 or not self._path.is_file():
            return []
        window: deque[dict[str, object]] = deque(maxlen=limit)
        with open(self._path, encoding="utf-8") as source:
            for raw in source:
                parsed = _parse_line(raw)
                if parsed is None:
                    continue
                if since is not None and not _at_or_after(parsed, since):
                    continue
                window.append(parsed)
        return list(window)


def stderr_echo(verbose: bool) -> TextIO | None:
    """Return stderr when human-readable warnings are requested."""
    return sys.stderr if verbose else None


def _describe(name: str, value: object) -> dict[str, object]:
    if isinstance(value, str):
        if name in _VERBATIM_TEXT:
            return {name: value}
        return {f"{name}_present": True, f"{name}_length": len(value)}
    if value is None or isinstance(value, (bool, int, float)):
        return {name: value}
    if isinstance(value, (list, tuple)):
        return {f"{name}_type": "list", f"{name}_length": len(value)}
    if isinstance(value, dict):
        return {f"{name}_type": "dict", f"{name}_keys": sorted(map(str, value))}
    return {f"{name}_type": type(value).__name__}


def _echo_line(event: CacheEvent) -> str:
    label = "ERROR" if event.level == LEVEL_ERROR else "WARNING"
    where = f" (operation: {event.operation})" if event.operation else ""
    return f"{label}: [Cache] {event.message}{where}\n"


def _parse_line(raw: str) -> dict[str, object] | None:
    text = raw.strip()
    if not text:
        return None
    try:
        loaded = json.loads(text)
    except ValueError:
        return None
    return loaded if isinstance(loaded, dict) else None


def _at_or_after(entry: dict[str, object], since: str) -> bool:
    stamp = entry.get("timestamp")
    return isinstance(stamp, str) and stamp >= since
