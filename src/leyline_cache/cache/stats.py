"""Hit/miss counters with a computed hit ratio."""

from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass
from pathlib import Path


@dataclass(slots=True, frozen=True)
class CacheStatsSnapshot:
    """Point-in-time copy of cache counters."""

    hits: int
    misses: int
    puts: int
    hit_ratio: float
    total_bytes_served: int


class CacheStats:
    """Process-wide cache counters; pass one instance through the call chain."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._puts = 0
        self._bytes_served = 0

    def record_hit(self, bytes_served: int = 0) -> None:
        """Count one cache hit and the bytes it served."""
        with self._lock:
            self._hits += 1
            self._bytes_served += bytes_served

    def record_miss(self) -> None:
        """Count one cache miss."""
        with self._lock:
            self._misses += 1

    def record_put(self) -> None:
        """Count one successful store."""
        with self._lock:
            self._puts += 1

    def hit_ratio(self) -> float:
        """Return hits / (hits + misses), or 0.0 before any lookup."""
        with self._lock:
            return _ratio(self._hits, self._misses)

    def snapshot(self) -> CacheStatsSnapshot:
        """Return an immutable copy of the counters."""
        with self._lock:
            return CacheStatsSnapshot(
                hits=self._hits,
                misses=self._misses,
                puts=self._puts,
                hit_ratio=_ratio(self._hits, self._misses),
                total_bytes_served=self._bytes_served,
            )

    def reset(self) -> None:
        """Zero all counters."""
        with self._lock:
            self._hits = 0
            self._misses = 0
            self._puts = 0
            self._bytes_served = 0

    def save(self, path: Path) -> None:
        """Persist the current snapshot as stats.json."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(asdict(self.snapshot()), handle, sort_keys=True)
            handle.write("\n")
        tmp.replace(path)

    @classmethod
    def load(cls, path: Path) -> CacheStats:
        """Restore counters from stats.json; missing or invalid files start at zero."""
        stats = cls()
        if not path.exists():
            return stats
        try:
            with path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError):
            return stats
        if not isinstance(payload, dict):
            return stats
        stats._hits = _as_count(payload.get("hits"))
        stats._misses = _as_count(payload.get("misses"))
        stats._puts = _as_count(payload.get("puts"))
        stats._bytes_served = _as_count(payload.get("total_bytes_served"))
        return stats

    def format_stats(self, directory_stats: dict[str, object] | None = None) -> str:
        """Render a human-readable report for --stats output."""
        snapshot = self.snapshot()
        lines = [
            "Cache Performance:",
            f"  Cache hits: {snapshot.hits}",
            f"  Cache misses: {snapshot.misses}",
            f"  Cache puts: {snapshot.puts}",
            f"  Hit ratio: {snapshot.hit_ratio * 100:.1f}%",
            f"  Bytes served: {format_bytes(snapshot.total_bytes_served)}",
        ]
        if directory_stats:
            size = directory_stats.get("size")
            lines.extend(
                [
                    "",
                    "Cache Directory:",
                    f"  Location: {directory_stats.get('path')}",
                    f"  Size: {format_bytes(size if isinstance(size, int) else 0)}",
                    f"  Files: {directory_stats.get('file_count')}",
                    f"  Utilization: {directory_stats.get('utilization_percent')}%",
                ]
            )
        return "\n".join(lines)


def format_bytes(size: int) -> str:
    """Format a byte count with binary units."""
    if size <= 0:
        return "0 B"
    units = ("B", "KB", "MB", "GB")
    value = float(size)
    unit_index = 0
    while value >= 1024 and unit_index < len(units) - 1:
        value /= 1024
        unit_index += 1
    return f"{value:.1f} {units[unit_index]}"


def _ratio(hits: int, misses: int) -> float:
    total = hits + misses
    if total == 0:
        return 0.0
    return hits / total


def _as_count(value: object) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    return 0
