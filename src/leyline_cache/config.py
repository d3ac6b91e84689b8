"""Configuration loading and deterministic merge order."""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path

from leyline_cache.errors import ConfigError
from leyline_cache.layout import CATEGORY_PATTERN

CONFIG_FILENAME = "leyline.toml"
DEFAULT_CACHE_DIR = "~/.cache/leyline"
DEFAULT_REMOTE = "https://github.com/phrazzld/leyline.git"
DEFAULT_REF = "master"
DEFAULT_TARGET = "docs/leyline"
DEFAULT_CACHE_THRESHOLD = 0.8

MAX_CACHE_BYTES_CAP = 10 * 1024 * 1024 * 1024
MAX_WORKERS_CAP = 32
MAX_ATTEMPTS_CAP = 10
MAX_BASE_DELAY_MS_CAP = 10_000
MAX_LIMIT_CAP = 500


@dataclass(slots=True, frozen=True)
class CacheSettings:
    """Content store bounds."""

    max_bytes: int = 500 * 1024 * 1024
    ttl_seconds: int = 30 * 24 * 60 * 60


@dataclass(slots=True, frozen=True)
class SyncSettings:
    """Remote and working-copy settings for sync."""

    remote: str = DEFAULT_REMOTE
    ref: str = DEFAULT_REF
    categories: tuple[str, ...] = ()
    target: str = DEFAULT_TARGET
    workers: int = 1
    cache_threshold: float = DEFAULT_CACHE_THRESHOLD


@dataclass(slots=True, frozen=True)
class RetrySettings:
    """Transient failure retry policy."""

    max_attempts: int = 3
    base_delay_ms: int = 100


@dataclass(slots=True, frozen=True)
class DiscoverySettings:
    """Metadata cache warming and listing defaults."""

    warm_workers: int = 2
    default_limit: int = 10


@dataclass(slots=True, frozen=True)
class CacheConfig:
    """Fully merged configuration."""

    project_root: Path
    cache_dir: Path
    cache: CacheSettings
    sync: SyncSettings
    retry: RetrySettings
    discovery: DiscoverySettings

    @property
    def target_dir(self) -> Path:
        """Return the synchronized working copy directory."""
        return self.project_root / self.sync.target

    def to_public_dict(self) -> dict[str, object]:
        """Return serializable config snapshot for command output."""
        return {
            "project_root": str(self.project_root),
            "cache_dir": str(self.cache_dir),
            "cache": {
                "max_bytes": self.cache.max_bytes,
                "ttl_seconds": self.cache.ttl_seconds,
            },
            "sync": {
                "remote": self.sync.remote,
                "ref": self.sync.ref,
                "categories": list(self.sync.categories),
                "target": self.sync.target,
                "workers": self.sync.workers,
                "cache_threshold": self.sync.cache_threshold,
            },
            "retry": {
                "max_attempts": self.retry.max_attempts,
                "base_delay_ms": self.retry.base_delay_ms,
            },
            "discovery": {
                "warm_workers": self.discovery.warm_workers,
                "default_limit": self.discovery.default_limit,
            },
        }


@dataclass(slots=True, frozen=True)
class CliOverrides:
    """Optional command-line overrides applied at highest precedence."""

    cache_dir: Path | None = None
    remote: str | None = None
    ref: str | None = None
    categories: tuple[str, ...] | None = None
    target: str | None = None


def default_config(project_root: Path) -> CacheConfig:
    """Build default config for a given project root."""
    return CacheConfig(
        project_root=project_root.resolve(),
        cache_dir=Path(DEFAULT_CACHE_DIR).expanduser(),
        cache=CacheSettings(),
        sync=SyncSettings(),
        retry=RetrySettings(),
        discovery=DiscoverySettings(),
    )


def load_project_config_file(project_root: Path) -> dict[str, object]:
    """Load optional leyline.toml from the project root."""
    config_path = project_root / CONFIG_FILENAME
    if not config_path.exists():
        return {}
    try:
        with config_path.open("rb") as handle:
            payload = tomllib.load(handle)
    except tomllib.TOMLDecodeError as error:
        raise ConfigError(f"{CONFIG_FILENAME} is not valid TOML: {error}") from error
    return payload


def merge_config(base: CacheConfig, payload: dict[str, object]) -> CacheConfig:
    """Merge leyline.toml sections over defaults."""
    cache_payload = _get_table(payload, "cache")
    sync_payload = _get_table(payload, "sync")
    retry_payload = _get_table(payload, "retry")
    discovery_payload = _get_table(payload, "discovery")

    cache_dir = base.cache_dir
    if "dir" in cache_payload:
        cache_dir = Path(_string(cache_payload["dir"], "cache.dir")).expanduser()

    cache = CacheSettings(
        max_bytes=_optional_positive_int_with_cap(
            cache_payload.get("max_bytes"),
            "cache.max_bytes",
            base.cache.max_bytes,
            MAX_CACHE_BYTES_CAP,
        ),
        ttl_seconds=_optional_positive_int_with_cap(
            cache_payload.get("ttl_seconds"),
            "cache.ttl_seconds",
            base.cache.ttl_seconds,
            None,
        ),
    )

    categories = base.sync.categories
    if "categories" in sync_payload:
        categories = _tuple_of_strings(sync_payload["categories"], "sync", "categories")
    sync = SyncSettings(
        remote=_optional_string(sync_payload.get("remote"), "sync.remote", base.sync.remote),
        ref=_optional_string(sync_payload.get("ref"), "sync.ref", base.sync.ref),
        categories=_valid_categories(categories, "sync.categories"),
        target=_optional_string(sync_payload.get("target"), "sync.target", base.sync.target),
        workers=_optional_positive_int_with_cap(
            sync_payload.get("workers"), "sync.workers", base.sync.workers, MAX_WORKERS_CAP
        ),
        cache_threshold=_optional_ratio(
            sync_payload.get("cache_threshold"), "sync.cache_threshold", base.sync.cache_threshold
        ),
    )

    retry = RetrySettings(
        max_attempts=_optional_positive_int_with_cap(
            retry_payload.get("max_attempts"),
            "retry.max_attempts",
            base.retry.max_attempts,
            MAX_ATTEMPTS_CAP,
        ),
        base_delay_ms=_optional_positive_int_with_cap(
            retry_payload.get("base_delay_ms"),
            "retry.base_delay_ms",
            base.retry.base_delay_ms,
            MAX_BASE_DELAY_MS_CAP,
        ),
    )

    discovery = DiscoverySettings(
        warm_workers=_optional_positive_int_with_cap(
            discovery_payload.get("warm_workers"),
            "discovery.warm_workers",
            base.discovery.warm_workers,
            MAX_WORKERS_CAP,
        ),
        default_limit=_optional_positive_int_with_cap(
            discovery_payload.get("default_limit"),
            "discovery.default_limit",
            base.discovery.default_limit,
            MAX_LIMIT_CAP,
        ),
    )

    return CacheConfig(
        project_root=base.project_root,
        cache_dir=cache_dir,
        cache=cache,
        sync=sync,
        retry=retry,
        discovery=discovery,
    )


def apply_environment(config: CacheConfig, environ: Mapping[str, str]) -> CacheConfig:
    """Apply LEYLINE_* environment variables over file config."""
    cache_dir = config.cache_dir
    raw_dir = environ.get("LEYLINE_CACHE_DIR", "").strip()
    if raw_dir:
        cache_dir = Path(raw_dir).expanduser()

    sync = config.sync
    raw_threshold = environ.get("LEYLINE_CACHE_THRESHOLD", "").strip()
    if raw_threshold:
        try:
            threshold = float(raw_threshold)
        except ValueError:
            threshold = DEFAULT_CACHE_THRESHOLD
        if not 0.0 <= threshold <= 1.0:
            threshold = DEFAULT_CACHE_THRESHOLD
        sync = replace(sync, cache_threshold=threshold)
    return replace(config, cache_dir=cache_dir, sync=sync)


def apply_cli_overrides(config: CacheConfig, overrides: CliOverrides) -> CacheConfig:
    """Apply command-line overrides at highest precedence."""
    sync = config.sync
    if overrides.remote is not None:
        sync = replace(sync, remote=overrides.remote)
    if overrides.ref is not None:
        sync = replace(sync, ref=overrides.ref)
    if overrides.categories is not None:
        sync = replace(
            sync, categories=_valid_categories(overrides.categories, "--categories")
        )
    if overrides.target is not None:
        sync = replace(sync, target=_string(overrides.target, "--target"))
    cache_dir = overrides.cache_dir.expanduser() if overrides.cache_dir else config.cache_dir
    return replace(config, cache_dir=cache_dir.resolve(), sync=sync)


def load_effective_config(
    project_root: Path,
    overrides: CliOverrides | None = None,
    environ: Mapping[str, str] | None = None,
) -> CacheConfig:
    """Load config using merge order defaults -> leyline.toml -> environment -> overrides."""
    resolved_root = project_root.resolve()
    base = default_config(resolved_root)
    payload = load_project_config_file(resolved_root)
    merged = merge_config(base, payload)
    merged = apply_environment(merged, os.environ if environ is None else environ)
    return apply_cli_overrides(merged, overrides or CliOverrides())


def normalize_categories(categories: tuple[str, ...] | list[str]) -> tuple[str, ...]:
    """Lowercase, strip, split comma lists, dedupe and sort category names."""
    output: set[str] = set()
    for raw in categories:
        for part in raw.split(","):
            name = part.strip().lower()
            if name:
                output.add(name)
    return tuple(sorted(output))


def _valid_categories(categories: tuple[str, ...], name: str) -> tuple[str, ...]:
    normalized = normalize_categories(categories)
    for category in normalized:
        if not CATEGORY_PATTERN.match(category):
            raise ConfigError(f"Config field '{name}' has an invalid category: {category!r}")
    return normalized


def _get_table(payload: dict[str, object], key: str) -> dict[str, object]:
    value = payload.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"Config section '{key}' must be a table.")
    return value


def _string(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Config field '{name}' must be a non-empty string.")
    return value.strip()


def _optional_string(value: object, name: str, default: str) -> str:
    if value is None:
        return default
    return _string(value, name)


def _tuple_of_strings(value: object, section: str, field: str) -> tuple[str, ...]:
    if not isinstance(value, list):
        raise ConfigError(f"Config field '{section}.{field}' must be a list of strings.")
    output: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"Config field '{section}.{field}' must contain only strings.")
        output.append(item)
    return tuple(output)


def _optional_ratio(value: object, name: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Config field '{name}' must be a number between 0 and 1.")
    if not 0.0 <= float(value) <= 1.0:
        raise ConfigError(f"Config field '{name}' must be a number between 0 and 1.")
    return float(value)


def _optional_positive_int_with_cap(
    value: object,
    name: str,
    default: int,
    cap: int | None,
) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"Config field '{name}' must be a positive integer.")
    if cap is not None and value > cap:
        raise ConfigError(f"Config field '{name}' must be <= {cap}.")
    return value
