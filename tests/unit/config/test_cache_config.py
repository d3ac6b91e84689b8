from __future__ import annotations

from pathlib import Path

import pytest

from leyline_cache.config import (
    DEFAULT_CACHE_THRESHOLD,
    CliOverrides,
    load_effective_config,
    normalize_categories,
)
from leyline_cache.errors import ConfigError


def _write_config(root: Path, *lines: str) -> None:
    (root / "leyline.toml").write_text("\n".join(lines), encoding="utf-8")


def test_defaults_without_config_file(tmp_path: Path) -> None:
    config = load_effective_config(tmp_path, environ={})

    assert config.sync.ref == "master"
    assert config.sync.categories == ()
    assert config.sync.cache_threshold == DEFAULT_CACHE_THRESHOLD
    assert config.target_dir == tmp_path.resolve() / "docs" / "leyline"
    assert config.cache_dir.name == "leyline"


def test_merge_order_defaults_then_file_then_env_then_cli(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        "[cache]",
        f'dir = "{(tmp_path / "from-file").as_posix()}"',
        "max_bytes = 1024",
        "",
        "[sync]",
        'ref = "v1.0.0"',
        'categories = ["TypeScript", "go, rust"]',
        "cache_threshold = 0.5",
        "",
        "[retry]",
        "max_attempts = 5",
    )
    environ = {
        "LEYLINE_CACHE_DIR": str(tmp_path / "from-env"),
        "LEYLINE_CACHE_THRESHOLD": "0.9",
    }

    from_env = load_effective_config(tmp_path, environ=environ)
    from_cli = load_effective_config(
        tmp_path,
        overrides=CliOverrides(cache_dir=tmp_path / "from-cli", ref="main"),
        environ=environ,
    )

    assert from_env.cache_dir == (tmp_path / "from-env").resolve()
    assert from_env.cache.max_bytes == 1024
    assert from_env.sync.ref == "v1.0.0"
    assert from_env.sync.categories == ("go", "rust", "typescript")
    assert from_env.sync.cache_threshold == 0.9
    assert from_env.retry.max_attempts == 5
    assert from_cli.cache_dir == (tmp_path / "from-cli").resolve()
    assert from_cli.sync.ref == "main"


def test_out_of_range_env_threshold_falls_back_to_default(tmp_path: Path) -> None:
    for raw in ("1.5", "-0.1", "not-a-number"):
        config = load_effective_config(tmp_path, environ={"LEYLINE_CACHE_THRESHOLD": raw})
        assert config.sync.cache_threshold == DEFAULT_CACHE_THRESHOLD


@pytest.mark.parametrize(
    ("lines", "message"),
    [
        (("cache = 3",), "must be a table"),
        (("[sync]", "workers = 0"), "positive integer"),
        (("[sync]", "workers = 999"), "<= 32"),
        (("[sync]", "cache_threshold = 2"), "between 0 and 1"),
        (("[sync]", "categories = [1]"), "only strings"),
        (("[sync]", 'remote = ""'), "non-empty string"),
        (("[retry]", "base_delay_ms = true"), "positive integer"),
    ],
)
def test_invalid_config_values_raise(tmp_path: Path, lines: tuple[str, ...], message: str) -> None:
    _write_config(tmp_path, *lines)

    with pytest.raises(ConfigError) as raised:
        load_effective_config(tmp_path, environ={})

    assert message in str(raised.value)


def test_invalid_toml_raises_config_error(tmp_path: Path) -> None:
    _write_config(tmp_path, "[sync", "ref = ")

    with pytest.raises(ConfigError):
        load_effective_config(tmp_path, environ={})


def test_public_dict_is_serializable_snapshot(tmp_path: Path) -> None:
    config = load_effective_config(
        tmp_path,
        overrides=CliOverrides(cache_dir=tmp_path / "cache", categories=("go",)),
        environ={},
    )

    snapshot = config.to_public_dict()

    assert snapshot["cache_dir"] == str((tmp_path / "cache").resolve())
    assert snapshot["sync"]["categories"] == ["go"]
    assert snapshot["discovery"] == {"warm_workers": 2, "default_limit": 10}


def test_normalize_categories_splits_dedupes_and_sorts() -> None:
    assert normalize_categories(["Go, typescript", " go ", ""]) == ("go", "typescript")


def test_invalid_category_names_raise_from_file_and_overrides(tmp_path: Path) -> None:
    _write_config(tmp_path, "[sync]", 'categories = ["bad name!"]')

    with pytest.raises(ConfigError) as from_file:
        load_effective_config(tmp_path, environ={})
    with pytest.raises(ConfigError) as from_cli:
        load_effective_config(
            tmp_path / "elsewhere",
            overrides=CliOverrides(categories=("go, ../escape",)),
            environ={},
        )

    assert "sync.categories" in str(from_file.value)
    assert "--categories" in str(from_cli.value)


def test_target_override_moves_target_dir(tmp_path: Path) -> None:
    config = load_effective_config(
        tmp_path, overrides=CliOverrides(target="vendor/leyline"), environ={}
    )

    assert config.target_dir == tmp_path.resolve() / "vendor" / "leyline"
