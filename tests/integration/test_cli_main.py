from __future__ import annotations

import json
from pathlib import Path

import pytest

from leyline_cache import cli
from leyline_cache.sync import FetchedFile

DOCUMENTS = {
    "tenets/simplicity.md": b"---\nid: simplicity\n---\n# Simplicity\n\nPrefer simple designs.\n",
    "bindings/core/api-design.md": b"---\nid: api-design\n---\n# API Design\n\nContracts.\n",
    "bindings/categories/typescript/no-any.md": b"---\nid: no-any\n---\n# No Any\n\nTypes.\n",
}


class FakeProvider:
    remotes: list[str] = []
    fetches: list[tuple[str, tuple[str, ...]]] = []

    def __init__(self, remote_url: str) -> None:
        FakeProvider.remotes.append(remote_url)

    def fetch(self, ref: str, sparse_paths: tuple[str, ...]) -> list[FetchedFile]:
        FakeProvider.fetches.append((ref, sparse_paths))
        return [FetchedFile(path=path, data=data) for path, data in sorted(DOCUMENTS.items())]


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch) -> None:
    monkeypatch.delenv("LEYLINE_CACHE_DIR", raising=False)
    monkeypatch.delenv("LEYLINE_CACHE_THRESHOLD", raising=False)
    monkeypatch.setattr(cli, "SubprocessGitProvider", FakeProvider)
    FakeProvider.remotes = []
    FakeProvider.fetches = []


def test_sync_status_and_search_through_main(tmp_path: Path, capsys) -> None:
    cache_dir = str(tmp_path / "cache")
    project = str(tmp_path)

    assert cli.main(["--cache-dir", cache_dir, "sync", project, "-c", "TypeScript", "--json"]) == 0
    synced = json.loads(capsys.readouterr().out)
    assert synced["file_count"] == 3
    assert synced["categories"] == ["typescript"]
    assert FakeProvider.remotes == ["https://github.com/phrazzld/leyline.git"]

    assert cli.main(["--cache-dir", cache_dir, "status", project]) == 0
    status = capsys.readouterr().out
    assert "Unmodified: 3" in status

    assert cli.main(["--cache-dir", cache_dir, "search", "no-any", "--path", project, "--json"]) == 0
    results = json.loads(capsys.readouterr().out)["results"]
    assert results[0]["id"] == "no-any"

    assert cli.main(["--cache-dir", cache_dir, "categories", "--path", project]) == 0
    assert "typescript (1 documents)" in capsys.readouterr().out


def test_remote_override_reaches_provider(tmp_path: Path, capsys) -> None:
    remote = "https://example.com/fork/leyline.git"
    argv = ["--cache-dir", str(tmp_path / "cache"), "sync", str(tmp_path), "--remote", remote]

    assert cli.main(argv) == 0
    assert FakeProvider.remotes == [remote]
    assert "Sync completed" in capsys.readouterr().out


def test_missing_category_exits_nonzero_on_stderr(tmp_path: Path, capsys) -> None:
    cache_dir = str(tmp_path / "cache")
    cli.main(["--cache-dir", cache_dir, "sync", str(tmp_path)])
    capsys.readouterr()

    assert cli.main(["--cache-dir", cache_dir, "show", "rust", "--path", str(tmp_path)]) == 1
    captured = capsys.readouterr()
    assert "No documents found for category 'rust'." in captured.err
    assert captured.out == ""


def test_invalid_arguments_exit_with_dispatch_code(tmp_path: Path, capsys) -> None:
    argv = ["--cache-dir", str(tmp_path / "cache"), "search", "  ", "--path", str(tmp_path)]

    assert cli.main(argv) == 2
    assert "non-empty string" in capsys.readouterr().err


def test_invalid_config_exits_with_error(tmp_path: Path, capsys) -> None:
    (tmp_path / "leyline.toml").write_text("[sync]\nworkers = 0\n", encoding="utf-8")

    assert cli.main(["--cache-dir", str(tmp_path / "cache"), "status", str(tmp_path)]) == 1
    assert "sync.workers" in capsys.readouterr().err


def test_ref_and_categories_flow_through_config_overrides(tmp_path: Path, capsys) -> None:
    argv = [
        "--cache-dir",
        str(tmp_path / "cache"),
        "sync",
        str(tmp_path),
        "--ref",
        "v2.0.0",
        "-c",
        "go,TypeScript",
        "--json",
    ]

    assert cli.main(argv) == 0
    synced = json.loads(capsys.readouterr().out)
    assert synced["ref"] == "v2.0.0"
    assert synced["categories"] == ["go", "typescript"]
    assert FakeProvider.fetches[0][0] == "v2.0.0"
    assert "bindings/categories/go/" in FakeProvider.fetches[0][1]


def test_invalid_category_flag_is_a_config_error(tmp_path: Path, capsys) -> None:
    argv = ["--cache-dir", str(tmp_path / "cache"), "sync", str(tmp_path), "-c", "bad name!"]

    assert cli.main(argv) == 1
    assert "--categories" in capsys.readouterr().err
    assert FakeProvider.fetches == []


def test_local_edits_survive_sync_and_block_update(tmp_path: Path, capsys) -> None:
    cache_dir = str(tmp_path / "cache")
    project = str(tmp_path)
    assert cli.main(["--cache-dir", cache_dir, "sync", project]) == 0
    edited = tmp_path / "docs" / "leyline" / "tenets" / "simplicity.md"
    edited.write_text("local notes\n", encoding="utf-8")
    capsys.readouterr()

    assert cli.main(["--cache-dir", cache_dir, "sync", project, "--force-git"]) == 0
    assert "Kept local changes in 1 files" in capsys.readouterr().out
    assert edited.read_text(encoding="utf-8") == "local notes\n"

    assert cli.main(["--cache-dir", cache_dir, "update", project, "--dry-run"]) == 0
    assert "Conflicts: 0" in capsys.readouterr().out

    assert cli.main(["--cache-dir", cache_dir, "sync", project, "--force"]) == 0
    assert edited.read_bytes() == DOCUMENTS["tenets/simplicity.md"]
