from __future__ import annotations

from pathlib import Path

import pytest

from leyline_cache.cache import content_hash
from leyline_cache.cli import build_services
from leyline_cache.commands import (
    CommandDispatchError,
    CommandRegistry,
    CommandServices,
    register_builtin_commands,
)
from leyline_cache.config import CliOverrides, load_effective_config
from leyline_cache.errors import GitProviderError
from leyline_cache.sync import FetchedFile

DOCUMENTS = {
    "tenets/simplicity.md": b"---\nid: simplicity\n---\n# Simplicity\n\nPrefer simple designs.\n",
    "bindings/core/api-design.md": b"---\nid: api-design\n---\n# API Design\n\nContracts.\n",
    "bindings/categories/typescript/no-any.md": b"---\nid: no-any\n---\n# No Any\n\nTypes.\n",
}


class FakeProvider:
    def __init__(self, files: dict[str, bytes], error: GitProviderError | None = None) -> None:
        self.files = files
        self.error = error
        self.calls = 0

    def fetch(self, ref: str, sparse_paths: tuple[str, ...]) -> list[FetchedFile]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [FetchedFile(path=path, data=data) for path, data in sorted(self.files.items())]


def _setup(
    tmp_path: Path,
    provider: FakeProvider,
) -> tuple[CommandRegistry, CommandServices]:
    config = load_effective_config(
        tmp_path,
        overrides=CliOverrides(cache_dir=tmp_path / "cache"),
        environ={},
    )
    services = build_services(config)
    services.provider_factory = lambda remote: provider
    registry = CommandRegistry()
    register_builtin_commands(registry, services)
    return registry, services


def test_registry_lists_commands_and_rejects_unknown(tmp_path: Path) -> None:
    registry, services = _setup(tmp_path, FakeProvider(DOCUMENTS))
    try:
        assert registry.names() == (
            "sync",
            "update",
            "status",
            "diff",
            "categories",
            "show",
            "search",
        )
        with pytest.raises(CommandDispatchError) as raised:
            registry.dispatch("publish", {})
        assert raised.value.code == "UNKNOWN_COMMAND"
    finally:
        services.metadata.close()


def test_sync_then_repeat_serves_from_cache(tmp_path: Path) -> None:
    provider = FakeProvider(DOCUMENTS)
    registry, services = _setup(tmp_path, provider)
    try:
        first = registry.dispatch("sync", {"categories": ["typescript"]})
        second = registry.dispatch("sync", {"categories": ["typescript"], "stats": True})
    finally:
        services.metadata.close()

    assert first.exit_code == 0
    assert first.payload["ok"] is True
    assert first.text.startswith("Sync completed: 3 files written")
    assert "typescript: 1" in first.text
    assert second.payload["git_operations_skipped"] is True
    assert second.text.startswith("Serving from cache: 3 files")
    assert "Cache Performance:" in second.text
    assert second.payload["cache"]["enabled"] is True
    assert provider.calls == 1
    assert (tmp_path / "cache" / "stats.json").exists()


def test_sync_failure_reports_recovery_suggestions(tmp_path: Path) -> None:
    provider = FakeProvider(DOCUMENTS, error=GitProviderError("Invalid version reference"))
    registry, services = _setup(tmp_path, provider)
    try:
        result = registry.dispatch("sync", {})
    finally:
        services.metadata.close()

    assert result.exit_code == 1
    assert result.payload["ok"] is False
    assert result.payload["error"]["type"] == "SyncFailedError"
    assert "Recovery suggestions:" in result.text
    assert not (tmp_path / "cache" / "manifest.json").exists()


def test_sync_rejects_invalid_category_names(tmp_path: Path) -> None:
    registry, services = _setup(tmp_path, FakeProvider(DOCUMENTS))
    try:
        with pytest.raises(CommandDispatchError) as raised:
            registry.dispatch("sync", {"categories": ["bad name!"]})
    finally:
        services.metadata.close()

    assert raised.value.code == "INVALID_PARAMS"


def test_sync_dry_run_then_kept_local_edit(tmp_path: Path) -> None:
    registry, services = _setup(tmp_path, FakeProvider(DOCUMENTS))
    try:
        preview = registry.dispatch("sync", {"dry_run": True})
        assert not services.config.target_dir.exists()
        registry.dispatch("sync", {})
        edited = services.config.target_dir / "tenets" / "simplicity.md"
        edited.write_text("mine\n", encoding="utf-8")
        kept = registry.dispatch("sync", {"no_cache": True})
    finally:
        services.metadata.close()

    assert preview.exit_code == 0
    assert preview.payload["dry_run"] is True
    assert preview.text.startswith("Dry run: 3 files would be written")
    assert kept.payload["skipped"] == ["tenets/simplicity.md"]
    assert "Kept local changes in 1 files (use --force to overwrite):" in kept.text
    assert edited.read_text(encoding="utf-8") == "mine\n"


def test_update_stops_on_conflict_and_previews_on_dry_run(tmp_path: Path) -> None:
    files = dict(DOCUMENTS)
    provider = FakeProvider(files)
    registry, services = _setup(tmp_path, provider)
    try:
        registry.dispatch("sync", {})
        edited = services.config.target_dir / "tenets" / "simplicity.md"
        edited.write_text("mine\n", encoding="utf-8")
        files["tenets/simplicity.md"] = b"---\nid: simplicity\n---\n# Simplicity\n\nNew.\n"
        preview = registry.dispatch("update", {"dry_run": True})
        blocked = registry.dispatch("update", {})
        forced = registry.dispatch("update", {"force": True})
    finally:
        services.metadata.close()

    assert preview.exit_code == 0
    assert "Dry run complete" in preview.text
    assert "  ! tenets/simplicity.md (both_modified)" in preview.text
    assert blocked.exit_code == 1
    assert blocked.payload["error"]["type"] == "ConflictDetectedError"
    assert blocked.payload["error"]["conflicts"] == [
        {"path": "tenets/simplicity.md", "kind": "both_modified"}
    ]
    assert "update --force" in blocked.text
    assert forced.exit_code == 0
    assert forced.payload["plan"]["applied"] is True
    assert edited.read_bytes() == files["tenets/simplicity.md"]


def test_status_and_diff_report_local_changes(tmp_path: Path) -> None:
    registry, services = _setup(tmp_path, FakeProvider(DOCUMENTS))
    try:
        before = registry.dispatch("status", {})
        registry.dispatch("sync", {"categories": ["typescript"]})
        target = services.config.target_dir
        (target / "tenets" / "simplicity.md").write_text(
            "---\nid: simplicity\n---\n# Simplicity\n\nEdited locally.\n", encoding="utf-8"
        )
        (target / "bindings" / "core" / "api-design.md").unlink()
        (target / "tenets" / "local.md").write_text("# Local\n", encoding="utf-8")
        status = registry.dispatch("status", {})
        diff = registry.dispatch("diff", {})
    finally:
        services.metadata.close()

    assert "No sync recorded yet." in before.text
    assert status.exit_code == 0
    assert status.payload["summary"] == {
        "added": 1,
        "modified": 1,
        "removed": 1,
        "unmodified": 1,
    }
    assert status.payload["categories"] == ["typescript"]
    assert "  M tenets/simplicity.md" in status.text
    assert "  D bindings/core/api-design.md" in status.text
    assert "  A tenets/local.md" in status.text
    diffs = {item["path"]: item for item in diff.payload["diffs"]}
    assert "-Prefer simple designs.\n" in diffs["tenets/simplicity.md"]["diff"]
    assert "+Edited locally.\n" in diffs["tenets/simplicity.md"]["diff"]
    assert "+++ /dev/null" in diffs["bindings/core/api-design.md"]["diff"]
    assert all(item["baseline_cached"] for item in diffs.values())


def test_diff_reports_evicted_baseline(tmp_path: Path) -> None:
    registry, services = _setup(tmp_path, FakeProvider(DOCUMENTS))
    try:
        registry.dispatch("sync", {})
        target = services.config.target_dir
        (target / "tenets" / "simplicity.md").write_text("changed\n", encoding="utf-8")
        services.file_cache.store.delete(content_hash(DOCUMENTS["tenets/simplicity.md"]))
        diff = registry.dispatch("diff", {})
    finally:
        services.metadata.close()

    entry = diff.payload["diffs"][0]
    assert entry["path"] == "tenets/simplicity.md"
    assert entry["baseline_cached"] is False
    assert "no longer cached" in diff.text


def test_discovery_commands_after_sync(tmp_path: Path) -> None:
    registry, services = _setup(tmp_path, FakeProvider(DOCUMENTS))
    try:
        registry.dispatch("sync", {"categories": ["typescript"]})
        categories = registry.dispatch("categories", {"stats": True})
        show = registry.dispatch("show", {"category": "TypeScript", "verbose": True})
        missing = registry.dispatch("show", {"category": "rust"})
        found = registry.dispatch("search", {"query": "simplicity", "limit": 1})
        suggested = registry.dispatch("search", {"query": "simplcity"})
    finally:
        services.metadata.close()

    assert categories.payload["categories"] == [
        {"name": "core", "document_count": 1},
        {"name": "tenets", "document_count": 1},
        {"name": "typescript", "document_count": 1},
    ]
    assert "Discovery Performance:" in categories.text
    assert show.exit_code == 0
    assert "  no-any: No Any" in show.text
    assert "    Types." in show.text
    assert missing.exit_code == 1
    assert missing.payload["available_categories"] == ["core", "tenets", "typescript"]
    assert [item["path"] for item in found.payload["results"]] == ["tenets/simplicity.md"]
    assert suggested.payload["results"] == []
    assert "simplicity" in suggested.payload["suggestions"]
    assert "Did you mean:" in suggested.text


@pytest.mark.parametrize(
    ("command", "arguments"),
    [
        ("search", {"query": "  "}),
        ("search", {"query": "x", "limit": 0}),
        ("show", {}),
        ("sync", {"ref": ""}),
    ],
)
def test_invalid_arguments_raise_dispatch_errors(
    tmp_path: Path,
    command: str,
    arguments: dict[str, object],
) -> None:
    registry, services = _setup(tmp_path, FakeProvider(DOCUMENTS))
    try:
        with pytest.raises(CommandDispatchError) as raised:
            registry.dispatch(command, arguments)
    finally:
        services.metadata.close()

    assert raised.value.code == "INVALID_PARAMS"
