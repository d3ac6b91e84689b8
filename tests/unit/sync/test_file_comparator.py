from __future__ import annotations

from pathlib import Path

from leyline_cache.cache import content_hash
from leyline_cache.sync import (
    CONFLICT_BOTH_MODIFIED,
    CONFLICT_LOCAL_ADDED,
    STATUS_ADDED,
    STATUS_MODIFIED,
    STATUS_REMOVED,
    STATUS_UNMODIFIED,
    FileComparator,
    FileDelta,
    SyncManifest,
    UpdateConflict,
    changed_paths,
    sha256_file,
)


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _manifest(entries: dict[str, str]) -> SyncManifest:
    return SyncManifest(synced_at="2026-01-01T00:00:00.000Z", categories=(), entries=entries)


def test_scan_tree_hashes_markdown_only_sorted(tmp_path: Path) -> None:
    _write(tmp_path / "tenets" / "b.md", "b")
    _write(tmp_path / "bindings" / "core" / "a.md", "a")
    _write(tmp_path / "tenets" / "notes.txt", "ignored")
    profile: dict[str, object] = {}

    tree = FileComparator().scan_tree(tmp_path, profile=profile)

    assert list(tree) == ["bindings/core/a.md", "tenets/b.md"]
    assert tree["tenets/b.md"] == content_hash(b"b")
    assert profile["scanned_files"] == 2
    assert profile["hashed_files"] == 2
    assert profile["skipped_files"] == ()


def test_scan_tree_of_missing_root_is_empty(tmp_path: Path) -> None:
    assert FileComparator().scan_tree(tmp_path / "absent") == {}


def test_diff_classifies_union_of_paths(tmp_path: Path) -> None:
    baseline = {
        "a.md": content_hash(b"a"),
        "b.md": content_hash(b"b"),
        "c.md": content_hash(b"c"),
    }
    current = {
        "a.md": content_hash(b"a"),
        "b.md": content_hash(b"changed"),
        "d.md": content_hash(b"d"),
    }

    deltas = FileComparator().diff(current, _manifest(baseline))

    assert deltas == [
        FileDelta(path="a.md", status=STATUS_UNMODIFIED),
        FileDelta(path="b.md", status=STATUS_MODIFIED),
        FileDelta(path="c.md", status=STATUS_REMOVED),
        FileDelta(path="d.md", status=STATUS_ADDED),
    ]
    assert changed_paths(deltas) == ["b.md", "c.md", "d.md"]


def test_diff_without_manifest_marks_everything_added() -> None:
    deltas = FileComparator().diff({"a.md": content_hash(b"a")}, None)

    assert deltas == [FileDelta(path="a.md", status=STATUS_ADDED)]


def test_summarize_reports_every_status() -> None:
    comparator = FileComparator()

    assert comparator.summarize([]) == {
        STATUS_ADDED: 0,
        STATUS_MODIFIED: 0,
        STATUS_REMOVED: 0,
        STATUS_UNMODIFIED: 0,
    }
    counts = comparator.summarize(
        [FileDelta("a.md", STATUS_MODIFIED), FileDelta("b.md", STATUS_MODIFIED)]
    )
    assert counts[STATUS_MODIFIED] == 2


def test_content_diff_renders_unified_hunks() -> None:
    text = FileComparator().content_diff("tenets/a.md", b"one\ntwo\n", b"one\nthree\n")

    assert text.startswith("--- a/tenets/a.md\n+++ b/tenets/a.md\n")
    assert "-two\n" in text
    assert "+three\n" in text


def test_content_diff_handles_missing_sides() -> None:
    comparator = FileComparator()

    added = comparator.content_diff("new.md", None, b"hello")
    removed = comparator.content_diff("old.md", b"bye\n", None)

    assert "--- /dev/null" in added
    assert "+hello\n" in added
    assert "+++ /dev/null" in removed
    assert comparator.content_diff("same.md", b"x\n", b"x\n") == ""


def test_sha256_file_matches_content_hash(tmp_path: Path) -> None:
    target = tmp_path / "doc.md"
    target.write_bytes(b"x" * 300_000)

    assert sha256_file(target) == content_hash(b"x" * 300_000)


def test_plan_update_classifies_three_way_changes() -> None:
    baseline = {"a.md": "1", "b.md": "1", "c.md": "1", "gone.md": "1"}
    remote = {"a.md": "1", "b.md": "2", "c.md": "2", "new.md": "9", "clash.md": "7"}
    current = {"a.md": "5", "b.md": "1", "c.md": "3", "gone.md": "1", "clash.md": "8"}

    added, modified, removed, conflicts = FileComparator().plan_update(current, baseline, remote)

    assert added == ["clash.md", "new.md"]
    assert modified == ["b.md", "c.md"]
    assert removed == ["gone.md"]
    assert conflicts == [
        UpdateConflict(path="c.md", kind=CONFLICT_BOTH_MODIFIED),
        UpdateConflict(path="clash.md", kind=CONFLICT_LOCAL_ADDED),
    ]


def test_plan_update_accepts_local_copy_matching_upstream() -> None:
    _, modified, _, conflicts = FileComparator().plan_update(
        {"a.md": "2"}, {"a.md": "1"}, {"a.md": "2"}
    )

    assert modified == ["a.md"]
    assert conflicts == []
