from __future__ import annotations

import socket
from pathlib import Path

from leyline_cache import cli
from leyline_cache.sync import FetchedFile


class OfflineProvider:
    def __init__(self, remote_url: str) -> None:
        self.remote_url = remote_url

    def fetch(self, ref: str, sparse_paths: tuple[str, ...]) -> list[FetchedFile]:
        return [
            FetchedFile(
                path="tenets/simplicity.md",
                data=b"---\nid: simplicity\n---\n# Simplicity\n\nPrefer simple designs.\n",
            )
        ]


def test_no_network_calls_outside_the_git_provider(tmp_path: Path, monkeypatch, capsys) -> None:
    def _blocked_create_connection(*args, **kwargs):  # type: ignore[no-untyped-def]
        raise AssertionError(
            f"Network call attempted: create_connection args={args} kwargs={kwargs}"
        )

    base_socket = socket.socket

    class _BlockedSocket(base_socket):
        def connect(self, address):  # type: ignore[no-untyped-def]
            raise AssertionError(f"Network call attempted: connect address={address}")

    monkeypatch.setattr(socket, "create_connection", _blocked_create_connection)
    monkeypatch.setattr(socket, "socket", _BlockedSocket)
    monkeypatch.setattr(cli, "SubprocessGitProvider", OfflineProvider)
    monkeypatch.delenv("LEYLINE_CACHE_DIR", raising=False)

    cache_dir = str(tmp_path / "cache")
    project = str(tmp_path)
    assert cli.main(["--cache-dir", cache_dir, "sync", project]) == 0
    assert cli.main(["--cache-dir", cache_dir, "sync", project]) == 0
    assert cli.main(["--cache-dir", cache_dir, "status", project]) == 0
    assert cli.main(["--cache-dir", cache_dir, "diff", project]) == 0
    assert cli.main(["--cache-dir", cache_dir, "categories", "--path", project]) == 0
    assert cli.main(["--cache-dir", cache_dir, "show", "tenets", "--path", project]) == 0
    assert cli.main(["--cache-dir", cache_dir, "search", "simple", "--path", project]) == 0
    assert "Serving from cache" in capsys.readouterr().out
