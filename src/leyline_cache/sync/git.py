"""Git provider boundary: sparse shallow fetch of the leyline docs tree."""

from __future__ import annotations

import re
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Protocol

from leyline_cache.errors import GitProviderError
from leyline_cache.layout import DOCUMENT_SUFFIX
from leyline_cache.sync.models import FetchedFile

DOCS_PREFIX = "docs"
DEFAULT_TIMEOUT_SECONDS = 120.0

_REMOTE_URL_PATTERNS = (
    re.compile(r"^(https?://|git@)[\w\-.]+[\w\-]+([/:][\w\-.]+)*\.git$"),
    re.compile(r"^file://.+$"),
)
_NETWORK_MARKERS = (
    "could not resolve host",
    "connection timed out",
    "connection refused",
    "unable to access",
    "network is unreachable",
    "early eof",
    "the remote end hung up",
)


class GitProvider(Protocol):
    """Opaque source of synced documents."""

    def fetch(self, ref: str, sparse_paths: tuple[str, ...]) -> list[FetchedFile]:
        """Return every markdown file under the sparse paths at ref."""
        ...


class SubprocessGitProvider:
    """Sparse, shallow fetch through the ``git`` binary into a scratch directory."""

    def __init__(
        self,
        remote_url: str,
        git_binary: str = "git",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        validate_remote_url(remote_url)
        self._remote_url = remote_url
        self._git_binary = git_binary
        self._timeout_seconds = timeout_seconds

    @property
    def remote_url(self) -> str:
        """Return configured remote."""
        return self._remote_url

    def fetch(self, ref: str, sparse_paths: tuple[str, ...]) -> list[FetchedFile]:
        """Fetch ref and return docs-relative markdown files."""
        validate_ref(ref)
        for path in sparse_paths:
            validate_sparse_path(path)
        if shutil.which(self._git_binary) is None:
            raise GitProviderError(
                "Git binary not found.",
                hint="Install git and ensure it is in your PATH.",
            )
        with tempfile.TemporaryDirectory(prefix="leyline-sync-") as scratch:
            workdir = Path(scratch)
            self._run(workdir, "init", "--quiet")
            self._run(workdir, "config", "core.sparseCheckout", "true")
            sparse_file = workdir / ".git" / "info" / "sparse-checkout"
            sparse_file.parent.mkdir(parents=True, exist_ok=True)
            sparse_file.write_text(
                "".join(f"{DOCS_PREFIX}/{path}\n" for path in sparse_paths),
                encoding="utf-8",
            )
            self._run(workdir, "remote", "add", "origin", self._remote_url)
            self._run(workdir, "fetch", "--quiet", "--depth", "1", "origin", ref)
            self._run(workdir, "checkout", "--quiet", "FETCH_HEAD")
            return collect_documents(workdir / DOCS_PREFIX)

    def _run(self, workdir: Path, *args: str) -> str:
        command = [self._git_binary, *args]
        try:
            completed = subprocess.run(
                command,
                cwd=workdir,
                capture_output=True,
                text=True,
                timeout=self._timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            raise GitProviderError(
                f"git {args[0]} timed out after {self._timeout_seconds:.0f}s.",
                retryable=True,
            ) from error
        except OSError as error:
            raise GitProviderError(
                f"git {args[0]} could not be started: {error.strerror or error}",
                hint="Install git and ensure it is in your PATH.",
            ) from error
        if completed.returncode != 0:
            stderr = completed.stderr.strip()
            raise GitProviderError(
                f"git {args[0]} failed with exit code {completed.returncode}: {stderr}",
                retryable=_looks_like_network_failure(stderr),
            )
        return completed.stdout


def collect_documents(docs_root: Path) -> list[FetchedFile]:
    """Read every markdown file below docs_root, sorted by relative path."""
    files: list[FetchedFile] = []
    if not docs_root.is_dir():
        return files
    for full_path in sorted(docs_root.rglob(f"*{DOCUMENT_SUFFIX}")):
        if not full_path.is_file():
            continue
        relative = full_path.relative_to(docs_root).as_posix()
        files.append(FetchedFile(path=relative, data=full_path.read_bytes()))
    files.sort(key=lambda item: item.path)
    return files


def validate_remote_url(url: str) -> None:
    """Reject remote URLs that are not https, ssh or file git URLs."""
    if not any(pattern.match(url) for pattern in _REMOTE_URL_PATTERNS):
        raise GitProviderError(f"Invalid remote URL format: {url}")


def validate_ref(ref: str) -> None:
    """Reject empty refs, option-like refs and traversal."""
    if not ref or ref.startswith("-") or " " in ref or ".." in ref:
        raise GitProviderError(f"Invalid version reference: {ref!r}")


def validate_sparse_path(path: str) -> None:
    """Reject sparse paths with spaces, absolute roots or parent traversal."""
    if " " in path:
        raise GitProviderError(
            f"Invalid sparse-checkout path '{path}': paths cannot contain spaces"
        )
    if path.startswith("/"):
        raise GitProviderError(
            f"Invalid sparse-checkout path '{path}': absolute paths not allowed"
        )
    if "../" in path or path == "..":
        raise GitProviderError(
            f"Invalid sparse-checkout path '{path}': parent directory traversal not allowed"
        )


def _looks_like_network_failure(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in _NETWORK_MARKERS)
