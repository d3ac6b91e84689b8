"""Path conventions of the synchronized leyline docs tree."""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import Final

TENETS_DIR: Final[str] = "tenets"
CORE_BINDINGS_DIR: Final[str] = "bindings/core"
CATEGORY_BINDINGS_DIR: Final[str] = "bindings/categories"
DOCUMENT_SUFFIX: Final[str] = ".md"
INDEX_DOCUMENT_NAMES: Final[frozenset[str]] = frozenset(
    {"index.md", "glance.md", "00-index.md"}
)

CATEGORY_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
WINDOWS_ABSOLUTE_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[a-zA-Z]:[\\/]")


class UnsafePathError(ValueError):
    """Raised when a synced path would escape the working directory."""


def sparse_paths_for(categories: tuple[str, ...]) -> tuple[str, ...]:
    """Return sparse checkout paths: tenets, core bindings, then each category."""
    paths = [f"{TENETS_DIR}/", f"{CORE_BINDINGS_DIR}/"]
    for category in sorted(set(categories)):
        if category == "core":
            continue
        if not CATEGORY_PATTERN.match(category):
            raise ValueError(f"Invalid category name: {category!r}")
        paths.append(f"{CATEGORY_BINDINGS_DIR}/{category}/")
    return tuple(paths)


def category_for_path(path: str) -> str:
    """Derive a document category from its docs-relative path."""
    parts = PurePosixPath(path).parts
    if "categories" in parts:
        index = parts.index("categories")
        if index + 1 < len(parts) - 1:
            return parts[index + 1]
    if "core" in parts:
        return "core"
    if "tenets" in parts:
        return "tenets"
    return "unknown"


def document_type_for_path(path: str) -> str:
    """Return tenet, binding, or unknown from the path structure."""
    parts = PurePosixPath(path).parts
    if "tenets" in parts:
        return "tenet"
    if "bindings" in parts:
        return "binding"
    return "unknown"


def is_document_path(path: str) -> bool:
    """Return True for markdown content documents, excluding index pages."""
    pure = PurePosixPath(path)
    return pure.suffix == DOCUMENT_SUFFIX and pure.name not in INDEX_DOCUMENT_NAMES


def normalize_relative_path(candidate: str) -> str:
    """Normalize a docs-relative path, rejecting absolute paths and traversal."""
    normalized = candidate.replace("\\", "/")
    if normalized.startswith("/") or WINDOWS_ABSOLUTE_PATTERN.match(normalized):
        raise UnsafePathError(f"Absolute path is not allowed: {candidate}")
    parts = [part for part in normalized.split("/") if part not in ("", ".")]
    if not parts:
        raise UnsafePathError("Path is empty.")
    if any(part == ".." for part in parts):
        raise UnsafePathError(f"Path traversal is blocked: {candidate}")
    return "/".join(parts)
