from __future__ import annotations

import pytest

from leyline_cache.layout import (
    UnsafePathError,
    category_for_path,
    document_type_for_path,
    is_document_path,
    normalize_relative_path,
    sparse_paths_for,
)


def test_sparse_paths_always_include_tenets_and_core() -> None:
    assert sparse_paths_for(()) == ("tenets/", "bindings/core/")
    assert sparse_paths_for(("typescript", "go", "core", "go")) == (
        "tenets/",
        "bindings/core/",
        "bindings/categories/go/",
        "bindings/categories/typescript/",
    )


def test_sparse_paths_reject_invalid_category_names() -> None:
    with pytest.raises(ValueError):
        sparse_paths_for(("../etc",))


@pytest.mark.parametrize(
    ("path", "category", "doc_type"),
    [
        ("tenets/simplicity.md", "tenets", "tenet"),
        ("bindings/core/api-design.md", "core", "binding"),
        ("bindings/categories/go/errors.md", "go", "binding"),
        ("README.md", "unknown", "unknown"),
    ],
)
def test_category_and_type_from_path(path: str, category: str, doc_type: str) -> None:
    assert category_for_path(path) == category
    assert document_type_for_path(path) == doc_type


def test_index_pages_are_not_documents() -> None:
    assert is_document_path("tenets/simplicity.md") is True
    assert is_document_path("tenets/00-index.md") is False
    assert is_document_path("bindings/core/index.md") is False
    assert is_document_path("tenets/notes.txt") is False


def test_normalize_relative_path() -> None:
    assert normalize_relative_path("tenets\\./simplicity.md") == "tenets/simplicity.md"
    for unsafe in ("/etc/passwd", "C:\\docs\\a.md", "../a.md", "tenets/../../a.md", ""):
        with pytest.raises(UnsafePathError):
            normalize_relative_path(unsafe)
