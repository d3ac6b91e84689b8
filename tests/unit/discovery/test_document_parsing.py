from __future__ import annotations

import pytest

from leyline_cache.cache import content_hash
from leyline_cache.discovery import DocumentMetadata, build_document, parse_front_matter
from leyline_cache.discovery.documents import MAX_FRONT_MATTER_BYTES, extract_preview

DOCUMENT = b"""---
id: no-any
last_modified: 2025-05-09
tags: [types, safety, types]
enforced_by: eslint
---
# Avoid the any type

Use precise types so the compiler can help.

## Rationale

More text.
"""


def test_build_document_extracts_metadata() -> None:
    parsed = build_document("bindings/categories/typescript/no-any.md", DOCUMENT)

    assert parsed is not None
    metadata = parsed.metadata
    assert metadata.id == "no-any"
    assert metadata.title == "Avoid the any type"
    assert metadata.category == "typescript"
    assert metadata.type == "binding"
    assert metadata.tags == ("safety", "types")
    assert metadata.preview == "Use precise types so the compiler can help. More text."
    assert metadata.content_hash == content_hash(DOCUMENT)
    assert metadata.front_matter["last_modified"] == "2025-05-09"
    assert "Avoid the any type" not in parsed.body
    assert parsed.body.lstrip().startswith("Use precise types")
    assert "## Rationale" in parsed.body


def test_id_and_title_fall_back_to_file_stem() -> None:
    parsed = build_document("tenets/keep-it-simple.md", b"---\nsummary: short\n---\nBody only.\n")

    assert parsed is not None
    assert parsed.metadata.id == "keep-it-simple"
    assert parsed.metadata.title == "Keep it simple"
    assert parsed.metadata.type == "tenet"
    assert parsed.metadata.category == "tenets"


def test_crlf_front_matter_is_accepted() -> None:
    parsed = build_document("tenets/a.md", b"---\r\nid: a\r\n---\r\n# A\r\n")

    assert parsed is not None
    assert parsed.metadata.title == "A"


@pytest.mark.parametrize(
    "text",
    [
        "# No front matter\n",
        "---\nid: [unclosed\n---\nbody\n",
        "---\n- just\n- a list\n---\nbody\n",
        "---\nid: x\nno closing fence\n",
    ],
)
def test_unusable_front_matter_returns_none(text: str) -> None:
    assert parse_front_matter(text) is None
    assert build_document("tenets/x.md", text.encode("utf-8")) is None


def test_oversized_front_matter_is_rejected() -> None:
    filler = "x" * (MAX_FRONT_MATTER_BYTES + 1)
    text = f"---\nid: big\nnote: {filler}\n---\nbody\n"

    assert parse_front_matter(text) is None


def test_non_utf8_document_is_skipped() -> None:
    assert build_document("tenets/x.md", b"---\nid: x\n---\n\xff\xfe") is None


def test_long_preview_is_trimmed_at_word_boundary() -> None:
    body = "# Title\n\n" + "alpha " * 60

    preview = extract_preview(body)

    assert preview.endswith("...")
    assert len(preview) <= 203
    assert preview[:-3].split(" ")[-1] == "alpha"


def test_metadata_round_trips_through_dict() -> None:
    parsed = build_document("bindings/categories/typescript/no-any.md", DOCUMENT)
    assert parsed is not None

    restored = DocumentMetadata.from_dict(parsed.metadata.to_dict())

    assert restored == parsed.metadata


def test_from_dict_rejects_bad_shapes() -> None:
    with pytest.raises(ValueError):
        DocumentMetadata.from_dict({"id": 3})
    with pytest.raises(ValueError):
        DocumentMetadata.from_dict(
            {
                "id": "a",
                "title": "A",
                "category": "tenets",
                "type": "tenet",
                "path": "tenets/a.md",
                "content_hash": content_hash(b"a"),
                "preview": "",
                "tags": "not-a-list",
            }
        )
