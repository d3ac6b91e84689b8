"""Markdown document parsing: YAML front-matter, title, preview and path metadata."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import PurePosixPath

import yaml

from leyline_cache.cache.store import content_hash
from leyline_cache.layout import category_for_path, document_type_for_path

MAX_FRONT_MATTER_BYTES = 8 * 1024
PREVIEW_LENGTH = 200

_FRONT_MATTER_PATTERN = re.compile(r"^---[ \t]*\n(.*?)\n---[ \t]*(?:\n|$)(.*)$", re.DOTALL)
_HEADING_PATTERN = re.compile(r"^#+\s*")


@dataclass(slots=True, frozen=True)
class DocumentMetadata:
    """Derived metadata for one synced document, keyed by its docs-relative path."""

    id: str
    title: str
    category: str
    type: str
    path: str
    content_hash: str
    tags: tuple[str, ...] = ()
    preview: str = ""
    front_matter: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serializable representation."""
        return {
            "id": self.id,
            "title": self.title,
            "category": self.category,
            "type": self.type,
            "path": self.path,
            "content_hash": self.content_hash,
            "tags": list(self.tags),
            "preview": self.preview,
            "front_matter": dict(self.front_matter),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> DocumentMetadata:
        """Rebuild metadata persisted by ``to_dict``; raises ValueError on bad shape."""
        strings = ("id", "title", "category", "type", "path", "content_hash", "preview")
        values: dict[str, str] = {}
        for key in strings:
            value = payload.get(key)
            if not isinstance(value, str):
                raise ValueError(f"Persisted document field '{key}' must be a string.")
            values[key] = value
        tags = payload.get("tags", [])
        if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
            raise ValueError("Persisted document field 'tags' must be a list of strings.")
        front_matter = payload.get("front_matter", {})
        if not isinstance(front_matter, dict):
            raise ValueError("Persisted document field 'front_matter' must be an object.")
        return cls(tags=tuple(tags), front_matter=front_matter, **values)


@dataclass(slots=True, frozen=True)
class ParsedDocument:
    """Metadata plus the markdown body used for full-text indexing."""

    metadata: DocumentMetadata
    body: str


def parse_front_matter(text: str) -> tuple[dict[str, object], str] | None:
    """Split a leading YAML block from the body; None when missing, oversized or invalid."""
    normalized = text.replace("\r\n", "\n")
    match = _FRONT_MATTER_PATTERN.match(normalized)
    if match is None:
        return None
    block = match.group(1)
    if len(block.encode("utf-8")) > MAX_FRONT_MATTER_BYTES:
        return None
    try:
        payload = yaml.safe_load(block)
    except yaml.YAMLError:
        return None
    if not isinstance(payload, dict):
        return None
    return _jsonable_mapping(payload), match.group(2)


def build_document(path: str, data: bytes) -> ParsedDocument | None:
    """Parse one document; None when it has no usable front-matter."""
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return None
    parsed = parse_front_matter(text)
    if parsed is None:
        return None
    front_matter, text_body = parsed
    stem = PurePosixPath(path).stem
    title, body = split_title(text_body, stem)
    raw_id = front_matter.get("id")
    metadata = DocumentMetadata(
        id=str(raw_id) if raw_id not in (None, "") else stem,
        title=title,
        category=category_for_path(path),
        type=document_type_for_path(path),
        path=path,
        content_hash=content_hash(data),
        tags=_tags(front_matter.get("tags")),
        preview=extract_preview(body),
        front_matter=front_matter,
    )
    return ParsedDocument(metadata=metadata, body=body)


def split_title(body: str, stem: str) -> tuple[str, str]:
    """Return the title and the body with its title heading line removed."""
    lines = body.splitlines(keepends=True)
    for index, line in enumerate(lines):
        stripped = line.strip()
        if not stripped.startswith("#"):
            continue
        title = _HEADING_PATTERN.sub("", stripped).strip()
        if title:
            return title, "".join(lines[:index] + lines[index + 1 :])
    return stem.replace("-", " ").capitalize(), body


def extract_preview(body: str, length: int = PREVIEW_LENGTH) -> str:
    """Return leading prose, trimmed at a word boundary when longer than length."""
    preview = ""
    for line in body.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        preview += stripped + " "
        if len(preview) >= length:
            break
    if len(preview) > length:
        preview = preview[:length]
        last_space = preview.rfind(" ")
        if last_space > 0:
            preview = preview[:last_space]
        return preview.rstrip() + "..."
    return preview.strip()


def _tags(value: object) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return ()
    return tuple(sorted({str(item).strip() for item in value if str(item).strip()}))


def _jsonable_mapping(payload: dict[object, object]) -> dict[str, object]:
    return {str(key): _jsonable(value) for key, value in payload.items()}


def _jsonable(value: object) -> object:
    if isinstance(value, dict):
        return _jsonable_mapping(value)
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
