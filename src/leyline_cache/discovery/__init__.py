"""Document metadata, category discovery and search."""

from .documents import DocumentMetadata, ParsedDocument, build_document, parse_front_matter
from .metadata_cache import METADATA_FILENAME, MetadataCache
from .search import SearchIndex, SearchResult, levenshtein, tokenize

__all__ = [
    "DocumentMetadata",
    "METADATA_FILENAME",
    "MetadataCache",
    "ParsedDocument",
    "SearchIndex",
    "SearchResult",
    "build_document",
    "levenshtein",
    "parse_front_matter",
    "tokenize",
]
