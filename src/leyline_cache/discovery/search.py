"""Deterministic weighted-field search and spelling suggestions over document metadata."""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass
from pathlib import PurePosixPath

from leyline_cache.discovery.documents import DocumentMetadata

TOKEN_PATTERN = re.compile(r"[a-z0-9]+")
FIELD_WEIGHTS: dict[str, int] = {
    "title": 10,
    "id": 8,
    "tags": 4,
    "category": 2,
    "body": 1,
}
EXACT_MATCH_BONUS = 100
MIN_SHARED_PREFIX = 3


@dataclass(slots=True, frozen=True)
class SearchResult:
    """Ranked search hit."""

    document: DocumentMetadata
    score: int
    matched_terms: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serializable representation."""
        return {
            "path": self.document.path,
            "id": self.document.id,
            "title": self.document.title,
            "category": self.document.category,
            "type": self.document.type,
            "preview": self.document.preview,
            "score": self.score,
            "matched_terms": list(self.matched_terms),
        }


def tokenize(text: str) -> list[str]:
    """Tokenize into lowercase alphanumeric runs."""
    return TOKEN_PATTERN.findall(text.lower())


def normalize_phrase(text: str) -> str:
    """Collapse text to hyphen-joined tokens for exact comparisons."""
    return "-".join(tokenize(text))


def document_weights(metadata: DocumentMetadata, body: str) -> dict[str, int]:
    """Return weighted term frequencies across title, id, tags, category and body."""
    fields = {
        "title": tokenize(metadata.title),
        "id": tokenize(metadata.id),
        "tags": [token for tag in metadata.tags for token in tokenize(tag)],
        "category": tokenize(metadata.category),
        "body": tokenize(body),
    }
    weights: Counter[str] = Counter()
    for name, tokens in fields.items():
        factor = FIELD_WEIGHTS[name]
        for token, count in Counter(tokens).items():
            weights[token] += count * factor
    return dict(sorted(weights.items()))


class SearchIndex:
    """Inverted index of token -> {document path: weighted term frequency}."""

    def __init__(self) -> None:
        self._postings: dict[str, dict[str, int]] = {}
        self._documents: dict[str, DocumentMetadata] = {}
        self._weights: dict[str, dict[str, int]] = {}

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, path: object) -> bool:
        return path in self._documents

    def add(self, metadata: DocumentMetadata, body: str) -> None:
        """Index a parsed document, replacing any previous postings for its path."""
        self.add_weights(metadata, document_weights(metadata, body))

    def add_weights(self, metadata: DocumentMetadata, weights: dict[str, int]) -> None:
        """Index precomputed term weights for a document."""
        self.remove(metadata.path)
        self._documents[metadata.path] = metadata
        self._weights[metadata.path] = dict(weights)
        for token, weight in weights.items():
            self._postings.setdefault(token, {})[metadata.path] = weight

    def remove(self, path: str) -> bool:
        """Drop a document and its postings; returns True when it was indexed."""
        weights = self._weights.pop(path, None)
        self._documents.pop(path, None)
        if weights is None:
            return False
        for token in weights:
            postings = self._postings.get(token)
            if postings is None:
                continue
            postings.pop(path, None)
            if not postings:
                del self._postings[token]
        return True

    def document(self, path: str) -> DocumentMetadata | None:
        """Return indexed metadata for a path."""
        return self._documents.get(path)

    def documents(self) -> list[DocumentMetadata]:
        """Return indexed documents sorted by path."""
        return [self._documents[path] for path in sorted(self._documents)]

    def weights(self, path: str) -> dict[str, int] | None:
        """Return the stored term weights for a path."""
        weights = self._weights.get(path)
        return dict(weights) if weights is not None else None

    def postings(self, token: str) -> dict[str, int]:
        """Return a copy of one token's postings."""
        return dict(self._postings.get(token, {}))

    def tokens(self) -> list[str]:
        """Return every indexed token, sorted."""
        return sorted(self._postings)

    def search(self, query: str, limit: int = 10) -> list[SearchResult]:
        """Rank documents by weighted term frequency with path tie-breaking."""
        terms = sorted(set(tokenize(query)))
        if not terms or limit < 1:
            return []
        phrase = normalize_phrase(query)
        scores: dict[str, int] = {}
        matched: dict[str, list[str]] = {}
        for term in terms:
            for path, weight in self._postings.get(term, {}).items():
                scores[path] = scores.get(path, 0) + weight
                matched.setdefault(path, []).append(term)
        for path, metadata in self._documents.items():
            if phrase and phrase in _exact_keys(metadata):
                scores[path] = scores.get(path, 0) + EXACT_MATCH_BONUS
                matched.setdefault(path, [])
        ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
        return [
            SearchResult(
                document=self._documents[path],
                score=score,
                matched_terms=tuple(matched.get(path, [])),
            )
            for path, score in ranked[:limit]
        ]

    def suggest(self, query: str, limit: int = 3) -> list[str]:
        """Suggest indexed tokens close to query tokens that are not indexed."""
        if limit < 1:
            return []
        vocabulary = self.tokens()
        ranked: dict[str, int] = {}
        for term in sorted(set(tokenize(query))):
            if term in self._postings:
                continue
            max_distance = max(1, len(term) // 3)
            for candidate in vocabulary:
                distance = levenshtein(term, candidate)
                shares_prefix = _shared_prefix_length(term, candidate) >= MIN_SHARED_PREFIX
                if distance > max_distance and not shares_prefix:
                    continue
                if candidate not in ranked or distance < ranked[candidate]:
                    ranked[candidate] = distance
        ordered = sorted(ranked.items(), key=lambda item: (item[1], item[0]))
        return [token for token, _ in ordered[:limit]]


def levenshtein(left: str, right: str) -> int:
    """Return the insert/delete/substitute edit distance."""
    if left == right:
        return 0
    if len(left) < len(right):
        left, right = right, left
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (left_char != right_char),
                )
            )
        previous = current
    return previous[-1]


def _exact_keys(metadata: DocumentMetadata) -> set[str]:
    keys = {
        normalize_phrase(metadata.id),
        normalize_phrase(PurePosixPath(metadata.path).stem),
        normalize_phrase(metadata.title),
    }
    keys.discard("")
    return keys


def _shared_prefix_length(left: str, right: str) -> int:
    count = 0
    for left_char, right_char in zip(left, right):
        if left_char != right_char:
            break
        count += 1
    return count
