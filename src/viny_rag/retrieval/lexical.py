"""
Fuzzy keyword scoring over note fields.

Each field is scored by approximate substring matching: the fewest edits
needed to find the query somewhere in the field, relative to query length,
plus a penalty for how far from the start of the field the match sits.
Fields scoring above the threshold do not match. Matched fields are combined
by weight into one distance-like score (0 = exact, lower is better).
"""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from typing import Iterable, Optional

from ..models import Document, MatchKind, SearchResult

logger = logging.getLogger(__name__)

FIELD_WEIGHTS = {
    "title": 0.4,
    "content": 0.3,
    "tags": 0.2,
    "notebook": 0.1,
}

# Patterns longer than this are scored in pieces and averaged
MAX_PATTERN_LENGTH = 32

EPSILON = sys.float_info.epsilon


@dataclass
class LexicalMatch:
    score: float
    field_scores: dict[str, float] = field(default_factory=dict)


def fuzzy_score(
    pattern: str,
    text: str,
    location: int = 0,
    distance: int = 100,
    ignore_location: bool = False,
    threshold: float = 0.3,
) -> float:
    """Best score of ``pattern`` against any substring of ``text`` (0..1).

    Score is ``edits / len(pattern)`` plus ``|start - location| / distance``
    unless location is ignored.
    """
    m = len(pattern)
    if m == 0:
        return 0.0
    if ignore_location and pattern in text:
        return 0.0

    if ignore_location:
        end = len(text)
    else:
        # A start beyond this cannot score under the threshold
        end = min(len(text), location + int(threshold * distance) + 2 * m + 1)

    # Column of edit distances for pattern prefixes against the text seen so far
    column = list(range(m + 1))
    best = 1.0
    for j in range(end):
        ch = text[j]
        prev_diag = column[0]
        column[0] = 0
        for i in range(1, m + 1):
            cost = prev_diag + (pattern[i - 1] != ch)
            prev_diag = column[i]
            column[i] = min(cost, column[i] + 1, column[i - 1] + 1)

        errors = column[m]
        accuracy = errors / m
        if accuracy >= best:
            continue
        if ignore_location:
            score = accuracy
        else:
            start = max(0, j - m + 1)
            proximity = abs(location - start)
            if not distance:
                score = 1.0 if proximity else accuracy
            else:
                score = accuracy + proximity / distance
        best = min(best, score)

    return min(best, 1.0)


class LexicalScorer:
    """Weighted fuzzy matcher across title, content, tags and notebook."""

    def __init__(
        self,
        threshold: float = 0.3,
        distance: int = 100,
        ignore_location: bool = False,
        min_query_length: int = 2,
        weights: Optional[dict[str, float]] = None,
    ):
        self.threshold = threshold
        self.distance = distance
        self.ignore_location = ignore_location
        self.min_query_length = min_query_length

        weights = weights or FIELD_WEIGHTS
        total = sum(weights.values())
        self.weights = {k: v / total for k, v in weights.items()}

    def _score_text(self, query: str, text: str) -> Optional[float]:
        """Score one string; None when no piece of the query matches."""
        if not text:
            return None

        pieces = [
            (start, query[start:start + MAX_PATTERN_LENGTH])
            for start in range(0, len(query), MAX_PATTERN_LENGTH)
        ]

        total = 0.0
        matched = False
        for start, piece in pieces:
            score = fuzzy_score(
                piece,
                text,
                location=start,
                distance=self.distance,
                ignore_location=self.ignore_location,
                threshold=self.threshold,
            )
            if score <= self.threshold:
                matched = True
            total += score

        return total / len(pieces) if matched else None

    def _field_values(self, document: Document, name: str) -> list[str]:
        if name == "tags":
            return [t.lower() for t in document.tags]
        value = getattr(document, name, "") or ""
        return [value.lower()]

    def score_document(self, query: str, document: Document) -> Optional[LexicalMatch]:
        """Combined score for one document, or None when no field matches."""
        query = query.strip().lower()
        if len(query) < self.min_query_length:
            return None

        field_scores: dict[str, float] = {}
        for name in self.weights:
            scores = [
                s for s in (self._score_text(query, value) for value in self._field_values(document, name))
                if s is not None
            ]
            if scores:
                field_scores[name] = min(scores)

        if not field_scores:
            return None

        total = 1.0
        for name, score in field_scores.items():
            total *= (EPSILON if score == 0 else score) ** self.weights[name]

        return LexicalMatch(score=total, field_scores=field_scores)

    def search(self, query: str, documents: Iterable[Document]) -> list[SearchResult]:
        """Matching documents, best (lowest) score first."""
        if len(query.strip()) < self.min_query_length:
            return []

        results = []
        for doc in documents:
            match = self.score_document(query, doc)
            if match is None:
                continue
            results.append(SearchResult(
                document=doc,
                score=match.score,
                match_kind=MatchKind.LEXICAL,
                lexical_score=match.score,
            ))

        results.sort(key=lambda r: r.score)
        logger.debug(f"Lexical search for {query!r}: {len(results)} matches")
        return results
