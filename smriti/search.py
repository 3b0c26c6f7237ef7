"""
Ranked lookup over the index.

A query is tokenized exactly like indexed text. Each query token earns the
weight of its best match against an item:

    exact title token  >  exact url/metadata token
    title token prefix >  url/metadata token prefix
    infix (inside a token)

Items are ordered by total score, then most recent visit, then visit
count. Only the top `limit` are kept while scanning.
"""

import heapq
import logging
import time
from dataclasses import dataclass
from typing import Optional

from .config import SearchConfig
from .protocol import IndexStoreProtocol
from .tokenizer import tokenize
from .types import IndexedItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoringWeights:
    """Per-query-token weights for each match tier."""
    title_exact: float = 4.0
    other_exact: float = 3.0
    title_prefix: float = 2.0
    other_prefix: float = 1.0
    infix: float = 0.5
    min_infix_length: int = 1

    @classmethod
    def from_config(cls, config: SearchConfig) -> "ScoringWeights":
        return cls(
            title_exact=config.title_exact,
            other_exact=config.other_exact,
            title_prefix=config.title_prefix,
            other_prefix=config.other_prefix,
            infix=config.infix,
            min_infix_length=config.min_infix_length,
        )


@dataclass(frozen=True)
class SearchHit:
    """An item with its relevance score."""
    item: IndexedItem
    score: float

    def to_dict(self) -> dict:
        return {**self.item.to_dict(), "score": self.score}


def score_item(
    query_tokens: list[str],
    item: IndexedItem,
    weights: ScoringWeights,
) -> float:
    """Relevance of item for an already-tokenized query. 0 means no match."""
    if not query_tokens or not item.tokens:
        return 0.0
    # Space-delimited so membership tests run as C substring searches
    haystack = " " + " ".join(item.tokens) + " "
    title_tokens: Optional[list[str]] = None

    score = 0.0
    for q in query_tokens:
        if q not in haystack:
            continue
        if title_tokens is None:
            title_tokens = tokenize(item.title)
        if f" {q} " in haystack:
            score += weights.title_exact if q in title_tokens else weights.other_exact
        elif f" {q}" in haystack:
            if any(t.startswith(q) for t in title_tokens):
                score += weights.title_prefix
            else:
                score += weights.other_prefix
        elif len(q) >= weights.min_infix_length:
            score += weights.infix
    return score


def _rank_key(hit: SearchHit):
    item = hit.item
    return (-hit.score, -item.last_visit, -item.visit_count, item.url)


class SearchEngine:
    """
    Scores and ranks items from an index store. Never writes to the store.
    """

    def __init__(
        self,
        store: IndexStoreProtocol,
        *,
        weights: Optional[ScoringWeights] = None,
        limit: int = 50,
    ):
        self._store = store
        self._weights = weights or ScoringWeights()
        self._limit = limit

    @classmethod
    def from_config(cls, store: IndexStoreProtocol, config: SearchConfig) -> "SearchEngine":
        return cls(store, weights=ScoringWeights.from_config(config), limit=config.limit)

    @property
    def weights(self) -> ScoringWeights:
        return self._weights

    @property
    def limit(self) -> int:
        return self._limit

    def search_hits(self, query: str, *, limit: Optional[int] = None) -> list[SearchHit]:
        """Ranked hits with scores, best first."""
        if not query or not isinstance(query, str) or not query.strip():
            return []
        query_tokens = tokenize(query)
        if not query_tokens:
            return []
        limit = self._limit if limit is None else limit
        if limit <= 0:
            return []

        start = time.monotonic()
        scanned = 0
        # Min-heap on rank order, inverted: the root is the weakest kept hit
        heap: list[tuple] = []
        for item in self._store.scan():
            scanned += 1
            score = score_item(query_tokens, item, self._weights)
            if score <= 0:
                continue
            hit = SearchHit(item=item, score=score)
            key = _rank_key(hit)
            entry = (_Inverted(key), hit)
            if len(heap) < limit:
                heapq.heappush(heap, entry)
            elif entry[0] > heap[0][0]:
                heapq.heapreplace(heap, entry)

        hits = sorted((hit for _, hit in heap), key=_rank_key)
        logger.debug(
            "Search %r: %d/%d items matched in %.1fms",
            query, len(hits), scanned, (time.monotonic() - start) * 1000,
        )
        return hits

    def search(self, query: str, *, limit: Optional[int] = None) -> list[IndexedItem]:
        """
        Items matching query, most relevant first.

        Empty or whitespace-only queries return an empty list.
        """
        return [hit.item for hit in self.search_hits(query, limit=limit)]


class _Inverted:
    """Reverses the ordering of a rank key for use in a min-heap."""

    __slots__ = ("key",)

    def __init__(self, key):
        self.key = key

    def __lt__(self, other: "_Inverted") -> bool:
        return self.key > other.key

    def __gt__(self, other: "_Inverted") -> bool:
        return self.key < other.key

    def __eq__(self, other) -> bool:
        return isinstance(other, _Inverted) and self.key == other.key
