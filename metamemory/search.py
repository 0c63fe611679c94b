"""Relevance search over archived-thread summaries."""

from __future__ import annotations

import logging
import re
import zlib
from collections import Counter
from collections.abc import Mapping
from typing import Protocol, runtime_checkable

import numpy as np

from .types import IndexedSummary, SearchResult, TopicThread

logger = logging.getLogger(__name__)

STOPWORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
        "with", "by", "from", "is", "are", "was", "were", "be", "been", "have",
        "has", "had", "do", "does", "did", "will", "would", "could", "should",
        "i", "you", "he", "she", "it", "we", "they", "this", "that", "these",
        "those", "can", "what", "which", "who", "when", "where", "why", "how",
        "not", "so", "just",
    }
)  # fmt: skip

_TOKEN = re.compile(r"[a-z0-9_]+")


@runtime_checkable
class SimilaritySearch(Protocol):
    """Ranked lookup of archived summaries by relevance to a query."""

    async def search(self, query: str, top_k: int) -> list[SearchResult]: ...


def tokenize(text: str) -> list[str]:
    return [t for t in _TOKEN.findall(text.lower()) if t not in STOPWORDS and len(t) > 1]


def embed(text: str, dimensions: int = 256) -> np.ndarray:
    """Hashed bag-of-words embedding, L2-normalized. Empty text embeds to zeros."""
    vector = np.zeros(dimensions)
    for token, count in Counter(tokenize(text)).items():
        vector[zlib.crc32(token.encode("utf-8")) % dimensions] += count
    norm = np.linalg.norm(vector)
    if norm > 0:
        vector = vector / norm
    return vector


class InMemorySimilaritySearch:
    """In-process index of archived thread summaries.

    Keyed by topic name; re-adding a thread replaces its entry.
    """

    def __init__(self, dimensions: int = 256):
        self.dimensions = dimensions
        self._entries: dict[str, IndexedSummary] = {}
        self._vectors: dict[str, np.ndarray] = {}

    def add_thread(self, thread: TopicThread) -> None:
        summary = thread.summary
        if not summary:
            logger.debug("Not indexing thread %s without a summary", thread.name)
            return
        self.add_summary(thread.name, summary)

    def add_summary(self, topic_name: str, summary: str) -> None:
        vector = embed(f"{topic_name.replace('_', ' ')} {summary}", self.dimensions)
        self._vectors[topic_name] = vector
        self._entries[topic_name] = IndexedSummary(
            topic_name=topic_name, summary=summary, embedding=vector.tolist()
        )

    def remove_thread(self, topic_name: str) -> bool:
        self._vectors.pop(topic_name, None)
        return self._entries.pop(topic_name, None) is not None

    def get(self, topic_name: str) -> IndexedSummary | None:
        return self._entries.get(topic_name)

    def topic_names(self) -> list[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()
        self._vectors.clear()

    def size(self) -> int:
        return len(self._entries)

    async def search(self, query: str, top_k: int = 3) -> list[SearchResult]:
        """Rank indexed summaries by cosine similarity to the query.

        Entries with zero similarity are never returned.
        """
        if top_k <= 0 or not self._entries:
            return []
        query_vector = embed(query, self.dimensions)
        if not query_vector.any():
            return []

        scored = []
        for name, vector in self._vectors.items():
            score = float(np.dot(query_vector, vector))
            if score > 0:
                scored.append((score, name))
        scored.sort(key=lambda item: (-item[0], item[1]))

        return [
            SearchResult(
                topic_name=name,
                summary=self._entries[name].summary,
                relevance_score=score,
            )
            for score, name in scored[:top_k]
        ]

    def export_embeddings(self) -> dict[str, IndexedSummary]:
        return {name: entry.model_copy(deep=True) for name, entry in self._entries.items()}

    def load_embeddings(self, embeddings: Mapping[str, IndexedSummary]) -> None:
        """Replace the index contents with previously exported entries."""
        self.clear()
        for name, entry in embeddings.items():
            vector = np.asarray(entry.embedding, dtype=float)
            if vector.shape != (self.dimensions,):
                logger.warning(
                    "Re-embedding %s: stored embedding has %d dimensions, expected %d",
                    name,
                    vector.size,
                    self.dimensions,
                )
                self.add_summary(name, entry.summary)
                continue
            self._vectors[name] = vector
            self._entries[name] = entry.model_copy(deep=True)
