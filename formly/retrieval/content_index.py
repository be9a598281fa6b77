"""
Content Index - In-memory store of guidance snippets with similarity search

Responsibilities:
- Embed and store snippets (text + source)
- Return the top-k snippets most similar to a query

Design principles:
- Embedder injected (anything with embed(texts) -> list of vectors)
- Similarity is cosine, clamped to [0, 1]
- Stable ordering: similarity descending, ties by insertion order
"""

import logging
import math
from typing import Any, Iterable, List, Sequence, Tuple

from formly.contracts import RetrievedContent

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity clamped to [0, 1]; zero vectors give 0.0"""
    if len(a) != len(b):
        raise ValueError(f"Vector size mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return max(0.0, min(1.0, dot / (norm_a * norm_b)))


class ContentIndex:
    """Embedding-backed snippet index"""

    def __init__(self, embedder: Any):
        """
        Args:
            embedder: Object with embed(texts) -> list of float vectors

        Raises:
            TypeError: If embedder lacks a callable embed()
        """
        if not callable(getattr(embedder, 'embed', None)):
            raise TypeError("embedder must have callable embed() method")
        self.embedder = embedder
        self._entries: List[Tuple[str, str, List[float]]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, text: str, source: str) -> None:
        self.add_many([(text, source)])

    def add_many(self, items: Iterable[Tuple[str, str]]) -> None:
        """
        Embed and store (text, source) pairs.

        Raises:
            ValueError: If a text is empty or the embedder returns the wrong count
        """
        items = list(items)
        if not items:
            return
        for text, _ in items:
            if not isinstance(text, str) or not text.strip():
                raise ValueError("Snippet text must be a non-empty string")

        vectors = self.embedder.embed([text for text, _ in items])
        if len(vectors) != len(items):
            raise ValueError(f"Embedder returned {len(vectors)} vectors for {len(items)} texts")

        for (text, source), vector in zip(items, vectors):
            self._entries.append((text, source, list(vector)))
        logger.info(f"Indexed {len(items)} snippets ({len(self._entries)} total)")

    def search(self, query: str, k: int = 3) -> List[RetrievedContent]:
        """
        Top-k snippets by similarity to the query.

        Returns:
            At most k RetrievedContent, similarity descending; [] if empty
        """
        if k < 1 or not self._entries or not query or not query.strip():
            return []

        query_vector = self.embedder.embed([query])[0]
        scored = [
            (cosine_similarity(query_vector, vector), position, text, source)
            for position, (text, source, vector) in enumerate(self._entries)
        ]
        scored.sort(key=lambda item: (-item[0], item[1]))

        return [
            RetrievedContent(text=text, source=source, similarity=score)
            for score, _, text, source in scored[:k]
        ]
