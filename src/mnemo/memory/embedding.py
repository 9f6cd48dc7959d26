"""Embedding client: provider calls with batching, retry and a bounded LRU cache."""

from collections import OrderedDict

from mnemo.core.errors import DimensionMismatch, EmbeddingFailure, is_transient
from mnemo.core.logging import get_logger
from mnemo.core.retry import call_with_retry
from mnemo.core.typing import Vector
from mnemo.llm.base import EmbeddingProvider

logger = get_logger("memory.embedding")

DIMENSION_PROBE = "dimension probe"


class EmbeddingCache:
    """Process-wide LRU cache of text -> vector. ``max_size=0`` disables caching."""

    def __init__(self, max_size: int = 2048):
        self.max_size = max_size
        self._entries: OrderedDict[str, Vector] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, text: str) -> Vector | None:
        vector = self._entries.get(text)
        if vector is None:
            self.misses += 1
            return None
        self._entries.move_to_end(text)
        self.hits += 1
        return vector

    def put(self, text: str, vector: Vector) -> None:
        if self.max_size <= 0:
            return
        self._entries[text] = vector
        self._entries.move_to_end(text)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)


class EmbeddingClient:
    """Wraps an EmbeddingProvider; every vector is checked against ``dimensions``."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        dimensions: int,
        cache: EmbeddingCache | None = None,
        batch_size: int = 32,
        attempts: int = 3,
        timeout: float | None = 30.0,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
    ):
        self.provider = provider
        self.dimensions = dimensions
        self.cache = cache if cache is not None else EmbeddingCache()
        self.batch_size = batch_size
        self._retry = {
            "attempts": attempts,
            "timeout": timeout,
            "base_delay": base_delay,
            "max_delay": max_delay,
        }

    def _check(self, vector: Vector, text: str) -> Vector:
        if len(vector) != self.dimensions:
            raise DimensionMismatch(self.dimensions, len(vector), f"embedding of {text[:40]!r}")
        return vector

    async def _call(self, texts: list[str]) -> list[Vector]:
        try:
            return await call_with_retry(
                self.provider.embed_batch, texts, label="embed_batch", **self._retry
            )
        except Exception as e:
            if is_transient(e) and not isinstance(e, EmbeddingFailure):
                raise EmbeddingFailure(f"Embedding failed after retries: {e}") from e
            raise

    async def embed(self, text: str) -> Vector:
        """Embed one text. Raises EmbeddingFailure once retries are exhausted."""
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[Vector]:
        """Embed texts in order; cached texts are not re-sent, duplicates sent once."""
        results: dict[str, Vector] = {}
        missing: list[str] = []
        for text in texts:
            if text in results or text in missing:
                continue
            cached = self.cache.get(text)
            if cached is not None:
                results[text] = cached
            else:
                missing.append(text)

        for start in range(0, len(missing), self.batch_size):
            chunk = missing[start : start + self.batch_size]
            vectors = await self._call(chunk)
            if len(vectors) != len(chunk):
                raise EmbeddingFailure(f"Provider returned {len(vectors)} vectors for {len(chunk)} texts")
            for text, vector in zip(chunk, vectors):
                self._check(vector, text)
                self.cache.put(text, vector)
                results[text] = vector

        if missing:
            logger.debug(f"Embedded {len(missing)} texts ({len(texts) - len(missing)} cached)")
        return [results[text] for text in texts]

    async def validate_dimensions(self) -> None:
        """Startup check: provider output size must equal the configured dimension."""
        vector = await self._call([DIMENSION_PROBE])
        self._check(vector[0], DIMENSION_PROBE)
        logger.info(f"Embedding dimension validated: {self.dimensions}")

    def clear(self) -> None:
        """Drop all cached vectors."""
        self.cache.clear()

    async def close(self) -> None:
        self.clear()
