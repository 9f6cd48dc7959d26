"""Deterministic fake providers and vector helpers for tests."""

import hashlib
import math

from mnemo.core.typing import Vector
from mnemo.llm.base import CompletionProvider, EmbeddingProvider, LLMConfig, LLMResponse

DIMS = 8

# No backoff sleeps in tests
FAST_RETRY = {"attempts": 2, "timeout": 5.0, "base_delay": 0.0, "max_delay": 0.0}


def hash_vector(text: str, dims: int = DIMS) -> Vector:
    """Deterministic pseudo-embedding seeded by the text."""
    digest = hashlib.sha256(text.encode()).digest()
    return [b / 127.5 - 1.0 for b in digest[:dims]]


def similar_to_axis(similarity: float, dims: int = DIMS) -> Vector:
    """Unit vector whose cosine with the first axis is ``similarity``."""
    return [similarity, math.sqrt(max(0.0, 1 - similarity**2))] + [0.0] * (dims - 2)


def axis(dims: int = DIMS) -> Vector:
    return [1.0] + [0.0] * (dims - 1)


class FakeEmbeddingProvider(EmbeddingProvider):
    """Hash-seeded vectors; specific texts can be pinned via ``vectors``."""

    def __init__(self, dims: int = DIMS, vectors: dict[str, Vector] | None = None):
        self.dims = dims
        self.vectors = vectors or {}
        self.calls: list[list[str]] = []

    async def embed(self, text: str) -> Vector:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[Vector]:
        self.calls.append(list(texts))
        return [self.vectors.get(t) or hash_vector(t, self.dims) for t in texts]


class FakeCompletionProvider(CompletionProvider):
    """Returns scripted responses in order, then ``default``."""

    def __init__(self, responses: list[str] | None = None, default: str = ""):
        self.responses = list(responses or [])
        self.default = default
        self.prompts: list[str] = []
        self.configs: list[LLMConfig] = []

    async def complete(self, messages, config: LLMConfig) -> LLMResponse:
        self.prompts.append(messages[-1]["content"])
        self.configs.append(config)
        content = self.responses.pop(0) if self.responses else self.default
        return LLMResponse(content=content, model="fake")
