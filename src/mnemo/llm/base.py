"""
LLM provider interfaces.

Completion is used only by summarization and semantic extraction; embedding
turns text into fixed-length vectors.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from mnemo.core.typing import MessageDict, Vector


@dataclass
class LLMResponse:
    """Response from completion provider."""

    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    metadata: dict | None = None


@dataclass
class LLMConfig:
    """Configuration for LLM call."""

    model: str | None = None
    max_tokens: int = 1024
    temperature: float = 0.3
    system_prompt: str | None = None


class CompletionProvider(ABC):
    """Abstract text-completion provider."""

    @abstractmethod
    async def complete(self, messages: list[MessageDict], config: LLMConfig) -> LLMResponse:
        """
        Generate completion from messages.

        Raises:
            CompletionFailure: transient provider failure (retryable)
        """
        ...

    async def health_check(self) -> bool:
        """Check if provider is available."""
        return True


class EmbeddingProvider(ABC):
    """Abstract text-embedding provider. Dimension is fixed per deployment."""

    @abstractmethod
    async def embed(self, text: str) -> Vector:
        """Embed a single text."""
        ...

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[Vector]:
        """Embed texts, preserving order."""
        ...

    async def health_check(self) -> bool:
        """Check if provider is available."""
        return True
