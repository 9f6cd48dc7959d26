"""LiteLLM adapters - unified interface for completion and embedding providers."""

from typing import Any

import litellm
from litellm import acompletion, aembedding

from mnemo.core.config import Settings
from mnemo.core.errors import CompletionFailure, EmbeddingFailure
from mnemo.core.logging import get_logger
from mnemo.core.typing import MessageDict, Vector
from mnemo.llm.base import CompletionProvider, EmbeddingProvider, LLMConfig, LLMResponse

logger = get_logger("llm.litellm_adapter")

# Disable LiteLLM's verbose logging
litellm.suppress_debug_info = True

# Provider errors worth retrying; auth and bad-request errors propagate as-is.
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.RateLimitError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
)


def _connection_params(api_key: str | None, api_base: str | None) -> dict[str, Any]:
    params: dict[str, Any] = {}
    if api_key:
        params["api_key"] = api_key
    if api_base:
        params["api_base"] = api_base
    return params


class LiteLLMCompletionProvider(CompletionProvider):
    """Completion through LiteLLM's ``acompletion``."""

    def __init__(self, model: str, api_key: str | None = None, api_base: str | None = None):
        self.model = model
        self._params = _connection_params(api_key, api_base)

    async def complete(self, messages: list[MessageDict], config: LLMConfig) -> LLMResponse:
        if config.system_prompt:
            messages = [{"role": "system", "content": config.system_prompt}, *messages]

        params = {
            "model": config.model or self.model,
            "messages": messages,
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
            **self._params,
        }

        logger.debug(f"LiteLLM request: model={params['model']}, messages={len(messages)}")

        try:
            response = await acompletion(**params)
        except TRANSIENT_ERRORS as e:
            raise CompletionFailure(f"{params['model']}: {e}") from e
        except Exception as e:
            logger.error(f"LiteLLM error for {params['model']}: {e}")
            raise

        content = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0

        logger.debug(
            f"LiteLLM response: model={response.model}, tokens={input_tokens}+{output_tokens}"
        )

        return LLMResponse(
            content=content,
            model=response.model or params["model"],
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    async def health_check(self) -> bool:
        try:
            await self.complete([{"role": "user", "content": "ping"}], LLMConfig(max_tokens=1))
            return True
        except Exception as e:
            logger.warning(f"Completion health check failed: {e}")
            return False


class LiteLLMEmbeddingProvider(EmbeddingProvider):
    """Embeddings through LiteLLM's ``aembedding``."""

    def __init__(self, model: str, api_key: str | None = None, api_base: str | None = None):
        self.model = model
        self._params = _connection_params(api_key, api_base)

    async def embed(self, text: str) -> Vector:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[Vector]:
        if not texts:
            return []
        try:
            response = await aembedding(model=self.model, input=texts, **self._params)
        except TRANSIENT_ERRORS as e:
            raise EmbeddingFailure(f"{self.model}: {e}") from e

        items = sorted(response.data, key=lambda item: _field(item, "index"))
        vectors = [list(_field(item, "embedding")) for item in items]
        if len(vectors) != len(texts):
            raise EmbeddingFailure(
                f"{self.model}: expected {len(texts)} embeddings, got {len(vectors)}"
            )
        return vectors

    async def health_check(self) -> bool:
        try:
            await self.embed("ping")
            return True
        except Exception as e:
            logger.warning(f"Embedding health check failed: {e}")
            return False


def _field(item: Any, name: str) -> Any:
    """Embedding items come back as dicts or objects depending on the provider."""
    if isinstance(item, dict):
        return item[name]
    return getattr(item, name)


def create_providers(settings: Settings) -> tuple[LiteLLMCompletionProvider, LiteLLMEmbeddingProvider]:
    """Build completion and embedding providers from settings."""
    completion = LiteLLMCompletionProvider(
        settings.completion_model,
        api_key=settings.completion_api_key or None,
        api_base=settings.completion_api_base or None,
    )
    embedding = LiteLLMEmbeddingProvider(
        settings.embedding_model,
        api_key=settings.embedding_api_key or None,
        api_base=settings.embedding_api_base or None,
    )
    return completion, embedding
