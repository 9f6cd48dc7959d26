"""Token counting.

Uses LiteLLM's tokenizer for the configured model when it can; otherwise
falls back to ``ceil(len(text) / 4)``, an estimate calibrated for English
prose and not a guarantee.
"""

import math

from litellm import token_counter

from mnemo.core.logging import get_logger

logger = get_logger("llm.tokens")

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class TokenCounter:
    """Counts tokens for one model. ``model=None`` always uses the estimate."""

    def __init__(self, model: str | None = None):
        self.model = model
        self._exact = model is not None

    def count(self, text: str) -> int:
        if not text:
            return 0
        if self._exact:
            try:
                return token_counter(model=self.model, text=text)
            except Exception as e:
                # Unknown model or tokenizer unavailable offline
                logger.warning(f"Exact tokenizer unavailable for {self.model}, estimating: {e}")
                self._exact = False
        return estimate_tokens(text)

    def truncate(self, text: str, max_tokens: int, marker: str = "...") -> str:
        """Longest prefix of ``text`` (plus marker) costing at most ``max_tokens``."""
        if max_tokens <= 0:
            return ""
        if self.count(text) <= max_tokens:
            return text
        if self.count(marker) > max_tokens:
            marker = ""

        lo, hi = 0, len(text)
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if self.count(text[:mid].rstrip() + marker) <= max_tokens:
                lo = mid
            else:
                hi = mid - 1

        result = text[:lo].rstrip() + marker
        return result if self.count(result) <= max_tokens else ""
