"""
Context compression under a token budget.

1. Rank candidates (relevance desc, near-ties to the more recent memory).
2. Greedily admit memories above the relevance floor that fit the budget.
3. Group the rejected memories by category; each group of two or more is
   replaced by one generated summary if it fits, otherwise by its most
   important member that fits.

Every admitted line is charged with its trailing newline, and the rendered
result is recounted at the end, so the output never exceeds the budget.
"""

import asyncio
from collections import defaultdict

from mnemo.context.scorer import RelevanceScorer
from mnemo.core.errors import BudgetViolation
from mnemo.core.logging import get_logger
from mnemo.core.retry import call_with_retry
from mnemo.core.types import CompressionResult, ScoredMemory
from mnemo.llm.base import CompletionProvider, LLMConfig
from mnemo.llm.tokens import TokenCounter

logger = get_logger("context.compressor")

SUMMARIZE_PROMPT = """Summarize these {category} memories about the user in one or two sentences.
Preserve names, decisions, preferences and dates. Do not add anything that is not stated.

Memories:
{memories}

Summary:"""

# Cap per memory when building a summarization prompt
PROMPT_ITEM_TOKENS = 200


class ContextCompressor:
    """Fits scored memories into ``max_tokens``, summarizing what does not fit."""

    def __init__(
        self,
        llm: CompletionProvider | None = None,
        counter: TokenCounter | None = None,
        scorer: RelevanceScorer | None = None,
        relevance_floor: float = 0.5,
        summary_max_tokens: int = 256,
        attempts: int = 3,
        timeout: float | None = 30.0,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
    ):
        self.llm = llm
        self.counter = counter or TokenCounter()
        self.scorer = scorer or RelevanceScorer()
        self.relevance_floor = relevance_floor
        self.summary_max_tokens = summary_max_tokens
        self._retry = {
            "attempts": attempts,
            "timeout": timeout,
            "base_delay": base_delay,
            "max_delay": max_delay,
        }

    def line_cost(self, text: str) -> int:
        """Tokens charged for one rendered line, separator included."""
        return self.counter.count(text + "\n")

    def _fit(self, text: str, budget: int) -> str:
        """Truncate ``text`` so that its line cost is at most ``budget``."""
        limit = budget
        while limit > 0:
            candidate = self.counter.truncate(text, limit)
            if not candidate:
                return ""
            if self.line_cost(candidate) <= budget:
                return candidate
            limit -= 1
        return ""

    async def compress(self, scored: list[ScoredMemory], max_tokens: int) -> CompressionResult:
        if max_tokens < 0:
            raise ValueError("max_tokens must be non-negative")
        if not scored or max_tokens == 0:
            return CompressionResult(
                kept=[],
                summary="",
                compression_ratio=1.0 if not scored else 0.0,
                removed_ids=[m.id for m in scored],
            )

        ranked = self.scorer.rank(scored)
        kept: list[ScoredMemory] = []
        rejected: list[ScoredMemory] = []
        used = 0

        for item in ranked:
            if item.relevance <= self.relevance_floor:
                rejected.append(item)
                continue
            cost = self.line_cost(item.text)
            if used + cost <= max_tokens:
                kept.append(item)
                used += cost
            elif cost > max_tokens:
                # Larger than the whole budget: admit a truncated form if anything is left
                text = self._fit(item.text, max_tokens - used)
                if text:
                    kept.append(
                        ScoredMemory(memory=item.memory, score=item.score, text=text, truncated=True)
                    )
                    used += self.line_cost(text)
                    logger.debug(f"Truncated oversized memory {item.id} to fit budget")
                else:
                    rejected.append(item)
            else:
                rejected.append(item)

        summaries, summarized_ids, fallback, used = await self._summarize_rejected(
            rejected, max_tokens - used, used
        )
        if fallback:
            kept = self.scorer.rank(kept + fallback)

        kept, summaries = self._enforce_budget(kept, summaries, max_tokens)

        kept_ids = {m.id for m in kept}
        summarized_ids = [i for i in summarized_ids if i not in kept_ids]
        result = CompressionResult(
            kept=kept,
            summary="\n".join(summaries),
            compression_ratio=len(kept) / len(scored),
            removed_ids=[m.id for m in ranked if m.id not in kept_ids],
            summarized_ids=summarized_ids,
        )
        result.token_count = self.counter.count(result.render())
        if result.token_count > max_tokens:
            raise BudgetViolation(f"Compressed context uses {result.token_count} > {max_tokens} tokens")

        logger.debug(
            f"Compressed {len(scored)} memories: kept={len(kept)} summaries={len(summaries)} "
            f"tokens={result.token_count}/{max_tokens}"
        )
        return result

    async def _summarize_rejected(
        self, rejected: list[ScoredMemory], remaining: int, used: int
    ) -> tuple[list[str], list[str], list[ScoredMemory], int]:
        groups: dict[str, list[ScoredMemory]] = defaultdict(list)
        for item in rejected:  # rank order is preserved inside each group
            groups[item.category].append(item)
        eligible = [(category, items) for category, items in groups.items() if len(items) >= 2]
        if not eligible or remaining <= 0:
            return [], [], [], used

        generated = await asyncio.gather(
            *(self._summarize(category, items) for category, items in eligible),
            return_exceptions=True,
        )

        summaries: list[str] = []
        summarized_ids: list[str] = []
        fallback: list[ScoredMemory] = []
        for (category, items), summary in zip(eligible, generated):
            if isinstance(summary, BaseException):
                logger.warning(f"Summary for category {category!r} failed: {summary}")
                summary = None

            if summary:
                line = f"[{category} summary] {summary}"
                cost = self.line_cost(line)
                if cost <= remaining:
                    summaries.append(line)
                    summarized_ids.extend(m.id for m in items)
                    remaining -= cost
                    used += cost
                    continue

            # Summary missing or too large: keep the most important member that fits
            for item in sorted(items, key=lambda m: (-m.importance, -m.relevance, m.id)):
                cost = self.line_cost(item.text)
                if cost <= remaining:
                    fallback.append(item)
                    remaining -= cost
                    used += cost
                    break

        return summaries, summarized_ids, fallback, used

    async def _summarize(self, category: str, items: list[ScoredMemory]) -> str | None:
        if self.llm is None:
            return None
        lines = "\n".join(
            f"- {self.counter.truncate(m.text, PROMPT_ITEM_TOKENS)}" for m in items
        )
        response = await call_with_retry(
            self.llm.complete,
            [{"role": "user", "content": SUMMARIZE_PROMPT.format(category=category, memories=lines)}],
            LLMConfig(max_tokens=self.summary_max_tokens, temperature=0.3),
            label="summarize",
            **self._retry,
        )
        text = " ".join(response.content.split())
        if not text:
            return None
        return self.counter.truncate(text, self.summary_max_tokens)

    def _enforce_budget(
        self, kept: list[ScoredMemory], summaries: list[str], max_tokens: int
    ) -> tuple[list[ScoredMemory], list[str]]:
        """Drop lowest-ranked lines until the rendered text fits.

        Per-line charging normally guarantees this already; exact tokenizers
        can still merge tokens across line boundaries differently.
        """
        kept = list(kept)
        summaries = list(summaries)

        def total() -> int:
            parts = [m.text for m in kept] + summaries
            return self.counter.count("\n".join(parts))

        while (kept or summaries) and total() > max_tokens:
            if summaries:
                dropped = summaries.pop()
                logger.warning(f"Dropped summary to honour budget: {dropped[:40]!r}")
            else:
                dropped_item = kept.pop()
                logger.warning(f"Dropped memory {dropped_item.id} to honour budget")
        return kept, summaries
