"""Context budgeting: fit assembled history inside the model window.

Two strategies:
  discard   - drop the oldest non-pinned messages until the total fits
  summarize - drop the same span but replace it with one bounded,
              cached summary message

fit() is idempotent: a payload already under budget comes back as-is.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from hashlib import blake2b
from typing import Any, Protocol

from parley.api.models import ApiResponse
from parley.errors import ContextOverflowError
from parley.pipeline.assembler import SUMMARY_PREFIX
from parley.pipeline.prompts import SUMMARY_SYSTEM_PROMPT
from parley.pipeline.tokens import MESSAGE_OVERHEAD, TokenCountMap, TokenCounter
from parley.schemas import PromptMessage

logger = logging.getLogger(__name__)

Summarizer = Callable[[list[PromptMessage]], Awaitable[str]]


# ------------------------------------------------------------------
# Protocol for API caller injection
# ------------------------------------------------------------------


class ApiCaller(Protocol):
    async def __call__(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model_override: str | None = None,
        max_tokens: int | None = None,
    ) -> ApiResponse: ...


def serialize_for_summary(messages: list[PromptMessage]) -> str:
    lines = []
    for msg in messages:
        role = "User" if msg.role == "user" else "Assistant"
        lines.append(f"**{role}:** {msg.text()}")
    return "\n\n".join(lines)


def make_summarizer(call_api: ApiCaller, model: str, max_tokens: int = 1200) -> Summarizer:
    """Summarizer that asks the background model for a plain summary."""

    async def summarize(messages: list[PromptMessage]) -> str:
        response = await call_api(
            system_prompt=SUMMARY_SYSTEM_PROMPT,
            messages=[{"role": "user", "content": serialize_for_summary(messages)}],
            tools=None,
            model_override=model,
            max_tokens=max_tokens,
        )
        return "".join(b.get("text", "") for b in response.content if b.get("type") == "text")

    return summarize


@dataclass
class FitResult:
    payload: list[PromptMessage]
    prompt_tokens: int
    token_count_map: TokenCountMap
    summary: str | None = None
    dropped: int = 0


class ContextBudgeter:
    """Fits a formatted message list inside the context budget.

    Budget = max_context_tokens - max_output_tokens - reserved, where
    reserved covers system content the caller sends alongside.
    """

    def __init__(
        self,
        token_counter: TokenCounter,
        max_context_tokens: int,
        max_output_tokens: int,
        summarizer: Summarizer | None = None,
        summary_token_limit: int = 1200,
    ) -> None:
        self._counter = token_counter
        self._max_context = max_context_tokens
        self._max_output = max_output_tokens
        self._summarizer = summarizer
        self._summary_limit = summary_token_limit
        self._summary_cache: dict[str, str] = {}

    def budget(self, reserved_tokens: int = 0) -> int:
        return self._max_context - self._max_output - reserved_tokens

    async def fit(
        self,
        messages: list[PromptMessage],
        strategy: str = "discard",
        reserved_tokens: int = 0,
    ) -> FitResult:
        budget = self.budget(reserved_tokens)
        for msg in messages:
            if msg.token_count > budget:
                raise ContextOverflowError(msg.message_id, msg.token_count, budget)

        total = sum(m.token_count for m in messages)
        if total <= budget:
            return FitResult(
                payload=list(messages),
                prompt_tokens=total,
                token_count_map=self._map_for(messages),
            )

        if strategy == "summarize" and self._summarizer is not None:
            try:
                return await self._summarize_fit(messages, budget)
            except ContextOverflowError:
                logger.warning("Summary does not fit in budget %d, discarding instead", budget)
            except Exception:
                logger.exception("Summarization failed, falling back to discard")

        kept, dropped = self._discard(messages, budget)
        return self._result(kept, dropped, budget)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _discard(
        self, messages: list[PromptMessage], budget: int
    ) -> tuple[list[PromptMessage], list[PromptMessage]]:
        """Drop oldest droppable messages; never the latest or a pinned one."""
        kept = list(messages)
        dropped: list[PromptMessage] = []
        total = sum(m.token_count for m in kept)

        index = 0
        while total > budget and index < len(kept) - 1:
            if kept[index].pinned:
                index += 1
                continue
            msg = kept.pop(index)
            dropped.append(msg)
            total -= msg.token_count

        # Snap to a user boundary so the payload never opens on an assistant turn
        while len(kept) > 1 and kept[0].role != "user" and not kept[0].pinned:
            dropped.append(kept.pop(0))

        return kept, dropped

    def _result(
        self,
        kept: list[PromptMessage],
        dropped: list[PromptMessage],
        budget: int,
        summary: str | None = None,
    ) -> FitResult:
        total = sum(m.token_count for m in kept)
        if total > budget:
            raise ContextOverflowError(None, total, budget)
        if dropped:
            logger.info(
                "Context fit: dropped %d messages, %d tokens kept of budget %d",
                len(dropped),
                total,
                budget,
            )
        return FitResult(
            payload=kept,
            prompt_tokens=total,
            token_count_map=self._map_for(kept),
            summary=summary,
            dropped=len(dropped),
        )

    async def _summarize_fit(self, messages: list[PromptMessage], budget: int) -> FitResult:
        # Reserve room for the summary before choosing the span to drop
        kept, dropped = self._discard(messages, budget - self._summary_limit - MESSAGE_OVERHEAD)
        if not dropped:
            return self._result(kept, dropped, budget)

        key = self._span_key(dropped)
        summary = self._summary_cache.get(key)
        if summary is None:
            raw = await self._summarizer(dropped)  # type: ignore[misc]
            if not raw.strip():
                raise ValueError("Summarizer returned empty text")
            summary = self._truncate(raw.strip())
            self._summary_cache[key] = summary
        else:
            logger.debug("Reusing cached summary for span %s", key)

        content = f"{SUMMARY_PREFIX}\n\n{summary}"
        summary_message = PromptMessage(
            role="user",
            content=content,
            message_id=f"summary:{key}",
            token_count=self._counter.get_token_count(content) + MESSAGE_OVERHEAD,
            synthetic=True,
        )
        # The pinned memory pair stays first; the summary opens the history after it
        lead = 0
        while lead < len(kept) and kept[lead].pinned:
            lead += 1
        payload = [*kept[:lead], summary_message, *kept[lead:]]
        return self._result(payload, dropped, budget, summary=summary)

    def _truncate(self, text: str) -> str:
        # Leave room for the prefix line
        limit = self._summary_limit - self._counter.get_token_count(SUMMARY_PREFIX) - 2
        if self._counter.get_token_count(text) <= limit:
            return text
        end = len(text)
        while end > 0 and self._counter.get_token_count(text[:end]) > limit:
            end = int(end * 0.9)
        return text[:end]

    @staticmethod
    def _span_key(span: list[PromptMessage]) -> str:
        h = blake2b(digest_size=12)
        for msg in span:
            h.update((msg.message_id or msg.text()).encode("utf-8"))
            h.update(b"\x00")
        return h.hexdigest()

    @staticmethod
    def _map_for(messages: list[PromptMessage]) -> TokenCountMap:
        counts = TokenCountMap()
        for msg in messages:
            if msg.message_id:
                counts[msg.message_id] = msg.token_count
        return counts
