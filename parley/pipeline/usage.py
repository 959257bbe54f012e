"""Usage reconciliation and spend persistence.

A turn produces one UsageRecord per LLM call boundary (one per agent
hop in a chain). The first record's input, cache writes and cache reads
form the baseline. Each later hop's input includes everything earlier
hops produced, so its new output is its total input minus the running
total accounted so far, plus its own output.

Spend is written in background tasks. Callers must drain() before the
turn releases its resources.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from parley.errors import LedgerReconciliationAnomaly
from parley.protocols import SpendLedger
from parley.schemas import ReconciledUsage, UsageRecord

logger = logging.getLogger(__name__)

# USD per 1M tokens: (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "claude-opus-4-5": (5.0, 25.0),
    "claude-sonnet-4-5": (3.0, 15.0),
    "claude-haiku-4-5": (1.0, 5.0),
    "claude-3-5-sonnet": (3.0, 15.0),
    "claude-3-5-haiku": (1.0, 5.0),
    "nova-premier": (2.5, 12.5),
    "nova-pro": (0.8, 3.2),
    "nova-lite": (0.06, 0.24),
    "nova-micro": (0.035, 0.14),
}

# Longest keys first so "claude-3-5-sonnet" never matches a shorter alias
_PRICING_KEYS = sorted(MODEL_PRICING, key=len, reverse=True)


def resolve_pricing(model: str | None) -> tuple[float, float] | None:
    """Price for a full model id, matched on its family name."""
    if not model:
        return None
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]
    lowered = model.lower()
    for key in _PRICING_KEYS:
        if key in lowered or key.removeprefix("claude-") in lowered:
            return MODEL_PRICING[key]
    return None


def estimate_cost(model: str | None, input_tokens: int, output_tokens: int) -> float | None:
    pricing = resolve_pricing(model)
    if pricing is None:
        return None
    input_price, output_price = pricing
    return (input_tokens * input_price + output_tokens * output_price) / 1_000_000


def reconcile_records(records: list[UsageRecord]) -> tuple[int, int, list[int]]:
    """Pure reconciliation. Returns (input_tokens, raw_output_tokens, hop_deltas).

    raw_output_tokens may be negative when a provider reports a smaller
    input on a later hop; callers clamp only what they display.
    """
    if not records:
        return 0, 0, []
    first = records[0]
    input_tokens = first.total_input
    output_tokens = 0
    running = input_tokens
    deltas: list[int] = []

    for index, record in enumerate(records):
        if index > 0:
            delta = record.total_input - running
            deltas.append(delta)
            output_tokens += delta
        output_tokens += record.output_tokens
        running += record.output_tokens

    return input_tokens, output_tokens, deltas


class UsageLedger:
    """Reconciles a turn's usage records and persists spend per record."""

    def __init__(
        self,
        spend_ledger: SpendLedger | None,
        *,
        user_id: str,
        conversation_id: str | None = None,
        enabled: bool = True,
        routing_cost_logging: bool = True,
    ) -> None:
        self._spend = spend_ledger
        self._user_id = user_id
        self._conversation_id = conversation_id
        self._enabled = enabled and spend_ledger is not None
        self._routing_cost_logging = routing_cost_logging
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def reconcile(
        self,
        records: list[UsageRecord],
        *,
        context: str = "message",
        model: str | None = None,
        requested_model: str | None = None,
        message_id: str | None = None,
    ) -> ReconciledUsage:
        """Reconcile records into turn totals and schedule per-record spend."""
        if not records:
            return ReconciledUsage()

        input_tokens, raw_output, deltas = reconcile_records(records)
        for hop, delta in enumerate(deltas, start=1):
            if delta < 0:
                anomaly = LedgerReconciliationAnomaly(hop, delta, [r.model_dump() for r in records])
                logger.error(
                    "%s (context=%s, conversation=%s) records=%s",
                    anomaly,
                    context,
                    self._conversation_id,
                    anomaly.records,
                )

        for index, record in enumerate(records):
            self._schedule_spend(index, record, context=context, model=model, message_id=message_id)

        if self._routing_cost_logging and requested_model:
            actual = records[-1].model or model
            self.log_routing_cost(actual, requested_model, input_tokens, max(raw_output, 0))

        return ReconciledUsage(input_tokens=input_tokens, output_tokens=max(raw_output, 0))

    def record_token_usage(
        self,
        *,
        prompt_tokens: int,
        completion_tokens: int,
        model: str | None,
        context: str = "message",
        usage: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> None:
        """Spend a single call's totals; reasoning tokens go under ``reasoning``."""
        meta = self._meta(context=context, model=model, message_id=message_id)
        self._track(self._spend_simple(meta, prompt_tokens, completion_tokens, label=context))

        reasoning = int((usage or {}).get("reasoning_tokens") or 0)
        if reasoning > 0:
            reasoning_meta = {**meta, "context": "reasoning"}
            self._track(self._spend_simple(reasoning_meta, 0, reasoning, label="reasoning"))

    async def drain(self) -> None:
        """Wait for all scheduled spend writes. Failures were logged already."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def log_routing_cost(
        self,
        actual_model: str | None,
        requested_model: str,
        input_tokens: int,
        output_tokens: int,
    ) -> None:
        """Observability only: compare actual vs. requested model cost."""
        if not actual_model or actual_model == requested_model:
            return
        actual_cost = estimate_cost(actual_model, input_tokens, output_tokens)
        requested_cost = estimate_cost(requested_model, input_tokens, output_tokens)
        if actual_cost is None or requested_cost is None:
            logger.debug("No pricing for %s or %s", actual_model, requested_model)
            return
        savings = requested_cost - actual_cost
        percent = (savings / requested_cost * 100) if requested_cost > 0 else 0.0
        logger.info(
            "Routing cost: %s $%.6f vs requested %s $%.6f (saved $%.6f, %.1f%%)",
            actual_model,
            actual_cost,
            requested_model,
            requested_cost,
            savings,
            percent,
        )

    # ------------------------------------------------------------------
    # Spend
    # ------------------------------------------------------------------

    def _meta(self, *, context: str, model: str | None, message_id: str | None) -> dict[str, Any]:
        return {
            "context": context,
            "user_id": self._user_id,
            "conversation_id": self._conversation_id,
            "message_id": message_id,
            "model": model,
        }

    def _schedule_spend(
        self,
        index: int,
        record: UsageRecord,
        *,
        context: str,
        model: str | None,
        message_id: str | None,
    ) -> None:
        meta = self._meta(context=context, model=record.model or model, message_id=message_id)
        if record.has_cache_activity:
            coro = self._spend_structured(index, meta, record)
        else:
            coro = self._spend_simple(
                meta, record.input_tokens, record.output_tokens, label=f"record {index}"
            )
        self._track(coro)

    def _track(self, coro: Any) -> None:
        if not self._enabled:
            coro.close()
            return
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _spend_structured(self, index: int, meta: dict[str, Any], record: UsageRecord) -> None:
        try:
            await self._spend.spend_structured_tokens(  # type: ignore[union-attr]
                meta,
                prompt_tokens={
                    "input": record.input_tokens,
                    "write": record.cache_creation,
                    "read": record.cache_read,
                },
                completion_tokens=record.output_tokens,
            )
        except Exception:
            logger.exception(
                "Structured spend failed for record %d (context=%s, model=%s)",
                index,
                meta["context"],
                meta["model"],
            )

    async def _spend_simple(
        self, meta: dict[str, Any], prompt_tokens: int, completion_tokens: int, label: str
    ) -> None:
        try:
            await self._spend.spend_tokens(  # type: ignore[union-attr]
                meta,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
            )
        except Exception:
            logger.exception(
                "Spend failed for %s (context=%s, model=%s)",
                label,
                meta["context"],
                meta["model"],
            )
