"""SQL-backed spend ledger.

Each spend call writes a prompt row and a completion row into
transactions. token_value is the USD cost from the per-model price
table; cache writes and reads are priced with multipliers on the input
rate.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select

from parley.pipeline.usage import resolve_pricing
from parley.storage.database import Database
from parley.storage.models import Transaction

logger = logging.getLogger(__name__)

CACHE_WRITE_MULTIPLIER = 1.25
CACHE_READ_MULTIPLIER = 0.1


class SqlSpendLedger:
    def __init__(self, db: Database) -> None:
        self.db = db

    @staticmethod
    def _rates(model: str | None) -> tuple[float, float]:
        pricing = resolve_pricing(model)
        if pricing is None:
            logger.debug("No pricing for model %s, recording zero cost", model)
            return 0.0, 0.0
        return pricing[0] / 1_000_000, pricing[1] / 1_000_000

    def _row(self, meta: dict[str, Any], token_type: str, amount: int, rate: float, value: float, **extra: Any) -> Transaction:
        return Transaction(
            user_id=meta["user_id"],
            conversation_id=meta.get("conversation_id"),
            message_id=meta.get("message_id"),
            context=meta.get("context") or "message",
            model=meta.get("model"),
            token_type=token_type,
            raw_amount=amount,
            rate=rate,
            token_value=value,
            **extra,
        )

    async def spend_tokens(self, meta: dict[str, Any], prompt_tokens: int, completion_tokens: int) -> None:
        input_rate, output_rate = self._rates(meta.get("model"))
        async with self.db.session() as session:
            if prompt_tokens:
                session.add(self._row(meta, "prompt", prompt_tokens, input_rate, prompt_tokens * input_rate))
            if completion_tokens:
                session.add(
                    self._row(meta, "completion", completion_tokens, output_rate, completion_tokens * output_rate)
                )
            await session.commit()

    async def spend_structured_tokens(
        self,
        meta: dict[str, Any],
        prompt_tokens: dict[str, int],
        completion_tokens: int,
    ) -> None:
        input_rate, output_rate = self._rates(meta.get("model"))
        fresh = int(prompt_tokens.get("input") or 0)
        write = int(prompt_tokens.get("write") or 0)
        read = int(prompt_tokens.get("read") or 0)
        prompt_value = (
            fresh * input_rate
            + write * input_rate * CACHE_WRITE_MULTIPLIER
            + read * input_rate * CACHE_READ_MULTIPLIER
        )
        async with self.db.session() as session:
            session.add(
                self._row(
                    meta,
                    "prompt",
                    fresh + write + read,
                    input_rate,
                    prompt_value,
                    input_tokens=fresh,
                    write_tokens=write,
                    read_tokens=read,
                )
            )
            if completion_tokens:
                session.add(
                    self._row(meta, "completion", completion_tokens, output_rate, completion_tokens * output_rate)
                )
            await session.commit()

    async def total_spend(self, user_id: str, conversation_id: str | None = None) -> float:
        """Sum of token_value for a user, optionally one conversation."""
        query = select(func.coalesce(func.sum(Transaction.token_value), 0.0)).where(Transaction.user_id == user_id)
        if conversation_id is not None:
            query = query.where(Transaction.conversation_id == conversation_id)
        async with self.db.session() as session:
            result = await session.execute(query)
            return float(result.scalar_one())

    async def list_transactions(self, user_id: str, conversation_id: str | None = None) -> list[Transaction]:
        query = select(Transaction).where(Transaction.user_id == user_id).order_by(Transaction.created_at)
        if conversation_id is not None:
            query = query.where(Transaction.conversation_id == conversation_id)
        async with self.db.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())
