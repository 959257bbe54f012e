"""Memory processor: extracts durable user facts from the latest chat.

Created once per turn by the coordinator. Reads the user's existing
memory, asks the memory model for set/delete operations restricted to
the configured keys and token budget, and applies them to the store.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from parley.config import Settings
from parley.pipeline.tokens import TokenCounter
from parley.protocols import MemoryProcessFn, MemoryStore, SpendLedger
from parley.utils import build_anthropic_headers

logger = logging.getLogger(__name__)

_EXTRACT_PROMPT = """Review the conversation below and decide what should be remembered about the user long-term.

{instructions}

Allowed keys: {valid_keys}
Existing memory:
{existing}

Conversation:
{conversation}

Return ONLY a valid JSON array of operations (empty array if nothing changes):
[
  {{"action": "set", "key": "<allowed key>", "value": "<concise fact>"}},
  {{"action": "delete", "key": "<allowed key>"}}
]

Only store facts genuinely useful across future conversations.
Skip transient or trivial information. Max 5 operations."""

_DEFAULT_INSTRUCTIONS = (
    "Focus on stable preferences, personal details the user volunteered, "
    "ongoing projects and explicit requests to remember or forget something."
)


def _parse_operations(text: str) -> list[dict[str, Any]]:
    text = text.strip()
    if text.startswith("```"):
        text = text.strip("`")
        text = text.split("\n", 1)[1] if "\n" in text else ""
    data = json.loads(text)
    if isinstance(data, dict):
        data = data.get("operations", [])
    if not isinstance(data, list):
        return []
    return [op for op in data if isinstance(op, dict)]


class LLMMemoryProcessor:
    """Builds (existing_memory_text, process_fn) pairs per turn."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient | None,
        token_counter: TokenCounter,
        spend_ledger: SpendLedger | None = None,
    ) -> None:
        self._settings = settings
        self._http = http_client
        self._counter = token_counter
        self._spend = spend_ledger

    async def __call__(
        self,
        *,
        user_id: str,
        config: dict[str, Any],
        message_id: str | None,
        conversation_id: str | None,
        memory_store: MemoryStore,
    ) -> tuple[str, MemoryProcessFn]:
        with_keys, without_keys, total_tokens = await memory_store.get_formatted_memories(user_id)

        async def process(messages: list[dict[str, Any]]) -> list[dict[str, Any]] | None:
            conversation = "\n\n".join(str(m.get("content", "")) for m in messages)
            meta = {"user_id": user_id, "conversation_id": conversation_id, "message_id": message_id}
            operations = await self._extract(config, with_keys, conversation, meta)
            if not operations:
                return None
            return await self._apply(
                user_id, operations, config, memory_store, total_tokens, message_id
            )

        return without_keys, process

    async def _extract(
        self, config: dict[str, Any], existing: str, conversation: str, meta: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Call the memory model for operations."""
        if not self._http:
            return []

        llm_config = config.get("llm_config") or {}
        model = llm_config.get("model") or self._settings.background_model
        valid_keys = config.get("valid_keys")
        prompt = _EXTRACT_PROMPT.format(
            instructions=config.get("instructions") or _DEFAULT_INSTRUCTIONS,
            valid_keys=", ".join(valid_keys) if valid_keys else "any short snake_case key",
            existing=existing or "(none)",
            conversation=conversation,
        )
        headers = build_anthropic_headers(
            self._settings.anthropic_api_key, self._settings.anthropic_auth_token
        )

        try:
            response = await self._http.post(
                f"{self._settings.api_base_url}/v1/messages",
                json={
                    "model": model,
                    "max_tokens": 500,
                    "messages": [{"role": "user", "content": prompt}],
                },
                headers=headers,
                timeout=30,
            )

            if response.status_code != 200:
                logger.warning("Memory extraction HTTP %d", response.status_code)
                return []

            data = response.json()
            if data.get("usage"):
                await self._record_spend(data["usage"], {**meta, "model": model})
            text = data.get("content", [{}])[0].get("text", "")
            return _parse_operations(text)

        except (json.JSONDecodeError, httpx.TimeoutException):
            return []

    async def _record_spend(self, usage: dict[str, Any], meta: dict[str, Any]) -> None:
        if self._spend is None:
            return
        try:
            await self._spend.spend_tokens(
                {**meta, "context": "memory"},
                int(usage.get("input_tokens") or 0),
                int(usage.get("output_tokens") or 0),
            )
        except Exception:
            logger.exception("Memory spend failed for user %s", meta.get("user_id"))

    async def _apply(
        self,
        user_id: str,
        operations: list[dict[str, Any]],
        config: dict[str, Any],
        store: MemoryStore,
        total_tokens: int,
        message_id: str | None,
    ) -> list[dict[str, Any]] | None:
        valid_keys = config.get("valid_keys")
        token_limit = config.get("token_limit")
        applied: list[dict[str, Any]] = []

        for op in operations[:5]:
            key = op.get("key")
            action = op.get("action")
            if not key or (valid_keys and key not in valid_keys):
                logger.debug("Skipping memory op with invalid key: %s", key)
                continue

            if action == "delete":
                if await store.delete_memory(user_id, key):
                    applied.append({"type": "memory", "action": "delete", "key": key, "message_id": message_id})
                continue

            value = str(op.get("value") or "").strip()
            if action != "set" or not value:
                continue
            tokens = self._counter.get_token_count(value)
            if token_limit and total_tokens + tokens > token_limit:
                logger.warning(
                    "Memory token limit reached for user %s (%d + %d > %d)",
                    user_id,
                    total_tokens,
                    tokens,
                    token_limit,
                )
                continue
            if await store.set_memory(user_id, key, value, token_count=tokens):
                total_tokens += tokens
                applied.append(
                    {"type": "memory", "action": "set", "key": key, "value": value, "message_id": message_id}
                )

        if applied:
            logger.info("Applied %d memory updates for user %s", len(applied), user_id)
        return applied or None
