"""Token counting with tiktoken.

One encoding per model family, resolved once. Counts are deterministic
for a given (encoding, text) pair and cached by text hash.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from functools import lru_cache
from hashlib import blake2b
from typing import Any

import tiktoken

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "o200k_base"

# Fixed per-message framing overhead (role marker + separators)
MESSAGE_OVERHEAD = 3

# Flat cost charged for an image block when the model has vision
IMAGE_TOKENS = 1024

# Cache for tiktoken encoders to avoid recreation
_encoder_cache: dict[str, Any] = {}


def _get_encoder(encoding: str) -> Any:
    """Get cached encoder by name."""
    if encoding not in _encoder_cache:
        _encoder_cache[encoding] = tiktoken.get_encoding(encoding)
    return _encoder_cache[encoding]


def _hash_text(text: str) -> str:
    return blake2b(text.encode("utf-8"), digest_size=16).hexdigest()


@lru_cache(maxsize=4096)
def _count_cached(text_hash: str, text: str, encoding: str) -> int:
    return len(_get_encoder(encoding).encode(text, disallowed_special=()))


def encoding_for_model(model: str | None) -> str:
    """All supported model families share o200k_base."""
    return DEFAULT_ENCODING


class TokenCounter:
    """Counts tokens for raw text and model-facing messages.

    ``count_fn`` replaces the tiktoken path entirely; tests use it to
    keep counts readable without loading an encoding.
    """

    def __init__(
        self,
        encoding: str = DEFAULT_ENCODING,
        count_fn: Callable[[str], int] | None = None,
    ) -> None:
        self.encoding = encoding
        self._count_fn = count_fn

    def get_token_count(self, text: str, encoding: str | None = None) -> int:
        if not text:
            return 0
        if self._count_fn is not None:
            return self._count_fn(text)
        enc = encoding or self.encoding
        return _count_cached(_hash_text(text), text, enc)

    def count_content(self, content: str | list[dict[str, Any]], vision: bool = False) -> int:
        if isinstance(content, str):
            return self.get_token_count(content)
        total = 0
        for block in content:
            block_type = block.get("type")
            if block_type == "text":
                total += self.get_token_count(block.get("text", ""))
            elif block_type in ("image", "image_url"):
                total += IMAGE_TOKENS if vision else 0
            elif block_type in ("tool_use", "tool_result"):
                total += self.get_token_count(json.dumps(block, sort_keys=True, default=str))
        return total

    def count_message(self, message: Any, vision: bool = False) -> int:
        """Tokens for one message, including framing overhead.

        Accepts PromptMessage or an API-shaped dict.
        """
        if isinstance(message, dict):
            content = message.get("content", "")
        else:
            content = message.content
        return self.count_content(content, vision=vision) + MESSAGE_OVERHEAD


class TokenCountMap(dict[str, int]):
    """message-id -> last known token count.

    Lives as long as the conversation stays in ChatService. Estimates
    are corrected in place once the provider reports real usage.
    """

    def total(self, message_ids: list[str] | None = None) -> int:
        if message_ids is None:
            return sum(self.values())
        return sum(self.get(mid, 0) for mid in message_ids)

    def correct(self, current_message_id: str, reported_input_tokens: int) -> int:
        """Recompute the current message's count from provider usage.

        The current message is zeroed, then assigned whatever the
        provider reported beyond the other messages' counts. A
        non-positive remainder means the estimates overshot; the original
        estimate is kept in that case.
        """
        original = self.get(current_message_id, 0)
        self[current_message_id] = 0
        remainder = reported_input_tokens - self.total()
        if remainder <= 0:
            self[current_message_id] = original
            logger.debug(
                "Token correction for %s skipped: reported=%d, estimate kept at %d",
                current_message_id,
                reported_input_tokens,
                original,
            )
            return original
        self[current_message_id] = remainder
        return remainder
