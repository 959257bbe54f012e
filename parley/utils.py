"""Shared utility functions for Parley."""

from __future__ import annotations

import re
from typing import Any

_TITLE_MAX_CHARS = 80
_QUOTE_CHARS = "\"'`“”‘’"
_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)


def sanitize_title(raw: str | None, fallback: str = "New Chat") -> str:
    """Normalize a model-produced title.

    Drops reasoning blocks, a leading "Title:" label, wrapping quotes
    and trailing punctuation, collapses whitespace and caps the length.
    Empty results fall back to ``fallback``.
    """
    if not raw:
        return fallback
    text = _THINK_BLOCK.sub("", raw)
    text = re.sub(r"^\s*title\s*:\s*", "", text, flags=re.IGNORECASE)
    text = " ".join(text.split())
    text = text.strip(_QUOTE_CHARS).strip()
    text = text.rstrip(".!?;:,").strip()
    if len(text) > _TITLE_MAX_CHARS:
        text = text[:_TITLE_MAX_CHARS].rsplit(" ", 1)[0].rstrip() or text[:_TITLE_MAX_CHARS]
    return text or fallback


def remove_nullish(values: dict[str, Any]) -> dict[str, Any]:
    """Shallow copy without keys whose value is None."""
    return {k: v for k, v in values.items() if v is not None}


def build_anthropic_headers(api_key: str | None, auth_token: str | None = None) -> dict[str, str]:
    """Auth headers for direct Messages API calls.

    An explicit auth token always uses Bearer. OAT tokens (sk-ant-oat*)
    need Bearer plus the oauth beta headers even when passed as the key.
    """
    headers: dict[str, str] = {
        "anthropic-version": "2023-06-01",
        "content-type": "application/json",
    }
    token = auth_token or api_key or ""
    if auth_token or "sk-ant-oat" in token:
        headers["authorization"] = f"Bearer {token}"
        if "sk-ant-oat" in token:
            headers["anthropic-beta"] = "oauth-2025-04-20"
            headers["anthropic-dangerous-direct-browser-access"] = "true"
    else:
        headers["x-api-key"] = token
    return headers
