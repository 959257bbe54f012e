"""Shared data models for the API layer.

Kept apart from engine.py so the pipeline can depend on run
configuration and callbacks without importing the httpx engine.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from parley.events import AbortSignal
from parley.schemas import ContentPart, UsageRecord


@dataclass
class ApiResponse:
    """Parsed response from Anthropic Messages API."""

    content: list[dict[str, Any]]  # Raw content blocks from API
    stop_reason: str  # end_turn, max_tokens, tool_use, stop_sequence
    usage: dict[str, int] | None = None
    model: str | None = None


@dataclass
class StreamEvent:
    """A single event from the streaming API response."""

    type: str  # message_start, text_delta, thinking_delta, tool_start, tool_input_delta, block_stop, done, error, message_stop
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    stop_reason: str = ""
    block_index: int = 0
    usage: dict[str, int] | None = None
    model: str = ""


@dataclass(frozen=True)
class RunConfig:
    """Per-turn execution context.

    Frozen once the run starts. The only permitted mutation is
    release(), which drops the abort signal when the turn completes.
    """

    thread_id: str
    user_id: str
    recursion_limit: int
    signal: AbortSignal | None = None
    user_mcp_auth_map: dict[str, dict[str, str]] = field(default_factory=dict)
    hide_sequential_outputs: bool = False
    last_agent_id: str | None = None
    request_body: dict[str, Any] = field(default_factory=dict)

    def release(self) -> None:
        object.__setattr__(self, "signal", None)


@dataclass
class ToolErrorInfo:
    tool_id: str
    tool_name: str
    error: str
    agent_id: str | None = None


ContentPartHandler = Callable[[int, ContentPart, str | None], Awaitable[None]]
DeltaHandler = Callable[[str, str | None], Awaitable[None]]
ToolErrorHandler = Callable[[ToolErrorInfo], Awaitable[None]]
UsageHandler = Callable[[UsageRecord], None]


async def _noop(*args: Any) -> None:
    return None


@dataclass
class RunCallbacks:
    """Hooks the run engine invokes while streaming.

    on_content_part fires once per finished part with its global index
    and the producing agent. on_delta carries raw text deltas for
    progressive display. on_tool_error is the TOOL_ERROR callback.
    """

    on_content_part: ContentPartHandler = _noop
    on_delta: DeltaHandler = _noop
    on_tool_error: ToolErrorHandler = _noop
    on_usage: UsageHandler | None = None

    def record_usage(self, record: UsageRecord) -> None:
        if self.on_usage is not None:
            self.on_usage(record)


@dataclass
class TitleResult:
    title: str
    usage: list[UsageRecord] = field(default_factory=list)
