"""Exception taxonomy for the turn pipeline.

Only RunCreationFailure and non-abort streaming failures ever reach the
user, and then only as a single ERROR content part. Everything else is
logged where it happens.
"""

from __future__ import annotations

from typing import Any


class ParleyError(Exception):
    """Base class for pipeline errors."""


class RunCreationFailure(ParleyError):
    """The run engine returned no run; fatal to the turn."""


class StreamAbort(ParleyError):
    """User or system cancellation. Not an error condition."""


class ToolInvocationError(ParleyError):
    def __init__(self, tool_id: str, message: str) -> None:
        super().__init__(f"Tool {tool_id} failed: {message}")
        self.tool_id = tool_id


class MemoryTimeout(ParleyError):
    def __init__(self, timeout: float) -> None:
        super().__init__(f"Memory processing timed out after {timeout:.1f}s")
        self.timeout = timeout


class ModerationFailure(ParleyError):
    """Output moderation raised; the response passes through unmoderated."""


class LedgerReconciliationAnomaly(ParleyError):
    def __init__(self, hop: int, delta: int, records: list[Any]) -> None:
        super().__init__(f"Negative output delta {delta} at hop {hop}")
        self.hop = hop
        self.delta = delta
        self.records = records


class ContextOverflowError(ParleyError):
    def __init__(self, message_id: str | None, tokens: int, budget: int) -> None:
        super().__init__(
            f"Message {message_id or '<unknown>'} needs {tokens} tokens "
            f"but the whole context budget is {budget}"
        )
        self.message_id = message_id
        self.tokens = tokens
        self.budget = budget


class ProviderConfigError(ParleyError):
    """No usable configuration for a provider/endpoint."""


class InvalidTransition(ParleyError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Illegal run state transition {current} -> {target}")
        self.current = current
        self.target = target
