"""Per-turn cancellation and event plumbing.

Each turn owns one AbortController and one TurnChannel. Nothing here is
process-wide: a channel's subscribers are dropped on close(), so many
concurrent streaming turns never share a listener list.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# Handler type: async function taking an Event
EventHandler = Callable[["Event"], Awaitable[None]]


@dataclass
class Event:
    """A typed event emitted during a turn."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    turn_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class AbortSignal:
    """Read side of a turn's cancellation flag."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def _set(self, reason: str | None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()


class AbortController:
    """Write side of a turn's cancellation flag."""

    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self, reason: str | None = "aborted") -> None:
        self.signal._set(reason)
        logger.debug("Turn aborted: %s", reason)


class TurnChannel:
    """Event channel scoped to a single turn.

    Handlers registered via on() are awaited concurrently for each
    emitted event. Handler errors are logged but never propagate, and
    close() drops every subscriber so nothing outlives the turn.
    """

    def __init__(self, turn_id: str | None = None) -> None:
        self.turn_id = turn_id
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for an event type. Can register multiple."""
        if self._closed:
            raise RuntimeError("Cannot subscribe to a closed turn channel")
        self._handlers[event_type].append(handler)

    def listener_count(self, event_type: str | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(h) for h in self._handlers.values())

    async def emit(self, event_type: str, data: dict[str, Any] | None = None) -> None:
        """Deliver an event to its handlers. No-op once closed."""
        if self._closed:
            return
        event = Event(type=event_type, data=data or {}, turn_id=self.turn_id)
        handlers = list(self._handlers.get(event_type, []))
        if not handlers:
            return
        await asyncio.gather(*(self._safe_handle(h, event) for h in handlers))

    def close(self) -> None:
        """Tear down all subscriptions for this turn."""
        self._handlers.clear()
        self._closed = True

    async def _safe_handle(self, handler: EventHandler, event: Event) -> None:
        """Call handler with error isolation."""
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Handler %s failed for event %s",
                getattr(handler, "__qualname__", repr(handler)),
                event.type,
            )
