"""Long-term user memory around a turn.

fetch() runs before the model call and yields a memory block that is
injected as a synthetic user/assistant pair, never into system content.
write() runs concurrently with the run and is always awaited under a
timeout; a timeout or an error both mean "no memory this turn".
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any

from parley.config import MemoryConfig
from parley.errors import MemoryTimeout
from parley.pipeline.prompts import MEMORY_ACK, MEMORY_CONTEXT_HEADER, MEMORY_INSTRUCTIONS
from parley.protocols import (
    AgentLoader,
    MemoryProcessFn,
    MemoryProcessorFactory,
    MemoryStore,
    PermissionChecker,
)
from parley.schemas import AgentSpec, PromptMessage, UserContext

logger = logging.getLogger(__name__)

MEMORIES_USE = "MEMORIES_USE"
DEFAULT_MEMORY_TIMEOUT = 3.0
DEFAULT_WINDOW_SIZE = 5


def select_memory_window(messages: list[PromptMessage], window_size: int) -> list[PromptMessage]:
    """Latest window of ``window_size`` messages that opens on a user turn.

    Slides the window backwards until it starts with a user message;
    falls back to the plain last ``window_size`` messages.
    """
    if len(messages) <= window_size:
        return list(messages)
    for start in range(len(messages) - window_size, -1, -1):
        window = messages[start:start + window_size]
        if window and window[0].role == "user":
            return list(window)
    return list(messages[-window_size:])


def _strip_images(content: str | list[dict[str, Any]]) -> str:
    if isinstance(content, str):
        return content
    return "\n".join(
        block.get("text", "")
        for block in content
        if block.get("type") not in ("image", "image_url")
    )


def render_chat_buffer(messages: list[PromptMessage]) -> str:
    lines = []
    for msg in messages:
        role = "User" if msg.role == "user" else "Assistant"
        lines.append(f"{role}: {_strip_images(msg.content)}")
    return "# Current Chat:\n\n" + "\n".join(lines)


class MemoryCoordinator:
    """Opt-in memory fetch and background write for one turn."""

    def __init__(
        self,
        *,
        memory_config: MemoryConfig | None,
        memory_store: MemoryStore | None,
        processor_factory: MemoryProcessorFactory | None,
        permission_checker: PermissionChecker | None = None,
        agent_loader: AgentLoader | None = None,
        timeout: float = DEFAULT_MEMORY_TIMEOUT,
    ) -> None:
        self._config = memory_config
        self._store = memory_store
        self._factory = processor_factory
        self._permission_checker = permission_checker
        self._agent_loader = agent_loader
        self.timeout = timeout
        self._processor: MemoryProcessFn | None = None

    @property
    def active(self) -> bool:
        return self._processor is not None

    async def fetch(
        self,
        user: UserContext,
        agent: AgentSpec,
        *,
        message_id: str | None = None,
        conversation_id: str | None = None,
    ) -> str | None:
        """Return the memory block for this user, or None when memory is off."""
        if user.personalization.memories is not True:
            return None
        if self._permission_checker is not None:
            try:
                allowed = await self._permission_checker(user, MEMORIES_USE)
            except Exception:
                logger.exception("Memory permission check failed for user %s", user.id)
                return None
            if not allowed:
                return None

        config = self._config
        if config is None or config.disabled:
            return None
        if self._store is None or self._factory is None:
            logger.debug("Memory enabled but no store or processor configured")
            return None

        try:
            memory_agent = await self._resolve_memory_agent(agent)
            if memory_agent is None:
                logger.warning("No agent found for memory (user=%s)", user.id)
                return None

            llm_config = {
                "provider": memory_agent.provider,
                "model": memory_agent.model,
                **memory_agent.model_parameters,
            }
            processor_config = {
                "valid_keys": config.valid_keys,
                "instructions": memory_agent.instructions or config.instructions,
                "llm_config": llm_config,
                "token_limit": config.token_limit,
            }
            existing, process = await self._factory(
                user_id=user.id,
                config=processor_config,
                message_id=message_id,
                conversation_id=conversation_id,
                memory_store=self._store,
            )
            self._processor = process
        except Exception:
            logger.exception("Memory fetch failed for user %s", user.id)
            return None

        if not existing:
            return None
        return f"{MEMORY_INSTRUCTIONS}\n\n# Existing memory about the user:\n{existing}"

    async def _resolve_memory_agent(self, agent: AgentSpec) -> AgentSpec | None:
        cfg = self._config.agent if self._config else None
        if cfg is None:
            return None
        if cfg.id is not None and cfg.id != agent.id:
            if self._agent_loader is None:
                return None
            return await self._agent_loader(cfg.id)
        if cfg.id is not None:
            return agent
        if cfg.model and cfg.provider:
            return AgentSpec(
                id="ephemeral-memory-agent",
                name="Memory",
                provider=cfg.provider,
                model=cfg.model,
                instructions=cfg.instructions or "",
                model_parameters=cfg.model_parameters,
            )
        return None

    async def write(self, messages: list[PromptMessage]) -> list[dict[str, Any]] | None:
        """Run the memory processor over the latest chat window."""
        if self._processor is None:
            return None
        window_size = (self._config.message_window_size if self._config else 0) or DEFAULT_WINDOW_SIZE
        window = select_memory_window(messages, window_size)
        buffer = render_chat_buffer(window)
        try:
            return await self._processor([{"role": "user", "content": buffer}])
        except Exception:
            logger.exception("Memory processing failed")
            return None

    def start_write(self, messages: list[PromptMessage]) -> asyncio.Task | None:
        """Kick off write() without waiting on it."""
        if self._processor is None:
            return None
        return asyncio.create_task(self.write(list(messages)), name="memory-write")

    async def await_with_timeout(
        self, pending: Awaitable[Any] | None, timeout: float | None = None
    ) -> Any | None:
        """Race ``pending`` against the timeout. Never raises."""
        if pending is None:
            return None
        limit = self.timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(pending, limit)
        except asyncio.TimeoutError:
            logger.warning("%s", MemoryTimeout(limit))
            return None
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("Memory processing error", exc_info=True)
            return None

    @staticmethod
    def inject(messages: list[PromptMessage], memory_context: str | None) -> list[PromptMessage]:
        """Prepend the memory pair ahead of the conversation."""
        if not memory_context:
            return list(messages)
        return [
            PromptMessage(
                role="user",
                content=f"{MEMORY_CONTEXT_HEADER}\n{memory_context}",
                pinned=True,
                synthetic=True,
            ),
            PromptMessage(role="assistant", content=MEMORY_ACK, pinned=True, synthetic=True),
            *messages,
        ]
