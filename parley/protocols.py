"""Interfaces of the collaborators the turn pipeline consumes.

Concrete defaults live in parley.api.engine, parley.guardrails.engine,
parley.storage and parley.memory.processor; tests substitute mocks.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from parley.api.models import RunCallbacks, RunConfig, TitleResult
from parley.events import AbortSignal
from parley.schemas import AgentSpec, GuardrailOutcome, StoredMessage, UserContext


class Tokenizer(Protocol):
    def get_token_count(self, text: str, encoding: str | None = None) -> int: ...


class RunGraph(Protocol):
    def get_content_part_agent_map(self) -> dict[int, str] | None: ...

    def get_context_breakdown(self) -> dict[str, Any] | None: ...


class Run(Protocol):
    graph: RunGraph

    async def process_stream(
        self,
        messages: list[dict[str, Any]],
        config: RunConfig,
        callbacks: RunCallbacks,
    ) -> None: ...

    async def generate_title(
        self,
        *,
        provider: str,
        model: str,
        input_text: str,
        content_parts: list[Any],
        client_options: dict[str, Any],
        title_method: str = "completion",
        title_prompt: str | None = None,
        signal: AbortSignal | None = None,
    ) -> TitleResult: ...


class RunEngine(Protocol):
    async def create_run(
        self,
        agents: list[AgentSpec],
        token_counter: Tokenizer,
        signal: AbortSignal | None,
        request_body: dict[str, Any],
        *,
        system_content: str = "",
        turn_context: str = "",
    ) -> Run | None: ...


class GuardrailService(Protocol):
    def is_enabled(self) -> bool: ...

    async def extract_guardrail_context(
        self, history: list[StoredMessage]
    ) -> dict[str, Any]: ...

    async def handle_output_moderation(self, text: str) -> GuardrailOutcome: ...


class SpendLedger(Protocol):
    async def spend_tokens(
        self, meta: dict[str, Any], prompt_tokens: int, completion_tokens: int
    ) -> None: ...

    async def spend_structured_tokens(
        self,
        meta: dict[str, Any],
        prompt_tokens: dict[str, int],
        completion_tokens: int,
    ) -> None: ...


class MemoryStore(Protocol):
    async def set_memory(self, user_id: str, key: str, value: str, token_count: int = 0) -> bool: ...

    async def delete_memory(self, user_id: str, key: str) -> bool: ...

    async def get_formatted_memories(self, user_id: str) -> tuple[str, str, int]: ...


# (existing memory text, process(messages) -> attachments)
MemoryProcessFn = Callable[[list[dict[str, Any]]], Awaitable[list[dict[str, Any]] | None]]


class MemoryProcessorFactory(Protocol):
    async def __call__(
        self,
        *,
        user_id: str,
        config: dict[str, Any],
        message_id: str | None,
        conversation_id: str | None,
        memory_store: MemoryStore,
    ) -> tuple[str, MemoryProcessFn]: ...


class PermissionChecker(Protocol):
    async def __call__(self, user: UserContext, permission: str) -> bool: ...


class AgentLoader(Protocol):
    async def __call__(self, agent_id: str) -> AgentSpec | None: ...


class InstructionProvider(Protocol):
    """Fetches capability instructions for the bound MCP servers."""

    async def __call__(self, server_names: list[str]) -> str: ...
