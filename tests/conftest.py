"""Shared fixtures and mock collaborators for the pipeline tests.

Token counts use a whitespace word counter so expected numbers stay
readable; no tiktoken encoding is loaded. Every external collaborator
(run engine, guardrail service, spend ledger, memory store) has a
hand-written Mock* that records its calls.
"""

import asyncio
from typing import Any

import pytest
import pytest_asyncio

from parley.api.models import RunCallbacks, RunConfig, TitleResult
from parley.config import AppConfig, Settings
from parley.errors import StreamAbort
from parley.pipeline.tokens import TokenCounter
from parley.schemas import (
    AgentSpec,
    ContentPart,
    GuardrailOutcome,
    StoredMessage,
    UsageRecord,
    UserContext,
)


def word_count(text: str) -> int:
    return len(text.split())


# ---------------------------------------------------------------------------
# Message helpers
# ---------------------------------------------------------------------------


def make_message(
    message_id: str,
    parent: str | None = None,
    *,
    user: bool = True,
    text: str = "",
    **kwargs: Any,
) -> StoredMessage:
    return StoredMessage(
        message_id=message_id,
        parent_message_id=parent,
        is_created_by_user=user,
        text=text or f"message {message_id}",
        **kwargs,
    )


def make_linear_history(texts: list[str]) -> list[StoredMessage]:
    """Alternating user/assistant messages m0, m1, ... linked by parent."""
    history = []
    parent = None
    for i, text in enumerate(texts):
        msg = make_message(f"m{i}", parent, user=i % 2 == 0, text=text)
        history.append(msg)
        parent = msg.message_id
    return history


# ---------------------------------------------------------------------------
# Mock run engine
# ---------------------------------------------------------------------------


class MockGraph:
    def __init__(self, agent_map: dict[int, str] | None = None, breakdown: dict | None = None) -> None:
        self.agent_map = agent_map
        self.breakdown = breakdown

    def get_content_part_agent_map(self) -> dict[int, str] | None:
        return self.agent_map

    def get_context_breakdown(self) -> dict | None:
        return self.breakdown


class MockRun:
    """Replays scripted (part, agent_id) pairs through the run callbacks.

    ``error`` is raised after the parts are emitted. ``abort_after``
    aborts the given controller after that many parts and then raises
    StreamAbort, as the real engine does on cancellation.
    """

    def __init__(
        self,
        parts: list[tuple[ContentPart, str | None]] | None = None,
        usage: list[UsageRecord] | None = None,
        error: Exception | None = None,
        abort_after: int | None = None,
        controller: Any = None,
        graph: MockGraph | None = None,
        title: str = "A Fine Title",
        title_error: Exception | None = None,
        stream_delay: float = 0.0,
    ) -> None:
        self.parts = parts or []
        self.usage = usage or []
        self.error = error
        self.abort_after = abort_after
        self.controller = controller
        self.graph = graph or MockGraph()
        self.title = title
        self.title_error = title_error
        self.stream_delay = stream_delay
        self.stream_calls: list[tuple[list, RunConfig]] = []
        self.title_calls: list[dict] = []

    async def process_stream(self, messages: list, config: RunConfig, callbacks: RunCallbacks) -> None:
        self.stream_calls.append((messages, config))
        if self.stream_delay:
            await asyncio.sleep(self.stream_delay)
        for index, (part, agent_id) in enumerate(self.parts):
            if self.abort_after is not None and index == self.abort_after:
                self.controller.abort("user cancelled")
                raise StreamAbort("user cancelled")
            if part.text:
                await callbacks.on_delta(part.text, agent_id)
            await callbacks.on_content_part(index, part, agent_id)
        for record in self.usage:
            callbacks.record_usage(record)
        if self.error is not None:
            raise self.error

    async def generate_title(self, **kwargs: Any) -> TitleResult:
        self.title_calls.append(kwargs)
        if self.title_error is not None:
            raise self.title_error
        return TitleResult(
            title=self.title,
            usage=[UsageRecord(input_tokens=20, output_tokens=5, model=kwargs.get("model"))],
        )


class MockRunEngine:
    def __init__(self, run: MockRun | None = None, fail: Exception | None = None) -> None:
        self.run = run
        self.fail = fail
        self.create_calls: list[dict] = []

    async def create_run(
        self,
        agents: list[AgentSpec],
        token_counter: Any,
        signal: Any,
        request_body: dict,
        *,
        system_content: str = "",
        turn_context: str = "",
    ) -> MockRun | None:
        self.create_calls.append(
            {
                "agents": agents,
                "signal": signal,
                "system_content": system_content,
                "turn_context": turn_context,
            }
        )
        if self.fail is not None:
            raise self.fail
        return self.run


# ---------------------------------------------------------------------------
# Mock guardrails, spend, memory
# ---------------------------------------------------------------------------


class MockGuardrailService:
    def __init__(
        self,
        enabled: bool = True,
        outcome: GuardrailOutcome | None = None,
        context: dict | None = None,
        error: Exception | None = None,
    ) -> None:
        self.enabled = enabled
        self.outcome = outcome or GuardrailOutcome()
        self.context = context or {"has_guardrail_context": False, "system_note": None}
        self.error = error
        self.moderated: list[str] = []

    def is_enabled(self) -> bool:
        return self.enabled

    async def extract_guardrail_context(self, history: list[StoredMessage]) -> dict:
        return self.context

    async def handle_output_moderation(self, text: str) -> GuardrailOutcome:
        self.moderated.append(text)
        if self.error is not None:
            raise self.error
        return self.outcome


class MockSpendLedger:
    """Records spend calls. ``gate`` holds every write until it is set."""

    def __init__(self, fail_on: set[int] | None = None, gate: asyncio.Event | None = None) -> None:
        self.simple: list[tuple[dict, int, int]] = []
        self.structured: list[tuple[dict, dict, int]] = []
        self.fail_on = fail_on or set()
        self.gate = gate
        self._calls = 0

    async def _maybe_fail(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        index = self._calls
        self._calls += 1
        if index in self.fail_on:
            raise RuntimeError(f"spend write {index} failed")

    async def spend_tokens(self, meta: dict, prompt_tokens: int, completion_tokens: int) -> None:
        await self._maybe_fail()
        self.simple.append((meta, prompt_tokens, completion_tokens))

    async def spend_structured_tokens(self, meta: dict, prompt_tokens: dict, completion_tokens: int) -> None:
        await self._maybe_fail()
        self.structured.append((meta, prompt_tokens, completion_tokens))


class MockMemoryStore:
    def __init__(self, memories: dict[str, str] | None = None) -> None:
        self.memories = dict(memories or {})

    async def set_memory(self, user_id: str, key: str, value: str, token_count: int = 0) -> bool:
        self.memories[key] = value
        return True

    async def delete_memory(self, user_id: str, key: str) -> bool:
        return self.memories.pop(key, None) is not None

    async def get_formatted_memories(self, user_id: str) -> tuple[str, str, int]:
        with_keys = "\n".join(f"{k}: {v}" for k, v in self.memories.items())
        without_keys = "\n".join(self.memories.values())
        return with_keys, without_keys, sum(word_count(v) for v in self.memories.values())


class MockMemoryProcessorFactory:
    """Returns the store's memories and a process fn that can hang or fail."""

    def __init__(self, delay: float = 0.0, error: Exception | None = None) -> None:
        self.delay = delay
        self.error = error
        self.calls: list[dict] = []
        self.processed: list[list[dict]] = []

    async def __call__(self, *, user_id, config, message_id, conversation_id, memory_store):
        self.calls.append({"user_id": user_id, "config": config, "message_id": message_id})
        _, without_keys, _ = await memory_store.get_formatted_memories(user_id)

        async def process(messages: list[dict]) -> list[dict] | None:
            self.processed.append(messages)
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return [{"type": "memory", "action": "set", "key": "k"}]

        return without_keys, process


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def counter() -> TokenCounter:
    return TokenCounter(count_fn=word_count)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ANTHROPIC_API_KEY="test-key",
        database_url="sqlite+aiosqlite:///:memory:",
        max_tokens=100,
        max_context_tokens=1000,
        memory_timeout=0.2,
    )


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig()


@pytest.fixture
def primary_agent() -> AgentSpec:
    return AgentSpec(
        id="agent-primary",
        name="Primary",
        provider="anthropic",
        model="claude-sonnet-4-5-20250929",
        instructions="Be concise.",
    )


@pytest.fixture
def helper_agent() -> AgentSpec:
    return AgentSpec(
        id="agent-helper",
        name="Helper",
        provider="anthropic",
        model="claude-haiku-4-5-20251001",
        instructions="Check the facts.",
    )


@pytest.fixture
def user() -> UserContext:
    return UserContext(id="user-1", name="Ada", timezone="UTC")


@pytest_asyncio.fixture
async def db(settings, tmp_path):
    """Fresh SQLite database file per test."""
    from parley.storage.database import Database

    db_settings = settings.model_copy(update={"database_url": f"sqlite+aiosqlite:///{tmp_path}/parley.db"})
    database = Database(db_settings)
    await database.connect()
    yield database
    await database.disconnect()
