"""Multi-agent run execution for one turn.

State machine:
  IDLE -> CONFIGURING -> STREAMING -> FINALIZING -> COMPLETED | ABORTED | FAILED

CONFIGURING may end the turn directly (ABORTED before the run exists,
FAILED when the engine returns no run). Cancellation through the abort
signal never produces an ERROR part; any other failure produces exactly
one, and the turn is still finalized.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from parley.api.models import RunCallbacks, RunConfig, ToolErrorInfo
from parley.config import DEFAULT_RECURSION_LIMIT, AgentsConfig
from parley.errors import InvalidTransition, RunCreationFailure, StreamAbort, ToolInvocationError
from parley.events import AbortController
from parley.protocols import Run, RunEngine, Tokenizer
from parley.schemas import AgentSpec, ContentPart, ContentType, UsageRecord

logger = logging.getLogger(__name__)

ProgressHandler = Callable[[dict[str, Any]], Awaitable[None]]

RUN_ERROR_MESSAGE = "An error occurred while processing the request"

# Provider error types worth a more specific message; matched in the raw error text
_FRIENDLY_ERRORS = {
    "rate_limit_error": "The model provider is rate limiting requests. Please try again in a moment.",
    "overloaded_error": "The model provider is overloaded. Please try again in a moment.",
}


def user_error_message(error: str) -> str:
    """Fixed user-facing text for a failed run. Provider bodies and ids stay in the logs."""
    for marker, message in _FRIENDLY_ERRORS.items():
        if marker in error:
            return message
    return f"{RUN_ERROR_MESSAGE}."


class RunState(StrEnum):
    IDLE = "idle"
    CONFIGURING = "configuring"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.IDLE: frozenset({RunState.CONFIGURING}),
    RunState.CONFIGURING: frozenset({RunState.STREAMING, RunState.ABORTED, RunState.FAILED}),
    RunState.STREAMING: frozenset({RunState.FINALIZING}),
    RunState.FINALIZING: frozenset({RunState.COMPLETED, RunState.ABORTED, RunState.FAILED}),
    RunState.COMPLETED: frozenset(),
    RunState.ABORTED: frozenset(),
    RunState.FAILED: frozenset(),
}


# ------------------------------------------------------------------
# Chain resolution
# ------------------------------------------------------------------


@dataclass
class AgentChain:
    """Ordered agents for a turn, resolved once.

    ``agents`` is the arena; ``index`` maps agent id to its position.
    The first agent is authoritative for limits and config.
    """

    agents: list[AgentSpec]
    index: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.index = {agent.id: i for i, agent in enumerate(self.agents)}

    @property
    def primary(self) -> AgentSpec:
        return self.agents[0]

    @property
    def is_multi_agent(self) -> bool:
        return len(self.agents) > 1

    def names(self) -> dict[str, str]:
        table = {self.primary.id: self.primary.name or "Assistant"}
        for agent in self.agents[1:]:
            table[agent.id] = agent.display_name
        return table

    @classmethod
    def resolve(
        cls,
        primary: AgentSpec,
        agent_configs: list[AgentSpec],
        chain_enabled: bool = False,
    ) -> "AgentChain":
        """Primary first, then agents reachable through edges, then the rest.

        Chained agents participate only when the primary declares edges
        or the tenant enables chaining.
        """
        if not agent_configs or not (primary.edges or chain_enabled):
            return cls([primary])

        by_id = {a.id: a for a in agent_configs if a.id != primary.id}
        ordered: list[AgentSpec] = [primary]
        seen = {primary.id}
        queue = [primary]
        while queue:
            current = queue.pop(0)
            for edge in current.edges or []:
                if edge.source != current.id:
                    continue
                for target in edge.targets():
                    agent = by_id.get(target)
                    if agent is not None and target not in seen:
                        seen.add(target)
                        ordered.append(agent)
                        queue.append(agent)
        for agent in agent_configs:
            if agent.id not in seen:
                seen.add(agent.id)
                ordered.append(agent)
        return cls(ordered)


def resolve_recursion_limit(primary: AgentSpec, agents_config: AgentsConfig) -> int:
    """min(agent-declared, tenant maximum, tenant/protocol default)."""
    candidates = [
        primary.recursion_limit,
        agents_config.max_recursion_limit,
        agents_config.recursion_limit or DEFAULT_RECURSION_LIMIT,
    ]
    return min(v for v in candidates if v is not None and v > 0)


# ------------------------------------------------------------------
# Runner
# ------------------------------------------------------------------


@dataclass
class RunOutcome:
    state: RunState
    content_parts: list[ContentPart]
    usage: list[UsageRecord]
    agent_id_map: dict[str, str] | None = None
    context_breakdown: dict[str, Any] | None = None
    run: Run | None = None
    error: str | None = None


class MultiAgentRunner:
    """Drives one run of an agent chain and collects its output."""

    def __init__(
        self,
        engine: RunEngine,
        token_counter: Tokenizer,
        agents_config: AgentsConfig | None = None,
    ) -> None:
        self._engine = engine
        self._counter = token_counter
        self._agents_config = agents_config or AgentsConfig()
        self._state = RunState.IDLE
        self._parts: dict[int, ContentPart] = {}
        self._part_agents: dict[int, str | None] = {}
        self._usage: list[UsageRecord] = []

    @property
    def state(self) -> RunState:
        return self._state

    def _transition(self, target: RunState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise InvalidTransition(self._state, target)
        logger.debug("Run state %s -> %s", self._state, target)
        self._state = target

    async def run(
        self,
        *,
        primary: AgentSpec,
        agent_configs: list[AgentSpec],
        messages: list[dict[str, Any]],
        user_id: str,
        thread_id: str,
        abort_controller: AbortController,
        system_content: str = "",
        turn_context: str = "",
        request_body: dict[str, Any] | None = None,
        user_mcp_auth_map: dict[str, dict[str, str]] | None = None,
        on_progress: ProgressHandler | None = None,
        on_run_created: Callable[[Run], None] | None = None,
    ) -> RunOutcome:
        self._transition(RunState.CONFIGURING)
        signal = abort_controller.signal
        chain = AgentChain.resolve(primary, agent_configs, self._agents_config.chain_enabled)
        config = RunConfig(
            thread_id=thread_id,
            user_id=user_id,
            recursion_limit=resolve_recursion_limit(chain.primary, self._agents_config),
            signal=signal,
            user_mcp_auth_map=user_mcp_auth_map or {},
            hide_sequential_outputs=chain.primary.hide_sequential_outputs,
            last_agent_id=chain.agents[-1].id,
            request_body=request_body or {},
        )
        logger.info(
            "Configured run for thread %s: %d agent(s), recursion_limit=%d",
            thread_id,
            len(chain.agents),
            config.recursion_limit,
        )

        if signal.aborted:
            self._transition(RunState.ABORTED)
            config.release()
            return RunOutcome(state=self._state, content_parts=[], usage=[])

        try:
            run = await self._engine.create_run(
                chain.agents,
                self._counter,
                signal,
                config.request_body,
                system_content=system_content,
                turn_context=turn_context,
            )
            if run is None:
                raise RunCreationFailure("Failed to create run")
        except Exception as e:
            logger.error("Run creation failed for thread %s: %s", thread_id, e, exc_info=True)
            self._transition(RunState.FAILED)
            config.release()
            return RunOutcome(
                state=self._state,
                content_parts=[ContentPart.error_part(f"{RUN_ERROR_MESSAGE}.")],
                usage=[],
                error=str(e),
            )

        if on_run_created is not None:
            on_run_created(run)

        self._transition(RunState.STREAMING)
        error = await self._stream(run, messages, config, on_progress)

        self._transition(RunState.FINALIZING)
        outcome = self._finalize(run, chain, config, error)
        config.release()
        return outcome

    async def _stream(
        self,
        run: Run,
        messages: list[dict[str, Any]],
        config: RunConfig,
        on_progress: ProgressHandler | None,
    ) -> str | None:
        """Drive the stream; returns an error message for non-abort failures."""

        async def on_content_part(index: int, part: ContentPart, agent_id: str | None) -> None:
            self._parts[index] = part
            self._part_agents[index] = agent_id
            if on_progress is not None:
                await on_progress({"type": "content_part", "index": index, "agent_id": agent_id,
                                   "part": part.model_dump(exclude_none=True)})

        async def on_delta(text: str, agent_id: str | None) -> None:
            if on_progress is not None:
                await on_progress({"type": "delta", "text": text, "agent_id": agent_id})

        async def on_tool_error(info: ToolErrorInfo) -> None:
            err = ToolInvocationError(info.tool_id, info.error)
            logger.error("%s (tool=%s, agent=%s)", err, info.tool_name, info.agent_id)

        callbacks = RunCallbacks(
            on_content_part=on_content_part,
            on_delta=on_delta,
            on_tool_error=on_tool_error,
            on_usage=self._usage.append,
        )

        try:
            await run.process_stream(messages, config, callbacks)
        except StreamAbort:
            logger.info("Run stream aborted for thread %s", config.thread_id)
        except Exception as e:
            if config.signal is not None and config.signal.aborted:
                logger.info("Run stream ended after abort: %s", e)
                return None
            logger.error("Run stream failed for thread %s: %s", config.thread_id, e, exc_info=True)
            return str(e) or type(e).__name__
        return None

    def _finalize(
        self,
        run: Run,
        chain: AgentChain,
        config: RunConfig,
        error: str | None,
    ) -> RunOutcome:
        indices = sorted(self._parts)
        parts = [self._parts[i] for i in indices]
        agents = [self._part_agents.get(i) for i in indices]

        graph_map: dict[int, str] | None = None
        try:
            graph_map = run.graph.get_content_part_agent_map()
        except Exception:
            logger.exception("Failed to read content part agent map")
        if graph_map:
            agents = [graph_map.get(i, agent) for i, agent in zip(indices, agents)]

        if config.hide_sequential_outputs and parts:
            parts, agents = self._hide_sequential(parts, agents)

        agent_id_map: dict[str, str] | None = None
        try:
            produced = {a for a in agents if a}
            if len(produced) > 1:
                agent_id_map = {str(i): a for i, a in enumerate(agents) if a}
        except Exception:
            logger.exception("Failed to capture agent attribution")

        context_breakdown: dict[str, Any] | None = None
        try:
            context_breakdown = run.graph.get_context_breakdown()
        except Exception:
            logger.exception("Failed to capture context breakdown")

        aborted = config.signal is not None and config.signal.aborted
        if error and not aborted:
            parts.append(ContentPart.error_part(user_error_message(error)))
            self._transition(RunState.FAILED)
        elif aborted:
            self._transition(RunState.ABORTED)
        else:
            self._transition(RunState.COMPLETED)

        return RunOutcome(
            state=self._state,
            content_parts=parts,
            usage=list(self._usage),
            agent_id_map=agent_id_map,
            context_breakdown=context_breakdown,
            run=run,
            error=error,
        )

    @staticmethod
    def _hide_sequential(
        parts: list[ContentPart], agents: list[str | None]
    ) -> tuple[list[ContentPart], list[str | None]]:
        """Keep the final agent's parts plus tool-call parts."""
        final_agent = agents[-1]
        last = len(parts) - 1
        kept_parts: list[ContentPart] = []
        kept_agents: list[str | None] = []
        for i, (part, agent) in enumerate(zip(parts, agents)):
            keep = (
                i == last
                or (final_agent is not None and agent == final_agent)
                or part.type == ContentType.TOOL_CALL
                or bool(part.tool_call_ids)
            )
            if keep:
                kept_parts.append(part)
                kept_agents.append(agent)
        return kept_parts, kept_agents
