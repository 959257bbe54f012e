"""AgentClient -- per-turn facade over the conversation pipeline.

One client per turn. build_messages() turns stored history into a
budgeted payload; send_completion() runs the agent chain, applies output
moderation, reconciles usage and settles background memory work before
returning the final content parts. release() waits for the turn's spend
writes and is meant to run after the response has gone out.

Flow:
  assemble -> fit -> (memory fetch, in parallel) -> input guardrail
  -> run -> output guardrail -> usage -> memory write (background)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from parley.config import AppConfig, Settings
from parley.events import AbortController, Event, TurnChannel
from parley.guardrails.pipeline import GuardrailPipeline
from parley.memory.coordinator import MemoryCoordinator
from parley.pipeline.assembler import MessageAssembler, TurnOptions
from parley.pipeline.budget import ContextBudgeter, Summarizer
from parley.pipeline.runner import MultiAgentRunner, ProgressHandler, RunOutcome
from parley.pipeline.title import TitleGenerator
from parley.pipeline.tokens import TokenCountMap, TokenCounter
from parley.pipeline.usage import UsageLedger
from parley.protocols import (
    AgentLoader,
    GuardrailService,
    InstructionProvider,
    MemoryProcessorFactory,
    MemoryStore,
    PermissionChecker,
    Run,
    RunEngine,
    SpendLedger,
)
from parley.schemas import (
    AgentSpec,
    CompletionResult,
    ContentPart,
    PromptBreakdown,
    PromptMessage,
    ReconciledUsage,
    StoredMessage,
    UserContext,
)

logger = logging.getLogger(__name__)


@dataclass
class TurnPayload:
    """Everything send_completion() needs from build_messages()."""

    messages: list[PromptMessage]
    system_content: str
    turn_context: str
    prompt_tokens: int
    token_count_map: TokenCountMap
    current_message_id: str | None = None
    prompt_breakdown: PromptBreakdown = field(default_factory=PromptBreakdown)
    dropped: int = 0

    def api_messages(self) -> list[dict[str, Any]]:
        return [m.to_api() for m in self.messages]


class AgentClient:
    def __init__(
        self,
        *,
        settings: Settings,
        app_config: AppConfig,
        engine: RunEngine,
        agent: AgentSpec,
        user: UserContext,
        conversation_id: str,
        agent_configs: list[AgentSpec] | None = None,
        token_counter: TokenCounter | None = None,
        endpoint: str | None = None,
        guardrail_service: GuardrailService | None = None,
        spend_ledger: SpendLedger | None = None,
        memory_store: MemoryStore | None = None,
        memory_processor_factory: MemoryProcessorFactory | None = None,
        permission_checker: PermissionChecker | None = None,
        agent_loader: AgentLoader | None = None,
        instruction_provider: InstructionProvider | None = None,
        summarizer: Summarizer | None = None,
        token_count_map: TokenCountMap | None = None,
        request_body: dict[str, Any] | None = None,
        user_mcp_auth_map: dict[str, dict[str, str]] | None = None,
    ) -> None:
        self._settings = settings
        self._app_config = app_config
        self._engine = engine
        self.agent = agent
        self.agent_configs = list(agent_configs or [])
        self.user = user
        self.conversation_id = conversation_id
        self.endpoint = endpoint or agent.provider
        self._request_body = request_body or {}
        self._user_mcp_auth_map = user_mcp_auth_map or {}

        self.token_counter = token_counter or TokenCounter(settings.encoding)
        # Shared across turns of one conversation so corrected counts carry over
        self.token_count_map = token_count_map if token_count_map is not None else TokenCountMap()
        self.assembler = MessageAssembler(self.token_counter, instruction_provider)
        self.budgeter = ContextBudgeter(
            self.token_counter,
            max_context_tokens=settings.max_context_tokens,
            max_output_tokens=settings.max_tokens,
            summarizer=summarizer,
            summary_token_limit=settings.summary_token_limit,
        )
        self.memory = MemoryCoordinator(
            memory_config=app_config.memory,
            memory_store=memory_store,
            processor_factory=memory_processor_factory,
            permission_checker=permission_checker,
            agent_loader=agent_loader,
            timeout=settings.memory_timeout,
        )
        self.guardrails = GuardrailPipeline(guardrail_service)
        self.ledger = UsageLedger(
            spend_ledger,
            user_id=user.id,
            conversation_id=conversation_id,
            enabled=settings.spend_enabled and app_config.records_transactions,
            routing_cost_logging=settings.routing_cost_logging,
        )
        self.channel = TurnChannel(conversation_id)

        self.run: Run | None = None
        self.content_parts: list[ContentPart] = []
        self.usage = ReconciledUsage()
        self.memory_attachments: list[dict[str, Any]] | None = None

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def build_messages(
        self,
        history: list[StoredMessage],
        *,
        parent_message_id: str | None = None,
    ) -> TurnPayload:
        """Assemble and budget the prompt for this turn."""
        memory_task = asyncio.create_task(
            self.memory.fetch(
                self.user,
                self.agent,
                message_id=parent_message_id,
                conversation_id=self.conversation_id,
            ),
            name="memory-fetch",
        )
        try:
            guard = await self.guardrails.check_input(history)
            endpoint_config = self._app_config.endpoint_config(self.endpoint)
            branding = (endpoint_config.branding if endpoint_config else None) or self._app_config.branding
            options = TurnOptions(
                parent_message_id=parent_message_id,
                user=self.user,
                branding=branding,
                strategy=self._settings.context_strategy,
                timezone=self.user.timezone or self._settings.timezone,
                vision=self._settings.vision,
                guardrail_note=guard.note,
                file_token_limit=self._settings.file_token_limit,
            )
            chain = [self.agent, *(a for a in self.agent_configs if a.id != self.agent.id)]
            assembled = await self.assembler.assemble(history, chain, options, self.token_count_map)
            memory_context = await memory_task
        finally:
            if not memory_task.done():
                memory_task.cancel()

        messages = MemoryCoordinator.inject(assembled.formatted_messages, memory_context)
        for message in messages:
            if message.synthetic and not message.token_count:
                message.token_count = self.token_counter.count_message(message)

        breakdown = assembled.prompt_breakdown.model_copy(
            update={"memory": self.token_counter.get_token_count(memory_context or "")}
        )
        reserved = self.token_counter.get_token_count(
            assembled.system_content
        ) + self.token_counter.get_token_count(assembled.turn_context)

        fit = await self.budgeter.fit(messages, self._settings.context_strategy, reserved_tokens=reserved)
        self.token_count_map.update(fit.token_count_map)

        current = assembled.ordered_messages[-1].message_id if assembled.ordered_messages else None
        logger.debug(
            "Built %d messages for conversation %s (%d prompt tokens, %d dropped)",
            len(fit.payload),
            self.conversation_id,
            fit.prompt_tokens,
            fit.dropped,
        )
        return TurnPayload(
            messages=fit.payload,
            system_content=assembled.system_content,
            turn_context=assembled.turn_context,
            prompt_tokens=fit.prompt_tokens,
            token_count_map=fit.token_count_map,
            current_message_id=current,
            prompt_breakdown=breakdown,
            dropped=fit.dropped,
        )

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def send_completion(
        self,
        payload: TurnPayload,
        on_progress: ProgressHandler | None = None,
        abort_controller: AbortController | None = None,
    ) -> CompletionResult:
        abort_controller = abort_controller or AbortController()
        if on_progress is not None:

            async def forward(event: Event) -> None:
                await on_progress(event.data)

            self.channel.on("progress", forward)

        async def emit_progress(data: dict[str, Any]) -> None:
            await self.channel.emit("progress", data)

        memory_pending: asyncio.Task | None = None
        conversation = [m for m in payload.messages if not m.synthetic]

        def on_run_created(run: Run) -> None:
            nonlocal memory_pending
            self.run = run
            memory_pending = self.memory.start_write(conversation)

        runner = MultiAgentRunner(self._engine, self.token_counter, self._app_config.agents)
        try:
            outcome = await runner.run(
                primary=self.agent,
                agent_configs=self.agent_configs,
                messages=payload.api_messages(),
                user_id=self.user.id,
                thread_id=self.conversation_id,
                abort_controller=abort_controller,
                system_content=payload.system_content,
                turn_context=payload.turn_context,
                request_body=self._request_body,
                user_mcp_auth_map=self._user_mcp_auth_map,
                on_progress=emit_progress,
                on_run_created=on_run_created,
            )
            return await self._finalize(payload, outcome, memory_pending)
        finally:
            if memory_pending is not None and not memory_pending.done():
                memory_pending.cancel()
            self.channel.close()

    async def _finalize(
        self,
        payload: TurnPayload,
        outcome: RunOutcome,
        memory_pending: asyncio.Task | None,
    ) -> CompletionResult:
        """Each step is isolated; one failure never skips the rest."""
        parts = outcome.content_parts
        metadata: dict[str, Any] = {}

        try:
            moderated = await self.guardrails.check_output(parts)
            parts = moderated.parts
            if moderated.tracking is not None:
                metadata["guardrail_tracking"] = moderated.tracking
        except Exception:
            logger.exception("Output guardrail step failed")

        try:
            self.usage = self.ledger.reconcile(
                outcome.usage,
                context="message",
                model=self.agent.model,
                requested_model=self._requested_model(),
                message_id=payload.current_message_id,
            )
            current = payload.current_message_id
            if outcome.usage and current:
                # Correct against what was actually sent, not the whole conversation
                self.token_count_map[current] = payload.token_count_map.correct(current, self.usage.input_tokens)
        except Exception:
            logger.exception("Usage reconciliation failed for conversation %s", self.conversation_id)

        self.memory_attachments = await self.memory.await_with_timeout(memory_pending)
        if self.memory_attachments:
            metadata["attachments"] = self.memory_attachments

        if outcome.agent_id_map:
            metadata["agent_id_map"] = outcome.agent_id_map
        if outcome.context_breakdown:
            metadata["context_breakdown"] = {
                **outcome.context_breakdown,
                "prompt": payload.prompt_breakdown.model_dump(),
            }

        well_formed = [p for p in parts if p.is_well_formed()]
        if len(well_formed) != len(parts):
            logger.warning("Dropped %d malformed content parts", len(parts) - len(well_formed))
        self.content_parts = well_formed

        try:
            await self.channel.emit("completed", {"state": str(outcome.state), "parts": len(well_formed)})
        except Exception:
            logger.exception("Completion event failed")

        return CompletionResult(
            completion=well_formed,
            metadata=metadata or None,
            token_counts=dict(payload.token_count_map) or None,
        )

    def _requested_model(self) -> str | None:
        """Model the caller asked for before any routing, if the request names one."""
        requested = self._request_body.get("original_model") or self._request_body.get("model")
        return requested if isinstance(requested, str) and requested else None

    async def release(self) -> None:
        """Wait for this turn's spend writes. Run after the response is sent."""
        try:
            await self.ledger.drain()
        except Exception:
            logger.exception("Spend drain failed for conversation %s", self.conversation_id)

    # ------------------------------------------------------------------
    # Title
    # ------------------------------------------------------------------

    async def title_convo(
        self,
        text: str,
        abort_controller: AbortController | None = None,
    ) -> str | None:
        generator = TitleGenerator(
            self._app_config,
            self.ledger,
            provider=self.agent.provider,
            model=self.agent.model or self._settings.model,
            client_options=self.agent.model_parameters,
        )
        title = await generator.generate(
            self.run,
            endpoint=self.endpoint,
            input_text=text,
            content_parts=self.content_parts,
            signal=abort_controller.signal if abort_controller else None,
            conversation_id=self.conversation_id,
        )
        return title
