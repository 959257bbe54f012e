"""Chat service -- builds one AgentClient per turn from a request body.

Holds the process-wide collaborators (run engine, guardrail service,
spend ledger, memory store) and keeps recently finished clients by
conversation so a title can be generated after the turn and token
counts corrected on one turn are reused by the next.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any
from uuid import uuid4

from parley.client import AgentClient
from parley.config import AppConfig, Settings
from parley.pipeline.budget import Summarizer
from parley.pipeline.tokens import TokenCountMap, TokenCounter
from parley.protocols import (
    AgentLoader,
    GuardrailService,
    InstructionProvider,
    MemoryProcessorFactory,
    MemoryStore,
    PermissionChecker,
    RunEngine,
    SpendLedger,
)
from parley.schemas import AgentSpec, StoredMessage, UserContext

logger = logging.getLogger(__name__)

RECENT_CLIENTS_MAX = 256


class ChatService:
    def __init__(
        self,
        settings: Settings,
        app_config: AppConfig,
        engine: RunEngine,
        *,
        token_counter: TokenCounter | None = None,
        guardrail_service: GuardrailService | None = None,
        spend_ledger: SpendLedger | None = None,
        memory_store: MemoryStore | None = None,
        memory_processor_factory: MemoryProcessorFactory | None = None,
        permission_checker: PermissionChecker | None = None,
        agent_loader: AgentLoader | None = None,
        instruction_provider: InstructionProvider | None = None,
        summarizer: Summarizer | None = None,
    ) -> None:
        self.settings = settings
        self.app_config = app_config
        self.engine = engine
        self.token_counter = token_counter or TokenCounter(settings.encoding)
        self._guardrail_service = guardrail_service
        self._spend_ledger = spend_ledger
        self._memory_store = memory_store
        self._memory_processor_factory = memory_processor_factory
        self._permission_checker = permission_checker
        self._agent_loader = agent_loader
        self._instruction_provider = instruction_provider
        self._summarizer = summarizer
        self._recent: OrderedDict[str, AgentClient] = OrderedDict()

    def default_agent(self) -> AgentSpec:
        return AgentSpec(
            id="default",
            name=self.app_config.branding.label,
            provider=self.settings.provider,
            model=self.settings.model,
        )

    def parse_turn(self, body: dict[str, Any]) -> tuple[AgentClient, list[StoredMessage], str | None]:
        """Build (client, history, parent_message_id) from a request body.

        Raises ValueError (or pydantic's ValidationError) on bad input.
        """
        history = [StoredMessage.model_validate(m) for m in body.get("messages") or []]
        text = body.get("text") or body.get("message")
        parent_id = body.get("parent_message_id")
        if text:
            message = StoredMessage(
                message_id=body.get("message_id") or str(uuid4()),
                parent_message_id=history[-1].message_id if history else None,
                is_created_by_user=True,
                text=text,
            )
            history.append(message)
            parent_id = message.message_id
        if not history:
            raise ValueError("Missing required field: text or messages")
        if parent_id is None:
            parent_id = history[-1].message_id

        user_data = body.get("user") or {"id": body.get("user_id") or "anonymous"}
        user = UserContext.model_validate(user_data)
        agent = AgentSpec.model_validate(body["agent"]) if body.get("agent") else self.default_agent()
        agent_configs = [AgentSpec.model_validate(a) for a in body.get("agents") or []]
        conversation_id = body.get("conversation_id") or str(uuid4())
        previous = self._recent.get(conversation_id)

        client = AgentClient(
            settings=self.settings,
            app_config=self.app_config,
            engine=self.engine,
            agent=agent,
            user=user,
            conversation_id=conversation_id,
            agent_configs=agent_configs,
            token_counter=self.token_counter,
            endpoint=body.get("endpoint"),
            guardrail_service=self._guardrail_service,
            spend_ledger=self._spend_ledger,
            memory_store=self._memory_store,
            memory_processor_factory=self._memory_processor_factory,
            permission_checker=self._permission_checker,
            agent_loader=self._agent_loader,
            instruction_provider=self._instruction_provider,
            summarizer=self._summarizer,
            token_count_map=previous.token_count_map if previous is not None else TokenCountMap(),
            request_body=body,
            user_mcp_auth_map=body.get("user_mcp_auth_map"),
        )
        return client, history, parent_id

    def remember(self, client: AgentClient) -> None:
        self._recent[client.conversation_id] = client
        self._recent.move_to_end(client.conversation_id)
        while len(self._recent) > RECENT_CLIENTS_MAX:
            self._recent.popitem(last=False)

    def recent(self, conversation_id: str) -> AgentClient | None:
        return self._recent.get(conversation_id)

    def __len__(self) -> int:
        return len(self._recent)
