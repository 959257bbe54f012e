"""Pydantic DTOs shared by every stage of the turn pipeline.

Stored history comes in as StoredMessage, leaves the assembler as
PromptMessage, and the run produces ContentPart lists that the output
guardrail and the persistence layer consume.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class ContentType(StrEnum):
    TEXT = "text"
    THINK = "think"
    TOOL_CALL = "tool_call"
    IMAGE_URL = "image_url"
    ERROR = "error"


class ToolCall(BaseModel):
    id: str
    name: str
    args: dict[str, Any] | str = Field(default_factory=dict)
    output: str | None = None


class ContentPart(BaseModel):
    """One unit of a structured message body."""

    type: ContentType
    text: str | None = None
    think: str | None = None
    tool_call: ToolCall | None = None
    tool_call_ids: list[str] | None = None
    image_url: dict[str, Any] | str | None = None
    error: str | None = None

    @classmethod
    def text_part(cls, text: str) -> "ContentPart":
        return cls(type=ContentType.TEXT, text=text)

    @classmethod
    def error_part(cls, message: str) -> "ContentPart":
        return cls(type=ContentType.ERROR, error=message)

    def is_well_formed(self) -> bool:
        """A part must carry the payload its type names."""
        if self.type == ContentType.TEXT:
            return self.text is not None
        if self.type == ContentType.THINK:
            return self.think is not None
        if self.type == ContentType.TOOL_CALL:
            return self.tool_call is not None
        if self.type == ContentType.IMAGE_URL:
            return self.image_url is not None
        if self.type == ContentType.ERROR:
            return self.error is not None
        return False


class FileAttachment(BaseModel):
    file_id: str
    filename: str
    type: str = "text/plain"
    text: str | None = None
    tool_resource: str | None = None  # execute_code, file_search, context
    embedded: bool = False
    source: str = "local"


class StoredMessage(BaseModel):
    """A message as persisted by the conversation store."""

    message_id: str
    parent_message_id: str | None = None
    is_created_by_user: bool = False
    text: str = ""
    content: list[ContentPart] | None = None
    files: list[FileAttachment] = Field(default_factory=list)
    image_urls: list[dict[str, Any]] = Field(default_factory=list)
    file_context: str | None = None
    token_count: int | None = None
    summary: str | None = None
    summary_token_count: int | None = None
    pinned: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def role(self) -> str:
        return "user" if self.is_created_by_user else "assistant"


class PromptMessage(BaseModel):
    """A model-facing message, annotated with its token cost."""

    role: str
    content: str | list[dict[str, Any]]
    message_id: str | None = None
    token_count: int = 0
    pinned: bool = False
    synthetic: bool = False

    def to_api(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n".join(
            block.get("text", "") for block in self.content if block.get("type") == "text"
        )


class ToolSpec(BaseModel):
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class AgentEdge(BaseModel):
    source: str
    target: str | list[str]

    def targets(self) -> list[str]:
        return [self.target] if isinstance(self.target, str) else list(self.target)


class AgentSpec(BaseModel):
    id: str
    name: str | None = None
    provider: str = "anthropic"
    model: str
    instructions: str = ""
    additional_instructions: str = ""
    tools: list[ToolSpec] = Field(default_factory=list)
    edges: list[AgentEdge] | None = None
    recursion_limit: int | None = None
    artifacts: str | None = None
    hide_sequential_outputs: bool = False
    model_parameters: dict[str, Any] = Field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def tool_names(self) -> list[str]:
        return [tool.name for tool in self.tools]


class Personalization(BaseModel):
    memories: bool = False


class UserContext(BaseModel):
    id: str
    name: str | None = None
    username: str | None = None
    timezone: str | None = None
    role: str = "USER"
    personalization: Personalization = Field(default_factory=Personalization)

    @property
    def display_name(self) -> str:
        return self.name or self.username or "User"


class UsageRecord(BaseModel):
    """Usage reported at one LLM call boundary inside a run."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation: int = 0
    cache_read: int = 0
    reasoning_tokens: int = 0
    model: str | None = None
    agent_id: str | None = None

    @property
    def has_cache_activity(self) -> bool:
        return self.cache_creation > 0 or self.cache_read > 0

    @property
    def total_input(self) -> int:
        return self.input_tokens + self.cache_creation + self.cache_read


class ReconciledUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class GuardrailOutcomeKind(StrEnum):
    PASSED = "passed"
    ANONYMIZED = "anonymized"
    INTERVENED = "intervened"
    BLOCKED = "blocked"


class GuardrailOutcome(BaseModel):
    outcome: GuardrailOutcomeKind = GuardrailOutcomeKind.PASSED
    violations: list[dict[str, Any]] = Field(default_factory=list)
    modified_content: str | None = None
    action_applied: bool = False
    reason: str | None = None

    def tracking(self) -> dict[str, Any]:
        """Audit record attached to the response metadata."""
        return {
            "outcome": str(self.outcome),
            "violations": self.violations,
            "action_applied": self.action_applied,
            "reason": self.reason,
        }


class InputGuardrailContext(BaseModel):
    has_context: bool = False
    note: str | None = None


class OutputGuardrailResult(BaseModel):
    parts: list[ContentPart]
    outcome: GuardrailOutcome | None = None
    tracking: dict[str, Any] | None = None


class PromptBreakdown(BaseModel):
    """Token share of each system-content section."""

    branding: int = 0
    tool_routing: int = 0
    agent_instructions: int = 0
    mcp_instructions: int = 0
    artifacts: int = 0
    memory: int = 0

    @property
    def total(self) -> int:
        return (
            self.branding
            + self.tool_routing
            + self.agent_instructions
            + self.mcp_instructions
            + self.artifacts
            + self.memory
        )


class CompletionResult(BaseModel):
    completion: list[ContentPart]
    metadata: dict[str, Any] | None = None
    # message-id -> token count of what was sent, current message corrected
    token_counts: dict[str, int] | None = None
