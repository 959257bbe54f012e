"""Message assembly: stored history -> model-facing prompt.

Walks the message tree from the requested leaf, labels multi-agent
assistant turns, builds the cache-stable system content and annotates
every message with a token count. Per-turn material (latest file
context, guardrail notes) is returned separately as turn_context so the
system content stays byte-identical across turns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from parley.config import BrandingConfig
from parley.pipeline import prompts
from parley.pipeline.file_context import DEFAULT_FILE_TOKEN_LIMIT, extract_file_context
from parley.pipeline.tokens import TokenCountMap, TokenCounter
from parley.protocols import InstructionProvider
from parley.schemas import (
    AgentSpec,
    ContentPart,
    ContentType,
    PromptBreakdown,
    PromptMessage,
    StoredMessage,
    UserContext,
)

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[Previous conversation summary]"


@dataclass
class TurnOptions:
    """Per-turn inputs to assembly that are not part of history."""

    parent_message_id: str | None = None
    user: UserContext | None = None
    branding: BrandingConfig | None = None
    strategy: str | None = None  # discard, summarize
    timezone: str = prompts.DEFAULT_TIMEZONE
    vision: bool = False
    guardrail_note: str | None = None
    file_token_limit: int = DEFAULT_FILE_TOKEN_LIMIT


@dataclass
class AssembledPrompt:
    formatted_messages: list[PromptMessage]
    system_content: str
    turn_context: str
    token_count_map: TokenCountMap
    ordered_messages: list[StoredMessage]
    prompt_breakdown: PromptBreakdown = field(default_factory=PromptBreakdown)


# ------------------------------------------------------------------
# History ordering
# ------------------------------------------------------------------


def get_messages_for_conversation(
    messages: list[StoredMessage],
    parent_message_id: str | None,
    summary: bool = False,
) -> list[StoredMessage]:
    """Return the root-first branch ending at ``parent_message_id``.

    History is a tree; only the ancestors of the requested leaf are
    included. With ``summary`` the walk stops at the newest message that
    carries a summary, which stands in for everything older.
    """
    if not messages:
        return []
    by_id = {m.message_id: m for m in messages}
    leaf_id = parent_message_id or messages[-1].message_id

    branch: list[StoredMessage] = []
    visited: set[str] = set()
    current = by_id.get(leaf_id)
    while current is not None and current.message_id not in visited:
        visited.add(current.message_id)
        branch.append(current)
        if summary and current.summary:
            break
        current = by_id.get(current.parent_message_id) if current.parent_message_id else None

    if current is not None and current.message_id in visited and not (summary and current.summary):
        logger.warning("Cycle detected in message tree at %s", current.message_id)

    branch.reverse()
    return branch


# ------------------------------------------------------------------
# Agent labels
# ------------------------------------------------------------------


def label_content_by_agent(
    content: list[ContentPart],
    agent_id_map: dict[str, str],
    agent_names: dict[str, str],
) -> list[ContentPart]:
    """Group consecutive parts by producing agent under a ``[Name]`` header.

    Pure: returns a new list and never touches the input parts.
    """
    labeled: list[ContentPart] = []
    previous_agent: str | None = None
    for index, part in enumerate(content):
        agent_id = agent_id_map.get(str(index))
        if agent_id and agent_id != previous_agent:
            name = agent_names.get(agent_id, agent_id)
            labeled.append(ContentPart.text_part(f"[{name}]"))
        previous_agent = agent_id or previous_agent
        labeled.append(part.model_copy())
    return labeled


def apply_agent_labels(
    messages: list[StoredMessage],
    primary: AgentSpec,
    agent_configs: list[AgentSpec],
) -> list[StoredMessage]:
    """Label assistant messages by agent when more than one persona is involved."""
    if not primary.edges and not agent_configs:
        return messages

    agent_names = {primary.id: primary.name or "Assistant"}
    for config in agent_configs:
        agent_names[config.id] = config.display_name

    result: list[StoredMessage] = []
    for message in messages:
        agent_id_map = message.metadata.get("agent_id_map")
        if message.is_created_by_user or not agent_id_map or not message.content:
            result.append(message)
            continue
        try:
            normalized = {str(k): v for k, v in agent_id_map.items()}
            labeled = label_content_by_agent(message.content, normalized, agent_names)
            result.append(message.model_copy(update={"content": labeled}))
        except Exception:
            logger.exception("Failed to label message %s by agent", message.message_id)
            result.append(message)
    return result


# ------------------------------------------------------------------
# Formatting
# ------------------------------------------------------------------


def _part_to_block(part: ContentPart, vision: bool) -> dict[str, Any] | None:
    if part.type == ContentType.TEXT and part.text:
        return {"type": "text", "text": part.text}
    if part.type == ContentType.TOOL_CALL and part.tool_call:
        call = part.tool_call
        output = call.output if call.output is not None else "(no output)"
        return {"type": "text", "text": f"[Tool {call.name} returned]\n{output}"}
    if part.type == ContentType.IMAGE_URL and vision and isinstance(part.image_url, dict):
        url = part.image_url.get("url", "")
        return {"type": "image", "source": {"type": "url", "url": url}}
    # think and error parts are never replayed to the model
    return None


def _prefix_file_context(
    content: str | list[dict[str, Any]], file_context: str
) -> str | list[dict[str, Any]]:
    if isinstance(content, str):
        return f"{file_context}\n\n{content}"
    blocks = [dict(b) for b in content]
    for block in blocks:
        if block.get("type") == "text":
            block["text"] = f"{file_context}\n\n{block.get('text', '')}"
            return blocks
    return [{"type": "text", "text": file_context}, *blocks]


def format_message(message: StoredMessage, vision: bool = False) -> PromptMessage:
    """Convert one stored message to its model-facing shape."""
    if message.content:
        blocks = [b for b in (_part_to_block(p, vision) for p in message.content) if b]
        if all(b["type"] == "text" for b in blocks):
            content: str | list[dict[str, Any]] = "\n\n".join(b["text"] for b in blocks)
        else:
            content = blocks
    else:
        content = message.text
        if vision and message.image_urls:
            content = [
                *({"type": "image", "source": {"type": "url", "url": img.get("url", "")}}
                  for img in message.image_urls),
                {"type": "text", "text": message.text},
            ]
    return PromptMessage(
        role=message.role,
        content=content,
        message_id=message.message_id,
        pinned=message.pinned,
    )


# ------------------------------------------------------------------
# Assembler
# ------------------------------------------------------------------


class MessageAssembler:
    """Builds the ordered, labeled, token-annotated prompt for one turn."""

    def __init__(
        self,
        token_counter: TokenCounter,
        instruction_provider: InstructionProvider | None = None,
    ) -> None:
        self._counter = token_counter
        self._instruction_provider = instruction_provider

    async def build_system_content(
        self,
        primary: AgentSpec,
        options: TurnOptions,
    ) -> tuple[str, PromptBreakdown]:
        """Concatenate the cache-stable system sections in fixed order.

        branding, tool routing, agent instructions, code executor block,
        MCP block. Memory is never part of this string.
        """
        tool_names = primary.tool_names()
        code_executor = prompts.has_code_executor(tool_names)

        branding = prompts.build_branding_prompt(options.branding, options.user, options.timezone)
        tool_routing = prompts.TOOL_ROUTING_PROMPT if (primary.artifacts and code_executor) else ""
        instructions = "\n".join(
            s for s in (primary.instructions, primary.additional_instructions) if s
        )
        code_block = prompts.CODE_EXECUTOR_PROMPT if code_executor else ""
        mcp_block = await self._mcp_instructions(tool_names)

        sections = [branding, tool_routing, instructions, code_block, mcp_block]
        system_content = "\n\n".join(s for s in sections if s)

        count = self._counter.get_token_count
        breakdown = PromptBreakdown(
            branding=count(branding),
            tool_routing=count(tool_routing),
            agent_instructions=count(instructions) + count(code_block),
            mcp_instructions=count(mcp_block),
            artifacts=0,
            memory=0,
        )
        return system_content, breakdown

    async def _mcp_instructions(self, tool_names: list[str]) -> str:
        servers = prompts.mcp_server_names(tool_names)
        if not servers or self._instruction_provider is None:
            return ""
        try:
            return (await self._instruction_provider(servers)).strip()
        except Exception:
            logger.exception("Failed to fetch MCP instructions for %s", servers)
            return ""

    async def assemble(
        self,
        history: list[StoredMessage],
        agent_chain: list[AgentSpec],
        options: TurnOptions,
        token_count_map: TokenCountMap | None = None,
    ) -> AssembledPrompt:
        if not agent_chain:
            raise ValueError("agent_chain must contain at least the primary agent")
        primary, chained = agent_chain[0], agent_chain[1:]
        counts = token_count_map if token_count_map is not None else TokenCountMap()

        ordered = get_messages_for_conversation(
            history,
            options.parent_message_id,
            summary=options.strategy == "summarize",
        )
        labeled = apply_agent_labels(ordered, primary, chained)
        system_content, breakdown = await self.build_system_content(primary, options)

        turn_sections: list[str] = []
        formatted: list[PromptMessage] = []
        last_index = len(labeled) - 1

        for index, message in enumerate(labeled):
            if options.strategy == "summarize" and message.summary and index == 0:
                formatted.append(self._summary_message(message, counts))
                continue

            prompt_message = format_message(message, vision=options.vision)
            file_context = message.file_context or self._file_context(message, options)
            if file_context:
                if index == last_index:
                    turn_sections.append(file_context)
                else:
                    prompt_message.content = _prefix_file_context(prompt_message.content, file_context)

            # A count corrected on an earlier turn beats the stored estimate
            known = counts.get(message.message_id)
            if known is None:
                known = message.token_count
            needs_count = (
                known is None
                or bool(file_context)
                or (options.vision and bool(message.files or message.image_urls))
            )
            if needs_count:
                token_count = self._counter.count_message(prompt_message, vision=options.vision)
            else:
                token_count = known or 0
            prompt_message.token_count = token_count
            counts[message.message_id] = token_count
            formatted.append(prompt_message)

        if options.guardrail_note:
            turn_sections.append(options.guardrail_note)

        return AssembledPrompt(
            formatted_messages=formatted,
            system_content=system_content,
            turn_context="\n\n".join(turn_sections),
            token_count_map=counts,
            ordered_messages=ordered,
            prompt_breakdown=breakdown,
        )

    def _file_context(self, message: StoredMessage, options: TurnOptions) -> str | None:
        if not message.files:
            return None
        return extract_file_context(message.files, self._counter, options.file_token_limit)

    def _summary_message(self, message: StoredMessage, counts: TokenCountMap) -> PromptMessage:
        content = f"{SUMMARY_PREFIX}\n\n{message.summary}"
        token_count = message.summary_token_count or self._counter.get_token_count(content)
        counts[message.message_id] = token_count
        return PromptMessage(
            role="user",
            content=content,
            message_id=message.message_id,
            token_count=token_count,
            synthetic=True,
        )
