"""Tool dispatcher for the direct Anthropic API run engine.

Agents declare their tools (name, description, schema); the dispatcher
holds the handlers. Each handler is an async callable that accepts
**kwargs and returns an MCP-format response:
{"content": [{"type": "text", "text": "..."}]}.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, NamedTuple

from parley.schemas import ToolSpec

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Awaitable[dict[str, Any]]]


class RegisteredTool(NamedTuple):
    handler: ToolHandler
    schema: dict[str, Any]

    @property
    def description(self) -> str:
        return self.schema.get("description", "")


class ToolDispatcher:
    """Maps tool names from tool_use blocks to local async handlers."""

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(self, name: str, handler: ToolHandler, schema: dict[str, Any]) -> None:
        self._tools[name] = RegisteredTool(handler, schema)

    def has(self, name: str) -> bool:
        return name in self._tools

    async def dispatch(self, name: str, args: dict[str, Any]) -> tuple[str, bool]:
        """Run one tool call. Returns (result_text, is_error); never raises."""
        tool = self._tools.get(name)
        if tool is None:
            return f"Unknown tool: {name}", True
        try:
            result = await tool.handler(**args)
        except Exception as e:
            logger.exception("Tool %s raised", name)
            return f"Tool error: {e}", True
        return result["content"][0]["text"], False

    def tool_definitions(self, specs: list[ToolSpec] | None = None) -> list[dict[str, Any]]:
        """Tool definitions in Anthropic API format.

        With ``specs`` the agent's declared tools are used as-is, falling
        back to the registered schema for the description.
        """
        if specs is None:
            return [
                {"name": name, "description": tool.description, "input_schema": tool.schema}
                for name, tool in self._tools.items()
            ]
        definitions = []
        for spec in specs:
            registered = self._tools.get(spec.name)
            definitions.append(
                {
                    "name": spec.name,
                    "description": spec.description or (registered.description if registered else ""),
                    "input_schema": spec.input_schema,
                }
            )
        return definitions
