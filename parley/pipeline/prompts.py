"""Static prompt blocks used to build system content.

Everything here must render byte-identically for identical inputs:
the assembled system string is a prompt-cache key.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from parley.config import BrandingConfig
from parley.schemas import UserContext

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/Chicago"

# Tool names containing this marker execute code in a sandbox
CODE_EXECUTOR_MARKER = "execute_code"

# MCP tools are named "<tool>_mcp_<server>"
MCP_DELIMITER = "_mcp_"

TOOL_ROUTING_PROMPT = """\
=== TOOL ROUTING ===

## Quick Decision: What does the user want?

| User Intent | Tool |
|-------------|------|
| Interactive dashboard/chart in browser | :::artifact (no tool call) |
| Data analysis (CSV, Excel, computation) | execute_code |
| Generate downloadable file | execute_code |
| Search documents | file_search |

## Common Mistakes to Avoid
- Do not call execute_code just to print a status line; create the artifact directly.
- Do not use execute_code for browser-rendered visualizations; use an artifact.

## Artifact = Browser Display
Create directly in the response (no tool call): dashboards, interactive charts, UI previews.

## Code Executor = Actual Execution
Call the tool for data processing, file generation and heavy computation."""

CODE_EXECUTOR_PROMPT = """\
=== CODE EXECUTION ===
You can run Python with the execute_code tool.
- Uploaded files routed to the executor are available under /mnt/data.
- Save generated files to /mnt/data so they are returned to the user.
- Print results you need to reason about; only stdout is returned.
- Prefer pandas for tabular data and matplotlib for static charts."""

MEMORY_INSTRUCTIONS = (
    "The memory below holds facts previously saved about the user. "
    "Use it to personalize responses when relevant. Do not mention the memory "
    "mechanism unless the user asks about it."
)

MEMORY_CONTEXT_HEADER = "[MEMORY CONTEXT]"
MEMORY_ACK = (
    "I've noted this information about you and will use it to personalize our conversation."
)

TITLE_PROMPT = (
    "Write a concise title (5 words or fewer) for this conversation. "
    "Reply with the title only, no quotes or punctuation."
)

SUMMARY_SYSTEM_PROMPT = """\
You are a conversation summarizer. Output ONLY a summary of the messages provided.
Preserve names, numbers, decisions, open questions and user preferences.
Do not add commentary."""


def resolve_timezone(user: UserContext | None, override: str | None = None) -> str:
    return override or (user.timezone if user and user.timezone else None) or DEFAULT_TIMEZONE


def format_current_date(timezone: str = DEFAULT_TIMEZONE, now: datetime | None = None) -> str:
    """Day-granular timestamp, e.g. ``Monday, October 19, 2026``.

    Day granularity keeps the branding block stable across the turns of
    a conversation held on the same day.
    """
    moment = now or datetime.now(UTC)
    try:
        local = moment.astimezone(ZoneInfo(timezone))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using %s", timezone, DEFAULT_TIMEZONE)
        local = moment.astimezone(ZoneInfo(DEFAULT_TIMEZONE))
    return f"{local:%A}, {local:%B} {local.day}, {local.year}"


def build_branding_prompt(
    branding: BrandingConfig | None,
    user: UserContext | None,
    timezone: str = DEFAULT_TIMEZONE,
    now: datetime | None = None,
) -> str:
    brand = branding or BrandingConfig()
    user_name = user.display_name if user else "User"
    current_date = format_current_date(timezone, now)
    return (
        f"You are {brand.label}. {brand.description}\n\n"
        f'CURRENT_DATE="{current_date}"\n'
        f'TIMEZONE="{timezone}"\n'
        f'USER="{user_name}"\n\n'
        "RULES:\n"
        "- If the user asks for the date or day, answer with CURRENT_DATE. No disclaimers.\n"
        f"- Interpret times in {timezone} unless the user says otherwise."
    )


def build_minimal_branding_prompt(branding: BrandingConfig | None, user: UserContext | None) -> str:
    """Short identity line for side calls such as titling."""
    brand = branding or BrandingConfig()
    user_name = user.display_name if user else "User"
    return f"You are {brand.label}. User: {user_name}."


def has_code_executor(tool_names: list[str]) -> bool:
    return any(CODE_EXECUTOR_MARKER in name for name in tool_names)


def mcp_server_names(tool_names: list[str]) -> list[str]:
    """Distinct MCP server names in first-seen order."""
    servers: list[str] = []
    for name in tool_names:
        if MCP_DELIMITER not in name:
            continue
        server = name.rsplit(MCP_DELIMITER, 1)[1]
        if server and server not in servers:
            servers.append(server)
    return servers
