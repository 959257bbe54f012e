"""Config-backed lookups a turn resolves by name.

MCP server instructions, stored agent definitions and role permissions
all come from the tenant AppConfig. Each class satisfies the matching
protocol in parley.protocols and is wired in by build_components.
"""

from __future__ import annotations

import logging

from parley.config import AppConfig
from parley.schemas import AgentSpec, UserContext

logger = logging.getLogger(__name__)


class ConfigInstructionProvider:
    """Server instructions for the MCP servers bound to an agent."""

    def __init__(self, app_config: AppConfig) -> None:
        self._servers = app_config.mcp_servers

    async def __call__(self, server_names: list[str]) -> str:
        sections: list[str] = []
        for name in server_names:
            server = self._servers.get(name)
            if server is None:
                logger.debug("No MCP server config for '%s'", name)
                continue
            if server.server_instructions:
                sections.append(f"## {server.title or name} MCP Server Instructions\n\n{server.server_instructions}")
        return "\n\n".join(sections)


class ConfigAgentLoader:
    def __init__(self, app_config: AppConfig) -> None:
        self._definitions = app_config.agents.definitions

    async def __call__(self, agent_id: str) -> AgentSpec | None:
        agent = self._definitions.get(agent_id)
        if agent is None:
            logger.warning("Agent %s is not defined", agent_id)
            return None
        return agent


class RolePermissionChecker:
    """Grants a permission when the user's role lists it.

    With no roles configured every permission is granted. A role missing
    from a non-empty table holds none.
    """

    def __init__(self, app_config: AppConfig) -> None:
        self._roles = app_config.roles

    async def __call__(self, user: UserContext, permission: str) -> bool:
        if not self._roles:
            return True
        role = self._roles.get(user.role)
        if role is None:
            logger.debug("Role %s has no permissions configured", user.role)
            return False
        return permission in role.permissions
