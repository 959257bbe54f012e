"""Settings via pydantic-settings with PARLEY_ env prefix.

Process-level settings (credentials, timeouts, DB, server) live on
Settings. Tenant-level behaviour (endpoints, titling, memory, agent
chaining, guardrail policy) lives on AppConfig, a plain pydantic tree
that can be loaded from a JSON file named by PARLEY_APP_CONFIG_PATH.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from parley.errors import ProviderConfigError
from parley.schemas import AgentSpec

logger = logging.getLogger(__name__)

# Sentinel meaning "title with the same model the turn used"
CURRENT_MODEL = "current_model"

# Protocol default when neither the agent nor the tenant sets a limit
DEFAULT_RECURSION_LIMIT = 25


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PARLEY_", env_file=".env")

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("parley", validation_alias="DB_USER")
    db_password: str = Field("parley_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("parley", validation_alias="DB_NAME")
    # Full URL override (e.g. sqlite+aiosqlite:///./parley.db)
    database_url: str = ""

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    app_config_path: str = ""

    # LLM
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-5-20250929"
    background_model: str = "claude-haiku-4-5-20251001"
    max_tokens: int = 4096
    max_tool_iterations: int = 10

    # Direct API settings
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Context window
    encoding: str = "o200k_base"
    max_context_tokens: int = 200_000
    context_strategy: Literal["discard", "summarize"] = "discard"
    summary_token_limit: int = 1200
    file_token_limit: int = 30_000
    vision: bool = False

    # Background work
    memory_timeout: float = 3.0  # seconds
    spend_enabled: bool = True
    routing_cost_logging: bool = True

    # Branding
    timezone: str = "America/Chicago"

    @model_validator(mode="after")
    def _validate_budget(self) -> "Settings":
        if self.max_tokens >= self.max_context_tokens:
            raise ValueError(
                f"max_tokens ({self.max_tokens}) must be < "
                f"max_context_tokens ({self.max_context_tokens})"
            )
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"


# ---------------------------------------------------------------------------
# Tenant configuration
# ---------------------------------------------------------------------------


class BrandingConfig(BaseModel):
    label: str = "AI Assistant"
    description: str = "A helpful AI assistant."


class ProviderConfig(BaseModel):
    """Connection details for one LLM provider."""

    base_url: str = "https://api.anthropic.com"
    default_model: str | None = None
    api_key: str | None = None


class EndpointConfig(BaseModel):
    """Per-endpoint behaviour. The special key ``all`` applies everywhere."""

    title_convo: bool = True
    title_model: str | None = None
    title_endpoint: str | None = None
    title_method: Literal["completion", "functions", "structured"] = "completion"
    title_prompt: str | None = None
    branding: BrandingConfig | None = None


class AgentsConfig(BaseModel):
    recursion_limit: int | None = None
    max_recursion_limit: int | None = None
    capabilities: list[str] = Field(default_factory=list)
    # Stored agents, loadable by id (memory agent, chained agents)
    definitions: dict[str, AgentSpec] = Field(default_factory=dict)

    @property
    def chain_enabled(self) -> bool:
        return "chain" in self.capabilities


class MemoryAgentConfig(BaseModel):
    id: str | None = None
    provider: str | None = None
    model: str | None = None
    instructions: str | None = None
    model_parameters: dict[str, Any] = Field(default_factory=dict)


class MemoryConfig(BaseModel):
    disabled: bool = False
    valid_keys: list[str] | None = None
    token_limit: int | None = None
    message_window_size: int = 5
    instructions: str | None = None
    agent: MemoryAgentConfig | None = None


class GuardrailRule(BaseModel):
    """A CEL expression evaluated against the ``content`` map."""

    name: str
    expression: str
    outcome: Literal["blocked", "intervened"] = "blocked"
    message: str | None = None


class GuardrailsConfig(BaseModel):
    enabled: bool = False
    mode: Literal["enforce", "observe"] = "enforce"
    rules: list[GuardrailRule] = Field(default_factory=list)
    anonymize_pii: bool = False
    pii_types: list[str] = Field(default_factory=lambda: ["email", "phone", "card"])
    block_message: str = "This response was blocked by the content policy."
    context_note: str = (
        "NOTE: An earlier response in this conversation was flagged by the "
        "content policy. Keep replies within policy and do not repeat flagged material."
    )


class McpServerConfig(BaseModel):
    title: str | None = None
    server_instructions: str | None = None


class RoleConfig(BaseModel):
    permissions: list[str] = Field(default_factory=list)


class TransactionsConfig(BaseModel):
    enabled: bool = True


class BalanceConfig(BaseModel):
    """Balance tracking needs transaction rows, so enabling it forces them on."""

    enabled: bool = False
    start_balance: float = 0.0


class AppConfig(BaseModel):
    """Tenant-wide configuration consumed by the turn pipeline."""

    endpoints: dict[str, EndpointConfig] = Field(default_factory=dict)
    providers: dict[str, ProviderConfig] = Field(
        default_factory=lambda: {"anthropic": ProviderConfig()}
    )
    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    memory: MemoryConfig | None = None
    guardrails: GuardrailsConfig = Field(default_factory=GuardrailsConfig)
    branding: BrandingConfig = Field(default_factory=BrandingConfig)
    transactions: TransactionsConfig = Field(default_factory=TransactionsConfig)
    balance: BalanceConfig = Field(default_factory=BalanceConfig)
    mcp_servers: dict[str, McpServerConfig] = Field(default_factory=dict)
    # Empty means every role holds every permission
    roles: dict[str, RoleConfig] = Field(default_factory=dict)

    def endpoint_config(self, endpoint: str) -> EndpointConfig | None:
        """``all`` wins over the named endpoint, matching tenant override order."""
        return self.endpoints.get("all") or self.endpoints.get(endpoint)

    @property
    def records_transactions(self) -> bool:
        return self.transactions.enabled or self.balance.enabled

    def provider_config(self, name: str) -> ProviderConfig:
        config = self.providers.get(name)
        if config is None:
            raise ProviderConfigError(f"No provider config for endpoint '{name}'")
        return config


def load_app_config(path: str | Path | None) -> AppConfig:
    """Load AppConfig from a JSON file, or defaults when no path is set."""
    if not path:
        return AppConfig()
    data = json.loads(Path(path).read_text())
    config = AppConfig.model_validate(data)
    logger.info("Loaded app config from %s (%d endpoints)", path, len(config.endpoints))
    return config
