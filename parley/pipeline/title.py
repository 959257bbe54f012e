"""Conversation title generation.

A short-lived secondary call on the turn's run. Endpoint config decides
whether titling happens and which provider and model serve it; generation
options are stripped down to what a tiny completion needs.
"""

from __future__ import annotations

import logging
from typing import Any

from parley.config import CURRENT_MODEL, AppConfig, ProviderConfig
from parley.errors import ProviderConfigError
from parley.events import AbortSignal
from parley.pipeline.usage import UsageLedger
from parley.protocols import Run
from parley.schemas import ContentPart
from parley.utils import remove_nullish, sanitize_title

logger = logging.getLogger(__name__)

# Options that make no sense for a title completion
OMIT_OPTIONS = frozenset(
    {
        "stream",
        "thinking",
        "streaming",
        "client_options",
        "thinking_config",
        "thinking_budget",
        "include_thoughts",
        "max_output_tokens",
        "additional_model_request_fields",
    }
)

GOOGLE_PROVIDERS = frozenset({"google", "vertexai"})


def strip_title_options(options: dict[str, Any]) -> dict[str, Any]:
    """Drop token limits and streaming/thinking options. Returns a new dict."""
    cleaned = {k: v for k, v in options.items() if k not in OMIT_OPTIONS and k != "max_tokens"}
    model_kwargs = cleaned.get("model_kwargs")
    if isinstance(model_kwargs, dict):
        model_kwargs = {
            k: v
            for k, v in model_kwargs.items()
            if k not in ("max_completion_tokens", "max_output_tokens")
        }
        if model_kwargs:
            cleaned["model_kwargs"] = model_kwargs
        else:
            cleaned.pop("model_kwargs")
    return cleaned


class TitleGenerator:
    def __init__(
        self,
        app_config: AppConfig,
        ledger: UsageLedger,
        *,
        provider: str,
        model: str,
        client_options: dict[str, Any] | None = None,
    ) -> None:
        self._app_config = app_config
        self._ledger = ledger
        self._provider = provider
        self._model = model
        self._client_options = dict(client_options or {})

    def resolve(self, endpoint: str) -> tuple[str, str, dict[str, Any]] | None:
        """(provider, model, client_options) for titling, or None when disabled."""
        config = self._app_config.endpoint_config(endpoint)
        if config is not None and config.title_convo is False:
            return None

        provider = self._provider
        model = self._model
        options = dict(self._client_options)

        if config is not None and config.title_endpoint:
            try:
                provider_config: ProviderConfig = self._app_config.provider_config(config.title_endpoint)
            except ProviderConfigError as e:
                logger.warning(
                    "Failed to use title endpoint '%s', falling back to '%s': %s",
                    config.title_endpoint,
                    provider,
                    e,
                )
            else:
                provider = config.title_endpoint
                options["base_url"] = provider_config.base_url
                if provider_config.default_model:
                    model = provider_config.default_model

        if config is not None and config.title_model and config.title_model != CURRENT_MODEL:
            model = config.title_model

        return provider, model, options

    async def generate(
        self,
        run: Run | None,
        *,
        endpoint: str,
        input_text: str,
        content_parts: list[ContentPart],
        signal: AbortSignal | None = None,
        conversation_id: str | None = None,
    ) -> str | None:
        if run is None:
            raise RuntimeError("Run not initialized")

        resolved = self.resolve(endpoint)
        if resolved is None:
            logger.debug("Titling disabled for endpoint %s", endpoint)
            return None
        provider, model, options = resolved
        config = self._app_config.endpoint_config(endpoint)
        title_method = config.title_method if config else "completion"

        options = strip_title_options(options)
        if provider in GOOGLE_PROVIDERS and title_method in ("functions", "structured"):
            options["json"] = True

        try:
            result = await run.generate_title(
                provider=provider,
                model=model,
                input_text=input_text,
                content_parts=content_parts,
                client_options=remove_nullish(options),
                title_method=title_method,
                title_prompt=config.title_prompt if config else None,
                signal=signal,
            )
            self._ledger.reconcile(result.usage, context="title", model=model)
            title = sanitize_title(result.title)
            logger.info("Generated title for conversation %s: %s", conversation_id, title)
            return title
        except Exception:
            logger.exception("Error generating title (provider=%s, model=%s)", provider, model)
            return None
