"""Parley entry point.

Wiring order:
  Settings -> AppConfig -> Database -> RunEngine -> Spend/Memory/Guardrails -> ChatService -> App

Components are constructed up front so routes hold real references;
the Starlette lifespan only opens and closes their connections, on the
same event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
import uvicorn
from starlette.applications import Starlette

from parley.api.engine import AnthropicRunEngine
from parley.api.rest import create_app
from parley.api.tools import ToolDispatcher
from parley.config import Settings, load_app_config
from parley.guardrails.engine import CelGuardrailService
from parley.memory.processor import LLMMemoryProcessor
from parley.pipeline.budget import make_summarizer
from parley.pipeline.tokens import TokenCounter
from parley.registry import ConfigAgentLoader, ConfigInstructionProvider, RolePermissionChecker
from parley.service import ChatService
from parley.storage.database import Database
from parley.storage.memories import SqlMemoryStore
from parley.storage.spend import SqlSpendLedger

logger = logging.getLogger(__name__)


@dataclass
class Components:
    database: Database
    engine: AnthropicRunEngine
    memory_http: httpx.AsyncClient
    service: ChatService

    async def start(self) -> None:
        await self.database.connect()
        await self.engine.start()

    async def stop(self) -> None:
        """Close in reverse order of start."""
        await self.memory_http.aclose()
        await self.engine.close()
        await self.database.disconnect()


def build_components(settings: Settings) -> Components:
    app_config = load_app_config(settings.app_config_path)
    database = Database(settings)
    engine = AnthropicRunEngine(settings, ToolDispatcher())

    # Memory extraction gets its own small pool so it never starves turns
    memory_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=30, write=10, pool=10),
        limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
    )
    token_counter = TokenCounter(settings.encoding)
    spend_ledger = SqlSpendLedger(database)
    records_spend = settings.spend_enabled and app_config.records_transactions

    service = ChatService(
        settings,
        app_config,
        engine,
        token_counter=token_counter,
        guardrail_service=CelGuardrailService(app_config.guardrails),
        spend_ledger=spend_ledger,
        memory_store=SqlMemoryStore(database),
        memory_processor_factory=LLMMemoryProcessor(
            settings,
            memory_http,
            token_counter,
            spend_ledger=spend_ledger if records_spend else None,
        ),
        permission_checker=RolePermissionChecker(app_config),
        agent_loader=ConfigAgentLoader(app_config),
        instruction_provider=ConfigInstructionProvider(app_config),
        summarizer=make_summarizer(engine.call_api, settings.background_model, settings.summary_token_limit),
    )
    return Components(database=database, engine=engine, memory_http=memory_http, service=service)


def build_app(settings: Settings) -> Starlette:
    components = build_components(settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await components.start()
        app.state.components = components
        logger.info("Parley started (model=%s, strategy=%s)", settings.model, settings.context_strategy)
        yield
        logger.info("Shutting down Parley...")
        await components.stop()
        logger.info("Parley shutdown complete.")

    return create_app(
        service=components.service,
        database=components.database,
        settings=settings,
        lifespan=lifespan,
    )


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Parley")
    logger.info("Model: %s (background: %s)", settings.model, settings.background_model)
    if settings.database_url:
        logger.info("Database: %s", settings.database_url.split("://", 1)[0])
    else:
        logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)

    uvicorn.run(
        build_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
