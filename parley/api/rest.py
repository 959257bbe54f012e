"""REST API for Parley.

Endpoints:
  POST /chat         - Run one turn, get the final content parts
  POST /chat/stream  - SSE streaming turn (deltas, content parts, final)
  POST /chat/title   - Title a conversation whose turn finished recently
  GET  /health       - Health check (DB connectivity)
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from parley.client import AgentClient
from parley.config import Settings
from parley.errors import ContextOverflowError
from parley.events import AbortController
from parley.schemas import CompletionResult
from parley.service import ChatService
from parley.storage.database import Database

logger = logging.getLogger(__name__)

_STREAM_DONE = object()


def _completion_body(client: AgentClient, result: CompletionResult, title: str | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {
        "conversation_id": client.conversation_id,
        "content": [p.model_dump(mode="json", exclude_none=True) for p in result.completion],
        "metadata": result.metadata,
        "usage": client.usage.model_dump(),
        "token_counts": result.token_counts,
    }
    if title is not None:
        body["title"] = title
    return body


def create_app(
    service: ChatService,
    database: Database | None,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def _parse(request: Request) -> tuple[dict[str, Any] | None, JSONResponse | None]:
        try:
            body = await request.json()
        except Exception:
            return None, JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return None, JSONResponse({"error": "JSON body must be an object"}, status_code=400)
        return body, None

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Run one turn."""
        body, error = await _parse(request)
        if error:
            return error

        try:
            client, history, parent_id = service.parse_turn(body)
        except (ValueError, ValidationError) as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        try:
            payload = await client.build_messages(history, parent_message_id=parent_id)
            result = await client.send_completion(payload)
            service.remember(client)
            title = None
            if body.get("title"):
                title = await client.title_convo(history[-1].text)
            # Spend rows are written after the response goes out
            return JSONResponse(_completion_body(client, result, title), background=BackgroundTask(client.release))
        except ContextOverflowError as e:
            return JSONResponse({"error": str(e)}, status_code=413)
        except Exception as e:
            logger.error("Chat error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def chat_stream(request: Request) -> StreamingResponse:
        """POST /chat/stream - SSE streaming chat."""
        body, error = await _parse(request)
        if error:
            return error

        try:
            client, history, parent_id = service.parse_turn(body)
        except (ValueError, ValidationError) as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        abort_controller = AbortController()
        queue: asyncio.Queue = asyncio.Queue()

        async def on_progress(data: dict[str, Any]) -> None:
            await queue.put(data)

        async def run_turn() -> None:
            try:
                payload = await client.build_messages(history, parent_message_id=parent_id)
                result = await client.send_completion(payload, on_progress, abort_controller)
                service.remember(client)
                await queue.put({"type": "final", **_completion_body(client, result)})
            except Exception as e:
                logger.error("Stream error: %s", e)
                await queue.put({"type": "error", "text": str(e)})
            finally:
                await queue.put(_STREAM_DONE)

        async def event_generator():
            task = asyncio.create_task(run_turn(), name=f"turn-{client.conversation_id}")
            try:
                while True:
                    item = await queue.get()
                    if item is _STREAM_DONE:
                        break
                    yield f"data: {json.dumps(item, default=str)}\n\n"
            finally:
                if not task.done():
                    abort_controller.abort("client disconnected")
                    await asyncio.gather(task, return_exceptions=True)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
            background=BackgroundTask(client.release),
        )

    async def chat_title(request: Request) -> JSONResponse:
        """POST /chat/title - Title a recently completed conversation."""
        body, error = await _parse(request)
        if error:
            return error

        conversation_id = body.get("conversation_id")
        if not conversation_id:
            return JSONResponse({"error": "Missing required field: conversation_id"}, status_code=400)
        client = service.recent(conversation_id)
        if client is None:
            return JSONResponse({"error": f"No recent turn for conversation {conversation_id}"}, status_code=404)

        try:
            title = await client.title_convo(body.get("text") or "")
            return JSONResponse(
                {"conversation_id": conversation_id, "title": title},
                background=BackgroundTask(client.release),
            )
        except Exception as e:
            logger.error("Title error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def health(request: Request) -> JSONResponse:
        """GET /health - DB connectivity check."""
        if database is None:
            return JSONResponse({"status": "healthy", "database": "disabled"})
        try:
            await database.ping()
            return JSONResponse({"status": "healthy", "database": "connected"})
        except Exception as e:
            logger.error("Health check failed: %s", e)
            return JSONResponse({"status": "unhealthy", "database": str(e)}, status_code=503)

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/title", chat_title, methods=["POST"]),
        Route("/health", health),
    ]

    return Starlette(routes=routes, lifespan=lifespan)
