"""Run engine -- executes agent chains via direct Anthropic API.

One run drives the whole chain for a turn. Agents execute in chain
order; each runs its own streaming tool loop over httpx and later agents
see earlier agents' final text as a hand-off. Content parts, text deltas,
tool errors and per-call usage flow out through RunCallbacks.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from parley.api.models import (
    ApiResponse,
    RunCallbacks,
    RunConfig,
    StreamEvent,
    TitleResult,
    ToolErrorInfo,
)
from parley.api.tools import ToolDispatcher
from parley.config import Settings
from parley.errors import StreamAbort
from parley.events import AbortSignal
from parley.pipeline.prompts import TITLE_PROMPT
from parley.protocols import Tokenizer
from parley.schemas import AgentSpec, ContentPart, ContentType, ToolCall, UsageRecord
from parley.utils import build_anthropic_headers

logger = logging.getLogger(__name__)

# Model parameters forwarded verbatim into the request body
_PASSTHROUGH_PARAMS = frozenset({"temperature", "top_p", "top_k", "thinking", "stop_sequences", "max_tokens"})

_HANDOFF_PROMPT = (
    "The response above came from {previous}. You are {current}. "
    "Continue from it and address the user's latest request."
)

_TITLE_MAX_TOKENS = 64

_RETRYABLE_STATUS = frozenset({429, 500, 529})
_RETRY_AFTER_CAP = 30.0
_SSE_DATA = "data: "


def _error_event(data: dict[str, Any]) -> StreamEvent:
    err = data.get("error") or {}
    return StreamEvent(type="error", text=f"{err.get('type', 'unknown')}: {err.get('message', '')}")


def _start_event(data: dict[str, Any]) -> StreamEvent:
    message = data.get("message") or {}
    return StreamEvent(type="message_start", usage=message.get("usage") or {}, model=message.get("model") or "")


def _block_start_event(data: dict[str, Any]) -> StreamEvent:
    block = data.get("content_block") or {}
    index = data.get("index", 0)
    kind = block.get("type")
    if kind == "tool_use":
        return StreamEvent(type="tool_start", tool_name=block.get("name", ""), tool_id=block.get("id", ""), block_index=index)
    return StreamEvent(type=f"{'thinking' if kind == 'thinking' else 'text'}_block_start", block_index=index)


# delta type -> (event type, payload key)
_DELTA_KINDS = {
    "text_delta": ("text_delta", "text"),
    "thinking_delta": ("thinking_delta", "thinking"),
    "input_json_delta": ("tool_input_delta", "partial_json"),
}


def _delta_event(data: dict[str, Any]) -> StreamEvent | None:
    delta = data.get("delta") or {}
    kind = _DELTA_KINDS.get(delta.get("type"))
    if kind is None:
        # signature_delta and friends carry nothing we render
        return None
    event_type, key = kind
    return StreamEvent(type=event_type, text=delta.get(key, ""), block_index=data.get("index", 0))


def _message_delta_event(data: dict[str, Any]) -> StreamEvent:
    return StreamEvent(
        type="done",
        stop_reason=(data.get("delta") or {}).get("stop_reason") or "",
        usage=data.get("usage") or {},
    )


_SSE_PARSERS: dict[str, Callable[[dict[str, Any]], StreamEvent | None]] = {
    "error": _error_event,
    "message_start": _start_event,
    "content_block_start": _block_start_event,
    "content_block_delta": _delta_event,
    "content_block_stop": lambda data: StreamEvent(type="block_stop", block_index=data.get("index", 0)),
    "message_delta": _message_delta_event,
    "message_stop": lambda data: StreamEvent(type="message_stop"),
}


def _parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Map one decoded SSE ``data:`` payload to a StreamEvent.

    Returns None for pings and anything unrecognized. Input and cache
    usage arrive in message_start, stop_reason and the final output
    count in message_delta. An error body inside a 200 stream becomes
    an ``error`` event.
    """
    parser = _SSE_PARSERS.get(data.get("type"))
    return parser(data) if parser else None


def _retry_delay(response: httpx.Response) -> float:
    try:
        delay = float(response.headers.get("retry-after", "1"))
    except ValueError:
        delay = 1.0
    return min(max(delay, 0.0), _RETRY_AFTER_CAP)


def _error_detail(response: httpx.Response) -> tuple[str, str]:
    """(type, message) from an Anthropic error body, or the raw text."""
    try:
        error = response.json().get("error") or {}
        return error.get("type", "unknown"), error.get("message", "unknown error")
    except (ValueError, AttributeError):
        return "http_error", f"HTTP {response.status_code}: {response.text[:500]}"


def usage_record_from(usage: dict[str, Any] | None, model: str | None, agent_id: str | None = None) -> UsageRecord:
    usage = usage or {}
    return UsageRecord(
        input_tokens=int(usage.get("input_tokens") or 0),
        output_tokens=int(usage.get("output_tokens") or 0),
        cache_creation=int(usage.get("cache_creation_input_tokens") or 0),
        cache_read=int(usage.get("cache_read_input_tokens") or 0),
        model=model,
        agent_id=agent_id,
    )


@dataclass
class _PendingTool:
    """A tool_use block whose JSON input is still streaming in."""

    id: str
    name: str
    chunks: list[str] = field(default_factory=list)

    def finish(self) -> dict[str, Any]:
        raw = "".join(self.chunks)
        try:
            args = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            logger.warning("Malformed input JSON for tool %s, using empty args", self.name)
            args = {}
        return {"id": self.id, "name": self.name, "input": args}


@dataclass
class _Segment:
    """Everything one streamed API call produced."""

    text: str = ""
    thinking: str = ""
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    stop_reason: str = ""
    usage: UsageRecord | None = None


class RunGraph:
    """Attribution and context accounting for one run."""

    def __init__(self) -> None:
        self._part_agents: dict[int, str] = {}
        self._breakdown: dict[str, Any] | None = None

    def record_part(self, index: int, agent_id: str) -> None:
        self._part_agents[index] = agent_id

    def set_context_breakdown(self, breakdown: dict[str, Any]) -> None:
        self._breakdown = breakdown

    def get_content_part_agent_map(self) -> dict[int, str] | None:
        return dict(self._part_agents) or None

    def get_context_breakdown(self) -> dict[str, Any] | None:
        return self._breakdown


class AnthropicRun:
    """A chain of agents bound to one turn."""

    def __init__(
        self,
        engine: "AnthropicRunEngine",
        agents: list[AgentSpec],
        token_counter: Tokenizer,
        signal: AbortSignal | None,
        request_body: dict[str, Any],
        system_content: str = "",
        turn_context: str = "",
    ) -> None:
        self._engine = engine
        self._agents = agents
        self._counter = token_counter
        self._signal = signal
        self._request_body = request_body
        self._system_content = system_content
        self._turn_context = turn_context
        self.graph = RunGraph()
        self._part_index = 0

    @property
    def agents(self) -> list[AgentSpec]:
        return list(self._agents)

    def _check_abort(self) -> None:
        if self._signal is not None and self._signal.aborted:
            raise StreamAbort(self._signal.reason or "aborted")

    def _system_blocks(self, agent: AgentSpec, position: int) -> list[dict[str, Any]]:
        if position == 0:
            stable = self._system_content
        else:
            stable = "\n".join(s for s in (agent.instructions, agent.additional_instructions) if s)
        blocks: list[dict[str, Any]] = []
        if stable:
            blocks.append({"type": "text", "text": stable, "cache_control": {"type": "ephemeral"}})
        if self._turn_context:
            blocks.append({"type": "text", "text": self._turn_context})
        return blocks

    def _record_breakdown(self, messages: list[dict[str, Any]]) -> None:
        count = self._counter.get_token_count
        tools = self._engine.tool_definitions(self._agents[0])
        self.graph.set_context_breakdown(
            {
                "system": count(self._system_content),
                "turn_context": count(self._turn_context),
                "messages": sum(count(json.dumps(m.get("content", ""), default=str)) for m in messages),
                "tools": count(json.dumps(tools)) if tools else 0,
                "agents": len(self._agents),
            }
        )

    async def _emit(self, callbacks: RunCallbacks, part: ContentPart, agent: AgentSpec) -> None:
        index = self._part_index
        self._part_index += 1
        self.graph.record_part(index, agent.id)
        await callbacks.on_content_part(index, part, agent.id)

    async def process_stream(
        self,
        messages: list[dict[str, Any]],
        config: RunConfig,
        callbacks: RunCallbacks,
    ) -> None:
        """Run every agent in order. Raises StreamAbort on cancellation."""
        self._record_breakdown(messages)
        handoff: list[dict[str, Any]] = []
        calls = 0

        for position, agent in enumerate(self._agents):
            agent_messages = [*messages, *handoff]
            system_blocks = self._system_blocks(agent, position)
            tools = self._engine.tool_definitions(agent)
            final_text = ""

            while True:
                if calls >= config.recursion_limit:
                    logger.warning(
                        "Recursion limit %d reached in thread %s", config.recursion_limit, config.thread_id
                    )
                    return
                calls += 1
                self._check_abort()

                payload = self._engine.build_api_payload(
                    model=agent.model,
                    system=system_blocks,
                    messages=agent_messages,
                    tools=tools or None,
                    stream=True,
                    model_parameters=agent.model_parameters,
                )
                segment = await self._stream_once(payload, agent, callbacks)
                if segment.usage is not None:
                    callbacks.record_usage(segment.usage)

                if segment.thinking:
                    await self._emit(callbacks, ContentPart(type=ContentType.THINK, think=segment.thinking), agent)
                if segment.text:
                    await self._emit(callbacks, ContentPart.text_part(segment.text), agent)
                    final_text = segment.text

                if segment.stop_reason != "tool_use" or not segment.tool_calls:
                    break

                agent_messages = [
                    *agent_messages,
                    {"role": "assistant", "content": self._assistant_blocks(segment)},
                    {"role": "user", "content": await self._run_tools(segment, agent, callbacks)},
                ]

            if position + 1 < len(self._agents) and final_text:
                handoff = [
                    *handoff,
                    {"role": "assistant", "content": f"[{agent.display_name}]\n{final_text}"},
                    {
                        "role": "user",
                        "content": _HANDOFF_PROMPT.format(
                            previous=agent.display_name,
                            current=self._agents[position + 1].display_name,
                        ),
                    },
                ]

    @staticmethod
    def _assistant_blocks(segment: _Segment) -> list[dict[str, Any]]:
        blocks: list[dict[str, Any]] = []
        if segment.text:
            blocks.append({"type": "text", "text": segment.text})
        for tc in segment.tool_calls:
            blocks.append({"type": "tool_use", "id": tc["id"], "name": tc["name"], "input": tc["input"]})
        return blocks

    async def _run_tools(
        self, segment: _Segment, agent: AgentSpec, callbacks: RunCallbacks
    ) -> list[dict[str, Any]]:
        """Execute tool calls; all results go back in a single user message."""
        results: list[dict[str, Any]] = []
        for tc in segment.tool_calls:
            self._check_abort()
            try:
                result_text, is_error = await self._engine.dispatcher.dispatch(tc["name"], tc["input"])
            except Exception as e:
                result_text, is_error = str(e), True
            if is_error:
                await callbacks.on_tool_error(
                    ToolErrorInfo(tool_id=tc["id"], tool_name=tc["name"], error=result_text, agent_id=agent.id)
                )
            results.append(
                {
                    "type": "tool_result",
                    "tool_use_id": tc["id"],
                    "content": result_text,
                    "is_error": is_error,
                }
            )
            part = ContentPart(
                type=ContentType.TOOL_CALL,
                tool_call=ToolCall(id=tc["id"], name=tc["name"], args=tc["input"], output=result_text),
            )
            await self._emit(callbacks, part, agent)
        return results

    async def _next_event(self, stream: AsyncGenerator[StreamEvent, None]) -> StreamEvent | None:
        """Next event, or None when the stream ends.

        The read races the abort signal, so a stalled connection is
        abandoned as soon as the turn is cancelled.
        """
        if self._signal is None:
            return await anext(stream, None)
        self._check_abort()
        read = asyncio.ensure_future(anext(stream, None))
        aborted = asyncio.ensure_future(self._signal.wait())
        try:
            await asyncio.wait({read, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            aborted.cancel()
            if not read.done():
                read.cancel()
                await asyncio.gather(read, return_exceptions=True)
        self._check_abort()
        return read.result()

    async def _stream_once(
        self, payload: dict[str, Any], agent: AgentSpec, callbacks: RunCallbacks
    ) -> _Segment:
        segment = _Segment()
        text: list[str] = []
        thinking: list[str] = []
        open_tools: dict[int, _PendingTool] = {}
        usage: dict[str, Any] = {}
        model = agent.model

        async with contextlib.aclosing(self._engine.stream_api(payload)) as stream:
            while (event := await self._next_event(stream)) is not None:
                kind = event.type
                if kind == "error":
                    raise RuntimeError(f"Anthropic stream error: {event.text}")
                if kind == "message_start":
                    usage.update(event.usage or {})
                    model = event.model or model
                elif kind == "text_delta":
                    text.append(event.text)
                    await callbacks.on_delta(event.text, agent.id)
                elif kind == "thinking_delta":
                    thinking.append(event.text)
                elif kind == "tool_start":
                    open_tools[event.block_index] = _PendingTool(event.tool_id, event.tool_name)
                elif kind == "tool_input_delta" and event.block_index in open_tools:
                    open_tools[event.block_index].chunks.append(event.text)
                elif kind == "block_stop" and event.block_index in open_tools:
                    segment.tool_calls.append(open_tools.pop(event.block_index).finish())
                elif kind == "done":
                    segment.stop_reason = event.stop_reason
                    # message_delta carries the cumulative output count
                    if event.usage and "output_tokens" in event.usage:
                        usage["output_tokens"] = event.usage["output_tokens"]

        segment.text = "".join(text)
        segment.thinking = "".join(thinking)
        segment.usage = usage_record_from(usage, model, agent.id) if usage else None
        return segment

    async def generate_title(
        self,
        *,
        provider: str,
        model: str,
        input_text: str,
        content_parts: list[Any],
        client_options: dict[str, Any],
        title_method: str = "completion",
        title_prompt: str | None = None,
        signal: AbortSignal | None = None,
    ) -> TitleResult:
        if signal is not None and signal.aborted:
            raise StreamAbort(signal.reason or "aborted")

        response_text = "\n".join(
            p.text for p in content_parts if isinstance(p, ContentPart) and p.type == ContentType.TEXT and p.text
        )
        wants_json = bool(client_options.get("json")) or title_method in ("functions", "structured")
        instruction = title_prompt or TITLE_PROMPT
        if wants_json:
            instruction += ' Respond with JSON only: {"title": "<title>"}'
        prompt = f"{instruction}\n\nUser: {input_text}\n\nAssistant: {response_text[:2000]}"

        response = await self._engine.call_api(
            system_prompt="",
            messages=[{"role": "user", "content": prompt}],
            model_override=model,
            max_tokens=_TITLE_MAX_TOKENS,
            base_url=client_options.get("base_url"),
            extra={k: v for k, v in client_options.items() if k in _PASSTHROUGH_PARAMS},
        )
        text = "".join(b.get("text", "") for b in response.content if b.get("type") == "text").strip()
        if wants_json:
            try:
                text = str(json.loads(text).get("title", text))
            except (json.JSONDecodeError, AttributeError):
                logger.debug("Title response was not JSON, using raw text")
        usage = [usage_record_from(response.usage, response.model or model)] if response.usage else []
        return TitleResult(title=text, usage=usage)


class AnthropicRunEngine:
    """Creates runs and owns the shared httpx client."""

    def __init__(
        self,
        settings: Settings,
        dispatcher: ToolDispatcher | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self.dispatcher = dispatcher or ToolDispatcher()
        self._http = http_client

    async def start(self) -> None:
        """Open the shared httpx client."""
        settings = self._settings
        if not settings.anthropic_api_key and not settings.anthropic_auth_token:
            logger.warning("No ANTHROPIC_API_KEY or ANTHROPIC_AUTH_TOKEN configured, API calls will fail")
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=build_anthropic_headers(settings.anthropic_api_key, settings.anthropic_auth_token),
            timeout=httpx.Timeout(
                connect=settings.api_timeout_connect,
                read=settings.api_timeout_read,
                write=10.0,
                pool=10.0,
            ),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
        logger.info("Run engine connected to %s", settings.api_base_url)

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def _require_http(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError("Run engine not started")
        return self._http

    async def create_run(
        self,
        agents: list[AgentSpec],
        token_counter: Tokenizer,
        signal: AbortSignal | None,
        request_body: dict[str, Any],
        *,
        system_content: str = "",
        turn_context: str = "",
    ) -> AnthropicRun | None:
        if not agents:
            logger.error("create_run called without agents")
            return None
        if self._http is None:
            logger.error("create_run called before the engine was started")
            return None
        return AnthropicRun(
            self,
            agents,
            token_counter,
            signal,
            request_body,
            system_content=system_content,
            turn_context=turn_context,
        )

    def tool_definitions(self, agent: AgentSpec) -> list[dict[str, Any]]:
        if not agent.tools:
            return []
        return self.dispatcher.tool_definitions(agent.tools)

    # ------------------------------------------------------------------
    # API call
    # ------------------------------------------------------------------

    def build_api_payload(
        self,
        *,
        model: str | None,
        system: list[dict[str, Any]] | str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        stream: bool = False,
        max_tokens: int | None = None,
        model_parameters: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Build Anthropic Messages API request payload.

        Shared by call_api and stream_api to avoid divergence.
        """
        payload: dict[str, Any] = {
            "model": model or self._settings.model,
            "max_tokens": max_tokens or self._settings.max_tokens,
            "messages": messages,
        }
        if isinstance(system, str):
            if system:
                payload["system"] = system
        elif system:
            payload["system"] = system
        for key, value in (model_parameters or {}).items():
            if key in _PASSTHROUGH_PARAMS and value is not None:
                payload[key] = value
        if tools:
            payload["tools"] = tools
        if stream:
            payload["stream"] = True
        return payload

    async def call_api(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model_override: str | None = None,
        max_tokens: int | None = None,
        base_url: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> ApiResponse:
        """Non-streaming Messages API call used for titles and summaries.

        429, 500 and 529 responses (and timeouts) are retried once,
        honouring retry-after up to _RETRY_AFTER_CAP seconds. Anything
        else raises RuntimeError.
        """
        http = self._require_http()
        payload = self.build_api_payload(
            model=model_override,
            system=system_prompt,
            messages=messages,
            tools=tools,
            max_tokens=max_tokens,
            model_parameters=extra,
        )
        url = f"{base_url.rstrip('/')}/v1/messages" if base_url else "/v1/messages"

        for attempt in (1, 2):
            final = attempt == 2
            try:
                response = await http.post(url, json=payload)
            except httpx.TimeoutException as e:
                if final:
                    raise RuntimeError(f"API request timed out: {e}") from e
                logger.warning("API timeout, retrying: %s", e)
                await asyncio.sleep(1)
                continue
            except httpx.HTTPError as e:
                raise RuntimeError(f"HTTP error: {e}") from e

            if response.status_code == 200:
                data = response.json()
                return ApiResponse(
                    content=data["content"],
                    stop_reason=data.get("stop_reason", ""),
                    usage=data.get("usage"),
                    model=data.get("model"),
                )

            error_type, error_msg = _error_detail(response)
            if response.status_code in _RETRYABLE_STATUS and not final:
                delay = _retry_delay(response)
                logger.warning(
                    "API error %d (%s), retrying in %.1fs: %s",
                    response.status_code,
                    error_type,
                    delay,
                    error_msg,
                )
                await asyncio.sleep(delay)
                continue
            raise RuntimeError(f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}")

        raise RuntimeError("API call failed with unknown error")

    async def stream_api(self, payload: dict[str, Any]) -> AsyncGenerator[StreamEvent, None]:
        """Stream a Messages API call, yielding parsed events.

        A 429, 500 or 529 before any event arrives is retried once, like
        call_api. Any other non-200 status or an in-stream error yields one
        error event and ends the stream. Closing the generator early closes
        the response.
        """
        http = self._require_http()
        for attempt in (1, 2):
            async with http.stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code == 200:
                    async for line in response.aiter_lines():
                        if not line.startswith(_SSE_DATA):
                            continue
                        event = _parse_sse_event(json.loads(line[len(_SSE_DATA):]))
                        if event is None:
                            continue
                        yield event
                        if event.type == "error":
                            return
                    return

                await response.aread()
                error_type, error_msg = _error_detail(response)
                if response.status_code not in _RETRYABLE_STATUS or attempt == 2:
                    yield StreamEvent(type="error", text=f"{error_type}: {error_msg}")
                    return
                delay = _retry_delay(response)
                logger.warning(
                    "Stream error %d (%s), retrying in %.1fs: %s",
                    response.status_code,
                    error_type,
                    delay,
                    error_msg,
                )
            await asyncio.sleep(delay)
