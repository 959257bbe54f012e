"""Tests for the Anthropic run engine: SSE parsing, tool loop, chains, retries."""

import asyncio
import json

import httpx
import pytest

from parley.api.engine import AnthropicRunEngine, _parse_sse_event, usage_record_from
from parley.api.models import RunCallbacks, RunConfig
from parley.api.tools import ToolDispatcher
from parley.errors import StreamAbort
from parley.events import AbortController
from parley.schemas import AgentSpec, ContentPart, ContentType, ToolSpec

BASE_URL = "https://api.test"


# ---------------------------------------------------------------------------
# SSE helpers
# ---------------------------------------------------------------------------


def _sse(events: list[dict]) -> bytes:
    return "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events).encode()


def _text_stream(text: str, input_tokens: int = 10, output_tokens: int = 5, **usage) -> bytes:
    return _sse(
        [
            {"type": "message_start", "message": {"model": "claude-test", "usage": {"input_tokens": input_tokens, "output_tokens": 1, **usage}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "ping"},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}},
            {"type": "content_block_stop", "index": 0},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": output_tokens}},
            {"type": "message_stop"},
        ]
    )


def _tool_stream(tool_id: str, name: str, args_json: str) -> bytes:
    half = len(args_json) // 2
    return _sse(
        [
            {"type": "message_start", "message": {"model": "claude-test", "usage": {"input_tokens": 20, "output_tokens": 1}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "tool_use", "id": tool_id, "name": name, "input": {}}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": args_json[:half]}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": args_json[half:]}},
            {"type": "content_block_stop", "index": 0},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 12}},
            {"type": "message_stop"},
        ]
    )


class ScriptedTransport:
    """Serves queued responses in order and records request bodies."""

    def __init__(self, responses: list[httpx.Response]) -> None:
        self.responses = list(responses)
        self.requests: list[dict] = []
        self.urls: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        self.urls.append(str(request.url))
        return self.responses.pop(0)


def _engine(settings, transport: ScriptedTransport, dispatcher: ToolDispatcher | None = None) -> AnthropicRunEngine:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(transport))
    return AnthropicRunEngine(settings, dispatcher, http_client=client)


class Collector:
    def __init__(self) -> None:
        self.parts: list[tuple[int, ContentPart, str | None]] = []
        self.deltas: list[str] = []
        self.tool_errors: list = []
        self.usage: list = []

    async def on_content_part(self, index, part, agent_id):
        self.parts.append((index, part, agent_id))

    async def on_delta(self, text, agent_id):
        self.deltas.append(text)

    async def on_tool_error(self, info):
        self.tool_errors.append(info)

    def callbacks(self) -> RunCallbacks:
        return RunCallbacks(
            on_content_part=self.on_content_part,
            on_delta=self.on_delta,
            on_tool_error=self.on_tool_error,
            on_usage=self.usage.append,
        )


def _config(recursion_limit: int = 25, signal=None) -> RunConfig:
    return RunConfig(thread_id="conv-1", user_id="user-1", recursion_limit=recursion_limit, signal=signal)


USER_MESSAGES = [{"role": "user", "content": "hi"}]


# ---------------------------------------------------------------------------
# SSE parsing
# ---------------------------------------------------------------------------


def test_parse_ping_and_unknown():
    assert _parse_sse_event({"type": "ping"}) is None
    assert _parse_sse_event({"type": "mystery"}) is None


def test_parse_error_event():
    event = _parse_sse_event({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
    assert event.type == "error"
    assert event.text == "overloaded_error: Overloaded"


def test_parse_deltas():
    text = _parse_sse_event({"type": "content_block_delta", "index": 2, "delta": {"type": "text_delta", "text": "hi"}})
    assert (text.type, text.text, text.block_index) == ("text_delta", "hi", 2)
    thinking = _parse_sse_event({"type": "content_block_delta", "delta": {"type": "thinking_delta", "thinking": "hmm"}})
    assert (thinking.type, thinking.text) == ("thinking_delta", "hmm")
    assert _parse_sse_event({"type": "content_block_delta", "delta": {"type": "signature_delta"}}) is None


def test_parse_message_delta():
    event = _parse_sse_event({"type": "message_delta", "delta": {"stop_reason": "max_tokens"}, "usage": {"output_tokens": 9}})
    assert event.type == "done"
    assert event.stop_reason == "max_tokens"
    assert event.usage == {"output_tokens": 9}


def test_usage_record_from_maps_cache_fields():
    record = usage_record_from(
        {"input_tokens": 5, "output_tokens": 2, "cache_creation_input_tokens": 100, "cache_read_input_tokens": 40},
        "claude-test",
        "agent-primary",
    )
    assert (record.input_tokens, record.output_tokens, record.cache_creation, record.cache_read) == (5, 2, 100, 40)
    assert record.agent_id == "agent-primary"
    assert usage_record_from(None, None).input_tokens == 0


# ---------------------------------------------------------------------------
# create_run and payload
# ---------------------------------------------------------------------------


async def test_create_run_requires_client_and_agents(settings, counter, primary_agent):
    engine = AnthropicRunEngine(settings)
    assert await engine.create_run([primary_agent], counter, None, {}) is None
    engine = _engine(settings, ScriptedTransport([]))
    assert await engine.create_run([], counter, None, {}) is None
    assert await engine.create_run([primary_agent], counter, None, {}) is not None


def test_build_api_payload_filters_params(settings):
    engine = AnthropicRunEngine(settings)
    payload = engine.build_api_payload(
        model=None,
        system="",
        messages=USER_MESSAGES,
        stream=True,
        model_parameters={"temperature": 0.3, "top_k": None, "foo": 1},
    )
    assert payload == {
        "model": settings.model,
        "max_tokens": settings.max_tokens,
        "messages": USER_MESSAGES,
        "temperature": 0.3,
        "stream": True,
    }


# ---------------------------------------------------------------------------
# Streaming runs
# ---------------------------------------------------------------------------


async def test_single_agent_stream(settings, counter, primary_agent):
    transport = ScriptedTransport(
        [httpx.Response(200, content=_text_stream("Hello!", input_tokens=10, output_tokens=5, cache_read_input_tokens=4))]
    )
    engine = _engine(settings, transport)
    run = await engine.create_run([primary_agent], counter, None, {}, system_content="SYSTEM", turn_context="TURN")
    collector = Collector()

    await run.process_stream(USER_MESSAGES, _config(), collector.callbacks())

    assert collector.deltas == ["Hello!"]
    [(index, part, agent_id)] = collector.parts
    assert (index, part.text, agent_id) == (0, "Hello!", "agent-primary")
    [usage] = collector.usage
    assert (usage.input_tokens, usage.output_tokens, usage.cache_read) == (10, 5, 4)
    assert usage.model == "claude-test"

    request = transport.requests[0]
    assert request["stream"] is True
    assert request["system"] == [
        {"type": "text", "text": "SYSTEM", "cache_control": {"type": "ephemeral"}},
        {"type": "text", "text": "TURN"},
    ]
    assert run.graph.get_content_part_agent_map() == {0: "agent-primary"}
    assert run.graph.get_context_breakdown()["agents"] == 1


async def test_tool_loop(settings, counter):
    calls = []

    async def calc(expr):
        calls.append(expr)
        return {"content": [{"type": "text", "text": "4"}]}

    dispatcher = ToolDispatcher()
    dispatcher.register("calc", calc, {"type": "object", "description": "Evaluate math"})
    transport = ScriptedTransport(
        [
            httpx.Response(200, content=_tool_stream("toolu_1", "calc", '{"expr": "2+2"}')),
            httpx.Response(200, content=_text_stream("The answer is 4")),
        ]
    )
    agent = AgentSpec(id="math", model="claude-test", tools=[ToolSpec(name="calc")])
    engine = _engine(settings, transport, dispatcher)
    run = await engine.create_run([agent], counter, None, {})
    collector = Collector()

    await run.process_stream(USER_MESSAGES, _config(), collector.callbacks())

    assert calls == ["2+2"]
    types = [part.type for _, part, _ in collector.parts]
    assert types == [ContentType.TOOL_CALL, ContentType.TEXT]
    tool_part = collector.parts[0][1]
    assert tool_part.tool_call.output == "4"
    assert tool_part.tool_call.args == {"expr": "2+2"}
    assert len(collector.usage) == 2

    assert transport.requests[0]["tools"][0]["name"] == "calc"
    assert transport.requests[0]["tools"][0]["description"] == "Evaluate math"
    followup = transport.requests[1]["messages"]
    assert followup[1]["content"] == [{"type": "tool_use", "id": "toolu_1", "name": "calc", "input": {"expr": "2+2"}}]
    assert followup[2]["content"] == [
        {"type": "tool_result", "tool_use_id": "toolu_1", "content": "4", "is_error": False}
    ]


async def test_unknown_tool_reports_error(settings, counter):
    transport = ScriptedTransport(
        [
            httpx.Response(200, content=_tool_stream("toolu_9", "missing", "{}")),
            httpx.Response(200, content=_text_stream("Sorry")),
        ]
    )
    agent = AgentSpec(id="a", model="claude-test", tools=[ToolSpec(name="missing")])
    run = await _engine(settings, transport).create_run([agent], counter, None, {})
    collector = Collector()

    await run.process_stream(USER_MESSAGES, _config(), collector.callbacks())

    [info] = collector.tool_errors
    assert (info.tool_id, info.tool_name, info.error) == ("toolu_9", "missing", "Unknown tool: missing")
    assert collector.parts[0][1].tool_call.output == "Unknown tool: missing"


async def test_recursion_limit_counts_api_calls(settings, counter):
    async def calc(expr):
        return {"content": [{"type": "text", "text": "4"}]}

    dispatcher = ToolDispatcher()
    dispatcher.register("calc", calc, {"type": "object"})
    transport = ScriptedTransport([httpx.Response(200, content=_tool_stream("toolu_1", "calc", '{"expr": "1"}'))])
    agent = AgentSpec(id="a", model="claude-test", tools=[ToolSpec(name="calc")])
    run = await _engine(settings, transport, dispatcher).create_run([agent], counter, None, {})

    await run.process_stream(USER_MESSAGES, _config(recursion_limit=1), Collector().callbacks())

    assert len(transport.requests) == 1


async def test_chain_hands_off_to_next_agent(settings, counter, primary_agent, helper_agent):
    transport = ScriptedTransport(
        [
            httpx.Response(200, content=_text_stream("Draft answer")),
            httpx.Response(200, content=_text_stream("Verified answer")),
        ]
    )
    run = await _engine(settings, transport).create_run(
        [primary_agent, helper_agent], counter, None, {}, system_content="SYSTEM"
    )
    collector = Collector()

    await run.process_stream(USER_MESSAGES, _config(), collector.callbacks())

    assert [(p.text, a) for _, p, a in collector.parts] == [
        ("Draft answer", "agent-primary"),
        ("Verified answer", "agent-helper"),
    ]
    second = transport.requests[1]
    assert second["model"] == helper_agent.model
    assert second["system"][0]["text"] == "Check the facts."
    assert second["messages"][1] == {"role": "assistant", "content": "[Primary]\nDraft answer"}
    assert "You are Helper." in second["messages"][2]["content"]
    assert run.graph.get_content_part_agent_map() == {0: "agent-primary", 1: "agent-helper"}


async def test_abort_raises_stream_abort(settings, counter, primary_agent):
    controller = AbortController()
    controller.abort("user cancelled")
    transport = ScriptedTransport([])
    run = await _engine(settings, transport).create_run([primary_agent], counter, controller.signal, {})

    with pytest.raises(StreamAbort):
        await run.process_stream(USER_MESSAGES, _config(signal=controller.signal), Collector().callbacks())
    assert transport.requests == []


class StalledStream(httpx.AsyncByteStream):
    """Sends message_start, then goes quiet without closing."""

    def __init__(self) -> None:
        self.closed = False

    async def __aiter__(self):
        yield _sse([{"type": "message_start", "message": {"model": "claude-test", "usage": {"input_tokens": 3}}}])
        await asyncio.sleep(30)

    async def aclose(self) -> None:
        self.closed = True


async def test_abort_interrupts_stalled_stream(settings, counter, primary_agent):
    stream = StalledStream()
    transport = ScriptedTransport([httpx.Response(200, stream=stream)])
    controller = AbortController()
    run = await _engine(settings, transport).create_run([primary_agent], counter, controller.signal, {})

    task = asyncio.create_task(
        run.process_stream(USER_MESSAGES, _config(signal=controller.signal), Collector().callbacks())
    )
    await asyncio.sleep(0.1)
    controller.abort("user cancelled")

    with pytest.raises(StreamAbort):
        await asyncio.wait_for(task, 2)
    assert stream.closed


async def test_http_error_raises(settings, counter, primary_agent):
    transport = ScriptedTransport(
        [httpx.Response(400, json={"error": {"type": "invalid_request_error", "message": "bad"}})]
    )
    run = await _engine(settings, transport).create_run([primary_agent], counter, None, {})
    with pytest.raises(RuntimeError, match="invalid_request_error: bad"):
        await run.process_stream(USER_MESSAGES, _config(), Collector().callbacks())
    assert len(transport.requests) == 1


async def test_stream_retries_overloaded_once(settings, counter, primary_agent):
    transport = ScriptedTransport(
        [
            httpx.Response(529, headers={"retry-after": "0"}, json={"error": {"type": "overloaded_error", "message": "Overloaded"}}),
            httpx.Response(200, content=_text_stream("Recovered")),
        ]
    )
    run = await _engine(settings, transport).create_run([primary_agent], counter, None, {})
    collector = Collector()

    await run.process_stream(USER_MESSAGES, _config(), collector.callbacks())

    assert collector.deltas == ["Recovered"]
    assert len(transport.requests) == 2


async def test_stream_gives_up_after_second_overload(settings, counter, primary_agent):
    overloaded = {"error": {"type": "overloaded_error", "message": "Overloaded"}}
    transport = ScriptedTransport(
        [
            httpx.Response(529, headers={"retry-after": "0"}, json=overloaded),
            httpx.Response(529, headers={"retry-after": "0"}, json=overloaded),
        ]
    )
    run = await _engine(settings, transport).create_run([primary_agent], counter, None, {})
    with pytest.raises(RuntimeError, match="overloaded_error"):
        await run.process_stream(USER_MESSAGES, _config(), Collector().callbacks())
    assert len(transport.requests) == 2


# ---------------------------------------------------------------------------
# call_api and titles
# ---------------------------------------------------------------------------


def _message_response(text: str, status: int = 200, **headers) -> httpx.Response:
    return httpx.Response(
        status,
        headers=headers,
        json={
            "content": [{"type": "text", "text": text}],
            "stop_reason": "end_turn",
            "usage": {"input_tokens": 30, "output_tokens": 4},
            "model": "claude-test",
        },
    )


async def test_call_api_retries_once(settings):
    transport = ScriptedTransport(
        [
            httpx.Response(429, headers={"retry-after": "0"}, json={"error": {"type": "rate_limit_error", "message": "slow down"}}),
            _message_response("ok"),
        ]
    )
    response = await _engine(settings, transport).call_api("sys", USER_MESSAGES)
    assert response.content == [{"type": "text", "text": "ok"}]
    assert len(transport.requests) == 2


async def test_call_api_gives_up_on_client_error(settings):
    transport = ScriptedTransport(
        [httpx.Response(400, json={"error": {"type": "invalid_request_error", "message": "bad"}})]
    )
    with pytest.raises(RuntimeError, match="invalid_request_error - bad"):
        await _engine(settings, transport).call_api("sys", USER_MESSAGES)
    assert len(transport.requests) == 1


async def test_call_api_without_client(settings):
    with pytest.raises(RuntimeError, match="not started"):
        await AnthropicRunEngine(settings).call_api("sys", USER_MESSAGES)


async def test_generate_title_json_mode(settings, counter, primary_agent):
    transport = ScriptedTransport([_message_response('{"title": "Bread Basics"}')])
    run = await _engine(settings, transport).create_run([primary_agent], counter, None, {})

    result = await run.generate_title(
        provider="google",
        model="gemini-flash",
        input_text="How do I bake bread?",
        content_parts=[ContentPart.text_part("Mix flour and water.")],
        client_options={"json": True, "base_url": "https://gemini.example/", "temperature": 0.1},
    )

    assert result.title == "Bread Basics"
    assert result.usage[0].input_tokens == 30
    assert transport.urls == ["https://gemini.example/v1/messages"]
    request = transport.requests[0]
    assert request["model"] == "gemini-flash"
    assert request["temperature"] == 0.1
    assert "Mix flour and water." in request["messages"][0]["content"]


async def test_generate_title_plain_text(settings, counter, primary_agent):
    transport = ScriptedTransport([_message_response("Bread Basics")])
    run = await _engine(settings, transport).create_run([primary_agent], counter, None, {})
    result = await run.generate_title(
        provider="anthropic", model="claude-test", input_text="hi", content_parts=[], client_options={}
    )
    assert result.title == "Bread Basics"
    assert transport.urls == [f"{BASE_URL}/v1/messages"]
