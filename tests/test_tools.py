"""Tests for the tool dispatcher."""

from parley.api.tools import ToolDispatcher
from parley.schemas import ToolSpec


async def _echo(text: str) -> dict:
    return {"content": [{"type": "text", "text": f"echo: {text}"}]}


async def _broken(**kwargs) -> dict:
    raise ValueError("backend unavailable")


def _dispatcher() -> ToolDispatcher:
    dispatcher = ToolDispatcher()
    dispatcher.register(
        "echo",
        _echo,
        {"type": "object", "description": "Echo text back", "properties": {"text": {"type": "string"}}},
    )
    dispatcher.register("broken", _broken, {"type": "object"})
    return dispatcher


async def test_dispatch_success():
    assert await _dispatcher().dispatch("echo", {"text": "hi"}) == ("echo: hi", False)


async def test_dispatch_unknown_tool():
    assert await _dispatcher().dispatch("nope", {}) == ("Unknown tool: nope", True)


async def test_dispatch_handler_error():
    text, is_error = await _dispatcher().dispatch("broken", {})
    assert is_error
    assert text == "Tool error: backend unavailable"


async def test_dispatch_bad_arguments():
    text, is_error = await _dispatcher().dispatch("echo", {"wrong": 1})
    assert is_error
    assert text.startswith("Tool error:")


def test_has():
    dispatcher = _dispatcher()
    assert dispatcher.has("echo")
    assert not dispatcher.has("nope")


def test_registered_definitions():
    definitions = _dispatcher().tool_definitions()
    assert [d["name"] for d in definitions] == ["echo", "broken"]
    assert definitions[0]["description"] == "Echo text back"
    assert definitions[0]["input_schema"]["properties"]["text"] == {"type": "string"}


def test_agent_definitions_prefer_declared_spec():
    specs = [
        ToolSpec(name="echo"),
        ToolSpec(name="remote_mcp_docs", description="Search docs", input_schema={"type": "object", "required": ["q"]}),
    ]
    definitions = _dispatcher().tool_definitions(specs)
    assert definitions[0] == {
        "name": "echo",
        "description": "Echo text back",
        "input_schema": {"type": "object", "properties": {}},
    }
    assert definitions[1]["description"] == "Search docs"
    assert definitions[1]["input_schema"] == {"type": "object", "required": ["q"]}
