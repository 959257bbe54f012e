"""Tests for static prompt blocks and small helpers."""

from datetime import UTC, datetime

from parley.config import BrandingConfig
from parley.pipeline import prompts
from parley.schemas import UserContext
from parley.utils import build_anthropic_headers, remove_nullish, sanitize_title


def test_branding_prompt_contents():
    user = UserContext(id="u1", name="Ada")
    now = datetime(2026, 10, 19, 15, 30, tzinfo=UTC)
    text = prompts.build_branding_prompt(
        BrandingConfig(label="Acme Bot", description="Helps with Acme."), user, "UTC", now
    )
    assert text.startswith("You are Acme Bot. Helps with Acme.")
    assert 'CURRENT_DATE="Monday, October 19, 2026"' in text
    assert 'TIMEZONE="UTC"' in text
    assert 'USER="Ada"' in text


def test_branding_is_stable_within_a_day():
    user = UserContext(id="u1", username="ada")
    morning = datetime(2026, 10, 19, 14, 0, tzinfo=UTC)
    evening = datetime(2026, 10, 19, 22, 59, tzinfo=UTC)
    assert prompts.build_branding_prompt(None, user, "America/Chicago", morning) == prompts.build_branding_prompt(
        None, user, "America/Chicago", evening
    )


def test_branding_uses_local_date():
    # 03:00 UTC is still the previous day in Chicago
    now = datetime(2026, 10, 20, 3, 0, tzinfo=UTC)
    assert prompts.format_current_date("America/Chicago", now) == "Monday, October 19, 2026"


def test_unknown_timezone_falls_back():
    now = datetime(2026, 10, 19, 18, 0, tzinfo=UTC)
    assert prompts.format_current_date("Not/AZone", now) == prompts.format_current_date(
        prompts.DEFAULT_TIMEZONE, now
    )


def test_resolve_timezone():
    assert prompts.resolve_timezone(None) == "America/Chicago"
    assert prompts.resolve_timezone(UserContext(id="u", timezone="Europe/Paris")) == "Europe/Paris"
    assert prompts.resolve_timezone(UserContext(id="u", timezone="Europe/Paris"), "UTC") == "UTC"


def test_tool_name_helpers():
    names = ["execute_code", "search_mcp_github", "issues_mcp_github", "fetch_mcp_web", "calculator"]
    assert prompts.has_code_executor(names)
    assert not prompts.has_code_executor(["calculator"])
    assert prompts.mcp_server_names(names) == ["github", "web"]


def test_minimal_branding():
    text = prompts.build_minimal_branding_prompt(None, UserContext(id="u"))
    assert text == "You are AI Assistant. User: User."


class TestSanitizeTitle:
    def test_strips_label_quotes_and_punctuation(self):
        assert sanitize_title('Title: "Planning the Trip."') == "Planning the Trip"

    def test_removes_think_blocks(self):
        assert sanitize_title("<think>hmm let me see</think> Budget Review") == "Budget Review"

    def test_fallback(self):
        assert sanitize_title("") == "New Chat"
        assert sanitize_title(None) == "New Chat"
        assert sanitize_title('""') == "New Chat"

    def test_caps_length(self):
        title = sanitize_title("word " * 40)
        assert len(title) <= 80
        assert not title.endswith(" ")


def test_remove_nullish():
    assert remove_nullish({"a": 1, "b": None, "c": 0}) == {"a": 1, "c": 0}


class TestAnthropicHeaders:
    def test_api_key(self):
        headers = build_anthropic_headers("sk-ant-api-123")
        assert headers["x-api-key"] == "sk-ant-api-123"
        assert "authorization" not in headers
        assert headers["anthropic-version"] == "2023-06-01"

    def test_auth_token_wins(self):
        headers = build_anthropic_headers("sk-ant-api-123", "token-abc")
        assert headers["authorization"] == "Bearer token-abc"
        assert "x-api-key" not in headers

    def test_oat_key_uses_bearer(self):
        headers = build_anthropic_headers("sk-ant-oat01-xyz")
        assert headers["authorization"] == "Bearer sk-ant-oat01-xyz"
        assert headers["anthropic-beta"] == "oauth-2025-04-20"
