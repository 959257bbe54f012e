"""Tests for the guardrail pipeline and the CEL guardrail service."""

import pytest

from parley.config import GuardrailRule, GuardrailsConfig
from parley.guardrails import CelGuardrailService, GuardrailPipeline, anonymize, collect_text, detect_pii
from parley.schemas import (
    ContentPart,
    ContentType,
    GuardrailOutcome,
    GuardrailOutcomeKind,
    ToolCall,
)
from tests.conftest import MockGuardrailService, make_message


def _parts(*texts: str) -> list[ContentPart]:
    return [ContentPart.text_part(t) for t in texts]


# ---------------------------------------------------------------------------
# Pipeline: input
# ---------------------------------------------------------------------------


async def test_input_context_note():
    service = MockGuardrailService(context={"has_guardrail_context": True, "system_note": "Careful."})
    context = await GuardrailPipeline(service).check_input([])
    assert context.has_context
    assert context.note == "Careful."


async def test_input_disabled():
    service = MockGuardrailService(enabled=False, context={"has_guardrail_context": True, "system_note": "x"})
    context = await GuardrailPipeline(service).check_input([])
    assert not context.has_context
    assert context.note is None


async def test_no_service():
    pipeline = GuardrailPipeline(None)
    assert not pipeline.enabled
    result = await pipeline.check_output(_parts("hello"))
    assert result.tracking is None


# ---------------------------------------------------------------------------
# Pipeline: output
# ---------------------------------------------------------------------------


async def test_blocked_replaces_completion():
    outcome = GuardrailOutcome(
        outcome=GuardrailOutcomeKind.BLOCKED,
        action_applied=True,
        modified_content="blocked",
        violations=[{"rule": "no-secrets", "outcome": "blocked"}],
    )
    service = MockGuardrailService(outcome=outcome)
    parts = [
        ContentPart(type=ContentType.THINK, think="reasoning"),
        ContentPart.text_part("the secret is 42"),
        ContentPart(type=ContentType.TOOL_CALL, tool_call=ToolCall(id="t", name="lookup")),
    ]
    result = await GuardrailPipeline(service).check_output(parts)

    assert result.parts == [ContentPart(type=ContentType.TEXT, text="blocked")]
    assert result.tracking["outcome"] == "blocked"
    assert result.tracking["action_applied"] is True
    assert service.moderated == ["the secret is 42"]


async def test_anonymized_keeps_non_text_parts():
    outcome = GuardrailOutcome(
        outcome=GuardrailOutcomeKind.ANONYMIZED,
        action_applied=True,
        modified_content="mail [EMAIL]",
    )
    tool = ContentPart(type=ContentType.TOOL_CALL, tool_call=ToolCall(id="t", name="lookup"))
    result = await GuardrailPipeline(MockGuardrailService(outcome=outcome)).check_output(
        [ContentPart.text_part("mail"), tool, ContentPart.text_part("a@b.co")]
    )
    assert result.parts == [tool, ContentPart.text_part("mail [EMAIL]")]


async def test_observe_only_keeps_content_but_tracks():
    outcome = GuardrailOutcome(outcome=GuardrailOutcomeKind.BLOCKED, action_applied=False, modified_content="no")
    parts = _parts("fine text")
    result = await GuardrailPipeline(MockGuardrailService(outcome=outcome)).check_output(parts)
    assert result.parts is parts
    assert result.tracking["outcome"] == "blocked"
    assert result.tracking["action_applied"] is False


async def test_moderation_text_joins_text_parts():
    service = MockGuardrailService()
    await GuardrailPipeline(service).check_output(
        [ContentPart.text_part("one"), ContentPart(type=ContentType.THINK, think="skip"), ContentPart.text_part("two")]
    )
    assert service.moderated == ["one\ntwo"]


async def test_empty_text_skips_moderation():
    service = MockGuardrailService()
    result = await GuardrailPipeline(service).check_output([ContentPart(type=ContentType.THINK, think="x")])
    assert service.moderated == []
    assert result.tracking is None


async def test_moderation_failure_fails_open():
    service = MockGuardrailService(error=RuntimeError("moderation backend down"))
    parts = _parts("original")
    result = await GuardrailPipeline(service).check_output(parts)
    assert result.parts is parts
    assert result.tracking is None


async def test_enablement_check_failure():
    class Broken(MockGuardrailService):
        def is_enabled(self):
            raise RuntimeError("config missing")

    assert not GuardrailPipeline(Broken()).enabled


def test_collect_text():
    assert collect_text(_parts("a", "b")) == "a\nb"
    assert collect_text([]) == ""


# ---------------------------------------------------------------------------
# CEL service
# ---------------------------------------------------------------------------


def _service(**kwargs) -> CelGuardrailService:
    return CelGuardrailService(GuardrailsConfig(enabled=True, **kwargs))


async def test_cel_block_rule():
    service = _service(
        rules=[GuardrailRule(name="no-passwords", expression='content.lower.contains("password")', message="blocked")]
    )
    outcome = await service.handle_output_moderation("Your PASSWORD is hunter2")
    assert outcome.outcome == GuardrailOutcomeKind.BLOCKED
    assert outcome.action_applied
    assert outcome.modified_content == "blocked"
    assert outcome.reason == "no-passwords"


async def test_cel_pass():
    service = _service(rules=[GuardrailRule(name="long", expression="content.word_count > 100")])
    outcome = await service.handle_output_moderation("short answer")
    assert outcome.outcome == GuardrailOutcomeKind.PASSED
    assert outcome.violations == []


async def test_cel_intervened_in_observe_mode():
    service = _service(
        mode="observe",
        rules=[GuardrailRule(name="terse", expression="content.length < 10", outcome="intervened")],
    )
    outcome = await service.handle_output_moderation("HELLO")
    assert outcome.outcome == GuardrailOutcomeKind.INTERVENED
    assert not outcome.action_applied


async def test_cel_invalid_block_rule_fails_closed():
    service = _service(rules=[GuardrailRule(name="broken", expression="content.text ==")])
    outcome = await service.handle_output_moderation("anything")
    assert outcome.outcome == GuardrailOutcomeKind.BLOCKED
    assert outcome.modified_content == GuardrailsConfig().block_message


async def test_cel_invalid_intervene_rule_fails_open():
    service = _service(rules=[GuardrailRule(name="broken", expression="content.text ==", outcome="intervened")])
    outcome = await service.handle_output_moderation("anything")
    assert outcome.outcome == GuardrailOutcomeKind.PASSED


async def test_pii_is_anonymized():
    service = _service(anonymize_pii=True, pii_types=["email"])
    outcome = await service.handle_output_moderation("Write to ada@example.com today")
    assert outcome.outcome == GuardrailOutcomeKind.ANONYMIZED
    assert outcome.modified_content == "Write to [EMAIL] today"
    assert outcome.violations == [{"pii": "email", "count": 1}]


async def test_block_wins_over_pii():
    service = _service(
        anonymize_pii=True,
        pii_types=["email"],
        rules=[GuardrailRule(name="pii-block", expression="content.has_pii")],
    )
    outcome = await service.handle_output_moderation("ada@example.com")
    assert outcome.outcome == GuardrailOutcomeKind.BLOCKED


def test_validate_expression():
    service = _service()
    assert service.validate_expression("content.length > 3") == (True, None)
    valid, error = service.validate_expression("content.length >")
    assert not valid
    assert error


async def test_context_from_prior_tracking():
    service = _service(context_note="Be careful.")
    clean = make_message("m0", metadata={"guardrail_tracking": {"outcome": "passed"}})
    flagged = make_message("m1", "m0", user=False, metadata={"guardrail_tracking": {"outcome": "blocked"}})

    assert (await service.extract_guardrail_context([clean]))["has_guardrail_context"] is False
    context = await service.extract_guardrail_context([flagged, clean])
    assert context == {"has_guardrail_context": True, "system_note": "Be careful."}


@pytest.mark.parametrize(
    "text,kind",
    [
        ("call 555-123-4567 now", "phone"),
        ("card 4111 1111 1111 1111", "card"),
        ("ssn 123-45-6789", "ssn"),
    ],
)
def test_detect_pii(text, kind):
    assert kind in detect_pii(text, [kind])


def test_anonymize_unknown_type_is_ignored():
    assert anonymize("a@b.co", ["email", "nope"]) == "[EMAIL]"
    assert detect_pii("a@b.co", ["nope"]) == {}
