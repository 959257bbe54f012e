"""Input and output content-policy checks around a run.

Input: a prior-context note routed to per-turn system context, never
into the transcript.
Output: one moderation call over the concatenated TEXT parts. Tracking
is recorded whenever an outcome exists; content changes only when the
service reports the action as applied. Any failure lets the original
response through.
"""

from __future__ import annotations

import logging

from parley.errors import ModerationFailure
from parley.protocols import GuardrailService
from parley.schemas import (
    ContentPart,
    ContentType,
    GuardrailOutcomeKind,
    InputGuardrailContext,
    OutputGuardrailResult,
    StoredMessage,
)

logger = logging.getLogger(__name__)


def collect_text(parts: list[ContentPart]) -> str:
    """Join TEXT parts with newlines. THINK parts are never moderated."""
    return "\n".join(p.text for p in parts if p.type == ContentType.TEXT and p.text)


class GuardrailPipeline:
    def __init__(self, service: GuardrailService | None) -> None:
        self._service = service

    @property
    def enabled(self) -> bool:
        if self._service is None:
            return False
        try:
            return bool(self._service.is_enabled())
        except Exception:
            logger.exception("Guardrail service enablement check failed")
            return False

    async def check_input(self, history: list[StoredMessage]) -> InputGuardrailContext:
        if not self.enabled:
            return InputGuardrailContext()
        try:
            result = await self._service.extract_guardrail_context(history)  # type: ignore[union-attr]
        except Exception:
            logger.exception("Input guardrail context extraction failed")
            return InputGuardrailContext()
        has_context = bool(result.get("has_guardrail_context"))
        note = result.get("system_note") if has_context else None
        return InputGuardrailContext(has_context=has_context, note=note or None)

    async def check_output(self, parts: list[ContentPart]) -> OutputGuardrailResult:
        if not self.enabled:
            return OutputGuardrailResult(parts=parts)
        text = collect_text(parts)
        if not text:
            return OutputGuardrailResult(parts=parts)

        try:
            outcome = await self._service.handle_output_moderation(text)  # type: ignore[union-attr]
        except Exception as e:
            failure = ModerationFailure(str(e))
            logger.error("Output moderation failed open: %s", failure, exc_info=True)
            return OutputGuardrailResult(parts=parts)

        tracking = outcome.tracking()
        if not outcome.action_applied:
            if outcome.outcome != GuardrailOutcomeKind.PASSED:
                logger.info("Guardrail detected %s (observe only)", outcome.outcome)
            return OutputGuardrailResult(parts=parts, outcome=outcome, tracking=tracking)

        if outcome.outcome == GuardrailOutcomeKind.BLOCKED:
            notice = outcome.modified_content or "This response was blocked."
            logger.info("Guardrail blocked response (%d violations)", len(outcome.violations))
            return OutputGuardrailResult(
                parts=[ContentPart.text_part(notice)],
                outcome=outcome,
                tracking=tracking,
            )

        if outcome.outcome == GuardrailOutcomeKind.ANONYMIZED and outcome.modified_content is not None:
            non_text = [p for p in parts if p.type != ContentType.TEXT]
            logger.info("Guardrail anonymized response text")
            return OutputGuardrailResult(
                parts=[*non_text, ContentPart.text_part(outcome.modified_content)],
                outcome=outcome,
                tracking=tracking,
            )

        return OutputGuardrailResult(parts=parts, outcome=outcome, tracking=tracking)
