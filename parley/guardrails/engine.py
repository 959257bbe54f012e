"""Default guardrail decision service using CEL rules and PII detectors.

Rules are CEL expressions evaluated against a ``content`` map built from
the response text. CEL is sandboxed: no I/O, no side effects,
deterministic evaluation. PII detection is regex based and can rewrite
the text with placeholders.

The service reports what it detected; whether that is applied depends
on the configured mode (``enforce`` or ``observe``).
"""

from __future__ import annotations

import asyncio
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import celpy

from parley.config import GuardrailRule, GuardrailsConfig
from parley.schemas import GuardrailOutcome, GuardrailOutcomeKind, StoredMessage

logger = logging.getLogger(__name__)

# One CEL environment serves every rule; compiled programs are per service
_CEL_ENV = celpy.Environment()

# Rules run on a small pool so a pathological expression cannot stall the turn
_EVAL_POOL = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cel")
EVAL_TIMEOUT = 0.25  # seconds

PII_PATTERNS: dict[str, re.Pattern[str]] = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(r"(?<!\d)(?:\+?1[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}(?!\d)"),
    "card": re.compile(r"(?<!\d)(?:\d[ -]?){13,16}(?!\d)"),
    "ssn": re.compile(r"(?<!\d)\d{3}-\d{2}-\d{4}(?!\d)"),
}


def detect_pii(text: str, pii_types: list[str]) -> dict[str, list[str]]:
    found: dict[str, list[str]] = {}
    for name in pii_types:
        pattern = PII_PATTERNS.get(name)
        if pattern is None:
            logger.warning("Unknown PII type '%s' (skipping)", name)
            continue
        matches = pattern.findall(text)
        if matches:
            found[name] = matches
    return found


def anonymize(text: str, pii_types: list[str]) -> str:
    for name in pii_types:
        pattern = PII_PATTERNS.get(name)
        if pattern is not None:
            text = pattern.sub(f"[{name.upper()}]", text)
    return text


def _build_activation(text: str, pii: dict[str, list[str]]) -> dict[str, Any]:
    """Everything a rule can see lives under the ``content`` map."""
    content = {
        "text": text,
        "lower": text.lower(),
        "length": len(text),
        "word_count": len(text.split()),
        "pii": sorted(pii),
        "pii_count": sum(len(v) for v in pii.values()),
        "has_pii": bool(pii),
    }
    return {"content": celpy.json_to_cel(content)}


class CelGuardrailService:
    """Evaluates configured rules against response text."""

    def __init__(self, config: GuardrailsConfig) -> None:
        self._config = config
        self._programs: dict[str, celpy.Runner] = {}

    def is_enabled(self) -> bool:
        return self._config.enabled

    def _program(self, expression: str) -> celpy.Runner:
        program = self._programs.get(expression)
        if program is None:
            program = _CEL_ENV.program(_CEL_ENV.compile(expression))
            self._programs[expression] = program
        return program

    def validate_expression(self, expression: str) -> tuple[bool, str | None]:
        """(is_valid, error_message) for a rule expression."""
        try:
            self._program(expression)
        except Exception as e:
            return False, str(e)
        return True, None

    async def _matches(self, rule: GuardrailRule, activation: dict[str, Any]) -> bool:
        """Whether the rule fires. A broken or slow blocking rule counts as a match."""
        loop = asyncio.get_running_loop()
        try:
            program = self._program(rule.expression)
            result = await asyncio.wait_for(
                loop.run_in_executor(_EVAL_POOL, program.evaluate, activation), EVAL_TIMEOUT
            )
        except TimeoutError:
            logger.error("Guardrail rule %s timed out after %.2fs", rule.name, EVAL_TIMEOUT)
            return rule.outcome == "blocked"
        except Exception:
            logger.error("Guardrail rule %s failed: %s", rule.name, rule.expression, exc_info=True)
            return rule.outcome == "blocked"
        return bool(result)

    async def extract_guardrail_context(self, history: list[StoredMessage]) -> dict[str, Any]:
        """Flag the turn when an earlier response was not a clean pass."""
        for message in reversed(history):
            tracking = message.metadata.get("guardrail_tracking")
            if not tracking:
                continue
            outcome = tracking.get("outcome", GuardrailOutcomeKind.PASSED)
            if outcome != GuardrailOutcomeKind.PASSED:
                return {"has_guardrail_context": True, "system_note": self._config.context_note}
        return {"has_guardrail_context": False, "system_note": None}

    async def handle_output_moderation(self, text: str) -> GuardrailOutcome:
        pii = detect_pii(text, self._config.pii_types) if self._config.anonymize_pii else {}
        activation = _build_activation(text, pii)

        violations: list[dict[str, Any]] = []
        blocked_by: GuardrailRule | None = None
        intervened = False
        for rule in self._config.rules:
            if not await self._matches(rule, activation):
                continue
            violations.append({"rule": rule.name, "outcome": rule.outcome})
            if rule.outcome == "blocked" and blocked_by is None:
                blocked_by = rule
            elif rule.outcome == "intervened":
                intervened = True

        enforce = self._config.mode == "enforce"
        if blocked_by is not None:
            return GuardrailOutcome(
                outcome=GuardrailOutcomeKind.BLOCKED,
                violations=violations,
                modified_content=blocked_by.message or self._config.block_message,
                action_applied=enforce,
                reason=blocked_by.name,
            )
        if pii:
            violations.extend({"pii": name, "count": len(found)} for name, found in pii.items())
            return GuardrailOutcome(
                outcome=GuardrailOutcomeKind.ANONYMIZED,
                violations=violations,
                modified_content=anonymize(text, list(pii)),
                action_applied=enforce,
                reason="pii",
            )
        if intervened:
            return GuardrailOutcome(
                outcome=GuardrailOutcomeKind.INTERVENED,
                violations=violations,
                action_applied=enforce,
            )
        return GuardrailOutcome()
