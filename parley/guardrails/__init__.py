"""Content policy: input context notes and output moderation."""

from parley.guardrails.engine import CelGuardrailService, anonymize, detect_pii
from parley.guardrails.pipeline import GuardrailPipeline, collect_text

__all__ = [
    "CelGuardrailService",
    "GuardrailPipeline",
    "anonymize",
    "collect_text",
    "detect_pii",
]
