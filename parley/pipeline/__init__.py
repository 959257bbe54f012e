"""Pipeline module -- per-turn prompt, run and accounting stages.

Public API:
    MessageAssembler  - Stored history -> formatted prompt + system content
    ContextBudgeter   - Fits the prompt inside the context window
    MultiAgentRunner  - Drives one run of an agent chain
    UsageLedger       - Reconciles usage records and persists spend
    TitleGenerator    - Conversation titles via the turn's run
    TokenCounter      - tiktoken-backed token counts

Helpers:
    TurnOptions, AssembledPrompt, FitResult, AgentChain, RunOutcome,
    RunState, TokenCountMap, extract_file_context, make_summarizer
"""

from parley.pipeline.assembler import (
    AssembledPrompt,
    MessageAssembler,
    TurnOptions,
    get_messages_for_conversation,
    label_content_by_agent,
)
from parley.pipeline.budget import ContextBudgeter, FitResult, make_summarizer
from parley.pipeline.file_context import extract_file_context
from parley.pipeline.runner import AgentChain, MultiAgentRunner, RunOutcome, RunState
from parley.pipeline.title import TitleGenerator
from parley.pipeline.tokens import TokenCountMap, TokenCounter
from parley.pipeline.usage import UsageLedger, reconcile_records

__all__ = [
    "AgentChain",
    "AssembledPrompt",
    "ContextBudgeter",
    "FitResult",
    "MessageAssembler",
    "MultiAgentRunner",
    "RunOutcome",
    "RunState",
    "TitleGenerator",
    "TokenCountMap",
    "TokenCounter",
    "TurnOptions",
    "UsageLedger",
    "extract_file_context",
    "get_messages_for_conversation",
    "label_content_by_agent",
    "make_summarizer",
    "reconcile_records",
]
