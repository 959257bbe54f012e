"""Render extracted attachment text into a prompt-ready block.

Files routed to the code executor are skipped since the executor reads
them directly. Files already embedded for retrieval are only named, so
the model knows to search them instead.
"""

from __future__ import annotations

import logging

from parley.protocols import Tokenizer
from parley.schemas import FileAttachment

logger = logging.getLogger(__name__)

DEFAULT_FILE_TOKEN_LIMIT = 30_000

_TRUNCATED_NOTE = (
    "\n\n**Note**: Some document(s) were truncated due to size limits: {names}. "
    "You can answer based on the visible content. For questions about sections "
    "not shown, use the file_search tool to find specific information."
)
_COMPLETE_NOTE = (
    "\n\n**IMPORTANT**: The complete document content is provided above. "
    "Answer questions directly using this text - do NOT use the file_search tool for this query."
)
_PENDING_NOTE = (
    "\n\n**Note**: The file(s) are being indexed in the background for future "
    "semantic searches. For this query, use the full document text provided above."
)
_EMBEDDED_NOTE = (
    "**Note**: The following file(s) are indexed and ready for search: {names}. "
    "Use the file_search tool to find relevant information from these documents."
)


def truncate_to_token_limit(text: str, limit: int, tokenizer: Tokenizer) -> tuple[str, bool]:
    """Cut ``text`` to at most ``limit`` tokens. Returns (text, was_truncated)."""
    total = tokenizer.get_token_count(text)
    if total <= limit:
        return text, False

    # Shrink proportionally, then tighten until under the limit
    end = max(1, int(len(text) * limit / total))
    candidate = text[:end]
    while end > 0 and tokenizer.get_token_count(candidate) > limit:
        end = int(end * 0.9)
        candidate = text[:end]
    return candidate, True


def extract_file_context(
    attachments: list[FileAttachment],
    tokenizer: Tokenizer,
    file_token_limit: int = DEFAULT_FILE_TOKEN_LIMIT,
) -> str | None:
    """Build the "Attached document(s)" block for a message's files."""
    if not attachments:
        return None

    sections: list[str] = []
    pending: list[str] = []
    embedded: list[str] = []
    truncated: list[str] = []

    for file in attachments:
        if file.tool_resource == "execute_code":
            logger.debug("Skipping %s: routed to execute_code", file.filename)
            continue
        if file.embedded:
            embedded.append(file.filename)
            continue
        if file.tool_resource == "file_search":
            pending.append(file.filename)
        if not file.text:
            continue

        text, was_truncated = truncate_to_token_limit(file.text, file_token_limit, tokenizer)
        if was_truncated:
            truncated.append(file.filename)
            logger.debug("Truncated %s to %d tokens", file.filename, file_token_limit)
        suffix = " (truncated)" if was_truncated else ""
        sections.append(f'# "{file.filename}"{suffix}\n{text}\n')

    result = ""
    if sections:
        result = "Attached document(s):\n```md" + "\n\n---\n\n".join(sections) + "\n```"
        if truncated:
            result += _TRUNCATED_NOTE.format(names=", ".join(truncated))
        else:
            result += _COMPLETE_NOTE

    if pending and not truncated:
        result += _PENDING_NOTE

    if embedded and not result:
        result = _EMBEDDED_NOTE.format(names=", ".join(embedded))

    return result or None
