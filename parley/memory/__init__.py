"""Long-term user memory. Fetch before the turn, write in the background."""

from parley.memory.coordinator import (
    MEMORIES_USE,
    MemoryCoordinator,
    render_chat_buffer,
    select_memory_window,
)
from parley.memory.processor import LLMMemoryProcessor

__all__ = [
    "MEMORIES_USE",
    "MemoryCoordinator",
    "LLMMemoryProcessor",
    "render_chat_buffer",
    "select_memory_window",
]
