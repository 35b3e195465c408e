"""Agent runtimes behind a common session interface."""

from .base import AgentRuntime, RuntimeEvent, RuntimeEventType, RuntimeSession, SessionOptions
from .claude import ClaudeRuntime

__all__ = [
    "AgentRuntime",
    "ClaudeRuntime",
    "RuntimeEvent",
    "RuntimeEventType",
    "RuntimeSession",
    "SessionOptions",
]
