"""Base protocol for agent runtimes."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from relay_shared.agent_models import (
    Attachment,
    InfiniteSessionConfig,
    SystemMessageConfig,
)


class RuntimeEventType(str, Enum):
    """Named events emitted by a runtime session."""

    USER_MESSAGE = "user.message"
    CONTENT_DELTA = "assistant.message_delta"
    REASONING_DELTA = "assistant.reasoning_delta"
    MESSAGE = "assistant.message"
    TOOL_START = "tool.execution_start"
    TOOL_COMPLETE = "tool.execution_complete"
    TOOL_ERROR = "tool.execution_error"
    SESSION_ERROR = "session.error"
    SESSION_IDLE = "session.idle"


@dataclass
class RuntimeEvent:
    """A raw event from the runtime.

    Payload keys by type:
        content/reasoning delta: ``delta_content``
        message: ``content``, ``tool_requests``
        tool start: ``call_id``, ``tool_name``, ``arguments``
        tool complete: ``call_id``, ``result``
        tool error: ``call_id``, ``error``
        session error: ``message``
    """

    type: RuntimeEventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


EventHandler = Callable[[RuntimeEvent], None]
Unsubscribe = Callable[[], None]


class PermissionOutcome(str, Enum):
    APPROVED = "approved"
    DENIED_BY_POLICY = "denied-by-policy"
    DENIED_BY_USER = "denied-interactively-by-user"
    NO_RESPONDER = "denied-no-responder"


@dataclass
class PermissionRequest:
    """Authorization request raised by the runtime before a tool runs."""

    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    call_id: str | None = None


@dataclass
class PermissionResponse:
    outcome: PermissionOutcome
    message: str = ""

    @property
    def approved(self) -> bool:
        return self.outcome is PermissionOutcome.APPROVED


@dataclass
class UserInputRequest:
    """A question the agent needs answered to proceed."""

    question: str
    choices: list[str] | None = None
    allow_freeform: bool = True


@dataclass
class UserInputResponse:
    answer: str
    was_freeform: bool = True


PermissionHook = Callable[[PermissionRequest], Awaitable[PermissionResponse]]
UserInputHook = Callable[[UserInputRequest], Awaitable[UserInputResponse]]


@dataclass
class SessionOptions:
    """Everything a runtime needs to create or resume a session."""

    session_id: str | None
    model: str
    on_permission_request: PermissionHook
    on_user_input_request: UserInputHook
    tools: list[str] | None = None
    mcp_servers: dict[str, dict[str, Any]] = field(default_factory=dict)
    system_message: SystemMessageConfig | None = None
    infinite_session: InfiniteSessionConfig | None = None
    streaming: bool = True


@dataclass
class SessionInfo:
    session_id: str
    modified_at: float | None = None


class RuntimeSession(ABC):
    """A live session handle owned by a runtime."""

    @property
    @abstractmethod
    def session_id(self) -> str:
        ...

    @abstractmethod
    def on(self, event_type: RuntimeEventType, handler: EventHandler) -> Unsubscribe:
        """Subscribe to a named event; returns the matching unsubscribe."""
        ...

    @abstractmethod
    async def send(self, prompt: str, attachments: list[Attachment] | None = None) -> None:
        """Submit a prompt. Returns once the runtime accepted it, not when it is answered."""
        ...

    @abstractmethod
    async def abort(self) -> None:
        ...

    @abstractmethod
    async def destroy(self) -> None:
        ...

    @abstractmethod
    async def get_messages(self) -> list[RuntimeEvent]:
        """Return the runtime's own (possibly incomplete) event log."""
        ...


class AgentRuntime(ABC):
    """Abstract base for agent runtime backends."""

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    async def create_session(self, options: SessionOptions) -> RuntimeSession:
        ...

    @abstractmethod
    async def resume_session(self, session_id: str, options: SessionOptions) -> RuntimeSession:
        """Reattach to a session the runtime knows.

        Raises SessionNotFoundError when the id is unknown.
        """
        ...

    @abstractmethod
    async def list_sessions(self) -> list[SessionInfo]:
        ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        ...
