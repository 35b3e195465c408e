"""Shared models for the relay agent API.

These models are used by both the daemon (server) and clients.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class StreamEventType(str, Enum):
    """Types of streaming events sent to clients."""

    SESSION_READY = "session_ready"
    TEXT = "text"
    THINKING = "thinking"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    PERMISSION_REQUEST = "permission_request"
    USER_INPUT_REQUEST = "user_input_request"
    ERROR = "error"
    DONE = "done"


@dataclass
class StreamEvent:
    """A normalized streaming event from an exchange."""

    type: StreamEventType
    data: dict[str, Any]
    timestamp: float = field(default_factory=time.time)
    seq: int | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> StreamEvent:
        return cls(
            type=StreamEventType(d["type"]),
            data=d.get("data", {}),
            timestamp=d.get("timestamp", time.time()),
            seq=d.get("seq"),
        )

    def to_dict(self) -> dict[str, Any]:
        result = {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
        }
        if self.seq is not None:
            result["seq"] = self.seq
        return result


class PermissionPolicy(str, Enum):
    """How permission requests for a session are answered."""

    ASK_USER = "ask-user"
    AUTO_APPROVE = "auto-approve"
    DENY_ALL = "deny-all"


class SystemMessageConfig(BaseModel):
    """Session-level system message injection."""

    mode: Literal["append", "replace"] = "append"
    content: str = ""


class InfiniteSessionConfig(BaseModel):
    """Context compaction thresholds for long-running sessions."""

    enabled: bool = True
    background_compaction_threshold: float = Field(default=0.80, ge=0.0, le=1.0)
    buffer_exhaustion_threshold: float = Field(default=0.95, ge=0.0, le=1.0)


class MCPServerConfig(BaseModel):
    """An MCP server that can be attached to sessions."""

    id: str
    name: str
    type: Literal["local", "stdio", "http", "sse"] = "stdio"
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    cwd: str | None = None
    url: str | None = None
    headers: dict[str, str] | None = None
    tools: list[str] = Field(default_factory=lambda: ["*"])
    timeout: int | None = None
    enabled: bool = True
    scope: Literal["global", "agent"] = "global"
    agent_id: str | None = None


class AgentConfig(BaseModel):
    """Configuration for an agent that owns sessions."""

    id: str
    name: str
    display_name: str = ""
    description: str = ""
    prompt: str = ""
    system_message: SystemMessageConfig | None = None
    tools: list[str] | None = Field(
        default=None, description="Tool names (None = all tools)"
    )
    mcp_server_ids: list[str] = Field(default_factory=list)
    permission_policy: PermissionPolicy = PermissionPolicy.ASK_USER
    infinite_session: InfiniteSessionConfig | None = None
    preferred_model: str | None = None
    is_default: bool = False


class Attachment(BaseModel):
    """A file or directory attached to a prompt."""

    type: Literal["file", "directory"] = "file"
    path: str
    display_name: str | None = None


class ClientMessage(BaseModel):
    """Message from client to daemon via WebSocket."""

    type: str
    session_id: str | None = None
    model: str | None = None
    agent_id: str | None = None
    prompt: str | None = None
    attachments: list[Attachment] | None = None
    # Out-of-band response fields
    request_id: str | None = None
    allowed: bool | None = None
    deny_message: str | None = None
    answer: str | None = None
    was_freeform: bool | None = None
