"""Pydantic models for the agent API."""

from __future__ import annotations

from pydantic import BaseModel, Field

from relay_shared.agent_models import (
    AgentConfig,
    ClientMessage,
    PermissionPolicy,
    StreamEvent,
    StreamEventType,
)

__all__ = ["ClientMessage", "StreamEvent", "StreamEventType"]


class SessionResponse(BaseModel):
    """Response with session information."""

    session_id: str
    modified_at: float | None = None
    live: bool = False
    agent_id: str | None = None


class SessionListResponse(BaseModel):
    """List of known sessions."""

    sessions: list[SessionResponse]


class ConversationMessage(BaseModel):
    """A single conversation message for history display."""

    role: str  # "user" or "assistant"
    content: str


class MessageHistoryResponse(BaseModel):
    """Message history for a session."""

    messages: list[ConversationMessage]
    has_more: bool = False


class ModelInfo(BaseModel):
    """Information about an available Claude model."""

    id: str
    name: str
    description: str


class AvailableModelsResponse(BaseModel):
    """List of available Claude models."""

    models: list[ModelInfo]


AVAILABLE_MODELS = [
    ModelInfo(
        id="claude-opus-4-5",
        name="Opus 4.5",
        description="Premium model with maximum intelligence",
    ),
    ModelInfo(
        id="claude-sonnet-4-5",
        name="Sonnet 4.5",
        description="Smart model for complex agents and coding",
    ),
    ModelInfo(
        id="claude-haiku-4-5",
        name="Haiku 4.5",
        description="Fastest model with near-frontier intelligence",
    ),
]


class AgentInfo(BaseModel):
    """Public view of a configured agent."""

    id: str
    name: str
    display_name: str = ""
    description: str = ""
    permission_policy: PermissionPolicy
    preferred_model: str | None = None
    is_default: bool = False

    @classmethod
    def from_config(cls, agent: AgentConfig, default_agent_id: str) -> AgentInfo:
        return cls(
            id=agent.id,
            name=agent.name,
            display_name=agent.display_name,
            description=agent.description,
            permission_policy=agent.permission_policy,
            preferred_model=agent.preferred_model,
            is_default=agent.id == default_agent_id,
        )


class AgentListResponse(BaseModel):
    """List of configured agents."""

    agents: list[AgentInfo] = Field(default_factory=list)


class SessionAgentResponse(BaseModel):
    session_id: str
    agent_id: str | None = None


class SetAgentRequest(BaseModel):
    """Request to associate a session with an agent."""

    agent_id: str


class AbortResponse(BaseModel):
    session_id: str
    aborted: bool
