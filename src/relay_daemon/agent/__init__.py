"""Agent service: sessions, exchanges and out-of-band requests over an agent runtime."""

from __future__ import annotations

from .exchange import Exchange, ExchangeCallbacks, ExchangeResult, ExchangeState
from .models import StreamEvent, StreamEventType
from .router import router as agent_router
from .service import AgentService

__all__ = [
    "AgentService",
    "Exchange",
    "ExchangeCallbacks",
    "ExchangeResult",
    "ExchangeState",
    "StreamEvent",
    "StreamEventType",
    "agent_router",
]
