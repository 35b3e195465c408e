"""WebSocket and REST endpoints for the agent service."""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect
from loguru import logger
from pydantic import ValidationError

from .models import (
    AbortResponse,
    AgentInfo,
    AgentListResponse,
    AvailableModelsResponse,
    ClientMessage,
    ConversationMessage,
    MessageHistoryResponse,
    SessionAgentResponse,
    SessionListResponse,
    SessionResponse,
    SetAgentRequest,
    StreamEvent,
)
from .streaming import error_event, session_ready_event

if TYPE_CHECKING:
    from .service import AgentService

router = APIRouter(prefix="/agent", tags=["agent"])


def _get_service(request: Request) -> AgentService:
    """Get agent service from app state."""
    return request.app.state.agent_service


class _Connection:
    """Serializes sends on one WebSocket and numbers outgoing events."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._lock = asyncio.Lock()
        self._seq = 0

    async def send_event(self, event: StreamEvent) -> None:
        async with self._lock:
            self._seq += 1
            event.seq = self._seq
            await self.websocket.send_json(event.to_dict())

    async def send_json(self, payload: dict[str, Any]) -> None:
        async with self._lock:
            await self.websocket.send_json(payload)

    async def error(self, message: str, recoverable: bool = True) -> None:
        await self.send_event(error_event(message, recoverable=recoverable))


async def _session_ready(conn: _Connection, service: AgentService, session_id: str) -> None:
    record = service.registry.get(session_id)
    await conn.send_event(
        session_ready_event(
            session_id,
            agent_id=service.get_session_agent(session_id),
            model=record.model if record else None,
        )
    )


async def _stream_query(
    conn: _Connection, service: AgentService, session_id: str, msg: ClientMessage
) -> None:
    try:
        async for event in service.query(
            session_id,
            msg.prompt or "",
            model=msg.model,
            agent_id=msg.agent_id,
            attachments=msg.attachments,
        ):
            await conn.send_event(event)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.exception("Query failed")
        try:
            await conn.error(f"Query failed: {e}")
        except (RuntimeError, WebSocketDisconnect):
            pass  # client already gone


@router.websocket("/ws")
async def agent_websocket(websocket: WebSocket):
    """WebSocket endpoint for streaming agent responses.

    Protocol:
        Client sends JSON messages with "type" field:
        - {"type": "new_session", "session_id": "...", "model": "...", "agent_id": "..."}
            All fields optional. Creates a fresh session.
        - {"type": "resume_session", "session_id": "..."} - Resume, or create under that id
        - {"type": "query", "prompt": "...", "attachments": [...]} - Send a prompt
        - {"type": "cancel"} - Abort the running query
        - {"type": "permission_response", "request_id": "...", "allowed": true/false,
            "deny_message": "..."} - Answer a permission request
        - {"type": "user_input_response", "request_id": "...", "answer": "...",
            "was_freeform": true} - Answer a user-input request
        - {"type": "ping"} - Heartbeat
        - {"type": "close"} - Close connection

        Server sends JSON events (all include "seq"):
        - {"type": "session_ready", "data": {"session_id": ..., "agent_id": ..., "model": ...}}
        - {"type": "text", "data": {"text": "..."}}
        - {"type": "thinking", "data": {"text": "..."}}
        - {"type": "tool_use", "data": {"name": "...", "input": {...}, "id": "..."}}
        - {"type": "tool_result", "data": {"name": "...", "output": ..., "is_error": false}}
        - {"type": "permission_request", "data": {"request_id": "...", "tool_name": "...",
            "tool_input": {...}}}
        - {"type": "user_input_request", "data": {"request_id": "...", "question": "...",
            "choices": [...], "allow_freeform": true}}
        - {"type": "done", "data": {"response_text": "...", "tool_count": 0}}
        - {"type": "error", "data": {"message": "...", "recoverable": true}}
    """
    await websocket.accept()

    service: AgentService = websocket.app.state.agent_service
    conn = _Connection(websocket)
    current_session: str | None = None
    query_task: asyncio.Task[None] | None = None

    try:
        while True:
            data = await websocket.receive_json()

            try:
                msg = ClientMessage(**data)
            except ValidationError as e:
                await conn.error(f"Invalid message: {e}")
                continue

            if msg.type == "new_session":
                try:
                    handle = await service.create_session(msg.session_id, msg.model, msg.agent_id)
                    current_session = msg.session_id or handle.session_id
                    await _session_ready(conn, service, current_session)
                except Exception as e:
                    logger.exception("Failed to create session")
                    await conn.error(f"Failed to create session: {e}")

            elif msg.type == "resume_session":
                if not msg.session_id:
                    await conn.error("resume_session requires session_id")
                    continue

                try:
                    await service.get_or_create_session(msg.session_id, msg.model, msg.agent_id)
                    current_session = msg.session_id
                    await _session_ready(conn, service, current_session)
                except Exception as e:
                    logger.exception("Failed to resume session")
                    await conn.error(f"Failed to resume session: {e}")

            elif msg.type == "query":
                if not current_session:
                    await conn.error(
                        "No active session. Send new_session or resume_session first."
                    )
                    continue

                if not msg.prompt:
                    await conn.error("query requires prompt")
                    continue

                if query_task is not None and not query_task.done():
                    await conn.error("A query is already running for this session")
                    continue

                query_task = asyncio.create_task(
                    _stream_query(conn, service, current_session, msg)
                )

            elif msg.type == "cancel":
                if not current_session:
                    await conn.error("No active session to cancel")
                    continue

                if query_task is None or query_task.done():
                    await conn.error("No active query to cancel")
                    continue

                if not await service.abort(current_session):
                    await conn.error("Failed to cancel query")

            elif msg.type == "permission_response":
                if not msg.request_id:
                    await conn.error("permission_response requires request_id")
                    continue

                if msg.allowed is None:
                    await conn.error("permission_response requires allowed field")
                    continue

                if not service.resolve_permission(
                    msg.request_id, msg.allowed, msg.deny_message or ""
                ):
                    await conn.error(f"Unknown permission request: {msg.request_id}")

            elif msg.type == "user_input_response":
                if not msg.request_id:
                    await conn.error("user_input_response requires request_id")
                    continue

                if msg.answer is None:
                    await conn.error("user_input_response requires answer")
                    continue

                was_freeform = True if msg.was_freeform is None else msg.was_freeform
                if not service.resolve_user_input(msg.request_id, msg.answer, was_freeform):
                    await conn.error(f"Unknown user input request: {msg.request_id}")

            elif msg.type == "ping":
                await conn.send_json({"type": "pong", "timestamp": time.time()})

            elif msg.type == "close":
                break

            else:
                await conn.error(f"Unknown message type: {msg.type}")

    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected")
    except asyncio.CancelledError:
        logger.debug("WebSocket cancelled")
    except Exception as e:
        logger.exception("WebSocket error")
        try:
            await conn.error(f"WebSocket error: {e}", recoverable=False)
        except (RuntimeError, WebSocketDisconnect):
            pass
    finally:
        if query_task is not None and not query_task.done():
            query_task.cancel()
            try:
                await query_task
            except (asyncio.CancelledError, Exception):
                pass
        try:
            await websocket.close()
        except (RuntimeError, asyncio.CancelledError):
            pass  # Already closed or cancelled


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(request: Request):
    """List runtime-known and live sessions."""
    service = _get_service(request)
    listings = await service.list_sessions()
    listings.sort(key=lambda s: s.modified_at or 0, reverse=True)
    return SessionListResponse(
        sessions=[
            SessionResponse(
                session_id=s.session_id,
                modified_at=s.modified_at,
                live=s.live,
                agent_id=s.agent_id,
            )
            for s in listings
        ]
    )


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, request: Request):
    """Destroy a session and purge its cached state."""
    service = _get_service(request)
    await service.delete_session(session_id)
    return {"status": "deleted", "session_id": session_id}


@router.get("/sessions/{session_id}/messages", response_model=MessageHistoryResponse)
async def get_session_messages(session_id: str, request: Request, limit: int = 100):
    """Get message history for a session."""
    service = _get_service(request)
    entries = await service.get_messages(session_id)
    has_more = len(entries) > limit
    if has_more:
        entries = entries[-limit:]
    return MessageHistoryResponse(
        messages=[ConversationMessage(role=e.role, content=e.content) for e in entries],
        has_more=has_more,
    )


@router.post("/sessions/{session_id}/abort", response_model=AbortResponse)
async def abort_session(session_id: str, request: Request):
    """Abort the running exchange for a session."""
    service = _get_service(request)
    aborted = await service.abort(session_id)
    return AbortResponse(session_id=session_id, aborted=aborted)


@router.get("/sessions/{session_id}/agent", response_model=SessionAgentResponse)
async def get_session_agent(session_id: str, request: Request):
    service = _get_service(request)
    return SessionAgentResponse(
        session_id=session_id, agent_id=service.get_session_agent(session_id)
    )


@router.put("/sessions/{session_id}/agent", response_model=SessionAgentResponse)
async def set_session_agent(session_id: str, body: SetAgentRequest, request: Request):
    """Associate a session with an agent. Applies to future session creation."""
    service = _get_service(request)
    try:
        service.set_session_agent(session_id, body.agent_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return SessionAgentResponse(session_id=session_id, agent_id=body.agent_id)


@router.get("/agents", response_model=AgentListResponse)
async def list_agents(request: Request):
    """List configured agents."""
    service = _get_service(request)
    assert service.catalog is not None
    default_id = service.catalog.default_agent_id
    return AgentListResponse(
        agents=[AgentInfo.from_config(a, default_id) for a in service.list_agents()]
    )


@router.get("/models", response_model=AvailableModelsResponse)
async def list_models(request: Request):
    """List available Claude models."""
    service = _get_service(request)
    return AvailableModelsResponse(models=service.list_models())
