"""Streaming event helpers for agent responses."""

from __future__ import annotations

from typing import Any

from relay_shared.agent_models import StreamEvent, StreamEventType


def session_ready_event(
    session_id: str,
    *,
    agent_id: str | None = None,
    model: str | None = None,
) -> StreamEvent:
    """Create a session_ready event."""
    return StreamEvent(
        type=StreamEventType.SESSION_READY,
        data={"session_id": session_id, "agent_id": agent_id, "model": model},
    )


def text_event(text: str) -> StreamEvent:
    return StreamEvent(type=StreamEventType.TEXT, data={"text": text})


def thinking_event(text: str) -> StreamEvent:
    return StreamEvent(type=StreamEventType.THINKING, data={"text": text})


def tool_use_event(name: str, tool_input: Any, tool_call_id: str | None = None) -> StreamEvent:
    """Create a tool_use event."""
    data: dict[str, Any] = {"name": name, "input": tool_input}
    if tool_call_id:
        data["id"] = tool_call_id
    return StreamEvent(type=StreamEventType.TOOL_USE, data=data)


def tool_result_event(name: str, result: Any, tool_call_id: str | None = None) -> StreamEvent:
    """Create a tool_result event.

    Failures arrive as ``{"result_type": "failure", "error": ...}`` and are flagged.
    """
    is_error = isinstance(result, dict) and result.get("result_type") == "failure"
    data: dict[str, Any] = {"name": name, "output": result, "is_error": is_error}
    if tool_call_id:
        data["tool_call_id"] = tool_call_id
    return StreamEvent(type=StreamEventType.TOOL_RESULT, data=data)


def permission_request_event(
    request_id: str, tool_name: str, tool_input: dict[str, Any]
) -> StreamEvent:
    return StreamEvent(
        type=StreamEventType.PERMISSION_REQUEST,
        data={"request_id": request_id, "tool_name": tool_name, "tool_input": tool_input},
    )


def user_input_request_event(
    request_id: str,
    question: str,
    choices: list[str] | None,
    allow_freeform: bool,
) -> StreamEvent:
    return StreamEvent(
        type=StreamEventType.USER_INPUT_REQUEST,
        data={
            "request_id": request_id,
            "question": question,
            "choices": choices,
            "allow_freeform": allow_freeform,
        },
    )


def error_event(message: str, recoverable: bool = True) -> StreamEvent:
    """Create an error event."""
    return StreamEvent(
        type=StreamEventType.ERROR,
        data={"message": message, "recoverable": recoverable},
    )


def done_event(response_text: str, tool_count: int = 0, partial: bool = False) -> StreamEvent:
    """Create a done event.

    Args:
        response_text: The full response text
        tool_count: Number of tool calls started during the exchange
        partial: True when the exchange timed out and the text is incomplete
    """
    data: dict[str, Any] = {"response_text": response_text, "tool_count": tool_count}
    if partial:
        data["partial"] = True
    return StreamEvent(type=StreamEventType.DONE, data=data)
