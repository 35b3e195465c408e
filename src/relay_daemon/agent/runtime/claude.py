"""Agent runtime backed by the Claude Agent SDK."""

from __future__ import annotations

import asyncio
import json
import uuid
from collections import defaultdict
from collections.abc import Callable
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)
from claude_agent_sdk.types import (
    PermissionResultAllow,
    PermissionResultDeny,
    ToolPermissionContext,
)
from claude_agent_sdk.types import (
    StreamEvent as SDKStreamEvent,
)
from loguru import logger

from relay_shared.agent_models import Attachment

from ..errors import SessionNotFoundError
from .base import (
    AgentRuntime,
    EventHandler,
    PermissionRequest,
    RuntimeEvent,
    RuntimeEventType,
    RuntimeSession,
    SessionInfo,
    SessionOptions,
    Unsubscribe,
    UserInputRequest,
)

ASK_USER_TOOL = "AskUserQuestion"


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def transcript_dir(working_dir: str) -> Path:
    """Directory where Claude Code keeps JSONL transcripts for a working dir."""
    cwd = working_dir
    if cwd != "/" and cwd.endswith("/"):
        cwd = cwd.rstrip("/")
    return Path.home() / ".claude" / "projects" / cwd.replace("/", "-")


def _tool_result_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(c.get("text", "") if isinstance(c, dict) else str(c) for c in content)
    return str(content)


def init_session_id(message: object) -> str | None:
    """Claude session id from a system init message, if this is one."""
    if isinstance(message, SystemMessage) and getattr(message, "subtype", None) == "init":
        return message.data.get("session_id")
    return None


def translate_message(message: object, *, streaming: bool = True) -> list[RuntimeEvent]:
    """Translate one SDK message into runtime events.

    Tool starts are emitted before the assistant message that requested them so
    the message never looks terminal while its tools are still pending.
    """
    events: list[RuntimeEvent] = []

    if isinstance(message, SDKStreamEvent):
        raw = message.event
        if raw.get("type") != "content_block_delta":
            return events
        delta = raw.get("delta", {})
        delta_type = delta.get("type", "")
        if delta_type == "text_delta" and delta.get("text"):
            events.append(
                RuntimeEvent(RuntimeEventType.CONTENT_DELTA, {"delta_content": delta["text"]})
            )
        elif delta_type == "thinking_delta" and delta.get("thinking"):
            events.append(
                RuntimeEvent(RuntimeEventType.REASONING_DELTA, {"delta_content": delta["thinking"]})
            )
        return events

    if isinstance(message, AssistantMessage):
        text_parts: list[str] = []
        tool_requests: list[dict[str, Any]] = []
        for block in message.content or []:
            if isinstance(block, TextBlock):
                text_parts.append(block.text)
            elif isinstance(block, ThinkingBlock):
                if not streaming and block.thinking:
                    events.append(
                        RuntimeEvent(
                            RuntimeEventType.REASONING_DELTA, {"delta_content": block.thinking}
                        )
                    )
            elif isinstance(block, ToolUseBlock):
                request = {"call_id": block.id, "tool_name": block.name, "arguments": block.input}
                tool_requests.append(request)
                events.append(RuntimeEvent(RuntimeEventType.TOOL_START, dict(request)))
        events.append(
            RuntimeEvent(
                RuntimeEventType.MESSAGE,
                {"content": "".join(text_parts), "tool_requests": tool_requests},
            )
        )
        return events

    if isinstance(message, UserMessage):
        content = message.content if isinstance(message.content, list) else []
        for block in content:
            if not isinstance(block, ToolResultBlock):
                continue
            output = _tool_result_text(block.content)
            if block.is_error:
                events.append(
                    RuntimeEvent(
                        RuntimeEventType.TOOL_ERROR,
                        {"call_id": block.tool_use_id, "error": output or "Tool execution failed"},
                    )
                )
            else:
                events.append(
                    RuntimeEvent(
                        RuntimeEventType.TOOL_COMPLETE,
                        {"call_id": block.tool_use_id, "result": output},
                    )
                )
        return events

    if isinstance(message, ResultMessage):
        if message.is_error:
            events.append(
                RuntimeEvent(
                    RuntimeEventType.SESSION_ERROR,
                    {"message": message.result or f"Runtime error: {message.subtype}"},
                )
            )
        else:
            events.append(RuntimeEvent(RuntimeEventType.SESSION_IDLE, {}))
    return events


def read_transcript(path: Path) -> list[RuntimeEvent]:
    """Rebuild user/assistant message events from a Claude Code JSONL transcript.

    Consecutive assistant entries belong to one turn and are merged.
    """
    events: list[RuntimeEvent] = []
    if not path.exists():
        return events

    with path.open() as f:
        for line in f:
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue

            entry_type = entry.get("type")
            if entry_type not in ("user", "assistant"):
                continue

            blocks = entry.get("message", {}).get("content", [])
            if isinstance(blocks, str):
                blocks = [{"type": "text", "text": blocks}]
            text = "".join(
                block if isinstance(block, str) else block.get("text", "")
                for block in blocks
                if isinstance(block, str) or block.get("type") == "text"
            )
            if not text:
                continue

            if entry_type == "user":
                events.append(RuntimeEvent(RuntimeEventType.USER_MESSAGE, {"content": text}))
            elif events and events[-1].type is RuntimeEventType.MESSAGE:
                events[-1].data["content"] += text
            else:
                events.append(RuntimeEvent(RuntimeEventType.MESSAGE, {"content": text}))
    return events


class ClaudeRuntimeSession(RuntimeSession):
    """One ClaudeSDKClient, exposed as a named event stream."""

    def __init__(
        self,
        session_id: str,
        options: SessionOptions,
        *,
        working_dir: str,
        cli_path: str | None = None,
        resume_id: str | None = None,
        on_claude_session_id: Callable[[str, str], None] | None = None,
    ):
        self._session_id = session_id
        self._options = options
        self._working_dir = working_dir
        self._cli_path = cli_path
        self._resume_id = resume_id
        self._on_claude_session_id = on_claude_session_id

        self._claude_session_id: str | None = resume_id
        self._client: ClaudeSDKClient | None = None
        self._exit_stack: AsyncExitStack | None = None
        self._pump: asyncio.Task[None] | None = None
        self._listeners: dict[RuntimeEventType, list[EventHandler]] = defaultdict(list)
        self._log: list[RuntimeEvent] = []

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def claude_session_id(self) -> str | None:
        return self._claude_session_id

    def _build_options(self) -> ClaudeAgentOptions:
        kwargs: dict[str, Any] = {
            "cwd": self._working_dir,
            "model": self._options.model,
            "setting_sources": ["user", "project", "local"],
            "include_partial_messages": self._options.streaming,
            "can_use_tool": self._can_use_tool,
            "mcp_servers": self._options.mcp_servers,
            "resume": self._resume_id,
        }
        if self._options.tools is not None:
            kwargs["allowed_tools"] = list(self._options.tools)

        system_message = self._options.system_message
        if system_message is not None and system_message.content:
            if system_message.mode == "replace":
                kwargs["system_prompt"] = system_message.content
            else:
                kwargs["system_prompt"] = {
                    "type": "preset",
                    "preset": "claude_code",
                    "append": system_message.content,
                }

        if self._cli_path:
            kwargs["cli_path"] = self._cli_path
        if self._resume_id is None and _is_uuid(self._session_id):
            # keep the transcript id equal to ours so the session can be resumed by id
            kwargs["extra_args"] = {"session-id": self._session_id}
        return ClaudeAgentOptions(**kwargs)

    async def start(self) -> None:
        self._exit_stack = AsyncExitStack()
        self._client = ClaudeSDKClient(options=self._build_options())
        await self._exit_stack.enter_async_context(self._client)
        logger.debug(
            "Claude session {} started model={} resume={}",
            self._session_id,
            self._options.model,
            self._resume_id,
        )

    def on(self, event_type: RuntimeEventType, handler: EventHandler) -> Unsubscribe:
        handlers = self._listeners[event_type]
        handlers.append(handler)

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def _emit(self, event: RuntimeEvent) -> None:
        if event.type in (RuntimeEventType.USER_MESSAGE, RuntimeEventType.MESSAGE):
            if event.data.get("content"):
                self._log.append(event)
        for handler in list(self._listeners[event.type]):
            handler(event)

    async def send(self, prompt: str, attachments: list[Attachment] | None = None) -> None:
        if self._client is None:
            raise RuntimeError("Session not started")
        if self._pump is not None and not self._pump.done():
            raise RuntimeError("An exchange is already running on this session")

        text = prompt
        if attachments:
            text = "\n".join([prompt, *(f"@{a.path}" for a in attachments)])

        self._emit(RuntimeEvent(RuntimeEventType.USER_MESSAGE, {"content": prompt}))
        await self._client.query(text)
        self._pump = asyncio.create_task(self._pump_responses())

    async def _pump_responses(self) -> None:
        assert self._client is not None
        try:
            async for message in self._client.receive_response():
                claude_id = init_session_id(message)
                if claude_id:
                    self._claude_session_id = claude_id
                    if self._on_claude_session_id is not None:
                        self._on_claude_session_id(self._session_id, claude_id)
                    continue
                for event in translate_message(message, streaming=self._options.streaming):
                    self._emit(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Error streaming response for session {}", self._session_id)
            self._emit(RuntimeEvent(RuntimeEventType.SESSION_ERROR, {"message": str(e)}))

    async def _can_use_tool(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        context: ToolPermissionContext,
    ) -> PermissionResultAllow | PermissionResultDeny:
        if tool_name == ASK_USER_TOOL:
            return await self._ask_user(tool_input)

        response = await self._options.on_permission_request(
            PermissionRequest(tool_name=tool_name, arguments=tool_input)
        )
        if response.approved:
            return PermissionResultAllow()
        return PermissionResultDeny(message=response.message or response.outcome.value)

    async def _ask_user(self, tool_input: dict[str, Any]) -> PermissionResultAllow:
        questions = tool_input.get("questions") or [{"question": tool_input.get("question", "")}]
        answers: dict[str, str] = {}
        for question in questions:
            text = question.get("question", "")
            choices = [o["label"] for o in question.get("options") or [] if o.get("label")]
            response = await self._options.on_user_input_request(
                UserInputRequest(question=text, choices=choices or None, allow_freeform=True)
            )
            answers[text] = response.answer
        return PermissionResultAllow(updated_input={**tool_input, "answers": answers})

    async def abort(self) -> None:
        if self._client is not None:
            await self._client.interrupt()

    async def destroy(self) -> None:
        if self._pump is not None and not self._pump.done():
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
        self._pump = None
        if self._exit_stack is not None:
            exit_stack, self._exit_stack = self._exit_stack, None
            await exit_stack.aclose()
        self._client = None
        self._listeners.clear()
        logger.debug("Claude session {} closed", self._session_id)

    async def get_messages(self) -> list[RuntimeEvent]:
        if self._claude_session_id:
            path = transcript_dir(self._working_dir) / f"{self._claude_session_id}.jsonl"
            events = await asyncio.to_thread(read_transcript, path)
            if events:
                return events
        return list(self._log)


class ClaudeRuntime(AgentRuntime):
    """Creates and resumes ClaudeRuntimeSessions for one working directory."""

    def __init__(self, working_dir: str, cli_path: str | None = None):
        self._working_dir = working_dir
        self._cli_path = cli_path
        self._sessions: dict[str, ClaudeRuntimeSession] = {}
        self._claude_ids: dict[str, str] = {}

    def _remember_claude_id(self, session_id: str, claude_session_id: str) -> None:
        self._claude_ids[session_id] = claude_session_id

    def _transcript_path(self, claude_session_id: str) -> Path:
        return transcript_dir(self._working_dir) / f"{claude_session_id}.jsonl"

    def _new_session(
        self, session_id: str, options: SessionOptions, resume_id: str | None
    ) -> ClaudeRuntimeSession:
        return ClaudeRuntimeSession(
            session_id,
            options,
            working_dir=self._working_dir,
            cli_path=self._cli_path,
            resume_id=resume_id,
            on_claude_session_id=self._remember_claude_id,
        )

    async def start(self) -> None:
        logger.debug("Claude runtime ready in {}", self._working_dir)

    async def stop(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            try:
                await session.destroy()
            except Exception as e:
                logger.warning("Error closing Claude session {}: {}", session.session_id, e)

    async def create_session(self, options: SessionOptions) -> RuntimeSession:
        session_id = options.session_id or str(uuid.uuid4())
        session = self._new_session(session_id, options, resume_id=None)
        await session.start()
        self._sessions[session_id] = session
        if _is_uuid(session_id):
            self._claude_ids[session_id] = session_id
        return session

    async def resume_session(self, session_id: str, options: SessionOptions) -> RuntimeSession:
        claude_id = self._claude_ids.get(session_id, session_id)
        if not self._transcript_path(claude_id).exists():
            raise SessionNotFoundError(f"Unknown session: {session_id}")
        session = self._new_session(session_id, options, resume_id=claude_id)
        await session.start()
        self._sessions[session_id] = session
        return session

    async def list_sessions(self) -> list[SessionInfo]:
        directory = transcript_dir(self._working_dir)
        if not directory.exists():
            return []
        by_claude_id = {claude_id: sid for sid, claude_id in self._claude_ids.items()}
        return [
            SessionInfo(
                session_id=by_claude_id.get(path.stem, path.stem),
                modified_at=path.stat().st_mtime,
            )
            for path in sorted(directory.glob("*.jsonl"))
        ]

    async def delete_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            await session.destroy()
        claude_id = self._claude_ids.pop(session_id, session_id)
        self._transcript_path(claude_id).unlink(missing_ok=True)
