"""Single send/respond exchange over a runtime session.

An ``Exchange`` subscribes to the session's raw event stream, feeds tool events
through a ``ToolCallTracker`` and decides the one instant the exchange is done.
Every raw event goes through ``dispatch``; ``_finalize`` is the only transition
into ``FINALIZED`` and the only place a terminal callback fires.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from relay_shared.agent_models import Attachment

from .errors import ExchangeTimeoutError, RuntimeSessionError
from .runtime.base import RuntimeEvent, RuntimeEventType, RuntimeSession, Unsubscribe
from .tools import ToolCallTracker, ToolOutcome

DEFAULT_TIMEOUT = 300.0
DEFAULT_DRAIN_DELAY = 0.05

SUBSCRIBED_EVENTS = (
    RuntimeEventType.CONTENT_DELTA,
    RuntimeEventType.REASONING_DELTA,
    RuntimeEventType.TOOL_START,
    RuntimeEventType.TOOL_COMPLETE,
    RuntimeEventType.TOOL_ERROR,
    RuntimeEventType.MESSAGE,
    RuntimeEventType.SESSION_ERROR,
    RuntimeEventType.SESSION_IDLE,
)

Sleep = Callable[[float], Awaitable[Any]]


class ExchangeState(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    AWAITING_TOOLS = "awaiting-tools"
    FINALIZED = "finalized"


@dataclass
class ExchangeCallbacks:
    """Caller-facing channels. All optional; all invoked on the event loop."""

    on_delta: Callable[[str], None] | None = None
    on_reasoning_delta: Callable[[str], None] | None = None
    on_tool_call: Callable[[str, Any, str], None] | None = None
    on_tool_result: Callable[[str, Any, str], None] | None = None
    on_complete: Callable[[str], None] | None = None
    on_error: Callable[[Exception], None] | None = None


@dataclass
class ExchangeResult:
    content: str = ""
    error: Exception | None = None
    partial: bool = False
    tool_calls: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class FallbackStreaming:
    """Replays a non-streamed reply as fixed-size chunks.

    ``sleep`` is injectable so tests can run without wall-clock waits.
    """

    chunk_size: int = 24
    delay: float = 0.015
    sleep: Sleep = field(default=asyncio.sleep)

    def chunks(self, content: str) -> list[str]:
        size = max(1, self.chunk_size)
        return [content[i : i + size] for i in range(0, len(content), size)]

    async def replay(self, content: str, emit: Callable[[str], None]) -> None:
        for chunk in self.chunks(content):
            emit(chunk)
            await self.sleep(self.delay)


class Exchange:
    """Runs exactly one exchange to a single terminal outcome."""

    def __init__(
        self,
        session: RuntimeSession,
        prompt: str,
        callbacks: ExchangeCallbacks | None = None,
        *,
        attachments: list[Attachment] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        fallback: FallbackStreaming | None = None,
        drain_delay: float = DEFAULT_DRAIN_DELAY,
    ) -> None:
        self.session = session
        self.prompt = prompt
        self.attachments = attachments
        self.callbacks = callbacks or ExchangeCallbacks()
        self.timeout = timeout
        self.fallback = fallback or FallbackStreaming()
        self.drain_delay = drain_delay

        self.state = ExchangeState.PENDING
        self.tracker = ToolCallTracker()

        self._content = ""
        self._fallback_content = ""
        self._saw_delta = False
        self._tool_calls = 0
        self._started = False
        self._unsubscribers: list[Unsubscribe] = []
        self._timer: asyncio.TimerHandle | None = None
        self._replay_task: asyncio.Task[None] | None = None
        self._result: ExchangeResult | None = None
        self._done = asyncio.Event()
        self._handlers: dict[RuntimeEventType, Callable[[RuntimeEvent], None]] = {
            RuntimeEventType.CONTENT_DELTA: self._on_content_delta,
            RuntimeEventType.REASONING_DELTA: self._on_reasoning_delta,
            RuntimeEventType.TOOL_START: self._on_tool_start,
            RuntimeEventType.TOOL_COMPLETE: self._on_tool_complete,
            RuntimeEventType.TOOL_ERROR: self._on_tool_error,
            RuntimeEventType.MESSAGE: self._on_message,
            RuntimeEventType.SESSION_ERROR: self._on_session_error,
            RuntimeEventType.SESSION_IDLE: self._on_session_idle,
        }

    @property
    def content(self) -> str:
        return self._content

    @property
    def completed(self) -> bool:
        return self.state is ExchangeState.FINALIZED

    @property
    def result(self) -> ExchangeResult | None:
        return self._result

    @property
    def listening(self) -> bool:
        return bool(self._unsubscribers)

    async def run(self) -> ExchangeResult:
        """Send the prompt and wait for the terminal outcome."""
        if self._started:
            raise RuntimeError("Exchange can only be run once")
        self._started = True

        loop = asyncio.get_running_loop()
        for event_type in SUBSCRIBED_EVENTS:
            self._unsubscribers.append(self.session.on(event_type, self.dispatch))
        self._timer = loop.call_later(self.timeout, self._on_timeout)

        try:
            try:
                await self.session.send(self.prompt, self.attachments)
            except Exception as e:
                logger.error("Send failed for session {}: {}", self.session.session_id, e)
                self._finalize(error=e)
            await self._done.wait()
        finally:
            if not self.completed:
                # caller cancelled us; tear down without a terminal callback
                self.state = ExchangeState.FINALIZED
                self._cancel_timers()
                self._detach()

        assert self._result is not None
        return self._result

    def dispatch(self, event: RuntimeEvent) -> None:
        """Single entry point for raw runtime events."""
        handler = self._handlers.get(event.type)
        if handler is None:
            return
        if self.completed and event.type not in (
            RuntimeEventType.TOOL_COMPLETE,
            RuntimeEventType.TOOL_ERROR,
        ):
            logger.debug("Ignoring late {} event", event.type.value)
            return
        handler(event)

    # Event handlers

    def _on_content_delta(self, event: RuntimeEvent) -> None:
        text = event.data.get("delta_content") or ""
        if not text:
            return
        self._saw_delta = True
        self._content += text
        self._advance(ExchangeState.STREAMING)
        self._emit(self.callbacks.on_delta, text)

    def _on_reasoning_delta(self, event: RuntimeEvent) -> None:
        text = event.data.get("delta_content") or ""
        if not text:
            return
        self._advance(ExchangeState.STREAMING)
        self._emit(self.callbacks.on_reasoning_delta, text)

    def _on_tool_start(self, event: RuntimeEvent) -> None:
        call_id = event.data.get("call_id") or ""
        name = event.data.get("tool_name") or call_id
        self.tracker.on_start(call_id, name)
        self._tool_calls += 1
        self.state = ExchangeState.AWAITING_TOOLS
        self._emit(self.callbacks.on_tool_call, name, event.data.get("arguments"), call_id)

    def _on_tool_complete(self, event: RuntimeEvent) -> None:
        call_id = event.data.get("call_id") or ""
        self._forward_tool_outcome(self.tracker.on_complete(call_id, event.data.get("result")))

    def _on_tool_error(self, event: RuntimeEvent) -> None:
        call_id = event.data.get("call_id") or ""
        self._forward_tool_outcome(self.tracker.on_error(call_id, event.data.get("error")))

    def _forward_tool_outcome(self, outcome: ToolOutcome) -> None:
        self._emit(self.callbacks.on_tool_result, outcome.name, outcome.as_result(), outcome.call_id)
        if self.state is ExchangeState.AWAITING_TOOLS and self.tracker.pending == 0:
            self.state = ExchangeState.STREAMING

    def _on_message(self, event: RuntimeEvent) -> None:
        content = event.data.get("content") or ""
        tool_requests = event.data.get("tool_requests") or []

        if tool_requests and not content:
            logger.debug("Terminal message carries tool requests only, waiting")
            return

        if self.tracker.pending > 0:
            if content:
                self._fallback_content = content
            logger.debug("Deferring completion: {} tool call(s) pending", self.tracker.pending)
            return

        if not self._saw_delta and content:
            if self._replay_task is not None:
                return
            logger.debug("No deltas observed, replaying {} chars as chunks", len(content))
            self._content = content
            self._advance(ExchangeState.STREAMING)
            self._replay_task = asyncio.get_running_loop().create_task(self._replay(content))
            return

        if content and not self._content:
            self._content = content
        if self._content:
            self._finalize(content=self._content)

    def _on_session_error(self, event: RuntimeEvent) -> None:
        message = event.data.get("message") or "Unknown session error"
        self._finalize(error=RuntimeSessionError(message))

    def _on_session_idle(self, event: RuntimeEvent) -> None:
        if self.tracker.pending > 0:
            logger.debug("Idle with {} tool call(s) pending, ignoring", self.tracker.pending)
            return
        if self._replay_task is not None:
            return
        self._finalize(content=self._content or self._fallback_content)

    def _on_timeout(self) -> None:
        self._timer = None
        content = self._content or self._fallback_content
        if content:
            logger.warning(
                "Exchange on session {} timed out, returning {} chars of partial content",
                self.session.session_id,
                len(content),
            )
            self._finalize(content=content, partial=True)
        else:
            self._finalize(error=ExchangeTimeoutError())

    async def _replay(self, content: str) -> None:
        await self.fallback.replay(content, lambda chunk: self._emit(self.callbacks.on_delta, chunk))
        self._finalize(content=content)

    # Finalization

    def _finalize(
        self, *, content: str = "", error: Exception | None = None, partial: bool = False
    ) -> bool:
        if self.completed:
            return False
        self.state = ExchangeState.FINALIZED
        self._cancel_timers()

        loop = asyncio.get_running_loop()
        if self.drain_delay > 0:
            loop.call_later(self.drain_delay, self._detach)
        else:
            loop.call_soon(self._detach)

        self._result = ExchangeResult(
            content="" if error else content,
            error=error,
            partial=partial,
            tool_calls=self._tool_calls,
        )
        if error is not None:
            self._emit(self.callbacks.on_error, error)
        else:
            self._emit(self.callbacks.on_complete, content)
        self._done.set()
        return True

    def _cancel_timers(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        task = self._replay_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _detach(self) -> None:
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            try:
                unsubscribe()
            except Exception as e:
                logger.warning("Failed to detach listener: {}", e)

    def _advance(self, state: ExchangeState) -> None:
        if self.state is ExchangeState.PENDING:
            self.state = state

    def _emit(self, callback: Callable[..., None] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Exchange callback {} failed", getattr(callback, "__name__", callback))
