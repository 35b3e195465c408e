"""Agent service: the context object that owns sessions, requests and history."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from relay_shared.agent_models import AgentConfig, Attachment, StreamEvent
from relay_shared.config import RelayConfig

from .catalog import AgentCatalog
from .exchange import Exchange, ExchangeCallbacks, ExchangeResult, FallbackStreaming
from .history import CacheEntry, MessageHistoryCache
from .models import AVAILABLE_MODELS, ModelInfo
from .registry import SessionListing, SessionRegistry
from .requests import RequestRouter, ResponderKind
from .runtime.base import (
    AgentRuntime,
    PermissionOutcome,
    PermissionRequest,
    PermissionResponse,
    RuntimeEventType,
    RuntimeSession,
    UserInputRequest,
    UserInputResponse,
)
from .streaming import (
    done_event,
    error_event,
    permission_request_event,
    text_event,
    thinking_event,
    tool_result_event,
    tool_use_event,
    user_input_request_event,
)

PermissionResponder = Callable[[PermissionRequest], Awaitable[PermissionResponse]]
UserInputResponder = Callable[[UserInputRequest], Awaitable[UserInputResponse]]


@dataclass
class PendingRequest:
    """An out-of-band request waiting for a transport client's answer."""

    request_id: str
    session_id: str
    kind: ResponderKind
    response_event: asyncio.Event = field(default_factory=asyncio.Event)
    response: Any = None


@dataclass
class AgentService:
    """Runs exchanges against a runtime on behalf of transport clients."""

    runtime: AgentRuntime
    config: RelayConfig = field(default_factory=RelayConfig)
    catalog: AgentCatalog | None = None
    fallback: FallbackStreaming | None = None

    router: RequestRouter = field(init=False)
    cache: MessageHistoryCache = field(init=False)
    registry: SessionRegistry = field(init=False)
    _pending: dict[str, PendingRequest] = field(default_factory=dict, init=False)

    def __post_init__(self) -> None:
        exchange_cfg = self.config.exchange
        if self.catalog is None:
            self.catalog = AgentCatalog.from_config(self.config)
        if self.fallback is None:
            self.fallback = FallbackStreaming(
                chunk_size=exchange_cfg.chunk_size,
                delay=exchange_cfg.chunk_delay_ms / 1000,
            )
        self.router = RequestRouter(responder_timeout=exchange_cfg.responder_timeout_seconds)
        self.cache = MessageHistoryCache(max_entries=self.config.history.max_entries)
        self.registry = SessionRegistry(
            self.runtime,
            self.catalog,
            self.router,
            self.cache,
            default_model=self.config.runtime.default_model,
        )

    async def start(self) -> None:
        await self.runtime.start()

    async def close_all(self) -> None:
        """Destroy all live sessions and stop the runtime."""
        await self.registry.close_all()
        try:
            await self.runtime.stop()
        except Exception as e:
            logger.warning("Failed to stop runtime: {}", e)

    # Sessions

    async def create_session(
        self,
        session_id: str | None = None,
        model: str | None = None,
        agent_id: str | None = None,
    ) -> RuntimeSession:
        return await self.registry.create_session(session_id, model, agent_id)

    async def get_or_create_session(
        self,
        session_id: str,
        model: str | None = None,
        agent_id: str | None = None,
    ) -> RuntimeSession:
        return await self.registry.get_or_create(session_id, model, agent_id)

    async def delete_session(self, session_id: str) -> None:
        self._cancel_requests(session_id)
        await self.registry.delete(session_id)

    async def abort(self, session_id: str) -> bool:
        return await self.registry.abort(session_id)

    async def list_sessions(self) -> list[SessionListing]:
        return await self.registry.list_sessions()

    def get_session_agent(self, session_id: str) -> str | None:
        return self.registry.agent_for(session_id)

    def set_session_agent(self, session_id: str, agent_id: str) -> None:
        self.registry.set_agent(session_id, agent_id)

    def list_agents(self) -> list[AgentConfig]:
        assert self.catalog is not None
        return self.catalog.list_agents()

    def list_models(self) -> list[ModelInfo]:
        return list(AVAILABLE_MODELS)

    # History

    async def get_messages(self, session_id: str) -> list[CacheEntry]:
        """Cached history, else a best-effort rebuild from the runtime's log."""
        cached = self.cache.get(session_id)
        if cached is not None:
            return cached
        record = self.registry.get(session_id)
        if record is None:
            return []
        return await self._reconstruct_history(session_id, record.handle)

    async def _reconstruct_history(
        self, session_id: str, session: RuntimeSession
    ) -> list[CacheEntry]:
        try:
            events = await session.get_messages()
        except Exception as e:
            logger.debug("Failed to read runtime history for {}: {}", session_id, e)
            return []

        entries = [
            CacheEntry(
                role="user" if event.type is RuntimeEventType.USER_MESSAGE else "assistant",
                content=event.data.get("content") or "",
            )
            for event in events
            if event.type in (RuntimeEventType.USER_MESSAGE, RuntimeEventType.MESSAGE)
        ]
        return self.cache.seed(session_id, entries)

    # Exchanges

    async def send_message(
        self,
        session_id: str,
        prompt: str,
        callbacks: ExchangeCallbacks | None = None,
        *,
        model: str | None = None,
        agent_id: str | None = None,
        attachments: list[Attachment] | None = None,
        permission_responder: PermissionResponder | None = None,
        user_input_responder: UserInputResponder | None = None,
    ) -> ExchangeResult:
        """Run one exchange. Exactly one of on_complete/on_error fires."""
        callbacks = callbacks or ExchangeCallbacks()
        exchange_cfg = self.config.exchange
        loop = asyncio.get_running_loop()
        deadline = loop.time() + exchange_cfg.timeout_seconds

        def bounded(responder: Callable[[Any], Awaitable[Any]]):
            # a round-trip never outlives the exchange it belongs to
            async def call(request: Any) -> Any:
                remaining = max(deadline - loop.time(), 0.0)
                return await asyncio.wait_for(responder(request), timeout=remaining)

            return call

        try:
            session = await self.registry.get_or_create(session_id, model, agent_id)
        except Exception as e:
            logger.error("Failed to open session {}: {}", session_id, e)
            if callbacks.on_error is not None:
                try:
                    callbacks.on_error(e)
                except Exception:
                    logger.exception("Exchange callback on_error failed")
            return ExchangeResult(error=e)

        if session_id not in self.cache:
            await self._reconstruct_history(session_id, session)

        if permission_responder is not None:
            self.router.set_responder(
                session_id, ResponderKind.PERMISSION, bounded(permission_responder)
            )
        if user_input_responder is not None:
            self.router.set_responder(
                session_id, ResponderKind.USER_INPUT, bounded(user_input_responder)
            )

        try:
            exchange = Exchange(
                session,
                prompt,
                callbacks,
                attachments=attachments,
                timeout=exchange_cfg.timeout_seconds,
                fallback=self.fallback,
                drain_delay=exchange_cfg.drain_delay_ms / 1000,
            )
            result = await exchange.run()
        finally:
            if permission_responder is not None:
                self.router.clear_responder(session_id, ResponderKind.PERMISSION)
            if user_input_responder is not None:
                self.router.clear_responder(session_id, ResponderKind.USER_INPUT)
            self._cancel_requests(session_id)

        if result.ok:
            self.cache.append(session_id, "user", prompt)
            if result.content:
                self.cache.append(session_id, "assistant", result.content)
        return result

    async def query(
        self,
        session_id: str,
        prompt: str,
        *,
        model: str | None = None,
        agent_id: str | None = None,
        attachments: list[Attachment] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run one exchange and yield normalized events for a transport.

        Out-of-band requests are yielded as request events; the transport answers
        them through ``resolve_permission`` / ``resolve_user_input``.
        """
        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()

        callbacks = ExchangeCallbacks(
            on_delta=lambda text: queue.put_nowait(text_event(text)),
            on_reasoning_delta=lambda text: queue.put_nowait(thinking_event(text)),
            on_tool_call=lambda name, args, call_id: queue.put_nowait(
                tool_use_event(name, args, call_id)
            ),
            on_tool_result=lambda name, result, call_id: queue.put_nowait(
                tool_result_event(name, result, call_id)
            ),
        )

        async def ask_permission(request: PermissionRequest) -> PermissionResponse:
            pending = self._open_request(session_id, ResponderKind.PERMISSION)
            queue.put_nowait(
                permission_request_event(pending.request_id, request.tool_name, request.arguments)
            )
            return await self._await_request(pending)

        async def ask_user(request: UserInputRequest) -> UserInputResponse:
            pending = self._open_request(session_id, ResponderKind.USER_INPUT)
            queue.put_nowait(
                user_input_request_event(
                    pending.request_id,
                    request.question,
                    request.choices,
                    request.allow_freeform,
                )
            )
            return await self._await_request(pending)

        async def run() -> None:
            try:
                result = await self.send_message(
                    session_id,
                    prompt,
                    callbacks,
                    model=model,
                    agent_id=agent_id,
                    attachments=attachments,
                    permission_responder=ask_permission,
                    user_input_responder=ask_user,
                )
                if result.ok:
                    queue.put_nowait(done_event(result.content, result.tool_calls, result.partial))
                else:
                    queue.put_nowait(error_event(str(result.error), recoverable=True))
            except Exception as e:
                logger.exception("Query failed")
                queue.put_nowait(error_event(str(e), recoverable=False))
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(run())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        finally:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    # Out-of-band answers

    def _open_request(self, session_id: str, kind: ResponderKind) -> PendingRequest:
        pending = PendingRequest(request_id=str(uuid.uuid4()), session_id=session_id, kind=kind)
        self._pending[pending.request_id] = pending
        return pending

    async def _await_request(self, pending: PendingRequest) -> Any:
        try:
            await pending.response_event.wait()
        finally:
            self._pending.pop(pending.request_id, None)
        return pending.response

    def _cancel_requests(self, session_id: str) -> None:
        """Answer every outstanding request of a session negatively."""
        for request_id, pending in list(self._pending.items()):
            if pending.session_id != session_id:
                continue
            self._pending.pop(request_id, None)
            if pending.kind is ResponderKind.PERMISSION:
                pending.response = PermissionResponse(
                    PermissionOutcome.DENIED_BY_USER,
                    "Exchange ended before the request was answered",
                )
            else:
                pending.response = UserInputResponse(answer="", was_freeform=False)
            pending.response_event.set()
            logger.debug("Cancelled unanswered {} request {}", pending.kind.value, request_id)

    def pending_requests(self, session_id: str) -> list[PendingRequest]:
        return [p for p in self._pending.values() if p.session_id == session_id]

    def resolve_permission(self, request_id: str, allowed: bool, deny_message: str = "") -> bool:
        """Answer a pending permission request. Returns True if the request existed."""
        pending = self._pending.get(request_id)
        if pending is None or pending.kind is not ResponderKind.PERMISSION:
            return False
        if allowed:
            pending.response = PermissionResponse(PermissionOutcome.APPROVED)
        else:
            pending.response = PermissionResponse(
                PermissionOutcome.DENIED_BY_USER, deny_message or "Permission denied by user"
            )
        pending.response_event.set()
        return True

    def resolve_user_input(self, request_id: str, answer: str, was_freeform: bool = True) -> bool:
        """Answer a pending user-input request. Returns True if the request existed."""
        pending = self._pending.get(request_id)
        if pending is None or pending.kind is not ResponderKind.USER_INPUT:
            return False
        pending.response = UserInputResponse(answer=answer, was_freeform=was_freeform)
        pending.response_event.set()
        return True
