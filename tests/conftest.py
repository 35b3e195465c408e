from __future__ import annotations

import sys
from pathlib import Path

import pytest


# Ensure `src/` is importable without installing the package. This runs at import
# time because the fixtures below need the package.
_SRC = Path(__file__).resolve().parents[1] / "src"
if _SRC.exists() and str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

from relay_daemon.agent.errors import SessionNotFoundError  # noqa: E402
from relay_daemon.agent.runtime.base import (  # noqa: E402
    AgentRuntime,
    EventHandler,
    RuntimeEvent,
    RuntimeEventType,
    RuntimeSession,
    SessionInfo,
    SessionOptions,
    Unsubscribe,
)


class DummySession(RuntimeSession):
    """In-memory session. Tests drive it by calling ``emit``."""

    def __init__(self, session_id: str, options: SessionOptions | None = None):
        self._session_id = session_id
        self.options = options
        self.handlers: dict[RuntimeEventType, list[EventHandler]] = {}
        self.sent: list[tuple[str, list | None]] = []
        self.log: list[RuntimeEvent] = []
        self.aborted = 0
        self.destroyed = 0
        self.send_error: Exception | None = None
        self.on_send = None

    @property
    def session_id(self) -> str:
        return self._session_id

    def on(self, event_type: RuntimeEventType, handler: EventHandler) -> Unsubscribe:
        handlers = self.handlers.setdefault(event_type, [])
        handlers.append(handler)

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def listener_count(self) -> int:
        return sum(len(h) for h in self.handlers.values())

    def emit(self, event_type: RuntimeEventType, **data) -> None:
        for handler in list(self.handlers.get(event_type, [])):
            handler(RuntimeEvent(event_type, data))

    async def send(self, prompt: str, attachments=None) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((prompt, attachments))
        if self.on_send is not None:
            self.on_send(self, prompt)

    async def abort(self) -> None:
        self.aborted += 1

    async def destroy(self) -> None:
        self.destroyed += 1

    async def get_messages(self) -> list[RuntimeEvent]:
        return list(self.log)


class DummyRuntime(AgentRuntime):
    """Runtime that hands out DummySessions and remembers what it was asked."""

    def __init__(self):
        self.sessions: dict[str, DummySession] = {}
        self.known: set[str] = set()
        self.created: list[SessionOptions] = []
        self.resumed: list[str] = []
        self.deleted: list[str] = []
        self.history: dict[str, list[RuntimeEvent]] = {}
        self.create_error: Exception | None = None
        self.started = False
        self.stopped = False
        self.on_send = None
        self._counter = 0

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    def _new(self, session_id: str, options: SessionOptions) -> DummySession:
        session = DummySession(session_id, options)
        session.on_send = self.on_send
        session.log = list(self.history.get(session_id, []))
        self.sessions[session_id] = session
        return session

    async def create_session(self, options: SessionOptions) -> RuntimeSession:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(options)
        if options.session_id is None:
            self._counter += 1
            session_id = f"generated-{self._counter}"
        else:
            session_id = options.session_id
        self.known.add(session_id)
        return self._new(session_id, options)

    async def resume_session(self, session_id: str, options: SessionOptions) -> RuntimeSession:
        if session_id not in self.known:
            raise SessionNotFoundError(f"Unknown session: {session_id}")
        self.resumed.append(session_id)
        return self._new(session_id, options)

    async def list_sessions(self) -> list[SessionInfo]:
        return [SessionInfo(session_id=s, modified_at=1.0) for s in sorted(self.known)]

    async def delete_session(self, session_id: str) -> None:
        self.deleted.append(session_id)
        self.known.discard(session_id)


def reply_with(*events: tuple[RuntimeEventType, dict]):
    """Build an ``on_send`` hook that emits the given events synchronously."""

    def on_send(session: DummySession, prompt: str) -> None:
        for event_type, data in events:
            session.emit(event_type, **data)

    return on_send


@pytest.fixture
def dummy_session() -> DummySession:
    return DummySession("session-1")


@pytest.fixture
def dummy_runtime() -> DummyRuntime:
    return DummyRuntime()
