from __future__ import annotations

import asyncio

import pytest

from relay_daemon.agent.exchange import ExchangeCallbacks
from relay_daemon.agent.requests import ResponderKind
from relay_daemon.agent.runtime.base import (
    PermissionOutcome,
    PermissionRequest,
    PermissionResponse,
    RuntimeEvent,
    UserInputRequest,
)
from relay_daemon.agent.runtime.base import RuntimeEventType as E
from relay_daemon.agent.service import AgentService
from relay_shared.agent_models import AgentConfig, PermissionPolicy, StreamEventType
from relay_shared.config import ExchangeConfig, RelayConfig

from conftest import reply_with


def _service(runtime, **config) -> AgentService:
    config.setdefault("exchange", ExchangeConfig(chunk_delay_ms=0, drain_delay_ms=0))
    return AgentService(runtime=runtime, config=RelayConfig(**config))


def _ask_permission_then_reply(session, prompt: str) -> None:
    async def flow() -> None:
        response = await session.options.on_permission_request(
            PermissionRequest(tool_name="bash", arguments={"cmd": "ls"})
        )
        text = "ran" if response.approved else f"denied: {response.message}"
        session.emit(E.CONTENT_DELTA, delta_content=text)
        session.emit(E.SESSION_IDLE)

    asyncio.get_running_loop().create_task(flow())


def _ask_user_then_reply(session, prompt: str) -> None:
    async def flow() -> None:
        response = await session.options.on_user_input_request(
            UserInputRequest(question="Color?", choices=["red", "blue"])
        )
        session.emit(E.CONTENT_DELTA, delta_content=f"picked {response.answer}")
        session.emit(E.SESSION_IDLE)

    asyncio.get_running_loop().create_task(flow())


@pytest.mark.asyncio
async def test_successful_exchange_is_cached(dummy_runtime) -> None:
    dummy_runtime.on_send = reply_with(
        (E.CONTENT_DELTA, {"delta_content": "hi there"}), (E.SESSION_IDLE, {})
    )
    service = _service(dummy_runtime)

    result = await service.send_message("s1", "hello")

    assert result.content == "hi there"
    assert [e.to_dict() for e in await service.get_messages("s1")] == [
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "hi there"},
    ]


@pytest.mark.asyncio
async def test_failed_exchange_is_not_cached(dummy_runtime) -> None:
    dummy_runtime.on_send = reply_with((E.SESSION_ERROR, {"message": "overloaded"}))
    service = _service(dummy_runtime)
    errors: list[Exception] = []

    result = await service.send_message("s1", "hello", ExchangeCallbacks(on_error=errors.append))

    assert not result.ok
    assert [str(e) for e in errors] == ["overloaded"]
    assert service.cache.get("s1") is None


@pytest.mark.asyncio
async def test_session_open_failure_reaches_on_error(dummy_runtime) -> None:
    dummy_runtime.create_error = RuntimeError("no backend")
    service = _service(dummy_runtime)
    errors: list[Exception] = []

    result = await service.send_message("s1", "hello", ExchangeCallbacks(on_error=errors.append))

    assert str(result.error) == "no backend"
    assert errors == [result.error]


@pytest.mark.asyncio
async def test_resumed_session_history_is_rebuilt_before_appending(dummy_runtime) -> None:
    dummy_runtime.known.add("old")
    dummy_runtime.history["old"] = [
        RuntimeEvent(E.USER_MESSAGE, {"content": "q1"}),
        RuntimeEvent(E.TOOL_START, {"call_id": "c1", "tool_name": "bash"}),
        RuntimeEvent(E.MESSAGE, {"content": "a1"}),
        RuntimeEvent(E.MESSAGE, {"content": "   "}),
    ]
    dummy_runtime.on_send = reply_with(
        (E.CONTENT_DELTA, {"delta_content": "a2"}), (E.SESSION_IDLE, {})
    )
    service = _service(dummy_runtime)

    await service.send_message("old", "q2")

    assert [(e.role, e.content) for e in await service.get_messages("old")] == [
        ("user", "q1"),
        ("assistant", "a1"),
        ("user", "q2"),
        ("assistant", "a2"),
    ]


@pytest.mark.asyncio
async def test_get_messages_for_unknown_session_is_empty(dummy_runtime) -> None:
    service = _service(dummy_runtime)

    assert await service.get_messages("ghost") == []


@pytest.mark.asyncio
async def test_responders_are_cleared_after_exchange(dummy_runtime) -> None:
    dummy_runtime.on_send = reply_with((E.SESSION_IDLE, {}))
    service = _service(dummy_runtime)

    async def approve(request):
        return PermissionResponse(PermissionOutcome.APPROVED)

    await service.send_message("s1", "hi", permission_responder=approve)

    assert not service.router.has_responder("s1", ResponderKind.PERMISSION)


@pytest.mark.asyncio
async def test_query_bridges_permission_requests(dummy_runtime) -> None:
    dummy_runtime.on_send = _ask_permission_then_reply
    service = _service(dummy_runtime)
    events = []

    async for event in service.query("s1", "run ls"):
        events.append(event)
        if event.type is StreamEventType.PERMISSION_REQUEST:
            assert event.data["tool_name"] == "bash"
            assert len(service.pending_requests("s1")) == 1
            assert service.resolve_permission(event.data["request_id"], True)

    assert [e.type for e in events] == [
        StreamEventType.PERMISSION_REQUEST,
        StreamEventType.TEXT,
        StreamEventType.DONE,
    ]
    assert events[-1].data["response_text"] == "ran"
    assert service.pending_requests("s1") == []


@pytest.mark.asyncio
async def test_query_permission_denial_carries_message(dummy_runtime) -> None:
    dummy_runtime.on_send = _ask_permission_then_reply
    service = _service(dummy_runtime)
    done = None

    async for event in service.query("s1", "run ls"):
        if event.type is StreamEventType.PERMISSION_REQUEST:
            service.resolve_permission(event.data["request_id"], False, "not today")
        elif event.type is StreamEventType.DONE:
            done = event

    assert done.data["response_text"] == "denied: not today"


@pytest.mark.asyncio
async def test_auto_approve_agent_never_asks(dummy_runtime) -> None:
    dummy_runtime.on_send = _ask_permission_then_reply
    service = _service(
        dummy_runtime,
        agents=[
            AgentConfig(id="ops", name="ops", permission_policy=PermissionPolicy.AUTO_APPROVE)
        ],
    )

    events = [event async for event in service.query("s1", "run ls")]

    assert [e.type for e in events] == [StreamEventType.TEXT, StreamEventType.DONE]
    assert events[-1].data["response_text"] == "ran"


@pytest.mark.asyncio
async def test_query_bridges_user_input_requests(dummy_runtime) -> None:
    dummy_runtime.on_send = _ask_user_then_reply
    service = _service(dummy_runtime)
    done = None

    async for event in service.query("s1", "choose"):
        if event.type is StreamEventType.USER_INPUT_REQUEST:
            assert event.data["choices"] == ["red", "blue"]
            assert not service.resolve_permission(event.data["request_id"], True)
            assert service.resolve_user_input(event.data["request_id"], "blue", False)
        elif event.type is StreamEventType.DONE:
            done = event

    assert done.data["response_text"] == "picked blue"


@pytest.mark.asyncio
async def test_query_reports_session_errors(dummy_runtime) -> None:
    dummy_runtime.on_send = reply_with((E.SESSION_ERROR, {"message": "overloaded"}))
    service = _service(dummy_runtime)

    events = [event async for event in service.query("s1", "hi")]

    assert [e.type for e in events] == [StreamEventType.ERROR]
    assert events[0].data == {"message": "overloaded", "recoverable": True}


def test_resolving_unknown_request_returns_false(dummy_runtime) -> None:
    service = _service(dummy_runtime)

    assert not service.resolve_permission("nope", True)
    assert not service.resolve_user_input("nope", "answer")


@pytest.mark.asyncio
async def test_close_all_destroys_sessions_and_stops_runtime(dummy_runtime) -> None:
    service = _service(dummy_runtime)
    await service.start()
    a = await service.create_session("a")
    b = await service.create_session("b")

    await service.close_all()

    assert dummy_runtime.started and dummy_runtime.stopped
    assert (a.destroyed, b.destroyed) == (1, 1)
    assert service.registry.live_session_ids() == []


@pytest.mark.asyncio
async def test_delete_session_reaches_runtime(dummy_runtime) -> None:
    service = _service(dummy_runtime)
    await service.create_session("a")

    await service.delete_session("a")

    assert dummy_runtime.deleted == ["a"]
    assert service.registry.get("a") is None


def test_list_models_and_agents(dummy_runtime) -> None:
    service = _service(dummy_runtime)

    assert [m.id for m in service.list_models()] == [
        "claude-opus-4-5",
        "claude-sonnet-4-5",
        "claude-haiku-4-5",
    ]
    assert [a.id for a in service.list_agents()] == ["default"]


@pytest.mark.asyncio
async def test_unanswered_permission_is_denied_when_exchange_times_out(dummy_runtime) -> None:
    outcomes: list[PermissionResponse] = []

    def ask_and_wait(session, prompt: str) -> None:
        async def flow() -> None:
            outcomes.append(
                await session.options.on_permission_request(
                    PermissionRequest(tool_name="bash", arguments={"cmd": "rm -rf build"})
                )
            )

        asyncio.get_running_loop().create_task(flow())

    dummy_runtime.on_send = ask_and_wait
    service = _service(
        dummy_runtime,
        exchange=ExchangeConfig(
            timeout_seconds=0.05,
            responder_timeout_seconds=5,
            chunk_delay_ms=0,
            drain_delay_ms=0,
        ),
    )

    events = [event async for event in service.query("s1", "clean up")]
    for _ in range(3):
        await asyncio.sleep(0)

    assert [e.type for e in events] == [
        StreamEventType.PERMISSION_REQUEST,
        StreamEventType.ERROR,
    ]
    assert service.pending_requests("s1") == []
    assert [o.outcome for o in outcomes] == [PermissionOutcome.DENIED_BY_USER]
    assert not service.resolve_permission(events[0].data["request_id"], True)


@pytest.mark.asyncio
async def test_unanswered_user_input_gets_empty_answer_when_exchange_ends(dummy_runtime) -> None:
    answers = []

    def ask_then_go_idle(session, prompt: str) -> None:
        async def flow() -> None:
            loop = asyncio.get_running_loop()
            question = loop.create_task(
                session.options.on_user_input_request(UserInputRequest(question="Name?"))
            )
            for _ in range(10):
                await asyncio.sleep(0)
            session.emit(E.CONTENT_DELTA, delta_content="hello")
            session.emit(E.SESSION_IDLE)
            answers.append(await question)

        asyncio.get_running_loop().create_task(flow())

    dummy_runtime.on_send = ask_then_go_idle
    service = _service(dummy_runtime)

    events = [event async for event in service.query("s1", "greet me")]
    for _ in range(3):
        await asyncio.sleep(0)

    assert [e.type for e in events] == [
        StreamEventType.USER_INPUT_REQUEST,
        StreamEventType.TEXT,
        StreamEventType.DONE,
    ]
    assert service.pending_requests("s1") == []
    assert [(a.answer, a.was_freeform) for a in answers] == [("", False)]


@pytest.mark.asyncio
async def test_responder_wait_is_capped_by_exchange_timeout(dummy_runtime) -> None:
    outcomes: list[PermissionResponse] = []
    dummy_runtime.on_send = lambda session, prompt: asyncio.get_running_loop().create_task(
        _record_permission(session, outcomes)
    )
    service = _service(
        dummy_runtime,
        exchange=ExchangeConfig(
            timeout_seconds=0.05,
            responder_timeout_seconds=5,
            chunk_delay_ms=0,
            drain_delay_ms=0,
        ),
    )

    async def never_answers(request):
        await asyncio.Event().wait()

    result = await asyncio.wait_for(
        service.send_message("s1", "hi", permission_responder=never_answers), timeout=1
    )
    await asyncio.sleep(0.02)

    assert not result.ok
    assert [o.outcome for o in outcomes] == [PermissionOutcome.DENIED_BY_USER]


async def _record_permission(session, outcomes: list) -> None:
    outcomes.append(
        await session.options.on_permission_request(
            PermissionRequest(tool_name="bash", arguments={})
        )
    )


@pytest.mark.asyncio
async def test_failing_on_error_callback_does_not_escape(dummy_runtime) -> None:
    dummy_runtime.create_error = RuntimeError("no backend")
    service = _service(dummy_runtime)

    def explode(error: Exception) -> None:
        raise ValueError("callback bug")

    result = await service.send_message("s1", "hello", ExchangeCallbacks(on_error=explode))

    assert str(result.error) == "no backend"
