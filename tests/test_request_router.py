from __future__ import annotations

import asyncio

import pytest

from relay_daemon.agent.requests import RequestRouter, ResponderKind
from relay_daemon.agent.runtime.base import (
    PermissionOutcome,
    PermissionRequest,
    PermissionResponse,
    UserInputRequest,
    UserInputResponse,
)
from relay_shared.agent_models import PermissionPolicy


def _request(tool: str = "bash") -> PermissionRequest:
    return PermissionRequest(tool_name=tool, arguments={"cmd": "ls"})


@pytest.mark.asyncio
async def test_auto_approve_skips_responder() -> None:
    router = RequestRouter()
    router.set_policy("s", PermissionPolicy.AUTO_APPROVE)
    calls: list[PermissionRequest] = []

    async def responder(request):
        calls.append(request)
        return PermissionResponse(PermissionOutcome.DENIED_BY_USER)

    router.set_responder("s", ResponderKind.PERMISSION, responder)

    response = await router.handle_permission("s", _request())

    assert response.approved
    assert calls == []


@pytest.mark.asyncio
async def test_deny_all_denies_by_policy() -> None:
    router = RequestRouter()
    router.set_policy("s", PermissionPolicy.DENY_ALL)

    response = await router.handle_permission("s", _request())

    assert response.outcome is PermissionOutcome.DENIED_BY_POLICY
    assert not response.approved


@pytest.mark.asyncio
async def test_ask_user_without_responder_is_denied() -> None:
    router = RequestRouter()

    response = await router.handle_permission("unknown-session", _request())

    assert router.get_policy("unknown-session") is PermissionPolicy.ASK_USER
    assert response.outcome is PermissionOutcome.NO_RESPONDER


@pytest.mark.asyncio
async def test_ask_user_forwards_to_responder() -> None:
    router = RequestRouter()
    seen: list[str] = []

    async def responder(request: PermissionRequest) -> PermissionResponse:
        seen.append(request.tool_name)
        return PermissionResponse(PermissionOutcome.APPROVED)

    router.set_responder("s", ResponderKind.PERMISSION, responder)

    response = await router.handle_permission("s", _request("write_file"))

    assert response.approved
    assert seen == ["write_file"]


@pytest.mark.asyncio
async def test_responder_timeout_denies() -> None:
    router = RequestRouter(responder_timeout=0.01)

    async def never(request):
        await asyncio.Event().wait()

    router.set_responder("s", ResponderKind.PERMISSION, never)

    response = await router.handle_permission("s", _request())

    assert response.outcome is PermissionOutcome.DENIED_BY_USER
    assert "timed out" in response.message


@pytest.mark.asyncio
async def test_second_responder_replaces_first() -> None:
    router = RequestRouter()

    async def first(request):
        return PermissionResponse(PermissionOutcome.DENIED_BY_USER)

    async def second(request):
        return PermissionResponse(PermissionOutcome.APPROVED)

    router.set_responder("s", ResponderKind.PERMISSION, first)
    router.set_responder("s", ResponderKind.PERMISSION, second)

    assert (await router.handle_permission("s", _request())).approved


@pytest.mark.asyncio
async def test_user_input_without_responder_returns_empty_answer() -> None:
    router = RequestRouter()

    response = await router.handle_user_input("s", UserInputRequest(question="Which?"))

    assert response == UserInputResponse(answer="", was_freeform=False)


@pytest.mark.asyncio
async def test_user_input_routes_by_session() -> None:
    router = RequestRouter()

    async def answer(request: UserInputRequest) -> UserInputResponse:
        return UserInputResponse(answer=request.choices[0], was_freeform=False)

    router.set_responder("a", ResponderKind.USER_INPUT, answer)

    got = await router.handle_user_input("a", UserInputRequest("Pick", choices=["red", "blue"]))
    other = await router.handle_user_input("b", UserInputRequest("Pick", choices=["red"]))

    assert got.answer == "red"
    assert other.answer == ""


@pytest.mark.asyncio
async def test_hooks_read_session_key_per_request() -> None:
    router = RequestRouter()
    router.set_policy("late-id", PermissionPolicy.DENY_ALL)
    key = {"value": ""}

    on_permission, _ = router.hooks_for(lambda: key["value"])
    key["value"] = "late-id"

    response = await on_permission(_request())

    assert response.outcome is PermissionOutcome.DENIED_BY_POLICY


def test_drop_forgets_policy_and_responders() -> None:
    router = RequestRouter()
    router.set_policy("s", PermissionPolicy.AUTO_APPROVE)

    async def responder(request):
        return None

    router.set_responder("s", ResponderKind.PERMISSION, responder)
    router.set_responder("s", ResponderKind.USER_INPUT, responder)

    router.drop("s")

    assert router.get_policy("s") is PermissionPolicy.ASK_USER
    assert not router.has_responder("s", ResponderKind.PERMISSION)
    assert not router.has_responder("s", ResponderKind.USER_INPUT)
