"""Routing of out-of-band permission and user-input requests."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from loguru import logger

from relay_shared.agent_models import PermissionPolicy

from .runtime.base import (
    PermissionHook,
    PermissionOutcome,
    PermissionRequest,
    PermissionResponse,
    UserInputHook,
    UserInputRequest,
    UserInputResponse,
)

DEFAULT_RESPONDER_TIMEOUT = 300.0  # 5 minutes to answer a request


class ResponderKind(str, Enum):
    PERMISSION = "permission"
    USER_INPUT = "user_input"


Responder = Callable[[Any], Awaitable[Any]]


class RequestRouter:
    """Maps each session to at most one responder per request kind.

    A second ``set_responder`` for the same session and kind replaces the first.
    """

    def __init__(self, responder_timeout: float = DEFAULT_RESPONDER_TIMEOUT) -> None:
        self.responder_timeout = responder_timeout
        self._policies: dict[str, PermissionPolicy] = {}
        self._responders: dict[tuple[str, ResponderKind], Responder] = {}

    def set_policy(self, session_id: str, policy: PermissionPolicy) -> None:
        self._policies[session_id] = policy

    def get_policy(self, session_id: str) -> PermissionPolicy:
        return self._policies.get(session_id, PermissionPolicy.ASK_USER)

    def set_responder(self, session_id: str, kind: ResponderKind, responder: Responder) -> None:
        key = (session_id, kind)
        if key in self._responders:
            logger.warning(
                "Replacing {} responder for session {}; earlier request may go unanswered",
                kind.value,
                session_id,
            )
        self._responders[key] = responder

    def clear_responder(self, session_id: str, kind: ResponderKind) -> None:
        self._responders.pop((session_id, kind), None)

    def has_responder(self, session_id: str, kind: ResponderKind) -> bool:
        return (session_id, kind) in self._responders

    def drop(self, session_id: str) -> None:
        """Forget the policy and every responder of a session."""
        self._policies.pop(session_id, None)
        for kind in ResponderKind:
            self._responders.pop((session_id, kind), None)

    async def handle_permission(
        self, session_id: str, request: PermissionRequest
    ) -> PermissionResponse:
        policy = self.get_policy(session_id)

        if policy is PermissionPolicy.AUTO_APPROVE:
            logger.debug("Auto-approving tool {} for session {}", request.tool_name, session_id)
            return PermissionResponse(PermissionOutcome.APPROVED)

        if policy is PermissionPolicy.DENY_ALL:
            logger.debug("Denying tool {} for session {} by policy", request.tool_name, session_id)
            return PermissionResponse(PermissionOutcome.DENIED_BY_POLICY, "Denied by policy")

        responder = self._responders.get((session_id, ResponderKind.PERMISSION))
        if responder is None:
            logger.info(
                "No permission responder: session_id={} tool={}", session_id, request.tool_name
            )
            return PermissionResponse(PermissionOutcome.NO_RESPONDER, "No responder available")

        try:
            response = await asyncio.wait_for(responder(request), timeout=self.responder_timeout)
        except TimeoutError:
            logger.warning(
                "Permission timed out: session_id={} tool={}", session_id, request.tool_name
            )
            return PermissionResponse(
                PermissionOutcome.DENIED_BY_USER,
                "Permission request timed out (no response from user)",
            )

        logger.info(
            "Permission {}: session_id={} tool={}",
            response.outcome.value,
            session_id,
            request.tool_name,
        )
        return response

    async def handle_user_input(
        self, session_id: str, request: UserInputRequest
    ) -> UserInputResponse:
        responder = self._responders.get((session_id, ResponderKind.USER_INPUT))
        if responder is None:
            logger.info("No user-input responder for session {}", session_id)
            return UserInputResponse(answer="", was_freeform=False)

        try:
            return await asyncio.wait_for(responder(request), timeout=self.responder_timeout)
        except TimeoutError:
            logger.warning("User input timed out: session_id={}", session_id)
            return UserInputResponse(answer="", was_freeform=False)

    def hooks_for(self, session_key: Callable[[], str]) -> tuple[PermissionHook, UserInputHook]:
        """Build the two runtime hooks for a session.

        ``session_key`` is read per request, so the hooks can be created before the
        runtime has assigned the session its id.
        """

        async def on_permission_request(request: PermissionRequest) -> PermissionResponse:
            return await self.handle_permission(session_key(), request)

        async def on_user_input_request(request: UserInputRequest) -> UserInputResponse:
            return await self.handle_user_input(session_key(), request)

        return on_permission_request, on_user_input_request
