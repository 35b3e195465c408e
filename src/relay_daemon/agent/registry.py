"""Session registry: owns runtime session handles for the process lifetime."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass

from loguru import logger

from relay_shared.agent_models import PermissionPolicy

from .catalog import AgentCatalog, ResolvedAgent
from .history import MessageHistoryCache
from .requests import RequestRouter
from .runtime.base import AgentRuntime, RuntimeSession, SessionInfo, SessionOptions


@dataclass
class SessionRecord:
    """A live session and what was resolved for it at creation time."""

    session_id: str
    handle: RuntimeSession
    agent_id: str
    policy: PermissionPolicy
    model: str
    created_at: float
    alive: bool = True


@dataclass
class SessionListing:
    session_id: str
    modified_at: float | None = None
    live: bool = False
    agent_id: str | None = None


class _SessionKey:
    """Mutable session id the runtime hooks read per request."""

    def __init__(self, value: str | None) -> None:
        self.value = value

    def __call__(self) -> str:
        return self.value or ""


class SessionRegistry:
    def __init__(
        self,
        runtime: AgentRuntime,
        catalog: AgentCatalog,
        router: RequestRouter,
        cache: MessageHistoryCache,
        *,
        default_model: str,
    ) -> None:
        self._runtime = runtime
        self._catalog = catalog
        self._router = router
        self._cache = cache
        self.default_model = default_model

        self._records: dict[str, SessionRecord] = {}
        self._agent_overrides: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, session_id: str) -> asyncio.Lock:
        if session_id not in self._locks:
            self._locks[session_id] = asyncio.Lock()
        return self._locks[session_id]

    def _resolve(
        self, session_id: str | None, model: str | None, agent_id: str | None
    ) -> tuple[ResolvedAgent, str]:
        if agent_id is None and session_id is not None:
            agent_id = self._agent_overrides.get(session_id)
        resolved = self._catalog.resolve(agent_id)
        return resolved, model or resolved.agent.preferred_model or self.default_model

    def _build_options(
        self, key: _SessionKey, model: str, resolved: ResolvedAgent
    ) -> SessionOptions:
        on_permission, on_user_input = self._router.hooks_for(key)
        return SessionOptions(
            session_id=key.value,
            model=model,
            on_permission_request=on_permission,
            on_user_input_request=on_user_input,
            tools=resolved.tools,
            mcp_servers=resolved.mcp_servers,
            system_message=resolved.system_message,
            infinite_session=resolved.infinite_session,
        )

    def _register(
        self, session_id: str, handle: RuntimeSession, resolved: ResolvedAgent, model: str
    ) -> SessionRecord:
        record = SessionRecord(
            session_id=session_id,
            handle=handle,
            agent_id=resolved.agent_id,
            policy=resolved.permission_policy,
            model=model,
            created_at=time.time(),
        )
        self._records[session_id] = record
        self._router.set_policy(session_id, resolved.permission_policy)
        return record

    async def create_session(
        self,
        session_id: str | None = None,
        model: str | None = None,
        agent_id: str | None = None,
    ) -> RuntimeSession:
        """Create a runtime session, replacing any cached handle with the same id."""
        if session_id is None:
            return await self._create_inner(None, model, agent_id)
        async with self._get_lock(session_id):
            return await self._create_inner(session_id, model, agent_id)

    async def _create_inner(
        self, session_id: str | None, model: str | None, agent_id: str | None
    ) -> RuntimeSession:
        if session_id is not None and session_id in self._records:
            await self._close_record(self._records.pop(session_id))

        resolved, effective_model = self._resolve(session_id, model, agent_id)
        key = _SessionKey(session_id)
        handle = await self._runtime.create_session(
            self._build_options(key, effective_model, resolved)
        )
        key.value = session_id or handle.session_id
        self._register(key.value, handle, resolved, effective_model)

        logger.info(
            "Created session {} agent={} model={} policy={}",
            key.value,
            resolved.agent_id,
            effective_model,
            resolved.permission_policy.value,
        )
        return handle

    async def get_or_create(
        self,
        session_id: str,
        model: str | None = None,
        agent_id: str | None = None,
    ) -> RuntimeSession:
        """Return the cached handle, else resume it, else create it under the same id."""
        record = self._records.get(session_id)
        if record is not None:
            return record.handle

        async with self._get_lock(session_id):
            record = self._records.get(session_id)
            if record is not None:
                return record.handle

            resolved, effective_model = self._resolve(session_id, model, agent_id)
            key = _SessionKey(session_id)
            try:
                handle = await self._runtime.resume_session(
                    session_id, self._build_options(key, effective_model, resolved)
                )
            except Exception as e:
                logger.info("Could not resume session {} ({}), creating it", session_id, e)
                return await self._create_inner(session_id, model, agent_id)

            self._register(session_id, handle, resolved, effective_model)
            logger.info("Resumed session {} agent={}", session_id, resolved.agent_id)
            return handle

    def get(self, session_id: str) -> SessionRecord | None:
        return self._records.get(session_id)

    def live_session_ids(self) -> list[str]:
        return list(self._records)

    def agent_for(self, session_id: str) -> str | None:
        if session_id in self._agent_overrides:
            return self._agent_overrides[session_id]
        record = self._records.get(session_id)
        return record.agent_id if record else None

    def set_agent(self, session_id: str, agent_id: str) -> None:
        """Associate a session with an agent for future session creation.

        A live handle keeps the policy it was created with.
        """
        if self._catalog.get(agent_id) is None:
            raise ValueError(f"Agent not found: {agent_id}")
        self._agent_overrides[session_id] = agent_id
        if session_id in self._records:
            logger.info(
                "Agent for live session {} set to {}; applies when the session is recreated",
                session_id,
                agent_id,
            )

    async def abort(self, session_id: str) -> bool:
        """Ask the runtime to cancel the current exchange. False if the session is unknown."""
        record = self._records.get(session_id)
        if record is None:
            return False
        try:
            await record.handle.abort()
        except Exception as e:
            logger.warning("Abort failed for session {}: {}", session_id, e)
            return False
        logger.info("Aborted session {}", session_id)
        return True

    async def delete(self, session_id: str) -> None:
        """Destroy a session and purge everything held for it."""
        record = self._records.pop(session_id, None)
        if record is not None:
            await self._close_record(record)

        try:
            await self._runtime.delete_session(session_id)
        except Exception as e:
            logger.warning("Runtime failed to delete session {}: {}", session_id, e)

        self._cache.clear(session_id)
        self._router.drop(session_id)
        self._agent_overrides.pop(session_id, None)
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]
        logger.info("Deleted session {}", session_id)

    async def list_sessions(self) -> list[SessionListing]:
        """Runtime-known sessions merged with live ones."""
        known: list[SessionInfo] = []
        try:
            known = await self._runtime.list_sessions()
        except Exception as e:
            logger.warning("Failed to list runtime sessions: {}", e)

        listings: dict[str, SessionListing] = {
            info.session_id: SessionListing(
                session_id=info.session_id,
                modified_at=info.modified_at,
                agent_id=self._agent_overrides.get(info.session_id),
            )
            for info in known
        }
        for session_id, record in self._records.items():
            listing = listings.setdefault(session_id, SessionListing(session_id=session_id))
            listing.live = True
            listing.agent_id = self.agent_for(session_id)
            if listing.modified_at is None:
                listing.modified_at = record.created_at
        return list(listings.values())

    async def close_all(self) -> None:
        """Destroy every live handle (process shutdown). Runtime state is kept."""
        records = list(self._records.values())
        self._records.clear()
        for record in records:
            await self._close_record(record)
            self._router.drop(record.session_id)

    async def _close_record(self, record: SessionRecord) -> None:
        record.alive = False
        try:
            await record.handle.destroy()
        except Exception as e:
            logger.warning("Error destroying session {}: {}", record.session_id, e)
