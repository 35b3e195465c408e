"""Resolution of agent ids to per-session configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from relay_shared.agent_models import (
    AgentConfig,
    InfiniteSessionConfig,
    MCPServerConfig,
    PermissionPolicy,
    SystemMessageConfig,
)
from relay_shared.config import RelayConfig, default_agent


@dataclass
class ResolvedAgent:
    """Everything a session needs from its owning agent, resolved once."""

    agent: AgentConfig
    tools: list[str] | None
    mcp_servers: dict[str, dict[str, Any]] = field(default_factory=dict)
    system_message: SystemMessageConfig | None = None
    permission_policy: PermissionPolicy = PermissionPolicy.ASK_USER
    infinite_session: InfiniteSessionConfig | None = None

    @property
    def agent_id(self) -> str:
        return self.agent.id


def mcp_server_options(server: MCPServerConfig) -> dict[str, Any]:
    """Convert a stored MCP server config to runtime options."""
    if server.type in ("local", "stdio"):
        options: dict[str, Any] = {
            "type": "stdio",
            "command": server.command or "",
            "args": list(server.args),
        }
        if server.env:
            options["env"] = dict(server.env)
    else:
        options = {"type": server.type, "url": server.url or ""}
        if server.headers:
            options["headers"] = dict(server.headers)
    return options


class AgentCatalog:
    """Read-only view over configured agents and MCP servers."""

    def __init__(
        self,
        agents: list[AgentConfig],
        mcp_servers: list[MCPServerConfig] | None = None,
        default_agent_id: str | None = None,
    ) -> None:
        self._agents = {agent.id: agent for agent in agents}
        self._mcp_servers = list(mcp_servers or [])
        self._default_id = self._pick_default(default_agent_id)

    @classmethod
    def from_config(cls, config: RelayConfig) -> AgentCatalog:
        return cls(config.agents, config.mcp_servers, config.default_agent)

    def _pick_default(self, default_agent_id: str | None) -> str:
        if default_agent_id and default_agent_id in self._agents:
            return default_agent_id
        for agent in self._agents.values():
            if agent.is_default:
                return agent.id
        if self._agents:
            return next(iter(self._agents))
        fallback = default_agent()
        self._agents[fallback.id] = fallback
        return fallback.id

    @property
    def default_agent_id(self) -> str:
        return self._default_id

    def list_agents(self) -> list[AgentConfig]:
        return list(self._agents.values())

    def get(self, agent_id: str | None) -> AgentConfig | None:
        if agent_id is None:
            return None
        return self._agents.get(agent_id)

    def mcp_servers_for(self, agent: AgentConfig) -> dict[str, dict[str, Any]]:
        """Global servers, plus servers the agent references or that are scoped to it."""
        servers: dict[str, dict[str, Any]] = {}
        for server in self._mcp_servers:
            if not server.enabled:
                continue
            attached = (
                server.scope == "global"
                or server.id in agent.mcp_server_ids
                or (server.scope == "agent" and server.agent_id == agent.id)
            )
            if attached:
                servers[server.name] = mcp_server_options(server)
        return servers

    def resolve(self, agent_id: str | None) -> ResolvedAgent:
        """Resolve an agent, falling back to the default when absent or unknown."""
        agent = self.get(agent_id)
        if agent is None:
            if agent_id is not None:
                logger.warning("Unknown agent {}, using default {}", agent_id, self._default_id)
            agent = self._agents[self._default_id]

        system_message = agent.system_message
        if system_message is None and agent.prompt.strip():
            system_message = SystemMessageConfig(mode="append", content=agent.prompt.strip())

        return ResolvedAgent(
            agent=agent,
            tools=list(agent.tools) if agent.tools is not None else None,
            mcp_servers=self.mcp_servers_for(agent),
            system_message=system_message,
            permission_policy=agent.permission_policy,
            infinite_session=agent.infinite_session,
        )
