"""Errors surfaced by the agent orchestrator."""

from __future__ import annotations


class RelayError(RuntimeError):
    """Base class for orchestrator errors."""


class RuntimeSessionError(RelayError):
    """The runtime reported a session-level error for the current exchange."""


class ExchangeTimeoutError(RelayError):
    """No content arrived before the exchange timeout."""

    def __init__(self, message: str = "Response timed out") -> None:
        super().__init__(message)


class SessionNotFoundError(RelayError, LookupError):
    """The runtime does not know the requested session id."""
