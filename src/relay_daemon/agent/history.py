"""Bounded per-session message history."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

Role = Literal["user", "assistant"]

DEFAULT_MAX_ENTRIES = 100


@dataclass(frozen=True)
class CacheEntry:
    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class MessageHistoryCache:
    """Ordered log of exchanged turns, capped at ``max_entries`` per session.

    The cap drops whole entries from the front, oldest first. Entry content is
    never truncated.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._entries: dict[str, list[CacheEntry]] = {}

    def append(self, session_id: str, role: Role, content: str) -> None:
        entries = self._entries.setdefault(session_id, [])
        entries.append(CacheEntry(role=role, content=content))
        self._trim(entries)

    def get(self, session_id: str) -> list[CacheEntry] | None:
        """Return a copy of the cached history, or None when nothing is cached."""
        entries = self._entries.get(session_id)
        if entries is None:
            return None
        return list(entries)

    def seed(self, session_id: str, entries: Iterable[CacheEntry]) -> list[CacheEntry]:
        """Replace a session's history with reconstructed entries.

        Blank entries are dropped; nothing is stored if none remain.
        """
        kept = [e for e in entries if e.content.strip()]
        if not kept:
            return []
        self._trim(kept)
        self._entries[session_id] = kept
        return list(kept)

    def clear(self, session_id: str) -> None:
        self._entries.pop(session_id, None)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    def _trim(self, entries: list[CacheEntry]) -> None:
        overflow = len(entries) - self.max_entries
        if overflow > 0:
            del entries[:overflow]
