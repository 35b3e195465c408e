"""Tool call correlation for a single exchange."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class ToolOutcome:
    """A terminal tool event, normalized for forwarding."""

    call_id: str
    name: str
    result: Any = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def as_result(self) -> Any:
        """Result payload handed to callers; errors become a failure result."""
        if self.error is None:
            return self.result
        return {"result_type": "failure", "error": self.error}


class ToolCallTracker:
    """Maps call ids to tool names and counts calls still in flight.

    Pure bookkeeping: unknown or duplicate ids never raise. A terminal event only
    settles a call whose start was seen, so the pending count can't go negative.
    """

    def __init__(self) -> None:
        self._names: dict[str, str] = {}
        self._outstanding: dict[str, int] = {}
        self._pending = 0

    @property
    def pending(self) -> int:
        return self._pending

    def name_for(self, call_id: str) -> str:
        return self._names.get(call_id) or call_id

    def on_start(self, call_id: str, name: str) -> None:
        self._names[call_id] = name
        self._outstanding[call_id] = self._outstanding.get(call_id, 0) + 1
        self._pending += 1

    def on_complete(self, call_id: str, result: Any = None) -> ToolOutcome:
        self._settle(call_id)
        return ToolOutcome(call_id=call_id, name=self.name_for(call_id), result=result)

    def on_error(self, call_id: str, error: Any) -> ToolOutcome:
        self._settle(call_id)
        message = str(error) if error is not None else "Tool execution failed"
        return ToolOutcome(call_id=call_id, name=self.name_for(call_id), error=message)

    def _settle(self, call_id: str) -> None:
        remaining = self._outstanding.get(call_id, 0)
        if remaining <= 0:
            return
        if remaining == 1:
            del self._outstanding[call_id]
        else:
            self._outstanding[call_id] = remaining - 1
        self._pending = max(0, self._pending - 1)
