"""Lifecycle tracking for tool calls emitted during a session.

Records are created on tool-call-start and mutated in place; they are
never deleted. Once a record is terminal (``success``/``error``, or a
sub-agent ``completed``/``interrupted``/``error``) the only accepted
change is filling in a missing ``end_time``.
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Any

from .errors import UnknownToolCallError
from .models import ToolCall

logger = logging.getLogger(__name__)

_MUTABLE_FIELDS = frozenset(
    f.name for f in dataclasses.fields(ToolCall) if f.name != "id"
)


class ToolCallRegistry:
    """Insertion-ordered store of ToolCall records."""

    def __init__(self) -> None:
        # Live record per id; a reused id points at the newest call
        self._calls: dict[str, ToolCall] = {}
        self._history: list[ToolCall] = []

    def start(self, tool_call: ToolCall, *, supersede: bool = False) -> ToolCall:
        """Register a new tool call.

        A repeated start for a known id keeps the original record unless
        ``supersede`` is set, in which case the new record becomes the
        one ``get``/``find`` return. Superseded records stay in ``all()``.
        """
        existing = self._calls.get(tool_call.id)
        if existing is not None and not supersede:
            logger.warning(
                "Tool call %s already registered; ignoring duplicate start",
                tool_call.id[:8],
            )
            return existing
        if existing is not None:
            logger.info(
                "Tool call id %s reused by %s; superseding earlier %s record",
                tool_call.id[:8], tool_call.name, existing.name,
            )
        self._calls[tool_call.id] = tool_call
        self._history.append(tool_call)
        return tool_call

    def update(self, tool_id: str, **changes: Any) -> bool:
        """Apply a partial update. Returns True if anything changed.

        Raises UnknownToolCallError for an unregistered id and
        ValueError for a field ToolCall does not have.
        """
        tool_call = self.get(tool_id)
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(
                f"Unknown ToolCall field(s): {', '.join(sorted(unknown))}"
            )

        if tool_call.is_terminal:
            end_time = changes.get("end_time")
            if end_time is not None and tool_call.end_time is None:
                tool_call.end_time = end_time
                return True
            rejected = sorted(k for k in changes if k != "end_time")
            if rejected:
                logger.warning(
                    "Tool call %s (%s) is terminal; rejected update of %s",
                    tool_id[:8],
                    tool_call.name,
                    ", ".join(rejected),
                )
            return False

        for name, value in changes.items():
            setattr(tool_call, name, value)
        return bool(changes)

    def get(self, tool_id: str) -> ToolCall:
        try:
            return self._calls[tool_id]
        except KeyError:
            raise UnknownToolCallError(tool_id) from None

    def find(self, tool_id: str) -> ToolCall | None:
        return self._calls.get(tool_id)

    def all(self) -> list[ToolCall]:
        """Every record in start order, superseded ones included."""
        return list(self._history)

    def children_of(self, parent_tool_id: str) -> list[ToolCall]:
        """Nested tool calls emitted by a sub-agent."""
        return [
            call for call in self._history
            if call.parent_tool_id == parent_tool_id
        ]

    def clear(self) -> None:
        self._calls.clear()
        self._history.clear()

    def __contains__(self, tool_id: object) -> bool:
        return tool_id in self._calls

    def __len__(self) -> int:
        return len(self._history)
