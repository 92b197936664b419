"""Streaming transport contract.

The agent SDK is an opaque collaborator: given a turn request it yields
an ordered stream of events and accepts permission responses and abort
signals. ``ScriptedTransport`` replays a fixed event sequence per
attempt; it backs the replay CLI and the test suite.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

from .models import SubagentStatus

logger = logging.getLogger(__name__)


@dataclass
class TransportEvent:
    """Base event from the transport stream."""
    type: str = ""


@dataclass
class TextDelta(TransportEvent):
    type: str = "text"
    text: str = ""


@dataclass
class ToolCallStart(TransportEvent):
    type: str = "tool-call-start"
    tool_id: str = ""
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    parent_tool_id: str | None = None


@dataclass
class ToolCallEnd(TransportEvent):
    type: str = "tool-call-end"
    tool_id: str = ""
    output: Any = None
    error: str | None = None


@dataclass
class SubagentUpdate(TransportEvent):
    type: str = "subagent-update"
    tool_id: str = ""
    status: SubagentStatus = SubagentStatus.RUNNING
    message: str = ""


@dataclass
class TurnComplete(TransportEvent):
    type: str = "turn-complete"
    cost_usd: float = 0.0
    result: str = ""


@dataclass
class ErrorEvent(TransportEvent):
    type: str = "error"
    message: str = ""


_EVENT_TYPE_MAP: dict[str, type[TransportEvent]] = {
    "text": TextDelta,
    "tool-call-start": ToolCallStart,
    "tool-call-end": ToolCallEnd,
    "subagent-update": SubagentUpdate,
    "turn-complete": TurnComplete,
    "error": ErrorEvent,
}


def event_from_dict(data: dict[str, Any]) -> TransportEvent:
    """Convert a plain mapping (e.g. from a YAML script) to a typed event."""
    event_type = str(data.get("type", ""))
    cls = _EVENT_TYPE_MAP.get(event_type)
    if cls is None:
        raise ValueError(f"Unknown transport event type: {event_type!r}")
    fields = {
        k: v for k, v in data.items()
        if k != "type" and k in cls.__dataclass_fields__
    }
    if cls is SubagentUpdate and "status" in fields:
        fields["status"] = SubagentStatus(fields["status"])
    if cls is TurnComplete and "cost_usd" in fields:
        fields["cost_usd"] = float(fields["cost_usd"])
    return cls(**fields)


@dataclass(frozen=True)
class TurnRequest:
    """What the controller hands the transport for one attempt."""
    session_id: str
    turn_id: str
    content: str
    attempt: int = 1


@dataclass(frozen=True)
class ToolPermissionResult:
    """Permission response forwarded to the transport for one tool call.

    ``result`` carries the output of tools the controller executes
    itself (e.g. the ask-user tool).
    """
    allow: bool
    message: str = ""
    result: Any = None


class Transport(Protocol):
    """Opaque streaming connection to the agent."""

    def stream(self, request: TurnRequest) -> AsyncIterator[TransportEvent]: ...

    async def respond(self, tool_id: str, result: ToolPermissionResult) -> None: ...

    async def abort(self) -> None: ...


@dataclass
class Hold:
    """Script marker that pauses the stream until released."""
    reached: asyncio.Event = field(default_factory=asyncio.Event)
    release: asyncio.Event = field(default_factory=asyncio.Event)


ScriptItem = Union[TransportEvent, BaseException, Hold]


class ScriptedTransport:
    """Transport that replays one scripted event list per attempt.

    Each call to ``stream`` consumes the next script. A script item that
    is an exception is raised from the stream; a ``Hold`` pauses it.
    Responses and aborts are recorded for inspection.
    """

    def __init__(self, scripts: Iterable[Sequence[ScriptItem]]) -> None:
        self._scripts: list[list[ScriptItem]] = [list(s) for s in scripts]
        self.requests: list[TurnRequest] = []
        self.responses: list[tuple[str, ToolPermissionResult]] = []
        self.abort_count = 0
        self._aborted = False

    @property
    def remaining_scripts(self) -> int:
        return len(self._scripts)

    def add_script(self, script: Sequence[ScriptItem]) -> None:
        self._scripts.append(list(script))

    async def stream(self, request: TurnRequest) -> AsyncIterator[TransportEvent]:
        self.requests.append(request)
        self._aborted = False
        if not self._scripts:
            raise RuntimeError("ScriptedTransport has no script left to replay")
        script = self._scripts.pop(0)
        logger.debug(
            "Replaying %d scripted items for turn %s attempt %d",
            len(script), request.turn_id[:8], request.attempt,
        )
        for item in script:
            if self._aborted:
                return
            if isinstance(item, Hold):
                item.reached.set()
                await item.release.wait()
                continue
            if isinstance(item, BaseException):
                raise item
            yield item

    async def respond(self, tool_id: str, result: ToolPermissionResult) -> None:
        self.responses.append((tool_id, result))

    async def abort(self) -> None:
        self.abort_count += 1
        self._aborted = True

    def response_for(self, tool_id: str) -> ToolPermissionResult | None:
        for responded_id, result in reversed(self.responses):
            if responded_id == tool_id:
                return result
        return None
