"""Event types emitted by the session controller.

Each event corresponds to an engine callback dict, parsed into
a typed dataclass for safe consumption by UI collaborators.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class SessionEvent:
    """Base event from the session controller."""
    event_type: str = ""
    session_id: str | None = None


@dataclass
class SessionStateChanged(SessionEvent):
    event_type: str = "session_state_changed"
    old_state: str = ""
    new_state: str = ""


@dataclass
class TurnStarted(SessionEvent):
    event_type: str = "turn_started"
    turn_id: str = ""
    content: str = ""
    turn_number: int = 0
    title: str | None = None


@dataclass
class TurnFinished(SessionEvent):
    event_type: str = "turn_finished"
    turn_id: str = ""
    status: str = ""
    text: str = ""
    error: str | None = None
    error_type: str | None = None
    cost_usd: float = 0.0
    attempts: int = 0


@dataclass
class StreamChunk(SessionEvent):
    event_type: str = "stream_chunk"
    turn_id: str = ""
    text: str = ""


@dataclass
class ToolCallStarted(SessionEvent):
    event_type: str = "tool_call_started"
    tool_call: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCallUpdated(SessionEvent):
    event_type: str = "tool_call_updated"
    tool_call: dict[str, Any] = field(default_factory=dict)


@dataclass
class PermissionRequested(SessionEvent):
    event_type: str = "permission_requested"
    tool_id: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)
    reason: str = ""


@dataclass
class PermissionResolved(SessionEvent):
    event_type: str = "permission_resolved"
    tool_id: str = ""
    tool_name: str = ""
    approved: bool = False
    reason: str = ""
    response: str | None = None  # None for automatic decisions


@dataclass
class MessageQueued(SessionEvent):
    event_type: str = "message_queued"
    message: dict[str, Any] = field(default_factory=dict)


@dataclass
class MessageDequeued(SessionEvent):
    event_type: str = "message_dequeued"
    message: dict[str, Any] = field(default_factory=dict)


@dataclass
class QueueCleared(SessionEvent):
    event_type: str = "queue_cleared"
    dropped: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class RetryScheduled(SessionEvent):
    event_type: str = "retry_scheduled"
    turn_id: str = ""
    attempt: int = 0
    max_attempts: int = 0
    delay_seconds: float = 0.0
    error_type: str = ""


@dataclass
class ConfirmationRequested(SessionEvent):
    event_type: str = "confirmation_requested"
    reason: str = ""
    message: str = ""


@dataclass
class SessionReset(SessionEvent):
    event_type: str = "session_reset"
    old_session_id: str | None = None
    dropped: list[dict[str, Any]] = field(default_factory=list)


# Map of event type strings to dataclass constructors
_EVENT_MAP: dict[str, type[SessionEvent]] = {
    "session_state_changed": SessionStateChanged,
    "turn_started": TurnStarted,
    "turn_finished": TurnFinished,
    "stream_chunk": StreamChunk,
    "tool_call_started": ToolCallStarted,
    "tool_call_updated": ToolCallUpdated,
    "permission_requested": PermissionRequested,
    "permission_resolved": PermissionResolved,
    "message_queued": MessageQueued,
    "message_dequeued": MessageDequeued,
    "queue_cleared": QueueCleared,
    "retry_scheduled": RetryScheduled,
    "confirmation_requested": ConfirmationRequested,
    "session_reset": SessionReset,
}


def event_to_dict(event: SessionEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # Use "event" key instead of "event_type" for consistency with engine callbacks
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> SessionEvent:
    """Convert an engine callback dict to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, SessionEvent)
    # Filter dict keys to only those the dataclass accepts
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
