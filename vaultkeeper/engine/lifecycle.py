"""Session state machine.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidTransitionError rather than silently proceeding.

State Diagram:

    IDLE ──┬──> DISPATCHING ──> STREAMING ──┬──> COMPLETED ──┐
           │         ^   │                  │                │
           │         │   │                  ├──> AWAITING_PERMISSION ──> STREAMING
           │         │   │                  │
           │         └───┴── (retry) <──────┤
           │                                └──> ERRORED ────┤
           │                                                 │
           └──> AWAITING_CONFIRMATION ──> DISPATCHING        ├──> IDLE
                                     └──> IDLE               │
                                                             └──> DISPATCHING (queue drain)

    Any non-idle state ──> ABORTED ──> IDLE
"""
from __future__ import annotations

from .errors import InvalidTransitionError
from .models import SessionState

VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {
        SessionState.DISPATCHING,
        SessionState.AWAITING_CONFIRMATION,
    },
    SessionState.AWAITING_CONFIRMATION: {
        SessionState.DISPATCHING,
        SessionState.IDLE,
        SessionState.ABORTED,
    },
    SessionState.DISPATCHING: {
        SessionState.STREAMING,
        SessionState.DISPATCHING,  # retry before the stream opened
        SessionState.ERRORED,
        SessionState.ABORTED,
    },
    SessionState.STREAMING: {
        SessionState.AWAITING_PERMISSION,
        SessionState.DISPATCHING,  # retry
        SessionState.COMPLETED,
        SessionState.ERRORED,
        SessionState.ABORTED,
    },
    SessionState.AWAITING_PERMISSION: {
        SessionState.STREAMING,
        SessionState.ABORTED,
    },
    SessionState.COMPLETED: {
        SessionState.DISPATCHING,
        SessionState.AWAITING_CONFIRMATION,
        SessionState.IDLE,
        SessionState.ABORTED,
    },
    SessionState.ERRORED: {
        SessionState.DISPATCHING,
        SessionState.AWAITING_CONFIRMATION,
        SessionState.IDLE,
        SessionState.ABORTED,
    },
    SessionState.ABORTED: {
        SessionState.IDLE,
    },
}

# States in which a turn is considered in flight.
ACTIVE_STATES = frozenset({
    SessionState.AWAITING_CONFIRMATION,
    SessionState.DISPATCHING,
    SessionState.STREAMING,
    SessionState.AWAITING_PERMISSION,
})


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def validate_transition(current: SessionState, target: SessionState) -> None:
    """Validate a state transition. Raises InvalidTransitionError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise InvalidTransitionError(current, target, allowed_str)
