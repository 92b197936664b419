"""Exception hierarchy for the session engine.

Specific exceptions for each failure mode. The permission engine and
the error classifier never raise; everything here is raised by the
controller and its registries.
"""
from __future__ import annotations

from .models import ErrorType, SessionState


class SessionError(Exception):
    """Base exception for all session errors."""


class InvalidTransitionError(SessionError, ValueError):
    """Requested state transition is not in the transition table."""
    def __init__(self, current: SessionState, target: SessionState, allowed: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed}"
        )


class SessionClosedError(SessionError):
    """Operation attempted on a session that has been closed."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} is closed")


class SessionBusyError(SessionError):
    """Operation requires an idle session but a turn is in flight."""
    def __init__(self, state: SessionState):
        self.state = state
        super().__init__(
            f"Session is busy ({state.value}); abort the active turn first"
        )


class UnknownToolCallError(SessionError, KeyError):
    """No tool call is registered under the given id."""
    def __init__(self, tool_id: str):
        self.tool_id = tool_id
        super().__init__(f"Unknown tool call: {tool_id}")

    def __str__(self) -> str:
        return self.args[0]


class TransportFailure(SessionError):
    """The transport reported an error for the current attempt."""
    def __init__(self, message: str, error_type: ErrorType):
        self.message = message
        self.error_type = error_type
        super().__init__(message)
