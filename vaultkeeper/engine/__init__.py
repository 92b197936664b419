"""Vaultkeeper: session orchestration core for an operator-supervised agent."""
from .models import (
    ErrorType,
    GuardReason,
    PermissionDecision,
    PermissionReason,
    PermissionResponse,
    QueuedMessage,
    Session,
    SessionSnapshot,
    SessionState,
    Settings,
    SubagentProgress,
    SubagentStatus,
    ToolCall,
    ToolCallStatus,
    Turn,
    TurnStatus,
)
from .config import EngineConfig, SettingsSource
from .error_policy import RetryPolicy, classify_error
from .errors import (
    InvalidTransitionError,
    SessionBusyError,
    SessionClosedError,
    SessionError,
    TransportFailure,
    UnknownToolCallError,
)
from .message_queue import MessageQueue
from .permissions import decide
from .tool_registry import ToolCallRegistry

__all__ = [
    # Controller (lazy import to avoid circular deps)
    "SessionController",
    # Models
    "ErrorType",
    "GuardReason",
    "PermissionDecision",
    "PermissionReason",
    "PermissionResponse",
    "QueuedMessage",
    "Session",
    "SessionSnapshot",
    "SessionState",
    "Settings",
    "SubagentProgress",
    "SubagentStatus",
    "ToolCall",
    "ToolCallStatus",
    "Turn",
    "TurnStatus",
    # Config
    "EngineConfig",
    "SettingsSource",
    "RetryPolicy",
    # YAML config (lazy import)
    "VaultkeeperConfig",
    "load_yaml_config",
    # Components
    "MessageQueue",
    "ToolCallRegistry",
    "classify_error",
    "decide",
    # Transport (lazy import)
    "ScriptedTransport",
    # Errors
    "InvalidTransitionError",
    "SessionBusyError",
    "SessionClosedError",
    "SessionError",
    "TransportFailure",
    "UnknownToolCallError",
]


def __getattr__(name: str):
    if name == "SessionController":
        from .session_controller import SessionController
        return SessionController
    if name == "VaultkeeperConfig":
        from .yaml_config import VaultkeeperConfig
        return VaultkeeperConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "ScriptedTransport":
        from .transport import ScriptedTransport
        return ScriptedTransport
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
