"""Core data models for the session engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    """Controller states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    AWAITING_PERMISSION = "awaiting_permission"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERRORED = "errored"


class TurnStatus(str, Enum):
    RUNNING = "running"
    AWAITING_PERMISSION = "awaiting-permission"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERRORED = "errored"


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class SubagentStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    THINKING = "thinking"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    ERROR = "error"


class ErrorType(str, Enum):
    """The four mutually exclusive failure categories."""
    TRANSIENT = "transient"
    AUTH = "auth"
    NETWORK = "network"
    PERMANENT = "permanent"


class PermissionReason(str, Enum):
    """Closed set of reasons a permission decision can carry."""
    READ_ONLY = "read-only"
    OBSIDIAN_UI = "obsidian-ui"
    ALWAYS_ALLOWED = "always-allowed"
    AUTO_APPROVE_WRITES = "auto-approve-writes"
    SESSION_APPROVED = "session-approved"
    REQUIRES_WRITE_APPROVAL = "requires-write-approval"
    BASH_APPROVAL_DISABLED = "bash-approval-disabled"
    REQUIRES_BASH_APPROVAL = "requires-bash-approval"
    SUBAGENT = "subagent"
    DEFAULT = "default"


class PermissionResponse(str, Enum):
    """Operator answer to a denied tool call."""
    APPROVE_ONCE = "approve-once"
    APPROVE_SESSION = "approve-session"
    APPROVE_ALWAYS = "approve-always"
    DENY = "deny"

    @property
    def approved(self) -> bool:
        return self is not PermissionResponse.DENY


class GuardReason(str, Enum):
    """Why the budget/turn guard is asking for confirmation."""
    BUDGET = "budget"
    MAX_TURNS = "max_turns"


TERMINAL_TOOL_STATUSES = frozenset({ToolCallStatus.SUCCESS, ToolCallStatus.ERROR})
TERMINAL_SUBAGENT_STATUSES = frozenset({
    SubagentStatus.COMPLETED,
    SubagentStatus.INTERRUPTED,
    SubagentStatus.ERROR,
})
RUNNING_SUBAGENT_STATUSES = frozenset({
    SubagentStatus.STARTING,
    SubagentStatus.RUNNING,
    SubagentStatus.THINKING,
})


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Settings:
    """Read-only snapshot of operator settings.

    Owned and persisted by the settings collaborator; the engine only
    reads a fresh snapshot per decision.
    """
    auto_approve_vault_writes: bool = False
    require_bash_approval: bool = True
    always_allowed_tools: frozenset[str] = frozenset()
    max_budget_per_session: float = 10.0
    max_turns: int = 50

    # Persisted (camelCase) key -> field name
    _KEYS = {
        "autoApproveVaultWrites": "auto_approve_vault_writes",
        "requireBashApproval": "require_bash_approval",
        "alwaysAllowedTools": "always_allowed_tools",
        "maxBudgetPerSession": "max_budget_per_session",
        "maxTurns": "max_turns",
    }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Settings:
        """Build a snapshot from persisted data, dropping invalid values.

        Accepts both the persisted camelCase keys and snake_case keys.
        """
        defaults = cls()
        values: dict[str, Any] = {}
        for key, value in (data or {}).items():
            name = cls._KEYS.get(key, key)
            if name in cls._KEYS.values():
                values[name] = value

        auto_writes = values.get("auto_approve_vault_writes")
        if not isinstance(auto_writes, bool):
            auto_writes = defaults.auto_approve_vault_writes
        require_bash = values.get("require_bash_approval")
        if not isinstance(require_bash, bool):
            require_bash = defaults.require_bash_approval

        tools_raw = values.get("always_allowed_tools") or ()
        if not isinstance(tools_raw, (list, tuple, set, frozenset)):
            tools_raw = ()
        tools = frozenset(t for t in tools_raw if isinstance(t, str) and t)

        budget = values.get("max_budget_per_session")
        if isinstance(budget, bool) or not isinstance(budget, (int, float)):
            budget = defaults.max_budget_per_session
        budget = float(budget)
        if budget <= 0:
            budget = defaults.max_budget_per_session

        turns = values.get("max_turns")
        if isinstance(turns, bool) or not isinstance(turns, (int, float)):
            turns = defaults.max_turns
        turns = int(turns)
        if turns <= 0:
            turns = defaults.max_turns

        return cls(
            auto_approve_vault_writes=auto_writes,
            require_bash_approval=require_bash,
            always_allowed_tools=tools,
            max_budget_per_session=budget,
            max_turns=turns,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise to the persisted camelCase shape."""
        return {
            "autoApproveVaultWrites": self.auto_approve_vault_writes,
            "requireBashApproval": self.require_bash_approval,
            "alwaysAllowedTools": sorted(self.always_allowed_tools),
            "maxBudgetPerSession": self.max_budget_per_session,
            "maxTurns": self.max_turns,
        }


@dataclass(frozen=True)
class PermissionDecision:
    """Outcome of evaluating one tool call. Never persisted."""
    approve: bool
    reason: PermissionReason


@dataclass
class SubagentProgress:
    message: str = ""
    start_time: int = field(default_factory=now_ms)


@dataclass
class ToolCall:
    """One tool invocation inside a turn.

    ``status`` and ``subagent_status`` are independent axes; display and
    decision logic prefer ``subagent_status`` when ``is_subagent`` is set.
    """
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    output: Any = None
    error: str | None = None
    status: ToolCallStatus = ToolCallStatus.PENDING
    start_time: int = field(default_factory=now_ms)
    end_time: int | None = None
    is_subagent: bool = False
    subagent_status: SubagentStatus | None = None
    subagent_progress: SubagentProgress | None = None
    parent_tool_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        if self.status in TERMINAL_TOOL_STATUSES:
            return True
        return (
            self.is_subagent
            and self.subagent_status in TERMINAL_SUBAGENT_STATUSES
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "input": self.input,
            "status": self.status.value,
            "startTime": self.start_time,
            "isSubagent": self.is_subagent,
        }
        if self.output is not None:
            data["output"] = self.output
        if self.error is not None:
            data["error"] = self.error
        if self.end_time is not None:
            data["endTime"] = self.end_time
        if self.parent_tool_id is not None:
            data["parentToolId"] = self.parent_tool_id
        if self.is_subagent:
            data["subagentStatus"] = (
                self.subagent_status.value if self.subagent_status else None
            )
            if self.subagent_progress is not None:
                data["subagentProgress"] = {
                    "message": self.subagent_progress.message,
                    "startTime": self.subagent_progress.start_time,
                }
        return data


@dataclass
class QueuedMessage:
    """A user message waiting for turn availability."""
    id: str
    content: str
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueuedMessage:
        return cls(
            id=str(data["id"]),
            content=str(data.get("content", "")),
            timestamp=int(data.get("timestamp") or now_ms()),
        )


@dataclass
class Turn:
    """One request/response cycle with the agent."""
    content: str
    turn_id: str = field(default_factory=_make_id)
    tool_calls: list[ToolCall] = field(default_factory=list)
    status: TurnStatus = TurnStatus.RUNNING
    started_at: int = field(default_factory=now_ms)
    ended_at: int | None = None
    text: str = ""
    cost_usd: float = 0.0
    attempts: int = 0
    error: str | None = None
    error_type: ErrorType | None = None
    queued_message_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            TurnStatus.COMPLETED, TurnStatus.ABORTED, TurnStatus.ERRORED,
        )


@dataclass
class Session:
    """One active conversation. Owned exclusively by SessionController."""
    session_id: str = field(default_factory=_make_id)
    turns: list[Turn] = field(default_factory=list)
    current_turn: Turn | None = None
    total_cost_usd: float = 0.0
    turn_count: int = 0
    closed: bool = False
    title: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    # Session-scoped approvals, never persisted
    approved_tools: set[str] = field(default_factory=set)
    # Guards the operator has already confirmed past
    confirmed_guards: set[GuardReason] = field(default_factory=set)


@dataclass
class SessionSnapshot:
    """Read-only view handed to UI collaborators."""
    state: SessionState
    session_id: str | None
    title: str | None
    current_turn_id: str | None
    queued: list[dict[str, Any]]
    tool_calls: list[dict[str, Any]]
    total_cost_usd: float
    turn_count: int
