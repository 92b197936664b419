"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via VAULTKEEPER_* env vars
or the ``engine:`` section of a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from .error_policy import RetryPolicy

if TYPE_CHECKING:
    from .ask_user import AskUserQuestion
    from .models import (
        GuardReason,
        PermissionDecision,
        PermissionResponse,
        Settings,
        ToolCall,
    )

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

# Human decision for a tool call the permission engine denied.
# Signature: async def callback(tool_call, decision) -> PermissionResponse | str
# Returns: "approve-once", "approve-session", "approve-always" or "deny"
PermissionCallback = Callable[
    ["ToolCall", "PermissionDecision"], Awaitable["PermissionResponse | str"]
]

# Budget / turn-count guard confirmation.
# Signature: async def callback(reason, message) -> bool (True = continue)
ConfirmationCallback = Callable[["GuardReason", str], Awaitable[bool]]

# Questions from the agent's ask-user tool.
# Signature: async def callback(questions) -> {question text: answer}
UserQuestionCallback = Callable[
    [list["AskUserQuestion"]], Awaitable[dict[str, str]]
]


class SettingsSource(Protocol):
    """Read side of the settings collaborator.

    ``snapshot`` is called before every permission decision and every
    budget check. ``add_always_allowed`` persists an approve-always
    decision; the list only ever grows.
    """

    def snapshot(self) -> Settings: ...

    def add_always_allowed(self, tool_name: str) -> None: ...


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set. Callback errors never reach the engine."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.debug(
            "Event callback failed for %s", event.get("event"), exc_info=True,
        )


@dataclass
class EngineConfig:
    """Session engine configuration."""

    # Retry policy for transient/network transport failures.
    # max_attempts counts the first try.
    max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 8.0

    # Logging
    log_level: str = "INFO"

    # Optional async callback for real-time event observation.
    # Receives dicts like {"event": "stream_chunk", "turn_id": "...", ...}
    event_callback: EventCallback | None = field(default=None, repr=False)

    # Asked when the permission engine denies a tool call.
    permission_callback: PermissionCallback | None = field(
        default=None, repr=False,
    )

    # Asked when the budget or turn-count guard trips.
    confirmation_callback: ConfirmationCallback | None = field(
        default=None, repr=False,
    )

    # Backs the ask-user tool.
    user_question_callback: UserQuestionCallback | None = field(
        default=None, repr=False,
    )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(1, self.max_attempts),
            base_delay_seconds=max(0.0, self.retry_base_delay_seconds),
            max_delay_seconds=max(0.0, self.retry_max_delay_seconds),
        )

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from VAULTKEEPER_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith("VAULTKEEPER_")
        }
        if env_vars:
            logger.info(
                "EngineConfig.from_env: env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(env_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no VAULTKEEPER_* env vars set, using defaults")

        config = cls(
            max_attempts=int(os.getenv(
                "VAULTKEEPER_MAX_ATTEMPTS", str(cls.max_attempts)
            )),
            retry_base_delay_seconds=float(os.getenv(
                "VAULTKEEPER_RETRY_BASE_DELAY",
                str(cls.retry_base_delay_seconds),
            )),
            retry_max_delay_seconds=float(os.getenv(
                "VAULTKEEPER_RETRY_MAX_DELAY",
                str(cls.retry_max_delay_seconds),
            )),
            log_level=os.getenv("VAULTKEEPER_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: max_attempts=%d backoff=%.1fs..%.1fs log_level=%s",
            config.max_attempts,
            config.retry_base_delay_seconds,
            config.retry_max_delay_seconds,
            config.log_level,
        )
        return config
