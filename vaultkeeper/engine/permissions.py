"""Tool permission decisions.

``decide`` is a pure function over the tool name, a settings snapshot
and the session-approved set. Rules are evaluated in a fixed order and
the first match wins:

    1. read-only tools            -> approve (read-only)
    2. workspace UI tools         -> approve (obsidian-ui)
    3. settings.always_allowed    -> approve (always-allowed)
    4. write tools                -> auto-approve-writes / session-approved / deny
    5. Bash                       -> bash-approval-disabled / session-approved / deny
    6. Task (sub-agent spawn)     -> approve (subagent)
    7. anything else              -> approve (default)

Always-allowed is checked before the write/Bash rules so a persisted
allow overrides a stricter per-call setting. The session-approved set
and the persisted always-allowed list are separate inputs and are never
merged here.
"""
from __future__ import annotations

from collections.abc import Collection

from .models import PermissionDecision, PermissionReason, Settings

MCP_PREFIX = "mcp__obsidian__"

READ_ONLY_TOOLS = frozenset({
    "Read",
    "Glob",
    "Grep",
    "LS",
    f"{MCP_PREFIX}get_active_file",
    f"{MCP_PREFIX}get_vault_stats",
    f"{MCP_PREFIX}get_recent_files",
    f"{MCP_PREFIX}list_commands",
})

WORKSPACE_UI_TOOLS = frozenset({
    f"{MCP_PREFIX}open_file",
    f"{MCP_PREFIX}show_notice",
    f"{MCP_PREFIX}reveal_in_explorer",
    f"{MCP_PREFIX}execute_command",
    f"{MCP_PREFIX}create_note",
})

WRITE_TOOLS = frozenset({"Write", "Edit", "MultiEdit"})

BASH_TOOL = "Bash"
SUBAGENT_TOOL = "Task"


def decide(
    tool_name: str,
    settings: Settings,
    session_approved_tools: Collection[str],
) -> PermissionDecision:
    """Decide whether a tool call may run without asking the operator."""
    if tool_name in READ_ONLY_TOOLS:
        return PermissionDecision(True, PermissionReason.READ_ONLY)

    if tool_name in WORKSPACE_UI_TOOLS:
        return PermissionDecision(True, PermissionReason.OBSIDIAN_UI)

    if tool_name in settings.always_allowed_tools:
        return PermissionDecision(True, PermissionReason.ALWAYS_ALLOWED)

    if tool_name in WRITE_TOOLS:
        if settings.auto_approve_vault_writes:
            return PermissionDecision(True, PermissionReason.AUTO_APPROVE_WRITES)
        if tool_name in session_approved_tools:
            return PermissionDecision(True, PermissionReason.SESSION_APPROVED)
        return PermissionDecision(False, PermissionReason.REQUIRES_WRITE_APPROVAL)

    if tool_name == BASH_TOOL:
        if not settings.require_bash_approval:
            return PermissionDecision(True, PermissionReason.BASH_APPROVAL_DISABLED)
        if BASH_TOOL in session_approved_tools:
            return PermissionDecision(True, PermissionReason.SESSION_APPROVED)
        return PermissionDecision(False, PermissionReason.REQUIRES_BASH_APPROVAL)

    # The spawned sub-agent runs its own permission pass.
    if tool_name == SUBAGENT_TOOL:
        return PermissionDecision(True, PermissionReason.SUBAGENT)

    return PermissionDecision(True, PermissionReason.DEFAULT)
