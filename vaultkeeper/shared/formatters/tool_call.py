"""Tool call formatting for UI collaborators.

Two halves:

- status helpers (``tool_status_text``, ``tool_status_class``,
  ``is_subagent_running``, ``format_duration``) that turn a ToolCall
  into the short status label and CSS-style class shown next to it;
- a registry-based summariser producing a one-line
  ``FormattedToolCall`` (icon, label, summary) per tool type.

Status helpers prefer ``subagent_status`` whenever ``is_subagent`` is
set; the plain ``status`` axis of a sub-agent call is not shown.

Adding a new tool format requires only a single decorated function:

    @tool_formatter("MyTool")
    def _format_my_tool(name, args):
        return FormattedToolCall(icon="🔧", label=name, summary=...)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from vaultkeeper.engine.models import (
    RUNNING_SUBAGENT_STATUSES,
    SubagentStatus,
    ToolCall,
    ToolCallStatus,
    now_ms,
)


# ── Status ──

_SUBAGENT_STATUS_TEXT: dict[SubagentStatus, str] = {
    SubagentStatus.STARTING: "starting...",
    SubagentStatus.RUNNING: "running...",
    SubagentStatus.THINKING: "thinking...",
    SubagentStatus.COMPLETED: "✓",
    SubagentStatus.INTERRUPTED: "⚠ interrupted",
    SubagentStatus.ERROR: "✗",
}

_TOOL_STATUS_TEXT: dict[ToolCallStatus, str] = {
    ToolCallStatus.PENDING: "pending",
    ToolCallStatus.RUNNING: "running...",
    ToolCallStatus.SUCCESS: "✓",
    ToolCallStatus.ERROR: "✗",
}


def is_subagent_running(tool_call: ToolCall) -> bool:
    return (
        tool_call.is_subagent
        and tool_call.subagent_status in RUNNING_SUBAGENT_STATUSES
    )


def tool_status_text(tool_call: ToolCall) -> str:
    if tool_call.is_subagent and tool_call.subagent_status is not None:
        return _SUBAGENT_STATUS_TEXT[tool_call.subagent_status]
    return _TOOL_STATUS_TEXT[tool_call.status]


def tool_status_class(tool_call: ToolCall) -> str:
    """Class name for styling: the bare status value."""
    if tool_call.is_subagent and tool_call.subagent_status is not None:
        return tool_call.subagent_status.value
    return tool_call.status.value


def format_duration(start_ms: int, end_ms: int | None = None, now: int | None = None) -> str:
    """Human-readable elapsed time between two epoch-ms timestamps.

    ``<n>ms`` below one second, whole seconds below a minute, then
    ``<m>m <s>s``. Open-ended durations are measured against ``now``
    (default: current time).
    """
    if end_ms is None:
        end_ms = now if now is not None else now_ms()
    elapsed = max(0, end_ms - start_ms)
    if elapsed < 1000:
        return f"{elapsed}ms"
    seconds = elapsed // 1000
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    return f"{minutes}m {secs}s"


def tool_duration(tool_call: ToolCall, now: int | None = None) -> str:
    return format_duration(tool_call.start_time, tool_call.end_time, now)


def truncate_text(text: str, length: int = 60) -> str:
    """Truncate text with ellipsis."""
    if not text:
        return ""
    if len(text) <= length:
        return text
    return text[: length - 3] + "..."


# ── Summaries ──


@dataclass
class FormattedToolCall:
    """One-line representation of a tool call."""

    icon: str = ""
    label: str = ""
    summary: str = ""
    file_path: str = ""  # Primary file path (for click-to-open)


_FORMATTERS: dict[str, Callable[[str, dict], FormattedToolCall]] = {}


def tool_formatter(name: str):
    """Decorator to register a formatter for a given tool name."""

    def decorator(fn: Callable[[str, dict], FormattedToolCall]):
        _FORMATTERS[name] = fn
        return fn

    return decorator


def tool_display_name(name: str) -> str:
    """Strip the MCP server prefix.

    E.g. ``mcp__obsidian__open_file`` → ``open_file``.
    """
    if name.startswith("mcp__") and name.count("__") >= 2:
        return name.split("__", 2)[2]
    return name


def format_tool_call(name: str, args: dict[str, Any] | None) -> FormattedToolCall:
    """Dispatch to a registered formatter or the default."""
    args = args if isinstance(args, dict) else {}
    formatter = _FORMATTERS.get(name) or _FORMATTERS.get(tool_display_name(name))
    if formatter is None:
        return _format_default(name, args)
    return formatter(name, args)


def _basename(path: str) -> str:
    """Extract a short display path (last 2 components)."""
    if not path:
        return ""
    parts = path.replace("\\", "/").rstrip("/").split("/")
    return "/".join(parts[-2:]) if len(parts) >= 2 else parts[-1]


@tool_formatter("Bash")
def _format_bash(name: str, args: dict) -> FormattedToolCall:
    return FormattedToolCall(
        icon="$",
        label="Bash",
        summary=truncate_text(str(args.get("command", ""))),
    )


@tool_formatter("Read")
@tool_formatter("Write")
@tool_formatter("Edit")
@tool_formatter("MultiEdit")
def _format_file_tool(name: str, args: dict) -> FormattedToolCall:
    file_path = str(args.get("file_path", ""))
    icon = "\U0001f4c4" if name == "Read" else "\U0001f4dd"
    return FormattedToolCall(
        icon=icon,
        label=name,
        summary=_basename(file_path),
        file_path=file_path,
    )


@tool_formatter("Glob")
@tool_formatter("Grep")
def _format_search(name: str, args: dict) -> FormattedToolCall:
    pattern = str(args.get("pattern", ""))
    path = str(args.get("path", ""))
    summary = pattern if not path else f"{pattern} in {_basename(path)}"
    return FormattedToolCall(
        icon="\U0001f50d", label=name, summary=truncate_text(summary),
    )


@tool_formatter("Task")
def _format_task(name: str, args: dict) -> FormattedToolCall:
    description = str(args.get("description", ""))
    prompt = str(args.get("prompt", ""))
    return FormattedToolCall(
        icon="\U0001f500",
        label="Task",
        summary=truncate_text(description or prompt, 50),
    )


@tool_formatter("ask_user")
def _format_ask_user(name: str, args: dict) -> FormattedToolCall:
    questions = args.get("questions") or []
    first = ""
    if isinstance(questions, list) and questions and isinstance(questions[0], dict):
        first = str(questions[0].get("question", ""))
    count = len(questions) if isinstance(questions, list) else 0
    summary = truncate_text(first, 50)
    if count > 1:
        summary = f"{summary} (+{count - 1} more)"
    return FormattedToolCall(icon="?", label="Ask user", summary=summary)


def _format_default(name: str, args: dict) -> FormattedToolCall:
    """Fallback formatter for unrecognised tool names."""
    display_args = {
        k: truncate_text(str(v), 80) for k, v in args.items() if not k.startswith("_")
    }
    summary = truncate_text(
        ", ".join(f"{k}={v}" for k, v in display_args.items()), 50,
    )
    return FormattedToolCall(
        icon="\U0001f527",
        label=tool_display_name(name),
        summary=summary,
    )
