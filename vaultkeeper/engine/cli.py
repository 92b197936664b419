"""CLI entry point that replays a scripted session.

Usage:
    vaultkeeper-replay session.yaml
    vaultkeeper-replay session.yaml --config vaultkeeper.yaml --yes
    python -m vaultkeeper.engine.cli session.yaml --settings settings.json

Script format:
    messages:                 # submitted back to back; later ones queue
      - "Tidy up my daily notes"
    attempts:                 # one event list per transport stream, in order
      - - {type: text, text: "Looking at the vault..."}
        - {type: tool-call-start, tool_id: t1, name: Bash, input: {command: ls}}
        - {type: tool-call-end, tool_id: t1, output: "daily/"}
        - {type: turn-complete, cost_usd: 0.01}

Permission and budget decisions are asked on stdin unless --yes is
given.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from vaultkeeper.adapters.event_bus import EventBus
from vaultkeeper.adapters.events import (
    MessageQueued,
    RetryScheduled,
    SessionEvent,
    StreamChunk,
    ToolCallStarted,
    ToolCallUpdated,
    TurnFinished,
)
from vaultkeeper.adapters.settings_store import SettingsStore
from vaultkeeper.shared.formatters.tool_call import format_tool_call

from .ask_user import AskUserQuestion
from .config import EngineConfig
from .models import GuardReason, PermissionDecision, PermissionResponse, ToolCall, TurnStatus
from .session_controller import SessionController
from .transport import ScriptedTransport, TransportEvent, event_from_dict
from .yaml_config import load_yaml_config

logger = logging.getLogger(__name__)

_PERMISSION_CHOICES = {
    "o": PermissionResponse.APPROVE_ONCE,
    "s": PermissionResponse.APPROVE_SESSION,
    "a": PermissionResponse.APPROVE_ALWAYS,
    "d": PermissionResponse.DENY,
}


@dataclass
class ReplayScript:
    messages: list[str] = field(default_factory=list)
    attempts: list[list[TransportEvent]] = field(default_factory=list)


def load_script(path: str | Path) -> ReplayScript:
    """Parse a replay script. Raises ValueError for a malformed one."""
    path = Path(path)
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    messages = raw.get("messages") or []
    if not isinstance(messages, list) or not all(isinstance(m, str) for m in messages):
        raise ValueError(f"{path}: 'messages' must be a list of strings")
    if not messages:
        raise ValueError(f"{path}: no messages to replay")

    attempts: list[list[TransportEvent]] = []
    for index, attempt in enumerate(raw.get("attempts") or [], start=1):
        if not isinstance(attempt, list):
            raise ValueError(f"{path}: attempt {index} must be a list of events")
        events = []
        for item in attempt:
            if not isinstance(item, dict):
                raise ValueError(f"{path}: attempt {index} has a non-mapping event")
            events.append(event_from_dict(item))
        attempts.append(events)
    return ReplayScript(messages=messages, attempts=attempts)


async def _prompt(text: str) -> str:
    """Read one line from stdin without blocking the event loop."""
    try:
        return (await asyncio.to_thread(input, text)).strip()
    except EOFError:
        return ""


def _print_event(event: SessionEvent) -> None:
    if isinstance(event, StreamChunk):
        print(event.text, end="", flush=True)
    elif isinstance(event, ToolCallStarted):
        tool = event.tool_call
        fmt = format_tool_call(tool["name"], tool.get("input"))
        print(f"\n{fmt.icon} {fmt.label} {fmt.summary}".rstrip())
    elif isinstance(event, ToolCallUpdated):
        tool = event.tool_call
        status = tool.get("subagentStatus") or tool["status"]
        detail = tool.get("error") or ""
        print(f"  [{tool['name']}] {status} {detail}".rstrip())
    elif isinstance(event, RetryScheduled):
        print(
            f"\n(retrying in {event.delay_seconds:.1f}s, "
            f"attempt {event.attempt}/{event.max_attempts} failed)"
        )
    elif isinstance(event, TurnFinished):
        line = f"\n--- turn {event.status}"
        if event.error:
            line += f" ({event.error_type}): {event.error}"
        print(line)
    elif isinstance(event, MessageQueued):
        print(f"(queued: {event.message['content'][:60]})")


async def _print_events(bus: EventBus) -> None:
    async for event in bus.consume():
        _print_event(event)


async def _ask_permission(tool_call: ToolCall, decision: PermissionDecision) -> PermissionResponse:
    fmt = format_tool_call(tool_call.name, tool_call.input)
    print(f"\nPermission needed for {fmt.label} {fmt.summary} ({decision.reason.value})")
    while True:
        answer = (await _prompt("[o]nce / [s]ession / [a]lways / [d]eny: ")).lower()
        if not answer:
            return PermissionResponse.DENY
        if answer[0] in _PERMISSION_CHOICES:
            return _PERMISSION_CHOICES[answer[0]]


async def _confirm(reason: GuardReason, message: str) -> bool:
    print(f"\n{message}")
    return (await _prompt("continue? [y/N]: ")).lower().startswith("y")


async def _ask_questions(questions: list[AskUserQuestion]) -> dict[str, str]:
    answers: dict[str, str] = {}
    for question in questions:
        print(f"\n{question.header or 'Question'}: {question.question}")
        for index, option in enumerate(question.options, start=1):
            suffix = f" - {option.description}" if option.description else ""
            print(f"  {index}. {option.label}{suffix}")
        reply = await _prompt("answer (number(s) or text): ")
        picked = []
        for part in reply.replace(",", " ").split():
            if part.isdigit() and 1 <= int(part) <= len(question.options):
                picked.append(question.options[int(part) - 1].label)
        if picked:
            answers[question.question] = ", ".join(
                picked if question.multi_select else picked[-1:]
            )
        else:
            answers[question.question] = reply
    return answers


async def _auto_permission(tool_call: ToolCall, decision: PermissionDecision) -> PermissionResponse:
    print(f"\n(auto-approving {tool_call.name} once)")
    return PermissionResponse.APPROVE_ONCE


async def _auto_confirm(reason: GuardReason, message: str) -> bool:
    print(f"\n{message} (auto-confirmed)")
    return True


async def replay(
    script: ReplayScript,
    config: EngineConfig,
    store: SettingsStore,
    auto_approve: bool = False,
) -> int:
    """Run the script through a SessionController. Returns an exit code."""
    transport = ScriptedTransport(script.attempts)
    bus = EventBus()
    config.event_callback = bus.publish
    if auto_approve:
        config.permission_callback = _auto_permission
        config.confirmation_callback = _auto_confirm
    else:
        config.permission_callback = _ask_permission
        config.confirmation_callback = _confirm
    config.user_question_callback = _ask_questions

    controller = SessionController(transport, store, config)
    printer = asyncio.create_task(_print_events(bus))
    try:
        for message in script.messages:
            await controller.submit(message)
        await controller.wait_idle()
    finally:
        await controller.close()
        bus.close()
        await printer

    session = controller.session
    turns = session.turns if session else []
    completed = sum(1 for t in turns if t.status is TurnStatus.COMPLETED)
    print(
        f"\n=== {completed}/{len(turns)} turn(s) completed, "
        f"cost ${session.total_cost_usd if session else 0.0:.4f} ==="
    )
    if transport.remaining_scripts:
        logger.warning(
            "%d scripted attempt(s) were never consumed",
            transport.remaining_scripts,
        )
    if len(turns) < len(script.messages) or completed < len(turns):
        return 1
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="vaultkeeper-replay",
        description="Replay a scripted agent session through the session controller",
    )
    parser.add_argument(
        "script",
        help="YAML file with 'messages' and per-attempt transport 'attempts'",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file with 'engine' and 'settings' sections",
    )
    parser.add_argument(
        "--settings",
        default=None,
        help="JSON settings file (created on approve-always)",
    )
    parser.add_argument(
        "--yes", "-y",
        action="store_true",
        help="Approve every permission request and guard confirmation",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)

    # Build config
    if args.config:
        try:
            loaded = load_yaml_config(args.config)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            print(f"Error: cannot load config {args.config}: {exc}")
            sys.exit(1)
        config, settings = loaded.engine, loaded.settings
    else:
        config = EngineConfig.from_env()
        settings = None

    # Configure logging
    level = logging.DEBUG if args.verbose else getattr(
        logging, config.log_level.upper(), logging.INFO,
    )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        script = load_script(args.script)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"Error: cannot load script {args.script}: {exc}")
        sys.exit(1)

    store = SettingsStore(args.settings, initial=settings)

    try:
        exit_code = asyncio.run(replay(script, config, store, auto_approve=args.yes))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(1)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
