"""End-to-end tests for the session controller over a scripted transport."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from vaultkeeper.adapters.settings_store import SettingsStore
from vaultkeeper.engine.ask_user import ASK_USER_TOOL
from vaultkeeper.engine.config import EngineConfig
from vaultkeeper.engine.errors import (
    SessionBusyError,
    SessionClosedError,
    UnknownToolCallError,
)
from vaultkeeper.engine.models import (
    ErrorType,
    GuardReason,
    PermissionReason,
    PermissionResponse,
    SessionState,
    Settings,
    SubagentStatus,
    ToolCallStatus,
    TurnStatus,
)
from vaultkeeper.engine.session_controller import (
    DISCARDED_BY_ABORT,
    INTERRUPTED_BY_TRANSPORT,
    SessionController,
)
from vaultkeeper.engine.transport import (
    ErrorEvent,
    Hold,
    ScriptedTransport,
    SubagentUpdate,
    TextDelta,
    ToolCallEnd,
    ToolCallStart,
    TurnComplete,
)


def make_controller(scripts, settings: Settings | None = None, **config_kwargs):
    events: list[dict] = []

    async def record(event: dict) -> None:
        events.append(event)

    config_kwargs.setdefault("event_callback", record)
    config = EngineConfig(
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        **config_kwargs,
    )
    transport = ScriptedTransport(scripts)
    store = SettingsStore(initial=settings or Settings())
    controller = SessionController(transport, store, config)
    return controller, transport, store, events


def named(events: list[dict], name: str) -> list[dict]:
    return [e for e in events if e["event"] == name]


def states(events: list[dict]) -> list[str]:
    return [e["new_state"] for e in named(events, "session_state_changed")]


def tool_statuses(events: list[dict], tool_id: str) -> list[str]:
    return [
        e["tool_call"]["status"]
        for e in named(events, "tool_call_updated")
        if e["tool_call"]["id"] == tool_id
    ]


# ── Queue draining ──


@pytest.mark.asyncio
async def test_message_sent_while_streaming_is_queued_and_drained() -> None:
    hold = Hold()
    controller, transport, _, events = make_controller([
        [TextDelta(text="Working on A"), hold, TurnComplete(cost_usd=0.5)],
        [TextDelta(text="B done"), TurnComplete(cost_usd=0.25)],
    ])

    assert await controller.submit("A") is None
    await hold.reached.wait()
    assert controller.state is SessionState.STREAMING

    queued = await controller.submit("B")
    assert queued is not None
    assert queued.content == "B"
    assert len(controller.queue) == 1

    hold.release.set()
    await controller.wait_idle()

    session = controller.session
    assert [t.content for t in session.turns] == ["A", "B"]
    assert all(t.status is TurnStatus.COMPLETED for t in session.turns)
    assert session.turns[1].queued_message_id == queued.id
    assert session.turns[0].text == "Working on A"
    assert session.total_cost_usd == pytest.approx(0.75)
    assert len(controller.queue) == 0
    assert controller.state is SessionState.IDLE
    # No idle gap between the two turns
    assert states(events) == [
        "dispatching", "streaming", "completed",
        "dispatching", "streaming", "completed",
        "idle",
    ]
    assert [e["message"]["id"] for e in named(events, "message_dequeued")] == [queued.id]


@pytest.mark.asyncio
async def test_removed_queued_message_is_never_dispatched() -> None:
    hold = Hold()
    controller, transport, _, _ = make_controller([
        [hold, TurnComplete()],
        [TurnComplete()],
    ])
    await controller.submit("A")
    await hold.reached.wait()
    b = await controller.submit("B")
    c = await controller.submit("C")
    assert controller.remove_queued(b.id) is True
    assert controller.remove_queued(b.id) is False

    hold.release.set()
    await controller.wait_idle()

    assert [t.content for t in controller.session.turns] == ["A", "C"]
    assert controller.session.turns[1].queued_message_id == c.id
    assert [r.content for r in transport.requests] == ["A", "C"]


@pytest.mark.asyncio
async def test_errored_turn_still_drains_queue() -> None:
    hold = Hold()
    controller, _, _, _ = make_controller([
        [hold, ErrorEvent(message="schema validation failed")],
        [TurnComplete()],
    ])
    await controller.submit("A")
    await hold.reached.wait()
    await controller.submit("B")
    hold.release.set()
    await controller.wait_idle()

    first, second = controller.session.turns
    assert first.status is TurnStatus.ERRORED
    assert first.error_type is ErrorType.PERMANENT
    assert first.attempts == 1
    assert second.status is TurnStatus.COMPLETED


class FailingSettings:
    """Settings source that starts raising once ``broken`` is set."""

    def __init__(self) -> None:
        self.broken = False

    def snapshot(self) -> Settings:
        if self.broken:
            raise RuntimeError("settings file vanished")
        return Settings()

    def add_always_allowed(self, tool_name: str) -> None:
        pass


@pytest.mark.asyncio
async def test_failure_before_queued_turn_begins_records_errored_turn() -> None:
    events: list[dict] = []

    async def record(event: dict) -> None:
        events.append(event)

    hold = Hold()
    settings = FailingSettings()
    transport = ScriptedTransport([[hold, TurnComplete()]])
    controller = SessionController(
        transport, settings, EngineConfig(event_callback=record),
    )
    await controller.submit("A")
    await hold.reached.wait()
    b = await controller.submit("B")
    settings.broken = True
    hold.release.set()
    await controller.wait_idle()

    first, second = controller.session.turns
    assert (first.content, first.status) == ("A", TurnStatus.COMPLETED)
    assert (second.content, second.status) == ("B", TurnStatus.ERRORED)
    assert second.queued_message_id == b.id
    assert "settings file vanished" in second.error
    assert transport.remaining_scripts == 0
    assert len(controller.queue) == 0
    assert controller.state is SessionState.IDLE

    finished = [(e["turn_id"], e["status"]) for e in named(events, "turn_finished")]
    assert finished == [
        (first.turn_id, "completed"),
        (second.turn_id, "errored"),
    ]


# ── Permissions ──


@pytest.mark.asyncio
async def test_bash_approve_session_then_auto_approved() -> None:
    seen: dict = {}

    async def answer(tool_call, decision):
        seen["state"] = controller.state
        seen["turn_status"] = controller.session.current_turn.status
        seen["tool_status"] = tool_call.status
        seen["reason"] = decision.reason
        return PermissionResponse.APPROVE_SESSION

    permission = AsyncMock(side_effect=answer)
    controller, transport, _, events = make_controller(
        [[
            ToolCallStart(tool_id="b1", name="Bash", input={"command": "ls"}),
            ToolCallEnd(tool_id="b1", output="inbox.md"),
            ToolCallStart(tool_id="b2", name="Bash", input={"command": "pwd"}),
            ToolCallEnd(tool_id="b2", output="/vault"),
            TurnComplete(),
        ]],
        settings=Settings(require_bash_approval=True),
        permission_callback=permission,
    )

    await controller.submit("List the vault")
    await controller.wait_idle()

    assert seen == {
        "state": SessionState.AWAITING_PERMISSION,
        "turn_status": TurnStatus.AWAITING_PERMISSION,
        "tool_status": ToolCallStatus.PENDING,
        "reason": PermissionReason.REQUIRES_BASH_APPROVAL,
    }
    assert permission.await_count == 1
    assert controller.session.approved_tools == {"Bash"}

    assert tool_statuses(events, "b1") == ["running", "success"]
    assert tool_statuses(events, "b2") == ["running", "success"]
    assert controller.registry.get("b1").output == "inbox.md"
    assert transport.response_for("b1").allow is True
    assert transport.response_for("b2").allow is True

    resolved = {e["tool_id"]: e for e in named(events, "permission_resolved")}
    assert resolved["b1"]["response"] == "approve-session"
    assert resolved["b2"]["reason"] == "session-approved"
    assert resolved["b2"]["response"] is None
    assert states(events).count("awaiting_permission") == 1
    assert controller.session.turns[0].status is TurnStatus.COMPLETED


@pytest.mark.asyncio
async def test_denied_tool_call_records_refusal_and_turn_continues() -> None:
    controller, transport, _, _ = make_controller(
        [[
            ToolCallStart(tool_id="w1", name="Write", input={"file_path": "a.md"}),
            TextDelta(text="Okay, I won't write it."),
            TurnComplete(),
        ]],
        permission_callback=AsyncMock(return_value="deny"),
    )
    await controller.submit("Write a note")
    await controller.wait_idle()

    call = controller.registry.get("w1")
    assert call.status is ToolCallStatus.ERROR
    assert "denied" in call.error
    assert call.end_time is not None
    response = transport.response_for("w1")
    assert response.allow is False
    assert response.message == call.error
    turn = controller.session.turns[0]
    assert turn.status is TurnStatus.COMPLETED
    assert turn.error is None
    assert controller.session.approved_tools == set()


@pytest.mark.asyncio
async def test_approve_always_persists_to_settings() -> None:
    controller, _, store, _ = make_controller(
        [[ToolCallStart(tool_id="w1", name="Edit"), TurnComplete()]],
        permission_callback=AsyncMock(return_value=PermissionResponse.APPROVE_ALWAYS),
    )
    await controller.submit("Fix the typo")
    await controller.wait_idle()

    assert "Edit" in store.snapshot().always_allowed_tools
    assert "Edit" in controller.session.approved_tools
    assert controller.registry.get("w1").status is ToolCallStatus.RUNNING


@pytest.mark.asyncio
async def test_approve_once_is_not_remembered() -> None:
    permission = AsyncMock(return_value="approve-once")
    controller, _, store, _ = make_controller(
        [[
            ToolCallStart(tool_id="w1", name="Write"),
            ToolCallStart(tool_id="w2", name="Write"),
            TurnComplete(),
        ]],
        permission_callback=permission,
    )
    await controller.submit("Write twice")
    await controller.wait_idle()

    assert permission.await_count == 2
    assert controller.session.approved_tools == set()
    assert store.snapshot().always_allowed_tools == frozenset()


@pytest.mark.asyncio
@pytest.mark.parametrize("callback", [
    None,
    AsyncMock(side_effect=RuntimeError("modal crashed")),
    AsyncMock(return_value="maybe"),
])
async def test_unusable_permission_answer_is_deny(callback) -> None:
    controller, transport, _, _ = make_controller(
        [[ToolCallStart(tool_id="b1", name="Bash"), TurnComplete()]],
        permission_callback=callback,
    )
    await controller.submit("Run something")
    await controller.wait_idle()

    assert controller.registry.get("b1").status is ToolCallStatus.ERROR
    assert transport.response_for("b1").allow is False
    assert controller.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_tool_id_reused_in_later_turn_is_asked_again() -> None:
    permission = AsyncMock(return_value=PermissionResponse.APPROVE_ONCE)
    controller, transport, _, events = make_controller(
        [
            [
                ToolCallStart(tool_id="t1", name="Bash", input={"command": "ls"}),
                ToolCallEnd(tool_id="t1", output="a.md"),
                TurnComplete(),
            ],
            [
                ToolCallStart(tool_id="t1", name="Bash", input={"command": "rm x"}),
                TurnComplete(),
            ],
        ],
        permission_callback=permission,
    )
    await controller.submit("List")
    await controller.wait_idle()
    await controller.submit("Delete")
    await controller.wait_idle()

    assert permission.await_count == 2
    asked = [call.args[0].input["command"] for call in permission.await_args_list]
    assert asked == ["ls", "rm x"]
    assert [tool_id for tool_id, _ in transport.responses] == ["t1", "t1"]

    first, second = controller.session.turns
    assert [c.input["command"] for c in second.tool_calls] == ["rm x"]
    assert first.tool_calls[0].status is ToolCallStatus.SUCCESS
    # Lookups resolve to the newest call; history keeps both
    assert controller.registry.get("t1") is second.tool_calls[0]
    assert controller.registry.get("t1").status is ToolCallStatus.RUNNING
    assert len(controller.registry.all()) == 2
    assert len(named(events, "permission_requested")) == 2


@pytest.mark.asyncio
async def test_repeated_start_within_turn_is_ignored() -> None:
    permission = AsyncMock(return_value="approve-once")
    controller, transport, _, _ = make_controller(
        [[
            ToolCallStart(tool_id="t1", name="Bash"),
            ToolCallStart(tool_id="t1", name="Bash"),
            TurnComplete(),
        ]],
        permission_callback=permission,
    )
    await controller.submit("Run")
    await controller.wait_idle()

    assert permission.await_count == 1
    assert len(transport.responses) == 1
    assert len(controller.session.turns[0].tool_calls) == 1


# ── Retry / error handling ──


@pytest.mark.asyncio
async def test_network_errors_retried_until_success() -> None:
    controller, transport, _, events = make_controller([
        [ErrorEvent(message="getaddrinfo ENOTFOUND api.example.com")],
        [ConnectionError("connect ECONNREFUSED 10.0.0.1:443")],
        [TextDelta(text="Done"), TurnComplete(cost_usd=0.1)],
    ])
    await controller.submit("Summarise")
    await controller.wait_idle()

    turn = controller.session.turns[0]
    assert turn.status is TurnStatus.COMPLETED
    assert turn.attempts == 3
    assert turn.error is None
    assert turn.text == "Done"
    assert [r.attempt for r in transport.requests] == [1, 2, 3]

    retries = named(events, "retry_scheduled")
    assert [r["attempt"] for r in retries] == [1, 2]
    assert all(r["error_type"] == "network" for r in retries)
    # Retried errors stay out of user-visible payloads
    assert not any("ENOTFOUND" in json.dumps(e) for e in events)
    finished = named(events, "turn_finished")
    assert len(finished) == 1
    assert finished[0]["status"] == "completed"


@pytest.mark.asyncio
async def test_retries_exhausted_surfaces_last_error() -> None:
    controller, transport, _, events = make_controller([
        [ErrorEvent(message="rate limit exceeded")],
        [ErrorEvent(message="socket hang up")],
        [ErrorEvent(message="DNS lookup failed")],
    ])
    await controller.submit("Summarise")
    await controller.wait_idle()

    turn = controller.session.turns[0]
    assert turn.status is TurnStatus.ERRORED
    assert turn.error == "DNS lookup failed"
    assert turn.error_type is ErrorType.NETWORK
    assert turn.attempts == 3
    assert controller.state is SessionState.IDLE
    assert states(events)[-2:] == ["errored", "idle"]
    finished = named(events, "turn_finished")
    assert finished[-1]["error"] == "DNS lookup failed"


@pytest.mark.asyncio
@pytest.mark.parametrize("message, error_type", [
    ("401 Unauthorized", ErrorType.AUTH),
    ("Invalid request: prompt too long", ErrorType.PERMANENT),
])
async def test_auth_and_permanent_never_retry(message, error_type) -> None:
    controller, transport, _, events = make_controller([
        [ErrorEvent(message=message)],
        [TurnComplete()],
    ])
    await controller.submit("Hello")
    await controller.wait_idle()

    turn = controller.session.turns[0]
    assert turn.status is TurnStatus.ERRORED
    assert turn.error == message
    assert turn.error_type is error_type
    assert transport.remaining_scripts == 1
    assert named(events, "retry_scheduled") == []


@pytest.mark.asyncio
async def test_failed_attempt_interrupts_open_tool_calls() -> None:
    controller, _, _, _ = make_controller([
        [ToolCallStart(tool_id="f1", name="WebFetch"), ErrorEvent(message="socket hang up")],
        [TurnComplete()],
    ])
    await controller.submit("Fetch it")
    await controller.wait_idle()

    call = controller.registry.get("f1")
    assert call.status is ToolCallStatus.ERROR
    assert call.error == INTERRUPTED_BY_TRANSPORT
    assert controller.session.turns[0].status is TurnStatus.COMPLETED


@pytest.mark.asyncio
async def test_stream_without_turn_complete_counts_as_completed() -> None:
    controller, _, _, _ = make_controller([[TextDelta(text="partial")]])
    await controller.submit("Hi")
    await controller.wait_idle()
    turn = controller.session.turns[0]
    assert turn.status is TurnStatus.COMPLETED
    assert turn.text == "partial"


@pytest.mark.asyncio
async def test_failing_event_callback_is_ignored() -> None:
    controller, _, _, _ = make_controller(
        [[TextDelta(text="hi"), TurnComplete()]],
        event_callback=AsyncMock(side_effect=RuntimeError("ui gone")),
    )
    await controller.submit("Hi")
    await controller.wait_idle()
    assert controller.session.turns[0].status is TurnStatus.COMPLETED


# ── Budget / turn guard ──


class TestGuard:
    @pytest.mark.asyncio
    async def test_budget_confirmed_once(self):
        confirm = AsyncMock(return_value=True)
        controller, _, _, events = make_controller(
            [
                [TurnComplete(cost_usd=1.5)],
                [TurnComplete(cost_usd=0.5)],
                [TurnComplete(cost_usd=0.5)],
            ],
            settings=Settings(max_budget_per_session=1.0),
            confirmation_callback=confirm,
        )
        for text in ("one", "two", "three"):
            await controller.submit(text)
            await controller.wait_idle()

        assert confirm.await_count == 1
        assert confirm.await_args.args[0] is GuardReason.BUDGET
        assert GuardReason.BUDGET in controller.session.confirmed_guards
        assert controller.session.turn_count == 3
        assert named(events, "confirmation_requested")[0]["reason"] == "budget"

    @pytest.mark.asyncio
    async def test_max_turns_cancel_does_not_dispatch(self):
        confirm = AsyncMock(return_value=False)
        controller, transport, _, events = make_controller(
            [[TurnComplete()], [TurnComplete()]],
            settings=Settings(max_turns=1),
            confirmation_callback=confirm,
        )
        await controller.submit("one")
        await controller.wait_idle()
        await controller.submit("two")
        await controller.wait_idle()

        assert confirm.await_args.args[0] is GuardReason.MAX_TURNS
        assert controller.session.turn_count == 1
        assert transport.remaining_scripts == 1
        assert controller.state is SessionState.IDLE
        assert states(events)[-2:] == ["awaiting_confirmation", "idle"]

    @pytest.mark.asyncio
    async def test_cancel_clears_queue(self):
        hold = Hold()
        controller, _, _, events = make_controller(
            [[hold, TurnComplete()]],
            settings=Settings(max_turns=1),
            confirmation_callback=AsyncMock(return_value=False),
        )
        await controller.submit("one")
        await hold.reached.wait()
        await controller.submit("two")
        c = await controller.submit("three")
        hold.release.set()
        await controller.wait_idle()

        assert len(controller.queue) == 0
        assert [t.content for t in controller.session.turns] == ["one"]
        cleared = named(events, "queue_cleared")
        assert [m["id"] for m in cleared[0]["dropped"]] == [c.id]

    @pytest.mark.asyncio
    async def test_no_confirmation_handler_cancels(self):
        controller, transport, _, _ = make_controller(
            [[TurnComplete()]],
            settings=Settings(max_turns=1),
        )
        await controller.submit("one")
        await controller.wait_idle()
        await controller.submit("two")
        await controller.wait_idle()
        assert controller.session.turn_count == 1

    @pytest.mark.asyncio
    async def test_both_guards_asked_in_order(self):
        confirm = AsyncMock(return_value=True)
        controller, _, _, _ = make_controller(
            [[TurnComplete(cost_usd=2.0)], [TurnComplete()]],
            settings=Settings(max_budget_per_session=1.0, max_turns=1),
            confirmation_callback=confirm,
        )
        await controller.submit("one")
        await controller.wait_idle()
        await controller.submit("two")
        await controller.wait_idle()

        reasons = [call.args[0] for call in confirm.await_args_list]
        assert reasons == [GuardReason.BUDGET, GuardReason.MAX_TURNS]
        assert controller.session.turns[1].status is TurnStatus.COMPLETED


# ── Abort ──


@pytest.mark.asyncio
async def test_abort_discards_pending_permission() -> None:
    asked = asyncio.Event()

    async def never_answer(tool_call, decision):
        asked.set()
        await asyncio.Event().wait()

    controller, transport, _, events = make_controller(
        [[ToolCallStart(tool_id="w1", name="Write"), TurnComplete()]],
        permission_callback=never_answer,
    )
    await controller.submit("Write a note")
    await asked.wait()
    assert controller.state is SessionState.AWAITING_PERMISSION

    assert await controller.abort() is True
    await controller.wait_idle()

    call = controller.registry.get("w1")
    assert call.status is ToolCallStatus.ERROR
    assert call.error == DISCARDED_BY_ABORT
    assert transport.response_for("w1") is None
    assert transport.abort_count == 1
    assert controller.session.turns[0].status is TurnStatus.ABORTED
    assert controller.state is SessionState.IDLE
    assert states(events)[-2:] == ["aborted", "idle"]


@pytest.mark.asyncio
async def test_abort_interrupts_subagents_and_keeps_running_tools() -> None:
    hold = Hold()
    controller, _, _, _ = make_controller([[
        ToolCallStart(tool_id="t1", name="Task", input={"description": "Survey notes"}),
        SubagentUpdate(tool_id="t1", status=SubagentStatus.THINKING, message="Reading"),
        ToolCallStart(tool_id="r1", name="Read", parent_tool_id="t1"),
        ToolCallStart(tool_id="x1", name="WebFetch"),
        hold,
        TurnComplete(),
    ]])
    await controller.submit("Survey")
    await hold.reached.wait()
    await controller.abort()
    await controller.wait_idle()

    task = controller.registry.get("t1")
    assert task.subagent_status is SubagentStatus.INTERRUPTED
    assert task.end_time is not None
    assert controller.registry.get("r1").status is ToolCallStatus.RUNNING
    assert controller.registry.get("x1").status is ToolCallStatus.RUNNING

    # Executors report back after the fact
    assert await controller.record_tool_result("x1", output="page") is True
    assert controller.registry.get("x1").status is ToolCallStatus.SUCCESS
    assert await controller.record_tool_result("r1", error="cancelled") is True
    assert controller.registry.get("r1").status is ToolCallStatus.ERROR
    assert await controller.record_tool_result("t1", output="late") is False
    with pytest.raises(UnknownToolCallError):
        await controller.record_tool_result("missing")


@pytest.mark.asyncio
async def test_aborted_turn_does_not_drain_queue_until_next_submit() -> None:
    hold = Hold()
    controller, transport, _, _ = make_controller([
        [hold, TurnComplete()],
        [TurnComplete()],
        [TurnComplete()],
    ])
    await controller.submit("A")
    await hold.reached.wait()
    b = await controller.submit("B")
    await controller.abort()
    await controller.wait_idle()

    assert controller.state is SessionState.IDLE
    assert [m.id for m in controller.queue] == [b.id]

    c = await controller.submit("C")
    assert c is not None and c.content == "C"
    await controller.wait_idle()

    assert [t.content for t in controller.session.turns] == ["A", "B", "C"]
    assert [t.status for t in controller.session.turns] == [
        TurnStatus.ABORTED, TurnStatus.COMPLETED, TurnStatus.COMPLETED,
    ]


@pytest.mark.asyncio
async def test_abort_when_idle_is_noop() -> None:
    controller, transport, _, _ = make_controller([])
    assert await controller.abort() is False
    assert transport.abort_count == 0


# ── Sub-agents and local tools ──


@pytest.mark.asyncio
async def test_subagent_lifecycle() -> None:
    controller, _, _, _ = make_controller([[
        ToolCallStart(tool_id="t1", name="Task", input={"prompt": "Tag notes"}),
        SubagentUpdate(tool_id="t1", status=SubagentStatus.RUNNING, message="Scanning"),
        ToolCallStart(tool_id="g1", name="Grep", parent_tool_id="t1"),
        ToolCallEnd(tool_id="g1", output="3 matches"),
        ToolCallEnd(tool_id="t1", output="Tagged 3 notes"),
        TurnComplete(),
    ]])
    started_progress: list = []

    original = controller.registry.start

    def spy(tool_call, **kwargs):
        if tool_call.is_subagent:
            started_progress.append(
                (tool_call.subagent_status, tool_call.subagent_progress.message)
            )
        return original(tool_call, **kwargs)

    controller.registry.start = spy
    await controller.submit("Tag everything")
    await controller.wait_idle()

    assert started_progress == [(SubagentStatus.STARTING, "Starting...")]
    task = controller.registry.get("t1")
    assert task.is_subagent
    assert task.subagent_status is SubagentStatus.COMPLETED
    assert task.status is ToolCallStatus.SUCCESS
    assert task.subagent_progress.message == "Scanning"
    assert [c.id for c in controller.registry.children_of("t1")] == ["g1"]
    assert controller.registry.get("g1").status is ToolCallStatus.SUCCESS


@pytest.mark.asyncio
async def test_ask_user_tool_runs_locally() -> None:
    questions = AsyncMock(return_value={"Which folder?": "daily"})
    controller, transport, _, _ = make_controller(
        [[
            ToolCallStart(
                tool_id="q1",
                name=ASK_USER_TOOL,
                input={"questions": [{"question": "Which folder?", "options": [{"label": "daily"}]}]},
            ),
            TurnComplete(),
        ]],
        user_question_callback=questions,
    )
    await controller.submit("Organise")
    await controller.wait_idle()

    response = transport.response_for("q1")
    assert response.allow is True
    payload = json.loads(response.result["content"][0]["text"])
    assert payload == {"answers": {"Which folder?": "daily"}}
    call = controller.registry.get("q1")
    assert call.status is ToolCallStatus.SUCCESS
    assert call.output == response.result


# ── Session management ──


@pytest.mark.asyncio
async def test_title_and_snapshot() -> None:
    long_line = "Please reorganise every note in the projects folder by status"
    controller, _, _, _ = make_controller([[
        ToolCallStart(tool_id="r1", name="Read"),
        ToolCallEnd(tool_id="r1", output="..."),
        TurnComplete(cost_usd=0.2),
    ]])
    await controller.submit(long_line + "\nand archive the rest")
    await controller.wait_idle()

    snapshot = controller.snapshot()
    assert snapshot.state is SessionState.IDLE
    assert snapshot.title == long_line[:47] + "..."
    assert snapshot.turn_count == 1
    assert snapshot.total_cost_usd == pytest.approx(0.2)
    assert snapshot.current_turn_id is None
    assert [t["id"] for t in snapshot.tool_calls] == ["r1"]
    assert snapshot.queued == []


@pytest.mark.asyncio
async def test_new_conversation_requires_idle() -> None:
    hold = Hold()
    controller, _, _, events = make_controller([[hold, TurnComplete()]])
    await controller.submit("A")
    await hold.reached.wait()
    with pytest.raises(SessionBusyError):
        await controller.new_conversation()

    hold.release.set()
    await controller.wait_idle()
    old_id = controller.session.session_id
    await controller.new_conversation()

    assert controller.session is None
    assert len(controller.registry) == 0
    assert named(events, "session_reset")[0]["old_session_id"] == old_id


@pytest.mark.asyncio
async def test_closed_session_rejects_input() -> None:
    hold = Hold()
    controller, transport, _, _ = make_controller([[hold, TurnComplete()]])
    await controller.submit("A")
    await hold.reached.wait()
    await controller.close()

    assert controller.closed
    assert controller.session.closed
    assert controller.session.turns[0].status is TurnStatus.ABORTED
    with pytest.raises(SessionClosedError):
        await controller.submit("B")
