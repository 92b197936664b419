"""Turn state machine for one operator/agent session.

The controller owns all mutable session state: the Session record, the
message queue, the tool-call registry and the session-approved tool
set. Everything else (transport, settings, human decisions, UI) is a
collaborator reached through the interfaces in transport.py and
config.py.

Lifecycle of a turn:
1. ``submit`` either starts the runner task or queues the message.
2. Before every dispatch the budget/turn guard is checked; a tripped
   guard waits in AWAITING_CONFIRMATION for the operator.
3. DISPATCHING -> STREAMING: events are consumed one at a time. Every
   tool-call-start goes through ``permissions.decide``; a denial parks
   the turn in AWAITING_PERMISSION until the operator answers.
4. turn-complete ends the turn; transport failures are classified and
   retried with backoff when transient or network related.
5. Between turns the queue is drained without passing through IDLE.

Exactly one turn is in flight at a time. Abort is cooperative: the
transport is told to stop and the running cycle is cancelled, but tool
executions already approved are left to report back through
``record_tool_result``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from vaultkeeper.shared.services.session_naming import generate_title

from .ask_user import ASK_USER_TOOL, AskUserTool
from .config import EngineConfig, SettingsSource, fire_event
from .error_policy import classify_error, error_message
from .errors import SessionBusyError, SessionClosedError, TransportFailure
from .lifecycle import validate_transition
from .message_queue import MessageQueue
from .models import (
    RUNNING_SUBAGENT_STATUSES,
    TERMINAL_SUBAGENT_STATUSES,
    GuardReason,
    PermissionDecision,
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
    now_ms,
)
from .permissions import SUBAGENT_TOOL, decide
from .tool_registry import ToolCallRegistry
from .transport import (
    ErrorEvent,
    SubagentUpdate,
    TextDelta,
    ToolCallEnd,
    ToolCallStart,
    ToolPermissionResult,
    Transport,
    TransportEvent,
    TurnComplete,
    TurnRequest,
)

logger = logging.getLogger(__name__)

INTERRUPTED_BY_TRANSPORT = "Interrupted by transport error"
DISCARDED_BY_ABORT = "Discarded: turn aborted before approval"


class LocalTool(Protocol):
    """A tool the controller executes itself once approved."""

    name: str

    async def run(self, tool_input: dict[str, Any]) -> Any: ...


class SessionController:
    """Drives turns for a single session.

    Usage:
        controller = SessionController(transport, SettingsStore(), config)
        await controller.submit("Summarise today's notes")
        await controller.wait_idle()
    """

    def __init__(
        self,
        transport: Transport,
        settings: SettingsSource,
        config: EngineConfig | None = None,
        *,
        local_tools: dict[str, LocalTool] | None = None,
    ) -> None:
        self._transport = transport
        self._settings = settings
        self._config = config or EngineConfig()
        self._retry_policy = self._config.retry_policy()
        self._event_callback = self._config.event_callback
        if local_tools is None:
            local_tools = {
                ASK_USER_TOOL: AskUserTool(self._config.user_question_callback),
            }
        self._local_tools = dict(local_tools)

        self._state = SessionState.IDLE
        self._session: Session | None = None
        self._queue = MessageQueue()
        self._registry = ToolCallRegistry()
        self._runner: asyncio.Task | None = None
        self._active_task: asyncio.Task | None = None
        self._abort_requested = False
        self._closed = False

    # ── Read-only views ──

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def queue(self) -> MessageQueue:
        return self._queue

    @property
    def registry(self) -> ToolCallRegistry:
        return self._registry

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_busy(self) -> bool:
        """True while the runner task is processing turns."""
        return self._runner is not None and not self._runner.done()

    def snapshot(self) -> SessionSnapshot:
        session = self._session
        current = session.current_turn if session else None
        return SessionSnapshot(
            state=self._state,
            session_id=session.session_id if session else None,
            title=session.title if session else None,
            current_turn_id=current.turn_id if current else None,
            queued=self._queue.to_list(),
            tool_calls=[tc.to_dict() for tc in self._registry.all()],
            total_cost_usd=session.total_cost_usd if session else 0.0,
            turn_count=session.turn_count if session else 0,
        )

    # ── Operator operations ──

    async def submit(self, content: str) -> QueuedMessage | None:
        """Hand a user message to the session.

        Returns the queued record when the message has to wait, or None
        when it was dispatched straight away.
        """
        self._ensure_open()
        self._ensure_session()

        if self.is_busy:
            message = self._queue.enqueue(content)
            logger.info(
                "Session %s busy (%s); queued message %s (queue length %d)",
                self._session_id_short,
                self._state.value,
                message.id,
                len(self._queue),
            )
            await self._fire("message_queued", message=message.to_dict())
            return message

        if self._queue:
            # Earlier messages are still waiting (e.g. after an abort).
            queued = self._queue.enqueue(content)
            await self._fire("message_queued", message=queued.to_dict())
            oldest = self._queue.dequeue()
            if oldest is not None:
                await self._fire("message_dequeued", message=oldest.to_dict())
                self._start_runner(oldest.content, oldest.id)
            return queued

        self._start_runner(content, None)
        return None

    def remove_queued(self, message_id: str) -> bool:
        removed = self._queue.remove(message_id)
        if removed:
            logger.info(
                "Session %s: removed queued message %s",
                self._session_id_short, message_id,
            )
        return removed

    async def abort(self) -> bool:
        """Abort the active turn. Returns False if nothing was running."""
        if not self.is_busy:
            return False
        logger.info(
            "Session %s: abort requested in state %s",
            self._session_id_short, self._state.value,
        )
        self._abort_requested = True
        try:
            await self._transport.abort()
        except Exception:
            logger.warning("Transport abort failed", exc_info=True)
        if self._active_task is not None and not self._active_task.done():
            self._active_task.cancel()
        return True

    async def wait_idle(self) -> None:
        """Wait until the runner has drained the queue and stopped."""
        while self._runner is not None and not self._runner.done():
            await asyncio.wait({self._runner})

    async def record_tool_result(
        self,
        tool_id: str,
        output: Any = None,
        error: str | None = None,
    ) -> bool:
        """Record the outcome of a tool execution after the fact.

        Used by executors that were still running when their turn was
        aborted. Raises UnknownToolCallError for an unknown id.
        """
        tool_call = self._registry.get(tool_id)
        changes: dict[str, Any] = {
            "output": output,
            "error": error,
            "status": ToolCallStatus.ERROR if error else ToolCallStatus.SUCCESS,
            "end_time": now_ms(),
        }
        if tool_call.is_subagent:
            changes["subagent_status"] = (
                SubagentStatus.ERROR if error else SubagentStatus.COMPLETED
            )
        changed = self._registry.update(tool_id, **changes)
        if changed:
            logger.info(
                "Recorded late result for tool %s (%s): %s",
                tool_id[:8], tool_call.name, tool_call.status.value,
            )
            await self._fire("tool_call_updated", tool_call=tool_call.to_dict())
        return changed

    async def new_conversation(self) -> None:
        """Drop the current session and start over on the next submit."""
        self._ensure_open()
        if self.is_busy:
            raise SessionBusyError(self._state)
        old_id = self._session.session_id if self._session else None
        dropped = self._queue.clear()
        self._registry.clear()
        self._session = None
        logger.info(
            "Session %s reset (%d queued message(s) dropped)",
            old_id[:8] if old_id else "-", len(dropped),
        )
        await self._fire(
            "session_reset",
            old_session_id=old_id,
            dropped=[m.to_dict() for m in dropped],
        )

    async def close(self) -> None:
        """Abort any active turn and refuse further input."""
        if self._closed:
            return
        await self.abort()
        await self.wait_idle()
        if self._session is not None:
            self._session.closed = True
        self._closed = True
        logger.info("Session %s closed", self._session_id_short)

    # ── Runner ──

    def _start_runner(self, content: str, queued_message_id: str | None) -> None:
        self._abort_requested = False
        self._runner = asyncio.create_task(
            self._run(content, queued_message_id),
            name=f"session-{self._session_id_short}",
        )

    async def _run(self, content: str, queued_message_id: str | None) -> None:
        """Process turns until the queue is empty."""
        try:
            while True:
                if self._abort_requested:
                    await self._finish_abort()
                    return

                self._active_task = asyncio.create_task(
                    self._cycle(content, queued_message_id),
                )
                try:
                    turn = await self._active_task
                except asyncio.CancelledError:
                    if not self._abort_requested:
                        raise
                    await self._finish_abort()
                    return
                except Exception as exc:
                    logger.exception(
                        "Session %s: unexpected failure in turn loop",
                        self._session_id_short,
                    )
                    turn = await self._fail_current_turn(
                        content, queued_message_id, exc,
                    )
                finally:
                    self._active_task = None

                if turn is None:
                    # Guard cancelled by the operator
                    dropped = self._queue.clear()
                    await self._transition(SessionState.IDLE)
                    if dropped:
                        await self._fire(
                            "queue_cleared",
                            dropped=[m.to_dict() for m in dropped],
                        )
                    return

                if self._abort_requested:
                    await self._finish_abort()
                    return

                next_message = self._queue.dequeue()
                if next_message is None:
                    await self._transition(SessionState.IDLE)
                    # A submit may have landed during the idle notification
                    next_message = self._queue.dequeue()
                    if next_message is None:
                        return
                logger.info(
                    "Session %s: draining queued message %s (%d left)",
                    self._session_id_short,
                    next_message.id,
                    len(self._queue),
                )
                await self._fire("message_dequeued", message=next_message.to_dict())
                content = next_message.content
                queued_message_id = next_message.id
        finally:
            self._abort_requested = False
            if self._session is not None:
                self._session.current_turn = None

    async def _cycle(
        self, content: str, queued_message_id: str | None,
    ) -> Turn | None:
        """Guard check plus one turn. Returns None if the guard was cancelled."""
        self._ensure_session().current_turn = None
        if not await self._pass_guard():
            return None
        turn = await self._begin_turn(content, queued_message_id)
        await self._execute_turn(turn)
        return turn

    # ── Budget / turn-count guard ──

    def _tripped_guard(self, settings: Settings) -> tuple[GuardReason, str] | None:
        session = self._ensure_session()
        confirmed = session.confirmed_guards
        if (
            GuardReason.BUDGET not in confirmed
            and session.total_cost_usd >= settings.max_budget_per_session
        ):
            return GuardReason.BUDGET, (
                f"Session spend ${session.total_cost_usd:.2f} has reached the "
                f"budget of ${settings.max_budget_per_session:.2f}. Continue?"
            )
        if (
            GuardReason.MAX_TURNS not in confirmed
            and session.turn_count + 1 > settings.max_turns
        ):
            return GuardReason.MAX_TURNS, (
                f"Session has reached the limit of {settings.max_turns} "
                f"turns. Continue?"
            )
        return None

    async def _pass_guard(self) -> bool:
        """Ask the operator to confirm every tripped guard. False = cancelled."""
        while True:
            tripped = self._tripped_guard(self._settings.snapshot())
            if tripped is None:
                return True
            reason, message = tripped
            if self._state is not SessionState.AWAITING_CONFIRMATION:
                await self._transition(SessionState.AWAITING_CONFIRMATION)
            logger.info(
                "Session %s: %s guard tripped, asking operator",
                self._session_id_short, reason.value,
            )
            await self._fire(
                "confirmation_requested", reason=reason.value, message=message,
            )
            if not await self._confirm(reason, message):
                logger.info(
                    "Session %s: operator cancelled at %s guard",
                    self._session_id_short, reason.value,
                )
                return False
            self._ensure_session().confirmed_guards.add(reason)

    async def _confirm(self, reason: GuardReason, message: str) -> bool:
        callback = self._config.confirmation_callback
        if callback is None:
            logger.warning(
                "No confirmation handler configured; treating %s guard as cancel",
                reason.value,
            )
            return False
        try:
            return bool(await callback(reason, message))
        except Exception:
            logger.warning(
                "Confirmation callback failed; treating as cancel", exc_info=True,
            )
            return False

    # ── Turn execution ──

    async def _begin_turn(
        self, content: str, queued_message_id: str | None,
    ) -> Turn:
        session = self._ensure_session()
        turn = Turn(content=content, queued_message_id=queued_message_id)
        session.turns.append(turn)
        session.current_turn = turn
        session.turn_count += 1
        if session.title is None:
            session.title = generate_title(content)
        logger.info(
            "Session %s: turn %s started (#%d)",
            self._session_id_short, turn.turn_id[:8], session.turn_count,
        )
        await self._fire(
            "turn_started",
            turn_id=turn.turn_id,
            content=content,
            turn_number=session.turn_count,
            title=session.title,
        )
        return turn

    async def _execute_turn(self, turn: Turn) -> None:
        policy = self._retry_policy
        session = self._ensure_session()
        attempt = 0
        while True:
            attempt += 1
            turn.attempts = attempt
            turn.text = ""
            await self._transition(SessionState.DISPATCHING)
            logger.info(
                "Dispatching turn %s (attempt %d/%d)",
                turn.turn_id[:8], attempt, policy.max_attempts,
            )
            try:
                await self._stream_attempt(turn, attempt)
            except TransportFailure as failure:
                await self._interrupt_open_tool_calls(turn)
                if policy.should_retry(failure.error_type, attempt):
                    delay = policy.delay_for(attempt)
                    logger.warning(
                        "Turn %s %s failure on attempt %d/%d; retrying in %.2fs: %s",
                        turn.turn_id[:8],
                        failure.error_type.value,
                        attempt,
                        policy.max_attempts,
                        delay,
                        failure.message[:200],
                    )
                    await self._fire(
                        "retry_scheduled",
                        turn_id=turn.turn_id,
                        attempt=attempt,
                        max_attempts=policy.max_attempts,
                        delay_seconds=delay,
                        error_type=failure.error_type.value,
                    )
                    await asyncio.sleep(delay)
                    continue

                logger.error(
                    "Turn %s failed (%s) after %d attempt(s): %s",
                    turn.turn_id[:8],
                    failure.error_type.value,
                    attempt,
                    failure.message,
                )
                turn.status = TurnStatus.ERRORED
                turn.error = failure.message
                turn.error_type = failure.error_type
                turn.ended_at = now_ms()
                await self._transition(SessionState.ERRORED)
                await self._fire_turn_finished(turn)
                return

            turn.status = TurnStatus.COMPLETED
            turn.ended_at = now_ms()
            session.total_cost_usd += turn.cost_usd
            logger.info(
                "Turn %s completed (attempts=%d cost=$%.4f total=$%.4f)",
                turn.turn_id[:8],
                attempt,
                turn.cost_usd,
                session.total_cost_usd,
            )
            await self._transition(SessionState.COMPLETED)
            await self._fire_turn_finished(turn)
            return

    async def _stream_attempt(self, turn: Turn, attempt: int) -> None:
        """Consume one transport stream. Raises TransportFailure."""
        request = TurnRequest(
            session_id=self._ensure_session().session_id,
            turn_id=turn.turn_id,
            content=turn.content,
            attempt=attempt,
        )
        try:
            stream = self._transport.stream(request)
        except Exception as exc:
            raise TransportFailure(error_message(exc), classify_error(exc)) from exc

        await self._transition(SessionState.STREAMING)
        try:
            while True:
                try:
                    event = await anext(stream)
                except StopAsyncIteration:
                    logger.warning(
                        "Turn %s: stream ended without turn-complete; "
                        "treating as completed",
                        turn.turn_id[:8],
                    )
                    return
                except Exception as exc:
                    raise TransportFailure(
                        error_message(exc), classify_error(exc),
                    ) from exc

                if isinstance(event, ErrorEvent):
                    raise TransportFailure(
                        event.message, classify_error(event.message),
                    )
                if isinstance(event, TurnComplete):
                    turn.cost_usd = max(0.0, float(event.cost_usd or 0.0))
                    if not turn.text and event.result:
                        turn.text = event.result
                    return
                await self._handle_event(turn, event)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _handle_event(self, turn: Turn, event: TransportEvent) -> None:
        if isinstance(event, TextDelta):
            turn.text += event.text
            logger.debug("Turn %s: +%d chars", turn.turn_id[:8], len(event.text))
            await self._fire("stream_chunk", turn_id=turn.turn_id, text=event.text)
        elif isinstance(event, ToolCallStart):
            await self._on_tool_call_start(turn, event)
        elif isinstance(event, ToolCallEnd):
            await self._on_tool_call_end(event)
        elif isinstance(event, SubagentUpdate):
            await self._on_subagent_update(event)
        else:
            logger.debug("Ignoring transport event of type %r", event.type)

    # ── Tool calls ──

    async def _on_tool_call_start(self, turn: Turn, event: ToolCallStart) -> None:
        is_subagent = event.name == SUBAGENT_TOOL
        tool_call = ToolCall(
            id=event.tool_id,
            name=event.name,
            input=dict(event.input or {}),
            is_subagent=is_subagent,
            parent_tool_id=event.parent_tool_id,
        )
        if is_subagent:
            tool_call.subagent_status = SubagentStatus.STARTING
            tool_call.subagent_progress = SubagentProgress(message="Starting...")

        # Ids are only unique within a turn; a reused id from an earlier
        # turn is a new call and goes through the full permission pass.
        existing = self._registry.find(tool_call.id)
        if existing is not None and any(c is existing for c in turn.tool_calls):
            logger.warning(
                "Turn %s: repeated tool-call-start for %s; ignoring",
                turn.turn_id[:8], tool_call.id[:8],
            )
            return
        self._registry.start(tool_call, supersede=existing is not None)
        turn.tool_calls.append(tool_call)
        await self._fire("tool_call_started", tool_call=tool_call.to_dict())

        session = self._ensure_session()
        decision = decide(
            tool_call.name, self._settings.snapshot(), session.approved_tools,
        )
        if decision.approve:
            logger.debug(
                "Tool %s (%s) auto-approved: %s",
                tool_call.id[:8], tool_call.name, decision.reason.value,
            )
            await self._fire(
                "permission_resolved",
                tool_id=tool_call.id,
                tool_name=tool_call.name,
                approved=True,
                reason=decision.reason.value,
                response=None,
            )
        else:
            response = await self._await_permission(turn, tool_call, decision)
            if not response.approved:
                await self._refuse(tool_call, decision)
                return
            if response in (
                PermissionResponse.APPROVE_SESSION,
                PermissionResponse.APPROVE_ALWAYS,
            ):
                session.approved_tools.add(tool_call.name)
            if response is PermissionResponse.APPROVE_ALWAYS:
                self._persist_always_allowed(tool_call.name)

        self._registry.update(tool_call.id, status=ToolCallStatus.RUNNING)
        await self._fire("tool_call_updated", tool_call=tool_call.to_dict())

        local_tool = self._local_tools.get(tool_call.name)
        if local_tool is None:
            await self._respond(tool_call.id, ToolPermissionResult(allow=True))
            return
        await self._run_local_tool(local_tool, tool_call)

    async def _await_permission(
        self, turn: Turn, tool_call: ToolCall, decision: PermissionDecision,
    ) -> PermissionResponse:
        """Suspend the turn until the operator answers."""
        turn.status = TurnStatus.AWAITING_PERMISSION
        await self._transition(SessionState.AWAITING_PERMISSION)
        logger.info(
            "Tool %s (%s) needs approval: %s",
            tool_call.id[:8], tool_call.name, decision.reason.value,
        )
        await self._fire(
            "permission_requested",
            tool_id=tool_call.id,
            tool_name=tool_call.name,
            tool_input=tool_call.input,
            reason=decision.reason.value,
        )
        response = await self._ask_operator(tool_call, decision)
        turn.status = TurnStatus.RUNNING
        await self._transition(SessionState.STREAMING)
        logger.info(
            "Tool %s (%s) permission: %s",
            tool_call.id[:8], tool_call.name, response.value,
        )
        await self._fire(
            "permission_resolved",
            tool_id=tool_call.id,
            tool_name=tool_call.name,
            approved=response.approved,
            reason=decision.reason.value,
            response=response.value,
        )
        return response

    async def _ask_operator(
        self, tool_call: ToolCall, decision: PermissionDecision,
    ) -> PermissionResponse:
        callback = self._config.permission_callback
        if callback is None:
            logger.warning(
                "No permission handler configured; denying %s", tool_call.name,
            )
            return PermissionResponse.DENY
        try:
            answer = await callback(tool_call, decision)
        except Exception:
            logger.warning(
                "Permission callback failed; denying %s",
                tool_call.name,
                exc_info=True,
            )
            return PermissionResponse.DENY
        try:
            return PermissionResponse(answer)
        except ValueError:
            logger.warning(
                "Unrecognised permission response %r; denying %s",
                answer, tool_call.name,
            )
            return PermissionResponse.DENY

    async def _refuse(
        self, tool_call: ToolCall, decision: PermissionDecision,
    ) -> None:
        message = (
            f"Permission denied by user for {tool_call.name} "
            f"({decision.reason.value})"
        )
        changes: dict[str, Any] = {
            "status": ToolCallStatus.ERROR,
            "error": message,
            "end_time": now_ms(),
        }
        if tool_call.is_subagent:
            changes["subagent_status"] = SubagentStatus.ERROR
        self._registry.update(tool_call.id, **changes)
        await self._fire("tool_call_updated", tool_call=tool_call.to_dict())
        await self._respond(
            tool_call.id, ToolPermissionResult(allow=False, message=message),
        )

    def _persist_always_allowed(self, tool_name: str) -> None:
        try:
            self._settings.add_always_allowed(tool_name)
        except Exception:
            logger.warning(
                "Failed to persist always-allowed tool %s", tool_name,
                exc_info=True,
            )

    async def _run_local_tool(self, local_tool: LocalTool, tool_call: ToolCall) -> None:
        try:
            output = await local_tool.run(tool_call.input)
        except Exception as exc:
            logger.exception("Local tool %s failed", tool_call.name)
            error = f"{tool_call.name} failed: {error_message(exc)}"
            self._registry.update(
                tool_call.id,
                status=ToolCallStatus.ERROR,
                error=error,
                end_time=now_ms(),
            )
            await self._fire("tool_call_updated", tool_call=tool_call.to_dict())
            await self._respond(
                tool_call.id, ToolPermissionResult(allow=True, message=error),
            )
            return

        failed = isinstance(output, dict) and bool(output.get("is_error"))
        self._registry.update(
            tool_call.id,
            status=ToolCallStatus.ERROR if failed else ToolCallStatus.SUCCESS,
            output=output,
            error=_first_text(output) if failed else None,
            end_time=now_ms(),
        )
        await self._fire("tool_call_updated", tool_call=tool_call.to_dict())
        await self._respond(
            tool_call.id, ToolPermissionResult(allow=True, result=output),
        )

    async def _respond(self, tool_id: str, result: ToolPermissionResult) -> None:
        try:
            await self._transport.respond(tool_id, result)
        except Exception as exc:
            raise TransportFailure(error_message(exc), classify_error(exc)) from exc

    async def _on_tool_call_end(self, event: ToolCallEnd) -> None:
        tool_call = self._registry.find(event.tool_id)
        if tool_call is None:
            logger.warning(
                "tool-call-end for unknown tool %s; ignoring", event.tool_id[:8],
            )
            return
        end_time = now_ms()
        if tool_call.is_terminal:
            self._registry.update(tool_call.id, end_time=end_time)
            return
        changes: dict[str, Any] = {
            "output": event.output,
            "error": event.error,
            "status": ToolCallStatus.ERROR if event.error else ToolCallStatus.SUCCESS,
            "end_time": end_time,
        }
        if tool_call.is_subagent:
            changes["subagent_status"] = (
                SubagentStatus.ERROR if event.error else SubagentStatus.COMPLETED
            )
        self._registry.update(tool_call.id, **changes)
        logger.info(
            "Tool %s (%s) finished: %s",
            tool_call.id[:8], tool_call.name, tool_call.status.value,
        )
        await self._fire("tool_call_updated", tool_call=tool_call.to_dict())

    async def _on_subagent_update(self, event: SubagentUpdate) -> None:
        tool_call = self._registry.find(event.tool_id)
        if tool_call is None or not tool_call.is_subagent:
            logger.warning(
                "subagent-update for unknown sub-agent %s; ignoring",
                event.tool_id[:8],
            )
            return
        progress = tool_call.subagent_progress or SubagentProgress()
        changes: dict[str, Any] = {
            "subagent_status": event.status,
            "subagent_progress": SubagentProgress(
                message=event.message or progress.message,
                start_time=progress.start_time,
            ),
        }
        if event.status in TERMINAL_SUBAGENT_STATUSES:
            changes["end_time"] = now_ms()
        if self._registry.update(tool_call.id, **changes):
            await self._fire("tool_call_updated", tool_call=tool_call.to_dict())

    async def _interrupt_open_tool_calls(self, turn: Turn) -> None:
        """Close out tool calls a failed attempt left open."""
        for tool_call in turn.tool_calls:
            if tool_call.is_terminal:
                continue
            changes: dict[str, Any] = {
                "status": ToolCallStatus.ERROR,
                "error": INTERRUPTED_BY_TRANSPORT,
                "end_time": now_ms(),
            }
            if tool_call.is_subagent:
                changes["subagent_status"] = SubagentStatus.ERROR
            self._registry.update(tool_call.id, **changes)
            await self._fire("tool_call_updated", tool_call=tool_call.to_dict())

    # ── Abort / failure ──

    async def _finish_abort(self) -> None:
        session = self._session
        turn = session.current_turn if session else None
        if turn is not None and not turn.is_terminal:
            for tool_call in turn.tool_calls:
                if tool_call.status is ToolCallStatus.PENDING:
                    self._registry.update(
                        tool_call.id,
                        status=ToolCallStatus.ERROR,
                        error=DISCARDED_BY_ABORT,
                        end_time=now_ms(),
                    )
                elif (
                    tool_call.is_subagent
                    and tool_call.subagent_status in RUNNING_SUBAGENT_STATUSES
                ):
                    self._registry.update(
                        tool_call.id,
                        subagent_status=SubagentStatus.INTERRUPTED,
                        end_time=now_ms(),
                    )
                else:
                    continue
                await self._fire("tool_call_updated", tool_call=tool_call.to_dict())
            turn.status = TurnStatus.ABORTED
            turn.ended_at = now_ms()

        if self._state is not SessionState.IDLE:
            await self._transition(SessionState.ABORTED)
        logger.info(
            "Session %s: turn %s aborted (%d message(s) still queued)",
            self._session_id_short,
            turn.turn_id[:8] if turn else "-",
            len(self._queue),
        )
        if turn is not None and turn.status is TurnStatus.ABORTED:
            await self._fire_turn_finished(turn)
        if self._state is not SessionState.IDLE:
            await self._transition(SessionState.IDLE)

    async def _fail_current_turn(
        self,
        content: str,
        queued_message_id: str | None,
        exc: Exception,
    ) -> Turn:
        """Mark the cycle's turn errored after an unexpected failure.

        A failure before the turn began (e.g. in the guard) still records
        the message as an errored turn so it is never silently dropped.
        """
        session = self._ensure_session()
        turn = session.current_turn
        if turn is None:
            turn = Turn(content=content, queued_message_id=queued_message_id)
            session.turns.append(turn)
            session.current_turn = turn
        if not turn.is_terminal:
            turn.status = TurnStatus.ERRORED
            turn.error = turn.error or f"Internal error: {error_message(exc)}"
            turn.ended_at = now_ms()
        # The failure may have left the machine anywhere; park it in ERRORED
        old = self._state
        self._state = SessionState.ERRORED
        await self._fire_state_changed(old, self._state)
        await self._fire_turn_finished(turn)
        return turn

    # ── Helpers ──

    def _ensure_open(self) -> None:
        if self._closed:
            session_id = self._session.session_id if self._session else "-"
            raise SessionClosedError(session_id)

    def _ensure_session(self) -> Session:
        if self._session is None:
            self._session = Session()
            logger.info("Session %s created", self._session.session_id[:8])
        return self._session

    @property
    def _session_id_short(self) -> str:
        return self._session.session_id[:8] if self._session else "-"

    async def _transition(self, new_state: SessionState) -> None:
        """Transition to a new state with validation."""
        validate_transition(self._state, new_state)
        old = self._state
        self._state = new_state
        logger.info(
            "Session %s: %s -> %s",
            self._session_id_short, old.value, new_state.value,
        )
        await self._fire_state_changed(old, new_state)

    async def _fire_state_changed(
        self, old: SessionState, new: SessionState,
    ) -> None:
        await self._fire(
            "session_state_changed", old_state=old.value, new_state=new.value,
        )

    async def _fire_turn_finished(self, turn: Turn) -> None:
        await self._fire(
            "turn_finished",
            turn_id=turn.turn_id,
            status=turn.status.value,
            text=turn.text,
            error=turn.error,
            error_type=turn.error_type.value if turn.error_type else None,
            cost_usd=turn.cost_usd,
            attempts=turn.attempts,
        )

    async def _fire(self, name: str, **payload: Any) -> None:
        event = {
            "event": name,
            "session_id": self._session.session_id if self._session else None,
            **payload,
        }
        await fire_event(self._event_callback, event)


def _first_text(payload: Any) -> str | None:
    """First text block of an MCP-style tool result."""
    if not isinstance(payload, dict):
        return None
    for block in payload.get("content") or []:
        if isinstance(block, dict) and block.get("type") == "text":
            return str(block.get("text", ""))
    return None
