# /iqflow/workflows/session.py

"""
Onboarding session: one conversation's driver, transcript and persistence.

`handle_input` processes one input event end to end:
1. Trigger check: commands answer directly; flow-start phrases activate an idle driver
2. Merge: structured input into the context, free text into the transcript
   (through the step's reply parser, if it has one)
3. Post-submission action of the step the user answered
4. Advance loop, bounded by the loop guard, running pre-render actions
5. Persist the transcript (and the context snapshot on action milestones)

Sessions are not re-entrant: a second input while one is in flight raises
SessionBusyError.
"""

import time
import uuid
from contextlib import contextmanager
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog

from iqflow.config import strings
from iqflow.config.settings import settings
from iqflow.models.flow import (
    SNAPSHOT_CONTROL_KEYS,
    Actor,
    ChatMessage,
    FlowDefinition,
    FlowStep,
    HaltReason,
    InputResult,
    OnboardingSnapshot,
    Widget,
)
from iqflow.services.action_service import ActionDispatcher, ActionOutcome, ActionSpec, OutcomeStatus, SnapshotMode
from iqflow.services.snapshot_store import SnapshotStore
from iqflow.services.transcript_service import TranscriptAccumulator
from iqflow.utils.metrics import loop_guard_counter, steps_rendered_counter, trigger_counter
from iqflow.workflows.engine import FlowDriver, resolve_data, resolve_template
from iqflow.workflows.errors import FlowConfigurationError, SessionBusyError, SessionNotFoundError
from iqflow.workflows.resumption import ResumptionLoader
from iqflow.workflows.triggers import TriggerMatch, TriggerTable
from iqflow.workflows.validator import validate_actions

logger = structlog.get_logger(__name__)

UserInput = Union[str, Dict[str, Any]]

# Key of a structured input that carries the text to show as the user's message.
DISPLAY_KEY = "userMessage"


class OnboardingSession:
    def __init__(
        self,
        session_id: str,
        driver: FlowDriver,
        dispatcher: ActionDispatcher,
        store: Optional[SnapshotStore] = None,
        triggers: Optional[TriggerTable] = None,
        session_key: Optional[str] = None,
        max_auto_advance_steps: int = settings.max_auto_advance_steps,
    ):
        if max_auto_advance_steps < 1:
            raise FlowConfigurationError("max_auto_advance_steps must be at least 1")
        self.session_id = session_id
        self.session_key = session_key
        self.driver = driver
        self.dispatcher = dispatcher
        self.store = store
        self.triggers = triggers
        self.transcript = TranscriptAccumulator()
        self.max_auto_advance_steps = max_auto_advance_steps
        self.processing = False
        self._snapshot_version = 0
        self._log = logger.bind(session_id=session_id)

    # ---------------- Read-only views ---------------- #

    @property
    def messages(self) -> List[ChatMessage]:
        return self.transcript.messages

    @property
    def current_step_id(self) -> Optional[str]:
        return self.driver.current_step_id

    @property
    def context(self) -> Dict[str, Any]:
        return self.driver.get_context()

    @property
    def persistent(self) -> bool:
        return self.store is not None and bool(self.session_key)

    # ---------------- Public operations ---------------- #

    async def resume(self) -> Optional[InputResult]:
        """Restores persisted state. Returns None unless a flow was re-activated."""
        if not self.persistent:
            return None
        with self._busy():
            start = len(self.transcript)
            outcome = await ResumptionLoader(self.store).restore(self.session_key, self.driver, self.transcript)
            if outcome.snapshot is not None:
                self._snapshot_version = outcome.snapshot.version
            if not outcome.resumed:
                return None
            if outcome.entered_fresh:
                result = await self._enter(self.driver.get_current_step())
            else:
                result = self._result(HaltReason.WAITING)
            return await self._finish(result, start)

    async def start_flow(self, flow_name: str, step_id: Optional[str] = None) -> InputResult:
        with self._busy():
            start = len(self.transcript)
            result = await self._start(flow_name, step_id)
            return await self._finish(result, start)

    async def handle_input(self, user_input: UserInput) -> InputResult:
        with self._busy():
            start = len(self.transcript)
            result = await self._handle(user_input)
            return await self._finish(result, start)

    async def reset(self):
        """Clears pointer, context, transcript and the persisted records."""
        with self._busy():
            self.driver.reset()
            self.transcript.clear()
            self._snapshot_version = 0
            if self.persistent:
                await self.store.clear_state(self.session_key)
                await self.store.clear_messages(self.session_key)
            self._log.info("session_reset")

    async def save_snapshot(self, should_continue: bool = False, flow: Optional[str] = None, step_id: Optional[str] = "") -> Optional[OnboardingSnapshot]:
        """
        Persists the context. `step_id` defaults to the current step; pass
        None to let a later resume start at the flow's resume step.
        """
        if not self.persistent:
            return None
        record = {key: value for key, value in self.driver.get_context().items() if key not in SNAPSHOT_CONTROL_KEYS}
        record.update({
            "shouldContinue": should_continue,
            "version": self._snapshot_version,
            "flow": flow or self.driver.flow_name,
            "currentStepId": self.driver.current_step_id if step_id == "" else step_id,
        })
        saved = await self.store.save_state(self.session_key, OnboardingSnapshot.model_validate(record))
        self._snapshot_version = saved.version
        return saved

    def append_current_step(self, widget_override: Optional[Widget] = None) -> Optional[ChatMessage]:
        """Renders the current step again, with `widget_override` when the step declares no widget."""
        step = self.driver.get_current_step()
        if step is None:
            return None
        return self._render(step, widget_override)

    async def persist_transcript(self):
        if self.persistent:
            await self.store.save_messages(self.session_key, self.transcript.messages)

    # ---------------- Orchestration ---------------- #

    @contextmanager
    def _busy(self):
        if self.processing:
            raise SessionBusyError(f"Session {self.session_id} is still processing the previous input")
        self.processing = True
        try:
            yield
        finally:
            self.processing = False

    async def _handle(self, user_input: UserInput) -> InputResult:
        text = user_input if isinstance(user_input, str) else None

        if text is not None and self.triggers is not None:
            match = self.triggers.match(text, flow_active=not self.driver.is_idle)
            if match is not None:
                trigger_counter.labels(target=match.trigger.target).inc()
                self._append(Actor.USER, text.strip())
                if match.command is not None:
                    return await self._run_command(match)
                return await self._start(match.flow, match.step)

        step = self.driver.get_current_step()
        if step is None:
            if text is not None:
                self._append(Actor.USER, text.strip())
            elif user_input.get(DISPLAY_KEY):
                self._append(Actor.USER, str(user_input[DISPLAY_KEY]))
            self._append(Actor.ASSISTANT, strings.IDLE_FALLBACK)
            return self._result(HaltReason.IDLE)

        if text is None:
            data = dict(user_input)
            display = data.pop(DISPLAY_KEY, None)
            self.driver.update_context(data)
            if display:
                self._append(Actor.USER, str(display))
        else:
            self._append(Actor.USER, text.strip())
            if step.reply_parser is not None:
                parsed = step.reply_parser(text)
                if parsed is None:
                    self._log.info("reply_not_recognized", step_id=step.id)
                    self._append(Actor.ASSISTANT, strings.UNRECOGNIZED_REPLY)
                    return self._result(HaltReason.UNRECOGNIZED_REPLY)
                self.driver.update_context(parsed)

        if step.action and step.wait_for_user_input:
            outcome = await self._dispatch(step.action, user_input)
            if not outcome.ok:
                return self._hard_failure(outcome)

        return await self._advance(0)

    async def _start(self, flow_name: str, step_id: Optional[str] = None) -> InputResult:
        flow = self.driver.select_flow(flow_name)
        if flow.on_start:
            outcome = await self._dispatch(flow.on_start, None)
            if not outcome.ok:
                return self._hard_failure(outcome)
        step = self.driver.jump_to_step(step_id or flow.entry_step)
        self._log.info("flow_started", flow=flow_name, step_id=step.id)
        return await self._enter(step)

    async def _enter(self, step: FlowStep) -> InputResult:
        """Runs a freshly jumped-to step: pre-render action, render, then advance if it does not wait."""
        if step.action and not step.wait_for_user_input:
            outcome = await self._dispatch(step.action, None)
            if not outcome.ok:
                self.driver.finish()
                return self._hard_failure(outcome)
        self._render(step)
        if step.wait_for_user_input:
            return self._result(HaltReason.WAITING, steps=1)
        return await self._advance(1)

    async def _advance(self, steps: int) -> InputResult:
        while True:
            if steps >= self.max_auto_advance_steps:
                self._log.warning(
                    "loop_guard_tripped",
                    flow=self.driver.flow_name,
                    step_id=self.driver.current_step_id,
                    max_steps=self.max_auto_advance_steps,
                )
                loop_guard_counter.labels(flow=self.driver.flow_name or "").inc()
                return self._result(HaltReason.LOOP_GUARD, steps)

            previous_id = self.driver.current_step_id
            step = self.driver.advance()
            if step is None:
                if self.driver.next_step_id() is None:
                    self._log.info("flow_finished", flow=self.driver.flow_name, step_id=previous_id)
                    self.driver.finish()
                    return self._result(HaltReason.TERMINAL, steps, step_id=previous_id)
                return self._result(HaltReason.WAITING, steps)
            steps += 1

            if step.action and not step.wait_for_user_input:
                outcome = await self._dispatch(step.action, None)
                if not outcome.ok:
                    # Stay parked on the last step the user saw.
                    self.driver.jump_to_step(previous_id)
                    return self._hard_failure(outcome, steps)

            self._render(step)
            if step.wait_for_user_input:
                return self._result(HaltReason.WAITING, steps)

    async def _run_command(self, match: TriggerMatch) -> InputResult:
        command = match.command
        if command.action:
            outcome = await self._dispatch(command.action, match.params or None)
            if not outcome.ok:
                self._append(Actor.ASSISTANT, resolve_template(command.failure_reply, self.driver.get_context()))
                return self._result(HaltReason.COMMAND, failed_action=outcome.action, error=outcome.error)
        context = self.driver.get_context()
        widget = None
        if command.widget is not None:
            widget = command.widget.model_copy(update={"data": resolve_data(command.widget.data, context)})
        self._append(Actor.ASSISTANT, resolve_template(command.reply, context), widget)
        return self._result(HaltReason.COMMAND)

    async def _dispatch(self, action: str, payload: Any) -> ActionOutcome:
        """
        Runs one action. A handler crash is reported as a hard failure so the
        pointer is restored like any other rejection; configuration errors
        still propagate.
        """
        try:
            outcome = await self.dispatcher.dispatch(action, self.driver, payload)
        except FlowConfigurationError:
            raise
        except Exception as e:
            self._log.error("action_crashed", action=action, step_id=self.driver.current_step_id, exc_info=True)
            outcome = ActionOutcome(action, OutcomeStatus.HARD_FAILED, f"{type(e).__name__}: {e}")
        if outcome.ok:
            await self._apply_snapshot_mode(outcome.spec)
        else:
            self._log.error("action_hard_failed", action=action, step_id=self.driver.current_step_id, error=outcome.error)
        return outcome

    async def _apply_snapshot_mode(self, spec: ActionSpec):
        if spec.snapshot == SnapshotMode.SAVE:
            await self.save_snapshot()
        elif spec.snapshot == SnapshotMode.HANDOFF:
            await self.save_snapshot(should_continue=True, flow=spec.handoff_flow, step_id=None)
        elif spec.snapshot == SnapshotMode.CLEAR and self.persistent:
            await self.store.clear_state(self.session_key)

    # ---------------- Helpers ---------------- #

    def _render(self, step: FlowStep, override: Optional[Widget] = None) -> Optional[ChatMessage]:
        entry = self.transcript.append(step.actor, self.driver.render_message(step), self.driver.render_widget(step, override))
        if entry is not None:
            steps_rendered_counter.labels(flow=self.driver.flow_name or "", actor=step.actor.value).inc()
        return entry

    def _append(self, actor: Actor, message: str, widget: Optional[Widget] = None) -> Optional[ChatMessage]:
        return self.transcript.append(actor, message, widget)

    def _result(self, halt_reason: HaltReason, steps: int = 0, **fields) -> InputResult:
        fields.setdefault("step_id", self.driver.current_step_id)
        return InputResult(
            halt_reason=halt_reason,
            steps_processed=steps,
            current_step_id=fields.pop("step_id"),
            **fields,
        )

    def _hard_failure(self, outcome: ActionOutcome, steps: int = 0) -> InputResult:
        return self._result(HaltReason.HARD_FAILURE, steps, failed_action=outcome.action, error=outcome.error)

    async def _finish(self, result: InputResult, start: int) -> InputResult:
        await self.persist_transcript()
        return result.model_copy(update={"messages": self.transcript.messages[start:]})


class SessionRegistry:
    """
    Live sessions for the HTTP layer, keyed by session id. Sessions idle for
    longer than `idle_ttl` seconds are dropped when the next session is
    created; their persisted records stay, so the same session_key resumes.
    """

    def __init__(
        self,
        flows: Mapping[str, FlowDefinition],
        dispatcher: ActionDispatcher,
        store: Optional[SnapshotStore] = None,
        triggers: Optional[TriggerTable] = None,
        max_auto_advance_steps: int = settings.max_auto_advance_steps,
        idle_ttl: float = settings.snapshot_ttl_seconds,
    ):
        known = dispatcher.known_actions
        for flow in flows.values():
            result = validate_actions(flow, known)
            if not result["is_valid"]:
                raise FlowConfigurationError(result["message"])
        if triggers is not None:
            for command in triggers.commands.values():
                if command.action and command.action not in known:
                    raise FlowConfigurationError(f"Command '{command.name}' uses unregistered action '{command.action}'")

        self.flows = flows
        self.dispatcher = dispatcher
        self.store = store
        self.triggers = triggers
        self.max_auto_advance_steps = max_auto_advance_steps
        self.idle_ttl = idle_ttl
        self._sessions: Dict[str, OnboardingSession] = {}
        self._last_seen: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, session_key: Optional[str] = None) -> OnboardingSession:
        self.evict_idle()
        session_id = uuid.uuid4().hex
        session = OnboardingSession(
            session_id,
            FlowDriver(self.flows),
            self.dispatcher,
            store=self.store,
            triggers=self.triggers,
            session_key=session_key,
            max_auto_advance_steps=self.max_auto_advance_steps,
        )
        self._sessions[session_id] = session
        self._last_seen[session_id] = time.monotonic()
        return session

    def get(self, session_id: str) -> OnboardingSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"No onboarding session '{session_id}'")
        self._last_seen[session_id] = time.monotonic()
        return session

    def remove(self, session_id: str):
        self._sessions.pop(session_id, None)
        self._last_seen.pop(session_id, None)

    def evict_idle(self) -> int:
        """Drops sessions not looked up within `idle_ttl` seconds. Busy sessions are kept."""
        cutoff = time.monotonic() - self.idle_ttl
        stale = [
            session_id for session_id, seen in self._last_seen.items()
            if seen < cutoff and not self._sessions[session_id].processing
        ]
        for session_id in stale:
            self.remove(session_id)
        if stale:
            logger.info("idle_sessions_evicted", count=len(stale), remaining=len(self._sessions))
        return len(stale)

    async def open(self, flow: Optional[str] = None, session_key: Optional[str] = None):
        """Creates a session, resumes persisted state, and starts `flow` if nothing was resumed."""
        session = self.create(session_key)
        result = await session.resume()
        if result is None and flow:
            result = await session.start_flow(flow)
        return session, result
