# /iqflow/workflows/resumption.py

from dataclasses import dataclass
from typing import Optional

import structlog

from iqflow.config import strings
from iqflow.models.flow import Actor, OnboardingSnapshot, Widget
from iqflow.services.snapshot_store import SnapshotStore
from iqflow.services.transcript_service import TranscriptAccumulator
from iqflow.workflows.engine import FlowDriver, resolve_template
from iqflow.workflows.validator import validate_flow_name, validate_step

# Rebuilds a driver from the persisted records. Only the snapshot's
# shouldContinue flag re-activates a flow; a saved transcript on its own is
# restored as read-only history and the driver stays idle.

logger = structlog.get_logger(__name__)

DEVICE_STATUS_WIDGET = "device-status-widget"


@dataclass
class ResumeOutcome:
    resumed: bool = False
    # The snapshot named no step, so the resume step must be entered (action + render).
    entered_fresh: bool = False
    history_restored: bool = False
    snapshot: Optional[OnboardingSnapshot] = None


class ResumptionLoader:
    def __init__(self, store: SnapshotStore):
        self.store = store

    async def restore(self, session_key: str, driver: FlowDriver, transcript: TranscriptAccumulator) -> ResumeOutcome:
        snapshot = await self.store.load_state(session_key)
        messages = await self.store.load_messages(session_key)

        if snapshot is None or not snapshot.should_continue:
            restored = transcript.adopt(messages)
            if restored:
                logger.info("transcript_restored_without_resume", session_key=session_key, messages=len(messages))
            return ResumeOutcome(history_restored=restored, snapshot=snapshot)

        flow_name = snapshot.flow or driver.flow_name
        if flow_name is None or not validate_flow_name(flow_name, driver.flows)["is_valid"]:
            logger.warning("snapshot_unknown_flow", session_key=session_key, flow=flow_name)
            return ResumeOutcome(snapshot=snapshot)
        flow = driver.flows[flow_name]
        step_id = snapshot.current_step_id or flow.resume_step or flow.entry_step
        if not validate_step(flow, step_id)["is_valid"]:
            logger.warning("snapshot_unknown_step", session_key=session_key, flow=flow_name, step_id=step_id)
            return ResumeOutcome(snapshot=snapshot)

        driver.select_flow(flow_name)
        driver.update_context(snapshot.context)
        transcript.adopt(messages)

        context = driver.get_context()
        if context.get("deviceId") and not transcript.contains_widget(DEVICE_STATUS_WIDGET):
            transcript.append(
                Actor.ASSISTANT,
                resolve_template(strings.DEVICE_STATUS_RESUMED, context),
                Widget(type=DEVICE_STATUS_WIDGET, data={"deviceId": context["deviceId"]}),
            )

        driver.jump_to_step(step_id)

        consumed = snapshot.model_copy(update={"should_continue": False})
        saved = await self.store.save_state(session_key, consumed)
        logger.info("flow_resumed", session_key=session_key, flow=flow_name, step_id=step_id)
        return ResumeOutcome(
            resumed=True,
            entered_fresh=snapshot.current_step_id is None,
            history_restored=bool(messages),
            snapshot=saved,
        )
