# /iqflow/services/action_service.py

"""
Action dispatcher.

Maps action identifiers to async handlers. Each action is registered with:
- policy: HARD (a rejection stops the advance loop) or SOFT (logged, flow proceeds)
- snapshot: what to persist once the action succeeds (checkpoint, handoff, clear)

Handlers receive an ActionCall and write everything later steps need into
the driver's context before returning. They signal rejection by raising:
- ActionError: the action's own precondition failed; fails regardless of policy
- RemoteCallError: the platform rejected the call; resolved by the policy
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from iqflow.services.platform_client import PlatformClient
from iqflow.utils.metrics import action_counter
from iqflow.workflows.engine import FlowDriver
from iqflow.workflows.errors import ActionError, RemoteCallError, UnknownActionError

logger = logging.getLogger(__name__)


class FailurePolicy(str, Enum):
    HARD = "hard"
    SOFT = "soft"


class SnapshotMode(str, Enum):
    NONE = "none"
    SAVE = "save"          # checkpoint context, resume flag off
    HANDOFF = "handoff"    # save with the resume flag on, pointing at another flow
    CLEAR = "clear"        # flow complete; drop the persisted context


class OutcomeStatus(str, Enum):
    OK = "ok"
    SOFT_FAILED = "soft_failed"
    HARD_FAILED = "hard_failed"


@dataclass
class ActionCall:
    """Everything a handler may touch: the session's driver, the raw input and the platform."""
    name: str
    driver: FlowDriver
    client: PlatformClient
    payload: Any = None

    @property
    def context(self) -> Dict[str, Any]:
        return self.driver.get_context()

    def payload_dict(self) -> Dict[str, Any]:
        return self.payload if isinstance(self.payload, dict) else {}


ActionHandler = Callable[[ActionCall], Awaitable[None]]


@dataclass(frozen=True)
class ActionSpec:
    name: str
    handler: ActionHandler
    policy: FailurePolicy = FailurePolicy.HARD
    snapshot: SnapshotMode = SnapshotMode.NONE
    handoff_flow: Optional[str] = None


@dataclass
class ActionOutcome:
    action: str
    status: OutcomeStatus
    error: Optional[str] = None
    spec: Optional[ActionSpec] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        """Soft failures count as success: the flow proceeds."""
        return self.status != OutcomeStatus.HARD_FAILED


class ActionDispatcher:
    def __init__(self, client: PlatformClient, specs: Iterable[ActionSpec] = ()):
        self.client = client
        self._specs: Dict[str, ActionSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: ActionSpec):
        self._specs[spec.name] = spec

    def get(self, name: str) -> ActionSpec:
        spec = self._specs.get(name)
        if spec is None:
            raise UnknownActionError(f"No handler registered for action '{name}'")
        return spec

    @property
    def known_actions(self):
        return frozenset(self._specs)

    async def dispatch(self, name: str, driver: FlowDriver, payload: Any = None) -> ActionOutcome:
        spec = self.get(name)
        call = ActionCall(name=name, driver=driver, client=self.client, payload=payload)

        try:
            await spec.handler(call)
        except ActionError as e:
            logger.error(f"Action '{name}' failed: {e}")
            action_counter.labels(action=name, status=OutcomeStatus.HARD_FAILED.value).inc()
            return ActionOutcome(name, OutcomeStatus.HARD_FAILED, str(e), spec)
        except RemoteCallError as e:
            if spec.policy == FailurePolicy.SOFT:
                logger.warning(f"Action '{name}' remote call failed, continuing: {e}")
                action_counter.labels(action=name, status=OutcomeStatus.SOFT_FAILED.value).inc()
                return ActionOutcome(name, OutcomeStatus.SOFT_FAILED, str(e), spec)
            logger.error(f"Action '{name}' remote call failed: {e}")
            action_counter.labels(action=name, status=OutcomeStatus.HARD_FAILED.value).inc()
            return ActionOutcome(name, OutcomeStatus.HARD_FAILED, str(e), spec)

        action_counter.labels(action=name, status=OutcomeStatus.OK.value).inc()
        return ActionOutcome(name, OutcomeStatus.OK, None, spec)
