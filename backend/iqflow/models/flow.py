# /iqflow/models/flow.py

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


class Actor(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Widget(BaseModel):
    """
    Opaque descriptor of an interactive component. The engine only attaches
    it to assistant messages; the presentation layer interprets `type`/`data`.
    """
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


# A message is either a "{{key}}" template string or a callable over the context.
MessageTemplate = Union[str, Callable[[Dict[str, Any]], str]]
# A transition is a step id, a branch over the context, or None (terminal).
Transition = Union[str, Callable[[Dict[str, Any]], Optional[str]], None]
# Maps free text typed at a waiting step to context updates; None = not understood.
ReplyParser = Callable[[str], Optional[Dict[str, Any]]]


class FlowStep(BaseModel):
    """A node in a flow's step graph. Pure data."""
    id: str
    actor: Actor = Actor.ASSISTANT
    message: MessageTemplate = ""
    widget: Optional[Widget] = None
    help_widgets: List[Widget] = Field(default_factory=list)
    action: Optional[str] = None
    wait_for_user_input: bool = False
    next_step: Transition = None
    reply_parser: Optional[ReplyParser] = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class FlowDefinition(BaseModel):
    """A named, ordered step graph for one onboarding variant."""
    name: str
    entry_step: str
    resume_step: Optional[str] = None
    # Action dispatched once when the flow is started fresh (not on resume).
    on_start: Optional[str] = None
    steps: List[FlowStep]
    description: str = ""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class ChatMessage(BaseModel):
    """A transcript entry. Immutable once created."""
    id: str
    actor: Actor
    message: str = ""
    widget: Optional[Widget] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)


class OnboardingSnapshot(BaseModel):
    """
    Persisted context/resume-flag blob.

    Stored flat, like the browser record it replaces: the control fields below
    sit next to the context keys, which are kept as pydantic "extra" fields.
    Context keys must not reuse the control field aliases.
    """
    should_continue: bool = Field(default=False, alias="shouldContinue")
    version: int = 0
    flow: Optional[str] = None
    current_step_id: Optional[str] = Field(default=None, alias="currentStepId")
    saved_at: Optional[datetime] = Field(default=None, alias="savedAt")

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


SNAPSHOT_CONTROL_KEYS = frozenset({"shouldContinue", "version", "flow", "currentStepId", "savedAt"})


class HaltReason(str, Enum):
    WAITING = "waiting"              # stopped at a step that needs user input
    TERMINAL = "terminal"            # no further step
    LOOP_GUARD = "loop_guard"        # auto-advance bound reached
    HARD_FAILURE = "hard_failure"    # a hard-fail action rejected
    UNRECOGNIZED_REPLY = "unrecognized_reply"
    IDLE = "idle"                    # no active flow; fallback reply sent
    COMMAND = "command"              # trigger command answered directly


class InputResult(BaseModel):
    """What one `handle_input` call did."""
    halt_reason: HaltReason
    messages: List[ChatMessage] = Field(default_factory=list)
    steps_processed: int = 0
    current_step_id: Optional[str] = None
    failed_action: Optional[str] = None
    error: Optional[str] = None
