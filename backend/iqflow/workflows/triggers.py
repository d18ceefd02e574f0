# /iqflow/workflows/triggers.py

"""
Free-text trigger table.

Maps phrases typed into the chat to either:
- a flow start ("start:<flow>" or "start:<flow>:<step>"), honoured only while idle
- a command: an optional action plus a templated reply, answered directly
  from the context

While a flow is active only EXACT rules are checked, so a free-text answer
to the current step ("Hello, my email is ...") is never taken for a command.
EXACT rules compare the trimmed text literally, case included.

Rules are checked in order; the first match wins. Targets are validated
when the table is built, so a rule pointing nowhere fails at startup.
"""

import re
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from iqflow.config import strings
from iqflow.models.flow import FlowDefinition, Widget
from iqflow.workflows.errors import FlowConfigurationError
from iqflow.workflows.validator import validate_flow_name, validate_step

FLOW_TARGET_PREFIX = "start:"


class MatchKind(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    REGEX = "regex"


class Trigger(BaseModel):
    kind: MatchKind
    phrase: str
    target: str

    model_config = ConfigDict(frozen=True)

    @property
    def starts_flow(self) -> bool:
        return self.target.startswith(FLOW_TARGET_PREFIX)


class Command(BaseModel):
    """A direct answer that bypasses the step graph."""
    name: str
    reply: str
    action: Optional[str] = None
    failure_reply: str = strings.HARD_FAILURE
    widget: Optional[Widget] = None

    model_config = ConfigDict(frozen=True)


class TriggerMatch(BaseModel):
    trigger: Trigger
    command: Optional[Command] = None
    flow: Optional[str] = None
    step: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)


DEFAULT_COMMANDS: List[Command] = [
    Command(
        name="show-connection-details",
        action="show-connection-details",
        reply=strings.CONNECTION_DETAILS,
        failure_reply=strings.CONNECTION_DETAILS_UNAVAILABLE,
        widget=Widget(type="mqtt-connection-info", data={"connection": "{{mqttConnection}}"}),
    ),
    Command(
        name="create-test-ticket",
        action="create-test-ticket",
        reply=strings.TEST_TICKET_CREATED,
        failure_reply=strings.TEST_TICKET_FAILED,
    ),
    Command(
        name="switch-channel",
        action="switch-graph-channel",
        reply=strings.SWITCH_CHANNEL_DONE,
        failure_reply=strings.SWITCH_CHANNEL_FAILED,
    ),
    Command(name="forecast-maintenance", action="forecast-maintenance", reply=strings.FORECAST_DONE, failure_reply=strings.ANALYTICS_FAILED),
    Command(name="health-drivers", action="explain-health-drivers", reply=strings.HEALTH_DRIVERS_DONE, failure_reply=strings.ANALYTICS_FAILED),
    Command(name="compare-lines", action="compare-lines", reply=strings.COMPARE_DONE, failure_reply=strings.ANALYTICS_FAILED),
    Command(name="query-metrics", action="query-metrics", reply=strings.METRICS_DONE, failure_reply=strings.ANALYTICS_FAILED),
    Command(name="correlation", action="compute-correlation", reply=strings.CORRELATION_DONE, failure_reply=strings.ANALYTICS_FAILED),
    Command(name="assign-ticket", action="assign-ticket", reply=strings.ASSIGN_TICKET_DONE, failure_reply=strings.ASSIGN_TICKET_FAILED),
    Command(name="recent-tickets", action="list-recent-tickets", reply=strings.RECENT_TICKETS, failure_reply=strings.RECENT_TICKETS_FAILED),
    Command(
        name="draft-ticket",
        action="create-test-ticket",
        reply=strings.DRAFT_TICKET_CREATED,
        failure_reply=strings.TEST_TICKET_FAILED,
        widget=Widget(type="ticket-creation-form", data={"ticketId": "{{testTicketId}}"}),
    ),
    Command(name="ticket-seen", action="create-test-ticket", reply=strings.TICKET_SEEN, failure_reply=strings.TEST_TICKET_FAILED),
    Command(name="invite-users", action="invite-users", reply=strings.INVITES_SENT, failure_reply=strings.INVITES_FAILED),
    Command(name="invite-form", reply=strings.INVITE_PROMPT, widget=Widget(type="user-invitation-form")),
    Command(name="show-users", action="list-assignable-users", reply=strings.ASSIGNABLE_USERS),
    Command(name="simulate-fault", action="simulate-fault", reply=strings.FAULT_SIMULATED, failure_reply=strings.FAULT_LIVE_MACHINE),
    Command(
        name="restart-onboarding",
        reply=strings.RESTART_ONBOARDING,
        widget=Widget(type="restart-onboarding-widget", data={"message": strings.RESTART_ONBOARDING_DETAIL}),
    ),
    Command(name="help", reply=strings.HELP),
]

DEFAULT_TRIGGERS: List[Trigger] = [
    Trigger(kind=MatchKind.EXACT, phrase="Show connection details", target="show-connection-details"),
    Trigger(kind=MatchKind.EXACT, phrase="Create a test ticket", target="create-test-ticket"),
    Trigger(kind=MatchKind.REGEX, phrase=r"\bassign\s+(?:ticket\s+)?(?P<ticket>[a-z0-9-]+)\s+to\s+(?P<assignee>.+?)\s*$", target="assign-ticket"),
    Trigger(kind=MatchKind.REGEX, phrase=r"\b(?:invite|add users?|collaborators?)\b(?P<invitees>.*@.+)$", target="invite-users"),
    Trigger(kind=MatchKind.REGEX, phrase=r"\b(?:invite|add users?|collaborators?)\b", target="invite-form"),
    Trigger(kind=MatchKind.REGEX, phrase=r"\bsee\b.*\btickets?\b|\btickets?\b.*\b(?:appeared|appears|visible)\b", target="ticket-seen"),
    Trigger(kind=MatchKind.REGEX, phrase=r"\b(?:recent|latest|show|list)\s+tickets?\b", target="recent-tickets"),
    Trigger(kind=MatchKind.REGEX, phrase=r"\b(?:create|open|new)\s+(?:a\s+)?(?:new\s+)?ticket\b", target="draft-ticket"),
    Trigger(kind=MatchKind.REGEX, phrase=r"\b(?:simulate|trigger)\b.*\bfault\b|\b(?:demo|test)\s+fault\b", target="simulate-fault"),
    Trigger(kind=MatchKind.REGEX, phrase=r"^\s*show\s+(?:me\s+)?users\s*$|\blist\s+users\b|\bwho\s+can\s+i\s+assign\b", target="show-users"),
    Trigger(kind=MatchKind.REGEX, phrase=r"\b(?:switch|change)\b.*\bto\s+(?P<channel>[\w ]+?)\s*$", target="switch-channel"),
    Trigger(kind=MatchKind.CONTAINS, phrase="maintenance date", target="forecast-maintenance"),
    Trigger(kind=MatchKind.CONTAINS, phrase="drivers of my health score", target="health-drivers"),
    Trigger(kind=MatchKind.REGEX, phrase=r"\bcompare\b.*\bline", target="compare-lines"),
    Trigger(kind=MatchKind.CONTAINS, phrase="vibration trend", target="query-metrics"),
    Trigger(kind=MatchKind.CONTAINS, phrase="correlation", target="correlation"),
    Trigger(kind=MatchKind.REGEX, phrase=r"\b(?:restart|start\s+(?:over|fresh|again)|onboard\s+another|fresh\s+start)\b", target="restart-onboarding"),
    Trigger(kind=MatchKind.REGEX, phrase=r"\b(?:onboard|add (?:a |another |new )?(?:machine|device))\b", target="start:logged-in:profile-selection-prompt"),
    Trigger(kind=MatchKind.REGEX, phrase=r"^\s*(?:help|hi|hello|options)\b", target="help"),
]


class TriggerTable:
    def __init__(self, triggers: Iterable[Trigger], commands: Iterable[Command], flows: Mapping[str, FlowDefinition]):
        self.triggers = list(triggers)
        self.commands: Dict[str, Command] = {command.name: command for command in commands}
        self._patterns: Dict[int, re.Pattern] = {}
        self._flow_targets: Dict[int, tuple] = {}

        for index, trigger in enumerate(self.triggers):
            if trigger.kind == MatchKind.REGEX:
                try:
                    self._patterns[index] = re.compile(trigger.phrase, re.IGNORECASE)
                except re.error as e:
                    raise FlowConfigurationError(f"Trigger regex '{trigger.phrase}' is invalid: {e}") from e

            if trigger.starts_flow:
                self._flow_targets[index] = self._parse_flow_target(trigger.target, flows)
            elif trigger.target not in self.commands:
                raise FlowConfigurationError(f"Trigger '{trigger.phrase}' targets unknown command '{trigger.target}'")

    @staticmethod
    def _parse_flow_target(target: str, flows: Mapping[str, FlowDefinition]) -> tuple:
        flow_name, _, step_id = target[len(FLOW_TARGET_PREFIX):].partition(":")
        result = validate_flow_name(flow_name, flows)
        if not result["is_valid"]:
            raise FlowConfigurationError(f"Trigger target '{target}': {result['message']}")
        flow = flows[flow_name]
        step_id = step_id or flow.entry_step
        result = validate_step(flow, step_id)
        if not result["is_valid"]:
            raise FlowConfigurationError(f"Trigger target '{target}': {result['message']}")
        return flow_name, step_id

    def _matches(self, index: int, trigger: Trigger, text: str) -> Optional[Dict[str, Any]]:
        if trigger.kind == MatchKind.EXACT:
            return {} if text.strip() == trigger.phrase else None
        if trigger.kind == MatchKind.CONTAINS:
            return {} if trigger.phrase.lower() in text.lower() else None
        match = self._patterns[index].search(text)
        if match is None:
            return None
        return {key: value.strip() for key, value in match.groupdict().items() if value}

    def match(self, text: str, flow_active: bool = False) -> Optional[TriggerMatch]:
        """First matching rule for `text`. Only non-flow EXACT rules are checked while a flow is active."""
        if not text or not text.strip():
            return None
        for index, trigger in enumerate(self.triggers):
            if flow_active and (trigger.starts_flow or trigger.kind != MatchKind.EXACT):
                continue
            params = self._matches(index, trigger, text)
            if params is None:
                continue
            if trigger.starts_flow:
                flow_name, step_id = self._flow_targets[index]
                return TriggerMatch(trigger=trigger, flow=flow_name, step=step_id, params=params)
            return TriggerMatch(trigger=trigger, command=self.commands[trigger.target], params=params)
        return None


def default_trigger_table(flows: Mapping[str, FlowDefinition]) -> TriggerTable:
    return TriggerTable(DEFAULT_TRIGGERS, DEFAULT_COMMANDS, flows)
