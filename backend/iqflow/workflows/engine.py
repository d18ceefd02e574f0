# /iqflow/workflows/engine.py

"""
Flow driver: the step pointer and context for one onboarding session.

The driver walks a flow's step graph. It:
- Holds the current step pointer (None means idle) and the context bag
- Resolves "{{key}}" message templates and widget data against the context
- Merges partial updates into the context (shallow, additive)
- Follows transitions (step id, branch over context, or terminal)

All driver methods are synchronous. Actions, the transcript and persistence
live outside the driver; the session orchestrates them around it.
"""

import copy
import re
from typing import Any, Dict, List, Mapping, Optional

import structlog

from iqflow.models.flow import Actor, FlowDefinition, FlowStep, Widget
from iqflow.workflows.errors import FlowConfigurationError
from iqflow.workflows.validator import validate_flow, validate_flow_name, validate_step

logger = structlog.get_logger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][\w.]*)\s*(?:\|([^}]*))?\}\}")

_MISSING = object()


def _lookup(context: Mapping[str, Any], path: str) -> Any:
    value: Any = context
    for part in path.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def resolve_template(template: str, context: Mapping[str, Any]) -> str:
    """
    Replaces every "{{key}}" / "{{a.b|default}}" token with its context value.
    A missing key renders its default, or an empty string.
    """
    def replace(match: re.Match) -> str:
        key, default = match.group(1), match.group(2)
        value = _lookup(context, key)
        if value is _MISSING or value is None:
            logger.debug("template_placeholder_missing", placeholder=key)
            return default.strip() if default is not None else ""
        return str(value)

    return PLACEHOLDER_PATTERN.sub(replace, template)


def resolve_data(data: Any, context: Mapping[str, Any]) -> Any:
    """
    Resolves templates inside widget data. A string that is exactly one
    placeholder keeps the raw context value (numbers, dicts, lists).
    """
    if isinstance(data, str):
        whole = PLACEHOLDER_PATTERN.fullmatch(data.strip())
        if whole:
            value = _lookup(context, whole.group(1))
            if value is not _MISSING and value is not None:
                return copy.deepcopy(value)
        return resolve_template(data, context)
    if isinstance(data, dict):
        return {key: resolve_data(value, context) for key, value in data.items()}
    if isinstance(data, list):
        return [resolve_data(item, context) for item in data]
    return data


def stack_widgets(widgets: List[Widget]) -> Optional[Widget]:
    if not widgets:
        return None
    if len(widgets) == 1:
        return widgets[0]
    return Widget(type="widget-stack", data={"widgets": [w.model_dump() for w in widgets]})


class FlowDriver:
    """
    Stateful walker over a registry of flows.

    A driver is bound to one active flow at a time. Selecting another flow
    (for a handoff or a trigger) keeps the context and makes the driver idle
    until a step is jumped to.
    """

    def __init__(self, flows: Mapping[str, FlowDefinition], flow_name: Optional[str] = None):
        for name, flow in flows.items():
            result = validate_flow(flow)
            if not result["is_valid"]:
                raise FlowConfigurationError(result["message"])
            if name != flow.name:
                raise FlowConfigurationError(f"Flow registered as '{name}' is named '{flow.name}'")

        self._flows: Dict[str, FlowDefinition] = dict(flows)
        self._steps: Dict[str, Dict[str, FlowStep]] = {
            name: {step.id: step for step in flow.steps} for name, flow in self._flows.items()
        }
        self._flow: Optional[FlowDefinition] = None
        self._current_step_id: Optional[str] = None
        self._context: Dict[str, Any] = {}

        if flow_name is not None:
            self.select_flow(flow_name)

    # ---------------- Flow selection ---------------- #

    @property
    def flows(self) -> Mapping[str, FlowDefinition]:
        return self._flows

    @property
    def flow(self) -> Optional[FlowDefinition]:
        return self._flow

    @property
    def flow_name(self) -> Optional[str]:
        return self._flow.name if self._flow else None

    @property
    def current_step_id(self) -> Optional[str]:
        return self._current_step_id

    @property
    def is_idle(self) -> bool:
        return self._current_step_id is None

    def select_flow(self, name: str) -> FlowDefinition:
        result = validate_flow_name(name, self._flows)
        if not result["is_valid"]:
            raise FlowConfigurationError(result["message"])
        self._flow = self._flows[name]
        self._current_step_id = None
        return self._flow

    # ---------------- Steps ---------------- #

    def get_step(self, step_id: str) -> Optional[FlowStep]:
        if self._flow is None:
            return None
        return self._steps[self._flow.name].get(step_id)

    def get_current_step(self) -> Optional[FlowStep]:
        if self._current_step_id is None:
            return None
        return self.get_step(self._current_step_id)

    def next_step_id(self, step: Optional[FlowStep] = None) -> Optional[str]:
        """Resolves the transition of `step` (default: current step) against the context."""
        step = step or self.get_current_step()
        if step is None:
            return None
        target = step.next_step
        if callable(target):
            target = target(self.get_context())
        return target or None

    def advance(self) -> Optional[FlowStep]:
        """
        Moves to the next step and returns it. Returns None when idle, when
        the step is terminal, or when a branch resolves to the current step.
        """
        step = self.get_current_step()
        if step is None:
            return None

        target = self.next_step_id(step)
        if target is None or target == step.id:
            return None

        next_step = self.get_step(target)
        if next_step is None:
            raise FlowConfigurationError(
                f"Step '{step.id}' of flow '{self.flow_name}' transitions to unknown step '{target}'"
            )
        self._current_step_id = next_step.id
        return next_step

    def jump_to_step(self, step_id: str) -> FlowStep:
        """Relocates the pointer. Unknown ids are configuration errors."""
        if self._flow is None:
            raise FlowConfigurationError(f"Cannot jump to '{step_id}': no flow selected")
        result = validate_step(self._flow, step_id)
        if not result["is_valid"]:
            raise FlowConfigurationError(result["message"])
        self._current_step_id = step_id
        return self._steps[self._flow.name][step_id]

    def finish(self):
        """Returns to idle. The context is kept until reset."""
        self._current_step_id = None

    def reset(self):
        self._current_step_id = None
        self._context = {}

    # ---------------- Context ---------------- #

    def update_context(self, partial: Optional[Mapping[str, Any]]):
        if not partial:
            return
        self._context.update(copy.deepcopy(dict(partial)))

    def get_context(self) -> Dict[str, Any]:
        return copy.deepcopy(self._context)

    # ---------------- Rendering ---------------- #

    def render_message(self, step: FlowStep) -> str:
        message = step.message
        if callable(message):
            try:
                return message(self.get_context()) or ""
            except (KeyError, AttributeError, TypeError) as e:
                logger.warning("message_render_failed", step_id=step.id, error=str(e))
                return ""
        return resolve_template(message, self._context)

    def render_widget(self, step: FlowStep, override: Optional[Widget] = None) -> Optional[Widget]:
        """
        Resolves the widget shown with `step`: its own widget (or `override`
        when it declares none) plus any help widgets, stacked together.
        User-authored steps never carry widgets.
        """
        if step.actor == Actor.USER:
            return None
        widgets = []
        base = step.widget or override
        if base is not None:
            widgets.append(base)
        widgets.extend(step.help_widgets)
        resolved = [Widget(type=w.type, data=resolve_data(w.data, self._context)) for w in widgets]
        return stack_widgets(resolved)
