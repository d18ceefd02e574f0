# /iqflow/workflows/validator.py

"""
Pure validation functions for flow definitions.

Checks the static shape of a step graph against the rules the driver relies
on: unique step ids, entry and resume points that exist, literal transitions
that point at real steps, and actions that have a registered handler.

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- Free of I/O and logging

Branch transitions (callables) can only be checked when they are evaluated,
so the driver re-checks their targets at advance time.
"""

from typing import Dict, Iterable, Optional, TypedDict
from iqflow.models.flow import FlowDefinition
from iqflow.workflows.definitions import FLOWS


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]


def _ok() -> ValidationResult:
    return {"is_valid": True, "error_code": None, "message": None}


def _fail(error_code: str, message: str) -> ValidationResult:
    return {"is_valid": False, "error_code": error_code, "message": message}


def validate_flow_name(name: str, flows: Optional[Dict[str, FlowDefinition]] = None) -> ValidationResult:
    """
    Validate that a flow with this name is registered.

    Args:
        name: The flow name to validate
        flows: Registry to check against (defaults to FLOWS)

    Returns:
        ValidationResult with is_valid=True if the flow exists
    """
    registry = FLOWS if flows is None else flows
    if not name:
        return _fail("EMPTY_FLOW", "Flow name cannot be empty")
    if name not in registry:
        return _fail("UNKNOWN_FLOW", f"Flow '{name}' is not defined. Known flows: {sorted(registry)}")
    return _ok()


def validate_step(flow: FlowDefinition, step_id: str) -> ValidationResult:
    """
    Validate that a step exists in the given flow.

    Args:
        flow: The flow definition
        step_id: The step id to validate

    Returns:
        ValidationResult with is_valid=True if the step exists
    """
    if not step_id:
        return _fail("EMPTY_STEP", "Step id cannot be empty")
    if all(step.id != step_id for step in flow.steps):
        return _fail("UNKNOWN_STEP", f"Step '{step_id}' is not defined in flow '{flow.name}'")
    return _ok()


def validate_flow(flow: FlowDefinition) -> ValidationResult:
    """
    Validate the static structure of a flow.

    Checks, in order: the flow has steps, step ids are unique, the entry and
    resume steps exist, and every literal `next_step` names a step of the flow.

    Args:
        flow: The flow definition to check

    Returns:
        ValidationResult describing the first problem found
    """
    if not flow.steps:
        return _fail("EMPTY_FLOW_STEPS", f"Flow '{flow.name}' has no steps")

    seen = set()
    duplicates = []
    for step in flow.steps:
        if step.id in seen:
            duplicates.append(step.id)
        seen.add(step.id)
    if duplicates:
        return _fail(
            "DUPLICATE_STEP_ID",
            f"Flow '{flow.name}' defines duplicate step ids: {', '.join(duplicates)}"
        )

    entry_result = validate_step(flow, flow.entry_step)
    if not entry_result["is_valid"]:
        return _fail("UNKNOWN_ENTRY_STEP", entry_result["message"])

    if flow.resume_step is not None:
        resume_result = validate_step(flow, flow.resume_step)
        if not resume_result["is_valid"]:
            return _fail("UNKNOWN_RESUME_STEP", resume_result["message"])

    for step in flow.steps:
        if isinstance(step.next_step, str) and step.next_step not in seen:
            return _fail(
                "UNKNOWN_TRANSITION_TARGET",
                f"Step '{step.id}' of flow '{flow.name}' transitions to unknown step '{step.next_step}'"
            )

    return _ok()


def validate_actions(flow: FlowDefinition, known_actions: Iterable[str]) -> ValidationResult:
    """
    Validate that every action referenced by a flow has a handler.

    Args:
        flow: The flow definition
        known_actions: Registered action identifiers

    Returns:
        ValidationResult with is_valid=True if all actions are known
    """
    known = set(known_actions)
    referenced = {step.action for step in flow.steps if step.action}
    if flow.on_start:
        referenced.add(flow.on_start)
    missing = sorted(referenced - known)
    if missing:
        return _fail(
            "UNKNOWN_ACTION",
            f"Flow '{flow.name}' references unregistered actions: {', '.join(missing)}"
        )
    return _ok()
