# /iqflow/routes/onboarding.py

import logging
from fastapi import APIRouter, Depends, HTTPException, Request

from iqflow.models.api import CreateSessionRequest, InputRequest, InputResponse, SessionView
from iqflow.models.flow import HaltReason, InputResult
from iqflow.workflows.errors import FlowConfigurationError, SessionBusyError, SessionNotFoundError
from iqflow.workflows.session import DISPLAY_KEY, OnboardingSession, SessionRegistry
from iqflow.workflows.validator import validate_flow_name

# Endpoints that drive onboarding sessions: open (resume or start), send
# input, inspect and reset. Live sessions are held in the registry created
# by the application lifespan.

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/onboarding", tags=["Onboarding"])


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def _lookup(registry: SessionRegistry, session_id: str) -> OnboardingSession:
    try:
        return registry.get(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


def _view(session: OnboardingSession) -> SessionView:
    return SessionView(
        session_id=session.session_id,
        flow=session.driver.flow_name,
        current_step_id=session.current_step_id,
        context=session.context,
        messages=session.messages,
        processing=session.processing,
    )


def _response(session: OnboardingSession, result: InputResult) -> InputResponse:
    return InputResponse(
        halt_reason=result.halt_reason,
        steps_processed=result.steps_processed,
        messages=result.messages,
        failed_action=result.failed_action,
        error=result.error,
        session=_view(session),
    )


@router.post("/sessions", response_model=InputResponse, status_code=201)
async def create_session(body: CreateSessionRequest, registry: SessionRegistry = Depends(get_registry)):
    """Opens a session, resuming persisted state for `session_key` before starting `flow`."""
    if body.flow is not None:
        result = validate_flow_name(body.flow, registry.flows)
        if not result["is_valid"]:
            raise HTTPException(status_code=422, detail=result["message"])
    try:
        session, result = await registry.open(flow=body.flow, session_key=body.session_key)
    except FlowConfigurationError as e:
        logger.error(f"Onboarding configuration error while opening a session: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Onboarding flow is misconfigured")

    if result is None:
        state = HaltReason.IDLE if session.driver.is_idle else HaltReason.WAITING
        result = InputResult(halt_reason=state, messages=session.messages, current_step_id=session.current_step_id)
    return _response(session, result)


@router.post("/sessions/{session_id}/input", response_model=InputResponse)
async def send_input(session_id: str, body: InputRequest, registry: SessionRegistry = Depends(get_registry)):
    session = _lookup(registry, session_id)
    if body.data is not None:
        user_input = dict(body.data)
        if body.display:
            user_input[DISPLAY_KEY] = body.display
    else:
        user_input = body.text

    try:
        result = await session.handle_input(user_input)
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except FlowConfigurationError as e:
        logger.error(f"Onboarding configuration error in session {session_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Onboarding flow is misconfigured")

    return _response(session, result)


@router.get("/sessions/{session_id}", response_model=SessionView)
async def get_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    return _view(_lookup(registry, session_id))


@router.post("/sessions/{session_id}/reset", response_model=SessionView)
async def reset_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = _lookup(registry, session_id)
    try:
        await session.reset()
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _view(session)


@router.delete("/sessions/{session_id}", status_code=204)
async def close_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Drops the live session. Persisted records stay, so the same session_key can resume later."""
    session = _lookup(registry, session_id)
    if session.processing:
        raise HTTPException(status_code=409, detail=f"Session {session_id} is still processing the previous input")
    registry.remove(session_id)
