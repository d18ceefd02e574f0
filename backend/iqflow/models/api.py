# /iqflow/models/api.py

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from iqflow.models.flow import ChatMessage, HaltReason

# Pydantic models for the onboarding HTTP API requests and responses.


class CreateSessionRequest(BaseModel):
    flow: Optional[str] = None
    # Identifies the persisted records to resume from (e.g. the browser or user id).
    session_key: Optional[str] = Field(default=None, max_length=200)


class InputRequest(BaseModel):
    """Either free text, or structured data with an optional display string."""
    text: Optional[str] = Field(default=None, max_length=4000)
    data: Optional[Dict[str, Any]] = None
    display: Optional[str] = None

    @model_validator(mode="after")
    def exactly_one_input(self):
        if (self.text is None) == (self.data is None):
            raise ValueError("Provide either 'text' or 'data'")
        return self


class SessionView(BaseModel):
    session_id: str
    flow: Optional[str] = None
    current_step_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    messages: List[ChatMessage] = Field(default_factory=list)
    processing: bool = False


class InputResponse(BaseModel):
    halt_reason: HaltReason
    steps_processed: int
    messages: List[ChatMessage]
    failed_action: Optional[str] = None
    error: Optional[str] = None
    session: SessionView
