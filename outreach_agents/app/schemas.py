"""
API Layer - Request/Response Schemas

Pydantic models for API request and response validation. Runtime records
(SessionSnapshot, WorkflowRun, WorkflowTemplate) are returned as they are.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..domain.models import WorkflowStep
from ..execution.events import ResumePayload
from ..state.models import AutonomyMode


class StartSessionRequest(BaseModel):
    account_id: str
    goal: str
    agent_id: Optional[str] = None
    tools: List[str] = Field(default_factory=list)
    autonomy_mode: Optional[AutonomyMode] = None
    credentials: Dict[str, str] = Field(default_factory=dict)
    system_prompt: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class ResumeSessionRequest(BaseModel):
    """One of {"kind": "message"}, {"kind": "approvals"} or {"kind": "mode"}."""
    payload: ResumePayload


class CancelSessionResponse(BaseModel):
    session_id: str
    # False when an in-flight call will finalize the cancellation.
    cancelled: bool


class TemplateRequest(BaseModel):
    id: str
    name: str
    goal: str
    steps: List[WorkflowStep]
    timeout_days: Optional[int] = None
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    account_id: Optional[str] = None
    enabled: bool = True


class StartRunRequest(BaseModel):
    workflow_id: str
    account_id: str
    subject_id: str
    subject_contact: str
    subject_name: str
    initial_context: Dict[str, Any] = Field(default_factory=dict)


class AdvanceRunRequest(BaseModel):
    next_step_index: int


class TickResponse(BaseModel):
    timed_out: List[str]
    skipped_busy: List[str]


class InboundReplyRequest(BaseModel):
    token: str
    text: str
    contact: Optional[str] = None
    name: Optional[str] = None


class InboundReplyResponse(BaseModel):
    processed: bool
    reason: str
    owner_type: Optional[str] = None
    owner_id: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str
    detail: str
    retryable: bool
