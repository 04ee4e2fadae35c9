"""
State Layer - Runtime Data Models

This module defines the durable runtime records the orchestration core reads
and writes between invocations: agent sessions, workflow runs and the
append-only conversation thread shared by both. No process keeps these in
memory between requests; the repositories are the single source of truth.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class AutonomyMode(str, Enum):
    """
    How much an agent session may act without human approval.

    MANUAL: Every side-effecting tool call waits for approval.
    SEMI_AUTO: Only calls the injected risk predicate flags wait for approval.
    FULL_AUTO: Nothing waits; every action is still logged to outputs.
    """
    MANUAL = "manual"
    SEMI_AUTO = "semi_auto"
    FULL_AUTO = "full_auto"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_SESSION_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}
)


class RunStatus(str, Enum):
    ACTIVE = "active"
    ACHIEVED = "achieved"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.ACHIEVED, RunStatus.TIMED_OUT, RunStatus.CANCELLED}
)


class ConversationRole(str, Enum):
    AGENT = "agent"
    SUBJECT = "subject"
    OWNER = "owner"
    SYSTEM = "system"


class RunEventType(str, Enum):
    STEP_STARTED = "step_started"
    STEP_FAILED = "step_failed"
    OUTREACH_SENT = "outreach_sent"
    REPLY_RECEIVED = "reply_received"
    REPLY_SENT = "reply_sent"
    ESCALATED = "escalated"
    RUN_FINISHED = "run_finished"


class PendingApproval(BaseModel):
    """
    A proposed side-effecting action awaiting an explicit accept/decline.
    The id is the tool call id proposed by the model.
    """
    id: str
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    description: str
    target: Optional[str] = None
    requested_at: datetime = Field(default_factory=utc_now)


class SessionOutput(BaseModel):
    """An artifact produced by a session: a message, an executed or skipped action."""
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class AgentSession(BaseModel):
    """
    One interactive, multi-turn agent conversation.

    Invariant: status == AWAITING_APPROVAL if and only if pending_approvals
    is non-empty. cost_cents never decreases.
    """
    id: str = Field(default_factory=new_id)
    account_id: str
    agent_id: Optional[str] = None
    goal: str
    autonomy_mode: AutonomyMode = AutonomyMode.SEMI_AUTO
    status: SessionStatus = SessionStatus.ACTIVE
    turn_count: int = 0
    max_turns: int = 20
    cost_cents: int = 0
    budget_cents: int = 100
    pending_approvals: List[PendingApproval] = Field(default_factory=list)
    outputs: List[SessionOutput] = Field(default_factory=list)
    tool_names: List[str] = Field(default_factory=list)
    system_prompt_override: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    # Provider/platform credentials handed to tools. Never part of a snapshot.
    credentials: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    def snapshot(self) -> "SessionSnapshot":
        return SessionSnapshot(
            id=self.id,
            account_id=self.account_id,
            goal=self.goal,
            status=self.status,
            autonomy_mode=self.autonomy_mode,
            turn_count=self.turn_count,
            cost_cents=self.cost_cents,
            pending_approvals=list(self.pending_approvals),
            outputs=list(self.outputs),
            created_at=self.created_at,
        )


class SessionSnapshot(BaseModel):
    """Read-only view of a session used for reconnection after a dropped stream."""
    id: str
    account_id: str
    goal: str
    status: SessionStatus
    autonomy_mode: AutonomyMode
    turn_count: int
    cost_cents: int
    pending_approvals: List[PendingApproval]
    outputs: List[SessionOutput]
    created_at: datetime


class RunEvent(BaseModel):
    """One entry of a workflow run's audit trail."""
    type: RunEventType
    at: datetime = Field(default_factory=utc_now)
    step_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class WorkflowRun(BaseModel):
    """
    One subject's progress through a workflow template.

    Status only moves forward (active -> achieved | timed_out | cancelled) and
    current_step_index never decreases while the run is active.
    """
    id: str = Field(default_factory=new_id)
    workflow_id: str
    workflow_version: int = 1
    account_id: str
    subject_id: str
    subject_contact: str
    subject_name: str
    goal: str
    current_step_index: int = 0
    status: RunStatus = RunStatus.ACTIVE
    context: Dict[str, Any] = Field(default_factory=dict)
    escalated: bool = False
    escalation_reason: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deadline_at: datetime
    finished_at: Optional[datetime] = None
    # Append-only audit trail; never rewritten once recorded
    events: List[RunEvent] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


class ConversationEntry(BaseModel):
    """
    Append-only thread entry owned by a session or a workflow run.
    Ordering by (created_at, sequence) defines the thread.
    """
    id: str = Field(default_factory=new_id)
    owner_id: str
    role: ConversationRole
    content: str
    evaluation: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utc_now)
    sequence: int = 0
