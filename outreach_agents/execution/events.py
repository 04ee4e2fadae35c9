"""
Session events and resume payloads.

A session is exposed to its caller as a stream of SessionEvents. On the wire
each event is one flat JSON object, `{"type": ..., "session_id": ..., **data}`;
consumers ignore types they do not know.

Resume payloads form a tagged variant: exactly one of Message,
ApprovalDecision or ModeChange is accepted per resume call.
"""

from enum import Enum
from typing import Annotated, Any, Dict, Literal, Union

from pydantic import BaseModel, Field

from ..state.models import AutonomyMode


class EventType(str, Enum):
    SESSION_CREATED = "session_created"
    TURN_STARTED = "turn_started"
    OUTPUT_PRODUCED = "output_produced"
    TOOL_CALL_PROPOSED = "tool_call_proposed"
    TOOL_CALL_RESULT = "tool_call_result"
    APPROVAL_REQUIRED = "approval_required"
    AWAITING_INPUT = "awaiting_input"
    MODE_CHANGED = "mode_changed"
    ESCALATED = "escalated"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


class SessionEvent(BaseModel):
    type: EventType
    session_id: str
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_json_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "session_id": self.session_id, **self.data}


class Message(BaseModel):
    """
    A chat message. `owner` messages are operator instructions; `subject`
    messages are end-user replies and are classified before the agent acts.
    """
    kind: Literal["message"] = "message"
    content: str
    author: Literal["owner", "subject"] = "owner"


class ApprovalDecision(BaseModel):
    """Maps every pending approval id to True (execute) or False (skip)."""
    kind: Literal["approvals"] = "approvals"
    approvals: Dict[str, bool]


class ModeChange(BaseModel):
    kind: Literal["mode"] = "mode"
    new_mode: AutonomyMode


ResumePayload = Annotated[Union[Message, ApprovalDecision, ModeChange], Field(discriminator="kind")]
