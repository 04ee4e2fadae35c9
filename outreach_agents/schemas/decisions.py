"""
Schemas - Structured Output Models for LLM Responses

This module defines Pydantic models used for structured LLM outputs.
Every model response passes through the decode step in llm/decoding.py and
is validated against one of these schemas before any caller acts on it.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from ..state.models import new_id


class Decision(str, Enum):
    """
    The Decision Evaluator's classification of an inbound text against a goal.

    REPLY: The conversation should continue; a drafted reply is attached.
    CLOSE: The goal is reached (or definitively lost); stop working the subject.
    ESCALATE: A human must look at this before anything else is sent.
    WAIT: Nothing to do right now; keep the current step.
    """
    REPLY = "reply"
    CLOSE = "close"
    ESCALATE = "escalate"
    WAIT = "wait"


class EvaluationResult(BaseModel):
    """
    The strict JSON structure the model must produce when classifying a reply.
    """
    decision: Decision = Field(
        ...,
        description="One label from the allowed decision vocabulary."
    )
    reply: Optional[str] = Field(
        None,
        description="The message to send back. Required when decision is 'reply'."
    )
    reason: str = Field(
        ...,
        description="Short machine-readable reason, e.g. 'member_confirmed_visit'."
    )
    outcome: Optional[str] = Field(
        None,
        description="Optional outcome label when closing (engaged, churned, ...)."
    )

    @model_validator(mode="after")
    def _reply_required(self) -> "EvaluationResult":
        if self.decision == Decision.REPLY and not (self.reply or "").strip():
            raise ValueError("decision 'reply' requires a non-empty reply")
        return self


class ProposedToolCall(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class AgentTurn(BaseModel):
    """
    One planned agent turn inside a session.
    """
    message: Optional[str] = Field(
        None,
        description="Text for the owner: progress, findings or a question."
    )
    tool_calls: List[ProposedToolCall] = Field(
        default_factory=list,
        description="Tools to call this turn, in order."
    )
    finished: bool = Field(
        False,
        description="True when the session goal is fully handled."
    )


class OutreachDraft(BaseModel):
    subject: str
    body: str
