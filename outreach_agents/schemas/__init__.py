"""
Schemas - Structured Output Models for LLM Responses

Defines Pydantic models for structured LLM outputs: reply evaluations,
planned agent turns and drafted outreach messages.
"""

from outreach_agents.schemas.decisions import (
    AgentTurn,
    Decision,
    EvaluationResult,
    OutreachDraft,
    ProposedToolCall,
)

__all__ = [
    "AgentTurn",
    "Decision",
    "EvaluationResult",
    "OutreachDraft",
    "ProposedToolCall",
]
