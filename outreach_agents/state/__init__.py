"""
State Layer - Runtime Data Models

Defines the durable runtime records: agent sessions, workflow runs and the
conversation thread they share.
"""

from outreach_agents.state.models import (
    AgentSession,
    AutonomyMode,
    ConversationEntry,
    ConversationRole,
    PendingApproval,
    RunEvent,
    RunEventType,
    RunStatus,
    SessionOutput,
    SessionSnapshot,
    SessionStatus,
    WorkflowRun,
)

__all__ = [
    "AgentSession",
    "AutonomyMode",
    "ConversationEntry",
    "ConversationRole",
    "PendingApproval",
    "RunEvent",
    "RunEventType",
    "RunStatus",
    "SessionOutput",
    "SessionSnapshot",
    "SessionStatus",
    "WorkflowRun",
]
