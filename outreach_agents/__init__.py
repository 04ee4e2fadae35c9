"""
Outreach Agents

Orchestration core for AI outreach on behalf of a business: interactive
agent sessions under a human-in-the-loop approval policy, and goal-directed
workflow runs that advance on replies and time out on a periodic sweep.
"""

from outreach_agents.domain import (
    WorkflowStep,
    WorkflowTemplate,
)
from outreach_agents.state import (
    AgentSession,
    AutonomyMode,
    ConversationEntry,
    RunStatus,
    SessionStatus,
    WorkflowRun,
)
from outreach_agents.schemas import Decision, EvaluationResult
from outreach_agents.execution import (
    DecisionEvaluator,
    SessionOrchestrator,
    WorkflowRunEngine,
)

__all__ = [
    # Domain Layer
    "WorkflowStep",
    "WorkflowTemplate",
    # State Layer
    "AgentSession",
    "AutonomyMode",
    "ConversationEntry",
    "RunStatus",
    "SessionStatus",
    "WorkflowRun",
    # Schemas
    "Decision",
    "EvaluationResult",
    # Execution Layer
    "DecisionEvaluator",
    "SessionOrchestrator",
    "WorkflowRunEngine",
]
