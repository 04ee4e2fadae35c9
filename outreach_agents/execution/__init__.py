"""
Execution Layer - Session and Workflow Orchestration

Defines the SessionOrchestrator (interactive agent sessions), the
WorkflowRunEngine (multi-day workflow runs) with its StepExecutor, and the
DecisionEvaluator both of them use to interpret free text against a goal.
"""

from outreach_agents.execution.engine import ReplyResult, TickReport, WorkflowRunEngine
from outreach_agents.execution.evaluator import DecisionEvaluator, Evaluation
from outreach_agents.execution.events import (
    ApprovalDecision,
    EventType,
    Message,
    ModeChange,
    SessionEvent,
)
from outreach_agents.execution.executor import StepExecutor
from outreach_agents.execution.orchestrator import SessionOrchestrator
from outreach_agents.execution.planner import TurnPlanner
from outreach_agents.execution.policy import AutonomyPolicy

__all__ = [
    "ApprovalDecision",
    "AutonomyPolicy",
    "DecisionEvaluator",
    "Evaluation",
    "EventType",
    "Message",
    "ModeChange",
    "ReplyResult",
    "SessionEvent",
    "SessionOrchestrator",
    "StepExecutor",
    "TickReport",
    "TurnPlanner",
    "WorkflowRunEngine",
]
