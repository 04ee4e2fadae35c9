"""
Domain Layer - Static Data Models

Defines the static structure of outreach workflows: templates and steps.
"""

from outreach_agents.domain.models import (
    ExpectedSignal,
    StepAction,
    WorkflowStep,
    WorkflowTemplate,
)

__all__ = [
    "ExpectedSignal",
    "StepAction",
    "WorkflowStep",
    "WorkflowTemplate",
]
