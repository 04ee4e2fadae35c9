"""
Domain Layer - Static Data Models

This module defines the static structure of outreach workflows: templates
made of ordered steps. Templates are authored by the business (or shipped as
system templates) and are consumed read-only by the Workflow Run Engine.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

"""
StepAction classifies what the engine does when a run enters a step:
- send_message: Outreach to the subject (literal message or model-drafted)
- notify_owner: Best-effort notification to the business owner
- create_task: Hand a to-do to the owner; completed manually
"""
StepAction = Literal["send_message", "notify_owner", "create_task"]

"""
ExpectedSignal classifies what completes a step:
- reply: An inbound reply from the subject, interpreted by the Decision Evaluator
- manual: An explicit advanceRun from the owner
- none: Nothing; the run moves on as soon as the action is performed
"""
ExpectedSignal = Literal["reply", "manual", "none"]


@dataclass
class WorkflowStep:
    """
    Single unit of work in an outreach workflow.

    Attributes:
        id: Unique identifier within the template.
        action: StepAction performed when the run enters this step.
        expected_signal: ExpectedSignal that completes the step.
        label: Human-readable description shown to the owner.
        message: Literal message text. Supports {subject_name} and {goal}.
        prompt: Drafting instructions for a model-written message (used when
            message is not set).
        subject_line: Subject line for send_message steps.
    """
    id: str
    action: StepAction
    expected_signal: ExpectedSignal = "reply"
    label: Optional[str] = None
    message: Optional[str] = None
    prompt: Optional[str] = None
    subject_line: Optional[str] = None


@dataclass
class WorkflowTemplate:
    """
    Ordered sequence of steps working a subject towards a goal.

    A run pins the template version it started on; administrative edits
    produce a new version and never alter existing runs.

    Attributes:
        id: Stable template identifier (shared by all versions).
        name: Display name.
        goal: Free text describing success. Fed to the Decision Evaluator.
        steps: Ordered step definitions. Runs address them by index.
        timeout_days: Days from run start until the run times out.
        trigger_config: Opaque trigger description consumed by schedulers.
        account_id: Owning tenant. None marks a shared system template.
        enabled: Disabled templates cannot start new runs.
        version: Monotonic version number, starting at 1.
    """
    id: str
    name: str
    goal: str
    steps: List[WorkflowStep] = field(default_factory=list)
    timeout_days: int = 30
    trigger_config: Dict[str, Any] = field(default_factory=dict)
    account_id: Optional[str] = None
    enabled: bool = True
    version: int = 1

    @property
    def step_count(self) -> int:
        return len(self.steps)
