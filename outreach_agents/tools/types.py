"""
Tool types for agent sessions.

A tool is the agent's interface to the world: a JSON-schema description the
model sees, an async execute function, and a risk class that the autonomy
policy uses to decide whether a call must wait for owner approval.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from ..services.messaging import MessageSender
from ..services.notifications import OwnerNotifier
from ..state.models import AutonomyMode


class RiskClass(str, Enum):
    """
    NONE: Read-only or session-local; no external side effect.
    INTERNAL: Side effect inside the business (owner alert, internal task).
    THIRD_PARTY: Reaches someone outside the business (message to a subject).
    """
    NONE = "none"
    INTERNAL = "internal"
    THIRD_PARTY = "third_party"


@dataclass
class ToolContext:
    account_id: str
    session_id: str
    autonomy_mode: AutonomyMode
    sender: MessageSender
    notifier: OwnerNotifier
    credentials: Dict[str, str] = field(default_factory=dict)
    # The session's mutable context; tools may record facts here.
    session_context: Dict[str, Any] = field(default_factory=dict)


ToolFunction = Callable[[Dict[str, Any], ToolContext], Awaitable[Dict[str, Any]]]


@dataclass
class AgentTool:
    """
    Attributes:
        name: Name the model uses to call the tool.
        description: One-line description shown to the model.
        parameters: JSON schema of the arguments object.
        risk: RiskClass of the call's side effect.
        execute: Coroutine performing the call.
        target_argument: Argument naming who the action affects, shown on
            approval requests (e.g. the recipient).
    """
    name: str
    description: str
    parameters: Dict[str, Any]
    risk: RiskClass
    execute: ToolFunction
    target_argument: Optional[str] = None

    @property
    def has_side_effect(self) -> bool:
        return self.risk != RiskClass.NONE

    def describe_call(self, arguments: Dict[str, Any]) -> str:
        target = self.target_of(arguments)
        return f"{self.name} -> {target}" if target else self.name

    def target_of(self, arguments: Dict[str, Any]) -> Optional[str]:
        if not self.target_argument:
            return None
        value = arguments.get(self.target_argument)
        return str(value) if value is not None else None
