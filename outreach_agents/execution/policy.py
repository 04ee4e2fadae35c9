"""
Autonomy policy - decides which proposed tool calls wait for owner approval.

The semi_auto risk boundary is business policy, not engine logic, so it is
injected as a predicate. The default pauses only actions that reach a third
party.
"""

from typing import Any, Callable, Dict

from ..state.models import AutonomyMode
from ..tools.types import AgentTool, RiskClass

ApprovalPredicate = Callable[[AgentTool, Dict[str, Any]], bool]


def reaches_third_party(tool: AgentTool, arguments: Dict[str, Any]) -> bool:
    return tool.risk == RiskClass.THIRD_PARTY


class AutonomyPolicy:
    def __init__(self, semi_auto_requires_approval: ApprovalPredicate = reaches_third_party):
        self.semi_auto_requires_approval = semi_auto_requires_approval

    def requires_approval(
        self, mode: AutonomyMode, tool: AgentTool, arguments: Dict[str, Any]
    ) -> bool:
        if not tool.has_side_effect:
            return False
        if mode == AutonomyMode.FULL_AUTO:
            return False
        if mode == AutonomyMode.MANUAL:
            return True
        return bool(self.semi_auto_requires_approval(tool, arguments))
