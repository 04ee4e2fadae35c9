"""
Agent tools: types, registry and the built-in tool groups.
"""

from outreach_agents.tools.builtin import build_default_registry
from outreach_agents.tools.registry import ToolRegistry
from outreach_agents.tools.types import AgentTool, RiskClass, ToolContext

__all__ = [
    "AgentTool",
    "RiskClass",
    "ToolContext",
    "ToolRegistry",
    "build_default_registry",
]
