"""
Tool registry - open map of named tool groups.

Sessions are started with a list of group names (or individual tool names);
the registry resolves them to concrete tools once, at session start, and the
resolved names are persisted on the session.
"""

import logging
from typing import Dict, Iterable, List, Optional

from .types import AgentTool

logger = logging.getLogger(__name__)


class ToolRegistry:
    def __init__(self):
        self._groups: Dict[str, List[AgentTool]] = {}

    def register_group(self, group_name: str, tools: Iterable[AgentTool]) -> None:
        """Registers a group, replacing any existing group with the same name."""
        self._groups[group_name] = list(tools)

    def register_tool(self, group_name: str, tool: AgentTool) -> None:
        """Adds a tool to a group, replacing a same-named tool already in it."""
        group = self._groups.setdefault(group_name, [])
        for index, existing in enumerate(group):
            if existing.name == tool.name:
                group[index] = tool
                return
        group.append(tool)

    def get(self, name: str) -> Optional[AgentTool]:
        for tools in self._groups.values():
            for tool in tools:
                if tool.name == name:
                    return tool
        return None

    def resolve(self, names: Iterable[str]) -> List[AgentTool]:
        """
        Resolves group names and tool names into a de-duplicated tool list.
        Unknown names are skipped with a warning.
        """
        resolved: Dict[str, AgentTool] = {}
        for name in names:
            if name in self._groups:
                for tool in self._groups[name]:
                    resolved.setdefault(tool.name, tool)
                continue
            tool = self.get(name)
            if tool:
                resolved.setdefault(tool.name, tool)
            else:
                logger.warning(f"Unknown tool or tool group '{name}' ignored")
        return list(resolved.values())
