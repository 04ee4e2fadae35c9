"""
Planner - Agentic Turn Planning Layer

The TurnPlanner is a stateless class that wraps the LLM for planning one
agent turn inside a session: what to tell the owner and which tools to call.
It is responsible for prompt construction and structured output decoding;
the SessionOrchestrator decides what actually happens with the plan.
"""

import logging
from typing import List, Optional, Sequence, Tuple

from ..llm.decoding import request_structured
from ..llm.interface import Completion, LLMProvider
from ..schemas.decisions import AgentTurn
from ..state.models import AgentSession, AutonomyMode, ConversationEntry, ConversationRole
from ..tools.types import AgentTool
from .prompts import Template, render

logger = logging.getLogger(__name__)

_SPEAKER_LABELS = {
    ConversationRole.OWNER: "OWNER",
    ConversationRole.SUBJECT: "SUBJECT",
    ConversationRole.SYSTEM: "SYSTEM",
}


class TurnPlanner:
    def __init__(self, llm_provider: LLMProvider, temperature: float = 0.0):
        self.llm = llm_provider
        self.temperature = temperature

    async def plan_turn(
        self,
        session: AgentSession,
        history: Sequence[ConversationEntry],
        tools: List[AgentTool],
    ) -> Tuple[AgentTurn, Completion]:
        """
        Raises EvaluationError (malformed plan) or ProviderError.
        """
        messages = [{
            "role": "system",
            "content": self.build_system_prompt(
                session.goal, tools, session.autonomy_mode, session.system_prompt_override
            ),
        }]
        for entry in history:
            if entry.role == ConversationRole.AGENT:
                messages.append({"role": "assistant", "content": entry.content})
            else:
                messages.append({
                    "role": "user",
                    "content": f"[{_SPEAKER_LABELS[entry.role]}]: {entry.content}",
                })

        turn, completion = await request_structured(
            self.llm, messages, AgentTurn, temperature=self.temperature
        )
        logger.debug(
            f"Planned turn for session {session.id}: "
            f"{len(turn.tool_calls)} tool call(s), finished={turn.finished}"
        )
        return turn, completion

    def build_system_prompt(
        self,
        goal: str,
        tools: List[AgentTool],
        mode: AutonomyMode,
        owner_instructions: Optional[str] = None,
    ) -> str:
        return render(
            Template.SESSION_SYSTEM,
            goal=goal,
            tools=tools,
            mode=mode.value,
            owner_instructions=owner_instructions,
        )
