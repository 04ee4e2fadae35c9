# tests/conftest.py
"""
Pytest configuration and fixtures.

Everything runs in memory: a scripted LLM provider, recording sender and
notifier, and the in-memory repositories. SQL repository tests build their
own in-memory SQLite engine.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from outreach_agents.domain.models import WorkflowStep, WorkflowTemplate
from outreach_agents.execution.engine import WorkflowRunEngine
from outreach_agents.execution.evaluator import DecisionEvaluator
from outreach_agents.execution.executor import StepExecutor
from outreach_agents.execution.orchestrator import SessionOrchestrator
from outreach_agents.execution.planner import TurnPlanner
from outreach_agents.llm.interface import Completion, LLMProvider
from outreach_agents.repositories.conversation import InMemoryConversationRepository
from outreach_agents.repositories.run import InMemoryWorkflowRunRepository
from outreach_agents.repositories.session import InMemorySessionRepository
from outreach_agents.repositories.workflow import InMemoryWorkflowRepository
from outreach_agents.services.messaging import MessageSender, OutboundMessage
from outreach_agents.services.notifications import OwnerNotifier
from outreach_agents.tools.builtin import build_default_registry


# ==============================================================================
# Fakes
# ==============================================================================

class ScriptedLLM(LLMProvider):
    """
    Returns scripted responses in order. A script item is either a string
    (the completion text) or an exception instance to raise.
    """

    def __init__(self, cost_cents: int = 1):
        self.script: List = []
        self.calls: List[List[dict]] = []
        self.cost_cents = cost_cents

    def add(self, *items) -> "ScriptedLLM":
        self.script.extend(items)
        return self

    async def complete(self, messages, temperature=0.0, json_output=False) -> Completion:
        self.calls.append(messages)
        if not self.script:
            raise AssertionError("ScriptedLLM ran out of responses")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return Completion(text=item, input_tokens=10, output_tokens=5, cost_cents=self.cost_cents)


class RecordingSender(MessageSender):
    def __init__(self):
        self.sent: List[OutboundMessage] = []
        self.fail_with: Optional[Exception] = None

    async def send(self, message: OutboundMessage) -> str:
        if self.fail_with:
            raise self.fail_with
        self.sent.append(message)
        return f"msg-{len(self.sent)}"


class RecordingNotifier(OwnerNotifier):
    def __init__(self):
        self.notifications: List[tuple] = []

    async def notify(self, account_id: str, title: str, body: str) -> bool:
        self.notifications.append((account_id, title, body))
        return True


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


# ==============================================================================
# Helpers
# ==============================================================================

def turn_json(message=None, tool_calls=(), finished=False) -> str:
    return json.dumps({"message": message, "tool_calls": list(tool_calls), "finished": finished})


def tool_call(call_id, name, **arguments) -> dict:
    return {"id": call_id, "name": name, "arguments": arguments}


def decision_json(decision, reply=None, reason="test_reason", outcome=None) -> str:
    return json.dumps({"decision": decision, "reply": reply, "reason": reason, "outcome": outcome})


def collect(stream) -> list:
    """Drains an async event stream."""

    async def _drain():
        return [event async for event in stream]

    return asyncio.run(_drain())


def run(coro):
    return asyncio.run(coro)


def event_types(events) -> List[str]:
    return [event.type.value for event in events]


# ==============================================================================
# Fixtures
# ==============================================================================

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def session_repo():
    return InMemorySessionRepository()


@pytest.fixture
def conversation_repo():
    return InMemoryConversationRepository()


@pytest.fixture
def orchestrator(llm, sender, notifier, session_repo, conversation_repo):
    return SessionOrchestrator(
        session_repository=session_repo,
        conversation_repository=conversation_repo,
        planner=TurnPlanner(llm),
        evaluator=DecisionEvaluator(llm),
        tool_registry=build_default_registry(),
        sender=sender,
        notifier=notifier,
        max_turns=5,
        budget_cents=50,
    )


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def two_step_template():
    return WorkflowTemplate(
        id="two_step",
        name="Two step",
        goal="Member books a class",
        steps=[
            WorkflowStep(id="A", action="send_message", message="Hi {subject_name}, step A"),
            WorkflowStep(id="B", action="send_message", message="Hi {subject_name}, step B"),
        ],
        timeout_days=5,
    )


@pytest.fixture
def workflow_repo(two_step_template):
    return InMemoryWorkflowRepository([two_step_template])


@pytest.fixture
def run_repo():
    return InMemoryWorkflowRunRepository()


@pytest.fixture
def engine(workflow_repo, run_repo, conversation_repo, llm, sender, notifier, clock):
    return WorkflowRunEngine(
        workflow_repository=workflow_repo,
        run_repository=run_repo,
        conversation_repository=conversation_repo,
        evaluator=DecisionEvaluator(llm),
        executor=StepExecutor(sender, notifier, conversation_repo, llm_provider=llm),
        notifier=notifier,
        clock=clock,
    )
