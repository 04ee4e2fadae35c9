# tests/test_sql_repositories.py
"""
Test the SQL repositories against an in-memory SQLite database.

The same conditional-write rules (leases, status preconditions) the
in-memory repositories follow must hold for the SQL ones.
"""

import time
from datetime import timedelta

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from conftest import T0, run
from outreach_agents.domain.models import WorkflowStep, WorkflowTemplate
from outreach_agents.execution.engine import WorkflowRunEngine
from outreach_agents.execution.evaluator import DecisionEvaluator
from outreach_agents.execution.executor import StepExecutor
from outreach_agents.infrastructure.database.connection import init_db
from outreach_agents.repositories import (
    SqlConversationRepository,
    SqlSessionRepository,
    SqlWorkflowRepository,
    SqlWorkflowRunRepository,
)
from outreach_agents.services.exceptions import NotFoundError, SessionBusyError, ValidationError
from outreach_agents.state.models import (
    AgentSession,
    ConversationEntry,
    ConversationRole,
    RunStatus,
    SessionStatus,
    WorkflowRun,
)


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


def make_template(message="Hi {subject_name}", account_id=None, workflow_id="check_in"):
    return WorkflowTemplate(
        id=workflow_id,
        name="Check in",
        goal="Member replies",
        steps=[WorkflowStep(id="hello", action="send_message", message=message)],
        timeout_days=3,
        account_id=account_id,
    )


def make_run(**overrides):
    fields = dict(
        workflow_id="check_in",
        account_id="gym_1",
        subject_id="member_42",
        subject_contact="sam@example.com",
        subject_name="Sam",
        goal="Member replies",
        started_at=T0,
        deadline_at=T0 + timedelta(days=3),
    )
    fields.update(overrides)
    return WorkflowRun(**fields)


class TestSqlSessionRepository:
    """Tests for session storage and leases."""

    def test_round_trip(self, db_engine):
        repo = SqlSessionRepository(db_engine)
        session = AgentSession(account_id="gym_1", goal="Win back Sam", credentials={"token": "x"})
        repo.create(session, lease_token="t1", lease_seconds=60)

        loaded = repo.get(session.id)
        assert loaded.goal == "Win back Sam"
        assert loaded.credentials == {"token": "x"}
        assert repo.get("missing") is None

    def test_lease_is_exclusive_until_released_or_expired(self, db_engine):
        repo = SqlSessionRepository(db_engine)
        session = AgentSession(account_id="gym_1", goal="g")
        repo.create(session, lease_token="t1", lease_seconds=60)

        assert repo.acquire_lease(session.id, "t2", 60) is False
        assert repo.acquire_lease(session.id, "t1", 60) is True
        assert repo.acquire_lease(session.id, "t2", 60, now=time.time() + 120) is True

        repo.release_lease(session.id, "t1")  # not the holder; no effect
        assert repo.acquire_lease(session.id, "t3", 60) is False
        repo.release_lease(session.id, "t2")
        assert repo.acquire_lease(session.id, "t3", 60) is True

    def test_save_requires_the_lease(self, db_engine):
        repo = SqlSessionRepository(db_engine)
        session = AgentSession(account_id="gym_1", goal="g")
        repo.create(session, lease_token="t1", lease_seconds=60)

        session.turn_count = 1
        repo.save(session, "t1")
        assert repo.get(session.id).turn_count == 1

        repo.release_lease(session.id, "t1")
        repo.acquire_lease(session.id, "t2", 60)
        session.turn_count = 2
        with pytest.raises(SessionBusyError):
            repo.save(session, "t1")
        assert repo.get(session.id).turn_count == 1

    def test_cancel_request(self, db_engine):
        repo = SqlSessionRepository(db_engine)
        session = AgentSession(account_id="gym_1", goal="g")
        repo.create(session, lease_token="t1", lease_seconds=60)

        assert repo.is_cancel_requested(session.id) is False
        assert repo.request_cancel(session.id) is True
        assert repo.is_cancel_requested(session.id) is True

        session.status = SessionStatus.COMPLETED
        repo.save(session, "t1")
        assert repo.request_cancel(session.id) is False

    def test_unknown_session(self, db_engine):
        repo = SqlSessionRepository(db_engine)
        with pytest.raises(NotFoundError):
            repo.acquire_lease("missing", "t1", 60)
        with pytest.raises(NotFoundError):
            repo.request_cancel("missing")


class TestSqlWorkflowRunRepository:
    """Tests for status-precondition writes."""

    def test_update_applies_only_from_expected_status(self, db_engine):
        repo = SqlWorkflowRunRepository(db_engine)
        wf_run = make_run()
        repo.create(wf_run)

        wf_run.status = RunStatus.TIMED_OUT
        assert repo.update(wf_run, expected_status=RunStatus.ACTIVE) is True

        wf_run.status = RunStatus.ACHIEVED
        assert repo.update(wf_run, expected_status=RunStatus.ACTIVE) is False
        assert repo.get(wf_run.id).status == RunStatus.TIMED_OUT

    def test_list_filters_and_orders_by_start(self, db_engine):
        repo = SqlWorkflowRunRepository(db_engine)
        later = make_run(subject_id="member_7", started_at=T0 + timedelta(hours=1))
        earlier = make_run()
        other_account = make_run(account_id="gym_2")
        for wf_run in (later, earlier, other_account):
            repo.create(wf_run)

        assert [r.id for r in repo.list(account_id="gym_1")] == [earlier.id, later.id]

        earlier.status = RunStatus.CANCELLED
        repo.update(earlier, expected_status=RunStatus.ACTIVE)
        assert [r.id for r in repo.list(account_id="gym_1", status=RunStatus.ACTIVE)] == [later.id]

    def test_lease(self, db_engine):
        repo = SqlWorkflowRunRepository(db_engine)
        wf_run = make_run()
        repo.create(wf_run, lease_token="t1", lease_seconds=60)

        assert repo.acquire_lease(wf_run.id, "tick", 60) is False
        repo.release_lease(wf_run.id, "t1")
        assert repo.acquire_lease(wf_run.id, "tick", 60) is True


class TestSqlWorkflowRepository:
    """Tests for template versioning."""

    def test_versions(self, db_engine):
        repo = SqlWorkflowRepository(db_engine)
        assert repo.add(make_template()).version == 1
        assert repo.add_version(make_template(message="Hey {subject_name}")).version == 2

        assert repo.get_workflow("check_in").steps[0].message == "Hey {subject_name}"
        assert repo.get_workflow("check_in", 1).steps[0].message == "Hi {subject_name}"
        with pytest.raises(NotFoundError):
            repo.get_workflow("check_in", 3)

    def test_duplicate_id_is_rejected(self, db_engine):
        repo = SqlWorkflowRepository(db_engine)
        repo.add(make_template())
        with pytest.raises(ValidationError):
            repo.add(make_template())

    def test_invalid_template_is_rejected(self, db_engine):
        repo = SqlWorkflowRepository(db_engine)
        template = make_template()
        template.steps = [WorkflowStep(id="hello", action="send_message")]
        with pytest.raises(ValidationError):
            repo.add(template)

    def test_list_returns_latest_visible_versions(self, db_engine):
        repo = SqlWorkflowRepository(db_engine)
        repo.add(make_template())
        repo.add_version(make_template(message="v2"))
        repo.add(make_template(workflow_id="private", account_id="gym_2"))

        visible = repo.list_workflows("gym_1")
        assert [(t.id, t.version) for t in visible] == [("check_in", 2)]
        assert len(repo.list_workflows()) == 2


class TestSqlConversationRepository:
    def test_thread_order_follows_insertion(self, db_engine):
        repo = SqlConversationRepository(db_engine)
        first = repo.append(
            ConversationEntry(owner_id="r1", role=ConversationRole.AGENT, content="Hi", created_at=T0)
        )
        # Dated before the previous entry; stored at the previous timestamp.
        second = repo.append(
            ConversationEntry(
                owner_id="r1", role=ConversationRole.SUBJECT, content="Hello", created_at=T0 - timedelta(minutes=5)
            )
        )
        repo.append(ConversationEntry(owner_id="r2", role=ConversationRole.AGENT, content="Other thread"))

        thread = repo.list_for_owner("r1")
        assert [e.content for e in thread] == ["Hi", "Hello"]
        assert second.sequence > first.sequence
        assert second.created_at == first.created_at


class TestEngineOnSql:
    def test_run_lifecycle_on_sql_storage(self, db_engine, llm, sender, notifier, clock):
        workflows = SqlWorkflowRepository(db_engine)
        runs = SqlWorkflowRunRepository(db_engine)
        conversations = SqlConversationRepository(db_engine)
        workflows.add(make_template())
        engine = WorkflowRunEngine(
            workflow_repository=workflows,
            run_repository=runs,
            conversation_repository=conversations,
            evaluator=DecisionEvaluator(llm),
            executor=StepExecutor(sender, notifier, conversations),
            notifier=notifier,
            clock=clock,
        )

        wf_run = run(
            engine.start_workflow_run("check_in", "gym_1", "member_42", "sam@example.com", "Sam")
        )
        assert sender.sent[0].body == "Hi Sam"
        assert [e.role for e in conversations.list_for_owner(wf_run.id)] == [ConversationRole.AGENT]

        report = run(engine.tick_workflows(now=T0 + timedelta(days=4)))
        assert report.timed_out == [wf_run.id]
        assert runs.get(wf_run.id).status == RunStatus.TIMED_OUT
        assert len(notifier.notifications) == 1
        assert [e.type.value for e in runs.get(wf_run.id).events] == ["step_started", "outreach_sent", "run_finished"]
