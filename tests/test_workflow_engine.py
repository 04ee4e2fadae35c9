# tests/test_workflow_engine.py
"""
Test the Workflow Run Engine.

Runs are driven with a fake clock: the engine stamps times from the clock
and the tick sweep is called with explicit "now" values.
"""

import json
from datetime import timedelta

import pytest

from conftest import T0, decision_json, run
from outreach_agents.domain.models import WorkflowStep, WorkflowTemplate
from outreach_agents.services.exceptions import (
    NotFoundError,
    RunBusyError,
    TerminalStateError,
    ValidationError,
)
from outreach_agents.state.models import ConversationRole, RunStatus


def start_run(engine, workflow_id="two_step", account_id="gym_1", **kwargs):
    return run(
        engine.start_workflow_run(
            workflow_id=workflow_id,
            account_id=account_id,
            subject_id=kwargs.pop("subject_id", "member_42"),
            subject_contact=kwargs.pop("subject_contact", "sam@example.com"),
            subject_name=kwargs.pop("subject_name", "Sam"),
            **kwargs,
        )
    )


class TestStartWorkflowRun:
    """Tests for creating runs."""

    def test_start_performs_first_step(self, engine, sender):
        wf_run = start_run(engine)

        assert wf_run.status == RunStatus.ACTIVE
        assert wf_run.current_step_index == 0
        assert wf_run.started_at == T0
        assert wf_run.deadline_at == T0 + timedelta(days=5)
        assert [m.body for m in sender.sent] == ["Hi Sam, step A"]
        assert sender.sent[0].reply_token == f"wf_{wf_run.id}"

    def test_missing_subject_contact(self, engine):
        with pytest.raises(ValidationError):
            start_run(engine, subject_contact="  ")

    def test_unknown_template(self, engine):
        with pytest.raises(NotFoundError):
            start_run(engine, workflow_id="nope")

    def test_other_accounts_template_is_not_visible(self, engine, two_step_template):
        engine.create_template(
            WorkflowTemplate(
                id="private", name="Private", goal="g", steps=two_step_template.steps, account_id="gym_2"
            )
        )
        with pytest.raises(NotFoundError):
            start_run(engine, workflow_id="private", account_id="gym_1")

    def test_disabled_template(self, engine, two_step_template):
        engine.create_template(
            WorkflowTemplate(id="off", name="Off", goal="g", steps=two_step_template.steps, enabled=False)
        )
        with pytest.raises(ValidationError):
            start_run(engine, workflow_id="off")

    def test_none_signal_steps_advance_immediately(self, engine, sender, notifier):
        engine.create_template(
            WorkflowTemplate(
                id="alert_then_ask",
                name="Alert then ask",
                goal="Member replies",
                steps=[
                    WorkflowStep(id="alert", action="notify_owner", expected_signal="none",
                                 message="{subject_name} entered the flow"),
                    WorkflowStep(id="ask", action="send_message", message="How are you, {subject_name}?"),
                ],
            )
        )
        wf_run = start_run(engine, workflow_id="alert_then_ask")

        assert wf_run.current_step_index == 1
        assert notifier.notifications[0][2] == "Sam entered the flow"
        assert sender.sent[0].body == "How are you, Sam?"

    def test_trailing_none_step_achieves_run(self, engine):
        engine.create_template(
            WorkflowTemplate(
                id="fire_and_forget",
                name="Fire and forget",
                goal="Owner knows",
                steps=[WorkflowStep(id="alert", action="notify_owner", expected_signal="none")],
            )
        )
        wf_run = start_run(engine, workflow_id="fire_and_forget")
        assert wf_run.status == RunStatus.ACHIEVED

    def test_create_task_step_records_task(self, engine, notifier):
        engine.create_template(
            WorkflowTemplate(
                id="call",
                name="Call",
                goal="Owner calls the member",
                steps=[WorkflowStep(id="call", action="create_task", expected_signal="manual",
                                    label="Call Sam")],
            )
        )
        wf_run = start_run(engine, workflow_id="call")

        assert wf_run.context["tasks"][0]["label"] == "Call Sam"
        assert notifier.notifications[0][1] == "New task: Call Sam"

    def test_drafted_message_uses_model_output(self, engine, llm, sender):
        engine.create_template(
            WorkflowTemplate(
                id="drafted",
                name="Drafted",
                goal="Member comes back",
                steps=[WorkflowStep(id="hello", action="send_message", prompt="Warm check-in for {subject_name}")],
            )
        )
        llm.add(json.dumps({"subject": "We miss you", "body": "Hi Sam, hope all is well!"}))
        start_run(engine, workflow_id="drafted")

        assert sender.sent[0].subject == "We miss you"
        assert "Warm check-in for Sam" in llm.calls[0][0]["content"]

    def test_send_failure_escalates_instead_of_failing(self, engine, sender, notifier):
        sender.fail_with = RuntimeError("smtp down")
        wf_run = start_run(engine)

        assert wf_run.status == RunStatus.ACTIVE
        assert wf_run.escalated is True
        assert wf_run.escalation_reason.startswith("step_failed: A")
        assert len(notifier.notifications) == 1


class TestHandleReply:
    """Tests for inbound reply signals."""

    def test_reply_close_and_late_tick(self, engine, llm, clock, sender):
        wf_run = start_run(engine)

        clock.advance(days=1)
        llm.add(decision_json("reply", reply="Monday works great!", reason="asked_for_time"))
        result = run(engine.handle_reply(wf_run.id, "Maybe next week?"))
        assert result.replied is True
        stored = engine.get_run(wf_run.id)
        assert stored.current_step_index == 0
        assert stored.status == RunStatus.ACTIVE
        assert len(stored.context["exchanges"]) == 1
        assert sender.sent[-1].body == "Monday works great!"

        clock.advance(days=1)
        llm.add(decision_json("close", reason="member_confirmed_visit", outcome="booked"))
        result = run(engine.handle_reply(wf_run.id, "Booked for Monday"))
        assert result.status == RunStatus.ACHIEVED
        stored = engine.get_run(wf_run.id)
        assert stored.finished_at == T0 + timedelta(days=2)
        assert stored.context["finish_reason"] == "booked"

        report = run(engine.tick_workflows(now=T0 + timedelta(days=6)))
        assert report.timed_out == []
        assert engine.get_run(wf_run.id).status == RunStatus.ACHIEVED

    def test_wait_records_only(self, engine, llm, sender, conversation_repo):
        wf_run = start_run(engine)
        llm.add(decision_json("wait", reason="out_of_office"))
        result = run(engine.handle_reply(wf_run.id, "I'm away until Friday"))

        assert result.replied is False
        assert len(sender.sent) == 1
        entries = conversation_repo.list_for_owner(wf_run.id)
        assert entries[-1].role == ConversationRole.SUBJECT
        assert entries[-1].evaluation["decision"] == "wait"

    def test_escalate_flags_run(self, engine, llm, notifier):
        wf_run = start_run(engine)
        llm.add(decision_json("escalate", reason="billing_dispute"))
        result = run(engine.handle_reply(wf_run.id, "Why was I charged twice?"))

        assert result.escalated is True
        stored = engine.get_run(wf_run.id)
        assert stored.escalated is True
        assert stored.escalation_reason == "billing_dispute"
        assert stored.status == RunStatus.ACTIVE
        assert len(notifier.notifications) == 1

    def test_escalated_run_records_replies_without_evaluating(self, engine, llm, conversation_repo):
        wf_run = start_run(engine)
        llm.add(decision_json("escalate", reason="billing_dispute"))
        run(engine.handle_reply(wf_run.id, "Why was I charged twice?"))
        calls = len(llm.calls)

        result = run(engine.handle_reply(wf_run.id, "Hello??"))

        assert result.reason == "escalated"
        assert len(llm.calls) == calls
        assert conversation_repo.list_for_owner(wf_run.id)[-1].content == "Hello??"

    def test_unclassifiable_reply_escalates(self, engine, llm):
        wf_run = start_run(engine)
        llm.add("not json", "still not json")
        result = run(engine.handle_reply(wf_run.id, "asdf"))

        assert result.reason == "evaluation_failed"
        assert engine.get_run(wf_run.id).escalated is True

    def test_failed_reply_send_escalates(self, engine, llm, sender):
        wf_run = start_run(engine)
        sender.fail_with = RuntimeError("smtp down")
        llm.add(decision_json("reply", reply="See you soon!"))
        result = run(engine.handle_reply(wf_run.id, "When are you open?"))

        assert result.replied is False
        assert engine.get_run(wf_run.id).escalation_reason.startswith("reply_failed")

    def test_busy_run(self, engine, run_repo):
        wf_run = start_run(engine)
        run_repo.acquire_lease(wf_run.id, "someone-else", 60)
        with pytest.raises(RunBusyError):
            run(engine.handle_reply(wf_run.id, "Hi"))

    def test_empty_reply(self, engine):
        wf_run = start_run(engine)
        with pytest.raises(ValidationError):
            run(engine.handle_reply(wf_run.id, "  "))


class TestAdvanceRun:
    """Tests for explicit advancement."""

    def test_advance_to_next_step(self, engine, sender):
        wf_run = start_run(engine)
        advanced = run(engine.advance_run(wf_run, 1))

        assert advanced.current_step_index == 1
        assert sender.sent[-1].body == "Hi Sam, step B"

    def test_advance_past_last_step_achieves(self, engine):
        wf_run = start_run(engine)
        advanced = run(engine.advance(wf_run.id, 2))
        assert advanced.status == RunStatus.ACHIEVED

    def test_cannot_move_backwards(self, engine):
        wf_run = start_run(engine)
        run(engine.advance(wf_run.id, 1))
        with pytest.raises(ValidationError):
            run(engine.advance(wf_run.id, 0))
        assert engine.get_run(wf_run.id).current_step_index == 1

    def test_advance_uses_stored_state_not_callers_copy(self, engine):
        wf_run = start_run(engine)
        run(engine.advance(wf_run.id, 1))
        # wf_run is stale: it still says step 0
        with pytest.raises(ValidationError):
            run(engine.advance_run(wf_run, 0))

    def test_advance_clears_escalation(self, engine, llm):
        wf_run = start_run(engine)
        llm.add(decision_json("escalate", reason="angry"))
        run(engine.handle_reply(wf_run.id, "Stop emailing me"))

        advanced = run(engine.advance(wf_run.id, 1))
        assert advanced.escalated is False
        assert advanced.escalation_reason is None

    def test_terminal_run_cannot_advance(self, engine):
        wf_run = start_run(engine)
        engine.cancel_run(wf_run.id)
        with pytest.raises(TerminalStateError):
            run(engine.advance(wf_run.id, 1))

    def test_runs_keep_their_template_version(self, engine, sender, two_step_template):
        wf_run = start_run(engine)
        engine.update_template(
            WorkflowTemplate(
                id="two_step",
                name="Two step",
                goal="Member books a class",
                steps=[
                    WorkflowStep(id="A", action="send_message", message="New A"),
                    WorkflowStep(id="B", action="send_message", message="New B"),
                ],
            )
        )
        assert engine.get_template("two_step").version == 2

        run(engine.advance(wf_run.id, 1))
        assert sender.sent[-1].body == "Hi Sam, step B"

        newer = start_run(engine, subject_id="member_7", subject_name="Alex")
        assert newer.workflow_version == 2
        assert sender.sent[-1].body == "New A"


class TestTick:
    """Tests for the timeout sweep."""

    def test_tick_before_deadline_does_nothing(self, engine):
        start_run(engine)
        report = run(engine.tick_workflows(now=T0 + timedelta(days=4)))
        assert report.timed_out == []

    def test_tick_times_out_once(self, engine, notifier):
        wf_run = start_run(engine)
        later = T0 + timedelta(days=6)

        first = run(engine.tick_workflows(now=later))
        second = run(engine.tick_workflows(now=later + timedelta(hours=1)))

        assert first.timed_out == [wf_run.id]
        assert second.timed_out == []
        assert len(notifier.notifications) == 1
        stored = engine.get_run(wf_run.id)
        assert stored.status == RunStatus.TIMED_OUT
        assert stored.finished_at == later

    def test_timed_out_run_rejects_signals(self, engine, llm):
        wf_run = start_run(engine)
        run(engine.tick_workflows(now=T0 + timedelta(days=6)))

        with pytest.raises(TerminalStateError):
            run(engine.handle_reply(wf_run.id, "Sorry, I'm back!"))
        with pytest.raises(TerminalStateError):
            run(engine.advance(wf_run.id, 1))
        assert llm.calls == []

    def test_escalated_run_still_times_out(self, engine, llm, notifier):
        wf_run = start_run(engine)
        llm.add(decision_json("escalate", reason="injury"))
        run(engine.handle_reply(wf_run.id, "I hurt my knee"))

        report = run(engine.tick_workflows(now=T0 + timedelta(days=6)))
        assert report.timed_out == [wf_run.id]
        assert len(notifier.notifications) == 2

    def test_busy_run_is_left_for_next_tick(self, engine, run_repo):
        wf_run = start_run(engine)
        run_repo.acquire_lease(wf_run.id, "reply-in-flight", 60)

        report = run(engine.tick_workflows(now=T0 + timedelta(days=6)))
        assert report.skipped_busy == [wf_run.id]
        assert engine.get_run(wf_run.id).status == RunStatus.ACTIVE

        run_repo.release_lease(wf_run.id, "reply-in-flight")
        report = run(engine.tick_workflows(now=T0 + timedelta(days=6)))
        assert report.timed_out == [wf_run.id]

    def test_cancelled_run_is_not_timed_out(self, engine):
        wf_run = start_run(engine)
        cancelled = engine.cancel_run(wf_run.id)
        assert cancelled.status == RunStatus.CANCELLED

        report = run(engine.tick_workflows(now=T0 + timedelta(days=6)))
        assert report.timed_out == []
        with pytest.raises(TerminalStateError):
            engine.cancel_run(wf_run.id)


class TestAuditTrail:
    """Tests for the run's append-only event record."""

    def test_lifecycle_is_recorded_in_order(self, engine, llm, clock):
        wf_run = start_run(engine)
        assert [e.type.value for e in wf_run.events] == ["step_started", "outreach_sent"]
        assert wf_run.events[1].step_id == "A"
        assert wf_run.events[1].data == {"waiting_for_reply": True}

        clock.advance(days=1)
        llm.add(decision_json("close", reason="member_confirmed_visit", outcome="booked"))
        run(engine.handle_reply(wf_run.id, "Booked for Monday"))

        stored = engine.get_run(wf_run.id)
        assert [e.type.value for e in stored.events][2:] == ["reply_received", "run_finished"]
        assert stored.events[-1].data == {"status": "achieved", "reason": "booked"}
        assert stored.events[-1].at == T0 + timedelta(days=1)

    def test_step_failure_is_recorded(self, engine, sender):
        sender.fail_with = RuntimeError("smtp down")
        wf_run = start_run(engine)

        types = [e.type.value for e in wf_run.events]
        assert types == ["step_started", "step_failed", "escalated"]
        assert wf_run.events[1].data["error"] == "smtp down"

    def test_timeout_is_recorded_and_persisted(self, engine):
        wf_run = start_run(engine)
        later = T0 + timedelta(days=6)
        run(engine.tick_workflows(now=later))

        finished = engine.get_run(wf_run.id).events[-1]
        assert finished.type.value == "run_finished"
        assert finished.data["status"] == "timed_out"
        assert finished.at == later


class TestQueries:
    def test_list_runs_filters_by_status(self, engine):
        first = start_run(engine)
        second = start_run(engine, subject_id="member_7")
        engine.cancel_run(first.id)

        active = engine.list_runs(account_id="gym_1", status=RunStatus.ACTIVE)
        assert [r.id for r in active] == [second.id]

    def test_get_run_unknown(self, engine):
        with pytest.raises(NotFoundError):
            engine.get_run("missing")
