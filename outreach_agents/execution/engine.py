"""
Engine - Workflow Run Orchestration Layer

The WorkflowRunEngine is the deterministic state machine that moves a
subject's WorkflowRun through the steps of its template, delegating each
step's side effect to the StepExecutor and the interpretation of replies to
the DecisionEvaluator.
-----------------------------------------------

A run is advanced only by explicit signals:
1. startWorkflowRun performs step 0.
2. An inbound reply is classified: close -> achieved, reply -> answer and
   stay on the step, escalate -> flag for a human, wait -> record only.
3. advanceRun (an owner marking a step done) moves to a given step index.
Steps whose expected signal is "none" advance as soon as their action ran.

Timeouts are detected only by the periodic tick sweep. Every transition is a
status-precondition write ("update only if still active"), and explicit
signals hold the run's lease while they work, which the sweep respects:
a reply in flight always wins over a concurrent timeout.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..domain.models import WorkflowStep, WorkflowTemplate
from ..repositories.conversation import ConversationRepository
from ..repositories.run import WorkflowRunRepository
from ..repositories.workflow import WorkflowRepository
from ..schemas.decisions import Decision
from ..services.exceptions import (
    EvaluationError,
    NotFoundError,
    RunBusyError,
    StaleStateError,
    TerminalStateError,
    ValidationError,
)
from ..services.notifications import OwnerNotifier, notify_best_effort
from ..state.models import (
    ConversationEntry,
    ConversationRole,
    RunEvent,
    RunEventType,
    RunStatus,
    WorkflowRun,
    new_id,
    utc_now,
)
from .evaluator import DecisionEvaluator
from .executor import StepExecutor

logger = logging.getLogger(__name__)

REPLY_DECISIONS = (Decision.REPLY, Decision.CLOSE, Decision.ESCALATE, Decision.WAIT)


@dataclass
class ReplyResult:
    run_id: str
    status: RunStatus
    decision: Optional[Decision] = None
    reason: Optional[str] = None
    replied: bool = False
    escalated: bool = False


@dataclass
class TickReport:
    timed_out: List[str] = field(default_factory=list)
    # Past deadline, but an explicit signal held the run's lease.
    skipped_busy: List[str] = field(default_factory=list)


class WorkflowRunEngine:
    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        run_repository: WorkflowRunRepository,
        conversation_repository: ConversationRepository,
        evaluator: DecisionEvaluator,
        executor: StepExecutor,
        notifier: OwnerNotifier,
        lease_seconds: float = 120.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.workflows = workflow_repository
        self.runs = run_repository
        self.conversations = conversation_repository
        self.evaluator = evaluator
        self.executor = executor
        self.notifier = notifier
        self.lease_seconds = lease_seconds
        self.clock = clock

    # ==========================================================================
    # Templates
    # ==========================================================================

    def create_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        stored = self.workflows.add(template)
        logger.info(f"Template {stored.id} created ({stored.step_count} steps)")
        return stored

    def update_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        """Stores an edit as a new version. Runs keep the version they started on."""
        stored = self.workflows.add_version(template)
        logger.info(f"Template {stored.id} updated to version {stored.version}")
        return stored

    def get_template(self, workflow_id: str, version: Optional[int] = None) -> WorkflowTemplate:
        return self.workflows.get_workflow(workflow_id, version)

    def list_templates(self, account_id: Optional[str] = None) -> List[WorkflowTemplate]:
        return self.workflows.list_workflows(account_id)

    # ==========================================================================
    # Runs
    # ==========================================================================

    def get_run(self, run_id: str) -> WorkflowRun:
        run = self.runs.get(run_id)
        if run is None:
            raise NotFoundError(f"Workflow run {run_id} not found")
        return run

    def list_runs(self, account_id: Optional[str] = None, status: Optional[RunStatus] = None) -> List[WorkflowRun]:
        return self.runs.list(account_id=account_id, status=status)

    async def start_workflow_run(
        self,
        workflow_id: str,
        account_id: str,
        subject_id: str,
        subject_contact: str,
        subject_name: str,
        initial_context: Optional[Dict[str, Any]] = None,
    ) -> WorkflowRun:
        """
        Creates an active run at step 0 and performs the first step.

        Raises:
            NotFoundError: unknown template, or one owned by another account.
            ValidationError: missing subject fields or a disabled template.
        """
        for name, value in (
            ("account_id", account_id),
            ("subject_id", subject_id),
            ("subject_contact", subject_contact),
        ):
            if not value or not str(value).strip():
                raise ValidationError(f"{name} must not be empty")

        template = self.workflows.get_workflow(workflow_id)
        if template.account_id not in (None, account_id):
            raise NotFoundError(f"Workflow '{workflow_id}' not found.")
        if not template.enabled:
            raise ValidationError(f"Workflow '{workflow_id}' is disabled")

        now = self.clock()
        run = WorkflowRun(
            workflow_id=template.id,
            workflow_version=template.version,
            account_id=account_id,
            subject_id=subject_id,
            subject_contact=subject_contact,
            subject_name=subject_name or subject_contact,
            goal=template.goal,
            context=dict(initial_context or {}),
            started_at=now,
            updated_at=now,
            deadline_at=now + timedelta(days=template.timeout_days),
        )

        token = new_id()
        self.runs.create(run, lease_token=token, lease_seconds=self.lease_seconds)
        logger.info(f"Run {run.id} started on {template.id} v{template.version} for {run.subject_id}")
        try:
            await self._enter_steps(run, template, 0)
            self._commit(run)
        finally:
            self.runs.release_lease(run.id, token)
        return run

    async def advance_run(
        self,
        run: WorkflowRun,
        next_step_index: int,
        template: Optional[WorkflowTemplate] = None,
    ) -> WorkflowRun:
        """
        Moves the run to next_step_index and performs that step's action.
        An index past the last step achieves the run. Clears any escalation,
        since an explicit advance is a human intervening.

        Raises:
            RunBusyError: another signal is being applied to this run.
            TerminalStateError: the run has already ended.
            ValidationError: next_step_index would move the run backwards.
        """
        token = self._acquire(run.id)
        try:
            # Re-validate against the stored state, not the caller's copy.
            current = self.get_run(run.id)
            self._require_active(current)
            if next_step_index < current.current_step_index:
                raise ValidationError(
                    f"Run {current.id} is on step {current.current_step_index}; cannot move back to {next_step_index}"
                )
            template = template or self.workflows.get_workflow(current.workflow_id, current.workflow_version)

            current.escalated = False
            current.escalation_reason = None
            await self._enter_steps(current, template, next_step_index)
            self._commit(current)
            return current
        finally:
            self.runs.release_lease(run.id, token)

    async def advance(self, run_id: str, next_step_index: int) -> WorkflowRun:
        return await self.advance_run(self.get_run(run_id), next_step_index)

    def cancel_run(self, run_id: str) -> WorkflowRun:
        token = self._acquire(run_id)
        try:
            run = self.get_run(run_id)
            self._require_active(run)
            self._finish(run, RunStatus.CANCELLED, "cancelled")
            self._commit(run)
            return run
        finally:
            self.runs.release_lease(run_id, token)

    # ==========================================================================
    # Signals
    # ==========================================================================

    async def handle_reply(
        self,
        run_id: str,
        text: str,
        contact: Optional[str] = None,
        name: Optional[str] = None,
    ) -> ReplyResult:
        """
        Applies an inbound reply to the run's current step.

        Raises:
            ValidationError: empty reply text.
            RunBusyError: another signal holds the run.
            TerminalStateError: the run has already ended.
            ProviderError: the language model could not be reached.
        """
        if not text or not text.strip():
            raise ValidationError("reply text must not be empty")

        token = self._acquire(run_id)
        try:
            run = self.get_run(run_id)
            self._require_active(run)
            if contact and contact != run.subject_contact:
                logger.warning(f"Run {run.id} got a reply from {contact}, expected {run.subject_contact}")

            if run.escalated:
                # A human owns the conversation now; record, never automate.
                self._record_reply(run, text)
                self._commit(run)
                logger.info(f"Run {run.id} is escalated; reply recorded only")
                return ReplyResult(run_id=run.id, status=run.status, escalated=True, reason="escalated")

            template = self.workflows.get_workflow(run.workflow_id, run.workflow_version)
            history = self.conversations.list_for_owner(run.id)
            try:
                evaluation = await self.evaluator.evaluate(
                    run.goal,
                    history,
                    text,
                    allowed_decisions=REPLY_DECISIONS,
                    subject_name=name or run.subject_name,
                )
                decision = evaluation.result.decision
                reason = evaluation.result.reason
                evaluation_data = evaluation.result.model_dump(mode="json")
            except EvaluationError as e:
                logger.warning(f"Run {run.id} reply could not be classified; escalating: {e}")
                decision, reason, evaluation_data = Decision.ESCALATE, "evaluation_failed", None

            self._record_reply(run, text, evaluation_data)
            self._append_exchange(run, text, decision, reason)
            self._record_event(run, RunEventType.REPLY_RECEIVED, decision=decision.value, reason=reason)
            result = ReplyResult(run_id=run.id, status=run.status, decision=decision, reason=reason)

            if decision == Decision.CLOSE:
                run.context["outcome"] = evaluation.result.outcome or reason
                await self._enter_steps(run, template, template.step_count)
            elif decision == Decision.REPLY:
                try:
                    await self.executor.send_reply(run, template, evaluation.result.reply)
                    result.replied = True
                    self._record_event(run, RunEventType.REPLY_SENT)
                except Exception as e:
                    logger.exception(f"Run {run.id} failed to send reply")
                    await self._escalate(run, f"reply_failed: {e}")
            elif decision == Decision.ESCALATE:
                await self._escalate(run, reason)

            self._commit(run)
            result.status = run.status
            result.escalated = run.escalated
            logger.info(f"Run {run.id} reply classified '{decision.value}' ({reason})")
            return result
        finally:
            self.runs.release_lease(run_id, token)

    async def tick_workflows(self, now: Optional[datetime] = None) -> TickReport:
        """
        Times out every active run whose deadline has passed. Idempotent:
        a run only times out through a successful active -> timed_out write,
        and only that write triggers the owner notification.
        """
        now = now or self.clock()
        report = TickReport()

        for run in self.runs.list(status=RunStatus.ACTIVE):
            if run.deadline_at > now:
                continue

            token = new_id()
            if not self.runs.acquire_lease(run.id, token, self.lease_seconds):
                logger.info(f"Run {run.id} is past deadline but busy; leaving it to the next tick")
                report.skipped_busy.append(run.id)
                continue

            try:
                current = self.runs.get(run.id)
                if current is None or current.status != RunStatus.ACTIVE or current.deadline_at > now:
                    continue
                self._finish(current, RunStatus.TIMED_OUT, "deadline_passed", now)
                if not self.runs.update(current, expected_status=RunStatus.ACTIVE):
                    continue
            finally:
                self.runs.release_lease(run.id, token)

            report.timed_out.append(current.id)
            await notify_best_effort(
                self.notifier,
                current.account_id,
                "Outreach timed out",
                f"{current.subject_name} did not reach '{current.goal}' before the deadline.",
            )

        if report.timed_out or report.skipped_busy:
            logger.info(f"Tick: {len(report.timed_out)} timed out, {len(report.skipped_busy)} busy")
        return report

    # ==========================================================================
    # State Mutation
    # ==========================================================================

    async def _enter_steps(self, run: WorkflowRun, template: WorkflowTemplate, index: int):
        """Performs step `index`, then keeps going while steps expect no signal."""
        while True:
            if index >= template.step_count:
                self._finish(run, RunStatus.ACHIEVED, run.context.get("outcome") or "completed")
                return

            run.current_step_index = index
            step = template.steps[index]
            self._record_event(run, RunEventType.STEP_STARTED, step, index=index, action=step.action)
            try:
                await self.executor.perform(run, template, step)
            except Exception as e:
                logger.exception(f"Run {run.id} step {step.id} failed")
                self._record_event(run, RunEventType.STEP_FAILED, step, error=str(e))
                await self._escalate(run, f"step_failed: {step.id}: {e}")
                return
            if step.action == "send_message":
                self._record_event(
                    run, RunEventType.OUTREACH_SENT, step, waiting_for_reply=step.expected_signal == "reply"
                )

            if step.expected_signal != "none":
                return
            index += 1

    async def _escalate(self, run: WorkflowRun, reason: str):
        run.escalated = True
        run.escalation_reason = reason
        self._record_event(run, RunEventType.ESCALATED, reason=reason)
        logger.info(f"Run {run.id} escalated: {reason}")
        await notify_best_effort(
            self.notifier,
            run.account_id,
            "Outreach needs your attention",
            f"{run.subject_name}: {reason}",
        )

    def _finish(self, run: WorkflowRun, status: RunStatus, reason: str, now: Optional[datetime] = None):
        now = now or self.clock()
        run.status = status
        run.finished_at = now
        run.context["finish_reason"] = reason
        self._record_event(run, RunEventType.RUN_FINISHED, status=status.value, reason=reason, at=now)
        logger.info(f"Run {run.id} {status.value} ({reason})")

    def _commit(self, run: WorkflowRun):
        """Writes the run, requiring that nobody ended it underneath us."""
        if not self.runs.update(run, expected_status=RunStatus.ACTIVE):
            raise StaleStateError(f"Run {run.id} changed while it was being updated")

    def _record_reply(self, run: WorkflowRun, text: str, evaluation: Optional[Dict[str, Any]] = None):
        self.conversations.append(
            ConversationEntry(
                owner_id=run.id,
                role=ConversationRole.SUBJECT,
                content=text,
                evaluation=evaluation,
            )
        )

    def _append_exchange(self, run: WorkflowRun, text: str, decision: Decision, reason: str):
        run.context.setdefault("exchanges", []).append(
            {
                "at": self.clock().isoformat(),
                "step_index": run.current_step_index,
                "reply": text,
                "decision": decision.value,
                "reason": reason,
            }
        )

    def _record_event(
        self,
        run: WorkflowRun,
        event_type: RunEventType,
        step: Optional[WorkflowStep] = None,
        at: Optional[datetime] = None,
        **data,
    ):
        run.events.append(
            RunEvent(type=event_type, at=at or self.clock(), step_id=step.id if step else None, data=data)
        )

    def _acquire(self, run_id: str) -> str:
        token = new_id()
        if not self.runs.acquire_lease(run_id, token, self.lease_seconds):
            raise RunBusyError(f"Workflow run {run_id} is busy")
        return token

    @staticmethod
    def _require_active(run: WorkflowRun):
        if run.is_terminal:
            raise TerminalStateError(f"Workflow run {run.id} is already {run.status.value}")
