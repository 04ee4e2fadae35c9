"""
Executor - Workflow Step Execution Layer

This module defines the StepExecutor, a stateless class that performs the
side effect of a workflow step (send a message, notify the owner, hand the
owner a task) and drafts outreach text with the LLM when a step carries
drafting instructions instead of a literal message.

The executor raises on failure; the WorkflowRunEngine decides what a failed
step means for the run.
"""

import logging
from typing import Optional

from ..domain.models import WorkflowStep, WorkflowTemplate
from ..llm.decoding import request_structured
from ..llm.interface import LLMProvider
from ..repositories.conversation import ConversationRepository
from ..schemas.decisions import OutreachDraft
from ..services.exceptions import ValidationError
from ..services.messaging import MessageSender, OutboundMessage, workflow_reply_token
from ..services.notifications import OwnerNotifier, notify_best_effort
from ..state.models import ConversationEntry, ConversationRole, WorkflowRun, utc_now
from .prompts import Template, render

logger = logging.getLogger(__name__)


def fill_placeholders(text: str, run: WorkflowRun) -> str:
    return text.replace("{subject_name}", run.subject_name).replace("{goal}", run.goal)


class StepExecutor:
    def __init__(
        self,
        sender: MessageSender,
        notifier: OwnerNotifier,
        conversation_repository: ConversationRepository,
        llm_provider: Optional[LLMProvider] = None,
        temperature: float = 0.7,
    ):
        self.sender = sender
        self.notifier = notifier
        self.conversations = conversation_repository
        self.llm = llm_provider
        self.temperature = temperature

    async def perform(self, run: WorkflowRun, template: WorkflowTemplate, step: WorkflowStep):
        """Performs the step's action. Mutates run.context for task steps."""
        if step.action == "send_message":
            await self._send_step_message(run, template, step)
        elif step.action == "notify_owner":
            title = f"{template.name}: {step.label or step.id}"
            body = fill_placeholders(step.message or f"{run.subject_name} reached step '{step.id}'.", run)
            await notify_best_effort(self.notifier, run.account_id, title, body)
        elif step.action == "create_task":
            task = {
                "step_id": step.id,
                "label": step.label or step.id,
                "subject_id": run.subject_id,
                "created_at": utc_now().isoformat(),
            }
            run.context.setdefault("tasks", []).append(task)
            await notify_best_effort(
                self.notifier, run.account_id, f"New task: {task['label']}", f"For {run.subject_name}"
            )
        else:
            raise ValidationError(f"Unknown step action '{step.action}'")

        logger.info(f"Run {run.id} performed step {step.id} ({step.action})")

    async def send_reply(self, run: WorkflowRun, template: WorkflowTemplate, body: str) -> str:
        """Sends a drafted reply on the run's thread and records it."""
        return await self._dispatch(run, f"Re: {template.name}", body)

    async def draft(self, run: WorkflowRun, template: WorkflowTemplate, step: WorkflowStep) -> OutreachDraft:
        """Asks the LLM for a personal outreach message following step.prompt."""
        if self.llm is None:
            raise ValidationError(f"Step '{step.id}' needs drafting but no LLM provider is configured")

        system_prompt = render(
            Template.OUTREACH_DRAFT,
            goal=run.goal,
            subject_name=run.subject_name,
            instructions=fill_placeholders(step.prompt or "", run),
            history=self.conversations.list_for_owner(run.id),
        )
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": "Write the next message."},
        ]
        draft, completion = await request_structured(
            self.llm, messages, OutreachDraft, temperature=self.temperature
        )
        logger.debug(f"Drafted message for run {run.id} step {step.id} ({completion.cost_cents} cents)")
        return draft

    async def _send_step_message(self, run: WorkflowRun, template: WorkflowTemplate, step: WorkflowStep):
        if step.message:
            subject = fill_placeholders(step.subject_line or template.name, run)
            body = fill_placeholders(step.message, run)
        else:
            draft = await self.draft(run, template, step)
            subject = fill_placeholders(step.subject_line, run) if step.subject_line else draft.subject
            body = draft.body
        await self._dispatch(run, subject, body)

    async def _dispatch(self, run: WorkflowRun, subject: str, body: str) -> str:
        message_id = await self.sender.send(
            OutboundMessage(
                account_id=run.account_id,
                to=run.subject_contact,
                subject=subject,
                body=body,
                reply_token=workflow_reply_token(run.id),
            )
        )
        self.conversations.append(
            ConversationEntry(owner_id=run.id, role=ConversationRole.AGENT, content=body)
        )
        return message_id
