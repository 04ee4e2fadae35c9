"""
Evaluator - Decision Classification Layer

The DecisionEvaluator is a stateless wrapper around the LLM that classifies a
free-text input (usually a subject's reply) against a goal into a small fixed
decision vocabulary, plus an optional drafted reply. It never persists or
sends anything itself; callers act on its output.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from ..llm.decoding import request_structured
from ..llm.interface import LLMProvider
from ..schemas.decisions import Decision, EvaluationResult
from ..services.exceptions import EvaluationError, ProviderError, ValidationError
from ..state.models import ConversationEntry, ConversationRole
from .prompts import Template, render

logger = logging.getLogger(__name__)

DECISION_MEANINGS = {
    Decision.REPLY: "the conversation should continue; include the reply to send",
    Decision.CLOSE: "the goal is reached, or definitively lost; stop outreach",
    Decision.ESCALATE: "a human must review this before anything else is sent",
    Decision.WAIT: "nothing needs to be sent right now; keep waiting",
}

DEFAULT_DECISIONS: Tuple[Decision, ...] = (Decision.REPLY, Decision.CLOSE, Decision.ESCALATE)


@dataclass
class Evaluation:
    result: EvaluationResult
    cost_cents: int = 0
    attempts: int = 1


class DecisionEvaluator:
    def __init__(self, llm_provider: LLMProvider, temperature: float = 0.0, max_attempts: int = 2):
        self.llm = llm_provider
        self.temperature = temperature
        self.max_attempts = max_attempts

    async def evaluate(
        self,
        goal: str,
        history: Sequence[ConversationEntry],
        input_text: str,
        allowed_decisions: Optional[Iterable] = None,
        subject_name: Optional[str] = None,
    ) -> Evaluation:
        """
        Classifies input_text against goal.

        Args:
            goal: What success looks like for this conversation.
            history: Prior thread entries, oldest first, NOT including input_text.
            input_text: The new message to classify.
            allowed_decisions: Labels the caller can act on. Defaults to
                reply/close/escalate.
            subject_name: Optional display name used in the prompt.

        Returns:
            Evaluation with a decision from allowed_decisions and the metered
            cost of every provider call made.

        Raises:
            ValidationError: empty goal/input or an unknown decision label.
            EvaluationError: the model's output was unusable on every attempt.
            ProviderError: the provider itself failed. Not retried; carries
                the cost of any earlier attempts.
        """
        if not goal or not goal.strip():
            raise ValidationError("goal must not be empty")
        if not input_text or not input_text.strip():
            raise ValidationError("input text must not be empty")
        allowed = self._resolve_allowed(allowed_decisions)

        messages = self._build_messages(goal, history, input_text, allowed, subject_name)

        cost_cents = 0
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                result, completion = await request_structured(
                    self.llm, messages, EvaluationResult, temperature=self.temperature
                )
            except EvaluationError as e:
                cost_cents += e.cost_cents
                last_error = e
                logger.warning(f"Evaluation attempt {attempt} returned malformed output")
                continue
            except ProviderError as e:
                e.cost_cents += cost_cents
                logger.warning(f"Evaluation attempt {attempt} failed at the provider: {e}")
                raise

            cost_cents += completion.cost_cents
            if result.decision not in allowed:
                last_error = EvaluationError(
                    f"Decision '{result.decision.value}' is not allowed here",
                    raw_output=completion.text,
                )
                logger.warning(f"Evaluation attempt {attempt} chose disallowed '{result.decision.value}'")
                continue

            logger.debug(f"Evaluated input as '{result.decision.value}' ({result.reason})")
            return Evaluation(result=result, cost_cents=cost_cents, attempts=attempt)

        raise EvaluationError(
            f"No usable decision after {self.max_attempts} attempts: {last_error}",
            raw_output=getattr(last_error, "raw_output", ""),
            cost_cents=cost_cents,
        ) from last_error

    def _resolve_allowed(self, allowed_decisions: Optional[Iterable]) -> Tuple[Decision, ...]:
        if allowed_decisions is None:
            return DEFAULT_DECISIONS

        resolved: List[Decision] = []
        for label in allowed_decisions:
            try:
                decision = Decision(label)
            except ValueError:
                raise ValidationError(f"Unknown decision label: {label!r}") from None
            if decision not in resolved:
                resolved.append(decision)

        if not resolved:
            raise ValidationError("At least one decision label must be allowed")
        return tuple(resolved)

    def _build_messages(
        self,
        goal: str,
        history: Sequence[ConversationEntry],
        input_text: str,
        allowed: Tuple[Decision, ...],
        subject_name: Optional[str],
    ) -> List[dict]:
        system_prompt = render(
            Template.DECISION_EVALUATION,
            goal=goal,
            subject_name=subject_name,
            decisions=[(d.value, DECISION_MEANINGS[d]) for d in allowed],
        )

        messages = [{"role": "system", "content": system_prompt}]
        # Internal system notes never reach the model.
        for entry in history:
            if entry.role == ConversationRole.SYSTEM:
                continue
            role = "assistant" if entry.role == ConversationRole.AGENT else "user"
            messages.append({"role": role, "content": entry.content})
        messages.append({"role": "user", "content": input_text})
        return messages
