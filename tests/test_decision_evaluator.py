# tests/test_decision_evaluator.py
"""
Test the structured decode step and the Decision Evaluator.

The evaluator must always answer from the allowed vocabulary or fail with
EvaluationError; it never falls back to a silent default.
"""

import pytest

from conftest import decision_json, run
from outreach_agents.execution.evaluator import DecisionEvaluator
from outreach_agents.llm.adapters.openai_adapter import metered_cost_cents
from outreach_agents.llm.decoding import decode_structured, strip_wrappers
from outreach_agents.schemas.decisions import Decision, EvaluationResult
from outreach_agents.services.exceptions import EvaluationError, ProviderError, ValidationError
from outreach_agents.state.models import ConversationEntry, ConversationRole


class TestDecoding:
    """Tests for tolerant JSON decoding."""

    def test_plain_json(self):
        result = decode_structured(decision_json("close"), EvaluationResult)
        assert result.decision == Decision.CLOSE

    def test_markdown_fence_is_stripped(self):
        text = "```json\n" + decision_json("reply", reply="See you Monday!") + "\n```"
        result = decode_structured(text, EvaluationResult)
        assert result.decision == Decision.REPLY
        assert result.reply == "See you Monday!"

    def test_prose_around_object_is_stripped(self):
        text = "Sure, here is my answer: " + decision_json("escalate") + " Hope that helps."
        assert decode_structured(text, EvaluationResult).decision == Decision.ESCALATE

    def test_strip_wrappers_leaves_plain_object(self):
        assert strip_wrappers('{"a": 1}') == '{"a": 1}'

    def test_garbage_is_hard_error(self):
        with pytest.raises(EvaluationError) as exc_info:
            decode_structured("I think they will come back", EvaluationResult)
        assert exc_info.value.raw_output == "I think they will come back"

    def test_reply_decision_requires_reply_text(self):
        with pytest.raises(EvaluationError):
            decode_structured(decision_json("reply", reply=None), EvaluationResult)


class TestDecisionEvaluator:
    """Tests for classification, retries and cost metering."""

    def test_returns_decision_and_cost(self, llm):
        llm.add(decision_json("reply", reply="Glad to hear it!"))
        evaluation = run(DecisionEvaluator(llm).evaluate("Member returns", [], "I'll be there Monday"))

        assert evaluation.result.decision == Decision.REPLY
        assert evaluation.cost_cents == 1
        assert evaluation.attempts == 1

    def test_retries_once_after_malformed_output(self, llm):
        llm.add("not json at all", decision_json("close", reason="member_confirmed"))
        evaluation = run(DecisionEvaluator(llm).evaluate("Member returns", [], "Booked for Monday"))

        assert evaluation.result.decision == Decision.CLOSE
        assert evaluation.attempts == 2
        # Both provider calls are metered, including the unusable one.
        assert evaluation.cost_cents == 2

    def test_second_malformed_output_raises_with_cost(self, llm):
        llm.add("nope", "still nope")
        with pytest.raises(EvaluationError) as exc_info:
            run(DecisionEvaluator(llm).evaluate("Member returns", [], "Hello?"))
        assert exc_info.value.cost_cents == 2

    def test_disallowed_decision_is_retried(self, llm):
        llm.add(decision_json("wait"), decision_json("escalate"))
        evaluation = run(DecisionEvaluator(llm).evaluate("Member returns", [], "Maybe later"))
        assert evaluation.result.decision == Decision.ESCALATE

    def test_allowed_decisions_can_include_wait(self, llm):
        llm.add(decision_json("wait"))
        evaluation = run(
            DecisionEvaluator(llm).evaluate(
                "Member returns", [], "Let me check my calendar", allowed_decisions=["wait", "close"]
            )
        )
        assert evaluation.result.decision == Decision.WAIT
        assert '- "wait":' in llm.calls[0][0]["content"]
        assert '- "reply":' not in llm.calls[0][0]["content"]

    def test_provider_failure_is_not_retried(self, llm):
        llm.add(ProviderError("timeout"), decision_json("close"))
        with pytest.raises(ProviderError):
            run(DecisionEvaluator(llm).evaluate("Member returns", [], "Hi"))
        assert len(llm.calls) == 1

    def test_provider_failure_carries_cost_of_earlier_attempts(self, llm):
        llm.add("not json at all", ProviderError("down"))
        with pytest.raises(ProviderError) as exc_info:
            run(DecisionEvaluator(llm).evaluate("Member returns", [], "Hi"))
        assert exc_info.value.cost_cents == 1

    def test_empty_goal_is_validation_error(self, llm):
        with pytest.raises(ValidationError):
            run(DecisionEvaluator(llm).evaluate("  ", [], "Hi"))
        assert llm.calls == []

    def test_unknown_label_is_validation_error(self, llm):
        with pytest.raises(ValidationError):
            run(DecisionEvaluator(llm).evaluate("Goal", [], "Hi", allowed_decisions=["maybe"]))

    def test_history_roles_and_system_notes(self, llm):
        llm.add(decision_json("close"))
        history = [
            ConversationEntry(owner_id="o", role=ConversationRole.AGENT, content="We miss you!"),
            ConversationEntry(owner_id="o", role=ConversationRole.SYSTEM, content="internal note"),
            ConversationEntry(owner_id="o", role=ConversationRole.SUBJECT, content="Been busy"),
        ]
        run(DecisionEvaluator(llm).evaluate("Member returns", history, "Back next week"))

        messages = llm.calls[0]
        assert [m["role"] for m in messages] == ["system", "assistant", "user", "user"]
        assert messages[-1]["content"] == "Back next week"
        assert all("internal note" not in m["content"] for m in messages)


class TestMeteredCost:
    def test_rounds_up_to_whole_cents(self):
        # 1000 input tokens at 250 cents/M = 0.25 cents
        assert metered_cost_cents(1000, 0, 250.0, 1000.0) == 1

    def test_zero_usage_is_free(self):
        assert metered_cost_cents(0, 0, 250.0, 1000.0) == 0

    def test_output_tokens_priced_separately(self):
        assert metered_cost_cents(0, 2_000_000, 250.0, 1000.0) == 2000
