"""
Orchestrator - Session Orchestration Layer

The SessionOrchestrator runs one multi-turn agent session and exposes it as a
lazy stream of SessionEvents. It owns the session's state machine:

    active <-> awaiting_approval -> active -> completed | failed | cancelled

Like a chat engine that keeps the floor while it has momentum, the drive
loop plans turn after turn (TurnPlanner) and executes the proposed tool calls
until it hits a blocking state:
1. A side-effecting call needs owner approval (awaiting_approval).
2. The agent has nothing to do until someone writes back (awaiting_input).
3. The session ends (goal handled, turn limit, budget, failure, cancel).

No state is kept in memory between calls. Every call holds the session's
lease for as long as it produces events, and every state change is saved
before the event describing it is yielded, so a dropped stream never loses
charged cost or executed actions.
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from ..repositories.conversation import ConversationRepository
from ..repositories.session import SessionRepository
from ..schemas.decisions import Decision, ProposedToolCall
from ..services.exceptions import (
    EvaluationError,
    IncompleteApprovalError,
    NotFoundError,
    OutreachError,
    ProviderError,
    SessionBusyError,
    StateError,
    TerminalStateError,
    ValidationError,
)
from ..services.messaging import MessageSender
from ..services.notifications import OwnerNotifier, notify_best_effort
from ..state.models import (
    AgentSession,
    AutonomyMode,
    ConversationEntry,
    ConversationRole,
    PendingApproval,
    SessionOutput,
    SessionSnapshot,
    SessionStatus,
    new_id,
)
from ..tools.registry import ToolRegistry
from ..tools.types import AgentTool, ToolContext
from .evaluator import DecisionEvaluator
from .events import ApprovalDecision, EventType, Message, ModeChange, SessionEvent
from .planner import TurnPlanner
from .policy import AutonomyPolicy

logger = logging.getLogger(__name__)

SUBJECT_DECISIONS = (Decision.REPLY, Decision.CLOSE, Decision.ESCALATE, Decision.WAIT)


class SessionOrchestrator:
    def __init__(
        self,
        session_repository: SessionRepository,
        conversation_repository: ConversationRepository,
        planner: TurnPlanner,
        evaluator: DecisionEvaluator,
        tool_registry: ToolRegistry,
        sender: MessageSender,
        notifier: OwnerNotifier,
        policy: Optional[AutonomyPolicy] = None,
        lease_seconds: float = 300.0,
        max_turns: int = 20,
        budget_cents: int = 100,
    ):
        self.sessions = session_repository
        self.conversations = conversation_repository
        self.planner = planner
        self.evaluator = evaluator
        self.registry = tool_registry
        self.sender = sender
        self.notifier = notifier
        self.policy = policy or AutonomyPolicy()
        self.lease_seconds = lease_seconds
        self.max_turns = max_turns
        self.budget_cents = budget_cents

    # ==========================================================================
    # Public API
    # ==========================================================================

    def start(
        self,
        account_id: str,
        goal: str,
        tools: Iterable[str],
        autonomy_mode: AutonomyMode = AutonomyMode.SEMI_AUTO,
        credentials: Optional[Dict[str, str]] = None,
        system_prompt_override: Optional[str] = None,
        agent_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[SessionEvent]:
        """
        Validates the request and returns the new session's event stream.

        Nothing is persisted until the stream is first iterated; the first
        event is always `session_created` carrying the session id.

        Raises:
            ValidationError: empty account or goal, unknown autonomy mode.
        """
        if not account_id or not account_id.strip():
            raise ValidationError("account_id must not be empty")
        if not goal or not goal.strip():
            raise ValidationError("goal must not be empty")
        try:
            mode = AutonomyMode(autonomy_mode)
        except ValueError:
            raise ValidationError(f"Unknown autonomy mode: {autonomy_mode!r}") from None

        resolved = self.registry.resolve(tools)
        session = AgentSession(
            account_id=account_id,
            agent_id=agent_id,
            goal=goal.strip(),
            autonomy_mode=mode,
            max_turns=self.max_turns,
            budget_cents=self.budget_cents,
            tool_names=[tool.name for tool in resolved],
            system_prompt_override=system_prompt_override,
            credentials=dict(credentials or {}),
            context=dict(context or {}),
        )
        return self._start_stream(session)

    def resume(self, session_id: str, payload: Any) -> AsyncIterator[SessionEvent]:
        """
        Returns the event stream produced by applying one resume payload.

        Payload shape errors raise ValidationError immediately. Errors that
        depend on stored state (SessionBusyError, TerminalStateError,
        IncompleteApprovalError, ...) are raised by the first iteration of the
        stream, before anything is written.
        """
        if isinstance(payload, Message):
            if not payload.content.strip():
                raise ValidationError("message content must not be empty")
        elif isinstance(payload, ApprovalDecision):
            if not payload.approvals:
                raise ValidationError("approvals must not be empty")
        elif not isinstance(payload, ModeChange):
            raise ValidationError(f"Unsupported resume payload: {type(payload).__name__}")
        return self._resume_stream(session_id, payload)

    def load(self, session_id: str) -> SessionSnapshot:
        """Read-only snapshot for reconnecting clients."""
        return self._require(session_id).snapshot()

    def cancel(self, session_id: str) -> bool:
        """
        Cancels a non-terminal session.

        Returns True if the session was cancelled now, False if a call is in
        flight and will finalize the cancellation at its next suspension point.
        Raises TerminalStateError for sessions that already ended.
        """
        token = new_id()
        if not self.sessions.acquire_lease(session_id, token, self.lease_seconds):
            if not self.sessions.request_cancel(session_id):
                raise TerminalStateError(f"Session {session_id} has already ended")
            logger.info(f"Cancel requested for busy session {session_id}")
            return False

        try:
            session = self._require(session_id)
            if session.is_terminal:
                raise TerminalStateError(f"Session {session_id} is {session.status.value}")
            self._mark_cancelled(session, token)
            return True
        finally:
            self.sessions.release_lease(session_id, token)

    # ==========================================================================
    # Streams
    # ==========================================================================

    async def _start_stream(self, session: AgentSession) -> AsyncIterator[SessionEvent]:
        token = new_id()
        self.sessions.create(session, lease_token=token, lease_seconds=self.lease_seconds)
        logger.info(
            f"Session {session.id} created for account {session.account_id} "
            f"({session.autonomy_mode.value}, tools={session.tool_names})"
        )
        try:
            yield self._event(
                session,
                EventType.SESSION_CREATED,
                goal=session.goal,
                status=session.status.value,
                autonomy_mode=session.autonomy_mode.value,
                tools=list(session.tool_names),
            )
            async for event in self._drive(session, token):
                yield event
        finally:
            self._settle_cancel(session.id, token)
            self.sessions.release_lease(session.id, token)

    async def _resume_stream(self, session_id: str, payload: Any) -> AsyncIterator[SessionEvent]:
        token = new_id()
        if not self.sessions.acquire_lease(session_id, token, self.lease_seconds):
            raise SessionBusyError(f"Session {session_id} is busy")

        try:
            session = self._require(session_id)
            if session.is_terminal:
                raise TerminalStateError(f"Session {session_id} is {session.status.value}")

            if self.sessions.is_cancel_requested(session_id):
                yield self._mark_cancelled(session, token)
                return

            if isinstance(payload, ModeChange):
                events = self._change_mode(session, token, payload)
            elif isinstance(payload, ApprovalDecision):
                events = self._apply_approvals(session, token, payload)
            else:
                events = self._handle_message(session, token, payload)

            async for event in events:
                yield event
        finally:
            self._settle_cancel(session_id, token)
            self.sessions.release_lease(session_id, token)

    # ==========================================================================
    # Resume handlers
    # ==========================================================================

    async def _handle_message(
        self, session: AgentSession, token: str, message: Message
    ) -> AsyncIterator[SessionEvent]:
        # A new message supersedes whatever was waiting for approval.
        for event in self._skip_pending(session, token, reason="superseded"):
            yield event

        if message.author == "owner":
            self._append_entry(session.id, ConversationRole.OWNER, message.content)
        else:
            history = self.conversations.list_for_owner(session.id)
            try:
                evaluation = await self.evaluator.evaluate(
                    session.goal, history, message.content, allowed_decisions=SUBJECT_DECISIONS
                )
            except (EvaluationError, ProviderError) as e:
                self._append_entry(session.id, ConversationRole.SUBJECT, message.content)
                yield self._fail(session, token, e)
                return

            session.cost_cents += evaluation.cost_cents
            result = evaluation.result
            self._append_entry(
                session.id,
                ConversationRole.SUBJECT,
                message.content,
                evaluation=result.model_dump(mode="json"),
            )

            if result.decision == Decision.CLOSE:
                yield self._complete(session, token, result.outcome or "closed", result.reason)
                return

            if result.decision == Decision.ESCALATE:
                session.outputs.append(SessionOutput(type="escalated", data={"reason": result.reason}))
                self.sessions.save(session, token)
                logger.info(f"Session {session.id} escalated: {result.reason}")
                await notify_best_effort(
                    self.notifier,
                    session.account_id,
                    "An agent conversation needs your attention",
                    f"{session.goal}\n\nReason: {result.reason}",
                )
                yield self._event(session, EventType.ESCALATED, reason=result.reason)
                return

            if result.decision == Decision.REPLY:
                self._append_entry(session.id, ConversationRole.SYSTEM, f"Suggested reply: {result.reply}")

        self.sessions.save(session, token)
        async for event in self._drive(session, token):
            yield event

    async def _apply_approvals(
        self, session: AgentSession, token: str, decision: ApprovalDecision
    ) -> AsyncIterator[SessionEvent]:
        if session.status != SessionStatus.AWAITING_APPROVAL:
            raise StateError(f"Session {session.id} has no pending approvals")

        pending_ids = {approval.id for approval in session.pending_approvals}
        unknown = set(decision.approvals) - pending_ids
        if unknown:
            raise ValidationError(f"Unknown approval id(s): {', '.join(sorted(unknown))}")
        missing = pending_ids - set(decision.approvals)
        if missing:
            raise IncompleteApprovalError(missing)

        pending = session.pending_approvals
        session.pending_approvals = []
        session.status = SessionStatus.ACTIVE
        self.sessions.save(session, token)

        tools = self._tools_for(session)
        for approval in pending:
            call = ProposedToolCall(id=approval.id, name=approval.tool_name, arguments=approval.arguments)
            tool = tools.get(approval.tool_name)
            if not decision.approvals[approval.id]:
                yield self._record_skip(session, token, call, "declined")
            elif tool is None:
                yield self._record_skip(session, token, call, "tool_unavailable")
            else:
                yield await self._execute(session, token, tool, call)

        async for event in self._drive(session, token):
            yield event

    async def _change_mode(
        self, session: AgentSession, token: str, change: ModeChange
    ) -> AsyncIterator[SessionEvent]:
        previous = session.autonomy_mode
        session.autonomy_mode = change.new_mode
        self._append_entry(
            session.id,
            ConversationRole.SYSTEM,
            f"Autonomy mode changed from {previous.value} to {change.new_mode.value}.",
        )
        self.sessions.save(session, token)
        logger.info(f"Session {session.id} mode {previous.value} -> {change.new_mode.value}")
        if self.sessions.is_cancel_requested(session.id):
            yield self._mark_cancelled(session, token)
            return
        yield self._event(
            session,
            EventType.MODE_CHANGED,
            previous_mode=previous.value,
            autonomy_mode=change.new_mode.value,
            status=session.status.value,
        )

    # ==========================================================================
    # Drive loop
    # ==========================================================================

    async def _drive(self, session: AgentSession, token: str) -> AsyncIterator[SessionEvent]:
        tools = self._tools_for(session)

        while True:
            if self.sessions.is_cancel_requested(session.id):
                yield self._mark_cancelled(session, token)
                return
            if session.turn_count >= session.max_turns:
                yield self._complete(
                    session, token, "max_turns_reached", f"Stopped after {session.max_turns} turns."
                )
                return
            if session.cost_cents >= session.budget_cents:
                yield self._complete(
                    session, token, "budget_exhausted", f"Spent {session.cost_cents} of {session.budget_cents} cents."
                )
                return

            self._refresh_lease(session, token)
            session.turn_count += 1
            self.sessions.save(session, token)
            yield self._event(session, EventType.TURN_STARTED, turn=session.turn_count)

            history = self.conversations.list_for_owner(session.id)
            try:
                turn, completion = await self.planner.plan_turn(session, history, list(tools.values()))
            except (EvaluationError, ProviderError) as e:
                yield self._fail(session, token, e)
                return

            # Cost is durable before anything from this turn is surfaced.
            session.cost_cents += completion.cost_cents
            if turn.message:
                session.outputs.append(
                    SessionOutput(type="message", data={"content": turn.message, "turn": session.turn_count})
                )
                self._append_entry(session.id, ConversationRole.AGENT, turn.message)
            self.sessions.save(session, token)
            if turn.message:
                yield self._event(
                    session, EventType.OUTPUT_PRODUCED, output=session.outputs[-1].model_dump(mode="json")
                )

            pending: List[PendingApproval] = []
            seen_ids = set()
            for call in turn.tool_calls:
                if call.id in seen_ids:
                    call = call.model_copy(update={"id": new_id()})
                seen_ids.add(call.id)

                if self.sessions.is_cancel_requested(session.id):
                    yield self._mark_cancelled(session, token)
                    return

                tool = tools.get(call.name)
                if tool is None:
                    logger.warning(f"Session {session.id} proposed unknown tool '{call.name}'")
                    yield self._record_result(
                        session, token, call, {"error": f"Unknown tool '{call.name}'"}, output_type="action_failed"
                    )
                    continue

                yield self._event(
                    session,
                    EventType.TOOL_CALL_PROPOSED,
                    call_id=call.id,
                    tool=call.name,
                    arguments=call.arguments,
                )
                if self.policy.requires_approval(session.autonomy_mode, tool, call.arguments):
                    pending.append(
                        PendingApproval(
                            id=call.id,
                            tool_name=tool.name,
                            arguments=call.arguments,
                            description=tool.describe_call(call.arguments),
                            target=tool.target_of(call.arguments),
                        )
                    )
                    continue

                yield await self._execute(session, token, tool, call)

            if pending:
                session.pending_approvals = pending
                session.status = SessionStatus.AWAITING_APPROVAL
                if self.sessions.is_cancel_requested(session.id):
                    yield self._mark_cancelled(session, token)
                    return
                self.sessions.save(session, token)
                logger.info(f"Session {session.id} awaiting approval for {len(pending)} action(s)")
                yield self._event(
                    session,
                    EventType.APPROVAL_REQUIRED,
                    approvals=[approval.model_dump(mode="json") for approval in pending],
                )
                return

            if turn.finished:
                yield self._complete(session, token, "goal_handled", turn.message or "Goal handled.")
                return

            if not turn.tool_calls:
                if session.autonomy_mode == AutonomyMode.FULL_AUTO:
                    yield self._complete(session, token, "no_further_actions", turn.message or "Nothing left to do.")
                elif self.sessions.is_cancel_requested(session.id):
                    yield self._mark_cancelled(session, token)
                else:
                    yield self._event(session, EventType.AWAITING_INPUT, turn=session.turn_count)
                return

    # ==========================================================================
    # Tool calls
    # ==========================================================================

    async def _execute(
        self, session: AgentSession, token: str, tool: AgentTool, call: ProposedToolCall
    ) -> SessionEvent:
        ctx = ToolContext(
            account_id=session.account_id,
            session_id=session.id,
            autonomy_mode=session.autonomy_mode,
            sender=self.sender,
            notifier=self.notifier,
            credentials=session.credentials,
            session_context=session.context,
        )
        try:
            result = await tool.execute(dict(call.arguments), ctx)
        except Exception as e:
            logger.exception(f"Tool '{tool.name}' failed in session {session.id}")
            result = {"error": str(e) or type(e).__name__}

        output_type = "action_failed" if "error" in result else "action"
        return self._record_result(session, token, call, result, output_type=output_type)

    def _record_skip(self, session: AgentSession, token: str, call: ProposedToolCall, reason: str) -> SessionEvent:
        return self._record_result(
            session, token, call, {"skipped": True, "reason": reason}, output_type="action_skipped"
        )

    def _record_result(
        self,
        session: AgentSession,
        token: str,
        call: ProposedToolCall,
        result: Dict[str, Any],
        output_type: str,
    ) -> SessionEvent:
        session.outputs.append(
            SessionOutput(
                type=output_type,
                data={"call_id": call.id, "tool": call.name, "arguments": call.arguments, "result": result},
            )
        )
        self._append_entry(
            session.id,
            ConversationRole.SYSTEM,
            f"Tool {call.name} ({call.id}) result: {json.dumps(result, default=str)}",
        )
        self.sessions.save(session, token)
        return self._event(session, EventType.TOOL_CALL_RESULT, call_id=call.id, tool=call.name, result=result)

    def _skip_pending(self, session: AgentSession, token: str, reason: str) -> List[SessionEvent]:
        if not session.pending_approvals:
            return []
        pending = session.pending_approvals
        session.pending_approvals = []
        session.status = SessionStatus.ACTIVE
        return [
            self._record_skip(
                session, token, ProposedToolCall(id=p.id, name=p.tool_name, arguments=p.arguments), reason
            )
            for p in pending
        ]

    # ==========================================================================
    # Terminal transitions
    # ==========================================================================

    def _complete(self, session: AgentSession, token: str, reason: str, summary: str) -> SessionEvent:
        session.status = SessionStatus.COMPLETED
        session.outputs.append(SessionOutput(type="completed", data={"reason": reason, "summary": summary}))
        self.sessions.save(session, token)
        logger.info(
            f"Session {session.id} completed ({reason}) after {session.turn_count} turns, "
            f"{session.cost_cents} cents"
        )
        return self._event(
            session,
            EventType.COMPLETED,
            reason=reason,
            summary=summary,
            turn_count=session.turn_count,
            cost_cents=session.cost_cents,
        )

    def _fail(self, session: AgentSession, token: str, error: OutreachError) -> SessionEvent:
        if isinstance(error, (EvaluationError, ProviderError)):
            session.cost_cents += error.cost_cents
        session.status = SessionStatus.FAILED
        session.outputs.append(
            SessionOutput(type="error", data={"error": type(error).__name__, "message": str(error)})
        )
        self.sessions.save(session, token)
        logger.error(f"Session {session.id} failed: {error}")
        return self._event(
            session,
            EventType.ERROR,
            error=type(error).__name__,
            message=str(error),
            retryable=error.retryable,
        )

    def _mark_cancelled(self, session: AgentSession, token: str) -> SessionEvent:
        self._skip_pending(session, token, reason="cancelled")
        session.status = SessionStatus.CANCELLED
        session.outputs.append(SessionOutput(type="cancelled"))
        self.sessions.save(session, token)
        logger.info(f"Session {session.id} cancelled")
        return self._event(session, EventType.CANCELLED, turn_count=session.turn_count)

    def _settle_cancel(self, session_id: str, token: str):
        """
        Finalizes a cancel that arrived after the stream's last check, so the
        session never stays open once the lease is released.
        """
        if not self.sessions.is_cancel_requested(session_id):
            return
        session = self.sessions.get(session_id)
        if session is None or session.is_terminal:
            return
        try:
            self._mark_cancelled(session, token)
        except SessionBusyError:
            logger.warning(f"Lease on session {session_id} lost before its cancel could be finalized")

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _require(self, session_id: str) -> AgentSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        return session

    def _refresh_lease(self, session: AgentSession, token: str):
        if not self.sessions.acquire_lease(session.id, token, self.lease_seconds):
            raise SessionBusyError(f"Lease on session {session.id} was lost")

    def _tools_for(self, session: AgentSession) -> Dict[str, AgentTool]:
        return {tool.name: tool for tool in self.registry.resolve(session.tool_names)}

    def _append_entry(
        self,
        owner_id: str,
        role: ConversationRole,
        content: str,
        evaluation: Optional[Dict[str, Any]] = None,
    ) -> ConversationEntry:
        return self.conversations.append(
            ConversationEntry(owner_id=owner_id, role=role, content=content, evaluation=evaluation)
        )

    @staticmethod
    def _event(session: AgentSession, event_type: EventType, **data) -> SessionEvent:
        return SessionEvent(type=event_type, session_id=session.id, data=data)
