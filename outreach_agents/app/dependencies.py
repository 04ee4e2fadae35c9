"""
Dependency Injection Wiring (Composition Root).

This module acts as the central "container" for the application's services.
It is responsible for:
1. Instantiating the core Singleton services (Repositories, Adapters, Engines).
2. Wiring them together (e.g., injecting the Repositories and the Evaluator
   into the SessionOrchestrator and the WorkflowRunEngine).
3. Managing the lifecycle of these objects using @lru_cache to ensure
   they are created only once per application process.

By consolidating construction logic here, we keep the API layer (main.py)
clean and strictly focused on routing, while allowing for easy dependency
overrides during testing.
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.engine import Engine

from ..config import get_settings
from ..execution.engine import WorkflowRunEngine
from ..execution.evaluator import DecisionEvaluator
from ..execution.executor import StepExecutor
from ..execution.orchestrator import SessionOrchestrator
from ..execution.planner import TurnPlanner
from ..infrastructure.database.connection import get_engine, init_db
from ..llm.adapters.openai_adapter import OpenAIAdapter
from ..llm.interface import LLMProvider
from ..repositories.conversation import ConversationRepository, SqlConversationRepository
from ..repositories.run import SqlWorkflowRunRepository, WorkflowRunRepository
from ..repositories.session import SessionRepository, SqlSessionRepository
from ..repositories.workflow import SqlWorkflowRepository, WorkflowRepository
from ..services.inbound import InboundReplyService
from ..services.messaging import LoggingMessageSender, MessageSender
from ..services.notifications import (
    FixedWindowRateLimiter,
    LoggingOwnerNotifier,
    OwnerNotifier,
    RateLimitedNotifier,
)
from ..tools.builtin import build_default_registry
from ..tools.registry import ToolRegistry


# LLM Provider (Singleton)
@lru_cache()
def get_llm_provider() -> LLMProvider:
    settings = get_settings()
    return OpenAIAdapter(
        api_key=settings.OPENAI_API_KEY,
        model_name=settings.OPENAI_MODEL,
        input_price_cents=settings.MODEL_INPUT_PRICE_CENTS.get(
            settings.OPENAI_MODEL, settings.DEFAULT_INPUT_PRICE_CENTS
        ),
        output_price_cents=settings.MODEL_OUTPUT_PRICE_CENTS.get(
            settings.OPENAI_MODEL, settings.DEFAULT_OUTPUT_PRICE_CENTS
        ),
    )


# Database (Singleton): tables are created on first use
@lru_cache()
def get_database() -> Engine:
    engine = get_engine()
    init_db(engine)
    return engine


# Repositories (Singletons)
@lru_cache()
def get_session_repository() -> SessionRepository:
    return SqlSessionRepository(get_database())


@lru_cache()
def get_conversation_repository() -> ConversationRepository:
    return SqlConversationRepository(get_database())


@lru_cache()
def get_workflow_repository() -> WorkflowRepository:
    return SqlWorkflowRepository(get_database())


@lru_cache()
def get_run_repository() -> WorkflowRunRepository:
    return SqlWorkflowRunRepository(get_database())


# Outbound channels (Singletons)
@lru_cache()
def get_message_sender() -> MessageSender:
    return LoggingMessageSender(reply_domain=get_settings().REPLY_ADDRESS_DOMAIN)


@lru_cache()
def get_owner_notifier() -> OwnerNotifier:
    # The limiter must be a singleton too, or every request gets a fresh window.
    limiter = FixedWindowRateLimiter(limit=get_settings().NOTIFICATIONS_PER_MINUTE, window_seconds=60)
    return RateLimitedNotifier(LoggingOwnerNotifier(), limiter)


@lru_cache()
def get_tool_registry() -> ToolRegistry:
    return build_default_registry()


# The Evaluator (Singleton Service)
@lru_cache()
def get_decision_evaluator(
    llm: LLMProvider = Depends(get_llm_provider),
) -> DecisionEvaluator:
    return DecisionEvaluator(llm_provider=llm, temperature=get_settings().LLM_TEMPERATURE)


# The Session Orchestrator (Singleton Service)
@lru_cache()
def get_session_orchestrator(
    sessions: SessionRepository = Depends(get_session_repository),
    conversations: ConversationRepository = Depends(get_conversation_repository),
    llm: LLMProvider = Depends(get_llm_provider),
    evaluator: DecisionEvaluator = Depends(get_decision_evaluator),
    registry: ToolRegistry = Depends(get_tool_registry),
    sender: MessageSender = Depends(get_message_sender),
    notifier: OwnerNotifier = Depends(get_owner_notifier),
) -> SessionOrchestrator:
    settings = get_settings()
    return SessionOrchestrator(
        session_repository=sessions,
        conversation_repository=conversations,
        planner=TurnPlanner(llm_provider=llm, temperature=settings.LLM_TEMPERATURE),
        evaluator=evaluator,
        tool_registry=registry,
        sender=sender,
        notifier=notifier,
        lease_seconds=settings.SESSION_LEASE_SECONDS,
        max_turns=settings.SESSION_MAX_TURNS,
        budget_cents=settings.SESSION_BUDGET_CENTS,
    )


# The Workflow Run Engine (Singleton Service)
@lru_cache()
def get_workflow_engine(
    workflows: WorkflowRepository = Depends(get_workflow_repository),
    runs: WorkflowRunRepository = Depends(get_run_repository),
    conversations: ConversationRepository = Depends(get_conversation_repository),
    llm: LLMProvider = Depends(get_llm_provider),
    evaluator: DecisionEvaluator = Depends(get_decision_evaluator),
    sender: MessageSender = Depends(get_message_sender),
    notifier: OwnerNotifier = Depends(get_owner_notifier),
) -> WorkflowRunEngine:
    return WorkflowRunEngine(
        workflow_repository=workflows,
        run_repository=runs,
        conversation_repository=conversations,
        evaluator=evaluator,
        executor=StepExecutor(sender, notifier, conversations, llm_provider=llm),
        notifier=notifier,
        lease_seconds=get_settings().RUN_LEASE_SECONDS,
    )


@lru_cache()
def get_inbound_service(
    engine: WorkflowRunEngine = Depends(get_workflow_engine),
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
) -> InboundReplyService:
    return InboundReplyService(engine=engine, orchestrator=orchestrator)
