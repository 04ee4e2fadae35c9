import json
import logging
from typing import AsyncIterator, List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse

from ..config import get_settings
from ..domain.models import WorkflowTemplate
from ..execution.engine import WorkflowRunEngine
from ..execution.events import SessionEvent
from ..execution.orchestrator import SessionOrchestrator
from ..services.exceptions import (
    ConcurrencyError,
    EvaluationError,
    NotFoundError,
    OutreachError,
    ProviderError,
    StateError,
    ValidationError,
)
from ..services.inbound import InboundReplyService
from ..state.models import AutonomyMode, RunStatus, SessionSnapshot, WorkflowRun
from .dependencies import get_inbound_service, get_session_orchestrator, get_workflow_engine
from .schemas import (
    AdvanceRunRequest,
    CancelSessionResponse,
    ErrorResponse,
    InboundReplyRequest,
    InboundReplyResponse,
    ResumeSessionRequest,
    StartRunRequest,
    StartSessionRequest,
    TemplateRequest,
    TickResponse,
)

logging.basicConfig(
    level=get_settings().LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Outreach Agents")


# --- Error mapping ---

_STATUS_BY_ERROR = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConcurrencyError, status.HTTP_409_CONFLICT),
    (StateError, status.HTTP_409_CONFLICT),
    (EvaluationError, status.HTTP_502_BAD_GATEWAY),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
]


@app.exception_handler(OutreachError)
async def handle_outreach_error(request: Request, exc: OutreachError):
    status_code = next(
        (code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=type(exc).__name__, detail=str(exc), retryable=exc.retryable).model_dump(),
    )


async def _stream_events(events: AsyncIterator[SessionEvent]) -> StreamingResponse:
    """
    Streams session events as newline-delimited JSON.

    The first event is pulled before the response starts, so errors raised
    before anything happened (busy session, bad approvals) still become
    proper HTTP error responses.
    """
    iterator = events.__aiter__()
    try:
        first: Optional[SessionEvent] = await iterator.__anext__()
    except StopAsyncIteration:
        first = None

    async def body():
        try:
            if first is not None:
                yield json.dumps(first.to_json_dict()) + "\n"
            async for event in iterator:
                yield json.dumps(event.to_json_dict()) + "\n"
        except OutreachError as e:
            logger.warning(f"Session stream ended with {type(e).__name__}: {e}")
            yield json.dumps(
                {"type": "error", "error": type(e).__name__, "message": str(e), "retryable": e.retryable}
            ) + "\n"
        finally:
            await iterator.aclose()

    return StreamingResponse(body(), media_type="application/x-ndjson")


# --- Sessions ---

@app.post("/sessions")
async def start_session(
    request: StartSessionRequest,
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
):
    """Starts a session and streams its events."""
    events = orchestrator.start(
        account_id=request.account_id,
        goal=request.goal,
        tools=request.tools,
        autonomy_mode=request.autonomy_mode or AutonomyMode(get_settings().DEFAULT_AUTONOMY_MODE),
        credentials=request.credentials,
        system_prompt_override=request.system_prompt,
        agent_id=request.agent_id,
        context=request.context,
    )
    return await _stream_events(events)


@app.post("/sessions/{session_id}/resume")
async def resume_session(
    session_id: str,
    request: ResumeSessionRequest,
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
):
    return await _stream_events(orchestrator.resume(session_id, request.payload))


@app.get("/sessions/{session_id}", response_model=SessionSnapshot)
def get_session(
    session_id: str,
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
):
    """Read-only snapshot for clients reconnecting after a dropped stream."""
    return orchestrator.load(session_id)


@app.post("/sessions/{session_id}/cancel", response_model=CancelSessionResponse)
def cancel_session(
    session_id: str,
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
):
    cancelled = orchestrator.cancel(session_id)
    return CancelSessionResponse(session_id=session_id, cancelled=cancelled)


# --- Workflow templates ---

def _to_template(request: TemplateRequest) -> WorkflowTemplate:
    return WorkflowTemplate(
        id=request.id,
        name=request.name,
        goal=request.goal,
        steps=list(request.steps),
        timeout_days=request.timeout_days or get_settings().DEFAULT_TIMEOUT_DAYS,
        trigger_config=request.trigger_config,
        account_id=request.account_id,
        enabled=request.enabled,
    )


@app.post("/workflows", response_model=WorkflowTemplate, status_code=status.HTTP_201_CREATED)
def create_template(
    request: TemplateRequest,
    engine: WorkflowRunEngine = Depends(get_workflow_engine),
):
    return engine.create_template(_to_template(request))


@app.put("/workflows/{workflow_id}", response_model=WorkflowTemplate)
def update_template(
    workflow_id: str,
    request: TemplateRequest,
    engine: WorkflowRunEngine = Depends(get_workflow_engine),
):
    if request.id != workflow_id:
        raise ValidationError(f"Body id '{request.id}' does not match '{workflow_id}'")
    return engine.update_template(_to_template(request))


@app.get("/workflows", response_model=List[WorkflowTemplate])
def list_templates(
    account_id: Optional[str] = None,
    engine: WorkflowRunEngine = Depends(get_workflow_engine),
):
    return engine.list_templates(account_id)


# --- Workflow runs ---

@app.post("/runs", response_model=WorkflowRun, status_code=status.HTTP_201_CREATED)
async def start_run(
    request: StartRunRequest,
    engine: WorkflowRunEngine = Depends(get_workflow_engine),
):
    return await engine.start_workflow_run(
        workflow_id=request.workflow_id,
        account_id=request.account_id,
        subject_id=request.subject_id,
        subject_contact=request.subject_contact,
        subject_name=request.subject_name,
        initial_context=request.initial_context,
    )


@app.get("/runs", response_model=List[WorkflowRun])
def list_runs(
    account_id: Optional[str] = None,
    status_filter: Optional[RunStatus] = Query(None, alias="status"),
    engine: WorkflowRunEngine = Depends(get_workflow_engine),
):
    return engine.list_runs(account_id=account_id, status=status_filter)


@app.get("/runs/{run_id}", response_model=WorkflowRun)
def get_run(
    run_id: str,
    engine: WorkflowRunEngine = Depends(get_workflow_engine),
):
    return engine.get_run(run_id)


@app.post("/runs/{run_id}/advance", response_model=WorkflowRun)
async def advance_run(
    run_id: str,
    request: AdvanceRunRequest,
    engine: WorkflowRunEngine = Depends(get_workflow_engine),
):
    return await engine.advance(run_id, request.next_step_index)


@app.post("/runs/{run_id}/cancel", response_model=WorkflowRun)
def cancel_run(
    run_id: str,
    engine: WorkflowRunEngine = Depends(get_workflow_engine),
):
    return engine.cancel_run(run_id)


@app.post("/workflows/tick", response_model=TickResponse)
async def tick(engine: WorkflowRunEngine = Depends(get_workflow_engine)):
    """Timeout sweep. Called by an external scheduler, not by end users."""
    report = await engine.tick_workflows()
    return TickResponse(timed_out=report.timed_out, skipped_busy=report.skipped_busy)


# --- Inbound replies ---

@app.post("/inbound/replies", response_model=InboundReplyResponse)
async def inbound_reply(
    request: InboundReplyRequest,
    service: InboundReplyService = Depends(get_inbound_service),
):
    outcome = await service.handle(request.token, request.text, request.contact, request.name)
    return InboundReplyResponse(
        processed=outcome.processed,
        reason=outcome.reason,
        owner_type=outcome.owner_type,
        owner_id=outcome.owner_id,
    )
