"""FastAPI application exposing the placement engine over HTTP."""
from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST

from placement.allocation.contracts import WindowKey
from placement.allocation.service import PlacementEngine
from placement.domain.errors import NotFoundError
from placement.infrastructure.monitoring.metrics import PlacementMetrics

from .errors import install_error_handlers
from .middleware import CorrelationIdMiddleware
from .schemas import (
    AddStudentsRequest,
    BatchResponse,
    BatchSummaryResponse,
    CancelResponse,
    CapacityResponse,
    CreateBatchRequest,
    ExecutionRequest,
    ExecutionResponse,
    MembershipResponse,
    RemoveStudentResponse,
    RetryRequest,
    SuggestionResponse,
    TransitionRequest,
)

router = APIRouter(prefix="/api/v1")


def get_engine(request: Request) -> PlacementEngine:
    return request.app.state.engine


@router.post("/batches", response_model=BatchResponse, status_code=201)
def create_batch(body: CreateBatchRequest, engine: PlacementEngine = Depends(get_engine)):
    snapshot = engine.create_batch(
        body.name,
        body.program_filter,
        description=body.description,
        created_by=body.created_by,
    )
    return BatchResponse.from_snapshot(snapshot)


@router.get("/batches/{batch_id}", response_model=BatchResponse)
def get_batch(batch_id: str, engine: PlacementEngine = Depends(get_engine)):
    return BatchResponse.from_snapshot(engine.get_batch(batch_id))


@router.get("/batches/{batch_id}/summary", response_model=BatchSummaryResponse)
def get_batch_summary(batch_id: str, engine: PlacementEngine = Depends(get_engine)):
    return BatchSummaryResponse.from_summary(engine.batch_summary(batch_id))


@router.post("/batches/{batch_id}/students", response_model=MembershipResponse)
def add_students(batch_id: str, body: AddStudentsRequest, engine: PlacementEngine = Depends(get_engine)):
    return MembershipResponse.from_result(engine.add_students(batch_id, body.assignment_ids))


@router.delete("/batches/{batch_id}/students/{assignment_id}", response_model=RemoveStudentResponse)
def remove_student(
    batch_id: str,
    assignment_id: str,
    actor: str = Query(default="api", min_length=1, max_length=128),
    engine: PlacementEngine = Depends(get_engine),
):
    snapshot = engine.remove_student(batch_id, assignment_id, actor=actor)
    return RemoveStudentResponse(assignment_id=snapshot.assignment_id, status=snapshot.status)


@router.post("/batches/{batch_id}/transition", response_model=BatchResponse)
def transition_batch(batch_id: str, body: TransitionRequest, engine: PlacementEngine = Depends(get_engine)):
    return BatchResponse.from_snapshot(engine.transition(batch_id, body.status))


@router.get("/batches/{batch_id}/suggestions", response_model=list[SuggestionResponse])
def get_suggestions(
    batch_id: str,
    as_of: date | None = Query(default=None),
    engine: PlacementEngine = Depends(get_engine),
):
    return [SuggestionResponse.from_suggestion(item) for item in engine.generate_suggestions(batch_id, as_of=as_of)]


@router.post("/batches/{batch_id}/executions", response_model=ExecutionResponse)
def execute_assignment(batch_id: str, body: ExecutionRequest, engine: PlacementEngine = Depends(get_engine)):
    results = engine.execute_assignment(
        batch_id,
        [pair.to_pair() for pair in body.pairs],
        body.mode,
        actor=body.actor,
        execution_id=body.execution_id,
        as_of=body.as_of,
    )
    return ExecutionResponse.from_results(results)


@router.post("/batches/{batch_id}/executions/{execution_id}/retry", response_model=ExecutionResponse)
def retry_execution(
    batch_id: str,
    execution_id: str,
    body: RetryRequest,
    engine: PlacementEngine = Depends(get_engine),
):
    results = engine.retry_execution(batch_id, execution_id, body.mode, actor=body.actor, as_of=body.as_of)
    return ExecutionResponse.from_results(results)


@router.post("/executions/{execution_id}/cancel", response_model=CancelResponse)
def cancel_execution(execution_id: str, engine: PlacementEngine = Depends(get_engine)):
    if not engine.cancel_execution(execution_id):
        raise NotFoundError("execution", execution_id)
    return CancelResponse(execution_id=execution_id, cancelled=True)


@router.get("/capacity", response_model=list[CapacityResponse])
def list_capacity(
    program_id: str | None = Query(default=None),
    site_id: str | None = Query(default=None),
    engine: PlacementEngine = Depends(get_engine),
):
    return [CapacityResponse.from_window(window) for window in engine.list_capacity(program_id=program_id, site_id=site_id)]


@router.get("/capacity/{site_id}/{program_id}/{period_start}/{period_end}", response_model=CapacityResponse)
def get_capacity(
    site_id: str,
    program_id: str,
    period_start: date,
    period_end: date,
    engine: PlacementEngine = Depends(get_engine),
):
    key = WindowKey(site_id=site_id, program_id=program_id, period_start=period_start, period_end=period_end)
    return CapacityResponse.from_window(engine.get_capacity(key))


def create_app(engine: PlacementEngine, *, metrics: PlacementMetrics | None = None) -> FastAPI:
    app = FastAPI(title="Placement Engine API", version="0.1.0")
    app.state.engine = engine
    app.state.metrics = metrics or engine.metrics
    app.add_middleware(CorrelationIdMiddleware)
    app.include_router(router)
    install_error_handlers(app)

    @app.get("/metrics")
    def metrics_endpoint(request: Request) -> Response:
        return Response(request.app.state.metrics.render(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/readyz")
    def readyz():
        return {"status": "ok"}

    return app


__all__ = ["create_app", "router", "get_engine"]
