# ============================================================================
# API ROUTES
# ============================================================================
# STATUS: Core - FastAPI route definitions
# PURPOSE: HTTP endpoints for executions, webhooks and admin views
# CREATED: 19 OCT 2026
# ============================================================================
"""
API Routes

FastAPI routes for the workflow engine.

    POST /webhooks/{source}                 provider callbacks
    POST /executions                        start a run
    GET  /executions                        recent runs
    GET  /executions/{id}                   run with node tasks
    POST /executions/{id}/cancel            cancel a run
    POST /executions/{id}/tasks/{tid}/stop  stop one node
    GET  /admin/queue                       queue depth + newest jobs
    GET  /admin/executions/{id}/tasks       node tasks of a run
    GET  /admin/webhooks                    newest webhook events
    POST /admin/remediate/stuck-tasks       force-complete one node type
    GET  /admin/status                      background loop stats
    GET  /health                            (root level, health_router)
"""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from core.contracts import ExecutionStatus
from core.models import WebhookEvent
from handlers.webhooks import parse_webhook
from services import ExecutionNotFoundError, InvalidWorkflowError
from __version__ import __version__
from .schemas import (
    ExecutionCreate,
    ExecutionResponse,
    ExecutionDetailResponse,
    ExecutionListResponse,
    NodeTaskResponse,
    QueueJobResponse,
    QueueStatsResponse,
    WebhookEventResponse,
    WebhookListResponse,
    RemediationResponse,
    HealthResponse,
    ErrorResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()
health_router = APIRouter()


# ============================================================================
# DEPENDENCY INJECTION
# ============================================================================
# These will be set by the main app at startup

_engine = None
_scheduler = None
_consumer = None


def set_services(engine, scheduler=None, consumer=None):
    """Set service instances for dependency injection."""
    global _engine, _scheduler, _consumer
    _engine = engine
    _scheduler = scheduler
    _consumer = consumer


def get_engine():
    if _engine is None:
        raise HTTPException(500, "Services not initialized")
    return _engine


# ============================================================================
# WEBHOOKS
# ============================================================================

@router.post("/webhooks/{source}", tags=["Webhooks"])
async def receive_webhook(source: str, request: Request):
    """
    Provider callback.

    The raw body is stored before parsing. Answers 400 only for bodies
    that are not a JSON object; everything else gets 200 so providers
    stop retrying.
    """
    engine = get_engine()
    body = (await request.body()).decode("utf-8", errors="replace")
    receipt = await engine.receiver.receive(source, body)
    return JSONResponse(receipt.to_dict(), status_code=receipt.status_code)


# ============================================================================
# EXECUTIONS
# ============================================================================

@router.post(
    "/executions",
    response_model=ExecutionResponse,
    status_code=201,
    tags=["Executions"],
    responses={
        201: {"description": "Execution started"},
        400: {"model": ErrorResponse, "description": "Invalid workflow graph"},
    },
)
async def create_execution(request: ExecutionCreate):
    """
    Start a workflow execution.

    Returns immediately; root nodes are queued for the workers.
    Poll GET /executions/{id} to monitor progress.
    """
    engine = get_engine()
    try:
        execution = await engine.executions.start_execution(
            workflow_id=request.workflow_id,
            graph=request.graph,
            input_params=request.input_params,
        )
    except InvalidWorkflowError as e:
        raise HTTPException(400, {"error": "invalid_workflow", "errors": e.errors})

    return ExecutionResponse.model_validate(execution)


@router.get("/executions", response_model=ExecutionListResponse, tags=["Executions"])
async def list_executions(
    status: Optional[ExecutionStatus] = Query(None, description="Filter by status"),
    limit: int = Query(20, ge=1, le=200),
):
    """List recent executions."""
    engine = get_engine()
    executions = await engine.executions.list_executions(status=status, limit=limit)
    return ExecutionListResponse(
        executions=[ExecutionResponse.model_validate(e) for e in executions],
        total=len(executions),
    )


@router.get(
    "/executions/{execution_id}",
    response_model=ExecutionDetailResponse,
    tags=["Executions"],
    responses={404: {"model": ErrorResponse}},
)
async def get_execution(execution_id: str):
    """Execution status, progress and node tasks."""
    engine = get_engine()
    try:
        execution, tasks = await engine.executions.get_status(execution_id)
    except ExecutionNotFoundError as e:
        raise HTTPException(404, str(e))

    task_summary: Dict[str, int] = {}
    for task in tasks:
        status = task.status.value
        task_summary[status] = task_summary.get(status, 0) + 1

    return ExecutionDetailResponse(
        execution=ExecutionResponse.model_validate(execution),
        tasks=[NodeTaskResponse.model_validate(t) for t in tasks],
        task_summary=task_summary,
    )


@router.post(
    "/executions/{execution_id}/cancel",
    response_model=ExecutionResponse,
    tags=["Executions"],
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def cancel_execution(execution_id: str):
    """Cancel a pending or running execution."""
    engine = get_engine()
    try:
        cancelled = await engine.executions.cancel_execution(execution_id)
    except ExecutionNotFoundError as e:
        raise HTTPException(404, str(e))

    execution = await engine.repos.executions.get(execution_id)
    if not cancelled:
        raise HTTPException(409, f"Cannot cancel execution in status: {execution.status.value}")
    return ExecutionResponse.model_validate(execution)


@router.post(
    "/executions/{execution_id}/tasks/{task_id}/stop",
    response_model=NodeTaskResponse,
    tags=["Executions"],
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def stop_node_task(execution_id: str, task_id: str):
    """
    Stop one pending, queued or processing node.

    The node fails with "Stopped by user"; its execution then advances
    and is recomputed as for any other failure.
    """
    engine = get_engine()
    task = await engine.repos.tasks.get(task_id)
    if task is None or task.execution_id != execution_id:
        raise HTTPException(404, f"Node task not found: {task_id}")

    stopped = await engine.node_tasks.stop(task_id)
    task = await engine.repos.tasks.get(task_id)
    if not stopped:
        raise HTTPException(409, f"Node is not running. Current status: {task.status.value}")
    return NodeTaskResponse.model_validate(task)


# ============================================================================
# ADMIN VIEWS
# ============================================================================

@router.get("/admin/queue", response_model=QueueStatsResponse, tags=["Admin"])
async def get_queue(limit: int = Query(10, ge=1, le=100)):
    """Queue depth by status and the newest jobs."""
    engine = get_engine()
    counts = await engine.repos.queue.stats()
    recent = await engine.repos.queue.list_recent(limit=limit)
    return QueueStatsResponse(
        counts=counts,
        total=sum(counts.values()),
        recent=[QueueJobResponse.model_validate(j) for j in recent],
    )


@router.get(
    "/admin/executions/{execution_id}/tasks",
    tags=["Admin"],
    responses={404: {"model": ErrorResponse}},
)
async def get_execution_tasks(execution_id: str):
    """Node tasks of one execution, newest activity first."""
    engine = get_engine()
    try:
        execution, tasks = await engine.executions.get_status(execution_id)
    except ExecutionNotFoundError as e:
        raise HTTPException(404, str(e))

    tasks.sort(key=lambda t: t.updated_at, reverse=True)
    return {
        "execution_id": execution.id,
        "status": execution.status.value,
        "progress": execution.progress,
        "tasks": [NodeTaskResponse.model_validate(t).model_dump(mode="json") for t in tasks],
    }


def summarize_webhook(event: WebhookEvent) -> Dict[str, Any]:
    """Best-effort parse of a stored payload for display."""
    try:
        payload = json.loads(event.payload)
    except ValueError:
        return {"parsed": False, "reason": "invalid_json"}
    if not isinstance(payload, dict):
        return {"parsed": False, "reason": "invalid_json"}

    try:
        parsed = parse_webhook(event.source, payload)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        return {"parsed": False, "reason": str(e)}

    return {
        "parsed": True,
        "external_id": parsed.external_id,
        "raw_status": parsed.raw_status,
        "outcome": parsed.to_result(event.source).outcome.value,
        "result_url": parsed.result_url,
        "error": parsed.error,
    }


@router.get("/admin/webhooks", response_model=WebhookListResponse, tags=["Admin"])
async def get_webhooks(
    limit: int = Query(20, ge=1, le=200),
    processed: Optional[bool] = Query(None, description="Filter by processed flag"),
):
    """Newest webhook events with parsed summaries."""
    engine = get_engine()
    events = await engine.repos.webhooks.list_recent(limit=limit, processed=processed)
    return WebhookListResponse(
        events=[
            WebhookEventResponse(
                id=e.id,
                source=e.source,
                external_id=e.external_id,
                processed=e.processed,
                created_at=e.created_at,
                summary=summarize_webhook(e),
            )
            for e in events
        ],
        total=len(events),
    )


@router.post("/admin/remediate/stuck-tasks", response_model=RemediationResponse, tags=["Admin"])
async def remediate_stuck_tasks(
    node_type: str = Query(..., description="Node type whose processing tasks are force-completed"),
):
    """
    Force-complete every processing task of one node type.

    For providers that never report back. Downstream nodes run with
    the forced output ({"note", "forced": true}).
    """
    engine = get_engine()
    fixed = await engine.recovery.force_complete_by_type(node_type)
    return RemediationResponse(node_type=node_type, fixed=len(fixed), node_task_ids=fixed)


@router.get("/admin/status", tags=["Admin"])
async def get_status():
    """Background loop and in-process consumer statistics."""
    get_engine()
    return {
        "scheduler": _scheduler.stats if _scheduler else None,
        "consumer": _consumer.stats if _consumer else None,
    }


# ============================================================================
# HEALTH
# ============================================================================

@health_router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health():
    """Liveness plus background loop state."""
    engine = get_engine()
    scheduler_stats = _scheduler.stats if _scheduler else {}
    healthy = _scheduler is None or _scheduler.is_running
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=__version__,
        storage_backend=engine.repos.backend,
        scheduler=scheduler_stats,
        consumer=_consumer.stats if _consumer else None,
    )
