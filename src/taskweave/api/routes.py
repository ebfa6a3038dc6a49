"""API route definitions, kept apart from the app factory.

The engine is read from ``request.app.state.engine``; the app factory
puts it there.
"""

from __future__ import annotations

import logging
import time

from fastapi import APIRouter, HTTPException, Query, Request, Response, status
from starlette.websockets import WebSocket, WebSocketDisconnect

from taskweave import __version__
from taskweave.api.schemas import (
    ActionResponse,
    ClearedResponse,
    HealthResponse,
    PolicyResponse,
    PolicyUpdate,
    TaskCreate,
    TaskCreatedResponse,
    TaskResponse,
)
from taskweave.core.engine import TaskEngine
from taskweave.core.errors import NotFoundError, ValidationError
from taskweave.observability import PrometheusExporter

logger = logging.getLogger(__name__)

router = APIRouter()

_start_time: float = time.monotonic()


def _get_engine(request: Request) -> TaskEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise RuntimeError("Engine not configured")
    return engine


def _not_found(exc: NotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _invalid(exc: ValidationError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


# ------------------------------------------------------------------
# Health & stats
# ------------------------------------------------------------------


@router.get("/health", response_model=HealthResponse, tags=["ops"])
async def health(request: Request) -> HealthResponse:
    report = _get_engine(request).health_check()
    return HealthResponse(
        status=report["status"],
        version=__version__,
        uptime_seconds=round(time.monotonic() - _start_time, 2),
        metrics=report["metrics"],
    )


@router.get("/stats", tags=["ops"])
async def stats(request: Request) -> dict:
    return _get_engine(request).get_queue_stats().as_dict()


@router.get("/metrics", tags=["ops"])
async def metrics(request: Request) -> Response:
    exporter = PrometheusExporter(_get_engine(request))
    return Response(content=exporter.export(), media_type="text/plain; version=0.0.4")


# ------------------------------------------------------------------
# Tasks
# ------------------------------------------------------------------


@router.post(
    "/tasks",
    response_model=TaskCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["tasks"],
)
async def create_task(body: TaskCreate, request: Request) -> TaskCreatedResponse:
    """Validate and enqueue a task.  Poll ``GET /tasks/{id}`` for its outcome."""
    engine = _get_engine(request)
    try:
        task_id = await engine.add_task(
            body.type, body.payload, priority=body.priority, max_retries=body.max_retries
        )
    except ValidationError as exc:
        raise _invalid(exc) from exc
    return TaskCreatedResponse(id=task_id, status=engine.get_task_status(task_id).status.value)


@router.get("/tasks", response_model=list[TaskResponse], tags=["tasks"])
async def task_history(
    request: Request, limit: int = Query(default=100, ge=1, le=1000)
) -> list[TaskResponse]:
    """Recently finished tasks, newest first."""
    engine = _get_engine(request)
    return [TaskResponse.from_task(t) for t in engine.get_task_history(limit)]


@router.get("/tasks/{task_id}", response_model=TaskResponse, tags=["tasks"])
async def get_task(task_id: str, request: Request) -> TaskResponse:
    try:
        task = _get_engine(request).get_task_status(task_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return TaskResponse.from_task(task)


@router.delete("/tasks/{task_id}", response_model=ActionResponse, tags=["tasks"])
async def cancel_task(task_id: str, request: Request) -> ActionResponse:
    """Cancel a pending task; running and finished tasks are left alone."""
    engine = _get_engine(request)
    try:
        cancelled = await engine.cancel_task(task_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return ActionResponse(
        id=task_id, ok=cancelled, status=engine.get_task_status(task_id).status.value
    )


@router.post("/tasks/{task_id}/retry", response_model=ActionResponse, tags=["tasks"])
async def retry_task(task_id: str, request: Request) -> ActionResponse:
    engine = _get_engine(request)
    try:
        retried = await engine.retry_task(task_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return ActionResponse(
        id=task_id, ok=retried, status=engine.get_task_status(task_id).status.value
    )


@router.delete("/queue", response_model=ClearedResponse, tags=["tasks"])
async def clear_queue(request: Request) -> ClearedResponse:
    """Cancel every pending task."""
    return ClearedResponse(cleared=await _get_engine(request).clear_queue())


@router.delete("/history", response_model=ClearedResponse, tags=["tasks"])
async def clear_history(
    request: Request, status_filter: str | None = Query(default=None, alias="status")
) -> ClearedResponse:
    """Forget finished tasks, optionally only those with the given status."""
    try:
        cleared = await _get_engine(request).clear_history(status_filter)
    except ValidationError as exc:
        raise _invalid(exc) from exc
    return ClearedResponse(cleared=cleared)


# ------------------------------------------------------------------
# Task types
# ------------------------------------------------------------------


@router.get("/types", response_model=list[PolicyResponse], tags=["types"])
async def list_types(request: Request) -> list[PolicyResponse]:
    policies = _get_engine(request).get_queue_stats().policies
    return [PolicyResponse.from_policy(p) for _, p in sorted(policies.items())]


@router.patch("/types/{task_type}", response_model=PolicyResponse, tags=["types"])
async def update_type(task_type: str, body: PolicyUpdate, request: Request) -> PolicyResponse:
    engine = _get_engine(request)
    changes = body.changes()
    try:
        updated = engine.update_worker_config(task_type, **changes)
    except ValidationError as exc:
        raise _invalid(exc) from exc
    if not updated:
        raise HTTPException(status_code=404, detail=f"Unknown task type '{task_type}'")
    logger.info("Policy for %s updated over HTTP: %s", task_type, changes)
    return PolicyResponse.from_policy(engine.get_policy(task_type))


# ------------------------------------------------------------------
# Events
# ------------------------------------------------------------------


@router.websocket("/ws/events")
async def events(ws: WebSocket) -> None:
    """Stream task lifecycle events as JSON messages."""
    manager = ws.app.state.ws_manager
    await manager.connect(ws)
    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(ws)
