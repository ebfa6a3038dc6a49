"""Pydantic schemas for request / response serialisation."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003  (pydantic resolves it at runtime)
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from taskweave.core.models import Task, TypePolicy

Priority = Literal["critical", "high", "medium", "low"]


class TaskCreate(BaseModel):
    """Schema for enqueuing a task."""

    type: str = Field(..., min_length=1, max_length=128)
    payload: Any = None
    priority: Priority = "medium"
    max_retries: int | None = Field(default=None, ge=0)


class TaskCreatedResponse(BaseModel):
    id: str
    status: str


class TaskResponse(BaseModel):
    id: str
    type: str
    priority: str
    status: str
    payload: Any = None
    created_at: datetime
    ready_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    retry_count: int
    max_retries: int
    attempts: int
    last_error: str | None = None
    error_history: list[str] = Field(default_factory=list)
    result: Any = None

    @classmethod
    def from_task(cls, task: Task) -> TaskResponse:
        payload = task.payload
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        return cls(
            id=task.id,
            type=task.type,
            priority=task.priority.value,
            status=task.status.value,
            payload=payload,
            created_at=task.created_at,
            ready_at=task.ready_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
            retry_count=task.retry_count,
            max_retries=task.max_retries,
            attempts=task.attempts,
            last_error=task.last_error,
            error_history=task.error_history,
            result=task.result,
        )


class ActionResponse(BaseModel):
    """Outcome of cancel / retry / config update requests."""

    id: str
    ok: bool
    status: str | None = None


class PolicyUpdate(BaseModel):
    """Partial policy update; omitted fields keep their current value."""

    concurrency: int | None = None
    timeout: float | None = None
    max_retries: int | None = None
    retry_delay_base: float | None = None
    retry_delay_max: float | None = None
    enabled: bool | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class PolicyResponse(BaseModel):
    type: str
    concurrency: int
    timeout: float
    max_retries: int
    retry_delay_base: float
    retry_delay_max: float
    enabled: bool

    @classmethod
    def from_policy(cls, policy: TypePolicy) -> PolicyResponse:
        return cls(**policy.as_dict())


class ClearedResponse(BaseModel):
    cleared: int


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    metrics: dict[str, float | int] = Field(default_factory=dict)
