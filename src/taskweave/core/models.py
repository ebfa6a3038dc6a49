"""Domain models for the task engine.

Defines the core value objects: :class:`Task`, :class:`TypePolicy`, the
status and priority enums, and the status state machine.
"""

from __future__ import annotations

import enum
import math
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from typing import Any

from taskweave.core.errors import ValidationError


class TaskStatus(enum.Enum):
    """Lifecycle states of a task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

# running -> pending is a granted retry; failed -> pending is retry_task().
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PENDING}
    ),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class TaskPriority(enum.Enum):
    """Dispatch priority within a task type."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def weight(self) -> int:
        return _PRIORITY_WEIGHTS[self]


_PRIORITY_WEIGHTS = {
    TaskPriority.CRITICAL: 4,
    TaskPriority.HIGH: 3,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 1,
}


# A handler receives the task payload and returns an opaque result.
# Coroutine functions run on the event loop; plain functions run in a
# worker thread.
TaskHandler = Callable[[Any], Awaitable[Any]] | Callable[[Any], Any]


def _new_task_id() -> str:
    return f"task_{uuid.uuid4().hex}"


@dataclass
class Task:
    """A unit of asynchronous work.

    ``ready_at`` is the earliest moment the task may be dispatched.  It
    equals ``created_at`` on creation and is pushed forward whenever a
    retry is granted.
    """

    type: str
    payload: Any = None
    priority: TaskPriority = TaskPriority.MEDIUM
    max_retries: int = 0
    max_retries_override: bool = False
    id: str = field(default_factory=_new_task_id)
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    ready_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    retry_count: int = 0
    attempts: int = 0
    last_error: str | None = None
    error_history: list[str] = field(default_factory=list)
    result: Any = None

    def __post_init__(self) -> None:
        if self.ready_at is None:
            self.ready_at = self.created_at

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def duration_ms(self) -> float | None:
        """Wall-clock duration of the last attempt, or ``None`` if unfinished."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds() * 1000
        return None


@dataclass(frozen=True)
class TypePolicy:
    """Per-type configuration: concurrency, timeout and retry limits.

    Times are in seconds.  Instances are immutable; updates produce a
    new policy via :meth:`merge`, so a snapshot captured at dispatch
    time is never affected by later changes.
    """

    type: str
    concurrency: int = 1
    timeout: float = 30.0
    max_retries: int = 3
    retry_delay_base: float = 1.0
    retry_delay_max: float = 60.0
    enabled: bool = True

    def validate(self) -> None:
        """Raise :class:`ValidationError` for a mistyped or out-of-range field."""
        if not isinstance(self.type, str) or not self.type:
            raise ValidationError("Task type must be a non-empty string")
        for name in ("concurrency", "max_retries"):
            value = getattr(self, name)
            # bool is an int subclass; True must not pass for a count.
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(
                    f"{name} must be an integer for type '{self.type}', got {value!r}"
                )
        for name in ("timeout", "retry_delay_base", "retry_delay_max"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int | float):
                raise ValidationError(
                    f"{name} must be a number for type '{self.type}', got {value!r}"
                )
            if not math.isfinite(value):
                raise ValidationError(f"{name} must be finite for type '{self.type}'")
        if not isinstance(self.enabled, bool):
            raise ValidationError(
                f"enabled must be a boolean for type '{self.type}', got {self.enabled!r}"
            )
        if self.concurrency < 1:
            raise ValidationError(
                f"concurrency must be >= 1 for type '{self.type}', got {self.concurrency}"
            )
        if self.max_retries < 0:
            raise ValidationError(
                f"max_retries must be >= 0 for type '{self.type}', got {self.max_retries}"
            )
        if self.timeout <= 0:
            raise ValidationError(f"timeout must be > 0 for type '{self.type}'")
        if self.retry_delay_base < 0:
            raise ValidationError(f"retry_delay_base must be >= 0 for type '{self.type}'")
        if self.retry_delay_max < self.retry_delay_base:
            raise ValidationError(
                f"retry_delay_max must be >= retry_delay_base for type '{self.type}'"
            )

    def merge(self, **changes: Any) -> TypePolicy:
        """Return a copy with *changes* applied.  ``type`` cannot change."""
        known = {f.name for f in fields(self)} - {"type"}
        unknown = set(changes) - known
        if unknown:
            raise ValidationError(f"Unknown policy field(s): {', '.join(sorted(unknown))}")
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update(changes)
        return TypePolicy(**values)

    def as_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# Presets for the task types the marketplace backend runs.
BUILTIN_POLICIES: dict[str, TypePolicy] = {
    p.type: p
    for p in (
        TypePolicy("email", concurrency=5, timeout=30.0, max_retries=3, retry_delay_base=5.0),
        TypePolicy(
            "notification", concurrency=10, timeout=15.0, max_retries=5, retry_delay_base=2.0
        ),
        TypePolicy(
            "file_processing", concurrency=3, timeout=60.0, max_retries=2, retry_delay_base=10.0
        ),
        TypePolicy(
            "data_sync", concurrency=2, timeout=120.0, max_retries=3, retry_delay_base=15.0
        ),
        TypePolicy(
            "cleanup",
            concurrency=1,
            timeout=300.0,
            max_retries=1,
            retry_delay_base=30.0,
            retry_delay_max=300.0,
        ),
        TypePolicy("analytics", concurrency=8, timeout=20.0, max_retries=2, retry_delay_base=5.0),
    )
}
