"""Operational metrics.

Status counts are read from the :class:`TaskTable` at snapshot time so
they can never drift from the records.  The collector itself keeps the
things the table cannot answer: lifetime totals, rolling per-type
processing times, cumulative duration histograms and completion
timestamps for throughput.
"""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from dataclasses import asdict, dataclass, field, replace
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from taskweave.core.models import TaskStatus

if TYPE_CHECKING:
    from datetime import datetime

    from taskweave.core.clock import Clock
    from taskweave.core.models import TypePolicy
    from taskweave.core.tasks import TaskTable


# Upper bounds, in seconds, of the attempt duration histogram buckets.
DURATION_BUCKETS = (0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0)


@dataclass
class DurationHistogram:
    """Every attempt duration of one type since start, bucketed.

    ``bucket_counts[i]`` counts observations ``<= buckets[i]``, so the
    counts are already cumulative the way Prometheus expects.
    """

    buckets: tuple[float, ...] = DURATION_BUCKETS
    bucket_counts: list[int] = field(default_factory=list)
    sum_seconds: float = 0.0
    count: int = 0

    def __post_init__(self) -> None:
        if not self.bucket_counts:
            self.bucket_counts = [0] * len(self.buckets)

    def observe(self, seconds: float) -> None:
        self.count += 1
        self.sum_seconds += seconds
        for i, bound in enumerate(self.buckets):
            if seconds <= bound:
                self.bucket_counts[i] += 1


@dataclass(frozen=True)
class QueueMetrics:
    """Point-in-time engine metrics.

    ``average_processing_time`` is in milliseconds, ``throughput`` in
    completed tasks per second, ``error_rate`` a fraction in ``[0, 1]``.
    """

    total_tasks: int = 0
    pending_tasks: int = 0
    running_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    cancelled_tasks: int = 0
    average_processing_time: float = 0.0
    throughput: float = 0.0
    error_rate: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TypeStats:
    """Per-type slice of :class:`QueueStats`."""

    pending: int
    running: int
    completed: int
    failed: int
    cancelled: int
    queued: int
    free_slots: int
    average_processing_time: float
    throughput: float


@dataclass(frozen=True)
class QueueStats:
    """Diagnostic snapshot: metrics plus per-type breakdown and policies."""

    queue_size: int
    metrics: QueueMetrics
    types: dict[str, TypeStats] = field(default_factory=dict)
    policies: dict[str, TypePolicy] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "queue_size": self.queue_size,
            "metrics": self.metrics.as_dict(),
            "types": {name: asdict(s) for name, s in self.types.items()},
            "policies": {name: p.as_dict() for name, p in self.policies.items()},
        }


class MetricsCollector:
    """Aggregates attempt durations, outcomes and throughput."""

    def __init__(
        self,
        table: TaskTable,
        clock: Clock,
        latency_window: int = 100,
        throughput_window_seconds: float = 60.0,
    ) -> None:
        self._table = table
        self._clock = clock
        self._throughput_window = timedelta(seconds=throughput_window_seconds)
        self._durations: dict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=latency_window)
        )
        self._completions: dict[str, deque[datetime]] = defaultdict(deque)
        self._histograms: dict[str, DurationHistogram] = defaultdict(DurationHistogram)
        self._created_total = 0
        self._completed_total = 0
        self._failed_total = 0
        self._lock = threading.Lock()

    # -- recording -----------------------------------------------------

    def record_created(self) -> None:
        with self._lock:
            self._created_total += 1

    def record_attempt(self, task_type: str, duration_ms: float) -> None:
        """Called once per handler attempt, successful or not."""
        with self._lock:
            self._durations[task_type].append(duration_ms)
            self._histograms[task_type].observe(duration_ms / 1000)

    def record_completed(self, task_type: str) -> None:
        with self._lock:
            self._completed_total += 1
            self._completions[task_type].append(self._clock.now())

    def record_failed(self) -> None:
        with self._lock:
            self._failed_total += 1

    # -- reading -------------------------------------------------------

    @property
    def completed_total(self) -> int:
        return self._completed_total

    @property
    def failed_total(self) -> int:
        return self._failed_total

    def durations(self) -> dict[str, list[float]]:
        """Recent attempt durations (ms) per type."""
        with self._lock:
            return {name: list(d) for name, d in self._durations.items()}

    def histograms(self) -> dict[str, DurationHistogram]:
        """Lifetime duration histograms per type (copies)."""
        with self._lock:
            return {
                name: replace(h, bucket_counts=list(h.bucket_counts))
                for name, h in self._histograms.items()
            }

    def average_processing_time(self, task_type: str | None = None) -> float:
        with self._lock:
            if task_type is not None:
                samples = list(self._durations.get(task_type, ()))
            else:
                samples = [d for per_type in self._durations.values() for d in per_type]
        return sum(samples) / len(samples) if samples else 0.0

    def throughput(self, task_type: str | None = None) -> float:
        """Completed tasks per second over the rolling window."""
        cutoff = self._clock.now() - self._throughput_window
        with self._lock:
            names = [task_type] if task_type is not None else list(self._completions)
            count = 0
            for name in names:
                stamps = self._completions.get(name)
                if stamps is None:
                    continue
                while stamps and stamps[0] < cutoff:
                    stamps.popleft()
                count += len(stamps)
        return count / self._throughput_window.total_seconds()

    def error_rate(self) -> float:
        with self._lock:
            outcomes = self._completed_total + self._failed_total
            return self._failed_total / outcomes if outcomes else 0.0

    def snapshot(self) -> QueueMetrics:
        counts = self._table.counts()
        return QueueMetrics(
            total_tasks=self._created_total,
            pending_tasks=counts[TaskStatus.PENDING],
            running_tasks=counts[TaskStatus.RUNNING],
            completed_tasks=counts[TaskStatus.COMPLETED],
            failed_tasks=counts[TaskStatus.FAILED],
            cancelled_tasks=counts[TaskStatus.CANCELLED],
            average_processing_time=round(self.average_processing_time(), 3),
            throughput=round(self.throughput(), 6),
            error_rate=round(self.error_rate(), 6),
        )
