"""Task engine: the public face of the scheduling system.

Ties together the policy registry, task table, ready queue, concurrency
tracker, scheduler loop, executor, retry manager and metrics collector.

The engine is an ordinary object: construct one, register task types,
start it, and pass it to whatever needs to enqueue work.

Usage::

    engine = TaskEngine()

    @engine.handler("email", payload_model=EmailPayload)
    async def send_email(payload: EmailPayload) -> dict:
        ...

    await engine.start()
    task_id = await engine.add_task("email", {"to": "a@b.c"}, priority="high")
    task = await engine.wait_for(task_id)

Every status change happens synchronously on the event loop, between
two ``await`` points, so the scheduler never observes a half-applied
transition.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from taskweave.config import EngineConfig
from taskweave.core.clock import Clock
from taskweave.core.errors import HandlerError, NotFoundError, ValidationError
from taskweave.core.events import Event, EventBus, EventType
from taskweave.core.executor import Executor
from taskweave.core.metrics import (
    DurationHistogram,
    MetricsCollector,
    QueueMetrics,
    QueueStats,
    TypeStats,
)
from taskweave.core.models import Task, TaskPriority, TaskStatus
from taskweave.core.policy import PolicyRegistry
from taskweave.core.queue import ReadyQueue
from taskweave.core.retry import RetryManager
from taskweave.core.scheduler import Scheduler, SchedulerConfig
from taskweave.core.tasks import TaskTable
from taskweave.core.tracker import ConcurrencyTracker

if TYPE_CHECKING:
    import pydantic

    from taskweave.core.hooks import TaskHook
    from taskweave.core.models import TaskHandler, TypePolicy
    from taskweave.storage.base import TaskStore

logger = logging.getLogger(__name__)


class TaskEngine:
    """Priority-ordered background task engine with per-type limits."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        clock: Clock | None = None,
        store: TaskStore | None = None,
        event_bus: EventBus | None = None,
        hooks: list[TaskHook] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._clock = clock or Clock()
        self._store = store
        self._event_bus = event_bus or EventBus()
        self._hooks: list[TaskHook] = hooks or []

        self._registry = PolicyRegistry()
        self._table = TaskTable(history_limit=self._config.history_limit)
        self._queue = ReadyQueue()
        self._tracker = ConcurrencyTracker(self._registry)
        self._metrics = MetricsCollector(
            self._table,
            self._clock,
            latency_window=self._config.latency_window,
            throughput_window_seconds=self._config.throughput_window_seconds,
        )
        self._retry = RetryManager(
            self._table, self._queue, self._clock, self._config.jitter_ratio, rng
        )
        self._executor = Executor()
        self._scheduler = Scheduler(
            self._registry,
            self._queue,
            self._tracker,
            self._table,
            self._clock,
            dispatch=self._dispatch,
            config=SchedulerConfig(tick_interval_seconds=self._config.tick_interval_seconds),
        )
        self._inflight: set[asyncio.Task[None]] = set()
        self._waiters: dict[str, list[asyncio.Event]] = {}
        # Ids of attempts whose coroutine has begun executing.
        self._entered: set[str] = set()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def is_running(self) -> bool:
        return self._scheduler.is_running

    @property
    def inflight(self) -> int:
        """Number of handler attempts currently executing."""
        return len(self._inflight)

    @property
    def tracker(self) -> ConcurrencyTracker:
        return self._tracker

    # ------------------------------------------------------------------
    # Type registration
    # ------------------------------------------------------------------

    def register_type(
        self,
        task_type: str,
        handler: TaskHandler,
        policy: TypePolicy | None = None,
        payload_model: type[pydantic.BaseModel] | None = None,
    ) -> TypePolicy:
        """Register a handler and policy for *task_type*."""
        return self._registry.register_type(task_type, handler, policy, payload_model)

    def handler(
        self,
        task_type: str,
        policy: TypePolicy | None = None,
        payload_model: type[pydantic.BaseModel] | None = None,
    ) -> Callable[[TaskHandler], TaskHandler]:
        """Decorator form of :meth:`register_type`."""

        def decorator(func: TaskHandler) -> TaskHandler:
            self.register_type(task_type, func, policy, payload_model)
            return func

        return decorator

    def get_policy(self, task_type: str) -> TypePolicy:
        return self._registry.get_policy(task_type)

    def update_policy(self, task_type: str, **changes: Any) -> TypePolicy:
        """Merge *changes* into the policy; raises :class:`NotFoundError`."""
        policy = self._registry.update_policy(task_type, **changes)
        self._scheduler.wake()
        return policy

    def update_worker_config(self, task_type: str, **changes: Any) -> bool:
        """Like :meth:`update_policy` but returns ``False`` for unknown types."""
        try:
            self.update_policy(task_type, **changes)
        except NotFoundError:
            return False
        return True

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    async def add_task(
        self,
        task_type: str,
        payload: Any = None,
        priority: TaskPriority | str = TaskPriority.MEDIUM,
        max_retries: int | None = None,
    ) -> str:
        """Enqueue a task and return its id.

        Raises :class:`ValidationError` for an unregistered type, an
        unknown priority, a negative *max_retries* or a payload the
        type's payload model rejects.  Handler failures never surface
        here; inspect :meth:`get_task_status` instead.
        """
        if task_type not in self._registry:
            raise ValidationError(f"No handler registered for task type '{task_type}'")
        try:
            priority = TaskPriority(priority)
        except ValueError:
            raise ValidationError(f"Unknown priority '{priority}'") from None
        if max_retries is not None and max_retries < 0:
            raise ValidationError("max_retries must be >= 0")
        payload = self._registry.validate_payload(task_type, payload)
        policy = self._registry.get_policy(task_type)

        task = Task(
            type=task_type,
            payload=payload,
            priority=priority,
            max_retries=policy.max_retries if max_retries is None else max_retries,
            max_retries_override=max_retries is not None,
            created_at=self._clock.now(),
        )
        self._table.add(task)
        self._queue.enqueue(task)
        self._metrics.record_created()
        self._scheduler.wake()
        logger.info("Task added: %s (%s, priority=%s)", task.id, task_type, priority.value)

        await self._persist(task)
        await self._publish(EventType.TASK_ADDED, task)
        return task.id

    def get_task_status(self, task_id: str) -> Task:
        """Snapshot of the task; raises :class:`NotFoundError`."""
        return self._table.snapshot(task_id)

    async def cancel_task(self, task_id: str) -> bool:
        """Cancel a pending task.

        Returns ``False`` when the task is running or already terminal;
        a running task is never interrupted by this call.
        """
        task = self._table.get(task_id)
        if task.status != TaskStatus.PENDING:
            return False
        self._queue.remove(task.id)
        task.completed_at = self._clock.now()
        self._table.transition(task, TaskStatus.CANCELLED)
        logger.info("Task cancelled: %s", task.id)
        self._notify_terminal(task)

        await self._persist(task)
        await self._publish(EventType.TASK_CANCELLED, task)
        return True

    async def retry_task(self, task_id: str) -> bool:
        """Give a permanently failed task a fresh retry budget.

        ``error_history`` is kept; ``retry_count`` and ``last_error``
        are reset.  Returns ``False`` unless the task is failed.
        """
        task = self._table.get(task_id)
        if task.status != TaskStatus.FAILED:
            return False
        now = self._clock.now()
        task.retry_count = 0
        task.last_error = None
        task.ready_at = now
        task.started_at = None
        task.completed_at = None
        self._table.transition(task, TaskStatus.PENDING)
        self._queue.enqueue(task)
        self._scheduler.wake()
        logger.info("Task %s re-queued by retry_task", task.id)

        await self._persist(task)
        await self._publish(EventType.TASK_RETRYING, task, manual=True)
        return True

    async def wait_for(self, task_id: str, timeout: float | None = None) -> Task:
        """Wait until the task reaches a terminal status and return a snapshot."""
        task = self._table.get(task_id)
        if not task.status.is_terminal:
            event = asyncio.Event()
            self._waiters.setdefault(task_id, []).append(event)
            try:
                await asyncio.wait_for(event.wait(), timeout=timeout)
            finally:
                waiting = self._waiters.get(task_id)
                if waiting is not None and event in waiting:
                    waiting.remove(event)
                    if not waiting:
                        del self._waiters[task_id]
        return self._table.snapshot(task_id)

    async def clear_queue(self) -> int:
        """Cancel every pending task.  Returns how many were cancelled."""
        cancelled: list[Task] = []
        for task in self._queue.clear():
            if task.status != TaskStatus.PENDING:
                continue
            task.completed_at = self._clock.now()
            self._table.transition(task, TaskStatus.CANCELLED)
            self._notify_terminal(task)
            cancelled.append(task)
        logger.info("Queue cleared: %d task(s) cancelled", len(cancelled))
        for task in cancelled:
            await self._persist(task)
            await self._publish(EventType.TASK_CANCELLED, task)
        return len(cancelled)

    async def clear_history(self, status: TaskStatus | str | None = None) -> int:
        """Forget terminal tasks, optionally only those with *status*.

        The tasks are deleted from the durable store as well.
        """
        if status is None:
            statuses = [TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED]
        else:
            try:
                statuses = [TaskStatus(status)]
            except ValueError:
                raise ValidationError(f"Unknown status '{status}'") from None
        removed = self._table.purge(statuses)
        logger.info("History cleared: %d task(s)", len(removed))
        if self._store is not None:
            for task_id in removed:
                try:
                    await self._store.delete(task_id)
                except Exception:
                    logger.exception("Failed to delete task %s from store", task_id)
        return len(removed)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def get_metrics(self) -> QueueMetrics:
        return self._metrics.snapshot()

    def get_queue_stats(self) -> QueueStats:
        types: dict[str, TypeStats] = {}
        for task_type in self._registry.types:
            counts = self._table.counts(task_type)
            types[task_type] = TypeStats(
                pending=counts[TaskStatus.PENDING],
                running=counts[TaskStatus.RUNNING],
                completed=counts[TaskStatus.COMPLETED],
                failed=counts[TaskStatus.FAILED],
                cancelled=counts[TaskStatus.CANCELLED],
                queued=self._queue.size(task_type),
                free_slots=self._tracker.free_slots(task_type),
                average_processing_time=round(
                    self._metrics.average_processing_time(task_type), 3
                ),
                throughput=round(self._metrics.throughput(task_type), 6),
            )
        return QueueStats(
            queue_size=len(self._queue),
            metrics=self._metrics.snapshot(),
            types=types,
            policies=self._registry.policies(),
        )

    def get_task_history(self, limit: int = 100) -> list[Task]:
        """Terminal tasks, most recently finished first."""
        return self._table.history(limit)

    def outcome_totals(self) -> dict[str, int]:
        """Lifetime count of completed and permanently failed tasks."""
        return {
            "completed": self._metrics.completed_total,
            "failed": self._metrics.failed_total,
        }

    def attempt_histograms(self) -> dict[str, DurationHistogram]:
        """Lifetime attempt duration histograms, per type."""
        return self._metrics.histograms()

    def health_check(self) -> dict[str, Any]:
        return {
            "status": "healthy" if self.is_running else "stopped",
            "metrics": self.get_metrics().as_dict(),
        }

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def tick(self) -> list[str]:
        """Run one scheduler pass now; returns the ids dispatched."""
        return [t.id for t in self._scheduler.tick()]

    async def start(self) -> None:
        """Recover unfinished tasks from the store, then start ticking."""
        if self.is_running:
            return
        if self._store is not None:
            await self.recover()
        await self._scheduler.start()

    async def stop(self, graceful: bool = True, timeout: float | None = None) -> None:
        """Stop dispatching.

        With *graceful*, in-flight attempts are awaited (up to *timeout*);
        whatever is still running afterwards is cancelled and recorded as
        a failed attempt.
        """
        await self._scheduler.stop()
        if graceful and self._inflight:
            try:
                await asyncio.wait_for(self.drain(), timeout=timeout)
            except TimeoutError:
                logger.warning("Graceful stop timed out with %d attempt(s) running", self.inflight)
        for running in list(self._inflight):
            running.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def close(self) -> None:
        """Stop gracefully and release the durable store."""
        await self.stop()
        if self._store is not None:
            await self._store.close()

    async def drain(self) -> None:
        """Wait until no handler attempt is executing."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def recover(self) -> int:
        """Load unfinished tasks from the store back into the queue.

        Tasks that were running when the process died are re-queued as
        pending: delivery is at-least-once.
        """
        if self._store is None:
            return 0
        recovered = 0
        now = self._clock.now()
        for task in await self._store.load_unfinished():
            if task.id in self._table:
                continue
            if task.type not in self._registry:
                logger.warning("Skipping recovery of %s: type %s not registered", task.id, task.type)
                continue
            try:
                task.payload = self._registry.validate_payload(task.type, task.payload)
            except ValidationError:
                logger.exception("Skipping recovery of %s: payload no longer valid", task.id)
                continue
            if task.status == TaskStatus.RUNNING:
                task.status = TaskStatus.PENDING
                task.ready_at = now
            self._table.add(task)
            self._queue.enqueue(task)
            self._metrics.record_created()
            recovered += 1
        if recovered:
            logger.info("Recovered %d unfinished task(s) from store", recovered)
            self._scheduler.wake()
        return recovered

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _dispatch(self, task: Task, policy: TypePolicy) -> None:
        future = asyncio.create_task(self._run_attempt(task, policy), name=f"taskweave-{task.id}")
        self._inflight.add(future)
        future.add_done_callback(functools.partial(self._attempt_done, task, policy))

    def _attempt_done(self, task: Task, policy: TypePolicy, future: asyncio.Task[None]) -> None:
        self._inflight.discard(future)
        entered = task.id in self._entered
        self._entered.discard(task.id)
        if entered or not future.cancelled():
            return
        # Cancelled before its first step: _run_attempt never got to release.
        self._tracker.release(task.type)
        self._settle(task, policy, None, HandlerError(task.id, "Attempt cancelled"))
        self._scheduler.wake()

    async def _run_attempt(self, task: Task, policy: TypePolicy) -> None:
        self._entered.add(task.id)
        handler = self._registry.get(task.type).handler
        result: Any = None
        error: HandlerError | None = None
        try:
            await self._persist(task)
            await self._publish(EventType.TASK_STARTED, task)
            await self._run_hooks("before_task", task)
            try:
                result = await self._executor.invoke(task, handler, policy)
            except HandlerError as exc:
                error = exc
        except asyncio.CancelledError:
            self._settle(task, policy, None, HandlerError(task.id, "Attempt cancelled"))
            raise
        finally:
            self._tracker.release(task.type)
            self._scheduler.wake()

        retried = self._settle(task, policy, result, error)
        await self._persist(task)
        if error is None:
            await self._publish(EventType.TASK_COMPLETED, task, duration_ms=task.duration_ms)
        elif retried:
            await self._publish(EventType.TASK_RETRYING, task, error=task.last_error)
        else:
            await self._publish(EventType.TASK_FAILED, task, error=task.last_error)
        await self._run_hooks("after_task", task, error)

    def _settle(
        self, task: Task, policy: TypePolicy, result: Any, error: HandlerError | None
    ) -> bool:
        """Record the attempt's outcome.  Returns ``True`` if a retry was granted."""
        now = self._clock.now()
        started = task.started_at or now
        self._metrics.record_attempt(task.type, (now - started).total_seconds() * 1000)

        if error is None:
            task.result = result
            task.completed_at = now
            self._table.transition(task, TaskStatus.COMPLETED)
            self._metrics.record_completed(task.type)
            logger.info("Task completed: %s (%s) in %.1fms", task.id, task.type, task.duration_ms)
            self._notify_terminal(task)
            return False

        decision = self._retry.handle_failure(task, error, policy)
        if not decision.retry:
            self._metrics.record_failed()
            self._notify_terminal(task)
        return decision.retry

    def _notify_terminal(self, task: Task) -> None:
        for event in self._waiters.pop(task.id, ()):
            event.set()

    async def _persist(self, task: Task) -> None:
        if self._store is None:
            return
        try:
            await self._store.save(task)
        except Exception:
            logger.exception("Failed to persist task %s", task.id)

    async def _publish(self, event_type: EventType, task: Task, **extra: Any) -> None:
        payload = {
            "task_id": task.id,
            "task_type": task.type,
            "status": task.status.value,
            "priority": task.priority.value,
            "retry_count": task.retry_count,
            **extra,
        }
        await self._event_bus.publish(Event(event_type, payload))

    async def _run_hooks(self, method: str, *args: Any) -> None:
        for hook in self._hooks:
            try:
                await getattr(hook, method)(*args)
            except Exception:
                logger.exception("Hook %s.%s failed", type(hook).__name__, method)
