"""Scheduler loop: the single place dispatch decisions are made.

Each tick walks every registered type, asks the concurrency tracker how
many slots are free, pulls that many eligible tasks from the ready
queue and hands them to the dispatch callback.  The loop never waits
for a handler; it ticks on a fixed interval and is woken early when a
task is enqueued or finishes.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from taskweave.core.models import TaskStatus

if TYPE_CHECKING:
    from taskweave.core.clock import Clock
    from taskweave.core.models import Task, TypePolicy
    from taskweave.core.policy import PolicyRegistry
    from taskweave.core.queue import ReadyQueue
    from taskweave.core.tasks import TaskTable
    from taskweave.core.tracker import ConcurrencyTracker

logger = logging.getLogger(__name__)

# Receives a task already marked running, plus the policy snapshot it runs under.
DispatchCallback = Callable[["Task", "TypePolicy"], None]


@dataclass
class SchedulerConfig:
    """Tuning knobs for the scheduler."""

    tick_interval_seconds: float = 0.5


class Scheduler:
    """Moves ready tasks from the queue to the executor."""

    def __init__(
        self,
        registry: PolicyRegistry,
        queue: ReadyQueue,
        tracker: ConcurrencyTracker,
        table: TaskTable,
        clock: Clock,
        dispatch: DispatchCallback,
        config: SchedulerConfig | None = None,
    ) -> None:
        self._config = config or SchedulerConfig()
        self._registry = registry
        self._queue = queue
        self._tracker = tracker
        self._table = table
        self._clock = clock
        self._dispatch = dispatch
        self._wake = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def tick(self) -> list[Task]:
        """Run one dispatch pass and return the tasks dispatched, in order."""
        now = self._clock.now()
        dispatched: list[Task] = []
        for task_type in self._registry.types:
            policy = self._registry.get_policy(task_type)
            if not policy.enabled:
                continue
            free = self._tracker.free_slots(task_type)
            if free <= 0:
                continue
            for task in self._queue.take_eligible(task_type, free, now):
                if not self._tracker.try_reserve(task_type):
                    self._queue.push_back(task)
                    continue
                self._mark_running(task, policy)
                dispatched.append(task)
                self._dispatch(task, policy)
        if dispatched:
            logger.debug("Tick dispatched %d task(s)", len(dispatched))
        return dispatched

    def wake(self) -> None:
        """Ask the loop to tick now instead of waiting out the interval."""
        self._wake.set()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run(), name="taskweave-scheduler")
        logger.info(
            "Scheduler started (tick every %.3fs)", self._config.tick_interval_seconds
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._wake.set()
        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
        logger.info("Scheduler stopped")

    # ------------------------------------------------------------------

    def _mark_running(self, task: Task, policy: TypePolicy) -> None:
        if not task.max_retries_override:
            # Never below retries already spent.
            task.max_retries = max(policy.max_retries, task.retry_count)
        task.started_at = self._clock.now()
        task.completed_at = None
        task.attempts += 1
        self._table.transition(task, TaskStatus.RUNNING)

    async def _run(self) -> None:
        while self._running:
            self._wake.clear()
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._wake.wait(), timeout=self._config.tick_interval_seconds
                )
