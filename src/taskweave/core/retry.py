"""Retry decisions with exponential backoff and bounded jitter.

On a failed attempt the manager either grants a retry, pushing the
task's ``ready_at`` into the future and putting it back in the ready
queue, or marks the task permanently failed.  There is no separate
retry timer: the ready queue's ``ready_at <= now`` filter is what keeps
a retrying task from running early.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from taskweave.core.errors import ValidationError
from taskweave.core.models import TaskStatus

if TYPE_CHECKING:
    from taskweave.core.clock import Clock
    from taskweave.core.models import Task, TypePolicy
    from taskweave.core.queue import ReadyQueue
    from taskweave.core.tasks import TaskTable

logger = logging.getLogger(__name__)


def backoff_delay(
    policy: TypePolicy,
    retry_count: int,
    jitter_ratio: float = 0.1,
    rng: random.Random | None = None,
) -> float:
    """Seconds to wait before retry number *retry_count* (1-based).

    ``min(base * 2**(retry_count - 1) + jitter, retry_delay_max)`` where
    jitter is uniform in ``[0, jitter_ratio * raw_delay]``.  With
    ``jitter_ratio <= 1`` the result never decreases as *retry_count*
    grows.
    """
    if retry_count < 1:
        raise ValueError("retry_count is 1-based")
    raw = policy.retry_delay_base * (2 ** (retry_count - 1))
    jitter = (rng or random).uniform(0, jitter_ratio * raw) if jitter_ratio else 0.0
    return min(raw + jitter, policy.retry_delay_max)


@dataclass(frozen=True)
class RetryDecision:
    """What the manager did with a failed attempt."""

    retry: bool
    delay_seconds: float = 0.0


class RetryManager:
    """Routes failed attempts to a delayed retry or a permanent failure."""

    def __init__(
        self,
        table: TaskTable,
        queue: ReadyQueue,
        clock: Clock,
        jitter_ratio: float = 0.1,
        rng: random.Random | None = None,
    ) -> None:
        if not 0 <= jitter_ratio <= 1:
            raise ValidationError("jitter_ratio must be within [0, 1]")
        self._table = table
        self._queue = queue
        self._clock = clock
        self._jitter_ratio = jitter_ratio
        self._rng = rng or random.Random()

    def handle_failure(self, task: Task, error: Exception, policy: TypePolicy) -> RetryDecision:
        """Record *error* on *task* and decide whether it runs again."""
        message = str(error) or type(error).__name__
        task.last_error = message
        task.error_history.append(message)
        now = self._clock.now()

        if task.retry_count < task.max_retries:
            task.retry_count += 1
            delay = backoff_delay(policy, task.retry_count, self._jitter_ratio, self._rng)
            task.ready_at = now + timedelta(seconds=delay)
            task.completed_at = now
            self._table.transition(task, TaskStatus.PENDING)
            self._queue.enqueue(task)
            logger.warning(
                "Task %s (%s) failed: %s; retry %d/%d in %.2fs",
                task.id,
                task.type,
                message,
                task.retry_count,
                task.max_retries,
                delay,
            )
            return RetryDecision(retry=True, delay_seconds=delay)

        task.completed_at = now
        self._table.transition(task, TaskStatus.FAILED)
        logger.error(
            "Task %s (%s) permanently failed after %d attempt(s): %s",
            task.id,
            task.type,
            task.attempts,
            message,
        )
        return RetryDecision(retry=False)
