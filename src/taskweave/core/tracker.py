"""Per-type running counters.

The only way to change a counter is :meth:`ConcurrencyTracker.try_reserve`
or :meth:`ConcurrencyTracker.release`; both hold the same lock across
check and update so two dispatch attempts can never both see the last
free slot.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskweave.core.policy import PolicyRegistry

logger = logging.getLogger(__name__)


class ConcurrencyTracker:
    """Counts running tasks per type against the registry's limits."""

    def __init__(self, registry: PolicyRegistry) -> None:
        self._registry = registry
        self._running: dict[str, int] = defaultdict(int)
        self._peak: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def try_reserve(self, task_type: str) -> bool:
        """Claim a slot for *task_type* if one is free."""
        limit = self._registry.get_policy(task_type).concurrency
        with self._lock:
            if self._running[task_type] >= limit:
                return False
            self._running[task_type] += 1
            self._peak[task_type] = max(self._peak[task_type], self._running[task_type])
            return True

    def release(self, task_type: str) -> None:
        with self._lock:
            if self._running[task_type] <= 0:
                # A release without a reservation means a bookkeeping bug upstream.
                logger.error("Release of %s with no running reservation", task_type)
                return
            self._running[task_type] -= 1

    def running(self, task_type: str) -> int:
        return self._running.get(task_type, 0)

    def free_slots(self, task_type: str) -> int:
        limit = self._registry.get_policy(task_type).concurrency
        return max(limit - self.running(task_type), 0)

    def peak(self, task_type: str) -> int:
        """Highest concurrent reservation count ever observed for the type."""
        return self._peak.get(task_type, 0)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._running)
