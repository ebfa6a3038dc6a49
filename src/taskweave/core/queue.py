"""Priority-ordered ready queue.

One binary heap per task type, ordered by ``(priority weight desc,
created_at asc, insertion sequence)``.  Removal is lazy: a removed
entry is marked dead and skipped when it reaches the top.

A task whose ``ready_at`` is still in the future stays in the heap and
is simply passed over by :meth:`ReadyQueue.take_eligible`, so
``ready_at`` is the only thing deciding when a retry becomes runnable.
"""

from __future__ import annotations

import heapq
import itertools
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from taskweave.core.models import TaskStatus

if TYPE_CHECKING:
    from datetime import datetime

    from taskweave.core.models import Task


@dataclass(order=True)
class _Entry:
    sort_key: tuple[int, datetime, int]
    task: Task = field(compare=False)
    removed: bool = field(default=False, compare=False)


class ReadyQueue:
    """Pending tasks grouped by type, highest priority first."""

    def __init__(self) -> None:
        self._heaps: dict[str, list[_Entry]] = {}
        self._entries: dict[str, _Entry] = {}
        self._sequence = itertools.count()
        # Sort keys of the tasks handed out by the latest take, per type.
        self._taken: dict[str, dict[str, tuple[int, datetime, int]]] = {}
        self._lock = threading.Lock()

    def enqueue(self, task: Task) -> None:
        with self._lock:
            self._push(task)

    def push_back(self, task: Task) -> None:
        """Return a task that was taken but could not be dispatched.

        The task gets its old sort key back, so it is dispatched ahead of
        anything enqueued after it.
        """
        with self._lock:
            sort_key = self._taken.get(task.type, {}).pop(task.id, None)
            self._push(task, sort_key)

    def take_eligible(self, task_type: str, max_count: int, now: datetime) -> list[Task]:
        """Pop up to *max_count* pending tasks of *task_type* ready at *now*.

        Tasks come back in dispatch order.  Tasks that are not ready yet
        are left in the queue in their original position.
        """
        if max_count <= 0:
            return []
        with self._lock:
            heap = self._heaps.get(task_type)
            if not heap:
                return []
            taken: list[Task] = []
            deferred: list[_Entry] = []
            keys = self._taken[task_type] = {}
            while heap and len(taken) < max_count:
                entry = heapq.heappop(heap)
                if entry.removed:
                    continue
                task = entry.task
                if task.status != TaskStatus.PENDING:
                    self._entries.pop(task.id, None)
                    continue
                if task.ready_at is not None and task.ready_at > now:
                    deferred.append(entry)
                    continue
                self._entries.pop(task.id, None)
                keys[task.id] = entry.sort_key
                taken.append(task)
            for entry in deferred:
                heapq.heappush(heap, entry)
            return taken

    def remove(self, task_id: str) -> bool:
        """Drop *task_id* from the queue.  Returns ``False`` if absent."""
        with self._lock:
            entry = self._entries.pop(task_id, None)
            if entry is None:
                return False
            entry.removed = True
            return True

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def size(self, task_type: str | None = None) -> int:
        with self._lock:
            if task_type is None:
                return len(self._entries)
            return sum(1 for e in self._entries.values() if e.task.type == task_type)

    def clear(self) -> list[Task]:
        """Empty the queue and return the tasks that were in it."""
        with self._lock:
            tasks = [e.task for e in self._entries.values()]
            self._heaps.clear()
            self._taken.clear()
            self._entries.clear()
            return tasks

    # ------------------------------------------------------------------

    def _push(self, task: Task, sort_key: tuple[int, datetime, int] | None = None) -> None:
        existing = self._entries.get(task.id)
        if existing is not None:
            existing.removed = True
        entry = _Entry(
            sort_key=sort_key or (-task.priority.weight, task.created_at, next(self._sequence)),
            task=task,
        )
        self._entries[task.id] = entry
        heapq.heappush(self._heaps.setdefault(task.type, []), entry)
