"""In-memory task table.

The single authoritative record of every task the engine knows about,
keyed by id.  All status changes go through :meth:`TaskTable.transition`
so the state machine is enforced in one place and the per-type status
counters stay consistent with the records.

Terminal tasks are retained for a bounded history window; once more
than ``history_limit`` terminal tasks accumulate the oldest are evicted.
"""

from __future__ import annotations

import copy
import threading
from collections import OrderedDict, defaultdict
from typing import TYPE_CHECKING

from taskweave.core.errors import InvalidTransitionError, NotFoundError, ValidationError
from taskweave.core.models import ALLOWED_TRANSITIONS, Task, TaskStatus

if TYPE_CHECKING:
    from collections.abc import Iterable


class TaskTable:
    """Tasks by id, with per-type status counts and a terminal history."""

    def __init__(self, history_limit: int = 1000) -> None:
        if history_limit < 1:
            raise ValidationError("history_limit must be >= 1")
        self._history_limit = history_limit
        self._tasks: dict[str, Task] = {}
        # Terminal task ids in the order they finished.
        self._history: OrderedDict[str, None] = OrderedDict()
        self._counts: dict[str, dict[TaskStatus, int]] = defaultdict(
            lambda: dict.fromkeys(TaskStatus, 0)
        )
        self._lock = threading.RLock()

    def add(self, task: Task) -> None:
        with self._lock:
            if task.id in self._tasks:
                raise ValidationError(f"Duplicate task id '{task.id}'")
            self._tasks[task.id] = task
            self._counts[task.type][task.status] += 1
            if task.status.is_terminal:
                self._remember_terminal(task.id)

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise NotFoundError(f"Unknown task id '{task_id}'") from None

    def snapshot(self, task_id: str) -> Task:
        """Return a deep copy of the task so callers cannot mutate state."""
        with self._lock:
            return copy.deepcopy(self.get(task_id))

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def transition(self, task: Task, new_status: TaskStatus) -> None:
        """Move *task* to *new_status*, enforcing the state machine."""
        with self._lock:
            old_status = task.status
            if new_status not in ALLOWED_TRANSITIONS[old_status]:
                raise InvalidTransitionError(
                    f"Task {task.id}: {old_status.value} -> {new_status.value} is not allowed"
                )
            task.status = new_status
            counts = self._counts[task.type]
            counts[old_status] -= 1
            counts[new_status] += 1
            if old_status.is_terminal:
                self._history.pop(task.id, None)
            if new_status.is_terminal:
                self._remember_terminal(task.id)

    def tasks_with_status(self, status: TaskStatus) -> list[Task]:
        with self._lock:
            return [t for t in self._tasks.values() if t.status == status]

    def history(self, limit: int = 100) -> list[Task]:
        """Terminal tasks, most recently finished first (copies)."""
        with self._lock:
            ids = list(reversed(self._history))[: max(limit, 0)]
            return [copy.deepcopy(self._tasks[i]) for i in ids]

    def purge(self, statuses: Iterable[TaskStatus]) -> list[str]:
        """Forget terminal tasks in *statuses*.  Returns the ids dropped."""
        wanted = set(statuses)
        if any(not s.is_terminal for s in wanted):
            raise ValidationError("Only terminal tasks can be purged")
        with self._lock:
            doomed = [i for i in self._history if self._tasks[i].status in wanted]
            for task_id in doomed:
                self._drop(task_id)
            return doomed

    def counts(self, task_type: str | None = None) -> dict[TaskStatus, int]:
        """Current number of tasks per status, overall or for one type."""
        with self._lock:
            if task_type is not None:
                return dict(self._counts.get(task_type, dict.fromkeys(TaskStatus, 0)))
            totals = dict.fromkeys(TaskStatus, 0)
            for per_type in self._counts.values():
                for status, n in per_type.items():
                    totals[status] += n
            return totals

    # ------------------------------------------------------------------

    def _remember_terminal(self, task_id: str) -> None:
        self._history[task_id] = None
        self._history.move_to_end(task_id)
        while len(self._history) > self._history_limit:
            oldest = next(iter(self._history))
            self._drop(oldest)

    def _drop(self, task_id: str) -> None:
        task = self._tasks.pop(task_id)
        self._history.pop(task_id, None)
        self._counts[task.type][task.status] -= 1
