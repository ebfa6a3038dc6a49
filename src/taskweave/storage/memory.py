"""In-memory implementation of :class:`TaskStore`.

Survives an engine restart within the same process, which is enough
for development and for exercising recovery in tests.
"""

from __future__ import annotations

import copy
from typing import TYPE_CHECKING

from taskweave.core.models import TaskStatus
from taskweave.storage.base import TaskStore

if TYPE_CHECKING:
    from taskweave.core.models import Task

_UNFINISHED = (TaskStatus.PENDING, TaskStatus.RUNNING)


class InMemoryTaskStore(TaskStore):
    """Dictionary-backed task store."""

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}

    async def save(self, task: Task) -> None:
        self._tasks[task.id] = copy.deepcopy(task)

    async def get(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return copy.deepcopy(task) if task else None

    async def load_unfinished(self) -> list[Task]:
        return [copy.deepcopy(t) for t in self._tasks.values() if t.status in _UNFINISHED]

    async def delete(self, task_id: str) -> bool:
        return self._tasks.pop(task_id, None) is not None
