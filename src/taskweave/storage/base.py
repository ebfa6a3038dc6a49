"""Abstract durable task store (ports-and-adapters).

The engine keeps its working state in memory; a :class:`TaskStore`
receives a write-through copy of every task on every status change so
that unfinished work survives a process restart.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskweave.core.models import Task


class TaskStore(ABC):
    """Abstract repository for task persistence."""

    @abstractmethod
    async def save(self, task: Task) -> None: ...

    @abstractmethod
    async def get(self, task_id: str) -> Task | None: ...

    @abstractmethod
    async def load_unfinished(self) -> list[Task]:
        """Tasks whose last saved status was pending or running."""

    @abstractmethod
    async def delete(self, task_id: str) -> bool: ...

    async def close(self) -> None:
        """Release backend resources.  No-op by default."""
