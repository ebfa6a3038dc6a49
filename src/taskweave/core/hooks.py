"""Execution hooks: middleware around each handler attempt.

Hooks inject cross-cutting logic (tracing, auditing, payload
enrichment) that runs before and after every attempt without touching
the handlers themselves.

Usage::

    class AuditHook(TaskHook):
        async def after_task(self, task, error):
            audit.write(task.id, task.status.value, error)

    engine = TaskEngine(hooks=[AuditHook()])
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskweave.core.models import Task


class TaskHook:
    """Base class for task execution hooks.

    Both methods are no-ops by default.  Exceptions raised by a hook are
    logged by the engine and never change the task's outcome.
    """

    async def before_task(self, task: Task) -> None:
        """Called after the task is marked running, before the handler."""

    async def after_task(self, task: Task, error: Exception | None) -> None:
        """Called once the attempt's outcome has been recorded.

        *error* is ``None`` when the handler succeeded.
        """
