"""Error taxonomy for the task engine.

``ValidationError`` and ``NotFoundError`` are raised synchronously at the
call site.  ``HandlerError`` (and its ``HandlerTimeoutError`` subtype)
never reach the caller of :meth:`TaskEngine.add_task`; they are recorded
on the task and drive the retry manager.
"""

from __future__ import annotations


class TaskweaveError(Exception):
    """Base class for all engine errors."""


class ValidationError(TaskweaveError):
    """Invalid input: unknown type, bad policy values, rejected payload."""


class NotFoundError(TaskweaveError):
    """An operation referenced an unknown task id or task type."""


class InvalidTransitionError(TaskweaveError):
    """A task was moved along an edge the state machine does not allow."""


class HandlerError(TaskweaveError):
    """The registered handler raised while processing a task."""

    def __init__(self, task_id: str, message: str) -> None:
        super().__init__(message)
        self.task_id = task_id


class HandlerTimeoutError(HandlerError):
    """The handler exceeded its policy timeout."""

    def __init__(self, task_id: str, timeout: float) -> None:
        super().__init__(task_id, f"Handler timed out after {timeout:g}s")
        self.timeout = timeout
