"""Handler invocation with a timeout.

The executor only runs the handler; routing the outcome (completion,
retry, permanent failure) and releasing the concurrency slot is the
engine's job.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import TYPE_CHECKING, Any

from taskweave.core.errors import HandlerError, HandlerTimeoutError
from taskweave.observability.logging import task_log_context

if TYPE_CHECKING:
    from taskweave.core.models import Task, TaskHandler, TypePolicy

logger = logging.getLogger(__name__)


class Executor:
    """Runs a task's handler under its policy timeout.

    Coroutine handlers run on the event loop and are cancelled when the
    timeout fires; the :class:`asyncio.CancelledError` raised inside the
    handler is its cancellation signal.  Plain callables run in a worker
    thread; a thread cannot be interrupted, so on timeout its eventual
    result is discarded.
    """

    async def invoke(self, task: Task, handler: TaskHandler, policy: TypePolicy) -> Any:
        """Return the handler's result or raise :class:`HandlerError`."""
        with task_log_context(task_id=task.id, task_type=task.type):
            logger.debug("Invoking handler for %s (attempt %d)", task.id, task.attempts)
            try:
                return await asyncio.wait_for(
                    self._call(handler, task.payload), timeout=policy.timeout
                )
            except TimeoutError:
                raise HandlerTimeoutError(task.id, policy.timeout) from None
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                raise HandlerError(task.id, f"{type(exc).__name__}: {exc}") from exc

    @staticmethod
    async def _call(handler: TaskHandler, payload: Any) -> Any:
        if inspect.iscoroutinefunction(handler):
            return await handler(payload)
        result = await asyncio.to_thread(handler, payload)
        if inspect.isawaitable(result):
            return await result
        return result
