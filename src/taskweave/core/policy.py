"""Type policy registry.

Holds the per-type :class:`TypePolicy` together with the handler that
does the work and, optionally, a pydantic model that payloads must
satisfy.  Everything else in the engine consults this registry.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import pydantic

from taskweave.core.errors import NotFoundError, ValidationError
from taskweave.core.models import BUILTIN_POLICIES, TypePolicy

if TYPE_CHECKING:
    from taskweave.core.models import TaskHandler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TypeRegistration:
    """A registered task type."""

    policy: TypePolicy
    handler: TaskHandler
    payload_model: type[pydantic.BaseModel] | None = None


class PolicyRegistry:
    """Thread-safe map of task type → registration."""

    def __init__(self) -> None:
        self._types: dict[str, TypeRegistration] = {}
        self._lock = threading.Lock()

    def register_type(
        self,
        task_type: str,
        handler: TaskHandler,
        policy: TypePolicy | None = None,
        payload_model: type[pydantic.BaseModel] | None = None,
    ) -> TypePolicy:
        """Register *handler* for *task_type*.

        When *policy* is omitted the built-in preset for the type is used,
        falling back to :class:`TypePolicy` defaults.  Re-registering a
        type replaces its handler and policy.
        """
        if not callable(handler):
            raise ValidationError(f"Handler for type '{task_type}' is not callable")
        if policy is None:
            policy = BUILTIN_POLICIES.get(task_type, TypePolicy(type=task_type))
        elif policy.type != task_type:
            policy = TypePolicy(**{**policy.as_dict(), "type": task_type})
        policy.validate()

        with self._lock:
            self._types[task_type] = TypeRegistration(policy, handler, payload_model)
        logger.info(
            "Registered task type %s (concurrency=%d, max_retries=%d)",
            task_type,
            policy.concurrency,
            policy.max_retries,
        )
        return policy

    def update_policy(self, task_type: str, **changes: Any) -> TypePolicy:
        """Merge *changes* into the policy of *task_type*.

        Validation happens before the swap, so a rejected update leaves
        the current policy untouched.
        """
        with self._lock:
            registration = self._types.get(task_type)
            if registration is None:
                raise NotFoundError(f"Unknown task type '{task_type}'")
            updated = registration.policy.merge(**changes)
            updated.validate()
            self._types[task_type] = TypeRegistration(
                updated, registration.handler, registration.payload_model
            )
        logger.info("Updated policy for %s: %s", task_type, changes)
        return updated

    def get_policy(self, task_type: str) -> TypePolicy:
        return self.get(task_type).policy

    def get(self, task_type: str) -> TypeRegistration:
        try:
            return self._types[task_type]
        except KeyError:
            raise NotFoundError(f"Unknown task type '{task_type}'") from None

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._types

    @property
    def types(self) -> list[str]:
        return list(self._types)

    def policies(self) -> dict[str, TypePolicy]:
        return {name: reg.policy for name, reg in self._types.items()}

    def validate_payload(self, task_type: str, payload: Any) -> Any:
        """Check *payload* against the type's payload model, if it has one.

        Returns the value the handler will receive: a model instance when
        a model is registered, the payload untouched otherwise.
        """
        model = self.get(task_type).payload_model
        if model is None:
            return payload
        try:
            return model.model_validate(payload)
        except pydantic.ValidationError as exc:
            raise ValidationError(
                f"Payload rejected for type '{task_type}': {exc.error_count()} error(s)"
            ) from exc
