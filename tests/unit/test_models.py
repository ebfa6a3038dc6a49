"""Unit tests for the task model and the type policy registry."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pydantic
import pytest

from taskweave.core.errors import NotFoundError, ValidationError
from taskweave.core.models import (
    ALLOWED_TRANSITIONS,
    BUILTIN_POLICIES,
    Task,
    TaskPriority,
    TaskStatus,
    TypePolicy,
)
from taskweave.core.policy import PolicyRegistry


async def _noop(payload: object) -> None:
    pass


class EmailPayload(pydantic.BaseModel):
    to: str
    subject: str = ""


class TestTask:
    def test_defaults(self) -> None:
        task = Task(type="email")
        assert task.status == TaskStatus.PENDING
        assert task.priority == TaskPriority.MEDIUM
        assert task.retry_count == 0
        assert task.attempts == 0
        assert task.error_history == []
        assert task.id.startswith("task_")

    def test_ready_at_defaults_to_created_at(self) -> None:
        created = datetime(2024, 5, 1, tzinfo=UTC)
        assert Task(type="email", created_at=created).ready_at == created

    def test_ids_are_unique(self) -> None:
        assert len({Task(type="x").id for _ in range(100)}) == 100

    def test_duration_ms(self) -> None:
        start = datetime(2024, 1, 1, tzinfo=UTC)
        task = Task(type="x", started_at=start, completed_at=start + timedelta(seconds=1.5))
        assert task.duration_ms == pytest.approx(1500.0)
        assert Task(type="x").duration_ms is None


class TestTaskStatus:
    def test_terminal_statuses(self) -> None:
        assert {s for s in TaskStatus if s.is_terminal} == {
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        }

    def test_completed_and_cancelled_are_final(self) -> None:
        assert ALLOWED_TRANSITIONS[TaskStatus.COMPLETED] == frozenset()
        assert ALLOWED_TRANSITIONS[TaskStatus.CANCELLED] == frozenset()

    def test_running_cannot_be_cancelled(self) -> None:
        assert TaskStatus.CANCELLED not in ALLOWED_TRANSITIONS[TaskStatus.RUNNING]


class TestTaskPriority:
    def test_weights_descend(self) -> None:
        weights = [p.weight for p in TaskPriority]
        assert weights == sorted(weights, reverse=True)
        assert TaskPriority.CRITICAL.weight > TaskPriority.LOW.weight


class TestTypePolicy:
    def test_defaults_are_valid(self) -> None:
        TypePolicy(type="x").validate()

    @pytest.mark.parametrize(
        "changes",
        [
            {"concurrency": 0},
            {"max_retries": -1},
            {"timeout": 0},
            {"retry_delay_base": -1.0},
            {"retry_delay_base": 10.0, "retry_delay_max": 5.0},
            {"concurrency": 1.5},
            {"concurrency": "3"},
            {"concurrency": True},
            {"max_retries": 2.0},
            {"timeout": "30"},
            {"timeout": float("nan")},
            {"retry_delay_max": None},
            {"enabled": "no"},
        ],
    )
    def test_invalid_values_rejected(self, changes: dict) -> None:
        with pytest.raises(ValidationError):
            TypePolicy(type="x").merge(**changes).validate()

    def test_merge_keeps_unchanged_fields(self) -> None:
        policy = TypePolicy(type="x", concurrency=4, timeout=9.0)
        merged = policy.merge(concurrency=2)
        assert merged.concurrency == 2
        assert merged.timeout == 9.0
        assert policy.concurrency == 4

    def test_merge_rejects_unknown_fields(self) -> None:
        with pytest.raises(ValidationError, match="colour"):
            TypePolicy(type="x").merge(colour="blue")

    def test_merge_cannot_change_type(self) -> None:
        with pytest.raises(ValidationError):
            TypePolicy(type="x").merge(type="y")

    def test_builtin_presets_valid(self) -> None:
        assert set(BUILTIN_POLICIES) == {
            "email",
            "notification",
            "file_processing",
            "data_sync",
            "cleanup",
            "analytics",
        }
        for policy in BUILTIN_POLICIES.values():
            policy.validate()


class TestPolicyRegistry:
    def test_register_uses_builtin_preset(self) -> None:
        registry = PolicyRegistry()
        policy = registry.register_type("email", _noop)
        assert policy == BUILTIN_POLICIES["email"]

    def test_register_unknown_type_gets_defaults(self) -> None:
        registry = PolicyRegistry()
        policy = registry.register_type("resize", _noop)
        assert policy == TypePolicy(type="resize")

    def test_register_retypes_mismatched_policy(self) -> None:
        registry = PolicyRegistry()
        policy = registry.register_type("a", _noop, TypePolicy(type="b", concurrency=3))
        assert policy.type == "a"
        assert policy.concurrency == 3

    def test_register_rejects_invalid_policy(self) -> None:
        registry = PolicyRegistry()
        with pytest.raises(ValidationError):
            registry.register_type("a", _noop, TypePolicy(type="a", concurrency=0))
        assert "a" not in registry

    def test_register_rejects_non_callable(self) -> None:
        with pytest.raises(ValidationError):
            PolicyRegistry().register_type("a", "not a function")  # type: ignore[arg-type]

    def test_update_policy(self) -> None:
        registry = PolicyRegistry()
        registry.register_type("a", _noop)
        updated = registry.update_policy("a", concurrency=7, enabled=False)
        assert registry.get_policy("a") == updated
        assert updated.concurrency == 7
        assert updated.enabled is False

    def test_rejected_update_leaves_policy_untouched(self) -> None:
        registry = PolicyRegistry()
        before = registry.register_type("a", _noop)
        with pytest.raises(ValidationError):
            registry.update_policy("a", concurrency=-1)
        assert registry.get_policy("a") == before

    def test_unknown_type(self) -> None:
        registry = PolicyRegistry()
        with pytest.raises(NotFoundError):
            registry.get_policy("missing")
        with pytest.raises(NotFoundError):
            registry.update_policy("missing", concurrency=2)

    def test_payload_model_validation(self) -> None:
        registry = PolicyRegistry()
        registry.register_type("email", _noop, payload_model=EmailPayload)
        payload = registry.validate_payload("email", {"to": "a@b.c"})
        assert isinstance(payload, EmailPayload)
        assert payload.to == "a@b.c"
        with pytest.raises(ValidationError, match="email"):
            registry.validate_payload("email", {"subject": "missing to"})

    def test_payload_passthrough_without_model(self) -> None:
        registry = PolicyRegistry()
        registry.register_type("a", _noop)
        payload = {"anything": [1, 2]}
        assert registry.validate_payload("a", payload) is payload
