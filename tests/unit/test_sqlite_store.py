"""Tests for the durable task stores and crash recovery."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pydantic
import pytest

from taskweave.config import EngineConfig
from taskweave.core.clock import ManualClock
from taskweave.core.engine import TaskEngine
from taskweave.core.models import Task, TaskPriority, TaskStatus
from taskweave.storage.memory import InMemoryTaskStore
from taskweave.storage.sqlite import SQLiteTaskStore


@pytest.fixture()
async def sqlite_store(tmp_path):
    """Create a SQLiteTaskStore backed by a temporary database."""
    s = SQLiteTaskStore(db_path=str(tmp_path / "test.db"))
    yield s
    await s.close()


class ResizePayload(pydantic.BaseModel):
    path: str
    width: int = 100


def _make_task(status: TaskStatus = TaskStatus.PENDING, **kw: object) -> Task:
    created = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
    return Task(
        type="resize",
        payload={"path": "/tmp/a.png"},
        priority=TaskPriority.HIGH,
        status=status,
        created_at=created,
        **kw,  # type: ignore[arg-type]
    )


class TestSQLiteTaskStore:
    @pytest.mark.asyncio
    async def test_save_and_get(self, sqlite_store: SQLiteTaskStore) -> None:
        started = datetime(2024, 3, 1, 12, 0, 5, tzinfo=UTC)
        task = _make_task(
            TaskStatus.FAILED,
            started_at=started,
            completed_at=started + timedelta(seconds=2),
            retry_count=2,
            max_retries=2,
            attempts=3,
            last_error="RuntimeError: disk full",
            error_history=["a", "b", "RuntimeError: disk full"],
        )
        await sqlite_store.save(task)

        loaded = await sqlite_store.get(task.id)
        assert loaded is not None
        assert loaded.id == task.id
        assert loaded.priority == TaskPriority.HIGH
        assert loaded.status == TaskStatus.FAILED
        assert loaded.payload == {"path": "/tmp/a.png"}
        assert loaded.created_at == task.created_at
        assert loaded.ready_at == task.created_at
        assert loaded.completed_at == task.completed_at
        assert loaded.error_history == task.error_history
        assert loaded.attempts == 3

    @pytest.mark.asyncio
    async def test_get_nonexistent(self, sqlite_store: SQLiteTaskStore) -> None:
        assert await sqlite_store.get("nonexistent") is None

    @pytest.mark.asyncio
    async def test_save_overwrites(self, sqlite_store: SQLiteTaskStore) -> None:
        task = _make_task()
        await sqlite_store.save(task)
        task.status = TaskStatus.RUNNING
        task.attempts = 1
        await sqlite_store.save(task)

        loaded = await sqlite_store.get(task.id)
        assert loaded is not None
        assert loaded.status == TaskStatus.RUNNING

    @pytest.mark.asyncio
    async def test_load_unfinished(self, sqlite_store: SQLiteTaskStore) -> None:
        pending = _make_task()
        running = _make_task(TaskStatus.RUNNING)
        done = _make_task(TaskStatus.COMPLETED)
        for t in (pending, running, done):
            await sqlite_store.save(t)

        unfinished = {t.id for t in await sqlite_store.load_unfinished()}
        assert unfinished == {pending.id, running.id}

    @pytest.mark.asyncio
    async def test_delete(self, sqlite_store: SQLiteTaskStore) -> None:
        task = _make_task()
        await sqlite_store.save(task)
        assert await sqlite_store.delete(task.id) is True
        assert await sqlite_store.delete(task.id) is False

    @pytest.mark.asyncio
    async def test_pydantic_payload_stored_as_json(self, sqlite_store: SQLiteTaskStore) -> None:
        task = _make_task(result={"bytes": 12})
        task.payload = ResizePayload(path="/tmp/b.png")
        await sqlite_store.save(task)

        loaded = await sqlite_store.get(task.id)
        assert loaded is not None
        assert loaded.payload == {"path": "/tmp/b.png", "width": 100}
        assert loaded.result == {"bytes": 12}

    @pytest.mark.asyncio
    async def test_persistence_across_instances(self, tmp_path) -> None:
        db_path = str(tmp_path / "persist.db")
        task = _make_task()

        first = SQLiteTaskStore(db_path=db_path)
        await first.save(task)
        await first.close()

        second = SQLiteTaskStore(db_path=db_path)
        loaded = await second.get(task.id)
        await second.close()
        assert loaded is not None
        assert loaded.id == task.id


class TestRecovery:
    async def test_write_through_on_every_transition(self) -> None:
        store = InMemoryTaskStore()
        engine = TaskEngine(clock=ManualClock(), store=store)

        async def ok(payload: object) -> str:
            return "ok"

        engine.register_type("x", ok)
        task_id = await engine.add_task("x")
        saved = await store.get(task_id)
        assert saved is not None
        assert saved.status == TaskStatus.PENDING

        engine.tick()
        await engine.drain()
        saved = await store.get(task_id)
        assert saved is not None
        assert saved.status == TaskStatus.COMPLETED
        assert saved.result == "ok"

    async def test_restart_requeues_unfinished(self) -> None:
        store = InMemoryTaskStore()
        clock = ManualClock()
        ran: list[object] = []

        async def work(payload: dict) -> None:
            ran.append(payload["n"])

        before = TaskEngine(clock=clock, store=store)
        before.register_type("x", work)
        pending_id = await before.add_task("x", {"n": 1})

        crashed = Task(type="x", payload={"n": 2}, status=TaskStatus.RUNNING, attempts=1)
        await store.save(crashed)

        after = TaskEngine(clock=clock, store=store)
        after.register_type("x", work)
        assert await after.recover() == 2
        assert after.get_task_status(crashed.id).status == TaskStatus.PENDING

        for _ in range(3):
            after.tick()
            await after.drain()

        assert sorted(ran) == [1, 2]
        assert after.get_task_status(pending_id).status == TaskStatus.COMPLETED
        assert after.get_task_status(crashed.id).attempts == 2

    async def test_recovery_skips_unregistered_types(self) -> None:
        store = InMemoryTaskStore()
        await store.save(Task(type="gone"))
        engine = TaskEngine(clock=ManualClock(), store=store)
        assert await engine.recover() == 0
        assert engine.get_metrics().pending_tasks == 0

    async def test_recovery_revalidates_payload(self, tmp_path) -> None:
        store = SQLiteTaskStore(db_path=str(tmp_path / "r.db"))
        received: list[object] = []

        async def resize(payload: ResizePayload) -> None:
            received.append(payload)

        first = TaskEngine(clock=ManualClock(), store=store)
        first.register_type("resize", resize, payload_model=ResizePayload)
        await first.add_task("resize", {"path": "/tmp/c.png", "width": 640})

        second = TaskEngine(clock=ManualClock(), store=store)
        second.register_type("resize", resize, payload_model=ResizePayload)
        assert await second.recover() == 1
        second.tick()
        await second.drain()
        await second.close()

        assert received == [ResizePayload(path="/tmp/c.png", width=640)]

    async def test_start_recovers_from_sqlite(self, tmp_path) -> None:
        config = EngineConfig(storage="sqlite", db_path=str(tmp_path / "s.db"))
        store = config.build_store()
        assert isinstance(store, SQLiteTaskStore)
        await store.save(Task(type="x", payload={"n": 1}))

        engine = TaskEngine(config=config, store=store)

        async def work(payload: dict) -> int:
            return payload["n"]

        engine.register_type("x", work)
        await engine.start()
        try:
            assert engine.get_metrics().total_tasks == 1
        finally:
            await engine.close()
