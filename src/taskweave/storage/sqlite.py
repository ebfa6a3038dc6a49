"""SQLite-backed implementation of :class:`TaskStore`.

Provides durable persistence that survives process restarts.  Uses
Python's built-in :mod:`sqlite3` module so no external database server
is required.

Payloads and results are stored as JSON.  Pydantic payload models are
dumped to plain data; the engine validates them again when it recovers
the task.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

import pydantic

from taskweave.core.models import Task, TaskPriority, TaskStatus
from taskweave.storage.base import TaskStore

_DEFAULT_DB_PATH = "taskweave.db"

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS tasks (
    id                   TEXT PRIMARY KEY,
    type                 TEXT NOT NULL,
    priority             TEXT NOT NULL,
    status               TEXT NOT NULL,
    payload              TEXT,
    created_at           TEXT NOT NULL,
    ready_at             TEXT NOT NULL,
    started_at           TEXT,
    completed_at         TEXT,
    retry_count          INTEGER NOT NULL DEFAULT 0,
    max_retries          INTEGER NOT NULL DEFAULT 0,
    max_retries_override INTEGER NOT NULL DEFAULT 0,
    attempts             INTEGER NOT NULL DEFAULT 0,
    last_error           TEXT,
    error_history        TEXT NOT NULL DEFAULT '[]',
    result               TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
"""

_COLUMNS = (
    "id, type, priority, status, payload, created_at, ready_at, started_at, completed_at, "
    "retry_count, max_retries, max_retries_override, attempts, last_error, error_history, result"
)


def _to_json(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, pydantic.BaseModel):
        value = value.model_dump(mode="json")
    return json.dumps(value, default=str)


def _from_json(raw: str | None) -> Any:
    return json.loads(raw) if raw is not None else None


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


class SQLiteTaskStore(TaskStore):
    """SQLite-backed task store for crash recovery."""

    def __init__(self, db_path: str = _DEFAULT_DB_PATH) -> None:
        self._db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    async def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # TaskStore interface
    # ------------------------------------------------------------------

    async def save(self, task: Task) -> None:
        self._conn.execute(
            f"INSERT OR REPLACE INTO tasks ({_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                task.id,
                task.type,
                task.priority.value,
                task.status.value,
                _to_json(task.payload),
                task.created_at.isoformat(),
                _ts(task.ready_at) or task.created_at.isoformat(),
                _ts(task.started_at),
                _ts(task.completed_at),
                task.retry_count,
                task.max_retries,
                int(task.max_retries_override),
                task.attempts,
                task.last_error,
                json.dumps(task.error_history),
                _to_json(task.result),
            ),
        )
        self._conn.commit()

    async def get(self, task_id: str) -> Task | None:
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM tasks WHERE id = ?", (task_id,)
        ).fetchone()
        return self._row_to_task(row) if row else None

    async def load_unfinished(self) -> list[Task]:
        rows = self._conn.execute(
            f"SELECT {_COLUMNS} FROM tasks WHERE status IN (?, ?) ORDER BY created_at",
            (TaskStatus.PENDING.value, TaskStatus.RUNNING.value),
        ).fetchall()
        return [self._row_to_task(r) for r in rows]

    async def delete(self, task_id: str) -> bool:
        cursor = self._conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        self._conn.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_task(row: Any) -> Task:
        (
            task_id,
            task_type,
            priority,
            status,
            payload,
            created_at,
            ready_at,
            started_at,
            completed_at,
            retry_count,
            max_retries,
            max_retries_override,
            attempts,
            last_error,
            error_history,
            result,
        ) = row
        return Task(
            id=task_id,
            type=task_type,
            priority=TaskPriority(priority),
            status=TaskStatus(status),
            payload=_from_json(payload),
            created_at=datetime.fromisoformat(created_at),
            ready_at=datetime.fromisoformat(ready_at),
            started_at=_parse_ts(started_at),
            completed_at=_parse_ts(completed_at),
            retry_count=retry_count,
            max_retries=max_retries,
            max_retries_override=bool(max_retries_override),
            attempts=attempts,
            last_error=last_error,
            error_history=json.loads(error_history),
            result=_from_json(result),
        )
