"""Engine configuration.

Defaults live on :class:`EngineConfig`; deployments override them with
``TASKWEAVE_*`` environment variables via :meth:`EngineConfig.from_env`.

==================================  ===========================  =========
Variable                            Field                        Default
==================================  ===========================  =========
``TASKWEAVE_TICK_INTERVAL``         tick_interval_seconds        0.5
``TASKWEAVE_HISTORY_LIMIT``         history_limit                1000
``TASKWEAVE_LATENCY_WINDOW``        latency_window               100
``TASKWEAVE_THROUGHPUT_WINDOW``     throughput_window_seconds    60
``TASKWEAVE_JITTER_RATIO``          jitter_ratio                 0.1
``TASKWEAVE_STORAGE``               storage (memory | sqlite)    memory
``TASKWEAVE_DB_PATH``               db_path                      taskweave.db
``TASKWEAVE_LOG_LEVEL``             log_level                    INFO
``TASKWEAVE_LOG_JSON``              log_json                     true
==================================  ===========================  =========
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

from taskweave.core.errors import ValidationError

if TYPE_CHECKING:
    from taskweave.storage.base import TaskStore

_TRUE = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True)
class EngineConfig:
    """Tuning knobs for :class:`~taskweave.core.engine.TaskEngine`."""

    tick_interval_seconds: float = 0.5
    history_limit: int = 1000
    latency_window: int = 100
    throughput_window_seconds: float = 60.0
    jitter_ratio: float = 0.1
    storage: str = "memory"
    db_path: str = "taskweave.db"
    log_level: str = "INFO"
    log_json: bool = True

    def __post_init__(self) -> None:
        if self.tick_interval_seconds <= 0:
            raise ValidationError("tick_interval_seconds must be > 0")
        if self.history_limit < 1:
            raise ValidationError("history_limit must be >= 1")
        if self.latency_window < 1:
            raise ValidationError("latency_window must be >= 1")
        if self.throughput_window_seconds <= 0:
            raise ValidationError("throughput_window_seconds must be > 0")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValidationError("jitter_ratio must be within [0, 1]")
        if self.storage not in ("memory", "sqlite"):
            raise ValidationError(f"Unknown storage backend '{self.storage}'")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineConfig:
        env = os.environ if environ is None else environ
        defaults = cls()
        try:
            return cls(
                tick_interval_seconds=float(
                    env.get("TASKWEAVE_TICK_INTERVAL", defaults.tick_interval_seconds)
                ),
                history_limit=int(env.get("TASKWEAVE_HISTORY_LIMIT", defaults.history_limit)),
                latency_window=int(env.get("TASKWEAVE_LATENCY_WINDOW", defaults.latency_window)),
                throughput_window_seconds=float(
                    env.get("TASKWEAVE_THROUGHPUT_WINDOW", defaults.throughput_window_seconds)
                ),
                jitter_ratio=float(env.get("TASKWEAVE_JITTER_RATIO", defaults.jitter_ratio)),
                storage=env.get("TASKWEAVE_STORAGE", defaults.storage).lower(),
                db_path=env.get("TASKWEAVE_DB_PATH", defaults.db_path),
                log_level=env.get("TASKWEAVE_LOG_LEVEL", defaults.log_level).upper(),
                log_json=env.get("TASKWEAVE_LOG_JSON", "true").lower() in _TRUE,
            )
        except ValueError as exc:
            raise ValidationError(f"Invalid TASKWEAVE_* setting: {exc}") from exc

    def build_store(self) -> TaskStore | None:
        """The durable store this config selects, or ``None`` for memory only."""
        if self.storage == "sqlite":
            from taskweave.storage.sqlite import SQLiteTaskStore

            return SQLiteTaskStore(db_path=self.db_path)
        return None
