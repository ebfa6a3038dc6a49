"""FastAPI application factory.

Creates and configures the ASGI application around a :class:`TaskEngine`,
starting the engine's scheduler loop for the lifetime of the app and
bridging engine events to WebSocket clients.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI

from taskweave import __version__
from taskweave.api import routes
from taskweave.api.websocket import ConnectionManager
from taskweave.config import EngineConfig
from taskweave.core.engine import TaskEngine
from taskweave.observability.logging import configure_logging

logger = logging.getLogger(__name__)


def create_app(engine: TaskEngine | None = None, config: EngineConfig | None = None) -> FastAPI:
    """Build the configured FastAPI instance.

    When *engine* is omitted one is built from *config* (or the
    environment).  Handlers must be registered on the engine by the
    embedding application; until then ``POST /tasks`` answers 422.
    """
    if engine is None:
        config = config or EngineConfig.from_env()
        engine = TaskEngine(config=config, store=config.build_store())

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await engine.start()
        logger.info("Taskweave API ready")
        try:
            yield
        finally:
            await engine.close()

    app = FastAPI(
        title="Taskweave Background Task Engine",
        description=(
            "Priority-ordered background task queue with per-type concurrency "
            "limits, exponential-backoff retries and operational metrics."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    ws_manager = ConnectionManager()
    ws_manager.attach(engine.event_bus)

    app.state.engine = engine
    app.state.ws_manager = ws_manager
    app.include_router(routes.router)
    return app


def main() -> None:
    """Entry-point for the ``taskweave`` CLI."""
    config = EngineConfig.from_env()
    configure_logging(log_level=config.log_level, json_format=config.log_json)
    uvicorn.run(create_app(config=config), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
