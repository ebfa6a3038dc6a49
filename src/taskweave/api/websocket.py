"""Pushes engine events to WebSocket clients.

``WS /ws/events`` registers each client here; every event the engine
publishes is sent to all of them as one JSON message.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from starlette.websockets import WebSocket, WebSocketState

if TYPE_CHECKING:
    from taskweave.core.events import Event, EventBus

logger = logging.getLogger(__name__)


class ConnectionManager:
    """The set of connected clients, fed from an :class:`EventBus`."""

    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()

    @property
    def active_connections(self) -> int:
        return len(self._clients)

    def attach(self, event_bus: EventBus) -> Callable[[], None]:
        """Start forwarding events; returns the unsubscribe function."""
        return event_bus.subscribe_all(self.send_event)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.add(ws)
        logger.info("Event stream client connected (%d open)", len(self._clients))

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)
        logger.info("Event stream client gone (%d open)", len(self._clients))

    async def send_event(self, event: Event) -> None:
        await self.broadcast(event.as_dict())

    async def broadcast(self, data: dict[str, Any]) -> None:
        """Send *data* to every client, dropping the ones that fail."""
        if not self._clients:
            return
        message = json.dumps(data, default=str)
        for ws in [c for c in self._clients if c.client_state != WebSocketState.CONNECTED]:
            self.disconnect(ws)
        clients = list(self._clients)
        results = await asyncio.gather(
            *(ws.send_text(message) for ws in clients), return_exceptions=True
        )
        for ws, result in zip(clients, results, strict=True):
            if isinstance(result, Exception):
                logger.debug("Send failed, dropping client: %s", result)
                self.disconnect(ws)
