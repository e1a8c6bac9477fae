"""WebSocket connection manager and change broadcaster for secondbrain."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import WebSocket

from api.deps import enrich_change_event
from db.repository import ChangeEvent, EntityRepository

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Websocket clients subscribed to store changes."""

    def __init__(self) -> None:
        self.active_connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.debug("Client connected (%d active)", len(self.active_connections))

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.debug("Client disconnected (%d active)", len(self.active_connections))

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Send ``message`` to every client; clients that fail to receive are dropped."""
        for websocket in list(self.active_connections):
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.debug("Dropping client after failed send: %s", e)
                self.disconnect(websocket)


manager = ConnectionManager()


def change_broadcaster(
    repository: EntityRepository, connections: ConnectionManager = manager
) -> Callable[[ChangeEvent], Awaitable[None]]:
    """Repository listener that pushes every change to websocket clients."""

    async def broadcast_change(event: ChangeEvent) -> None:
        if not connections.active_connections:
            return
        message = await enrich_change_event(repository, event)
        logger.debug(
            "Broadcasting %s to %d client(s)",
            message["type"],
            len(connections.active_connections),
        )
        await connections.broadcast(message)

    return broadcast_change
