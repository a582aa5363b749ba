"""Per-user WebSocket fan-out implementing the Notification Channel.

Each connected client registers under its user id; ``publish`` sends the
event to every live socket of that user. Delivery is at-most-once: a socket
that fails to send is dropped and the event is not retried. Events for users
without a live connection are discarded.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Set

from fastapi import WebSocket, WebSocketDisconnect

from core.notifications import build_event

logger = logging.getLogger(__name__)

__all__ = ["WebSocketHub"]


class WebSocketHub:
    """Registry of live sockets keyed by user id."""

    def __init__(self) -> None:
        self._connections: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.setdefault(user_id, set()).add(websocket)
        logger.info("WebSocket connected | user=%s | sockets=%d", user_id, self.connection_count(user_id))

    async def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            sockets = self._connections.get(user_id)
            if sockets is None:
                return
            sockets.discard(websocket)
            if not sockets:
                del self._connections[user_id]
        logger.info("WebSocket disconnected | user=%s", user_id)

    def connection_count(self, user_id: str) -> int:
        return len(self._connections.get(user_id, ()))

    @property
    def connected_users(self) -> int:
        return len(self._connections)

    async def publish(self, user_id: str, event_type: str, data: Dict[str, Any]) -> None:
        sockets = list(self._connections.get(user_id, ()))
        if not sockets:
            logger.debug("No live socket for user %s, dropping %s", user_id, event_type)
            return

        message = json.dumps(build_event(event_type, data), default=str)
        for websocket in sockets:
            try:
                await websocket.send_text(message)
            except (WebSocketDisconnect, RuntimeError, ConnectionError) as e:
                logger.info("Dropping dead socket for user %s: %s", user_id, e)
                await self.disconnect(user_id, websocket)
