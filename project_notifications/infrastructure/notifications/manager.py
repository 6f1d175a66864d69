"""Connection management helpers for notification websockets."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from typing import Any, DefaultDict, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)

NOTIFICATION_MESSAGE = "notification"
UNREAD_COUNT_MESSAGE = "unread-count"


class NotificationConnectionManager:
    """Track live websockets per recipient and push notification messages.

    A recipient may hold several connections (one per browser tab); every push
    goes to all of them and connections that fail are forgotten.
    """

    def __init__(self) -> None:
        self._connections: DefaultDict[str, Set[WebSocket]] = defaultdict(set)

    async def connect(self, recipient_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections[recipient_id].add(websocket)

    def disconnect(self, recipient_id: str, websocket: WebSocket) -> None:
        connections = self._connections.get(recipient_id)
        if connections is None:
            return
        connections.discard(websocket)
        if not connections:
            self._connections.pop(recipient_id, None)

    def is_connected(self, recipient_id: str) -> bool:
        return bool(self._connections.get(recipient_id))

    def connected_recipients(self, recipient_ids: Iterable[str]) -> list[str]:
        """Return the distinct ``recipient_ids`` with a live connection, in order."""

        connected: list[str] = []
        for recipient_id in recipient_ids:
            if recipient_id not in connected and self.is_connected(recipient_id):
                connected.append(recipient_id)
        return connected

    async def push_notification(self, recipient_id: str, data: dict[str, Any]) -> None:
        await self._send(recipient_id, {"type": NOTIFICATION_MESSAGE, "data": data})

    async def push_unread_count(self, recipient_id: str, count: int) -> None:
        await self._send(recipient_id, {"type": UNREAD_COUNT_MESSAGE, "data": {"count": count}})

    async def _send(self, recipient_id: str, message: dict[str, Any]) -> None:
        for connection in list(self._connections.get(recipient_id, set())):
            try:
                await connection.send_json(message)
            except Exception:  # pylint: disable=broad-exception-caught
                logger.debug("Dropping dead websocket for recipient %s", recipient_id)
                self.disconnect(recipient_id, connection)


notification_manager = NotificationConnectionManager()


__all__ = [
    "NOTIFICATION_MESSAGE",
    "NotificationConnectionManager",
    "UNREAD_COUNT_MESSAGE",
    "notification_manager",
]
