"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import WebSocket, WebSocketException, status


async def get_recipient_id(websocket: WebSocket) -> str:
    """Resolve the recipient behind a websocket connection.

    Identity belongs to the host application, which replaces this dependency
    through ``app.dependency_overrides``. Without an override every connection
    is refused.
    """

    raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason="Recipient identity unavailable")
