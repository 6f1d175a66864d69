"""Dispatch diagnostics and the realtime notification websocket."""

from __future__ import annotations

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from project_notifications.infrastructure.database import get_db
from project_notifications.infrastructure.notifications import notification_manager
from project_notifications.infrastructure.repositories import DispatchRecordRepository
from project_notifications.interfaces.api.dependencies import get_recipient_id
from project_notifications.interfaces.api.schemas import DispatchStatusRead, FailingDispatchRead
from project_notifications.utils import utc_now

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/dispatch/status", response_model=DispatchStatusRead)
def dispatch_status(db: Session = Depends(get_db)) -> DispatchStatusRead:
    """Return outbox backlog counters and the rows that keep failing."""

    repository = DispatchRecordRepository(db)
    summary = repository.status_summary(now=utc_now())
    failing = [
        FailingDispatchRead(
            id=record.id or 0,
            recipient_id=record.recipient_id,
            kind=record.kind.value,
            attempt_count=record.attempt_count,
            locked_until=record.locked_until,
            last_error=record.last_error,
        )
        for record in repository.list_failing()
    ]
    return DispatchStatusRead(**summary, failing=failing)


@router.websocket("/ws")
async def notifications_websocket(
    websocket: WebSocket,
    recipient_id: str = Depends(get_recipient_id),
) -> None:
    """Stream newly dispatched notifications to the connected recipient."""

    await notification_manager.connect(recipient_id, websocket)
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        notification_manager.disconnect(recipient_id, websocket)
