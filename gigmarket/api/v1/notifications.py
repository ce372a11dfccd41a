import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Query, Response, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, ConfigDict, Field

from gigmarket.api.deps import DbSession
from gigmarket.auth.security import CurrentCaller, resolve_caller
from gigmarket.db.session import AsyncSessionLocal
from gigmarket.domain.errors import AuthenticationError
from gigmarket.domain.states import NotificationType
from gigmarket.services import notifications
from gigmarket.services.realtime import hub
from gigmarket.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter()
ws_router = APIRouter()

# Custom close code: authentication failed
WS_CLOSE_UNAUTHORIZED = 4401


class NotificationResponse(BaseModel):
    id: int
    title: str
    message: str
    type: NotificationType
    source_id: Optional[int] = None
    source_type: Optional[str] = None
    is_read: bool
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="meta")
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


@router.get("", response_model=list[NotificationResponse])
async def list_notifications(
    caller: CurrentCaller,
    session: DbSession,
    unread_only: bool = False,
    limit: int = Query(default=50, ge=1, le=200),
):
    return await notifications.list_notifications(session, caller, unread_only=unread_only, limit=limit)


@router.get("/unread-count")
async def unread_count(caller: CurrentCaller, session: DbSession):
    return {"count": await notifications.unread_count(session, caller)}


@router.patch("/read-all")
async def mark_all_read(caller: CurrentCaller, session: DbSession):
    updated = await notifications.mark_all_read(session, caller)
    await session.commit()
    return {"updated": updated}


@router.patch("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(notification_id: int, caller: CurrentCaller, session: DbSession):
    notification = await notifications.mark_read(session, caller, notification_id)
    await session.commit()
    return notification


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(notification_id: int, caller: CurrentCaller, session: DbSession):
    await notifications.delete_notification(session, caller, notification_id)
    await session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@ws_router.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket, api_key: Optional[str] = None):
    """Pushes new notifications to the connected user until the client hangs up."""
    try:
        async with AsyncSessionLocal() as session:
            caller = await resolve_caller(session, api_key, websocket.cookies.get(settings.SESSION_COOKIE_NAME))
    except AuthenticationError:
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED)
        return

    await hub.connect(caller.user_id, websocket)
    try:
        await websocket.send_json({"event": "connected", "user_id": caller.user_id})
        while True:
            # Clients may send pings; content is ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(caller.user_id, websocket)
