"""
Notification dispatcher.

notify() is best effort: the row is written inside a SAVEPOINT so a failing
insert rolls back only itself, never the lifecycle transition that triggered
it. Failures are logged and swallowed.

Realtime pushes are queued on the session and published only once the
enclosing transaction commits; a rollback discards them.
"""
import logging
from typing import Any, Iterable, Optional

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session, SessionTransaction

from gigmarket.api.v1.metrics import NOTIFICATIONS_SENT
from gigmarket.db import crud
from gigmarket.db.models import Notification
from gigmarket.domain.errors import AuthorizationError, NotFoundError
from gigmarket.domain.models import CallerIdentity, PendingNotification
from gigmarket.domain.states import NotificationType
from gigmarket.services.realtime import hub

logger = logging.getLogger(__name__)

PENDING_PUSHES = "pending_realtime_pushes"


def serialize(notification: Notification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "title": notification.title,
        "message": notification.message,
        "type": str(notification.type),
        "source_id": notification.source_id,
        "source_type": notification.source_type,
        "is_read": notification.is_read,
        "metadata": notification.meta or {},
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


async def notify(
    session: AsyncSession,
    user_id: int,
    title: str,
    message: str,
    type: NotificationType,
    source_id: Optional[int] = None,
    source_type: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> Optional[Notification]:
    try:
        async with session.begin_nested():
            notification = Notification(
                user_id=user_id,
                title=title,
                message=message,
                type=type,
                source_id=source_id,
                source_type=source_type,
                is_read=False,
                meta=metadata or {},
            )
            session.add(notification)
            await session.flush()
    except SQLAlchemyError as e:
        logger.warning(
            f"Failed to store {type} notification for user {user_id} "
            f"(source {source_type}:{source_id}): {e}"
        )
        NOTIFICATIONS_SENT.labels(type=str(type), result="failed").inc()
        return None

    NOTIFICATIONS_SENT.labels(type=str(type), result="stored").inc()
    session.info.setdefault(PENDING_PUSHES, []).append(
        (user_id, {"event": "notification", "notification": serialize(notification)})
    )
    return notification


@event.listens_for(Session, "after_commit")
def _publish_committed(session: Session):
    for user_id, payload in session.info.pop(PENDING_PUSHES, []):
        hub.publish(user_id, payload)


@event.listens_for(Session, "after_transaction_end")
def _discard_uncommitted(session: Session, transaction: SessionTransaction):
    # Outermost transaction ended without after_commit draining the queue
    if transaction.parent is None:
        dropped = session.info.pop(PENDING_PUSHES, None)
        if dropped:
            logger.info(f"Discarded {len(dropped)} realtime push(es) from a rolled back transaction")


async def dispatch(session: AsyncSession, pending: Iterable[PendingNotification]) -> list[Notification]:
    """Persists notifications produced by pure handlers; skips the ones that fail."""
    stored = []
    for item in pending:
        notification = await notify(
            session,
            user_id=item.user_id,
            title=item.title,
            message=item.message,
            type=item.type,
            source_id=item.source_id,
            source_type=item.source_type,
            metadata=item.metadata,
        )
        if notification is not None:
            stored.append(notification)
    return stored


async def _owned(session: AsyncSession, caller: CallerIdentity, notification_id: int) -> Notification:
    notification = await crud.get_notification(session, notification_id)
    if notification is None:
        raise NotFoundError("notification", notification_id)
    if notification.user_id != caller.user_id:
        logger.warning(f"User {caller.user_id} denied access to notification {notification_id}")
        raise AuthorizationError("Not authorized to modify this notification", notification_id=notification_id)
    return notification


async def list_notifications(
    session: AsyncSession,
    caller: CallerIdentity,
    unread_only: bool = False,
    limit: int = 50,
) -> list[Notification]:
    return list(await crud.list_notifications(session, caller.user_id, unread_only=unread_only, limit=limit))


async def unread_count(session: AsyncSession, caller: CallerIdentity) -> int:
    return await crud.count_unread_notifications(session, caller.user_id)


async def mark_read(session: AsyncSession, caller: CallerIdentity, notification_id: int) -> Notification:
    notification = await _owned(session, caller, notification_id)
    if not notification.is_read:
        notification.is_read = True
        await session.flush()
    return notification


async def mark_all_read(session: AsyncSession, caller: CallerIdentity) -> int:
    updated = await crud.mark_all_notifications_read(session, caller.user_id)
    logger.info(f"Marked {updated} notifications read for user {caller.user_id}")
    return updated


async def delete_notification(session: AsyncSession, caller: CallerIdentity, notification_id: int) -> None:
    notification = await _owned(session, caller, notification_id)
    await crud.delete_notification(session, notification)
