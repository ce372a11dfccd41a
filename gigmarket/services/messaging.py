import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.db import crud
from gigmarket.db.models import Message
from gigmarket.domain.errors import NotFoundError, ValidationError
from gigmarket.domain.models import CallerIdentity
from gigmarket.domain.states import NotificationType
from gigmarket.services.notifications import notify

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 80


async def send_message(
    session: AsyncSession,
    caller: CallerIdentity,
    recipient_id: int,
    content: str,
    job_id: Optional[int] = None,
) -> Message:
    content = (content or "").strip()
    if not content:
        raise ValidationError("Message content cannot be empty")
    if recipient_id == caller.user_id:
        raise ValidationError("Cannot send a message to yourself")

    recipient = await crud.get_user(session, recipient_id)
    if not recipient:
        raise NotFoundError("user", recipient_id)
    if job_id is not None and not await crud.get_job(session, job_id):
        raise NotFoundError("job", job_id)

    message = await crud.create_message(
        session,
        job_id=job_id,
        sender_id=caller.user_id,
        recipient_id=recipient_id,
        content=content,
    )
    logger.info(f"Message {message.id} from user {caller.user_id} to user {recipient_id}")

    sender = await crud.get_user(session, caller.user_id)
    preview = content if len(content) <= PREVIEW_LENGTH else content[:PREVIEW_LENGTH - 3] + "..."
    await notify(
        session,
        user_id=recipient_id,
        title=f"New message from {sender.full_name if sender else 'a user'}",
        message=preview,
        type=NotificationType.NEW_MESSAGE,
        source_id=message.id,
        source_type="message",
        metadata={"sender_id": caller.user_id, "job_id": job_id},
    )
    return message


async def get_conversation(
    session: AsyncSession,
    caller: CallerIdentity,
    other_user_id: int,
    job_id: Optional[int] = None,
) -> list[Message]:
    """Messages between the caller and another user, oldest first; marks incoming ones read."""
    messages = list(await crud.list_conversation(session, caller.user_id, other_user_id, job_id=job_id))
    marked = await crud.mark_conversation_read(session, caller.user_id, other_user_id)
    if marked:
        for message in messages:
            if message.recipient_id == caller.user_id:
                message.is_read = True
    return messages


async def list_conversations(session: AsyncSession, caller: CallerIdentity) -> list[dict[str, Any]]:
    return await crud.list_conversation_summaries(session, caller.user_id)
