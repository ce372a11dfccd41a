from datetime import datetime
from typing import Optional

from fastapi import APIRouter, status
from pydantic import BaseModel, ConfigDict, Field

from gigmarket.api.deps import DbSession
from gigmarket.auth.security import CurrentCaller
from gigmarket.services import messaging

router = APIRouter()


class MessageCreate(BaseModel):
    recipient_id: int
    content: str = Field(min_length=1, max_length=5000)
    job_id: Optional[int] = None


class MessageResponse(BaseModel):
    id: int
    job_id: Optional[int] = None
    sender_id: int
    recipient_id: int
    content: str
    is_read: bool
    sent_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class ConversationSummary(BaseModel):
    user_id: int
    last_message: str
    last_sent_at: Optional[datetime] = None
    job_id: Optional[int] = None
    unread_count: int


@router.post("/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(payload: MessageCreate, caller: CurrentCaller, session: DbSession):
    message = await messaging.send_message(session, caller, payload.recipient_id, payload.content, payload.job_id)
    await session.commit()
    return message


@router.get("/conversations", response_model=list[ConversationSummary])
async def conversations(caller: CurrentCaller, session: DbSession):
    return await messaging.list_conversations(session, caller)


@router.get("/conversations/{user_id}", response_model=list[MessageResponse])
async def conversation(user_id: int, caller: CurrentCaller, session: DbSession, job_id: Optional[int] = None):
    messages = await messaging.get_conversation(session, caller, user_id, job_id=job_id)
    await session.commit()
    return messages
