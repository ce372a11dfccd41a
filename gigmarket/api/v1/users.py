import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Response, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import IntegrityError

from gigmarket.api.deps import DbSession
from gigmarket.auth.security import CurrentCaller, sign_session
from gigmarket.db import crud
from gigmarket.domain.errors import ConflictError, NotFoundError, ValidationError
from gigmarket.domain.geo import is_valid_coordinate
from gigmarket.domain.states import AccountType
from gigmarket.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter()


class UserCreate(BaseModel):
    username: str = Field(min_length=3, max_length=64)
    full_name: str = Field(min_length=1)
    email: Optional[str] = None
    account_type: AccountType = AccountType.WORKER
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location: Optional[str] = None
    skills: list[str] = []


class UserResponse(BaseModel):
    id: int
    username: str
    full_name: str
    email: Optional[str]
    account_type: AccountType
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location: Optional[str] = None
    skills: list[str] = []
    stripe_connect_account_id: Optional[str] = None
    stripe_connect_account_status: Optional[str] = None
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class UserCreated(UserResponse):
    api_key: str


class SessionResponse(BaseModel):
    user_id: int
    via_session: bool


@router.post("", response_model=UserCreated, status_code=status.HTTP_201_CREATED)
async def register_user(payload: UserCreate, session: DbSession):
    if (payload.latitude is None) != (payload.longitude is None):
        raise ValidationError("latitude and longitude must be provided together")
    if payload.latitude is not None and not is_valid_coordinate(payload.latitude, payload.longitude):
        raise ValidationError("Invalid coordinates")

    if await crud.get_user_by_username(session, payload.username):
        raise ConflictError("Username already taken", username=payload.username)

    try:
        user = await crud.create_user(session, **payload.model_dump())
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ConflictError("Username already taken", username=payload.username)

    logger.info(f"Registered user {user.id} ({user.account_type})")
    return user


@router.get("/me", response_model=UserResponse)
async def get_me(caller: CurrentCaller, session: DbSession):
    user = await crud.get_user(session, caller.user_id)
    if not user:
        raise NotFoundError("user", caller.user_id)
    return user


@router.post("/session", response_model=SessionResponse)
async def issue_session(caller: CurrentCaller, response: Response):
    """Sets the signed cookie used to recover the identity when the API key is missing."""
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=sign_session(caller.user_id),
        httponly=True,
        samesite="lax",
        max_age=60 * 60 * 24 * 30,
    )
    return SessionResponse(user_id=caller.user_id, via_session=caller.via_session)
