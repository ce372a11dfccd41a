from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, status
from pydantic import BaseModel, ConfigDict, Field

from gigmarket.api.deps import DbSession
from gigmarket.auth.security import CurrentCaller
from gigmarket.commands.decide_application import decide_application
from gigmarket.commands.submit_application import submit_application
from gigmarket.db import crud
from gigmarket.domain.models import ApplicationDetails
from gigmarket.domain.states import ApplicationStatus, Decision

router = APIRouter()


class ApplicationCreate(BaseModel):
    job_id: int
    message: Optional[str] = None
    cover_letter: Optional[str] = None
    hourly_rate: Optional[Decimal] = Field(default=None, gt=0)
    expected_duration: Optional[str] = None


class ApplicationResponse(BaseModel):
    id: int
    job_id: int
    worker_id: int
    status: ApplicationStatus
    message: Optional[str] = None
    cover_letter: Optional[str] = None
    hourly_rate: Optional[Decimal] = None
    expected_duration: Optional[str] = None
    date_applied: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class StatusUpdate(BaseModel):
    status: Literal["accepted", "rejected"]


@router.post("", response_model=ApplicationResponse, status_code=status.HTTP_201_CREATED)
async def apply(payload: ApplicationCreate, caller: CurrentCaller, session: DbSession):
    details = ApplicationDetails(**payload.model_dump(exclude={"job_id"}))
    application = await submit_application(session, payload.job_id, caller.user_id, details)
    await session.commit()
    return application


@router.get("/mine", response_model=list[ApplicationResponse])
async def my_applications(caller: CurrentCaller, session: DbSession):
    return await crud.list_applications_for_worker(session, caller.user_id)


@router.patch("/{application_id}/status", response_model=ApplicationResponse)
async def update_status(application_id: int, payload: StatusUpdate, caller: CurrentCaller, session: DbSession):
    decision = Decision.ACCEPT if payload.status == "accepted" else Decision.REJECT
    application = await decide_application(session, application_id, caller.user_id, decision)
    await session.commit()
    return application
