from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, ConfigDict, Field

from gigmarket.api.deps import DbSession
from gigmarket.auth.security import CurrentCaller
from gigmarket.commands.cancel_job import cancel_job
from gigmarket.commands.complete_job import complete_job
from gigmarket.commands.create_job import create_job
from gigmarket.commands.start_job import start_job
from gigmarket.db import crud
from gigmarket.domain.errors import AuthorizationError, NotFoundError, ValidationError
from gigmarket.domain.geo import METERS_PER_MILE, is_valid_coordinate
from gigmarket.domain.models import JobDetails, LocationFix
from gigmarket.domain.states import EarningStatus, JobStatus
from gigmarket.api.v1.applications import ApplicationResponse

router = APIRouter()

MAX_RADIUS_MILES = 100.0


class JobCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str
    category: str
    payment_type: str = "fixed"
    payment_amount: Decimal = Field(gt=0)
    location: str
    latitude: float
    longitude: float
    date_needed: datetime
    required_skills: list[str] = []
    equipment_provided: bool = False
    verify_location_to_start: bool = True
    service_fee: Optional[Decimal] = Field(default=None, ge=0)
    total_amount: Optional[Decimal] = Field(default=None, gt=0)


class JobResponse(BaseModel):
    id: int
    title: str
    description: str
    category: str
    status: JobStatus
    poster_id: int
    worker_id: Optional[int] = None
    payment_type: str
    payment_amount: Decimal
    service_fee: Decimal
    total_amount: Decimal
    location: str
    latitude: float
    longitude: float
    date_needed: datetime
    required_skills: list[str] = []
    equipment_provided: bool
    verify_location_to_start: bool
    date_posted: Optional[datetime] = None
    start_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class NearbyJobResponse(JobResponse):
    distance_miles: Optional[float] = None


class EarningResponse(BaseModel):
    id: int
    worker_id: int
    job_id: Optional[int]
    payment_id: Optional[int] = None
    amount: Decimal
    service_fee: Decimal
    net_amount: Decimal
    status: EarningStatus
    transaction_id: Optional[str] = None
    date_earned: Optional[datetime] = None
    date_paid: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class LocationPayload(BaseModel):
    latitude: float
    longitude: float
    accuracy: Optional[float] = Field(default=None, ge=0)
    source: str = "gps"
    timestamp: Optional[datetime] = None


class StartJobRequest(BaseModel):
    location: Optional[LocationPayload] = None


class CompleteJobResponse(BaseModel):
    job: JobResponse
    earning: EarningResponse


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def post_job(payload: JobCreate, caller: CurrentCaller, session: DbSession):
    job = await create_job(session, caller.user_id, JobDetails(**payload.model_dump()))
    await session.commit()
    return job


@router.get("", response_model=list[NearbyJobResponse])
async def list_jobs(
    session: DbSession,
    latitude: Optional[float] = Query(default=None, alias="lat"),
    longitude: Optional[float] = Query(default=None, alias="lng"),
    radius_miles: float = Query(default=10.0, gt=0),
    limit: int = Query(default=50, ge=1, le=200),
):
    """Open jobs; with lat/lng, only those within radius_miles, nearest first."""
    if latitude is None and longitude is None:
        return await crud.list_open_jobs(session, limit=limit)
    if latitude is None or longitude is None:
        raise ValidationError("lat and lng must be provided together")
    if not is_valid_coordinate(latitude, longitude):
        raise ValidationError("Invalid coordinates")

    radius_meters = min(radius_miles, MAX_RADIUS_MILES) * METERS_PER_MILE
    nearby = await crud.list_open_jobs_near(session, latitude, longitude, radius_meters, limit=limit)
    results = []
    for job, distance in nearby:
        item = NearbyJobResponse.model_validate(job)
        item.distance_miles = round(distance / METERS_PER_MILE, 2)
        results.append(item)
    return results


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: int, session: DbSession):
    job = await crud.get_job(session, job_id)
    if not job:
        raise NotFoundError("job", job_id)
    return job


@router.patch("/{job_id}/start", response_model=JobResponse)
async def start(job_id: int, caller: CurrentCaller, session: DbSession, body: Optional[StartJobRequest] = None):
    location = None
    if body and body.location:
        location = LocationFix(**body.location.model_dump())
    job = await start_job(session, job_id, caller.user_id, location)
    await session.commit()
    return job


@router.patch("/{job_id}/complete", response_model=CompleteJobResponse)
async def complete(job_id: int, caller: CurrentCaller, session: DbSession):
    job, earning = await complete_job(session, job_id, caller.user_id)
    await session.commit()
    return CompleteJobResponse(
        job=JobResponse.model_validate(job),
        earning=EarningResponse.model_validate(earning),
    )


@router.patch("/{job_id}/cancel", response_model=JobResponse)
async def cancel(job_id: int, caller: CurrentCaller, session: DbSession):
    job = await cancel_job(session, job_id, caller.user_id)
    await session.commit()
    return job


@router.get("/{job_id}/applications", response_model=list[ApplicationResponse])
async def job_applications(job_id: int, caller: CurrentCaller, session: DbSession):
    job = await crud.get_job(session, job_id)
    if not job:
        raise NotFoundError("job", job_id)
    if job.poster_id != caller.user_id:
        raise AuthorizationError("Only the job poster can view applications", job_id=job_id)
    return await crud.list_applications_for_job(session, job_id)
