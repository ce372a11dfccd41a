import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.commands.common import count_transition, load_job, rejected
from gigmarket.db import crud
from gigmarket.db.models import Job, utcnow
from gigmarket.domain.errors import (
    AuthorizationError,
    InvalidTransitionError,
    LocationVerificationError,
    ValidationError,
)
from gigmarket.domain.geo import haversine_meters, is_valid_coordinate
from gigmarket.domain.models import LocationFix
from gigmarket.domain.states import JobEvent, JobStatus, NotificationType
from gigmarket.services.notifications import notify
from gigmarket.settings import settings

logger = logging.getLogger(__name__)


async def start_job(
    session: AsyncSession,
    job_id: int,
    worker_id: int,
    location: Optional[LocationFix] = None,
    radius_meters: Optional[float] = None,
) -> Job:
    """
    Moves an assigned job to in_progress.

    When location verification applies (globally enabled and set on the job)
    the worker must be within radius_meters of the job site. A fix whose
    reported accuracy is worse than MIN_GPS_ACCURACY_METERS is still
    accepted, but the poster gets a warning notification.
    """
    job = await load_job(session, job_id, "start_job")
    if job.worker_id != worker_id:
        raise rejected("start_job", AuthorizationError("Only the assigned worker can start this job", job_id=job_id))
    if job.status != JobStatus.ASSIGNED:
        raise rejected("start_job", InvalidTransitionError("job", job.id, job.status, JobStatus.IN_PROGRESS))

    radius = settings.START_RADIUS_METERS if radius_meters is None else radius_meters
    distance = None
    low_accuracy = False
    if settings.LOCATION_VERIFICATION_ENABLED and job.verify_location_to_start:
        if location is None:
            raise rejected("start_job", ValidationError("Location is required to start this job", job_id=job_id))
        if not is_valid_coordinate(location.latitude, location.longitude):
            raise rejected("start_job", ValidationError("Invalid location coordinates", job_id=job_id))

        distance = haversine_meters(location.latitude, location.longitude, job.latitude, job.longitude)
        if distance > radius:
            raise rejected("start_job", LocationVerificationError(job.id, distance, radius))
        low_accuracy = location.accuracy is not None and location.accuracy > settings.MIN_GPS_ACCURACY_METERS

    await crud.transition_job(session, job, JobStatus.IN_PROGRESS, start_time=utcnow())
    count_transition(JobStatus.ASSIGNED, JobStatus.IN_PROGRESS)

    meta = {}
    if distance is not None:
        meta = {"distance_meters": round(distance, 1), "accuracy": location.accuracy, "source": location.source}
    await crud.log_job_event(session, job.id, JobEvent.STARTED, actor_id=worker_id, **meta)
    logger.info(f"Job {job.id} started by worker {worker_id}" + (f" at {distance:.0f}m" if distance is not None else ""))

    await notify(
        session,
        user_id=job.poster_id,
        title="Job Started",
        message=f"Worker has started working on your job: {job.title}",
        type=NotificationType.JOB_STARTED,
        source_id=job.id,
        source_type="job",
        metadata={"worker_id": worker_id},
    )
    if low_accuracy:
        logger.warning(f"Job {job.id} started with low GPS accuracy ({location.accuracy}m)")
        await notify(
            session,
            user_id=job.poster_id,
            title="Location Verification Warning",
            message=(
                f"The worker started \"{job.title}\" with low GPS accuracy "
                f"({round(location.accuracy)}m). Their reported position may be imprecise."
            ),
            type=NotificationType.LOCATION_VERIFICATION_WARNING,
            source_id=job.id,
            source_type="job",
            metadata={"accuracy": location.accuracy, "distance_meters": round(distance, 1)},
        )
    return job
