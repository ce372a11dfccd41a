import logging

from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.api.v1.metrics import APPLICATION_TRANSITIONS
from gigmarket.commands.common import count_transition, load_job, rejected
from gigmarket.db import crud
from gigmarket.db.models import Job
from gigmarket.domain.errors import AuthorizationError, InvalidTransitionError
from gigmarket.domain.states import (
    ApplicationStatus,
    JobEvent,
    JobStatus,
    NotificationType,
    can_transition_job,
)
from gigmarket.services.notifications import notify

logger = logging.getLogger(__name__)


async def cancel_job(session: AsyncSession, job_id: int, poster_id: int) -> Job:
    job = await load_job(session, job_id, "cancel_job")
    if job.poster_id != poster_id:
        raise rejected("cancel_job", AuthorizationError("Only the job poster can cancel this job", job_id=job_id))
    if not can_transition_job(job.status, JobStatus.CANCELED):
        raise rejected("cancel_job", InvalidTransitionError("job", job.id, job.status, JobStatus.CANCELED))

    previous = job.status
    await crud.transition_job(session, job, JobStatus.CANCELED)
    count_transition(previous, JobStatus.CANCELED)

    application = await crud.get_accepted_application(session, job.id)
    if application:
        await crud.transition_application(session, application, ApplicationStatus.CANCELLED)
        APPLICATION_TRANSITIONS.labels(from_status=ApplicationStatus.ACCEPTED, to_status=ApplicationStatus.CANCELLED).inc()

    await crud.log_job_event(session, job.id, JobEvent.CANCELED, actor_id=poster_id, previous_status=str(previous))
    logger.info(f"Job {job.id} canceled by poster {poster_id} (was {previous})")

    if job.worker_id:
        await notify(
            session,
            user_id=job.worker_id,
            title="Job Canceled",
            message=f"The job \"{job.title}\" has been canceled by the poster.",
            type=NotificationType.JOB_CANCELED,
            source_id=job.id,
            source_type="job",
        )
    return job
