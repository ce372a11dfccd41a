import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.api.v1.metrics import APPLICATION_TRANSITIONS, JOB_TIME_TO_COMPLETE
from gigmarket.commands.common import as_utc, count_transition, load_job, rejected
from gigmarket.db import crud
from gigmarket.db.models import Earning, Job, utcnow
from gigmarket.domain.errors import AuthorizationError, InvalidTransitionError
from gigmarket.domain.money import FeePolicy
from gigmarket.domain.states import ApplicationStatus, JobEvent, JobStatus, NotificationType
from gigmarket.payments.service import ensure_pending_earning
from gigmarket.services.notifications import notify

logger = logging.getLogger(__name__)


async def complete_job(
    session: AsyncSession,
    job_id: int,
    worker_id: int,
    policy: Optional[FeePolicy] = None,
) -> tuple[Job, Earning]:
    """
    Marks an in-progress job completed.
    Closes the accepted application and books a pending Earning for the worker.
    """
    job = await load_job(session, job_id, "complete_job")
    if job.worker_id != worker_id:
        raise rejected("complete_job", AuthorizationError("Only the assigned worker can complete this job", job_id=job_id))
    if job.status != JobStatus.IN_PROGRESS:
        raise rejected("complete_job", InvalidTransitionError("job", job.id, job.status, JobStatus.COMPLETED))

    now = utcnow()
    await crud.transition_job(session, job, JobStatus.COMPLETED, completion_time=now)
    count_transition(JobStatus.IN_PROGRESS, JobStatus.COMPLETED)

    application = await crud.get_accepted_application(session, job.id)
    if application:
        await crud.transition_application(session, application, ApplicationStatus.COMPLETED)
        APPLICATION_TRANSITIONS.labels(from_status=ApplicationStatus.ACCEPTED, to_status=ApplicationStatus.COMPLETED).inc()

    earning = await ensure_pending_earning(session, job, policy)

    if job.start_time:
        duration = (now - as_utc(job.start_time)).total_seconds()
        if duration > 0:
            JOB_TIME_TO_COMPLETE.observe(duration)

    await crud.log_job_event(session, job.id, JobEvent.COMPLETED, actor_id=worker_id, earning_id=earning.id)
    logger.info(f"Job {job.id} completed by worker {worker_id}; earning {earning.id} pending")

    await notify(
        session,
        user_id=job.poster_id,
        title="Job Completed",
        message=f"\"{job.title}\" has been marked as completed. You can now release payment.",
        type=NotificationType.JOB_COMPLETED,
        source_id=job.id,
        source_type="job",
        metadata={"worker_id": worker_id, "earning_id": earning.id},
    )
    return job, earning
