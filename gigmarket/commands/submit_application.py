import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.commands.common import load_job, rejected
from gigmarket.db import crud
from gigmarket.db.models import Application
from gigmarket.domain.errors import ConflictError, NotFoundError
from gigmarket.domain.models import ApplicationDetails
from gigmarket.domain.states import JobStatus, NotificationType
from gigmarket.services.notifications import notify

logger = logging.getLogger(__name__)


async def submit_application(
    session: AsyncSession,
    job_id: int,
    worker_id: int,
    details: ApplicationDetails,
) -> Application:
    job = await load_job(session, job_id, "submit_application")
    worker = await crud.get_user(session, worker_id)
    if not worker:
        raise rejected("submit_application", NotFoundError("user", worker_id))

    if job.poster_id == worker_id:
        raise rejected("submit_application", ConflictError("You cannot apply to your own job", job_id=job_id))
    if job.status != JobStatus.OPEN:
        raise rejected("submit_application", ConflictError(
            "This job is no longer accepting applications",
            job_id=job_id,
            job_status=str(job.status),
        ))

    existing = await crud.get_active_application(session, job_id, worker_id)
    if existing:
        raise rejected("submit_application", ConflictError(
            "You have already applied for this job",
            job_id=job_id,
            application_id=existing.id,
        ))

    try:
        async with session.begin_nested():
            application = await crud.create_application(
                session,
                job_id=job_id,
                worker_id=worker_id,
                message=details.message,
                cover_letter=details.cover_letter,
                hourly_rate=details.hourly_rate,
                expected_duration=details.expected_duration,
            )
    except IntegrityError:
        # A concurrent request from the same worker got there first
        raise rejected("submit_application", ConflictError(
            "You have already applied for this job",
            job_id=job_id,
        ))
    logger.info(f"Application {application.id} submitted for job {job_id} by worker {worker_id}")

    await notify(
        session,
        user_id=job.poster_id,
        title="New Application",
        message=f"You have received a new application for your job \"{job.title}\".",
        type=NotificationType.NEW_APPLICATION,
        source_id=application.id,
        source_type="application",
        metadata={"job_id": job.id, "worker_id": worker_id, "worker_name": worker.full_name},
    )
    return application
