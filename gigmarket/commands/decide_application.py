import logging

from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.api.v1.metrics import APPLICATION_TRANSITIONS
from gigmarket.commands.common import count_transition, load_job, rejected
from gigmarket.db import crud
from gigmarket.db.models import Application
from gigmarket.domain.errors import AuthorizationError, InvalidTransitionError, NotFoundError
from gigmarket.domain.states import (
    ApplicationStatus,
    Decision,
    JobEvent,
    JobStatus,
    NotificationType,
)
from gigmarket.services.notifications import notify

logger = logging.getLogger(__name__)


async def decide_application(
    session: AsyncSession,
    application_id: int,
    poster_id: int,
    decision: Decision,
) -> Application:
    """
    Accepts or rejects a pending application.

    Accepting assigns the job to the applicant through a compare-and-swap on
    the job row (open -> assigned), so of two concurrent accepts on the same
    job exactly one wins; the loser gets InvalidTransitionError. Other
    pending applications for the job are left as they are.
    """
    application = await crud.get_application(session, application_id)
    if not application:
        raise rejected("decide_application", NotFoundError("application", application_id))
    job = await load_job(session, application.job_id, "decide_application")

    if job.poster_id != poster_id:
        raise rejected("decide_application", AuthorizationError(
            "Only the job poster can update application status",
            application_id=application_id,
        ))

    target = ApplicationStatus.ACCEPTED if decision == Decision.ACCEPT else ApplicationStatus.REJECTED
    if application.status != ApplicationStatus.PENDING:
        raise rejected("decide_application", InvalidTransitionError(
            "application", application.id, application.status, target
        ))

    if decision == Decision.ACCEPT:
        if job.status != JobStatus.OPEN:
            raise rejected("decide_application", InvalidTransitionError("job", job.id, job.status, JobStatus.ASSIGNED))
        # Job row first: it is the contended one
        await crud.transition_job(session, job, JobStatus.ASSIGNED, expected=JobStatus.OPEN, worker_id=application.worker_id)
        count_transition(JobStatus.OPEN, JobStatus.ASSIGNED)
        await crud.log_job_event(
            session, job.id, JobEvent.ASSIGNED,
            actor_id=poster_id, worker_id=application.worker_id, application_id=application.id,
        )

    await crud.transition_application(session, application, target)
    APPLICATION_TRANSITIONS.labels(from_status=ApplicationStatus.PENDING, to_status=target).inc()
    logger.info(f"Application {application.id} for job {job.id} {target} by poster {poster_id}")

    await notify(
        session,
        user_id=application.worker_id,
        title="Application Status Updated",
        message=f"Your application for \"{job.title}\" has been {target}.",
        type=NotificationType.APPLICATION_STATUS_UPDATED,
        source_id=application.id,
        source_type="application",
        metadata={"job_id": job.id, "status": str(target)},
    )
    return application
