import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.api.v1.metrics import TRANSITION_REJECTIONS, JOB_TRANSITIONS
from gigmarket.db import crud
from gigmarket.db.models import Job
from gigmarket.domain.errors import MarketplaceError, NotFoundError

logger = logging.getLogger(__name__)


def rejected(operation: str, error: MarketplaceError) -> MarketplaceError:
    """Logs and counts a rejected lifecycle operation; returns the error to raise."""
    logger.warning(f"{operation} rejected ({error.error}): {error.message}")
    TRANSITION_REJECTIONS.labels(operation=operation, error=error.error).inc()
    return error


async def load_job(session: AsyncSession, job_id: int, operation: str) -> Job:
    job = await crud.get_job(session, job_id)
    if not job:
        raise rejected(operation, NotFoundError("job", job_id))
    return job


def count_transition(from_status, to_status):
    JOB_TRANSITIONS.labels(from_status=str(from_status), to_status=str(to_status)).inc()


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
