import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.commands.common import rejected
from gigmarket.db import crud
from gigmarket.db.models import Job
from gigmarket.domain.errors import AuthorizationError, NotFoundError, ValidationError
from gigmarket.domain.geo import is_valid_coordinate
from gigmarket.domain.models import JobDetails
from gigmarket.domain.money import FeePolicy, fee_policy_from_settings, quantize
from gigmarket.domain.states import AccountType, JobEvent

logger = logging.getLogger(__name__)

PAYMENT_TYPES = ("fixed", "hourly")


async def create_job(
    session: AsyncSession,
    poster_id: int,
    details: JobDetails,
    policy: Optional[FeePolicy] = None,
) -> Job:
    """
    Posts a new open job. The service fee comes from the fee policy unless
    supplied, and total_amount defaults to payment_amount + service_fee.
    """
    poster = await crud.get_user(session, poster_id)
    if not poster:
        raise rejected("create_job", NotFoundError("user", poster_id))
    if poster.account_type == AccountType.WORKER:
        raise rejected("create_job", AuthorizationError("Workers cannot post jobs", user_id=poster_id))

    if details.payment_type not in PAYMENT_TYPES:
        raise rejected("create_job", ValidationError(f"payment_type must be one of {', '.join(PAYMENT_TYPES)}"))
    payment_amount = quantize(Decimal(details.payment_amount))
    if payment_amount <= 0:
        raise rejected("create_job", ValidationError("payment_amount must be positive"))
    if not is_valid_coordinate(details.latitude, details.longitude):
        raise rejected("create_job", ValidationError("Invalid job coordinates"))

    if details.service_fee is not None:
        service_fee = quantize(Decimal(details.service_fee))
    else:
        service_fee = (policy or fee_policy_from_settings()).fee_for(payment_amount)
    if details.total_amount is not None:
        total_amount = quantize(Decimal(details.total_amount))
    else:
        total_amount = payment_amount + service_fee

    job = await crud.create_job(
        session,
        title=details.title,
        description=details.description,
        category=details.category,
        poster_id=poster_id,
        payment_type=details.payment_type,
        payment_amount=payment_amount,
        service_fee=service_fee,
        total_amount=total_amount,
        location=details.location,
        latitude=details.latitude,
        longitude=details.longitude,
        date_needed=details.date_needed,
        # Keep first occurrence order, drop duplicates
        required_skills=list(dict.fromkeys(details.required_skills)),
        equipment_provided=details.equipment_provided,
        verify_location_to_start=details.verify_location_to_start,
    )
    await crud.log_job_event(session, job.id, JobEvent.CREATED, actor_id=poster_id)
    logger.info(f"Job {job.id} posted by user {poster_id} ({payment_amount} + fee {service_fee})")
    return job
