import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.api.v1.metrics import FUNDS_RELEASED
from gigmarket.commands.common import count_transition, load_job, rejected
from gigmarket.db import crud
from gigmarket.db.models import Earning, Job, Payment, utcnow
from gigmarket.domain.errors import (
    AuthorizationError,
    ConflictError,
    GatewayError,
    InvalidTransitionError,
    NoPayoutAccountError,
    ValidationError,
)
from gigmarket.domain.money import FeePolicy, fee_policy_from_settings
from gigmarket.domain.states import (
    EarningStatus,
    JobEvent,
    JobStatus,
    NotificationType,
    PaymentStatus,
    PaymentType,
)
from gigmarket.payments import service as payments
from gigmarket.payments.gateway import PaymentGateway
from gigmarket.services.notifications import notify

logger = logging.getLogger(__name__)

RELEASABLE = (JobStatus.COMPLETED, JobStatus.PAYMENT_FAILED)


@dataclass
class ReleaseResult:
    job: Job
    payment: Payment
    earning: Earning


async def release_funds(
    session: AsyncSession,
    gateway: PaymentGateway,
    job_id: int,
    poster_id: int,
    policy: Optional[FeePolicy] = None,
) -> ReleaseResult:
    """
    Pays the worker for a completed job.

    Each call (first attempt or manual retry of a payment_failed job) writes
    a fresh transfer Payment. A retry after an unavailable gateway reuses the
    previous attempt's idempotency key, since that transfer may have been
    booked before the connection dropped; after a decline a new key is used.

    On a gateway error the failure state is flushed (Payment and Earning
    failed, job payment_failed, both parties notified) and the error is
    re-raised; the caller commits that state. Nothing here retries
    automatically.
    """
    job = await load_job(session, job_id, "release_funds")
    if job.poster_id != poster_id:
        raise rejected("release_funds", AuthorizationError("Only the job poster can release payment", job_id=job_id))
    if job.status not in RELEASABLE:
        raise rejected("release_funds", InvalidTransitionError("job", job.id, job.status, JobStatus.COMPLETED))

    worker = await crud.get_user(session, job.worker_id) if job.worker_id else None
    if worker is None or not worker.stripe_connect_account_id:
        raise rejected("release_funds", NoPayoutAccountError(
            "Worker has not set up a payout account",
            job_id=job_id,
            worker_id=job.worker_id,
        ))

    paid = await crud.get_earning_for_job(session, job.id, worker.id)
    if paid and paid.status == EarningStatus.PAID:
        raise rejected("release_funds", ConflictError(
            "Payment for this job has already been released",
            job_id=job_id,
            earning_id=paid.id,
        ))

    policy = policy or fee_policy_from_settings()
    split = policy.split(job.payment_amount)
    if split.net_cents <= 0:
        raise rejected("release_funds", ValidationError(
            "Transfer amount must exceed the service fee",
            job_id=job_id,
            amount=str(split.amount),
            fee=str(split.fee),
        ))

    retrying = job.status == JobStatus.PAYMENT_FAILED
    attempt = await crud.count_transfers(session, job.id) + 1
    idempotency_key = await _idempotency_key(session, job, attempt)

    payment = await crud.create_payment(
        session,
        payer_id=poster_id,
        worker_id=worker.id,
        job_id=job.id,
        amount=split.amount,
        service_fee=split.fee,
        type=PaymentType.TRANSFER,
        status=PaymentStatus.PENDING,
        stripe_connect_account_id=worker.stripe_connect_account_id,
        description=f"Payout for job: {job.title}",
        meta={"attempt": attempt, "idempotency_key": idempotency_key},
    )
    earning = await payments.ensure_pending_earning(session, job, policy)

    try:
        outcome = await payments.transfer(
            gateway,
            job,
            worker,
            job.payment_amount,
            policy=policy,
            idempotency_key=idempotency_key,
        )
    except GatewayError as e:
        await _record_failure(session, job, payment, earning, e)
        raise

    now = utcnow()
    await crud.update_payment(session, payment, status=PaymentStatus.COMPLETED, transaction_id=outcome.transfer_id, completed_at=now)
    await crud.update_earning(
        session,
        earning,
        status=EarningStatus.PAID,
        transaction_id=outcome.transfer_id,
        payment_id=payment.id,
        date_paid=now,
    )
    if retrying:
        await crud.transition_job(session, job, JobStatus.COMPLETED)
        count_transition(JobStatus.PAYMENT_FAILED, JobStatus.COMPLETED)

    await crud.log_job_event(
        session, job.id, JobEvent.FUNDS_RELEASED,
        actor_id=poster_id, payment_id=payment.id, transfer_id=outcome.transfer_id, attempt=attempt,
    )
    FUNDS_RELEASED.labels(result="success").inc()
    logger.info(f"Released {outcome.net_amount} to worker {worker.id} for job {job.id} (payment {payment.id}, transfer {outcome.transfer_id})")

    await notify(
        session,
        user_id=worker.id,
        title="Payment Received",
        message=f"You've received ${outcome.net_amount} for job: {job.title}",
        type=NotificationType.PAYMENT_RECEIVED,
        source_id=job.id,
        source_type="job",
        metadata={"payment_id": payment.id, "amount": str(outcome.net_amount)},
    )
    await notify(
        session,
        user_id=poster_id,
        title="Payment Sent",
        message=f"Your payment of ${outcome.amount} for job: {job.title} has been successfully sent to the worker.",
        type=NotificationType.PAYMENT_SENT,
        source_id=job.id,
        source_type="job",
        metadata={"payment_id": payment.id, "amount": str(outcome.amount)},
    )
    return ReleaseResult(job=job, payment=payment, earning=earning)


async def _record_failure(session: AsyncSession, job: Job, payment: Payment, earning: Earning, error: GatewayError):
    logger.error(f"Transfer for job {job.id} failed (payment {payment.id}): {error.message}")
    FUNDS_RELEASED.labels(result="failed").inc()

    await crud.update_payment(
        session,
        payment,
        status=PaymentStatus.FAILED,
        meta={**(payment.meta or {}), "error": error.message, "retriable": error.retriable},
    )
    await crud.update_earning(session, earning, status=EarningStatus.FAILED)
    if job.status == JobStatus.COMPLETED:
        await crud.transition_job(session, job, JobStatus.PAYMENT_FAILED)
        count_transition(JobStatus.COMPLETED, JobStatus.PAYMENT_FAILED)
    await crud.log_job_event(
        session, job.id, JobEvent.PAYMENT_FAILED,
        payment_id=payment.id, error=error.message, retriable=error.retriable,
    )

    if error.retriable:
        reason = "The payment service is temporarily unavailable."
    else:
        reason = f"The payment was declined: {error.message}"
    await notify(
        session,
        user_id=job.worker_id,
        title="Payment Failed",
        message=f"The payout for \"{job.title}\" could not be processed. The job poster has been notified and can retry.",
        type=NotificationType.PAYMENT_FAILED,
        source_id=job.id,
        source_type="job",
        metadata={"payment_id": payment.id},
    )
    await notify(
        session,
        user_id=job.poster_id,
        title="Payment Failed",
        message=f"We couldn't send the payment for \"{job.title}\" to the worker. {reason} You can retry the payment.",
        type=NotificationType.PAYMENT_FAILED,
        source_id=job.id,
        source_type="job",
        metadata={"payment_id": payment.id, "retriable": error.retriable},
    )


async def _idempotency_key(session: AsyncSession, job: Job, attempt: int) -> str:
    previous = await crud.get_latest_transfer(session, job.id)
    meta = (previous.meta or {}) if previous else {}
    if previous and previous.status == PaymentStatus.FAILED and meta.get("retriable") and meta.get("idempotency_key"):
        logger.info(f"Retrying transfer for job {job.id} under key {meta['idempotency_key']} (payment {previous.id})")
        return meta["idempotency_key"]
    return f"transfer-job{job.id}-{attempt}"
