"""
Payment operations on top of a PaymentGateway.

Amounts are Decimal currency units here; conversion to cents happens once,
through the fee policy split, right before the gateway call.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.db import crud
from gigmarket.db.models import Earning, Job, Payment, User, utcnow
from gigmarket.domain.errors import (
    AuthorizationError,
    ConflictError,
    MissingEmailError,
    NoPayoutAccountError,
    NotFoundError,
    PaymentNotSucceededError,
    ValidationError,
)
from gigmarket.domain.money import FeePolicy, fee_policy_from_settings
from gigmarket.domain.states import (
    ConnectAccountStatus,
    EarningStatus,
    JobStatus,
    PaymentStatus,
    PaymentType,
)
from gigmarket.payments.gateway import PaymentGateway
from gigmarket.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentIntentHandle:
    payment_id: int
    payment_intent_id: str
    client_secret: Optional[str]
    amount: Decimal
    reused: bool = False


@dataclass(frozen=True)
class ConnectOnboarding:
    account_id: str
    onboarding_url: str
    created: bool


@dataclass(frozen=True)
class TransferOutcome:
    transfer_id: str
    amount: Decimal
    fee: Decimal
    net_amount: Decimal


async def ensure_pending_earning(session: AsyncSession, job: Job, policy: Optional[FeePolicy] = None) -> Earning:
    """
    Returns the worker's Earning for the job, creating a pending one if
    missing. The unique (job_id, worker_id) index settles concurrent creators.
    """
    existing = await crud.get_earning_for_job(session, job.id, job.worker_id)
    if existing:
        return existing

    split = (policy or fee_policy_from_settings()).split(job.payment_amount)
    try:
        async with session.begin_nested():
            earning = await crud.create_earning(
                session,
                worker_id=job.worker_id,
                job_id=job.id,
                amount=split.amount,
                service_fee=split.fee,
                status=EarningStatus.PENDING,
                description=f"Earnings for job: {job.title}",
            )
    except IntegrityError:
        # Created concurrently by another request or webhook
        logger.info(f"Earning for job {job.id} / worker {job.worker_id} already exists")
        return await crud.get_earning_for_job(session, job.id, job.worker_id)

    logger.info(f"Created pending earning {earning.id} for job {job.id}: {split.amount} (fee {split.fee})")
    return earning


async def _get_or_create_customer(session: AsyncSession, gateway: PaymentGateway, payer: User) -> str:
    if payer.stripe_customer_id:
        return payer.stripe_customer_id

    customer_id = await gateway.create_customer(
        email=payer.email,
        name=payer.full_name,
        metadata={"user_id": str(payer.id)},
    )
    await crud.update_user(session, payer, stripe_customer_id=customer_id)
    logger.info(f"Created gateway customer {customer_id} for user {payer.id}")
    return customer_id


async def _reuse_charge(gateway: PaymentGateway, existing: Payment) -> PaymentIntentHandle:
    intent = await gateway.retrieve_payment_intent(existing.stripe_payment_intent_id)
    logger.info(f"Reusing payment intent {intent.id} for job {existing.job_id} (payment {existing.id})")
    return PaymentIntentHandle(
        payment_id=existing.id,
        payment_intent_id=intent.id,
        client_secret=intent.client_secret,
        amount=existing.amount,
        reused=True,
    )


async def create_payment_intent(
    session: AsyncSession,
    gateway: PaymentGateway,
    payer_id: int,
    job_id: int,
    amount: Optional[Decimal] = None,
    policy: Optional[FeePolicy] = None,
) -> PaymentIntentHandle:
    payer = await crud.get_user(session, payer_id)
    if not payer:
        raise NotFoundError("user", payer_id)
    job = await crud.get_job(session, job_id)
    if not job:
        raise NotFoundError("job", job_id)
    if job.poster_id != payer_id:
        raise AuthorizationError("Only the job poster can pay for this job", job_id=job_id)
    if job.status == JobStatus.CANCELED:
        raise ValidationError("Cannot pay for a canceled job", job_id=job_id)

    amount = job.total_amount if amount is None else Decimal(amount)
    if amount <= 0:
        raise ValidationError("Payment amount must be positive", job_id=job_id)

    # Idempotent: one open charge per (job, payer)
    existing = await crud.get_open_charge(session, job_id, payer_id)
    if existing and existing.stripe_payment_intent_id:
        return await _reuse_charge(gateway, existing)

    customer_id = await _get_or_create_customer(session, gateway, payer)
    split = (policy or fee_policy_from_settings()).split(amount)
    attempt = await crud.count_charges(session, job_id, payer_id) + 1

    intent = await gateway.create_payment_intent(
        amount_cents=split.amount_cents,
        currency=settings.CURRENCY,
        customer_id=customer_id,
        metadata={"job_id": str(job.id), "payer_id": str(payer.id), "worker_id": str(job.worker_id or "")},
        idempotency_key=f"pi-job{job.id}-payer{payer.id}-{attempt}",
    )

    try:
        async with session.begin_nested():
            payment = await crud.create_payment(
                session,
                payer_id=payer.id,
                worker_id=job.worker_id,
                job_id=job.id,
                amount=split.amount,
                service_fee=split.fee,
                type=PaymentType.PAYMENT,
                status=PaymentStatus.PENDING,
                stripe_payment_intent_id=intent.id,
                description=f"Payment for job: {job.title}",
                meta={"customer_id": customer_id, "attempt": attempt},
            )
    except IntegrityError:
        # A concurrent request opened the charge first; hand back that one
        existing = await crud.get_open_charge(session, job_id, payer_id)
        if existing is None:
            raise
        logger.info(f"Open charge for job {job_id} / payer {payer_id} created concurrently (payment {existing.id})")
        return await _reuse_charge(gateway, existing)

    logger.info(f"Created payment intent {intent.id} for job {job.id} (payment {payment.id}, {split.amount_cents} cents)")
    return PaymentIntentHandle(
        payment_id=payment.id,
        payment_intent_id=intent.id,
        client_secret=intent.client_secret,
        amount=split.amount,
    )


async def confirm_payment(
    session: AsyncSession,
    gateway: PaymentGateway,
    payment_intent_id: str,
    payer_id: Optional[int] = None,
    policy: Optional[FeePolicy] = None,
) -> tuple[Payment, Optional[Earning]]:
    payment = await crud.get_payment_by_intent(session, payment_intent_id)
    if not payment:
        raise NotFoundError("payment", payment_intent_id)
    if payer_id is not None and payment.payer_id != payer_id:
        raise AuthorizationError("Not authorized to confirm this payment", payment_id=payment.id)

    intent = await gateway.retrieve_payment_intent(payment_intent_id)
    if intent.status != "succeeded":
        logger.warning(f"Payment intent {payment_intent_id} not succeeded (status: {intent.status})")
        raise PaymentNotSucceededError(
            f"Payment has not succeeded (status: {intent.status})",
            payment_intent_id=payment_intent_id,
            gateway_status=intent.status,
        )

    if payment.status != PaymentStatus.COMPLETED:
        await crud.update_payment(session, payment, status=PaymentStatus.COMPLETED, completed_at=utcnow())
        logger.info(f"Payment {payment.id} confirmed via intent {payment_intent_id}")

    earning = None
    job = await crud.get_job(session, payment.job_id) if payment.job_id else None
    if job and job.worker_id and job.status == JobStatus.COMPLETED:
        earning = await ensure_pending_earning(session, job, policy)
    return payment, earning


def connect_account_status(details_submitted: bool, payouts_enabled: bool, currently_due) -> ConnectAccountStatus:
    if not details_submitted:
        return ConnectAccountStatus.PENDING
    if payouts_enabled:
        return ConnectAccountStatus.ACTIVE
    if currently_due:
        return ConnectAccountStatus.RESTRICTED
    return ConnectAccountStatus.LIMITED


async def create_connected_account(
    session: AsyncSession,
    gateway: PaymentGateway,
    worker_id: int,
    refresh_url: Optional[str] = None,
    return_url: Optional[str] = None,
) -> ConnectOnboarding:
    worker = await crud.get_user(session, worker_id)
    if not worker:
        raise NotFoundError("user", worker_id)
    if not worker.email:
        raise MissingEmailError("An email address is required to set up payouts", user_id=worker_id)

    created = False
    if worker.stripe_connect_account_id:
        account = await gateway.retrieve_account(worker.stripe_connect_account_id)
        if account.details_submitted:
            raise ConflictError(
                "User already has a connected account",
                account_id=account.id,
            )
        logger.info(f"Resuming onboarding for account {account.id} (user {worker_id})")
    else:
        account = await gateway.create_connected_account(
            email=worker.email,
            metadata={"user_id": str(worker.id), "username": worker.username},
        )
        await crud.update_user(
            session,
            worker,
            stripe_connect_account_id=account.id,
            stripe_connect_account_status=ConnectAccountStatus.PENDING,
        )
        created = True
        logger.info(f"Created connected account {account.id} for user {worker_id}")

    url = await gateway.create_onboarding_link(
        account.id,
        refresh_url=refresh_url or f"{settings.APP_URL}/worker/connect/refresh",
        return_url=return_url or f"{settings.APP_URL}/worker/connect/complete",
    )
    return ConnectOnboarding(account_id=account.id, onboarding_url=url, created=created)


async def transfer(
    gateway: PaymentGateway,
    job: Job,
    worker: User,
    amount: Decimal,
    policy: Optional[FeePolicy] = None,
    idempotency_key: Optional[str] = None,
) -> TransferOutcome:
    """Sends amount minus the platform fee to the worker's connected account."""
    if not worker.stripe_connect_account_id:
        raise NoPayoutAccountError("Worker does not have a payout account", worker_id=worker.id)

    split = (policy or fee_policy_from_settings()).split(amount)
    if split.net_cents <= 0:
        raise ValidationError("Transfer amount must exceed the service fee", job_id=job.id)

    result = await gateway.create_transfer(
        amount_cents=split.net_cents,
        currency=settings.CURRENCY,
        destination=worker.stripe_connect_account_id,
        metadata={
            "job_id": str(job.id),
            "worker_id": str(worker.id),
            "platform_fee_cents": str(split.fee_cents),
        },
        idempotency_key=idempotency_key,
    )
    logger.info(f"Transfer {result.id} of {split.net_cents} cents to {worker.stripe_connect_account_id} for job {job.id}")
    return TransferOutcome(transfer_id=result.id, amount=split.amount, fee=split.fee, net_amount=split.net)


