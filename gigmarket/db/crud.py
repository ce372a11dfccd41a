"""
Persistence gateway: async accessors for every marketplace table.

Status columns are never assigned directly by callers; they go through
transition_job / transition_application, which consult the transition
tables and issue a compare-and-swap UPDATE guarded by the current status.
"""
import secrets
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import select, update, func, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.db.models import (
    Application,
    Earning,
    Job,
    JobEventLog,
    Message,
    Notification,
    Payment,
    ProcessedWebhookEvent,
    User,
    utcnow,
)
from gigmarket.domain.errors import InvalidTransitionError
from gigmarket.domain.geo import bounding_box, haversine_meters
from gigmarket.domain.states import (
    ACTIVE_APPLICATION_STATUSES,
    TERMINAL_PAYMENT_STATUSES,
    ApplicationStatus,
    JobEvent,
    JobStatus,
    PaymentType,
    can_transition_application,
    can_transition_job,
)


# =============================================================================
# Users
# =============================================================================

async def create_user(session: AsyncSession, **fields: Any) -> User:
    fields.setdefault("api_key", f"gm_{secrets.token_urlsafe(24)}")
    user = User(**fields)
    session.add(user)
    await session.flush()
    return user


async def get_user(session: AsyncSession, user_id: int) -> Optional[User]:
    return await session.get(User, user_id)


async def get_user_by_api_key(session: AsyncSession, api_key: str) -> Optional[User]:
    return await session.scalar(select(User).where(User.api_key == api_key))


async def get_user_by_username(session: AsyncSession, username: str) -> Optional[User]:
    return await session.scalar(select(User).where(User.username == username))


async def get_user_by_connect_account(session: AsyncSession, account_id: str) -> Optional[User]:
    return await session.scalar(select(User).where(User.stripe_connect_account_id == account_id))


async def update_user(session: AsyncSession, user: User, **fields: Any) -> User:
    for key, value in fields.items():
        setattr(user, key, value)
    await session.flush()
    return user


# =============================================================================
# Jobs
# =============================================================================

async def create_job(session: AsyncSession, **fields: Any) -> Job:
    job = Job(status=JobStatus.OPEN, **fields)
    session.add(job)
    await session.flush()
    return job


async def get_job(session: AsyncSession, job_id: int) -> Optional[Job]:
    return await session.get(Job, job_id)


async def list_open_jobs(session: AsyncSession, limit: int = 50, offset: int = 0) -> Sequence[Job]:
    stmt = (
        select(Job)
        .where(Job.status == JobStatus.OPEN)
        .order_by(Job.date_posted.desc(), Job.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return (await session.scalars(stmt)).all()


async def list_open_jobs_near(
    session: AsyncSession,
    latitude: float,
    longitude: float,
    radius_meters: float,
    limit: int = 100,
) -> list[tuple[Job, float]]:
    """
    Open jobs within radius_meters, nearest first, paired with their distance.
    The bounding box narrows rows in SQL; haversine decides membership.
    """
    min_lat, max_lat, min_lon, max_lon = bounding_box(latitude, longitude, radius_meters)
    stmt = select(Job).where(
        Job.status == JobStatus.OPEN,
        Job.latitude.between(min_lat, max_lat),
        Job.longitude.between(min_lon, max_lon),
    )
    rows = (await session.scalars(stmt)).all()

    nearby = []
    for job in rows:
        distance = haversine_meters(latitude, longitude, job.latitude, job.longitude)
        if distance <= radius_meters:
            nearby.append((job, distance))
    nearby.sort(key=lambda pair: pair[1])
    return nearby[:limit]


async def _compare_and_set(session: AsyncSession, model, entity_id: int, expected, target, values: dict) -> bool:
    # Push pending inserts first; autoflush is off
    await session.flush()
    stmt = (
        update(model)
        .where(model.id == entity_id, model.status == expected)
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def transition_job(
    session: AsyncSession,
    job: Job,
    target: JobStatus,
    expected: Optional[JobStatus] = None,
    **values: Any,
) -> Job:
    """
    Moves a job to `target` iff its stored status still equals `expected`
    (defaults to the in-memory status). Raises InvalidTransitionError when
    the edge is not in the transition table or the row changed underneath.
    """
    current = JobStatus(expected if expected is not None else job.status)
    if not can_transition_job(current, target):
        raise InvalidTransitionError("job", job.id, current, target)

    if not await _compare_and_set(session, Job, job.id, current, target, values):
        await session.refresh(job)
        raise InvalidTransitionError("job", job.id, job.status, target)

    await session.refresh(job)
    return job


async def log_job_event(
    session: AsyncSession,
    job_id: int,
    event_type: JobEvent,
    actor_id: Optional[int] = None,
    **meta: Any,
) -> None:
    session.add(JobEventLog(job_id=job_id, event_type=event_type, actor_id=actor_id, meta=meta))
    await session.flush()


async def list_job_events(session: AsyncSession, job_id: int) -> Sequence[JobEventLog]:
    stmt = select(JobEventLog).where(JobEventLog.job_id == job_id).order_by(JobEventLog.id.asc())
    return (await session.scalars(stmt)).all()


# =============================================================================
# Applications
# =============================================================================

async def create_application(session: AsyncSession, **fields: Any) -> Application:
    application = Application(status=ApplicationStatus.PENDING, **fields)
    session.add(application)
    await session.flush()
    return application


async def get_application(session: AsyncSession, application_id: int) -> Optional[Application]:
    return await session.get(Application, application_id)


async def get_active_application(session: AsyncSession, job_id: int, worker_id: int) -> Optional[Application]:
    stmt = select(Application).where(
        Application.job_id == job_id,
        Application.worker_id == worker_id,
        Application.status.in_(list(ACTIVE_APPLICATION_STATUSES)),
    )
    return await session.scalar(stmt.limit(1))


async def get_accepted_application(session: AsyncSession, job_id: int) -> Optional[Application]:
    stmt = select(Application).where(
        Application.job_id == job_id,
        Application.status == ApplicationStatus.ACCEPTED,
    )
    return await session.scalar(stmt.limit(1))


async def list_applications_for_job(session: AsyncSession, job_id: int) -> Sequence[Application]:
    stmt = select(Application).where(Application.job_id == job_id).order_by(Application.id.asc())
    return (await session.scalars(stmt)).all()


async def list_applications_for_worker(session: AsyncSession, worker_id: int) -> Sequence[Application]:
    stmt = select(Application).where(Application.worker_id == worker_id).order_by(Application.id.desc())
    return (await session.scalars(stmt)).all()


async def transition_application(
    session: AsyncSession,
    application: Application,
    target: ApplicationStatus,
    **values: Any,
) -> Application:
    current = ApplicationStatus(application.status)
    if not can_transition_application(current, target):
        raise InvalidTransitionError("application", application.id, current, target)

    if not await _compare_and_set(session, Application, application.id, current, target, values):
        await session.refresh(application)
        raise InvalidTransitionError("application", application.id, application.status, target)

    await session.refresh(application)
    return application


# =============================================================================
# Payments
# =============================================================================

async def create_payment(session: AsyncSession, **fields: Any) -> Payment:
    payment = Payment(**fields)
    session.add(payment)
    await session.flush()
    return payment


async def get_payment(session: AsyncSession, payment_id: int) -> Optional[Payment]:
    return await session.get(Payment, payment_id)


async def get_payment_by_intent(session: AsyncSession, payment_intent_id: str) -> Optional[Payment]:
    return await session.scalar(select(Payment).where(Payment.stripe_payment_intent_id == payment_intent_id))


async def get_payment_by_transaction(session: AsyncSession, transaction_id: str) -> Optional[Payment]:
    return await session.scalar(select(Payment).where(Payment.transaction_id == transaction_id))


async def get_open_charge(session: AsyncSession, job_id: int, payer_id: int) -> Optional[Payment]:
    """The non-terminal charge for (job, payer), if one exists."""
    stmt = select(Payment).where(
        Payment.job_id == job_id,
        Payment.payer_id == payer_id,
        Payment.type == PaymentType.PAYMENT,
        Payment.status.not_in(list(TERMINAL_PAYMENT_STATUSES)),
    ).order_by(Payment.id.desc())
    return await session.scalar(stmt.limit(1))


async def count_charges(session: AsyncSession, job_id: int, payer_id: int) -> int:
    stmt = select(func.count()).select_from(Payment).where(
        Payment.job_id == job_id,
        Payment.payer_id == payer_id,
        Payment.type == PaymentType.PAYMENT,
    )
    return (await session.execute(stmt)).scalar() or 0


async def count_transfers(session: AsyncSession, job_id: int) -> int:
    stmt = select(func.count()).select_from(Payment).where(
        Payment.job_id == job_id,
        Payment.type == PaymentType.TRANSFER,
    )
    return (await session.execute(stmt)).scalar() or 0


async def get_latest_transfer(session: AsyncSession, job_id: int) -> Optional[Payment]:
    stmt = select(Payment).where(
        Payment.job_id == job_id,
        Payment.type == PaymentType.TRANSFER,
    ).order_by(Payment.id.desc())
    return await session.scalar(stmt.limit(1))


async def list_payments_for_user(session: AsyncSession, user_id: int, limit: int = 50) -> Sequence[Payment]:
    stmt = (
        select(Payment)
        .where(or_(Payment.payer_id == user_id, Payment.worker_id == user_id))
        .order_by(Payment.id.desc())
        .limit(limit)
    )
    return (await session.scalars(stmt)).all()


async def update_payment(session: AsyncSession, payment: Payment, **fields: Any) -> Payment:
    for key, value in fields.items():
        setattr(payment, key, value)
    await session.flush()
    return payment


# =============================================================================
# Earnings
# =============================================================================

async def get_earning_for_job(session: AsyncSession, job_id: int, worker_id: int) -> Optional[Earning]:
    stmt = select(Earning).where(Earning.job_id == job_id, Earning.worker_id == worker_id)
    return await session.scalar(stmt)


async def create_earning(
    session: AsyncSession,
    worker_id: int,
    job_id: int,
    amount: Decimal,
    service_fee: Decimal,
    **fields: Any,
) -> Earning:
    earning = Earning(
        worker_id=worker_id,
        job_id=job_id,
        amount=amount,
        service_fee=service_fee,
        net_amount=amount - service_fee,
        **fields,
    )
    session.add(earning)
    await session.flush()
    return earning


async def list_earnings(session: AsyncSession, worker_id: int, limit: int = 100) -> Sequence[Earning]:
    stmt = select(Earning).where(Earning.worker_id == worker_id).order_by(Earning.id.desc()).limit(limit)
    return (await session.scalars(stmt)).all()


async def update_earning(session: AsyncSession, earning: Earning, **fields: Any) -> Earning:
    for key, value in fields.items():
        setattr(earning, key, value)
    await session.flush()
    return earning


# =============================================================================
# Notifications
# =============================================================================

async def get_notification(session: AsyncSession, notification_id: int) -> Optional[Notification]:
    return await session.get(Notification, notification_id)


async def list_notifications(
    session: AsyncSession,
    user_id: int,
    unread_only: bool = False,
    limit: int = 50,
) -> Sequence[Notification]:
    stmt = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    stmt = stmt.order_by(Notification.id.desc()).limit(limit)
    return (await session.scalars(stmt)).all()


async def count_unread_notifications(session: AsyncSession, user_id: int) -> int:
    stmt = select(func.count()).select_from(Notification).where(
        Notification.user_id == user_id,
        Notification.is_read.is_(False),
    )
    return (await session.execute(stmt)).scalar() or 0


async def mark_all_notifications_read(session: AsyncSession, user_id: int) -> int:
    stmt = (
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount


async def delete_notification(session: AsyncSession, notification: Notification) -> None:
    await session.delete(notification)
    await session.flush()


# =============================================================================
# Conversations
# =============================================================================

async def create_message(session: AsyncSession, **fields: Any) -> Message:
    message = Message(**fields)
    session.add(message)
    await session.flush()
    return message


async def list_conversation(
    session: AsyncSession,
    user_id: int,
    other_user_id: int,
    job_id: Optional[int] = None,
    limit: int = 100,
) -> Sequence[Message]:
    stmt = select(Message).where(
        or_(
            and_(Message.sender_id == user_id, Message.recipient_id == other_user_id),
            and_(Message.sender_id == other_user_id, Message.recipient_id == user_id),
        )
    )
    if job_id is not None:
        stmt = stmt.where(Message.job_id == job_id)
    stmt = stmt.order_by(Message.id.asc()).limit(limit)
    return (await session.scalars(stmt)).all()


async def mark_conversation_read(session: AsyncSession, user_id: int, other_user_id: int) -> int:
    stmt = (
        update(Message)
        .where(
            Message.sender_id == other_user_id,
            Message.recipient_id == user_id,
            Message.is_read.is_(False),
        )
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount


async def list_conversation_summaries(session: AsyncSession, user_id: int) -> list[dict[str, Any]]:
    """One entry per counterpart: last message and unread count."""
    stmt = select(Message).where(
        or_(Message.sender_id == user_id, Message.recipient_id == user_id)
    ).order_by(Message.id.desc())
    messages = (await session.scalars(stmt)).all()

    summaries: dict[int, dict[str, Any]] = {}
    for message in messages:
        other = message.recipient_id if message.sender_id == user_id else message.sender_id
        entry = summaries.get(other)
        if entry is None:
            entry = summaries[other] = {
                "user_id": other,
                "last_message": message.content,
                "last_sent_at": message.sent_at,
                "job_id": message.job_id,
                "unread_count": 0,
            }
        if message.recipient_id == user_id and not message.is_read:
            entry["unread_count"] += 1
    return list(summaries.values())


# =============================================================================
# Webhook de-duplication
# =============================================================================

async def is_event_processed(session: AsyncSession, event_id: str) -> bool:
    return await session.get(ProcessedWebhookEvent, event_id) is not None


async def record_processed_event(session: AsyncSession, event_id: str, event_type: str) -> None:
    session.add(ProcessedWebhookEvent(event_id=event_id, event_type=event_type, processed_at=utcnow()))
    await session.flush()
