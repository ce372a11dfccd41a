"""
Payment gateway webhook processing.

Each supported event type maps to a pure handler: (event object, loaded
entities) -> WebhookOutcome. Handlers never touch the session; apply()
writes the outcome. Delivery is at-least-once, so processed event ids are
recorded and replays are acknowledged without side effects.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.api.v1.metrics import WEBHOOK_EVENTS
from gigmarket.db import crud
from gigmarket.db.models import Earning, Job, Payment, User, utcnow
from gigmarket.domain.models import PendingNotification
from gigmarket.domain.states import (
    ConnectAccountStatus,
    EarningStatus,
    JobEvent,
    JobStatus,
    NotificationType,
    PaymentStatus,
)
from gigmarket.payments.gateway import PaymentGateway
from gigmarket.payments.service import connect_account_status, ensure_pending_earning
from gigmarket.services import notifications

logger = logging.getLogger(__name__)

CONNECT_STATUS_MESSAGES = {
    ConnectAccountStatus.ACTIVE: "Your payment account is now fully activated and ready to receive payments.",
    ConnectAccountStatus.RESTRICTED: "Your payment account needs attention. Please complete the required information to continue receiving payments.",
    ConnectAccountStatus.LIMITED: "Your payment account has limited functionality. Additional verification may be required.",
    ConnectAccountStatus.PENDING: "Your payment account setup is incomplete. Please complete the onboarding process.",
    ConnectAccountStatus.DEAUTHORIZED: "Your payment account has been disconnected. Please reconnect to continue receiving payments.",
}


@dataclass
class WebhookContext:
    user: Optional[User] = None
    payment: Optional[Payment] = None
    earning: Optional[Earning] = None
    job: Optional[Job] = None


@dataclass
class WebhookOutcome:
    user_updates: dict[str, Any] = field(default_factory=dict)
    payment_updates: dict[str, Any] = field(default_factory=dict)
    earning_updates: dict[str, Any] = field(default_factory=dict)
    job_status: Optional[JobStatus] = None
    job_event: Optional[JobEvent] = None
    ensure_earning: bool = False
    notifications: list[PendingNotification] = field(default_factory=list)


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    event_type: str
    outcome: str  # processed|duplicate|ignored


def connect_status_message(status: str) -> str:
    return CONNECT_STATUS_MESSAGES.get(status, "Your payment account status has been updated.")


def _job_title(ctx: WebhookContext) -> str:
    return ctx.job.title if ctx.job else "your job"


# =============================================================================
# Pure handlers
# =============================================================================

def on_account_updated(obj: dict[str, Any], ctx: WebhookContext) -> WebhookOutcome:
    if ctx.user is None:
        return WebhookOutcome()

    requirements = obj.get("requirements") or {}
    status = connect_account_status(
        bool(obj.get("details_submitted")),
        bool(obj.get("payouts_enabled")),
        requirements.get("currently_due") or [],
    )
    if status == ctx.user.stripe_connect_account_status:
        return WebhookOutcome()

    return WebhookOutcome(
        user_updates={"stripe_connect_account_status": status},
        notifications=[PendingNotification(
            user_id=ctx.user.id,
            title="Stripe Connect Account Update",
            message=connect_status_message(status),
            type=NotificationType.STRIPE_CONNECT_UPDATE,
            source_type="stripe_connect",
            metadata={"account_id": obj.get("id"), "status": str(status)},
        )],
    )


def on_transfer_created(obj: dict[str, Any], ctx: WebhookContext) -> WebhookOutcome:
    # Status already set when the transfer was issued; link the earning if needed
    if ctx.earning is not None and not ctx.earning.transaction_id:
        return WebhookOutcome(earning_updates={"transaction_id": obj.get("id")})
    return WebhookOutcome()


def on_transfer_paid(obj: dict[str, Any], ctx: WebhookContext) -> WebhookOutcome:
    payment = ctx.payment
    if payment is None or payment.status in (PaymentStatus.FAILED, PaymentStatus.REVERSED):
        return WebhookOutcome()

    outcome = WebhookOutcome()
    if payment.status != PaymentStatus.COMPLETED:
        outcome.payment_updates = {"status": PaymentStatus.COMPLETED, "completed_at": utcnow()}
    if ctx.earning is not None and ctx.earning.status != EarningStatus.PAID:
        outcome.earning_updates = {"status": EarningStatus.PAID, "date_paid": utcnow(), "transaction_id": obj.get("id")}
    if not outcome.payment_updates:
        return outcome

    title = _job_title(ctx)
    meta = {"payment_id": payment.id, "transfer_id": obj.get("id")}
    if payment.worker_id:
        outcome.notifications.append(PendingNotification(
            user_id=payment.worker_id,
            title="Payment Received",
            message=f"You received a payment of ${payment.amount} for \"{title}\".",
            type=NotificationType.PAYMENT_RECEIVED,
            source_id=payment.job_id,
            source_type="job",
            metadata=meta,
        ))
    outcome.notifications.append(PendingNotification(
        user_id=payment.payer_id,
        title="Payment Sent",
        message=f"Your payment of ${payment.amount} for \"{title}\" has been delivered to the worker.",
        type=NotificationType.PAYMENT_SENT,
        source_id=payment.job_id,
        source_type="job",
        metadata=meta,
    ))
    return outcome


def on_transfer_failed(obj: dict[str, Any], ctx: WebhookContext) -> WebhookOutcome:
    payment = ctx.payment
    if payment is None or payment.status in (PaymentStatus.FAILED, PaymentStatus.REVERSED):
        return WebhookOutcome()

    outcome = WebhookOutcome(payment_updates={"status": PaymentStatus.FAILED})
    if ctx.earning is not None and ctx.earning.status != EarningStatus.FAILED:
        outcome.earning_updates = {"status": EarningStatus.FAILED}
    if ctx.job is not None and ctx.job.status == JobStatus.COMPLETED:
        outcome.job_status = JobStatus.PAYMENT_FAILED
    outcome.job_event = JobEvent.PAYMENT_FAILED

    title = _job_title(ctx)
    meta = {"payment_id": payment.id, "transfer_id": obj.get("id")}
    if payment.worker_id:
        outcome.notifications.append(PendingNotification(
            user_id=payment.worker_id,
            title="Payment Failed",
            message=f"The payout for \"{title}\" could not be delivered. The job poster can retry the payment.",
            type=NotificationType.PAYMENT_FAILED,
            source_id=payment.job_id,
            source_type="job",
            metadata=meta,
        ))
    outcome.notifications.append(PendingNotification(
        user_id=payment.payer_id,
        title="Payment Failed",
        message=f"The payout to your worker for \"{title}\" failed. Please retry the payment.",
        type=NotificationType.PAYMENT_FAILED,
        source_id=payment.job_id,
        source_type="job",
        metadata=meta,
    ))
    return outcome


def on_transfer_reversed(obj: dict[str, Any], ctx: WebhookContext) -> WebhookOutcome:
    payment = ctx.payment
    if payment is None or payment.status != PaymentStatus.COMPLETED:
        return WebhookOutcome()

    outcome = WebhookOutcome(
        payment_updates={"status": PaymentStatus.REVERSED},
        job_event=JobEvent.TRANSFER_REVERSED,
    )
    if ctx.earning is not None:
        outcome.earning_updates = {"status": EarningStatus.REVERSED}
    title = _job_title(ctx)
    meta = {"payment_id": payment.id, "transfer_id": obj.get("id")}
    if payment.worker_id:
        outcome.notifications.append(PendingNotification(
            user_id=payment.worker_id,
            title="Payment Reversed",
            message=f"The payment of ${payment.amount} for \"{title}\" was reversed.",
            type=NotificationType.PAYMENT_REVERSED,
            source_id=payment.job_id,
            source_type="job",
            metadata=meta,
        ))
    outcome.notifications.append(PendingNotification(
        user_id=payment.payer_id,
        title="Payment Reversed",
        message=f"The payout to your worker for \"{title}\" was reversed.",
        type=NotificationType.PAYMENT_REVERSED,
        source_id=payment.job_id,
        source_type="job",
        metadata=meta,
    ))
    return outcome


def on_transfer_updated(obj: dict[str, Any], ctx: WebhookContext) -> WebhookOutcome:
    if obj.get("reversed"):
        return on_transfer_reversed(obj, ctx)
    return on_transfer_created(obj, ctx)


def on_payment_intent_succeeded(obj: dict[str, Any], ctx: WebhookContext) -> WebhookOutcome:
    payment = ctx.payment
    if payment is None or payment.status != PaymentStatus.PENDING:
        return WebhookOutcome()

    return WebhookOutcome(
        payment_updates={"status": PaymentStatus.COMPLETED, "completed_at": utcnow()},
        ensure_earning=ctx.job is not None and ctx.job.worker_id is not None and ctx.job.status == JobStatus.COMPLETED,
    )


def on_payment_intent_failed(obj: dict[str, Any], ctx: WebhookContext) -> WebhookOutcome:
    payment = ctx.payment
    if payment is None or payment.status != PaymentStatus.PENDING:
        return WebhookOutcome()

    error = obj.get("last_payment_error") or {}
    reason = error.get("message") or "The payment was declined."
    return WebhookOutcome(
        payment_updates={"status": PaymentStatus.FAILED, "meta": {**(payment.meta or {}), "failure_reason": reason}},
        notifications=[PendingNotification(
            user_id=payment.payer_id,
            title="Payment Failed",
            message=f"Your payment for \"{_job_title(ctx)}\" failed: {reason}",
            type=NotificationType.PAYMENT_FAILED,
            source_id=payment.job_id,
            source_type="job",
            metadata={"payment_id": payment.id, "payment_intent_id": obj.get("id")},
        )],
    )


Handler = Callable[[dict[str, Any], WebhookContext], WebhookOutcome]

HANDLERS: dict[str, Handler] = {
    "account.updated": on_account_updated,
    "transfer.created": on_transfer_created,
    "transfer.updated": on_transfer_updated,
    "transfer.paid": on_transfer_paid,
    "transfer.failed": on_transfer_failed,
    "transfer.reversed": on_transfer_reversed,
    "payment_intent.succeeded": on_payment_intent_succeeded,
    "payment_intent.payment_failed": on_payment_intent_failed,
}


# =============================================================================
# Loading and applying
# =============================================================================

async def load_context(session: AsyncSession, event_type: str, obj: dict[str, Any]) -> WebhookContext:
    ctx = WebhookContext()
    object_id = obj.get("id")

    if event_type == "account.updated":
        ctx.user = await crud.get_user_by_connect_account(session, object_id)
        return ctx

    if event_type.startswith("transfer."):
        ctx.payment = await crud.get_payment_by_transaction(session, object_id)
    elif event_type.startswith("payment_intent."):
        ctx.payment = await crud.get_payment_by_intent(session, object_id)

    job_id = ctx.payment.job_id if ctx.payment else None
    if job_id is None:
        raw = (obj.get("metadata") or {}).get("job_id")
        job_id = int(raw) if raw and str(raw).isdigit() else None
    if job_id is not None:
        ctx.job = await crud.get_job(session, job_id)

    worker_id = ctx.payment.worker_id if ctx.payment else None
    if ctx.job is not None and worker_id is None:
        worker_id = ctx.job.worker_id
    if ctx.job is not None and worker_id is not None:
        ctx.earning = await crud.get_earning_for_job(session, ctx.job.id, worker_id)
    return ctx


async def apply(session: AsyncSession, ctx: WebhookContext, outcome: WebhookOutcome, event_id: str):
    if outcome.user_updates and ctx.user is not None:
        await crud.update_user(session, ctx.user, **outcome.user_updates)
    if outcome.payment_updates and ctx.payment is not None:
        await crud.update_payment(session, ctx.payment, **outcome.payment_updates)
    if outcome.earning_updates and ctx.earning is not None:
        await crud.update_earning(session, ctx.earning, **outcome.earning_updates)

    if ctx.job is not None:
        if outcome.job_status is not None:
            await crud.transition_job(session, ctx.job, outcome.job_status)
        if outcome.job_event is not None:
            await crud.log_job_event(session, ctx.job.id, outcome.job_event, event_id=event_id)
        if outcome.ensure_earning:
            await ensure_pending_earning(session, ctx.job)

    await notifications.dispatch(session, outcome.notifications)


async def handle_webhook(
    session: AsyncSession,
    gateway: PaymentGateway,
    payload: bytes,
    signature: Optional[str],
) -> WebhookResult:
    event = gateway.construct_event(payload, signature)

    if await crud.is_event_processed(session, event.id):
        logger.info(f"Webhook {event.id} ({event.type}) already processed; skipping")
        WEBHOOK_EVENTS.labels(event_type=event.type, outcome="duplicate").inc()
        return WebhookResult(event.id, event.type, "duplicate")

    handler = HANDLERS.get(event.type)
    if handler is None:
        logger.info(f"Ignoring unhandled webhook type {event.type} ({event.id})")
        await crud.record_processed_event(session, event.id, event.type)
        WEBHOOK_EVENTS.labels(event_type=event.type, outcome="ignored").inc()
        return WebhookResult(event.id, event.type, "ignored")

    ctx = await load_context(session, event.type, event.data_object)
    outcome = handler(event.data_object, ctx)
    await apply(session, ctx, outcome, event.id)
    await crud.record_processed_event(session, event.id, event.type)

    logger.info(f"Processed webhook {event.id} ({event.type})")
    WEBHOOK_EVENTS.labels(event_type=event.type, outcome="processed").inc()
    return WebhookResult(event.id, event.type, "processed")
