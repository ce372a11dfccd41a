"""Webhook verification, de-duplication and event handlers."""

from decimal import Decimal

import pytest

from gigmarket.commands.release_funds import release_funds
from gigmarket.db import crud
from gigmarket.db.models import Earning, Job, Payment, User
from gigmarket.domain.errors import InvalidSignatureError
from gigmarket.domain.states import (
    ConnectAccountStatus,
    EarningStatus,
    JobEvent,
    JobStatus,
    NotificationType,
    PaymentStatus,
    PaymentType,
)
from gigmarket.payments import service as payments
from gigmarket.payments.webhooks import (
    CONNECT_STATUS_MESSAGES,
    WebhookContext,
    handle_webhook,
    on_account_updated,
    on_payment_intent_succeeded,
    on_transfer_failed,
    on_transfer_paid,
    on_transfer_reversed,
    on_transfer_updated,
)


async def deliver(db, gateway, event_type, obj, event_id=None):
    payload, signature = gateway.build_event(event_type, obj, event_id=event_id)
    return await handle_webhook(db, gateway, payload, signature)


@pytest.fixture
def released(db, gateway, completed_job, payout_ready_worker, poster):
    """Completed job whose funds were released successfully."""
    async def _release():
        return await release_funds(db, gateway, completed_job.id, poster.id)
    return _release


class TestVerification:
    """Signature checks and replay handling."""

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, db, gateway):
        payload, _ = gateway.build_event("account.updated", {"id": "acct_x"})

        with pytest.raises(InvalidSignatureError):
            await handle_webhook(db, gateway, payload, "t=123,v1=not-a-signature")

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, db, gateway):
        payload, _ = gateway.build_event("account.updated", {"id": "acct_x"})

        with pytest.raises(InvalidSignatureError):
            await handle_webhook(db, gateway, payload, None)

    @pytest.mark.asyncio
    async def test_stale_timestamp_rejected(self, db, gateway):
        payload, _ = gateway.build_event("account.updated", {"id": "acct_x"})
        old = gateway.sign(payload, timestamp=1_000_000)

        with pytest.raises(InvalidSignatureError):
            await handle_webhook(db, gateway, payload, old)

    @pytest.mark.asyncio
    async def test_unknown_type_ignored_and_recorded(self, db, gateway):
        result = await deliver(db, gateway, "customer.created", {"id": "cus_1"}, event_id="evt_unknown")

        assert result.outcome == "ignored"
        assert await crud.is_event_processed(db, "evt_unknown")

    @pytest.mark.asyncio
    async def test_replay_is_duplicate(self, db, gateway, worker):
        onboarding = await payments.create_connected_account(db, gateway, worker.id)
        obj = {"id": onboarding.account_id, "details_submitted": True, "payouts_enabled": True}
        payload, signature = gateway.build_event("account.updated", obj, event_id="evt_replay")

        first = await handle_webhook(db, gateway, payload, signature)
        second = await handle_webhook(db, gateway, payload, signature)

        assert first.outcome == "processed"
        assert second.outcome == "duplicate"
        notes = await crud.list_notifications(db, worker.id)
        assert len(notes) == 1


class TestAccountUpdated:
    """Connected account status changes."""

    @pytest.mark.asyncio
    async def test_activation_notifies_worker(self, db, gateway, worker):
        onboarding = await payments.create_connected_account(db, gateway, worker.id)

        await deliver(db, gateway, "account.updated", {
            "id": onboarding.account_id,
            "details_submitted": True,
            "payouts_enabled": True,
            "requirements": {"currently_due": []},
        })

        assert worker.stripe_connect_account_status == ConnectAccountStatus.ACTIVE
        note = (await crud.list_notifications(db, worker.id))[0]
        assert note.type == NotificationType.STRIPE_CONNECT_UPDATE
        assert note.message == CONNECT_STATUS_MESSAGES[ConnectAccountStatus.ACTIVE]

    @pytest.mark.asyncio
    async def test_restricted_account(self, db, gateway, worker):
        onboarding = await payments.create_connected_account(db, gateway, worker.id)

        await deliver(db, gateway, "account.updated", {
            "id": onboarding.account_id,
            "details_submitted": True,
            "payouts_enabled": False,
            "requirements": {"currently_due": ["external_account"]},
        })

        assert worker.stripe_connect_account_status == ConnectAccountStatus.RESTRICTED

    @pytest.mark.asyncio
    async def test_unchanged_status_is_silent(self, db, gateway, worker):
        onboarding = await payments.create_connected_account(db, gateway, worker.id)

        result = await deliver(db, gateway, "account.updated", {"id": onboarding.account_id, "details_submitted": False})

        assert result.outcome == "processed"
        assert await crud.list_notifications(db, worker.id) == []

    @pytest.mark.asyncio
    async def test_unknown_account_is_noop(self, db, gateway):
        result = await deliver(db, gateway, "account.updated", {"id": "acct_nobody", "details_submitted": True})
        assert result.outcome == "processed"


class TestTransferEvents:
    """Payout status reported by the gateway."""

    @pytest.mark.asyncio
    async def test_transfer_failed_after_release(self, db, gateway, released, poster, payout_ready_worker):
        result = await released()
        transfer_id = result.payment.transaction_id

        await deliver(db, gateway, "transfer.failed", {"id": transfer_id, "metadata": {"job_id": str(result.job.id)}})

        assert result.payment.status == PaymentStatus.FAILED
        assert result.earning.status == EarningStatus.FAILED
        job = await crud.get_job(db, result.job.id)
        assert job.status == JobStatus.PAYMENT_FAILED
        events = [e.event_type for e in await crud.list_job_events(db, job.id)]
        assert events[-1] == JobEvent.PAYMENT_FAILED
        assert (await crud.list_notifications(db, poster.id))[0].type == NotificationType.PAYMENT_FAILED
        assert (await crud.list_notifications(db, payout_ready_worker.id))[0].type == NotificationType.PAYMENT_FAILED

    @pytest.mark.asyncio
    async def test_failed_job_can_be_released_again(self, db, gateway, released, poster):
        result = await released()
        await deliver(db, gateway, "transfer.failed", {"id": result.payment.transaction_id})

        retry = await release_funds(db, gateway, result.job.id, poster.id)

        assert retry.job.status == JobStatus.COMPLETED
        assert retry.earning.status == EarningStatus.PAID

    @pytest.mark.asyncio
    async def test_transfer_paid_after_completion_is_noop(self, db, gateway, released, payout_ready_worker):
        result = await released()
        before = len(await crud.list_notifications(db, payout_ready_worker.id))

        outcome = await deliver(db, gateway, "transfer.paid", {"id": result.payment.transaction_id})

        assert outcome.outcome == "processed"
        assert result.payment.status == PaymentStatus.COMPLETED
        assert len(await crud.list_notifications(db, payout_ready_worker.id)) == before

    @pytest.mark.asyncio
    async def test_transfer_reversed(self, db, gateway, released, poster, payout_ready_worker):
        result = await released()
        poster_before = len(await crud.list_notifications(db, poster.id))

        await deliver(db, gateway, "transfer.reversed", {"id": result.payment.transaction_id})

        assert result.payment.status == PaymentStatus.REVERSED
        assert result.earning.status == EarningStatus.REVERSED
        note = (await crud.list_notifications(db, payout_ready_worker.id))[0]
        assert note.type == NotificationType.PAYMENT_REVERSED
        poster_notes = await crud.list_notifications(db, poster.id)
        assert len(poster_notes) == poster_before + 1
        assert poster_notes[0].type == NotificationType.PAYMENT_REVERSED
        assert poster_notes[0].title == "Payment Reversed"
        events = [e.event_type for e in await crud.list_job_events(db, result.job.id)]
        assert events[-1] == JobEvent.TRANSFER_REVERSED

    @pytest.mark.asyncio
    async def test_failed_after_reversal_is_noop(self, db, gateway, released):
        result = await released()
        await deliver(db, gateway, "transfer.reversed", {"id": result.payment.transaction_id})

        await deliver(db, gateway, "transfer.failed", {"id": result.payment.transaction_id})

        assert result.payment.status == PaymentStatus.REVERSED
        job = await crud.get_job(db, result.job.id)
        assert job.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_transfer_is_noop(self, db, gateway):
        result = await deliver(db, gateway, "transfer.failed", {"id": "tr_unknown"})
        assert result.outcome == "processed"


class TestPaymentIntentEvents:
    """Charge status reported by the gateway."""

    @pytest.mark.asyncio
    async def test_succeeded_completes_payment(self, db, gateway, completed_job, poster, worker):
        handle = await payments.create_payment_intent(db, gateway, poster.id, completed_job.id)

        await deliver(db, gateway, "payment_intent.succeeded", {
            "id": handle.payment_intent_id,
            "metadata": {"job_id": str(completed_job.id)},
        })

        payment = await crud.get_payment(db, handle.payment_id)
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.completed_at is not None
        assert len(await crud.list_earnings(db, worker.id)) == 1

    @pytest.mark.asyncio
    async def test_payment_failed_records_reason(self, db, gateway, open_job, poster):
        handle = await payments.create_payment_intent(db, gateway, poster.id, open_job.id)

        await deliver(db, gateway, "payment_intent.payment_failed", {
            "id": handle.payment_intent_id,
            "last_payment_error": {"message": "Your card was declined."},
        })

        payment = await crud.get_payment(db, handle.payment_id)
        assert payment.status == PaymentStatus.FAILED
        assert payment.meta["failure_reason"] == "Your card was declined."
        note = (await crud.list_notifications(db, poster.id))[0]
        assert note.type == NotificationType.PAYMENT_FAILED
        assert "Your card was declined." in note.message


class TestHandlers:
    """Handlers are pure: context in, outcome out."""

    def payment(self, status=PaymentStatus.COMPLETED):
        return Payment(
            id=1, payer_id=10, worker_id=20, job_id=30, amount=Decimal("90.00"),
            type=PaymentType.TRANSFER, status=status, transaction_id="tr_1", meta={},
        )

    def test_account_updated_without_user(self):
        outcome = on_account_updated({"id": "acct_1", "details_submitted": True}, WebhookContext())

        assert outcome.user_updates == {}
        assert outcome.notifications == []

    def test_account_updated_changes_status(self):
        user = User(id=5, stripe_connect_account_status=ConnectAccountStatus.PENDING)

        outcome = on_account_updated(
            {"id": "acct_1", "details_submitted": True, "payouts_enabled": False, "requirements": {}},
            WebhookContext(user=user),
        )

        assert outcome.user_updates == {"stripe_connect_account_status": ConnectAccountStatus.LIMITED}
        assert outcome.notifications[0].user_id == 5

    def test_transfer_failed_moves_completed_job(self):
        job = Job(id=30, title="Paint fence", status=JobStatus.COMPLETED)
        earning = Earning(id=2, status=EarningStatus.PAID)

        outcome = on_transfer_failed({"id": "tr_1"}, WebhookContext(payment=self.payment(), earning=earning, job=job))

        assert outcome.payment_updates == {"status": PaymentStatus.FAILED}
        assert outcome.earning_updates == {"status": EarningStatus.FAILED}
        assert outcome.job_status == JobStatus.PAYMENT_FAILED
        assert {n.user_id for n in outcome.notifications} == {10, 20}

    def test_transfer_failed_ignores_failed_payment(self):
        outcome = on_transfer_failed({"id": "tr_1"}, WebhookContext(payment=self.payment(PaymentStatus.FAILED)))

        assert outcome.payment_updates == {}
        assert outcome.job_status is None

    def test_transfer_paid_completes_pending(self):
        outcome = on_transfer_paid({"id": "tr_1"}, WebhookContext(payment=self.payment(PaymentStatus.PENDING)))

        assert outcome.payment_updates["status"] == PaymentStatus.COMPLETED
        by_user = {n.user_id: n.type for n in outcome.notifications}
        assert by_user == {20: NotificationType.PAYMENT_RECEIVED, 10: NotificationType.PAYMENT_SENT}

    def test_transfer_reversed_notifies_both_parties(self):
        outcome = on_transfer_reversed({"id": "tr_1"}, WebhookContext(payment=self.payment()))

        assert outcome.payment_updates == {"status": PaymentStatus.REVERSED}
        assert {n.user_id for n in outcome.notifications} == {10, 20}
        assert all(n.type == NotificationType.PAYMENT_REVERSED for n in outcome.notifications)

    def test_transfer_updated_routes_reversal(self):
        outcome = on_transfer_updated({"id": "tr_1", "reversed": True}, WebhookContext(payment=self.payment()))
        assert outcome.payment_updates == {"status": PaymentStatus.REVERSED}

    def test_transfer_updated_links_earning(self):
        earning = Earning(id=2, status=EarningStatus.PENDING, transaction_id=None)

        outcome = on_transfer_updated({"id": "tr_9"}, WebhookContext(payment=self.payment(), earning=earning))

        assert outcome.earning_updates == {"transaction_id": "tr_9"}

    def test_intent_succeeded_only_from_pending(self):
        outcome = on_payment_intent_succeeded({"id": "pi_1"}, WebhookContext(payment=self.payment(PaymentStatus.FAILED)))
        assert outcome.payment_updates == {}
