import hashlib
import hmac
import itertools
import json
import logging
import time
from typing import Any, Optional

from gigmarket.domain.errors import (
    GatewayError,
    GatewayRejectedError,
    GatewayUnavailableError,
    InvalidSignatureError,
)
from gigmarket.payments.gateway import (
    ConnectedAccount,
    GatewayEvent,
    PaymentGateway,
    PaymentIntentResult,
    TransferResult,
)

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


class FakeGateway(PaymentGateway):
    """
    Deterministic in-memory gateway for local development and tests.

    Webhooks are signed the same way Stripe signs them
    ("t=<unix>,v1=<hex hmac-sha256 of '<t>.<payload>'>"), so the webhook
    route exercises real signature verification.
    """
    name = "fake"

    def __init__(self, webhook_secret: str = "whsec_local_dev"):
        self.webhook_secret = webhook_secret
        self._ids = itertools.count(1)
        self.customers: dict[str, dict[str, Any]] = {}
        self.intents: dict[str, PaymentIntentResult] = {}
        self.accounts: dict[str, ConnectedAccount] = {}
        self.transfers: dict[str, TransferResult] = {}
        self._idempotent: dict[str, Any] = {}
        self._failures: dict[str, list[GatewayError]] = {}
        self._lost_replies: dict[str, list[GatewayError]] = {}
        self.healthy = True
        self.calls: list[str] = []

    # --- test controls -----------------------------------------------------

    def fail(self, operation: str, error: Optional[GatewayError] = None, times: int = 1):
        """Makes the next `times` calls to `operation` raise `error`."""
        error = error or GatewayUnavailableError(f"Simulated {operation} outage", operation=operation)
        self._failures.setdefault(operation, []).extend([error] * times)

    def drop_reply(self, operation: str, error: Optional[GatewayError] = None, times: int = 1):
        """
        Makes the next `times` calls to `operation` take effect and then raise
        `error`, like a request that reached the vendor but timed out.
        """
        error = error or GatewayUnavailableError(f"Simulated {operation} timeout", operation=operation)
        self._lost_replies.setdefault(operation, []).extend([error] * times)

    def succeed_payment_intent(self, payment_intent_id: str, status: str = "succeeded"):
        intent = self.intents[payment_intent_id]
        self.intents[payment_intent_id] = PaymentIntentResult(
            id=intent.id,
            client_secret=intent.client_secret,
            status=status,
            amount_cents=intent.amount_cents,
            metadata=intent.metadata,
        )

    def complete_onboarding(self, account_id: str, payouts_enabled: bool = True, currently_due: tuple[str, ...] = ()):
        self.accounts[account_id] = ConnectedAccount(
            id=account_id,
            details_submitted=True,
            payouts_enabled=payouts_enabled,
            charges_enabled=payouts_enabled,
            currently_due=currently_due,
        )

    def sign(self, payload: bytes, timestamp: Optional[int] = None) -> str:
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed = f"{timestamp}.".encode() + payload
        digest = hmac.new(self.webhook_secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"

    def build_event(self, event_type: str, data_object: dict[str, Any], event_id: Optional[str] = None) -> tuple[bytes, str]:
        """Returns (raw payload, signature header) for a webhook delivery."""
        event_id = event_id or f"evt_fake_{next(self._ids)}"
        payload = json.dumps({"id": event_id, "type": event_type, "data": {"object": data_object}}).encode()
        return payload, self.sign(payload)

    # --- gateway primitives ------------------------------------------------

    def _check(self, operation: str):
        self.calls.append(operation)
        queued = self._failures.get(operation)
        if queued:
            error = queued.pop(0)
            logger.info(f"FakeGateway raising {type(error).__name__} for {operation}")
            raise error

    def _reply(self, operation: str):
        queued = self._lost_replies.get(operation)
        if queued:
            error = queued.pop(0)
            logger.info(f"FakeGateway dropping reply for {operation} with {type(error).__name__}")
            raise error

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_fake_{next(self._ids)}"

    async def create_customer(self, email, name, metadata):
        self._check("create_customer")
        customer_id = self._next_id("cus")
        self.customers[customer_id] = {"email": email, "name": name, "metadata": dict(metadata)}
        return customer_id

    async def create_payment_intent(self, amount_cents, currency, customer_id, metadata, idempotency_key=None):
        self._check("create_payment_intent")
        if idempotency_key and idempotency_key in self._idempotent:
            return self._idempotent[idempotency_key]
        if amount_cents <= 0:
            raise GatewayRejectedError("Amount must be positive", operation="create_payment_intent")

        intent_id = self._next_id("pi")
        intent = PaymentIntentResult(
            id=intent_id,
            client_secret=f"{intent_id}_secret",
            status="requires_payment_method",
            amount_cents=amount_cents,
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        if idempotency_key:
            self._idempotent[idempotency_key] = intent
        return intent

    async def retrieve_payment_intent(self, payment_intent_id):
        self._check("retrieve_payment_intent")
        intent = self.intents.get(payment_intent_id)
        if intent is None:
            raise GatewayRejectedError(f"No such payment_intent: {payment_intent_id}", operation="retrieve_payment_intent")
        return intent

    async def create_connected_account(self, email, metadata):
        self._check("create_connected_account")
        account = ConnectedAccount(id=self._next_id("acct"))
        self.accounts[account.id] = account
        return account

    async def retrieve_account(self, account_id):
        self._check("retrieve_account")
        account = self.accounts.get(account_id)
        if account is None:
            raise GatewayRejectedError(f"No such account: {account_id}", operation="retrieve_account")
        return account

    async def create_onboarding_link(self, account_id, refresh_url, return_url):
        self._check("create_onboarding_link")
        return f"https://connect.fake.local/setup/{account_id}?return_url={return_url}"

    async def create_transfer(self, amount_cents, currency, destination, metadata, idempotency_key=None):
        self._check("create_transfer")
        if idempotency_key and idempotency_key in self._idempotent:
            return self._idempotent[idempotency_key]
        if destination not in self.accounts:
            raise GatewayRejectedError(f"No such destination: {destination}", operation="create_transfer")

        transfer = TransferResult(
            id=self._next_id("tr"),
            amount_cents=amount_cents,
            destination=destination,
            metadata=dict(metadata),
        )
        self.transfers[transfer.id] = transfer
        if idempotency_key:
            self._idempotent[idempotency_key] = transfer
        self._reply("create_transfer")
        return transfer

    def construct_event(self, payload, signature):
        if not signature:
            raise InvalidSignatureError("Missing Stripe-Signature header")

        parts = dict(item.split("=", 1) for item in signature.split(",") if "=" in item)
        timestamp, received = parts.get("t"), parts.get("v1")
        if not timestamp or not received or not timestamp.isdigit():
            raise InvalidSignatureError("Malformed webhook signature")

        expected = self.sign(payload, int(timestamp)).split("v1=", 1)[1]
        if not hmac.compare_digest(expected, received):
            raise InvalidSignatureError("Invalid webhook signature")
        if abs(time.time() - int(timestamp)) > SIGNATURE_TOLERANCE_SECONDS:
            raise InvalidSignatureError("Webhook timestamp outside tolerance")

        try:
            body = json.loads(payload)
            return GatewayEvent(id=body["id"], type=body["type"], data_object=body["data"]["object"])
        except (ValueError, KeyError, TypeError):
            raise InvalidSignatureError("Invalid webhook payload")

    async def ping(self):
        self.calls.append("ping")
        return self.healthy
