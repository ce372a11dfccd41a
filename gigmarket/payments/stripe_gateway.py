import asyncio
import json
import logging
from typing import Any, Callable, Optional

import stripe

from gigmarket.api.v1.metrics import GATEWAY_ERRORS
from gigmarket.domain.errors import (
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


def _account_from_stripe(account) -> ConnectedAccount:
    requirements = getattr(account, "requirements", None)
    currently_due = getattr(requirements, "currently_due", None) or []
    return ConnectedAccount(
        id=account.id,
        details_submitted=bool(getattr(account, "details_submitted", False)),
        payouts_enabled=bool(getattr(account, "payouts_enabled", False)),
        charges_enabled=bool(getattr(account, "charges_enabled", False)),
        currently_due=tuple(currently_due),
    )


def _intent_from_stripe(intent) -> PaymentIntentResult:
    return PaymentIntentResult(
        id=intent.id,
        client_secret=getattr(intent, "client_secret", None),
        status=intent.status,
        amount_cents=intent.amount,
        metadata=dict(getattr(intent, "metadata", None) or {}),
    )


class StripeGateway(PaymentGateway):
    """
    Stripe implementation. The SDK is blocking, so every call runs in a
    worker thread under a timeout.
    """
    name = "stripe"

    def __init__(self, api_key: str, webhook_secret: str, api_version: Optional[str] = None, timeout: float = 10.0):
        if not api_key:
            raise ValueError("STRIPE_SECRET_KEY is required for the stripe gateway")
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.api_version = api_version
        self.timeout = timeout

    async def _call(self, operation: str, fn: Callable[..., Any], **params: Any):
        params["api_key"] = self.api_key
        if self.api_version:
            params["stripe_version"] = self.api_version
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, **params), timeout=self.timeout)
        except asyncio.TimeoutError:
            GATEWAY_ERRORS.labels(operation=operation, kind="unavailable").inc()
            logger.error(f"Stripe {operation} timed out after {self.timeout}s")
            raise GatewayUnavailableError(f"Payment gateway timed out during {operation}", operation=operation)
        except stripe.APIConnectionError as e:
            GATEWAY_ERRORS.labels(operation=operation, kind="unavailable").inc()
            logger.error(f"Stripe {operation} connection failure: {e}")
            raise GatewayUnavailableError(f"Payment gateway unreachable during {operation}", operation=operation)
        except stripe.StripeError as e:
            GATEWAY_ERRORS.labels(operation=operation, kind="rejected").inc()
            logger.error(f"Stripe {operation} rejected: {e.user_message or e}")
            raise GatewayRejectedError(
                e.user_message or str(e),
                operation=operation,
                gateway_code=getattr(e, "code", None),
            )

    async def create_customer(self, email, name, metadata):
        customer = await self._call(
            "create_customer", stripe.Customer.create, email=email, name=name, metadata=metadata
        )
        return customer.id

    async def create_payment_intent(self, amount_cents, currency, customer_id, metadata, idempotency_key=None):
        params = dict(
            amount=amount_cents,
            currency=currency,
            customer=customer_id,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
        )
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        intent = await self._call("create_payment_intent", stripe.PaymentIntent.create, **params)
        return _intent_from_stripe(intent)

    async def retrieve_payment_intent(self, payment_intent_id):
        intent = await self._call("retrieve_payment_intent", stripe.PaymentIntent.retrieve, id=payment_intent_id)
        return _intent_from_stripe(intent)

    async def create_connected_account(self, email, metadata):
        account = await self._call(
            "create_connected_account",
            stripe.Account.create,
            type="express",
            email=email,
            capabilities={"transfers": {"requested": True}},
            metadata=metadata,
        )
        return _account_from_stripe(account)

    async def retrieve_account(self, account_id):
        account = await self._call("retrieve_account", stripe.Account.retrieve, id=account_id)
        return _account_from_stripe(account)

    async def create_onboarding_link(self, account_id, refresh_url, return_url):
        link = await self._call(
            "create_onboarding_link",
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
        )
        return link.url

    async def create_transfer(self, amount_cents, currency, destination, metadata, idempotency_key=None):
        params = dict(amount=amount_cents, currency=currency, destination=destination, metadata=metadata)
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        transfer = await self._call("create_transfer", stripe.Transfer.create, **params)
        return TransferResult(
            id=transfer.id,
            amount_cents=transfer.amount,
            destination=destination,
            metadata=dict(metadata),
        )

    def construct_event(self, payload, signature):
        if not signature:
            raise InvalidSignatureError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise InvalidSignatureError("Invalid webhook signature")
        except ValueError:
            raise InvalidSignatureError("Invalid webhook payload")

        # Verified; re-read as plain JSON so handlers see dicts
        body = json.loads(payload)
        return GatewayEvent(id=body["id"], type=body["type"], data_object=body["data"]["object"])

    async def ping(self):
        try:
            await self._call("ping", stripe.Balance.retrieve)
        except (GatewayUnavailableError, GatewayRejectedError):
            return False
        return True
