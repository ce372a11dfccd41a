from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class PaymentIntentResult:
    id: str
    client_secret: Optional[str]
    status: str
    amount_cents: int
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConnectedAccount:
    id: str
    details_submitted: bool = False
    payouts_enabled: bool = False
    charges_enabled: bool = False
    currently_due: tuple[str, ...] = ()


@dataclass(frozen=True)
class TransferResult:
    id: str
    amount_cents: int
    destination: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayEvent:
    """A verified webhook event: type plus the affected object as a plain dict."""
    id: str
    type: str
    data_object: dict[str, Any]


class PaymentGateway(ABC):
    """
    Async boundary to the payment vendor. Amounts are integer cents.

    Implementations raise GatewayUnavailableError on timeouts and connection
    failures, GatewayRejectedError when the vendor declines a request, and
    InvalidSignatureError from construct_event.
    """
    name = "gateway"

    @abstractmethod
    async def create_customer(self, email: Optional[str], name: str, metadata: dict[str, Any]) -> str:
        ...

    @abstractmethod
    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        customer_id: str,
        metadata: dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentResult:
        ...

    @abstractmethod
    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentResult:
        ...

    @abstractmethod
    async def create_connected_account(self, email: str, metadata: dict[str, Any]) -> ConnectedAccount:
        ...

    @abstractmethod
    async def retrieve_account(self, account_id: str) -> ConnectedAccount:
        ...

    @abstractmethod
    async def create_onboarding_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        ...

    @abstractmethod
    async def create_transfer(
        self,
        amount_cents: int,
        currency: str,
        destination: str,
        metadata: dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        ...

    @abstractmethod
    def construct_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...
