import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Header, Request
from pydantic import BaseModel, ConfigDict, Field

from gigmarket.api.deps import DbSession, Gateway
from gigmarket.api.v1.jobs import EarningResponse, JobResponse
from gigmarket.auth.security import CurrentCaller
from gigmarket.commands.release_funds import release_funds
from gigmarket.db import crud
from gigmarket.domain.errors import GatewayError
from gigmarket.domain.states import PaymentStatus, PaymentType
from gigmarket.payments import service as payments
from gigmarket.payments.webhooks import handle_webhook

logger = logging.getLogger(__name__)

router = APIRouter()


class IntentRequest(BaseModel):
    job_id: int
    amount: Optional[Decimal] = Field(default=None, gt=0)


class IntentResponse(BaseModel):
    payment_id: int
    payment_intent_id: str
    client_secret: Optional[str]
    amount: Decimal
    reused: bool


class ConfirmRequest(BaseModel):
    payment_intent_id: str


class PaymentResponse(BaseModel):
    id: int
    payer_id: int
    worker_id: Optional[int] = None
    job_id: Optional[int] = None
    amount: Decimal
    service_fee: Optional[Decimal] = None
    type: PaymentType
    status: PaymentStatus
    transaction_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class ConfirmResponse(BaseModel):
    payment: PaymentResponse
    earning: Optional[EarningResponse] = None


class ConnectRequest(BaseModel):
    refresh_url: Optional[str] = None
    return_url: Optional[str] = None


class ConnectResponse(BaseModel):
    account_id: str
    onboarding_url: str
    created: bool


class TransferRequest(BaseModel):
    job_id: int


class TransferResponse(BaseModel):
    job: JobResponse
    payment: PaymentResponse
    earning: EarningResponse


@router.post("/intent", response_model=IntentResponse)
async def create_intent(body: IntentRequest, caller: CurrentCaller, session: DbSession, gateway: Gateway):
    handle = await payments.create_payment_intent(session, gateway, caller.user_id, body.job_id, body.amount)
    await session.commit()
    return IntentResponse(**handle.__dict__)


@router.post("/confirm", response_model=ConfirmResponse)
async def confirm(body: ConfirmRequest, caller: CurrentCaller, session: DbSession, gateway: Gateway):
    payment, earning = await payments.confirm_payment(session, gateway, body.payment_intent_id, payer_id=caller.user_id)
    await session.commit()
    return ConfirmResponse(
        payment=PaymentResponse.model_validate(payment),
        earning=EarningResponse.model_validate(earning) if earning else None,
    )


@router.post("/connect/account", response_model=ConnectResponse)
async def connect_account(caller: CurrentCaller, session: DbSession, gateway: Gateway, body: Optional[ConnectRequest] = None):
    body = body or ConnectRequest()
    onboarding = await payments.create_connected_account(
        session, gateway, caller.user_id, refresh_url=body.refresh_url, return_url=body.return_url
    )
    await session.commit()
    return ConnectResponse(**onboarding.__dict__)


@router.post("/transfer", response_model=TransferResponse)
async def transfer(body: TransferRequest, caller: CurrentCaller, session: DbSession, gateway: Gateway):
    try:
        result = await release_funds(session, gateway, body.job_id, caller.user_id)
    except GatewayError:
        # Persist the failure state (payment_failed, notifications) before answering 502
        await session.commit()
        raise
    await session.commit()
    return TransferResponse(
        job=JobResponse.model_validate(result.job),
        payment=PaymentResponse.model_validate(result.payment),
        earning=EarningResponse.model_validate(result.earning),
    )


@router.post("/webhook")
async def webhook(
    request: Request,
    session: DbSession,
    gateway: Gateway,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
):
    payload = await request.body()
    result = await handle_webhook(session, gateway, payload, stripe_signature)
    await session.commit()
    return {"received": True, "event_id": result.event_id, "outcome": result.outcome}


@router.get("/earnings", response_model=list[EarningResponse])
async def earnings(caller: CurrentCaller, session: DbSession):
    return await crud.list_earnings(session, caller.user_id)


@router.get("/history", response_model=list[PaymentResponse])
async def history(caller: CurrentCaller, session: DbSession):
    return await crud.list_payments_for_user(session, caller.user_id)
