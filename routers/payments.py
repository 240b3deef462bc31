from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

import payment_service
from config import Settings, get_settings
from database import get_db
from gateways import PaymentGateway, build_gateway
from security import get_current_user

router = APIRouter(prefix="/api/payments", tags=["payments"])


def get_gateway(request: Request, settings: Settings = Depends(get_settings)) -> PaymentGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        gateway = build_gateway(settings)
        request.app.state.gateway = gateway
    return gateway


class CreatePaymentPayload(BaseModel):
    order_id: Optional[str] = None
    booking_id: Optional[str] = None
    payment_method_id: Optional[str] = Field(None, description="Gateway payment method token")
    payment_method: Optional[str] = None


class VerifyPaymentPayload(BaseModel):
    gateway_order_id: str = Field(..., min_length=1, description="Charge id returned by /create")
    gateway_payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class CompletePaymentPayload(BaseModel):
    charge_id: str = Field(..., min_length=1)


@router.post("/create")
@router.post("/process")
def create_payment(
    payload: CreatePaymentPayload,
    user=Depends(get_current_user),
    db=Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    return payment_service.initiate_payment(
        db,
        gateway,
        settings.payment_currency,
        user,
        order_id=payload.order_id,
        booking_id=payload.booking_id,
        method_token=payload.payment_method_id,
        payment_method=payload.payment_method,
        use_transactions=settings.mongo_transactions,
    )


@router.post("/verify")
def verify_payment(
    payload: VerifyPaymentPayload,
    user=Depends(get_current_user),
    db=Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    return payment_service.verify_payment_signature(
        db,
        gateway,
        payload.gateway_order_id,
        payload.gateway_payment_id,
        payload.signature,
        user,
        use_transactions=settings.mongo_transactions,
    )


@router.post("/complete")
def complete_payment(
    payload: CompletePaymentPayload,
    user=Depends(get_current_user),
    db=Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    return payment_service.complete_payment(db, gateway, payload.charge_id, user, use_transactions=settings.mongo_transactions)


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    stripe_signature: Optional[str] = Header(None),
    db=Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    body = await request.body()
    signature = x_razorpay_signature if gateway.name == "razorpay" else stripe_signature
    return await run_in_threadpool(
        payment_service.handle_webhook, db, gateway, body, signature, use_transactions=settings.mongo_transactions
    )


@router.get("/history")
def payment_history(user=Depends(get_current_user), db=Depends(get_db)):
    return payment_service.payment_history(db, user)


@router.get("/{payment_id}")
def payment_detail(payment_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return payment_service.payment_detail(db, payment_id, user)
