from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from typing import Optional

from commerce_core.application.payments import PaymentService
from commerce_core.application.schemas import (
    PaymentConfirm, PaymentIntentCreate, PaymentIntentRead, PaymentMethodCreate, PaymentMethodRead,
    Principal, RefundCreate, TransactionPage, TransactionRead, WebhookAck,
)
from commerce_core.application.webhooks import WebhookService
from commerce_core.infrastructure.db import get_db
from commerce_core.infrastructure.gateway import GatewayCaller, PaymentGateway
from .deps import get_caller, get_payment_gateway, get_principal, require_admin

router = APIRouter(prefix="/payments", tags=["payments"])


def payment_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    caller: GatewayCaller = Depends(get_caller),
) -> PaymentService:
    return PaymentService(db, gateway, caller)


@router.get("/methods", response_model=list[PaymentMethodRead])
def list_payment_methods(
    principal: Principal = Depends(get_principal),
    service: PaymentService = Depends(payment_service),
):
    return service.list_payment_methods(principal)


@router.post("/methods", response_model=PaymentMethodRead, status_code=201)
def add_payment_method(
    payload: PaymentMethodCreate,
    principal: Principal = Depends(get_principal),
    service: PaymentService = Depends(payment_service),
):
    return service.add_payment_method(principal, payload)


@router.delete("/methods/{method_id}", status_code=204)
def delete_payment_method(
    method_id: int,
    principal: Principal = Depends(get_principal),
    service: PaymentService = Depends(payment_service),
):
    service.delete_payment_method(principal, method_id)
    return None


@router.put("/methods/{method_id}/default", response_model=PaymentMethodRead)
def set_default_payment_method(
    method_id: int,
    principal: Principal = Depends(get_principal),
    service: PaymentService = Depends(payment_service),
):
    return service.set_default_payment_method(principal, method_id)


@router.post("/intents", response_model=PaymentIntentRead, status_code=201)
def create_payment_intent(
    payload: PaymentIntentCreate,
    principal: Principal = Depends(get_principal),
    service: PaymentService = Depends(payment_service),
):
    txn = service.create_payment_intent(
        principal,
        payload.order_id,
        payload.amount,
        currency=payload.currency,
        payment_method_id=payload.payment_method_id,
        description=payload.description,
        metadata=payload.metadata,
    )
    return PaymentIntentRead(
        transaction_id=txn.id,
        payment_intent_id=txn.payment_intent_id,
        client_secret=txn.client_secret,
        status=txn.status,
        amount=txn.amount,
        currency=txn.currency,
    )


@router.post("/confirm", response_model=TransactionRead)
def confirm_payment(
    payload: PaymentConfirm,
    principal: Principal = Depends(get_principal),
    service: PaymentService = Depends(payment_service),
):
    return service.confirm_payment(principal, payload.payment_intent_id, payload.payment_method_id)


@router.post("/refunds", response_model=TransactionRead, status_code=201)
def create_refund(
    payload: RefundCreate,
    principal: Principal = Depends(require_admin),
    service: PaymentService = Depends(payment_service),
):
    return service.create_refund(principal, payload.transaction_id, payload.amount, payload.reason)


@router.get("/history", response_model=TransactionPage)
def payment_history(
    page: int = Query(1),
    limit: int = Query(20),
    principal: Principal = Depends(get_principal),
    service: PaymentService = Depends(payment_service),
):
    transactions, pagination = service.payment_history(principal, page=page, limit=limit)
    return {"transactions": transactions, "pagination": pagination}


@router.post("/webhook/{provider}", response_model=WebhookAck)
async def payment_webhook(
    provider: str,
    request: Request,
    payment_signature: Optional[str] = Header(default=None),
    stripe_signature: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Provider callback; authenticated by signature, not by user headers."""
    payload = await request.body()
    signature = payment_signature or stripe_signature
    service = WebhookService(db, gateway)
    return await run_in_threadpool(service.handle_webhook, provider, payload, signature)
