"""Endpoints for buying gift cards and refunding them."""

from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.orm import Session

from ...core.database import get_db
from ...core.exceptions import LedgerError
from ...models import PaymentStatus
from ...schemas import PaymentConfirm, PaymentCreate, PaymentRead, RefundRead, RefundRequest
from ...services.payment_orchestrator import PaymentOrchestrator, get_payment, list_payments
from .deps import get_merchant_id, get_orchestrator, http_error

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "",
    response_model=PaymentRead,
    status_code=status.HTTP_201_CREATED,
    summary="Start a gift card purchase",
    responses={
        400: {"description": "Invalid payment request"},
        502: {"description": "Gateway rejected the intent"},
        503: {"description": "Gateway unavailable"},
    },
)
def create_payment(
    payload: PaymentCreate,
    idempotency_key: Optional[str] = Header(default=None),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentRead:
    """Create a PENDING payment and open the gateway intent.

    Example request body::

        {
            "amount": "50.00",
            "currency": "USD",
            "payment_method": "STRIPE",
            "reference_id": "order-1042",
            "merchant_id": "m-acme"
        }
    """

    try:
        payment = orchestrator.create_payment(
            amount=payload.amount,
            currency=payload.currency,
            method=payload.payment_method,
            reference_id=payload.reference_id,
            merchant_id=payload.merchant_id,
            customer_id=payload.customer_id,
            gift_card_value=payload.gift_card_value,
            allow_partial_redemption=payload.allow_partial_redemption,
            expiry_date=payload.expiry_date,
            return_url=payload.return_url,
            cancel_url=payload.cancel_url,
            recipient_email=payload.recipient_email,
            recipient_name=payload.recipient_name,
            message=payload.message,
            idempotency_key=idempotency_key,
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    return PaymentRead.model_validate(payment)


@router.get("", response_model=List[PaymentRead], summary="List the merchant's payments")
def list_merchant_payments(
    status_filter: Optional[PaymentStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    merchant_id: str = Depends(get_merchant_id),
    db: Session = Depends(get_db),
) -> List[PaymentRead]:
    payments = list_payments(db, merchant_id=merchant_id, status=status_filter, limit=limit, offset=offset)
    return [PaymentRead.model_validate(payment) for payment in payments]


@router.get("/{payment_id}", response_model=PaymentRead, summary="Fetch a payment")
def read_payment(payment_id: UUID, db: Session = Depends(get_db)) -> PaymentRead:
    try:
        payment = get_payment(db, payment_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return PaymentRead.model_validate(payment)


@router.post("/{payment_id}/confirm", response_model=PaymentRead, summary="Confirm a payment with the gateway")
def confirm_payment(
    payment_id: UUID,
    payload: Optional[PaymentConfirm] = None,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentRead:
    provider_args = payload.model_dump(exclude_none=True) if payload else {}
    try:
        payment = orchestrator.confirm_payment(payment_id, **provider_args)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return PaymentRead.model_validate(payment)


@router.post("/{payment_id}/reconcile", response_model=PaymentRead, summary="Poll the gateway for a pending payment")
def reconcile_payment(
    payment_id: UUID,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentRead:
    try:
        payment = orchestrator.reconcile_payment(payment_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return PaymentRead.model_validate(payment)


@router.post(
    "/{payment_id}/refund",
    response_model=RefundRead,
    summary="Refund an unredeemed gift card purchase",
    responses={
        409: {"description": "Card already redeemed or refund in progress"},
        502: {"description": "Gateway refused the refund; the balance hold was released"},
        503: {"description": "Gateway outcome unknown; retry to resume"},
    },
)
def refund_payment(
    payment_id: UUID,
    payload: RefundRequest,
    merchant_id: str = Depends(get_merchant_id),
    idempotency_key: Optional[str] = Header(default=None),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> RefundRead:
    try:
        outcome = orchestrator.refund_payment(
            payment_id,
            payload.amount,
            reason=payload.reason,
            requested_by=merchant_id,
            otp_code=payload.otp_code,
            idempotency_key=idempotency_key,
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    return RefundRead.model_validate(outcome)
