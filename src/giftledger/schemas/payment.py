"""Pydantic schemas for payments and refunds."""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ..models import PaymentMethod, PaymentStatus


class PaymentCreate(BaseModel):
    """Incoming payload for buying a gift card."""

    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2, description="Amount charged to the customer.")
    currency: str = Field(..., min_length=3, max_length=3)
    payment_method: PaymentMethod
    reference_id: str = Field(..., min_length=1, max_length=128)
    merchant_id: str = Field(..., min_length=1, max_length=64)
    customer_id: Optional[str] = None
    gift_card_value: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=12, decimal_places=2, description="Face value of the card; defaults to the amount charged."
    )
    allow_partial_redemption: bool = True
    expiry_date: Optional[datetime] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    recipient_email: Optional[str] = None
    recipient_name: Optional[str] = None
    message: Optional[str] = Field(default=None, max_length=500)


class PaymentConfirm(BaseModel):
    """Provider-specific confirmation arguments; all optional."""

    payment_method: Optional[str] = Field(default=None, description="Stripe payment method id.")
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None


class PaymentRead(BaseModel):
    id: UUID
    gift_card_id: Optional[UUID] = None
    reference_id: str
    merchant_id: str
    amount: Decimal
    currency: str
    method: PaymentMethod
    status: PaymentStatus
    external_intent_id: Optional[str] = None
    transaction_id: Optional[str] = None
    client_token: Optional[str] = None
    card_value: Decimal
    refunded_amount: Decimal
    failure_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=12, decimal_places=2, description="Card value to refund; omit for the full balance."
    )
    reason: Optional[str] = Field(default=None, max_length=500)
    otp_code: Optional[str] = None


class RefundRead(BaseModel):
    """Result of a committed refund."""

    payment_id: UUID
    gift_card_id: UUID
    reservation_id: UUID
    amount: Decimal
    refunded_amount: Decimal
    currency: str
    external_refund_id: Optional[str] = None
    payment_status: PaymentStatus
    card_status: str

    class Config:
        from_attributes = True
