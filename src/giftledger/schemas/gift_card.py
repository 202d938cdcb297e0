"""Pydantic schemas for gift cards and their ledger."""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ..models import GiftCardStatus, TransactionType


class GiftCardRead(BaseModel):
    """Full card state as seen by the issuing merchant."""

    id: UUID
    code: str
    merchant_id: str
    payment_id: UUID
    value: Decimal
    balance: Decimal
    currency: str
    status: GiftCardStatus
    allow_partial_redemption: bool
    expiry_date: Optional[datetime] = None
    pending_refund_amount: Decimal
    recipient_email: Optional[str] = None
    recipient_name: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class GiftCardBalance(BaseModel):
    """Public balance lookup by code."""

    code: str
    balance: Decimal
    value: Decimal
    currency: str
    status: GiftCardStatus
    expiry_date: Optional[datetime] = None


class LedgerTransactionRead(BaseModel):
    id: int
    gift_card_id: UUID
    type: TransactionType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    payment_id: Optional[UUID] = None
    redemption_id: Optional[UUID] = None
    reference: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ReconciliationReport(BaseModel):
    """Balance recomputed from the transaction log against the stored balance."""

    gift_card_id: UUID
    expected_balance: Decimal
    actual_balance: Decimal
    drift: Decimal = Field(..., description="actual_balance - expected_balance; non-zero means corruption.")
    value: Decimal
    redeemed_total: Decimal
    refunded_total: Decimal
    pending_refund: Decimal
