"""Pydantic schemas for redemption workflows."""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from ..models import GiftCardStatus, RedemptionMethod


class RedemptionCreate(BaseModel):
    """Incoming payload for redeeming value from a card."""

    gift_card_id: Optional[UUID] = None
    code: Optional[str] = None
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2, description="Amount to debit from the card balance.")
    redemption_method: RedemptionMethod = RedemptionMethod.API
    location: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = Field(default=None, max_length=1000)
    otp_code: Optional[str] = None

    @model_validator(mode="after")
    def _one_card_reference(self) -> "RedemptionCreate":
        if (self.gift_card_id is None) == (not self.code):
            raise ValueError("Provide exactly one of gift_card_id or code.")
        return self


class RedemptionRead(BaseModel):
    """Represents a redemption record."""

    id: UUID
    gift_card_id: UUID
    merchant_id: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    method: RedemptionMethod
    location: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class RedemptionValidate(BaseModel):
    """Pre-check of a redemption; nothing is debited."""

    gift_card_id: Optional[UUID] = None
    code: Optional[str] = None
    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)

    @model_validator(mode="after")
    def _one_card_reference(self) -> "RedemptionValidate":
        if (self.gift_card_id is None) == (not self.code):
            raise ValueError("Provide exactly one of gift_card_id or code.")
        return self


class RedemptionValidation(BaseModel):
    valid: bool
    reason: Optional[str] = None
    gift_card_id: UUID
    code: str
    balance: Decimal
    value: Decimal
    currency: str
    status: GiftCardStatus
    allow_partial_redemption: bool
    expiry_date: Optional[datetime] = None
