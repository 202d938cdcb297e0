"""Pydantic schemas for one-time passcodes and webhook acknowledgements."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ..models import OTPPurpose


class OTPRequest(BaseModel):
    identifier: str = Field(..., min_length=3, max_length=255, description="Email address or phone number.")
    purpose: OTPPurpose = OTPPurpose.TRANSACTION
    channel: str = Field(default="email", pattern="^(email|sms)$")


class OTPIssued(BaseModel):
    sent: bool = True
    expires_at: datetime


class WebhookAck(BaseModel):
    received: bool = True
    action: Optional[str] = None
