"""Endpoint for requesting one-time passcodes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ...core.exceptions import LedgerError
from ...schemas import OTPIssued, OTPRequest
from ...services.security_gate import SecurityGate
from .deps import get_security_gate, http_error

router = APIRouter(prefix="/otp", tags=["otp"])


@router.post("", response_model=OTPIssued, status_code=status.HTTP_201_CREATED, summary="Send a one-time passcode")
def request_otp(payload: OTPRequest, gate: SecurityGate = Depends(get_security_gate)) -> OTPIssued:
    try:
        expires_at = gate.issue_otp(payload.identifier, payload.purpose, payload.channel)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return OTPIssued(expires_at=expires_at)
