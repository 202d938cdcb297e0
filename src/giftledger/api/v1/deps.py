"""Shared FastAPI dependencies and error translation."""

from __future__ import annotations

from fastapi import Header, HTTPException, Request
from sqlalchemy.orm import Session

from ...core.exceptions import LedgerError, RateLimited
from ...services.payment_orchestrator import PaymentOrchestrator
from ...services.security_gate import SecurityGate


def get_orchestrator(request: Request) -> PaymentOrchestrator:
    return request.app.state.orchestrator


def get_security_gate(request: Request) -> SecurityGate:
    return request.app.state.security_gate


def get_merchant_id(x_merchant_id: str = Header(..., min_length=1, max_length=64)) -> str:
    """Merchant identity as asserted by the upstream auth proxy."""
    return x_merchant_id


def http_error(exc: LedgerError) -> HTTPException:
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    return HTTPException(status_code=exc.status_code, detail=exc.detail, headers=headers)


def abort(db: Session, exc: LedgerError) -> HTTPException:
    """Roll back a failed request, except errors that must keep their side effect (expiry)."""

    if exc.persist_side_effects:
        db.commit()
    else:
        db.rollback()
    return http_error(exc)
