"""Endpoints for gift card redemptions."""

from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.orm import Session

from ...core.database import get_db
from ...core.exceptions import LedgerError
from ...schemas import RedemptionCreate, RedemptionRead, RedemptionValidate, RedemptionValidation
from ...services import ledger_service
from ...services.security_gate import SecurityGate
from .deps import abort, get_merchant_id, get_security_gate, http_error

router = APIRouter(prefix="/redemptions", tags=["redemptions"])


@router.post(
    "/validate",
    response_model=RedemptionValidation,
    summary="Check whether a redemption would succeed",
    responses={404: {"description": "Gift card not found"}},
)
def validate_redemption(
    payload: RedemptionValidate,
    merchant_id: str = Depends(get_merchant_id),
    db: Session = Depends(get_db),
) -> RedemptionValidation:
    """Report card status and whether ``amount`` could be debited, without debiting it.

    An unusable card is a ``valid: false`` answer with a reason, not an error.
    """

    try:
        result = ledger_service.validate_card(
            db, gift_card_id=payload.gift_card_id, code=payload.code, amount=payload.amount
        )
        # keeps a lazy expiry transition
        db.commit()
    except LedgerError as exc:
        raise abort(db, exc) from exc
    return RedemptionValidation(**result)


@router.post(
    "",
    response_model=RedemptionRead,
    status_code=status.HTTP_201_CREATED,
    summary="Redeem value from a gift card",
    responses={
        201: {
            "description": "Redemption completed",
            "content": {
                "application/json": {
                    "example": {
                        "id": "88888888-8888-8888-8888-888888888888",
                        "gift_card_id": "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb",
                        "merchant_id": "m-acme",
                        "amount": "30.00",
                        "balance_before": "100.00",
                        "balance_after": "70.00",
                        "method": "CODE_ENTRY",
                        "location": "Store 12",
                        "notes": None,
                        "created_at": "2025-11-12T14:30:00"
                    }
                }
            },
        },
        403: {"description": "Passcode required or invalid"},
        404: {"description": "Gift card not found"},
        409: {"description": "Card not redeemable or balance insufficient"},
        429: {"description": "Too many redemptions"},
    },
)
def redeem_gift_card(
    payload: RedemptionCreate,
    merchant_id: str = Depends(get_merchant_id),
    idempotency_key: Optional[str] = Header(default=None),
    gate: SecurityGate = Depends(get_security_gate),
    db: Session = Depends(get_db),
) -> RedemptionRead:
    """Debit a card by id or by code.

    Example request body::

        {
            "code": "GIFT-1A2B-3C4D-5E6F",
            "amount": "30.00",
            "redemption_method": "CODE_ENTRY"
        }
    """

    try:
        redemption = ledger_service.redeem(
            db,
            amount=payload.amount,
            merchant_id=merchant_id,
            method=payload.redemption_method,
            gift_card_id=payload.gift_card_id,
            code=payload.code,
            location=payload.location,
            notes=payload.notes,
            idempotency_key=idempotency_key,
            otp_code=payload.otp_code,
            security_gate=gate,
        )
        db.commit()
        db.refresh(redemption)
        return RedemptionRead.model_validate(redemption)
    except LedgerError as exc:
        raise abort(db, exc) from exc


@router.get("", response_model=List[RedemptionRead], summary="List redemptions")
def list_redemptions(
    gift_card_id: Optional[UUID] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    merchant_id: str = Depends(get_merchant_id),
    db: Session = Depends(get_db),
) -> List[RedemptionRead]:
    try:
        redemptions = ledger_service.list_redemptions(
            db, gift_card_id=gift_card_id, merchant_id=merchant_id, limit=limit, offset=offset
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    return [RedemptionRead.model_validate(item) for item in redemptions]


@router.get("/{redemption_id}", response_model=RedemptionRead, summary="Fetch a redemption")
def read_redemption(
    redemption_id: UUID,
    merchant_id: str = Depends(get_merchant_id),
    db: Session = Depends(get_db),
) -> RedemptionRead:
    try:
        redemption = ledger_service.get_redemption(db, redemption_id, merchant_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return RedemptionRead.model_validate(redemption)
