"""Endpoints for gift card lookups and merchant actions."""

from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...core.database import get_db
from ...core.exceptions import LedgerError
from ...models import GiftCardStatus
from ...schemas import GiftCardBalance, GiftCardRead, LedgerTransactionRead, ReconciliationReport
from ...services import ledger_service
from .deps import abort, get_merchant_id, http_error

router = APIRouter(prefix="/gift-cards", tags=["gift-cards"])


@router.get("", response_model=List[GiftCardRead], summary="List the merchant's gift cards")
def list_gift_cards(
    status_filter: Optional[GiftCardStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    merchant_id: str = Depends(get_merchant_id),
    db: Session = Depends(get_db),
) -> List[GiftCardRead]:
    cards = ledger_service.list_cards(db, merchant_id=merchant_id, status=status_filter, limit=limit, offset=offset)
    return [GiftCardRead.model_validate(card) for card in cards]


@router.get("/balance/{code}", response_model=GiftCardBalance, summary="Check a gift card balance by code")
def check_balance(code: str, db: Session = Depends(get_db)) -> GiftCardBalance:
    """Public lookup; an overdue card is moved to EXPIRED as a side effect."""

    try:
        balance = ledger_service.check_balance(db, code)
        db.commit()
    except LedgerError as exc:
        raise abort(db, exc) from exc
    return GiftCardBalance(**balance)


@router.get("/{gift_card_id}", response_model=GiftCardRead, summary="Fetch a gift card")
def read_gift_card(
    gift_card_id: UUID,
    merchant_id: str = Depends(get_merchant_id),
    db: Session = Depends(get_db),
) -> GiftCardRead:
    try:
        card = ledger_service.get_card(db, gift_card_id, merchant_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return GiftCardRead.model_validate(card)


@router.get(
    "/{gift_card_id}/transactions",
    response_model=List[LedgerTransactionRead],
    summary="Ledger history of a gift card",
)
def list_transactions(
    gift_card_id: UUID,
    merchant_id: str = Depends(get_merchant_id),
    db: Session = Depends(get_db),
) -> List[LedgerTransactionRead]:
    try:
        ledger_service.get_card(db, gift_card_id, merchant_id)
        entries = ledger_service.list_transactions(db, gift_card_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return [LedgerTransactionRead.model_validate(entry) for entry in entries]


@router.get(
    "/{gift_card_id}/reconciliation",
    response_model=ReconciliationReport,
    summary="Recompute the balance from the ledger",
)
def reconcile_gift_card(
    gift_card_id: UUID,
    merchant_id: str = Depends(get_merchant_id),
    db: Session = Depends(get_db),
) -> ReconciliationReport:
    try:
        ledger_service.get_card(db, gift_card_id, merchant_id)
        report = ledger_service.reconcile(db, gift_card_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return ReconciliationReport(**report)


@router.post("/{gift_card_id}/cancel", response_model=GiftCardRead, summary="Cancel an unused gift card")
def cancel_gift_card(
    gift_card_id: UUID,
    merchant_id: str = Depends(get_merchant_id),
    db: Session = Depends(get_db),
) -> GiftCardRead:
    try:
        card = ledger_service.cancel(db, gift_card_id, merchant_id)
        db.commit()
        db.refresh(card)
        return GiftCardRead.model_validate(card)
    except LedgerError as exc:
        raise abort(db, exc) from exc
