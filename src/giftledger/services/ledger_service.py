"""Gift card value ledger: activation, redemption, refunds and expiry.

Every balance or status change goes through a compare-and-swap on
``gift_cards.version``; cards are read with ``SELECT ... FOR UPDATE`` where
the backend supports it, so concurrent writers on one card serialize and a
loser re-reads and re-validates instead of overwriting. Arithmetic happens on
``Decimal`` values in Python, never in SQL.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..core.exceptions import (
    ConcurrencyConflict,
    Expired,
    InsufficientBalance,
    InvalidState,
    LedgerError,
    NotFoundError,
    PartialRedemptionNotAllowed,
    RefundBlocked,
    ValidationError,
)
from ..models import (
    GiftCard,
    GiftCardStatus,
    LedgerTransaction,
    OTPPurpose,
    Payment,
    PaymentStatus,
    Redemption,
    RedemptionMethod,
    RefundReservation,
    ReservationStatus,
    TransactionType,
)
from ..utils.codes import generate_gift_card_code, normalize_code
from ..utils.datetime import is_expired, utcnow
from ..utils.money import Amount, quantize
from .idempotency_service import IdempotencyStore, fingerprint

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CODE_GENERATION_ATTEMPTS = 5


@dataclass(frozen=True)
class GiftCardSnapshot:
    """Read-only view handed to the rendering and delivery collaborators."""

    code: str
    value: Decimal
    balance: Decimal
    currency: str
    status: str
    expiry_date: Optional[datetime]
    recipient_email: Optional[str] = None
    recipient_name: Optional[str] = None
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# Loading and the compare-and-swap primitive
# ---------------------------------------------------------------------------


def _locked(stmt):
    return stmt.with_for_update().execution_options(populate_existing=True)


def _load_card(session: Session, gift_card_id: UUID) -> GiftCard:
    card = session.execute(_locked(select(GiftCard).where(GiftCard.id == gift_card_id))).scalar_one_or_none()
    if card is None:
        raise NotFoundError(f"Gift card {gift_card_id} not found")
    return card


def _resolve_card(session: Session, gift_card_id: Optional[UUID], code: Optional[str]) -> GiftCard:
    if (gift_card_id is None) == (not code):
        raise ValidationError("Provide exactly one of gift_card_id or code.")
    if gift_card_id is not None:
        return _load_card(session, gift_card_id)
    normalized = normalize_code(code)
    card = session.execute(_locked(select(GiftCard).where(GiftCard.code == normalized))).scalar_one_or_none()
    if card is None:
        raise NotFoundError("Gift card not found")
    return card


def _swap(session: Session, card: GiftCard, *, require_active: bool = True, **values: Any) -> bool:
    """Apply ``values`` only if nobody changed the card since it was read."""

    conditions = [GiftCard.id == card.id, GiftCard.version == card.version]
    if require_active:
        conditions.append(GiftCard.status == GiftCardStatus.ACTIVE)
    stmt = (
        update(GiftCard)
        .where(*conditions)
        .values(version=card.version + 1, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if session.execute(stmt).rowcount != 1:
        return False
    session.refresh(card)
    return True


def _append_transaction(
    session: Session,
    card: GiftCard,
    type_: TransactionType,
    amount: Decimal,
    balance_before: Decimal,
    balance_after: Decimal,
    *,
    payment_id: Optional[UUID] = None,
    redemption_id: Optional[UUID] = None,
    reference: Optional[str] = None,
) -> LedgerTransaction:
    entry = LedgerTransaction(
        gift_card_id=card.id,
        type=type_,
        amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
        payment_id=payment_id,
        redemption_id=redemption_id,
        reference=reference,
    )
    session.add(entry)
    session.flush()
    return entry


def _max_attempts() -> int:
    return get_settings().redemption_max_attempts


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


def _expire(session: Session, card: GiftCard) -> bool:
    """Move an ACTIVE, past-expiry card to EXPIRED and log the forfeited balance.

    Returns False when another writer changed the card first; the caller
    re-reads it.
    """

    balance = Decimal(card.balance)
    if not _swap(session, card, status=GiftCardStatus.EXPIRED):
        return False
    _append_transaction(session, card, TransactionType.EXPIRY, balance, balance, balance, reference="expiry")
    logger.info("Gift card %s expired with %s %s unused", card.id, balance, card.currency)
    return True


def _apply_lazy_expiry(session: Session, card: GiftCard, now: Optional[datetime] = None) -> GiftCard:
    """Expire the card if it is ACTIVE and past its expiry date, retrying lost races."""

    for _ in range(_max_attempts()):
        if card.status != GiftCardStatus.ACTIVE or not is_expired(card.expiry_date, now):
            return card
        if Decimal(card.pending_refund_amount) > ZERO:
            # a refund hold is resolved first; the sweep picks the card up afterwards
            return card
        if _expire(session, card):
            return card
        card = _load_card(session, card.id)
    raise ConcurrencyConflict("Gift card is being modified concurrently; retry the request.")


def _ensure_active(session: Session, card: GiftCard, now: Optional[datetime] = None) -> GiftCard:
    if card.status == GiftCardStatus.EXPIRED:
        raise Expired("Gift card has expired.")
    if card.status != GiftCardStatus.ACTIVE:
        raise InvalidState(f"Gift card is {card.status.value}.")
    if Decimal(card.pending_refund_amount) > ZERO:
        raise InvalidState("A refund is in progress for this gift card.")
    card = _apply_lazy_expiry(session, card, now)
    if card.status == GiftCardStatus.EXPIRED:
        raise Expired("Gift card has expired.")
    return card


def expire_due_cards(session: Session, now: Optional[datetime] = None) -> int:
    """Sweep ACTIVE cards past their expiry date; safe to run repeatedly."""

    now = now or utcnow()
    stmt = select(GiftCard.id).where(
        GiftCard.status == GiftCardStatus.ACTIVE,
        GiftCard.expiry_date.is_not(None),
        GiftCard.expiry_date < now,
        GiftCard.pending_refund_amount == 0,
    )
    expired = 0
    for card_id in session.execute(stmt).scalars().all():
        card = _load_card(session, card_id)
        card = _apply_lazy_expiry(session, card, now)
        if card.status == GiftCardStatus.EXPIRED:
            expired += 1
    return expired


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------


def activate(session: Session, payment: Payment) -> GiftCard:
    """Mint the card for a COMPLETED payment; repeated calls return the same card."""

    existing = session.execute(select(GiftCard).where(GiftCard.payment_id == payment.id)).scalar_one_or_none()
    if existing is not None:
        return existing
    if payment.status != PaymentStatus.COMPLETED:
        raise InvalidState(f"Payment {payment.id} is {payment.status.value}; only completed payments mint cards.")

    value = quantize(payment.card_value, payment.currency)
    code = _unused_code(session)
    card = GiftCard(
        code=code,
        merchant_id=payment.merchant_id,
        payment_id=payment.id,
        value=value,
        balance=value,
        currency=payment.currency,
        status=GiftCardStatus.ACTIVE,
        allow_partial_redemption=payment.card_allow_partial_redemption,
        expiry_date=payment.card_expiry_date,
        pending_refund_amount=ZERO,
        version=1,
        recipient_email=payment.recipient_email,
        recipient_name=payment.recipient_name,
        message=payment.message,
    )
    session.add(card)
    session.flush()

    payment.gift_card_id = card.id
    _append_transaction(
        session, card, TransactionType.PURCHASE, value, ZERO, value,
        payment_id=payment.id, reference=payment.reference_id,
    )
    logger.info("Activated gift card %s (%s %s) for payment %s", card.id, value, card.currency, payment.id)
    return card


def _unused_code(session: Session) -> str:
    for _ in range(CODE_GENERATION_ATTEMPTS):
        code = generate_gift_card_code()
        taken = session.execute(select(GiftCard.id).where(GiftCard.code == code)).first()
        if taken is None:
            return code
        logger.warning("Gift card code collision; regenerating")
    raise ConcurrencyConflict("Could not allocate a unique gift card code.")


# ---------------------------------------------------------------------------
# Redemption
# ---------------------------------------------------------------------------


def redeem(
    session: Session,
    *,
    amount: Amount,
    merchant_id: str,
    method: RedemptionMethod = RedemptionMethod.API,
    gift_card_id: Optional[UUID] = None,
    code: Optional[str] = None,
    location: Optional[str] = None,
    notes: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    otp_code: Optional[str] = None,
    security_gate=None,
    idempotency: Optional[IdempotencyStore] = None,
) -> Redemption:
    """Debit ``amount`` from a card and record the redemption.

    With ``idempotency_key`` a retry returns the original redemption before
    any other check. With a ``security_gate`` the merchant is rate limited and
    large amounts need a TRANSACTION passcode; these checks run before
    anything is written.
    """

    if (gift_card_id is None) == (not code):
        raise ValidationError("Provide exactly one of gift_card_id or code.")
    if not merchant_id:
        raise ValidationError("merchant_id is required.")

    settings = get_settings()
    claim = None
    if idempotency_key:
        scope = f"redemption:{merchant_id}"
        store = idempotency or IdempotencyStore(settings.idempotency_ttl_hours, settings.idempotency_lease_seconds)
        request_print = fingerprint({
            "gift_card_id": gift_card_id,
            "code": normalize_code(code) if code else None,
            "amount": quantize(amount),
            "method": getattr(method, "value", method),
        })
        stored = store.lookup(session, scope, idempotency_key, request_print)
        if stored is not None:
            return session.get(Redemption, UUID(stored["redemption_id"]))

    if security_gate is not None:
        security_gate.check_rate_limit(merchant_id, "redeem")
        if quantize(amount) >= settings.large_redemption_threshold:
            security_gate.require_otp(merchant_id, otp_code, OTPPurpose.TRANSACTION)

    if idempotency_key:
        claim = store.claim(session, scope, idempotency_key, request_print)
        if claim.replay:
            return session.get(Redemption, UUID(claim.response["redemption_id"]))

    try:
        redemption = _redeem(
            session,
            amount=amount,
            merchant_id=merchant_id,
            method=method,
            gift_card_id=gift_card_id,
            code=code,
            location=location,
            notes=notes,
        )
    except LedgerError as exc:
        if claim is not None and exc.persist_side_effects:
            # the expiry transition is kept, the key is not
            store.release(session, claim.record)
        raise

    if claim is not None:
        store.complete(session, claim.record, {"redemption_id": str(redemption.id)})
    return redemption


def _redeem(
    session: Session,
    *,
    amount: Amount,
    merchant_id: str,
    method: RedemptionMethod,
    gift_card_id: Optional[UUID],
    code: Optional[str],
    location: Optional[str],
    notes: Optional[str],
) -> Redemption:
    card = _resolve_card(session, gift_card_id, code)

    for attempt in range(1, _max_attempts() + 1):
        card = _ensure_active(session, card)
        requested = _validate_amount(amount, card.currency)

        balance = Decimal(card.balance)
        if requested > balance:
            raise InsufficientBalance(
                f"Insufficient balance: requested {requested}, available {balance} {card.currency}."
            )
        if not card.allow_partial_redemption and requested < balance:
            raise PartialRedemptionNotAllowed(
                f"This gift card must be redeemed in full ({balance} {card.currency})."
            )

        new_balance = balance - requested
        status = GiftCardStatus.REDEEMED if new_balance == ZERO else GiftCardStatus.ACTIVE
        if _swap(session, card, balance=new_balance, status=status):
            break
        logger.warning("Lost redemption race on gift card %s (attempt %s); re-reading", card.id, attempt)
        card = _load_card(session, card.id)
    else:
        raise ConcurrencyConflict("Gift card is being modified concurrently; retry the request.")

    redemption = Redemption(
        gift_card_id=card.id,
        merchant_id=merchant_id,
        amount=requested,
        balance_before=balance,
        balance_after=new_balance,
        method=method,
        location=location,
        notes=notes,
    )
    session.add(redemption)
    session.flush()
    _append_transaction(
        session, card, TransactionType.REDEMPTION, requested, balance, new_balance,
        redemption_id=redemption.id, reference=merchant_id,
    )
    logger.info(
        "Redeemed %s %s from gift card %s (balance %s -> %s)",
        requested, card.currency, card.id, balance, new_balance,
    )
    return redemption


def _validate_amount(amount: Amount, currency: str) -> Decimal:
    value = quantize(amount, currency)
    if value <= ZERO:
        raise ValidationError("Amount must be greater than zero.")
    if value != Decimal(str(amount)):
        raise ValidationError(f"Amount has more decimal places than {currency} allows.")
    return value


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_card(session: Session, gift_card_id: UUID, merchant_id: Optional[str] = None) -> GiftCard:
    card = session.get(GiftCard, gift_card_id)
    if card is None or (merchant_id is not None and card.merchant_id != merchant_id):
        raise NotFoundError(f"Gift card {gift_card_id} not found")
    return card


def list_cards(
    session: Session,
    *,
    merchant_id: str,
    status: Optional[GiftCardStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[GiftCard]:
    stmt = select(GiftCard).where(GiftCard.merchant_id == merchant_id)
    if status is not None:
        stmt = stmt.where(GiftCard.status == status)
    stmt = stmt.order_by(GiftCard.created_at.desc()).limit(limit).offset(offset)
    return list(session.execute(stmt).scalars().all())


def validate_card(
    session: Session,
    *,
    gift_card_id: Optional[UUID] = None,
    code: Optional[str] = None,
    amount: Optional[Amount] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Would a redemption of ``amount`` go through right now?

    Nothing is debited. An overdue card is still moved to EXPIRED, the same
    transition a redemption attempt would make.
    """

    card = _resolve_card(session, gift_card_id, code)
    card = _apply_lazy_expiry(session, card, now)
    balance = Decimal(card.balance)

    reason = None
    if card.status == GiftCardStatus.EXPIRED:
        reason = "Gift card has expired."
    elif card.status != GiftCardStatus.ACTIVE:
        reason = f"Gift card is {card.status.value}."
    elif Decimal(card.pending_refund_amount) > ZERO:
        reason = "A refund is in progress for this gift card."
    elif amount is not None:
        try:
            requested = _validate_amount(amount, card.currency)
        except ValidationError as exc:
            reason = exc.detail
        else:
            if requested > balance:
                reason = f"Insufficient balance: requested {requested}, available {balance} {card.currency}."
            elif not card.allow_partial_redemption and requested < balance:
                reason = f"This gift card must be redeemed in full ({balance} {card.currency})."

    return {
        "valid": reason is None,
        "reason": reason,
        "gift_card_id": card.id,
        "code": card.code,
        "balance": balance,
        "value": Decimal(card.value),
        "currency": card.currency,
        "status": card.status,
        "allow_partial_redemption": card.allow_partial_redemption,
        "expiry_date": card.expiry_date,
    }


def check_balance(session: Session, code: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Balance lookup by code; applies the lazy expiry transition when due."""

    card = _resolve_card(session, None, code)
    card = _apply_lazy_expiry(session, card, now)
    return {
        "code": card.code,
        "balance": Decimal(card.balance),
        "value": Decimal(card.value),
        "currency": card.currency,
        "status": card.status,
        "expiry_date": card.expiry_date,
    }


def snapshot(card: GiftCard) -> GiftCardSnapshot:
    return GiftCardSnapshot(
        code=card.code,
        value=Decimal(card.value),
        balance=Decimal(card.balance),
        currency=card.currency,
        status=card.status.value,
        expiry_date=card.expiry_date,
        recipient_email=card.recipient_email,
        recipient_name=card.recipient_name,
        message=card.message,
    )


def list_transactions(session: Session, gift_card_id: UUID) -> Sequence[LedgerTransaction]:
    get_card(session, gift_card_id)
    stmt = select(LedgerTransaction).where(LedgerTransaction.gift_card_id == gift_card_id).order_by(LedgerTransaction.id)
    return session.execute(stmt).scalars().all()


def get_redemption(session: Session, redemption_id: UUID, merchant_id: Optional[str] = None) -> Redemption:
    redemption = session.get(Redemption, redemption_id)
    if redemption is None or (merchant_id is not None and redemption.merchant_id != merchant_id):
        raise NotFoundError(f"Redemption {redemption_id} not found")
    return redemption


def list_redemptions(
    session: Session,
    *,
    gift_card_id: Optional[UUID] = None,
    merchant_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Redemption]:
    if gift_card_id is None and merchant_id is None:
        raise ValidationError("Filter by gift_card_id or merchant_id.")
    stmt = select(Redemption)
    if gift_card_id is not None:
        stmt = stmt.where(Redemption.gift_card_id == gift_card_id)
    if merchant_id is not None:
        stmt = stmt.where(Redemption.merchant_id == merchant_id)
    stmt = stmt.order_by(Redemption.created_at.desc()).limit(limit).offset(offset)
    return list(session.execute(stmt).scalars().all())


def reconcile(session: Session, gift_card_id: UUID) -> Dict[str, Any]:
    """Recompute the balance from the ledger log and report any drift."""

    card = get_card(session, gift_card_id)
    stmt = (
        select(LedgerTransaction.type, func.coalesce(func.sum(LedgerTransaction.amount), 0))
        .where(LedgerTransaction.gift_card_id == gift_card_id)
        .group_by(LedgerTransaction.type)
    )
    totals = {type_: quantize(total, card.currency) for type_, total in session.execute(stmt).all()}
    purchased = totals.get(TransactionType.PURCHASE, ZERO)
    redeemed = totals.get(TransactionType.REDEMPTION, ZERO)
    refunded = totals.get(TransactionType.REFUND, ZERO)
    pending = Decimal(card.pending_refund_amount)

    expected = purchased - redeemed - refunded - pending
    actual = Decimal(card.balance)
    drift = actual - expected
    if drift != ZERO:
        logger.error("Ledger drift on gift card %s: expected %s, actual %s", card.id, expected, actual)
    return {
        "gift_card_id": card.id,
        "expected_balance": expected,
        "actual_balance": actual,
        "drift": drift,
        "value": Decimal(card.value),
        "redeemed_total": redeemed,
        "refunded_total": refunded,
        "pending_refund": pending,
    }


# ---------------------------------------------------------------------------
# Cancellation and refunds
# ---------------------------------------------------------------------------


def cancel(session: Session, gift_card_id: UUID, merchant_id: str) -> GiftCard:
    """Merchant cancellation of an untouched card."""

    card = get_card(session, gift_card_id, merchant_id)
    card = _load_card(session, card.id)
    for _ in range(_max_attempts()):
        card = _ensure_active(session, card)
        if Decimal(card.balance) != Decimal(card.value):
            raise InvalidState("Only unused gift cards can be cancelled.")
        if _swap(session, card, status=GiftCardStatus.CANCELLED):
            logger.info("Gift card %s cancelled by merchant %s", card.id, merchant_id)
            return card
        card = _load_card(session, card.id)
    raise ConcurrencyConflict("Gift card is being modified concurrently; retry the request.")


def card_for_payment(session: Session, payment_id: UUID) -> GiftCard:
    card = session.execute(_locked(select(GiftCard).where(GiftCard.payment_id == payment_id))).scalar_one_or_none()
    if card is None:
        raise NotFoundError(f"No gift card was issued for payment {payment_id}")
    return card


def pending_reservation(session: Session, payment_id: UUID) -> Optional[RefundReservation]:
    stmt = select(RefundReservation).where(
        RefundReservation.payment_id == payment_id,
        RefundReservation.status == ReservationStatus.PENDING,
    )
    return session.execute(_locked(stmt)).scalar_one_or_none()


def _ensure_refundable(session: Session, card: GiftCard) -> None:
    """Refuse once any value has been spent; re-run after every re-read of the card."""

    spent = Decimal(card.value) - Decimal(card.balance) - Decimal(card.pending_refund_amount)
    redeemed = session.execute(select(Redemption.id).where(Redemption.gift_card_id == card.id).limit(1)).first()
    if spent != ZERO or redeemed is not None:
        raise RefundBlocked("Gift card has already been redeemed; it can no longer be refunded.")


def reserve_refund(
    session: Session,
    *,
    payment: Payment,
    amount: Optional[Amount] = None,
    reason: Optional[str] = None,
    requested_by: Optional[str] = None,
) -> RefundReservation:
    """First saga step: hold ``amount`` of the balance for an in-flight refund.

    Refunds are only authorized while the card has no redemptions. The
    omitted amount means the full remaining balance.
    """

    card = card_for_payment(session, payment.id)

    for _ in range(_max_attempts()):
        _ensure_refundable(session, card)
        card = _ensure_active(session, card)
        balance = Decimal(card.balance)
        requested = balance if amount is None else _validate_amount(amount, card.currency)
        if requested <= ZERO:
            raise InvalidState("Nothing left to refund on this gift card.")
        if requested > balance:
            raise InsufficientBalance(f"Refund of {requested} exceeds the balance of {balance} {card.currency}.")
        if _swap(session, card, balance=balance - requested, pending_refund_amount=requested):
            break
        card = _load_card(session, card.id)
    else:
        raise ConcurrencyConflict("Gift card is being modified concurrently; retry the request.")

    reservation = RefundReservation(
        payment_id=payment.id,
        gift_card_id=card.id,
        amount=requested,
        balance_before=balance,
        status=ReservationStatus.PENDING,
        reason=reason,
        requested_by=requested_by,
    )
    session.add(reservation)
    session.flush()
    logger.info("Reserved %s %s on gift card %s for refund %s", requested, card.currency, card.id, reservation.id)
    return reservation


def get_reservation(session: Session, reservation_id: UUID) -> RefundReservation:
    stmt = select(RefundReservation).where(RefundReservation.id == reservation_id)
    reservation = session.execute(_locked(stmt)).scalar_one_or_none()
    if reservation is None:
        raise NotFoundError(f"Refund reservation {reservation_id} not found")
    return reservation


def _resolve(session: Session, reservation: RefundReservation, status: ReservationStatus, **values: Any) -> None:
    """Move a PENDING reservation to its final status; exactly one resolver wins."""

    stmt = (
        update(RefundReservation)
        .where(RefundReservation.id == reservation.id, RefundReservation.status == ReservationStatus.PENDING)
        .values(status=status, resolved_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if session.execute(stmt).rowcount != 1:
        session.refresh(reservation)
        raise InvalidState(f"Refund reservation {reservation.id} is already {reservation.status.value}.")
    session.refresh(reservation)


def commit_refund(
    session: Session,
    reservation: RefundReservation,
    *,
    external_refund_id: Optional[str],
    refunded_amount: Decimal,
) -> LedgerTransaction:
    """Final saga step after the gateway confirmed the refund.

    ``refunded_amount`` is what the gateway returned to the customer, in
    payment terms; the reservation amount is in card value terms.
    """

    _resolve(session, reservation, ReservationStatus.COMMITTED, external_refund_id=external_refund_id)

    amount = Decimal(reservation.amount)
    card = _load_card(session, reservation.gift_card_id)
    for _ in range(_max_attempts()):
        new_value = Decimal(card.value) - amount
        values: Dict[str, Any] = {"value": new_value, "pending_refund_amount": ZERO}
        if new_value == ZERO:
            values["status"] = GiftCardStatus.CANCELLED
        if _swap(session, card, require_active=False, **values):
            break
        card = _load_card(session, card.id)
    else:
        raise ConcurrencyConflict("Gift card is being modified concurrently; retry the refund.")

    entry = _append_transaction(
        session, card, TransactionType.REFUND, amount, Decimal(reservation.balance_before), Decimal(card.balance),
        payment_id=reservation.payment_id, reference=external_refund_id,
    )

    payment = session.get(Payment, reservation.payment_id)
    payment.refunded_amount = Decimal(payment.refunded_amount or 0) + refunded_amount
    if card.status == GiftCardStatus.CANCELLED:
        payment.status = PaymentStatus.REFUNDED
    payment.updated_at = utcnow()
    session.flush()
    logger.info("Committed refund %s: %s %s off gift card %s", reservation.id, amount, card.currency, card.id)
    return entry


def release_refund(session: Session, reservation: RefundReservation, *, failure_reason: str) -> GiftCard:
    """Compensating step when the gateway definitively refused the refund."""

    _resolve(session, reservation, ReservationStatus.RELEASED, failure_reason=failure_reason[:500])

    amount = Decimal(reservation.amount)
    card = _load_card(session, reservation.gift_card_id)
    for _ in range(_max_attempts()):
        restored = Decimal(card.balance) + amount
        if _swap(session, card, require_active=False, balance=restored, pending_refund_amount=ZERO):
            break
        card = _load_card(session, card.id)
    else:
        raise ConcurrencyConflict("Gift card is being modified concurrently; retry the release.")

    logger.info("Released refund hold %s on gift card %s: %s", reservation.id, card.id, failure_reason)
    return card


def stale_reservations(session: Session, cutoff: datetime) -> List[UUID]:
    """Ids of PENDING refund holds created before ``cutoff``, oldest first."""

    stmt = (
        select(RefundReservation.id)
        .where(RefundReservation.status == ReservationStatus.PENDING, RefundReservation.created_at < cutoff)
        .order_by(RefundReservation.created_at)
    )
    return list(session.execute(stmt).scalars().all())
