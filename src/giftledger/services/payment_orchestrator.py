"""Drives payments from intent to settlement or refund across gateways.

The orchestrator owns its transactions: it commits before every external
call so that nothing is held open while a gateway is slow, and it settles
through a conditional ``PENDING -> COMPLETED`` update so client
confirmation and webhook delivery can race without minting twice.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from ..core.config import Settings, get_settings
from ..core.exceptions import (
    GatewayError,
    GatewayRefundError,
    GatewayRequestError,
    GatewayUnavailable,
    IdempotencyConflict,
    InvalidState,
    LedgerError,
    NotFoundError,
    ValidationError,
)
from ..gateways import GatewayRegistry, GatewayStatus, WebhookEvent, WebhookEventType
from ..models import (
    GiftCard,
    IdempotencyRecord,
    OTPPurpose,
    Payment,
    PaymentMethod,
    PaymentStatus,
    RefundReservation,
    ReservationStatus,
)
from ..utils.datetime import to_naive_utc, utcnow
from ..utils.money import Amount, normalize_currency, quantize
from . import ledger_service
from .idempotency_service import IdempotencyStore, fingerprint

logger = logging.getLogger(__name__)

_TERMINAL_FAILURES = (GatewayStatus.FAILED, GatewayStatus.CANCELLED)


@dataclass
class RefundOutcome:
    payment_id: str
    gift_card_id: str
    reservation_id: str
    amount: Decimal
    refunded_amount: Decimal
    currency: str
    external_refund_id: Optional[str]
    payment_status: str
    card_status: str

    def to_response(self) -> Dict[str, Any]:
        data = asdict(self)
        data["amount"] = str(self.amount)
        data["refunded_amount"] = str(self.refunded_amount)
        return data

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "RefundOutcome":
        values = dict(data)
        values["amount"] = Decimal(values["amount"])
        values["refunded_amount"] = Decimal(values["refunded_amount"])
        return cls(**values)


@dataclass
class WebhookOutcome:
    gateway: str
    event_id: str
    event_type: str
    action: str
    payment_id: Optional[str] = None


def get_payment(session: Session, payment_id: UUID, merchant_id: Optional[str] = None) -> Payment:
    payment = session.get(Payment, payment_id)
    if payment is None or (merchant_id is not None and payment.merchant_id != merchant_id):
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def list_payments(
    session: Session,
    *,
    merchant_id: str,
    status: Optional[PaymentStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Payment]:
    stmt = select(Payment).where(Payment.merchant_id == merchant_id)
    if status is not None:
        stmt = stmt.where(Payment.status == status)
    stmt = stmt.order_by(Payment.created_at.desc()).limit(limit).offset(offset)
    return list(session.execute(stmt).scalars().all())


class PaymentOrchestrator:
    """Payment lifecycle over the configured gateways."""

    def __init__(
        self,
        session_factory: sessionmaker,
        gateways: GatewayRegistry,
        *,
        security_gate=None,
        settings: Optional[Settings] = None,
        idempotency: Optional[IdempotencyStore] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.gateways = gateways
        self.security_gate = security_gate
        self.settings = settings or get_settings()
        self.idempotency = idempotency or IdempotencyStore(
            self.settings.idempotency_ttl_hours, self.settings.idempotency_lease_seconds
        )
        self._sleep = sleep

    # ---------------------------------------------------------------------------
    # Gateway calls
    # ---------------------------------------------------------------------------

    def _with_retries(self, label: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Call ``func`` retrying only ``GatewayUnavailable`` with capped exponential backoff."""

        attempts = self.settings.gateway_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return func(*args, **kwargs)
            except GatewayUnavailable as exc:
                if attempt == attempts:
                    logger.warning("%s: gateway still unavailable after %s attempts", label, attempts)
                    raise
                delay = min(
                    self.settings.gateway_backoff_seconds * (2 ** (attempt - 1)),
                    self.settings.gateway_backoff_max_seconds,
                )
                logger.warning("%s: %s; retrying in %.2fs (attempt %s/%s)", label, exc.detail, delay, attempt, attempts)
                self._sleep(delay)

    # ---------------------------------------------------------------------------
    # Creation
    # ---------------------------------------------------------------------------

    def create_payment(
        self,
        *,
        amount: Amount,
        currency: str,
        method: Any,
        reference_id: str,
        merchant_id: str,
        customer_id: Optional[str] = None,
        gift_card_value: Optional[Amount] = None,
        allow_partial_redemption: bool = True,
        expiry_date: Optional[datetime] = None,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        recipient_email: Optional[str] = None,
        recipient_name: Optional[str] = None,
        message: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Payment:
        """Persist a PENDING payment and open its intent at the gateway."""

        currency = normalize_currency(currency)
        try:
            method = PaymentMethod(getattr(method, "value", method))
        except ValueError:
            raise ValidationError(f"Unsupported payment method '{method}'.") from None
        amount = quantize(amount, currency)
        card_value = quantize(gift_card_value if gift_card_value is not None else amount, currency)
        if amount <= 0 or card_value <= 0:
            raise ValidationError("Amount and gift card value must be greater than zero.")
        if not reference_id or not merchant_id:
            raise ValidationError("reference_id and merchant_id are required.")
        if method == PaymentMethod.PAYPAL and not (return_url and cancel_url):
            raise ValidationError("PayPal payments require return_url and cancel_url.")
        if method == PaymentMethod.UPI and currency != "INR":
            raise ValidationError("UPI payments must be in INR.")
        expiry_date = to_naive_utc(expiry_date)
        if expiry_date is not None and expiry_date <= utcnow():
            raise ValidationError("Expiry date must be in the future.")

        gateway = self.gateways.for_method(method)

        session = self.session_factory()
        try:
            claim = None
            request_print = None
            if idempotency_key:
                request_print = fingerprint({
                    "merchant_id": merchant_id,
                    "amount": amount,
                    "currency": currency,
                    "method": method.value,
                    "reference_id": reference_id,
                    "card_value": card_value,
                })
                stored = self.idempotency.lookup(session, "payment-create", idempotency_key, request_print)
                if stored is not None:
                    return self._detach(session, get_payment(session, UUID(stored["payment_id"])))

            if self.security_gate is not None:
                self.security_gate.check_rate_limit(merchant_id, "payment_create")

            if idempotency_key:
                claim = self.idempotency.claim(session, "payment-create", idempotency_key, request_print)
                if claim.replay:
                    return self._detach(session, get_payment(session, UUID(claim.response["payment_id"])))

            payment = Payment(
                reference_id=reference_id,
                merchant_id=merchant_id,
                customer_id=customer_id,
                amount=amount,
                currency=currency,
                method=method,
                status=PaymentStatus.PENDING,
                card_value=card_value,
                card_allow_partial_redemption=allow_partial_redemption,
                card_expiry_date=expiry_date,
                recipient_email=recipient_email,
                recipient_name=recipient_name,
                message=message,
                refunded_amount=Decimal("0"),
                return_url=return_url,
                cancel_url=cancel_url,
            )
            session.add(payment)
            session.flush()
            payment_id = payment.id
            session.commit()

            try:
                intent = self._with_retries(
                    f"create_intent {payment_id}",
                    gateway.create_intent,
                    amount,
                    currency,
                    reference_id,
                    payment_id=payment_id,
                    customer_id=customer_id,
                    return_url=return_url,
                    cancel_url=cancel_url,
                    idempotency_key=f"payment-{payment_id}",
                )
            except (GatewayError, ValidationError) as exc:
                # an intent that was never opened can never capture funds
                payment.status = PaymentStatus.FAILED
                payment.failure_reason = exc.detail[:500]
                payment.updated_at = utcnow()
                if claim is not None:
                    self.idempotency.complete(session, claim.record, {"payment_id": str(payment_id)})
                session.commit()
                logger.warning("Payment %s failed at intent creation: %s", payment_id, exc.detail)
                raise

            payment.external_intent_id = intent.external_intent_id
            payment.client_token = intent.client_token
            if intent.status in _TERMINAL_FAILURES:
                payment.status = PaymentStatus.FAILED
                payment.failure_reason = f"Gateway returned {intent.status.value} for the new intent"
            payment.updated_at = utcnow()
            if claim is not None:
                self.idempotency.complete(session, claim.record, {"payment_id": str(payment_id)})
            session.commit()
            logger.info("Payment %s opened %s intent %s", payment_id, method.value, intent.external_intent_id)
            return self._detach(session, payment)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ---------------------------------------------------------------------------
    # Settlement
    # ---------------------------------------------------------------------------

    def confirm_payment(self, payment_id: UUID, **provider_args: Any) -> Payment:
        """Confirm the intent synchronously and settle; a second call is a no-op."""

        session = self.session_factory()
        try:
            payment = get_payment(session, payment_id)
            if payment.status == PaymentStatus.COMPLETED:
                return self._detach(session, payment)
            if payment.status != PaymentStatus.PENDING:
                raise InvalidState(f"Payment is {payment.status.value} and cannot be confirmed.")
            if not payment.external_intent_id:
                raise InvalidState("Payment has no gateway intent to confirm.")

            claim = self.idempotency.claim(
                session,
                "payment-confirm",
                str(payment_id),
                lease_seconds=self.settings.idempotency_lease_seconds,
            )
            if claim.replay:
                return self._detach(session, get_payment(session, payment_id))
            session.commit()

            gateway = self.gateways.for_method(payment.method)
            try:
                result = self._with_retries(
                    f"confirm_intent {payment_id}",
                    gateway.confirm_intent,
                    payment.external_intent_id,
                    **provider_args,
                )
            except GatewayRequestError as exc:
                self._fail(session, payment, exc.detail)
                self.idempotency.complete(session, claim.record, {"payment_id": str(payment_id)})
                session.commit()
                raise
            except LedgerError:
                # unavailable, auth or bad provider args: the payment stays PENDING for a retry
                self.idempotency.release(session, claim.record)
                session.commit()
                raise

            if result.status == GatewayStatus.SUCCEEDED:
                self._settle(session, payment, result.external_transaction_id)
                self.idempotency.complete(session, claim.record, {"payment_id": str(payment_id)})
            elif result.status in _TERMINAL_FAILURES:
                self._fail(session, payment, result.failure_reason or f"Gateway reported {result.status.value}")
                self.idempotency.complete(session, claim.record, {"payment_id": str(payment_id)})
            else:
                logger.info("Payment %s still %s at the gateway", payment_id, result.status.value)
                self.idempotency.release(session, claim.record)
            session.commit()
            return self._detach(session, get_payment(session, payment_id))
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _settle(self, session: Session, payment: Payment, transaction_id: Optional[str]) -> bool:
        """First writer moves PENDING -> COMPLETED and activates the card."""

        now = utcnow()
        stmt = (
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING)
            .values(status=PaymentStatus.COMPLETED, transaction_id=transaction_id, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        won = session.execute(stmt).rowcount == 1
        session.refresh(payment)
        if not won:
            logger.info("Payment %s already %s; settlement is a no-op", payment.id, payment.status.value)
            return False
        card = ledger_service.activate(session, payment)
        logger.info("Payment %s settled; gift card %s issued", payment.id, card.id)
        return True

    def _fail(self, session: Session, payment: Payment, reason: str) -> bool:
        stmt = (
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING)
            .values(status=PaymentStatus.FAILED, failure_reason=(reason or "")[:500], updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        failed = session.execute(stmt).rowcount == 1
        session.refresh(payment)
        if failed:
            logger.info("Payment %s failed: %s", payment.id, reason)
        return failed

    # ---------------------------------------------------------------------------
    # Webhooks
    # ---------------------------------------------------------------------------

    def handle_webhook(
        self,
        gateway_name: str,
        raw_payload: bytes,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookOutcome:
        event = self.gateways.verify(gateway_name, raw_payload, signature, headers)

        session = self.session_factory()
        try:
            claim = self.idempotency.claim(session, f"webhook:{gateway_name.lower()}", event.event_id)
            if claim.replay:
                logger.info("Duplicate %s webhook %s ignored", gateway_name, event.event_id)
                return WebhookOutcome(**{**claim.response, "action": "duplicate"})

            payment = self._find_payment(session, event)
            action = self._apply_event(session, event, payment)
            outcome = WebhookOutcome(
                gateway=gateway_name.lower(),
                event_id=event.event_id,
                event_type=event.type.value,
                action=action,
                payment_id=str(payment.id) if payment is not None else None,
            )
            self.idempotency.complete(session, claim.record, asdict(outcome))
            session.commit()
            logger.info("%s webhook %s (%s): %s", gateway_name, event.event_id, event.type.value, action)
            return outcome
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _apply_event(self, session: Session, event: WebhookEvent, payment: Optional[Payment]) -> str:
        if event.type == WebhookEventType.IGNORED:
            return "ignored"
        if payment is None:
            logger.warning("%s webhook %s references no known payment", event.gateway, event.event_id)
            return "unknown_payment"

        if event.type == WebhookEventType.PAYMENT_SUCCEEDED:
            if not self._amount_matches(payment, event.amount, event.currency):
                logger.error(
                    "Webhook %s for payment %s reports %s %s, expected %s %s; not settling",
                    event.event_id, payment.id, event.amount, event.currency, payment.amount, payment.currency,
                )
                return "amount_mismatch"
            settled = self._settle(session, payment, event.external_transaction_id)
            return "settled" if settled else "already_settled"
        if event.type == WebhookEventType.PAYMENT_FAILED:
            return "failed" if self._fail(session, payment, "Gateway reported the payment as failed") else "ignored"
        # Ledger refunds only happen through refund_payment; gateway-side refunds are recorded for audit.
        return "refund_noted"

    @staticmethod
    def _amount_matches(payment: Payment, amount: Optional[Decimal], currency: Optional[str]) -> bool:
        if currency and currency.upper() != payment.currency:
            return False
        if amount is None:
            return True
        return quantize(amount, payment.currency) == quantize(payment.amount, payment.currency)

    def _find_payment(self, session: Session, event: WebhookEvent) -> Optional[Payment]:
        if event.external_intent_id:
            payment = session.execute(
                select(Payment).where(Payment.external_intent_id == event.external_intent_id)
            ).scalar_one_or_none()
            if payment is not None:
                return payment
        if not event.reference_id:
            return None

        try:
            payment = session.get(Payment, UUID(str(event.reference_id)))
        except ValueError:
            matches = session.execute(
                select(Payment).where(Payment.reference_id == event.reference_id).limit(2)
            ).scalars().all()
            payment = matches[0] if len(matches) == 1 else None
        if payment is None:
            return None
        if payment.external_intent_id and event.external_intent_id and payment.external_intent_id != event.external_intent_id:
            return None
        return payment

    # ---------------------------------------------------------------------------
    # Refunds
    # ---------------------------------------------------------------------------

    def refund_payment(
        self,
        payment_id: UUID,
        amount: Optional[Amount] = None,
        *,
        reason: Optional[str] = None,
        requested_by: Optional[str] = None,
        otp_code: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundOutcome:
        """
        Refund saga: reserve the balance (committed), call the gateway, then
        commit the refund or release the hold.

        A gateway that stays unavailable leaves the reservation PENDING since
        the refund may or may not have happened. Calling again, or the
        scheduled ``resume_stale_refunds``, resumes it with the same gateway
        idempotency key.
        """

        session = self.session_factory()
        try:
            payment = get_payment(session, payment_id, requested_by)
            scope = f"refund:{payment_id}"
            request_print = fingerprint({"amount": None if amount is None else quantize(amount, payment.currency)})
            if idempotency_key:
                stored = self.idempotency.lookup(session, scope, idempotency_key, request_print)
                if stored is not None:
                    return self._replay_refund(session, payment, scope, idempotency_key, request_print)

            actor = requested_by or str(payment_id)
            if self.security_gate is not None:
                self.security_gate.check_rate_limit(actor, "refund")
                if self.settings.refund_requires_otp:
                    self.security_gate.require_otp(actor, otp_code, OTPPurpose.TRANSACTION)

            claim = None
            if idempotency_key:
                claim = self.idempotency.claim(session, scope, idempotency_key, request_print)
                if claim.replay:
                    return self._replay_refund(session, payment, scope, idempotency_key, request_print)

            if payment.status != PaymentStatus.COMPLETED:
                raise InvalidState(f"Payment is {payment.status.value}; only completed payments can be refunded.")
            if not payment.transaction_id:
                raise InvalidState("Payment has no captured transaction to refund.")

            reservation = ledger_service.pending_reservation(session, payment.id)
            if reservation is not None:
                if amount is not None and quantize(amount, payment.currency) != Decimal(reservation.amount):
                    raise InvalidState("A different refund is already in progress for this payment.")
                logger.info("Resuming refund reservation %s for payment %s", reservation.id, payment.id)
            else:
                reservation = ledger_service.reserve_refund(
                    session, payment=payment, amount=amount, reason=reason, requested_by=requested_by
                )
            return self._execute_refund(session, payment, reservation, claim.record if claim else None)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _replay_refund(
        self, session: Session, payment: Payment, scope: str, key: str, request_print: str
    ) -> RefundOutcome:
        """Answer a retried key: the stored outcome, or the resumed refund it was waiting on."""

        claim = self.idempotency.claim(session, scope, key, request_print)
        if not claim.replay:
            # the record lapsed between lookup and claim; run as a fresh request would
            raise IdempotencyConflict("Idempotency key expired while replaying; retry the request.")
        stored = claim.response
        if not stored.get("pending"):
            return RefundOutcome.from_response(stored)

        reservation = ledger_service.get_reservation(session, UUID(stored["reservation_id"]))
        if reservation.status == ReservationStatus.PENDING:
            logger.info("Resuming refund reservation %s for retried key %s", reservation.id, key)
            return self._execute_refund(session, payment, reservation, claim.record)
        if reservation.status == ReservationStatus.RELEASED:
            detail = reservation.failure_reason or "Refund was refused by the gateway"
            self.idempotency.release(session, claim.record)
            session.commit()
            raise GatewayRefundError(detail, gateway=self.gateways.for_method(payment.method).name)

        # committed by the scheduled resumption while the client was away
        outcome = self._outcome(session, payment, reservation)
        self.idempotency.complete(session, claim.record, outcome.to_response())
        session.commit()
        return outcome

    def _execute_refund(
        self,
        session: Session,
        payment: Payment,
        reservation: RefundReservation,
        record: Optional[IdempotencyRecord],
    ) -> RefundOutcome:
        """Gateway call for a PENDING reservation, then commit or release it."""

        if reservation.gateway_amount is None:
            card = session.get(GiftCard, reservation.gift_card_id)
            reservation.gateway_amount = self._gateway_refund_amount(payment, card, reservation)
        gateway_amount = Decimal(reservation.gateway_amount)
        reservation_id = reservation.id
        session.commit()

        gateway = self.gateways.for_method(payment.method)
        try:
            result = self._with_retries(
                f"refund {payment.id}",
                gateway.refund,
                payment.transaction_id,
                gateway_amount,
                currency=payment.currency,
                idempotency_key=str(reservation_id),
            )
        except GatewayUnavailable:
            logger.warning("Refund %s outcome unknown; reservation kept for retry", reservation_id)
            if record is not None:
                self.idempotency.complete(session, record, {"reservation_id": str(reservation_id), "pending": True})
                session.commit()
            raise
        except (GatewayError, ValidationError) as exc:
            self._release(session, reservation, record, exc.detail)
            if isinstance(exc, GatewayRefundError):
                raise
            raise GatewayRefundError(exc.detail, gateway=getattr(exc, "gateway", "")) from exc

        if result.status in _TERMINAL_FAILURES:
            detail = f"Gateway reported refund {result.external_refund_id} as {result.status.value}"
            self._release(session, reservation, record, detail)
            raise GatewayRefundError(detail, gateway=gateway.name)

        ledger_service.commit_refund(
            session,
            reservation,
            external_refund_id=result.external_refund_id,
            refunded_amount=gateway_amount,
        )
        outcome = self._outcome(session, payment, reservation)
        if record is not None:
            self.idempotency.complete(session, record, outcome.to_response())
        session.commit()
        return outcome

    @staticmethod
    def _outcome(session: Session, payment: Payment, reservation: RefundReservation) -> RefundOutcome:
        card = session.get(GiftCard, reservation.gift_card_id)
        session.refresh(card)
        session.refresh(payment)
        return RefundOutcome(
            payment_id=str(payment.id),
            gift_card_id=str(card.id),
            reservation_id=str(reservation.id),
            amount=Decimal(reservation.amount),
            refunded_amount=Decimal(reservation.gateway_amount),
            currency=payment.currency,
            external_refund_id=reservation.external_refund_id,
            payment_status=payment.status.value,
            card_status=card.status.value,
        )

    def _release(
        self, session: Session, reservation: RefundReservation, record: Optional[IdempotencyRecord], detail: str
    ) -> None:
        ledger_service.release_refund(session, reservation, failure_reason=detail)
        if record is not None:
            self.idempotency.release(session, record)
        session.commit()
        logger.warning("Refund %s refused by gateway: %s", reservation.id, detail)

    def resume_refund(self, reservation_id: UUID) -> RefundOutcome:
        """Retry the gateway call of a PENDING refund hold with its original key."""

        session = self.session_factory()
        try:
            reservation = ledger_service.get_reservation(session, reservation_id)
            if reservation.status != ReservationStatus.PENDING:
                raise InvalidState(f"Refund reservation {reservation_id} is already {reservation.status.value}.")
            payment = get_payment(session, reservation.payment_id)
            logger.info("Resuming refund reservation %s for payment %s", reservation_id, payment.id)
            return self._execute_refund(session, payment, reservation, None)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def resume_stale_refunds(self, older_than: Optional[timedelta] = None, now: Optional[datetime] = None) -> Dict[str, int]:
        """Resolve refund holds left PENDING by an unavailable gateway."""

        now = now or utcnow()
        older_than = older_than or timedelta(minutes=self.settings.refund_resume_after_minutes)
        alert_before = now - timedelta(hours=self.settings.refund_hold_alert_hours)

        session = self.session_factory()
        try:
            reservation_ids = ledger_service.stale_reservations(session, now - older_than)
            overdue = set(ledger_service.stale_reservations(session, alert_before))
        finally:
            session.close()

        summary = {"checked": 0, "committed": 0, "released": 0, "pending": 0, "errors": 0}
        for reservation_id in reservation_ids:
            summary["checked"] += 1
            try:
                self.resume_refund(reservation_id)
            except GatewayUnavailable:
                summary["pending"] += 1
                if reservation_id in overdue:
                    logger.error(
                        "Refund hold %s is still unresolved after %sh", reservation_id, self.settings.refund_hold_alert_hours
                    )
                continue
            except GatewayRefundError:
                summary["released"] += 1
                continue
            except LedgerError as exc:
                summary["errors"] += 1
                logger.warning("Resuming refund %s failed: %s", reservation_id, exc.detail)
                continue
            summary["committed"] += 1
        return summary

    @staticmethod
    def _gateway_refund_amount(payment: Payment, card: GiftCard, reservation: RefundReservation) -> Decimal:
        """Translate a card-value refund into the amount the customer paid for it."""

        remaining_paid = Decimal(payment.amount) - Decimal(payment.refunded_amount or 0)
        held = Decimal(reservation.amount)
        if held >= Decimal(card.value):
            return remaining_paid
        share = Decimal(payment.amount) * held / Decimal(payment.card_value)
        return min(quantize(share, payment.currency), remaining_paid)

    # ---------------------------------------------------------------------------
    # Reconciliation
    # ---------------------------------------------------------------------------

    def reconcile_payment(self, payment_id: UUID) -> Payment:
        """Poll the gateway for a PENDING payment and settle or fail it."""

        session = self.session_factory()
        try:
            payment = get_payment(session, payment_id)
            if payment.status != PaymentStatus.PENDING or not payment.external_intent_id:
                return self._detach(session, payment)

            gateway = self.gateways.for_method(payment.method)
            status = self._with_retries(
                f"get_status {payment_id}", gateway.get_status, payment.external_intent_id
            )
            if status.status == GatewayStatus.SUCCEEDED:
                if self._amount_matches(payment, status.amount, status.currency):
                    self._settle(session, payment, status.external_transaction_id)
                else:
                    logger.error(
                        "Gateway reports %s %s for payment %s, expected %s %s; not settling",
                        status.amount, status.currency, payment.id, payment.amount, payment.currency,
                    )
            elif status.status in _TERMINAL_FAILURES:
                self._fail(session, payment, f"Gateway reported {status.status.value}")
            session.commit()
            return self._detach(session, get_payment(session, payment_id))
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def reconcile_stale_payments(self, older_than: Optional[timedelta] = None, now: Optional[datetime] = None) -> Dict[str, int]:
        """Reconcile every PENDING payment older than ``older_than``."""

        older_than = older_than or timedelta(minutes=self.settings.reconcile_after_minutes)
        cutoff = (now or utcnow()) - older_than

        session = self.session_factory()
        try:
            stmt = select(Payment.id).where(
                Payment.status == PaymentStatus.PENDING,
                Payment.external_intent_id.is_not(None),
                Payment.created_at < cutoff,
            )
            payment_ids = session.execute(stmt).scalars().all()
        finally:
            session.close()

        summary = {"checked": 0, "completed": 0, "failed": 0, "pending": 0, "errors": 0}
        for payment_id in payment_ids:
            summary["checked"] += 1
            try:
                payment = self.reconcile_payment(payment_id)
            except LedgerError as exc:
                summary["errors"] += 1
                logger.warning("Reconciliation of payment %s failed: %s", payment_id, exc.detail)
                continue
            key = payment.status.value.lower() if payment.status != PaymentStatus.PENDING else "pending"
            summary[key] = summary.get(key, 0) + 1
        return summary

    @staticmethod
    def _detach(session: Session, payment: Payment) -> Payment:
        """Load every column so the instance stays readable after the session closes."""

        session.refresh(payment)
        return payment
