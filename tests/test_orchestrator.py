import logging
import threading
from datetime import timedelta
from decimal import Decimal
from uuid import UUID

import pytest
from sqlalchemy import func, select

from conftest import fake_event, sign_fake_payload
from giftledger.core.config import Settings
from giftledger.core.exceptions import (
    GatewayRefundError,
    GatewayRequestError,
    GatewayUnavailable,
    IdempotencyConflict,
    InvalidState,
    RateLimited,
    RefundBlocked,
    ValidationError,
    WebhookVerificationError,
)
from giftledger.gateways import GatewayStatus
from giftledger.models import (
    GiftCard,
    GiftCardStatus,
    LedgerTransaction,
    Payment,
    PaymentStatus,
    Redemption,
    RefundReservation,
    ReservationStatus,
    TransactionType,
)
from giftledger.services import ledger_service
from giftledger.services.payment_orchestrator import PaymentOrchestrator, list_payments
from giftledger.services.security_gate import SecurityGate
from giftledger.utils.datetime import utcnow


def _create(orchestrator, amount="100.00", **overrides):
    params = dict(
        amount=amount,
        currency="USD",
        method="STRIPE",
        reference_id="order-42",
        merchant_id="m-acme",
    )
    params.update(overrides)
    return orchestrator.create_payment(**params)


def _card_for(session_factory, payment_id):
    db = session_factory()
    try:
        return db.execute(select(GiftCard).where(GiftCard.payment_id == payment_id)).scalar_one_or_none()
    finally:
        db.close()


def _count(session_factory, model, *criteria):
    db = session_factory()
    try:
        return db.execute(select(func.count()).select_from(model).where(*criteria)).scalar_one()
    finally:
        db.close()


def _webhook(orchestrator, event_id, event_type, intent, **extra):
    raw = fake_event(event_id, event_type, intent, **extra)
    return orchestrator.handle_webhook("fake", raw, sign_fake_payload(raw))


def _settled_payment(orchestrator, amount="100.00", **overrides):
    payment = _create(orchestrator, amount, **overrides)
    return orchestrator.confirm_payment(payment.id)


# ---------------------------------------------------------------------------
# Creation and confirmation
# ---------------------------------------------------------------------------


def test_create_payment_opens_intent(orchestrator, fake_gateway):
    payment = _create(orchestrator, gift_card_value="120.00")

    assert payment.status == PaymentStatus.PENDING
    assert payment.external_intent_id in fake_gateway.intents
    assert payment.client_token == f"{payment.external_intent_id}_secret"
    assert payment.amount == Decimal("100.00")
    assert payment.card_value == Decimal("120.00")


def test_create_payment_replays_idempotency_key(orchestrator, fake_gateway, session_factory):
    first = _create(orchestrator, idempotency_key="checkout-1")
    second = _create(orchestrator, idempotency_key="checkout-1")

    assert first.id == second.id
    assert fake_gateway.calls.count("create_intent") == 1
    assert _count(session_factory, Payment) == 1

    with pytest.raises(ValidationError):
        _create(orchestrator, amount="99.00", idempotency_key="checkout-1")


@pytest.mark.parametrize(
    "overrides",
    [
        {"method": "PAYPAL"},
        {"method": "UPI"},
        {"method": "BITCOIN"},
        {"currency": "KWD"},
        {"amount": "0"},
        {"expiry_date": utcnow() - timedelta(days=1)},
    ],
)
def test_create_payment_validation(orchestrator, fake_gateway, overrides):
    with pytest.raises(ValidationError):
        _create(orchestrator, **overrides)
    assert fake_gateway.calls == []


def test_create_payment_failure_marks_payment_failed(orchestrator, fake_gateway, session_factory):
    fake_gateway.create_errors = [GatewayRequestError("card_declined", gateway="fake")]

    with pytest.raises(GatewayRequestError):
        _create(orchestrator)

    db = session_factory()
    try:
        payment = db.execute(select(Payment)).scalar_one()
        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "card_declined"
    finally:
        db.close()


def test_confirm_settles_and_mints_card(orchestrator, session_factory):
    payment = _create(orchestrator, recipient_email="ada@example.com")
    confirmed = orchestrator.confirm_payment(payment.id)

    assert confirmed.status == PaymentStatus.COMPLETED
    assert confirmed.transaction_id == f"ch_{payment.external_intent_id}"
    assert confirmed.completed_at is not None
    card = _card_for(session_factory, payment.id)
    assert card.status == GiftCardStatus.ACTIVE
    assert card.balance == card.value == Decimal("100.00")
    assert card.recipient_email == "ada@example.com"
    assert confirmed.gift_card_id == card.id


def test_confirm_twice_mints_once(orchestrator, fake_gateway, session_factory):
    payment = _create(orchestrator)
    orchestrator.confirm_payment(payment.id)
    again = orchestrator.confirm_payment(payment.id)

    assert again.status == PaymentStatus.COMPLETED
    assert fake_gateway.calls.count("confirm_intent") == 1
    assert _count(session_factory, GiftCard) == 1
    assert _count(session_factory, LedgerTransaction, LedgerTransaction.type == TransactionType.PURCHASE) == 1


def test_confirm_retries_unavailable_gateway(orchestrator, fake_gateway, sleeps):
    fake_gateway.confirm_errors = [GatewayUnavailable("503", gateway="fake"), GatewayUnavailable("503", gateway="fake")]
    payment = _create(orchestrator)

    confirmed = orchestrator.confirm_payment(payment.id)

    assert confirmed.status == PaymentStatus.COMPLETED
    assert sleeps == [0.5, 1.0]


def test_confirm_keeps_payment_pending_when_gateway_stays_down(orchestrator, fake_gateway, session_factory):
    fake_gateway.confirm_errors = [GatewayUnavailable("down", gateway="fake")] * 3
    payment = _create(orchestrator)

    with pytest.raises(GatewayUnavailable):
        orchestrator.confirm_payment(payment.id)
    assert _card_for(session_factory, payment.id) is None

    # the confirmation claim was released, so a later retry goes through
    assert orchestrator.confirm_payment(payment.id).status == PaymentStatus.COMPLETED


def test_declined_confirmation_fails_payment(orchestrator, fake_gateway, session_factory):
    fake_gateway.confirm_status = GatewayStatus.FAILED
    payment = _create(orchestrator)

    failed = orchestrator.confirm_payment(payment.id)

    assert failed.status == PaymentStatus.FAILED
    assert failed.failure_reason == "scripted"
    assert _card_for(session_factory, payment.id) is None
    with pytest.raises(InvalidState):
        orchestrator.confirm_payment(payment.id)


def test_requires_action_leaves_payment_pending(orchestrator, fake_gateway):
    fake_gateway.confirm_status = GatewayStatus.REQUIRES_ACTION
    payment = _create(orchestrator)

    assert orchestrator.confirm_payment(payment.id).status == PaymentStatus.PENDING
    fake_gateway.confirm_status = GatewayStatus.SUCCEEDED
    assert orchestrator.confirm_payment(payment.id).status == PaymentStatus.COMPLETED


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


def test_webhook_settles_before_confirmation(orchestrator, fake_gateway, session_factory):
    payment = _create(orchestrator)

    outcome = _webhook(orchestrator, "evt_1", "PAYMENT_SUCCEEDED", payment.external_intent_id, amount="100.00", currency="USD")
    assert outcome.action == "settled"
    assert outcome.payment_id == str(payment.id)

    confirmed = orchestrator.confirm_payment(payment.id)
    assert confirmed.status == PaymentStatus.COMPLETED
    assert "confirm_intent" not in fake_gateway.calls
    assert _count(session_factory, GiftCard) == 1


def test_webhook_after_confirmation_is_a_no_op(orchestrator, session_factory):
    payment = _settled_payment(orchestrator)

    outcome = _webhook(orchestrator, "evt_2", "PAYMENT_SUCCEEDED", payment.external_intent_id)

    assert outcome.action == "already_settled"
    assert _count(session_factory, GiftCard) == 1


def test_duplicate_webhook_is_acknowledged_once(orchestrator):
    payment = _create(orchestrator)

    first = _webhook(orchestrator, "evt_3", "PAYMENT_SUCCEEDED", payment.external_intent_id)
    second = _webhook(orchestrator, "evt_3", "PAYMENT_SUCCEEDED", payment.external_intent_id)

    assert first.action == "settled"
    assert second.action == "duplicate"
    assert second.payment_id == first.payment_id


def test_webhook_amount_mismatch_does_not_settle(orchestrator, session_factory):
    payment = _create(orchestrator)

    outcome = _webhook(orchestrator, "evt_4", "PAYMENT_SUCCEEDED", payment.external_intent_id, amount="1.00")

    assert outcome.action == "amount_mismatch"
    assert _card_for(session_factory, payment.id) is None


def test_webhook_failure_and_unknown_payment(orchestrator):
    payment = _create(orchestrator)

    assert _webhook(orchestrator, "evt_5", "PAYMENT_FAILED", payment.external_intent_id).action == "failed"
    assert _webhook(orchestrator, "evt_6", "PAYMENT_SUCCEEDED", "fi_missing").action == "unknown_payment"
    assert _webhook(orchestrator, "evt_7", "IGNORED", payment.external_intent_id).action == "ignored"


def test_webhook_matches_by_reference(orchestrator):
    payment = _create(orchestrator, reference_id="order-unique")

    outcome = _webhook(orchestrator, "evt_8", "PAYMENT_SUCCEEDED", None, reference_id="order-unique")

    assert outcome.action == "settled"
    assert outcome.payment_id == str(payment.id)


def test_webhook_rejects_bad_signature(orchestrator):
    raw = fake_event("evt_9", "PAYMENT_SUCCEEDED", "fi_x")

    with pytest.raises(WebhookVerificationError):
        orchestrator.handle_webhook("fake", raw, "deadbeef")
    with pytest.raises(WebhookVerificationError):
        orchestrator.handle_webhook("nope", raw, sign_fake_payload(raw))


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------


def test_full_refund_cancels_card(orchestrator, fake_gateway, session_factory):
    payment = _settled_payment(orchestrator)

    outcome = orchestrator.refund_payment(payment.id, reason="customer request", requested_by="m-acme")

    assert outcome.amount == Decimal("100.00")
    assert outcome.refunded_amount == Decimal("100.00")
    assert outcome.payment_status == PaymentStatus.REFUNDED.value
    assert outcome.card_status == GiftCardStatus.CANCELLED.value
    assert fake_gateway.refunds[0]["key"] == outcome.reservation_id

    card = _card_for(session_factory, payment.id)
    assert card.value == card.balance == Decimal("0.00")
    assert card.pending_refund_amount == Decimal("0.00")


def test_partial_refund_keeps_card_active(orchestrator, session_factory):
    payment = _settled_payment(orchestrator, amount="90.00", gift_card_value="100.00")

    outcome = orchestrator.refund_payment(payment.id, "40.00", requested_by="m-acme")

    assert outcome.amount == Decimal("40.00")
    assert outcome.refunded_amount == Decimal("36.00")
    assert outcome.payment_status == PaymentStatus.COMPLETED.value
    card = _card_for(session_factory, payment.id)
    assert card.status == GiftCardStatus.ACTIVE
    assert card.value == card.balance == Decimal("60.00")

    db = session_factory()
    try:
        assert ledger_service.reconcile(db, card.id)["drift"] == Decimal("0")
        assert db.get(Payment, payment.id).refunded_amount == Decimal("36.00")
    finally:
        db.close()


def test_refund_blocked_after_redemption(orchestrator, fake_gateway, session_factory):
    payment = _settled_payment(orchestrator)
    card = _card_for(session_factory, payment.id)
    db = session_factory()
    try:
        ledger_service.redeem(db, gift_card_id=card.id, amount="1.00", merchant_id="m-acme")
        db.commit()
    finally:
        db.close()

    with pytest.raises(RefundBlocked):
        orchestrator.refund_payment(payment.id)
    assert "refund" not in fake_gateway.calls


def test_refused_refund_restores_balance(orchestrator, fake_gateway, session_factory):
    payment = _settled_payment(orchestrator)
    fake_gateway.refund_errors = [GatewayRefundError("charge_disputed", gateway="fake")]

    with pytest.raises(GatewayRefundError):
        orchestrator.refund_payment(payment.id)

    card = _card_for(session_factory, payment.id)
    assert card.balance == Decimal("100.00")
    assert card.pending_refund_amount == Decimal("0.00")
    assert card.status == GiftCardStatus.ACTIVE
    assert _count(session_factory, RefundReservation, RefundReservation.status == ReservationStatus.RELEASED) == 1


def test_unknown_refund_outcome_keeps_reservation(orchestrator, fake_gateway, session_factory):
    payment = _settled_payment(orchestrator)
    fake_gateway.refund_errors = [GatewayUnavailable("timeout", gateway="fake")] * 3

    with pytest.raises(GatewayUnavailable):
        orchestrator.refund_payment(payment.id, idempotency_key="refund-1")

    card = _card_for(session_factory, payment.id)
    assert card.balance == Decimal("0.00")
    assert card.pending_refund_amount == Decimal("100.00")
    db = session_factory()
    try:
        with pytest.raises(InvalidState):
            ledger_service.redeem(db, gift_card_id=card.id, amount="1.00", merchant_id="m-acme")
    finally:
        db.close()

    outcome = orchestrator.refund_payment(payment.id, idempotency_key="refund-1")

    assert outcome.card_status == GiftCardStatus.CANCELLED.value
    assert _count(session_factory, RefundReservation) == 1
    assert [refund["key"] for refund in fake_gateway.refunds] == [outcome.reservation_id]

    replay = orchestrator.refund_payment(payment.id, idempotency_key="refund-1")
    assert replay == outcome
    assert fake_gateway.calls.count("refund") == 4


def test_refund_requires_completed_payment(orchestrator):
    payment = _create(orchestrator)

    with pytest.raises(InvalidState):
        orchestrator.refund_payment(payment.id)


def test_stale_refund_hold_commits_once_gateway_recovers(orchestrator, fake_gateway, session_factory):
    payment = _settled_payment(orchestrator)
    fake_gateway.refund_errors = [GatewayUnavailable("timeout", gateway="fake")] * 3

    with pytest.raises(GatewayUnavailable):
        orchestrator.refund_payment(payment.id, idempotency_key="refund-2")

    summary = orchestrator.resume_stale_refunds(older_than=timedelta(0), now=utcnow() + timedelta(minutes=1))

    assert summary == {"checked": 1, "committed": 1, "released": 0, "pending": 0, "errors": 0}
    card = _card_for(session_factory, payment.id)
    assert card.status == GiftCardStatus.CANCELLED
    assert card.pending_refund_amount == Decimal("0.00")
    reservation_id = fake_gateway.refunds[0]["key"]
    assert _count(session_factory, RefundReservation, RefundReservation.status == ReservationStatus.COMMITTED) == 1

    # the client's retry picks up what the job settled
    replay = orchestrator.refund_payment(payment.id, idempotency_key="refund-2")
    assert replay.reservation_id == reservation_id
    assert replay.card_status == GiftCardStatus.CANCELLED.value
    assert fake_gateway.calls.count("refund") == 4


def test_stale_refund_hold_is_released_on_refusal(orchestrator, fake_gateway, session_factory):
    payment = _settled_payment(orchestrator)
    fake_gateway.refund_errors = [GatewayUnavailable("timeout", gateway="fake")] * 3 + [
        GatewayRefundError("charge_disputed", gateway="fake")
    ]

    with pytest.raises(GatewayUnavailable):
        orchestrator.refund_payment(payment.id, idempotency_key="refund-3")

    summary = orchestrator.resume_stale_refunds(older_than=timedelta(0), now=utcnow() + timedelta(minutes=1))

    assert summary["released"] == 1
    card = _card_for(session_factory, payment.id)
    assert card.balance == Decimal("100.00")
    assert card.pending_refund_amount == Decimal("0.00")
    assert card.status == GiftCardStatus.ACTIVE

    with pytest.raises(GatewayRefundError):
        orchestrator.refund_payment(payment.id, idempotency_key="refund-3")
    # the refused key is freed and a retry starts a new refund
    outcome = orchestrator.refund_payment(payment.id, idempotency_key="refund-3")
    assert outcome.card_status == GiftCardStatus.CANCELLED.value
    assert _count(session_factory, RefundReservation) == 2


def test_stale_refund_hold_stays_pending_while_gateway_is_down(orchestrator, fake_gateway, session_factory, caplog):
    payment = _settled_payment(orchestrator)
    fake_gateway.refund_errors = [GatewayUnavailable("timeout", gateway="fake")] * 6

    with pytest.raises(GatewayUnavailable):
        orchestrator.refund_payment(payment.id)

    with caplog.at_level(logging.ERROR, logger="giftledger.services.payment_orchestrator"):
        summary = orchestrator.resume_stale_refunds(now=utcnow() + timedelta(hours=25))

    assert summary["pending"] == 1
    assert "still unresolved" in caplog.text
    assert _card_for(session_factory, payment.id).pending_refund_amount == Decimal("100.00")
    assert _count(session_factory, RefundReservation, RefundReservation.status == ReservationStatus.PENDING) == 1
    assert fake_gateway.refunds == []


def test_fresh_refund_holds_are_left_alone(orchestrator, fake_gateway):
    payment = _settled_payment(orchestrator)
    fake_gateway.refund_errors = [GatewayUnavailable("timeout", gateway="fake")] * 3
    with pytest.raises(GatewayUnavailable):
        orchestrator.refund_payment(payment.id)

    assert orchestrator.resume_stale_refunds()["checked"] == 0
    assert fake_gateway.calls.count("refund") == 3


def test_resume_refund_rejects_resolved_hold(orchestrator, fake_gateway):
    payment = _settled_payment(orchestrator)
    outcome = orchestrator.refund_payment(payment.id)

    with pytest.raises(InvalidState):
        orchestrator.resume_refund(UUID(outcome.reservation_id))


def test_refund_racing_redemption_lets_only_one_through(orchestrator, fake_gateway, session_factory):
    for round_ in range(5):
        payment = _settled_payment(orchestrator, reference_id=f"race-{round_}")
        card_id = _card_for(session_factory, payment.id).id
        barrier = threading.Barrier(2)
        outcomes = {}

        def refund():
            barrier.wait()
            try:
                orchestrator.refund_payment(payment.id)
                outcomes["refund"] = "ok"
            except RefundBlocked:
                outcomes["refund"] = "blocked"
            except Exception as exc:  # surfaced by the assertions below
                outcomes["refund"] = repr(exc)

        def redeem():
            barrier.wait()
            db = session_factory()
            try:
                ledger_service.redeem(db, gift_card_id=card_id, amount="10.00", merchant_id="m-acme")
                db.commit()
                outcomes["redeem"] = "ok"
            except InvalidState:
                db.rollback()
                outcomes["redeem"] = "refused"
            except Exception as exc:
                db.rollback()
                outcomes["redeem"] = repr(exc)
            finally:
                db.close()

        threads = [threading.Thread(target=refund), threading.Thread(target=redeem)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes.values()) in (["blocked", "ok"], ["ok", "refused"]), outcomes
        redemptions = _count(session_factory, Redemption, Redemption.gift_card_id == card_id)
        refunds = _count(
            session_factory, LedgerTransaction,
            LedgerTransaction.gift_card_id == card_id, LedgerTransaction.type == TransactionType.REFUND,
        )
        if outcomes["redeem"] == "ok":
            assert (redemptions, refunds) == (1, 0)
            assert _card_for(session_factory, payment.id).balance == Decimal("90.00")
        else:
            assert (redemptions, refunds) == (0, 1)


def test_confirmation_racing_webhook_mints_one_card(orchestrator, session_factory):
    for round_ in range(5):
        payment = _create(orchestrator, reference_id=f"race-{round_}")
        barrier = threading.Barrier(3)
        failures = []

        def confirm():
            barrier.wait()
            try:
                orchestrator.confirm_payment(payment.id)
            except IdempotencyConflict:
                # the other confirmation holds the key
                pass
            except Exception as exc:
                failures.append(repr(exc))

        def webhook():
            barrier.wait()
            try:
                _webhook(
                    orchestrator, f"evt_race_{round_}", "PAYMENT_SUCCEEDED", payment.external_intent_id,
                    amount="100.00", currency="USD",
                )
            except Exception as exc:
                failures.append(repr(exc))

        threads = [threading.Thread(target=target) for target in (confirm, confirm, webhook)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert failures == []
        assert _count(session_factory, GiftCard, GiftCard.payment_id == payment.id) == 1
        assert _count(
            session_factory, LedgerTransaction,
            LedgerTransaction.payment_id == payment.id, LedgerTransaction.type == TransactionType.PURCHASE,
        ) == 1
        db = session_factory()
        try:
            assert db.get(Payment, payment.id).status == PaymentStatus.COMPLETED
        finally:
            db.close()


def test_payment_replay_does_not_spend_a_rate_limit_slot(session_factory, registry, sleeps, otp_sender):
    gate = SecurityGate(
        session_factory,
        Settings(rate_limits={"payment_create": (1, 60), "otp_issue": (5, 3600), "otp_verify": (50, 900)}),
        sender=otp_sender,
    )
    orchestrator = PaymentOrchestrator(session_factory, registry, security_gate=gate, sleep=sleeps.append)

    first = _create(orchestrator, idempotency_key="order-9")
    replay = _create(orchestrator, idempotency_key="order-9")

    assert replay.id == first.id
    with pytest.raises(RateLimited):
        _create(orchestrator, reference_id="order-10", idempotency_key="order-10")


def test_list_payments_is_merchant_scoped(orchestrator, session):
    settled = _settled_payment(orchestrator, reference_id="a")
    _create(orchestrator, reference_id="b")
    _create(orchestrator, reference_id="c", merchant_id="m-other")

    assert len(list_payments(session, merchant_id="m-acme")) == 2
    completed = list_payments(session, merchant_id="m-acme", status=PaymentStatus.COMPLETED)
    assert [payment.id for payment in completed] == [settled.id]
    assert len(list_payments(session, merchant_id="m-acme", limit=1)) == 1


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def test_reconcile_payment_settles_from_gateway_status(orchestrator, fake_gateway, session_factory):
    payment = _create(orchestrator)
    assert orchestrator.reconcile_payment(payment.id).status == PaymentStatus.PENDING

    fake_gateway.poll_status = GatewayStatus.SUCCEEDED
    reconciled = orchestrator.reconcile_payment(payment.id)

    assert reconciled.status == PaymentStatus.COMPLETED
    assert _card_for(session_factory, payment.id) is not None


def test_reconcile_stale_payments_summary(orchestrator, fake_gateway):
    _create(orchestrator, reference_id="a")
    _create(orchestrator, reference_id="b")
    fake_gateway.poll_status = GatewayStatus.FAILED

    assert orchestrator.reconcile_stale_payments(now=utcnow())["checked"] == 0

    summary = orchestrator.reconcile_stale_payments(now=utcnow() + timedelta(hours=1))
    assert summary["checked"] == 2
    assert summary["failed"] == 2
    assert summary["errors"] == 0
