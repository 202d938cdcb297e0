"""Shared fixtures: a temp-file SQLite database, a fake gateway and app clients."""

import hashlib
import hmac
import json
import os
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

# Settings are read at import time; point them at SQLite before importing the app.
os.environ.setdefault("GIFTLEDGER_DATABASE_URL", "sqlite:///./.pytest-giftledger.db")
os.environ["GIFTLEDGER_SCHEDULER_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from giftledger.core.database import engine_options, get_db, init_db
from giftledger.core.exceptions import WebhookVerificationError
from giftledger.gateways import (
    BasePaymentGateway,
    ConfirmResult,
    GatewayRegistry,
    GatewayStatus,
    IntentResult,
    RefundResult,
    StatusResult,
    WebhookEvent,
    WebhookEventType,
)
from giftledger.models import Payment, PaymentMethod, PaymentStatus
from giftledger.services import ledger_service
from giftledger.services.payment_orchestrator import PaymentOrchestrator
from giftledger.services.security_gate import SecurityGate

FAKE_WEBHOOK_SECRET = "whsec_fake"


class RecordingSender:
    def __init__(self) -> None:
        self.sent: List[tuple] = []

    def send_code(self, identifier: str, channel: str, code: str) -> None:
        self.sent.append((identifier, channel, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][2]


class FakeGateway(BasePaymentGateway):
    """In-memory gateway; tests queue errors or statuses to script its behaviour."""

    name = "fake"

    def __init__(self) -> None:
        super().__init__(api_base="https://fake.invalid")
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.refunds: List[Dict[str, Any]] = []
        self.calls: List[str] = []
        self.create_errors: List[Exception] = []
        self.confirm_errors: List[Exception] = []
        self.refund_errors: List[Exception] = []
        self.confirm_status = GatewayStatus.SUCCEEDED
        self.refund_status = GatewayStatus.SUCCEEDED
        self.poll_status: Optional[GatewayStatus] = None

    def create_intent(self, amount: Decimal, currency: str, reference_id: str, **options: Any) -> IntentResult:
        self.calls.append("create_intent")
        if self.create_errors:
            raise self.create_errors.pop(0)
        intent_id = f"fi_{uuid.uuid4().hex[:12]}"
        self.intents[intent_id] = {"amount": amount, "currency": currency, "captured": False}
        return IntentResult(external_intent_id=intent_id, client_token=f"{intent_id}_secret", status=GatewayStatus.PENDING)

    def confirm_intent(self, external_intent_id: str, **provider_args: Any) -> ConfirmResult:
        self.calls.append("confirm_intent")
        if self.confirm_errors:
            raise self.confirm_errors.pop(0)
        if self.confirm_status == GatewayStatus.SUCCEEDED:
            self.intents[external_intent_id]["captured"] = True
            return ConfirmResult(status=GatewayStatus.SUCCEEDED, external_transaction_id=f"ch_{external_intent_id}")
        return ConfirmResult(status=self.confirm_status, failure_reason="scripted")

    def get_status(self, external_intent_id: str) -> StatusResult:
        self.calls.append("get_status")
        intent = self.intents[external_intent_id]
        status = self.poll_status or GatewayStatus.PENDING
        return StatusResult(
            status=status,
            amount=intent["amount"],
            currency=intent["currency"],
            external_transaction_id=f"ch_{external_intent_id}" if status == GatewayStatus.SUCCEEDED else None,
        )

    def refund(self, external_transaction_id, amount=None, *, currency, idempotency_key=None) -> RefundResult:
        self.calls.append("refund")
        if self.refund_errors:
            raise self.refund_errors.pop(0)
        self.refunds.append({"transaction": external_transaction_id, "amount": amount, "key": idempotency_key})
        return RefundResult(external_refund_id=f"re_{len(self.refunds)}", status=self.refund_status, amount=amount)

    def verify_signature(self, raw_payload, signature, headers=None) -> WebhookEvent:
        expected = sign_fake_payload(raw_payload)
        if not signature or not hmac.compare_digest(expected, signature):
            raise WebhookVerificationError("fake signature mismatch")
        body = json.loads(raw_payload)
        return WebhookEvent(
            gateway=self.name,
            event_id=body["id"],
            type=WebhookEventType(body.get("type", "IGNORED")),
            external_intent_id=body.get("intent"),
            external_transaction_id=body.get("transaction"),
            amount=Decimal(body["amount"]) if body.get("amount") else None,
            currency=body.get("currency"),
            reference_id=body.get("reference_id"),
            raw=body,
        )


def sign_fake_payload(raw_payload: bytes) -> str:
    return hmac.new(FAKE_WEBHOOK_SECRET.encode(), raw_payload, hashlib.sha256).hexdigest()


def fake_event(event_id: str, event_type: str, intent: str, **extra: Any) -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "intent": intent, **extra}).encode()


@pytest.fixture
def engine(tmp_path):
    url = f"sqlite:///{tmp_path / 'ledger.db'}"
    engine = create_engine(url, future=True, **engine_options(url))
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def registry(fake_gateway):
    registry = GatewayRegistry()
    for method in PaymentMethod:
        registry.register(method, fake_gateway)
    registry.register("FAKE", fake_gateway, webhook_name="fake")
    return registry


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(session_factory, registry, sleeps):
    return PaymentOrchestrator(session_factory, registry, sleep=sleeps.append)


@pytest.fixture
def otp_sender():
    return RecordingSender()


@pytest.fixture
def security_gate(session_factory, otp_sender):
    return SecurityGate(session_factory, sender=otp_sender)


@pytest.fixture
def issue_card(session_factory):
    """Mint a card straight from a completed payment, bypassing the gateway."""

    def _issue(
        value="100.00",
        *,
        currency="USD",
        allow_partial_redemption=True,
        expiry_date=None,
        merchant_id="m-acme",
    ):
        db = session_factory()
        try:
            payment = Payment(
                reference_id=f"ref-{uuid.uuid4().hex[:8]}",
                merchant_id=merchant_id,
                amount=Decimal(value),
                currency=currency,
                method=PaymentMethod.STRIPE,
                status=PaymentStatus.COMPLETED,
                transaction_id=f"ch_{uuid.uuid4().hex[:8]}",
                card_value=Decimal(value),
                card_allow_partial_redemption=allow_partial_redemption,
                card_expiry_date=expiry_date,
                refunded_amount=Decimal("0"),
            )
            db.add(payment)
            db.flush()
            card = ledger_service.activate(db, payment)
            db.commit()
            return card.id
        finally:
            db.close()

    return _issue


@pytest.fixture
def client(session_factory, orchestrator, security_gate):
    from giftledger.api.v1.deps import get_orchestrator, get_security_gate
    from giftledger.main import app

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_security_gate] = lambda: security_gate
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
