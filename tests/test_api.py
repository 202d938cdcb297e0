from datetime import timedelta
from uuid import UUID

from conftest import fake_event, sign_fake_payload
from giftledger.api.v1 import webhooks
from giftledger.api.v1.deps import get_security_gate
from giftledger.core.config import Settings
from giftledger.main import app
from giftledger.models import GiftCard
from giftledger.services.security_gate import SecurityGate
from giftledger.utils.datetime import utcnow

MERCHANT = {"X-Merchant-Id": "m-acme"}


def _purchase(client, **overrides):
    body = {
        "amount": "100.00",
        "currency": "USD",
        "payment_method": "STRIPE",
        "reference_id": "order-7",
        "merchant_id": "m-acme",
    }
    body.update(overrides)
    created = client.post("/api/v1/payments", json=body)
    assert created.status_code == 201, created.text
    confirmed = client.post(f"/api/v1/payments/{created.json()['id']}/confirm")
    assert confirmed.status_code == 200, confirmed.text
    return confirmed.json()


def test_health_endpoint(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_purchase_and_redeem_flow(client):
    payment = _purchase(client)
    assert payment["status"] == "COMPLETED"
    card_id = payment["gift_card_id"]

    card = client.get(f"/api/v1/gift-cards/{card_id}", headers=MERCHANT).json()
    assert card["balance"] == "100.00"

    redeemed = client.post(
        "/api/v1/redemptions",
        json={"code": card["code"], "amount": "30.00", "redemption_method": "CODE_ENTRY"},
        headers=MERCHANT,
    )
    assert redeemed.status_code == 201, redeemed.text
    assert redeemed.json()["balance_after"] == "70.00"

    balance = client.get(f"/api/v1/gift-cards/balance/{card['code']}")
    assert balance.json()["balance"] == "70.00"

    history = client.get(f"/api/v1/gift-cards/{card_id}/transactions", headers=MERCHANT).json()
    assert [entry["type"] for entry in history] == ["PURCHASE", "REDEMPTION"]

    report = client.get(f"/api/v1/gift-cards/{card_id}/reconciliation", headers=MERCHANT).json()
    assert report["drift"] == "0.00"

    listed = client.get("/api/v1/redemptions", headers=MERCHANT).json()
    assert len(listed) == 1


def test_redemption_errors_map_to_status_codes(client):
    card_id = _purchase(client, amount="20.00")["gift_card_id"]

    overdraw = client.post("/api/v1/redemptions", json={"gift_card_id": card_id, "amount": "25.00"}, headers=MERCHANT)
    assert overdraw.status_code == 409

    missing_header = client.post("/api/v1/redemptions", json={"gift_card_id": card_id, "amount": "5.00"})
    assert missing_header.status_code == 422

    both = client.post(
        "/api/v1/redemptions",
        json={"gift_card_id": card_id, "code": "GIFT-AAAA-BBBB-CCCC", "amount": "5.00"},
        headers=MERCHANT,
    )
    assert both.status_code == 422

    unknown = client.post(
        "/api/v1/redemptions", json={"code": "GIFT-AAAA-BBBB-CCCC", "amount": "5.00"}, headers=MERCHANT
    )
    assert unknown.status_code == 404


def test_redemption_idempotency_header(client):
    card_id = _purchase(client)["gift_card_id"]
    body = {"gift_card_id": card_id, "amount": "10.00"}
    headers = {**MERCHANT, "Idempotency-Key": "till-9-receipt-1"}

    first = client.post("/api/v1/redemptions", json=body, headers=headers)
    second = client.post("/api/v1/redemptions", json=body, headers=headers)

    assert first.json()["id"] == second.json()["id"]
    card = client.get(f"/api/v1/gift-cards/{card_id}", headers=MERCHANT).json()
    assert card["balance"] == "90.00"


def test_expired_card_lookup_persists_status(client, session_factory):
    card_id = _purchase(client, expiry_date=(utcnow() + timedelta(days=1)).isoformat())["gift_card_id"]
    db = session_factory()
    try:
        card = db.get(GiftCard, UUID(card_id))
        card.expiry_date = utcnow() - timedelta(minutes=1)
        db.commit()
    finally:
        db.close()

    redeem = client.post("/api/v1/redemptions", json={"gift_card_id": card_id, "amount": "5.00"}, headers=MERCHANT)
    assert redeem.status_code == 409

    card = client.get(f"/api/v1/gift-cards/{card_id}", headers=MERCHANT).json()
    assert card["status"] == "EXPIRED"
    assert card["balance"] == "100.00"


def test_cards_are_scoped_to_their_merchant(client):
    card_id = _purchase(client)["gift_card_id"]

    response = client.get(f"/api/v1/gift-cards/{card_id}", headers={"X-Merchant-Id": "m-other"})
    assert response.status_code == 404


def test_oversized_amounts_are_rejected(client):
    card_id = _purchase(client)["gift_card_id"]

    redeem = client.post("/api/v1/redemptions", json={"gift_card_id": card_id, "amount": "1e30"}, headers=MERCHANT)
    purchase = client.post(
        "/api/v1/payments",
        json={"amount": "1e30", "currency": "USD", "payment_method": "STRIPE", "reference_id": "x", "merchant_id": "m-acme"},
    )

    assert redeem.status_code == 422
    assert purchase.status_code == 422
    card = client.get(f"/api/v1/gift-cards/{card_id}", headers=MERCHANT).json()
    assert card["balance"] == "100.00"


def test_validate_before_redeem(client):
    card = client.get(f"/api/v1/gift-cards/{_purchase(client)['gift_card_id']}", headers=MERCHANT).json()

    ok = client.post("/api/v1/redemptions/validate", json={"code": card["code"], "amount": "40.00"}, headers=MERCHANT)
    too_much = client.post(
        "/api/v1/redemptions/validate", json={"gift_card_id": card["id"], "amount": "400.00"}, headers=MERCHANT
    )
    unknown = client.post("/api/v1/redemptions/validate", json={"code": "GIFT-AAAA-BBBB-CCCC"}, headers=MERCHANT)

    assert ok.status_code == 200, ok.text
    assert ok.json()["valid"] is True
    assert ok.json()["balance"] == "100.00"
    assert too_much.json()["valid"] is False
    assert "Insufficient" in too_much.json()["reason"]
    assert unknown.status_code == 404
    assert client.get(f"/api/v1/gift-cards/{card['id']}", headers=MERCHANT).json()["balance"] == "100.00"


def test_read_redemption_by_id(client):
    card_id = _purchase(client)["gift_card_id"]
    created = client.post("/api/v1/redemptions", json={"gift_card_id": card_id, "amount": "15.00"}, headers=MERCHANT)
    redemption_id = created.json()["id"]

    mine = client.get(f"/api/v1/redemptions/{redemption_id}", headers=MERCHANT)
    theirs = client.get(f"/api/v1/redemptions/{redemption_id}", headers={"X-Merchant-Id": "m-other"})

    assert mine.status_code == 200
    assert mine.json()["amount"] == "15.00"
    assert theirs.status_code == 404


def test_merchant_listings(client):
    first = _purchase(client, reference_id="order-1")
    _purchase(client, reference_id="order-2")
    _purchase(client, reference_id="order-3", merchant_id="m-other")
    client.post(f"/api/v1/payments/{first['id']}/refund", json={}, headers=MERCHANT)

    payments = client.get("/api/v1/payments", headers=MERCHANT)
    refunded = client.get("/api/v1/payments", params={"status": "REFUNDED"}, headers=MERCHANT)
    cards = client.get("/api/v1/gift-cards", headers=MERCHANT)
    active = client.get("/api/v1/gift-cards", params={"status": "ACTIVE"}, headers=MERCHANT)

    assert payments.status_code == 200
    assert len(payments.json()) == 2
    assert [payment["id"] for payment in refunded.json()] == [first["id"]]
    assert len(cards.json()) == 2
    assert len(active.json()) == 1
    assert client.get("/api/v1/payments").status_code == 422


def test_refund_endpoint(client, fake_gateway):
    payment = _purchase(client)

    refund = client.post(f"/api/v1/payments/{payment['id']}/refund", json={"reason": "changed mind"}, headers=MERCHANT)

    assert refund.status_code == 200, refund.text
    assert refund.json()["payment_status"] == "REFUNDED"
    assert refund.json()["card_status"] == "CANCELLED"
    assert len(fake_gateway.refunds) == 1


def test_webhook_endpoint(client, monkeypatch):
    monkeypatch.setitem(webhooks.SIGNATURE_HEADERS, "fake", "x-fake-signature")
    created = client.post(
        "/api/v1/payments",
        json={"amount": "15.00", "currency": "USD", "payment_method": "STRIPE", "reference_id": "r", "merchant_id": "m-acme"},
    ).json()
    raw = fake_event("evt_api", "PAYMENT_SUCCEEDED", created["external_intent_id"])

    rejected = client.post("/api/v1/webhooks/fake", content=raw, headers={"X-Fake-Signature": "nope"})
    assert rejected.status_code == 400

    accepted = client.post("/api/v1/webhooks/fake", content=raw, headers={"X-Fake-Signature": sign_fake_payload(raw)})
    assert accepted.status_code == 200, accepted.text
    assert accepted.json() == {"received": True, "action": "settled"}
    assert client.get(f"/api/v1/payments/{created['id']}").json()["status"] == "COMPLETED"


def test_otp_issue_and_rate_limit(client, session_factory, otp_sender):
    issued = client.post("/api/v1/otp", json={"identifier": "m-acme"})
    assert issued.status_code == 201
    assert otp_sender.sent[-1][0] == "m-acme"

    tight = SecurityGate(session_factory, Settings(rate_limits={"otp_issue": (1, 600)}), sender=otp_sender)
    app.dependency_overrides[get_security_gate] = lambda: tight
    assert client.post("/api/v1/otp", json={"identifier": "ops@example.com"}).status_code == 201

    limited = client.post("/api/v1/otp", json={"identifier": "ops@example.com"})
    assert limited.status_code == 429
    assert int(limited.headers["Retry-After"]) > 0
