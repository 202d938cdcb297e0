"""
Razorpay payment gateway (regional processor) and its UPI variant.

Orders are created server side; the checkout returns a payment id plus an
HMAC over ``order_id|payment_id`` which is checked before the payment is
fetched and, when only authorized, captured.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

import requests

from ..core.exceptions import ValidationError, WebhookVerificationError
from ..utils.money import from_minor_units, normalize_currency, to_minor_units
from .base import (
    BasePaymentGateway,
    ConfirmResult,
    GatewayStatus,
    IntentResult,
    RefundResult,
    StatusResult,
    WebhookEvent,
    WebhookEventType,
)

logger = logging.getLogger(__name__)

_PAYMENT_STATUSES = {
    "created": GatewayStatus.PENDING,
    "authorized": GatewayStatus.PENDING,
    "captured": GatewayStatus.SUCCEEDED,
    "refunded": GatewayStatus.SUCCEEDED,
    "failed": GatewayStatus.FAILED,
}

_REFUND_STATUSES = {
    "processed": GatewayStatus.SUCCEEDED,
    "pending": GatewayStatus.PENDING,
    "created": GatewayStatus.PENDING,
    "failed": GatewayStatus.FAILED,
}

_WEBHOOK_TYPES = {
    "payment.captured": WebhookEventType.PAYMENT_SUCCEEDED,
    "order.paid": WebhookEventType.PAYMENT_SUCCEEDED,
    "payment.failed": WebhookEventType.PAYMENT_FAILED,
    "refund.processed": WebhookEventType.REFUNDED,
}


def sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayGateway(BasePaymentGateway):
    """Razorpay Orders adapter using HTTP basic auth."""

    name = "razorpay"

    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str,
        webhook_secret: str = "",
        api_base: str = "https://api.razorpay.com",
        timeout: float = 15.0,
        http: Optional[requests.Session] = None,
    ) -> None:
        super().__init__(api_base=api_base, timeout=timeout, http=http)
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret

    def _call(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        response = self._request(method, path, auth=(self.key_id, self.key_secret), **kwargs)
        return self._json(response)

    def _check_currency(self, currency: str) -> str:
        return normalize_currency(currency)

    def create_intent(self, amount: Decimal, currency: str, reference_id: str, **options: Any) -> IntentResult:
        currency = self._check_currency(currency)
        notes = {"reference_id": reference_id}
        if options.get("payment_id"):
            notes["payment_id"] = str(options["payment_id"])

        order = self._call(
            "POST",
            "/v1/orders",
            json={
                "amount": to_minor_units(amount, currency),
                "currency": currency,
                # Razorpay caps receipts at 40 characters
                "receipt": str(options.get("payment_id") or reference_id)[:40],
                "notes": notes,
            },
        )
        # Checkout needs the public key id alongside the order id.
        return IntentResult(external_intent_id=order["id"], client_token=self.key_id, status=GatewayStatus.PENDING)

    def confirm_intent(self, external_intent_id: str, **provider_args: Any) -> ConfirmResult:
        payment_id = provider_args.get("razorpay_payment_id") or provider_args.get("payment_id")
        signature = provider_args.get("razorpay_signature") or provider_args.get("signature")

        if payment_id:
            if not signature:
                raise ValidationError("razorpay_signature is required with razorpay_payment_id.")
            expected = sign(self.key_secret, f"{external_intent_id}|{payment_id}".encode("utf-8"))
            if not hmac.compare_digest(expected, signature):
                raise ValidationError("Invalid Razorpay payment signature.")
            payment = self._call("GET", f"/v1/payments/{payment_id}")
            if payment.get("order_id") != external_intent_id:
                raise ValidationError("Razorpay payment does not belong to this order.")
        else:
            payment = self._pick_payment(self._order_payments(external_intent_id))
            if payment is None:
                return ConfirmResult(status=GatewayStatus.PENDING)

        if payment.get("status") == "authorized":
            logger.info("Capturing authorized %s payment %s", self.name, payment["id"])
            payment = self._call(
                "POST",
                f"/v1/payments/{payment['id']}/capture",
                json={"amount": payment["amount"], "currency": payment["currency"]},
            )

        status = _PAYMENT_STATUSES.get(payment.get("status"), GatewayStatus.PENDING)
        return ConfirmResult(
            status=status,
            external_transaction_id=payment.get("id") if status == GatewayStatus.SUCCEEDED else None,
            failure_reason=payment.get("error_description"),
        )

    def get_status(self, external_intent_id: str) -> StatusResult:
        payment = self._pick_payment(self._order_payments(external_intent_id))
        if payment is None:
            return StatusResult(status=GatewayStatus.PENDING)
        currency = payment.get("currency")
        status = _PAYMENT_STATUSES.get(payment.get("status"), GatewayStatus.PENDING)
        return StatusResult(
            status=status,
            amount=from_minor_units(payment["amount"], currency) if currency else None,
            currency=currency,
            external_transaction_id=payment.get("id") if status == GatewayStatus.SUCCEEDED else None,
        )

    def refund(
        self,
        external_transaction_id: str,
        amount: Optional[Decimal] = None,
        *,
        currency: str,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        currency = normalize_currency(currency)
        payload: Dict[str, Any] = {"speed": "normal"}
        if amount is not None:
            payload["amount"] = to_minor_units(amount, currency)
        if idempotency_key:
            payload["receipt"] = idempotency_key[:40]
            payload["notes"] = {"idempotency_key": idempotency_key}

        response = self._request(
            "POST",
            f"/v1/payments/{external_transaction_id}/refund",
            auth=(self.key_id, self.key_secret),
            json=payload,
            refund=True,
        )
        body = self._json(response)
        return RefundResult(
            external_refund_id=body["id"],
            status=_REFUND_STATUSES.get(body.get("status"), GatewayStatus.PENDING),
            amount=from_minor_units(body.get("amount", 0), currency),
        )

    def verify_signature(
        self,
        raw_payload: bytes,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookEvent:
        if not self.webhook_secret:
            raise WebhookVerificationError("Razorpay webhook secret is not configured")
        if not signature:
            raise WebhookVerificationError("Missing X-Razorpay-Signature header")
        if not hmac.compare_digest(sign(self.webhook_secret, raw_payload), signature):
            raise WebhookVerificationError("Razorpay webhook signature mismatch")

        try:
            body = json.loads(raw_payload)
        except ValueError as exc:
            raise WebhookVerificationError("Razorpay webhook body is not JSON") from exc

        lowered = {key.lower(): value for key, value in (headers or {}).items()}
        # Razorpay redelivers with the same event id header; fall back to the body digest.
        event_id = lowered.get("x-razorpay-event-id") or hashlib.sha256(raw_payload).hexdigest()
        return self._normalize_event(body, event_id)

    def _normalize_event(self, body: Dict[str, Any], event_id: str) -> WebhookEvent:
        payload = body.get("payload") or {}
        entity = (payload.get("payment") or {}).get("entity") or {}
        if body.get("event", "").startswith("refund."):
            refund = (payload.get("refund") or {}).get("entity") or {}
            transaction_id = refund.get("payment_id") or entity.get("id")
            minor = refund.get("amount")
            currency = refund.get("currency") or entity.get("currency")
        else:
            transaction_id = entity.get("id")
            minor = entity.get("amount")
            currency = entity.get("currency")

        notes = entity.get("notes") or {}
        if isinstance(notes, list):
            notes = {}
        intent_id = entity.get("order_id") or ((payload.get("order") or {}).get("entity") or {}).get("id")

        return WebhookEvent(
            gateway=self.name,
            event_id=event_id,
            type=_WEBHOOK_TYPES.get(body.get("event"), WebhookEventType.IGNORED),
            external_intent_id=intent_id,
            external_transaction_id=transaction_id,
            amount=from_minor_units(minor, currency) if minor is not None and currency else None,
            currency=currency,
            reference_id=notes.get("payment_id") or notes.get("reference_id"),
            raw=body,
        )

    def _order_payments(self, order_id: str) -> List[Dict[str, Any]]:
        return self._call("GET", f"/v1/orders/{order_id}/payments").get("items") or []

    @staticmethod
    def _pick_payment(payments: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Prefer a captured attempt, then an authorized one, then the latest failure."""
        for wanted in ("captured", "refunded", "authorized"):
            for payment in payments:
                if payment.get("status") == wanted:
                    return payment
        return payments[0] if payments else None


class UpiGateway(RazorpayGateway):
    """UPI collect/intent payments settled through Razorpay; INR only."""

    name = "upi"

    def _check_currency(self, currency: str) -> str:
        code = normalize_currency(currency)
        if code != "INR":
            raise ValidationError("UPI payments must be in INR.")
        return code
