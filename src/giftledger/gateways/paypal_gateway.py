"""
PayPal payment gateway (wallet processor).

Orders v2 API with an OAuth2 client-credentials token cached until shortly
before it expires. Webhooks are authenticated by PayPal itself through the
verify-webhook-signature endpoint; there is no shared secret.
"""

from __future__ import annotations

import json
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional

import requests

from ..core.exceptions import GatewayRequestError, ValidationError, WebhookVerificationError
from ..utils.money import format_amount, normalize_currency, quantize
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

# Refresh this many seconds before PayPal says the token expires.
TOKEN_REFRESH_MARGIN = 60

_ORDER_STATUSES = {
    "CREATED": GatewayStatus.PENDING,
    "SAVED": GatewayStatus.PENDING,
    "APPROVED": GatewayStatus.PENDING,
    "PAYER_ACTION_REQUIRED": GatewayStatus.REQUIRES_ACTION,
    "COMPLETED": GatewayStatus.SUCCEEDED,
    "VOIDED": GatewayStatus.CANCELLED,
}

_CAPTURE_STATUSES = {
    "COMPLETED": GatewayStatus.SUCCEEDED,
    "PENDING": GatewayStatus.PENDING,
    "DECLINED": GatewayStatus.FAILED,
    "FAILED": GatewayStatus.FAILED,
    "REFUNDED": GatewayStatus.SUCCEEDED,
    "PARTIALLY_REFUNDED": GatewayStatus.SUCCEEDED,
}

_REFUND_STATUSES = {
    "COMPLETED": GatewayStatus.SUCCEEDED,
    "PENDING": GatewayStatus.PENDING,
    "FAILED": GatewayStatus.FAILED,
    "CANCELLED": GatewayStatus.CANCELLED,
}

_WEBHOOK_TYPES = {
    "PAYMENT.CAPTURE.COMPLETED": WebhookEventType.PAYMENT_SUCCEEDED,
    "CHECKOUT.ORDER.COMPLETED": WebhookEventType.PAYMENT_SUCCEEDED,
    "PAYMENT.CAPTURE.DENIED": WebhookEventType.PAYMENT_FAILED,
    "PAYMENT.CAPTURE.DECLINED": WebhookEventType.PAYMENT_FAILED,
    "CHECKOUT.ORDER.VOIDED": WebhookEventType.PAYMENT_FAILED,
    "PAYMENT.CAPTURE.REFUNDED": WebhookEventType.REFUNDED,
}

# Transmission headers PayPal needs back to authenticate a delivery.
_VERIFY_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_time": "paypal-transmission-time",
}


def _decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class PayPalGateway(BasePaymentGateway):
    """PayPal Orders v2 adapter."""

    name = "paypal"

    def __init__(
        self,
        *,
        client_id: str,
        secret: str,
        webhook_id: str = "",
        api_base: str = "https://api-m.sandbox.paypal.com",
        timeout: float = 15.0,
        http: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(api_base=api_base, timeout=timeout, http=http)
        self.client_id = client_id
        self.secret = secret
        self.webhook_id = webhook_id
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    # ---------------------------------------------------------------------------
    # Auth
    # ---------------------------------------------------------------------------

    def _access_token(self) -> str:
        if self._token and self._clock() < self._token_expires_at:
            return self._token

        response = self._request(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.secret),
        )
        body = self._json(response)
        self._token = body["access_token"]
        lifetime = int(body.get("expires_in", 0))
        self._token_expires_at = self._clock() + max(lifetime - TOKEN_REFRESH_MARGIN, 0)
        return self._token

    def _headers(self, request_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    # ---------------------------------------------------------------------------
    # Payments
    # ---------------------------------------------------------------------------

    def create_intent(self, amount: Decimal, currency: str, reference_id: str, **options: Any) -> IntentResult:
        currency = normalize_currency(currency)
        return_url = options.get("return_url")
        cancel_url = options.get("cancel_url")
        if not return_url or not cancel_url:
            raise ValidationError("PayPal payments require return_url and cancel_url.")

        purchase_unit = {
            "reference_id": reference_id,
            "amount": {"currency_code": currency, "value": format_amount(amount, currency)},
        }
        if options.get("payment_id"):
            purchase_unit["custom_id"] = str(options["payment_id"])

        payload = {
            "intent": "CAPTURE",
            "purchase_units": [purchase_unit],
            "application_context": {"return_url": return_url, "cancel_url": cancel_url},
        }
        response = self._request(
            "POST",
            "/v2/checkout/orders",
            json=payload,
            headers=self._headers(options.get("idempotency_key")),
        )
        body = self._json(response)
        approve = next(
            (link["href"] for link in body.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return IntentResult(
            external_intent_id=body["id"],
            client_token=approve,
            status=_ORDER_STATUSES.get(body.get("status"), GatewayStatus.PENDING),
        )

    def confirm_intent(self, external_intent_id: str, **provider_args: Any) -> ConfirmResult:
        response = self._request(
            "POST",
            f"/v2/checkout/orders/{external_intent_id}/capture",
            json={},
            headers=self._headers(f"capture-{external_intent_id}"),
            allowed_statuses=(422,),
        )
        body = self._json(response)

        if response.status_code == 422:
            issue = self._issue(body)
            if issue == "ORDER_ALREADY_CAPTURED":
                logger.info("PayPal order %s already captured; reading it back", external_intent_id)
                body = self._fetch_order(external_intent_id)
            elif issue in ("ORDER_NOT_APPROVED", "PAYER_ACTION_REQUIRED"):
                return ConfirmResult(status=GatewayStatus.REQUIRES_ACTION, failure_reason=issue)
            elif issue == "INSTRUMENT_DECLINED":
                return ConfirmResult(status=GatewayStatus.FAILED, failure_reason=issue)
            else:
                raise GatewayRequestError(f"PayPal capture rejected: {issue}", gateway=self.name, code=issue)

        capture = self._first_capture(body)
        if capture:
            status = _CAPTURE_STATUSES.get(capture.get("status"), GatewayStatus.PENDING)
            return ConfirmResult(status=status, external_transaction_id=capture.get("id"))
        return ConfirmResult(status=_ORDER_STATUSES.get(body.get("status"), GatewayStatus.PENDING))

    def get_status(self, external_intent_id: str) -> StatusResult:
        body = self._fetch_order(external_intent_id)
        units = body.get("purchase_units") or [{}]
        amount = units[0].get("amount") or {}
        capture = self._first_capture(body)
        status = _ORDER_STATUSES.get(body.get("status"), GatewayStatus.PENDING)
        if capture:
            status = _CAPTURE_STATUSES.get(capture.get("status"), status)
        return StatusResult(
            status=status,
            amount=_decimal(amount.get("value")),
            currency=amount.get("currency_code"),
            external_transaction_id=capture.get("id") if capture else None,
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
        payload: Dict[str, Any] = {}
        if amount is not None:
            payload["amount"] = {"value": format_amount(amount, currency), "currency_code": currency}

        response = self._request(
            "POST",
            f"/v2/payments/captures/{external_transaction_id}/refund",
            json=payload,
            headers=self._headers(idempotency_key),
            refund=True,
        )
        body = self._json(response)
        refunded = _decimal((body.get("amount") or {}).get("value"))
        if refunded is None:
            refunded = amount if amount is not None else Decimal("0")
        return RefundResult(
            external_refund_id=body["id"],
            status=_REFUND_STATUSES.get(body.get("status"), GatewayStatus.PENDING),
            amount=quantize(refunded, currency),
        )

    # ---------------------------------------------------------------------------
    # Webhooks
    # ---------------------------------------------------------------------------

    def verify_signature(
        self,
        raw_payload: bytes,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookEvent:
        if not self.webhook_id:
            raise WebhookVerificationError("PayPal webhook id is not configured")
        if not signature:
            raise WebhookVerificationError("Missing PayPal-Transmission-Sig header")

        lowered = {key.lower(): value for key, value in (headers or {}).items()}
        verification = {field: lowered.get(header) for field, header in _VERIFY_HEADERS.items()}
        missing = [header for field, header in _VERIFY_HEADERS.items() if not verification[field]]
        if missing:
            raise WebhookVerificationError(f"Missing PayPal transmission headers: {', '.join(missing)}")

        try:
            event = json.loads(raw_payload)
        except ValueError as exc:
            raise WebhookVerificationError("PayPal webhook body is not JSON") from exc

        verification.update(
            transmission_sig=signature,
            webhook_id=self.webhook_id,
            webhook_event=event,
        )
        response = self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json=verification,
            headers=self._headers(),
        )
        if self._json(response).get("verification_status") != "SUCCESS":
            raise WebhookVerificationError("PayPal webhook signature verification failed")
        return self._normalize_event(event)

    def _normalize_event(self, body: Dict[str, Any]) -> WebhookEvent:
        event_type = body.get("event_type", "")
        resource = body.get("resource") or {}
        amount = resource.get("amount") or {}

        if event_type.startswith("CHECKOUT.ORDER."):
            intent_id = resource.get("id")
            capture = self._first_capture(resource)
            transaction_id = capture.get("id") if capture else None
            units = resource.get("purchase_units") or [{}]
            amount = units[0].get("amount") or {}
            reference = units[0].get("custom_id") or units[0].get("reference_id")
        else:
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            intent_id = related.get("order_id")
            transaction_id = resource.get("id")
            reference = resource.get("custom_id")

        return WebhookEvent(
            gateway=self.name,
            event_id=str(body.get("id") or ""),
            type=_WEBHOOK_TYPES.get(event_type, WebhookEventType.IGNORED),
            external_intent_id=intent_id,
            external_transaction_id=transaction_id,
            amount=_decimal(amount.get("value")),
            currency=amount.get("currency_code"),
            reference_id=reference,
            raw=body,
        )

    # ---------------------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------------------

    def _fetch_order(self, order_id: str) -> Dict[str, Any]:
        response = self._request("GET", f"/v2/checkout/orders/{order_id}", headers=self._headers())
        return self._json(response)

    @staticmethod
    def _first_capture(order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for unit in order.get("purchase_units") or []:
            captures = (unit.get("payments") or {}).get("captures") or []
            if captures:
                return captures[0]
        return None

    @staticmethod
    def _issue(body: Dict[str, Any]) -> str:
        details = body.get("details") or [{}]
        return details[0].get("issue") or body.get("name") or "UNPROCESSABLE_ENTITY"
