"""
Stripe payment gateway (card-network processor).

Built on the official SDK's ``StripeClient``. Every mutating call carries an
idempotency key so SDK or caller retries never double-charge, and SDK errors
are mapped onto the ledger's gateway error taxonomy.
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional

import requests
import stripe

from ..core.exceptions import (
    GatewayAuthError,
    GatewayError,
    GatewayRefundError,
    GatewayRequestError,
    GatewayUnavailable,
    WebhookVerificationError,
)
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

_INTENT_STATUSES = {
    "succeeded": GatewayStatus.SUCCEEDED,
    "processing": GatewayStatus.PENDING,
    "requires_payment_method": GatewayStatus.PENDING,
    "requires_confirmation": GatewayStatus.PENDING,
    "requires_capture": GatewayStatus.PENDING,
    "requires_action": GatewayStatus.REQUIRES_ACTION,
    "canceled": GatewayStatus.CANCELLED,
}

_REFUND_STATUSES = {
    "succeeded": GatewayStatus.SUCCEEDED,
    "pending": GatewayStatus.PENDING,
    "requires_action": GatewayStatus.REQUIRES_ACTION,
    "failed": GatewayStatus.FAILED,
    "canceled": GatewayStatus.CANCELLED,
}

_WEBHOOK_TYPES = {
    "payment_intent.succeeded": WebhookEventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": WebhookEventType.PAYMENT_FAILED,
    "payment_intent.canceled": WebhookEventType.PAYMENT_FAILED,
    "charge.refunded": WebhookEventType.REFUNDED,
}


class StripeGateway(BasePaymentGateway):
    """Stripe PaymentIntents adapter."""

    name = "stripe"

    def __init__(
        self,
        *,
        secret_key: str,
        webhook_secret: str = "",
        api_base: str = "https://api.stripe.com",
        timeout: float = 15.0,
        tolerance_seconds: int = 300,
        http: Optional[requests.Session] = None,
        client: Optional[stripe.StripeClient] = None,
    ) -> None:
        super().__init__(api_base=api_base, timeout=timeout, http=http)
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self._client = client

    @property
    def client(self) -> stripe.StripeClient:
        """SDK client, built on first use so an unconfigured gateway can still be registered."""

        if self._client is None:
            if not self.secret_key:
                raise GatewayAuthError("Stripe secret key is not configured", gateway=self.name)
            self._client = stripe.StripeClient(
                self.secret_key,
                base_addresses={"api": self.api_base},
                http_client=stripe.RequestsClient(timeout=self.timeout, session=self.http),
                # retries are owned by the orchestrator
                max_network_retries=0,
            )
        return self._client

    def _call(self, label: str, func: Callable[..., Any], *args: Any, refund: bool = False, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except stripe.StripeError as exc:
            raise self._map_stripe_error(label, exc, refund=refund) from exc

    def _map_stripe_error(self, label: str, exc: stripe.StripeError, *, refund: bool = False) -> GatewayError:
        status = exc.http_status or 0
        message = exc.user_message or str(exc)
        code = exc.code
        detail = f"stripe {label} failed: {message}"

        if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)) or status == 429 or status >= 500:
            logger.warning("stripe %s unavailable (%s): %s", label, status or "transport", message)
            return GatewayUnavailable(detail, gateway=self.name, code=code)
        if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
            logger.error("stripe rejected credentials on %s (%s)", label, status)
            return GatewayAuthError(detail, gateway=self.name, code=code)
        if refund:
            return GatewayRefundError(detail, gateway=self.name, code=code)
        logger.error("stripe rejected %s (%s): %s", label, status, message)
        return GatewayRequestError(detail, gateway=self.name, code=code)

    @staticmethod
    def _options(idempotency_key: Optional[str]) -> Dict[str, Any]:
        return {"idempotency_key": idempotency_key} if idempotency_key else {}

    def create_intent(self, amount: Decimal, currency: str, reference_id: str, **options: Any) -> IntentResult:
        currency = normalize_currency(currency)
        metadata = {"reference_id": reference_id}
        if options.get("payment_id"):
            metadata["payment_id"] = str(options["payment_id"])
        if options.get("customer_id"):
            metadata["customer_id"] = str(options["customer_id"])

        intent = self._call(
            "create_intent",
            self.client.payment_intents.create,
            params={
                "amount": to_minor_units(amount, currency),
                "currency": currency.lower(),
                "automatic_payment_methods": {"enabled": True},
                "metadata": metadata,
            },
            options=self._options(options.get("idempotency_key")),
        )
        logger.info("Created Stripe PaymentIntent %s for %s", intent["id"], reference_id)
        return IntentResult(
            external_intent_id=intent["id"],
            client_token=intent.get("client_secret"),
            status=_INTENT_STATUSES.get(intent.get("status"), GatewayStatus.PENDING),
        )

    def confirm_intent(self, external_intent_id: str, **provider_args: Any) -> ConfirmResult:
        # Read first: an intent confirmed client-side must not be confirmed twice.
        intent = self._call("retrieve", self.client.payment_intents.retrieve, external_intent_id)
        status = intent.get("status")
        payment_method = provider_args.get("payment_method")

        if status in ("requires_payment_method", "requires_confirmation") and payment_method:
            intent = self._call(
                "confirm",
                self.client.payment_intents.confirm,
                external_intent_id,
                params={"payment_method": payment_method},
                options=self._options(f"confirm-{external_intent_id}"),
            )
        elif status == "requires_capture":
            intent = self._call(
                "capture",
                self.client.payment_intents.capture,
                external_intent_id,
                options=self._options(f"capture-{external_intent_id}"),
            )

        error = intent.get("last_payment_error") or {}
        return ConfirmResult(
            status=_INTENT_STATUSES.get(intent.get("status"), GatewayStatus.PENDING),
            external_transaction_id=intent.get("latest_charge"),
            failure_reason=error.get("message"),
        )

    def get_status(self, external_intent_id: str) -> StatusResult:
        intent = self._call("retrieve", self.client.payment_intents.retrieve, external_intent_id)
        currency = (intent.get("currency") or "").upper() or None
        amount = intent.get("amount")
        return StatusResult(
            status=_INTENT_STATUSES.get(intent.get("status"), GatewayStatus.PENDING),
            amount=from_minor_units(amount, currency) if amount is not None and currency else None,
            currency=currency,
            external_transaction_id=intent.get("latest_charge"),
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
        params: Dict[str, Any] = {"charge": external_transaction_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount, currency)

        refund = self._call(
            "refund",
            self.client.refunds.create,
            params=params,
            options=self._options(idempotency_key),
            refund=True,
        )
        return RefundResult(
            external_refund_id=refund["id"],
            status=_REFUND_STATUSES.get(refund.get("status"), GatewayStatus.PENDING),
            amount=from_minor_units(refund.get("amount") or 0, currency),
        )

    def verify_signature(
        self,
        raw_payload: bytes,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookEvent:
        if not self.webhook_secret:
            raise WebhookVerificationError("Stripe webhook secret is not configured")
        if not signature:
            raise WebhookVerificationError("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(
                raw_payload, signature, self.webhook_secret, tolerance=self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as exc:
            raise WebhookVerificationError(f"Stripe webhook signature rejected: {exc}") from exc
        except ValueError as exc:
            raise WebhookVerificationError("Stripe webhook body is not JSON") from exc
        return self._normalize_event(json.loads(raw_payload))

    def _normalize_event(self, body: Dict[str, Any]) -> WebhookEvent:
        event_type = _WEBHOOK_TYPES.get(body.get("type"), WebhookEventType.IGNORED)
        obj = (body.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        currency = (obj.get("currency") or "").upper() or None

        if body.get("type", "").startswith("charge."):
            intent_id = obj.get("payment_intent")
            transaction_id = obj.get("id")
            minor = obj.get("amount_refunded")
        else:
            intent_id = obj.get("id")
            transaction_id = obj.get("latest_charge")
            minor = obj.get("amount_received") or obj.get("amount")

        return WebhookEvent(
            gateway=self.name,
            event_id=str(body.get("id") or ""),
            type=event_type,
            external_intent_id=intent_id,
            external_transaction_id=transaction_id,
            amount=from_minor_units(minor, currency) if minor is not None and currency else None,
            currency=currency,
            reference_id=metadata.get("payment_id") or metadata.get("reference_id"),
            raw=body,
        )
