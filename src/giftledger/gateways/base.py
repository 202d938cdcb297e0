"""
Base payment gateway for the gift card platform.

Uniform contract over the external processors plus the shared HTTP
plumbing that maps transport and status failures onto the ledger's error
taxonomy. Adapters are the only place amounts cross between minor units
and decimals.
"""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import requests

from ..core.exceptions import (
    GatewayAuthError,
    GatewayError,
    GatewayRefundError,
    GatewayRequestError,
    GatewayUnavailable,
    WebhookVerificationError,
)

logger = logging.getLogger(__name__)


# ===============================================================================
# RESULT TYPES
# ===============================================================================


class GatewayStatus(str, enum.Enum):
    """Processor states normalized across gateways."""

    PENDING = "PENDING"
    REQUIRES_ACTION = "REQUIRES_ACTION"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class WebhookEventType(str, enum.Enum):
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    REFUNDED = "REFUNDED"
    IGNORED = "IGNORED"


@dataclass(frozen=True)
class IntentResult:
    external_intent_id: str
    status: GatewayStatus
    client_token: Optional[str] = None


@dataclass(frozen=True)
class ConfirmResult:
    status: GatewayStatus
    external_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class StatusResult:
    status: GatewayStatus
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    external_transaction_id: Optional[str] = None


@dataclass(frozen=True)
class RefundResult:
    external_refund_id: str
    status: GatewayStatus
    amount: Decimal


@dataclass(frozen=True)
class WebhookEvent:
    """Verified, normalized notification from a gateway."""

    gateway: str
    event_id: str
    type: WebhookEventType
    external_intent_id: Optional[str] = None
    external_transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    reference_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


# ===============================================================================
# ABSTRACT BASE GATEWAY
# ===============================================================================


class BasePaymentGateway(ABC):
    """
    Abstract base class for all payment gateways.

    Subclasses implement intent creation, confirmation, status polling,
    refunds and webhook verification. All remote calls go through
    ``_request`` so timeouts and error mapping stay uniform.
    """

    name: str = "base"

    def __init__(
        self,
        *,
        api_base: str,
        timeout: float = 15.0,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()

    @abstractmethod
    def create_intent(self, amount: Decimal, currency: str, reference_id: str, **options: Any) -> IntentResult:
        """
        Open a payment intent at the processor.

        Args:
            amount: Decimal amount in major units
            currency: ISO currency code
            reference_id: Merchant-visible reference, echoed in metadata

        Returns:
            IntentResult carrying the external intent id and client token
        """

    @abstractmethod
    def confirm_intent(self, external_intent_id: str, **provider_args: Any) -> ConfirmResult:
        """Capture or confirm the intent; succeeds as a no-op when already captured."""

    @abstractmethod
    def get_status(self, external_intent_id: str) -> StatusResult:
        """Poll the processor for the intent's current state."""

    @abstractmethod
    def refund(
        self,
        external_transaction_id: str,
        amount: Optional[Decimal] = None,
        *,
        currency: str,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        """Refund a captured charge, fully when ``amount`` is omitted."""

    @abstractmethod
    def verify_signature(
        self,
        raw_payload: bytes,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookEvent:
        """Authenticate a webhook body and normalize it; raises on any mismatch."""

    # ---------------------------------------------------------------------------
    # HTTP plumbing
    # ---------------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        refund: bool = False,
        allowed_statuses: tuple = (),
        **kwargs: Any,
    ) -> requests.Response:
        url = f"{self.api_base}{path}"
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.http.request(method, url, **kwargs)
        except requests.Timeout as exc:
            logger.warning("%s %s %s timed out", self.name, method, path)
            raise GatewayUnavailable(f"{self.name} request timed out", gateway=self.name) from exc
        except requests.ConnectionError as exc:
            logger.warning("%s %s %s connection failed: %s", self.name, method, path, exc)
            raise GatewayUnavailable(f"{self.name} is unreachable", gateway=self.name) from exc

        if response.status_code < 400 or response.status_code in allowed_statuses:
            return response
        raise self._map_error(response, refund=refund)

    def _map_error(self, response: requests.Response, *, refund: bool = False) -> GatewayError:
        status = response.status_code
        message, code = self._error_details(response)
        detail = f"{self.name} responded {status}: {message}"

        if status == 429 or status >= 500:
            logger.warning("%s unavailable (%s): %s", self.name, status, message)
            return GatewayUnavailable(detail, gateway=self.name, code=code)
        if status in (401, 403):
            logger.error("%s rejected credentials (%s)", self.name, status)
            return GatewayAuthError(detail, gateway=self.name, code=code)
        if refund:
            return GatewayRefundError(detail, gateway=self.name, code=code)
        logger.error("%s rejected request (%s): %s", self.name, status, message)
        return GatewayRequestError(detail, gateway=self.name, code=code)

    def _error_details(self, response: requests.Response) -> tuple:
        """Extract a human message and machine code from an error body."""
        try:
            body = response.json()
        except ValueError:
            return (response.text or "")[:200], None
        if not isinstance(body, dict):
            return str(body)[:200], None
        error = body.get("error")
        if isinstance(error, dict):
            return error.get("message") or error.get("description") or "", error.get("code")
        return body.get("message") or body.get("name") or "", body.get("name")

    @staticmethod
    def _json(response: requests.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayRequestError("Gateway returned a non-JSON body") from exc
        return data if isinstance(data, dict) else {}


# ===============================================================================
# GATEWAY REGISTRY
# ===============================================================================


class GatewayRegistry:
    """
    Lookup of configured adapters.

    Payments resolve their adapter by payment method; inbound webhooks
    resolve theirs by the path segment (``stripe``, ``paypal``, ``razorpay``).
    """

    def __init__(self) -> None:
        self._by_method: Dict[str, BasePaymentGateway] = {}
        self._by_webhook: Dict[str, BasePaymentGateway] = {}

    def register(self, method: str, gateway: BasePaymentGateway, *, webhook_name: Optional[str] = None) -> None:
        self._by_method[str(getattr(method, "value", method)).upper()] = gateway
        if webhook_name:
            self._by_webhook[webhook_name.lower()] = gateway

    def for_method(self, method: Any) -> BasePaymentGateway:
        key = str(getattr(method, "value", method)).upper()
        try:
            return self._by_method[key]
        except KeyError:
            raise GatewayRequestError(f"No gateway configured for payment method {key}") from None

    def for_webhook(self, name: str) -> Optional[BasePaymentGateway]:
        return self._by_webhook.get((name or "").lower())

    def verify(
        self,
        gateway_name: str,
        raw_payload: bytes,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookEvent:
        """Authenticate an inbound webhook with the named gateway's scheme."""

        gateway = self.for_webhook(gateway_name)
        if gateway is None:
            raise WebhookVerificationError(f"Unknown webhook gateway '{gateway_name}'")
        try:
            event = gateway.verify_signature(raw_payload, signature, headers)
        except WebhookVerificationError as exc:
            logger.warning("Rejected %s webhook: %s", gateway_name, exc.detail)
            raise
        if not event.event_id:
            raise WebhookVerificationError("Webhook event has no id")
        return event

    def webhook_names(self) -> list:
        return sorted(self._by_webhook)
