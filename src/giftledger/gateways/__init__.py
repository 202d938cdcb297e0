"""Payment gateway adapters and the registry that wires them from settings."""

from __future__ import annotations

from typing import Optional

import requests

from ..core.config import Settings
from .base import (
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
from .paypal_gateway import PayPalGateway
from .razorpay_gateway import RazorpayGateway, UpiGateway
from .stripe_gateway import StripeGateway


def build_registry(settings: Settings, http: Optional[requests.Session] = None) -> GatewayRegistry:
    """Instantiate every adapter from settings and index it by method and webhook name."""

    timeout = settings.gateway_timeout_seconds
    session = http or requests.Session()
    registry = GatewayRegistry()

    registry.register(
        "STRIPE",
        StripeGateway(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            api_base=settings.stripe_api_base,
            timeout=timeout,
            tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
            http=session,
        ),
        webhook_name="stripe",
    )
    registry.register(
        "PAYPAL",
        PayPalGateway(
            client_id=settings.paypal_client_id,
            secret=settings.paypal_secret,
            webhook_id=settings.paypal_webhook_id,
            api_base=settings.paypal_api_base,
            timeout=timeout,
            http=session,
        ),
        webhook_name="paypal",
    )
    razorpay_kwargs = dict(
        key_id=settings.razorpay_key_id,
        key_secret=settings.razorpay_key_secret,
        webhook_secret=settings.razorpay_webhook_secret,
        api_base=settings.razorpay_api_base,
        timeout=timeout,
        http=session,
    )
    registry.register("RAZORPAY", RazorpayGateway(**razorpay_kwargs), webhook_name="razorpay")
    # UPI notifications arrive on the Razorpay webhook.
    registry.register("UPI", UpiGateway(**razorpay_kwargs))
    return registry


__all__ = [
    "BasePaymentGateway",
    "ConfirmResult",
    "GatewayRegistry",
    "GatewayStatus",
    "IntentResult",
    "PayPalGateway",
    "RazorpayGateway",
    "RefundResult",
    "StatusResult",
    "StripeGateway",
    "UpiGateway",
    "WebhookEvent",
    "WebhookEventType",
    "build_registry",
]
