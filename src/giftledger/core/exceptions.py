"""Error taxonomy shared by the ledger, the orchestrator and the gateways."""

from __future__ import annotations

from typing import Optional


class LedgerError(Exception):
    """Base class for every error surfaced to API callers."""

    status_code = 400
    retryable = False
    # True when the operation committed a side effect before failing (lazy expiry)
    persist_side_effects = False

    def __init__(self, detail: str, status_code: Optional[int] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


class ValidationError(LedgerError):
    """Malformed input; the caller's fault."""

    status_code = 400


class NotFoundError(LedgerError):
    """Unknown gift card, payment or reservation."""

    status_code = 404


class InvalidState(LedgerError):
    """Operation not permitted in the entity's current state."""

    status_code = 409


class Expired(InvalidState):
    """Gift card expiry date has passed; the card was moved to EXPIRED."""

    persist_side_effects = True


class InsufficientBalance(LedgerError):
    status_code = 409


class PartialRedemptionNotAllowed(LedgerError):
    status_code = 409


class RefundBlocked(LedgerError):
    """Refund refused because value has already been redeemed from the card."""

    status_code = 409


class ConcurrencyConflict(LedgerError):
    """Optimistic update kept losing to concurrent writers."""

    status_code = 409
    retryable = True


class IdempotencyConflict(LedgerError):
    """Another request holding the same idempotency key is still running."""

    status_code = 409
    retryable = True


class RateLimited(LedgerError):
    status_code = 429

    def __init__(self, detail: str, retry_after: int = 0) -> None:
        super().__init__(detail)
        self.retry_after = retry_after


class OTPRequired(LedgerError):
    status_code = 403


class InvalidOTP(LedgerError):
    status_code = 403


class WebhookVerificationError(LedgerError):
    """Inbound webhook failed authentication; it must have no ledger effect."""

    status_code = 400


class GatewayError(LedgerError):
    """Base class for failures talking to an external payment processor."""

    status_code = 502

    def __init__(self, detail: str, gateway: str = "", code: Optional[str] = None) -> None:
        super().__init__(detail)
        self.gateway = gateway
        self.code = code


class GatewayAuthError(GatewayError):
    """Rejected credentials; a configuration error."""


class GatewayRequestError(GatewayError):
    """Gateway rejected the request as malformed."""


class GatewayRefundError(GatewayError):
    """The underlying charge cannot be refunded."""


class GatewayUnavailable(GatewayError):
    """Timeout, connection failure, throttling or a 5xx; safe to retry."""

    status_code = 503
    retryable = True
