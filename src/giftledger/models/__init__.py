"""SQLAlchemy models for the gift card ledger."""

from .gift_card import GiftCard, GiftCardStatus
from .idempotency import IdempotencyRecord, IdempotencyStatus
from .ledger_transaction import LedgerTransaction, TransactionType
from .payment import Payment, PaymentMethod, PaymentStatus
from .redemption import Redemption, RedemptionMethod
from .refund_reservation import RefundReservation, ReservationStatus
from .security import OneTimePasscode, OTPPurpose, RateLimitHit

__all__ = [
    "GiftCard",
    "GiftCardStatus",
    "IdempotencyRecord",
    "IdempotencyStatus",
    "LedgerTransaction",
    "OTPPurpose",
    "OneTimePasscode",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
    "RateLimitHit",
    "Redemption",
    "RedemptionMethod",
    "RefundReservation",
    "ReservationStatus",
    "TransactionType",
]
