"""Public schema exports."""

from .gift_card import GiftCardBalance, GiftCardRead, LedgerTransactionRead, ReconciliationReport
from .otp import OTPIssued, OTPRequest, WebhookAck
from .payment import PaymentConfirm, PaymentCreate, PaymentRead, RefundRead, RefundRequest
from .redemption import RedemptionCreate, RedemptionRead, RedemptionValidate, RedemptionValidation

__all__ = [
	"GiftCardBalance",
	"GiftCardRead",
	"LedgerTransactionRead",
	"OTPIssued",
	"OTPRequest",
	"PaymentConfirm",
	"PaymentCreate",
	"PaymentRead",
	"ReconciliationReport",
	"RedemptionCreate",
	"RedemptionRead",
	"RedemptionValidate",
	"RedemptionValidation",
	"RefundRead",
	"RefundRequest",
	"WebhookAck",
]
