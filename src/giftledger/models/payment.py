"""Payment domain model."""

import enum
import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import relationship

from ..core.database import Base
from ..utils.datetime import utcnow


class PaymentMethod(str, enum.Enum):
    """Supported payment rails; UPI settles through the regional gateway."""

    STRIPE = "STRIPE"
    PAYPAL = "PAYPAL"
    RAZORPAY = "RAZORPAY"
    UPI = "UPI"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class Payment(Base):
    """A purchase of one gift card through an external gateway."""

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="payments_amount_positive"),
        CheckConstraint("card_value > 0", name="payments_card_value_positive"),
        CheckConstraint("refunded_amount >= 0", name="payments_refunded_non_negative"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    gift_card_id = Column(Uuid(as_uuid=True), index=True)
    reference_id = Column(String(128), nullable=False, index=True)
    merchant_id = Column(String(64), nullable=False, index=True)
    customer_id = Column(String(64))
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    method = Column(SAEnum(PaymentMethod, name="payment_method"), nullable=False)
    status = Column(SAEnum(PaymentStatus, name="payment_status"), nullable=False, default=PaymentStatus.PENDING)
    external_intent_id = Column(String(128), index=True)
    transaction_id = Column(String(128))
    client_token = Column(String(512))
    card_value = Column(Numeric(12, 2), nullable=False)
    card_allow_partial_redemption = Column(Boolean, nullable=False, default=True)
    card_expiry_date = Column(DateTime)
    recipient_email = Column(String(255))
    recipient_name = Column(String(255))
    message = Column(String(500))
    refunded_amount = Column(Numeric(12, 2), nullable=False, default=0)
    failure_reason = Column(String(500))
    return_url = Column(String(1024))
    cancel_url = Column(String(1024))
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    minted_card = relationship("GiftCard", foreign_keys="GiftCard.payment_id", back_populates="payment", uselist=False)
