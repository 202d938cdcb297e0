"""Gift card domain model."""

import enum
import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import relationship

from ..core.database import Base
from ..utils.datetime import utcnow


class GiftCardStatus(str, enum.Enum):
    """Gift card lifecycle states; everything but ACTIVE is terminal."""

    ACTIVE = "ACTIVE"
    REDEEMED = "REDEEMED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class GiftCard(Base):
    """Stored-value card minted by exactly one completed payment."""

    __tablename__ = "gift_cards"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="gift_cards_balance_non_negative"),
        CheckConstraint("balance <= value", name="gift_cards_balance_within_value"),
        CheckConstraint("pending_refund_amount >= 0", name="gift_cards_pending_refund_non_negative"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code = Column(String(19), nullable=False, unique=True, index=True)
    merchant_id = Column(String(64), nullable=False, index=True)
    payment_id = Column(Uuid(as_uuid=True), ForeignKey("payments.id", ondelete="RESTRICT"), nullable=False, unique=True)
    value = Column(Numeric(12, 2), nullable=False)
    balance = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(SAEnum(GiftCardStatus, name="gift_card_status"), nullable=False, default=GiftCardStatus.ACTIVE)
    allow_partial_redemption = Column(Boolean, nullable=False, default=True)
    expiry_date = Column(DateTime)
    pending_refund_amount = Column(Numeric(12, 2), nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    recipient_email = Column(String(255))
    recipient_name = Column(String(255))
    message = Column(String(500))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    payment = relationship("Payment", foreign_keys=[payment_id], back_populates="minted_card")
    redemptions = relationship("Redemption", back_populates="gift_card", order_by="Redemption.created_at")
    transactions = relationship("LedgerTransaction", back_populates="gift_card", order_by="LedgerTransaction.id")
