"""Redemption domain model."""

import enum
import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Enum as SAEnum, ForeignKey, Numeric, String, Uuid
from sqlalchemy.orm import relationship

from ..core.database import Base
from ..utils.datetime import utcnow


class RedemptionMethod(str, enum.Enum):
    """How the merchant captured the card at redemption time."""

    QR_CODE = "QR_CODE"
    CODE_ENTRY = "CODE_ENTRY"
    LINK = "LINK"
    API = "API"


class Redemption(Base):
    """Append-only debit against a gift card balance."""

    __tablename__ = "redemptions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="redemptions_amount_positive"),
        CheckConstraint("balance_after >= 0", name="redemptions_balance_after_non_negative"),
        # SQLite stores Numeric as REAL, so exact arithmetic is only checked on PostgreSQL.
        CheckConstraint(
            "balance_after = balance_before - amount", name="redemptions_balance_arithmetic"
        ).ddl_if(dialect="postgresql"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    gift_card_id = Column(Uuid(as_uuid=True), ForeignKey("gift_cards.id", ondelete="RESTRICT"), nullable=False, index=True)
    merchant_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    balance_before = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)
    method = Column(SAEnum(RedemptionMethod, name="redemption_method"), nullable=False)
    location = Column(String(255))
    notes = Column(String(1000))
    created_at = Column(DateTime, default=utcnow, nullable=False)

    gift_card = relationship("GiftCard", back_populates="redemptions")
    ledger_entries = relationship("LedgerTransaction", back_populates="redemption")
