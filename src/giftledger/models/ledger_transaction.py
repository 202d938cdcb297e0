"""Ledger log capturing every balance-affecting event."""

import enum

from sqlalchemy import CheckConstraint, Column, DateTime, Enum, ForeignKey, Integer, Numeric, String, Uuid
from sqlalchemy.orm import relationship

from ..core.database import Base
from ..utils.datetime import utcnow


class TransactionType(str, enum.Enum):
    """Ledger event classification."""

    PURCHASE = "PURCHASE"
    REDEMPTION = "REDEMPTION"
    REFUND = "REFUND"
    EXPIRY = "EXPIRY"


class LedgerTransaction(Base):
    """Immutable audit entry with balance snapshots for reconciliation."""

    __tablename__ = "ledger_transactions"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ledger_transactions_amount_non_negative"),
        CheckConstraint("balance_before >= 0 AND balance_after >= 0", name="ledger_transactions_balances_non_negative"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    gift_card_id = Column(Uuid(as_uuid=True), ForeignKey("gift_cards.id", ondelete="RESTRICT"), nullable=False, index=True)
    type = Column(Enum(TransactionType, name="ledger_transaction_type"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    balance_before = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)
    payment_id = Column(Uuid(as_uuid=True), ForeignKey("payments.id", ondelete="SET NULL"))
    redemption_id = Column(Uuid(as_uuid=True), ForeignKey("redemptions.id", ondelete="SET NULL"))
    reference = Column(String(128))
    created_at = Column(DateTime, default=utcnow, nullable=False)

    gift_card = relationship("GiftCard", back_populates="transactions")
    redemption = relationship("Redemption", back_populates="ledger_entries")
