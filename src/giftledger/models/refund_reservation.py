"""Refund saga log: one row per reserve-then-commit refund attempt."""

import enum
import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Enum as SAEnum, ForeignKey, Numeric, String, Uuid

from ..core.database import Base
from ..utils.datetime import utcnow


class ReservationStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"


class RefundReservation(Base):
    """Hold placed on a card balance while the gateway refund is in flight."""

    __tablename__ = "refund_reservations"
    __table_args__ = (CheckConstraint("amount > 0", name="refund_reservations_amount_positive"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    payment_id = Column(Uuid(as_uuid=True), ForeignKey("payments.id", ondelete="RESTRICT"), nullable=False, index=True)
    gift_card_id = Column(Uuid(as_uuid=True), ForeignKey("gift_cards.id", ondelete="RESTRICT"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    balance_before = Column(Numeric(12, 2), nullable=False)
    # refund in payment terms; set once, reused when the call is resumed
    gateway_amount = Column(Numeric(12, 2))
    status = Column(SAEnum(ReservationStatus, name="refund_reservation_status"), nullable=False, default=ReservationStatus.PENDING)
    reason = Column(String(500))
    requested_by = Column(String(64))
    external_refund_id = Column(String(128))
    failure_reason = Column(String(500))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    resolved_at = Column(DateTime)
