"""Idempotency keys for client retries and duplicate gateway callbacks."""

import enum

from sqlalchemy import JSON, Column, DateTime, Enum as SAEnum, Integer, String, UniqueConstraint

from ..core.database import Base
from ..utils.datetime import utcnow


class IdempotencyStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class IdempotencyRecord(Base):
    """One processed (scope, key) pair with the response to replay."""

    __tablename__ = "idempotency_records"
    __table_args__ = (UniqueConstraint("scope", "key", name="idempotency_records_scope_key_unique"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    scope = Column(String(64), nullable=False)
    key = Column(String(255), nullable=False)
    fingerprint = Column(String(64))
    status = Column(SAEnum(IdempotencyStatus, name="idempotency_status"), nullable=False, default=IdempotencyStatus.IN_PROGRESS)
    response = Column(JSON)
    locked_until = Column(DateTime)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
