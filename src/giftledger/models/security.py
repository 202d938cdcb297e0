"""Persistence for the security gate: OTP hashes and rate-limit hits."""

import enum

from sqlalchemy import Boolean, Column, DateTime, Enum as SAEnum, Index, Integer, String

from ..core.database import Base
from ..utils.datetime import utcnow


class OTPPurpose(str, enum.Enum):
    LOGIN = "LOGIN"
    VERIFICATION = "VERIFICATION"
    PASSWORD_RESET = "PASSWORD_RESET"
    TRANSACTION = "TRANSACTION"
    TWO_FACTOR = "TWO_FACTOR"


class OneTimePasscode(Base):
    """Issued passcode; only the SHA-256 hash of the code is kept."""

    __tablename__ = "one_time_passcodes"
    __table_args__ = (Index("one_time_passcodes_lookup", "identifier", "purpose", "used"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    identifier = Column(String(255), nullable=False)
    purpose = Column(SAEnum(OTPPurpose, name="otp_purpose"), nullable=False)
    code_hash = Column(String(64), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    used = Column(Boolean, nullable=False, default=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class RateLimitHit(Base):
    """One counted request inside a sliding rate-limit window."""

    __tablename__ = "rate_limit_hits"
    __table_args__ = (Index("rate_limit_hits_window", "identifier", "action", "created_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    identifier = Column(String(255), nullable=False)
    action = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
