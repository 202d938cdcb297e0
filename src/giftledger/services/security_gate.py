"""Rate limiting and one-time passcodes for sensitive ledger operations."""

from __future__ import annotations

import hashlib
import hmac
import logging
import math
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from ..core.config import Settings, get_settings
from ..core.exceptions import InvalidOTP, OTPRequired, RateLimited
from ..models import OneTimePasscode, OTPPurpose, RateLimitHit
from ..utils.datetime import utcnow

logger = logging.getLogger(__name__)


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def _mask(identifier: str) -> str:
    if "@" in identifier:
        name, _, domain = identifier.partition("@")
        return f"{name[:2]}***@{domain}"
    return f"***{identifier[-4:]}"


class OTPSender(Protocol):
    """Delivery collaborator; wording and channels live outside the ledger."""

    def send_code(self, identifier: str, channel: str, code: str) -> None:
        ...


class LoggingOTPSender:
    """Default sender that records the dispatch without revealing the code."""

    def send_code(self, identifier: str, channel: str, code: str) -> None:
        logger.info("OTP dispatched to %s via %s", _mask(identifier), channel)


class SecurityGate:
    """
    Sliding-window rate limits and OTP checks.

    Every check runs in its own short session and commits immediately, so a
    failed attempt still counts when the caller's transaction rolls back.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Optional[Settings] = None,
        sender: Optional[OTPSender] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.sender = sender or LoggingOTPSender()
        self._clock = clock

    # ---------------------------------------------------------------------------
    # Rate limiting
    # ---------------------------------------------------------------------------

    def check_rate_limit(self, identifier: str, action: str) -> None:
        """Count one hit for ``identifier`` and raise ``RateLimited`` once over the limit."""

        rule = self.settings.rate_limits.get(action)
        if rule is None:
            return
        limit, window_seconds = rule
        now = self._clock()
        window_start = now - timedelta(seconds=window_seconds)

        session = self.session_factory()
        try:
            stmt = select(func.count(RateLimitHit.id), func.min(RateLimitHit.created_at)).where(
                RateLimitHit.identifier == identifier,
                RateLimitHit.action == action,
                RateLimitHit.created_at > window_start,
            )
            count, oldest = session.execute(stmt).one()
            if count >= limit:
                retry_after = 1
                if oldest is not None:
                    remaining = (oldest + timedelta(seconds=window_seconds) - now).total_seconds()
                    retry_after = max(1, math.ceil(remaining))
                logger.warning("Rate limit hit for %s on %s (%s/%ss)", _mask(identifier), action, limit, window_seconds)
                raise RateLimited(f"Too many {action} requests; retry in {retry_after}s.", retry_after=retry_after)

            session.add(RateLimitHit(identifier=identifier, action=action, created_at=now))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ---------------------------------------------------------------------------
    # One-time passcodes
    # ---------------------------------------------------------------------------

    def issue_otp(
        self,
        identifier: str,
        purpose: OTPPurpose = OTPPurpose.TRANSACTION,
        channel: str = "email",
    ) -> datetime:
        """Create a fresh code, invalidate earlier ones and hand it to the sender."""

        self.check_rate_limit(identifier, "otp_issue")
        now = self._clock()
        code = "".join(secrets.choice("0123456789") for _ in range(self.settings.otp_length))
        expires_at = now + timedelta(minutes=self.settings.otp_ttl_minutes)

        session = self.session_factory()
        try:
            session.execute(
                update(OneTimePasscode)
                .where(
                    OneTimePasscode.identifier == identifier,
                    OneTimePasscode.purpose == purpose,
                    OneTimePasscode.used.is_(False),
                )
                .values(used=True)
                .execution_options(synchronize_session=False)
            )
            session.add(
                OneTimePasscode(
                    identifier=identifier,
                    purpose=purpose,
                    code_hash=hash_code(code),
                    expires_at=expires_at,
                    created_at=now,
                )
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        self.sender.send_code(identifier, channel, code)
        return expires_at

    def verify_otp(self, identifier: str, code: str, purpose: OTPPurpose = OTPPurpose.TRANSACTION) -> bool:
        self.check_rate_limit(identifier, "otp_verify")
        now = self._clock()

        session = self.session_factory()
        try:
            stmt = (
                select(OneTimePasscode)
                .where(
                    OneTimePasscode.identifier == identifier,
                    OneTimePasscode.purpose == purpose,
                    OneTimePasscode.used.is_(False),
                    OneTimePasscode.expires_at > now,
                )
                .order_by(OneTimePasscode.created_at.desc(), OneTimePasscode.id.desc())
                .limit(1)
                .with_for_update()
            )
            otp = session.execute(stmt).scalar_one_or_none()
            if otp is None:
                return False

            max_attempts = self.settings.otp_max_attempts
            if otp.attempts >= max_attempts:
                otp.used = True
                session.commit()
                return False

            if hmac.compare_digest(hash_code(code or ""), otp.code_hash):
                otp.used = True
                session.commit()
                return True

            otp.attempts += 1
            if otp.attempts >= max_attempts:
                otp.used = True
                logger.warning("OTP for %s burned after %s failed attempts", _mask(identifier), otp.attempts)
            session.commit()
            return False
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def require_otp(
        self,
        identifier: str,
        code: Optional[str],
        purpose: OTPPurpose = OTPPurpose.TRANSACTION,
    ) -> None:
        if not code:
            raise OTPRequired("A one-time passcode is required for this operation.")
        if not self.verify_otp(identifier, code, purpose):
            raise InvalidOTP("Invalid or expired one-time passcode.")

    def purge(self, session: Session, now: Optional[datetime] = None) -> int:
        """Drop rate-limit hits older than the longest window and dead passcodes."""

        now = now or self._clock()
        longest = max((window for _, window in self.settings.rate_limits.values()), default=0)
        hits = session.execute(
            delete(RateLimitHit)
            .where(RateLimitHit.created_at < now - timedelta(seconds=longest))
            .execution_options(synchronize_session=False)
        )
        codes = session.execute(
            delete(OneTimePasscode)
            .where(OneTimePasscode.expires_at < now)
            .execution_options(synchronize_session=False)
        )
        return (hits.rowcount or 0) + (codes.rowcount or 0)
