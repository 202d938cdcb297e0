"""Keyed deduplication of client retries and gateway redeliveries."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.exceptions import IdempotencyConflict, ValidationError
from ..models import IdempotencyRecord, IdempotencyStatus
from ..utils.datetime import utcnow

logger = logging.getLogger(__name__)


def fingerprint(payload: Dict[str, Any]) -> str:
    """Stable digest of the request parameters bound to an idempotency key."""

    encoded = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass
class Claim:
    record: IdempotencyRecord
    replay: bool

    @property
    def response(self) -> Optional[Dict[str, Any]]:
        return self.record.response if self.replay else None


class IdempotencyStore:
    """
    Claim/complete protocol over ``idempotency_records``.

    A claim inserts an IN_PROGRESS row with a lease. Completing it stores the
    response to replay; releasing it deletes the row so the request can run
    again. The insert must be the first write of its transaction: a unique
    violation rolls the session back before ``IdempotencyConflict`` is raised.
    """

    def __init__(self, ttl_hours: int = 72, lease_seconds: int = 120) -> None:
        self.ttl = timedelta(hours=ttl_hours)
        self.lease = timedelta(seconds=lease_seconds)

    def claim(
        self,
        session: Session,
        scope: str,
        key: str,
        fingerprint: Optional[str] = None,
        lease_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Claim:
        if not key:
            raise ValidationError("Idempotency key must not be empty.")
        now = now or utcnow()
        lease = timedelta(seconds=lease_seconds) if lease_seconds is not None else self.lease

        stmt = (
            select(IdempotencyRecord)
            .where(IdempotencyRecord.scope == scope, IdempotencyRecord.key == key)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        record = session.execute(stmt).scalar_one_or_none()

        if record is not None:
            if record.expires_at <= now:
                logger.info("Reclaiming expired idempotency key %s/%s", scope, key)
                self._reset(record, fingerprint, now, lease)
                session.flush()
                return Claim(record=record, replay=False)
            if fingerprint and record.fingerprint and record.fingerprint != fingerprint:
                raise ValidationError("Idempotency key was already used with different parameters.")
            if record.status == IdempotencyStatus.COMPLETED:
                return Claim(record=record, replay=True)
            if record.locked_until is not None and record.locked_until > now:
                raise IdempotencyConflict("A request with this idempotency key is already in progress.")
            logger.warning("Idempotency lease lapsed for %s/%s; reclaiming", scope, key)
            self._reset(record, fingerprint, now, lease)
            session.flush()
            return Claim(record=record, replay=False)

        record = IdempotencyRecord(scope=scope, key=key)
        self._reset(record, fingerprint, now, lease)
        session.add(record)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise IdempotencyConflict("A request with this idempotency key is already in progress.") from exc
        return Claim(record=record, replay=False)

    def lookup(
        self,
        session: Session,
        scope: str,
        key: str,
        fingerprint: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        """Stored response of a completed, unexpired key; nothing is claimed or written."""

        if not key:
            return None
        record = session.execute(
            select(IdempotencyRecord).where(IdempotencyRecord.scope == scope, IdempotencyRecord.key == key)
        ).scalar_one_or_none()
        if record is None or record.status != IdempotencyStatus.COMPLETED or record.expires_at <= (now or utcnow()):
            return None
        if fingerprint and record.fingerprint and record.fingerprint != fingerprint:
            raise ValidationError("Idempotency key was already used with different parameters.")
        return record.response

    def complete(self, session: Session, record: IdempotencyRecord, response: Dict[str, Any]) -> None:
        record.status = IdempotencyStatus.COMPLETED
        record.response = response
        record.locked_until = None
        session.flush()

    def release(self, session: Session, record: IdempotencyRecord) -> None:
        """Forget an unfinished claim so a retry starts from scratch."""
        session.delete(record)
        session.flush()

    def purge_expired(self, session: Session, now: Optional[datetime] = None) -> int:
        stmt = delete(IdempotencyRecord).where(IdempotencyRecord.expires_at < (now or utcnow()))
        result = session.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount or 0

    def _reset(self, record: IdempotencyRecord, fingerprint: Optional[str], now: datetime, lease: timedelta) -> None:
        record.fingerprint = fingerprint
        record.status = IdempotencyStatus.IN_PROGRESS
        record.response = None
        record.locked_until = now + lease
        record.expires_at = now + self.ttl
