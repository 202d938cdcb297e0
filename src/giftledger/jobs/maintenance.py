"""Background scheduler for ledger maintenance.

Jobs are plain functions: the AsyncIOScheduler hands them to its thread pool
executor, so blocking database and gateway calls never run on the event loop.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from sqlalchemy.orm import sessionmaker

from ..core.config import get_settings
from ..core.database import SessionLocal
from ..services import ledger_service
from ..services.idempotency_service import IdempotencyStore
from ..services.payment_orchestrator import PaymentOrchestrator
from ..services.security_gate import SecurityGate
from ..utils.datetime import utcnow

logger = logging.getLogger(__name__)

_scheduler = AsyncIOScheduler(timezone="UTC")


def run_expiry_sweep(session_factory: sessionmaker = SessionLocal, now: Optional[datetime] = None) -> int:
    """Expire every overdue card once; returns the number of cards moved to EXPIRED."""

    session = session_factory()
    try:
        expired = ledger_service.expire_due_cards(session, now=now or utcnow())
        session.commit()
        return expired
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def run_purge(
    session_factory: sessionmaker = SessionLocal,
    security_gate: Optional[SecurityGate] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Drop expired idempotency keys, stale rate-limit hits and dead passcodes."""

    settings = get_settings()
    now = now or utcnow()
    store = IdempotencyStore(settings.idempotency_ttl_hours, settings.idempotency_lease_seconds)
    gate = security_gate or SecurityGate(session_factory, settings)

    session = session_factory()
    try:
        summary = {
            "idempotency_records": store.purge_expired(session, now),
            "security_rows": gate.purge(session, now),
        }
        session.commit()
        return summary
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _expiry_job() -> None:
    try:
        expired = run_expiry_sweep()
        logger.info("expiry sweep completed: %s cards expired", expired)
    except Exception:  # pragma: no cover - safeguard for background job
        logger.exception("expiry sweep failed")


def _reconcile_job(orchestrator: PaymentOrchestrator) -> None:
    try:
        summary = orchestrator.reconcile_stale_payments()
        logger.info("stale payment reconciliation completed: %s", summary)
    except Exception:  # pragma: no cover - safeguard for background job
        logger.exception("stale payment reconciliation failed")


def _refund_resume_job(orchestrator: PaymentOrchestrator) -> None:
    try:
        summary = orchestrator.resume_stale_refunds()
        if summary["checked"]:
            logger.info("refund hold resumption completed: %s", summary)
    except Exception:  # pragma: no cover - safeguard for background job
        logger.exception("refund hold resumption failed")


def _purge_job(security_gate: SecurityGate) -> None:
    try:
        summary = run_purge(security_gate=security_gate)
        logger.info("purge completed: %s", summary)
    except Exception:  # pragma: no cover - safeguard for background job
        logger.exception("purge job failed")


def register_scheduler(app: FastAPI) -> None:
    """Attach APScheduler lifecycle hooks to the FastAPI app."""

    if not get_settings().scheduler_enabled:
        logger.info("maintenance scheduler disabled")
        return

    @app.on_event("startup")
    async def start_scheduler() -> None:
        if _scheduler.running:
            return
        _scheduler.add_job(
            _expiry_job, "interval", minutes=15, id="gift_card_expiry",
            replace_existing=True, misfire_grace_time=300,
        )
        _scheduler.add_job(
            _reconcile_job, "interval", minutes=10, id="stale_payment_reconciliation",
            kwargs={"orchestrator": app.state.orchestrator}, replace_existing=True, misfire_grace_time=300,
        )
        _scheduler.add_job(
            _refund_resume_job, "interval", minutes=5, id="refund_hold_resumption",
            kwargs={"orchestrator": app.state.orchestrator}, replace_existing=True, misfire_grace_time=300,
        )
        _scheduler.add_job(
            _purge_job, "cron", hour=3, minute=15, id="maintenance_purge",
            kwargs={"security_gate": app.state.security_gate}, replace_existing=True, misfire_grace_time=3600,
        )
        _scheduler.start()
        logger.info("maintenance scheduler started")

    @app.on_event("shutdown")
    async def shutdown_scheduler() -> None:
        if _scheduler.running:
            _scheduler.shutdown(wait=False)
            logger.info("maintenance scheduler stopped")
