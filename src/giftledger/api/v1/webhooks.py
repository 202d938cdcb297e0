"""Inbound settlement notifications from payment gateways."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from ...core.exceptions import LedgerError
from ...schemas import WebhookAck
from ...services.payment_orchestrator import PaymentOrchestrator
from .deps import get_orchestrator, http_error

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADERS = {
    "stripe": "stripe-signature",
    "paypal": "paypal-transmission-sig",
    "razorpay": "x-razorpay-signature",
}


@router.post(
    "/{gateway}",
    response_model=WebhookAck,
    summary="Receive a gateway webhook",
    responses={400: {"description": "Signature verification failed"}},
)
async def receive_webhook(
    gateway: str,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> WebhookAck:
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADERS.get(gateway.lower(), ""))
    try:
        outcome = await run_in_threadpool(
            orchestrator.handle_webhook, gateway, raw_body, signature, dict(request.headers)
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    return WebhookAck(received=True, action=outcome.action)
