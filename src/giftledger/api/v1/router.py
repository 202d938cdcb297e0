"""Primary API router definition."""

from fastapi import APIRouter

from . import gift_cards, otp, payments, redemptions, webhooks

api_router = APIRouter()

api_router.include_router(payments.router)
api_router.include_router(webhooks.router)
api_router.include_router(redemptions.router)
api_router.include_router(gift_cards.router)
api_router.include_router(otp.router)


@api_router.get("/health", tags=["health"])
async def healthcheck() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}
