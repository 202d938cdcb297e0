"""FastAPI application entrypoint for the gift card ledger."""

from fastapi import FastAPI

from . import __version__
from .api.v1.router import api_router
from .core.config import get_settings
from .core.database import SessionLocal, init_db
from .core.logging import configure_logging
from .gateways import build_registry
from .jobs import register_scheduler
from .services.payment_orchestrator import PaymentOrchestrator
from .services.security_gate import SecurityGate


def create_app() -> FastAPI:
    """Instantiate and configure the FastAPI application."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Gift Card Ledger API", version=__version__)
    security_gate = SecurityGate(SessionLocal, settings)
    app.state.security_gate = security_gate
    app.state.orchestrator = PaymentOrchestrator(
        SessionLocal,
        build_registry(settings),
        security_gate=security_gate,
        settings=settings,
    )
    if settings.create_tables:
        app.add_event_handler("startup", init_db)
    app.include_router(api_router, prefix="/api/v1")
    register_scheduler(app)
    return app


app = create_app()
