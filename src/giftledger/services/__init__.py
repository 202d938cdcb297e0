"""Service layer exports."""

from . import (
	idempotency_service,
	ledger_service,
	payment_orchestrator,
	security_gate,
)

__all__ = [
	"idempotency_service",
	"ledger_service",
	"payment_orchestrator",
	"security_gate",
]
