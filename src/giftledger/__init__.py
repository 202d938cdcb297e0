"""Gift card value ledger and multi-provider settlement orchestrator."""

__version__ = "0.1.0"
