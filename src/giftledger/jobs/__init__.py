"""Background jobs."""

from .maintenance import register_scheduler, run_expiry_sweep, run_purge

__all__ = ["register_scheduler", "run_expiry_sweep", "run_purge"]
