"""Background payment sweep."""

from .sweep import SweepReport, setup_scheduler, shutdown_scheduler, sweep_payments

__all__ = ["SweepReport", "setup_scheduler", "shutdown_scheduler", "sweep_payments"]
