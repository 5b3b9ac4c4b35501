"""
Background jobs module.
"""

from src.jobs.billing_scheduler import BillingScheduler, SchedulerStats, run_billing_sweep

__all__ = [
    "BillingScheduler",
    "SchedulerStats",
    "run_billing_sweep",
]
