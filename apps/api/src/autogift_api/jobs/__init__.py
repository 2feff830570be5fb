"""Scheduled pipeline jobs."""

from .pipeline import (
    execute_job,
    expire_address_requests,
    run_auto_gifts,
    run_payment_retries,
    run_scheduled_orders,
)

__all__ = [
    "execute_job",
    "expire_address_requests",
    "run_auto_gifts",
    "run_payment_retries",
    "run_scheduled_orders",
]
