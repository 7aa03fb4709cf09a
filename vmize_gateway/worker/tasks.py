"""Scheduled billing tasks.

Each task builds its own GatewayState, runs the reconciler and closes the
state, so a worker never shares in-process state with the API server. A task
records no analytics, so closing its state leaves the server's snapshot alone.
"""

import asyncio
import logging

from celery import shared_task

from vmize_gateway.core.gateway_state import GatewayState

logger = logging.getLogger(__name__)


async def _monthly_billing() -> dict:
    state = GatewayState.build()
    try:
        report = await state.reconciler.run_monthly_cycle()
        return report.to_dict()
    finally:
        state.close()


async def _usage_report() -> dict:
    state = GatewayState.build()
    try:
        flagged = await state.reconciler.run_usage_report()
        return {"count": len(flagged), "customers": [c["customerId"] for c in flagged]}
    finally:
        state.close()


@shared_task(
    name="vmize_gateway.worker.tasks.run_monthly_billing",
    acks_late=True,
    time_limit=3600,
)
def run_monthly_billing() -> dict:
    """Charge overage and reset usage for the period that just ended."""
    logger.info("monthly_billing_start")
    summary = asyncio.run(_monthly_billing())
    logger.info("monthly_billing_done", extra={"billing.summary": summary})
    return summary


@shared_task(name="vmize_gateway.worker.tasks.run_usage_report")
def run_usage_report() -> dict:
    """Report customers at or above the usage-alert threshold."""
    return asyncio.run(_usage_report())
