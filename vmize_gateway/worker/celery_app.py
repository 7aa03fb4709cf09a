"""Celery application and beat schedule for the billing jobs."""

import logging

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from vmize_gateway.config import settings
from vmize_gateway.core.structured_logging import setup_logging

logger = logging.getLogger(__name__)


def cron_schedule(expression: str) -> crontab:
    """Build a crontab from a 5-field expression (m h dom mon dow)."""
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Expected 5 cron fields, got {len(fields)}: {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


def build_beat_schedule(start_crons: bool = True) -> dict:
    if not start_crons:
        logger.info("Scheduled jobs disabled (VMIZE_START_CRONS=false)")
        return {}
    return {
        "monthly-billing-cycle": {
            "task": "vmize_gateway.worker.tasks.run_monthly_billing",
            "schedule": cron_schedule(settings.billing_cron_schedule),
        },
        "weekly-usage-report": {
            "task": "vmize_gateway.worker.tasks.run_usage_report",
            "schedule": cron_schedule(settings.usage_report_cron_schedule),
        },
    }


app = Celery(
    "vmize_gateway",
    broker=settings.celery_broker_url,
    include=["vmize_gateway.worker.tasks"],
)

app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Cron expressions are UTC, like billing periods
    timezone="UTC",
    enable_utc=True,

    # Timeouts
    task_time_limit=3600,
    task_soft_time_limit=3300,

    worker_prefetch_multiplier=1,
    task_acks_late=True,

    beat_schedule=build_beat_schedule(settings.start_crons),
)


@worker_process_init.connect
def on_worker_init(**kwargs):
    setup_logging(
        log_dir=settings.log_directory,
        log_file="vmize-worker.jsonl",
        log_level=settings.log_level,
        secrets=[settings.upstream_api_key, settings.stripe_secret_key],
    )
    logger.info("worker_init")
