"""
Process-scoped gateway state.

One GatewayState is built at startup (FastAPI lifespan or a Celery task),
stored on ``app.state.gateway`` and handed to components by reference. It owns
the database engine, the in-flight reservation ledger and the analytics store;
``close()`` flushes analytics (a no-op when this process recorded nothing) and
disposes the engine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from vmize_gateway.config import Settings, settings as default_settings
from vmize_gateway.core.database import Database
from vmize_gateway.core.retry import RetryPolicy
from vmize_gateway.services.admission_controller import AdmissionController
from vmize_gateway.services.analytics_recorder import AnalyticsRecorder
from vmize_gateway.services.billing_client import BillingCollaborator, StripeBillingClient
from vmize_gateway.services.billing_reconciler import BillingReconciler
from vmize_gateway.services.customer_directory import CustomerDirectory
from vmize_gateway.services.reservation_ledger import ReservationLedger
from vmize_gateway.services.upstream_proxy import UpstreamProxy
from vmize_gateway.services.usage_accountant import UsageAccountant

logger = logging.getLogger(__name__)

DEMO_CUSTOMER_EMAIL = "demo@vmize.local"


@dataclass
class GatewayState:
    settings: Settings
    db: Database
    directory: CustomerDirectory
    ledger: ReservationLedger
    admission: AdmissionController
    accountant: UsageAccountant
    analytics: AnalyticsRecorder
    proxy: UpstreamProxy
    reconciler: BillingReconciler

    @classmethod
    def build(
        cls,
        config: Optional[Settings] = None,
        billing: Optional[BillingCollaborator] = None,
        proxy: Optional[UpstreamProxy] = None,
    ) -> "GatewayState":
        config = config or default_settings

        db = Database(config.get_database_url(), echo=config.debug)
        db.init()

        directory = CustomerDirectory(db, history_months=config.usage_history_months)
        ledger = ReservationLedger(rate_limit_rpm=config.rate_limit_rpm)
        accountant = UsageAccountant(
            directory,
            ledger,
            retry_policy=RetryPolicy(
                max_attempts=config.usage_write_attempts,
                retry_on=(SQLAlchemyError,),
            ),
        )
        analytics = AnalyticsRecorder(
            data_dir=config.data_directory,
            snapshot_file=config.analytics_snapshot_file,
            log_file=config.analytics_log_file,
        )
        state = cls(
            settings=config,
            db=db,
            directory=directory,
            ledger=ledger,
            admission=AdmissionController(directory, ledger),
            accountant=accountant,
            analytics=analytics,
            proxy=proxy or UpstreamProxy(
                base_url=config.upstream_base_url,
                api_key=config.upstream_api_key or "",
                model_name=config.upstream_model_name,
                submit_timeout_s=config.upstream_submit_timeout_s,
                status_timeout_s=config.upstream_status_timeout_s,
            ),
            reconciler=BillingReconciler(
                directory,
                billing or StripeBillingClient(
                    secret_key=config.stripe_secret_key,
                    currency=config.billing_currency,
                ),
            ),
        )

        if config.demo_mode:
            directory.ensure_customer_for_key(config.demo_api_key, email=DEMO_CUSTOMER_EMAIL)

        logger.info("Gateway state initialized (data_directory=%s)", config.data_directory)
        return state

    def close(self) -> None:
        """Flush analytics and release the database engine."""
        try:
            self.analytics.flush()
        finally:
            self.ledger.clear()
            self.db.close()
        logger.info("Gateway state closed")
