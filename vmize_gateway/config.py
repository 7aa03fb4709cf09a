"""
Vmize Gateway Configuration
===========================

PURPOSE:
    Pydantic-Settings based configuration for the try-on gateway.
    All settings can be overridden via environment variables (VMIZE_ prefix)
    or a local .env file.

REQUIRED AT STARTUP:
    VMIZE_UPSTREAM_API_KEY: the provider credential. Missing it is fatal
    (ConfigurationError) unless VMIZE_TEST_MODE=true.
"""

import logging
from decimal import Decimal
from typing import Dict, List, Literal, Optional
from urllib.parse import urlparse

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

_DEFAULT_UPSTREAM_URL = "https://api.fashn.ai/v1"


class Settings(BaseSettings):
    app_name: str = "Vmize Gateway"
    debug: bool = False

    # Test-only affordances. Never enable in production.
    test_mode: bool = False
    demo_mode: bool = False
    demo_api_key: str = "vmize_pk_test_demo000000000000000000"

    # Upstream provider
    upstream_base_url: str = _DEFAULT_UPSTREAM_URL
    upstream_api_key: Optional[str] = None
    upstream_model_name: str = "tryon-v1.6"
    upstream_submit_timeout_s: float = 30.0
    upstream_status_timeout_s: float = 10.0

    # API keys: vmize_pk_<env>_<token>
    api_key_environment: Literal["live", "test"] = "live"
    api_key_pepper: str = "vmize-default-pepper"
    admin_token: Optional[str] = None

    # Plan overrides; unset entries fall back to the plan catalog
    plan_quotas: Dict[str, int] = {}
    plan_overage_rates: Dict[str, Decimal] = {}
    usage_history_months: int = 12
    usage_alert_threshold_pct: float = 80.0

    # Admission
    rate_limit_rpm: int = 120
    usage_write_attempts: int = 2

    # Billing
    stripe_secret_key: Optional[str] = None
    billing_currency: str = "usd"

    # Scheduled jobs (cron expressions, 5 fields)
    start_crons: bool = True
    billing_cron_schedule: str = "0 0 1 * *"
    usage_report_cron_schedule: str = "0 9 * * MON"
    celery_broker_url: str = "redis://localhost:6379/0"

    # Storage
    data_directory: str = "/data"
    database_url: Optional[str] = None
    analytics_snapshot_file: str = "analytics-data.json"
    analytics_log_file: str = "analytics-calls.jsonl"

    # Logging
    log_directory: str = "logs"
    log_level: str = "INFO"

    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    class Config:
        env_file = ".env"
        env_prefix = "VMIZE_"

    def get_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_directory}/vmize.db"

    def require_upstream_credentials(self) -> None:
        """Fail fast when the provider credential or base URL is unusable.

        Raises:
            ConfigurationError: credential missing outside test mode, or the
                base URL does not use http/https.
        """
        from vmize_gateway.core.errors import ConfigurationError

        parsed = urlparse(self.upstream_base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(
                detail=f"Invalid VMIZE_UPSTREAM_BASE_URL: {self.upstream_base_url!r}"
            )

        if self.upstream_api_key:
            return
        if self.test_mode:
            logger.warning(
                "VMIZE_UPSTREAM_API_KEY not set; allowed only because VMIZE_TEST_MODE=true"
            )
            return
        raise ConfigurationError(detail="VMIZE_UPSTREAM_API_KEY is not set")


settings = Settings()

if settings.demo_mode:
    logger.warning(
        "VMIZE_DEMO_MODE enabled: requests without X-Vmize-API-Key will use the demo key. "
        "Do NOT use this in production."
    )
