"""
Shared fixtures.

Environment is set before any vmize_gateway import so the module-level
Settings picks up test values (temp data dir, no crons, test credentials).
"""

import os
import tempfile
from decimal import Decimal
from itertools import count
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

_TMP_ROOT = tempfile.mkdtemp(prefix="vmize-tests-")

os.environ["VMIZE_TEST_MODE"] = "true"
os.environ["VMIZE_DATA_DIRECTORY"] = _TMP_ROOT
os.environ["VMIZE_LOG_DIRECTORY"] = os.path.join(_TMP_ROOT, "logs")
os.environ["VMIZE_UPSTREAM_API_KEY"] = "fashn-secret-test-key"
os.environ["VMIZE_ADMIN_TOKEN"] = "admin-test-token"
os.environ["VMIZE_API_KEY_PEPPER"] = "test-pepper"
os.environ["VMIZE_START_CRONS"] = "false"
os.environ["VMIZE_RATE_LIMIT_RPM"] = "1000"

import pytest  # noqa: E402
from sqlalchemy.exc import SQLAlchemyError  # noqa: E402

from vmize_gateway.config import Settings  # noqa: E402
from vmize_gateway.core.database import Database  # noqa: E402
from vmize_gateway.core.retry import RetryPolicy  # noqa: E402
from vmize_gateway.services.admission_controller import AdmissionController  # noqa: E402
from vmize_gateway.services.analytics_recorder import AnalyticsRecorder  # noqa: E402
from vmize_gateway.services.billing_client import BillingError, ChargeReceipt, to_cents  # noqa: E402
from vmize_gateway.services.customer_directory import CustomerDirectory  # noqa: E402
from vmize_gateway.services.reservation_ledger import ReservationLedger  # noqa: E402
from vmize_gateway.services.usage_accountant import UsageAccountant  # noqa: E402

ADMIN_TOKEN = "admin-test-token"
UPSTREAM_KEY = "fashn-secret-test-key"

_email_seq = count(1)


class FakeBilling:
    """BillingCollaborator double that records every charge attempt."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[tuple[Optional[str], Decimal, str]] = []
        self.idempotency_keys: list[Optional[str]] = []

    async def charge(self, stripe_customer_id, amount_usd, memo, idempotency_key=None):
        self.calls.append((stripe_customer_id, amount_usd, memo))
        self.idempotency_keys.append(idempotency_key)
        if self.fail:
            raise BillingError("card_declined")
        return ChargeReceipt(
            charge_id=f"in_test_{len(self.calls)}",
            amount_cents=to_cents(amount_usd),
            currency="usd",
        )


def upstream_response(status_code=200, json_data=None, text=""):
    """A stand-in httpx.Response with the attributes the proxy reads."""
    resp = MagicMock()
    resp.status_code = status_code
    if json_data is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = json_data
    resp.text = text
    return resp


def upstream_client(response=None, side_effect=None):
    """An AsyncMock usable as ``async with httpx.AsyncClient(...) as client``."""
    client = AsyncMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    if side_effect is not None:
        client.request = AsyncMock(side_effect=side_effect)
    else:
        client.request = AsyncMock(return_value=response)
    return client


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path}/vmize-test.db")
    database.init()
    yield database
    database.close()


@pytest.fixture
def directory(db):
    return CustomerDirectory(db, history_months=12)


@pytest.fixture
def ledger():
    return ReservationLedger(rate_limit_rpm=1000)


@pytest.fixture
def admission(directory, ledger):
    return AdmissionController(directory, ledger)


@pytest.fixture
def accountant(directory, ledger):
    return UsageAccountant(
        directory,
        ledger,
        retry_policy=RetryPolicy(max_attempts=2, base_delay_s=0.0, retry_on=(SQLAlchemyError,)),
    )


@pytest.fixture
def analytics(tmp_path):
    return AnalyticsRecorder(data_dir=str(tmp_path / "analytics"))


@pytest.fixture
def make_customer(directory):
    """Factory: create a customer and optionally seed its current usage."""

    def _make(plan: str = "starter", used: int = 0, **kwargs):
        kwargs.setdefault("email", f"shop{next(_email_seq)}@example.com")
        kwargs.setdefault("name", "Test Shop")
        customer, raw_key = directory.create(plan=plan, **kwargs)
        if used:
            directory.set_current_usage(customer.id, used)
            customer = directory.get(customer.id)
        return customer, raw_key

    return _make


@pytest.fixture
def fake_billing():
    return FakeBilling()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        test_mode=True,
        data_directory=str(tmp_path / "data"),
        log_directory=str(tmp_path / "logs"),
        upstream_api_key=UPSTREAM_KEY,
        admin_token=ADMIN_TOKEN,
        start_crons=False,
        rate_limit_rpm=1000,
        usage_write_attempts=2,
    )
