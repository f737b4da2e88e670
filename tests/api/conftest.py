"""API test fixtures: the real app over stubbed billing services."""

from datetime import timedelta
from unittest.mock import Mock
from uuid import UUID, uuid4

import pytest
from starlette.testclient import TestClient

from api.app import create_app
from billing.config import BillingConfig
from billing.models import (
    EarningStatus, Invoice, InvoiceStatus, Payment, PaymentMethod, PaymentStatus, PartnerEarning,
)
from billing.services.config_service import ConfigService
from billing.services.earnings_service import EarningsService
from billing.services.invoice_service import InvoiceService
from billing.services.partner_analytics_service import PartnerAnalyticsService
from billing.services.payment_service import PaymentService
from billing.services.payout_service import PayoutService
from billing.services.report_service import ReportService
from utils.timezone import now_utc

# Must match conftest.py
ADMIN_ID = UUID("00000000-0000-0000-0000-0000000000a1")


# =============================================================================
# MODEL FACTORIES
# =============================================================================


@pytest.fixture
def make_invoice():
    def factory(**overrides) -> Invoice:
        now = now_utc()
        data = dict(
            id=uuid4(),
            invoice_number="INV-000001",
            advertiser_id=uuid4(),
            campaign_id=uuid4(),
            payment_id=None,
            line_items=[{
                "description": "Campaign spend",
                "quantity": 1,
                "unit_price_cents": 100000,
                "amount_cents": 100000,
            }],
            amount_cents=100000,
            tax_rate_bps=1600,
            tax_cents=16000,
            total_cents=116000,
            due_date=now + timedelta(days=30),
            status=InvoiceStatus.UNPAID,
            created_at=now,
            updated_at=now,
        )
        data.update(overrides)
        return Invoice(**data)
    return factory


@pytest.fixture
def make_payment():
    def factory(**overrides) -> Payment:
        now = now_utc()
        data = dict(
            id=uuid4(),
            advertiser_id=uuid4(),
            amount_cents=116000,
            method=PaymentMethod.MPESA,
            status=PaymentStatus.PENDING,
            initiated_at=now,
            completed_at=None,
            transaction_id=None,
            notes=None,
            created_at=now,
            updated_at=now,
        )
        data.update(overrides)
        return Payment(**data)
    return factory


@pytest.fixture
def make_earning():
    def factory(**overrides) -> PartnerEarning:
        now = now_utc()
        data = dict(
            id=uuid4(),
            partner_id=uuid4(),
            period_start=now - timedelta(days=30),
            period_end=now,
            total_impressions=5000,
            total_engagements=10,
            amount_cents=1500,
            status=EarningStatus.PENDING,
            paid_date=None,
            transaction_id=None,
            payout_method=None,
            created_at=now,
            updated_at=now,
        )
        data.update(overrides)
        return PartnerEarning(**data)
    return factory


# =============================================================================
# SERVICES DICT
# =============================================================================


@pytest.fixture
def billing_config():
    return BillingConfig()


@pytest.fixture
def services(billing_config):
    config = Mock(spec=ConfigService)
    config.get_config.return_value = billing_config
    config.list_entries.return_value = []
    return {
        "invoice": Mock(spec=InvoiceService),
        "payment": Mock(spec=PaymentService),
        "earnings": Mock(spec=EarningsService),
        "payout": Mock(spec=PayoutService),
        "report": Mock(spec=ReportService),
        "partner_analytics": Mock(spec=PartnerAnalyticsService),
        "config": config,
    }


# =============================================================================
# APP & CLIENT FIXTURES
# =============================================================================


@pytest.fixture
def app(services):
    return create_app(services)


@pytest.fixture
def client(app):
    """Client acting as a platform admin."""
    c = TestClient(app, raise_server_exceptions=False)
    c.headers.update({"X-Actor-Id": str(ADMIN_ID), "X-Actor-Role": "admin"})
    return c


@pytest.fixture
def unauthed_client(app):
    """Client without forwarded identity headers."""
    return TestClient(app, raise_server_exceptions=False)
