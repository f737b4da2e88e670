"""Service and seed-data fixtures for ledger integration tests."""

from datetime import timedelta
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from psycopg2.extras import Json

from billing.audit import AuditLogger
from billing.config import BillingConfig
from billing.event_bus import EventBus
from utils.timezone import now_utc

# Must match conftest.py
PARTNER_USER_ID = UUID("00000000-0000-0000-0000-0000000000c1")


# =============================================================================
# SERVICE FIXTURES
# =============================================================================


@pytest.fixture
def audit(db):
    return AuditLogger(db)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def published(event_bus):
    """Every event published on the bus, in order."""
    events = []
    for name in (
        "InvoicePaid", "InvoiceCancelled", "PaymentCompleted", "PaymentRefunded",
        "EarningsGenerated", "PayoutPaid",
    ):
        event_bus.subscribe(name, events.append)
    return events


@pytest.fixture
def config():
    return BillingConfig()


@pytest.fixture
def usage(db):
    from billing.services.usage_aggregator import UsageAggregator
    return UsageAggregator(db)


@pytest.fixture
def invoice_service(db, audit, event_bus):
    from billing.services.invoice_service import InvoiceService
    return InvoiceService(db, audit, event_bus)


@pytest.fixture
def payment_service(db, audit, event_bus):
    from billing.services.payment_service import PaymentService
    return PaymentService(db, audit, event_bus)


@pytest.fixture
def earnings_service(db, audit, event_bus, usage):
    from billing.services.earnings_service import EarningsService
    return EarningsService(db, audit, event_bus, usage)


@pytest.fixture
def payout_service(db, audit, event_bus):
    from billing.services.payout_service import PayoutService
    return PayoutService(db, audit, event_bus)


@pytest.fixture
def report_service(db):
    from billing.services.report_service import ReportService
    return ReportService(db)


@pytest.fixture
def config_service(db, audit):
    from billing.services.config_service import ConfigService
    return ConfigService(db, audit)


# =============================================================================
# SEED DATA
# =============================================================================


class Seeder:
    """Inserts collaborator rows (advertisers, campaigns, partners, usage) directly."""

    def __init__(self, db_admin):
        self.db = db_admin

    def advertiser(self, company_name="Acme Ads"):
        advertiser_id = uuid4()
        self.db.execute(
            "INSERT INTO advertisers (id, company_name) VALUES (%s, %s)",
            (advertiser_id, company_name)
        )
        return advertiser_id

    def campaign(self, advertiser_id, name="Spring Launch", budget_cents=0, spend=None):
        campaign_id = uuid4()
        self.db.execute(
            "INSERT INTO campaigns (id, advertiser_id, name, budget_cents) VALUES (%s, %s, %s, %s)",
            (campaign_id, advertiser_id, name, budget_cents)
        )
        if spend is not None:
            self.campaign_spend(campaign_id, spend)
        return campaign_id

    def campaign_spend(self, campaign_id, spend, when=None):
        self.campaign_cost_data(campaign_id, {"spend": spend}, when)

    def campaign_cost_data(self, campaign_id, cost_data, when=None):
        self.db.execute(
            "INSERT INTO campaign_analytics (id, campaign_id, date, cost_data) VALUES (%s, %s, %s, %s)",
            (uuid4(), campaign_id, when or now_utc(), Json(cost_data))
        )

    def partner(self, company_name="Screen Co", commission_rate=None, user_id=PARTNER_USER_ID):
        partner_id = uuid4()
        self.db.execute(
            """
            INSERT INTO partners (id, user_id, company_name, commission_rate)
            VALUES (%s, %s, %s, %s)
            """,
            (partner_id, user_id, company_name,
             Decimal(commission_rate) if commission_rate is not None else None)
        )
        return partner_id

    def device(self, partner_id, name="Lobby screen"):
        device_id = uuid4()
        self.db.execute(
            "INSERT INTO devices (id, partner_id, name) VALUES (%s, %s, %s)",
            (device_id, partner_id, name)
        )
        return device_id

    def delivery(self, device_id, when, impressions, engagements=0, completions=0,
                 status="delivered", campaign_id=None):
        if campaign_id is None:
            campaign_id = self.campaign(self.advertiser("Delivery Advertiser"), name="Delivery")
        self.db.execute(
            """
            INSERT INTO ad_deliveries (
                id, campaign_id, device_id, scheduled_time, actual_delivery_time,
                impressions, engagements, completions, status
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (uuid4(), campaign_id, device_id, when - timedelta(minutes=5), when,
             impressions, engagements, completions, status)
        )

    def device_rollup(self, device_id, when, impressions, engagements=0):
        self.db.execute(
            """
            INSERT INTO device_analytics (id, device_id, date, impressions_served, engagements_count)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (uuid4(), device_id, when, impressions, engagements)
        )


@pytest.fixture
def seed(db_admin):
    return Seeder(db_admin)
