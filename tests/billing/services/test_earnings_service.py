"""Tests for EarningsService against a real ledger database."""

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from billing.exceptions import ForbiddenError, InvalidInputError
from billing.models import EarningStatus, ListFilters, PageRequest

pytestmark = pytest.mark.usefixtures("clean_db")

START = datetime(2025, 1, 1, tzinfo=timezone.utc)
END = datetime(2025, 2, 1, tzinfo=timezone.utc)
MID = datetime(2025, 1, 15, 12, tzinfo=timezone.utc)


@pytest.fixture
def partner(seed):
    return seed.partner("Screen Co")


@pytest.fixture
def device(seed, partner):
    return seed.device(partner)


class TestGenerateEarnings:

    def test_default_commission(self, as_admin, earnings_service, seed, partner, device, config):
        """50,000 impressions x 0.001 x 0.3 = 15.00."""
        seed.delivery(device, MID, impressions=50000, engagements=1200)

        result = earnings_service.generate_earnings(START, END, config)

        earning = result.generated[0]
        assert earning.partner_id == partner
        assert earning.total_impressions == 50000
        assert earning.total_engagements == 1200
        assert earning.amount_cents == 1500
        assert earning.status == EarningStatus.PENDING

    def test_partner_commission_overrides_default(self, as_admin, earnings_service, seed, config):
        partner_id = seed.partner("Premium Screens", commission_rate="0.5")
        seed.delivery(seed.device(partner_id), MID, impressions=50000)

        earning = earnings_service.generate_earnings(START, END, config).generated[0]

        assert earning.amount_cents == 2500

    def test_only_delivered_and_in_window(self, as_admin, earnings_service, seed, device, config):
        seed.delivery(device, MID, impressions=1000)
        seed.delivery(device, MID, impressions=9000, status="failed")
        seed.delivery(device, START, impressions=10)
        seed.delivery(device, END, impressions=5000)

        earning = earnings_service.generate_earnings(START, END, config).generated[0]

        assert earning.total_impressions == 1010

    def test_rollups_reconcile_by_maximum(self, as_admin, earnings_service, seed, device, config):
        seed.delivery(device, MID, impressions=1000, engagements=90)
        seed.device_rollup(device, MID, impressions=1500, engagements=40)

        earning = earnings_service.generate_earnings(START, END, config).generated[0]

        assert earning.total_impressions == 1500
        assert earning.total_engagements == 90

    def test_skips_partner_without_devices_or_impressions(self, as_admin, earnings_service, seed, config):
        idle = seed.partner("Idle Screens")
        seed.device(idle)
        empty = seed.partner("No Devices")

        result = earnings_service.generate_earnings(START, END, config)

        assert result.generated == []
        reasons = {s.entity_id: s.reason for s in result.skipped}
        assert reasons == {idle: "no impressions", empty: "no devices"}

    def test_rerun_updates_in_place(self, as_admin, earnings_service, seed, device, config, audit):
        seed.delivery(device, MID, impressions=1000)
        first = earnings_service.generate_earnings(START, END, config).generated[0]
        seed.delivery(device, MID, impressions=500)

        second = earnings_service.generate_earnings(START, END, config).generated[0]

        assert second.id == first.id
        assert second.total_impressions == 1500
        history = audit.get_entity_history("partner_earning", first.id)
        assert sorted(h["action"] for h in history) == ["create", "update"]

    def test_rerun_applies_downward_correction(self, as_admin, earnings_service, seed, db_admin, device, config):
        """A 40k delivery reclassified as failed drops 50,000 to 10,000 impressions."""
        seed.delivery(device, MID, impressions=10000)
        seed.delivery(device, MID, impressions=40000)
        first = earnings_service.generate_earnings(START, END, config).generated[0]
        assert first.amount_cents == 1500
        db_admin.execute("UPDATE ad_deliveries SET status = 'failed' WHERE impressions = 40000")

        second = earnings_service.generate_earnings(START, END, config).generated[0]

        assert second.id == first.id
        assert second.total_impressions == 10000
        assert second.amount_cents == 300

    def test_rerun_converges(self, as_admin, earnings_service, seed, device, config):
        seed.delivery(device, MID, impressions=1000, engagements=10)
        first = earnings_service.generate_earnings(START, END, config).generated[0]

        second = earnings_service.generate_earnings(START, END, config).generated[0]

        assert (second.total_impressions, second.total_engagements, second.amount_cents) == (
            first.total_impressions, first.total_engagements, first.amount_cents
        )

    def test_rerun_with_usage_gone_zeroes_stored_row(self, as_admin, earnings_service, seed, db_admin, device, config):
        seed.delivery(device, MID, impressions=1000)
        first = earnings_service.generate_earnings(START, END, config).generated[0]
        db_admin.execute("UPDATE ad_deliveries SET status = 'failed'")

        second = earnings_service.generate_earnings(START, END, config).generated[0]

        assert second.id == first.id
        assert second.total_impressions == 0
        assert second.amount_cents == 0

    def test_unexpected_partner_failure_is_isolated(self, as_admin, earnings_service, seed, partner, device, config, monkeypatch):
        seed.delivery(device, MID, impressions=1000)
        broken = seed.partner("Broken Screens")
        seed.delivery(seed.device(broken), MID, impressions=1000)
        original = earnings_service._generate_for_partner

        def failing(record, *args):
            if record.id == broken:
                raise RuntimeError("boom")
            return original(record, *args)

        monkeypatch.setattr(earnings_service, "_generate_for_partner", failing)

        result = earnings_service.generate_earnings(START, END, config)

        assert [e.partner_id for e in result.generated] == [partner]
        assert {s.entity_id: s.reason for s in result.skipped} == {broken: "error"}

    def test_rerun_keeps_payout_status(self, as_admin, earnings_service, payout_service, seed, device, config):
        seed.delivery(device, MID, impressions=1000)
        earning = earnings_service.generate_earnings(START, END, config).generated[0]
        payout_service.mark_processed(earning.id)

        rerun = earnings_service.generate_earnings(START, END, config).generated[0]

        assert rerun.status == EarningStatus.PROCESSED

    def test_publishes_event_per_earning(self, as_admin, earnings_service, seed, device, config, published):
        seed.delivery(device, MID, impressions=1000)

        earnings_service.generate_earnings(START, END, config)

        assert [type(e).__name__ for e in published] == ["EarningsGenerated"]

    def test_inverted_period_rejected(self, as_admin, earnings_service, config):
        with pytest.raises(InvalidInputError):
            earnings_service.generate_earnings(END, START, config)

    def test_empty_period_rejected(self, as_admin, earnings_service, config):
        with pytest.raises(InvalidInputError):
            earnings_service.generate_earnings(START, START, config)

    def test_requires_admin(self, as_partner_user, earnings_service, config):
        with pytest.raises(ForbiddenError):
            earnings_service.generate_earnings(START, END, config)


class TestListPayouts:

    def test_lists_with_partner_name_and_summary(self, as_admin, earnings_service, seed, device, config):
        seed.delivery(device, MID, impressions=50000)
        earnings_service.generate_earnings(START, END, config)

        page = earnings_service.list_payouts(ListFilters(), PageRequest())

        assert page.pagination.total == 1
        assert page.payouts[0].partner_name == "Screen Co"
        assert page.summary.pending_cents == 1500
        assert page.summary.total_impressions == 50000

    def test_search_by_partner(self, as_admin, earnings_service, seed, device, config):
        seed.delivery(device, MID, impressions=100)
        earnings_service.generate_earnings(START, END, config)

        page = earnings_service.list_payouts(ListFilters(search="nomatch"), PageRequest())

        assert page.payouts == []
        assert page.summary.count == 0

    def test_reference_filters_not_supported(self, as_admin, earnings_service):
        with pytest.raises(InvalidInputError, match="advertiser_id"):
            earnings_service.list_payouts(ListFilters(advertiser_id=uuid4()), PageRequest())
