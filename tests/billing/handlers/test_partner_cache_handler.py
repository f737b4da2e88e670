"""Tests for the partner analytics cache handler."""

from types import SimpleNamespace
from unittest.mock import Mock
from uuid import uuid4

from billing.event_bus import EventBus
from billing.events import EarningsGenerated, PayoutPaid
from billing.handlers.partner_cache_handler import handle_partner_earning_changed
from billing.services.partner_analytics_service import PartnerAnalyticsService


def test_invalidates_partner_summaries():
    analytics = Mock(spec=PartnerAnalyticsService)
    analytics.invalidate.return_value = 3
    partner_id = uuid4()

    handler = handle_partner_earning_changed(analytics)
    handler(EarningsGenerated.create(SimpleNamespace(partner_id=partner_id)))

    analytics.invalidate.assert_called_once_with(partner_id)


def test_wired_to_both_earning_events():
    analytics = Mock(spec=PartnerAnalyticsService)
    analytics.invalidate.return_value = 0
    bus = EventBus()
    handler = handle_partner_earning_changed(analytics)
    bus.subscribe("EarningsGenerated", handler)
    bus.subscribe("PayoutPaid", handler)
    first, second = uuid4(), uuid4()

    bus.publish(EarningsGenerated.create(SimpleNamespace(partner_id=first)))
    bus.publish(PayoutPaid.create(SimpleNamespace(partner_id=second)))

    assert [c.args[0] for c in analytics.invalidate.call_args_list] == [first, second]


def test_invalidation_failure_is_contained_by_bus(caplog):
    analytics = Mock(spec=PartnerAnalyticsService)
    analytics.invalidate.side_effect = RuntimeError("boom")
    bus = EventBus()
    bus.subscribe("PayoutPaid", handle_partner_earning_changed(analytics))

    bus.publish(PayoutPaid.create(SimpleNamespace(partner_id=uuid4())))

    assert "boom" in caplog.text
