"""
Handler for EarningsGenerated and PayoutPaid events.

Drops the partner's cached analytics summaries so the next read reflects
the new earning.
"""

import logging
from typing import Callable

from billing.events import EarningEvent

logger = logging.getLogger(__name__)


def handle_partner_earning_changed(analytics_service) -> Callable:
    """
    Factory that returns an earning-event handler.

    Args:
        analytics_service: PartnerAnalyticsService instance

    Returns:
        Handler callable that invalidates the partner's summary cache
    """

    def handler(event: EarningEvent):
        partner_id = event.earning.partner_id
        removed = analytics_service.invalidate(partner_id)
        logger.debug("Invalidated %d cached summaries for partner %s", removed, partner_id)

    return handler
