"""
Partner analytics summary.

Usage, estimated earnings and trends for a partner over a lookback preset.
Summaries are cached in Valkey; EarningsGenerated and PayoutPaid events
invalidate a partner's entries.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

import redis

from billing.config import BillingConfig
from billing.exceptions import NotFoundError
from billing.models import AnalyticsPeriod, PartnerEarning, PartnerSummary
from billing.permissions import require_admin_or_user
from billing.services.earnings_service import compute_earning_cents
from billing.services.usage_aggregator import UsageAggregator
from billing.trends import percent_change, previous_window
from clients.postgres_client import PostgresClient
from clients.valkey_client import ValkeyClient
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

# Estimate only; settled earnings use BASE_IMPRESSION_RATE.
ESTIMATE_IMPRESSION_RATE = Decimal("0.002")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

PERIOD_DAYS = {
    AnalyticsPeriod.SEVEN_DAYS: 7,
    AnalyticsPeriod.THIRTY_DAYS: 30,
    AnalyticsPeriod.NINETY_DAYS: 90,
    AnalyticsPeriod.YEAR: 365,
}


def period_start(period: AnalyticsPeriod, end: datetime) -> datetime:
    """Start of a lookback preset ending at `end`. 'all' starts at the epoch."""
    if period == AnalyticsPeriod.ALL:
        return EPOCH
    return end - timedelta(days=PERIOD_DAYS[period])


def engagement_rate(impressions: int, engagements: int) -> float:
    """Engagements per impression, in percent. 0 without impressions."""
    if impressions == 0:
        return 0.0
    return engagements / impressions * 100


def cache_key(partner_id: UUID, period: AnalyticsPeriod) -> str:
    return f"partner:analytics:summary:{partner_id}:{period.value}"


class PartnerAnalyticsService:
    """Read-side partner dashboard figures."""

    def __init__(
        self,
        postgres: PostgresClient,
        usage: UsageAggregator,
        cache: ValkeyClient | None = None,
    ):
        self.postgres = postgres
        self.usage = usage
        self.cache = cache

    def _cache_get(self, key: str) -> dict | None:
        if self.cache is None:
            return None
        try:
            return self.cache.get_json(key)
        except (redis.RedisError, ValueError):
            logger.warning("Partner summary cache read failed for %s", key, exc_info=True)
            return None

    def _cache_set(self, key: str, summary: PartnerSummary, ttl: int) -> None:
        if self.cache is None or ttl <= 0:
            return
        try:
            self.cache.set_json(key, summary.model_dump(mode="json"), expire_seconds=ttl)
        except redis.RedisError:
            logger.warning("Partner summary cache write failed for %s", key, exc_info=True)

    def summary(
        self,
        partner_id: UUID,
        config: BillingConfig,
        period: AnalyticsPeriod = AnalyticsPeriod.THIRTY_DAYS,
    ) -> PartnerSummary:
        """
        Dashboard summary for one partner.

        Visible to admins and to the partner's own user.

        Raises:
            NotFoundError: If the partner does not exist
            ForbiddenError: If the actor is neither admin nor the partner
        """
        partner = self.postgres.execute_single(
            "SELECT id, user_id, company_name, commission_rate FROM partners WHERE id = %s",
            (partner_id,)
        )
        if partner is None:
            raise NotFoundError("partner", partner_id)

        require_admin_or_user(partner["user_id"])

        key = cache_key(partner_id, period)
        cached = self._cache_get(key)
        if cached is not None:
            return PartnerSummary.model_validate(cached)

        end = now_utc()
        start = period_start(period, end)
        device_ids = self.usage.device_ids_for_partner(partner_id)

        current = self.usage.aggregate(device_ids, start, end)
        prev_start, prev_end = previous_window(
            start, end, timedelta(days=config.report.trend_fallback_days)
        )
        previous = self.usage.aggregate(device_ids, prev_start, prev_end)

        commission = partner["commission_rate"]
        if commission is None:
            commission = config.commission.default_rate

        recent_rows = self.postgres.execute(
            """
            SELECT * FROM partner_earnings
            WHERE partner_id = %s AND period_end >= %s
            ORDER BY period_end DESC
            LIMIT 5
            """,
            (partner_id, start)
        )

        summary = PartnerSummary(
            partner_id=partner_id,
            partner_name=partner["company_name"],
            period=period,
            start_date=start,
            end_date=end,
            device_count=len(device_ids),
            impressions=current.impressions,
            engagements=current.engagements,
            completions=current.completions,
            engagement_rate=engagement_rate(current.impressions, current.engagements),
            estimated_earnings_cents=compute_earning_cents(
                current.impressions, commission, base_rate=ESTIMATE_IMPRESSION_RATE
            ),
            impressions_trend=percent_change(current.impressions, previous.impressions),
            engagements_trend=percent_change(current.engagements, previous.engagements),
            recent_earnings=[PartnerEarning.model_validate(row) for row in recent_rows],
        )

        self._cache_set(key, summary, config.report.partner_cache_ttl_seconds)
        return summary

    def invalidate(self, partner_id: UUID) -> int:
        """Drop every cached summary for a partner. Returns how many existed."""
        if self.cache is None:
            return 0
        keys = [cache_key(partner_id, period) for period in AnalyticsPeriod]
        try:
            return self.cache.delete(*keys)
        except redis.RedisError:
            logger.warning("Partner summary cache invalidation failed for %s", partner_id, exc_info=True)
            return 0
