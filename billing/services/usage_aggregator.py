"""
Usage aggregation over delivery logs and device analytics rollups.

Read-only. Both sources are summed independently over the same half-open
window and then reconciled with reconcile_usage(), so re-running an
aggregation over unchanged data always yields the same totals.
"""

import logging
from datetime import datetime
from typing import Iterable
from uuid import UUID

from billing.exceptions import InvalidInputError
from billing.models import UsageTotals, reconcile_usage
from clients.postgres_client import PostgresClient, Transaction

logger = logging.getLogger(__name__)

DELIVERED_STATUS = "delivered"


class UsageAggregator:
    """Reduces device activity to impression/engagement/completion totals."""

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    def aggregate(
        self,
        device_ids: Iterable[UUID],
        start: datetime,
        end: datetime,
        delivered_only: bool = False,
        prior: UsageTotals | None = None,
        tx: Transaction | None = None
    ) -> UsageTotals:
        """
        Reconciled usage for a device set over [start, end).

        Args:
            device_ids: Devices to aggregate; empty yields all zeros
            start: Window start (inclusive)
            end: Window end (exclusive)
            delivered_only: Count only deliveries with a delivered outcome
            prior: Earlier snapshot for the same window, used as a third source
            tx: Read inside this transaction instead of autocommit

        Returns:
            Element-wise maximum of delivery sums, rollup sums and prior

        Raises:
            InvalidInputError: If start is after end
        """
        if start > end:
            raise InvalidInputError(f"Window start {start.isoformat()} is after end {end.isoformat()}")

        devices = sorted(set(device_ids))
        if not devices:
            return reconcile_usage(prior) if prior is not None else UsageTotals()

        executor = tx if tx is not None else self.postgres
        deliveries = self._delivery_totals(executor, devices, start, end, delivered_only)
        rollups = self._analytics_totals(executor, devices, start, end)

        totals = reconcile_usage(deliveries, rollups, prior)
        logger.debug(
            "Usage for %d devices [%s, %s): deliveries=%s rollups=%s prior=%s -> %s",
            len(devices), start.isoformat(), end.isoformat(), deliveries, rollups, prior, totals,
        )
        return totals

    def _delivery_totals(self, executor, devices, start, end, delivered_only) -> UsageTotals:
        query = """
            SELECT COALESCE(SUM(impressions), 0) AS impressions,
                   COALESCE(SUM(engagements), 0) AS engagements,
                   COALESCE(SUM(completions), 0) AS completions
            FROM ad_deliveries
            WHERE device_id = ANY(%s::uuid[])
              AND COALESCE(actual_delivery_time, scheduled_time) >= %s
              AND COALESCE(actual_delivery_time, scheduled_time) < %s
        """
        params = [devices, start, end]
        if delivered_only:
            query += " AND status = %s"
            params.append(DELIVERED_STATUS)

        row = executor.execute_single(query, tuple(params))
        return UsageTotals(
            impressions=row["impressions"],
            engagements=row["engagements"],
            completions=row["completions"],
        )

    def _analytics_totals(self, executor, devices, start, end) -> UsageTotals:
        # Rollups carry no completion counts
        row = executor.execute_single(
            """
            SELECT COALESCE(SUM(impressions_served), 0) AS impressions,
                   COALESCE(SUM(engagements_count), 0) AS engagements
            FROM device_analytics
            WHERE device_id = ANY(%s::uuid[])
              AND date >= %s
              AND date < %s
            """,
            (devices, start, end)
        )
        return UsageTotals(
            impressions=row["impressions"],
            engagements=row["engagements"],
        )

    def device_ids_for_partner(self, partner_id: UUID, tx: Transaction | None = None) -> list[UUID]:
        """IDs of every device the partner hosts."""
        executor = tx if tx is not None else self.postgres
        rows = executor.execute(
            "SELECT id FROM devices WHERE partner_id = %s ORDER BY id",
            (partner_id,)
        )
        return [row["id"] for row in rows]
