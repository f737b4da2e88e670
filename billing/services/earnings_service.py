"""
Partner earnings generation.

One partner_earnings row per (partner, period). Generation is idempotent:
the row is written with INSERT ... ON CONFLICT DO UPDATE and its figures are
recomputed from current usage on every run, so re-running a period never
duplicates a row and converges on the same numbers. Corrections downwards
(a delivery later marked failed) are applied. Regeneration refreshes metrics
and amount only; payout status is untouched.
"""

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable
from uuid import uuid4

import psycopg2

from billing.audit import AuditAction, AuditLogger, compute_changes
from billing.config import BillingConfig
from billing.event_bus import EventBus
from billing.events import EarningsGenerated
from billing.exceptions import InvalidInputError
from billing.models import (
    BatchResult, EarningStatus, ListFilters, PageRequest, Pagination, PartnerEarning,
    PartnerEarningView, PartnerRecord, PayoutPage, PayoutSummary,
)
from billing.permissions import require_admin
from billing.services.filters import build_where, parse_status, where_sql
from billing.services.usage_aggregator import UsageAggregator
from clients.postgres_client import PostgresClient
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

# Platform revenue per impression, in currency units. Not partner-configurable.
BASE_IMPRESSION_RATE = Decimal("0.001")


def compute_earning_cents(
    impressions: int,
    commission_rate: Decimal,
    base_rate: Decimal = BASE_IMPRESSION_RATE,
) -> int:
    """
    Partner share in cents: impressions x base rate x commission.

    50,000 impressions at 0.001 with a 0.3 commission is 15.00, i.e. 1500.
    Rounded half-up to the cent.
    """
    amount = Decimal(impressions) * base_rate * Decimal(commission_rate) * 100
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def effective_commission(partner: PartnerRecord, config: BillingConfig) -> Decimal:
    """The partner's own rate, or the configured default."""
    if partner.commission_rate is not None:
        return partner.commission_rate
    return config.commission.default_rate


def summarize_payouts(grouped_rows: Iterable[dict[str, Any]]) -> PayoutSummary:
    """
    Fold per-status aggregates into a listing summary.

    Args:
        grouped_rows: Rows of {status, count, total_cents, total_impressions}
    """
    summary = PayoutSummary()
    for row in grouped_rows:
        count = int(row["count"])
        total = int(row["total_cents"] or 0)
        summary.count += count
        summary.total_cents += total
        summary.total_impressions += int(row["total_impressions"] or 0)
        summary.by_status[row["status"]] = count
        if row["status"] in (EarningStatus.PENDING.value, EarningStatus.PROCESSED.value):
            summary.pending_cents += total
        elif row["status"] == EarningStatus.PAID.value:
            summary.paid_cents += total
    return summary


_METRIC_FIELDS = {"total_impressions", "total_engagements", "amount_cents"}


class EarningsService:
    """Computes and lists partner revenue shares."""

    def __init__(
        self,
        postgres: PostgresClient,
        audit: AuditLogger,
        event_bus: EventBus,
        usage: UsageAggregator,
    ):
        self.postgres = postgres
        self.audit = audit
        self.event_bus = event_bus
        self.usage = usage

    def _load_partners(self) -> list[PartnerRecord]:
        rows = self.postgres.execute(
            """
            SELECT p.id, p.company_name, p.user_id, p.commission_rate,
                   COALESCE(array_agg(d.id ORDER BY d.id) FILTER (WHERE d.id IS NOT NULL), '{}') AS device_ids
            FROM partners p
            LEFT JOIN devices d ON d.partner_id = p.id
            GROUP BY p.id
            ORDER BY p.company_name, p.id
            """
        )
        return [PartnerRecord.model_validate(row) for row in rows]

    def generate_earnings(
        self,
        start: datetime,
        end: datetime,
        config: BillingConfig,
    ) -> BatchResult:
        """
        Compute every partner's earning for [start, end).

        Partners without devices, or without delivered impressions and no
        earning stored for the period yet, are skipped. A stored earning
        whose usage has dropped to zero is corrected to zero. Each partner
        is processed in its own transaction; a failure for one partner is
        logged and reported in `skipped` without aborting the rest.

        Args:
            start: Period start (inclusive)
            end: Period end (exclusive)
            config: Billing configuration snapshot

        Returns:
            BatchResult of written earnings and skipped partners

        Raises:
            ForbiddenError: If the actor is not an admin
            InvalidInputError: If the period is empty or inverted
        """
        require_admin()

        if start is None or end is None:
            raise InvalidInputError("Start and end dates are required")
        if end <= start:
            raise InvalidInputError(f"Period end {end.isoformat()} must be after start {start.isoformat()}")

        result = BatchResult()

        for partner in self._load_partners():
            if not partner.device_ids:
                result.skip(partner.id, "no devices")
                continue

            try:
                earning = self._generate_for_partner(partner, start, end, config)
            except psycopg2.Error:
                logger.exception("Earnings generation failed for partner %s", partner.id)
                result.skip(partner.id, "ledger error")
                continue
            except Exception:
                logger.exception("Unexpected error generating earnings for partner %s", partner.id)
                result.skip(partner.id, "error")
                continue

            if earning is None:
                result.skip(partner.id, "no impressions")
                continue

            result.generated.append(earning)
            self.event_bus.publish(EarningsGenerated.create(earning=earning))

        logger.info(
            "Generated %d partner earnings for [%s, %s), skipped %d partners",
            len(result.generated), start.isoformat(), end.isoformat(), len(result.skipped),
        )
        return result

    def _generate_for_partner(
        self,
        partner: PartnerRecord,
        start: datetime,
        end: datetime,
        config: BillingConfig,
    ) -> PartnerEarning | None:
        with self.postgres.transaction() as tx:
            tx.advisory_lock(f"partner-earning:{partner.id}:{start.isoformat()}:{end.isoformat()}")

            existing_row = tx.execute_single(
                """
                SELECT * FROM partner_earnings
                WHERE partner_id = %s AND period_start = %s AND period_end = %s
                FOR UPDATE
                """,
                (partner.id, start, end)
            )
            existing = PartnerEarning.model_validate(existing_row) if existing_row else None

            totals = self.usage.aggregate(partner.device_ids, start, end, delivered_only=True, tx=tx)
            if totals.impressions == 0 and existing is None:
                return None

            amount_cents = compute_earning_cents(totals.impressions, effective_commission(partner, config))
            now = now_utc()

            row = tx.execute_returning(
                """
                INSERT INTO partner_earnings (
                    id, partner_id, period_start, period_end,
                    total_impressions, total_engagements, amount_cents,
                    status, created_at, updated_at
                ) VALUES (
                    %s, %s, %s, %s,
                    %s, %s, %s,
                    %s, %s, %s
                )
                ON CONFLICT (partner_id, period_start, period_end) DO UPDATE
                SET total_impressions = EXCLUDED.total_impressions,
                    total_engagements = EXCLUDED.total_engagements,
                    amount_cents = EXCLUDED.amount_cents,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (
                    uuid4(), partner.id, start, end,
                    totals.impressions, totals.engagements, amount_cents,
                    EarningStatus.PENDING.value, now, now
                )
            )[0]
            earning = PartnerEarning.model_validate(row)

            if existing is None:
                self.audit.log_change(
                    entity_type="partner_earning",
                    entity_id=earning.id,
                    action=AuditAction.CREATE,
                    changes={
                        "created": earning.model_dump(
                            mode="json",
                            include=_METRIC_FIELDS | {"partner_id", "period_start", "period_end", "status"},
                        )
                    },
                    tx=tx,
                )
            else:
                changes = compute_changes(
                    existing.model_dump(mode="json", include=_METRIC_FIELDS),
                    earning.model_dump(mode="json", include=_METRIC_FIELDS),
                )
                if changes:
                    self.audit.log_change(
                        entity_type="partner_earning",
                        entity_id=earning.id,
                        action=AuditAction.UPDATE,
                        changes=changes,
                        tx=tx,
                    )

        return earning

    def list_payouts(self, filters: ListFilters, page: PageRequest) -> PayoutPage:
        """
        Filtered, paginated earnings listing with a summary over all matches.

        Date filters bound period_start.

        Raises:
            ForbiddenError: If the actor is not an admin
            InvalidInputError: If the status filter is not an earning status
        """
        require_admin()
        clauses, params = build_where(
            filters,
            date_column="e.period_start",
            amount_column="e.amount_cents",
            search_columns=["pa.company_name", "e.transaction_id"],
        )
        status = parse_status(filters.status, EarningStatus)
        if status is not None:
            clauses.append("e.status = %s")
            params.append(status.value)

        where = where_sql(clauses)

        grouped = self.postgres.execute(
            f"""
            SELECT e.status, COUNT(*) AS count,
                   COALESCE(SUM(e.amount_cents), 0) AS total_cents,
                   COALESCE(SUM(e.total_impressions), 0) AS total_impressions
            FROM partner_earnings e
            JOIN partners pa ON pa.id = e.partner_id
            {where}
            GROUP BY e.status
            """,
            tuple(params)
        )
        summary = summarize_payouts(grouped)

        rows = self.postgres.execute(
            f"""
            SELECT e.*, pa.company_name AS partner_name
            FROM partner_earnings e
            JOIN partners pa ON pa.id = e.partner_id
            {where}
            ORDER BY e.period_start DESC, pa.company_name
            LIMIT %s OFFSET %s
            """,
            tuple(params + [page.limit, page.offset])
        )

        return PayoutPage(
            payouts=[PartnerEarningView.model_validate(row) for row in rows],
            pagination=Pagination.build(summary.count, page),
            summary=summary,
        )
