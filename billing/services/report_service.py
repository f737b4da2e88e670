"""
Financial reports and the admin overview.

Ledger rows for the requested range are fetched with plain SQL and bucketed
here in Python, so the bucketing and share arithmetic can be exercised
without a database. Every range is half-open: [start, end).
"""

import calendar
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from billing.config import BillingConfig
from billing.exceptions import InvalidInputError
from billing.models import (
    EarningStatus, Granularity, InvoiceStatus, MethodShare, Metric, Overview, PaymentStatus,
    Report, ReportRow, ReportType,
)
from billing.permissions import require_admin
from billing.trends import percent_change, previous_window
from clients.postgres_client import PostgresClient
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

OVERVIEW_DEFAULT_DAYS = 30

_OUTSTANDING = [InvoiceStatus.UNPAID.value, InvoiceStatus.PARTIALLY_PAID.value, InvoiceStatus.OVERDUE.value]


# =============================================================================
# PURE HELPERS
# =============================================================================


def subtract_months(dt: datetime, months: int) -> datetime:
    """Same day-of-month `months` earlier, clamped to the month's last day."""
    month_index = dt.year * 12 + (dt.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def resolve_range(
    start: datetime | None,
    end: datetime | None,
    now: datetime,
    lookback_months: int = 12,
) -> tuple[datetime, datetime]:
    """
    Fill in a report range.

    Missing end means now; missing start means `lookback_months` before end.

    Raises:
        InvalidInputError: If start is after end
    """
    end = end or now
    start = start or subtract_months(end, lookback_months)
    if start > end:
        raise InvalidInputError(f"Start {start.isoformat()} is after end {end.isoformat()}")
    return start, end


def truncate(dt: datetime, granularity: Granularity) -> datetime:
    """Start of the bucket containing dt, in UTC."""
    dt = dt.astimezone(timezone.utc)
    day = dt.replace(hour=0, minute=0, second=0, microsecond=0)

    if granularity == Granularity.DAY:
        return day
    if granularity == Granularity.WEEK:
        return day - timedelta(days=day.weekday())
    if granularity == Granularity.MONTH:
        return day.replace(day=1)
    if granularity == Granularity.QUARTER:
        return day.replace(month=(day.month - 1) // 3 * 3 + 1, day=1)
    return day.replace(month=1, day=1)


def format_period(bucket: datetime, granularity: Granularity) -> str:
    """
    Label for a bucket start.

    2025-01-15, 2025-W03 (ISO week), 2025-01, 2025-Q1, 2025.
    """
    if granularity == Granularity.DAY:
        return bucket.strftime("%Y-%m-%d")
    if granularity == Granularity.WEEK:
        iso_year, iso_week, _ = bucket.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    if granularity == Granularity.MONTH:
        return bucket.strftime("%Y-%m")
    if granularity == Granularity.QUARTER:
        return f"{bucket.year}-Q{(bucket.month - 1) // 3 + 1}"
    return str(bucket.year)


def bucket_rows(
    rows: Iterable[dict[str, Any]],
    granularity: Granularity,
    by_status: bool = False,
) -> list[ReportRow]:
    """
    Group rows of {ts, amount_cents[, status]} into time buckets.

    Rows without a timestamp are ignored. Output is ordered by bucket, then
    status.
    """
    totals: dict[tuple[datetime, str | None], list[int]] = defaultdict(lambda: [0, 0])

    for row in rows:
        ts = row.get("ts")
        if ts is None:
            continue
        key = (truncate(ts, granularity), row.get("status") if by_status else None)
        totals[key][0] += int(row["amount_cents"] or 0)
        totals[key][1] += 1

    return [
        ReportRow(
            period=format_period(bucket, granularity),
            amount_cents=amount,
            count=count,
            status=status,
        )
        for (bucket, status), (amount, count) in sorted(
            totals.items(), key=lambda item: (item[0][0], item[0][1] or "")
        )
    ]


def method_shares(rows: Iterable[dict[str, Any]]) -> list[MethodShare]:
    """
    Per-method totals with each method's share of the overall amount.

    Every percentage is 0 when the overall amount is 0. Ordered by amount,
    largest first.
    """
    totals: dict[str, list[int]] = defaultdict(lambda: [0, 0])
    for row in rows:
        totals[row["method"]][0] += int(row["amount_cents"] or 0)
        totals[row["method"]][1] += 1

    grand_total = sum(amount for amount, _ in totals.values())

    shares = [
        MethodShare(
            method=method,
            amount_cents=amount,
            count=count,
            percentage=(amount / grand_total * 100) if grand_total > 0 else 0.0,
        )
        for method, (amount, count) in totals.items()
    ]
    shares.sort(key=lambda s: (-s.amount_cents, s.method))
    return shares


def metric(current: float, previous: float) -> Metric:
    return Metric(value=current, previous=previous, change_percent=percent_change(current, previous))


class ReportService:
    """Read-only reporting over the ledger."""

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    def _fetch(self, report_type: ReportType, start: datetime, end: datetime) -> list[dict[str, Any]]:
        if report_type == ReportType.REVENUE:
            return self.postgres.execute(
                """
                SELECT completed_at AS ts, amount_cents FROM payments
                WHERE status = %s AND completed_at >= %s AND completed_at < %s
                """,
                (PaymentStatus.COMPLETED.value, start, end)
            )
        if report_type == ReportType.PAYOUTS:
            return self.postgres.execute(
                """
                SELECT paid_date AS ts, amount_cents FROM partner_earnings
                WHERE status = %s AND paid_date >= %s AND paid_date < %s
                """,
                (EarningStatus.PAID.value, start, end)
            )
        if report_type == ReportType.INVOICES:
            return self.postgres.execute(
                """
                SELECT created_at AS ts, total_cents AS amount_cents, status FROM invoices
                WHERE created_at >= %s AND created_at < %s
                """,
                (start, end)
            )
        return self.postgres.execute(
            """
            SELECT method, amount_cents FROM payments
            WHERE status = %s AND initiated_at >= %s AND initiated_at < %s
            """,
            (PaymentStatus.COMPLETED.value, start, end)
        )

    def report(
        self,
        report_type: ReportType,
        config: BillingConfig,
        start: datetime | None = None,
        end: datetime | None = None,
        granularity: Granularity | None = None,
    ) -> Report:
        """
        Time-bucketed financial report.

        revenue: completed payments by completion time.
        payouts: paid earnings by paid date.
        invoices: all invoices by creation time, per status.
        payment-methods: completed payments by initiation time, per method
        with percentage share.

        Raises:
            ForbiddenError: If the actor is not an admin
            InvalidInputError: If start is after end
        """
        require_admin()

        granularity = granularity or config.report.default_granularity
        start, end = resolve_range(start, end, now_utc(), config.report.default_lookback_months)

        rows = self._fetch(report_type, start, end)
        report = Report(report_type=report_type, start_date=start, end_date=end, granularity=granularity)

        if report_type == ReportType.PAYMENT_METHODS:
            report.methods = method_shares(rows)
        else:
            report.rows = bucket_rows(rows, granularity, by_status=report_type == ReportType.INVOICES)

        logger.debug("Report %s [%s, %s) by %s: %d source rows",
                     report_type.value, start.isoformat(), end.isoformat(), granularity.value, len(rows))
        return report

    def _window_totals(self, start: datetime, end: datetime) -> dict[str, float]:
        row = self.postgres.execute_single(
            """
            SELECT
                (SELECT COALESCE(SUM(amount_cents), 0) FROM payments
                 WHERE status = %s AND completed_at >= %s AND completed_at < %s) AS revenue,
                (SELECT COALESCE(AVG(amount_cents), 0) FROM payments
                 WHERE status = %s AND completed_at >= %s AND completed_at < %s) AS average_transaction,
                (SELECT COALESCE(SUM(amount_cents), 0) FROM partner_earnings
                 WHERE status = %s AND paid_date >= %s AND paid_date < %s) AS payouts,
                (SELECT COALESCE(SUM(total_cents), 0) FROM invoices
                 WHERE status = ANY(%s) AND due_date >= %s AND due_date < %s) AS outstanding
            """,
            (
                PaymentStatus.COMPLETED.value, start, end,
                PaymentStatus.COMPLETED.value, start, end,
                EarningStatus.PAID.value, start, end,
                _OUTSTANDING, start, end,
            )
        )
        return {key: float(value) for key, value in row.items()}

    def overview(
        self,
        config: BillingConfig,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> Overview:
        """
        Headline figures for a window, each compared with the previous window.

        Defaults to the last 30 days. Outstanding invoices are open invoices
        due within the window. Amounts are in cents.

        Raises:
            ForbiddenError: If the actor is not an admin
            InvalidInputError: If start is after end
        """
        require_admin()

        end = end or now_utc()
        start = start or end - timedelta(days=OVERVIEW_DEFAULT_DAYS)
        if start > end:
            raise InvalidInputError(f"Start {start.isoformat()} is after end {end.isoformat()}")

        prev_start, prev_end = previous_window(
            start, end, timedelta(days=config.report.trend_fallback_days)
        )
        current = self._window_totals(start, end)
        previous = self._window_totals(prev_start, prev_end)

        return Overview(
            start_date=start,
            end_date=end,
            total_revenue=metric(current["revenue"], previous["revenue"]),
            partner_payouts=metric(current["payouts"], previous["payouts"]),
            outstanding_invoices=metric(current["outstanding"], previous["outstanding"]),
            average_transaction=metric(
                round(current["average_transaction"], 2), round(previous["average_transaction"], 2)
            ),
        )
