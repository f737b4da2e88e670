"""
Invoice lifecycle for advertiser billing.

Invoices are generated from campaign spend or created from explicit admin
line items. At most one open (unpaid or partially paid) invoice may exist per
campaign; the check and the insert run under a per-campaign advisory lock and
the invoices_one_open_per_campaign index is the backstop.
"""

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Mapping, Sequence
from uuid import UUID, uuid4

import psycopg2.errors
from psycopg2.extras import Json

from billing.audit import AuditAction, AuditLogger
from billing.config import BillingConfig
from billing.event_bus import EventBus
from billing.events import InvoiceCancelled, InvoicePaid
from billing.exceptions import ConflictError, InvalidInputError, NotFoundError
from billing.models import (
    BatchResult, CampaignRecord, Invoice, InvoiceCreate, InvoiceExportRow, InvoiceLineItem, InvoicePage,
    InvoiceStatus, InvoiceSummary, InvoiceView, ListFilters, OPEN_INVOICE_STATUSES,
    PageRequest, Pagination, PaymentStatus, compute_tax_cents, is_overdue,
)
from billing.permissions import require_admin
from billing.services.filters import build_where, parse_status, where_sql
from billing.state_machine import INVOICE_TRANSITIONS
from clients.postgres_client import PostgresClient, Transaction
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

INVOICE_NUMBER_LOCK = "invoice-number"

AmountResolver = Callable[[CampaignRecord], int | None]


# =============================================================================
# AMOUNT RESOLUTION
# =============================================================================


def resolve_from_spend(campaign: CampaignRecord) -> int | None:
    """
    Pre-tax amount from the latest analytics cost data.

    `spend` is recorded in currency units; anything missing, non-numeric or
    not positive defers to the next resolver, as does cost data that is not
    a JSON object.
    """
    if not isinstance(campaign.cost_data, Mapping):
        return None
    spend = campaign.cost_data.get("spend")
    if spend is None or isinstance(spend, bool):
        return None
    try:
        amount = Decimal(str(spend))
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def resolve_from_budget(campaign: CampaignRecord) -> int | None:
    """Campaign budget as the fallback amount."""
    return campaign.budget_cents


DEFAULT_AMOUNT_RESOLVERS: tuple[AmountResolver, ...] = (resolve_from_spend, resolve_from_budget)


def resolve_amount(campaign: CampaignRecord, resolvers: Sequence[AmountResolver]) -> int:
    """First amount any resolver produces, or 0 if none does."""
    for resolver in resolvers:
        amount = resolver(campaign)
        if amount is not None:
            return amount
    return 0


def format_tax_label(tax_rate_bps: int) -> str:
    """'Tax (16%)' for 1600 bps, 'Tax (7.5%)' for 750."""
    percent = Decimal(tax_rate_bps) / 100
    return f"Tax ({percent.normalize():f}%)"


def build_generated_line_items(
    campaign: CampaignRecord, amount_cents: int, tax_rate_bps: int, tax_cents: int
) -> list[InvoiceLineItem]:
    """The campaign line and the tax line of a generated invoice."""
    return [
        InvoiceLineItem(
            description=f"Ad campaign: {campaign.name}",
            quantity=1,
            unit_price_cents=amount_cents,
            amount_cents=amount_cents,
        ),
        InvoiceLineItem(
            description=format_tax_label(tax_rate_bps),
            quantity=1,
            unit_price_cents=tax_cents,
            amount_cents=tax_cents,
        ),
    ]


def summarize_invoices(grouped_rows: Iterable[dict[str, Any]]) -> InvoiceSummary:
    """
    Fold per-status aggregates into a listing summary.

    Args:
        grouped_rows: Rows of {status, count, total_cents, overdue_count}
    """
    summary = InvoiceSummary()
    outstanding = {s.value for s in OPEN_INVOICE_STATUSES} | {InvoiceStatus.OVERDUE.value}

    for row in grouped_rows:
        count = int(row["count"])
        total = int(row["total_cents"] or 0)
        summary.count += count
        summary.total_cents += total
        summary.overdue_count += int(row.get("overdue_count") or 0)
        summary.by_status[row["status"]] = count
        if row["status"] in outstanding:
            summary.outstanding_cents += total
        elif row["status"] == InvoiceStatus.PAID.value:
            summary.paid_cents += total

    return summary


# =============================================================================
# TRANSACTION HELPERS
# =============================================================================


def lock_invoice(tx: Transaction, invoice_id: UUID) -> Invoice:
    """
    Read an invoice row FOR UPDATE.

    Raises:
        NotFoundError: If the invoice does not exist
    """
    row = tx.execute_single("SELECT * FROM invoices WHERE id = %s FOR UPDATE", (invoice_id,))
    if row is None:
        raise NotFoundError("invoice", invoice_id)
    return Invoice.model_validate(row)


def attach_payment(
    tx: Transaction,
    audit: AuditLogger,
    invoice: Invoice,
    payment_id: UUID,
    payment_status: PaymentStatus,
) -> Invoice:
    """
    Point an invoice at a payment inside an open transaction.

    A completed payment settles the invoice; any other payment status leaves
    the invoice status as it was.

    Raises:
        ConflictError: If the invoice is cancelled
    """
    if invoice.status == InvoiceStatus.CANCELLED:
        raise ConflictError(f"Invoice {invoice.invoice_number} is cancelled and cannot be linked")

    new_status = InvoiceStatus.PAID if payment_status == PaymentStatus.COMPLETED else invoice.status

    row = tx.execute_returning(
        """
        UPDATE invoices
        SET payment_id = %s, status = %s, updated_at = %s
        WHERE id = %s
        RETURNING *
        """,
        (payment_id, new_status.value, now_utc(), invoice.id)
    )[0]
    updated = Invoice.model_validate(row)

    changes = {
        "payment_id": {
            "old": str(invoice.payment_id) if invoice.payment_id else None,
            "new": str(payment_id),
        },
    }
    if new_status != invoice.status:
        changes["status"] = {"old": invoice.status.value, "new": new_status.value}

    audit.log_change(
        entity_type="invoice",
        entity_id=invoice.id,
        action=AuditAction.UPDATE,
        changes=changes,
        tx=tx,
    )
    return updated


class InvoiceService:
    """Service for invoice operations."""

    def __init__(
        self,
        postgres: PostgresClient,
        audit: AuditLogger,
        event_bus: EventBus,
        amount_resolvers: Sequence[AmountResolver] = DEFAULT_AMOUNT_RESOLVERS,
    ):
        self.postgres = postgres
        self.audit = audit
        self.event_bus = event_bus
        self.amount_resolvers = tuple(amount_resolvers)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _load_campaign(self, tx: Transaction, campaign_id: UUID) -> CampaignRecord | None:
        row = tx.execute_single(
            """
            SELECT c.id, c.advertiser_id, c.name, c.budget_cents, latest.cost_data
            FROM campaigns c
            LEFT JOIN LATERAL (
                SELECT cost_data FROM campaign_analytics
                WHERE campaign_id = c.id
                ORDER BY date DESC
                LIMIT 1
            ) latest ON TRUE
            WHERE c.id = %s
            """,
            (campaign_id,)
        )
        if row is None:
            return None
        return CampaignRecord.model_validate(row)

    def _open_invoice_number(self, tx: Transaction, campaign_id: UUID) -> str | None:
        return tx.execute_scalar(
            "SELECT invoice_number FROM invoices WHERE campaign_id = %s AND status = ANY(%s) LIMIT 1",
            (campaign_id, [s.value for s in OPEN_INVOICE_STATUSES])
        )

    def _next_invoice_number(self, tx: Transaction, config: BillingConfig) -> str:
        """
        Next sequential invoice number.

        Derived from the row count under a transaction-scoped lock, so two
        concurrent generators cannot read the same count.
        """
        tx.advisory_lock(INVOICE_NUMBER_LOCK)
        count = tx.execute_scalar("SELECT COUNT(*) FROM invoices")
        return config.format_invoice_number(count + 1)

    def _insert(
        self,
        tx: Transaction,
        campaign: CampaignRecord,
        line_items: list[InvoiceLineItem],
        amount_cents: int,
        tax_rate_bps: int,
        due_date: datetime,
        config: BillingConfig,
    ) -> Invoice:
        tax_cents = compute_tax_cents(amount_cents, tax_rate_bps)
        total_cents = amount_cents + tax_cents
        invoice_number = self._next_invoice_number(tx, config)
        now = now_utc()

        row = tx.execute_returning(
            """
            INSERT INTO invoices (
                id, invoice_number, advertiser_id, campaign_id, payment_id,
                line_items, amount_cents, tax_rate_bps, tax_cents, total_cents,
                due_date, status, created_at, updated_at
            ) VALUES (
                %s, %s, %s, %s, NULL,
                %s, %s, %s, %s, %s,
                %s, %s, %s, %s
            )
            RETURNING *
            """,
            (
                uuid4(), invoice_number, campaign.advertiser_id, campaign.id,
                Json([item.model_dump(mode="json") for item in line_items]),
                amount_cents, tax_rate_bps, tax_cents, total_cents,
                due_date, InvoiceStatus.UNPAID.value, now, now
            )
        )[0]
        invoice = Invoice.model_validate(row)

        self.audit.log_change(
            entity_type="invoice",
            entity_id=invoice.id,
            action=AuditAction.CREATE,
            changes={
                "created": {
                    "invoice_number": invoice_number,
                    "campaign_id": str(campaign.id),
                    "amount_cents": amount_cents,
                    "tax_rate_bps": tax_rate_bps,
                    "tax_cents": tax_cents,
                    "total_cents": total_cents,
                    "due_date": due_date.isoformat(),
                }
            },
            tx=tx,
        )
        return invoice

    # -------------------------------------------------------------------------
    # Generation and creation
    # -------------------------------------------------------------------------

    def generate_invoices(
        self,
        campaign_ids: list[UUID],
        due_date: datetime,
        config: BillingConfig,
        tax_rate_bps: int | None = None,
    ) -> BatchResult:
        """
        Generate one invoice per campaign from its spend.

        Campaigns that do not exist or already have an open invoice are
        skipped. Each campaign is checked and written in its own transaction,
        so one campaign's failure is recorded in `skipped` and never aborts
        the batch.

        Args:
            campaign_ids: Campaigns to bill (duplicates are ignored)
            due_date: Due date for every generated invoice
            config: Billing configuration snapshot
            tax_rate_bps: Override of the configured tax rate

        Returns:
            BatchResult of created invoices and skipped campaigns

        Raises:
            ForbiddenError: If the actor is not an admin
            InvalidInputError: If no campaigns are given or the tax rate is not
                whole basis points in [0, 10000]
        """
        require_admin()

        if not campaign_ids:
            raise InvalidInputError("At least one campaign id is required")
        if due_date is None:
            raise InvalidInputError("Due date is required")

        rate_bps = config.tax.rate_bps if tax_rate_bps is None else tax_rate_bps
        if isinstance(rate_bps, bool) or not isinstance(rate_bps, int):
            raise InvalidInputError(f"Tax rate must be whole basis points, got {rate_bps!r}")
        if not 0 <= rate_bps <= 10000:
            raise InvalidInputError(f"Tax rate {rate_bps} bps is out of range")

        result = BatchResult()

        for campaign_id in dict.fromkeys(campaign_ids):
            try:
                with self.postgres.transaction() as tx:
                    tx.advisory_lock(f"invoice-campaign:{campaign_id}")

                    campaign = self._load_campaign(tx, campaign_id)
                    if campaign is None:
                        result.skip(campaign_id, "campaign not found")
                        continue

                    open_number = self._open_invoice_number(tx, campaign_id)
                    if open_number is not None:
                        result.skip(campaign_id, f"open invoice {open_number} exists")
                        continue

                    amount_cents = resolve_amount(campaign, self.amount_resolvers)
                    tax_cents = compute_tax_cents(amount_cents, rate_bps)
                    line_items = build_generated_line_items(campaign, amount_cents, rate_bps, tax_cents)

                    invoice = self._insert(
                        tx, campaign, line_items, amount_cents, rate_bps, due_date, config
                    )
            except psycopg2.errors.UniqueViolation:
                logger.warning("Invoice generation for campaign %s lost a concurrent insert", campaign_id)
                result.skip(campaign_id, "conflict: invoice created concurrently")
                continue
            except psycopg2.Error:
                logger.exception("Invoice generation failed for campaign %s", campaign_id)
                result.skip(campaign_id, "ledger error")
                continue
            except Exception:
                logger.exception("Unexpected error generating invoice for campaign %s", campaign_id)
                result.skip(campaign_id, "error")
                continue

            result.generated.append(invoice)

        logger.info(
            "Generated %d invoices, skipped %d campaigns",
            len(result.generated), len(result.skipped),
        )
        return result

    def create(self, data: InvoiceCreate, config: BillingConfig) -> Invoice:
        """
        Create an invoice from explicit admin line items.

        Returns:
            Created invoice in UNPAID status

        Raises:
            ForbiddenError: If the actor is not an admin
            NotFoundError: If the campaign does not exist
            ConflictError: If the campaign already has an open invoice
        """
        require_admin()

        rate_bps = config.tax.rate_bps if data.tax_rate_bps is None else data.tax_rate_bps
        line_items = [
            InvoiceLineItem(
                description=item.description,
                quantity=item.quantity,
                unit_price_cents=item.unit_price_cents,
                amount_cents=item.amount_cents,
            )
            for item in data.line_items
        ]
        amount_cents = sum(item.amount_cents for item in line_items)

        try:
            with self.postgres.transaction() as tx:
                tx.advisory_lock(f"invoice-campaign:{data.campaign_id}")

                campaign = self._load_campaign(tx, data.campaign_id)
                if campaign is None:
                    raise NotFoundError("campaign", data.campaign_id)

                open_number = self._open_invoice_number(tx, data.campaign_id)
                if open_number is not None:
                    raise ConflictError(
                        f"Campaign {data.campaign_id} already has open invoice {open_number}"
                    )

                invoice = self._insert(
                    tx, campaign, line_items, amount_cents, rate_bps, data.due_date, config
                )
        except psycopg2.errors.UniqueViolation:
            raise ConflictError(f"Invoice for campaign {data.campaign_id} was created concurrently")

        logger.info("Created invoice %s for campaign %s", invoice.invoice_number, data.campaign_id)
        return invoice

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_by_id(self, invoice_id: UUID) -> Invoice | None:
        """
        Get invoice by ID.

        Returns:
            Invoice if found, None otherwise.
        """
        row = self.postgres.execute_single("SELECT * FROM invoices WHERE id = %s", (invoice_id,))
        if row is None:
            return None
        return Invoice.model_validate(row)

    _VIEW_SELECT = """
        SELECT i.*, a.company_name AS advertiser_name, c.name AS campaign_name,
               p.status AS payment_status
        FROM invoices i
        JOIN advertisers a ON a.id = i.advertiser_id
        JOIN campaigns c ON c.id = i.campaign_id
        LEFT JOIN payments p ON p.id = i.payment_id
    """

    def get_view(self, invoice_id: UUID) -> InvoiceView:
        """
        Invoice with advertiser, campaign and payment details.

        Raises:
            ForbiddenError: If the actor is not an admin
            NotFoundError: If the invoice does not exist
        """
        require_admin()

        row = self.postgres.execute_single(
            f"{self._VIEW_SELECT} WHERE i.id = %s",
            (invoice_id,)
        )
        if row is None:
            raise NotFoundError("invoice", invoice_id)
        return self._to_view(row, now_utc())

    @staticmethod
    def _to_view(row: dict[str, Any], now: datetime) -> InvoiceView:
        view = InvoiceView.model_validate(row)
        view.overdue = is_overdue(view, now)
        return view

    @staticmethod
    def _filter_sql(filters: ListFilters, now: datetime, date_column: str) -> tuple[str, list[Any]]:
        """WHERE clause over invoices i / advertisers a / campaigns c."""
        clauses, params = build_where(
            filters,
            date_column=date_column,
            amount_column="i.total_cents",
            search_columns=["i.invoice_number", "a.company_name", "c.name"],
            advertiser_column="i.advertiser_id",
            campaign_column="i.campaign_id",
        )

        status = parse_status(filters.status, InvoiceStatus)
        if status == InvoiceStatus.OVERDUE:
            clauses.append("(i.status = %s OR (i.status = %s AND i.due_date < %s))")
            params.extend([InvoiceStatus.OVERDUE.value, InvoiceStatus.UNPAID.value, now])
        elif status is not None:
            clauses.append("i.status = %s")
            params.append(status.value)

        return where_sql(clauses), params

    def list_invoices(self, filters: ListFilters, page: PageRequest) -> InvoicePage:
        """
        Filtered, paginated invoice listing.

        The `overdue` status filter matches stored OVERDUE rows and UNPAID rows
        past their due date. The summary covers every matching row, not just
        the returned page.

        Raises:
            ForbiddenError: If the actor is not an admin
            InvalidInputError: If the status filter is not an invoice status
        """
        require_admin()
        now = now_utc()
        where, params = self._filter_sql(filters, now, date_column="i.created_at")
        joins = """
            FROM invoices i
            JOIN advertisers a ON a.id = i.advertiser_id
            JOIN campaigns c ON c.id = i.campaign_id
        """

        grouped = self.postgres.execute(
            f"""
            SELECT i.status,
                   COUNT(*) AS count,
                   COALESCE(SUM(i.total_cents), 0) AS total_cents,
                   COUNT(*) FILTER (WHERE i.status = %s AND i.due_date < %s) AS overdue_count
            {joins}
            {where}
            GROUP BY i.status
            """,
            tuple([InvoiceStatus.UNPAID.value, now] + params)
        )
        summary = summarize_invoices(grouped)

        rows = self.postgres.execute(
            f"""
            {self._VIEW_SELECT}
            {where}
            ORDER BY i.created_at DESC, i.invoice_number DESC
            LIMIT %s OFFSET %s
            """,
            tuple(params + [page.limit, page.offset])
        )

        return InvoicePage(
            invoices=[self._to_view(row, now) for row in rows],
            pagination=Pagination.build(summary.count, page),
            summary=summary,
        )

    def export_invoices(self, filters: ListFilters) -> list[InvoiceExportRow]:
        """
        Every invoice matching the filters, flattened for export.

        Unlike the listing, date filters bound the due date, and rows are
        ordered by due date, newest first. Payment columns are empty for
        invoices without a linked payment.

        Raises:
            ForbiddenError: If the actor is not an admin
            InvalidInputError: If the status filter is not an invoice status
        """
        require_admin()
        where, params = self._filter_sql(filters, now_utc(), date_column="i.due_date")

        rows = self.postgres.execute(
            f"""
            SELECT i.invoice_number, a.company_name AS advertiser_name, c.name AS campaign_name,
                   i.amount_cents, i.tax_cents, i.total_cents, i.status, i.due_date, i.created_at,
                   p.status AS payment_status, p.completed_at AS payment_completed_at,
                   p.method AS payment_method
            FROM invoices i
            JOIN advertisers a ON a.id = i.advertiser_id
            JOIN campaigns c ON c.id = i.campaign_id
            LEFT JOIN payments p ON p.id = i.payment_id
            {where}
            ORDER BY i.due_date DESC, i.invoice_number DESC
            """,
            tuple(params)
        )

        logger.info("Exporting %d invoices", len(rows))
        return [InvoiceExportRow.model_validate(row) for row in rows]

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def update_status(self, invoice_id: UUID, status: InvoiceStatus) -> Invoice:
        """
        Set an invoice status directly.

        Any status may be set, including PAID without a payment (manual
        reconciliation). Nothing leaves CANCELLED.

        Raises:
            ForbiddenError: If the actor is not an admin
            NotFoundError: If the invoice does not exist
            InvariantViolationError: If the invoice is cancelled
            ConflictError: If reopening would leave the campaign with two open invoices
        """
        require_admin()

        with self.postgres.transaction() as tx:
            current = lock_invoice(tx, invoice_id)
            INVOICE_TRANSITIONS.ensure(current.status, status)

            try:
                row = tx.execute_returning(
                    "UPDATE invoices SET status = %s, updated_at = %s WHERE id = %s RETURNING *",
                    (status.value, now_utc(), invoice_id)
                )[0]
            except psycopg2.errors.UniqueViolation:
                raise ConflictError(
                    f"Invoice {current.invoice_number} cannot be reopened while its campaign "
                    "already has another open invoice"
                )
            updated = Invoice.model_validate(row)

            self.audit.log_change(
                entity_type="invoice",
                entity_id=invoice_id,
                action=AuditAction.UPDATE,
                changes={"status": {"old": current.status.value, "new": status.value}},
                tx=tx,
            )

        if status != current.status:
            if status == InvoiceStatus.PAID:
                self.event_bus.publish(InvoicePaid.create(invoice=updated))
            elif status == InvoiceStatus.CANCELLED:
                self.event_bus.publish(InvoiceCancelled.create(invoice=updated))

        return updated

    def cancel(self, invoice_id: UUID) -> Invoice:
        """
        Cancel an invoice. A linked payment is left untouched.

        Raises:
            ForbiddenError: If the actor is not an admin
            NotFoundError: If the invoice does not exist
            InvariantViolationError: If the invoice is already cancelled
        """
        return self.update_status(invoice_id, InvoiceStatus.CANCELLED)

    def link_payment(self, invoice_id: UUID, payment_id: UUID) -> Invoice:
        """
        Attach a payment to an invoice.

        If the payment is COMPLETED the invoice becomes PAID; otherwise its
        status is unchanged.

        Raises:
            ForbiddenError: If the actor is not an admin
            NotFoundError: If the invoice or payment does not exist
            InvalidInputError: If the payment belongs to another advertiser
            ConflictError: If the invoice is cancelled
        """
        require_admin()

        with self.postgres.transaction() as tx:
            current = lock_invoice(tx, invoice_id)

            payment = tx.execute_single(
                "SELECT id, advertiser_id, status FROM payments WHERE id = %s FOR SHARE",
                (payment_id,)
            )
            if payment is None:
                raise NotFoundError("payment", payment_id)
            if payment["advertiser_id"] != current.advertiser_id:
                raise InvalidInputError(
                    f"Payment {payment_id} belongs to a different advertiser than invoice {invoice_id}"
                )

            updated = attach_payment(
                tx, self.audit, current, payment_id, PaymentStatus(payment["status"])
            )

        if updated.status == InvoiceStatus.PAID and current.status != InvoiceStatus.PAID:
            self.event_bus.publish(InvoicePaid.create(invoice=updated))

        return updated
