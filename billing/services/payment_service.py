"""
Payment reconciliation.

Payments settle invoices through invoices.payment_id. Status changes cascade
into every linked invoice inside the same transaction as the payment write:
completion marks them PAID, a refund reopens them as UNPAID and detaches them
so they can be relinked. Cancelled invoices keep their status through a
cascade, though a refund still detaches them.
"""

import logging
from typing import Any, Iterable
from uuid import UUID, uuid4

import psycopg2.errors

from billing.audit import AuditAction, AuditLogger, compute_changes
from billing.config import BillingConfig
from billing.event_bus import EventBus
from billing.events import InvoicePaid, PaymentCompleted, PaymentRefunded
from billing.exceptions import ConflictError, InvalidInputError, NotFoundError
from billing.models import (
    Invoice, InvoiceStatus, ListFilters, PageRequest, Pagination, Payment, PaymentCreate,
    PaymentPage, PaymentStatus, PaymentSummary, PaymentView,
)
from billing.permissions import require_admin
from billing.services.filters import build_where, parse_status, where_sql
from billing.services.invoice_service import attach_payment, lock_invoice
from billing.state_machine import PAYMENT_TRANSITIONS
from clients.postgres_client import PostgresClient, Transaction
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

DEFAULT_REFUND_NOTE = "Refunded by admin"


def summarize_payments(grouped_rows: Iterable[dict[str, Any]]) -> PaymentSummary:
    """
    Fold per-status aggregates into a listing summary.

    Args:
        grouped_rows: Rows of {status, count, total_cents}
    """
    summary = PaymentSummary()
    for row in grouped_rows:
        count = int(row["count"])
        total = int(row["total_cents"] or 0)
        summary.count += count
        summary.total_cents += total
        summary.by_status[row["status"]] = count
        if row["status"] == PaymentStatus.COMPLETED.value:
            summary.completed_cents += total
        elif row["status"] == PaymentStatus.PENDING.value:
            summary.pending_cents += total
        elif row["status"] == PaymentStatus.REFUNDED.value:
            summary.refunded_cents += total
    return summary


class PaymentService:
    """Service for payment operations and the payment -> invoice cascade."""

    def __init__(self, postgres: PostgresClient, audit: AuditLogger, event_bus: EventBus):
        self.postgres = postgres
        self.audit = audit
        self.event_bus = event_bus

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _lock_payment(self, tx: Transaction, payment_id: UUID) -> Payment:
        row = tx.execute_single("SELECT * FROM payments WHERE id = %s FOR UPDATE", (payment_id,))
        if row is None:
            raise NotFoundError("payment", payment_id)
        return Payment.model_validate(row)

    def _insert_payment(
        self,
        tx: Transaction,
        advertiser_id: UUID,
        amount_cents: int,
        method: str,
        status: PaymentStatus,
        transaction_id: str | None,
        notes: str | None,
    ) -> Payment:
        now = now_utc()
        completed_at = now if status == PaymentStatus.COMPLETED else None

        row = tx.execute_returning(
            """
            INSERT INTO payments (
                id, advertiser_id, amount_cents, method, status,
                initiated_at, completed_at, transaction_id, notes,
                created_at, updated_at
            ) VALUES (
                %s, %s, %s, %s, %s,
                %s, %s, %s, %s,
                %s, %s
            )
            RETURNING *
            """,
            (
                uuid4(), advertiser_id, amount_cents, method, status.value,
                now, completed_at, transaction_id, notes,
                now, now
            )
        )[0]
        payment = Payment.model_validate(row)

        self.audit.log_change(
            entity_type="payment",
            entity_id=payment.id,
            action=AuditAction.CREATE,
            changes={
                "created": payment.model_dump(
                    mode="json",
                    include={"advertiser_id", "amount_cents", "method", "status", "transaction_id", "notes"},
                )
            },
            tx=tx,
        )
        return payment

    def _link_invoices(self, tx: Transaction, payment: Payment, invoice_ids: list[UUID]) -> list[Invoice]:
        linked = []
        for invoice_id in dict.fromkeys(invoice_ids):
            invoice = lock_invoice(tx, invoice_id)
            if invoice.advertiser_id != payment.advertiser_id:
                raise InvalidInputError(
                    f"Invoice {invoice.invoice_number} belongs to a different advertiser"
                )
            linked.append(attach_payment(tx, self.audit, invoice, payment.id, payment.status))
        return linked

    def _cascade_completed(self, tx: Transaction, payment_id: UUID) -> list[Invoice]:
        """Mark every linked, non-cancelled invoice PAID. Returns the newly paid ones."""
        rows = tx.execute(
            "SELECT * FROM invoices WHERE payment_id = %s ORDER BY invoice_number FOR UPDATE",
            (payment_id,)
        )
        paid = []
        now = now_utc()
        for row in rows:
            invoice = Invoice.model_validate(row)
            if invoice.status in (InvoiceStatus.CANCELLED, InvoiceStatus.PAID):
                continue

            updated_row = tx.execute_returning(
                "UPDATE invoices SET status = %s, updated_at = %s WHERE id = %s RETURNING *",
                (InvoiceStatus.PAID.value, now, invoice.id)
            )[0]
            self.audit.log_change(
                entity_type="invoice",
                entity_id=invoice.id,
                action=AuditAction.UPDATE,
                changes={
                    "status": {"old": invoice.status.value, "new": InvoiceStatus.PAID.value},
                    "cascade": {"payment_id": str(payment_id), "payment_status": "completed"},
                },
                tx=tx,
            )
            paid.append(Invoice.model_validate(updated_row))
        return paid

    def _cascade_refunded(self, tx: Transaction, payment_id: UUID) -> list[Invoice]:
        """Reopen and detach every linked invoice. Returns the detached invoices."""
        rows = tx.execute(
            "SELECT * FROM invoices WHERE payment_id = %s ORDER BY invoice_number FOR UPDATE",
            (payment_id,)
        )
        detached = []
        now = now_utc()
        for row in rows:
            invoice = Invoice.model_validate(row)
            new_status = (
                InvoiceStatus.CANCELLED if invoice.status == InvoiceStatus.CANCELLED
                else InvoiceStatus.UNPAID
            )

            try:
                updated_row = tx.execute_returning(
                    """
                    UPDATE invoices SET status = %s, payment_id = NULL, updated_at = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (new_status.value, now, invoice.id)
                )[0]
            except psycopg2.errors.UniqueViolation:
                raise ConflictError(
                    f"Refund would reopen invoice {invoice.invoice_number} while its campaign "
                    "already has another open invoice"
                )

            changes = {
                "payment_id": {"old": str(payment_id), "new": None},
                "cascade": {"payment_id": str(payment_id), "payment_status": "refunded"},
            }
            if new_status != invoice.status:
                changes["status"] = {"old": invoice.status.value, "new": new_status.value}
            self.audit.log_change(
                entity_type="invoice",
                entity_id=invoice.id,
                action=AuditAction.UPDATE,
                changes=changes,
                tx=tx,
            )
            detached.append(Invoice.model_validate(updated_row))
        return detached

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def create(self, data: PaymentCreate) -> Payment:
        """
        Record a payment, optionally linking invoices.

        Invoices linked to a payment created as COMPLETED become PAID.

        Raises:
            ForbiddenError: If the actor is not an admin
            InvalidInputError: If created as REFUNDED or an invoice belongs to another advertiser
            NotFoundError: If the advertiser or an invoice does not exist
            ConflictError: If an invoice is cancelled
        """
        require_admin()

        if data.status == PaymentStatus.REFUNDED:
            raise InvalidInputError("A payment cannot be created in refunded status")

        with self.postgres.transaction() as tx:
            advertiser = tx.execute_scalar("SELECT id FROM advertisers WHERE id = %s", (data.advertiser_id,))
            if advertiser is None:
                raise NotFoundError("advertiser", data.advertiser_id)

            payment = self._insert_payment(
                tx, data.advertiser_id, data.amount_cents, data.method.value,
                data.status, data.transaction_id, data.notes,
            )
            linked = self._link_invoices(tx, payment, data.invoice_ids)

        logger.info("Recorded payment %s (%s, %d invoices)", payment.id, payment.status.value, len(linked))

        if payment.status == PaymentStatus.COMPLETED:
            for invoice in linked:
                self.event_bus.publish(InvoicePaid.create(invoice=invoice))
            self.event_bus.publish(PaymentCompleted.create(payment=payment, invoice_ids=[i.id for i in linked]))

        return payment

    def update_status(
        self,
        payment_id: UUID,
        status: PaymentStatus,
        notes: str | None = None
    ) -> Payment:
        """
        Change a payment's status and cascade into linked invoices.

        COMPLETED stamps completed_at and marks linked invoices PAID.
        REFUNDED marks them UNPAID and clears their payment link. A
        same-status update only refreshes notes. The payment write, the
        cascade and all audit rows commit or roll back together.

        Raises:
            ForbiddenError: If the actor is not an admin
            NotFoundError: If the payment does not exist
            InvariantViolationError: If the transition is not allowed
            ConflictError: If a refund would reopen a second open invoice for a campaign
        """
        require_admin()

        paid: list[Invoice] = []
        detached: list[Invoice] = []

        with self.postgres.transaction() as tx:
            current = self._lock_payment(tx, payment_id)
            PAYMENT_TRANSITIONS.ensure(current.status, status)

            changed = status != current.status
            now = now_utc()
            completed_at = now if changed and status == PaymentStatus.COMPLETED else current.completed_at
            new_notes = notes if notes is not None else current.notes

            row = tx.execute_returning(
                """
                UPDATE payments
                SET status = %s, completed_at = %s, notes = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (status.value, completed_at, new_notes, now, payment_id)
            )[0]
            updated = Payment.model_validate(row)

            self.audit.log_change(
                entity_type="payment",
                entity_id=payment_id,
                action=AuditAction.UPDATE,
                changes=compute_changes(
                    current.model_dump(mode="json", include={"status", "completed_at", "notes"}),
                    updated.model_dump(mode="json", include={"status", "completed_at", "notes"}),
                ),
                tx=tx,
            )

            if changed and status == PaymentStatus.COMPLETED:
                paid = self._cascade_completed(tx, payment_id)
            elif changed and status == PaymentStatus.REFUNDED:
                detached = self._cascade_refunded(tx, payment_id)

        logger.info(
            "Payment %s %s -> %s (paid %d, detached %d invoices)",
            payment_id, current.status.value, status.value, len(paid), len(detached),
        )

        if changed and status == PaymentStatus.COMPLETED:
            for invoice in paid:
                self.event_bus.publish(InvoicePaid.create(invoice=invoice))
            self.event_bus.publish(PaymentCompleted.create(payment=updated, invoice_ids=[i.id for i in paid]))
        elif changed and status == PaymentStatus.REFUNDED:
            self.event_bus.publish(PaymentRefunded.create(payment=updated, invoice_ids=[i.id for i in detached]))

        return updated

    def refund(self, payment_id: UUID, notes: str | None = None) -> Payment:
        """
        Refund a completed payment, reopening its invoices.

        Raises:
            Same as update_status
        """
        return self.update_status(payment_id, PaymentStatus.REFUNDED, notes or DEFAULT_REFUND_NOTE)

    def generate_for_invoice(self, invoice_id: UUID, config: BillingConfig) -> tuple[Payment, Invoice]:
        """
        Record the expected payment for an invoice.

        Creates a PENDING payment for the invoice total on the configured
        default rail and links it to the invoice.

        Returns:
            (payment, linked invoice)

        Raises:
            ForbiddenError: If the actor is not an admin
            NotFoundError: If the invoice does not exist
            ConflictError: If the invoice is cancelled
        """
        require_admin()

        with self.postgres.transaction() as tx:
            invoice = lock_invoice(tx, invoice_id)
            if invoice.status == InvoiceStatus.CANCELLED:
                raise ConflictError(f"Invoice {invoice.invoice_number} is cancelled")

            payment = self._insert_payment(
                tx,
                invoice.advertiser_id,
                invoice.total_cents,
                config.invoice.default_payment_method.value,
                PaymentStatus.PENDING,
                None,
                f"Auto-generated for invoice {invoice.invoice_number}",
            )
            linked = attach_payment(tx, self.audit, invoice, payment.id, payment.status)

        logger.info("Generated payment %s for invoice %s", payment.id, invoice.invoice_number)
        return payment, linked

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_by_id(self, payment_id: UUID) -> Payment | None:
        """
        Get payment by ID.

        Returns:
            Payment if found, None otherwise.
        """
        row = self.postgres.execute_single("SELECT * FROM payments WHERE id = %s", (payment_id,))
        if row is None:
            return None
        return Payment.model_validate(row)

    def list_linked_invoices(self, payment_id: UUID) -> list[Invoice]:
        """Invoices currently settled by a payment, by number."""
        rows = self.postgres.execute(
            "SELECT * FROM invoices WHERE payment_id = %s ORDER BY invoice_number",
            (payment_id,)
        )
        return [Invoice.model_validate(row) for row in rows]

    def list_payments(self, filters: ListFilters, page: PageRequest) -> PaymentPage:
        """
        Filtered, paginated payment listing with a summary over all matches.

        Raises:
            ForbiddenError: If the actor is not an admin
            InvalidInputError: If the status filter is not a payment status
        """
        require_admin()
        clauses, params = build_where(
            filters,
            date_column="p.initiated_at",
            amount_column="p.amount_cents",
            search_columns=["p.transaction_id", "p.notes", "a.company_name"],
            advertiser_column="p.advertiser_id",
        )
        status = parse_status(filters.status, PaymentStatus)
        if status is not None:
            clauses.append("p.status = %s")
            params.append(status.value)

        where = where_sql(clauses)

        grouped = self.postgres.execute(
            f"""
            SELECT p.status, COUNT(*) AS count, COALESCE(SUM(p.amount_cents), 0) AS total_cents
            FROM payments p
            JOIN advertisers a ON a.id = p.advertiser_id
            {where}
            GROUP BY p.status
            """,
            tuple(params)
        )
        summary = summarize_payments(grouped)

        rows = self.postgres.execute(
            f"""
            SELECT p.*, a.company_name AS advertiser_name,
                   COALESCE(
                       (SELECT array_agg(i.invoice_number ORDER BY i.invoice_number)
                        FROM invoices i WHERE i.payment_id = p.id),
                       '{{}}'
                   ) AS invoice_numbers
            FROM payments p
            JOIN advertisers a ON a.id = p.advertiser_id
            {where}
            ORDER BY p.initiated_at DESC, p.id
            LIMIT %s OFFSET %s
            """,
            tuple(params + [page.limit, page.offset])
        )

        return PaymentPage(
            payments=[PaymentView.model_validate(row) for row in rows],
            pagination=Pagination.build(summary.count, page),
            summary=summary,
        )
