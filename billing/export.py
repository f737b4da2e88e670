"""
Invoice export rendering.

Amounts are written in currency units with two decimals, dates as
YYYY-MM-DD, and absent payment details as "N/A".
"""

import csv
import io
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable

from billing.models import InvoiceExportRow

NOT_AVAILABLE = "N/A"

EXPORT_COLUMNS = [
    ("invoice_number", "Invoice Number"),
    ("advertiser", "Advertiser"),
    ("campaign", "Campaign"),
    ("amount", "Amount"),
    ("tax", "Tax"),
    ("total", "Total"),
    ("status", "Status"),
    ("due_date", "Due Date"),
    ("created_date", "Created Date"),
    ("payment_status", "Payment Status"),
    ("payment_date", "Payment Date"),
    ("payment_method", "Payment Method"),
]


def format_cents(cents: int) -> str:
    """1160000 -> '11600.00'."""
    return f"{Decimal(cents) / 100:.2f}"


def _day(value: datetime | None) -> str:
    return value.date().isoformat() if value is not None else NOT_AVAILABLE


def export_record(row: InvoiceExportRow) -> dict[str, str]:
    """Flat string record keyed by EXPORT_COLUMNS ids."""
    return {
        "invoice_number": row.invoice_number,
        "advertiser": row.advertiser_name,
        "campaign": row.campaign_name,
        "amount": format_cents(row.amount_cents),
        "tax": format_cents(row.tax_cents),
        "total": format_cents(row.total_cents),
        "status": row.status.value,
        "due_date": _day(row.due_date),
        "created_date": _day(row.created_at),
        "payment_status": row.payment_status or NOT_AVAILABLE,
        "payment_date": _day(row.payment_completed_at),
        "payment_method": row.payment_method or NOT_AVAILABLE,
    }


def render_csv(rows: Iterable[InvoiceExportRow]) -> str:
    """CSV document with a title header row."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow([title for _, title in EXPORT_COLUMNS])
    for row in rows:
        record = export_record(row)
        writer.writerow([record[key] for key, _ in EXPORT_COLUMNS])
    return buffer.getvalue()


def export_filename(today: date, extension: str) -> str:
    return f"invoices-export-{today.isoformat()}.{extension}"
