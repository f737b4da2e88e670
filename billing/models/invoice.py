"""Invoice domain models.

All amounts are stored in cents (integer) to avoid floating point issues.
$10.00 = 1000 cents. Tax rate is basis points (10000 = 100%).
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class InvoiceStatus(str, Enum):
    """Invoice lifecycle status."""

    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


OPEN_INVOICE_STATUSES = (InvoiceStatus.UNPAID, InvoiceStatus.PARTIALLY_PAID)


def compute_tax_cents(amount_cents: int, tax_rate_bps: int) -> int:
    """Tax on a pre-tax amount, rounded half-up to the cent."""
    return (amount_cents * tax_rate_bps + 5000) // 10000


class InvoiceLineItem(BaseModel):
    """One billed line, frozen into the invoice at creation time."""

    description: str = Field(..., max_length=500)
    quantity: int = Field(1, ge=1)
    unit_price_cents: int = Field(..., ge=0)
    amount_cents: int = Field(..., ge=0)


class InvoiceLineItemCreate(BaseModel):
    """Line item supplied by an admin creating an invoice by hand."""

    description: str = Field(..., min_length=1, max_length=500)
    quantity: int = Field(1, ge=1)
    unit_price_cents: int = Field(..., ge=0)

    @property
    def amount_cents(self) -> int:
        return self.quantity * self.unit_price_cents


class InvoiceCreate(BaseModel):
    """Data required to create an invoice from explicit admin input."""

    campaign_id: UUID
    due_date: datetime
    line_items: list[InvoiceLineItemCreate] = Field(..., min_length=1)
    tax_rate_bps: int | None = Field(None, ge=0, le=10000)


class Invoice(BaseModel):
    """Full invoice entity as stored."""

    id: UUID
    invoice_number: str
    advertiser_id: UUID
    campaign_id: UUID
    payment_id: UUID | None
    line_items: list[InvoiceLineItem]
    amount_cents: int
    tax_rate_bps: int
    tax_cents: int
    total_cents: int
    due_date: datetime
    status: InvoiceStatus
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @model_validator(mode="after")
    def check_total(self) -> "Invoice":
        if self.total_cents != self.amount_cents + self.tax_cents:
            raise ValueError(
                f"Invoice total {self.total_cents} does not equal "
                f"amount {self.amount_cents} + tax {self.tax_cents}"
            )
        return self


def is_overdue(invoice: Invoice, now: datetime) -> bool:
    """
    Whether an invoice is past due.

    Only UNPAID invoices become overdue; PAID, PARTIALLY_PAID and CANCELLED
    never do regardless of date.
    """
    return invoice.status == InvoiceStatus.UNPAID and now > invoice.due_date


class InvoiceView(Invoice):
    """Invoice row enriched for listings."""

    advertiser_name: str | None = None
    campaign_name: str | None = None
    payment_status: str | None = None
    overdue: bool = False


class InvoiceExportRow(BaseModel):
    """One invoice flattened with its advertiser, campaign and payment."""

    invoice_number: str
    advertiser_name: str
    campaign_name: str
    amount_cents: int
    tax_cents: int
    total_cents: int
    status: InvoiceStatus
    due_date: datetime
    created_at: datetime
    payment_status: str | None = None
    payment_completed_at: datetime | None = None
    payment_method: str | None = None

    model_config = {"from_attributes": True}
