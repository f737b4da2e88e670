"""Filter, pagination and batch-result models shared by list operations."""

import math
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from billing.models.earning import PartnerEarningView
from billing.models.invoice import InvoiceView
from billing.models.payment import PaymentView


class ListFilters(BaseModel):
    """
    Filters accepted by every ledger listing.

    Dates bound the entity's creation time as [start_date, end_date).
    Amount bounds are inclusive and compare against the listed amount
    (invoice total, payment amount, earning amount). Advertiser and campaign
    scoping apply only to listings whose rows carry those references.
    """

    status: str | None = None
    advertiser_id: UUID | None = None
    campaign_id: UUID | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    min_amount_cents: int | None = Field(None, ge=0)
    max_amount_cents: int | None = Field(None, ge=0)
    search: str | None = Field(None, max_length=200)

    @model_validator(mode="after")
    def check_ranges(self) -> "ListFilters":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        if (
            self.min_amount_cents is not None
            and self.max_amount_cents is not None
            and self.min_amount_cents > self.max_amount_cents
        ):
            raise ValueError("min_amount_cents must not exceed max_amount_cents")
        return self


class PageRequest(BaseModel):
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=500)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    pages: int

    @classmethod
    def build(cls, total: int, page: PageRequest) -> "Pagination":
        return cls(
            total=total,
            page=page.page,
            limit=page.limit,
            pages=math.ceil(total / page.limit) if total else 0,
        )


class InvoiceSummary(BaseModel):
    """Totals over every invoice matching the filters, not just the page."""

    count: int = 0
    total_cents: int = 0
    outstanding_cents: int = 0
    paid_cents: int = 0
    overdue_count: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)


class PaymentSummary(BaseModel):
    count: int = 0
    total_cents: int = 0
    completed_cents: int = 0
    pending_cents: int = 0
    refunded_cents: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)


class PayoutSummary(BaseModel):
    count: int = 0
    total_cents: int = 0
    pending_cents: int = 0
    paid_cents: int = 0
    total_impressions: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)


class InvoicePage(BaseModel):
    invoices: list[InvoiceView]
    pagination: Pagination
    summary: InvoiceSummary


class PaymentPage(BaseModel):
    payments: list[PaymentView]
    pagination: Pagination
    summary: PaymentSummary


class PayoutPage(BaseModel):
    payouts: list[PartnerEarningView]
    pagination: Pagination
    summary: PayoutSummary


class SkippedItem(BaseModel):
    """An entity a batch run did not produce a row for, and why."""

    entity_id: UUID
    reason: str


class BatchResult(BaseModel):
    """
    Outcome of a batch generation run.

    `generated` holds the rows written by this run; `skipped` lists every
    input entity that produced nothing. One entity's failure never aborts
    the rest of the batch.
    """

    generated: list = Field(default_factory=list)
    skipped: list[SkippedItem] = Field(default_factory=list)

    def skip(self, entity_id: UUID, reason: str) -> None:
        self.skipped.append(SkippedItem(entity_id=entity_id, reason=reason))
