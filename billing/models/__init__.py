"""Billing domain models."""

from billing.models.invoice import (
    Invoice, InvoiceCreate, InvoiceExportRow, InvoiceLineItem, InvoiceLineItemCreate, InvoiceStatus,
    InvoiceView, OPEN_INVOICE_STATUSES, compute_tax_cents, is_overdue,
)
from billing.models.payment import Payment, PaymentCreate, PaymentMethod, PaymentStatus, PaymentView
from billing.models.earning import EarningStatus, PartnerEarning, PartnerEarningView
from billing.models.usage import CampaignRecord, PartnerRecord, UsageTotals, reconcile_usage
from billing.models.listing import (
    BatchResult, InvoicePage, InvoiceSummary, ListFilters, PageRequest, Pagination,
    PaymentPage, PaymentSummary, PayoutPage, PayoutSummary, SkippedItem,
)
from billing.models.report import (
    AnalyticsPeriod, Granularity, MethodShare, Metric, Overview, PartnerSummary,
    Report, ReportRow, ReportType,
)

__all__ = [
    # Invoice
    "Invoice", "InvoiceCreate", "InvoiceExportRow", "InvoiceLineItem", "InvoiceLineItemCreate", "InvoiceStatus",
    "InvoiceView", "OPEN_INVOICE_STATUSES", "compute_tax_cents", "is_overdue",
    # Payment
    "Payment", "PaymentCreate", "PaymentMethod", "PaymentStatus", "PaymentView",
    # Earning
    "EarningStatus", "PartnerEarning", "PartnerEarningView",
    # Usage
    "CampaignRecord", "PartnerRecord", "UsageTotals", "reconcile_usage",
    # Listing
    "BatchResult", "InvoicePage", "InvoiceSummary", "ListFilters", "PageRequest", "Pagination",
    "PaymentPage", "PaymentSummary", "PayoutPage", "PayoutSummary", "SkippedItem",
    # Report
    "AnalyticsPeriod", "Granularity", "MethodShare", "Metric", "Overview", "PartnerSummary",
    "Report", "ReportRow", "ReportType",
]
