"""
Billing configuration snapshot.

Tax, commission, invoice and report defaults live in the system_config table
as JSONB rows, one per settings group. They are folded into an immutable
BillingConfig and passed into engine calls, so the computations never read
global state.
"""

from decimal import Decimal
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, Field

from billing.models.payment import PaymentMethod
from billing.models.report import Granularity


class TaxSettings(BaseModel):
    """Flat tax applied to every generated invoice."""

    model_config = {"frozen": True}

    rate_bps: int = Field(
        default=1600,
        description="Tax rate in basis points (1600 = 16%)",
        ge=0,
        le=10000,
    )


class CommissionSettings(BaseModel):
    """Partner revenue share defaults."""

    model_config = {"frozen": True}

    default_rate: Decimal = Field(
        default=Decimal("0.3"),
        description="Commission used when a partner has none of its own",
        ge=0,
        le=1,
    )


class InvoiceSettings(BaseModel):
    model_config = {"frozen": True}

    number_prefix: str = Field(
        default="INV",
        description="Prefix of human-readable invoice numbers",
        min_length=1,
        max_length=10,
    )
    number_width: int = Field(
        default=6,
        description="Zero-padded width of the invoice sequence",
        ge=1,
        le=12,
    )
    due_days: int = Field(
        default=30,
        description="Days until due when a generation request omits a due date",
        ge=0,
        le=365,
    )
    default_payment_method: PaymentMethod = Field(
        default=PaymentMethod.BANK_TRANSFER,
        description="Rail used for payments generated from an invoice",
    )


class ReportSettings(BaseModel):
    model_config = {"frozen": True}

    default_granularity: Granularity = Granularity.MONTH
    default_lookback_months: int = Field(
        default=12,
        description="Report range when no start date is given",
        ge=1,
        le=120,
    )
    trend_fallback_days: int = Field(
        default=30,
        description="Previous-window length when the current window is unusable",
        ge=1,
        le=366,
    )
    partner_cache_ttl_seconds: int = Field(
        default=300,
        description="How long partner analytics summaries stay cached",
        ge=0,
        le=86400,
    )


# system_config key -> BillingConfig field
CONFIG_KEYS = {
    "tax_settings": "tax",
    "commission_rates": "commission",
    "invoice_settings": "invoice",
    "report_settings": "report",
}


class BillingConfig(BaseModel):
    """Immutable snapshot of every billing setting."""

    model_config = {"frozen": True}

    tax: TaxSettings = Field(default_factory=TaxSettings)
    commission: CommissionSettings = Field(default_factory=CommissionSettings)
    invoice: InvoiceSettings = Field(default_factory=InvoiceSettings)
    report: ReportSettings = Field(default_factory=ReportSettings)

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, Any]]) -> "BillingConfig":
        """
        Build a snapshot from system_config rows.

        Rows with unknown keys are ignored; missing groups and missing fields
        within a group keep their defaults.

        Raises:
            pydantic.ValidationError: If a stored value is out of bounds
        """
        values = {}
        for row in rows:
            field_name = CONFIG_KEYS.get(row["config_key"])
            if field_name is not None:
                values[field_name] = row["config_value"] or {}
        return cls.model_validate(values)

    def format_invoice_number(self, sequence: int) -> str:
        """INV-000042 style number for the given sequence."""
        return f"{self.invoice.number_prefix}-{sequence:0{self.invoice.number_width}d}"
