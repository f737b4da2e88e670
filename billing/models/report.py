"""Report, overview and partner summary models."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from billing.models.earning import PartnerEarning


class ReportType(str, Enum):
    REVENUE = "revenue"
    PAYOUTS = "payouts"
    INVOICES = "invoices"
    PAYMENT_METHODS = "payment-methods"


class Granularity(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


class ReportRow(BaseModel):
    """One time bucket. `status` is set only for the invoices report."""

    period: str
    amount_cents: int
    count: int
    status: str | None = None


class MethodShare(BaseModel):
    method: str
    amount_cents: int
    count: int
    percentage: float


class Report(BaseModel):
    report_type: ReportType
    start_date: datetime
    end_date: datetime
    granularity: Granularity
    rows: list[ReportRow] = Field(default_factory=list)
    methods: list[MethodShare] = Field(default_factory=list)


class Metric(BaseModel):
    """A current-window value with its change against the previous window."""

    value: float
    previous: float
    change_percent: float


class Overview(BaseModel):
    start_date: datetime
    end_date: datetime
    total_revenue: Metric
    partner_payouts: Metric
    outstanding_invoices: Metric
    average_transaction: Metric


class AnalyticsPeriod(str, Enum):
    """Lookback presets for partner analytics."""

    SEVEN_DAYS = "7days"
    THIRTY_DAYS = "30days"
    NINETY_DAYS = "90days"
    YEAR = "year"
    ALL = "all"


class PartnerSummary(BaseModel):
    partner_id: UUID
    partner_name: str
    period: AnalyticsPeriod
    start_date: datetime
    end_date: datetime
    device_count: int
    impressions: int
    engagements: int
    completions: int
    engagement_rate: float
    estimated_earnings_cents: int
    impressions_trend: float
    engagements_trend: float
    recent_earnings: list[PartnerEarning] = Field(default_factory=list)
