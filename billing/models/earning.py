"""Partner earning domain models.

One row per (partner, period). The period is half-open: [period_start, period_end).
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel

from billing.models.payment import PaymentMethod


class EarningStatus(str, Enum):
    """Payout lifecycle status of a partner earning."""

    PENDING = "pending"
    PROCESSED = "processed"
    PAID = "paid"
    CANCELLED = "cancelled"


class PartnerEarning(BaseModel):
    """Full partner earning entity as stored."""

    id: UUID
    partner_id: UUID
    period_start: datetime
    period_end: datetime
    total_impressions: int
    total_engagements: int
    amount_cents: int
    status: EarningStatus
    paid_date: datetime | None
    transaction_id: str | None
    payout_method: PaymentMethod | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PartnerEarningView(PartnerEarning):
    """Earning row enriched for payout listings."""

    partner_name: str | None = None
