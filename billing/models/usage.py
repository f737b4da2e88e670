"""Usage totals and the records they are reduced from."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class UsageTotals(BaseModel):
    """Impression/engagement/completion totals for a device set and window."""

    impressions: int = Field(0, ge=0)
    engagements: int = Field(0, ge=0)
    completions: int = Field(0, ge=0)

    model_config = {"frozen": True}


def reconcile_usage(*sources: UsageTotals | None) -> UsageTotals:
    """
    Combine independent usage sources into one figure.

    Delivery logs, analytics rollups and earlier snapshots come from
    different pipelines and disagree. Each metric takes the highest value
    any source reports. Missing sources are ignored; no sources means zero.
    """
    present = [s for s in sources if s is not None]
    if not present:
        return UsageTotals()

    return UsageTotals(
        impressions=max(s.impressions for s in present),
        engagements=max(s.engagements for s in present),
        completions=max(s.completions for s in present),
    )


class CampaignRecord(BaseModel):
    """Campaign as consumed from the campaign store."""

    id: UUID
    advertiser_id: UUID
    name: str
    budget_cents: int
    cost_data: Any = None

    model_config = {"from_attributes": True}


class PartnerRecord(BaseModel):
    """Partner as consumed from the partner store, with its devices."""

    id: UUID
    company_name: str
    user_id: UUID | None = None
    commission_rate: Decimal | None = None
    device_ids: list[UUID] = Field(default_factory=list)

    model_config = {"from_attributes": True}
