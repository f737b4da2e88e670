"""Payment domain models.

Amounts in cents. A payment may settle several invoices; the link lives on
the invoice side (invoices.payment_id).
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


class PaymentStatus(str, Enum):
    """Payment lifecycle status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    """Payment rails. Also used as the payout rail for partner earnings."""

    VISA = "visa"
    MASTERCARD = "mastercard"
    AMEX = "amex"
    CREDIT_CARD = "credit_card"
    MPESA = "mpesa"
    FLUTTERWAVE = "flutterwave"
    PAYPAL = "paypal"
    STRIPE = "stripe"
    BANK_TRANSFER = "bank_transfer"
    OTHER = "other"


class PaymentCreate(BaseModel):
    """Data required to record a payment."""

    advertiser_id: UUID
    amount_cents: int = Field(..., ge=0)
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: str | None = Field(None, max_length=200)
    notes: str | None = Field(None, max_length=2000)
    invoice_ids: list[UUID] = Field(default_factory=list)


class Payment(BaseModel):
    """Full payment entity as stored."""

    id: UUID
    advertiser_id: UUID
    amount_cents: int
    method: PaymentMethod
    status: PaymentStatus
    initiated_at: datetime
    completed_at: datetime | None
    transaction_id: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PaymentView(Payment):
    """Payment row enriched for listings."""

    advertiser_name: str | None = None
    invoice_numbers: list[str] = Field(default_factory=list)
