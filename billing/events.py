"""
Domain events for billing.

Immutable event objects describing ledger state changes that have already
committed. Services publish after their transaction closes; handlers react
without the publisher knowing who is listening.

Event Categories:
- InvoiceEvent: invoice paid or cancelled
- PaymentEvent: payment completed or refunded
- EarningEvent: earnings generated, payout paid
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from utils.timezone import now_utc


@dataclass(frozen=True, kw_only=True)
class BillingEvent:
    """Base class for all billing domain events."""
    event_id: str = field(default_factory=lambda: str(uuid4()))
    occurred_at: datetime = field(default_factory=now_utc)


# =============================================================================
# INVOICE EVENTS
# =============================================================================


@dataclass(frozen=True)
class InvoiceEvent(BillingEvent):
    """Events related to invoice lifecycle."""
    pass


@dataclass(frozen=True)
class InvoicePaid(InvoiceEvent):
    """Invoice moved to PAID (directly or by payment cascade)."""
    invoice: Any = None  # Invoice, kept as Any to avoid a models import cycle

    @classmethod
    def create(cls, invoice: Any) -> "InvoicePaid":
        return cls(invoice=invoice)


@dataclass(frozen=True)
class InvoiceCancelled(InvoiceEvent):
    """Invoice was cancelled."""
    invoice: Any = None

    @classmethod
    def create(cls, invoice: Any) -> "InvoiceCancelled":
        return cls(invoice=invoice)


# =============================================================================
# PAYMENT EVENTS
# =============================================================================


@dataclass(frozen=True)
class PaymentEvent(BillingEvent):
    """Events related to payment lifecycle."""
    pass


@dataclass(frozen=True)
class PaymentCompleted(PaymentEvent):
    """Payment completed; linked invoices have been marked paid."""
    payment: Any = None
    invoice_ids: tuple[UUID, ...] = ()

    @classmethod
    def create(cls, payment: Any, invoice_ids: list[UUID]) -> "PaymentCompleted":
        return cls(payment=payment, invoice_ids=tuple(invoice_ids))


@dataclass(frozen=True)
class PaymentRefunded(PaymentEvent):
    """Payment refunded; previously linked invoices were reopened and detached."""
    payment: Any = None
    invoice_ids: tuple[UUID, ...] = ()

    @classmethod
    def create(cls, payment: Any, invoice_ids: list[UUID]) -> "PaymentRefunded":
        return cls(payment=payment, invoice_ids=tuple(invoice_ids))


# =============================================================================
# EARNING EVENTS
# =============================================================================


@dataclass(frozen=True)
class EarningEvent(BillingEvent):
    """Events related to partner earnings and payouts."""
    pass


@dataclass(frozen=True)
class EarningsGenerated(EarningEvent):
    """An earning row was inserted or refreshed for a partner and period."""
    earning: Any = None

    @classmethod
    def create(cls, earning: Any) -> "EarningsGenerated":
        return cls(earning=earning)


@dataclass(frozen=True)
class PayoutPaid(EarningEvent):
    """An earning was paid out to its partner."""
    earning: Any = None

    @classmethod
    def create(cls, earning: Any) -> "PayoutPaid":
        return cls(earning=earning)
