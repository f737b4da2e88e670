"""
Status transition tables for ledger entities.

Each entity's lifecycle is declared as data (current state -> allowed next
states) so illegal moves are rejected in one place rather than by scattered
conditionals in the services.
"""

from enum import Enum
from typing import Generic, Mapping, TypeVar

from billing.exceptions import InvariantViolationError
from billing.models import EarningStatus, InvoiceStatus, PaymentStatus

S = TypeVar("S", bound=Enum)


class TransitionTable(Generic[S]):
    """Allowed status transitions for one entity type."""

    def __init__(
        self,
        entity_type: str,
        transitions: Mapping[S, frozenset[S]],
        allow_same: bool = False,
    ):
        self.entity_type = entity_type
        self._transitions = dict(transitions)
        self._allow_same = allow_same

    def is_terminal(self, state: S) -> bool:
        """Whether no transition leaves this state."""
        return not self._transitions.get(state)

    def can_transition(self, current: S, requested: S) -> bool:
        if self.is_terminal(current):
            return False
        if current == requested:
            return self._allow_same
        return requested in self._transitions.get(current, frozenset())

    def ensure(self, current: S, requested: S) -> S:
        """
        Validate a transition.

        Returns:
            The requested state

        Raises:
            InvariantViolationError: If the move is not in the table
        """
        if not self.can_transition(current, requested):
            raise InvariantViolationError(self.entity_type, current.value, requested.value)
        return requested


_ALL_INVOICE = frozenset(InvoiceStatus)

# Admins may set any invoice status directly (manual reconciliation); only
# CANCELLED is a dead end.
INVOICE_TRANSITIONS: TransitionTable[InvoiceStatus] = TransitionTable(
    "invoice",
    {
        InvoiceStatus.UNPAID: _ALL_INVOICE,
        InvoiceStatus.PARTIALLY_PAID: _ALL_INVOICE,
        InvoiceStatus.PAID: _ALL_INVOICE,
        InvoiceStatus.OVERDUE: _ALL_INVOICE,
        InvoiceStatus.CANCELLED: frozenset(),
    },
    allow_same=True,
)

PAYMENT_TRANSITIONS: TransitionTable[PaymentStatus] = TransitionTable(
    "payment",
    {
        PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
        PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING, PaymentStatus.COMPLETED}),
        PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
        PaymentStatus.REFUNDED: frozenset(),
    },
    allow_same=True,
)

EARNING_TRANSITIONS: TransitionTable[EarningStatus] = TransitionTable(
    "partner_earning",
    {
        EarningStatus.PENDING: frozenset({
            EarningStatus.PROCESSED, EarningStatus.PAID, EarningStatus.CANCELLED,
        }),
        EarningStatus.PROCESSED: frozenset({EarningStatus.PAID, EarningStatus.CANCELLED}),
        EarningStatus.PAID: frozenset(),
        EarningStatus.CANCELLED: frozenset(),
    },
)
