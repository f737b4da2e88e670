"""Tests for status transition tables."""

import pytest

from billing.exceptions import InvariantViolationError
from billing.models import EarningStatus, InvoiceStatus, PaymentStatus
from billing.state_machine import EARNING_TRANSITIONS, INVOICE_TRANSITIONS, PAYMENT_TRANSITIONS


class TestInvoiceTransitions:

    @pytest.mark.parametrize("current", [s for s in InvoiceStatus if s != InvoiceStatus.CANCELLED])
    @pytest.mark.parametrize("requested", list(InvoiceStatus))
    def test_open_states_reach_anything(self, current, requested):
        assert INVOICE_TRANSITIONS.ensure(current, requested) == requested

    def test_cancelled_is_terminal(self):
        assert INVOICE_TRANSITIONS.is_terminal(InvoiceStatus.CANCELLED)
        with pytest.raises(InvariantViolationError, match="cancelled"):
            INVOICE_TRANSITIONS.ensure(InvoiceStatus.CANCELLED, InvoiceStatus.CANCELLED)


class TestPaymentTransitions:

    @pytest.mark.parametrize("current,requested", [
        (PaymentStatus.PENDING, PaymentStatus.COMPLETED),
        (PaymentStatus.PENDING, PaymentStatus.FAILED),
        (PaymentStatus.FAILED, PaymentStatus.PENDING),
        (PaymentStatus.FAILED, PaymentStatus.COMPLETED),
        (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED),
        (PaymentStatus.PENDING, PaymentStatus.PENDING),
    ])
    def test_allowed(self, current, requested):
        assert PAYMENT_TRANSITIONS.can_transition(current, requested)

    @pytest.mark.parametrize("current,requested", [
        (PaymentStatus.PENDING, PaymentStatus.REFUNDED),
        (PaymentStatus.COMPLETED, PaymentStatus.PENDING),
        (PaymentStatus.COMPLETED, PaymentStatus.FAILED),
        (PaymentStatus.REFUNDED, PaymentStatus.COMPLETED),
        (PaymentStatus.REFUNDED, PaymentStatus.REFUNDED),
    ])
    def test_rejected(self, current, requested):
        with pytest.raises(InvariantViolationError) as exc_info:
            PAYMENT_TRANSITIONS.ensure(current, requested)

        assert exc_info.value.current == current.value
        assert exc_info.value.requested == requested.value


class TestEarningTransitions:

    def test_happy_path(self):
        assert EARNING_TRANSITIONS.can_transition(EarningStatus.PENDING, EarningStatus.PROCESSED)
        assert EARNING_TRANSITIONS.can_transition(EarningStatus.PROCESSED, EarningStatus.PAID)

    def test_pending_can_be_paid_or_cancelled(self):
        assert EARNING_TRANSITIONS.can_transition(EarningStatus.PENDING, EarningStatus.PAID)
        assert EARNING_TRANSITIONS.can_transition(EarningStatus.PENDING, EarningStatus.CANCELLED)

    def test_same_status_not_allowed(self):
        assert not EARNING_TRANSITIONS.can_transition(EarningStatus.PENDING, EarningStatus.PENDING)

    @pytest.mark.parametrize("terminal", [EarningStatus.PAID, EarningStatus.CANCELLED])
    def test_terminal_states(self, terminal):
        assert EARNING_TRANSITIONS.is_terminal(terminal)
        for requested in EarningStatus:
            assert not EARNING_TRANSITIONS.can_transition(terminal, requested)

    def test_error_message_names_entity(self):
        with pytest.raises(InvariantViolationError, match="Cannot move partner earning from 'paid' to 'pending'"):
            EARNING_TRANSITIONS.ensure(EarningStatus.PAID, EarningStatus.PENDING)
