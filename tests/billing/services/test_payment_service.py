"""Tests for PaymentService and the payment -> invoice cascade."""

from datetime import timedelta
from uuid import uuid4

import pytest

from billing.exceptions import (
    ConflictError, ForbiddenError, InvalidInputError, InvariantViolationError, NotFoundError,
)
from billing.models import (
    InvoiceStatus, ListFilters, PageRequest, PaymentCreate, PaymentMethod, PaymentStatus,
)
from billing.services.payment_service import DEFAULT_REFUND_NOTE
from utils.timezone import now_utc

pytestmark = pytest.mark.usefixtures("clean_db")


@pytest.fixture
def advertiser(seed):
    return seed.advertiser("Acme Ads")


@pytest.fixture
def invoices(as_admin, seed, advertiser, invoice_service, config):
    """Two unpaid invoices for the advertiser: 116.00 and 232.00."""
    first = seed.campaign(advertiser, name="First", budget_cents=10000)
    second = seed.campaign(advertiser, name="Second", budget_cents=20000)
    result = invoice_service.generate_invoices([first, second], now_utc() + timedelta(days=30), config)
    return result.generated


def _payment(advertiser, invoices=(), status=PaymentStatus.PENDING, amount_cents=34800):
    return PaymentCreate(
        advertiser_id=advertiser,
        amount_cents=amount_cents,
        method=PaymentMethod.BANK_TRANSFER,
        status=status,
        transaction_id="TX-1001",
        invoice_ids=[i.id for i in invoices],
    )


class TestCreate:

    def test_pending_payment_links_without_settling(self, payment_service, invoice_service, advertiser, invoices):
        payment = payment_service.create(_payment(advertiser, invoices))

        assert payment.status == PaymentStatus.PENDING
        assert payment.completed_at is None
        for invoice in invoices:
            stored = invoice_service.get_by_id(invoice.id)
            assert stored.payment_id == payment.id
            assert stored.status == InvoiceStatus.UNPAID

    def test_completed_payment_settles_invoices(self, payment_service, invoice_service, advertiser, invoices, published):
        payment = payment_service.create(_payment(advertiser, invoices, status=PaymentStatus.COMPLETED))

        assert payment.completed_at is not None
        assert all(invoice_service.get_by_id(i.id).status == InvoiceStatus.PAID for i in invoices)
        names = [type(e).__name__ for e in published]
        assert names == ["InvoicePaid", "InvoicePaid", "PaymentCompleted"]
        assert set(published[-1].invoice_ids) == {i.id for i in invoices}

    def test_cannot_create_refunded(self, payment_service, advertiser, invoices):
        with pytest.raises(InvalidInputError):
            payment_service.create(_payment(advertiser, status=PaymentStatus.REFUNDED))

    def test_missing_advertiser(self, payment_service, invoices):
        with pytest.raises(NotFoundError):
            payment_service.create(_payment(uuid4()))

    def test_foreign_invoice_rolls_back_payment(self, payment_service, seed, invoices):
        other = seed.advertiser("Other Co")

        with pytest.raises(InvalidInputError):
            payment_service.create(_payment(other, invoices))

        page = payment_service.list_payments(ListFilters(), PageRequest())
        assert page.summary.count == 0

    def test_requires_admin(self, as_advertiser, payment_service, advertiser):
        with pytest.raises(ForbiddenError):
            payment_service.create(_payment(advertiser))


class TestStatusCascade:

    @pytest.fixture
    def pending(self, payment_service, advertiser, invoices):
        return payment_service.create(_payment(advertiser, invoices))

    def test_completion_marks_invoices_paid(self, payment_service, invoice_service, pending, invoices):
        updated = payment_service.update_status(pending.id, PaymentStatus.COMPLETED)

        assert updated.status == PaymentStatus.COMPLETED
        assert updated.completed_at is not None
        assert all(invoice_service.get_by_id(i.id).status == InvoiceStatus.PAID for i in invoices)

    def test_refund_reopens_and_detaches(self, payment_service, invoice_service, pending, invoices, published):
        payment_service.update_status(pending.id, PaymentStatus.COMPLETED)
        published.clear()

        refunded = payment_service.refund(pending.id)

        assert refunded.status == PaymentStatus.REFUNDED
        assert refunded.notes == DEFAULT_REFUND_NOTE
        for invoice in invoices:
            stored = invoice_service.get_by_id(invoice.id)
            assert stored.status == InvoiceStatus.UNPAID
            assert stored.payment_id is None
        assert [type(e).__name__ for e in published] == ["PaymentRefunded"]
        assert payment_service.list_linked_invoices(pending.id) == []

    def test_cancelled_invoice_survives_completion(self, payment_service, invoice_service, pending, invoices):
        invoice_service.cancel(invoices[0].id)

        payment_service.update_status(pending.id, PaymentStatus.COMPLETED)

        assert invoice_service.get_by_id(invoices[0].id).status == InvoiceStatus.CANCELLED
        assert invoice_service.get_by_id(invoices[1].id).status == InvoiceStatus.PAID

    def test_pending_cannot_be_refunded(self, payment_service, pending):
        with pytest.raises(InvariantViolationError):
            payment_service.refund(pending.id)

    def test_refunded_is_terminal(self, payment_service, pending):
        payment_service.update_status(pending.id, PaymentStatus.COMPLETED)
        payment_service.refund(pending.id)

        with pytest.raises(InvariantViolationError):
            payment_service.update_status(pending.id, PaymentStatus.COMPLETED)

    def test_failed_can_retry(self, payment_service, pending):
        payment_service.update_status(pending.id, PaymentStatus.FAILED)

        retried = payment_service.update_status(pending.id, PaymentStatus.PENDING, notes="Retrying")

        assert retried.status == PaymentStatus.PENDING
        assert retried.notes == "Retrying"

    def test_refund_conflicts_with_newer_open_invoice(
        self, payment_service, invoice_service, pending, invoices, config
    ):
        payment_service.update_status(pending.id, PaymentStatus.COMPLETED)
        invoice_service.generate_invoices([invoices[0].campaign_id], now_utc() + timedelta(days=30), config)

        with pytest.raises(ConflictError):
            payment_service.refund(pending.id)

        assert payment_service.get_by_id(pending.id).status == PaymentStatus.COMPLETED
        assert invoice_service.get_by_id(invoices[0].id).status == InvoiceStatus.PAID

    def test_missing_payment(self, payment_service, invoices):
        with pytest.raises(NotFoundError):
            payment_service.update_status(uuid4(), PaymentStatus.COMPLETED)


class TestGenerateForInvoice:

    def test_creates_pending_payment_for_total(self, payment_service, invoices, config):
        payment, invoice = payment_service.generate_for_invoice(invoices[0].id, config)

        assert payment.status == PaymentStatus.PENDING
        assert payment.amount_cents == invoices[0].total_cents
        assert payment.method == PaymentMethod.BANK_TRANSFER
        assert payment.notes == f"Auto-generated for invoice {invoices[0].invoice_number}"
        assert invoice.payment_id == payment.id
        assert invoice.status == InvoiceStatus.UNPAID

    def test_cancelled_invoice_rejected(self, payment_service, invoice_service, invoices, config):
        invoice_service.cancel(invoices[0].id)

        with pytest.raises(ConflictError):
            payment_service.generate_for_invoice(invoices[0].id, config)


class TestListPayments:

    def test_lists_with_invoice_numbers_and_summary(self, payment_service, advertiser, invoices):
        payment_service.create(_payment(advertiser, invoices, status=PaymentStatus.COMPLETED))
        payment_service.create(_payment(advertiser, amount_cents=500))

        page = payment_service.list_payments(ListFilters(), PageRequest())

        assert page.summary.count == 2
        assert page.summary.completed_cents == 34800
        assert page.summary.pending_cents == 500
        linked = [p for p in page.payments if p.status == PaymentStatus.COMPLETED][0]
        assert linked.advertiser_name == "Acme Ads"
        assert linked.invoice_numbers == sorted(i.invoice_number for i in invoices)

    def test_status_filter(self, payment_service, advertiser, invoices):
        payment_service.create(_payment(advertiser, status=PaymentStatus.COMPLETED))
        payment_service.create(_payment(advertiser))

        page = payment_service.list_payments(ListFilters(status="PENDING"), PageRequest())

        assert [p.status for p in page.payments] == [PaymentStatus.PENDING]

    def test_advertiser_filter(self, payment_service, advertiser, invoices, seed):
        other = seed.advertiser("Other Co")
        payment_service.create(_payment(advertiser))
        payment_service.create(_payment(other, amount_cents=700))

        page = payment_service.list_payments(ListFilters(advertiser_id=other), PageRequest())

        assert [p.amount_cents for p in page.payments] == [700]

    def test_campaign_filter_not_supported(self, payment_service, invoices):
        with pytest.raises(InvalidInputError, match="campaign_id"):
            payment_service.list_payments(ListFilters(campaign_id=uuid4()), PageRequest())
