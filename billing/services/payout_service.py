"""
Payout workflow over partner earnings.

PENDING -> PROCESSED -> PAID, with CANCELLED reachable from either open
state. PAID and CANCELLED are terminal. PAID needs settlement evidence: a
transaction id and the rail it was paid on.
"""

import logging
from uuid import UUID

from billing.audit import AuditAction, AuditLogger, compute_changes
from billing.event_bus import EventBus
from billing.events import PayoutPaid
from billing.exceptions import InvalidInputError, NotFoundError
from billing.models import EarningStatus, PartnerEarning, PaymentMethod
from billing.permissions import require_admin
from billing.state_machine import EARNING_TRANSITIONS
from clients.postgres_client import PostgresClient
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

_AUDITED_FIELDS = {"status", "paid_date", "transaction_id", "payout_method"}


class PayoutService:
    """Moves partner earnings through their payout states."""

    def __init__(self, postgres: PostgresClient, audit: AuditLogger, event_bus: EventBus):
        self.postgres = postgres
        self.audit = audit
        self.event_bus = event_bus

    def get_by_id(self, earning_id: UUID) -> PartnerEarning | None:
        row = self.postgres.execute_single("SELECT * FROM partner_earnings WHERE id = %s", (earning_id,))
        if row is None:
            return None
        return PartnerEarning.model_validate(row)

    def update_status(
        self,
        earning_id: UUID,
        status: EarningStatus,
        transaction_id: str | None = None,
        payout_method: PaymentMethod | None = None,
    ) -> PartnerEarning:
        """
        Transition an earning's payout status.

        Args:
            earning_id: Earning to transition
            status: Target status
            transaction_id: Settlement reference, required for PAID
            payout_method: Rail the payout went over, required for PAID

        Returns:
            The updated earning

        Raises:
            ForbiddenError: If the actor is not an admin
            InvalidInputError: If PAID is requested without evidence
            NotFoundError: If the earning does not exist
            InvariantViolationError: If the transition is not allowed
        """
        require_admin()

        if status == EarningStatus.PAID:
            if not transaction_id or not transaction_id.strip():
                raise InvalidInputError("transaction_id is required to mark a payout paid")
            if payout_method is None:
                raise InvalidInputError("payout_method is required to mark a payout paid")

        with self.postgres.transaction() as tx:
            row = tx.execute_single(
                "SELECT * FROM partner_earnings WHERE id = %s FOR UPDATE",
                (earning_id,)
            )
            if row is None:
                raise NotFoundError("partner_earning", earning_id)
            current = PartnerEarning.model_validate(row)

            EARNING_TRANSITIONS.ensure(current.status, status)

            now = now_utc()
            paid_date = now if status == EarningStatus.PAID else current.paid_date
            new_transaction_id = transaction_id.strip() if transaction_id else current.transaction_id
            new_method = payout_method.value if payout_method else (
                current.payout_method.value if current.payout_method else None
            )

            row = tx.execute_returning(
                """
                UPDATE partner_earnings
                SET status = %s, paid_date = %s, transaction_id = %s,
                    payout_method = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (status.value, paid_date, new_transaction_id, new_method, now, earning_id)
            )[0]
            updated = PartnerEarning.model_validate(row)

            self.audit.log_change(
                entity_type="partner_earning",
                entity_id=earning_id,
                action=AuditAction.UPDATE,
                changes=compute_changes(
                    current.model_dump(mode="json", include=_AUDITED_FIELDS),
                    updated.model_dump(mode="json", include=_AUDITED_FIELDS),
                ),
                tx=tx,
            )

        logger.info("Earning %s %s -> %s", earning_id, current.status.value, status.value)

        if status == EarningStatus.PAID:
            self.event_bus.publish(PayoutPaid.create(earning=updated))

        return updated

    def process_payout(
        self,
        earning_id: UUID,
        transaction_id: str,
        payout_method: PaymentMethod,
    ) -> PartnerEarning:
        """Pay out an earning with its settlement evidence."""
        return self.update_status(earning_id, EarningStatus.PAID, transaction_id, payout_method)

    def mark_processed(self, earning_id: UUID) -> PartnerEarning:
        """Move a pending earning to PROCESSED."""
        return self.update_status(earning_id, EarningStatus.PROCESSED)

    def cancel_payout(self, earning_id: UUID) -> PartnerEarning:
        """Cancel an earning that has not been paid."""
        return self.update_status(earning_id, EarningStatus.CANCELLED)
