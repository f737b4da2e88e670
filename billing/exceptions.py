"""Typed exceptions for billing failures.

Every error the engine raises on purpose derives from BillingError. Callers
can fix the request and retry; anything else escaping the engine is an
internal failure.
"""


class BillingError(Exception):
    """Base class for recoverable billing errors."""


class InvalidInputError(BillingError):
    """A required field is missing or malformed. Raised before any write."""


class NotFoundError(BillingError):
    """A referenced invoice, payment, earning, campaign or partner does not exist."""

    def __init__(self, entity_type: str, entity_id):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.replace('_', ' ').capitalize()} {entity_id} not found")


class ForbiddenError(BillingError):
    """The acting identity lacks the role the operation requires."""


class ConflictError(BillingError):
    """
    The write collides with existing ledger state.

    Raised by the duplicate-billing guard and when a concurrent run wins the
    race to insert the same row.
    """


class InvariantViolationError(BillingError):
    """The requested status transition is not permitted from the current state."""

    def __init__(self, entity_type: str, current: str, requested: str):
        self.entity_type = entity_type
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot move {entity_type.replace('_', ' ')} from '{current}' to '{requested}'"
        )
