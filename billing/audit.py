"""
Audit trail for every ledger mutation.

The audit log is:
- Append-only (entries never modified or deleted)
- Actor-attributed (who made the change)
- Diffable (captures old and new values)

Entries are written through the same Transaction as the mutation they
describe, so a rolled-back write leaves no audit row behind and a committed
write always has one.
"""

from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from psycopg2.extras import Json

from clients.postgres_client import PostgresClient, Transaction
from utils.actor_context import _current_actor
from utils.timezone import now_utc


class AuditAction(Enum):
    """Type of change made to an entity."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def compute_changes(
    old: dict[str, Any],
    new: dict[str, Any],
    exclude_fields: set[str] | None = None
) -> dict[str, dict[str, Any]]:
    """
    Compute changes between two entity states.

    Args:
        old: Previous state of entity
        new: New state of entity
        exclude_fields: Fields to ignore (defaults to {"updated_at"})

    Returns:
        Dict of {field: {"old": old_val, "new": new_val}} for changed fields.
        Empty dict if no changes.
    """
    exclude = exclude_fields if exclude_fields is not None else {"updated_at"}
    changes = {}

    for key in sorted(set(old.keys()) | set(new.keys())):
        if key in exclude:
            continue

        old_val = old.get(key)
        new_val = new.get(key)

        if old_val != new_val:
            changes[key] = {"old": old_val, "new": new_val}

    return changes


class AuditLogger:
    """
    Audit trail writer.

    Always pass model_dump(mode="json") output so UUIDs, datetimes and
    Decimals arrive as JSON-compatible values.

    Usage:
        audit = AuditLogger(postgres)

        with postgres.transaction() as tx:
            row = tx.execute_returning("UPDATE invoices ... RETURNING *", (...))[0]
            audit.log_change(
                entity_type="invoice",
                entity_id=row["id"],
                action=AuditAction.UPDATE,
                changes={"status": {"old": "unpaid", "new": "paid"}},
                tx=tx,
            )

        history = audit.get_entity_history("invoice", invoice_id)
    """

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    def log_change(
        self,
        entity_type: str,
        entity_id: UUID | str,
        action: AuditAction,
        changes: dict[str, Any],
        tx: Transaction | None = None,
        actor_id: UUID | None = None
    ) -> None:
        """
        Log an entity change.

        Args:
            entity_type: Type of entity ("invoice", "payment", "system_config", ...)
            entity_id: ID of the entity (config rows are keyed by name)
            action: The action performed (CREATE, UPDATE, DELETE)
            changes: The changes made (format depends on action)
            tx: Transaction the mutation runs in; autocommits when omitted
            actor_id: Acting identity (defaults to current context, if any)

        Changes format by action:
        - CREATE: {"created": {entity data}}
        - UPDATE: {"field": {"old": old_val, "new": new_val}, ...}
        - DELETE: {"deleted": {full entity data at deletion}}
        """
        if actor_id is None:
            actor = _current_actor.get()
            actor_id = actor.id if actor is not None else None

        executor = tx if tx is not None else self.postgres
        executor.execute(
            """
            INSERT INTO audit_log (id, actor_id, entity_type, entity_id, action, changes, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                uuid4(),
                actor_id,
                entity_type,
                str(entity_id),
                action.value,
                Json(changes),
                now_utc()
            )
        )

    def get_entity_history(
        self,
        entity_type: str,
        entity_id: UUID | str
    ) -> list[dict[str, Any]]:
        """
        Get full audit history for an entity, newest first.
        """
        return self.postgres.execute(
            """
            SELECT id, actor_id, entity_type, entity_id, action, changes, created_at
            FROM audit_log
            WHERE entity_type = %s AND entity_id = %s
            ORDER BY created_at DESC
            """,
            (entity_type, str(entity_id))
        )
