"""
System configuration store.

Reads fold the system_config rows into a BillingConfig snapshot. Writes are
admin-only, validated against the snapshot schema before anything is
stored, audited with an old/new diff, and bump the row's version.
"""

import logging
from typing import Any

from pydantic import ValidationError
from psycopg2.extras import Json

from billing.audit import AuditAction, AuditLogger, compute_changes
from billing.config import CONFIG_KEYS, BillingConfig
from billing.exceptions import InvalidInputError
from billing.permissions import require_admin
from clients.postgres_client import PostgresClient
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


class ConfigService:
    """Service for billing configuration."""

    def __init__(self, postgres: PostgresClient, audit: AuditLogger):
        self.postgres = postgres
        self.audit = audit

    def get_config(self) -> BillingConfig:
        """Current configuration snapshot. Missing rows fall back to defaults."""
        rows = self.postgres.execute("SELECT config_key, config_value FROM system_config")
        return BillingConfig.from_rows(rows)

    def list_entries(self) -> list[dict[str, Any]]:
        """
        Stored configuration rows with version and attribution.

        Raises:
            ForbiddenError: If the actor is not an admin
        """
        require_admin()
        return self.postgres.execute(
            """
            SELECT config_key, config_value, description, updated_by, updated_at, version
            FROM system_config
            ORDER BY config_key
            """
        )

    def update(self, key: str, value: dict[str, Any], description: str | None = None) -> BillingConfig:
        """
        Merge new values into one settings group.

        Args:
            key: system_config key (tax_settings, commission_rates, ...)
            value: Fields to change; omitted fields keep their stored value
            description: Optional new description of the row

        Returns:
            The configuration snapshot after the update

        Raises:
            ForbiddenError: If the actor is not an admin
            InvalidInputError: If the key is unknown or a value is out of bounds
        """
        actor = require_admin()

        if key not in CONFIG_KEYS:
            valid = ", ".join(sorted(CONFIG_KEYS))
            raise InvalidInputError(f"Unknown config key '{key}'. Valid keys: {valid}")
        if not isinstance(value, dict) or not value:
            raise InvalidInputError("Config value must be a non-empty object")

        with self.postgres.transaction() as tx:
            rows = tx.execute("SELECT config_key, config_value, version FROM system_config FOR UPDATE")
            stored = {row["config_key"]: row for row in rows}
            existing = stored.get(key)
            old_value = dict(existing["config_value"]) if existing else {}

            field_name = CONFIG_KEYS[key]
            merged_rows = [
                {"config_key": k, "config_value": r["config_value"]}
                for k, r in stored.items() if k != key
            ]
            merged_rows.append({"config_key": key, "config_value": {**old_value, **value}})
            try:
                candidate = BillingConfig.from_rows(merged_rows)
            except ValidationError as e:
                raise InvalidInputError(f"Invalid {key}: {e.errors()[0]['msg']}")

            new_value = getattr(candidate, field_name).model_dump(mode="json")

            row = tx.execute_returning(
                """
                INSERT INTO system_config (config_key, config_value, description, updated_by, updated_at, version)
                VALUES (%s, %s, %s, %s, %s, 1)
                ON CONFLICT (config_key) DO UPDATE
                SET config_value = EXCLUDED.config_value,
                    description = COALESCE(EXCLUDED.description, system_config.description),
                    updated_by = EXCLUDED.updated_by,
                    updated_at = EXCLUDED.updated_at,
                    version = system_config.version + 1
                RETURNING version
                """,
                (key, Json(new_value), description, actor.id, now_utc())
            )[0]

            changes = compute_changes(old_value, new_value, exclude_fields=set())
            changes["version"] = {
                "old": existing["version"] if existing else None,
                "new": row["version"],
            }
            self.audit.log_change(
                entity_type="system_config",
                entity_id=key,
                action=AuditAction.UPDATE if existing else AuditAction.CREATE,
                changes=changes,
                tx=tx,
            )

        logger.info("Config %s updated to version %d by %s", key, row["version"], actor.id)
        return candidate
