"""
Secrets for the billing ledger, read from HashiCorp Vault.

The ledger needs exactly three secrets: the application database URL, the
schema-owner database URL (migrations and test setup), and the Valkey URL.
They live in a KV v2 engine under one prefix, `billing/` unless
BILLING_VAULT_PREFIX says otherwise. Reads never leave that prefix.

Authentication is AppRole from VAULT_ROLE_ID / VAULT_SECRET_ID. Missing
configuration or a rejected login raises at construction time.
"""

import os
import logging
from typing import Dict

import hvac
from hvac.exceptions import Forbidden, InvalidPath, Unauthorized
from hvac.exceptions import VaultError as HvacError

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "billing"
DEFAULT_MOUNT = "secret"

_vault_client_instance: "VaultClient | None" = None
_secret_cache: Dict[str, str] = {}


class VaultClient:
    """AppRole-authenticated reader for the billing secret prefix."""

    def __init__(
        self,
        vault_addr: str | None = None,
        vault_namespace: str | None = None,
        prefix: str | None = None,
        mount_point: str | None = None,
    ):
        self.vault_addr = vault_addr or os.getenv("VAULT_ADDR")
        self.vault_namespace = vault_namespace or os.getenv("VAULT_NAMESPACE")
        self.prefix = (prefix or os.getenv("BILLING_VAULT_PREFIX") or DEFAULT_PREFIX).strip("/")
        self.mount_point = mount_point or os.getenv("BILLING_VAULT_MOUNT") or DEFAULT_MOUNT

        role_id = os.getenv("VAULT_ROLE_ID")
        secret_id = os.getenv("VAULT_SECRET_ID")

        if not self.vault_addr:
            raise ValueError("VAULT_ADDR environment variable is required")
        if not role_id or not secret_id:
            raise ValueError(
                "VAULT_ROLE_ID and VAULT_SECRET_ID environment variables are required"
            )

        client_kwargs = {"url": self.vault_addr}
        if self.vault_namespace:
            client_kwargs["namespace"] = self.vault_namespace

        self.client = hvac.Client(**client_kwargs)
        self._login(role_id, secret_id)

        logger.info(
            "Vault client ready: %s (mount %s, prefix %s/)",
            self.vault_addr, self.mount_point, self.prefix,
        )

    def _login(self, role_id: str, secret_id: str) -> None:
        try:
            response = self.client.auth.approle.login(role_id=role_id, secret_id=secret_id)
        except HvacError as e:
            logger.error("AppRole login rejected: %s", e)
            raise PermissionError(f"AppRole authentication failed: {e}")

        self.client.token = response["auth"]["client_token"]
        if not self.client.is_authenticated():
            raise PermissionError("Vault authentication failed")

    def scoped_path(self, path: str) -> str:
        """'database' -> 'billing/database'. Rejects traversal out of the prefix."""
        parts = [p for p in path.strip("/").split("/") if p]
        if not parts or any(p in (".", "..") for p in parts):
            raise ValueError(f"Invalid secret path: {path!r}")
        return "/".join([self.prefix] + parts)

    def read_secret(self, path: str) -> dict[str, str]:
        """
        Every field of one KV v2 secret under the billing prefix.

        Raises:
            PermissionError: Path not accessible or doesn't exist.
        """
        full_path = self.scoped_path(path)

        try:
            response = self.client.secrets.kv.v2.read_secret_version(
                path=full_path,
                mount_point=self.mount_point,
                raise_on_deleted_version=True,
            )
        except InvalidPath:
            logger.error("Secret path not found: %s", full_path)
            raise PermissionError(f"Secret path '{full_path}' not found in Vault")
        except (Unauthorized, Forbidden) as e:
            logger.error("Access denied to secret %s: %s", full_path, e)
            raise PermissionError(f"Access denied to secret '{full_path}': {e}")

        return response["data"]["data"]

    def get_secret(self, path: str, field: str) -> str:
        """
        One field of a secret.

        Raises:
            PermissionError: Path not accessible or doesn't exist.
            KeyError: Field not found in secret.
        """
        data = self.read_secret(path)
        if field not in data:
            raise KeyError(
                f"Field '{field}' not found in secret '{self.scoped_path(path)}'. "
                f"Available: {', '.join(sorted(data))}"
            )
        return data[field]


def _client() -> VaultClient:
    global _vault_client_instance
    if _vault_client_instance is None:
        _vault_client_instance = VaultClient()
    return _vault_client_instance


def _cached_secret(path: str, field: str) -> str:
    key = f"{path}/{field}"
    if key not in _secret_cache:
        _secret_cache[key] = _client().get_secret(path, field)
    return _secret_cache[key]


def reset() -> None:
    """Drop the shared client and cached secrets so env changes take effect."""
    global _vault_client_instance
    _vault_client_instance = None
    _secret_cache.clear()


def get_database_url() -> str:
    """Application-role PostgreSQL URL for the ledger."""
    return _cached_secret("database", "url")


def get_admin_database_url() -> str:
    """Schema-owner PostgreSQL URL (migrations and test setup only)."""
    return _cached_secret("database", "admin_url")


def get_valkey_url() -> str:
    """Valkey (Redis) URL for the partner analytics cache."""
    return _cached_secret("valkey", "url")
