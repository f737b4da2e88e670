"""
Valkey (Redis-compatible) client for read-side caching.

Thin wrapper around redis-py. Connection URL from Vault. Only derived,
recomputable data is cached here (partner analytics summaries); the ledger
itself never lives in Valkey.
"""

import json
import logging
from typing import Any

import redis

logger = logging.getLogger(__name__)


class ValkeyClient:
    """
    Redis-compatible client for Valkey.

    Usage:
        cache = ValkeyClient("redis://localhost:6379/0")
        cache.set_json("partner:analytics:summary:...", summary, expire_seconds=300)
        cached = cache.get_json("partner:analytics:summary:...")  # None if missing
    """

    def __init__(self, url: str):
        """
        Initialize Valkey connection.

        Args:
            url: Redis-compatible connection URL (e.g., redis://localhost:6379/0)

        Raises:
            redis.ConnectionError: If connection fails
        """
        self._client = redis.from_url(url, decode_responses=True)
        # Verify connectivity immediately (fail-fast)
        self._client.ping()
        logger.info("ValkeyClient connected")

    def ping(self) -> bool:
        """
        Health check.

        Raises redis.ConnectionError if unreachable.
        """
        self._client.ping()
        return True

    def get(self, key: str) -> str | None:
        """Get value by key. None if the key doesn't exist."""
        return self._client.get(key)

    def set(self, key: str, value: str, expire_seconds: int | None = None) -> None:
        """Set key to value, optionally with a TTL in seconds."""
        if expire_seconds is not None:
            self._client.setex(key, expire_seconds, value)
        else:
            self._client.set(key, value)

    def delete(self, *keys: str) -> int:
        """Delete one or more keys. Returns how many existed."""
        if not keys:
            return 0
        return self._client.delete(*keys)

    def set_json(self, key: str, value: Any, expire_seconds: int | None = None) -> None:
        """Set key to JSON-serialized value."""
        self.set(key, json.dumps(value), expire_seconds)

    def get_json(self, key: str) -> Any:
        """
        Get and deserialize JSON value.

        Returns None if key doesn't exist.
        Raises ValueError if value is not valid JSON.
        """
        value = self.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in key '{key}': {e}")

    def close(self) -> None:
        """Close the connection."""
        self._client.close()
        logger.info("ValkeyClient closed")
