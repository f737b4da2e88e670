"""Tests for ValkeyClient - Redis-compatible summary cache."""

import time
from unittest.mock import patch
from uuid import uuid4

import pytest
import redis

from clients.valkey_client import ValkeyClient


@pytest.fixture
def key(valkey):
    """Unique key prefix, cleaned up after the test."""
    prefix = f"test:{uuid4()}"
    yield prefix
    valkey.delete(prefix, f"{prefix}:a", f"{prefix}:b")


class TestValkeyClientInit:

    def test_connects_with_valid_url(self, valkey):
        assert valkey.ping() is True

    def test_unreachable_server_fails_fast(self):
        with patch("clients.valkey_client.redis.from_url") as from_url:
            from_url.return_value.ping.side_effect = redis.ConnectionError("refused")

            with pytest.raises(redis.ConnectionError):
                ValkeyClient("redis://localhost:1/0")


class TestBasicOperations:

    def test_set_and_get(self, valkey, key):
        valkey.set(key, "hello")

        assert valkey.get(key) == "hello"

    def test_get_missing_returns_none(self, valkey, key):
        assert valkey.get(key) is None

    def test_delete_counts_existing_keys(self, valkey, key):
        valkey.set(f"{key}:a", "1")
        valkey.set(f"{key}:b", "2")

        assert valkey.delete(f"{key}:a", f"{key}:b", f"{key}:missing") == 2
        assert valkey.get(f"{key}:a") is None

    def test_delete_nothing(self, valkey):
        assert valkey.delete() == 0


class TestExpiration:

    def test_set_with_expiration(self, valkey, key):
        valkey.set(key, "value", expire_seconds=1)
        assert valkey.get(key) == "value"

        time.sleep(1.1)

        assert valkey.get(key) is None


class TestJson:

    def test_round_trip(self, valkey, key):
        summary = {"partner_name": "Screen Co", "impressions": 1000, "engagement_rate": 5.0}

        valkey.set_json(key, summary, expire_seconds=60)

        assert valkey.get_json(key) == summary

    def test_missing_returns_none(self, valkey, key):
        assert valkey.get_json(key) is None

    def test_invalid_json_raises_value_error(self, valkey, key):
        valkey.set(key, "{not json")

        with pytest.raises(ValueError, match="Invalid JSON"):
            valkey.get_json(key)
