"""Shared test fixtures for the billing test suite."""

import pytest
from uuid import UUID
from pathlib import Path

import hvac.exceptions
import psycopg2
from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
# override=True ensures .env takes precedence over shell env vars
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

# Reset vault client singleton to pick up env vars
import clients.vault_client as vault_module
vault_module.reset()

from utils.actor_context import Actor, ActorRole, actor_context, clear_current_actor


SCHEMA_PATH = Path(__file__).parent.parent / "db" / "schema.sql"

# Errors that mean "no ledger infrastructure here", not "the code is broken"
UNAVAILABLE = (
    hvac.exceptions.VaultError,
    ValueError,
    PermissionError,
    KeyError,
    psycopg2.OperationalError,
)


# =============================================================================
# TEST ACTOR CONSTANTS
# =============================================================================

ADMIN_ID = UUID("00000000-0000-0000-0000-0000000000a1")
ADVERTISER_USER_ID = UUID("00000000-0000-0000-0000-0000000000b1")
PARTNER_USER_ID = UUID("00000000-0000-0000-0000-0000000000c1")


# =============================================================================
# ACTOR CONTEXT FIXTURES
# =============================================================================


@pytest.fixture(autouse=True)
def reset_actor_context():
    """Ensure clean actor context before and after each test."""
    clear_current_actor()
    yield
    clear_current_actor()


@pytest.fixture
def admin_actor() -> Actor:
    return Actor(id=ADMIN_ID, role=ActorRole.ADMIN)


@pytest.fixture
def as_admin(admin_actor):
    """Run the test as a platform admin."""
    with actor_context(admin_actor):
        yield admin_actor


@pytest.fixture
def as_advertiser():
    """Run the test as a non-admin advertiser user."""
    with actor_context(Actor(id=ADVERTISER_USER_ID, role=ActorRole.ADVERTISER)) as actor:
        yield actor


@pytest.fixture
def as_partner_user():
    """Run the test as the partner user seeded by partner fixtures."""
    with actor_context(Actor(id=PARTNER_USER_ID, role=ActorRole.PARTNER)) as actor:
        yield actor


# =============================================================================
# DATABASE FIXTURES
# =============================================================================


def _connect(url_getter):
    from clients.postgres_client import PostgresClient

    try:
        return PostgresClient(url_getter())
    except UNAVAILABLE as e:
        pytest.skip(f"Ledger database unavailable: {e}")


@pytest.fixture(scope="session")
def db_admin():
    """Session-scoped schema-owner client. Applies db/schema.sql once."""
    from clients.vault_client import get_admin_database_url

    client = _connect(get_admin_database_url)
    client.execute_script(SCHEMA_PATH.read_text())
    yield client
    client.close()


@pytest.fixture(scope="session")
def db(db_admin):
    """Session-scoped PostgresClient (application user)."""
    from clients.vault_client import get_database_url

    client = _connect(get_database_url)
    yield client
    client.close()


@pytest.fixture
def clean_db(db_admin):
    """Empty every table before the test. Ledger tests opt in via pytestmark."""
    db_admin.execute("""
        TRUNCATE
            audit_log, system_config, partner_earnings, invoices, payments,
            device_analytics, ad_deliveries, campaign_analytics, campaigns,
            devices, partners, advertisers
        CASCADE
    """)
    yield


# =============================================================================
# VALKEY FIXTURES
# =============================================================================


@pytest.fixture(scope="session")
def valkey():
    """Session-scoped ValkeyClient."""
    import redis
    from clients.valkey_client import ValkeyClient
    from clients.vault_client import get_valkey_url

    try:
        client = ValkeyClient(get_valkey_url())
    except UNAVAILABLE + (redis.ConnectionError,) as e:
        pytest.skip(f"Valkey unavailable: {e}")
    yield client
    client.close()
