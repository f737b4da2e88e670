"""
PostgreSQL client for the billing ledger.

Uses psycopg2 with ThreadedConnectionPool. The acting identity is read from
the utils.actor_context contextvar and published to the session as
app.current_actor_id so database-side defaults and triggers can attribute
writes.

Single statements go through execute*(); multi-statement units of work that
must be all-or-nothing (duplicate check + insert, status cascades) go through
transaction(), which exposes the same execute* interface on one connection.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Tuple
from uuid import UUID

import psycopg2
import psycopg2.extensions
import psycopg2.extras
import psycopg2.pool

from utils.actor_context import _current_actor

logger = logging.getLogger(__name__)

# Global JSONB/UUID adapter registration flag
_jsonb_registered = False


def _convert_params(params: Tuple | Dict | None) -> Tuple | Dict | None:
    """Convert UUID objects to strings."""
    if params is None:
        return None

    def convert(value: Any) -> Any:
        if isinstance(value, UUID):
            return str(value)
        if isinstance(value, list):
            return [convert(v) for v in value]
        if isinstance(value, tuple):
            return tuple(convert(v) for v in value)
        if isinstance(value, dict):
            return {k: convert(v) for k, v in value.items()}
        return value

    return convert(params)


class Transaction:
    """
    A unit of work bound to a single connection.

    Nothing is committed until the enclosing PostgresClient.transaction()
    block exits cleanly; any exception rolls back every statement issued
    through this object.
    """

    def __init__(self, conn):
        self._conn = conn

    def execute(self, query: str, params: Tuple | Dict | None = None) -> List[Dict[str, Any]]:
        """Execute query, return list of row dicts. Empty list if no results."""
        with self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(query, _convert_params(params))
            if cur.description:
                return [dict(row) for row in cur.fetchall()]
            return []

    def execute_single(self, query: str, params: Tuple | Dict | None = None) -> Dict[str, Any] | None:
        """Execute query, return first row or None."""
        results = self.execute(query, params)
        return results[0] if results else None

    def execute_scalar(self, query: str, params: Tuple | Dict | None = None) -> Any:
        """Execute query, return first value of first row or None."""
        with self._conn.cursor() as cur:
            cur.execute(query, _convert_params(params))
            result = cur.fetchone()
            return result[0] if result else None

    def execute_returning(self, query: str, params: Tuple | Dict | None = None) -> List[Dict[str, Any]]:
        """Execute INSERT/UPDATE with RETURNING, return results."""
        return self.execute(query, params)

    def advisory_lock(self, key: str) -> None:
        """
        Take a transaction-scoped advisory lock on a string key.

        Released automatically on commit or rollback.
        """
        with self._conn.cursor() as cur:
            cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (key,))


class PostgresClient:
    """
    PostgreSQL client with actor attribution from contextvar.

    Usage:
        db = PostgresClient(database_url)

        rows = db.execute("SELECT * FROM invoices WHERE status = %s", ("unpaid",))

        with db.transaction() as tx:
            tx.advisory_lock(f"invoice-campaign:{campaign_id}")
            existing = tx.execute_single("SELECT ...", (...))
            tx.execute_returning("INSERT ... RETURNING *", (...))
    """

    # Class-level connection pools shared across instances
    _connection_pools: Dict[str, psycopg2.pool.ThreadedConnectionPool] = {}
    _pools_lock = threading.RLock()

    def __init__(self, database_url: str):
        self._database_url = database_url
        self._ensure_connection_pool()

    def _ensure_connection_pool(self) -> None:
        """Create connection pool if it doesn't exist."""
        with self._pools_lock:
            if self._database_url not in self._connection_pools:
                pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=2,
                    maxconn=20,
                    dsn=self._database_url,
                    connect_timeout=30,
                )

                global _jsonb_registered
                if not _jsonb_registered:
                    psycopg2.extras.register_default_jsonb(globally=True)
                    psycopg2.extras.register_uuid()
                    _jsonb_registered = True

                self._connection_pools[self._database_url] = pool
                logger.info("Connection pool created")

    @contextmanager
    def get_connection(self):
        """Get connection with actor attribution from contextvar."""
        if self._database_url not in self._connection_pools:
            self._ensure_connection_pool()

        pool = self._connection_pools[self._database_url]
        conn = None

        try:
            conn = pool.getconn()
            if conn is None:
                raise RuntimeError("Could not get connection from pool")

            actor = _current_actor.get()

            with conn.cursor() as cur:
                if actor is not None:
                    cur.execute("SET app.current_actor_id = %s", (str(actor.id),))
                else:
                    cur.execute("SET app.current_actor_id = ''")

            yield conn

        finally:
            if conn:
                # Never hand a connection with an open transaction back to the pool
                if (
                    not conn.closed
                    and conn.get_transaction_status() != psycopg2.extensions.TRANSACTION_STATUS_IDLE
                ):
                    conn.rollback()
                pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """
        Run a block of statements atomically.

        Commits when the block exits normally, rolls back and re-raises on any
        exception.
        """
        with self.get_connection() as conn:
            try:
                yield Transaction(conn)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def execute(self, query: str, params: Tuple | Dict | None = None) -> List[Dict[str, Any]]:
        """Execute query, return list of row dicts. Empty list if no results."""
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(query, _convert_params(params))
                if cur.description:
                    rows = [dict(row) for row in cur.fetchall()]
                else:
                    rows = []
                conn.commit()
                return rows

    def execute_single(self, query: str, params: Tuple | Dict | None = None) -> Dict[str, Any] | None:
        """Execute query, return first row or None."""
        results = self.execute(query, params)
        return results[0] if results else None

    def execute_scalar(self, query: str, params: Tuple | Dict | None = None) -> Any:
        """Execute query, return first value of first row or None."""
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, _convert_params(params))
                result = cur.fetchone()
                return result[0] if result else None

    def execute_returning(self, query: str, params: Tuple | Dict | None = None) -> List[Dict[str, Any]]:
        """Execute INSERT/UPDATE with RETURNING, return results."""
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(query, _convert_params(params))
                conn.commit()
                return [dict(row) for row in cur.fetchall()]

    def execute_script(self, sql: str) -> None:
        """Execute a multi-statement script (schema setup)."""
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql)
            conn.commit()

    def close(self) -> None:
        """Close connection pool."""
        with self._pools_lock:
            if self._database_url in self._connection_pools:
                self._connection_pools[self._database_url].closeall()
                del self._connection_pools[self._database_url]

    @classmethod
    def close_all_pools(cls) -> None:
        """Close all connection pools."""
        with cls._pools_lock:
            for pool in cls._connection_pools.values():
                pool.closeall()
            cls._connection_pools.clear()
