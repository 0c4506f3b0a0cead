"""
Entity store utilities for Marketplace Job Orchestrator

Provides the generic key/record store the lifecycle services persist through:
a PostgreSQL-backed ``DatabaseManager`` and an ``InMemoryEntityStore`` for
tests and local development. Both enforce optimistic concurrency: every record
carries a ``version`` and a write whose version does not match the stored one
fails with ``ConflictError``.
"""

import copy
import json
import asyncpg
from typing import Dict, List, Optional, Any, Protocol
from contextlib import asynccontextmanager

from ..core.exceptions import DatabaseError, ConflictError, JobOrchestratorError

# Entity kinds
JOBS = "jobs"
BIDS = "bids"
CHANGE_ORDERS = "change_orders"
PAYMENTS = "payments"

ID_FIELDS = {
    JOBS: "job_id",
    BIDS: "bid_id",
    CHANGE_ORDERS: "change_order_id",
    PAYMENTS: "payment_id",
}


def record_id(kind: str, record: Dict[str, Any]) -> str:
    """Extract the identifier of a record of the given kind."""
    try:
        return record[ID_FIELDS[kind]]
    except KeyError:
        raise DatabaseError("record_id", f"Unknown kind or missing id field", table=kind)


def _matches(record: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    for key, expected in filters.items():
        value = record.get(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


class EntityStore(Protocol):
    """Protocol for entity persistence backends."""

    async def get(self, kind: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Get a record by id, or None if absent."""
        ...

    async def list(self, kind: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """List records whose fields equal the filter values (or are contained in list values)."""
        ...

    async def upsert(self, kind: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or update a record; returns it with its new version."""
        ...

    async def upsert_many(self, kind: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Write several records of one kind atomically."""
        ...

    async def delete(self, kind: str, entity_id: str) -> bool:
        """Delete a record. Returns True if it existed."""
        ...


class InMemoryEntityStore:
    """
    In-memory entity store for testing and local development.

    Records are deep-copied on the way in and out so callers never share
    mutable state with the store. Each method completes without yielding to
    the event loop, which makes every call, including ``upsert_many``, atomic
    with respect to other coroutines.
    """

    def __init__(self):
        """Initialize empty storage."""
        self._records: Dict[str, Dict[str, Dict[str, Any]]] = {}

    async def initialize(self) -> None:
        """No-op; present for parity with DatabaseManager."""

    async def close(self) -> None:
        """No-op; present for parity with DatabaseManager."""

    async def is_healthy(self) -> bool:
        return True

    def _table(self, kind: str) -> Dict[str, Dict[str, Any]]:
        if kind not in ID_FIELDS:
            raise DatabaseError("table", f"Unknown entity kind '{kind}'", table=kind)
        return self._records.setdefault(kind, {})

    def _check_version(self, kind: str, record: Dict[str, Any]) -> str:
        entity_id = record_id(kind, record)
        expected = int(record.get("version") or 0)
        stored = self._table(kind).get(entity_id)
        actual = int(stored.get("version") or 0) if stored else 0
        if (stored is None and expected != 0) or (stored is not None and actual != expected):
            raise ConflictError(kind, entity_id, expected_version=expected, actual_version=actual if stored else None)
        return entity_id

    def _write(self, kind: str, entity_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
        stored = copy.deepcopy(record)
        stored["version"] = int(record.get("version") or 0) + 1
        self._table(kind)[entity_id] = stored
        return copy.deepcopy(stored)

    async def get(self, kind: str, entity_id: str) -> Optional[Dict[str, Any]]:
        record = self._table(kind).get(entity_id)
        return copy.deepcopy(record) if record else None

    async def list(self, kind: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        table = self._table(kind)
        return [copy.deepcopy(table[key]) for key in sorted(table) if _matches(table[key], filters)]

    async def upsert(self, kind: str, record: Dict[str, Any]) -> Dict[str, Any]:
        entity_id = self._check_version(kind, record)
        return self._write(kind, entity_id, record)

    async def upsert_many(self, kind: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        entity_ids = [self._check_version(kind, record) for record in records]
        return [self._write(kind, entity_id, record) for entity_id, record in zip(entity_ids, records)]

    async def delete(self, kind: str, entity_id: str) -> bool:
        return self._table(kind).pop(entity_id, None) is not None


class DatabaseManager:
    """
    Manages database connections and record persistence for the orchestrator.

    All entity kinds share one ``entity_records`` table keyed by
    ``(kind, record_id)`` with the record body stored as JSONB and a
    ``version`` column used for compare-and-set updates.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS entity_records (
            kind TEXT NOT NULL,
            record_id TEXT NOT NULL,
            version INTEGER NOT NULL,
            data JSONB NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (kind, record_id)
        )
    """

    def __init__(self, connection_string: str, pool_size: int = 10, max_overflow: int = 20):
        """
        Initialize database manager.

        Args:
            connection_string: PostgreSQL connection string
            pool_size: Base connection pool size
            max_overflow: Maximum additional connections
        """
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        """Initialize database connection pool and ensure the schema exists."""
        if self.pool:
            return
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=1,
                max_size=self.pool_size + self.max_overflow,
                command_timeout=60
            )
            async with self.pool.acquire() as connection:
                await connection.execute(self.SCHEMA)
        except Exception as e:
            raise DatabaseError("initialization", f"Failed to create connection pool: {str(e)}")

    async def close(self) -> None:
        """Close database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def is_healthy(self) -> bool:
        """Check database connectivity."""
        try:
            async with self.pool.acquire() as connection:
                await connection.execute("SELECT 1")
                return True
        except Exception:
            return False

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self.pool:
            raise DatabaseError("connection", "Database pool not initialized")

        async with self.pool.acquire() as connection:
            yield connection

    @staticmethod
    def _decode(data: Any, version: int) -> Dict[str, Any]:
        record = json.loads(data) if isinstance(data, str) else dict(data)
        record["version"] = version
        return record

    async def get(self, kind: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Get a record by ID."""
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    "SELECT data, version FROM entity_records WHERE kind = $1 AND record_id = $2",
                    kind, entity_id
                )
                if row:
                    return self._decode(row['data'], row['version'])
                return None
        except JobOrchestratorError:
            raise
        except Exception as e:
            raise DatabaseError("get", str(e), table=kind)

    async def list(self, kind: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """List records of a kind matching the filters."""
        clauses = ["kind = $1"]
        params: List[Any] = [kind]
        equality = {}

        for key, expected in (filters or {}).items():
            if isinstance(expected, (list, tuple, set, frozenset)):
                params.append(key)
                params.append([str(v) for v in expected])
                clauses.append(f"data->>${len(params) - 1} = ANY(${len(params)}::text[])")
            else:
                equality[key] = expected

        if equality:
            params.append(json.dumps(equality, default=str))
            clauses.append(f"data @> ${len(params)}::jsonb")

        query = f"SELECT data, version FROM entity_records WHERE {' AND '.join(clauses)} ORDER BY record_id"

        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch(query, *params)
                return [self._decode(row['data'], row['version']) for row in rows]
        except JobOrchestratorError:
            raise
        except Exception as e:
            raise DatabaseError("list", str(e), table=kind)

    async def _write(self, conn, kind: str, record: Dict[str, Any]) -> Dict[str, Any]:
        entity_id = record_id(kind, record)
        expected = int(record.get("version") or 0)
        body = {key: value for key, value in record.items() if key != "version"}
        data = json.dumps(body, default=str)

        if expected == 0:
            new_version = await conn.fetchval("""
                INSERT INTO entity_records (kind, record_id, version, data, updated_at)
                VALUES ($1, $2, 1, $3::jsonb, now())
                ON CONFLICT (kind, record_id) DO NOTHING
                RETURNING version
            """, kind, entity_id, data)
        else:
            new_version = await conn.fetchval("""
                UPDATE entity_records
                SET data = $3::jsonb, version = version + 1, updated_at = now()
                WHERE kind = $1 AND record_id = $2 AND version = $4
                RETURNING version
            """, kind, entity_id, data, expected)

        if new_version is None:
            actual = await conn.fetchval(
                "SELECT version FROM entity_records WHERE kind = $1 AND record_id = $2",
                kind, entity_id
            )
            raise ConflictError(kind, entity_id, expected_version=expected, actual_version=actual)

        stored = dict(body)
        stored["version"] = new_version
        return stored

    async def upsert(self, kind: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or update a record with a version check."""
        try:
            async with self.get_connection() as conn:
                return await self._write(conn, kind, record)
        except JobOrchestratorError:
            raise
        except Exception as e:
            raise DatabaseError("upsert", str(e), table=kind)

    async def upsert_many(self, kind: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Write several records in one transaction; any conflict rolls back all of them."""
        try:
            async with self.get_connection() as conn:
                async with conn.transaction():
                    return [await self._write(conn, kind, record) for record in records]
        except JobOrchestratorError:
            raise
        except Exception as e:
            raise DatabaseError("upsert_many", str(e), table=kind)

    async def delete(self, kind: str, entity_id: str) -> bool:
        """Delete a record."""
        try:
            async with self.get_connection() as conn:
                status = await conn.execute(
                    "DELETE FROM entity_records WHERE kind = $1 AND record_id = $2",
                    kind, entity_id
                )
                return status.endswith(" 1")
        except JobOrchestratorError:
            raise
        except Exception as e:
            raise DatabaseError("delete", str(e), table=kind)
