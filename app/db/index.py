"""
Relational Event Index

This module defines the EventIndex interface and provides two implementations:
- InMemoryEventIndex: For development and testing
- PostgresEventIndex: For production, on an asyncpg connection pool

The content store holds the documents. The index holds one row per event so
that a batch can be listed in chain order without fetching every document.

Uniqueness rules (enforced by both implementations):
- transaction_id is unique
- content_hash is unique
- (batch_id, previous_event_hash) is unique: an event has at most one successor
- a batch has at most one HARVEST

A violated rule means another writer got there first and surfaces as
ConcurrencyError. The index never updates or deletes a row.
"""

import json
from abc import ABC, abstractmethod
from typing import Optional

from ..core.exceptions import ConcurrencyError, StorageError
from ..observability import get_logger
from ..schemas import EventType, TransactionEvent

logger = get_logger(__name__)


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class EventIndex(ABC):
    """
    Abstract base class for the event index.

    Implementations must ensure:
    1. insert is atomic: the row is either fully visible or absent
    2. list_for_batch orders by timestamp, then by insertion order
    3. Uniqueness violations raise ConcurrencyError
    """

    @abstractmethod
    async def insert(self, event: TransactionEvent) -> None:
        """Index a persisted event (content_hash must be set)."""
        pass

    @abstractmethod
    async def get_by_transaction_id(self, transaction_id: str) -> Optional[TransactionEvent]:
        pass

    @abstractmethod
    async def get_by_content_hash(self, content_hash: str) -> Optional[TransactionEvent]:
        pass

    @abstractmethod
    async def list_for_batch(self, batch_id: str) -> list[TransactionEvent]:
        """All indexed events of a batch in chain order."""
        pass

    @abstractmethod
    async def count(self) -> int:
        pass

    async def close(self) -> None:
        return None

    @staticmethod
    def _require_content_hash(event: TransactionEvent) -> str:
        if not event.content_hash:
            raise StorageError(
                f"Event {event.transaction_id} has no content hash and cannot be indexed"
            )
        return event.content_hash


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryEventIndex(EventIndex):
    """
    In-memory implementation of EventIndex.

    Rows are kept in insertion order; list_for_batch uses a stable sort on
    timestamp so ties keep that order.

    Suitable for development and testing. NOT suitable for production
    (no durability, no sharing between processes).
    """

    def __init__(self):
        self._rows: list[TransactionEvent] = []
        self._by_transaction_id: dict[str, TransactionEvent] = {}
        self._by_content_hash: dict[str, TransactionEvent] = {}
        self._successors: set[tuple[str, str]] = set()
        self._harvested_batches: set[str] = set()

    async def insert(self, event: TransactionEvent) -> None:
        content_hash = self._require_content_hash(event)

        if event.transaction_id in self._by_transaction_id:
            raise ConcurrencyError(f"Transaction {event.transaction_id} is already indexed")
        if content_hash in self._by_content_hash:
            raise ConcurrencyError(f"Content {content_hash} is already indexed")

        successor_key = None
        if event.previous_event_hash is not None:
            successor_key = (event.batch_id, event.previous_event_hash)
            if successor_key in self._successors:
                raise ConcurrencyError(
                    f"Event {event.previous_event_hash} in batch {event.batch_id} "
                    f"already has a successor"
                )
        if event.type == EventType.HARVEST and event.batch_id in self._harvested_batches:
            raise ConcurrencyError(f"Batch {event.batch_id} already has a HARVEST event")

        self._rows.append(event)
        self._by_transaction_id[event.transaction_id] = event
        self._by_content_hash[content_hash] = event
        if successor_key is not None:
            self._successors.add(successor_key)
        if event.type == EventType.HARVEST:
            self._harvested_batches.add(event.batch_id)

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[TransactionEvent]:
        return self._by_transaction_id.get(transaction_id)

    async def get_by_content_hash(self, content_hash: str) -> Optional[TransactionEvent]:
        return self._by_content_hash.get(content_hash)

    async def list_for_batch(self, batch_id: str) -> list[TransactionEvent]:
        rows = [e for e in self._rows if e.batch_id == batch_id]
        return sorted(rows, key=lambda e: e.timestamp)

    async def count(self) -> int:
        return len(self._rows)

    def clear(self) -> None:
        """Drop every row (for testing)."""
        self._rows.clear()
        self._by_transaction_id.clear()
        self._by_content_hash.clear()
        self._successors.clear()
        self._harvested_batches.clear()


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ledger_transactions (
    seq                 BIGSERIAL PRIMARY KEY,
    transaction_id      TEXT NOT NULL UNIQUE,
    batch_id            TEXT NOT NULL,
    type                TEXT NOT NULL CHECK (type IN ('HARVEST', 'PURCHASE', 'TRANSFER')),
    from_owner          TEXT NOT NULL,
    to_owner            TEXT NOT NULL,
    quantity            NUMERIC NOT NULL CHECK (quantity > 0),
    price               NUMERIC NOT NULL DEFAULT 0 CHECK (price >= 0),
    event_timestamp     TIMESTAMPTZ NOT NULL,
    previous_event_hash TEXT,
    content_hash        TEXT NOT NULL UNIQUE,
    product_details     JSONB NOT NULL,
    metadata            JSONB,
    signature           TEXT,
    signer_public_key   TEXT,
    indexed_at          TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE UNIQUE INDEX IF NOT EXISTS ledger_transactions_successor_uq
    ON ledger_transactions (batch_id, previous_event_hash)
    WHERE previous_event_hash IS NOT NULL;

CREATE UNIQUE INDEX IF NOT EXISTS ledger_transactions_harvest_uq
    ON ledger_transactions (batch_id)
    WHERE type = 'HARVEST';

CREATE INDEX IF NOT EXISTS ledger_transactions_batch_order_idx
    ON ledger_transactions (batch_id, event_timestamp, seq);

CREATE OR REPLACE FUNCTION ledger_transactions_append_only()
RETURNS trigger
LANGUAGE plpgsql
AS $$
BEGIN
    RAISE EXCEPTION 'ledger_transactions is append-only (% refused)', TG_OP
        USING ERRCODE = '23514';
END;
$$;

DROP TRIGGER IF EXISTS trg_ledger_transactions_append_only ON ledger_transactions;
CREATE TRIGGER trg_ledger_transactions_append_only
    BEFORE UPDATE OR DELETE ON ledger_transactions
    FOR EACH ROW EXECUTE FUNCTION ledger_transactions_append_only();
"""

_SELECT_COLUMNS = """
    transaction_id, batch_id, type, from_owner, to_owner, quantity, price,
    event_timestamp, previous_event_hash, content_hash, product_details,
    metadata, signature, signer_public_key
"""


class PostgresEventIndex(EventIndex):
    """
    PostgreSQL implementation using asyncpg.

    Ordering ties are broken by the BIGSERIAL seq column, which reflects
    insertion order. Uniqueness is enforced by constraints, so two writers
    racing to extend the same event cannot both succeed.

    Usage:
        pool = await asyncpg.create_pool(dsn)
        index = PostgresEventIndex(pool)
        await index.create_schema()
    """

    # asyncpg error codes
    PGCODE_UNIQUE_VIOLATION = "23505"

    STATEMENT_TIMEOUT_MS = 10000

    def __init__(self, pool, statement_timeout_ms: int = STATEMENT_TIMEOUT_MS):
        """
        Args:
            pool: asyncpg connection pool
            statement_timeout_ms: Max statement execution time (ms)
        """
        self._pool = pool
        self._statement_timeout_ms = statement_timeout_ms

    @classmethod
    async def connect(cls, config) -> "PostgresEventIndex":
        """Create a pool from a DatabaseConfig and wrap it."""
        import asyncpg

        pool = await asyncpg.create_pool(
            config.to_url(),
            min_size=config.pool_min_size,
            max_size=config.pool_max_size,
            timeout=config.pool_timeout,
        )
        logger.info(
            "Connected event index",
            database=config.to_url(include_password=False),
        )
        return cls(pool)

    async def create_schema(self) -> None:
        """Apply SCHEMA_SQL. Safe to run repeatedly."""
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Event index schema applied")

    async def insert(self, event: TransactionEvent) -> None:
        content_hash = self._require_content_hash(event)
        document = event.to_document()

        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'"
                    )
                    await conn.execute(
                        """
                        INSERT INTO ledger_transactions (
                            transaction_id, batch_id, type, from_owner, to_owner,
                            quantity, price, event_timestamp, previous_event_hash,
                            content_hash, product_details, metadata,
                            signature, signer_public_key
                        ) VALUES (
                            $1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                            $11::jsonb, $12::jsonb, $13, $14
                        )
                        """,
                        event.transaction_id,
                        event.batch_id,
                        event.type.value,
                        event.from_owner,
                        event.to_owner,
                        event.quantity,
                        event.price,
                        event.timestamp,
                        event.previous_event_hash,
                        content_hash,
                        # asyncpg needs a string for the explicit ::jsonb cast
                        self._dump_json(document["product_details"]),
                        self._dump_json(document.get("metadata")),
                        event.signature,
                        event.signer_public_key,
                    )
        except Exception as e:
            if getattr(e, "sqlstate", None) == self.PGCODE_UNIQUE_VIOLATION:
                logger.warning(
                    "Index refused conflicting event",
                    batch_id=event.batch_id,
                    transaction_id=event.transaction_id,
                    constraint=getattr(e, "constraint_name", None),
                )
                raise ConcurrencyError(
                    f"Event {event.transaction_id} conflicts with an indexed event "
                    f"in batch {event.batch_id}"
                ) from e
            raise StorageError(f"Index insert failed: {e}") from e

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[TransactionEvent]:
        row = await self._fetchrow(
            f"SELECT {_SELECT_COLUMNS} FROM ledger_transactions WHERE transaction_id = $1",
            transaction_id,
        )
        return self._row_to_event(row) if row is not None else None

    async def get_by_content_hash(self, content_hash: str) -> Optional[TransactionEvent]:
        row = await self._fetchrow(
            f"SELECT {_SELECT_COLUMNS} FROM ledger_transactions WHERE content_hash = $1",
            content_hash,
        )
        return self._row_to_event(row) if row is not None else None

    async def list_for_batch(self, batch_id: str) -> list[TransactionEvent]:
        try:
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {_SELECT_COLUMNS}
                    FROM ledger_transactions
                    WHERE batch_id = $1
                    ORDER BY event_timestamp, seq
                    """,
                    batch_id,
                )
        except Exception as e:
            raise StorageError(f"Index read failed: {e}") from e
        return [self._row_to_event(row) for row in rows]

    async def count(self) -> int:
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetchval("SELECT COUNT(*) FROM ledger_transactions")
        except Exception as e:
            raise StorageError(f"Index read failed: {e}") from e

    async def close(self) -> None:
        await self._pool.close()

    async def _fetchrow(self, query: str, *args):
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetchrow(query, *args)
        except Exception as e:
            raise StorageError(f"Index read failed: {e}") from e

    @staticmethod
    def _dump_json(value) -> Optional[str]:
        if value is None:
            return None
        return json.dumps(value, default=str, sort_keys=True)

    @staticmethod
    def _load_json(value):
        if isinstance(value, str):
            return json.loads(value)
        return value

    def _row_to_event(self, row) -> TransactionEvent:
        """Convert asyncpg row to TransactionEvent."""
        return TransactionEvent(
            transaction_id=row["transaction_id"],
            batch_id=row["batch_id"],
            type=EventType(row["type"]),
            from_owner=row["from_owner"],
            to_owner=row["to_owner"],
            quantity=row["quantity"],
            price=row["price"],
            timestamp=row["event_timestamp"],
            previous_event_hash=row["previous_event_hash"],
            content_hash=row["content_hash"],
            product_details=self._load_json(row["product_details"]),
            metadata=self._load_json(row["metadata"]),
            signature=row["signature"],
            signer_public_key=row["signer_public_key"],
        )


async def create_event_index(config=None) -> EventIndex:
    """
    Create the EventIndex selected by INDEX_DRIVER.

    Returns:
        InMemoryEventIndex when no database is configured
        PostgresEventIndex otherwise
    """
    from .config import DatabaseConfig, IndexDriver, get_index_driver

    driver = get_index_driver()
    if driver == IndexDriver.MEMORY:
        logger.info("Using in-memory event index (no persistence)")
        return InMemoryEventIndex()

    return await PostgresEventIndex.connect(config or DatabaseConfig.from_env())
