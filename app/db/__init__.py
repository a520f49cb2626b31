"""
Relational Index Layer for the FarmChain Ledger

Provides:
- PostgreSQL schema for the event index
- EventIndex abstraction (InMemory for dev, Postgres for prod)
- Connection pooling and configuration
"""

from .index import (
    SCHEMA_SQL,
    EventIndex,
    InMemoryEventIndex,
    PostgresEventIndex,
    create_event_index,
)
from .config import DatabaseConfig, IndexDriver, get_database_url, get_index_driver

__all__ = [
    "EventIndex",
    "InMemoryEventIndex",
    "PostgresEventIndex",
    "create_event_index",
    "SCHEMA_SQL",
    "DatabaseConfig",
    "IndexDriver",
    "get_database_url",
    "get_index_driver",
]
