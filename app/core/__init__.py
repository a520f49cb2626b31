# Core ledger services
from .exceptions import (
    LedgerError,
    ValidationError,
    StorageError,
    ConcurrencyError,
    ChainCorruptionError,
)
from .hasher import Hasher, CanonicalSerializationError
from .signer import Signer, SigningConfig, EventSigner
from .event_store import EventStore, new_transaction_id
from .chain_builder import ChainBuilder, ChainReplay, replay
from .verifier import IntegrityVerifier, check_events
from .names import DisplayNameResolver, ProfileDirectory, InMemoryProfileDirectory
from .ledger import LedgerService

__all__ = [
    "LedgerError",
    "ValidationError",
    "StorageError",
    "ConcurrencyError",
    "ChainCorruptionError",
    "Hasher",
    "CanonicalSerializationError",
    "Signer",
    "SigningConfig",
    "EventSigner",
    "EventStore",
    "new_transaction_id",
    "ChainBuilder",
    "ChainReplay",
    "replay",
    "IntegrityVerifier",
    "check_events",
    "DisplayNameResolver",
    "ProfileDirectory",
    "InMemoryProfileDirectory",
    "LedgerService",
]
