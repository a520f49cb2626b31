"""
Ledger Error Taxonomy

- ValidationError: the caller supplied something the ledger will not accept.
  Raised before anything is written. Never retried.
- StorageError: the content store or the relational index failed.
  Callers may retry, but a retry is a NEW event with a NEW transaction_id.
- ConcurrencyError: a StorageError raised when another writer got there first
  (stale optimistic token, or the index refused a second successor of the
  same event).
- ChainCorruptionError: a diagnostic VALUE. The integrity verifier collects
  these, it never raises them. Reads of a corrupted chain still succeed.
"""

from typing import Optional


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class ValidationError(LedgerError):
    """Raised when an argument fails validation."""
    pass


class StorageError(LedgerError):
    """
    Raised when the content store or the relational index fails.

    If the content-store upload succeeded but the index write did not,
    orphaned_content_hash names the unreferenced document so it can be
    reindexed or discarded later.
    """

    def __init__(self, message: str, orphaned_content_hash: Optional[str] = None):
        super().__init__(message)
        self.orphaned_content_hash = orphaned_content_hash


class ConcurrencyError(StorageError):
    """Raised when a concurrent write invalidated the caller's view of a batch."""
    pass


class ChainCorruptionError(LedgerError):
    """
    A structural violation found while replaying a chain.

    kind is one of: "empty", "first_not_harvest", "hash_mismatch",
    "negative_balance".
    """

    def __init__(self, message: str, kind: str, transaction_id: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.transaction_id = transaction_id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ChainCorruptionError):
            return NotImplemented
        return (
            str(self) == str(other)
            and self.kind == other.kind
            and self.transaction_id == other.transaction_id
        )

    def __hash__(self) -> int:
        return hash((str(self), self.kind, self.transaction_id))
