"""
Integrity Verifier

Checks that a batch's chain has not been tampered with or corrupted.

verify_chain runs three independent checks over one snapshot of the batch:
1. The chain is non-empty and starts with a HARVEST
2. Every event after the first points at its predecessor's content hash
3. Replaying quantities never drives available below zero

All checks always run so every problem surfaces at once. The chain is
valid iff no check reports an error.

audit_documents goes further and compares the index with the content
store: every indexed event must have a fetchable document with the same
content, and any embedded signature must verify against a trusted key.

Both are read-only diagnostics. They never raise for a corrupted chain.
"""

from typing import TYPE_CHECKING, Iterable

from ..observability import get_logger, get_metrics
from ..schemas import (
    ChainIssue,
    DocumentAuditReport,
    EventType,
    TransactionEvent,
    VerificationReport,
)
from .chain_builder import ChainReplay
from .exceptions import ChainCorruptionError, StorageError, ValidationError
from .hasher import Hasher
from .signer import EventSigner

if TYPE_CHECKING:
    from .event_store import EventStore

logger = get_logger(__name__)


def check_events(events: list[TransactionEvent]) -> list[ChainCorruptionError]:
    """
    Run the three structural checks over events in chain order.

    Returns every violation found; an empty list means the chain is valid.
    """
    issues: list[ChainCorruptionError] = []

    # Check 1: non-empty, HARVEST first
    if not events:
        issues.append(ChainCorruptionError("No transactions found", kind="empty"))
        return issues
    if events[0].type != EventType.HARVEST:
        issues.append(ChainCorruptionError(
            "First transaction must be HARVEST",
            kind="first_not_harvest",
            transaction_id=events[0].transaction_id,
        ))

    # Check 2: hash linkage
    for previous, event in zip(events, events[1:]):
        if event.previous_event_hash != previous.content_hash:
            issues.append(ChainCorruptionError(
                f"Transaction {event.transaction_id} has incorrect previous hash",
                kind="hash_mismatch",
                transaction_id=event.transaction_id,
            ))

    # Check 3: first prefix that overdraws the harvest
    state = ChainReplay()
    for event in events:
        state.apply(event)
        if state.available < 0:
            issues.append(ChainCorruptionError(
                f"Transaction {event.transaction_id} exceeds available quantity",
                kind="negative_balance",
                transaction_id=event.transaction_id,
            ))
            break

    return issues


class IntegrityVerifier:
    """
    Runs integrity diagnostics against an EventStore.

    A signature only counts when its embedded public key is trusted: one of
    trusted_keys or the key of the event store's own signer. Without any
    trusted key every signed document is reported as untrusted.
    """

    def __init__(self, event_store: "EventStore", trusted_keys: Iterable[str] = ()):
        self._event_store = event_store
        keys = set(trusted_keys)
        if event_store.signer is not None:
            keys.add(event_store.signer.public_key)
        self._trusted_keys = frozenset(keys)

    @property
    def trusted_keys(self) -> frozenset[str]:
        return self._trusted_keys

    async def verify_chain(self, batch_id: str) -> VerificationReport:
        events = await self._event_store.get_events_for_batch(batch_id)
        issues = check_events(events)
        is_valid = not issues

        get_metrics().record_verification(is_valid)
        if not is_valid:
            logger.warning(
                "Chain verification failed",
                batch_id=batch_id,
                error_count=len(issues),
                kinds=[issue.kind for issue in issues],
            )

        return VerificationReport(
            batch_id=batch_id,
            is_valid=is_valid,
            errors=[str(issue) for issue in issues],
            issues=[
                ChainIssue(kind=issue.kind, message=str(issue), transaction_id=issue.transaction_id)
                for issue in issues
            ],
            event_count=len(events),
        )

    async def audit_documents(
        self,
        batch_id: str,
        require_signatures: bool = False,
    ) -> DocumentAuditReport:
        """
        Compare every indexed event of a batch with its stored document.

        Args:
            batch_id: Batch to audit
            require_signatures: If True, unsigned documents are errors
        """
        events = await self._event_store.get_events_for_batch(batch_id)
        errors: list[str] = []
        signed = 0

        for event in events:
            try:
                document = await self._event_store.fetch_document(event.content_hash)
            except StorageError as e:
                errors.append(
                    f"Transaction {event.transaction_id}: document {event.content_hash} "
                    f"could not be fetched ({e})"
                )
                continue
            except ValidationError:
                errors.append(
                    f"Transaction {event.transaction_id}: document {event.content_hash} "
                    f"is not a valid transaction"
                )
                continue

            if Hasher.canonicalize(document.to_document()) != Hasher.canonicalize(event.to_document()):
                errors.append(
                    f"Transaction {event.transaction_id}: document does not match the index"
                )

            if document.signature:
                signed += 1
                if not EventSigner.verify(document):
                    errors.append(f"Transaction {event.transaction_id} has an invalid signature")
                elif document.signer_public_key not in self._trusted_keys:
                    errors.append(f"Transaction {event.transaction_id} has an untrusted signer")
            elif require_signatures:
                errors.append(f"Transaction {event.transaction_id} is not signed")

        is_valid = not errors
        if not is_valid:
            logger.warning("Document audit failed", batch_id=batch_id, error_count=len(errors))

        return DocumentAuditReport(
            batch_id=batch_id,
            is_valid=is_valid,
            errors=errors,
            checked=len(events),
            signed=signed,
        )
