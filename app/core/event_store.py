"""
Event Store

Creates, persists and retrieves TransactionEvents.

Every event is written twice, in this order:
1. The canonical document goes to the content store, which returns its hash
2. A row goes to the relational index, keyed by transaction_id

There is no transaction spanning both writes. If step 2 fails after step 1
succeeded, the document is orphaned: retrievable by hash but invisible to
readers. The caller gets a StorageError naming the orphan, and
reindex_document / discard_orphan reconcile it later.

The store does NOT check chain rules (first event is HARVEST, linkage,
balances). The integrity verifier does that. The store only refuses events
that are malformed on their own.
"""

import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional, TYPE_CHECKING
from uuid import uuid4

import pydantic

from ..observability import get_logger, get_metrics
from ..schemas import EventMetadata, EventType, ProductDetails, TransactionEvent
from .exceptions import ConcurrencyError, StorageError, ValidationError
from .hasher import CanonicalSerializationError, Hasher

if TYPE_CHECKING:
    from ..db.index import EventIndex
    from ..storage.content_store import ContentStore
    from .signer import EventSigner

logger = get_logger(__name__)


def new_transaction_id() -> str:
    """A fresh, never-reused transaction id."""
    return f"txn_{uuid4().hex}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value: Any, field: str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        # str() first so 0.1 stays 0.1 rather than its binary expansion
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} must be a number, got {value!r}") from None


class EventStore:
    """
    Persists events to a content store and a relational index.

    Usage:
        store = EventStore(InMemoryContentStore(), InMemoryEventIndex())
        harvest = await store.create_event(
            EventType.HARVEST, "Farm", "FarmerA", 100, 5000, "batch1", details,
        )
        same = await store.get_event(harvest.transaction_id)
    """

    def __init__(
        self,
        content_store: "ContentStore",
        index: "EventIndex",
        signer: Optional["EventSigner"] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._content_store = content_store
        self._index = index
        self._signer = signer
        self._clock = clock or _utcnow

    @property
    def content_store(self) -> "ContentStore":
        return self._content_store

    @property
    def index(self) -> "EventIndex":
        return self._index

    @property
    def signer(self) -> Optional["EventSigner"]:
        return self._signer

    def now(self) -> datetime:
        return self._clock()

    # ================================================================
    # WRITES
    # ================================================================

    def build_event(
        self,
        type: EventType | str,
        from_owner: str,
        to_owner: str,
        quantity: Decimal | int | str,
        price: Decimal | int | str,
        batch_id: str,
        product_details: ProductDetails | dict[str, Any],
        previous_event_hash: Optional[str] = None,
        metadata: EventMetadata | dict[str, Any] | None = None,
        timestamp: Optional[datetime] = None,
    ) -> TransactionEvent:
        """
        Construct and validate an unpersisted event.

        Raises:
            ValidationError: If any field is malformed
        """
        try:
            event_type = EventType(type)
        except ValueError:
            raise ValidationError(f"Unknown event type: {type!r}") from None

        quantity = to_decimal(quantity, "quantity")
        price = to_decimal(price, "price")
        if not quantity.is_finite() or quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")
        if not price.is_finite() or price < 0:
            raise ValidationError("Price must not be negative")
        if not batch_id:
            raise ValidationError("batch_id is required")

        try:
            return TransactionEvent(
                transaction_id=new_transaction_id(),
                type=event_type,
                from_owner=from_owner,
                to_owner=to_owner,
                quantity=quantity,
                price=price,
                timestamp=timestamp or self.now(),
                previous_event_hash=previous_event_hash,
                batch_id=batch_id,
                product_details=product_details,
                metadata=metadata,
            )
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid event: {e}") from e

    async def create_event(
        self,
        type: EventType | str,
        from_owner: str,
        to_owner: str,
        quantity: Decimal | int | str,
        price: Decimal | int | str,
        batch_id: str,
        product_details: ProductDetails | dict[str, Any],
        previous_event_hash: Optional[str] = None,
        metadata: EventMetadata | dict[str, Any] | None = None,
        timestamp: Optional[datetime] = None,
    ) -> TransactionEvent:
        """
        Create and persist a new event.

        Each call generates a new transaction_id, so a retry after a
        failure is a new event, never a duplicate of the failed one.

        Returns:
            The persisted event, content_hash set

        Raises:
            ValidationError: If the event is malformed (nothing is written)
            StorageError: If the upload or the index write fails
            ConcurrencyError: If the index refused the event as conflicting
        """
        event = self.build_event(
            type, from_owner, to_owner, quantity, price, batch_id,
            product_details, previous_event_hash, metadata, timestamp,
        )
        return await self.persist(event)

    async def persist(self, event: TransactionEvent) -> TransactionEvent:
        """Upload then index an already built event."""
        start = time.perf_counter()
        metrics = get_metrics()

        if self._signer is not None:
            event = self._signer.sign(event)

        try:
            data = Hasher.to_bytes(event.to_document())
        except CanonicalSerializationError as e:
            raise ValidationError(f"Event cannot be serialized: {e}") from e

        try:
            upload = await self._content_store.upload(
                data,
                f"transaction_{event.transaction_id}.json",
                {
                    "batchId": event.batch_id,
                    "type": event.type.value,
                    "transactionId": event.transaction_id,
                },
            )
        except StorageError:
            metrics.record_create_failure()
            logger.error(
                "Content store upload failed",
                batch_id=event.batch_id,
                transaction_id=event.transaction_id,
            )
            raise

        persisted = event.model_copy(update={"content_hash": upload.content_hash})

        try:
            await self._index.insert(persisted)
        except StorageError as e:
            metrics.record_create_failure(orphaned=True)
            logger.error(
                "Index write failed after upload; document is orphaned",
                batch_id=event.batch_id,
                transaction_id=event.transaction_id,
                orphaned_content_hash=upload.content_hash,
                error=str(e),
            )
            error_cls = ConcurrencyError if isinstance(e, ConcurrencyError) else StorageError
            raise error_cls(
                f"Event {event.transaction_id} was uploaded but not indexed: {e}",
                orphaned_content_hash=upload.content_hash,
            ) from e

        latency_ms = (time.perf_counter() - start) * 1000
        metrics.record_create(latency_ms)
        logger.info(
            "Event created",
            batch_id=persisted.batch_id,
            transaction_id=persisted.transaction_id,
            event_type=persisted.type.value,
            content_hash=persisted.content_hash,
            duration_ms=round(latency_ms, 2),
        )
        return persisted

    # ================================================================
    # READS
    # ================================================================

    async def get_event(self, transaction_id: str) -> Optional[TransactionEvent]:
        return await self._index.get_by_transaction_id(transaction_id)

    async def get_event_by_content_hash(self, content_hash: str) -> Optional[TransactionEvent]:
        return await self._index.get_by_content_hash(content_hash)

    async def get_events_for_batch(self, batch_id: str) -> list[TransactionEvent]:
        """Oldest first, by timestamp; ties in index insertion order."""
        return await self._index.list_for_batch(batch_id)

    async def fetch_document(self, content_hash: str) -> TransactionEvent:
        """
        Decode the content-store document stored under content_hash.

        Raises:
            StorageError: If the document cannot be fetched
            ValidationError: If the bytes are not a valid transaction document
        """
        data = await self._content_store.fetch(content_hash)
        try:
            return TransactionEvent.from_document(Hasher.parse(data), content_hash)
        except (CanonicalSerializationError, pydantic.ValidationError) as e:
            raise ValidationError(
                f"Document {content_hash} is not a valid transaction: {e}"
            ) from e

    # ================================================================
    # RECONCILIATION
    # ================================================================

    async def reindex_document(self, content_hash: str) -> TransactionEvent:
        """
        Index a document that was uploaded but never indexed.

        Already indexed documents are returned unchanged.

        Raises:
            StorageError: If the document cannot be fetched or indexed
            ValidationError: If the document is not a transaction
            ConcurrencyError: If the batch moved on while the document was orphaned
        """
        existing = await self._index.get_by_content_hash(content_hash)
        if existing is not None:
            return existing

        event = await self.fetch_document(content_hash)
        await self._index.insert(event)
        logger.info(
            "Reindexed orphaned document",
            batch_id=event.batch_id,
            transaction_id=event.transaction_id,
            content_hash=content_hash,
        )
        return event

    async def discard_orphan(self, content_hash: str) -> bool:
        """
        Unpin a document that was never indexed.

        Returns:
            True if the document was unpinned, False if it was not pinned

        Raises:
            ValidationError: If the document is indexed (persisted events are never deleted)
        """
        if await self._index.get_by_content_hash(content_hash) is not None:
            raise ValidationError(
                f"Content {content_hash} is an indexed event and cannot be discarded"
            )
        removed = await self._content_store.unpin(content_hash)
        logger.info("Discarded orphaned document", content_hash=content_hash, removed=removed)
        return removed
