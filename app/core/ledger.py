"""
Ledger Service - The Heart of the System

This is an event-sourced, append-only ledger.
Nothing is "edited". Produce changes hands.

The ledger:
- Registers harvests
- Records purchases and transfers after checking the seller's holding
- Links every event to the content hash of the one before it
- Derives ownership by replaying the chain
- Assembles certificate data

Rules (enforced in code):
- A batch starts with exactly one HARVEST
- A purchase or transfer never moves more than the sender holds
- Every non-HARVEST event points at the current head of its batch
- Timestamps never go backwards within a batch

ARCHITECTURE NOTE:
- LedgerService: business rules, per-batch write serialization
- EventStore: one upload plus one index write per event
- ChainBuilder / IntegrityVerifier: read-side replay and diagnostics

Writes to one batch are serialized by an asyncio.Lock so the pre-check
read and the append cannot interleave with another writer in this
process. Across processes the index refuses a second successor of the
same event, so the loser gets ConcurrencyError instead of a fork.
"""

import asyncio
import weakref
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from ..observability import get_logger
from ..schemas import (
    HARVEST_ORIGIN,
    CertificateData,
    DocumentAuditReport,
    EventMetadata,
    EventType,
    OwnershipRecord,
    ProductDetails,
    TransactionChain,
    TransactionEvent,
    TransferCheck,
    VerificationReport,
)
from .chain_builder import ChainBuilder
from .event_store import EventStore, to_decimal
from .exceptions import ConcurrencyError, ValidationError
from .names import DisplayNameResolver
from .verifier import IntegrityVerifier, check_events

logger = get_logger(__name__)

DEFAULT_GRADING = "Standard"
DEFAULT_CERTIFICATION = "Standard"
DEFAULT_QUALITY_SCORE = Decimal("100")
HARVEST_NOTES = "Initial harvest and registration"


class LedgerService:
    """
    The ledger facade used by the API and the CLI.

    Composed explicitly from its collaborators; construct one per
    application and pass it where it is needed.

    Usage:
        ledger = LedgerService(EventStore(content_store, index))
        await ledger.record_harvest("batch1", "FarmerA", details, 100, price_per_kg=50)
        await ledger.record_purchase("batch1", "FarmerA", "BuyerB", 40, unit_price=50)
        chain = await ledger.build_chain("batch1")
    """

    def __init__(
        self,
        event_store: EventStore,
        chain_builder: Optional[ChainBuilder] = None,
        verifier: Optional[IntegrityVerifier] = None,
        name_resolver: Optional[DisplayNameResolver] = None,
    ):
        self._event_store = event_store
        self._chain_builder = chain_builder or ChainBuilder(event_store)
        self._verifier = verifier or IntegrityVerifier(event_store)
        self._name_resolver = name_resolver or DisplayNameResolver()
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @property
    def event_store(self) -> EventStore:
        return self._event_store

    @property
    def chain_builder(self) -> ChainBuilder:
        return self._chain_builder

    @property
    def verifier(self) -> IntegrityVerifier:
        return self._verifier

    @property
    def name_resolver(self) -> DisplayNameResolver:
        return self._name_resolver

    def _batch_lock(self, batch_id: str) -> asyncio.Lock:
        # Held weakly: a lock disappears once no writer holds or awaits it.
        lock = self._locks.get(batch_id)
        if lock is None:
            lock = self._locks[batch_id] = asyncio.Lock()
        return lock

    def _next_timestamp(self, chain: TransactionChain) -> datetime:
        now = self._event_store.now()
        last = chain.last_event
        if last is not None and last.timestamp > now:
            return last.timestamp
        return now

    # ================================================================
    # WRITES
    # ================================================================

    async def record_harvest(
        self,
        batch_id: str,
        farmer: str,
        product_details: ProductDetails | dict[str, Any],
        quantity: Decimal | int | str,
        price_per_kg: Decimal | int | str = 0,
        metadata: EventMetadata | dict[str, Any] | None = None,
    ) -> TransactionEvent:
        """
        Register a batch: the farmer receives the whole harvest from the farm.

        Raises:
            ValidationError: If the batch already exists or an argument is invalid
        """
        quantity = to_decimal(quantity, "quantity")
        price = quantity * to_decimal(price_per_kg, "price_per_kg")

        if isinstance(product_details, ProductDetails):
            product_details = product_details.model_dump(mode="python")
        product_details = {
            **product_details,
            "grading": product_details.get("grading") or DEFAULT_GRADING,
            "certification": product_details.get("certification") or DEFAULT_CERTIFICATION,
        }

        if isinstance(metadata, EventMetadata):
            metadata = metadata.model_dump(mode="python", exclude_none=True)
        metadata = {
            "notes": HARVEST_NOTES,
            "quality_score": DEFAULT_QUALITY_SCORE,
            **(metadata or {}),
        }

        async with self._batch_lock(batch_id):
            chain = await self._chain_builder.build_chain(batch_id)
            if not chain.is_empty:
                raise ValidationError(f"Batch {batch_id} is already registered")

            event = await self._event_store.create_event(
                EventType.HARVEST,
                HARVEST_ORIGIN,
                farmer,
                quantity,
                price,
                batch_id,
                product_details,
                previous_event_hash=None,
                metadata=metadata,
            )

        logger.info("Harvest registered", batch_id=batch_id, farmer=farmer, quantity=str(quantity))
        return event

    async def record_purchase(
        self,
        batch_id: str,
        seller: str,
        buyer: str,
        quantity: Decimal | int | str,
        unit_price: Decimal | int | str,
        delivery_address: Optional[str] = None,
        notes: Optional[str] = None,
        expected_available: Decimal | int | str | None = None,
    ) -> TransactionEvent:
        """
        Sell part of the seller's holding to a buyer.

        Args:
            expected_available: The available quantity the caller saw; if the
                batch has moved on since, nothing is written

        Raises:
            ValidationError: If the pre-check fails (nothing is written)
            ConcurrencyError: If expected_available is stale
            StorageError: If persisting the event fails
        """
        quantity = to_decimal(quantity, "quantity")
        unit_price = to_decimal(unit_price, "unit_price")
        if unit_price < 0:
            raise ValidationError("Unit price must not be negative")

        async with self._batch_lock(batch_id):
            chain = await self._prepare_move(batch_id, seller, buyer, quantity, expected_available)
            harvest = chain.harvest_event
            quality_score = DEFAULT_QUALITY_SCORE
            if harvest.metadata is not None and harvest.metadata.quality_score is not None:
                quality_score = harvest.metadata.quality_score

            event = await self._event_store.create_event(
                EventType.PURCHASE,
                seller,
                buyer,
                quantity,
                quantity * unit_price,
                batch_id,
                harvest.product_details,
                previous_event_hash=chain.last_event.content_hash,
                metadata={
                    "location": delivery_address,
                    "notes": notes or f"Purchase of {quantity}kg at {unit_price}/kg",
                    "quality_score": quality_score,
                },
                timestamp=self._next_timestamp(chain),
            )

        logger.info(
            "Purchase recorded",
            batch_id=batch_id,
            seller=seller,
            buyer=buyer,
            quantity=str(quantity),
        )
        return event

    async def record_transfer(
        self,
        batch_id: str,
        from_owner: str,
        to_owner: str,
        quantity: Decimal | int | str,
        notes: Optional[str] = None,
        expected_available: Decimal | int | str | None = None,
    ) -> TransactionEvent:
        """Move part of a holding without a sale. Same checks as record_purchase."""
        quantity = to_decimal(quantity, "quantity")

        async with self._batch_lock(batch_id):
            chain = await self._prepare_move(
                batch_id, from_owner, to_owner, quantity, expected_available,
            )
            event = await self._event_store.create_event(
                EventType.TRANSFER,
                from_owner,
                to_owner,
                quantity,
                Decimal("0"),
                batch_id,
                chain.harvest_event.product_details,
                previous_event_hash=chain.last_event.content_hash,
                metadata={"notes": notes or f"Transfer of {quantity}kg"},
                timestamp=self._next_timestamp(chain),
            )

        logger.info(
            "Transfer recorded",
            batch_id=batch_id,
            from_owner=from_owner,
            to_owner=to_owner,
            quantity=str(quantity),
        )
        return event

    async def _prepare_move(
        self,
        batch_id: str,
        from_owner: str,
        to_owner: str,
        quantity: Decimal,
        expected_available,
    ) -> TransactionChain:
        """Replay the batch and refuse the move before anything is written."""
        chain = await self._chain_builder.build_chain(batch_id)

        if expected_available is not None:
            expected = to_decimal(expected_available, "expected_available")
            if expected != chain.available_quantity:
                raise ConcurrencyError(
                    f"Batch {batch_id} changed: expected {expected}kg available, "
                    f"found {chain.available_quantity}kg"
                )

        check = self._check(chain, from_owner, quantity)
        if not check.is_valid:
            raise ValidationError(check.error)
        if from_owner == to_owner:
            raise ValidationError("Sender and recipient must differ")
        if chain.harvest_event is None:
            raise ValidationError("Harvest transaction not found")
        return chain

    @staticmethod
    def _check(chain: TransactionChain, owner: str, quantity: Decimal) -> TransferCheck:
        if chain.is_empty:
            return TransferCheck(is_valid=False, error="Batch not found")

        holding = chain.current_owners.get(owner)
        if holding is None:
            return TransferCheck(is_valid=False, error="Seller not found")

        if holding.quantity < quantity:
            return TransferCheck(
                is_valid=False,
                error=f"Insufficient quantity. Available: {holding.quantity}kg, Requested: {quantity}kg",
                available=holding.quantity,
            )

        if quantity <= 0:
            return TransferCheck(
                is_valid=False,
                error="Quantity must be greater than 0",
                available=holding.quantity,
            )

        return TransferCheck(is_valid=True, available=holding.quantity)

    async def check_transfer(
        self,
        batch_id: str,
        from_owner: str,
        quantity: Decimal | int | str,
    ) -> TransferCheck:
        """Would a move of quantity from from_owner succeed right now?"""
        quantity = to_decimal(quantity, "quantity")
        chain = await self._chain_builder.build_chain(batch_id)
        return self._check(chain, from_owner, quantity)

    # ================================================================
    # DERIVED READS
    # ================================================================

    async def get_current_owners(self, batch_id: str) -> dict[str, Decimal]:
        chain = await self._chain_builder.build_chain(batch_id)
        return {owner: holding.quantity for owner, holding in chain.current_owners.items()}

    async def get_available_from_owner(self, batch_id: str, owner: str) -> Decimal:
        chain = await self._chain_builder.build_chain(batch_id)
        return chain.held_by(owner)

    async def get_total_sold(self, batch_id: str) -> Decimal:
        chain = await self._chain_builder.build_chain(batch_id)
        return chain.total_quantity - chain.available_quantity

    async def get_purchase_history(self, batch_id: str) -> list[TransactionEvent]:
        events = await self._event_store.get_events_for_batch(batch_id)
        return [event for event in events if event.type == EventType.PURCHASE]

    async def get_harvest_event(self, batch_id: str) -> Optional[TransactionEvent]:
        events = await self._event_store.get_events_for_batch(batch_id)
        return next((event for event in events if event.type == EventType.HARVEST), None)

    async def build_certificate_data(self, batch_id: str) -> CertificateData:
        """
        Everything a certificate needs, from one snapshot of the batch.

        An unknown batch yields an empty certificate with chain_valid False.
        """
        chain = await self._chain_builder.build_chain(batch_id)
        harvest = chain.harvest_event
        last = chain.last_event

        history = [
            OwnershipRecord(
                owner=event.to_owner,
                quantity=event.quantity,
                event_id=event.transaction_id,
                timestamp=event.timestamp,
                type=event.type,
            )
            for event in chain.events
        ]

        identifiers: list[str] = []
        for event in chain.events:
            for identifier in (event.from_owner, event.to_owner):
                if identifier not in identifiers:
                    identifiers.append(identifier)
        display_names = await self._name_resolver.resolve_many(identifiers)

        return CertificateData(
            batch_id=batch_id,
            product_details=harvest.product_details if harvest else None,
            ownership_history=history,
            current_owners={owner: h.quantity for owner, h in chain.current_owners.items()},
            display_names=display_names,
            transaction_chain=chain.events,
            total_quantity=chain.total_quantity,
            available_quantity=chain.available_quantity,
            harvest_content_hash=harvest.content_hash if harvest else None,
            head_content_hash=last.content_hash if last else None,
            chain_valid=not check_events(chain.events),
            created_at=harvest.timestamp if harvest else None,
            last_updated=last.timestamp if last else None,
        )

    # ================================================================
    # DELEGATING ACCESSORS
    # ================================================================

    async def create_event(self, *args, **kwargs) -> TransactionEvent:
        """Raw event creation. No business checks; see EventStore.create_event."""
        return await self._event_store.create_event(*args, **kwargs)

    async def get_event(self, transaction_id: str) -> Optional[TransactionEvent]:
        return await self._event_store.get_event(transaction_id)

    async def get_event_by_content_hash(self, content_hash: str) -> Optional[TransactionEvent]:
        return await self._event_store.get_event_by_content_hash(content_hash)

    async def get_events_for_batch(self, batch_id: str) -> list[TransactionEvent]:
        return await self._event_store.get_events_for_batch(batch_id)

    async def build_chain(self, batch_id: str) -> TransactionChain:
        return await self._chain_builder.build_chain(batch_id)

    async def get_ownership_history(self, batch_id: str) -> list[OwnershipRecord]:
        return await self._chain_builder.get_ownership_history(batch_id)

    async def verify_chain(self, batch_id: str) -> VerificationReport:
        return await self._verifier.verify_chain(batch_id)

    async def audit_documents(
        self,
        batch_id: str,
        require_signatures: bool = False,
    ) -> DocumentAuditReport:
        return await self._verifier.audit_documents(batch_id, require_signatures)

    async def reindex_document(self, content_hash: str) -> TransactionEvent:
        return await self._event_store.reindex_document(content_hash)

    async def discard_orphan(self, content_hash: str) -> bool:
        return await self._event_store.discard_orphan(content_hash)
