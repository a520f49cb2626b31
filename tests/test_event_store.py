"""
Tests for the event store: the two-step write, reads, and orphan handling.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.core import (
    ConcurrencyError,
    EventSigner,
    EventStore,
    Hasher,
    Signer,
    StorageError,
    ValidationError,
)
from app.observability import get_metrics
from app.schemas import EventType
from app.storage import ContentNotFoundError

from support import BrokenContentStore, FakeClock, FlakyIndex


async def _harvest(store, batch_id="batch1", product_details=None, **kwargs):
    return await store.create_event(
        EventType.HARVEST, "Farm", "FarmerA", 100, 5000, batch_id,
        product_details or {"crop": "Tomato", "variety": "Roma", "harvest_date": "2024-02-28"},
        **kwargs,
    )


class TestCreateEvent:

    @pytest.mark.asyncio()
    async def test_returns_persisted_event(self, event_store, content_store):
        event = await _harvest(event_store)

        assert event.is_persisted
        assert event.transaction_id.startswith("txn_")
        assert event.type == EventType.HARVEST
        assert event.quantity == Decimal("100")
        assert event.previous_event_hash is None
        assert content_store.contains(event.content_hash)

    @pytest.mark.asyncio()
    async def test_content_hash_is_hash_of_stored_document(self, event_store, content_store):
        event = await _harvest(event_store)

        stored = await content_store.fetch(event.content_hash)
        assert stored == Hasher.to_bytes(event.to_document())
        assert event.content_hash == Hasher.digest(stored)

    @pytest.mark.asyncio()
    async def test_upload_carries_filename_and_metadata(self, event_store, content_store):
        event = await _harvest(event_store)

        assert content_store.metadata_for(event.content_hash) == {
            "name": f"transaction_{event.transaction_id}.json",
            "batchId": "batch1",
            "type": "HARVEST",
            "transactionId": event.transaction_id,
        }

    @pytest.mark.asyncio()
    async def test_timestamp_from_clock(self, event_store):
        event = await _harvest(event_store)
        assert event.timestamp == datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio()
    async def test_explicit_timestamp_kept(self, event_store):
        when = datetime(2023, 6, 1, 12, 0, tzinfo=timezone.utc)
        event = await _harvest(event_store, timestamp=when)
        assert event.timestamp == when

    @pytest.mark.asyncio()
    async def test_transaction_ids_never_repeat(self, event_store):
        first = await _harvest(event_store, batch_id="b1")
        second = await _harvest(event_store, batch_id="b2")
        assert first.transaction_id != second.transaction_id

    @pytest.mark.asyncio()
    async def test_float_quantity_converted_exactly(self, event_store):
        event = await event_store.create_event(
            "HARVEST", "Farm", "FarmerA", 40.5, 0, "batch1",
            {"crop": "Tomato", "variety": "Roma", "harvest_date": "2024-02-28"},
        )
        assert event.quantity == Decimal("40.5")

    @pytest.mark.asyncio()
    async def test_records_metrics(self, event_store):
        await _harvest(event_store)
        assert get_metrics().events_created == 1
        assert get_metrics().create_failures == 0

    @pytest.mark.asyncio()
    async def test_store_does_not_check_chain_rules(self, event_store):
        """A purchase with no harvest is still persisted; the verifier reports it."""
        event = await event_store.create_event(
            EventType.PURCHASE, "FarmerA", "BuyerB", 10, 0, "batch1",
            {"crop": "Tomato", "variety": "Roma", "harvest_date": "2024-02-28"},
            previous_event_hash="nonexistent",
        )
        assert await event_store.get_event(event.transaction_id) == event


class TestCreateEventValidation:

    @pytest.mark.parametrize("quantity", [0, -5, "0", Decimal("-0.01")])
    @pytest.mark.asyncio()
    async def test_non_positive_quantity(self, event_store, content_store, quantity):
        with pytest.raises(ValidationError, match="Quantity must be greater than 0"):
            await event_store.create_event(
                EventType.HARVEST, "Farm", "FarmerA", quantity, 0, "batch1",
                {"crop": "Tomato", "variety": "Roma", "harvest_date": "2024-02-28"},
            )
        assert len(content_store) == 0

    @pytest.mark.parametrize("quantity", ["abc", True, None])
    @pytest.mark.asyncio()
    async def test_non_numeric_quantity(self, event_store, quantity):
        with pytest.raises(ValidationError, match="quantity must be a number"):
            await event_store.create_event(
                EventType.HARVEST, "Farm", "FarmerA", quantity, 0, "batch1",
                {"crop": "Tomato", "variety": "Roma", "harvest_date": "2024-02-28"},
            )

    @pytest.mark.asyncio()
    async def test_negative_price(self, event_store):
        with pytest.raises(ValidationError, match="Price must not be negative"):
            await event_store.create_event(
                EventType.HARVEST, "Farm", "FarmerA", 10, -1, "batch1",
                {"crop": "Tomato", "variety": "Roma", "harvest_date": "2024-02-28"},
            )

    @pytest.mark.asyncio()
    async def test_unknown_type(self, event_store):
        with pytest.raises(ValidationError, match="Unknown event type"):
            await event_store.create_event(
                "GIFT", "FarmerA", "BuyerB", 10, 0, "batch1",
                {"crop": "Tomato", "variety": "Roma", "harvest_date": "2024-02-28"},
            )

    @pytest.mark.asyncio()
    async def test_missing_batch_id(self, event_store):
        with pytest.raises(ValidationError, match="batch_id is required"):
            await event_store.create_event(
                EventType.HARVEST, "Farm", "FarmerA", 10, 0, "",
                {"crop": "Tomato", "variety": "Roma", "harvest_date": "2024-02-28"},
            )

    @pytest.mark.asyncio()
    async def test_incomplete_product_details(self, event_store, content_store):
        with pytest.raises(ValidationError, match="Invalid event"):
            await event_store.create_event(
                EventType.HARVEST, "Farm", "FarmerA", 10, 0, "batch1", {"crop": "Tomato"},
            )
        assert len(content_store) == 0

    @pytest.mark.asyncio()
    async def test_empty_owner(self, event_store):
        with pytest.raises(ValidationError):
            await event_store.create_event(
                EventType.HARVEST, "Farm", "", 10, 0, "batch1",
                {"crop": "Tomato", "variety": "Roma", "harvest_date": "2024-02-28"},
            )


class TestPartialFailure:

    @pytest.mark.asyncio()
    async def test_upload_failure_writes_nothing(self, event_index, clock):
        store = EventStore(BrokenContentStore(), event_index, clock=clock)

        with pytest.raises(StorageError) as exc_info:
            await _harvest(store)

        assert exc_info.value.orphaned_content_hash is None
        assert await event_index.count() == 0
        assert get_metrics().create_failures == 1

    @pytest.mark.asyncio()
    async def test_index_failure_names_orphan(self, content_store, clock):
        store = EventStore(content_store, FlakyIndex(), clock=clock)

        with pytest.raises(StorageError) as exc_info:
            await _harvest(store)

        orphan = exc_info.value.orphaned_content_hash
        assert not isinstance(exc_info.value, ConcurrencyError)
        assert orphan is not None
        assert content_store.contains(orphan)
        assert await store.get_events_for_batch("batch1") == []
        assert get_metrics().orphaned_uploads == 1

    @pytest.mark.asyncio()
    async def test_index_conflict_is_concurrency_error(self, event_store, content_store):
        """A second HARVEST of the same batch is refused by the index."""
        await _harvest(event_store)

        with pytest.raises(ConcurrencyError) as exc_info:
            await _harvest(event_store)

        assert content_store.contains(exc_info.value.orphaned_content_hash)
        assert len(await event_store.get_events_for_batch("batch1")) == 1

    @pytest.mark.asyncio()
    async def test_retry_after_failure_is_new_event(self, content_store, clock):
        store = EventStore(content_store, FlakyIndex(), clock=clock)

        with pytest.raises(StorageError) as exc_info:
            await _harvest(store)
        event = await _harvest(store)

        assert event.content_hash != exc_info.value.orphaned_content_hash
        assert len(content_store) == 2


class TestReads:

    @pytest.mark.asyncio()
    async def test_get_event_by_id_and_hash(self, event_store):
        event = await _harvest(event_store)

        assert await event_store.get_event(event.transaction_id) == event
        assert await event_store.get_event_by_content_hash(event.content_hash) == event

    @pytest.mark.asyncio()
    async def test_unknown_ids_return_none(self, event_store):
        assert await event_store.get_event("txn_missing") is None
        assert await event_store.get_event_by_content_hash("missing") is None

    @pytest.mark.asyncio()
    async def test_unknown_batch_is_empty(self, event_store):
        assert await event_store.get_events_for_batch("nope") == []

    @pytest.mark.asyncio()
    async def test_batches_are_isolated(self, event_store):
        await _harvest(event_store, batch_id="b1")
        await _harvest(event_store, batch_id="b2")

        events = await event_store.get_events_for_batch("b1")
        assert [e.batch_id for e in events] == ["b1"]

    @pytest.mark.asyncio()
    async def test_ordered_by_timestamp(self, event_store):
        late = datetime(2024, 3, 2, tzinfo=timezone.utc)
        early = datetime(2024, 3, 1, tzinfo=timezone.utc)
        harvest = await _harvest(event_store, timestamp=early)
        second = await event_store.create_event(
            EventType.TRANSFER, "FarmerA", "B", 5, 0, "batch1", harvest.product_details,
            previous_event_hash=harvest.content_hash, timestamp=late,
        )

        events = await event_store.get_events_for_batch("batch1")
        assert [e.transaction_id for e in events] == [harvest.transaction_id, second.transaction_id]

    @pytest.mark.asyncio()
    async def test_equal_timestamps_keep_insertion_order(self, content_store, event_index):
        store = EventStore(content_store, event_index, clock=FakeClock(step=timedelta(0)))
        harvest = await _harvest(store)
        first = await store.create_event(
            EventType.TRANSFER, "FarmerA", "B", 5, 0, "batch1", harvest.product_details,
            previous_event_hash=harvest.content_hash,
        )
        second = await store.create_event(
            EventType.TRANSFER, "FarmerA", "C", 5, 0, "batch1", harvest.product_details,
            previous_event_hash=first.content_hash,
        )

        events = await store.get_events_for_batch("batch1")
        assert [e.transaction_id for e in events] == [
            harvest.transaction_id, first.transaction_id, second.transaction_id,
        ]

    @pytest.mark.asyncio()
    async def test_fetch_document_round_trip(self, event_store):
        event = await _harvest(event_store)

        document = await event_store.fetch_document(event.content_hash)
        assert document == event

    @pytest.mark.asyncio()
    async def test_fetch_missing_document(self, event_store):
        with pytest.raises(ContentNotFoundError):
            await event_store.fetch_document("missing")

    @pytest.mark.asyncio()
    async def test_fetch_non_transaction_document(self, event_store, content_store):
        content_store.put_raw("junk", b'{"hello":"world"}')

        with pytest.raises(ValidationError, match="not a valid transaction"):
            await event_store.fetch_document("junk")


class TestReconciliation:

    @pytest.fixture
    def flaky_store(self, content_store, clock):
        return EventStore(content_store, FlakyIndex(), clock=clock)

    async def _orphan(self, store):
        with pytest.raises(StorageError) as exc_info:
            await _harvest(store)
        return exc_info.value.orphaned_content_hash

    @pytest.mark.asyncio()
    async def test_reindex_makes_orphan_visible(self, flaky_store):
        orphan = await self._orphan(flaky_store)

        event = await flaky_store.reindex_document(orphan)

        assert event.content_hash == orphan
        assert await flaky_store.get_events_for_batch("batch1") == [event]

    @pytest.mark.asyncio()
    async def test_reindex_is_idempotent(self, flaky_store):
        orphan = await self._orphan(flaky_store)

        first = await flaky_store.reindex_document(orphan)
        second = await flaky_store.reindex_document(orphan)

        assert first == second
        assert await flaky_store.index.count() == 1

    @pytest.mark.asyncio()
    async def test_reindex_refused_when_batch_moved_on(self, flaky_store):
        orphan = await self._orphan(flaky_store)
        await _harvest(flaky_store)

        with pytest.raises(ConcurrencyError):
            await flaky_store.reindex_document(orphan)

    @pytest.mark.asyncio()
    async def test_reindex_unknown_hash(self, event_store):
        with pytest.raises(StorageError):
            await event_store.reindex_document("missing")

    @pytest.mark.asyncio()
    async def test_discard_orphan(self, flaky_store, content_store):
        orphan = await self._orphan(flaky_store)

        assert await flaky_store.discard_orphan(orphan) is True
        assert not content_store.contains(orphan)
        assert await flaky_store.discard_orphan(orphan) is False

    @pytest.mark.asyncio()
    async def test_discard_refuses_indexed_event(self, event_store, content_store):
        event = await _harvest(event_store)

        with pytest.raises(ValidationError, match="cannot be discarded"):
            await event_store.discard_orphan(event.content_hash)
        assert content_store.contains(event.content_hash)


class TestSignedEvents:

    @pytest.fixture
    def signer(self):
        private_key, _ = Signer.generate_keypair()
        return EventSigner(private_key)

    @pytest.mark.asyncio()
    async def test_events_signed_before_upload(self, content_store, event_index, clock, signer):
        store = EventStore(content_store, event_index, signer=signer, clock=clock)

        event = await _harvest(store)

        assert event.signer_public_key == signer.public_key
        assert EventSigner.verify(event)
        stored = await store.fetch_document(event.content_hash)
        assert stored.signature == event.signature
        assert EventSigner.verify(stored)

    @pytest.mark.asyncio()
    async def test_unsigned_by_default(self, event_store):
        event = await _harvest(event_store)
        assert event.signature is None
        assert not EventSigner.verify(event)
