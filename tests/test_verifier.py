"""
Tests for integrity verification and document audits.
"""

from decimal import Decimal

import pytest

from app.core import (
    ChainCorruptionError,
    EventSigner,
    EventStore,
    Hasher,
    IntegrityVerifier,
    Signer,
    check_events,
)
from app.observability import get_metrics
from app.schemas import EventType
from app.services import build_ledger

from support import DETAILS, make_event


async def _create(store, type, from_owner, to_owner, quantity, previous=None, batch_id="batch1"):
    return await store.create_event(
        type, from_owner, to_owner, quantity, 0, batch_id, DETAILS,
        previous_event_hash=previous,
    )


async def _valid_chain(store):
    harvest = await _create(store, EventType.HARVEST, "Farm", "FarmerA", 100)
    purchase = await _create(store, EventType.PURCHASE, "FarmerA", "BuyerB", 40, harvest.content_hash)
    return harvest, purchase


class TestCheckEvents:

    def test_valid_chain_has_no_issues(self):
        assert check_events([
            make_event(0, EventType.HARVEST, "Farm", "FarmerA", 100),
            make_event(1, EventType.PURCHASE, "FarmerA", "BuyerB", 40, "hash_0"),
            make_event(2, EventType.TRANSFER, "BuyerB", "BuyerC", 40, "hash_1"),
        ]) == []

    def test_empty(self):
        issues = check_events([])
        assert [(i.kind, str(i)) for i in issues] == [("empty", "No transactions found")]

    def test_first_not_harvest(self):
        issues = check_events([
            make_event(0, EventType.PURCHASE, "FarmerA", "BuyerB", 40),
        ])
        assert issues[0] == ChainCorruptionError(
            "First transaction must be HARVEST", kind="first_not_harvest", transaction_id="txn_0",
        )
        assert [i.kind for i in issues] == ["first_not_harvest", "negative_balance"]

    def test_hash_mismatch_names_transaction(self):
        issues = check_events([
            make_event(0, EventType.HARVEST, "Farm", "FarmerA", 100),
            make_event(1, EventType.PURCHASE, "FarmerA", "BuyerB", 40, "bogus"),
        ])
        assert [str(i) for i in issues] == ["Transaction txn_1 has incorrect previous hash"]
        assert issues[0].transaction_id == "txn_1"

    def test_negative_balance_reported_once(self):
        issues = check_events([
            make_event(0, EventType.HARVEST, "Farm", "FarmerA", 100),
            make_event(1, EventType.PURCHASE, "FarmerA", "BuyerB", 60, "hash_0"),
            make_event(2, EventType.PURCHASE, "FarmerA", "BuyerC", 70, "hash_1"),
            make_event(3, EventType.PURCHASE, "BuyerB", "BuyerD", 10, "hash_2"),
        ])
        assert [str(i) for i in issues] == ["Transaction txn_2 exceeds available quantity"]

    def test_all_checks_run(self):
        issues = check_events([
            make_event(0, EventType.PURCHASE, "FarmerA", "BuyerB", 40),
            make_event(1, EventType.TRANSFER, "BuyerB", "BuyerC", 10, "wrong"),
        ])
        assert [i.kind for i in issues] == ["first_not_harvest", "hash_mismatch", "negative_balance"]

    def test_harvest_not_needing_previous_hash(self):
        """The first event's previous hash is never compared with anything."""
        event = make_event(0, EventType.HARVEST, "Farm", "FarmerA", 100, previous="anything")
        assert check_events([event]) == []


class TestVerifyChain:

    @pytest.mark.asyncio()
    async def test_valid_chain(self, event_store):
        await _valid_chain(event_store)

        report = await IntegrityVerifier(event_store).verify_chain("batch1")

        assert report.is_valid
        assert report.errors == []
        assert report.event_count == 2

    @pytest.mark.asyncio()
    async def test_empty_batch(self, event_store):
        report = await IntegrityVerifier(event_store).verify_chain("nonexistent")

        assert not report.is_valid
        assert report.errors == ["No transactions found"]
        assert report.event_count == 0

    @pytest.mark.asyncio()
    async def test_overdraft_persisted_by_bypassing_checks(self, event_store):
        """FarmerA holds 60 and a raw write moves 70 anyway."""
        _, purchase = await _valid_chain(event_store)
        overdraft = await _create(
            event_store, EventType.PURCHASE, "FarmerA", "BuyerC", 70, purchase.content_hash,
        )

        report = await IntegrityVerifier(event_store).verify_chain("batch1")

        assert not report.is_valid
        assert report.errors == [f"Transaction {overdraft.transaction_id} exceeds available quantity"]
        assert report.issues[0].kind == "negative_balance"
        assert report.issues[0].transaction_id == overdraft.transaction_id

    @pytest.mark.asyncio()
    async def test_broken_link(self, event_store):
        harvest = await _create(event_store, EventType.HARVEST, "Farm", "FarmerA", 100)
        stray = await _create(
            event_store, EventType.PURCHASE, "FarmerA", "BuyerB", 40, "not-the-harvest-hash",
        )

        report = await IntegrityVerifier(event_store).verify_chain("batch1")

        assert harvest.content_hash != "not-the-harvest-hash"
        assert not report.is_valid
        assert report.errors == [f"Transaction {stray.transaction_id} has incorrect previous hash"]

    @pytest.mark.asyncio()
    async def test_first_event_not_harvest(self, event_store):
        await _create(event_store, EventType.TRANSFER, "FarmerA", "BuyerB", 5)

        report = await IntegrityVerifier(event_store).verify_chain("batch1")

        assert "First transaction must be HARVEST" in report.errors

    @pytest.mark.asyncio()
    async def test_valid_iff_no_errors(self, event_store):
        await _valid_chain(event_store)
        await _create(event_store, EventType.HARVEST, "Farm", "FarmerA", 10, batch_id="batch2")
        await _create(event_store, EventType.TRANSFER, "X", "Y", 5, batch_id="batch3")
        verifier = IntegrityVerifier(event_store)

        for batch_id in ("batch1", "batch2", "batch3", "batch4"):
            report = await verifier.verify_chain(batch_id)
            assert report.is_valid == (not report.errors)
            assert len(report.issues) == len(report.errors)

    @pytest.mark.asyncio()
    async def test_records_metrics(self, event_store):
        await _valid_chain(event_store)
        verifier = IntegrityVerifier(event_store)

        await verifier.verify_chain("batch1")
        await verifier.verify_chain("missing")

        assert get_metrics().verifications == 2
        assert get_metrics().verification_failures == 1


class TestAuditDocuments:

    @pytest.mark.asyncio()
    async def test_untouched_documents_pass(self, event_store):
        await _valid_chain(event_store)

        report = await IntegrityVerifier(event_store).audit_documents("batch1")

        assert report.is_valid
        assert report.checked == 2
        assert report.signed == 0

    @pytest.mark.asyncio()
    async def test_tampered_document(self, event_store, content_store):
        _, purchase = await _valid_chain(event_store)
        tampered = purchase.model_copy(update={"quantity": Decimal("4")})
        content_store.put_raw(purchase.content_hash, Hasher.to_bytes(tampered.to_document()))

        report = await IntegrityVerifier(event_store).audit_documents("batch1")

        assert not report.is_valid
        assert report.errors == [
            f"Transaction {purchase.transaction_id}: document does not match the index"
        ]

    @pytest.mark.asyncio()
    async def test_missing_document(self, event_store, content_store):
        harvest, _ = await _valid_chain(event_store)
        await content_store.unpin(harvest.content_hash)

        report = await IntegrityVerifier(event_store).audit_documents("batch1")

        assert not report.is_valid
        assert len(report.errors) == 1
        assert "could not be fetched" in report.errors[0]

    @pytest.mark.asyncio()
    async def test_garbage_document(self, event_store, content_store):
        harvest, _ = await _valid_chain(event_store)
        content_store.put_raw(harvest.content_hash, b"not json")

        report = await IntegrityVerifier(event_store).audit_documents("batch1")

        assert report.errors == [
            f"Transaction {harvest.transaction_id}: document {harvest.content_hash} "
            f"is not a valid transaction"
        ]

    @pytest.mark.asyncio()
    async def test_audit_does_not_affect_verify(self, event_store, content_store):
        harvest, _ = await _valid_chain(event_store)
        content_store.put_raw(harvest.content_hash, b"not json")

        report = await IntegrityVerifier(event_store).verify_chain("batch1")

        assert report.is_valid

    @pytest.mark.asyncio()
    async def test_unsigned_rejected_when_required(self, event_store):
        await _valid_chain(event_store)
        verifier = IntegrityVerifier(event_store)

        assert (await verifier.audit_documents("batch1")).is_valid
        strict = await verifier.audit_documents("batch1", require_signatures=True)

        assert not strict.is_valid
        assert len(strict.errors) == 2
        assert all(error.endswith("is not signed") for error in strict.errors)


class TestAuditSignatures:

    @pytest.fixture
    def signed_store(self, content_store, event_index, clock):
        private_key, _ = Signer.generate_keypair()
        return EventStore(content_store, event_index, signer=EventSigner(private_key), clock=clock)

    @pytest.mark.asyncio()
    async def test_signed_documents_pass(self, signed_store):
        await _valid_chain(signed_store)

        report = await IntegrityVerifier(signed_store).audit_documents(
            "batch1", require_signatures=True,
        )

        assert report.is_valid
        assert report.signed == 2

    @pytest.mark.asyncio()
    async def test_forged_signature(self, signed_store, content_store):
        harvest, _ = await _valid_chain(signed_store)
        other_private, _ = Signer.generate_keypair()
        forged = harvest.model_copy(update={
            "signature": Signer.sign(EventSigner.signing_bytes(harvest), other_private),
        })
        content_store.put_raw(harvest.content_hash, Hasher.to_bytes(forged.to_document()))

        report = await IntegrityVerifier(signed_store).audit_documents("batch1")

        assert f"Transaction {harvest.transaction_id} has an invalid signature" in report.errors

    @pytest.mark.asyncio()
    async def test_resigned_with_other_key_is_untrusted(self, content_store, event_index, clock):
        _, trusted_public = Signer.generate_keypair()
        other_private, _ = Signer.generate_keypair()
        # Document and index row agree and the signature verifies, but the
        # embedded key is not one the ledger signs with.
        other_store = EventStore(content_store, event_index, signer=EventSigner(other_private), clock=clock)
        harvest, _ = await _valid_chain(other_store)
        reader = EventStore(content_store, event_index, clock=clock)

        report = await IntegrityVerifier(reader, trusted_keys=[trusted_public]).audit_documents(
            "batch1", require_signatures=True,
        )

        assert not report.is_valid
        assert report.signed == 2
        assert f"Transaction {harvest.transaction_id} has an untrusted signer" in report.errors
        assert not any("invalid signature" in error for error in report.errors)

    @pytest.mark.asyncio()
    async def test_signed_documents_need_a_trusted_key(self, signed_store, event_store):
        await _valid_chain(signed_store)

        report = await IntegrityVerifier(event_store).audit_documents("batch1")

        assert not report.is_valid
        assert all(error.endswith("has an untrusted signer") for error in report.errors)

    @pytest.mark.asyncio()
    async def test_explicit_trusted_key(self, signed_store, event_store):
        await _valid_chain(signed_store)
        verifier = IntegrityVerifier(event_store, trusted_keys=[signed_store.signer.public_key])

        report = await verifier.audit_documents("batch1", require_signatures=True)

        assert report.is_valid
        assert verifier.trusted_keys == frozenset([signed_store.signer.public_key])

    def test_own_signer_key_is_trusted(self, signed_store):
        assert IntegrityVerifier(signed_store).trusted_keys == frozenset([signed_store.signer.public_key])

    def test_wiring_passes_trusted_keys(self, content_store, event_index):
        _, public_key = Signer.generate_keypair()

        ledger = build_ledger(content_store, event_index, trusted_keys=[public_key])

        assert ledger.verifier.trusted_keys == frozenset([public_key])
