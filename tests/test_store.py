"""
Tests for the ProvenanceStore

The store is the last line of defence: even a buggy ledger must not be
able to commit a record that breaks a product chain.
"""

from datetime import datetime, timezone

import pytest

from provenance.core import Hasher, Signer
from provenance.db import (
    ChainIntegrityError,
    InMemoryProvenanceStore,
    LockTimeoutError,
    StoreError,
)
from provenance.schemas import ManufactureRecord, RepairRecord, TransferRecord


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _seal(draft):
    """Hash a draft record the way the ledger does."""
    record_hash = Hasher.hash_record(draft.hash_body(), draft.previous_record_hash)
    return draft.model_copy(update={"record_hash": record_hash, "record_ref": f"test:{record_hash}"})


@pytest.fixture
def owner():
    return Signer.generate_keypair()[1]


@pytest.fixture
def store():
    return InMemoryProvenanceStore(lock_timeout=0.05)


@pytest.fixture
def manufactured(store, owner):
    record = _seal(ManufactureRecord(product_id="SN-1", sequence=0, timestamp=T0, owner=owner))
    with store.begin_append("SN-1") as ctx:
        ctx.commit(record)
    return record


class TestAppend:
    """Test the append transaction contract."""

    def test_first_append_creates_product(self, store, manufactured, owner):
        assert store.exists("SN-1")
        assert store.get("SN-1") == (manufactured,)
        assert store.feed_length() == 1
        assert store.feed_at(0) == manufactured

        head = store.head("SN-1")
        assert head.current_owner == owner
        assert head.last_record_hash == manufactured.record_hash
        assert head.next_sequence == 1
        assert not head.retired

    def test_unknown_product(self, store):
        assert not store.exists("SN-404")
        assert store.get("SN-404") is None
        assert store.head("SN-404") is None

    def test_head_exposed_in_context(self, store, manufactured):
        with store.begin_append("SN-1") as ctx:
            assert ctx.head.length == 1
            ctx.rollback()

        with store.begin_append("SN-2") as ctx:
            assert ctx.head is None

    def test_exception_rolls_back(self, store, manufactured, owner):
        repair = _seal(RepairRecord(
            product_id="SN-1",
            sequence=1,
            timestamp=T0,
            owner=owner,
            metadata="fix",
            previous_record_hash=manufactured.record_hash,
        ))

        with pytest.raises(RuntimeError):
            with store.begin_append("SN-1") as ctx:
                raise RuntimeError("validation blew up")

        assert len(store.get("SN-1")) == 1
        with store.begin_append("SN-1") as ctx:
            ctx.commit(repair)
        assert len(store.get("SN-1")) == 2

    def test_double_commit_rejected(self, store, owner):
        record = _seal(ManufactureRecord(product_id="SN-2", sequence=0, timestamp=T0, owner=owner))

        with pytest.raises(StoreError, match="already committed"):
            with store.begin_append("SN-2") as ctx:
                ctx.commit(record)
                ctx.commit(record)

        assert len(store.get("SN-2")) == 1

    def test_returned_history_is_a_copy(self, store, manufactured):
        history = store.get("SN-1")
        assert isinstance(history, tuple)
        assert store.get("SN-1") is not history


class TestChainEnforcement:
    """Test that the store refuses records that break a chain."""

    def test_first_record_must_be_manufacture(self, store, owner):
        record = _seal(RepairRecord(
            product_id="SN-9", sequence=0, timestamp=T0, owner=owner, metadata="fix",
        ))
        with pytest.raises(ChainIntegrityError, match="must be Manufacture"):
            with store.begin_append("SN-9") as ctx:
                ctx.commit(record)
        assert not store.exists("SN-9")

    def test_second_manufacture_rejected(self, store, manufactured, owner):
        record = _seal(ManufactureRecord(
            product_id="SN-1",
            sequence=1,
            timestamp=T0,
            owner=owner,
            previous_record_hash=manufactured.record_hash,
        ))
        with pytest.raises(ChainIntegrityError, match="already has a Manufacture"):
            with store.begin_append("SN-1") as ctx:
                ctx.commit(record)

    def test_wrong_sequence_rejected(self, store, manufactured, owner):
        record = _seal(RepairRecord(
            product_id="SN-1",
            sequence=5,
            timestamp=T0,
            owner=owner,
            metadata="fix",
            previous_record_hash=manufactured.record_hash,
        ))
        with pytest.raises(ChainIntegrityError, match="Sequence mismatch"):
            with store.begin_append("SN-1") as ctx:
                ctx.commit(record)

    def test_wrong_previous_hash_rejected(self, store, manufactured, owner):
        record = _seal(RepairRecord(
            product_id="SN-1",
            sequence=1,
            timestamp=T0,
            owner=owner,
            metadata="fix",
            previous_record_hash="0" * 64,
        ))
        with pytest.raises(ChainIntegrityError, match="Previous hash mismatch"):
            with store.begin_append("SN-1") as ctx:
                ctx.commit(record)

    def test_bad_hash_rejected(self, store, manufactured, owner):
        record = _seal(TransferRecord(
            product_id="SN-1",
            sequence=1,
            timestamp=T0,
            owner=Signer.generate_keypair()[1],
            previous_owner=owner,
            previous_record_hash=manufactured.record_hash,
        )).model_copy(update={"record_hash": "f" * 64})

        with pytest.raises(ChainIntegrityError, match="Hash verification failed"):
            with store.begin_append("SN-1") as ctx:
                ctx.commit(record)
        assert store.head("SN-1").current_owner == owner

    def test_record_for_other_product_rejected(self, store, owner):
        record = _seal(ManufactureRecord(product_id="SN-A", sequence=0, timestamp=T0, owner=owner))
        with pytest.raises(ChainIntegrityError):
            with store.begin_append("SN-B") as ctx:
                ctx.commit(record)


class TestLocking:
    """Test per-product locking."""

    def test_same_product_lock_times_out(self, store, manufactured):
        with store.begin_append("SN-1"):
            with pytest.raises(LockTimeoutError):
                with store.begin_append("SN-1"):
                    pass

    def test_different_products_do_not_contend(self, store, manufactured):
        with store.begin_append("SN-1"):
            with store.begin_append("SN-2") as ctx:
                assert ctx.head is None

    def test_lock_released_after_failure(self, store, manufactured):
        with pytest.raises(RuntimeError):
            with store.begin_append("SN-1"):
                raise RuntimeError("boom")

        with store.begin_append("SN-1") as ctx:
            assert ctx.head is not None
