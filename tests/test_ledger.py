"""
Tests for the Provenance Ledger

Demonstrates the complete product lifecycle:
1. Manufacture a product
2. Transfer it between wallets
3. Record repairs
4. Retire it
5. Verify chain integrity
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from provenance.core import (
    CanonicalSerializationError,
    DuplicateProduct,
    Hasher,
    InvalidIdentity,
    InvalidProductId,
    InvalidTarget,
    LedgerAnchor,
    MissingRepairDetail,
    OwnershipMismatch,
    ProductRetired,
    ProvenanceLedger,
    Signer,
    UnknownProduct,
)
from provenance.schemas import FeedFilter, RecordKind


def _wallet() -> str:
    return Signer.generate_keypair()[1]


class StepClock:
    """Clock that returns a fixed UTC time until moved."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def w1():
    return _wallet()


@pytest.fixture
def w2():
    return _wallet()


@pytest.fixture
def w3():
    return _wallet()


class TestHasher:
    """Test canonical hashing - the chain depends on it."""

    def test_deterministic_hash(self):
        data = {"name": "test", "value": 42}
        assert Hasher.hash_record(data) == Hasher.hash_record(data)

    def test_sorted_keys(self):
        assert Hasher.hash_record({"b": 2, "a": 1}) == Hasher.hash_record({"a": 1, "b": 2})

    def test_null_handling(self):
        assert Hasher.canonicalize({"a": 1, "b": None}) == Hasher.canonicalize({"a": 1})

    def test_empty_string_preserved(self):
        assert Hasher.canonicalize({"a": ""}) != Hasher.canonicalize({"a": None})

    def test_datetime_requires_timezone(self):
        with pytest.raises(CanonicalSerializationError, match="timezone-naive"):
            Hasher.canonicalize({"timestamp": datetime(2024, 1, 1, 12, 0, 0)})

    def test_datetime_normalized_to_utc(self):
        utc_time = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        other_time = datetime(2024, 1, 1, 17, 0, 0, tzinfo=timezone(timedelta(hours=5)))
        assert Hasher.hash_record({"t": utc_time}) == Hasher.hash_record({"t": other_time})

    def test_floats_banned(self):
        with pytest.raises(CanonicalSerializationError, match="float"):
            Hasher.canonicalize({"value": 1.5})

    def test_top_level_must_be_dict(self):
        with pytest.raises(CanonicalSerializationError):
            Hasher.canonicalize([1, 2, 3])

    def test_version_injection(self):
        assert '"__canon_v":1' in Hasher.canonicalize({"a": 1})

    def test_chain_hash(self):
        first = Hasher.hash_record({"seq": 0})
        second = Hasher.hash_record({"seq": 1}, first)

        assert len(second) == 64
        assert second != Hasher.hash_record({"seq": 1})
        assert Hasher.verify_record({"seq": 1}, second, first)
        assert not Hasher.verify_record({"seq": 1}, second, None)

    def test_chain_hash_validates_previous_hash_format(self):
        with pytest.raises(CanonicalSerializationError, match="previous_hash"):
            Hasher.hash_record({"seq": 1}, "not-a-hash")


class TestProductLifecycle:
    """Test the basic create / transfer / repair flow."""

    @pytest.fixture
    def ledger(self):
        return ProvenanceLedger()

    def test_create_product(self, ledger, w1):
        record = ledger.create_product("SN-1", "Bike frame", w1)

        history = ledger.get_history("SN-1")
        assert len(history) == 1
        assert history[0].kind == RecordKind.MANUFACTURE.value
        assert history[0].owner == w1
        assert history[0].metadata == "Bike frame"
        assert history[0].sequence == 0
        assert history[0].previous_record_hash is None
        assert record.record_ref == f"local:{record.record_hash}"
        assert ledger.current_owner("SN-1") == w1

    def test_create_without_metadata(self, ledger, w1):
        record = ledger.create_product("SN-1", None, w1)
        assert record.metadata == ""

    def test_transfer(self, ledger, w1, w2):
        ledger.create_product("SN-1", None, w1)

        record = ledger.transfer_ownership("SN-1", w1, w2)

        history = ledger.get_history("SN-1")
        assert len(history) == 2
        assert record.kind == RecordKind.TRANSFER.value
        assert record.previous_owner == w1
        assert record.owner == w2
        assert ledger.current_owner("SN-1") == w2

    def test_stale_owner_cannot_transfer(self, ledger, w1, w2, w3):
        ledger.create_product("SN-1", None, w1)
        ledger.transfer_ownership("SN-1", w1, w2)

        with pytest.raises(OwnershipMismatch) as exc_info:
            ledger.transfer_ownership("SN-1", w1, w3)

        assert exc_info.value.required == w2
        assert exc_info.value.supplied == w1
        assert len(ledger.get_history("SN-1")) == 2

    def test_repair_requires_detail(self, ledger, w1, w2):
        ledger.create_product("SN-1", None, w1)
        ledger.transfer_ownership("SN-1", w1, w2)

        with pytest.raises(MissingRepairDetail):
            ledger.record_repair("SN-1", w2, "")
        with pytest.raises(MissingRepairDetail):
            ledger.record_repair("SN-1", w2, "   ")
        assert len(ledger.get_history("SN-1")) == 2

    def test_repair_keeps_owner(self, ledger, w1):
        ledger.create_product("SN-1", None, w1)

        record = ledger.record_repair("SN-1", w1, "Replaced chain")

        assert record.kind == RecordKind.REPAIR.value
        assert record.owner == w1
        assert record.metadata == "Replaced chain"
        assert ledger.current_owner("SN-1") == w1

    def test_history_links_owners(self, ledger, w1, w2, w3):
        ledger.create_product("SN-1", None, w1)
        ledger.transfer_ownership("SN-1", w1, w2)
        ledger.record_repair("SN-1", w2, "New tyres")
        ledger.transfer_ownership("SN-1", w2, w3)

        history = ledger.get_history("SN-1")
        assert [r.sequence for r in history] == [0, 1, 2, 3]
        assert history[0].kind == RecordKind.MANUFACTURE.value
        for previous, record in zip(history, history[1:]):
            assert record.previous_record_hash == previous.record_hash
            if record.kind == RecordKind.TRANSFER.value:
                assert record.previous_owner == previous.owner

    def test_history_is_immutable(self, ledger, w1):
        ledger.create_product("SN-1", None, w1)
        history = ledger.get_history("SN-1")

        assert isinstance(history, tuple)
        with pytest.raises(Exception):
            history[0].owner = "someone-else"

    def test_products_are_independent(self, ledger, w1, w2):
        ledger.create_product("SN-1", None, w1)
        ledger.create_product("SN-2", None, w2)

        assert ledger.current_owner("SN-1") == w1
        assert ledger.current_owner("SN-2") == w2
        assert ledger.product_count == 2
        assert ledger.record_count == 2


class TestValidation:
    """Test request validation and error precedence."""

    @pytest.fixture
    def ledger(self, w1):
        ledger = ProvenanceLedger()
        ledger.create_product("SN-1", None, w1)
        return ledger

    def test_duplicate_product(self, ledger, w1, w2):
        with pytest.raises(DuplicateProduct):
            ledger.create_product("SN-1", "again", w2)
        with pytest.raises(DuplicateProduct):
            ledger.create_product("SN-1", "again", w1)
        assert len(ledger.get_history("SN-1")) == 1

    def test_invalid_product_id(self, ledger, w1):
        with pytest.raises(InvalidProductId):
            ledger.create_product("", None, w1)
        with pytest.raises(InvalidProductId):
            ledger.create_product("   ", None, w1)

    def test_invalid_creator(self, ledger):
        with pytest.raises(InvalidIdentity):
            ledger.create_product("SN-2", None, "")
        with pytest.raises(InvalidIdentity):
            ledger.create_product("SN-2", None, "W1")
        assert ledger.product_count == 1

    def test_unknown_product(self, ledger, w1, w2):
        with pytest.raises(UnknownProduct):
            ledger.transfer_ownership("SN-404", w1, w2)
        with pytest.raises(UnknownProduct):
            ledger.record_repair("SN-404", w1, "fix")
        with pytest.raises(UnknownProduct):
            ledger.mark_end_of_life("SN-404", w1)
        with pytest.raises(UnknownProduct):
            ledger.get_history("SN-404")
        with pytest.raises(UnknownProduct):
            ledger.current_owner("SN-404")

    def test_non_owner_cannot_repair(self, ledger, w2):
        with pytest.raises(OwnershipMismatch):
            ledger.record_repair("SN-1", w2, "fix")
        assert len(ledger.get_history("SN-1")) == 1

    def test_invalid_targets(self, ledger, w1):
        with pytest.raises(InvalidTarget):
            ledger.transfer_ownership("SN-1", w1, "")
        with pytest.raises(InvalidTarget):
            ledger.transfer_ownership("SN-1", w1, "W2")
        with pytest.raises(InvalidTarget):
            ledger.transfer_ownership("SN-1", w1, w1)
        assert len(ledger.get_history("SN-1")) == 1

    def test_ownership_checked_before_target(self, ledger, w2):
        """A non-owner sees OwnershipMismatch whatever target they name."""
        with pytest.raises(OwnershipMismatch):
            ledger.transfer_ownership("SN-1", w2, "")
        with pytest.raises(OwnershipMismatch):
            ledger.transfer_ownership("SN-1", w2, w2)

    def test_identity_comparison_is_exact(self, ledger, w1, w2):
        with pytest.raises(OwnershipMismatch):
            ledger.transfer_ownership("SN-1", w1.lower(), w2)


class TestEndOfLife:
    """Test product retirement."""

    @pytest.fixture
    def ledger(self, w1):
        ledger = ProvenanceLedger()
        ledger.create_product("SN-1", None, w1)
        return ledger

    def test_mark_end_of_life(self, ledger, w1):
        record = ledger.mark_end_of_life("SN-1", w1)

        assert record.kind == RecordKind.END_OF_LIFE.value
        assert record.owner == w1
        assert record.metadata == "Product marked as end-of-life"

    def test_custom_note(self, ledger, w1):
        record = ledger.mark_end_of_life("SN-1", w1, "Recycled")
        assert record.metadata == "Recycled"

    def test_only_owner_can_retire(self, ledger, w2):
        with pytest.raises(OwnershipMismatch):
            ledger.mark_end_of_life("SN-1", w2)

    def test_retired_product_accepts_nothing(self, ledger, w1, w2):
        ledger.mark_end_of_life("SN-1", w1)

        with pytest.raises(ProductRetired):
            ledger.transfer_ownership("SN-1", w1, w2)
        with pytest.raises(ProductRetired):
            ledger.record_repair("SN-1", w1, "fix")
        with pytest.raises(ProductRetired):
            ledger.mark_end_of_life("SN-1", w1)

        history = ledger.get_history("SN-1")
        assert len(history) == 2
        assert ledger.verify_chain_integrity("SN-1")


class TestTimestamps:
    """Test timestamp handling within a product."""

    def test_timestamps_never_go_backwards(self, w1, w2):
        clock = StepClock()
        ledger = ProvenanceLedger(clock=clock)
        ledger.create_product("SN-1", None, w1)

        clock.advance(hours=-1)
        record = ledger.transfer_ownership("SN-1", w1, w2)

        first = ledger.get_history("SN-1")[0]
        assert record.timestamp == first.timestamp
        assert record.sequence == first.sequence + 1

    def test_naive_clock_rejected(self, w1):
        from provenance.core import ChainError

        ledger = ProvenanceLedger(clock=lambda: datetime(2024, 1, 1))
        with pytest.raises(ChainError):
            ledger.create_product("SN-1", None, w1)
        assert ledger.product_count == 0


class TestFeed:
    """Test the global feed."""

    @pytest.fixture
    def clock(self):
        return StepClock()

    @pytest.fixture
    def ledger(self, clock, w1, w2, w3):
        ledger = ProvenanceLedger(clock=clock)
        ledger.create_product("SN-1", None, w1)       # 00:00
        clock.advance(hours=1)
        ledger.create_product("SN-2", None, w2)       # 01:00
        clock.advance(hours=1)
        ledger.transfer_ownership("SN-1", w1, w2)     # 02:00
        clock.advance(hours=1)
        ledger.record_repair("SN-2", w2, "Service")   # 03:00
        clock.advance(hours=1)
        ledger.transfer_ownership("SN-2", w2, w3)     # 04:00
        return ledger

    def test_most_recent_first(self, ledger):
        feed = list(ledger.get_feed())
        timestamps = [r.timestamp for r in feed]

        assert len(feed) == 5
        assert timestamps == sorted(timestamps, reverse=True)
        assert feed[0].product_id == "SN-2"
        assert feed[0].kind == RecordKind.TRANSFER.value

    def test_feed_preserves_product_order(self, ledger):
        sn2 = [r.sequence for r in ledger.get_feed() if r.product_id == "SN-2"]
        assert sn2 == [2, 1, 0]

    def test_filter_by_owner(self, ledger, w2):
        feed = list(ledger.get_feed(owner=w2))
        assert len(feed) == 3
        assert all(r.owner == w2 for r in feed)

    def test_filter_by_previous_owner(self, ledger, w1, w2):
        feed = list(ledger.get_feed(previous_owner=w1))
        assert len(feed) == 1
        assert feed[0].product_id == "SN-1"
        assert feed[0].owner == w2

    def test_filters_compose_with_and(self, ledger, w2):
        feed = list(ledger.get_feed(FeedFilter(owner=w2, product_id="SN-2")))
        assert [r.kind for r in feed] == ["Repair", "Manufacture"]

    def test_filter_by_kind(self, ledger):
        feed = list(ledger.get_feed(kind=RecordKind.TRANSFER))
        assert len(feed) == 2

    def test_time_bounds_are_inclusive(self, ledger):
        start = datetime(2024, 1, 1, 1, tzinfo=timezone.utc)
        end = datetime(2024, 1, 1, 3, tzinfo=timezone.utc)

        feed = list(ledger.get_feed(start_time=start, end_time=end))

        assert len(feed) == 3
        assert feed[0].timestamp == end
        assert feed[-1].timestamp == start

    def test_naive_time_bounds_are_utc(self, ledger):
        feed = list(ledger.get_feed(start_time=datetime(2024, 1, 1, 4)))
        assert len(feed) == 1

    def test_limit(self, ledger):
        assert len(list(ledger.get_feed(limit=2))) == 2
        assert list(ledger.get_feed(limit=0)) == []
        with pytest.raises(ValueError):
            FeedFilter(limit=-1)

    def test_restartable(self, ledger):
        feed = ledger.get_feed(limit=3)
        assert list(feed) == list(feed)

    def test_snapshot_at_call_time(self, ledger, w3):
        feed = ledger.get_feed()
        ledger.record_repair("SN-2", w3, "Later repair")

        assert len(list(feed)) == 5
        assert len(list(ledger.get_feed())) == 6

    def test_filter_and_criteria_are_exclusive(self, ledger, w1):
        with pytest.raises(TypeError):
            ledger.get_feed(FeedFilter(), owner=w1)


class TestChainIntegrity:
    """Test tamper detection on product chains."""

    @pytest.fixture
    def ledger(self, w1, w2):
        ledger = ProvenanceLedger()
        ledger.create_product("SN-1", "Original", w1)
        ledger.transfer_ownership("SN-1", w1, w2)
        ledger.record_repair("SN-1", w2, "Fix")
        return ledger

    def test_valid_chain(self, ledger):
        assert ledger.verify_chain_integrity()
        assert ledger.verify_chain_integrity("SN-1")

    def test_unknown_product(self, ledger):
        with pytest.raises(UnknownProduct):
            ledger.verify_chain_integrity("SN-404")

    def test_tampered_field_detected(self, ledger):
        records = ledger.store._records["SN-1"]
        records[0] = records[0].model_copy(update={"metadata": "Forged"})

        assert not ledger.verify_chain_integrity("SN-1")
        assert not ledger.verify_chain_integrity()

    def test_rewritten_owner_detected(self, ledger, w3):
        records = ledger.store._records["SN-1"]
        forged = records[1].model_copy(update={"owner": w3})
        forged = forged.model_copy(update={
            "record_hash": Hasher.hash_record(forged.hash_body(), forged.previous_record_hash),
        })
        records[1] = forged

        # Re-hashed record breaks the link to its successor
        assert not ledger.verify_chain_integrity("SN-1")

    def test_deleted_record_detected(self, ledger):
        del ledger.store._records["SN-1"][1]
        assert not ledger.verify_chain_integrity("SN-1")


class FailingAnchor(LedgerAnchor):
    def submit(self, product_id, record_hash, kind):
        raise RuntimeError("anchor unavailable")


class TestAnchoring:
    """Test anchor integration."""

    def test_record_refs_are_unique(self, w1, w2):
        ledger = ProvenanceLedger()
        ledger.create_product("SN-1", None, w1)
        ledger.transfer_ownership("SN-1", w1, w2)
        ledger.create_product("SN-2", None, w1)

        refs = [r.record_ref for r in ledger.get_feed()]
        assert len(set(refs)) == 3

    def test_anchor_failure_appends_nothing(self, w1):
        ledger = ProvenanceLedger(anchor=FailingAnchor())

        with pytest.raises(RuntimeError):
            ledger.create_product("SN-1", None, w1)

        assert ledger.product_count == 0
        assert ledger.record_count == 0


class TestConcurrency:
    """Test that ownership checks and appends are atomic."""

    def test_concurrent_transfers_from_same_owner(self, w1):
        ledger = ProvenanceLedger()
        ledger.create_product("SN-1", None, w1)

        targets = [_wallet() for _ in range(8)]
        barrier = threading.Barrier(len(targets))
        successes, mismatches = [], []

        def attempt(target):
            barrier.wait()
            try:
                successes.append(ledger.transfer_ownership("SN-1", w1, target))
            except OwnershipMismatch:
                mismatches.append(target)

        threads = [threading.Thread(target=attempt, args=(t,)) for t in targets]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(successes) == 1
        assert len(mismatches) == len(targets) - 1
        assert len(ledger.get_history("SN-1")) == 2
        assert ledger.current_owner("SN-1") == successes[0].owner

    def test_concurrent_creates_of_same_id(self, w1):
        ledger = ProvenanceLedger()
        barrier = threading.Barrier(6)
        outcomes = []

        def attempt():
            barrier.wait()
            try:
                ledger.create_product("SN-1", None, w1)
                outcomes.append("created")
            except DuplicateProduct:
                outcomes.append("duplicate")

        threads = [threading.Thread(target=attempt) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("created") == 1
        assert ledger.record_count == 1

    def test_parallel_products_keep_feed_order(self, w1):
        ledger = ProvenanceLedger()
        product_ids = [f"SN-{i}" for i in range(5)]

        def lifecycle(product_id):
            ledger.create_product(product_id, None, w1)
            for n in range(5):
                ledger.record_repair(product_id, w1, f"repair {n}")

        threads = [threading.Thread(target=lifecycle, args=(p,)) for p in product_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert ledger.record_count == 30
        for product_id in product_ids:
            sequences = [r.sequence for r in ledger.get_feed(product_id=product_id)]
            assert sequences == list(range(5, -1, -1))
        assert ledger.verify_chain_integrity()
