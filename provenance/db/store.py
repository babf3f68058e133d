"""
Provenance Store Abstraction

This module defines the ProvenanceStore interface and its in-memory
implementation.

The store is responsible for:
- Atomic, per-product append (one writer per product at a time)
- Ordering within a product and in the global feed
- The denormalised product head (current owner, last hash)

The ProvenanceLedger retains responsibility for:
- Ownership rules and record validation
- Hashing and anchoring

TRANSACTION CONTRACT:
All appends MUST go through the begin_append() context manager:

    with store.begin_append(product_id) as ctx:
        head = ctx.head            # None if the product does not exist yet
        # ... validate against head, build and hash the record ...
        ctx.commit(record)

The per-product lock is held for the whole block, so the
read-validate-append sequence is atomic with respect to other writers on
the same product. Writers on different products never contend.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Generator, Optional

from ..core.hasher import Hasher
from ..schemas import ProvenanceRecord, RecordKind


# ============================================================
# EXCEPTIONS
# ============================================================

class StoreError(Exception):
    """Base exception for store errors."""
    pass


class ChainIntegrityError(StoreError):
    """Raised when a commit would break a product's record chain."""
    pass


class LockTimeoutError(StoreError):
    """Raised when a product lock cannot be acquired in time."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass(frozen=True)
class ProductHead:
    """
    Current state of one product, derived from its last record.

    Kept alongside the records so the ownership check is O(1).
    """
    product_id: str
    length: int
    current_owner: str
    last_record_hash: str
    last_timestamp: datetime
    retired: bool = False

    @property
    def next_sequence(self) -> int:
        return self.length


@dataclass
class AppendContext:
    """
    Transaction context for one atomic append.

    Valid only inside the begin_append() block that produced it.
    """
    product_id: str
    head: Optional[ProductHead]
    _store: "ProvenanceStore"
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    def commit(self, record: ProvenanceRecord) -> ProvenanceRecord:
        if self._committed:
            raise StoreError("Transaction already committed")
        if self._rolled_back:
            raise StoreError("Transaction already rolled back")

        result = self._store._do_commit(self, record)
        self._committed = True
        return result

    def rollback(self) -> None:
        """Abandon the append. Nothing is written."""
        if not self._committed:
            self._rolled_back = True


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class ProvenanceStore(ABC):
    """
    Abstract base class for provenance storage.

    Implementations must ensure:
    1. begin_append() serialises writers per product
    2. No gaps or duplicates in a product's sequence numbers
    3. Chain linkage is always correct
    4. The global feed preserves each product's relative order
    """

    @contextmanager
    @abstractmethod
    def begin_append(self, product_id: str) -> Generator[AppendContext, None, None]:
        """
        Begin an atomic append for one product.

        Yields:
            AppendContext with the product head (None for a new product)
        """
        pass

    @abstractmethod
    def _do_commit(self, ctx: AppendContext, record: ProvenanceRecord) -> ProvenanceRecord:
        """Internal: commit within the current transaction. Use ctx.commit()."""
        pass

    @abstractmethod
    def exists(self, product_id: str) -> bool:
        pass

    @abstractmethod
    def get(self, product_id: str) -> Optional[tuple]:
        """All records of a product in append order, or None."""
        pass

    @abstractmethod
    def head(self, product_id: str) -> Optional[ProductHead]:
        pass

    @abstractmethod
    def product_ids(self) -> list[str]:
        pass

    @abstractmethod
    def feed_length(self) -> int:
        pass

    @abstractmethod
    def feed_at(self, index: int) -> ProvenanceRecord:
        """Record at a global append position (0 = oldest)."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryProvenanceStore(ProvenanceStore):
    """
    In-memory implementation of ProvenanceStore.

    Suitable for:
    - Development
    - Testing
    - Single-process deployments without persistence requirements

    Nothing survives a restart.
    """

    LOCK_TIMEOUT_SECONDS = 5.0

    def __init__(self, lock_timeout: float = LOCK_TIMEOUT_SECONDS):
        self._records: dict[str, list] = {}
        self._heads: dict[str, ProductHead] = {}
        self._feed: list = []

        self._locks: dict[str, Lock] = {}
        self._registry_lock = Lock()
        self._feed_lock = Lock()
        self._lock_timeout = lock_timeout

    def _lock_for(self, product_id: str) -> Lock:
        with self._registry_lock:
            lock = self._locks.get(product_id)
            if lock is None:
                lock = Lock()
                self._locks[product_id] = lock
            return lock

    @contextmanager
    def begin_append(self, product_id: str) -> Generator[AppendContext, None, None]:
        """Begin atomic append holding the product's lock."""
        lock = self._lock_for(product_id)
        if not lock.acquire(timeout=self._lock_timeout):
            raise LockTimeoutError(
                f"Timed out waiting for product {product_id!r}"
            )

        ctx = AppendContext(
            product_id=product_id,
            head=self._heads.get(product_id),
            _store=self,
        )
        try:
            yield ctx
        except Exception:
            ctx.rollback()
            raise
        finally:
            lock.release()

    def _do_commit(self, ctx: AppendContext, record: ProvenanceRecord) -> ProvenanceRecord:
        """Validate linkage against the head, then append."""
        head = self._heads.get(ctx.product_id)

        if head != ctx.head:
            raise ChainIntegrityError(
                f"Head of {ctx.product_id!r} moved during the transaction"
            )
        if record.product_id != ctx.product_id:
            raise ChainIntegrityError(
                f"Record for {record.product_id!r} committed in a "
                f"transaction for {ctx.product_id!r}"
            )

        if head is None:
            if record.kind != RecordKind.MANUFACTURE.value:
                raise ChainIntegrityError(
                    f"First record of {ctx.product_id!r} must be Manufacture, "
                    f"got {record.kind}"
                )
            expected_sequence, expected_previous = 0, None
        else:
            if head.retired:
                raise ChainIntegrityError(f"Product {ctx.product_id!r} is retired")
            if record.kind == RecordKind.MANUFACTURE.value:
                raise ChainIntegrityError(
                    f"Product {ctx.product_id!r} already has a Manufacture record"
                )
            expected_sequence, expected_previous = head.next_sequence, head.last_record_hash

        if record.sequence != expected_sequence:
            raise ChainIntegrityError(
                f"Sequence mismatch: expected {expected_sequence}, got {record.sequence}"
            )
        if record.previous_record_hash != expected_previous:
            raise ChainIntegrityError(
                f"Previous hash mismatch: expected {expected_previous}, "
                f"got {record.previous_record_hash}"
            )
        if not Hasher.verify_record(
            record.hash_body(), record.record_hash, record.previous_record_hash
        ):
            raise ChainIntegrityError(
                f"Hash verification failed for {ctx.product_id!r} "
                f"sequence {record.sequence}"
            )

        # All checks passed - append
        with self._feed_lock:
            self._records.setdefault(ctx.product_id, []).append(record)
            self._feed.append(record)
            self._heads[ctx.product_id] = ProductHead(
                product_id=ctx.product_id,
                length=record.sequence + 1,
                current_owner=record.owner,
                last_record_hash=record.record_hash,
                last_timestamp=record.timestamp,
                retired=record.kind == RecordKind.END_OF_LIFE.value,
            )

        return record

    def exists(self, product_id: str) -> bool:
        return product_id in self._heads

    def get(self, product_id: str) -> Optional[tuple]:
        records = self._records.get(product_id)
        if records is None:
            return None
        return tuple(records)

    def head(self, product_id: str) -> Optional[ProductHead]:
        return self._heads.get(product_id)

    def product_ids(self) -> list[str]:
        return list(self._heads.keys())

    def feed_length(self) -> int:
        return len(self._feed)

    def feed_at(self, index: int) -> ProvenanceRecord:
        return self._feed[index]
