"""
Provenance Ledger - The Heart of the System

This is an append-only, per-product ownership chain.
Nothing is "edited". Things happen to a product.

The ledger:
- Accepts lifecycle actions (manufacture, transfer, repair, end of life)
- Checks them against the product's current owner
- Hashes and chains records
- Anchors and appends them

Rules (enforced in code):
- The first record of a product is Manufacture, and there is only one
- Every later record must be authorized by the current owner, i.e. the
  owner of the LAST record by append order (never by timestamp)
- A transfer must name a different, well-formed wallet
- A repair must carry repair detail
- After end of life, nothing more is accepted

ARCHITECTURE NOTE:
Storage is delegated to a ProvenanceStore.
- ProvenanceLedger: ownership rules, hashing, anchoring
- ProvenanceStore: per-product atomic append, ordering, product heads

The whole check-then-append sequence runs inside store.begin_append(),
which holds the product's lock. Two concurrent transfers from the same
owner therefore cannot both pass the ownership check.
"""

import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Iterator, Optional

from ..observability import get_logger, get_metrics
from ..schemas import (
    EndOfLifeRecord,
    FeedFilter,
    ManufactureRecord,
    ProvenanceRecord,
    RecordKind,
    RepairRecord,
    TransferRecord,
)
from .anchor import LedgerAnchor, LocalAnchor
from .hasher import Hasher
from .wallet import is_valid_wallet

if TYPE_CHECKING:
    from ..db.store import AppendContext, ProductHead, ProvenanceStore

logger = get_logger(__name__)


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class ValidationError(LedgerError):
    """Raised when a request is malformed."""
    pass


class InvalidProductId(ValidationError):
    pass


class InvalidIdentity(ValidationError):
    pass


class InvalidTarget(ValidationError):
    """Raised when a transfer names an unusable next owner."""
    pass


class MissingRepairDetail(ValidationError):
    pass


class DuplicateProduct(LedgerError):
    pass


class UnknownProduct(LedgerError):
    pass


class ProductRetired(LedgerError):
    """Raised when writing to a product marked end-of-life."""
    pass


class OwnershipMismatch(LedgerError):
    """Raised when the acting wallet does not hold the product."""

    def __init__(self, product_id: str, required: str, supplied: Optional[str]):
        self.product_id = product_id
        self.required = required
        self.supplied = supplied
        super().__init__(
            f"Ownership verification failed for {product_id}. "
            f"Current owner is {required}, not {supplied}"
        )


class ChainError(LedgerError):
    """Raised when chain integrity is compromised. Never a caller mistake."""
    pass


class FeedView:
    """
    Most-recent-first view over the global feed.

    Lazy: records are filtered as they are pulled.
    Finite: bounded by the feed length at the time the view was taken.
    Restartable: every iteration starts again from the newest record.
    """

    def __init__(self, store: "ProvenanceStore", feed_filter: FeedFilter):
        self._store = store
        self._filter = feed_filter
        self._length = store.feed_length()

    @property
    def filter(self) -> FeedFilter:
        return self._filter

    def __iter__(self) -> Iterator[ProvenanceRecord]:
        limit = self._filter.limit
        if limit == 0:
            return

        yielded = 0
        for index in range(self._length - 1, -1, -1):
            record = self._store.feed_at(index)
            if not self._filter.matches(record):
                continue
            yield record
            yielded += 1
            if limit is not None and yielded >= limit:
                return

    def __repr__(self) -> str:
        return f"FeedView(length={self._length}, filter={self._filter!r})"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProvenanceLedger:
    """
    The core provenance ledger.

    CHAIN GUARANTEES (per product):
    - Sequence numbers are 0, 1, 2, ... with no gaps
    - previous_record_hash is None ONLY for the Manufacture record
    - Timestamps never go backwards
    - A Transfer's previous_owner is the preceding record's owner

    OWNERSHIP GUARANTEES:
    - The acting wallet is compared to the current owner by exact string
      equality. No normalization, no case folding.
    - There is no other access-control list
    """

    def __init__(
        self,
        store: Optional["ProvenanceStore"] = None,
        anchor: Optional[LedgerAnchor] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        # Import here to avoid circular imports
        if store is None:
            from ..db.store import InMemoryProvenanceStore
            store = InMemoryProvenanceStore()

        self._store = store
        self._anchor = anchor or LocalAnchor()
        self._clock = clock or _utc_now

    @property
    def store(self) -> "ProvenanceStore":
        return self._store

    @property
    def product_count(self) -> int:
        return len(self._store.product_ids())

    @property
    def record_count(self) -> int:
        return self._store.feed_length()

    # ================================================================
    # INTERNALS
    # ================================================================

    def _now(self, head: Optional["ProductHead"]) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            raise ChainError("Ledger clock returned a timezone-naive datetime")
        # Non-decreasing within a product; ties are ordered by sequence
        if head is not None and now < head.last_timestamp:
            return head.last_timestamp
        return now

    def _reject(self, error: LedgerError, **fields) -> LedgerError:
        get_metrics().record_rejection()
        logger.warning(
            "Ledger write rejected",
            error_type=type(error).__name__,
            reason=str(error),
            **fields,
        )
        return error

    def _chain_fields(self, head: Optional["ProductHead"]) -> dict:
        return {
            "sequence": 0 if head is None else head.next_sequence,
            "timestamp": self._now(head),
            "previous_record_hash": None if head is None else head.last_record_hash,
        }

    def _require_owner(
        self,
        ctx: "AppendContext",
        acting_identity: Optional[str],
    ) -> "ProductHead":
        """
        The single authorization gate.

        Reads the product head (the denormalised last record) held under
        the product lock and compares its owner to the acting wallet.
        """
        product_id = ctx.product_id
        head = ctx.head

        if head is None:
            raise self._reject(
                UnknownProduct(f"Product {product_id} does not exist"),
                product_id=product_id,
            )
        if head.retired:
            raise self._reject(
                ProductRetired(f"Product {product_id} is marked end-of-life"),
                product_id=product_id,
            )
        if head.current_owner != acting_identity:
            raise self._reject(
                OwnershipMismatch(product_id, head.current_owner, acting_identity),
                product_id=product_id,
                required=head.current_owner,
                supplied=acting_identity,
            )
        return head

    def _require_identity(self, acting_identity: Optional[str], product_id: str) -> None:
        if not acting_identity:
            raise self._reject(
                InvalidIdentity("Acting identity is required"),
                product_id=product_id,
            )

    def _append(self, ctx: "AppendContext", draft: ProvenanceRecord) -> ProvenanceRecord:
        """
        Hash, anchor and commit a record.

        This is APPEND ONLY. No updates. No deletes. Ever.
        Runs inside the product's begin_append() block; any exception
        here leaves the ledger unchanged.
        """
        from ..db.store import StoreError

        start = time.perf_counter()

        record_hash = Hasher.hash_record(draft.hash_body(), draft.previous_record_hash)
        record_ref = self._anchor.submit(draft.product_id, record_hash, draft.kind)
        record = draft.model_copy(
            update={"record_hash": record_hash, "record_ref": record_ref}
        )

        try:
            ctx.commit(record)
        except StoreError as e:
            logger.error(
                "Store rejected a validated record",
                product_id=draft.product_id,
                sequence=draft.sequence,
                error=str(e),
            )
            raise ChainError(
                f"Could not append record {draft.sequence} to {draft.product_id}"
            ) from e

        get_metrics().record_append((time.perf_counter() - start) * 1000)
        return record

    # ================================================================
    # COMMANDS
    # ================================================================

    def create_product(
        self,
        product_id: str,
        metadata: Optional[str],
        acting_identity: str,
    ) -> ProvenanceRecord:
        """
        Register a new product.

        The acting wallet becomes the first owner. No ownership check:
        there is no prior owner to violate.
        """
        if not isinstance(product_id, str) or not product_id.strip():
            raise self._reject(
                InvalidProductId("Product ID must be a non-empty string"),
                product_id=product_id,
            )
        self._require_identity(acting_identity, product_id)
        if not is_valid_wallet(acting_identity):
            raise self._reject(
                InvalidIdentity(f"Acting identity {acting_identity} is not a valid wallet"),
                product_id=product_id,
            )

        with self._store.begin_append(product_id) as ctx:
            if ctx.head is not None:
                raise self._reject(
                    DuplicateProduct(f"Product ID {product_id} already exists"),
                    product_id=product_id,
                )

            record = self._append(ctx, ManufactureRecord(
                product_id=product_id,
                owner=acting_identity,
                metadata=metadata or "",
                **self._chain_fields(None),
            ))

        logger.info(
            "Product created",
            product_id=product_id,
            owner=acting_identity,
            record_ref=record.record_ref,
        )
        return record

    def transfer_ownership(
        self,
        product_id: str,
        acting_identity: str,
        next_owner: str,
    ) -> ProvenanceRecord:
        """
        Move a product to a new owner.

        Check order: existence, retirement, ownership, then target. A
        non-owner always sees OwnershipMismatch, whatever target they name.
        """
        self._require_identity(acting_identity, product_id)
        if not self._store.exists(product_id):
            raise self._reject(
                UnknownProduct(f"Product {product_id} does not exist"),
                product_id=product_id,
            )

        with self._store.begin_append(product_id) as ctx:
            head = self._require_owner(ctx, acting_identity)

            if not next_owner or not is_valid_wallet(next_owner):
                raise self._reject(
                    InvalidTarget(f"Next owner {next_owner!r} is not a valid wallet"),
                    product_id=product_id,
                )
            if next_owner == acting_identity:
                raise self._reject(
                    InvalidTarget("Cannot transfer a product to its current owner"),
                    product_id=product_id,
                )

            record = self._append(ctx, TransferRecord(
                product_id=product_id,
                owner=next_owner,
                previous_owner=acting_identity,
                **self._chain_fields(head),
            ))

        logger.info(
            "Ownership transferred",
            product_id=product_id,
            from_owner=acting_identity,
            to_owner=next_owner,
            record_ref=record.record_ref,
        )
        return record

    def record_repair(
        self,
        product_id: str,
        acting_identity: str,
        metadata: str,
    ) -> ProvenanceRecord:
        """Record a repair. Ownership does not change."""
        self._require_identity(acting_identity, product_id)
        if not self._store.exists(product_id):
            raise self._reject(
                UnknownProduct(f"Product {product_id} does not exist"),
                product_id=product_id,
            )

        with self._store.begin_append(product_id) as ctx:
            head = self._require_owner(ctx, acting_identity)

            if not metadata or not metadata.strip():
                raise self._reject(
                    MissingRepairDetail("Repair records require repair detail"),
                    product_id=product_id,
                )

            record = self._append(ctx, RepairRecord(
                product_id=product_id,
                owner=head.current_owner,
                metadata=metadata,
                **self._chain_fields(head),
            ))

        logger.info(
            "Repair recorded",
            product_id=product_id,
            owner=acting_identity,
            record_ref=record.record_ref,
        )
        return record

    def mark_end_of_life(
        self,
        product_id: str,
        acting_identity: str,
        metadata: Optional[str] = None,
    ) -> ProvenanceRecord:
        """
        Retire a product.

        The history stays readable; no further records are accepted.
        """
        self._require_identity(acting_identity, product_id)
        if not self._store.exists(product_id):
            raise self._reject(
                UnknownProduct(f"Product {product_id} does not exist"),
                product_id=product_id,
            )

        with self._store.begin_append(product_id) as ctx:
            head = self._require_owner(ctx, acting_identity)

            fields = self._chain_fields(head)
            if metadata:
                fields["metadata"] = metadata
            record = self._append(ctx, EndOfLifeRecord(
                product_id=product_id,
                owner=head.current_owner,
                **fields,
            ))

        logger.info(
            "Product marked end-of-life",
            product_id=product_id,
            owner=acting_identity,
            record_ref=record.record_ref,
        )
        return record

    # ================================================================
    # QUERIES
    # ================================================================

    def get_history(self, product_id: str) -> tuple:
        """
        Full history of a product, in append order.

        Returns an immutable tuple of frozen records; callers cannot
        reach the backing ledger through it.
        """
        records = self._store.get(product_id)
        if records is None:
            raise UnknownProduct(f"Product {product_id} does not exist")
        return records

    def current_owner(self, product_id: str) -> str:
        head = self._store.head(product_id)
        if head is None:
            raise UnknownProduct(f"Product {product_id} does not exist")
        return head.current_owner

    def get_feed(
        self,
        feed_filter: Optional[FeedFilter] = None,
        **criteria,
    ) -> FeedView:
        """
        Records across all products, most recent first.

        Pass a FeedFilter, or its fields as keyword arguments:

            ledger.get_feed(owner=wallet, limit=10)
        """
        if feed_filter is not None and criteria:
            raise TypeError("Pass either a FeedFilter or keyword criteria, not both")
        if feed_filter is None:
            feed_filter = FeedFilter(**criteria)
        return FeedView(self._store, feed_filter)

    # ================================================================
    # INTEGRITY
    # ================================================================

    def verify_chain_integrity(self, product_id: Optional[str] = None) -> bool:
        """
        Verify product chains end to end.

        Checks one product, or every product when product_id is None.
        This should be run periodically as a health check.
        """
        if product_id is not None:
            records = self._store.get(product_id)
            if records is None:
                raise UnknownProduct(f"Product {product_id} does not exist")
            return self._verify_records(records)

        return all(
            self._verify_records(self._store.get(pid) or ())
            for pid in self._store.product_ids()
        )

    @staticmethod
    def _verify_records(records) -> bool:
        if not records:
            return True

        previous = None
        for index, record in enumerate(records):
            if record.sequence != index:
                return False

            if previous is None:
                if record.kind != RecordKind.MANUFACTURE.value:
                    return False
                if record.previous_record_hash is not None:
                    return False
            else:
                if record.kind == RecordKind.MANUFACTURE.value:
                    return False
                if previous.kind == RecordKind.END_OF_LIFE.value:
                    return False
                if record.previous_record_hash != previous.record_hash:
                    return False
                if record.timestamp < previous.timestamp:
                    return False
                if record.product_id != previous.product_id:
                    return False
                if record.kind == RecordKind.TRANSFER.value:
                    if record.previous_owner != previous.owner:
                        return False
                elif record.owner != previous.owner:
                    return False

            if not Hasher.verify_record(
                record.hash_body(), record.record_hash, record.previous_record_hash
            ):
                return False

            previous = record

        return True
