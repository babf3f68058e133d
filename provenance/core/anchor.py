"""
Ledger Anchoring

Every committed record gets a reference string, record_ref, that stands
in for the external durable-ledger reference (e.g. a blockchain
transaction signature).

The anchor is called inside the product's critical section, before the
record is committed. If it raises, nothing is appended.

Binding record_ref to a real external ledger is out of scope here;
LocalAnchor derives it from the record hash.
"""

from abc import ABC, abstractmethod

from ..observability import get_logger

logger = get_logger(__name__)


class LedgerAnchor(ABC):
    """Collaborator that anchors records and returns their reference."""

    @abstractmethod
    def submit(self, product_id: str, record_hash: str, kind: str) -> str:
        """
        Anchor a record about to be appended.

        Returns:
            A stable reference string, unique per record
        """
        pass


class LocalAnchor(LedgerAnchor):
    """
    Process-local anchor.

    The record hash already covers product_id, sequence and the previous
    record hash, so it is unique per record.
    """

    PREFIX = "local"

    def submit(self, product_id: str, record_hash: str, kind: str) -> str:
        record_ref = f"{self.PREFIX}:{record_hash}"
        logger.debug(
            "Record anchored locally",
            product_id=product_id,
            kind=kind,
            record_ref=record_ref,
        )
        return record_ref
