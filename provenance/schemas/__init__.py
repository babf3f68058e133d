# Canonical schemas for provenance records.
# A record is a fact about a product. Facts are never edited.

from .records import (
    RecordKind,
    ProvenanceRecord,
    ManufactureRecord,
    TransferRecord,
    RepairRecord,
    EndOfLifeRecord,
    FeedFilter,
)

__all__ = [
    "RecordKind",
    "ProvenanceRecord",
    "ManufactureRecord",
    "TransferRecord",
    "RepairRecord",
    "EndOfLifeRecord",
    "FeedFilter",
]
