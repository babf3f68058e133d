"""
Provenance Record Schema

This is an append-only ledger, not CRUD.
Nothing is "edited". Things happen to a product.

Each record:
- Is immutable once appended
- Is hashed
- Is chained to the previous record of the same product
- Carries the anchor reference returned when it was committed

Records are a tagged variant on `kind`. Field presence is enforced by
construction: only a Transfer has a previous_owner, a Repair cannot exist
without repair detail.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RecordKind(str, Enum):
    """
    All possible record kinds.
    You can add more later, never remove.
    """
    MANUFACTURE = "Manufacture"
    TRANSFER = "Transfer"
    REPAIR = "Repair"
    END_OF_LIFE = "EndOfLife"


HASH_EXCLUDED_FIELDS = frozenset(("record_hash", "record_ref"))


class _RecordBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str = Field(..., min_length=1)
    sequence: int = Field(..., ge=0, description="Position within the product history")
    timestamp: datetime
    owner: str = Field(..., description="Wallet holding the product after this record")

    # Chain linkage. None only for the Manufacture record.
    previous_record_hash: Optional[str] = None

    # Set at commit time
    record_hash: Optional[str] = None
    record_ref: Optional[str] = None

    schema_version: int = 1

    def hash_body(self) -> dict[str, Any]:
        """Everything the record hash covers."""
        return self.model_dump(mode="python", exclude=set(HASH_EXCLUDED_FIELDS))


class ManufactureRecord(_RecordBase):
    """First record of every product. Creates the product ledger."""
    kind: Literal["Manufacture"] = "Manufacture"
    metadata: str = ""


class TransferRecord(_RecordBase):
    """Ownership moved from previous_owner to owner."""
    kind: Literal["Transfer"] = "Transfer"
    previous_owner: str = Field(..., min_length=1)


class RepairRecord(_RecordBase):
    """Repair performed on behalf of the current owner."""
    kind: Literal["Repair"] = "Repair"
    metadata: str = Field(..., min_length=1, description="Repair detail")


class EndOfLifeRecord(_RecordBase):
    """Product retired. No further records are accepted."""
    kind: Literal["EndOfLife"] = "EndOfLife"
    metadata: str = "Product marked as end-of-life"


ProvenanceRecord = Annotated[
    Union[ManufactureRecord, TransferRecord, RepairRecord, EndOfLifeRecord],
    Field(discriminator="kind"),
]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class FeedFilter(BaseModel):
    """
    Query over the global feed.

    Every field is optional; set fields compose with AND.
    Time bounds are inclusive. Naive datetimes are taken as UTC.
    """
    model_config = ConfigDict(frozen=True)

    owner: Optional[str] = None
    previous_owner: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    product_id: Optional[str] = None
    kind: Optional[RecordKind] = None
    limit: Optional[int] = Field(default=None, ge=0)

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    def matches(self, record: _RecordBase) -> bool:
        if self.owner is not None and record.owner != self.owner:
            return False
        if self.previous_owner is not None and (
            getattr(record, "previous_owner", None) != self.previous_owner
        ):
            return False
        if self.start_time is not None and record.timestamp < self.start_time:
            return False
        if self.end_time is not None and record.timestamp > self.end_time:
            return False
        if self.product_id is not None and record.product_id != self.product_id:
            return False
        if self.kind is not None and record.kind != self.kind.value:
            return False
        return True
