"""
Product API Routes

Command-style endpoints (no PATCH, no PUT, no DELETE):
- POST /api/products                        - Register a product
- POST /api/products/{id}/transfer          - Transfer ownership
- POST /api/products/{id}/repair            - Record a repair
- POST /api/products/{id}/end-of-life       - Retire a product

Query endpoints:
- GET /api/products/{id}/history            - Full product history
- GET /api/transactions                     - Global feed, newest first

Every command requires a bearer credential. The acting wallet is the
credential's wallet; the ledger then checks it against the current owner.
"""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from ..core.ledger import LedgerError
from ..schemas import FeedFilter, RecordKind
from .deps import get_ledger, http_error, require_wallet


router = APIRouter(tags=["Products API"])


# ============================================================
# Request/Response Models
# ============================================================

class CreateProductRequest(BaseModel):
    product_id: str
    metadata: str | None = None
    acting_identity: str | None = None


class TransferRequest(BaseModel):
    next_owner: str
    acting_identity: str | None = None


class RepairRequest(BaseModel):
    metadata: str
    acting_identity: str | None = None


class EndOfLifeRequest(BaseModel):
    metadata: str | None = None
    acting_identity: str | None = None


class RecordResponse(BaseModel):
    success: bool
    product_id: str
    record_ref: str
    sequence: int
    record_hash: str


class HistoryResponse(BaseModel):
    success: bool
    product_id: str
    current_owner: str
    history: list[dict[str, Any]]


class FeedResponse(BaseModel):
    success: bool
    transactions: list[dict[str, Any]]


def _record_response(record) -> RecordResponse:
    return RecordResponse(
        success=True,
        product_id=record.product_id,
        record_ref=record.record_ref,
        sequence=record.sequence,
        record_hash=record.record_hash,
    )


# ============================================================
# Command Endpoints
# ============================================================

@router.post("/api/products", response_model=RecordResponse, status_code=201)
async def create_product(request: Request, body: CreateProductRequest):
    """Register a product. The caller's wallet becomes its first owner."""
    wallet = require_wallet(request, body.acting_identity)
    ledger = get_ledger(request)

    try:
        record = ledger.create_product(body.product_id, body.metadata, wallet)
    except Exception as e:
        raise http_error(e)

    return _record_response(record)


@router.post("/api/products/{product_id}/transfer", response_model=RecordResponse)
async def transfer_product(request: Request, product_id: str, body: TransferRequest):
    """Transfer a product. Only its current owner may do this."""
    wallet = require_wallet(request, body.acting_identity)
    ledger = get_ledger(request)

    try:
        record = ledger.transfer_ownership(product_id, wallet, body.next_owner)
    except Exception as e:
        raise http_error(e)

    return _record_response(record)


@router.post("/api/products/{product_id}/repair", response_model=RecordResponse)
async def repair_product(request: Request, product_id: str, body: RepairRequest):
    wallet = require_wallet(request, body.acting_identity)
    ledger = get_ledger(request)

    try:
        record = ledger.record_repair(product_id, wallet, body.metadata)
    except Exception as e:
        raise http_error(e)

    return _record_response(record)


@router.post("/api/products/{product_id}/end-of-life", response_model=RecordResponse)
async def retire_product(request: Request, product_id: str, body: EndOfLifeRequest):
    """Mark a product end-of-life. Its history stays readable."""
    wallet = require_wallet(request, body.acting_identity)
    ledger = get_ledger(request)

    try:
        record = ledger.mark_end_of_life(product_id, wallet, body.metadata)
    except Exception as e:
        raise http_error(e)

    return _record_response(record)


# ============================================================
# Query Endpoints
# ============================================================

@router.get("/api/products/{product_id}/history", response_model=HistoryResponse)
async def product_history(request: Request, product_id: str):
    """Full history of a product, oldest first. Public."""
    ledger = get_ledger(request)

    try:
        history = ledger.get_history(product_id)
        owner = ledger.current_owner(product_id)
    except LedgerError as e:
        raise http_error(e)

    return HistoryResponse(
        success=True,
        product_id=product_id,
        current_owner=owner,
        history=[record.model_dump(mode="json") for record in history],
    )


@router.get("/api/transactions", response_model=FeedResponse)
async def recent_transactions(
    request: Request,
    owner: str | None = None,
    previous_owner: str | None = None,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    product_id: str | None = None,
    kind: RecordKind | None = None,
    limit: int | None = Query(default=50, ge=0, le=1000),
):
    """
    Records across all products, most recent first. Public.

    Filters compose with AND.
    """
    ledger = get_ledger(request)

    feed = ledger.get_feed(FeedFilter(
        owner=owner,
        previous_owner=previous_owner,
        start_time=start_time,
        end_time=end_time,
        product_id=product_id,
        kind=kind,
        limit=limit,
    ))

    return FeedResponse(
        success=True,
        transactions=[record.model_dump(mode="json") for record in feed],
    )
