"""
API Routes for the FarmChain Ledger

Command-style endpoints (no PATCH, no PUT, no DELETE):
- POST /api/batches/{batch_id}/harvest   - Register a batch
- POST /api/batches/{batch_id}/purchase  - Record a sale
- POST /api/batches/{batch_id}/transfer  - Record a transfer

Query endpoints (derived on every read):
- GET /api/batches/{batch_id}/chain       - Events plus derived ownership
- GET /api/batches/{batch_id}/history     - Provenance timeline
- GET /api/batches/{batch_id}/owners      - Current holdings
- GET /api/batches/{batch_id}/check       - Pre-check a purchase or transfer
- GET /api/batches/{batch_id}/verify      - Structural integrity report
- GET /api/batches/{batch_id}/audit       - Index vs content store audit
- GET /api/batches/{batch_id}/certificate - Certificate data
- GET /api/transactions/{transaction_id}
- GET /api/transactions/by-hash/{content_hash}
"""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from ..core import LedgerService
from ..schemas import (
    CertificateData,
    DocumentAuditReport,
    EventMetadata,
    OwnershipRecord,
    ProductDetails,
    TransactionChain,
    TransactionEvent,
    TransferCheck,
    VerificationReport,
)


router = APIRouter(prefix="/api", tags=["Ledger"])


# ============================================================
# Dependency Injection
# ============================================================

def get_ledger(request: Request) -> LedgerService:
    """Get ledger from app state."""
    return request.app.state.ledger


# ============================================================
# Request Models
# ============================================================

class HarvestRequest(BaseModel):
    """Request to register a harvested batch."""
    farmer: str = Field(..., min_length=1)
    product_details: ProductDetails
    quantity: Decimal = Field(..., gt=0)
    price_per_kg: Decimal = Field(default=Decimal("0"), ge=0)
    metadata: Optional[EventMetadata] = None


class PurchaseRequest(BaseModel):
    """Request to record a purchase from the current holder."""
    seller: str = Field(..., min_length=1)
    buyer: str = Field(..., min_length=1)
    quantity: Decimal
    unit_price: Decimal = Field(..., ge=0)
    delivery_address: Optional[str] = None
    notes: Optional[str] = None
    expected_available: Optional[Decimal] = None


class TransferRequest(BaseModel):
    """Request to move quantity between owners without a sale."""
    from_owner: str = Field(..., min_length=1)
    to_owner: str = Field(..., min_length=1)
    quantity: Decimal
    notes: Optional[str] = None
    expected_available: Optional[Decimal] = None


# ============================================================
# Command Endpoints (Append-Only Operations)
# ============================================================

@router.post(
    "/batches/{batch_id}/harvest",
    response_model=TransactionEvent,
    status_code=status.HTTP_201_CREATED,
    tags=["Ledger Commands"],
    summary="Register a harvested batch",
)
async def record_harvest(
    batch_id: str,
    body: HarvestRequest,
    ledger: LedgerService = Depends(get_ledger),
):
    """
    Create the HARVEST event that starts a batch's chain.

    A batch can be harvested once. Nothing about it can be altered later.
    """
    return await ledger.record_harvest(
        batch_id,
        body.farmer,
        body.product_details,
        body.quantity,
        price_per_kg=body.price_per_kg,
        metadata=body.metadata,
    )


@router.post(
    "/batches/{batch_id}/purchase",
    response_model=TransactionEvent,
    status_code=status.HTTP_201_CREATED,
    tags=["Ledger Commands"],
    summary="Record a purchase",
)
async def record_purchase(
    batch_id: str,
    body: PurchaseRequest,
    ledger: LedgerService = Depends(get_ledger),
):
    """
    Move quantity from the seller to the buyer.

    Refused with 422 if the seller does not hold enough, and with 409 if
    expected_available no longer matches the batch.
    """
    return await ledger.record_purchase(
        batch_id,
        body.seller,
        body.buyer,
        body.quantity,
        body.unit_price,
        delivery_address=body.delivery_address,
        notes=body.notes,
        expected_available=body.expected_available,
    )


@router.post(
    "/batches/{batch_id}/transfer",
    response_model=TransactionEvent,
    status_code=status.HTTP_201_CREATED,
    tags=["Ledger Commands"],
    summary="Record a transfer",
)
async def record_transfer(
    batch_id: str,
    body: TransferRequest,
    ledger: LedgerService = Depends(get_ledger),
):
    return await ledger.record_transfer(
        batch_id,
        body.from_owner,
        body.to_owner,
        body.quantity,
        notes=body.notes,
        expected_available=body.expected_available,
    )


# ============================================================
# Query Endpoints (Derived State)
# ============================================================

@router.get("/batches/{batch_id}/chain", response_model=TransactionChain)
async def get_chain(batch_id: str, ledger: LedgerService = Depends(get_ledger)):
    """An unknown batch returns the empty chain, not 404."""
    return await ledger.build_chain(batch_id)


@router.get("/batches/{batch_id}/history", response_model=list[OwnershipRecord])
async def get_history(batch_id: str, ledger: LedgerService = Depends(get_ledger)):
    return await ledger.get_ownership_history(batch_id)


@router.get("/batches/{batch_id}/owners", response_model=dict[str, Decimal])
async def get_owners(batch_id: str, ledger: LedgerService = Depends(get_ledger)):
    return await ledger.get_current_owners(batch_id)


@router.get("/batches/{batch_id}/check", response_model=TransferCheck)
async def check_transfer(
    batch_id: str,
    from_owner: str = Query(..., min_length=1),
    quantity: Decimal = Query(...),
    ledger: LedgerService = Depends(get_ledger),
):
    return await ledger.check_transfer(batch_id, from_owner, quantity)


@router.get(
    "/batches/{batch_id}/verify",
    response_model=VerificationReport,
    tags=["Verification"],
)
async def verify_chain(batch_id: str, ledger: LedgerService = Depends(get_ledger)):
    """
    Structural integrity of a batch's chain.

    Always 200: an invalid chain is a report, not an error.
    """
    return await ledger.verify_chain(batch_id)


@router.get(
    "/batches/{batch_id}/audit",
    response_model=DocumentAuditReport,
    tags=["Verification"],
)
async def audit_documents(
    batch_id: str,
    require_signatures: bool = False,
    ledger: LedgerService = Depends(get_ledger),
):
    """Compare every indexed event with its content-store document."""
    return await ledger.audit_documents(batch_id, require_signatures=require_signatures)


@router.get("/batches/{batch_id}/certificate", response_model=CertificateData)
async def get_certificate(batch_id: str, ledger: LedgerService = Depends(get_ledger)):
    certificate = await ledger.build_certificate_data(batch_id)
    if not certificate.transaction_chain:
        raise HTTPException(status_code=404, detail="Batch not found")
    return certificate


@router.get("/transactions/by-hash/{content_hash}", response_model=TransactionEvent)
async def get_transaction_by_hash(content_hash: str, ledger: LedgerService = Depends(get_ledger)):
    event = await ledger.get_event_by_content_hash(content_hash)
    if event is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return event


@router.get("/transactions/{transaction_id}", response_model=TransactionEvent)
async def get_transaction(transaction_id: str, ledger: LedgerService = Depends(get_ledger)):
    event = await ledger.get_event(transaction_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return event
