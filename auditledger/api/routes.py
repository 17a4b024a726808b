"""
API Routes for the Audit Ledger

Command endpoints (append-only, no PATCH, no PUT, no DELETE):
- POST /organizations/{id}/ledger           - Append an entry
- POST /ledger/roots                        - Run a checkpoint now

Query endpoints:
- GET /organizations/{id}/ledger            - Filtered, paginated entries
- GET /organizations/{id}/ledger/verify     - Verify the chain
- GET /organizations/{id}/ledger/export     - Self-verifiable bundle
- GET /ledger/roots                         - List checkpoints
- GET /ledger/entries/{seq}/proof           - Merkle inclusion proof

The acting user comes from the X-Actor-Id / X-Actor-Role headers.
Deciding which organizations a caller may see happens upstream.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel, Field, ValidationError

from ..core import (
    ChainVerifier,
    HashComputationFailure,
    ImmutableRecordViolation,
    LedgerError,
    LedgerService,
    RootAnchorService,
    export_bundle,
)
from ..db.store import ConcurrencyError, LockTimeoutError, StoreError
from ..schemas import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    Category,
    EntryDraft,
    EntryFilters,
    EntryPage,
    LedgerEntry,
    LedgerRoot,
    Outcome,
    PageRequest,
    Severity,
    SortOrder,
    TimeRange,
)
from ..shared import get_anchor_service, get_ledger, get_verifier


router = APIRouter()


# ============================================================
# Request/Response Models
# ============================================================

class AppendEntryRequest(BaseModel):
    """Request to append an explicit entry."""
    event_name: str = Field(..., min_length=1)
    target_type: str = Field(..., min_length=1)
    target_id: Optional[UUID] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    category: Optional[Category] = None
    severity: Optional[Severity] = None
    outcome: Optional[Outcome] = None


class VerifyResponse(BaseModel):
    organization_id: UUID
    ok: bool
    broken_at_seq: Optional[int] = None
    entries_checked: int
    last_hash: Optional[str] = None
    reason: Optional[str] = None


class CheckpointResponse(BaseModel):
    created: bool
    root: Optional[LedgerRoot] = None


class ProofResponse(BaseModel):
    seq: int
    entry_hash: str
    proof_hashes: list[str]
    proof_directions: list[str]
    root_hash: str
    root_id: UUID
    first_seq: int
    last_seq: int
    verified: bool


def _http_error(e: Exception) -> HTTPException:
    """Translate a ledger/store error into the matching HTTP status."""
    if isinstance(e, LockTimeoutError):
        code = status.HTTP_423_LOCKED
    elif isinstance(e, HashComputationFailure):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(e, (ImmutableRecordViolation, ConcurrencyError)):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(e))


# ============================================================
# Commands
# ============================================================

@router.post(
    "/organizations/{organization_id}/ledger",
    response_model=LedgerEntry,
    status_code=status.HTTP_201_CREATED,
    tags=["Ledger Commands"],
    summary="Append an entry",
)
def append_entry(
    organization_id: UUID,
    request: AppendEntryRequest,
    x_actor_id: Optional[UUID] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
    ledger: LedgerService = Depends(get_ledger),
):
    """
    Append one entry to the organization's chain in its own transaction.

    Category, severity and outcome are derived from the event name when
    omitted. The entry is immutable once written.
    """
    draft = EntryDraft(
        organization_id=organization_id,
        event_name=request.event_name,
        target_type=request.target_type,
        target_id=request.target_id,
        metadata=request.metadata,
        category=request.category,
        severity=request.severity,
        outcome=request.outcome,
    )
    try:
        return ledger.record(draft, actor_id=x_actor_id, actor_role=x_actor_role)
    except (LedgerError, StoreError) as e:
        raise _http_error(e)


@router.post(
    "/ledger/roots",
    response_model=CheckpointResponse,
    tags=["Verification"],
    summary="Checkpoint committed history",
)
def create_checkpoint(
    anchor: RootAnchorService = Depends(get_anchor_service),
):
    """Anchor everything since the last root. A no-op when nothing is new."""
    try:
        root = anchor.checkpoint()
    except (LedgerError, StoreError) as e:
        raise _http_error(e)
    return CheckpointResponse(created=root is not None, root=root)


# ============================================================
# Queries
# ============================================================

@router.get(
    "/organizations/{organization_id}/ledger",
    response_model=EntryPage,
    tags=["Ledger Queries"],
    summary="List entries",
)
def list_entries(
    organization_id: UUID,
    category: Optional[Category] = None,
    severity: Optional[Severity] = None,
    outcome: Optional[Outcome] = None,
    target_type: Optional[str] = None,
    target_id: Optional[UUID] = None,
    actor_id: Optional[UUID] = None,
    event_name: Optional[str] = None,
    time_range: TimeRange = TimeRange.ALL,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    cursor: Optional[int] = None,
    order: SortOrder = SortOrder.DESC,
    ledger: LedgerService = Depends(get_ledger),
):
    """Filtered view of one organization's chain, newest first by default."""
    try:
        filters = EntryFilters(
            category=category,
            severity=severity,
            outcome=outcome,
            target_type=target_type,
            target_id=target_id,
            actor_id=actor_id,
            event_name=event_name,
            time_range=time_range,
            start=start,
            end=end,
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.errors(include_url=False, include_context=False, include_input=False),
        )

    page = PageRequest(limit=limit, cursor=cursor, order=order)
    return ledger.list(organization_id, filters, page)


@router.get(
    "/organizations/{organization_id}/ledger/verify",
    response_model=VerifyResponse,
    tags=["Verification"],
    summary="Verify an organization's chain",
)
def verify_chain(
    organization_id: UUID,
    from_seq: Optional[int] = Query(None, ge=1),
    to_seq: Optional[int] = Query(None, ge=1),
    verifier: ChainVerifier = Depends(get_verifier),
):
    """
    Recompute every hash in the chain (or the requested seq range).

    A broken chain is reported with the first mismatching seq; it is a
    successful response, not an error.
    """
    result = verifier.verify(organization_id, from_seq, to_seq)
    return VerifyResponse(**result.to_dict())


@router.get(
    "/organizations/{organization_id}/ledger/export",
    tags=["Verification"],
    summary="Export a self-verifiable bundle",
)
def export_ledger(
    organization_id: UUID,
    ledger: LedgerService = Depends(get_ledger),
):
    """Full chain plus covering roots and inclusion proofs. Check it with tools/verify.py."""
    return export_bundle(ledger.store, organization_id)


@router.get(
    "/ledger/roots",
    response_model=list[LedgerRoot],
    tags=["Verification"],
    summary="List checkpoints",
)
def list_roots(
    first_seq: Optional[int] = Query(None, ge=1),
    last_seq: Optional[int] = Query(None, ge=1),
    anchor: RootAnchorService = Depends(get_anchor_service),
):
    """Roots whose window overlaps [first_seq, last_seq], ascending."""
    return anchor.get_roots(first_seq, last_seq)


@router.get(
    "/ledger/entries/{seq}/proof",
    response_model=ProofResponse,
    tags=["Verification"],
    summary="Prove an entry is anchored",
)
def prove_entry(
    seq: int,
    anchor: RootAnchorService = Depends(get_anchor_service),
):
    """Merkle inclusion proof tying the entry at `seq` to its root."""
    proof = anchor.prove_entry(seq)
    if proof is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Entry {seq} does not exist or is not anchored yet",
        )
    return ProofResponse(**proof.to_dict(), verified=anchor.verify_proof(proof))
