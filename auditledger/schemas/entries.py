"""
Ledger Entry Schema

This is an append-only ledger, not CRUD.
Nothing is "edited". Things happen.

Each entry:
- Produces a new immutable record
- Is sequenced globally
- Is hashed
- Is chained to the previous entry of the same organization
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class Category(str, Enum):
    """Coarse audit category. Derived from the event name if not supplied."""
    GOVERNANCE = "governance"
    OPERATIONS = "operations"
    ACCESS = "access"


class Severity(str, Enum):
    INFO = "info"
    MATERIAL = "material"
    CRITICAL = "critical"


class Outcome(str, Enum):
    ALLOWED = "allowed"
    BLOCKED = "blocked"


class EntryDraft(BaseModel):
    """
    Everything the caller supplies for an append.

    seq, prev_hash, hash and created_at are assigned by the writer.
    """
    organization_id: UUID = Field(
        ...,
        description="Tenant whose chain this entry extends"
    )

    event_name: str = Field(
        ...,
        min_length=1,
        description="Dotted event name, e.g. job.created or export.pdf.failed"
    )

    target_type: str = Field(
        ...,
        min_length=1,
        description="Kind of record the event is about (job, control, evidence, ...)"
    )

    target_id: Optional[UUID] = None

    actor_id: Optional[UUID] = Field(
        default=None,
        description="Acting user. Defaults to the transaction's actor."
    )

    actor_role: Optional[str] = None

    metadata: dict[str, Any] = Field(default_factory=dict)

    # Auto-derived from event_name when omitted
    category: Optional[Category] = None
    severity: Optional[Severity] = None
    outcome: Optional[Outcome] = None


class LedgerEntry(BaseModel):
    """
    One immutable, hash-linked ledger record.

    Legacy rows imported before chaining was enabled carry seq, prev_hash
    and hash as None until the one-time backfill assigns them.
    """
    id: UUID = Field(default_factory=uuid4)

    seq: Optional[int] = Field(
        default=None,
        description="Global sequence number. Unique, increasing, not contiguous per tenant."
    )

    organization_id: UUID
    actor_id: Optional[UUID] = None
    actor_role: Optional[str] = None

    event_name: str
    target_type: str
    target_id: Optional[UUID] = None

    category: Category
    severity: Severity
    outcome: Outcome

    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    prev_hash: Optional[str] = Field(
        default=None,
        description="Hash of the previous entry for this organization. None for the first."
    )
    hash: Optional[str] = None

    @property
    def is_legacy(self) -> bool:
        return self.hash is None

    def to_export_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class LedgerRoot(BaseModel):
    """
    Checkpoint over an inclusive global sequence window.

    root_hash is a SHA-256 Merkle root over the window's entry hashes in
    seq order. last_hash is the chain hash of the entry at last_seq.
    """
    id: UUID = Field(default_factory=uuid4)
    first_seq: int = Field(..., ge=1)
    last_seq: int = Field(..., ge=1)
    root_hash: str
    last_hash: str
    entry_count: int = Field(..., ge=1)
    hash_method: str = "merkle-sha256-v1"
    created_at: datetime
