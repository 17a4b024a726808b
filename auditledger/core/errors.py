"""
Ledger Error Hierarchy

Every failure the ledger can raise on the write or verify path.
A failed append always fails the enclosing transaction; none of these
are retried or repaired automatically.
"""

from typing import Optional
from uuid import UUID


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class ImmutableRecordViolation(LedgerError):
    """
    Raised when anything attempts to update or delete a persisted entry.

    The only permitted writer is the elevated backfill transaction, and it
    may only touch legacy rows that have no hash yet.
    """

    def __init__(
        self,
        operation: str,
        entry_id: Optional[UUID] = None,
        seq: Optional[int] = None,
    ):
        self.operation = operation
        self.entry_id = entry_id
        self.seq = seq
        target = f"seq {seq}" if seq is not None else f"entry {entry_id}"
        super().__init__(
            f"Ledger entries are immutable: {operation} rejected for {target}"
        )


class ChainBrokenAtSeq(LedgerError):
    """Raised when verification finds the first broken link in a chain."""

    def __init__(self, organization_id: UUID, seq: int, reason: str = ""):
        self.organization_id = organization_id
        self.seq = seq
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"Chain for organization {organization_id} broken at seq {seq}{detail}"
        )


class SequenceAllocationFailure(LedgerError):
    """Raised when the sequencer cannot produce a value above the chain tail."""
    pass


class HashComputationFailure(LedgerError):
    """Raised when an entry cannot be hashed deterministically."""
    pass


class BackfillOrderError(LedgerError):
    """Raised when a legacy entry predates its organization's chained tail."""
    pass
