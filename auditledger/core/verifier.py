"""
Chain Verifier

Read-only. Walks one organization's chain in ascending seq order,
recomputes every hash from the running prev_hash and compares it with
what is stored. Stops at the first mismatch and reports its seq.

Broken chains are reported, never repaired.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, TYPE_CHECKING
from uuid import UUID

from ..observability import get_logger, get_metrics
from ..schemas import LedgerEntry
from .errors import ChainBrokenAtSeq
from .hasher import Hasher

if TYPE_CHECKING:
    from ..db.store import LedgerStore


logger = get_logger(__name__)


@dataclass
class VerificationResult:
    """Outcome of walking one organization's chain (or a seq range of it)."""
    organization_id: UUID
    ok: bool
    broken_at_seq: Optional[int] = None
    entries_checked: int = 0
    last_hash: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "organization_id": str(self.organization_id),
            "ok": self.ok,
            "broken_at_seq": self.broken_at_seq,
            "entries_checked": self.entries_checked,
            "last_hash": self.last_hash,
            "reason": self.reason,
        }


def walk_chain(
    organization_id: UUID,
    entries: Iterable[LedgerEntry],
    prev_hash: Optional[str] = None,
) -> VerificationResult:
    """
    Verify an ascending run of one organization's entries.

    prev_hash is the hash of the entry just before the run (None when the
    run starts at the organization's first entry).
    """
    running = prev_hash
    last_seq = 0
    checked = 0

    for entry in entries:
        reason = None
        if entry.organization_id != organization_id:
            reason = "entry belongs to another organization"
        elif entry.seq is None or entry.seq <= last_seq:
            reason = "seq is not strictly increasing"
        elif entry.prev_hash != running:
            reason = "prev_hash does not match the preceding entry's hash"
        elif not Hasher.verify_entry(entry, running):
            reason = "hash does not match the entry's contents"

        if reason is not None:
            return VerificationResult(
                organization_id=organization_id,
                ok=False,
                broken_at_seq=entry.seq,
                entries_checked=checked,
                last_hash=running,
                reason=reason,
            )

        running = entry.hash
        last_seq = entry.seq
        checked += 1

    return VerificationResult(
        organization_id=organization_id,
        ok=True,
        entries_checked=checked,
        last_hash=running,
    )


class ChainVerifier:
    """Verifies stored chains. Never takes chain locks, never blocks appends."""

    def __init__(self, store: "LedgerStore"):
        self._store = store

    def verify(
        self,
        organization_id: UUID,
        from_seq: Optional[int] = None,
        to_seq: Optional[int] = None,
    ) -> VerificationResult:
        """
        Verify an organization's chain, optionally restricted to a seq range.

        With from_seq, the walk is seeded from the entry immediately
        before from_seq, so a range check still proves linkage into it.
        """
        prev_hash = None
        if from_seq is not None:
            before = self._store.entry_before(organization_id, from_seq)
            prev_hash = before.hash if before else None

        entries = self._store.iter_chain(organization_id, from_seq, to_seq)
        result = walk_chain(organization_id, entries, prev_hash)

        get_metrics().record_verification(result.ok)
        if result.ok:
            logger.debug(
                "Chain verified",
                organization_id=str(organization_id),
                entries_checked=result.entries_checked,
            )
        else:
            logger.error(
                "Chain broken",
                organization_id=str(organization_id),
                broken_at_seq=result.broken_at_seq,
                reason=result.reason,
            )
        return result

    def require_intact(
        self,
        organization_id: UUID,
        from_seq: Optional[int] = None,
        to_seq: Optional[int] = None,
    ) -> VerificationResult:
        """Like verify(), but raises ChainBrokenAtSeq instead of returning a failure."""
        result = self.verify(organization_id, from_seq, to_seq)
        if not result.ok:
            raise ChainBrokenAtSeq(organization_id, result.broken_at_seq, result.reason or "")
        return result

    def verify_all(self) -> list[VerificationResult]:
        return [self.verify(org) for org in self._store.organizations()]
