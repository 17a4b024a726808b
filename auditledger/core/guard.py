"""
Immutability Guard

Storage-layer write interceptor. Every store routes entry updates and
deletes through here before touching storage, whatever the engine.

Rules (enforced in code):
- A persisted entry is never deleted
- A persisted entry is never updated, except:
  the elevated backfill transaction may set seq, prev_hash and hash
  on a legacy row whose hash is still null, once
"""

from typing import Any

from ..schemas import LedgerEntry
from .errors import ImmutableRecordViolation


# The only columns backfill is allowed to fill in
BACKFILL_FIELDS = frozenset({"seq", "prev_hash", "hash"})


class ImmutabilityGuard:
    """Stateless checks; raise ImmutableRecordViolation or return None."""

    @staticmethod
    def check_update(
        existing: LedgerEntry,
        changes: dict[str, Any],
        backfill: bool = False,
    ) -> None:
        if not backfill:
            raise ImmutableRecordViolation("update", entry_id=existing.id, seq=existing.seq)

        if existing.hash is not None:
            raise ImmutableRecordViolation("update", entry_id=existing.id, seq=existing.seq)

        illegal = set(changes) - BACKFILL_FIELDS
        if illegal:
            raise ImmutableRecordViolation(
                f"update of {sorted(illegal)}", entry_id=existing.id, seq=existing.seq
            )

    @staticmethod
    def check_delete(existing: LedgerEntry, backfill: bool = False) -> None:
        # Backfill fills rows in; it never removes them.
        raise ImmutableRecordViolation("delete", entry_id=existing.id, seq=existing.seq)
