"""
Legacy Backfill

One-time migration that chains entries written before hash chaining
existed. Rows with no hash are walked in (created_at, id) order; each is
given the next global seq, linked to its organization's current tail and
hashed exactly as a fresh append would be.

A legacy row older than its organization's chained tail cannot be placed
where it belongs without rewriting chained history, so the whole backfill
is refused with BackfillOrderError and nothing is written.

Runs in the store's backfill transaction: the immutability guard lets
it fill in seq/prev_hash/hash on rows whose hash is null and nothing
else. Already-chained rows are never touched, so re-running is a no-op.
"""

from typing import TYPE_CHECKING

from ..observability import get_logger
from .errors import BackfillOrderError
from .hasher import Hasher

if TYPE_CHECKING:
    from ..db.store import LedgerStore


logger = get_logger(__name__)


def backfill_legacy_entries(store: "LedgerStore") -> int:
    """Chain every legacy entry. Returns the number of rows backfilled."""
    count = 0
    with store.backfill_transaction() as tx:
        for legacy in tx.legacy_entries():
            tx.lock_chain(legacy.organization_id)
            tail = tx.chain_tail(legacy.organization_id)
            if tail.created_at is not None and legacy.created_at < tail.created_at:
                raise BackfillOrderError(
                    f"Legacy entry {legacy.id} (created {legacy.created_at.isoformat()}) "
                    f"predates seq {tail.seq} of organization {legacy.organization_id} "
                    f"(created {tail.created_at.isoformat()})"
                )
            seq = tx.next_seq()

            entry_hash = Hasher.compute_entry_hash(
                prev_hash=tail.hash,
                seq=seq,
                organization_id=legacy.organization_id,
                actor_id=legacy.actor_id,
                event_name=legacy.event_name,
                target_type=legacy.target_type,
                target_id=legacy.target_id,
                metadata=legacy.metadata,
                created_at=legacy.created_at,
            )
            tx.update_entry(legacy.id, seq=seq, prev_hash=tail.hash, hash=entry_hash)
            count += 1

    if count:
        logger.info("Legacy entries backfilled", count=count)
    else:
        logger.info("No legacy entries to backfill")
    return count
