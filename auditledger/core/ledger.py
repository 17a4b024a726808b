"""
Ledger Service - The Entry Writer

This is an append-only, hash-chained audit ledger.
Nothing is "edited". Things happen.

The ledger:
- Serializes on the organization's chain tail
- Reserves a global sequence number
- Classifies the event when the caller did not
- Hashes the entry against its predecessor
- Persists it inside the caller's transaction

ARCHITECTURE NOTE:
- LedgerService: classification, hashing, chain linkage
- LedgerStore: transactions, locks, sequence, durability

A failed append raises and the caller's transaction rolls back with it.
There is no best-effort path: if the entry cannot be written, neither
can the mutation it describes.
"""

import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, TYPE_CHECKING
from uuid import UUID

from ..observability import get_logger, get_metrics
from ..schemas import EntryDraft, EntryFilters, EntryPage, LedgerEntry, PageRequest
from .classifier import classify
from .errors import SequenceAllocationFailure
from .hasher import Hasher

if TYPE_CHECKING:
    from ..db.store import LedgerStore, TransactionContext


logger = get_logger(__name__)


@dataclass
class LedgerConfig:
    """Configuration for the entry writer."""
    lock_timeout_ms: int = 2000
    max_metadata_bytes: int = 8000

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Load configuration from environment variables."""
        return cls(
            lock_timeout_ms=int(os.environ.get("AUDITLEDGER_LOCK_TIMEOUT_MS", "2000")),
            max_metadata_bytes=int(os.environ.get("AUDITLEDGER_MAX_METADATA_BYTES", "8000")),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerService:
    """
    The core entry writer.

    CHAIN GUARANTEES:
    - An organization's entries, ordered by seq, link prev_hash → hash
    - prev_hash is None ONLY for an organization's first entry
    - seq is globally unique and increasing; per-organization gaps are normal
    - Two appends to the same organization never observe the same tail

    CONCURRENCY GUARANTEES (with LedgerStore):
    - The chain lock is taken BEFORE the tail is read
    - The lock is held until the enclosing transaction ends
    - Different organizations never contend
    """

    def __init__(
        self,
        store: Optional["LedgerStore"] = None,
        config: Optional[LedgerConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize LedgerService.

        Args:
            store: LedgerStore implementation for persistence.
                   If None, creates an InMemoryLedgerStore.
            config: Writer configuration (or loads from environment)
            clock: Source of created_at timestamps (must be timezone-aware)
        """
        self._config = config or LedgerConfig.from_env()

        # Import here to avoid circular imports
        if store is None:
            from ..db.store import InMemoryLedgerStore
            store = InMemoryLedgerStore(lock_timeout_ms=self._config.lock_timeout_ms)

        self._store = store
        self._clock = clock

    @property
    def store(self) -> "LedgerStore":
        return self._store

    @property
    def config(self) -> LedgerConfig:
        return self._config

    # ================================================================
    # Write path
    # ================================================================

    def append(
        self,
        tx: "TransactionContext",
        draft: EntryDraft,
        fallback: bool = False,
    ) -> LedgerEntry:
        """
        Append one entry inside the caller's transaction.

        Args:
            tx: Open store transaction the entry commits (or dies) with
            draft: Caller-supplied fields
            fallback: True when written by the auto-logger (metrics only)

        Returns:
            The entry as it will be persisted

        Raises:
            LockTimeoutError: The organization's chain stayed locked too long
            SequenceAllocationFailure: The sequencer did not move past the tail
            HashComputationFailure: A field could not be canonically serialized
        """
        start = time.perf_counter()
        organization_id = draft.organization_id

        # 1. Serialize on this organization's tail
        tx.lock_chain(organization_id)

        # 2. Current tail (includes this transaction's own entries)
        tail = tx.chain_tail(organization_id)

        # 3. Global position
        seq = tx.next_seq()
        if tail.seq is not None and seq <= tail.seq:
            raise SequenceAllocationFailure(
                f"Sequencer returned {seq} but organization {organization_id} "
                f"already has seq {tail.seq}"
            )

        # 4. Classification for whatever the caller left out
        category, severity, outcome = classify(
            draft.event_name, draft.category, draft.severity, draft.outcome
        )

        metadata = self._bounded_metadata(draft.metadata, draft.event_name)
        actor_id = draft.actor_id or tx.actor_id
        actor_role = draft.actor_role or tx.actor_role
        created_at = self._clock()

        # 5. Hash against the predecessor
        entry_hash = Hasher.compute_entry_hash(
            prev_hash=tail.hash,
            seq=seq,
            organization_id=organization_id,
            actor_id=actor_id,
            event_name=draft.event_name,
            target_type=draft.target_type,
            target_id=draft.target_id,
            metadata=metadata,
            created_at=created_at,
        )

        entry = LedgerEntry(
            seq=seq,
            organization_id=organization_id,
            actor_id=actor_id,
            actor_role=actor_role,
            event_name=draft.event_name,
            target_type=draft.target_type,
            target_id=draft.target_id,
            category=category,
            severity=severity,
            outcome=outcome,
            metadata=metadata,
            created_at=created_at,
            prev_hash=tail.hash,
            hash=entry_hash,
        )

        # 6. Persist in the same transaction
        tx.insert_entry(entry)

        latency_ms = (time.perf_counter() - start) * 1000
        get_metrics().record_append(latency_ms, fallback=fallback)
        logger.debug(
            "Entry appended",
            seq=seq,
            organization_id=str(organization_id),
            event_name=draft.event_name,
            fallback=fallback,
            duration_ms=round(latency_ms, 2),
        )
        return entry

    def record(
        self,
        draft: EntryDraft,
        actor_id: Optional[UUID] = None,
        actor_role: Optional[str] = None,
    ) -> LedgerEntry:
        """Append a standalone entry in its own transaction."""
        with self._store.transaction(actor_id=actor_id, actor_role=actor_role) as tx:
            return self.append(tx, draft)

    def mark_explicit_log(self, tx: "TransactionContext") -> None:
        """
        Tell the auto-logger the next watched mutation in tx is logged here.

        Call right before the mutation, then append the explicit entry.
        """
        tx.mark_explicit_log()

    def _bounded_metadata(self, metadata: dict, event_name: str) -> dict:
        normalized = Hasher.normalize_metadata(metadata)
        size = len(Hasher.canonical_metadata(normalized).encode("utf-8"))
        if size <= self._config.max_metadata_bytes:
            return normalized

        logger.warning(
            "Metadata truncated",
            event_name=event_name,
            original_size=size,
            limit=self._config.max_metadata_bytes,
        )
        return {"truncated": True, "original_size": size}

    # ================================================================
    # Read path
    # ================================================================

    def list(
        self,
        organization_id: UUID,
        filters: Optional[EntryFilters] = None,
        page: Optional[PageRequest] = None,
    ) -> EntryPage:
        """Filtered, keyset-paginated view of one organization's entries."""
        return self._store.list_entries(organization_id, filters, page)

    def get_entry(self, seq: int) -> Optional[LedgerEntry]:
        return self._store.get_entry(seq)
