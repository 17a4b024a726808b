"""
Ledger Store Abstraction

This module defines the LedgerStore interface, the per-transaction
TransactionContext, and the in-memory implementation:
- InMemoryLedgerStore: For development and testing
- PostgresLedgerStore (db/postgres.py): For production

The LedgerStore is responsible for:
- Transactions: every ledger write happens inside one
- Per-organization tail serialization (lock held until transaction end)
- Global sequence reservation
- Routing entry updates/deletes through the ImmutabilityGuard
- Firing registered mutation observers synchronously, in-transaction

The LedgerService retains responsibility for:
- Classification, hashing and chain linkage
- Deciding what gets written

TRANSACTION CONTRACT:
All writes MUST happen inside the transaction() context manager:

    with store.transaction(actor_id=user_id, actor_role="owner") as tx:
        tx.save_record(EntityType.JOB, job_id, org_id, {"status": "active"})
        ledger.append(tx, draft)

Leaving the block normally commits. Any exception rolls back every write
made through tx (records and entries alike) and re-raises. Sequence values
reserved by a rolled-back transaction are never reused.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock, RLock
from typing import Any, Callable, Generator, Optional
from uuid import UUID

from ..core.guard import ImmutabilityGuard
from ..core.sequencer import InMemorySequencer, Sequencer
from ..schemas import (
    EntityType,
    EntryFilters,
    EntryPage,
    LedgerEntry,
    LedgerRoot,
    MutationOperation,
    PageRequest,
    SortOrder,
    WatchedMutation,
)


# ============================================================
# EXCEPTIONS
# ============================================================

class StoreError(Exception):
    """Base exception for ledger store errors."""
    pass


class ConcurrencyError(StoreError):
    """Raised when a write does not match the state the store holds."""
    pass


class LockTimeoutError(StoreError):
    """Raised when a chain lock cannot be acquired in time (organization busy)."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

MutationObserver = Callable[["TransactionContext", WatchedMutation], None]


@dataclass
class ChainTail:
    """Most recent chained entry of one organization, as seen by a transaction."""
    seq: Optional[int]
    hash: Optional[str]
    created_at: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return self.seq is None


class DedupContext:
    """
    Transaction-scoped "already logged explicitly" flag.

    A domain service marks it right before the mutation it logs itself.
    The auto-logger consumes it on the next watched mutation, so a marked
    mutation produces its explicit entry and no fallback. Never persisted;
    cleared when the transaction ends.
    """

    def __init__(self):
        self._marked = False

    @property
    def is_marked(self) -> bool:
        return self._marked

    def mark(self) -> None:
        self._marked = True

    def consume(self) -> bool:
        marked = self._marked
        self._marked = False
        return marked

    def clear(self) -> None:
        self._marked = False


@dataclass
class TransactionContext:
    """
    Everything that lives exactly as long as one store transaction.

    Holds the actor identity, the dedup flag, the chain locks taken and
    the sequence values reserved. Database connection/cursor (or the
    in-memory pending overlay) are owned HERE, not by the store, so one
    store instance can serve many threads.
    """
    _store: "LedgerStore"
    actor_id: Optional[UUID] = None
    actor_role: Optional[str] = None
    backfill: bool = False
    dedup: DedupContext = field(default_factory=DedupContext)
    _conn: Any = field(default=None)
    _cursor: Any = field(default=None)
    _locked_orgs: set = field(default_factory=set)
    _reserved_seqs: list = field(default_factory=list)
    _pending_entries: list = field(default_factory=list)
    _pending_updates: dict = field(default_factory=dict)
    _pending_records: dict = field(default_factory=dict)
    _closed: bool = field(default=False, init=False)

    def _check_open(self) -> None:
        if self._closed:
            raise StoreError("Transaction already closed")

    def mark_explicit_log(self) -> None:
        """Signal that the next watched mutation is logged explicitly."""
        self.dedup.mark()

    def lock_chain(self, organization_id: UUID) -> None:
        """Serialize on this organization's tail until the transaction ends."""
        self._check_open()
        if organization_id in self._locked_orgs:
            return
        self._store._do_lock_chain(self, organization_id)
        self._locked_orgs.add(organization_id)

    def holds_chain(self, organization_id: UUID) -> bool:
        return organization_id in self._locked_orgs

    def chain_tail(self, organization_id: UUID) -> ChainTail:
        """Tail including this transaction's own uncommitted entries."""
        self._check_open()
        return self._store._do_chain_tail(self, organization_id)

    def next_seq(self) -> int:
        self._check_open()
        seq = self._store._do_next_seq(self)
        self._reserved_seqs.append(seq)
        return seq

    def insert_entry(self, entry: LedgerEntry) -> LedgerEntry:
        self._check_open()
        if entry.seq not in self._reserved_seqs:
            raise StoreError(f"seq {entry.seq} was not reserved by this transaction")
        if not self.holds_chain(entry.organization_id):
            raise StoreError(
                f"Insert for organization {entry.organization_id} without holding its chain lock"
            )
        tail = self.chain_tail(entry.organization_id)
        if entry.prev_hash != tail.hash:
            raise ConcurrencyError(
                f"prev_hash mismatch for organization {entry.organization_id}: "
                f"tail is {tail.hash}, entry links to {entry.prev_hash}"
            )
        return self._store._do_insert_entry(self, entry)

    def update_entry(self, entry_id: UUID, **changes: Any) -> LedgerEntry:
        """Only ever succeeds for legacy rows inside the backfill transaction."""
        self._check_open()
        existing = self._require_entry(entry_id)
        ImmutabilityGuard.check_update(existing, changes, backfill=self.backfill)
        return self._store._do_update_entry(self, existing, changes)

    def delete_entry(self, entry_id: UUID) -> None:
        """Entries are never deleted; the guard raises ImmutableRecordViolation."""
        self._check_open()
        existing = self._require_entry(entry_id)
        ImmutabilityGuard.check_delete(existing, backfill=self.backfill)

    def get_entry(self, entry_id: UUID) -> Optional[LedgerEntry]:
        self._check_open()
        return self._store._do_get_entry(self, entry_id)

    def _require_entry(self, entry_id: UUID) -> LedgerEntry:
        existing = self._store._do_get_entry(self, entry_id)
        if existing is None:
            raise StoreError(f"Entry {entry_id} not found")
        return existing

    def legacy_entries(self) -> list[LedgerEntry]:
        """Rows with no hash yet, ordered by created_at then id."""
        self._check_open()
        return self._store._do_legacy_entries(self)

    def get_record(self, entity_type: EntityType, record_id: UUID) -> Optional[dict[str, Any]]:
        self._check_open()
        return self._store._do_get_record(self, EntityType(entity_type), record_id)

    def save_record(
        self,
        entity_type: EntityType,
        record_id: UUID,
        organization_id: UUID,
        fields: dict[str, Any],
    ) -> WatchedMutation:
        """
        Insert or update a watched domain record.

        Fields are merged into the existing record on update. Every
        registered observer is invoked before this returns, inside the
        same transaction, so an observer failure rolls the mutation back.
        """
        self._check_open()
        entity_type = EntityType(entity_type)
        old = self._store._do_get_record(self, entity_type, record_id)
        if old is not None and old.get("organization_id") not in (None, str(organization_id)):
            raise StoreError(
                f"{entity_type.value} {record_id} belongs to another organization"
            )

        new = {**(old or {}), **fields, "organization_id": str(organization_id)}
        self._store._do_put_record(self, entity_type, record_id, organization_id, new)

        mutation = WatchedMutation(
            entity_type=entity_type,
            operation=MutationOperation.INSERT if old is None else MutationOperation.UPDATE,
            organization_id=organization_id,
            record_id=record_id,
            old=old,
            new=new,
        )
        for observer in list(self._store._observers):
            observer(self, mutation)
        return mutation


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class LedgerStore(ABC):
    """
    Abstract base class for ledger storage.

    Implementations must ensure:
    1. One transaction holds an organization's chain lock at a time
    2. A chain lock is held until commit/rollback, never released early
    3. Sequence values are unique and increasing; aborted ones are lost
    4. Entry updates/deletes go through ImmutabilityGuard
    5. high_water_seq() never passes a value still held by an open transaction

    CRITICAL: Always use transaction() for write operations.
    """

    def __init__(self):
        self._observers: list[MutationObserver] = []

    # ================================================================
    # Observers
    # ================================================================

    def add_observer(self, observer: MutationObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def remove_observer(self, observer: MutationObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    # ================================================================
    # Transactions
    # ================================================================

    @contextmanager
    def transaction(
        self,
        actor_id: Optional[UUID] = None,
        actor_role: Optional[str] = None,
    ) -> Generator[TransactionContext, None, None]:
        """
        Open a write transaction.

        Commits when the block exits normally; rolls back and re-raises on
        any exception. The dedup flag never outlives the transaction.
        """
        with self._transaction(actor_id, actor_role, backfill=False) as tx:
            yield tx

    @contextmanager
    def backfill_transaction(self) -> Generator[TransactionContext, None, None]:
        """
        Elevated transaction for the one-time legacy backfill only.

        The guard still limits it to filling in rows whose hash is null.
        """
        with self._transaction(None, "system", backfill=True) as tx:
            yield tx

    @contextmanager
    def _transaction(
        self,
        actor_id: Optional[UUID],
        actor_role: Optional[str],
        backfill: bool,
    ) -> Generator[TransactionContext, None, None]:
        tx = TransactionContext(
            _store=self,
            actor_id=actor_id,
            actor_role=actor_role,
            backfill=backfill,
        )
        self._begin(tx)
        try:
            yield tx
        except BaseException:
            self._rollback(tx)
            raise
        else:
            self._commit(tx)
        finally:
            tx.dedup.clear()
            tx._closed = True

    @abstractmethod
    def _begin(self, tx: TransactionContext) -> None:
        pass

    @abstractmethod
    def _commit(self, tx: TransactionContext) -> None:
        """Persist everything written through tx, then release its chain locks."""
        pass

    @abstractmethod
    def _rollback(self, tx: TransactionContext) -> None:
        """Discard everything written through tx, then release its chain locks."""
        pass

    # ================================================================
    # Transaction internals (use TransactionContext methods instead)
    # ================================================================

    @abstractmethod
    def _do_lock_chain(self, tx: TransactionContext, organization_id: UUID) -> None:
        pass

    @abstractmethod
    def _do_chain_tail(self, tx: TransactionContext, organization_id: UUID) -> ChainTail:
        pass

    @abstractmethod
    def _do_next_seq(self, tx: TransactionContext) -> int:
        pass

    @abstractmethod
    def _do_insert_entry(self, tx: TransactionContext, entry: LedgerEntry) -> LedgerEntry:
        pass

    @abstractmethod
    def _do_get_entry(self, tx: TransactionContext, entry_id: UUID) -> Optional[LedgerEntry]:
        pass

    @abstractmethod
    def _do_update_entry(
        self,
        tx: TransactionContext,
        existing: LedgerEntry,
        changes: dict[str, Any],
    ) -> LedgerEntry:
        pass

    @abstractmethod
    def _do_legacy_entries(self, tx: TransactionContext) -> list[LedgerEntry]:
        pass

    @abstractmethod
    def _do_get_record(
        self,
        tx: TransactionContext,
        entity_type: EntityType,
        record_id: UUID,
    ) -> Optional[dict[str, Any]]:
        pass

    @abstractmethod
    def _do_put_record(
        self,
        tx: TransactionContext,
        entity_type: EntityType,
        record_id: UUID,
        organization_id: UUID,
        fields: dict[str, Any],
    ) -> None:
        pass

    # ================================================================
    # Read side (committed state only, never takes chain locks)
    # ================================================================

    @abstractmethod
    def get_entry(self, seq: int) -> Optional[LedgerEntry]:
        pass

    @abstractmethod
    def iter_chain(
        self,
        organization_id: UUID,
        from_seq: Optional[int] = None,
        to_seq: Optional[int] = None,
    ) -> list[LedgerEntry]:
        """Chained entries of one organization in ascending seq order."""
        pass

    @abstractmethod
    def entry_before(self, organization_id: UUID, seq: int) -> Optional[LedgerEntry]:
        """The organization's last chained entry with a seq below the given one."""
        pass

    @abstractmethod
    def list_entries(
        self,
        organization_id: UUID,
        filters: Optional[EntryFilters] = None,
        page: Optional[PageRequest] = None,
    ) -> EntryPage:
        pass

    @abstractmethod
    def organizations(self) -> list[UUID]:
        pass

    @abstractmethod
    def entry_count(self) -> int:
        pass

    @abstractmethod
    def high_water_seq(self) -> int:
        """
        Highest seq at or below which every reserved value is resolved
        (committed or aborted). 0 when nothing was ever reserved.
        """
        pass

    @abstractmethod
    def entries_in_window(self, first_seq: int, last_seq: int) -> list[LedgerEntry]:
        """All chained entries with first_seq <= seq <= last_seq, ascending."""
        pass

    @abstractmethod
    def latest_root(self) -> Optional[LedgerRoot]:
        pass

    @abstractmethod
    def append_root(self, root: LedgerRoot) -> bool:
        """
        Compare-and-insert a checkpoint.

        Returns False (and stores nothing) when root.first_seq no longer
        follows the latest stored root, i.e. another checkpoint won.
        """
        pass

    @abstractmethod
    def list_roots(
        self,
        first_seq: Optional[int] = None,
        last_seq: Optional[int] = None,
    ) -> list[LedgerRoot]:
        """Roots whose window overlaps [first_seq, last_seq], ascending."""
        pass

    @abstractmethod
    def root_for_seq(self, seq: int) -> Optional[LedgerRoot]:
        pass

    @abstractmethod
    def import_legacy(self, entries: list[LedgerEntry]) -> int:
        """Load pre-chain rows (seq/prev_hash/hash all None) awaiting backfill."""
        pass

    @staticmethod
    def _check_legacy(entries: list[LedgerEntry]) -> None:
        for entry in entries:
            if entry.seq is not None or entry.hash is not None or entry.prev_hash is not None:
                raise StoreError(
                    f"Entry {entry.id} is already chained; only legacy rows can be imported"
                )


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryLedgerStore(LedgerStore):
    """
    In-memory implementation of LedgerStore.

    Suitable for:
    - Development
    - Testing
    - Single-process deployments without persistence requirements

    NOT suitable for:
    - Production (no durability)
    - Multi-process deployments (no shared state)

    Uncommitted writes live on the TransactionContext and are applied
    under the state lock at commit, before chain locks are released.
    """

    LOCK_TIMEOUT_MS = 2000

    def __init__(
        self,
        sequencer: Optional[Sequencer] = None,
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
    ):
        super().__init__()
        self._sequencer = sequencer or InMemorySequencer()
        self._lock_timeout = lock_timeout_ms / 1000.0

        self._state_lock = RLock()
        self._chain_locks: dict[UUID, Lock] = {}
        self._inflight: set[int] = set()

        self._entries: dict[UUID, LedgerEntry] = {}
        self._seq_index: dict[int, UUID] = {}
        self._tails: dict[UUID, ChainTail] = {}
        self._records: dict[tuple[EntityType, UUID], dict[str, Any]] = {}
        self._roots: list[LedgerRoot] = []

    # ----------------------------------------------------------------
    # Transaction lifecycle
    # ----------------------------------------------------------------

    def _begin(self, tx: TransactionContext) -> None:
        tx._conn = "in_memory"

    def _commit(self, tx: TransactionContext) -> None:
        try:
            with self._state_lock:
                for entry in tx._pending_entries:
                    self._index_entry(entry)
                for entry in tx._pending_updates.values():
                    self._index_entry(entry)
                for key, fields in tx._pending_records.items():
                    self._records[key] = fields
                self._inflight.difference_update(tx._reserved_seqs)
        finally:
            self._release(tx)

    def _rollback(self, tx: TransactionContext) -> None:
        try:
            with self._state_lock:
                self._inflight.difference_update(tx._reserved_seqs)
        finally:
            tx._pending_entries.clear()
            tx._pending_updates.clear()
            tx._pending_records.clear()
            self._release(tx)

    def _release(self, tx: TransactionContext) -> None:
        for organization_id in tx._locked_orgs:
            self._chain_locks[organization_id].release()
        tx._locked_orgs.clear()
        tx._conn = None

    def _index_entry(self, entry: LedgerEntry) -> None:
        self._entries[entry.id] = entry
        if entry.seq is None:
            return
        self._seq_index[entry.seq] = entry.id
        tail = self._tails.get(entry.organization_id)
        if tail is None or tail.seq < entry.seq:
            self._tails[entry.organization_id] = ChainTail(
                seq=entry.seq, hash=entry.hash, created_at=entry.created_at
            )

    # ----------------------------------------------------------------
    # Transaction internals
    # ----------------------------------------------------------------

    def _do_lock_chain(self, tx: TransactionContext, organization_id: UUID) -> None:
        with self._state_lock:
            lock = self._chain_locks.setdefault(organization_id, Lock())
        if not lock.acquire(timeout=self._lock_timeout):
            raise LockTimeoutError(
                f"Organization {organization_id} ledger busy - could not acquire chain lock. Try again."
            )

    def _do_chain_tail(self, tx: TransactionContext, organization_id: UUID) -> ChainTail:
        with self._state_lock:
            tail = self._tails.get(organization_id, ChainTail(seq=None, hash=None))
        pending = [
            e for e in (*tx._pending_entries, *tx._pending_updates.values())
            if e.organization_id == organization_id and e.seq is not None
        ]
        for entry in pending:
            if tail.seq is None or entry.seq > tail.seq:
                tail = ChainTail(seq=entry.seq, hash=entry.hash, created_at=entry.created_at)
        return tail

    def _do_next_seq(self, tx: TransactionContext) -> int:
        # Reserve and mark in-flight atomically w.r.t. high_water_seq()
        with self._state_lock:
            seq = self._sequencer.next()
            self._inflight.add(seq)
        return seq

    def _do_insert_entry(self, tx: TransactionContext, entry: LedgerEntry) -> LedgerEntry:
        with self._state_lock:
            duplicate = entry.id in self._entries or entry.seq in self._seq_index
        if duplicate or any(e.id == entry.id for e in tx._pending_entries):
            raise ConcurrencyError(f"Entry {entry.id} (seq {entry.seq}) already exists")
        tx._pending_entries.append(entry)
        return entry

    def _do_get_entry(self, tx: TransactionContext, entry_id: UUID) -> Optional[LedgerEntry]:
        if entry_id in tx._pending_updates:
            return tx._pending_updates[entry_id]
        for entry in tx._pending_entries:
            if entry.id == entry_id:
                return entry
        with self._state_lock:
            return self._entries.get(entry_id)

    def _do_update_entry(
        self,
        tx: TransactionContext,
        existing: LedgerEntry,
        changes: dict[str, Any],
    ) -> LedgerEntry:
        updated = existing.model_copy(update=changes)
        tx._pending_updates[existing.id] = updated
        return updated

    def _do_legacy_entries(self, tx: TransactionContext) -> list[LedgerEntry]:
        with self._state_lock:
            legacy = [e for e in self._entries.values() if e.hash is None]
        legacy = [tx._pending_updates.get(e.id, e) for e in legacy]
        legacy = [e for e in legacy if e.hash is None]
        return sorted(legacy, key=lambda e: (e.created_at, e.id))

    def _do_get_record(
        self,
        tx: TransactionContext,
        entity_type: EntityType,
        record_id: UUID,
    ) -> Optional[dict[str, Any]]:
        key = (entity_type, record_id)
        if key in tx._pending_records:
            return dict(tx._pending_records[key])
        with self._state_lock:
            record = self._records.get(key)
        return dict(record) if record is not None else None

    def _do_put_record(
        self,
        tx: TransactionContext,
        entity_type: EntityType,
        record_id: UUID,
        organization_id: UUID,
        fields: dict[str, Any],
    ) -> None:
        tx._pending_records[(entity_type, record_id)] = dict(fields)

    # ----------------------------------------------------------------
    # Read side
    # ----------------------------------------------------------------

    def _chained(self, organization_id: Optional[UUID] = None) -> list[LedgerEntry]:
        with self._state_lock:
            entries = [
                e for e in self._entries.values()
                if e.seq is not None
                and (organization_id is None or e.organization_id == organization_id)
            ]
        return sorted(entries, key=lambda e: e.seq)

    def get_entry(self, seq: int) -> Optional[LedgerEntry]:
        with self._state_lock:
            entry_id = self._seq_index.get(seq)
            return self._entries.get(entry_id) if entry_id is not None else None

    def iter_chain(
        self,
        organization_id: UUID,
        from_seq: Optional[int] = None,
        to_seq: Optional[int] = None,
    ) -> list[LedgerEntry]:
        return [
            e for e in self._chained(organization_id)
            if (from_seq is None or e.seq >= from_seq)
            and (to_seq is None or e.seq <= to_seq)
        ]

    def entry_before(self, organization_id: UUID, seq: int) -> Optional[LedgerEntry]:
        earlier = [e for e in self._chained(organization_id) if e.seq < seq]
        return earlier[-1] if earlier else None

    def list_entries(
        self,
        organization_id: UUID,
        filters: Optional[EntryFilters] = None,
        page: Optional[PageRequest] = None,
    ) -> EntryPage:
        filters = filters or EntryFilters()
        page = page or PageRequest()
        now = datetime.now(timezone.utc)

        entries = [e for e in self._chained(organization_id) if filters.matches(e, now)]
        if page.order == SortOrder.DESC:
            entries.reverse()
            if page.cursor is not None:
                entries = [e for e in entries if e.seq < page.cursor]
        elif page.cursor is not None:
            entries = [e for e in entries if e.seq > page.cursor]

        window = entries[:page.limit + 1]
        has_more = len(window) > page.limit
        window = window[:page.limit]
        return EntryPage(
            entries=window,
            next_cursor=window[-1].seq if has_more else None,
            has_more=has_more,
        )

    def organizations(self) -> list[UUID]:
        with self._state_lock:
            return sorted(self._tails.keys())

    def entry_count(self) -> int:
        with self._state_lock:
            return len(self._seq_index)

    def high_water_seq(self) -> int:
        with self._state_lock:
            if self._inflight:
                return min(self._inflight) - 1
            return self._sequencer.current()

    def entries_in_window(self, first_seq: int, last_seq: int) -> list[LedgerEntry]:
        return [e for e in self._chained() if first_seq <= e.seq <= last_seq]

    def latest_root(self) -> Optional[LedgerRoot]:
        with self._state_lock:
            return self._roots[-1] if self._roots else None

    def append_root(self, root: LedgerRoot) -> bool:
        with self._state_lock:
            expected_first = self._roots[-1].last_seq + 1 if self._roots else 1
            if root.first_seq != expected_first:
                return False
            self._roots.append(root)
            return True

    def list_roots(
        self,
        first_seq: Optional[int] = None,
        last_seq: Optional[int] = None,
    ) -> list[LedgerRoot]:
        with self._state_lock:
            roots = list(self._roots)
        return [
            r for r in roots
            if (first_seq is None or r.last_seq >= first_seq)
            and (last_seq is None or r.first_seq <= last_seq)
        ]

    def root_for_seq(self, seq: int) -> Optional[LedgerRoot]:
        with self._state_lock:
            return next(
                (r for r in self._roots if r.first_seq <= seq <= r.last_seq),
                None,
            )

    def import_legacy(self, entries: list[LedgerEntry]) -> int:
        self._check_legacy(entries)
        with self._state_lock:
            for entry in entries:
                if entry.id in self._entries:
                    raise StoreError(f"Entry {entry.id} already exists")
                self._entries[entry.id] = entry
        return len(entries)

    def clear(self) -> None:
        """Clear everything (for testing only)."""
        with self._state_lock:
            self._entries.clear()
            self._seq_index.clear()
            self._tails.clear()
            self._records.clear()
            self._roots.clear()
