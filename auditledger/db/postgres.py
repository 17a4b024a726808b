"""
PostgreSQL Ledger Store

Provides:
- Full ACID guarantees; entries commit atomically with the domain
  mutation they describe
- Per-organization tail serialization via pg_advisory_xact_lock
- Global ordering from the ledger_seq database sequence
- Lock/statement timeouts to prevent hanging
- A database-level immutability trigger behind the Python guard

THREAD SAFETY:
All transaction state (conn, cursor) is stored in TransactionContext, NOT
on the store. The same store instance can be shared across threads.

HIGH-WATER MARK:
Every reserved seq is also held as a shared transaction-level advisory
lock keyed by the seq itself. high_water_seq() is one below the smallest
such lock still held, so a checkpoint never covers a seq whose
transaction might still commit. nextval and the lock are taken in one
statement; the remaining window between them is a few microseconds.

Requirements:
- PostgreSQL 12+
- Tables created from schema.sql (see init_schema)
- psycopg2 for connection
"""

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Generator, Optional
from uuid import UUID

import psycopg2
from psycopg2.extras import Json

from ..core.errors import ImmutableRecordViolation
from ..observability import get_logger
from ..schemas import (
    EntityType,
    EntryFilters,
    EntryPage,
    LedgerEntry,
    LedgerRoot,
    PageRequest,
    SortOrder,
)
from .store import (
    ChainTail,
    ConcurrencyError,
    LedgerStore,
    LockTimeoutError,
    StoreError,
    TransactionContext,
)


logger = get_logger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


def _json_serial(obj):
    """JSON serializer for objects not serializable by default json code."""
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Decimal):
        return str(obj)  # Preserve precision as string
    if hasattr(obj, "isoformat"):  # datetime, date
        return obj.isoformat()
    raise TypeError(f"Type {type(obj)} not serializable")


class LedgerJson(Json):
    """Json adapter that handles UUIDs, Decimals and datetimes."""

    def dumps(self, obj):
        return json.dumps(obj, default=_json_serial)


ENTRY_COLUMNS = """
    id, seq, organization_id, actor_id, actor_role, event_name,
    target_type, target_id, category, severity, outcome, metadata,
    created_at, prev_hash, hash
"""

ROOT_COLUMNS = """
    id, first_seq, last_seq, root_hash, last_hash, entry_count,
    hash_method, created_at
"""


class PostgresLedgerStore(LedgerStore):
    """
    PostgreSQL implementation of LedgerStore.

    Usage:
        store = PostgresLedgerStore(lambda: psycopg2.connect(dsn))
        store.init_schema()

        with store.transaction(actor_id=user_id) as tx:
            ledger.append(tx, draft)
    """

    # Timeouts to prevent hanging under load
    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    # psycopg2 error codes
    PGCODE_LOCK_NOT_AVAILABLE = "55P03"
    PGCODE_QUERY_CANCELED = "57014"
    PGCODE_UNIQUE_VIOLATION = "23505"
    PGCODE_IMMUTABLE = "LEDG1"

    # First key of the two-key advisory lock serializing a chain tail
    CHAIN_LOCK_NAMESPACE = "auditledger.chain"

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize PostgreSQL ledger store.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for a chain lock (ms). Default 2000.
            statement_timeout_ms: Max statement execution time (ms). Default 10000.
        """
        super().__init__()
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    def init_schema(self) -> None:
        """Create tables, sequence and triggers (idempotent)."""
        sql = SCHEMA_PATH.read_text(encoding="utf-8")
        with self._read_cursor() as cursor:
            cursor.execute(sql)
            cursor.connection.commit()

    # ----------------------------------------------------------------
    # Transaction lifecycle
    # ----------------------------------------------------------------

    def _begin(self, tx: TransactionContext) -> None:
        conn = self._connection_factory()
        conn.autocommit = False
        cursor = conn.cursor()
        tx._conn = conn
        tx._cursor = cursor

        try:
            # SET LOCAL keeps timeouts transaction-scoped
            cursor.execute(f"SET LOCAL lock_timeout = '{int(self._lock_timeout_ms)}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{int(self._statement_timeout_ms)}ms'")
            # Kill the session if it sits idle inside a transaction
            cursor.execute("SET LOCAL idle_in_transaction_session_timeout = '30s'")
            if tx.backfill:
                cursor.execute("SET LOCAL auditledger.backfill = 'on'")
        except Exception:
            self._close(tx)
            raise

    def _commit(self, tx: TransactionContext) -> None:
        try:
            tx._conn.commit()
        except Exception:
            self._rollback(tx)
            raise
        self._close(tx)

    def _rollback(self, tx: TransactionContext) -> None:
        if tx._conn is None:
            return
        try:
            tx._conn.rollback()
        except psycopg2.Error as e:
            # Connection already broken; the server discards the transaction
            logger.warning("Rollback failed", error=str(e))
        finally:
            self._close(tx)

    def _close(self, tx: TransactionContext) -> None:
        cursor, conn = tx._cursor, tx._conn
        tx._cursor = None
        tx._conn = None
        tx._locked_orgs.clear()
        try:
            if cursor is not None:
                cursor.close()
        finally:
            if conn is not None:
                conn.close()

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Determine the type of timeout from a PostgreSQL exception.

        Returns "lock", "statement", "timeout" or None.

        PostgreSQL uses 57014 (query_canceled) for BOTH lock_timeout and
        statement_timeout, so the message decides. 55P03 is treated as lock.
        """
        pgcode = getattr(e, "pgcode", None)
        err_msg = (getattr(e, "pgerror", None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"

        if pgcode == self.PGCODE_QUERY_CANCELED:
            if "lock timeout" in err_msg or "lock_timeout" in err_msg:
                return "lock"
            if "statement timeout" in err_msg or "statement_timeout" in err_msg:
                return "statement"
            return "timeout"

        return None

    def _translate(self, e: psycopg2.Error, entry_id: Optional[UUID] = None) -> Exception:
        """Map a driver error onto the ledger's error types."""
        kind = self._timeout_kind(e)
        if kind == "lock":
            return LockTimeoutError("Ledger busy - could not acquire lock. Try again.")
        if kind is not None:
            return StoreError("Query timed out - statement took too long.")
        if getattr(e, "pgcode", None) == self.PGCODE_IMMUTABLE:
            return ImmutableRecordViolation("write", entry_id=entry_id)
        if getattr(e, "pgcode", None) == self.PGCODE_UNIQUE_VIOLATION:
            return ConcurrencyError(f"Duplicate key: {e}")
        return StoreError(str(e))

    # ----------------------------------------------------------------
    # Transaction internals
    # ----------------------------------------------------------------

    def _do_lock_chain(self, tx: TransactionContext, organization_id: UUID) -> None:
        try:
            tx._cursor.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%s), hashtext(%s))",
                (self.CHAIN_LOCK_NAMESPACE, str(organization_id)),
            )
        except psycopg2.Error as e:
            raise self._translate(e) from e

    def _do_chain_tail(self, tx: TransactionContext, organization_id: UUID) -> ChainTail:
        tx._cursor.execute(
            """
            SELECT seq, hash, created_at
            FROM ledger_entries
            WHERE organization_id = %s AND seq IS NOT NULL
            ORDER BY seq DESC
            LIMIT 1
            """,
            (str(organization_id),),
        )
        row = tx._cursor.fetchone()
        if row is None:
            return ChainTail(seq=None, hash=None)
        return ChainTail(seq=row[0], hash=row[1], created_at=row[2])

    def _do_next_seq(self, tx: TransactionContext) -> int:
        try:
            tx._cursor.execute(
                """
                WITH reserved AS MATERIALIZED (
                    SELECT nextval('ledger_seq') AS seq
                )
                SELECT seq, pg_advisory_xact_lock_shared(seq) FROM reserved
                """
            )
        except psycopg2.Error as e:
            raise self._translate(e) from e
        return tx._cursor.fetchone()[0]

    def _do_insert_entry(self, tx: TransactionContext, entry: LedgerEntry) -> LedgerEntry:
        try:
            tx._cursor.execute(
                f"""
                INSERT INTO ledger_entries ({ENTRY_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    str(entry.id),
                    entry.seq,
                    str(entry.organization_id),
                    str(entry.actor_id) if entry.actor_id else None,
                    entry.actor_role,
                    entry.event_name,
                    entry.target_type,
                    str(entry.target_id) if entry.target_id else None,
                    entry.category.value,
                    entry.severity.value,
                    entry.outcome.value,
                    LedgerJson(entry.metadata),
                    entry.created_at,
                    entry.prev_hash,
                    entry.hash,
                ),
            )
        except psycopg2.Error as e:
            raise self._translate(e, entry.id) from e
        return entry

    def _do_get_entry(self, tx: TransactionContext, entry_id: UUID) -> Optional[LedgerEntry]:
        tx._cursor.execute(
            f"SELECT {ENTRY_COLUMNS} FROM ledger_entries WHERE id = %s",
            (str(entry_id),),
        )
        row = tx._cursor.fetchone()
        return self._row_to_entry(row) if row else None

    def _do_update_entry(
        self,
        tx: TransactionContext,
        existing: LedgerEntry,
        changes: dict[str, Any],
    ) -> LedgerEntry:
        # Column names were checked against BACKFILL_FIELDS by the guard
        columns = sorted(changes)
        assignments = ", ".join(f"{column} = %s" for column in columns)
        try:
            tx._cursor.execute(
                f"UPDATE ledger_entries SET {assignments} WHERE id = %s",
                (*[changes[c] for c in columns], str(existing.id)),
            )
        except psycopg2.Error as e:
            raise self._translate(e, existing.id) from e
        return existing.model_copy(update=changes)

    def _do_legacy_entries(self, tx: TransactionContext) -> list[LedgerEntry]:
        tx._cursor.execute(
            f"""
            SELECT {ENTRY_COLUMNS}
            FROM ledger_entries
            WHERE hash IS NULL
            ORDER BY created_at, id
            FOR UPDATE
            """
        )
        return [self._row_to_entry(row) for row in tx._cursor.fetchall()]

    def _do_get_record(
        self,
        tx: TransactionContext,
        entity_type: EntityType,
        record_id: UUID,
    ) -> Optional[dict[str, Any]]:
        tx._cursor.execute(
            """
            SELECT fields FROM domain_records
            WHERE entity_type = %s AND record_id = %s
            FOR UPDATE
            """,
            (entity_type.value, str(record_id)),
        )
        row = tx._cursor.fetchone()
        if row is None:
            return None
        fields = row[0]
        return json.loads(fields) if isinstance(fields, str) else dict(fields)

    def _do_put_record(
        self,
        tx: TransactionContext,
        entity_type: EntityType,
        record_id: UUID,
        organization_id: UUID,
        fields: dict[str, Any],
    ) -> None:
        tx._cursor.execute(
            """
            INSERT INTO domain_records (entity_type, record_id, organization_id, fields)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (entity_type, record_id)
            DO UPDATE SET fields = EXCLUDED.fields, updated_at = now()
            """,
            (entity_type.value, str(record_id), str(organization_id), LedgerJson(fields)),
        )

    # ----------------------------------------------------------------
    # Read side
    # ----------------------------------------------------------------

    @contextmanager
    def _read_cursor(self) -> Generator[Any, None, None]:
        conn = self._connection_factory()
        cursor = conn.cursor()
        try:
            yield cursor
        finally:
            try:
                cursor.close()
            finally:
                conn.close()

    def _fetch_entries(self, sql: str, params: tuple = ()) -> list[LedgerEntry]:
        with self._read_cursor() as cursor:
            cursor.execute(sql, params)
            return [self._row_to_entry(row) for row in cursor.fetchall()]

    def get_entry(self, seq: int) -> Optional[LedgerEntry]:
        entries = self._fetch_entries(
            f"SELECT {ENTRY_COLUMNS} FROM ledger_entries WHERE seq = %s",
            (seq,),
        )
        return entries[0] if entries else None

    def iter_chain(
        self,
        organization_id: UUID,
        from_seq: Optional[int] = None,
        to_seq: Optional[int] = None,
    ) -> list[LedgerEntry]:
        return self._fetch_entries(
            f"""
            SELECT {ENTRY_COLUMNS}
            FROM ledger_entries
            WHERE organization_id = %s
              AND seq IS NOT NULL
              AND (%s::bigint IS NULL OR seq >= %s::bigint)
              AND (%s::bigint IS NULL OR seq <= %s::bigint)
            ORDER BY seq
            """,
            (str(organization_id), from_seq, from_seq, to_seq, to_seq),
        )

    def entry_before(self, organization_id: UUID, seq: int) -> Optional[LedgerEntry]:
        entries = self._fetch_entries(
            f"""
            SELECT {ENTRY_COLUMNS}
            FROM ledger_entries
            WHERE organization_id = %s AND seq < %s
            ORDER BY seq DESC
            LIMIT 1
            """,
            (str(organization_id), seq),
        )
        return entries[0] if entries else None

    def list_entries(
        self,
        organization_id: UUID,
        filters: Optional[EntryFilters] = None,
        page: Optional[PageRequest] = None,
    ) -> EntryPage:
        filters = filters or EntryFilters()
        page = page or PageRequest()

        clauses = ["organization_id = %s", "seq IS NOT NULL"]
        params: list[Any] = [str(organization_id)]

        for column, value in (
            ("category", filters.category.value if filters.category else None),
            ("severity", filters.severity.value if filters.severity else None),
            ("outcome", filters.outcome.value if filters.outcome else None),
            ("target_type", filters.target_type),
            ("target_id", str(filters.target_id) if filters.target_id else None),
            ("actor_id", str(filters.actor_id) if filters.actor_id else None),
            ("event_name", filters.event_name),
        ):
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)

        start, end = filters.window(datetime.now(timezone.utc))
        if start is not None:
            clauses.append("created_at >= %s")
            params.append(start)
        if end is not None:
            clauses.append("created_at <= %s")
            params.append(end)

        descending = page.order == SortOrder.DESC
        if page.cursor is not None:
            clauses.append("seq < %s" if descending else "seq > %s")
            params.append(page.cursor)

        params.append(page.limit + 1)
        entries = self._fetch_entries(
            f"""
            SELECT {ENTRY_COLUMNS}
            FROM ledger_entries
            WHERE {" AND ".join(clauses)}
            ORDER BY seq {"DESC" if descending else "ASC"}
            LIMIT %s
            """,
            tuple(params),
        )

        has_more = len(entries) > page.limit
        entries = entries[:page.limit]
        return EntryPage(
            entries=entries,
            next_cursor=entries[-1].seq if has_more else None,
            has_more=has_more,
        )

    def organizations(self) -> list[UUID]:
        with self._read_cursor() as cursor:
            cursor.execute(
                """
                SELECT DISTINCT organization_id FROM ledger_entries
                WHERE seq IS NOT NULL
                ORDER BY organization_id
                """
            )
            return [self._uuid(row[0]) for row in cursor.fetchall()]

    def entry_count(self) -> int:
        with self._read_cursor() as cursor:
            cursor.execute("SELECT COUNT(*) FROM ledger_entries WHERE seq IS NOT NULL")
            return cursor.fetchone()[0]

    def high_water_seq(self) -> int:
        with self._read_cursor() as cursor:
            # Sequence first, in-flight locks second
            cursor.execute("SELECT last_value, is_called FROM ledger_seq")
            last_value, is_called = cursor.fetchone()
            issued = last_value if is_called else last_value - 1

            cursor.execute(
                """
                SELECT MIN((classid::bigint << 32) | objid::bigint)
                FROM pg_locks
                WHERE locktype = 'advisory'
                  AND objsubid = 1
                  AND granted
                  AND database = (SELECT oid FROM pg_database WHERE datname = current_database())
                """
            )
            lowest_inflight = cursor.fetchone()[0]

        if lowest_inflight is None:
            return issued
        return min(issued, lowest_inflight - 1)

    def entries_in_window(self, first_seq: int, last_seq: int) -> list[LedgerEntry]:
        return self._fetch_entries(
            f"""
            SELECT {ENTRY_COLUMNS}
            FROM ledger_entries
            WHERE seq BETWEEN %s AND %s
            ORDER BY seq
            """,
            (first_seq, last_seq),
        )

    def _fetch_roots(self, sql: str, params: tuple = ()) -> list[LedgerRoot]:
        with self._read_cursor() as cursor:
            cursor.execute(sql, params)
            return [self._row_to_root(row) for row in cursor.fetchall()]

    def latest_root(self) -> Optional[LedgerRoot]:
        roots = self._fetch_roots(
            f"SELECT {ROOT_COLUMNS} FROM ledger_roots ORDER BY last_seq DESC LIMIT 1"
        )
        return roots[0] if roots else None

    def append_root(self, root: LedgerRoot) -> bool:
        with self._read_cursor() as cursor:
            try:
                cursor.execute(
                    f"""
                    INSERT INTO ledger_roots ({ROOT_COLUMNS})
                    SELECT %s, %s, %s, %s, %s, %s, %s, %s
                    WHERE COALESCE((SELECT MAX(last_seq) FROM ledger_roots), 0) + 1 = %s
                    """,
                    (
                        str(root.id),
                        root.first_seq,
                        root.last_seq,
                        root.root_hash,
                        root.last_hash,
                        root.entry_count,
                        root.hash_method,
                        root.created_at,
                        root.first_seq,
                    ),
                )
            except psycopg2.Error as e:
                cursor.connection.rollback()
                if getattr(e, "pgcode", None) == self.PGCODE_UNIQUE_VIOLATION:
                    return False
                raise self._translate(e) from e
            inserted = cursor.rowcount == 1
            cursor.connection.commit()
            return inserted

    def list_roots(
        self,
        first_seq: Optional[int] = None,
        last_seq: Optional[int] = None,
    ) -> list[LedgerRoot]:
        return self._fetch_roots(
            f"""
            SELECT {ROOT_COLUMNS}
            FROM ledger_roots
            WHERE (%s::bigint IS NULL OR last_seq >= %s::bigint)
              AND (%s::bigint IS NULL OR first_seq <= %s::bigint)
            ORDER BY first_seq
            """,
            (first_seq, first_seq, last_seq, last_seq),
        )

    def root_for_seq(self, seq: int) -> Optional[LedgerRoot]:
        roots = self._fetch_roots(
            f"""
            SELECT {ROOT_COLUMNS}
            FROM ledger_roots
            WHERE first_seq <= %s AND last_seq >= %s
            """,
            (seq, seq),
        )
        return roots[0] if roots else None

    def import_legacy(self, entries: list[LedgerEntry]) -> int:
        self._check_legacy(entries)
        with self._read_cursor() as cursor:
            try:
                for entry in entries:
                    cursor.execute(
                        f"""
                        INSERT INTO ledger_entries ({ENTRY_COLUMNS})
                        VALUES (%s, NULL, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NULL, NULL)
                        """,
                        (
                            str(entry.id),
                            str(entry.organization_id),
                            str(entry.actor_id) if entry.actor_id else None,
                            entry.actor_role,
                            entry.event_name,
                            entry.target_type,
                            str(entry.target_id) if entry.target_id else None,
                            entry.category.value,
                            entry.severity.value,
                            entry.outcome.value,
                            LedgerJson(entry.metadata),
                            entry.created_at,
                        ),
                    )
            except psycopg2.Error as e:
                cursor.connection.rollback()
                raise self._translate(e) from e
            cursor.connection.commit()
        return len(entries)

    # ----------------------------------------------------------------
    # Row mapping
    # ----------------------------------------------------------------

    @staticmethod
    def _uuid(value: Any) -> Optional[UUID]:
        if value is None:
            return None
        return value if isinstance(value, UUID) else UUID(str(value))

    def _row_to_entry(self, row: tuple) -> LedgerEntry:
        """Convert a database row to a LedgerEntry."""
        # JSONB may arrive as str or dict depending on driver setup
        metadata = row[11]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)

        return LedgerEntry(
            id=self._uuid(row[0]),
            seq=row[1],
            organization_id=self._uuid(row[2]),
            actor_id=self._uuid(row[3]),
            actor_role=row[4],
            event_name=row[5],
            target_type=row[6],
            target_id=self._uuid(row[7]),
            category=row[8],
            severity=row[9],
            outcome=row[10],
            metadata=metadata or {},
            created_at=row[12],
            prev_hash=row[13],
            hash=row[14],
        )

    def _row_to_root(self, row: tuple) -> LedgerRoot:
        return LedgerRoot(
            id=self._uuid(row[0]),
            first_seq=row[1],
            last_seq=row[2],
            root_hash=row[3],
            last_hash=row[4],
            entry_count=row[5],
            hash_method=row[6],
            created_at=row[7],
        )
