"""
SQLite-based lifecycle store.

Used for local runs and the unit test suite. Each operation opens its own
connection so the store can be shared by poller worker threads; the lock and
retry-budget rules are enforced by single SQL statements, which SQLite
serializes across processes through its database write lock.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ..core.exceptions import StorageError
from ..core.types import JobEvent, JobStatus, Lock, LockAcquisition, LockContext, Snapshot
from ..core.utils import to_iso
from .base import RETRY_EVENT_STATUSES, LifecycleStore, check_update_fields, update_conditions


logger = logging.getLogger(__name__)


SNAPSHOT_COLUMNS = (
    "snapshot_id", "name", "filters_json", "filter_hash", "version", "created_by",
    "job_id", "file_id", "model_version", "job_status", "retry_count",
    "created_at", "updated_at", "completed_at", "error_message",
)

EVENT_COLUMNS = (
    "event_id", "job_id", "snapshot_id", "user_id", "status", "message",
    "retry_origin", "retry_reason", "error_details", "created_at",
)


class SqliteLifecycleStore(LifecycleStore):
    """
    SQLite-based implementation of the lifecycle store.
    
    Timestamps are stored as fixed-width UTC ISO strings, so string
    comparison in SQL matches chronological order.
    """

    def __init__(self, db_path: Path, auto_init: bool = True, timeout: float = 30.0):
        """
        Initialize the SQLite lifecycle store.
        
        Args:
            db_path: Path to the SQLite database file
            auto_init: Whether to create tables automatically
            timeout: Seconds to wait for the database write lock
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        
        if auto_init:
            self._init_schema()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, roll back and wrap errors on failure."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"SQLite operation failed on {self.db_path}: {e}")
            raise StorageError(f"SQLite operation failed: {e}") from e
        finally:
            conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        with self._connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    snapshot_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    filters_json TEXT NOT NULL,
                    filter_hash TEXT NOT NULL,
                    version TEXT,
                    created_by TEXT NOT NULL,
                    job_id TEXT,
                    file_id TEXT,
                    model_version TEXT,
                    job_status TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT,
                    error_message TEXT
                );

                CREATE INDEX IF NOT EXISTS ix_snapshots_filter_hash
                ON snapshots (filter_hash, created_at);

                CREATE INDEX IF NOT EXISTS ix_snapshots_status
                ON snapshots (job_status, created_at);

                CREATE TABLE IF NOT EXISTS locks (
                    snapshot_id TEXT PRIMARY KEY,
                    holder_id TEXT NOT NULL,
                    context TEXT NOT NULL,
                    acquired_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS job_events (
                    event_id TEXT PRIMARY KEY,
                    job_id TEXT,
                    snapshot_id TEXT NOT NULL,
                    user_id TEXT,
                    status TEXT NOT NULL,
                    message TEXT,
                    retry_origin TEXT,
                    retry_reason TEXT,
                    error_details TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ix_job_events_job_status
                ON job_events (job_id, status);

                CREATE INDEX IF NOT EXISTS ix_job_events_snapshot
                ON job_events (snapshot_id, created_at);
            """)
        logger.debug(f"Initialized lifecycle store schema at {self.db_path}")

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def insert_snapshot(self, snapshot: Snapshot) -> None:
        row = snapshot.to_row()
        placeholders = ", ".join("?" for _ in SNAPSHOT_COLUMNS)
        with self._connection() as conn:
            conn.execute(
                f"INSERT INTO snapshots ({', '.join(SNAPSHOT_COLUMNS)}) VALUES ({placeholders})",
                tuple(row[c] for c in SNAPSHOT_COLUMNS),
            )
        logger.debug(f"Inserted snapshot {snapshot.snapshot_id}")

    def get_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM snapshots WHERE snapshot_id = ?", (snapshot_id,)
            ).fetchone()
        return Snapshot.from_row(dict(row)) if row else None

    def update_snapshot(
        self,
        snapshot_id: str,
        fields: Dict[str, Any],
        expected_job_id: Optional[str] = None,
        expected_status: Optional[JobStatus] = None,
    ) -> bool:
        values = check_update_fields(fields)
        if not values:
            return False
        assignments = ", ".join(f"{name} = ?" for name in values)
        where, params = update_conditions(snapshot_id, expected_job_id, expected_status)
        with self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE snapshots SET {assignments} WHERE {where}",
                (*values.values(), *params),
            )
        return cursor.rowcount > 0

    def increment_retry_count(self, snapshot_id: str, max_retries: int) -> Optional[int]:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE snapshots SET retry_count = retry_count + 1
                WHERE snapshot_id = ? AND retry_count < ?
                """,
                (snapshot_id, max_retries),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT retry_count FROM snapshots WHERE snapshot_id = ?", (snapshot_id,)
            ).fetchone()
        return row["retry_count"]

    def decrement_retry_count(self, snapshot_id: str) -> Optional[int]:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE snapshots SET retry_count = retry_count - 1
                WHERE snapshot_id = ? AND retry_count > 0
                """,
                (snapshot_id,),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT retry_count FROM snapshots WHERE snapshot_id = ?", (snapshot_id,)
            ).fetchone()
        return row["retry_count"]

    def find_snapshots_by_filter_hash(self, filter_hash: str) -> List[Snapshot]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM snapshots WHERE filter_hash = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (filter_hash,),
            ).fetchall()
        return [Snapshot.from_row(dict(r)) for r in rows]

    def latest_snapshot(self) -> Optional[Snapshot]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM snapshots ORDER BY created_at DESC, rowid DESC LIMIT 1"
            ).fetchone()
        return Snapshot.from_row(dict(row)) if row else None

    def list_snapshots(
        self,
        statuses: Optional[Iterable[JobStatus]] = None,
        limit: Optional[int] = None,
    ) -> List[Snapshot]:
        query = "SELECT * FROM snapshots"
        params: List[Any] = []
        if statuses is not None:
            status_values = [JobStatus(s).value for s in statuses]
            if not status_values:
                return []
            query += f" WHERE job_status IN ({', '.join('?' for _ in status_values)})"
            params.extend(status_values)
        query += " ORDER BY created_at DESC, rowid DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Snapshot.from_row(dict(r)) for r in rows]

    def get_status_counts(self) -> Dict[str, int]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT job_status, COUNT(*) AS n FROM snapshots GROUP BY job_status"
            ).fetchall()
        return {r["job_status"]: r["n"] for r in rows}

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def _select_lock(self, conn: sqlite3.Connection, snapshot_id: str) -> Optional[Lock]:
        row = conn.execute(
            "SELECT * FROM locks WHERE snapshot_id = ?", (snapshot_id,)
        ).fetchone()
        return Lock.from_row(dict(row)) if row else None

    def try_acquire_lock(self, lock: Lock) -> LockAcquisition:
        row = lock.to_row()
        existing = None
        for _ in range(2):
            with self._connection() as conn:
                # The upsert only replaces a row whose lease has lapsed
                cursor = conn.execute(
                    """
                    INSERT INTO locks (snapshot_id, holder_id, context, acquired_at, expires_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (snapshot_id) DO UPDATE SET
                        holder_id = excluded.holder_id,
                        context = excluded.context,
                        acquired_at = excluded.acquired_at,
                        expires_at = excluded.expires_at
                    WHERE locks.expires_at <= excluded.acquired_at
                    """,
                    (row["snapshot_id"], row["holder_id"], row["context"],
                     row["acquired_at"], row["expires_at"]),
                )
                if cursor.rowcount > 0:
                    return LockAcquisition(acquired=True, lock=lock)
                existing = self._select_lock(conn, lock.snapshot_id)
            if existing is not None:
                break
            logger.debug(f"Lock on {lock.snapshot_id} released while being read, retrying")
        return LockAcquisition(acquired=False, lock=existing)

    def get_lock(self, snapshot_id: str) -> Optional[Lock]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM locks WHERE snapshot_id = ?", (snapshot_id,)
            ).fetchone()
        return Lock.from_row(dict(row)) if row else None

    def delete_lock(self, snapshot_id: str, holder_id: Optional[str] = None) -> bool:
        query = "DELETE FROM locks WHERE snapshot_id = ?"
        params: List[Any] = [snapshot_id]
        if holder_id is not None:
            query += " AND holder_id = ?"
            params.append(holder_id)
        with self._connection() as conn:
            cursor = conn.execute(query, params)
        return cursor.rowcount > 0

    def find_active_locks_for_filter_hash(
        self,
        filter_hash: str,
        now: datetime,
        context: Optional[LockContext] = None,
    ) -> List[Lock]:
        query = """
            SELECT l.* FROM locks l
            JOIN snapshots s ON s.snapshot_id = l.snapshot_id
            WHERE s.filter_hash = ? AND l.expires_at > ?
        """
        params: List[Any] = [filter_hash, to_iso(now)]
        if context is not None:
            query += " AND l.context = ?"
            params.append(LockContext(context).value)
        query += " ORDER BY l.expires_at DESC"
        
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Lock.from_row(dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def record_event(self, event: JobEvent) -> bool:
        row = event.to_row()
        placeholders = ", ".join("?" for _ in EVENT_COLUMNS)
        with self._connection() as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO job_events ({', '.join(EVENT_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT (job_id, status) DO NOTHING
                """,
                tuple(row[c] for c in EVENT_COLUMNS),
            )
        inserted = cursor.rowcount > 0
        if not inserted:
            logger.debug(f"Event already recorded: job={event.job_id} status={event.status}")
        return inserted

    def latest_event_for_job(self, job_id: str) -> Optional[JobEvent]:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM job_events WHERE job_id = ?
                ORDER BY created_at DESC, rowid DESC LIMIT 1
                """,
                (job_id,),
            ).fetchone()
        return JobEvent.from_row(dict(row)) if row else None

    def latest_retry_event(self, snapshot_id: str) -> Optional[JobEvent]:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM job_events
                WHERE snapshot_id = ? AND status IN (?, ?)
                ORDER BY created_at DESC, rowid DESC LIMIT 1
                """,
                (snapshot_id, *RETRY_EVENT_STATUSES),
            ).fetchone()
        return JobEvent.from_row(dict(row)) if row else None

    def list_events(self, snapshot_id: str, limit: Optional[int] = None) -> List[JobEvent]:
        query = """
            SELECT * FROM job_events WHERE snapshot_id = ?
            ORDER BY created_at DESC, rowid DESC
        """
        params: List[Any] = [snapshot_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [JobEvent.from_row(dict(r)) for r in rows]
