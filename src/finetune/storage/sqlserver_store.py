"""
SQL Server-based lifecycle store.

Production backend. Locks are taken with a single MERGE ... WITH (HOLDLOCK)
statement so two runners racing for the same snapshot serialize on the key
range; events rely on a filtered unique index over (job_id, status).
"""

import logging
import re
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

try:
    import pyodbc
except ImportError:
    pyodbc = None

from ..core.exceptions import StorageError
from ..core.types import JobEvent, JobStatus, Lock, LockAcquisition, LockContext, Snapshot
from ..core.utils import ensure_utc, parse_iso
from .base import RETRY_EVENT_STATUSES, LifecycleStore, check_update_fields, update_conditions
from .sqlite_store import EVENT_COLUMNS, SNAPSHOT_COLUMNS


logger = logging.getLogger(__name__)


TIMESTAMP_COLUMNS = frozenset({
    "created_at", "updated_at", "completed_at", "acquired_at", "expires_at",
})

RESERVED_WORDS = {
    'select', 'insert', 'update', 'delete', 'drop', 'create', 'alter',
    'exec', 'execute', 'union', 'where', 'from', 'table', 'database',
    'schema', 'index', 'grant', 'revoke', 'truncate', 'declare', 'set'
}


def _db_time(value: Any) -> Optional[datetime]:
    """Convert a stored timestamp to the naive UTC datetime DATETIME2 expects."""
    parsed = parse_iso(value)
    if parsed is None:
        return None
    return ensure_utc(parsed).replace(tzinfo=None)


def _db_params(row: Dict[str, Any], columns) -> tuple:
    return tuple(
        _db_time(row[c]) if c in TIMESTAMP_COLUMNS else row[c]
        for c in columns
    )


def _fetch_dicts(cursor) -> List[Dict[str, Any]]:
    columns = [column[0] for column in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


class SqlServerLifecycleStore(LifecycleStore):
    """
    SQL Server-based implementation of the lifecycle store.
    
    Features:
    - Safe for many API workers and pollers sharing one database
    - Thread-local connections for the poller's worker threads
    - Uniqueness rules enforced by the database
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        host: str = "localhost",
        port: int = 1433,
        database: str = "FineTune",
        username: str = "sa",
        password: Optional[str] = None,
        driver: str = "ODBC Driver 18 for SQL Server",
        schema: str = "finetune",
        auto_init: bool = True,
        trust_server_certificate: bool = True,
    ):
        """
        Initialize the SQL Server lifecycle store.
        
        Args:
            connection_string: Full ODBC connection string (if provided, other params ignored)
            host: SQL Server host
            port: SQL Server port
            database: Database name
            username: Database username
            password: Database password
            driver: ODBC driver name
            schema: Schema name for tables (default: 'finetune')
            auto_init: Whether to create schema and tables automatically
            trust_server_certificate: Whether to trust self-signed certificates (for local Docker)
        """
        if pyodbc is None:
            raise ImportError(
                "pyodbc is required for SqlServerLifecycleStore. "
                "Install with: pip install pyodbc"
            )
        
        if not self._is_valid_identifier(schema):
            raise ValueError(f"Invalid schema name: {schema}")
        
        self.schema = schema
        
        if connection_string:
            self.connection_string = connection_string
        else:
            trust_cert = "yes" if trust_server_certificate else "no"
            self.connection_string = (
                f"Driver={{{driver}}};"
                f"Server={host},{port};"
                f"Database={database};"
                f"UID={username};"
                f"PWD={password};"
                f"TrustServerCertificate={trust_cert}"
            )
        
        self._thread_local = threading.local()
        self._connections = []
        self._connections_lock = threading.Lock()
        self._connect()
        
        if auto_init:
            self._init_schema()

    def _is_valid_identifier(self, name: str) -> bool:
        """
        Validate that a name is a safe SQL identifier.
        
        Must start with a letter or underscore, contain only letters, digits
        and underscores, fit SQL Server's 128-character limit and not be a
        reserved word.
        """
        if not name or len(name) > 128:
            return False
        if not re.match(r'^[a-zA-Z_][a-zA-Z0-9_]*$', name):
            return False
        return name.lower() not in RESERVED_WORDS

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            self._get_conn()
            logger.debug(f"Connected to SQL Server lifecycle store (schema: {self.schema})")
        except pyodbc.Error as e:
            logger.error(f"Failed to connect to SQL Server: {e}")
            raise StorageError(f"Failed to connect to SQL Server: {e}") from e

    def _get_conn(self):
        """Get (or create) a thread-local connection for safe concurrent use."""
        conn = getattr(self._thread_local, "conn", None)
        if conn is None:
            conn = pyodbc.connect(self.connection_string)
            self._thread_local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _execute(self, sql: str, params: tuple = (), fetch: bool = False, commit: bool = True):
        """
        Run one statement on the thread's connection.
        
        Returns:
            List of row dicts when fetch is True, else the cursor rowcount
        """
        conn = self._get_conn()
        try:
            cursor = conn.cursor()
            cursor.execute(sql, params)
            result = _fetch_dicts(cursor) if fetch else cursor.rowcount
            if commit:
                conn.commit()
            return result
        except pyodbc.Error as e:
            conn.rollback()
            logger.error(f"SQL Server statement failed: {e}")
            raise StorageError(f"SQL Server statement failed: {e}") from e

    def _table(self, name: str) -> str:
        return f"[{self.schema}].[{name}]"

    def _init_schema(self) -> None:
        """Initialize database schema and tables."""
        # The schema name passed _is_valid_identifier; CREATE SCHEMA cannot be parameterized
        self._execute(f"""
            IF NOT EXISTS (SELECT * FROM sys.schemas WHERE name = ?)
            BEGIN
                EXEC('CREATE SCHEMA [{self.schema}]')
            END
        """, (self.schema,))
        
        self._execute(f"""
            IF OBJECT_ID('{self.schema}.snapshots', 'U') IS NULL
            BEGIN
                CREATE TABLE {self._table('snapshots')} (
                    snapshot_id NVARCHAR(36) PRIMARY KEY,
                    name NVARCHAR(200) NOT NULL,
                    filters_json NVARCHAR(MAX) NOT NULL,
                    filter_hash CHAR(64) NOT NULL,
                    version NVARCHAR(40),
                    created_by NVARCHAR(200) NOT NULL,
                    job_id NVARCHAR(100),
                    file_id NVARCHAR(100),
                    model_version NVARCHAR(200),
                    job_status NVARCHAR(20) NOT NULL,
                    retry_count INT NOT NULL DEFAULT 0,
                    created_at DATETIME2 NOT NULL,
                    updated_at DATETIME2 NOT NULL,
                    completed_at DATETIME2,
                    error_message NVARCHAR(MAX)
                );
                CREATE INDEX ix_snapshots_filter_hash
                    ON {self._table('snapshots')} (filter_hash, created_at);
                CREATE INDEX ix_snapshots_status
                    ON {self._table('snapshots')} (job_status, created_at);
            END
        """)
        
        self._execute(f"""
            IF OBJECT_ID('{self.schema}.locks', 'U') IS NULL
            BEGIN
                CREATE TABLE {self._table('locks')} (
                    -- Snapshot id, or export:<filter_hash> for a create guard
                    snapshot_id NVARCHAR(80) PRIMARY KEY,
                    holder_id NVARCHAR(200) NOT NULL,
                    context NVARCHAR(20) NOT NULL,
                    acquired_at DATETIME2 NOT NULL,
                    expires_at DATETIME2 NOT NULL
                );
            END
        """)
        
        self._execute(f"""
            IF OBJECT_ID('{self.schema}.job_events', 'U') IS NULL
            BEGIN
                CREATE TABLE {self._table('job_events')} (
                    event_id NVARCHAR(36) PRIMARY KEY,
                    job_id NVARCHAR(100),
                    snapshot_id NVARCHAR(36) NOT NULL,
                    user_id NVARCHAR(200),
                    status NVARCHAR(20) NOT NULL,
                    message NVARCHAR(MAX),
                    retry_origin NVARCHAR(20),
                    retry_reason NVARCHAR(MAX),
                    error_details NVARCHAR(MAX),
                    created_at DATETIME2 NOT NULL
                );
                CREATE UNIQUE INDEX ux_job_events_job_status
                    ON {self._table('job_events')} (job_id, status)
                    WHERE job_id IS NOT NULL;
                CREATE INDEX ix_job_events_snapshot
                    ON {self._table('job_events')} (snapshot_id, created_at);
            END
        """)
        logger.debug(f"Initialized lifecycle store schema [{self.schema}]")

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def insert_snapshot(self, snapshot: Snapshot) -> None:
        placeholders = ", ".join("?" for _ in SNAPSHOT_COLUMNS)
        self._execute(
            f"INSERT INTO {self._table('snapshots')} ({', '.join(SNAPSHOT_COLUMNS)}) "
            f"VALUES ({placeholders})",
            _db_params(snapshot.to_row(), SNAPSHOT_COLUMNS),
        )
        logger.debug(f"Inserted snapshot {snapshot.snapshot_id}")

    def get_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        rows = self._execute(
            f"SELECT * FROM {self._table('snapshots')} WHERE snapshot_id = ?",
            (snapshot_id,), fetch=True,
        )
        return Snapshot.from_row(rows[0]) if rows else None

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
        updated = self._execute(
            f"UPDATE {self._table('snapshots')} SET {assignments} WHERE {where}",
            (*_db_params(values, values.keys()), *params),
        )
        return updated > 0

    def increment_retry_count(self, snapshot_id: str, max_retries: int) -> Optional[int]:
        rows = self._execute(
            f"""
            UPDATE {self._table('snapshots')} SET retry_count = retry_count + 1
            OUTPUT INSERTED.retry_count
            WHERE snapshot_id = ? AND retry_count < ?
            """,
            (snapshot_id, max_retries), fetch=True,
        )
        return rows[0]["retry_count"] if rows else None

    def decrement_retry_count(self, snapshot_id: str) -> Optional[int]:
        rows = self._execute(
            f"""
            UPDATE {self._table('snapshots')} SET retry_count = retry_count - 1
            OUTPUT INSERTED.retry_count
            WHERE snapshot_id = ? AND retry_count > 0
            """,
            (snapshot_id,), fetch=True,
        )
        return rows[0]["retry_count"] if rows else None

    def find_snapshots_by_filter_hash(self, filter_hash: str) -> List[Snapshot]:
        rows = self._execute(
            f"""
            SELECT * FROM {self._table('snapshots')} WHERE filter_hash = ?
            ORDER BY created_at DESC
            """,
            (filter_hash,), fetch=True,
        )
        return [Snapshot.from_row(r) for r in rows]

    def latest_snapshot(self) -> Optional[Snapshot]:
        rows = self._execute(
            f"SELECT TOP 1 * FROM {self._table('snapshots')} ORDER BY created_at DESC",
            fetch=True,
        )
        return Snapshot.from_row(rows[0]) if rows else None

    def list_snapshots(
        self,
        statuses: Optional[Iterable[JobStatus]] = None,
        limit: Optional[int] = None,
    ) -> List[Snapshot]:
        top = f"TOP {int(limit)} " if limit is not None else ""
        query = f"SELECT {top}* FROM {self._table('snapshots')}"
        params: List[Any] = []
        if statuses is not None:
            status_values = [JobStatus(s).value for s in statuses]
            if not status_values:
                return []
            query += f" WHERE job_status IN ({', '.join('?' for _ in status_values)})"
            params.extend(status_values)
        query += " ORDER BY created_at DESC"
        
        rows = self._execute(query, tuple(params), fetch=True)
        return [Snapshot.from_row(r) for r in rows]

    def get_status_counts(self) -> Dict[str, int]:
        rows = self._execute(
            f"SELECT job_status, COUNT(*) AS n FROM {self._table('snapshots')} GROUP BY job_status",
            fetch=True,
        )
        return {r["job_status"]: r["n"] for r in rows}

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def try_acquire_lock(self, lock: Lock) -> LockAcquisition:
        existing = None
        for _ in range(2):
            acquired, existing = self._merge_lock(lock)
            if acquired:
                return LockAcquisition(acquired=True, lock=lock)
            if existing is not None:
                break
            logger.debug(f"Lock on {lock.snapshot_id} released while being read, retrying")
        return LockAcquisition(acquired=False, lock=Lock.from_row(existing) if existing else None)

    def _merge_lock(self, lock: Lock):
        """One MERGE attempt; returns (acquired, blocking row or None)."""
        columns = ("snapshot_id", "holder_id", "context", "acquired_at", "expires_at")
        conn = self._get_conn()
        try:
            cursor = conn.cursor()
            # HOLDLOCK keeps the key range locked between the match and the write
            cursor.execute(f"""
                MERGE {self._table('locks')} WITH (HOLDLOCK) AS target
                USING (SELECT ? AS snapshot_id, ? AS holder_id, ? AS context,
                              ? AS acquired_at, ? AS expires_at) AS source
                ON target.snapshot_id = source.snapshot_id
                WHEN MATCHED AND target.expires_at <= source.acquired_at THEN
                    UPDATE SET holder_id = source.holder_id,
                               context = source.context,
                               acquired_at = source.acquired_at,
                               expires_at = source.expires_at
                WHEN NOT MATCHED THEN
                    INSERT (snapshot_id, holder_id, context, acquired_at, expires_at)
                    VALUES (source.snapshot_id, source.holder_id, source.context,
                            source.acquired_at, source.expires_at);
            """, _db_params(lock.to_row(), columns))
            acquired = cursor.rowcount > 0
            
            existing = None
            if not acquired:
                cursor.execute(
                    f"SELECT * FROM {self._table('locks')} WHERE snapshot_id = ?",
                    (lock.snapshot_id,),
                )
                rows = _fetch_dicts(cursor)
                existing = rows[0] if rows else None
            conn.commit()
        except pyodbc.Error as e:
            conn.rollback()
            logger.error(f"Failed to acquire lock for {lock.snapshot_id}: {e}")
            raise StorageError(f"Failed to acquire lock: {e}") from e
        return acquired, existing

    def get_lock(self, snapshot_id: str) -> Optional[Lock]:
        rows = self._execute(
            f"SELECT * FROM {self._table('locks')} WHERE snapshot_id = ?",
            (snapshot_id,), fetch=True,
        )
        return Lock.from_row(rows[0]) if rows else None

    def delete_lock(self, snapshot_id: str, holder_id: Optional[str] = None) -> bool:
        query = f"DELETE FROM {self._table('locks')} WHERE snapshot_id = ?"
        params: List[Any] = [snapshot_id]
        if holder_id is not None:
            query += " AND holder_id = ?"
            params.append(holder_id)
        return self._execute(query, tuple(params)) > 0

    def find_active_locks_for_filter_hash(
        self,
        filter_hash: str,
        now: datetime,
        context: Optional[LockContext] = None,
    ) -> List[Lock]:
        query = f"""
            SELECT l.* FROM {self._table('locks')} l
            JOIN {self._table('snapshots')} s ON s.snapshot_id = l.snapshot_id
            WHERE s.filter_hash = ? AND l.expires_at > ?
        """
        params: List[Any] = [filter_hash, _db_time(now)]
        if context is not None:
            query += " AND l.context = ?"
            params.append(LockContext(context).value)
        query += " ORDER BY l.expires_at DESC"
        
        rows = self._execute(query, tuple(params), fetch=True)
        return [Lock.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def record_event(self, event: JobEvent) -> bool:
        placeholders = ", ".join("?" for _ in EVENT_COLUMNS)
        conn = self._get_conn()
        try:
            cursor = conn.cursor()
            cursor.execute(
                f"INSERT INTO {self._table('job_events')} ({', '.join(EVENT_COLUMNS)}) "
                f"VALUES ({placeholders})",
                _db_params(event.to_row(), EVENT_COLUMNS),
            )
            conn.commit()
            return True
        except pyodbc.IntegrityError:
            conn.rollback()
            logger.debug(f"Event already recorded: job={event.job_id} status={event.status}")
            return False
        except pyodbc.Error as e:
            conn.rollback()
            logger.error(f"Failed to record event: {e}")
            raise StorageError(f"Failed to record event: {e}") from e

    def latest_event_for_job(self, job_id: str) -> Optional[JobEvent]:
        rows = self._execute(
            f"""
            SELECT TOP 1 * FROM {self._table('job_events')} WHERE job_id = ?
            ORDER BY created_at DESC
            """,
            (job_id,), fetch=True,
        )
        return JobEvent.from_row(rows[0]) if rows else None

    def latest_retry_event(self, snapshot_id: str) -> Optional[JobEvent]:
        rows = self._execute(
            f"""
            SELECT TOP 1 * FROM {self._table('job_events')}
            WHERE snapshot_id = ? AND status IN (?, ?)
            ORDER BY created_at DESC
            """,
            (snapshot_id, *RETRY_EVENT_STATUSES), fetch=True,
        )
        return JobEvent.from_row(rows[0]) if rows else None

    def list_events(self, snapshot_id: str, limit: Optional[int] = None) -> List[JobEvent]:
        top = f"TOP {int(limit)} " if limit is not None else ""
        rows = self._execute(
            f"""
            SELECT {top}* FROM {self._table('job_events')} WHERE snapshot_id = ?
            ORDER BY created_at DESC
            """,
            (snapshot_id,), fetch=True,
        )
        return [JobEvent.from_row(r) for r in rows]

    def close(self) -> None:
        """Close all thread-local connections."""
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except pyodbc.Error as e:
                    logger.debug(f"Ignoring error while closing connection: {e}")
            self._connections.clear()
        logger.debug("Closed SQL Server lifecycle store connections")
