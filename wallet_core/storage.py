"""
Storage Backend Module

Provides the abstract storage interface used by the account store and the
transaction log, plus in-memory (testing), SQLite and PostgreSQL backends.
All monetary values are stored as Decimal strings.

Every backend supports atomic units of work and an exclusive per-row lock
(``load_for_update``) that is held until the unit commits or rolls back.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


class StorageError(Exception):
    """Raised when the backing store fails"""


class LockTimeoutError(StorageError):
    """Raised when a row lock or transaction could not be acquired in time"""


@dataclass(frozen=True)
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
        return result


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (insert or update) a record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load the last committed version of a record"""
        pass

    @abstractmethod
    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """
        Load a record while taking an exclusive lock on its row.

        Only valid inside ``atomic()``. The lock is held until the enclosing
        unit commits or rolls back.

        Raises:
            StorageError: If called outside a transaction
            LockTimeoutError: If the lock could not be acquired in time
        """
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def ensure_table(self, table: str) -> None:
        """Create the table if the backend needs it (default no-op)"""
        pass

    @abstractmethod
    def in_transaction(self) -> bool:
        """Whether the calling thread has an open transaction"""
        pass

    @abstractmethod
    def begin_transaction(self, lock_timeout: Optional[float] = None) -> None:
        """Start a transaction for the calling thread"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the calling thread's transaction"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the calling thread's transaction"""
        pass

    @contextmanager
    def atomic(self, lock_timeout: Optional[float] = None):
        """
        Context manager for atomic operations.

        Everything written inside the block commits or rolls back together.
        A nested ``atomic()`` joins the enclosing unit.
        """
        if self.in_transaction():
            yield
            return

        self.begin_transaction(lock_timeout)
        try:
            yield
            self.commit()
        except BaseException:
            self.rollback()
            raise


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class _PendingTransaction:
    """Per-thread state of an open in-memory transaction"""

    def __init__(self, lock_timeout: Optional[float]):
        self.lock_timeout = lock_timeout
        self.writes: Dict[tuple, Dict[str, Any]] = {}
        self.held_locks: Dict[tuple, threading.Lock] = {}


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing and single-process use.

    Row locks are real ``threading.Lock`` objects, so two threads locking the
    same record serialize while threads working on different records do not
    block each other. Writes made inside a transaction are only visible to
    the owning thread until commit.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._row_locks: Dict[tuple, threading.Lock] = {}
        self._row_lock_users: Dict[tuple, int] = {}
        self._local = threading.local()

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def _current(self) -> Optional[_PendingTransaction]:
        return getattr(self._local, 'transaction', None)

    def _row_lock(self, key: tuple) -> threading.Lock:
        """Lock object for a row, counted until the caller drops it"""
        with self._lock:
            lock = self._row_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._row_locks[key] = lock
                self._row_lock_users[key] = 0
            self._row_lock_users[key] += 1
            return lock

    def _drop_row_lock(self, key: tuple) -> None:
        # Forget the lock once no transaction holds or waits for it
        with self._lock:
            self._row_lock_users[key] -= 1
            if self._row_lock_users[key] == 0:
                del self._row_lock_users[key]
                del self._row_locks[key]

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record, staged until commit when inside a transaction"""
        record = self._copy(data)
        transaction = self._current()
        if transaction is not None:
            transaction.writes[(table, record_id)] = record
            return
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = record

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        transaction = self._current()
        if transaction is not None and (table, record_id) in transaction.writes:
            return self._copy(transaction.writes[(table, record_id)])
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is not None:
                return self._copy(record)
            return None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Lock the row for the current transaction, then load it"""
        transaction = self._current()
        if transaction is None:
            raise StorageError("load_for_update requires an active transaction")

        key = (table, record_id)
        if key not in transaction.held_locks:
            lock = self._row_lock(key)
            timeout = transaction.lock_timeout if transaction.lock_timeout is not None else -1
            if not lock.acquire(timeout=timeout):
                self._drop_row_lock(key)
                raise LockTimeoutError(
                    f"Timed out after {transaction.lock_timeout}s waiting for lock on {table}/{record_id}"
                )
            transaction.held_locks[key] = lock

        return self.load(table, record_id)

    def _merged(self, table: str) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            merged = dict(self._data[table])
        transaction = self._current()
        if transaction is not None:
            for (write_table, record_id), record in transaction.writes.items():
                if write_table == table:
                    merged[record_id] = record
        return merged

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return record_id in self._merged(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [
            self._copy(record)
            for record in self._merged(table).values()
            if _matches(record, filters)
        ]

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def in_transaction(self) -> bool:
        return self._current() is not None

    def begin_transaction(self, lock_timeout: Optional[float] = None) -> None:
        """Start a transaction for the calling thread"""
        if self._current() is not None:
            raise StorageError("Transaction already in progress")
        self._local.transaction = _PendingTransaction(lock_timeout)

    def commit(self) -> None:
        """Apply staged writes and release row locks"""
        transaction = self._current()
        if transaction is None:
            return
        try:
            with self._lock:
                for (table, record_id), record in transaction.writes.items():
                    self._ensure_table(table)
                    self._data[table][record_id] = record
        finally:
            self._finish(transaction)

    def rollback(self) -> None:
        """Discard staged writes and release row locks"""
        transaction = self._current()
        if transaction is None:
            return
        transaction.writes.clear()
        self._finish(transaction)

    def _finish(self, transaction: _PendingTransaction) -> None:
        for key, lock in transaction.held_locks.items():
            lock.release()
            self._drop_row_lock(key)
        transaction.held_locks.clear()
        self._local.transaction = None


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    Each thread uses its own connection. SQLite has no row-level locks: a
    transaction issues ``BEGIN IMMEDIATE``, which takes the database write
    lock and waits at most ``lock_timeout`` for it. Mutations are therefore
    serialized across threads and across processes sharing the same file,
    while plain reads see the last committed state (WAL) without waiting.

    A ``:memory:`` database lives inside a single connection, so that case
    shares one connection behind a lock that is acquired with a timeout.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", busy_timeout: float = 5.0):
        self.db_path = str(db_path)
        self._busy_timeout = busy_timeout
        self._lock = threading.RLock()
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._tables: set = set()
        self._shared: Optional[sqlite3.Connection] = None

        if self.db_path == ":memory:":
            self._shared = self._connect()
        else:
            # WAL lets readers run while a writer holds the database lock
            self._execute("PRAGMA journal_mode = WAL")

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are controlled explicitly
        connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level=None,
            timeout=self._busy_timeout,
        )
        connection.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            connection.execute("PRAGMA synchronous = NORMAL")
        with self._connections_lock:
            self._connections.append(connection)
        return connection

    def _connection(self) -> sqlite3.Connection:
        """Connection used by the calling thread"""
        if self._shared is not None:
            return self._shared
        connection = getattr(self._local, 'connection', None)
        if connection is None:
            try:
                connection = self._connect()
            except sqlite3.Error as e:
                raise StorageError(f"Could not open {self.db_path}: {e}") from e
            self._local.connection = connection
        return connection

    @contextmanager
    def _guard(self):
        """Exclusive use of the shared in-memory connection"""
        if self._shared is None:
            yield
            return
        if not self._lock.acquire(timeout=self._busy_timeout):
            raise LockTimeoutError(f"Timed out after {self._busy_timeout}s waiting for database")
        try:
            yield
        finally:
            self._lock.release()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection().execute(sql, params)
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise LockTimeoutError(str(e)) from e
            raise StorageError(str(e)) from e
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    def ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._guard():
            self._execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            # Create index on timestamps for better query performance
            self._execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
        # A table created inside an open unit disappears if it rolls back
        if not self.in_transaction():
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._guard():
            self.ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            self._execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, data.get('created_at', now), now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._guard():
            self.ensure_table(table)
            row = self._execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,)).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record; the database write lock is already held by the transaction"""
        if not self.in_transaction():
            raise StorageError("load_for_update requires an active transaction")
        return self.load(table, record_id)

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._guard():
            self.ensure_table(table)
            cursor = self._execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using SQLite JSON functions"""
        with self._guard():
            self.ensure_table(table)
            conditions = []
            params: List[Any] = []
            for key, value in filters.items():
                conditions.append("json_extract(data, ?) = ?")
                params.extend([f"$.{key}", value])

            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = self._execute(f"""
                SELECT data FROM {table} {where_clause} ORDER BY created_at
            """, tuple(params))
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def in_transaction(self) -> bool:
        return getattr(self._local, 'in_transaction', False)

    def begin_transaction(self, lock_timeout: Optional[float] = None) -> None:
        """Take the database write lock, waiting at most lock_timeout"""
        if self.in_transaction():
            raise StorageError("Transaction already in progress")
        if self._shared is not None:
            timeout = lock_timeout if lock_timeout is not None else -1
            if not self._lock.acquire(timeout=timeout):
                raise LockTimeoutError(f"Timed out after {lock_timeout}s waiting for database")
        try:
            if lock_timeout is not None:
                self._execute(f"PRAGMA busy_timeout = {int(lock_timeout * 1000)}")
            self._execute("BEGIN IMMEDIATE")
        except BaseException:
            self._release()
            raise
        self._local.in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        if not self.in_transaction():
            return
        try:
            self._execute("COMMIT")
        finally:
            # A failed COMMIT leaves the transaction open for rollback()
            if not self._connection().in_transaction:
                self._release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if not self.in_transaction():
            return
        try:
            if self._connection().in_transaction:
                self._execute("ROLLBACK")
        finally:
            self._release()

    def _release(self) -> None:
        self._local.in_transaction = False
        try:
            self._execute(f"PRAGMA busy_timeout = {int(self._busy_timeout * 1000)}")
        finally:
            if self._shared is not None:
                self._lock.release()

    def close(self) -> None:
        """Close every SQLite connection opened by this backend"""
        with self._connections_lock:
            for connection in self._connections:
                connection.close()
            self._connections = []
        self._local = threading.local()


class PostgreSQLStorage(StorageInterface):
    """
    PostgreSQL storage backend with ACID transactions and row-level locks.

    Each thread gets its own connection, so ``SELECT ... FOR UPDATE`` locks
    taken by one thread block exactly the threads (or processes) that try
    to lock the same row.
    """

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.errors
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._local = threading.local()
        self._connections: List[Any] = []
        self._lock = threading.RLock()
        self._tables: set = set()

    def _connection(self):
        """Connection owned by the calling thread"""
        connection = getattr(self._local, 'connection', None)
        if connection is None or connection.closed:
            try:
                connection = self.psycopg2.connect(
                    self.connection_string,
                    cursor_factory=self.extras.RealDictCursor
                )
            except self.psycopg2.Error as e:
                raise StorageError(f"Could not connect to PostgreSQL: {e}") from e
            connection.autocommit = False  # We handle transactions manually
            self._local.connection = connection
            self._local.in_transaction = False
            with self._lock:
                self._connections.append(connection)
        return connection

    @contextmanager
    def _cursor(self):
        """Cursor that commits on its own unless a transaction is open"""
        connection = self._connection()
        cursor = connection.cursor()
        try:
            yield cursor
            if not self.in_transaction():
                connection.commit()
        except self.psycopg2.errors.LockNotAvailable as e:
            if not self.in_transaction():
                connection.rollback()
            raise LockTimeoutError(str(e)) from e
        except self.psycopg2.errors.QueryCanceled as e:
            if not self.in_transaction():
                connection.rollback()
            raise LockTimeoutError(str(e)) from e
        except self.psycopg2.Error as e:
            if not self.in_transaction():
                connection.rollback()
            raise StorageError(str(e)) from e
        finally:
            cursor.close()

    def ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._cursor() as cursor:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    created_at TIMESTAMPTZ DEFAULT NOW(),
                    updated_at TIMESTAMPTZ DEFAULT NOW()
                )
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_data
                ON {table} USING gin(data)
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        self.ensure_table(table)

        now = datetime.now(timezone.utc)
        data_json = json.dumps(data, default=str)

        with self._cursor() as cursor:
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, data_json, data.get('created_at', now), now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        self.ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"""
                SELECT data FROM {table} WHERE id = %s
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return dict(row['data'])
            return None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record with SELECT ... FOR UPDATE"""
        if not self.in_transaction():
            raise StorageError("load_for_update requires an active transaction")
        self.ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"""
                SELECT data FROM {table} WHERE id = %s FOR UPDATE
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return dict(row['data'])
            return None

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        self.ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"""
                SELECT 1 FROM {table} WHERE id = %s LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        self.ensure_table(table)
        with self._cursor() as cursor:
            if not filters:
                cursor.execute(f"""
                    SELECT data FROM {table} ORDER BY created_at
                """)
            else:
                # Build WHERE clause using JSONB operators
                conditions = []
                params = []
                for key, value in filters.items():
                    conditions.append("data ->> %s = %s")
                    params.extend([key, str(value)])

                where_clause = " AND ".join(conditions)
                cursor.execute(f"""
                    SELECT data FROM {table}
                    WHERE {where_clause}
                    ORDER BY created_at
                """, params)

            return [dict(row['data']) for row in cursor.fetchall()]

    def in_transaction(self) -> bool:
        return getattr(self._local, 'in_transaction', False)

    def begin_transaction(self, lock_timeout: Optional[float] = None) -> None:
        """Start a database transaction"""
        if self.in_transaction():
            raise StorageError("Transaction already in progress")
        self._connection()
        self._local.in_transaction = True
        if lock_timeout is not None:
            try:
                with self._cursor() as cursor:
                    cursor.execute("SELECT set_config('lock_timeout', %s, true)", (f"{int(lock_timeout * 1000)}ms",))
            except StorageError:
                self.rollback()
                raise

    def commit(self) -> None:
        """Commit current transaction"""
        if not self.in_transaction():
            return
        connection = self._connection()
        try:
            connection.commit()
        except self.psycopg2.Error as e:
            raise StorageError(f"Commit failed: {e}") from e
        finally:
            self._local.in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        connection = self._connection()
        self._local.in_transaction = False
        self._tables.clear()
        try:
            connection.rollback()
        except self.psycopg2.Error as e:
            raise StorageError(f"Rollback failed: {e}") from e

    def close(self) -> None:
        """Close every PostgreSQL connection opened by this backend"""
        with self._lock:
            for connection in self._connections:
                if not connection.closed:
                    connection.close()
            self._connections = []
        self._local = threading.local()


def create_storage(database_url: str, lock_timeout: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    Supported forms: ``memory://``, ``sqlite:///path/to.db`` (or
    ``sqlite:///:memory:``) and ``postgresql://...``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:", busy_timeout=lock_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
