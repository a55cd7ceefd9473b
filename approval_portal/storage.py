"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite (single node) and PostgreSQL (production). Records are stored as JSON
documents keyed by id.

Transactions can be scoped to a lock key. Two transactions holding the same key
never interleave, which is how concurrent actions on one workflow instance are
linearized.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import TransientStorageError


# PostgreSQL error codes worth one retry: serialization failure,
# deadlock detected, lock not available
TRANSIENT_PGCODES = {"40001", "40P01", "55P03"}


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


class KeyedLock:
    """A registry of re-entrant locks, one per key"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def acquire(self, key: str, timeout: Optional[float] = None) -> bool:
        with self._guard:
            lock = self._locks.setdefault(key, threading.RLock())
        return lock.acquire(timeout=-1 if timeout is None else timeout)

    def release(self, key: str) -> None:
        with self._guard:
            lock = self._locks[key]
        lock.release()


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
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
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self, lock_key: Optional[str] = None,
                          timeout: Optional[float] = None) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self, lock_key: Optional[str] = None, timeout: Optional[float] = None):
        """
        Context manager for atomic operations.

        Args:
            lock_key: Serializes all transactions opened with the same key
            timeout: Seconds to wait for the lock before raising
                TransientStorageError
        """
        self.begin_transaction(lock_key, timeout)
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._record_locks = KeyedLock()
        self._local = threading.local()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _state(self) -> threading.local:
        """Per-thread transaction state: nesting depth, undo journal, held lock keys"""
        if not hasattr(self._local, 'depth'):
            self._local.depth = 0
            self._local.journal = []
            self._local.held = []
        return self._local

    def _remember(self, table: str, record_id: str) -> None:
        """Record the previous value of a row so rollback can restore it"""
        state = self._state()
        if state.depth:
            previous = self._data[table].get(record_id)
            state.journal.append((table, record_id, previous))

    def _end_transaction(self, state: threading.local) -> None:
        state.depth -= 1
        if state.depth == 0:
            state.journal = []
            while state.held:
                self._record_locks.release(state.held.pop())

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._remember(table, record_id)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._remember(table, record_id)
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match:
                    results.append(json.loads(json.dumps(record)))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            for record_id in list(self._data[table]):
                self._remember(table, record_id)
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self, lock_key: Optional[str] = None,
                          timeout: Optional[float] = None) -> None:
        """
        Start a (possibly nested) transaction on the calling thread.

        Lock keys taken by nested transactions stay held until the outermost
        transaction ends.
        """
        state = self._state()
        if lock_key is not None and lock_key not in state.held:
            if not self._record_locks.acquire(lock_key, timeout):
                raise TransientStorageError(f"Timed out waiting for lock on {lock_key}")
            state.held.append(lock_key)
        state.depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        state = self._state()
        if state.depth:
            self._end_transaction(state)

    def rollback(self) -> None:
        """Undo every write made since the outermost begin_transaction"""
        state = self._state()
        if not state.depth:
            return
        if state.depth == 1:
            with self._lock:
                for table, record_id, previous in reversed(state.journal):
                    if previous is None:
                        self._data[table].pop(record_id, None)
                    else:
                        self._data[table][record_id] = previous
        self._end_transaction(state)


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", busy_timeout: float = 5.0):
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        # Transactions are opened explicitly in begin_transaction
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False,
            isolation_level='DEFERRED', timeout=busy_timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @property
    def _in_transaction(self) -> bool:
        return self._depth > 0

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            if not self._in_transaction:
                self._connection.commit()
                self._tables.add(table)

    def _write(self, sql: str, params: tuple) -> sqlite3.Cursor:
        try:
            cursor = self._connection.execute(sql, params)
            if not self._in_transaction:
                self._connection.commit()
            return cursor
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise TransientStorageError(f"SQLite write contention: {e}") from e
            raise

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Keep the original created_at on updates
            self._write(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._write(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)

            results = []
            for row in cursor.fetchall():
                record = json.loads(row['data'])
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match:
                    results.append(record)

            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._write(f"DELETE FROM {table}", ())

    def begin_transaction(self, lock_key: Optional[str] = None,
                          timeout: Optional[float] = None) -> None:
        """
        Start a database transaction.

        The connection is shared, so the connection lock is held until commit
        or rollback; this serializes every transaction on this storage.
        """
        wait = self.busy_timeout if timeout is None else timeout
        if not self._lock.acquire(timeout=wait):
            raise TransientStorageError(f"Timed out waiting for lock on {lock_key or self.db_path}")
        if self._depth == 0:
            try:
                self._connection.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                self._lock.release()
                raise TransientStorageError(f"Could not start SQLite transaction: {e}") from e
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        if self._depth == 0:
            return
        try:
            if self._depth == 1:
                try:
                    self._connection.commit()
                except sqlite3.OperationalError as e:
                    self._connection.rollback()
                    raise TransientStorageError(f"SQLite commit failed: {e}") from e
        finally:
            self._depth -= 1
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._depth == 0:
            return
        try:
            if self._depth == 1:
                self._connection.rollback()
        finally:
            self._depth -= 1
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: set = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually

    @contextmanager
    def _cursor(self):
        """Cursor that commits outside transactions and maps lock errors"""
        cursor = self._connection.cursor()
        try:
            yield cursor
            if not self._in_transaction:
                self._connection.commit()
        except self.psycopg2.Error as e:
            if not self._in_transaction:
                self._connection.rollback()
            if getattr(e, 'pgcode', None) in TRANSIENT_PGCODES:
                raise TransientStorageError(f"PostgreSQL contention: {e}") from e
            raise
        finally:
            cursor.close()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock, self._cursor() as cursor:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    created_at TIMESTAMP DEFAULT NOW(),
                    updated_at TIMESTAMP DEFAULT NOW()
                )
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_data
                ON {table} USING gin(data)
            """)
            if not self._in_transaction:
                self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            data_json = json.dumps(data, default=str)
            with self._cursor() as cursor:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_at = EXCLUDED.updated_at
                """, (record_id, data_json, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
                row = cursor.fetchone()
                return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
                return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
                return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                if not filters:
                    cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
                else:
                    cursor.execute(f"""
                        SELECT data FROM {table}
                        WHERE data @> %s::jsonb
                        ORDER BY created_at
                    """, (json.dumps(filters, default=str),))
                return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT COUNT(*) as count FROM {table}")
                return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"DELETE FROM {table}")

    @property
    def _in_transaction(self) -> bool:
        return self._depth > 0

    def begin_transaction(self, lock_key: Optional[str] = None,
                          timeout: Optional[float] = None) -> None:
        """Start a transaction, taking a transaction-scoped advisory lock on lock_key"""
        self._lock.acquire()
        self._depth += 1
        if lock_key is None:
            return
        try:
            with self._cursor() as cursor:
                if timeout is not None:
                    cursor.execute("SET LOCAL lock_timeout = %s", (f"{int(timeout * 1000)}ms",))
                cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (lock_key,))
        except Exception:
            self.rollback()
            raise

    def commit(self) -> None:
        """Commit current transaction"""
        if not self._in_transaction:
            return
        try:
            if self._depth == 1:
                try:
                    self._connection.commit()
                except self.psycopg2.Error as e:
                    self._connection.rollback()
                    if getattr(e, 'pgcode', None) in TRANSIENT_PGCODES:
                        raise TransientStorageError(f"PostgreSQL commit failed: {e}") from e
                    raise
        finally:
            self._depth -= 1
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if not self._in_transaction:
            return
        try:
            if self._depth == 1:
                self._connection.rollback()
        finally:
            self._depth -= 1
            self._lock.release()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, busy_timeout: float = 5.0) -> StorageInterface:
    """
    Create a storage backend from a database URL.

    Supported forms: ``memory://``, ``sqlite://`` (in-memory SQLite),
    ``sqlite:///path/to/file.db``, ``postgresql://...`` / ``postgres://...``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:", busy_timeout=busy_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
