"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Both backends support nested ``atomic()`` scopes. Only the outermost scope
commits; a failure at any depth rolls the whole transaction back.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Set, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import PersistenceError


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
        # Convert Decimal objects to strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        # Convert ISO strings back to datetime objects
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
        # True == 1 in Python, but not in stored JSON
        if isinstance(record[key], bool) != isinstance(value, bool):
            return False
    return True


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    # JSON round trip doubles as a deep copy and a serializability check
    return json.loads(json.dumps(data, default=str))


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

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @property
    def in_transaction(self) -> bool:
        """Whether the calling thread is inside an atomic scope"""
        return False

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()


class _TransactionBuffer:
    """Per-thread pending writes for InMemoryStorage"""

    def __init__(self):
        self.depth = 0
        self.rollback_only = False
        # table -> record_id -> data, None marks a pending delete
        self.writes: Dict[str, Dict[str, Optional[Dict[str, Any]]]] = {}
        self.cleared: Set[str] = set()

    def reset(self) -> None:
        self.writes = {}
        self.cleared = set()
        self.rollback_only = False


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Writes made inside ``atomic()`` are buffered per thread and become
    visible to other threads only when the outermost scope commits.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    def _buffer(self) -> Optional[_TransactionBuffer]:
        buffer = getattr(self._local, 'buffer', None)
        if buffer is not None and buffer.depth > 0:
            return buffer
        return None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _visible(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with this thread's pending writes"""
        with self._lock:
            self._ensure_table(table)
            buffer = self._buffer()
            if buffer is None:
                return dict(self._data[table])
            rows = {} if table in buffer.cleared else dict(self._data[table])
        for record_id, data in buffer.writes.get(table, {}).items():
            if data is None:
                rows.pop(record_id, None)
            else:
                rows[record_id] = data
        return rows

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        # Deep copy to prevent external mutation
        record = _copy(data)
        buffer = self._buffer()
        if buffer is not None:
            buffer.writes.setdefault(table, {})[record_id] = record
            return
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = record

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._visible(table).get(record_id)
        if record:
            return _copy(record)
        return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [_copy(record) for record in self._visible(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        buffer = self._buffer()
        if buffer is not None:
            existed = record_id in self._visible(table)
            buffer.writes.setdefault(table, {})[record_id] = None
            return existed
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return record_id in self._visible(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [
            _copy(record) for record in self._visible(table).values()
            if _matches(record, filters)
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        if self._buffer() is None:
            with self._lock:
                return len(self._data.get(table, {}))
        return len(self._visible(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        buffer = self._buffer()
        if buffer is not None:
            buffer.cleared.add(table)
            buffer.writes[table] = {}
            return
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Open (or nest into) this thread's transaction"""
        buffer = getattr(self._local, 'buffer', None)
        if buffer is None:
            buffer = _TransactionBuffer()
            self._local.buffer = buffer
        buffer.depth += 1

    def commit(self) -> None:
        """Apply buffered writes when the outermost scope commits"""
        buffer = self._buffer()
        if buffer is None:
            return
        buffer.depth -= 1
        if buffer.depth > 0:
            return
        if buffer.rollback_only:
            buffer.reset()
            raise PersistenceError("Transaction was rolled back by a nested scope")
        with self._lock:
            for table in buffer.cleared:
                self._data[table] = {}
            for table, rows in buffer.writes.items():
                self._ensure_table(table)
                for record_id, data in rows.items():
                    if data is None:
                        self._data[table].pop(record_id, None)
                    else:
                        self._data[table][record_id] = data
        buffer.reset()

    def rollback(self) -> None:
        """Discard this thread's buffered writes"""
        buffer = self._buffer()
        if buffer is None:
            return
        buffer.depth -= 1
        buffer.writes = {}
        buffer.cleared = set()
        if buffer.depth > 0:
            buffer.rollback_only = True
        else:
            buffer.reset()

    @property
    def in_transaction(self) -> bool:
        return self._buffer() is not None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all committed data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data, default=str))


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    The connection runs in autocommit mode and transactions are opened with
    an explicit ``BEGIN IMMEDIATE``. The backend lock is held from begin to
    commit/rollback, so one thread's transaction excludes every other
    thread's reads and writes until it finishes.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._depth = 0
        self._rollback_only = False
        self._tables: Set[str] = set()
        self._tables_in_tx: Set[str] = set()
        try:
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None
            )
            self._connection.row_factory = sqlite3.Row

            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open SQLite database {self.db_path}: {e}") from e

    @contextmanager
    def _guard(self, operation: str):
        """Hold the backend lock and surface sqlite3 failures as PersistenceError"""
        with self._lock:
            if self._connection is None:
                raise PersistenceError("Storage is closed")
            try:
                yield self._connection
            except sqlite3.Error as e:
                raise PersistenceError(f"SQLite {operation} failed: {e}") from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        # Create index on timestamps for better query performance
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._tables.add(table)
        if self._depth > 0:
            self._tables_in_tx.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        data_json = json.dumps(data, default=str)
        with self._guard("save") as conn:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            conn.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._guard("load") as conn:
            self._ensure_table(table)
            row = conn.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        with self._guard("load_all") as conn:
            self._ensure_table(table)
            cursor = conn.execute(f"SELECT data FROM {table} ORDER BY rowid")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._guard("delete") as conn:
            self._ensure_table(table)
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._guard("exists") as conn:
            self._ensure_table(table)
            cursor = conn.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._guard("find") as conn:
            self._ensure_table(table)
            if not filters:
                cursor = conn.execute(f"SELECT data FROM {table} ORDER BY rowid")
            else:
                conditions = []
                params: List[Any] = []
                for key, value in filters.items():
                    conditions.append("json_extract(data, ?) IS ?")
                    params.extend([f"$.{key}", value])
                where_clause = " AND ".join(conditions)
                cursor = conn.execute(
                    f"SELECT data FROM {table} WHERE {where_clause} ORDER BY rowid",
                    params,
                )
            # json_extract compares loosely (1 == true), so re-check exactly
            records = [json.loads(row['data']) for row in cursor.fetchall()]
            return [record for record in records if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._guard("count") as conn:
            self._ensure_table(table)
            cursor = conn.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._guard("clear_table") as conn:
            self._ensure_table(table)
            conn.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a database transaction, acquiring the backend lock"""
        self._lock.acquire()
        try:
            if self._depth == 0:
                with self._guard("begin"):
                    self._connection.execute("BEGIN IMMEDIATE")
                self._rollback_only = False
            self._depth += 1
        except BaseException:
            self._lock.release()
            raise

    def commit(self) -> None:
        """Commit current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth > 0:
                return
            with self._guard("commit") as conn:
                if self._rollback_only:
                    conn.execute("ROLLBACK")
                    self._forget_tx_tables()
                    raise PersistenceError("Transaction was rolled back by a nested scope")
                try:
                    conn.execute("COMMIT")
                except sqlite3.Error:
                    conn.execute("ROLLBACK")
                    self._forget_tx_tables()
                    raise
                self._tables_in_tx.clear()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth > 0:
                self._rollback_only = True
                return
            with self._guard("rollback") as conn:
                conn.execute("ROLLBACK")
                self._forget_tx_tables()
        finally:
            self._lock.release()

    def _forget_tx_tables(self) -> None:
        self._tables -= self._tables_in_tx
        self._tables_in_tx.clear()

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL

    Supported forms:
        memory://                 in-process InMemoryStorage
        sqlite://                 SQLite in-memory database
        sqlite:///path/to/file.db SQLite file
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
