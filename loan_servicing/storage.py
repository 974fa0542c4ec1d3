"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite (single host) and PostgreSQL (shared, multi-worker). Records are JSON
documents; monetary values are stored as Decimal strings.

Uniqueness of a record's ``unique_key`` is enforced by the backend itself
(a UNIQUE column), never by a look-up-then-insert sequence in application code.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
import copy
import json
import re
import sqlite3
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import ConfigurationError


_TABLE_NAME = re.compile(r"^[a-z_][a-z0-9_]*$")


def to_storable(value: Any) -> Any:
    """Convert Decimal, date/datetime and Enum values to JSON-safe primitives"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storable(v) for v in value]
    return value


class DuplicateRecordError(Exception):
    """Insert violated a primary key or unique key constraint"""

    def __init__(self, table: str, key: str):
        super().__init__(f"Duplicate key {key!r} in {table}")
        self.table = table
        self.key = key


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return to_storable(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        # Convert ISO strings back to datetime objects
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any],
               unique_key: Optional[str] = None) -> None:
        """
        Insert a new record; never replaces.

        Raises:
            DuplicateRecordError: record_id or unique_key already present
        """
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
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
    def find_by_unique_key(self, table: str, unique_key: str) -> Optional[Dict[str, Any]]:
        """Load the record holding unique_key"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record, locking it for the rest of the current transaction"""
        return self.load(table, record_id)

    @abstractmethod
    def load_latest(self, table: str, lock: bool = False) -> Optional[Dict[str, Any]]:
        """
        Load the most recently inserted record.

        With lock=True, other connections calling load_latest(lock=True) on the
        same table block until the current transaction ends. Call inside atomic().
        """
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

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


def _check_table(table: str) -> None:
    if not _TABLE_NAME.match(table):
        raise ValueError(f"Invalid table name: {table!r}")


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique: Dict[str, Dict[str, str]] = {}
        self._snapshot = None
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            _check_table(table)
            self._data[table] = {}
            self._unique[table] = {}

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = self._copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any],
               unique_key: Optional[str] = None) -> None:
        """Insert a record to memory, enforcing id and unique_key uniqueness"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise DuplicateRecordError(table, record_id)
            if unique_key is not None and unique_key in self._unique[table]:
                raise DuplicateRecordError(table, unique_key)
            self._data[table][record_id] = self._copy(data)
            if unique_key is not None:
                self._unique[table][unique_key] = record_id

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def load_latest(self, table: str, lock: bool = False) -> Optional[Dict[str, Any]]:
        """Last inserted record; atomic() already serializes writers"""
        with self._lock:
            self._ensure_table(table)
            if not self._data[table]:
                return None
            return self._copy(next(reversed(self._data[table].values())))

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
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(self._copy(record))
            return results

    def find_by_unique_key(self, table: str, unique_key: str) -> Optional[Dict[str, Any]]:
        """Find the record holding unique_key"""
        with self._lock:
            self._ensure_table(table)
            record_id = self._unique[table].get(unique_key)
            if record_id is None:
                return None
            return self.load(table, record_id)

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        """Snapshot current state so a rollback can restore it"""
        with self._lock:
            if self._snapshot is None:
                self._snapshot = (copy.deepcopy(self._data), copy.deepcopy(self._unique))

    def commit(self) -> None:
        """Discard the snapshot"""
        with self._lock:
            self._snapshot = None

    def rollback(self) -> None:
        """Restore the snapshot taken at begin_transaction"""
        with self._lock:
            if self._snapshot is not None:
                self._data, self._unique = self._snapshot
                self._snapshot = None

    @contextmanager
    def atomic(self):
        """Atomic blocks are serialized; the lock is held until commit or rollback"""
        with self._lock:
            with super().atomic():
                yield


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level='DEFERRED', timeout=30
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        _check_table(table)
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                unique_key TEXT UNIQUE,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        # Cache only once committed; a rollback would undo the CREATE
        if not self._in_transaction:
            self._connection.commit()
            self._tables.add(table)

    def _autocommit(self) -> None:
        # Only commit if not in transaction
        if not self._in_transaction:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Upsert a record, keeping its original created_at and unique_key"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))
            self._autocommit()

    def insert(self, table: str, record_id: str, data: Dict[str, Any],
               unique_key: Optional[str] = None) -> None:
        """Insert a record; the UNIQUE column rejects a second unique_key"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, unique_key, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), unique_key, now, now))
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecordError(table, unique_key or record_id) from exc
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            )
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} ORDER BY created_at, rowid"
            )
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def load_latest(self, table: str, lock: bool = False) -> Optional[Dict[str, Any]]:
        """Newest record; inside atomic() BEGIN IMMEDIATE already holds the write lock"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} ORDER BY created_at DESC, rowid DESC LIMIT 1"
            )
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [
            record for record in self.load_all(table)
            if all(key in record and record[key] == value for key, value in filters.items())
        ]

    def find_by_unique_key(self, table: str, unique_key: str) -> Optional[Dict[str, Any]]:
        """Find the record holding unique_key"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} WHERE unique_key = ?", (unique_key,)
            )
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()['count']

    def begin_transaction(self) -> None:
        """Start a write transaction, taking the database write lock up front"""
        with self._lock:
            if not self._in_transaction:
                if self._connection.in_transaction:
                    self._connection.commit()
                self._connection.execute("BEGIN IMMEDIATE")
                self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False

    @contextmanager
    def atomic(self):
        """The connection is shared between threads; hold it for the whole block"""
        with self._lock:
            with super().atomic():
                yield

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
        self._in_transaction = False
        self._tables = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually

    def _autocommit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        _check_table(table)
        with self._connection.cursor() as cursor:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    unique_key TEXT UNIQUE,
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
        if not self._in_transaction:
            self._connection.commit()
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            with self._connection.cursor() as cursor:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_at = EXCLUDED.updated_at
                """, (record_id, json.dumps(data, default=str), now, now))
            self._autocommit()

    def insert(self, table: str, record_id: str, data: Dict[str, Any],
               unique_key: Optional[str] = None) -> None:
        """Plain INSERT; the UNIQUE column arbitrates concurrent writers"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            try:
                with self._connection.cursor() as cursor:
                    cursor.execute(f"""
                        INSERT INTO {table} (id, data, unique_key, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, %s)
                    """, (record_id, json.dumps(data, default=str), unique_key, now, now))
            except self.psycopg2.IntegrityError as exc:
                if not self._in_transaction:
                    self._connection.rollback()
                raise DuplicateRecordError(table, unique_key or record_id) from exc
            self._autocommit()

    def _fetch_one(self, query: str, params: tuple) -> Optional[Dict[str, Any]]:
        with self._connection.cursor() as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
            if row:
                return dict(row['data'])
            return None

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            return self._fetch_one(f"SELECT data FROM {table} WHERE id = %s", (record_id,))

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Row-lock the record until the surrounding transaction ends"""
        with self._lock:
            self._ensure_table(table)
            return self._fetch_one(
                f"SELECT data FROM {table} WHERE id = %s FOR UPDATE", (record_id,)
            )

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            with self._connection.cursor() as cursor:
                cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
                return [dict(row['data']) for row in cursor.fetchall()]

    def load_latest(self, table: str, lock: bool = False) -> Optional[Dict[str, Any]]:
        """Newest record; lock=True takes a transaction-scoped advisory lock on the table"""
        with self._lock:
            self._ensure_table(table)
            if lock:
                with self._connection.cursor() as cursor:
                    cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (table,))
            return self._fetch_one(
                f"SELECT data FROM {table} ORDER BY created_at DESC, id DESC LIMIT 1", ()
            )

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            with self._connection.cursor() as cursor:
                cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
                return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._lock:
            self._ensure_table(table)
            with self._connection.cursor() as cursor:
                cursor.execute(f"""
                    SELECT data FROM {table}
                    WHERE data @> %s::jsonb
                    ORDER BY created_at
                """, (json.dumps(filters, default=str),))
                return [dict(row['data']) for row in cursor.fetchall()]

    def find_by_unique_key(self, table: str, unique_key: str) -> Optional[Dict[str, Any]]:
        """Find the record holding unique_key"""
        with self._lock:
            self._ensure_table(table)
            return self._fetch_one(f"SELECT data FROM {table} WHERE unique_key = %s", (unique_key,))

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            with self._connection.cursor() as cursor:
                cursor.execute(f"SELECT COUNT(*) AS count FROM {table}")
                return cursor.fetchone()['count']

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            if not self._in_transaction:
                # PostgreSQL transactions start automatically
                self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False

    @contextmanager
    def atomic(self):
        """One connection per process; hold it for the whole block"""
        with self._lock:
            with super().atomic():
                yield

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Select a storage backend from a database URL.

    memory://             -> InMemoryStorage
    sqlite:///path.db     -> SQLiteStorage (sqlite:// alone is an in-memory database)
    postgresql://...      -> PostgreSQLStorage
    """
    if database_url == "memory://":
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ConfigurationError(f"Unsupported database URL scheme: {database_url.split(':', 1)[0]}")
