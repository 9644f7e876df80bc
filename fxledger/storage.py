"""
Storage Backend Module

Abstract storage interface and implementations for in-memory (testing),
SQLite (single node persistence) and PostgreSQL (production). Records are
stored as JSON documents; monetary values are stored as Decimal strings.

Every backend supports atomic units of work through ``atomic()``. A unit holds
the backend's lock for its whole duration, and ``load_for_update`` takes a
row lock where the database supports it, so read-check-write sequences on the
same account are serialized.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import StorageError
from .logging_config import get_logger


RecordId = Union[int, str]

logger = get_logger("fxledger.storage")


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def _dumps(data: Dict[str, Any]) -> str:
    return json.dumps(data, default=_json_default)


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: int
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, (Decimal, datetime, Enum)):
                result[key] = _json_default(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._rollback_only = False
        self._owner = None

    @abstractmethod
    def save(self, table: str, record_id: RecordId, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: RecordId) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: RecordId) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: RecordId) -> bool:
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
    def next_id(self, table: str) -> int:
        """Allocate the next integer id for a table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def load_for_update(self, table: str, record_id: RecordId) -> Optional[Dict[str, Any]]:
        """
        Load a record and lock it until the current atomic unit ends.

        Backends that serialize whole units (in-memory, SQLite) only need a
        plain read here.
        """
        return self.load(table, record_id)

    @property
    def in_transaction(self) -> bool:
        """True when the calling thread is inside an atomic unit"""
        return self._tx_depth > 0 and self._owner == threading.get_ident()

    # Hooks implemented by backends with real transactions
    def _begin(self) -> None:
        pass

    def _commit(self) -> None:
        pass

    def _rollback(self) -> None:
        pass

    def begin_transaction(self) -> None:
        """Start (or join) an atomic unit; the calling thread owns the lock until it ends"""
        self._lock.acquire()
        try:
            if self._tx_depth == 0:
                self._rollback_only = False
                self._owner = threading.get_ident()
                self._begin()
            self._tx_depth += 1
        except Exception:
            self._lock.release()
            raise

    def commit(self) -> None:
        """Commit the outermost unit; nested units only unwind"""
        try:
            self._tx_depth -= 1
            if self._tx_depth > 0:
                return
            if self._rollback_only:
                self._rollback()
                raise StorageError("Transaction was marked rollback-only by a nested unit")
            try:
                self._commit()
            except StorageError:
                self._rollback()
                raise
            except Exception as e:
                self._rollback()
                raise StorageError(f"Commit failed: {e}") from e
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Undo every write of the outermost unit"""
        try:
            self._tx_depth -= 1
            if self._tx_depth > 0:
                self._rollback_only = True
                return
            self._rollback()
        finally:
            self._lock.release()

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        self.commit()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        # Prior value of each key written in the open unit, None if it was absent
        self._undo: Optional[Dict[str, Dict[str, Optional[Dict[str, Any]]]]] = None
        self._saved_sequences: Optional[Dict[str, int]] = None

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def _remember(self, table: str, key: str) -> None:
        if self._undo is None:
            return
        changed = self._undo.setdefault(table, {})
        if key not in changed:
            # Stored records are replaced, never mutated, so no copy is needed
            changed[key] = self._data[table].get(key)

    def save(self, table: str, record_id: RecordId, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._remember(table, str(record_id))
            # Round-trip through JSON to prevent external mutation
            self._data[table][str(record_id)] = json.loads(_dumps(data))

    def load(self, table: str, record_id: RecordId) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(str(record_id))
            if record:
                return copy.deepcopy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [copy.deepcopy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: RecordId) -> bool:
        with self._lock:
            self._ensure_table(table)
            self._remember(table, str(record_id))
            return self._data[table].pop(str(record_id), None) is not None

    def exists(self, table: str, record_id: RecordId) -> bool:
        with self._lock:
            self._ensure_table(table)
            return str(record_id) in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                copy.deepcopy(record)
                for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def next_id(self, table: str) -> int:
        with self._lock:
            value = self._sequences.get(table, 0) + 1
            self._sequences[table] = value
            return value

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            for key in list(self._data[table]):
                self._remember(table, key)
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def _begin(self) -> None:
        self._undo = {}
        self._saved_sequences = dict(self._sequences)

    def _commit(self) -> None:
        self._undo = None
        self._saved_sequences = None

    def _rollback(self) -> None:
        if self._undo is None:
            return
        for table, changed in self._undo.items():
            for key, previous in changed.items():
                if previous is None:
                    self._data[table].pop(key, None)
                else:
                    self._data[table][key] = previous
        self._sequences = self._saved_sequences
        self._undo = None
        self._saved_sequences = None


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        # Autocommit mode; atomic units issue BEGIN IMMEDIATE / COMMIT themselves
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._known_tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.execute("PRAGMA busy_timeout = 5000")

        with self._lock:
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS _sequences (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
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
        self._known_tables.add(table)

    def save(self, table: str, record_id: RecordId, data: Dict[str, Any]) -> None:
        """Save a record to SQLite, keeping the original rowid on update"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (str(record_id), _dumps(data), now, now))

    def load(self, table: str, record_id: RecordId) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (str(record_id),)
            ).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY rowid")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: RecordId) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"DELETE FROM {table} WHERE id = ?", (str(record_id),)
            )
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: RecordId) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (str(record_id),)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()['count']

    def next_id(self, table: str) -> int:
        with self._lock:
            self._connection.execute("""
                INSERT INTO _sequences (name, value) VALUES (?, 1)
                ON CONFLICT(name) DO UPDATE SET value = value + 1
            """, (table,))
            row = self._connection.execute(
                "SELECT value FROM _sequences WHERE name = ?", (table,)
            ).fetchone()
            return int(row['value'])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def _begin(self) -> None:
        # Take the write lock up front so no other connection can interleave
        self._connection.execute("BEGIN IMMEDIATE")

    def _commit(self) -> None:
        self._connection.execute("COMMIT")

    def _rollback(self) -> None:
        try:
            self._connection.execute("ROLLBACK")
        except sqlite3.OperationalError as e:
            logger.warning(f"SQLite rollback without active transaction: {e}")
        # Tables created inside the unit are gone again
        self._known_tables.clear()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with row-level locking"""

    def __init__(self, connection_string: str):
        super().__init__()
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._known_tables = set()
        self._connect()

        with self._lock:
            cursor = self._execute("""
                CREATE TABLE IF NOT EXISTS _sequences (
                    name TEXT PRIMARY KEY,
                    value BIGINT NOT NULL
                )
            """)
            cursor.close()
            self._connection.commit()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            if self._connection:
                try:
                    self._connection.close()
                except self.psycopg2.Error as e:
                    logger.warning(f"Error closing stale PostgreSQL connection: {e}")

            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # Transactions handled manually

    def _execute(self, sql: str, params: tuple = ()):
        cursor = self._connection.cursor()
        cursor.execute(sql, params)
        return cursor

    def _finish(self) -> None:
        """Commit immediately when called outside an atomic unit"""
        if not self.in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._known_tables:
            return
        cursor = self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                seq BIGSERIAL,
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        cursor.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_data ON {table} USING gin(data)")
        cursor.close()
        self._known_tables.add(table)

    def save(self, table: str, record_id: RecordId, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            cursor = self._execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (str(record_id), _dumps(data), now, now))
            cursor.close()
            self._finish()

    def _select_one(self, table: str, record_id: RecordId, lock: bool) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            suffix = " FOR UPDATE" if lock else ""
            cursor = self._execute(
                f"SELECT data FROM {table} WHERE id = %s{suffix}", (str(record_id),)
            )
            try:
                row = cursor.fetchone()
                return dict(row['data']) if row else None
            finally:
                cursor.close()

    def load(self, table: str, record_id: RecordId) -> Optional[Dict[str, Any]]:
        return self._select_one(table, record_id, lock=False)

    def load_for_update(self, table: str, record_id: RecordId) -> Optional[Dict[str, Any]]:
        """SELECT ... FOR UPDATE; the row stays locked until commit/rollback"""
        return self._select_one(table, record_id, lock=self.in_transaction)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.find(table, {})

    def delete(self, table: str, record_id: RecordId) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"DELETE FROM {table} WHERE id = %s", (str(record_id),))
            deleted = cursor.rowcount > 0
            cursor.close()
            self._finish()
            return deleted

    def exists(self, table: str, record_id: RecordId) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (str(record_id),))
            try:
                return cursor.fetchone() is not None
            finally:
                cursor.close()

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._lock:
            self._ensure_table(table)
            if filters:
                cursor = self._execute(
                    f"SELECT data FROM {table} WHERE data @> %s::jsonb ORDER BY seq",
                    (_dumps(filters),)
                )
            else:
                cursor = self._execute(f"SELECT data FROM {table} ORDER BY seq")
            try:
                return [dict(row['data']) for row in cursor.fetchall()]
            finally:
                cursor.close()

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT COUNT(*) AS count FROM {table}")
            try:
                return cursor.fetchone()['count']
            finally:
                cursor.close()

    def next_id(self, table: str) -> int:
        with self._lock:
            cursor = self._execute("""
                INSERT INTO _sequences (name, value) VALUES (%s, 1)
                ON CONFLICT (name) DO UPDATE SET value = _sequences.value + 1
                RETURNING value
            """, (table,))
            value = int(cursor.fetchone()['value'])
            cursor.close()
            self._finish()
            return value

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"DELETE FROM {table}")
            cursor.close()
            self._finish()

    def _begin(self) -> None:
        # psycopg2 opens the transaction implicitly on the first statement
        pass

    def _commit(self) -> None:
        self._connection.commit()

    def _rollback(self) -> None:
        self._connection.rollback()
        self._known_tables.clear()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                try:
                    self._connection.close()
                except self.psycopg2.Error as e:
                    logger.warning(f"Error closing PostgreSQL connection: {e}")
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Select a storage backend from a database URL.

    Args:
        database_url: ``memory://``, ``sqlite:///path/to.db`` (or ``sqlite://``
            for an in-memory SQLite database) or ``postgresql://...``

    Returns:
        Storage backend instance
    """
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    raise ValueError(f"Unsupported database URL: {database_url}")
