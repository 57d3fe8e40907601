"""
Storage Backend Module

Provides the abstract record store contract and implementations for in-memory
(testing), SQLite and PostgreSQL persistence. Mutable records carry a version
token and are only ever rewritten through a compare-and-swap update keyed on
(id, version). All monetary values stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Set
from decimal import Decimal
from datetime import datetime, timezone
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from contextlib import contextmanager

from .errors import DuplicateKeyError, EditConflictError, StorageError


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

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


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._unique_fields: Dict[str, Set[str]] = {}

    def add_unique_constraint(self, table: str, field: str) -> None:
        """Declare field unique (case-insensitive) within table"""
        self._unique_fields.setdefault(table, set()).add(field)

    def _check_unique(self, table: str, record_id: str, data: Dict[str, Any],
                      rows: List[Dict[str, Any]]) -> None:
        """Raise DuplicateKeyError if data collides with another row on a unique field"""
        for field in self._unique_fields.get(table, ()):
            value = data.get(field)
            if value is None:
                continue
            needle = str(value).lower()
            for row in rows:
                if row.get('id') != record_id and str(row.get(field, '')).lower() == needle:
                    raise DuplicateKeyError(table, field, str(value))

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record unconditionally (append-only and audit rows)"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; DuplicateKeyError on id or unique field collision"""
        pass

    @abstractmethod
    def update(self, table: str, record_id: str, data: Dict[str, Any],
               expected_version: int) -> int:
        """
        Compare-and-swap update.

        Writes data only if the stored version equals expected_version, stores
        version + 1 and returns it. EditConflictError otherwise (including when
        the row no longer exists).
        """
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
        """Start a unit of work (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current unit of work (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current unit of work (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """
        Context manager for all-or-nothing writes.

        Scopes nest: an inner scope joins the outermost one, which alone
        commits or rolls back.
        """
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    A unit of work holds the store lock for its whole scope and restores a
    snapshot of all tables on rollback.
    """

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Round-trip through JSON to detach from caller and mirror persisted form
        return json.loads(json.dumps(data, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = self._copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            rows = self._table(table)
            if record_id in rows:
                raise DuplicateKeyError(table, 'id', record_id)
            self._check_unique(table, record_id, data, list(rows.values()))
            rows[record_id] = self._copy(data)

    def update(self, table: str, record_id: str, data: Dict[str, Any],
               expected_version: int) -> int:
        with self._lock:
            rows = self._table(table)
            current = rows.get(record_id)
            if current is None or current.get('version') != expected_version:
                raise EditConflictError(f"{table}:{record_id} changed since version {expected_version}")
            self._check_unique(table, record_id, data, list(rows.values()))
            new_version = expected_version + 1
            stored = self._copy(data)
            stored['version'] = new_version
            rows[record_id] = stored
            return new_version

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._copy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                self._copy(record) for record in self._table(table).values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._depth == 0:
            self._snapshot = copy.deepcopy(self._data)
        self._depth += 1

    def commit(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                self._snapshot = None
        finally:
            self._lock.release()

    def rollback(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0 and self._snapshot is not None:
                self._data = self._snapshot
                self._snapshot = None
        finally:
            self._lock.release()


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 3.0):
        super().__init__()
        self.db_path = str(db_path)
        # Autocommit mode; units of work issue explicit BEGIN/COMMIT
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: Set[str] = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._execute("PRAGMA journal_mode = WAL")
                self._execute("PRAGMA synchronous = NORMAL")

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise StorageError(f"sqlite error: {e}") from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._tables.add(table)

    def _rows(self, table: str) -> List[Dict[str, Any]]:
        cursor = self._execute(f"SELECT data FROM {table} ORDER BY created_at")
        return [json.loads(row['data']) for row in cursor.fetchall()]

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, version, created_at, updated_at)
                VALUES (?, ?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, json.dumps(data, default=str), data.get('version', 1),
                  record_id, now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            if self._unique_fields.get(table):
                self._check_unique(table, record_id, data, self._rows(table))
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._execute(f"""
                    INSERT INTO {table} (id, data, version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), data.get('version', 1), now, now))
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(table, 'id', record_id) from e

    def update(self, table: str, record_id: str, data: Dict[str, Any],
               expected_version: int) -> int:
        with self._lock:
            self._ensure_table(table)
            if self._unique_fields.get(table):
                self._check_unique(table, record_id, data, self._rows(table))
            new_version = expected_version + 1
            stored = dict(data, version=new_version)
            cursor = self._execute(f"""
                UPDATE {table}
                SET data = ?, version = ?, updated_at = ?
                WHERE id = ? AND version = ?
            """, (json.dumps(stored, default=str), new_version,
                  datetime.now(timezone.utc).isoformat(), record_id, expected_version))
            if cursor.rowcount == 0:
                raise EditConflictError(f"{table}:{record_id} changed since version {expected_version}")
            return new_version

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return self._rows(table)

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            self._ensure_table(table)
            return [record for record in self._rows(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._depth == 0:
            try:
                self._execute("BEGIN IMMEDIATE")
            except StorageError:
                self._lock.release()
                raise
        self._depth += 1

    def commit(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                self._execute("COMMIT")
        finally:
            self._lock.release()

    def rollback(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                self._execute("ROLLBACK")
                # Tables created inside the unit of work are gone again
                self._tables.clear()
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str, timeout: float = 3.0):
        super().__init__()
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install bankcore[postgres]")

        self.connection_string = connection_string
        self.timeout = timeout
        self._connection = None
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: Set[str] = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection with a per-statement deadline"""
        with self._lock:
            try:
                self._connection = self.psycopg2.connect(
                    self.connection_string,
                    cursor_factory=self.extras.RealDictCursor,
                    connect_timeout=max(1, int(self.timeout)),
                    options=f"-c statement_timeout={int(self.timeout * 1000)}"
                )
            except self.psycopg2.Error as e:
                raise StorageError(f"postgresql connect failed: {e}") from e
            self._connection.autocommit = False

    def _run(self, sql: str, params: tuple = (), fetch: Optional[str] = None):
        """Execute one statement, committing unless inside a unit of work"""
        cursor = self._connection.cursor()
        try:
            cursor.execute(sql, params)
            result = None
            if fetch == 'one':
                result = cursor.fetchone()
            elif fetch == 'all':
                result = cursor.fetchall()
            elif fetch == 'rowcount':
                result = cursor.rowcount
            if self._depth == 0:
                self._connection.commit()
            return result
        except self.psycopg2.IntegrityError:
            if self._depth == 0:
                self._connection.rollback()
            raise
        except self.psycopg2.Error as e:
            if self._depth == 0:
                self._connection.rollback()
            raise StorageError(f"postgresql error: {e}") from e
        finally:
            cursor.close()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        self._run(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        self._run(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_data
            ON {table} USING gin(data)
        """)
        self._tables.add(table)

    def _check_unique_sql(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        for field in self._unique_fields.get(table, ()):
            value = data.get(field)
            if value is None:
                continue
            row = self._run(f"""
                SELECT 1 FROM {table}
                WHERE lower(data ->> %s) = lower(%s) AND id <> %s
                LIMIT 1
            """, (field, str(value), record_id), fetch='one')
            if row:
                raise DuplicateKeyError(table, field, str(value))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._run(f"""
                INSERT INTO {table} (id, data, version, created_at, updated_at)
                VALUES (%s, %s, %s, NOW(), NOW())
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    version = EXCLUDED.version,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, json.dumps(data, default=str), data.get('version', 1)))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._check_unique_sql(table, record_id, data)
            try:
                self._run(f"""
                    INSERT INTO {table} (id, data, version, created_at, updated_at)
                    VALUES (%s, %s, %s, NOW(), NOW())
                """, (record_id, json.dumps(data, default=str), data.get('version', 1)))
            except self.psycopg2.IntegrityError as e:
                raise DuplicateKeyError(table, 'id', record_id) from e

    def update(self, table: str, record_id: str, data: Dict[str, Any],
               expected_version: int) -> int:
        with self._lock:
            self._ensure_table(table)
            self._check_unique_sql(table, record_id, data)
            new_version = expected_version + 1
            stored = dict(data, version=new_version)
            rowcount = self._run(f"""
                UPDATE {table}
                SET data = %s, version = version + 1, updated_at = NOW()
                WHERE id = %s AND version = %s
            """, (json.dumps(stored, default=str), record_id, expected_version), fetch='rowcount')
            if rowcount == 0:
                raise EditConflictError(f"{table}:{record_id} changed since version {expected_version}")
            return new_version

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._run(f"SELECT data FROM {table} WHERE id = %s", (record_id,), fetch='one')
            if row:
                return dict(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            rows = self._run(f"SELECT data FROM {table} ORDER BY created_at", fetch='all')
            return [dict(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return self._run(f"DELETE FROM {table} WHERE id = %s", (record_id,), fetch='rowcount') > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            row = self._run(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,), fetch='one')
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._lock:
            self._ensure_table(table)
            if not filters:
                return self.load_all(table)
            rows = self._run(f"""
                SELECT data FROM {table}
                WHERE data @> %s::jsonb
                ORDER BY created_at
            """, (json.dumps(filters, default=str),), fetch='all')
            return [dict(row['data']) for row in rows]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._run(f"SELECT COUNT(*) AS count FROM {table}", fetch='one')['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._run(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        # psycopg2 opens the transaction implicitly on the first statement
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.commit()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.rollback()
                self._tables.clear()
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, timeout: float = 3.0) -> StorageInterface:
    """
    Build the store named by database_url.

    memory://            -> InMemoryStorage
    sqlite:///path.db    -> SQLiteStorage (sqlite:///:memory: for a throwaway db)
    postgresql://...     -> PostgreSQLStorage
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:", timeout=timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, timeout=timeout)
    raise ValueError(f"Unsupported database_url: {database_url}")
