"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Units of work are expressed with ``storage.atomic()``. Blocks may nest; only the
outermost block commits, and an exception anywhere inside rolls back the whole
unit. A unit of work holds the backend lock for its whole duration, so units
never interleave.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, fields
from pathlib import Path
from contextlib import contextmanager

from .currency import Money


def serialize_value(value: Any) -> Any:
    """Convert a domain value into its JSON-safe storage form"""
    if isinstance(value, Money):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [serialize_value(v) for v in value]
    if hasattr(value, '__dataclass_fields__'):
        return {f.name: serialize_value(getattr(value, f.name)) for f in fields(value)}
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: serialize_value(getattr(self, f.name)) for f in fields(self)}

    @staticmethod
    def parse_datetime(value: Optional[str]) -> Optional[datetime]:
        if value is None or isinstance(value, datetime):
            return value
        return datetime.fromisoformat(value)

    @staticmethod
    def parse_date(value: Optional[str]) -> Optional[date]:
        if value is None or isinstance(value, date):
            return value
        return date.fromisoformat(value)

    @staticmethod
    def parse_money(value: Optional[Dict[str, Any]]) -> Optional[Money]:
        if value is None or isinstance(value, Money):
            return value
        return Money.from_dict(value)


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

    def load_last(self, table: str) -> Optional[Dict[str, Any]]:
        """Load the most recently inserted record of a table"""
        records = self.load_all(table)
        return records[-1] if records else None

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
    def transaction_depth(self) -> int:
        """
        How many ``atomic()`` blocks the calling thread is inside

        Only meaningful from inside a unit of work, where the backend lock
        is held; 1 means the caller's block is the outermost one.
        """
        return 0

    @property
    def in_transaction(self) -> bool:
        return self.transaction_depth > 0

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
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
    In-memory storage implementation for testing

    A unit of work keeps an undo journal instead of copying the store: the
    first write to a row records the row's prior value, and the first delete
    or clear in a table records the table as it was when the unit began.
    Stored rows are replaced on save, never mutated, so journal entries can
    share them.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._rollback_only = False
        self._undo_rows: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
        self._undo_tables: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _remember_row(self, table: str, record_id: str) -> None:
        """Journal the row's value from before the unit, once per unit"""
        if self._depth == 0 or table in self._undo_tables:
            return
        key = (table, record_id)
        if key not in self._undo_rows:
            self._undo_rows[key] = self._data[table].get(record_id)

    def _remember_table(self, table: str) -> None:
        """Journal the whole table as it was when the unit began, once per unit"""
        if self._depth == 0 or table in self._undo_tables:
            return
        before = dict(self._data[table])
        for (row_table, record_id), prior in self._undo_rows.items():
            if row_table != table:
                continue
            if prior is None:
                before.pop(record_id, None)
            else:
                before[record_id] = prior
        self._undo_tables[table] = before

    def _undo(self) -> None:
        for table, rows in self._undo_tables.items():
            self._data[table] = rows
        for (table, record_id), prior in self._undo_rows.items():
            if table in self._undo_tables:
                continue
            rows = self._data.setdefault(table, {})
            if prior is None:
                rows.pop(record_id, None)
            else:
                rows[record_id] = prior

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._remember_row(table, record_id)
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
        """Load all records from a table, in insertion order"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def load_last(self, table: str) -> Optional[Dict[str, Any]]:
        """Load the most recently inserted record of a table"""
        with self._lock:
            self._ensure_table(table)
            record = next(reversed(self._data[table].values()), None)
            if record is None:
                return None
            return json.loads(json.dumps(record))

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._remember_table(table)
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
            return [
                json.loads(json.dumps(record))
                for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._remember_table(table)
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Start (or join) a unit of work"""
        self._lock.acquire()
        if self._depth == 0:
            self._rollback_only = False
        self._depth += 1

    def commit(self) -> None:
        """Leave a unit of work; the outermost block keeps or discards changes"""
        try:
            self._depth -= 1
            if self._depth == 0:
                if self._rollback_only:
                    self._undo()
                self._undo_rows = {}
                self._undo_tables = {}
                self._rollback_only = False
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Mark the unit of work failed; the outermost block replays the undo journal"""
        self._rollback_only = True
        self.commit()

    @property
    def transaction_depth(self) -> int:
        return self._depth

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data, default=str))


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._rollback_only = False
        self._tables = set()

        # WAL mode for better concurrent readers
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _commit_unless_in_transaction(self) -> None:
        if self._depth == 0:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._commit_unless_in_transaction()
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite (insert or update in place)"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))

            self._commit_unless_in_transaction()

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
        """Load all records from a table, in insertion order"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY seq
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def load_last(self, table: str) -> Optional[Dict[str, Any]]:
        """Load the most recently inserted record of a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY seq DESC LIMIT 1
            """)
            row = cursor.fetchone()
            return json.loads(row['data']) if row else None

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._commit_unless_in_transaction()
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
                SELECT data FROM {table} ORDER BY seq
            """)
            results = []
            for row in cursor.fetchall():
                record = json.loads(row['data'])
                if _matches(record, filters):
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
            self._connection.execute(f"DELETE FROM {table}")
            self._commit_unless_in_transaction()

    def begin_transaction(self) -> None:
        """Start (or join) a database transaction"""
        # isolation_level='DEFERRED' opens the transaction on the first write
        self._lock.acquire()
        if self._depth == 0:
            self._rollback_only = False
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction once the outermost block completes"""
        try:
            self._depth -= 1
            if self._depth == 0:
                if self._rollback_only:
                    self._connection.rollback()
                    # tables created inside the unit are gone too
                    self._tables.clear()
                else:
                    self._connection.commit()
                self._rollback_only = False
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        self._rollback_only = True
        self.commit()

    @property
    def transaction_depth(self) -> int:
        return self._depth

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory://`` gives InMemoryStorage; ``sqlite:///path/to.db`` (or
    ``sqlite://:memory:``) gives SQLiteStorage.
    """
    if database_url in ("memory://", "memory"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):])
    if database_url.startswith("sqlite://"):
        return SQLiteStorage(database_url[len("sqlite://"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
