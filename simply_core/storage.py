"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). All monetary values are stored as Decimal
strings. The atomic() context manager is the unit of work: every write inside
it commits together or not at all, and units on the same backend serialize.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


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


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp written by to_storable"""
    if value is None:
        return None
    return datetime.fromisoformat(value)


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parse an ISO date written by to_storable"""
    if value is None:
        return None
    return date.fromisoformat(value)


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {key: to_storable(value) for key, value in asdict(self).items()}


class StorageConstraintError(ValueError):
    """A relative update would push a numeric field below its floor"""
    
    def __init__(self, table: str, record_id: str, field: str, current: Decimal, delta: Decimal):
        super().__init__(
            f"Update of {table}.{field} for {record_id} by {delta} would go below the allowed minimum"
        )
        self.table = table
        self.record_id = record_id
        self.field = field
        self.current = current
        self.delta = delta


class StorageInterface(ABC):
    """Abstract interface for storage backends"""
    
    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0
    
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
    def increment(self, table: str, record_id: str, field: str, delta: Decimal,
                  minimum: Optional[Decimal] = None) -> Decimal:
        """
        Add ``delta`` to a Decimal field inside the storage isolation boundary.
        
        Returns:
            The new field value
            
        Raises:
            KeyError: If the record does not exist
            StorageConstraintError: If the result would fall below ``minimum``
        """
        pass
    
    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass
    
    def begin_transaction(self) -> None:
        """Start a storage transaction"""
        pass
    
    def commit(self) -> None:
        """Commit current transaction"""
        pass
    
    def rollback(self) -> None:
        """Rollback current transaction"""
        pass
    
    @property
    def in_transaction(self) -> bool:
        """True while the calling code runs inside atomic()"""
        return self._depth > 0
    
    @contextmanager
    def atomic(self):
        """
        Unit of work. Nested calls join the outermost unit; the backend lock
        is held until the outermost unit commits or rolls back.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return
            
            self.begin_transaction()
            self._depth = 1
            try:
                yield
            except BaseException:
                self._depth = 0
                self.rollback()
                raise
            self._depth = 0
            self.commit()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""
    
    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None
    
    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}
    
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
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
                if _matches(record, filters):
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
            self._data[table] = {}
    
    def increment(self, table: str, record_id: str, field: str, delta: Decimal,
                  minimum: Optional[Decimal] = None) -> Decimal:
        """Relative update of a Decimal field under the storage lock"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None:
                raise KeyError(f"{table}/{record_id} not found")
            
            current = Decimal(record.get(field) or '0')
            new_value = current + delta
            if minimum is not None and new_value < minimum:
                raise StorageConstraintError(table, record_id, field, current, delta)
            
            record[field] = str(new_value)
            record['updated_at'] = datetime.now(timezone.utc).isoformat()
            return new_value
    
    def begin_transaction(self) -> None:
        """Take a snapshot to restore on rollback"""
        self._snapshot = json.loads(json.dumps(self._data))
    
    def commit(self) -> None:
        """Discard the rollback snapshot"""
        self._snapshot = None
    
    def rollback(self) -> None:
        """Restore the snapshot taken when the unit began"""
        if self._snapshot is not None:
            self._data = self._snapshot
            self._snapshot = None
    
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
        super().__init__()
        self.db_path = str(db_path)
        # Autocommit mode; units of work issue BEGIN IMMEDIATE / COMMIT / ROLLBACK explicitly
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._tables: set = set()
        
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.execute("PRAGMA busy_timeout = 5000")
    
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
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at 
            ON {table}(created_at)
        """)
        self._tables.add(table)
    
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)
            
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)
            
            self._connection.execute(f"""
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
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
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
        return [record for record in self.load_all(table) if _matches(record, filters)]
    
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
    
    def increment(self, table: str, record_id: str, field: str, delta: Decimal,
                  minimum: Optional[Decimal] = None) -> Decimal:
        """Relative update of a Decimal field inside an IMMEDIATE transaction"""
        with self.atomic():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row is None:
                raise KeyError(f"{table}/{record_id} not found")
            
            record = json.loads(row['data'])
            current = Decimal(record.get(field) or '0')
            new_value = current + delta
            if minimum is not None and new_value < minimum:
                raise StorageConstraintError(table, record_id, field, current, delta)
            
            now = datetime.now(timezone.utc).isoformat()
            record[field] = str(new_value)
            record['updated_at'] = now
            self._connection.execute(f"""
                UPDATE {table} SET data = ?, updated_at = ? WHERE id = ?
            """, (json.dumps(record), now, record_id))
            return new_value
    
    def begin_transaction(self) -> None:
        """Start a write transaction, taking the database write lock up front"""
        self._connection.execute("BEGIN IMMEDIATE")
    
    def commit(self) -> None:
        """Commit current transaction"""
        self._connection.execute("COMMIT")
    
    def rollback(self) -> None:
        """Rollback current transaction"""
        self._connection.execute("ROLLBACK")
        # Tables created inside the rolled-back unit are gone again
        self._tables.clear()
    
    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.
    
    Supported:
        memory://                 in-process storage
        sqlite:///path/to/file.db SQLite file
        sqlite:///:memory:        SQLite in memory
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):])
    raise ValueError(f"Unsupported database URL: {database_url}")
