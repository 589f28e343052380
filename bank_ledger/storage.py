"""
Storage Backend Module

Abstract storage interface with in-memory (testing) and SQLite (persistence)
implementations. Every backend exposes ``atomic()``, the unit of work that
wraps each ledger mutation together with its transaction append: either
both writes persist or neither does.

Rows are JSON documents. Monetary values are stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Iterable, Union
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
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""

    @abstractmethod
    def find_one(self, table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """First record matching filters, or None"""

    @abstractmethod
    def latest(self, table: str, field: str,
               filters: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Matching record with the highest numeric ``field``, or None"""

    def create_index(self, table: str, field: str) -> None:
        """Declare ``field`` as a frequent lookup key; backends without indexes ignore it"""

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start a unit of work"""

    @abstractmethod
    def commit(self) -> None:
        """Commit the current unit of work"""

    @abstractmethod
    def rollback(self) -> None:
        """Discard the current unit of work"""

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Re-entrant: nested blocks join the outermost unit of work, which alone
        commits or rolls back. The storage lock is held for the whole unit so
        concurrent writers are serialized and readers never see half of it.
        """
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self.begin_transaction()
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if outermost:
                    self.rollback()
                raise
            else:
                self._depth -= 1
                if outermost:
                    try:
                        self.commit()
                    except BaseException:
                        self.rollback()
                        raise


def _copy(data: Any) -> Any:
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [_copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [_copy(record) for record in self._data[table].values() if _matches(record, filters)]

    def find_one(self, table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            for record in self._data[table].values():
                if _matches(record, filters):
                    return _copy(record)
            return None

    def latest(self, table: str, field: str,
               filters: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            candidates = [r for r in self._data[table].values() if _matches(r, filters or {})]
            if not candidates:
                return None
            return _copy(max(candidates, key=lambda r: r.get(field, 0)))

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        self._snapshot = _copy(self._data)

    def commit(self) -> None:
        self._snapshot = None

    def rollback(self) -> None:
        if self._snapshot is not None:
            self._data = self._snapshot
            self._snapshot = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""


def _json_path(field: str) -> str:
    # Inlined rather than bound so the planner can match expression indexes
    if not field.isidentifier():
        raise ValueError(f"Invalid field name: {field}")
    return f"json_extract(data, '$.{field}')"


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    ``history_tables`` named at construction are created in a separately
    attached database file when ``history_path`` is given, so the
    append-only history can grow without touching entity lookups. Both
    files share one connection and therefore one transaction.
    """

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        history_path: Optional[Union[str, Path]] = None,
        history_tables: Iterable[str] = (),
        timeout: float = 5.0
    ):
        super().__init__()
        self.db_path = str(db_path)
        self.history_path = str(history_path) if history_path else None
        self.history_tables = set(history_tables)
        self._known_tables: set = set()
        self._indexed_fields: Dict[str, set] = {}

        # isolation_level=None: transactions are issued explicitly by begin/commit/rollback
        self._connection = sqlite3.connect(
            self.db_path, timeout=timeout, check_same_thread=False, isolation_level=None
        )
        self._connection.row_factory = sqlite3.Row

        if self.history_path:
            self._execute("ATTACH DATABASE ? AS history", (self.history_path,))
        elif self.db_path != ":memory:":
            # WAL only when a single file backs the whole ledger; commits spanning
            # attached databases are only atomic with a rollback journal.
            self._execute("PRAGMA journal_mode = WAL")
            self._execute("PRAGMA synchronous = NORMAL")

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.OperationalError as e:
            retryable = "locked" in str(e) or "busy" in str(e)
            raise PersistenceError(f"SQLite operation failed: {e}", retryable=retryable) from e
        except sqlite3.DatabaseError as e:
            raise PersistenceError(f"SQLite operation failed: {e}") from e

    def _qualified(self, table: str) -> str:
        if self.history_path and table in self.history_tables:
            return f"history.{table}"
        return table

    def _ensure_table(self, table: str) -> str:
        name = self._qualified(table)
        if table in self._known_tables:
            return name
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {name} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        index_prefix = "history." if name.startswith("history.") else ""
        self._execute(f"""
            CREATE INDEX IF NOT EXISTS {index_prefix}idx_{table}_created_at
            ON {table}(created_at)
        """)
        for field in sorted(self._indexed_fields.get(table, ())):
            self._execute(f"""
                CREATE INDEX IF NOT EXISTS {index_prefix}idx_{table}_{field}
                ON {table}({_json_path(field)})
            """)
        self._known_tables.add(table)
        return name

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            name = self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._execute(f"""
                INSERT OR REPLACE INTO {name} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {name} WHERE id = ?), ?),
                    ?)
            """, (record_id, json.dumps(data, default=str), record_id, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            name = self._ensure_table(table)
            row = self._execute(f"SELECT data FROM {name} WHERE id = ?", (record_id,)).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            name = self._ensure_table(table)
            cursor = self._execute(f"SELECT data FROM {name} ORDER BY created_at, rowid")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            name = self._ensure_table(table)
            cursor = self._execute(f"DELETE FROM {name} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            name = self._ensure_table(table)
            row = self._execute(f"SELECT 1 FROM {name} WHERE id = ? LIMIT 1", (record_id,)).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (JSON key matching on top-level fields)"""
        with self._lock:
            name = self._ensure_table(table)
            where, params, _ = self._where(filters)
            sql = f"SELECT data FROM {name}{where} ORDER BY created_at, rowid"
            records = [json.loads(row['data']) for row in self._execute(sql, params).fetchall()]
            return [record for record in records if _matches(record, filters)]

    def find_one(self, table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            name = self._ensure_table(table)
            where, params, exact = self._where(filters)
            if not exact:
                records = self.find(table, filters)
                return records[0] if records else None
            row = self._execute(
                f"SELECT data FROM {name}{where} ORDER BY created_at, rowid LIMIT 1", params
            ).fetchone()
            return json.loads(row['data']) if row else None

    def latest(self, table: str, field: str,
               filters: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        with self._lock:
            filters = filters or {}
            name = self._ensure_table(table)
            where, params, exact = self._where(filters)
            if not exact:
                records = self.find(table, filters)
                return max(records, key=lambda r: r.get(field, 0), default=None)
            row = self._execute(
                f"SELECT data FROM {name}{where} ORDER BY {_json_path(field)} DESC LIMIT 1", params
            ).fetchone()
            return json.loads(row['data']) if row else None

    def create_index(self, table: str, field: str) -> None:
        with self._lock:
            _json_path(field)
            self._indexed_fields.setdefault(table, set()).add(field)
            self._known_tables.discard(table)
            self._ensure_table(table)

    def _where(self, filters: Dict[str, Any]):
        """WHERE clause for the SQL-comparable filters, and whether it covers all of them"""
        clauses = []
        params: List[Any] = []
        for key, value in filters.items():
            if isinstance(value, (str, int)) and not isinstance(value, bool):
                clauses.append(f"{_json_path(key)} = ?")
                params.append(value)
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        return where, tuple(params), len(clauses) == len(filters)

    def count(self, table: str) -> int:
        with self._lock:
            name = self._ensure_table(table)
            return self._execute(f"SELECT COUNT(*) AS count FROM {name}").fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            name = self._ensure_table(table)
            self._execute(f"DELETE FROM {name}")

    def begin_transaction(self) -> None:
        self._execute("BEGIN IMMEDIATE")

    def commit(self) -> None:
        self._execute("COMMIT")

    def rollback(self) -> None:
        if self._connection.in_transaction:
            self._connection.execute("ROLLBACK")
        # Tables created inside the discarded unit are gone again
        self._known_tables.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
