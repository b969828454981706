"""
Attempt stores for phiguard.

Durable key-value storage for failed-login records, keyed by normalized
identity. Stores have an explicit open/close lifecycle and hold no
process-wide state.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import config


def normalize_identity(identity: str) -> str:
    """Lower-case and trim an identity so case variants share one record."""
    return identity.strip().lower()


@dataclass
class AttemptRecord:
    """Failed-login state for one identity. Times are epoch seconds."""
    identity: str
    window_start: float
    attempt_count: int = 0
    last_attempt: float = 0.0
    locked_until: Optional[float] = None

    def is_locked(self, now: float) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AttemptRecord":
        locked_until = data.get("locked_until")
        return cls(
            identity=data["identity"],
            window_start=float(data["window_start"]),
            attempt_count=int(data.get("attempt_count", 0)),
            last_attempt=float(data.get("last_attempt", data["window_start"])),
            locked_until=float(locked_until) if locked_until is not None else None,
        )


class StoreClosedError(RuntimeError):
    """Raised when a store is used outside open()/close()."""


class AttemptStore(ABC):
    """
    Abstract interface for attempt persistence.

    Implementations must be:
    - Keyed by normalized identity
    - Safe to call from several threads
    - Usable as a context manager (open on enter, close on exit)
    """

    def open(self) -> "AttemptStore":
        return self

    def close(self) -> None:
        pass

    def __enter__(self) -> "AttemptStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @abstractmethod
    def get(self, identity: str) -> Optional[AttemptRecord]:
        """Load the record for an identity, or None."""
        pass

    @abstractmethod
    def put(self, record: AttemptRecord) -> None:
        """Insert or replace a record."""
        pass

    @abstractmethod
    def delete(self, identity: str) -> bool:
        """Remove one record. Returns True if it existed."""
        pass

    @abstractmethod
    def list_all(self) -> List[AttemptRecord]:
        """Return every stored record."""
        pass

    @abstractmethod
    def remove_all(self) -> int:
        """Remove every record. Returns count removed."""
        pass


class InMemoryAttemptStore(AttemptStore):
    """
    In-memory attempt store for development/testing.

    WARNING: Not persistent across restarts.
    """

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, identity: str) -> Optional[AttemptRecord]:
        with self._lock:
            data = self._records.get(normalize_identity(identity))
        return AttemptRecord.from_dict(data) if data else None

    def put(self, record: AttemptRecord) -> None:
        data = record.to_dict()
        data["identity"] = normalize_identity(record.identity)
        with self._lock:
            self._records[data["identity"]] = data

    def delete(self, identity: str) -> bool:
        with self._lock:
            return self._records.pop(normalize_identity(identity), None) is not None

    def list_all(self) -> List[AttemptRecord]:
        with self._lock:
            rows = list(self._records.values())
        return [AttemptRecord.from_dict(r) for r in rows]

    def remove_all(self) -> int:
        with self._lock:
            count = len(self._records)
            self._records.clear()
            return count


class SqliteAttemptStore(AttemptStore):
    """
    SQLite-backed attempt store.

    One connection per store, serialized by a lock. Records are stored as
    JSON next to an indexed ``locked_until`` column.
    """

    def __init__(self, path: str = None):
        self._path = path or config.ATTEMPT_DB_PATH
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    def open(self) -> "SqliteAttemptStore":
        with self._lock:
            if self._conn is None:
                if self._path != ":memory:":
                    Path(self._path).parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(self._path, check_same_thread=False)
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
                conn.row_factory = sqlite3.Row
                conn.execute("""
                CREATE TABLE IF NOT EXISTS failed_login_attempts (
                    identity TEXT PRIMARY KEY,
                    record_json TEXT NOT NULL,
                    locked_until REAL
                );""")
                conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_failed_login_locked
                ON failed_login_attempts(locked_until);""")
                conn.commit()
                self._conn = conn
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreClosedError("attempt store is not open")
        return self._conn

    def get(self, identity: str) -> Optional[AttemptRecord]:
        with self._lock:
            cur = self._connection().execute(
                "SELECT record_json FROM failed_login_attempts WHERE identity=?",
                (normalize_identity(identity),)
            )
            row = cur.fetchone()
        return AttemptRecord.from_dict(json.loads(row["record_json"])) if row else None

    def put(self, record: AttemptRecord) -> None:
        data = record.to_dict()
        data["identity"] = normalize_identity(record.identity)
        with self._lock:
            conn = self._connection()
            conn.execute(
                "INSERT OR REPLACE INTO failed_login_attempts(identity, record_json, locked_until) VALUES(?,?,?)",
                (data["identity"], json.dumps(data, sort_keys=True), data["locked_until"])
            )
            conn.commit()

    def delete(self, identity: str) -> bool:
        with self._lock:
            conn = self._connection()
            cur = conn.execute(
                "DELETE FROM failed_login_attempts WHERE identity=?",
                (normalize_identity(identity),)
            )
            conn.commit()
            return cur.rowcount == 1

    def list_all(self) -> List[AttemptRecord]:
        with self._lock:
            cur = self._connection().execute(
                "SELECT record_json FROM failed_login_attempts ORDER BY identity ASC"
            )
            rows = cur.fetchall()
        return [AttemptRecord.from_dict(json.loads(row["record_json"])) for row in rows]

    def remove_all(self) -> int:
        with self._lock:
            conn = self._connection()
            cur = conn.execute("DELETE FROM failed_login_attempts")
            conn.commit()
            return cur.rowcount


def get_attempt_store(backend: Optional[str] = None, path: Optional[str] = None) -> AttemptStore:
    """
    Factory function to create the configured attempt store.

    Args:
        backend: "memory" or "sqlite" (default from PHIGUARD_ATTEMPT_STORE)
        path: SQLite database path (default from PHIGUARD_ATTEMPT_DB_PATH)

    Returns:
        An unopened AttemptStore
    """
    backend = backend or config.ATTEMPT_STORE
    if backend == "memory":
        return InMemoryAttemptStore()
    if backend == "sqlite":
        return SqliteAttemptStore(path or config.ATTEMPT_DB_PATH)
    raise ValueError(f"Unknown attempt store backend: {backend}")
