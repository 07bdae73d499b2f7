# =============================================================================
# audit_core/offline/local_database.py
# Local SQLite Store for Offline Operations
# =============================================================================
"""
LocalDatabase - SQLite-backed keyed document store over named collections.

Features:
- One generic table keyed by (collection, id); values stored as JSON
- Async API; blocking sqlite3 calls run in a worker thread
- Atomic multi-record writes (put_many)
- Durable counters for queue ordering
- App settings (last sync time and similar)
"""

from __future__ import annotations
import asyncio
import json
import math
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple
import logging

import numpy as np

from audit_core.errors import DataValidationError, StorageFull

logger = logging.getLogger(__name__)


# Named collections persisted by the store
COLLECTIONS = (
    "audits",
    "auditItems",
    "environments",
    "companies",
    "criteria",
    "environmentCriteria",
    "auditors",
    "pendingSyncOperations",
)

_SQLITE_FULL = getattr(sqlite3, "SQLITE_FULL", 13)

# Local-only fields carried over when a backend row replaces a cached one
DISPLAY_FIELDS = ("display_location_name", "display_company_name")

# Joined fields that plain write responses come back without (or empty)
JOINED_FIELDS = ("senso_tags",)


def to_jsonable(value: Any) -> Any:
    """Clean a value for JSON serialization."""
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        value = float(value)
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


def matches_filters(record: Mapping[str, Any], filters: Optional[Mapping[str, Any]]) -> bool:
    """
    Equality filter; list/tuple/set values mean "field is one of".
    """
    if not filters:
        return True
    for key, expected in filters.items():
        actual = record.get(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class LocalDatabase:
    """
    Local SQLite database for offline data storage.

    Every record is a JSON document keyed by (collection, id). A missing key
    is a normal absent result, never an error.
    """

    DEFAULT_DB_PATH = Path("local_data") / "audit_offline.db"

    SCHEMA = {
        "records": """
            CREATE TABLE IF NOT EXISTS records (
                collection TEXT NOT NULL,
                id TEXT NOT NULL,
                value_json TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (collection, id)
            )
        """,
        "sequences": """
            CREATE TABLE IF NOT EXISTS sequences (
                name TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            )
        """,
        "app_settings": """
            CREATE TABLE IF NOT EXISTS app_settings (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """,
    }

    def __init__(self, db_path: Optional[Path] = None):
        """
        Initialize local database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        self._ensure_directory()
        self._connection: Optional[sqlite3.Connection] = None
        # One connection shared by worker threads; access is serialized
        self._lock = threading.RLock()
        self._initialized = False

    def _ensure_directory(self) -> None:
        """Ensure database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _get_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            self._connection = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
            )
            self._connection.row_factory = sqlite3.Row
        return self._connection

    @contextmanager
    def transaction(self):
        """Context manager for database transactions."""
        with self._lock:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self.transaction() as conn:
            for table_name, schema in self.SCHEMA.items():
                conn.execute(schema)
                logger.debug(f"Created/verified table: {table_name}")

        self._initialized = True
        logger.info(f"Local database initialized at: {self.db_path}")

    # =========================================================================
    # SYNCHRONOUS PRIMITIVES (run in worker threads)
    # =========================================================================

    @staticmethod
    def _check_collection(collection: str) -> None:
        if collection not in COLLECTIONS:
            raise DataValidationError(
                f"Unknown collection: {collection!r}",
                field="collection",
                actual=collection,
            )

    def _write(self, entries: List[Tuple[str, str, str]], deletes: List[Tuple[str, str]]) -> None:
        now = datetime.now().isoformat()
        try:
            with self.transaction() as conn:
                for collection, record_id, value_json in entries:
                    conn.execute(
                        """
                        INSERT INTO records (collection, id, value_json, updated_at)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(collection, id) DO UPDATE SET
                            value_json = excluded.value_json,
                            updated_at = excluded.updated_at
                        """,
                        [collection, record_id, value_json, now],
                    )
                for collection, record_id in deletes:
                    conn.execute(
                        "DELETE FROM records WHERE collection = ? AND id = ?",
                        [collection, record_id],
                    )
        except sqlite3.Error as e:
            self._raise_if_full(e, entries[0][0] if entries else None)
            raise

    @staticmethod
    def _raise_if_full(error: sqlite3.Error, collection: Optional[str]) -> None:
        code = getattr(error, "sqlite_errorcode", None)
        if code == _SQLITE_FULL or "full" in str(error).lower():
            logger.error(f"Local storage exhausted while writing {collection}: {error}")
            raise StorageFull(collection=collection) from error

    def _read_one(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT value_json FROM records WHERE collection = ? AND id = ?",
                [collection, record_id],
            ).fetchone()
        return json.loads(row["value_json"]) if row else None

    def _read_all(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._get_connection().execute(
                "SELECT value_json FROM records WHERE collection = ? ORDER BY rowid",
                [collection],
            ).fetchall()
        return [json.loads(row["value_json"]) for row in rows]

    def _count(self, collection: str) -> int:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT COUNT(*) AS count FROM records WHERE collection = ?",
                [collection],
            ).fetchone()
        return row["count"] if row else 0

    def _next_sequence(self, name: str) -> int:
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO sequences (name, value) VALUES (?, 1)
                    ON CONFLICT(name) DO UPDATE SET value = value + 1
                    """,
                    [name],
                )
                row = conn.execute(
                    "SELECT value FROM sequences WHERE name = ?", [name]
                ).fetchone()
        except sqlite3.Error as e:
            self._raise_if_full(e, name)
            raise
        return row["value"]

    # =========================================================================
    # GENERIC ASYNC OPERATIONS
    # =========================================================================

    async def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Get a record by id, or None when absent."""
        self._check_collection(collection)
        return await asyncio.to_thread(self._read_one, collection, record_id)

    async def get_all(self, collection: str) -> List[Dict[str, Any]]:
        """Get every record of a collection in insertion order."""
        self._check_collection(collection)
        return await asyncio.to_thread(self._read_all, collection)

    async def put(self, collection: str, record_id: str, value: Dict[str, Any]) -> None:
        """Insert or replace a record."""
        await self.put_many([(collection, record_id, value)])

    async def put_many(self, entries: Iterable[Tuple[str, str, Dict[str, Any]]]) -> None:
        """
        Upsert several records in a single transaction.

        Either every record is written or none is.
        """
        prepared = []
        for collection, record_id, value in entries:
            self._check_collection(collection)
            prepared.append((collection, record_id, json.dumps(to_jsonable(value))))
        if not prepared:
            return
        await asyncio.to_thread(self._write, prepared, [])

    async def delete(self, collection: str, record_id: str) -> None:
        """Delete a record; deleting an absent key is a no-op."""
        self._check_collection(collection)
        await asyncio.to_thread(self._write, [], [(collection, record_id)])

    async def query(
        self,
        collection: str,
        predicate: Callable[[Dict[str, Any]], bool],
    ) -> List[Dict[str, Any]]:
        """Get the records of a collection for which predicate is true."""
        records = await self.get_all(collection)
        return [record for record in records if predicate(record)]

    async def count(self, collection: str) -> int:
        """Number of records in a collection."""
        self._check_collection(collection)
        return await asyncio.to_thread(self._count, collection)

    async def next_sequence(self, name: str) -> int:
        """Durable, strictly increasing counter."""
        return await asyncio.to_thread(self._next_sequence, name)

    # =========================================================================
    # COLLECTION HELPERS
    # =========================================================================

    async def cache_records(self, collection: str, records: Iterable[Dict[str, Any]]) -> int:
        """Bulk upsert rows keyed by their "id" field."""
        entries = [(collection, record["id"], record) for record in records]
        await self.put_many(entries)
        return len(entries)

    async def write_through(
        self,
        collection: str,
        rows: Iterable[Dict[str, Any]],
        origin: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Mirror backend rows into the store under their backend keys.

        Display names the backend did not return are kept from the cached
        copy, or taken from ``origin`` (the local record the row came from).
        Joined fields such as an item's senso tags are kept the same way
        when the row carries them empty, since update responses omit joins.
        """
        merged_rows = []
        for row in rows:
            merged = dict(row)
            existing = await self.get(collection, row["id"]) or {}
            for source in (existing, origin or {}):
                for name in DISPLAY_FIELDS:
                    if merged.get(name) is None and source.get(name) is not None:
                        merged[name] = source[name]
                for name in JOINED_FIELDS:
                    if not merged.get(name) and source.get(name):
                        merged[name] = source[name]
            merged_rows.append(merged)
        await self.cache_records(collection, merged_rows)
        return merged_rows

    async def find(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Records matching an equality filter."""
        return await self.query(collection, lambda record: matches_filters(record, filters))

    async def get_audit_items(self, audit_id: str) -> List[Dict[str, Any]]:
        """Cached items of one audit."""
        return await self.find("auditItems", {"audit_id": audit_id})

    async def get_environments_by_company(self, company_id: str) -> List[Dict[str, Any]]:
        """Cached environment nodes of one company."""
        return await self.find("environments", {"company_id": company_id})

    async def get_environment_criteria(self, environment_id: str) -> List[Dict[str, Any]]:
        """Active cached criteria linked to an environment."""
        links = await self.find("environmentCriteria", {"environment_id": environment_id})
        criterion_ids = {link["criterion_id"] for link in links}
        if not criterion_ids:
            return []
        return await self.query(
            "criteria",
            lambda c: c["id"] in criterion_ids and c.get("status", "active") == "active",
        )

    # =========================================================================
    # SETTINGS
    # =========================================================================

    def _get_setting(self, key: str, default: Any) -> Any:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT value FROM app_settings WHERE key = ?", [key]
            ).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            return row["value"]

    def _set_setting(self, key: str, value: Any) -> None:
        value_str = json.dumps(to_jsonable(value))
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO app_settings (key, value, updated_at)
                    VALUES (?, ?, ?)
                    """,
                    [key, value_str, datetime.now().isoformat()],
                )
        except sqlite3.Error as e:
            self._raise_if_full(e, "app_settings")
            raise

    async def get_setting(self, key: str, default: Any = None) -> Any:
        """Get an app setting."""
        return await asyncio.to_thread(self._get_setting, key, default)

    async def set_setting(self, key: str, value: Any) -> None:
        """Set an app setting."""
        await asyncio.to_thread(self._set_setting, key, value)

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
