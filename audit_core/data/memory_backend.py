# =============================================================================
# audit_core/data/memory_backend.py
# In-Memory Remote Backend
# Stands in for Supabase in tests and local demos
# =============================================================================

from __future__ import annotations
import asyncio
import copy
import uuid
from typing import Any, Dict, List, Optional, Tuple
import logging

from audit_core.data.supabase_client import BaseRemoteBackend, TABLES
from audit_core.errors import DataValidationError, RemoteTransientFailure, ReplayConflict
from audit_core.models import LOCAL_ONLY_FIELDS

logger = logging.getLogger(__name__)


# Child collection -> (reference field, parent collection)
FOREIGN_KEYS = {
    "auditItems": ("audit_id", "audits"),
}


class InMemoryBackend(BaseRemoteBackend):
    """
    Remote backend held in dictionaries.

    Supports failure injection:
    - ``unreachable = True`` makes every call fail
    - ``fail_next(n)`` fails the next n calls
    - ``delay`` sleeps before answering (trips the timeout when large)
    """

    def __init__(self, timeout: float = 10.0, delay: float = 0.0):
        super().__init__(timeout)
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in TABLES}
        self.delay = delay
        self.unreachable = False
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        self._failures_left = 0

    # =========================================================================
    # TEST HELPERS
    # =========================================================================

    def seed(self, collection: str, rows: List[Dict[str, Any]]) -> None:
        """Load rows directly, bypassing call logging and failures."""
        for row in rows:
            self.tables[collection][row["id"]] = copy.deepcopy(row)

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` calls raise RemoteTransientFailure."""
        self._failures_left = count

    def rows(self, collection: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(row) for row in self.tables[collection].values()]

    def calls_for(self, operation: str) -> List[Tuple[str, str, Optional[str]]]:
        return [call for call in self.calls if call[0] == operation]

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _enter(self, operation: str, collection: str, record_id: Optional[str]) -> None:
        if collection not in self.tables:
            raise DataValidationError(
                f"Collection {collection!r} has no remote table",
                field="collection",
                actual=collection,
            )
        self.calls.append((operation, collection, record_id))
        await self._bounded(operation, collection, self._latency())
        if self.unreachable:
            raise RemoteTransientFailure("Backend unreachable", operation=operation, table=collection)
        if self._failures_left > 0:
            self._failures_left -= 1
            raise RemoteTransientFailure("Injected failure", operation=operation, table=collection)

    async def _latency(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)

    @staticmethod
    def _strip(record: Dict[str, Any]) -> Dict[str, Any]:
        return {k: copy.deepcopy(v) for k, v in record.items() if k not in LOCAL_ONLY_FIELDS}

    def _check_references(self, collection: str, row: Dict[str, Any]) -> None:
        if collection not in FOREIGN_KEYS:
            return
        field, parent = FOREIGN_KEYS[collection]
        if row.get(field) not in self.tables[parent]:
            raise ReplayConflict(
                f"{collection}.{field} references missing {parent} row {row.get(field)}",
                collection=collection,
                record_id=row.get("id"),
            )

    @staticmethod
    def _matches(row: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
        for key, expected in (filters or {}).items():
            if isinstance(expected, (list, tuple, set)):
                if row.get(key) not in expected:
                    return False
            elif row.get(key) != expected:
                return False
        return True

    # =========================================================================
    # PROTOCOL
    # =========================================================================

    async def fetch_one(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        await self._enter("fetch", collection, record_id)
        row = self.tables[collection].get(record_id)
        return copy.deepcopy(row) if row is not None else None

    async def fetch_many(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        await self._enter("fetch", collection, None)
        return [
            copy.deepcopy(row)
            for row in self.tables[collection].values()
            if self._matches(row, filters)
        ]

    async def insert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        row = self._strip(record)
        row.setdefault("id", str(uuid.uuid4()))
        await self._enter("insert", collection, row["id"])
        if row["id"] in self.tables[collection]:
            raise RemoteTransientFailure(
                f"Duplicate key {row['id']} in {collection}",
                operation="insert",
                table=collection,
            )
        self._check_references(collection, row)
        self.tables[collection][row["id"]] = row
        return copy.deepcopy(row)

    async def update(
        self,
        collection: str,
        record_id: str,
        patch: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        await self._enter("update", collection, record_id)
        row = self.tables[collection].get(record_id)
        if row is None:
            return None
        patch = self._strip(patch)
        patch.pop("id", None)
        row.update(patch)
        return copy.deepcopy(row)

    async def upsert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        row = self._strip(record)
        await self._enter("upsert", collection, row.get("id"))
        self._check_references(collection, row)
        self.tables[collection][row["id"]] = row
        return copy.deepcopy(row)
