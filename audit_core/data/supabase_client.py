# =============================================================================
# audit_core/data/supabase_client.py
# Remote Backend Protocol and Supabase Adapter
# Handles table mapping, row (de)serialization and failure translation
# =============================================================================

from __future__ import annotations
import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional
import logging

from postgrest.exceptions import APIError

from audit_core.errors import (
    ConfigurationError,
    DataValidationError,
    RemoteTransientFailure,
    ReplayConflict,
)
from audit_core.models import LOCAL_ONLY_FIELDS

logger = logging.getLogger(__name__)


# Local collection -> Supabase table
TABLES = {
    "audits": "audits",
    "auditItems": "audit_items",
    "environments": "environments",
    "companies": "companies",
    "criteria": "company_criteria",
    "environmentCriteria": "environment_criteria",
    "auditors": "auditors",
}

# Joined selects that carry display names and senso membership
SELECTS = {
    "audits": (
        "*, environments!audits_location_id_fkey(name), "
        "companies!audits_company_id_fkey(name)"
    ),
    "auditItems": "*, company_criteria!audit_items_criterion_id_fkey(senso)",
}

# Postgres foreign key violation
FOREIGN_KEY_VIOLATION = "23503"


def to_remote_row(collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert a local record to the backend row shape.

    Local-only fields are stripped and photo references are encoded into
    the photo_url JSON string column.
    """
    row = {k: v for k, v in record.items() if k not in LOCAL_ONLY_FIELDS}
    if collection == "auditItems":
        if "photo_refs" in row:
            photos = row.pop("photo_refs") or []
            row["photo_url"] = json.dumps(photos) if photos else None
        # Senso membership lives on the criterion
        row.pop("senso_tags", None)
    return row


def _decode_photos(raw: Any) -> List[str]:
    if not raw:
        return []
    if isinstance(raw, list):
        return [str(p) for p in raw]
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError):
        # Legacy rows hold a single bare URL
        return [str(raw)]
    if isinstance(decoded, list):
        return [str(p) for p in decoded]
    return [str(decoded)]


def from_remote_row(collection: str, row: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a backend row (with joins) to the local record shape."""
    record = dict(row)
    if collection == "auditItems":
        record["photo_refs"] = _decode_photos(record.pop("photo_url", None))
        criterion = record.pop("company_criteria", None) or {}
        record["senso_tags"] = criterion.get("senso") or record.get("senso_tags") or []
    elif collection == "audits":
        location = record.pop("environments", None) or {}
        company = record.pop("companies", None) or {}
        if location.get("name"):
            record["display_location_name"] = location["name"]
        if company.get("name"):
            record["display_company_name"] = company["name"]
    return record


class BaseRemoteBackend(ABC):
    """
    Abstract remote backend.

    Every call is bounded by ``timeout`` seconds; a timeout, network error
    or server error raises RemoteTransientFailure.
    """

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    async def _bounded(self, operation: str, collection: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Remote {operation} on {collection} timed out after {self.timeout}s")
            raise RemoteTransientFailure(
                f"Remote {operation} timed out",
                operation=operation,
                table=collection,
                timed_out=True,
            ) from e

    @abstractmethod
    async def fetch_one(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a record by id, or None when the backend has no such row."""
        pass

    @abstractmethod
    async def fetch_many(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch the records matching an equality filter (list value = one of)."""
        pass

    @abstractmethod
    async def insert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a record and return the stored row."""
        pass

    @abstractmethod
    async def update(
        self,
        collection: str,
        record_id: str,
        patch: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Apply a patch; returns None when the row does not exist."""
        pass

    @abstractmethod
    async def upsert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or replace a record keyed by its id."""
        pass


def get_supabase_client(url: Optional[str], key: Optional[str]):
    """
    Initialize and return a Supabase client.

    Args:
        url: Supabase project URL
        key: Supabase anon/service key

    Returns:
        Supabase client instance
    """
    if not url or not key:
        raise ConfigurationError(
            "Supabase credentials not found. Set SUPABASE_URL/SUPABASE_KEY or "
            "configure [supabase] in .streamlit/secrets.toml",
            config_key="supabase",
        )

    from supabase import create_client, Client

    client: Client = create_client(url, key)
    return client


class SupabaseBackend(BaseRemoteBackend):
    """
    Remote backend over supabase-py.

    supabase-py is synchronous; each request runs in a worker thread.
    """

    PAGE_SIZE = 1000

    def __init__(self, client, timeout: float = 10.0):
        """
        Args:
            client: supabase Client
            timeout: Per-call timeout in seconds
        """
        super().__init__(timeout)
        self.client = client

    @staticmethod
    def _table_for(collection: str) -> str:
        try:
            return TABLES[collection]
        except KeyError:
            raise DataValidationError(
                f"Collection {collection!r} has no remote table",
                field="collection",
                actual=collection,
            ) from None

    async def _call(self, operation: str, collection: str, fn: Callable[[], Any]) -> Any:
        table = self._table_for(collection)
        try:
            return await self._bounded(operation, collection, asyncio.to_thread(fn))
        except RemoteTransientFailure:
            raise
        except APIError as e:
            if str(getattr(e, "code", "")) == FOREIGN_KEY_VIOLATION:
                raise ReplayConflict(
                    f"Backend rejected {operation} on {table}: {e.message}",
                    collection=collection,
                ) from e
            logger.warning(f"Supabase {operation} on {table} failed: {e}")
            raise RemoteTransientFailure(
                f"Supabase {operation} failed: {e.message}",
                operation=operation,
                table=table,
            ) from e
        except Exception as e:
            logger.warning(f"Supabase {operation} on {table} failed: {e}")
            raise RemoteTransientFailure(
                f"Supabase {operation} failed: {e}",
                operation=operation,
                table=table,
            ) from e

    async def fetch_one(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        table = self._table_for(collection)
        select = SELECTS.get(collection, "*")

        def run():
            return self.client.table(table).select(select).eq("id", record_id).limit(1).execute()

        response = await self._call("fetch", collection, run)
        if not response.data:
            return None
        return from_remote_row(collection, response.data[0])

    async def fetch_many(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        table = self._table_for(collection)
        select = SELECTS.get(collection, "*")

        def run():
            # Paginate past the 1000 row response limit
            all_data = []
            offset = 0
            while True:
                query = self.client.table(table).select(select)
                for col, val in (filters or {}).items():
                    if isinstance(val, (list, tuple, set)):
                        query = query.in_(col, list(val))
                    else:
                        query = query.eq(col, val)
                response = query.range(offset, offset + self.PAGE_SIZE - 1).execute()
                if not response.data:
                    break
                all_data.extend(response.data)
                if len(response.data) < self.PAGE_SIZE:
                    break
                offset += self.PAGE_SIZE
            return all_data

        rows = await self._call("fetch", collection, run)
        return [from_remote_row(collection, row) for row in rows]

    async def insert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        table = self._table_for(collection)
        row = to_remote_row(collection, record)

        def run():
            return self.client.table(table).insert(row).execute()

        response = await self._call("insert", collection, run)
        return self._first_row(collection, response, record)

    async def update(
        self,
        collection: str,
        record_id: str,
        patch: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        table = self._table_for(collection)
        row = to_remote_row(collection, patch)

        def run():
            return self.client.table(table).update(row).eq("id", record_id).execute()

        response = await self._call("update", collection, run)
        if not response.data:
            return None
        return from_remote_row(collection, response.data[0])

    async def upsert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        table = self._table_for(collection)
        row = to_remote_row(collection, record)

        def run():
            return self.client.table(table).upsert(row).execute()

        response = await self._call("upsert", collection, run)
        return self._first_row(collection, response, record)

    @staticmethod
    def _first_row(collection: str, response, sent: Dict[str, Any]) -> Dict[str, Any]:
        if response.data:
            stored = from_remote_row(collection, response.data[0])
            # Keep senso membership the write did not echo back
            if collection == "auditItems" and not stored.get("senso_tags"):
                stored["senso_tags"] = sent.get("senso_tags", [])
            return stored
        return dict(sent)
