# =============================================================================
# audit_core/offline/unified_data_service.py
# Unified Data Service - Single API for Online/Offline Operations
# =============================================================================
"""
UnifiedDataService - The primary API for all record reads and writes.

This service provides a unified interface that automatically handles:
- Online mode: backend reads, written through to the local store
- Offline mode: local store reads, writes queued for replay
- Fallback to the cache when a backend call fails
- Automatic replay when connectivity returns

Usage:
------
from audit_core.offline import get_data_service

service = await get_data_service()

# Read (auto-selects source)
result = await service.get_audit(audit_id)
if result.from_cache:
    ...

# Write (auto-queues if offline)
await service.save_item_answer(item_id, answer=True)

# Check status
print(f"Online: {service.is_online}")
print(f"Pending sync: {service.pending_sync_count}")
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Mapping, Optional
import logging

from audit_core.config import Settings, load_settings
from audit_core.data.supabase_client import (
    BaseRemoteBackend,
    SupabaseBackend,
    get_supabase_client,
)
from audit_core.errors import (
    AuditCoreError,
    ConfigurationError,
    NotAvailableOffline,
    RecordNotFound,
    RemoteTransientFailure,
    SyncQueueError,
)
from audit_core.logging import setup_logging
from audit_core.models import AuditAggregate, AuditItemRecord, AuditRecord, OperationKind
from audit_core.offline.connection_manager import ConnectionManager
from audit_core.offline.identifiers import is_local
from audit_core.offline.local_database import LocalDatabase
from audit_core.offline.sync_engine import DrainReport, SyncEngine

logger = logging.getLogger(__name__)


@dataclass
class ReadResult:
    """A read value tagged with where it came from."""
    value: Any = None
    from_cache: bool = False
    discarded: bool = False


@dataclass
class WriteResult:
    """A written record; ``queued`` when it awaits replay."""
    record: Dict[str, Any]
    queued: bool = False
    operation_id: Optional[str] = None


class RequestGenerationGuard:
    """
    Tracks the latest request per channel.

    A response is applied only if no newer request was issued on the same
    channel after it started.
    """

    def __init__(self):
        self._generations: Dict[str, int] = {}

    def begin(self, channel: str) -> int:
        generation = self._generations.get(channel, 0) + 1
        self._generations[channel] = generation
        return generation

    def is_current(self, channel: str, generation: int) -> bool:
        return self._generations.get(channel) == generation


class UnifiedDataService:
    """
    Unified data service providing a single API for online/offline operations.

    Reads are cache-aside: local ids and offline routing read the local
    store only; otherwise the backend answers and the result is written
    through, with the local store as fallback when the backend fails.
    """

    def __init__(
        self,
        local_db: LocalDatabase,
        backend: BaseRemoteBackend,
        connection: ConnectionManager,
        sync_engine: Optional[SyncEngine] = None,
    ):
        self.local_db = local_db
        self.backend = backend
        self.connection = connection
        self.sync_engine = sync_engine or SyncEngine(local_db, backend, connection)
        self._guard = RequestGenerationGuard()
        self._initialized = False

    @property
    def is_online(self) -> bool:
        return self.connection.is_online

    @property
    def is_offline(self) -> bool:
        return self.connection.is_offline

    @property
    def connection_status(self) -> str:
        return self.connection.status.value

    @property
    def pending_sync_count(self) -> int:
        return self.sync_engine.state.pending_count

    @property
    def last_sync(self) -> Optional[datetime]:
        return self.sync_engine.state.last_sync_success

    # =========================================================================
    # INITIALIZATION
    # =========================================================================

    async def initialize(self) -> None:
        """Create the local schema and hook the sync engine into connectivity."""
        if self._initialized:
            return

        self.local_db.initialize()
        await self.sync_engine.initialize()

        self._initialized = True
        logger.info(f"UnifiedDataService initialized. Status: {self.connection_status}")

    # =========================================================================
    # GENERIC READS
    # =========================================================================

    async def _cached_list(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        records = await self.local_db.find(collection, filters)
        # Local records already replayed are represented by their backend copy
        return [r for r in records if not (is_local(r.get("id")) and r.get("synced_id"))]

    async def read_one(self, collection: str, record_id: str) -> ReadResult:
        """
        Read one record, cache-aside.

        Raises:
            NotAvailableOffline: Absent from the local store while offline,
                or absent from the backend (any stale cached copy is evicted)
            RemoteTransientFailure: Backend failed and nothing is cached
        """
        if is_local(record_id) or self.connection.is_offline:
            cached = await self.local_db.get(collection, record_id)
            if cached is None:
                raise NotAvailableOffline(collection=collection, record_id=record_id)
            return ReadResult(cached, from_cache=True)

        try:
            row = await self.backend.fetch_one(collection, record_id)
        except RemoteTransientFailure as e:
            await self.connection.record_remote_failure(e)
            cached = await self.local_db.get(collection, record_id)
            if cached is None:
                raise
            logger.info(f"Serving cached {collection}/{record_id} after remote failure")
            return ReadResult(cached, from_cache=True)

        await self.connection.record_remote_success()
        if row is None:
            # The backend is authoritative for server ids
            if await self.local_db.get(collection, record_id) is not None:
                logger.info(f"Evicting cached {collection}/{record_id}: no longer on the backend")
                await self.local_db.delete(collection, record_id)
            raise NotAvailableOffline(
                f"{collection} {record_id} not found",
                collection=collection,
                record_id=record_id,
            )

        stored = await self.local_db.write_through(collection, [row])
        return ReadResult(stored[0])

    async def read_many(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
    ) -> ReadResult:
        """
        Read the records matching an equality filter, cache-aside.

        Local records that were never replayed are always included so work
        done offline stays visible.
        """
        if self.connection.is_offline:
            return ReadResult(await self._cached_list(collection, filters), from_cache=True)

        try:
            rows = await self.backend.fetch_many(collection, filters)
        except RemoteTransientFailure as e:
            await self.connection.record_remote_failure(e)
            cached = await self._cached_list(collection, filters)
            if not cached:
                raise
            logger.info(f"Serving {len(cached)} cached {collection} records after remote failure")
            return ReadResult(cached, from_cache=True)

        await self.connection.record_remote_success()
        stored = await self.local_db.write_through(collection, rows)
        unsynced = [r for r in await self._cached_list(collection, filters) if is_local(r.get("id"))]
        return ReadResult(stored + unsynced)

    async def read_latest(self, channel: str, read: Awaitable[ReadResult]) -> ReadResult:
        """
        Await a read and drop it if a newer read started on the same channel.

        Args:
            channel: Name of the view/state slot the result feeds
            read: Awaitable producing the ReadResult

        Returns:
            The result, or ReadResult(discarded=True) when superseded
        """
        generation = self._guard.begin(channel)
        try:
            result = await read
        except AuditCoreError:
            if not self._guard.is_current(channel, generation):
                logger.debug(f"Discarding failed superseded read on {channel}")
                return ReadResult(discarded=True)
            raise

        if not self._guard.is_current(channel, generation):
            logger.debug(f"Discarding superseded read on {channel} (generation {generation})")
            return ReadResult(discarded=True)
        return result

    # =========================================================================
    # TYPED READS
    # =========================================================================

    async def get_audit(self, audit_id: str) -> ReadResult:
        return await self.read_one("audits", audit_id)

    async def get_audit_items(self, audit_id: str) -> ReadResult:
        if is_local(audit_id):
            return ReadResult(await self.local_db.get_audit_items(audit_id), from_cache=True)
        return await self.read_many("auditItems", {"audit_id": audit_id})

    async def get_audit_aggregate(self, audit_id: str) -> ReadResult:
        """An audit with its items, in the same shape for local and remote audits."""
        audit = await self.get_audit(audit_id)
        items = await self.get_audit_items(audit_id)
        aggregate = AuditAggregate(
            audit=AuditRecord.from_dict(audit.value),
            items=[AuditItemRecord.from_dict(item) for item in items.value],
        )
        return ReadResult(aggregate, from_cache=audit.from_cache or items.from_cache)

    async def get_company(self, company_id: str) -> ReadResult:
        return await self.read_one("companies", company_id)

    async def get_environment(self, environment_id: str) -> ReadResult:
        return await self.read_one("environments", environment_id)

    async def list_environments(self, company_id: str) -> ReadResult:
        return await self.read_many("environments", {"company_id": company_id})

    async def list_company_audits(self, company_id: str, status: Optional[str] = None) -> ReadResult:
        filters: Dict[str, Any] = {"company_id": company_id}
        if status:
            filters["status"] = status
        return await self.read_many("audits", filters)

    async def list_audit_items(self, audit_ids: List[str]) -> ReadResult:
        """Items of several audits in one read."""
        if not audit_ids:
            return ReadResult([])
        remote_ids = [a for a in audit_ids if not is_local(a)]
        local_ids = [a for a in audit_ids if is_local(a)]
        items: List[Dict[str, Any]] = []
        from_cache = False
        if remote_ids:
            result = await self.read_many("auditItems", {"audit_id": remote_ids})
            items.extend(result.value)
            from_cache = result.from_cache
        if local_ids:
            items.extend(await self._cached_list("auditItems", {"audit_id": local_ids}))
        # De-duplicate local items that read_many already included
        unique = {item["id"]: item for item in items}
        return ReadResult(list(unique.values()), from_cache=from_cache)

    async def list_criteria(self, company_id: str) -> ReadResult:
        return await self.read_many("criteria", {"company_id": company_id})

    async def list_environment_criteria(self, environment_id: str) -> ReadResult:
        return await self.read_many("environmentCriteria", {"environment_id": environment_id})

    async def list_auditors(self, company_id: str) -> ReadResult:
        return await self.read_many("auditors", {"company_id": company_id})

    # =========================================================================
    # WRITES
    # =========================================================================

    async def create_record(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a record remotely and write it through.

        Raises:
            RemoteTransientFailure: The backend call failed (nothing stored)
        """
        try:
            stored = await self.backend.insert(collection, record)
        except RemoteTransientFailure as e:
            await self.connection.record_remote_failure(e)
            raise
        await self.connection.record_remote_success()
        merged = await self.local_db.write_through(collection, [stored], origin=record)
        return merged[0]

    async def _apply_offline(
        self,
        collection: str,
        record_id: str,
        patch: Dict[str, Any],
        kind: OperationKind,
    ) -> WriteResult:
        """Apply a patch locally and queue it, in one transaction."""
        existing = await self.local_db.get(collection, record_id)
        entries = []
        record = dict(patch, id=record_id)
        if existing is not None:
            record = {**existing, **patch}
            entries.append((collection, record_id, record))
            synced_id = existing.get("synced_id")
            if synced_id:
                server_copy = await self.local_db.get(collection, synced_id)
                if server_copy is not None:
                    entries.append((collection, synced_id, {**server_copy, **patch, "id": synced_id}))

        op = await self.sync_engine.enqueue(
            kind,
            collection,
            record_id,
            {"patch": dict(patch)},
            alongside=entries,
        )
        return WriteResult(record, queued=True, operation_id=op.id)

    async def update_record(
        self,
        collection: str,
        record_id: str,
        patch: Dict[str, Any],
        kind: OperationKind = OperationKind.UPDATE,
    ) -> WriteResult:
        """
        Update a record, remotely when possible, otherwise locally + queued.

        While older entries of the same collection (or its parent) wait in
        the queue, the update is queued behind them so replay cannot apply
        a stale value over it.

        Raises:
            StorageFull: Offline path could not persist locally
            SyncQueueError: Remote write failed and the queue append failed too
            RecordNotFound: Backend has no such record
        """
        if is_local(record_id) or self.connection.is_offline:
            return await self._apply_offline(collection, record_id, patch, kind)

        if await self.sync_engine.queue.has_pending(collection):
            logger.info(f"Queueing update of {collection}/{record_id} behind pending operations")
            return await self._apply_offline(collection, record_id, patch, kind)

        try:
            row = await self.backend.update(collection, record_id, patch)
        except RemoteTransientFailure as e:
            await self.connection.record_remote_failure(e)
            logger.warning(f"Remote update of {collection}/{record_id} failed, queueing: {e}")
            try:
                return await self._apply_offline(collection, record_id, patch, kind)
            except Exception as queue_error:
                raise SyncQueueError(
                    f"Could not save {collection} {record_id} remotely or locally",
                    collection=collection,
                    record_id=record_id,
                ) from queue_error

        await self.connection.record_remote_success()
        if row is None:
            raise RecordNotFound(
                f"{collection} {record_id} does not exist",
                collection=collection,
                record_id=record_id,
            )
        merged = await self.local_db.write_through(collection, [row])
        return WriteResult(merged[0])

    async def save_item_answer(
        self,
        item_id: str,
        answer: Optional[bool],
        comment: Optional[str] = None,
        photo_refs: Optional[List[str]] = None,
    ) -> WriteResult:
        """Record the answer (and evidence) for one audit item."""
        patch: Dict[str, Any] = {"answer": answer}
        if comment is not None:
            patch["comment"] = comment
        if photo_refs is not None:
            patch["photo_refs"] = list(photo_refs)
        return await self.update_record("auditItems", item_id, patch)

    # =========================================================================
    # SYNC
    # =========================================================================

    async def sync_now(self) -> DrainReport:
        """Trigger an immediate drain of the pending queue."""
        return await self.sync_engine.drain()

    async def pull_company(self, company_id: str) -> Dict[str, int]:
        """
        Refresh the local cache with a company's reference data and audits.

        Returns:
            Records cached per collection
        """
        if not self.connection.should_attempt_remote:
            return {}

        counts: Dict[str, int] = {}
        counts["environments"] = len((await self.list_environments(company_id)).value)
        counts["criteria"] = len((await self.list_criteria(company_id)).value)
        counts["auditors"] = len((await self.list_auditors(company_id)).value)
        environments = await self.local_db.get_environments_by_company(company_id)
        links = await self.read_many(
            "environmentCriteria",
            {"environment_id": [env["id"] for env in environments]},
        ) if environments else ReadResult([])
        counts["environmentCriteria"] = len(links.value)
        audits = (await self.list_company_audits(company_id)).value
        counts["audits"] = len(audits)
        items = await self.list_audit_items([audit["id"] for audit in audits])
        counts["auditItems"] = len(items.value)
        logger.info(f"Pulled company {company_id}: {counts}")
        return counts

    # =========================================================================
    # SETTINGS & STATUS
    # =========================================================================

    async def get_setting(self, key: str, default: Any = None) -> Any:
        """Get an app setting."""
        return await self.local_db.get_setting(key, default)

    async def set_setting(self, key: str, value: Any) -> None:
        """Set an app setting."""
        await self.local_db.set_setting(key, value)

    async def set_offline_mode(self, enabled: bool) -> None:
        """User override forcing offline routing."""
        await self.connection.set_offline_mode(enabled)

    def get_status(self) -> Dict[str, Any]:
        """
        Get comprehensive status information.

        Returns:
            Dict with status information for UI display
        """
        return {
            "connection": self.connection.get_status_display(),
            "sync": self.sync_engine.get_status_display(),
            "is_online": self.is_online,
            "pending_sync": self.pending_sync_count,
        }

    def cleanup(self) -> None:
        """Cleanup resources."""
        self.local_db.close()


def build_data_service(
    settings: Optional[Settings] = None,
    backend: Optional[BaseRemoteBackend] = None,
    local_db: Optional[LocalDatabase] = None,
) -> UnifiedDataService:
    """
    Wire a UnifiedDataService from settings.

    Args:
        settings: Runtime settings (defaults to load_settings())
        backend: Remote backend (defaults to Supabase from settings)
        local_db: Local store (defaults to settings.local_db_path)

    Returns:
        Uninitialized UnifiedDataService
    """
    settings = settings or load_settings()
    if backend is None:
        if not settings.has_supabase:
            raise ConfigurationError(
                "No remote backend configured: set SUPABASE_URL and SUPABASE_KEY",
                config_key="supabase",
            )
        client = get_supabase_client(settings.supabase_url, settings.supabase_key)
        backend = SupabaseBackend(client, timeout=settings.remote_timeout_seconds)

    local_db = local_db or LocalDatabase(settings.local_db_path)
    connection = ConnectionManager(settings.degraded_failure_threshold)
    sync_engine = SyncEngine(
        local_db,
        backend,
        connection,
        batch_size=settings.sync_batch_size,
    )
    return UnifiedDataService(local_db, backend, connection, sync_engine)


# Singleton accessor
_data_service: Optional[UnifiedDataService] = None


async def get_data_service(settings: Optional[Settings] = None) -> UnifiedDataService:
    """
    Get the global UnifiedDataService instance.

    Returns:
        UnifiedDataService singleton

    Usage:
        from audit_core.offline import get_data_service

        service = await get_data_service()
        result = await service.list_company_audits(company_id)
    """
    global _data_service
    if _data_service is None:
        settings = settings or load_settings()
        setup_logging(settings.log_level, settings.log_file)
        service = build_data_service(settings)
        await service.initialize()
        _data_service = service
    return _data_service
