# =============================================================================
# audit_core/offline/sync_engine.py
# Pending Operation Queue and Replay Engine
# =============================================================================
"""
SyncQueue  - Durable, ordered log of mutations made while offline.
SyncEngine - Replays the log against the remote backend.

Features:
- Global enqueue order, strict per-collection ordering
- A failed entry halts its collection (and child collections) for the pass
- Idempotent replay (creates are upserts on a deterministic backend key)
- Conflicts are dropped and reported, never retried forever
- Automatic drain when connectivity returns
- Sync status tracking and event callbacks
"""

from __future__ import annotations
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union
import logging

from audit_core.data.supabase_client import BaseRemoteBackend
from audit_core.errors import RemoteTransientFailure, ReplayConflict, handle_error
from audit_core.logging import LogContext
from audit_core.models import OperationKind, PendingOperation
from audit_core.offline.connection_manager import ConnectionManager, ConnectionStatus
from audit_core.offline.identifiers import resolve_remote_id, translate_references
from audit_core.offline.local_database import LocalDatabase

logger = logging.getLogger(__name__)


QUEUE_COLLECTION = "pendingSyncOperations"

# A halted parent collection also halts its children for the pass
COLLECTION_PARENTS = {
    "auditItems": "audits",
}


class SyncQueue:
    """
    Pending operation queue stored in the local database.

    Entries are removed only after the backend confirmed them (or after
    a conflict made them moot).
    """

    SEQUENCE_NAME = "pending_operations"

    def __init__(self, local_db: LocalDatabase):
        self.local_db = local_db

    async def build(
        self,
        kind: Union[OperationKind, str],
        target_collection: str,
        target_id: str,
        payload: Dict[str, Any],
    ) -> PendingOperation:
        """Allocate the next sequence number and build an entry (not persisted)."""
        sequence = await self.local_db.next_sequence(self.SEQUENCE_NAME)
        return PendingOperation(
            id=f"sync_{sequence:012d}",
            sequence=sequence,
            kind=OperationKind(kind).value,
            target_collection=target_collection,
            target_id=target_id,
            payload=payload,
        )

    async def enqueue(
        self,
        kind: Union[OperationKind, str],
        target_collection: str,
        target_id: str,
        payload: Dict[str, Any],
        alongside: Iterable[Tuple[str, str, Dict[str, Any]]] = (),
    ) -> PendingOperation:
        """
        Append an operation to the queue.

        Args:
            kind: create, update or complete
            target_collection: Collection of the target record
            target_id: Id of the target record (local or server)
            payload: Self-contained data needed to replay the operation
            alongside: Local records written in the same transaction

        Returns:
            The stored PendingOperation
        """
        op = await self.build(kind, target_collection, target_id, payload)
        entries = list(alongside)
        entries.append((QUEUE_COLLECTION, op.id, op.to_dict()))
        await self.local_db.put_many(entries)
        logger.debug(f"Queued {op.kind} for {target_collection}/{target_id} as {op.id}")
        return op

    async def pending(self) -> List[PendingOperation]:
        """Pending operations in enqueue order."""
        rows = await self.local_db.get_all(QUEUE_COLLECTION)
        ops = [PendingOperation.from_dict(row) for row in rows]
        return sorted(ops, key=lambda op: op.sequence)

    async def pending_count(self) -> int:
        return await self.local_db.count(QUEUE_COLLECTION)

    async def has_pending(self, collection: str) -> bool:
        """
        True when an entry for ``collection`` (or the collection it
        depends on) still awaits replay.
        """
        related = {collection, COLLECTION_PARENTS.get(collection)}
        rows = await self.local_db.get_all(QUEUE_COLLECTION)
        return any(row.get("target_collection") in related for row in rows)

    async def remove(self, op_id: str) -> None:
        await self.local_db.delete(QUEUE_COLLECTION, op_id)

    async def mark_failed(self, op: PendingOperation, error: Exception) -> None:
        """Record a failed attempt; the entry keeps its place in the queue."""
        op.attempts += 1
        op.last_error = str(error)
        await self.local_db.put(QUEUE_COLLECTION, op.id, op.to_dict())


@dataclass
class DrainReport:
    """Outcome of one drain pass."""
    attempted: int = 0
    applied: int = 0
    failed: int = 0
    deferred: int = 0
    conflicts: List[Dict[str, Any]] = field(default_factory=list)
    halted_collections: List[str] = field(default_factory=list)
    skipped: bool = False
    reason: Optional[str] = None


@dataclass
class SyncState:
    """Current sync state."""
    is_syncing: bool = False
    last_sync: Optional[datetime] = None
    last_sync_success: Optional[datetime] = None
    pending_count: int = 0
    failed_count: int = 0
    total_synced: int = 0
    conflicts: List[Dict[str, Any]] = field(default_factory=list)


class SyncEngine:
    """
    Replays pending operations against the remote backend.

    Usage:
        engine = SyncEngine(local_db, backend, connection)
        await engine.initialize()   # drain automatically when back online
        report = await engine.drain()
    """

    def __init__(
        self,
        local_db: LocalDatabase,
        backend: BaseRemoteBackend,
        connection: ConnectionManager,
        queue: Optional[SyncQueue] = None,
        batch_size: int = 200,
    ):
        self.local_db = local_db
        self.backend = backend
        self.connection = connection
        self.queue = queue or SyncQueue(local_db)
        self.batch_size = batch_size
        self._state = SyncState()
        self._callbacks: List[Callable[[SyncState], Any]] = []
        self._draining = False
        self._reconnected_while_draining = False
        self._initialized = False

    @property
    def state(self) -> SyncState:
        """Get current sync state."""
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._draining

    async def initialize(self) -> None:
        """Hook into connectivity changes and load the pending count."""
        if self._initialized:
            return
        self.connection.register_callback(self._on_connection_change)
        self._state.pending_count = await self.queue.pending_count()
        self._initialized = True
        logger.info(f"SyncEngine initialized. Pending operations: {self._state.pending_count}")

    async def _on_connection_change(self, state) -> None:
        """Handle connection status changes."""
        if state.status != ConnectionStatus.ONLINE:
            return
        if self._draining:
            # Picked up by drain() once the current pass ends
            self._reconnected_while_draining = True
            return
        logger.info("Connection restored, draining pending operations")
        await self.drain()

    async def enqueue(
        self,
        kind: Union[OperationKind, str],
        target_collection: str,
        target_id: str,
        payload: Dict[str, Any],
        alongside: Iterable[Tuple[str, str, Dict[str, Any]]] = (),
    ) -> PendingOperation:
        """Queue an operation and refresh the status indicator."""
        op = await self.queue.enqueue(kind, target_collection, target_id, payload, alongside)
        self._state.pending_count = await self.queue.pending_count()
        await self._notify_callbacks()
        return op

    # =========================================================================
    # DRAIN
    # =========================================================================

    async def drain(self) -> DrainReport:
        """
        Replay pending operations in enqueue order.

        Only one drain runs at a time; a concurrent call returns a skipped
        report without touching the queue.

        Returns:
            DrainReport for this pass
        """
        if self._draining:
            logger.debug("Drain already in progress, skipping")
            return DrainReport(skipped=True, reason="in_progress")

        if not self.connection.should_attempt_remote:
            logger.debug("Cannot drain: offline")
            return DrainReport(skipped=True, reason="offline")

        self._draining = True
        self._reconnected_while_draining = False
        self._state.is_syncing = True
        self._state.last_sync = datetime.now()
        await self._notify_callbacks()

        report = DrainReport()
        try:
            with LogContext(logger, "Replaying pending operations"):
                await self._drain_pass(report)
        finally:
            self._draining = False
            self._state.is_syncing = False
            self._state.pending_count = await self.queue.pending_count()
            self._state.failed_count = report.failed
            self._state.total_synced += report.applied
            self._state.conflicts.extend(report.conflicts)
            if report.failed == 0:
                self._state.last_sync_success = datetime.now()
                await self.local_db.set_setting("last_sync", self._state.last_sync_success)
            await self._notify_callbacks()

        logger.info(
            f"Drain complete: {report.applied} applied, {report.failed} failed, "
            f"{report.deferred} deferred, {len(report.conflicts)} conflicts"
        )

        reconnected = self._reconnected_while_draining
        self._reconnected_while_draining = False
        if reconnected and report.halted_collections and self.connection.is_online:
            # The reconnect drain was skipped while this pass held the guard
            logger.info(f"Connection recovered mid-pass, retrying {report.halted_collections}")
            await self.drain()
        return report

    async def _drain_pass(self, report: DrainReport) -> None:
        halted: Set[str] = set()
        pending = await self.queue.pending()

        for op in pending[: self.batch_size]:
            if self._is_halted(op.target_collection, halted):
                report.deferred += 1
                continue

            report.attempted += 1
            try:
                await self._replay(op)
            except ReplayConflict as e:
                e.details.setdefault("operation_id", op.id)
                e.details.setdefault("record_id", op.target_id)
                conflict = handle_error(e, context=f"Replaying {op.kind} {op.target_collection}")
                report.conflicts.append(conflict)
                await self.queue.remove(op.id)
                continue
            except RemoteTransientFailure as e:
                logger.warning(f"Replay of {op.id} failed, halting {op.target_collection}: {e}")
                await self.queue.mark_failed(op, e)
                halted.add(op.target_collection)
                report.failed += 1
                await self.connection.record_remote_failure(e)
                continue

            await self.queue.remove(op.id)
            report.applied += 1
            await self.connection.record_remote_success()

        report.halted_collections = sorted(halted)

    @staticmethod
    def _is_halted(collection: str, halted: Set[str]) -> bool:
        parent = COLLECTION_PARENTS.get(collection)
        return collection in halted or (parent is not None and parent in halted)

    # =========================================================================
    # REPLAY
    # =========================================================================

    async def _replay(self, op: PendingOperation) -> None:
        """Apply one operation remotely and mirror the result locally."""
        if op.kind == OperationKind.CREATE.value:
            await self._replay_create(op)
        elif op.kind in (OperationKind.UPDATE.value, OperationKind.COMPLETE.value):
            await self._replay_update(op)
        else:
            raise ReplayConflict(
                f"Unknown operation kind: {op.kind}",
                collection=op.target_collection,
                record_id=op.target_id,
                operation_id=op.id,
            )

    async def _replay_create(self, op: PendingOperation) -> None:
        record = op.payload["record"]
        stored = await self.backend.upsert(op.target_collection, translate_references(record))
        await self._mirror(op.target_collection, record, stored)

        for item in op.payload.get("items", []):
            stored_item = await self.backend.upsert("auditItems", translate_references(item))
            await self._mirror("auditItems", item, stored_item)

    async def _replay_update(self, op: PendingOperation) -> None:
        remote_id = resolve_remote_id(op.target_id)
        patch = translate_references(op.payload.get("patch", {}), fields=("audit_id",))
        stored = await self.backend.update(op.target_collection, remote_id, patch)
        if stored is None:
            raise ReplayConflict(
                f"{op.target_collection} {remote_id} no longer exists remotely",
                collection=op.target_collection,
                record_id=op.target_id,
                operation_id=op.id,
            )
        local = await self.local_db.get(op.target_collection, op.target_id)
        await self.local_db.write_through(op.target_collection, [stored], origin=local)

    async def _mirror(self, collection: str, local_record: Dict[str, Any], stored: Dict[str, Any]) -> None:
        """Write the backend row through and mark the local record as synced."""
        await self.local_db.write_through(collection, [stored], origin=local_record)
        if stored["id"] == local_record["id"]:
            return
        current = await self.local_db.get(collection, local_record["id"])
        if current is not None and current.get("synced_id") != stored["id"]:
            current["synced_id"] = stored["id"]
            await self.local_db.put(collection, local_record["id"], current)

    # =========================================================================
    # STATUS
    # =========================================================================

    def register_callback(self, callback: Callable[[SyncState], Any]) -> None:
        """Register a callback for sync state changes."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[SyncState], Any]) -> None:
        """Remove a registered callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def _notify_callbacks(self) -> None:
        """Notify all registered callbacks."""
        for callback in list(self._callbacks):
            try:
                result = callback(self._state)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in sync callback: {e}")

    def get_status_display(self) -> Dict[str, Any]:
        """Get sync status for UI display."""
        return {
            "is_syncing": self._state.is_syncing,
            "last_sync": self._state.last_sync.isoformat() if self._state.last_sync else None,
            "last_success": self._state.last_sync_success.isoformat() if self._state.last_sync_success else None,
            "pending_count": self._state.pending_count,
            "failed_count": self._state.failed_count,
            "total_synced": self._state.total_synced,
            "conflicts": len(self._state.conflicts),
        }
