# =============================================================================
# audit_core/offline/offline_audits.py
# Offline Audit Construction and Completion
# =============================================================================
"""
OfflineAuditFactory - Builds and completes audits with no network access.

An audit created here gets a local id, one item per applicable criterion,
and a single queued ``create`` operation carrying the whole aggregate.
Completion computes the final totals locally and queues one ``complete``
operation with the computed fields.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional
import logging

from audit_core.errors import NotAvailableOffline, OfflineRoutingError
from audit_core.models import (
    AuditAggregate,
    AuditItemRecord,
    AuditRecord,
    AuditStatus,
    OperationKind,
    utc_now_iso,
)
from audit_core.offline.connection_manager import ConnectionManager
from audit_core.offline.identifiers import new_local_id
from audit_core.offline.local_database import LocalDatabase
from audit_core.offline.sync_engine import SyncEngine
from audit_core.scoring.audit_score import compute_audit_score, validate_completion

logger = logging.getLogger(__name__)


class OfflineAuditFactory:
    """
    Creates audits entirely in the local store.

    Usage:
        factory = OfflineAuditFactory(local_db, sync_engine, connection)
        aggregate = await factory.create_audit(company_id, location_id, auditor_id)
    """

    def __init__(
        self,
        local_db: LocalDatabase,
        sync_engine: SyncEngine,
        connection: ConnectionManager,
    ):
        self.local_db = local_db
        self.sync_engine = sync_engine
        self.connection = connection

    async def applicable_criteria(self, location_id: str) -> List[Dict[str, Any]]:
        """Active cached criteria linked to the location."""
        return await self.local_db.get_environment_criteria(location_id)

    async def _display_name(self, collection: str, record_id: str) -> Optional[str]:
        record = await self.local_db.get(collection, record_id)
        return record.get("name") if record else None

    @staticmethod
    def _build_item(audit_id: str, criterion: Dict[str, Any]) -> AuditItemRecord:
        return AuditItemRecord(
            id=new_local_id(),
            audit_id=audit_id,
            criterion_id=criterion["id"],
            question=criterion.get("name") or criterion.get("question") or "",
            senso_tags=criterion.get("senso") or criterion.get("senso_tags") or [],
        )

    async def create_audit(
        self,
        company_id: str,
        location_id: str,
        auditor_id: str,
        criteria: Optional[List[Dict[str, Any]]] = None,
        display_location_name: Optional[str] = None,
        display_company_name: Optional[str] = None,
    ) -> AuditAggregate:
        """
        Create an audit and its items locally and queue their creation.

        Args:
            company_id: Company being audited
            location_id: Environment node audited
            auditor_id: Auditor performing the audit
            criteria: Criteria to build items from (default: cached criteria
                linked to the location)
            display_location_name: Name shown while offline
            display_company_name: Name shown while offline

        Returns:
            AuditAggregate with local ids

        Raises:
            OfflineRoutingError: Connectivity does not confirm offline routing
        """
        if not self.connection.confirms_offline_routing:
            raise OfflineRoutingError(
                "Offline audit creation requested while the backend is reachable",
                status=self.connection.status.value,
            )

        if criteria is None:
            criteria = await self.applicable_criteria(location_id)

        audit = AuditRecord(
            id=new_local_id(),
            company_id=company_id,
            location_id=location_id,
            auditor_id=auditor_id,
            total_questions=len(criteria),
            display_location_name=(
                display_location_name or await self._display_name("environments", location_id)
            ),
            display_company_name=(
                display_company_name or await self._display_name("companies", company_id)
            ),
        )
        items = [self._build_item(audit.id, criterion) for criterion in criteria]

        audit_row = audit.to_dict()
        item_rows = [item.to_dict() for item in items]
        entries = [("audits", audit.id, audit_row)]
        entries.extend(("auditItems", row["id"], row) for row in item_rows)

        op = await self.sync_engine.enqueue(
            OperationKind.CREATE,
            "audits",
            audit.id,
            {"record": audit_row, "items": item_rows},
            alongside=entries,
        )
        logger.info(f"Created offline audit {audit.id} with {len(items)} items (queued as {op.id})")
        return AuditAggregate(audit=audit, items=items)

    async def queue_items(
        self,
        audit_id: str,
        criteria: List[Dict[str, Any]],
    ) -> List[AuditItemRecord]:
        """
        Add items to an audit the backend already holds, locally + queued.

        Used when the remote audit insert went through but its items could
        not be inserted. Each item gets a local id and its own ``create``
        entry, replayed against the existing backend audit.

        Args:
            audit_id: Backend id of the audit
            criteria: Criteria still lacking an item

        Returns:
            The queued items (local ids)
        """
        items = [self._build_item(audit_id, criterion) for criterion in criteria]
        for item in items:
            row = item.to_dict()
            await self.sync_engine.enqueue(
                OperationKind.CREATE,
                "auditItems",
                item.id,
                {"record": row},
                alongside=[("auditItems", item.id, row)],
            )
        logger.info(f"Queued {len(items)} items for backend audit {audit_id}")
        return items

    async def complete_audit(
        self,
        audit_id: str,
        observations: Optional[str] = None,
        next_audit_date: Optional[str] = None,
    ) -> AuditRecord:
        """
        Complete an audit from its cached items and queue the result.

        Raises:
            NotAvailableOffline: Audit is not in the local store
            AuditIncompleteError: Unanswered items or undocumented nonconformities
        """
        audit_row = await self.local_db.get("audits", audit_id)
        if audit_row is None:
            raise NotAvailableOffline(collection="audits", record_id=audit_id)

        items = validate_completion(await self.local_db.get_audit_items(audit_id))
        result = compute_audit_score(items)

        patch: Dict[str, Any] = result.to_dict()
        patch.update({
            "status": AuditStatus.COMPLETED.value,
            "completed_at": utc_now_iso(),
            "observations": observations,
            "next_audit_date": next_audit_date,
        })

        completed = {**audit_row, **patch}
        entries = [("audits", audit_id, completed)]
        synced_id = audit_row.get("synced_id")
        if synced_id:
            server_copy = await self.local_db.get("audits", synced_id)
            if server_copy is not None:
                entries.append(("audits", synced_id, {**server_copy, **patch, "id": synced_id}))

        await self.sync_engine.enqueue(
            OperationKind.COMPLETE,
            "audits",
            audit_id,
            {"patch": patch},
            alongside=entries,
        )
        logger.info(
            f"Completed audit {audit_id} offline: score {result.score} ({result.score_level})"
        )
        return AuditRecord.from_dict(completed)
