# =============================================================================
# audit_core/services/audit_service.py
# Audit Workflow: Start, Answer, Complete
# =============================================================================
"""
AuditService - End-to-end audit flow that works online and offline.

- start_audit: remote insert when online; offline construction when the
  backend is unreachable or the audit insert fails. Once the audit exists
  remotely, items that fail to insert are queued against it
- answer_item: routed through the unified data service (queued offline)
- complete_audit: remote update of the computed totals when possible,
  otherwise local completion plus one queued ``complete`` operation
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional

from audit_core.errors import RemoteTransientFailure
from audit_core.models import (
    AuditAggregate,
    AuditItemRecord,
    AuditRecord,
    AuditStatus,
    OperationKind,
    utc_now_iso,
)
from audit_core.offline.identifiers import is_local
from audit_core.offline.offline_audits import OfflineAuditFactory
from audit_core.offline.unified_data_service import ReadResult, UnifiedDataService, WriteResult
from audit_core.scoring.audit_score import compute_audit_score, validate_completion
from .base_service import BaseService


class AuditService(BaseService):
    """
    Service for running audits.

    Usage:
        service = AuditService(data_service)
        aggregate = await service.start_audit(company_id, location_id, auditor_id)
        await service.answer_item(aggregate.items[0].id, True)
        audit = await service.complete_audit(aggregate.audit.id)
    """

    def __init__(
        self,
        data_service: UnifiedDataService,
        factory: Optional[OfflineAuditFactory] = None,
    ):
        super().__init__()
        self.data = data_service
        self.factory = factory or OfflineAuditFactory(
            data_service.local_db,
            data_service.sync_engine,
            data_service.connection,
        )

    async def _display_name(self, collection: str, record_id: str) -> Optional[str]:
        record = await self.data.local_db.get(collection, record_id)
        return record.get("name") if record else None

    async def _remote_criteria(self, location_id: str) -> List[Dict[str, Any]]:
        links = (await self.data.list_environment_criteria(location_id)).value
        criterion_ids = [link["criterion_id"] for link in links]
        if not criterion_ids:
            return []
        criteria = (await self.data.read_many("criteria", {"id": criterion_ids})).value
        return [c for c in criteria if c.get("status", "active") == "active"]

    # =========================================================================
    # START
    # =========================================================================

    async def start_audit(
        self,
        company_id: str,
        location_id: str,
        auditor_id: str,
    ) -> AuditAggregate:
        """
        Start an audit of one location.

        Returns:
            AuditAggregate (server ids online, local ids offline)
        """
        connection = self.data.connection
        if not connection.confirms_offline_routing:
            try:
                return await self._start_remote(company_id, location_id, auditor_id)
            except RemoteTransientFailure as e:
                if not connection.confirms_offline_routing:
                    raise
                self.logger.warning(f"Remote audit creation failed, creating offline: {e}")

        with self.log_operation(f"Creating offline audit for {location_id}"):
            return await self.factory.create_audit(company_id, location_id, auditor_id)

    async def _start_remote(
        self,
        company_id: str,
        location_id: str,
        auditor_id: str,
    ) -> AuditAggregate:
        criteria = await self._remote_criteria(location_id)

        audit_row = AuditRecord(
            id="",
            company_id=company_id,
            location_id=location_id,
            auditor_id=auditor_id,
            total_questions=len(criteria),
            display_location_name=await self._display_name("environments", location_id),
            display_company_name=await self._display_name("companies", company_id),
        ).to_dict()
        audit_row.pop("id")
        stored = await self.data.create_record("audits", audit_row)

        items: List[AuditItemRecord] = []
        for index, criterion in enumerate(criteria):
            item_row = AuditItemRecord(
                id="",
                audit_id=stored["id"],
                criterion_id=criterion["id"],
                question=criterion.get("name") or "",
                senso_tags=criterion.get("senso") or [],
            ).to_dict()
            item_row.pop("id")
            try:
                created = await self.data.create_record("auditItems", item_row)
            except RemoteTransientFailure as e:
                # The audit exists remotely; its remaining items go through the queue
                self.logger.warning(
                    f"Item insert for audit {stored['id']} failed, queueing "
                    f"{len(criteria) - index} items: {e}"
                )
                items.extend(await self.factory.queue_items(stored["id"], criteria[index:]))
                break
            items.append(AuditItemRecord.from_dict(created))

        self.logger.info(f"Created audit {stored['id']} with {len(items)} items")
        return AuditAggregate(audit=AuditRecord.from_dict(stored), items=items)

    # =========================================================================
    # ANSWER / READ
    # =========================================================================

    async def answer_item(
        self,
        item_id: str,
        answer: Optional[bool],
        comment: Optional[str] = None,
        photo_refs: Optional[List[str]] = None,
    ) -> WriteResult:
        """Record the answer for one item."""
        return await self.data.save_item_answer(item_id, answer, comment, photo_refs)

    async def get_audit(self, audit_id: str) -> ReadResult:
        """Audit with items, from the backend or the cache."""
        return await self.data.get_audit_aggregate(audit_id)

    # =========================================================================
    # COMPLETE
    # =========================================================================

    async def complete_audit(
        self,
        audit_id: str,
        observations: Optional[str] = None,
        next_audit_date: Optional[str] = None,
    ) -> AuditRecord:
        """
        Validate and complete an audit.

        Raises:
            AuditIncompleteError: Unanswered items or undocumented nonconformities
        """
        if is_local(audit_id) or not self.data.connection.should_attempt_remote:
            return await self.factory.complete_audit(audit_id, observations, next_audit_date)

        with self.log_operation(f"Completing audit {audit_id}"):
            items = (await self.data.get_audit_items(audit_id)).value
            result = compute_audit_score(validate_completion(items))

            patch: Dict[str, Any] = result.to_dict()
            patch.update({
                "status": AuditStatus.COMPLETED.value,
                "completed_at": utc_now_iso(),
                "observations": observations,
                "next_audit_date": next_audit_date,
            })
            written = await self.data.update_record(
                "audits", audit_id, patch, kind=OperationKind.COMPLETE
            )
        return AuditRecord.from_dict(written.record)

    async def save_audit_result(
        self,
        audit_id: str,
        observations: Optional[str] = None,
        next_audit_date: Optional[str] = None,
    ) -> WriteResult:
        """Update observations and the next audit date of a completed audit."""
        return await self.data.update_record(
            "audits",
            audit_id,
            {"observations": observations, "next_audit_date": next_audit_date},
        )
