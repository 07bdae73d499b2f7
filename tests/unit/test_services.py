# =============================================================================
# tests/unit/test_services.py
# Unit Tests for the Service Layer
# =============================================================================

import pytest

from audit_core.errors import AuditIncompleteError, DataValidationError, RemoteTransientFailure
from audit_core.offline.connection_manager import ConnectionManager
from audit_core.offline.identifiers import is_local
from audit_core.offline.sync_engine import SyncEngine
from audit_core.offline.unified_data_service import UnifiedDataService
from audit_core.scoring.score_cache import ScoreCache
from audit_core.services import AuditService, BaseService, ScoreReportService, ServiceResult


class DummyService(BaseService):
    pass


class TestBaseService:
    """Test result wrapping"""

    @pytest.mark.asyncio
    async def test_safe_execute_success(self):
        async def work(x):
            return x * 2

        result = await DummyService().safe_execute("Doubling", work, 21)

        assert result
        assert result.data == 42

    @pytest.mark.asyncio
    async def test_safe_execute_core_error(self):
        async def work():
            raise DataValidationError("bad tree", field="parent_id")

        result = await DummyService().safe_execute("Validating", work)

        assert not result
        assert result.error_code == "DATA_001"
        assert result.metadata == {"field": "parent_id"}

    @pytest.mark.asyncio
    async def test_safe_execute_unexpected_error(self):
        async def work():
            raise KeyError("x")

        result = await DummyService().safe_execute("Breaking", work)

        assert not result.success
        assert result.error_code == "UNKNOWN"

    def test_from_plain_exception(self):
        assert ServiceResult.from_exception(ValueError("v")).error_code == "EXCEPTION"


class TestAuditService:
    """Test the audit workflow online and offline"""

    @pytest.mark.asyncio
    async def test_start_online_uses_server_ids(
        self, data_service, seeded_backend, company_id, location_id, auditor_id
    ):
        aggregate = await AuditService(data_service).start_audit(company_id, location_id, auditor_id)

        assert not is_local(aggregate.audit.id)
        assert aggregate.audit.total_questions == 3
        assert len(seeded_backend.rows("auditItems")) == 3
        assert data_service.pending_sync_count == 0

    @pytest.mark.asyncio
    async def test_start_offline_uses_cached_criteria(
        self, data_service, seeded_backend, connection, company_id, location_id, auditor_id
    ):
        await data_service.pull_company(company_id)
        await connection.set_network_reachable(False)

        aggregate = await AuditService(data_service).start_audit(company_id, location_id, auditor_id)

        assert is_local(aggregate.audit.id)
        assert len(aggregate.items) == 3
        assert aggregate.audit.display_location_name == "Line 1"
        assert seeded_backend.rows("audits") == []

    @pytest.mark.asyncio
    async def test_remote_failure_falls_back_offline(
        self, data_service, seeded_backend, company_id, location_id, auditor_id
    ):
        await data_service.pull_company(company_id)
        seeded_backend.unreachable = True

        aggregate = await AuditService(data_service).start_audit(company_id, location_id, auditor_id)

        assert is_local(aggregate.audit.id)
        assert data_service.pending_sync_count == 1

    @pytest.mark.asyncio
    async def test_item_failure_after_audit_insert_queues_remaining_items(
        self, data_service, seeded_backend, local_db, monkeypatch,
        company_id, location_id, auditor_id,
    ):
        real_insert = seeded_backend.insert

        async def insert(collection, record):
            if collection == "auditItems" and seeded_backend.rows("auditItems"):
                raise RemoteTransientFailure("Injected failure", operation="insert", table=collection)
            return await real_insert(collection, record)

        monkeypatch.setattr(seeded_backend, "insert", insert)

        aggregate = await AuditService(data_service).start_audit(company_id, location_id, auditor_id)

        (remote_audit,) = seeded_backend.rows("audits")
        assert aggregate.audit.id == remote_audit["id"]
        assert [a["id"] for a in await local_db.get_all("audits")] == [remote_audit["id"]]
        assert [is_local(item.id) for item in aggregate.items] == [False, True, True]
        assert all(item.audit_id == remote_audit["id"] for item in aggregate.items)
        pending = await data_service.sync_engine.queue.pending()
        assert [(op.kind, op.target_collection) for op in pending] == [
            ("create", "auditItems"),
            ("create", "auditItems"),
        ]

        await data_service.sync_now()

        remote_items = seeded_backend.rows("auditItems")
        assert len(remote_items) == 3
        assert {item["audit_id"] for item in remote_items} == {remote_audit["id"]}
        assert len(seeded_backend.rows("audits")) == 1
        assert data_service.pending_sync_count == 0

    @pytest.mark.asyncio
    async def test_queued_items_are_answered_and_completed(
        self, data_service, seeded_backend, monkeypatch, company_id, location_id, auditor_id
    ):
        real_insert = seeded_backend.insert

        async def insert(collection, record):
            if collection == "auditItems":
                raise RemoteTransientFailure("Injected failure", operation="insert", table=collection)
            return await real_insert(collection, record)

        monkeypatch.setattr(seeded_backend, "insert", insert)
        service = AuditService(data_service)
        aggregate = await service.start_audit(company_id, location_id, auditor_id)
        for item in aggregate.items:
            await service.answer_item(item.id, True)

        await data_service.sync_now()
        audit = await service.complete_audit(aggregate.audit.id)

        assert audit.score == 100
        assert seeded_backend.rows("audits")[0]["status"] == "completed"
        assert all(item["answer"] is True for item in seeded_backend.rows("auditItems"))

    @pytest.mark.asyncio
    async def test_remote_failure_below_threshold_is_raised(
        self, local_db, seeded_backend, company_id, location_id, auditor_id
    ):
        connection = ConnectionManager(degraded_failure_threshold=5)
        service = UnifiedDataService(
            local_db, seeded_backend, connection, SyncEngine(local_db, seeded_backend, connection)
        )
        seeded_backend.unreachable = True

        with pytest.raises(RemoteTransientFailure):
            await AuditService(service).start_audit(company_id, location_id, auditor_id)

    @pytest.mark.asyncio
    async def test_complete_online(
        self, data_service, seeded_backend, company_id, location_id, auditor_id
    ):
        service = AuditService(data_service)
        aggregate = await service.start_audit(company_id, location_id, auditor_id)
        first, *rest = aggregate.items
        await service.answer_item(first.id, False, comment="Clutter", photo_refs=["p.jpg"])
        for item in rest:
            await service.answer_item(item.id, True)

        audit = await service.complete_audit(aggregate.audit.id, observations="Mostly fine")

        assert audit.score == 67
        assert audit.score_level == "medium"
        remote = seeded_backend.rows("audits")[0]
        assert remote["status"] == "completed"
        assert remote["total_no"] == 1

    @pytest.mark.asyncio
    async def test_complete_online_requires_answers(
        self, data_service, seeded_backend, company_id, location_id, auditor_id
    ):
        service = AuditService(data_service)
        aggregate = await service.start_audit(company_id, location_id, auditor_id)

        with pytest.raises(AuditIncompleteError):
            await service.complete_audit(aggregate.audit.id)
        assert seeded_backend.rows("audits")[0]["status"] == "in_progress"

    @pytest.mark.asyncio
    async def test_save_audit_result_queued_offline(
        self, data_service, seeded_backend, connection, company_id, location_id, auditor_id
    ):
        service = AuditService(data_service)
        aggregate = await service.start_audit(company_id, location_id, auditor_id)
        await connection.set_network_reachable(False)

        result = await service.save_audit_result(
            aggregate.audit.id, observations="Recheck shelves", next_audit_date="2024-07-01"
        )

        assert result.queued
        assert result.record["next_audit_date"] == "2024-07-01"
        assert seeded_backend.rows("audits")[0]["observations"] is None


class TestScoreReportService:
    """Test report computation and reuse"""

    @pytest.fixture
    def completed_audit(self, seeded_backend, company_id, location_id):
        seeded_backend.seed("audits", [
            {"id": "a1", "company_id": company_id, "location_id": location_id, "status": "completed"},
            {"id": "a2", "company_id": company_id, "location_id": location_id, "status": "in_progress"},
        ])
        seeded_backend.seed("auditItems", [
            {"id": "i1", "audit_id": "a1", "criterion_id": "crit-1", "answer": True, "senso_tags": ["1S"]},
            {"id": "i2", "audit_id": "a1", "criterion_id": "crit-1", "answer": False, "senso_tags": ["1S"]},
            {"id": "i3", "audit_id": "a2", "criterion_id": "crit-2", "answer": False, "senso_tags": ["2S"]},
        ])
        return seeded_backend

    @pytest.mark.asyncio
    async def test_only_completed_audits_count(self, data_service, completed_audit, company_id, location_id):
        rows = await ScoreReportService(data_service).company_scores(company_id)

        line = next(row for row in rows if row.node_id == location_id)
        assert line.scores["1S"] == 50
        assert line.scores["2S"] is None
        assert [row.level for row in rows] == [1, 2, 2]

    @pytest.mark.asyncio
    async def test_rows_reused_until_refresh(self, data_service, completed_audit, company_id):
        cache = ScoreCache()
        service = ScoreReportService(data_service, cache=cache)

        first = await service.company_scores(company_id)
        fetches = len(completed_audit.calls_for("fetch"))
        second = await service.company_scores(company_id)

        assert second is first
        assert len(completed_audit.calls_for("fetch")) == fetches
        assert cache.get_cache_stats()["hits"] == 1

        service.refresh(company_id)
        third = await service.company_scores(company_id)
        assert third is not first

    @pytest.mark.asyncio
    async def test_dataframe_export(self, data_service, completed_audit, company_id):
        df = await ScoreReportService(data_service).company_scores_dataframe(company_id)
        assert list(df["name"]) == ["Assembly", "Line 1", "Line 2"]


class TestScoreCache:
    """Test the memo itself"""

    def test_version_mismatch_is_a_miss(self):
        cache = ScoreCache()
        cache.put("c1", 1, [])

        assert cache.get("c1", 2) is None
        assert cache.get("c1", 1) == []
        assert cache.get_cache_stats() == {"entries": 1, "hits": 1, "misses": 1}

    def test_get_or_compute_computes_once(self):
        cache = ScoreCache()
        calls = []

        def compute():
            calls.append(1)
            return []

        cache.get_or_compute("c1", 1, compute)
        cache.get_or_compute("c1", 1, compute)
        assert len(calls) == 1

    def test_invalidate_all(self):
        cache = ScoreCache()
        cache.put("c1", 1, [])
        cache.put("c2", 1, [])
        cache.invalidate()
        assert cache.get_cache_stats()["entries"] == 0
