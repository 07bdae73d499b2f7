# =============================================================================
# tests/unit/test_local_database.py
# Unit Tests for the Local SQLite Store
# =============================================================================

import sqlite3
from datetime import datetime
from unittest.mock import MagicMock

import numpy as np
import pytest

from audit_core.errors import DataValidationError, StorageFull
from audit_core.offline.local_database import LocalDatabase, matches_filters, to_jsonable


class FailingConnection:
    """Delegates to a real connection but fails after N statements"""

    def __init__(self, conn, fail_after):
        self.conn = conn
        self.fail_after = fail_after
        self.executed = 0

    def execute(self, *args, **kwargs):
        if self.executed >= self.fail_after:
            raise sqlite3.OperationalError("disk I/O error")
        self.executed += 1
        return self.conn.execute(*args, **kwargs)

    def commit(self):
        self.conn.commit()

    def rollback(self):
        self.conn.rollback()


class TestBasicOperations:
    """Test get/put/delete semantics"""

    @pytest.mark.asyncio
    async def test_missing_key_returns_none(self, local_db):
        assert await local_db.get("audits", "nope") is None

    @pytest.mark.asyncio
    async def test_put_then_get(self, local_db):
        await local_db.put("audits", "a1", {"id": "a1", "status": "in_progress"})
        assert await local_db.get("audits", "a1") == {"id": "a1", "status": "in_progress"}

    @pytest.mark.asyncio
    async def test_put_replaces_value(self, local_db):
        await local_db.put("audits", "a1", {"id": "a1", "score": 10})
        await local_db.put("audits", "a1", {"id": "a1", "score": 90})

        assert (await local_db.get("audits", "a1"))["score"] == 90
        assert await local_db.count("audits") == 1

    @pytest.mark.asyncio
    async def test_delete_absent_key_is_noop(self, local_db):
        await local_db.delete("audits", "ghost")
        assert await local_db.count("audits") == 0

    @pytest.mark.asyncio
    async def test_unknown_collection_rejected(self, local_db):
        with pytest.raises(DataValidationError) as exc_info:
            await local_db.get("widgets", "x")
        assert exc_info.value.code == "DATA_001"
        assert exc_info.value.details["field"] == "collection"

    @pytest.mark.asyncio
    async def test_get_all_keeps_insertion_order(self, local_db):
        for record_id in ("c", "a", "b"):
            await local_db.put("criteria", record_id, {"id": record_id})

        assert [r["id"] for r in await local_db.get_all("criteria")] == ["c", "a", "b"]

    @pytest.mark.asyncio
    async def test_values_survive_reopen(self, tmp_path):
        path = tmp_path / "reopen.db"
        db = LocalDatabase(path)
        db.initialize()
        await db.put("companies", "c1", {"id": "c1", "name": "ACME"})
        db.close()

        reopened = LocalDatabase(path)
        reopened.initialize()
        assert (await reopened.get("companies", "c1"))["name"] == "ACME"
        reopened.close()


class TestPutMany:
    """Test atomic multi-record writes"""

    @pytest.mark.asyncio
    async def test_put_many_writes_all(self, local_db):
        await local_db.put_many([
            ("audits", "a1", {"id": "a1"}),
            ("auditItems", "i1", {"id": "i1", "audit_id": "a1"}),
        ])
        assert await local_db.count("audits") == 1
        assert await local_db.count("auditItems") == 1

    @pytest.mark.asyncio
    async def test_put_many_unknown_collection_writes_nothing(self, local_db):
        with pytest.raises(DataValidationError):
            await local_db.put_many([
                ("audits", "a1", {"id": "a1"}),
                ("widgets", "w1", {"id": "w1"}),
            ])
        assert await local_db.get("audits", "a1") is None

    @pytest.mark.asyncio
    async def test_put_many_rolls_back_on_mid_write_failure(self, local_db, monkeypatch):
        real = local_db._get_connection()
        failing = FailingConnection(real, fail_after=1)
        monkeypatch.setattr(local_db, "_get_connection", lambda: failing)

        with pytest.raises(sqlite3.OperationalError):
            await local_db.put_many([
                ("audits", "a1", {"id": "a1"}),
                ("audits", "a2", {"id": "a2"}),
            ])

        monkeypatch.undo()
        assert await local_db.get("audits", "a1") is None
        assert await local_db.get("audits", "a2") is None


class TestStorageFull:
    """Test translation of exhausted storage"""

    @pytest.mark.asyncio
    async def test_full_disk_raises_storage_full(self, local_db, monkeypatch):
        conn = MagicMock()
        conn.execute.side_effect = sqlite3.OperationalError("database or disk is full")
        monkeypatch.setattr(local_db, "_get_connection", lambda: conn)

        with pytest.raises(StorageFull) as exc_info:
            await local_db.put("audits", "a1", {"id": "a1"})

        assert exc_info.value.code == "STORE_001"
        assert exc_info.value.details["collection"] == "audits"
        assert not exc_info.value.recoverable

    @pytest.mark.asyncio
    async def test_other_errors_propagate_unchanged(self, local_db, monkeypatch):
        conn = MagicMock()
        conn.execute.side_effect = sqlite3.OperationalError("database is locked")
        monkeypatch.setattr(local_db, "_get_connection", lambda: conn)

        with pytest.raises(sqlite3.OperationalError):
            await local_db.put("audits", "a1", {"id": "a1"})


class TestSequencesAndSettings:
    """Test durable counters and app settings"""

    @pytest.mark.asyncio
    async def test_next_sequence_strictly_increases(self, local_db):
        values = [await local_db.next_sequence("ops") for _ in range(5)]
        assert values == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_sequences_are_independent(self, local_db):
        await local_db.next_sequence("a")
        await local_db.next_sequence("a")
        assert await local_db.next_sequence("b") == 1

    @pytest.mark.asyncio
    async def test_setting_round_trip_and_default(self, local_db):
        assert await local_db.get_setting("last_sync", "never") == "never"
        await local_db.set_setting("render_levels", [1, 2, 3])
        assert await local_db.get_setting("render_levels") == [1, 2, 3]


class TestCollectionHelpers:
    """Test filtered reads and write-through"""

    @pytest.mark.asyncio
    async def test_find_with_membership_filter(self, local_db):
        await local_db.cache_records("auditItems", [
            {"id": "i1", "audit_id": "a1"},
            {"id": "i2", "audit_id": "a2"},
            {"id": "i3", "audit_id": "a3"},
        ])
        found = await local_db.find("auditItems", {"audit_id": ["a1", "a3"]})
        assert sorted(r["id"] for r in found) == ["i1", "i3"]

    @pytest.mark.asyncio
    async def test_environment_criteria_skips_inactive(
        self, local_db, sample_criteria, sample_links
    ):
        await local_db.cache_records("criteria", sample_criteria)
        await local_db.cache_records("environmentCriteria", sample_links)

        criteria = await local_db.get_environment_criteria(sample_links[0]["environment_id"])
        assert sorted(c["id"] for c in criteria) == ["crit-1", "crit-2", "crit-3"]

    @pytest.mark.asyncio
    async def test_write_through_keeps_cached_display_names(self, local_db):
        await local_db.put("audits", "a1", {"id": "a1", "display_location_name": "Line 1"})
        await local_db.write_through("audits", [{"id": "a1", "score": 75}])

        cached = await local_db.get("audits", "a1")
        assert cached["score"] == 75
        assert cached["display_location_name"] == "Line 1"

    @pytest.mark.asyncio
    async def test_write_through_takes_display_names_from_origin(self, local_db):
        origin = {"id": "offline_1_x", "display_company_name": "ACME"}
        rows = await local_db.write_through("audits", [{"id": "srv-1"}], origin=origin)
        assert rows[0]["display_company_name"] == "ACME"

    @pytest.mark.asyncio
    async def test_write_through_keeps_senso_tags_missing_from_row(self, local_db):
        await local_db.put("auditItems", "i1", {"id": "i1", "answer": None, "senso_tags": ["1S", "2S"]})

        rows = await local_db.write_through("auditItems", [{"id": "i1", "answer": True, "senso_tags": []}])

        cached = await local_db.get("auditItems", "i1")
        assert cached["answer"] is True
        assert cached["senso_tags"] == ["1S", "2S"]
        assert rows[0]["senso_tags"] == ["1S", "2S"]

    @pytest.mark.asyncio
    async def test_write_through_prefers_returned_senso_tags(self, local_db):
        await local_db.put("auditItems", "i1", {"id": "i1", "senso_tags": ["1S"]})
        await local_db.write_through("auditItems", [{"id": "i1", "senso_tags": ["3S"]}])
        assert (await local_db.get("auditItems", "i1"))["senso_tags"] == ["3S"]


class TestJsonCleaning:
    """Test value cleaning before serialization"""

    def test_numpy_and_datetime_values(self):
        cleaned = to_jsonable({
            "count": np.int64(3),
            "ratio": np.float64(0.5),
            "flag": np.bool_(True),
            "missing": float("nan"),
            "at": datetime(2024, 5, 1, 8, 30),
        })
        assert cleaned == {
            "count": 3,
            "ratio": 0.5,
            "flag": True,
            "missing": None,
            "at": "2024-05-01T08:30:00",
        }

    def test_matches_filters(self):
        record = {"status": "completed", "company_id": "c1"}
        assert matches_filters(record, None)
        assert matches_filters(record, {"status": "completed"})
        assert matches_filters(record, {"status": ("completed", "in_progress")})
        assert not matches_filters(record, {"company_id": "c2"})
