# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import pytest
from typing import Dict, List
from unittest.mock import MagicMock

from audit_core.data.memory_backend import InMemoryBackend
from audit_core.offline.connection_manager import ConnectionManager
from audit_core.offline.local_database import LocalDatabase
from audit_core.offline.sync_engine import SyncEngine
from audit_core.offline.unified_data_service import UnifiedDataService


COMPANY_ID = "c0000000-0000-4000-8000-000000000001"
LOCATION_ID = "e0000000-0000-4000-8000-000000000003"
AUDITOR_ID = "a0000000-0000-4000-8000-000000000001"


# =============================================================================
# SAMPLE DATA FIXTURES
# =============================================================================

@pytest.fixture
def company_id() -> str:
    return COMPANY_ID


@pytest.fixture
def location_id() -> str:
    return LOCATION_ID


@pytest.fixture
def auditor_id() -> str:
    return AUDITOR_ID


@pytest.fixture
def sample_environments() -> List[Dict]:
    """Company root -> area -> two locations"""
    return [
        {"id": COMPANY_ID, "name": "ACME Plant", "parent_id": None, "company_id": COMPANY_ID},
        {"id": "e-area", "name": "Assembly", "parent_id": COMPANY_ID, "company_id": COMPANY_ID},
        {"id": LOCATION_ID, "name": "Line 1", "parent_id": "e-area", "company_id": COMPANY_ID},
        {"id": "e-line-2", "name": "Line 2", "parent_id": "e-area", "company_id": COMPANY_ID},
    ]


@pytest.fixture
def sample_criteria() -> List[Dict]:
    """Three active criteria and one inactive"""
    return [
        {"id": "crit-1", "company_id": COMPANY_ID, "name": "Only needed tools at the bench", "senso": "1S", "status": "active"},
        {"id": "crit-2", "company_id": COMPANY_ID, "name": "Tools have marked places", "senso": "2S", "status": "active"},
        {"id": "crit-3", "company_id": COMPANY_ID, "name": "Floor is clean", "senso": "3S", "status": "active"},
        {"id": "crit-4", "company_id": COMPANY_ID, "name": "Retired check", "senso": "4S", "status": "inactive"},
    ]


@pytest.fixture
def sample_links() -> List[Dict]:
    """Environment-criteria links for the audited location"""
    return [
        {"id": f"link-{n}", "environment_id": LOCATION_ID, "criterion_id": f"crit-{n}"}
        for n in (1, 2, 3, 4)
    ]


# =============================================================================
# OFFLINE STACK FIXTURES
# =============================================================================

@pytest.fixture
def local_db(tmp_path):
    """Initialized SQLite store in a temporary directory"""
    db = LocalDatabase(tmp_path / "audit_offline.db")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def backend():
    """In-memory remote backend with a short timeout"""
    return InMemoryBackend(timeout=0.5)


@pytest.fixture
def connection():
    """Connectivity state machine, starting online"""
    return ConnectionManager(degraded_failure_threshold=1)


@pytest.fixture
def sync_engine(local_db, backend, connection):
    return SyncEngine(local_db, backend, connection)


@pytest.fixture
def data_service(local_db, backend, connection, sync_engine):
    return UnifiedDataService(local_db, backend, connection, sync_engine)


@pytest.fixture
def seeded_backend(backend, sample_environments, sample_criteria, sample_links):
    """Backend holding a company's reference data"""
    backend.seed("companies", [{"id": COMPANY_ID, "name": "ACME"}])
    backend.seed("environments", sample_environments)
    backend.seed("criteria", sample_criteria)
    backend.seed("environmentCriteria", sample_links)
    return backend


# =============================================================================
# MOCK FIXTURES
# =============================================================================

@pytest.fixture
def mock_supabase():
    """Mock Supabase client"""
    mock_client = MagicMock()
    table = mock_client.table.return_value
    table.select.return_value.eq.return_value.limit.return_value.execute.return_value.data = []
    table.select.return_value.range.return_value.execute.return_value.data = []
    table.insert.return_value.execute.return_value.data = []
    table.upsert.return_value.execute.return_value.data = []
    table.update.return_value.eq.return_value.execute.return_value.data = []
    return mock_client
