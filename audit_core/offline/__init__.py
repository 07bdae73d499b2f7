# =============================================================================
# audit_core/offline/__init__.py
# Offline-First Architecture for 5S Audits
# =============================================================================
"""
Offline-First Architecture Module

Audits can be created, answered and completed with no network access. Work
done offline is stored locally and replayed to the backend when connectivity
returns, without duplication and in the order it was made.

Architecture:
------------
┌─────────────────────────────────────────────────────────────────┐
│                    OFFLINE-FIRST ARCHITECTURE                    │
├─────────────────────────────────────────────────────────────────┤
│                                                                  │
│   ┌──────────────────────────────────────────────────────────┐  │
│   │                 UnifiedDataService                        │  │
│   │      (cache-aside reads, write-through, queued writes)    │  │
│   └──────────────────────────────────────────────────────────┘  │
│                            │                                     │
│              ┌─────────────┴─────────────┐                      │
│              ▼                           ▼                      │
│   ┌──────────────────┐        ┌──────────────────────┐         │
│   │  ConnectionMgr   │        │ OfflineAuditFactory  │         │
│   │ (online/offline/ │        │ (local audits)       │         │
│   │  degraded)       │        └──────────────────────┘         │
│   └──────────────────┘                                          │
│              │                                                   │
│   ┌──────────┴──────────┐                                       │
│   ▼                     ▼                                       │
│ ┌────────┐        ┌──────────┐                                  │
│ │Supabase│◄──────►│  SQLite  │                                  │
│ │(Cloud) │ Replay │ (Local)  │                                  │
│ └────────┘        └──────────┘                                  │
│              ▲                                                   │
│              │                                                   │
│   ┌──────────────────┐                                          │
│   │   SyncEngine     │                                          │
│   │ (pending queue)  │                                          │
│   └──────────────────┘                                          │
└─────────────────────────────────────────────────────────────────┘

Usage:
------
from audit_core.offline import get_data_service

service = await get_data_service()
result = await service.list_company_audits(company_id)
print(service.is_online, service.pending_sync_count)
"""

from audit_core.offline.connection_manager import (
    ConnectionManager,
    ConnectionState,
    ConnectionStatus,
    probe_backend,
)

from audit_core.offline.identifiers import (
    is_local,
    new_local_id,
    resolve_remote_id,
    server_id_for,
)

from audit_core.offline.local_database import (
    COLLECTIONS,
    LocalDatabase,
)

from audit_core.offline.sync_engine import (
    DrainReport,
    SyncEngine,
    SyncQueue,
    SyncState,
)

from audit_core.offline.unified_data_service import (
    ReadResult,
    RequestGenerationGuard,
    UnifiedDataService,
    WriteResult,
    build_data_service,
    get_data_service,
)

from audit_core.offline.offline_audits import OfflineAuditFactory

__all__ = [
    # Connection Management
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    "probe_backend",
    # Identifiers
    "is_local",
    "new_local_id",
    "resolve_remote_id",
    "server_id_for",
    # Local Database
    "COLLECTIONS",
    "LocalDatabase",
    # Sync Engine
    "DrainReport",
    "SyncEngine",
    "SyncQueue",
    "SyncState",
    # Unified Service (Main API)
    "ReadResult",
    "RequestGenerationGuard",
    "UnifiedDataService",
    "WriteResult",
    "build_data_service",
    "get_data_service",
    # Offline audits
    "OfflineAuditFactory",
]
