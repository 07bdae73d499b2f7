# =============================================================================
# audit_core/data/__init__.py
# Remote Backends
# =============================================================================

from audit_core.data.supabase_client import (
    TABLES,
    BaseRemoteBackend,
    SupabaseBackend,
    from_remote_row,
    get_supabase_client,
    to_remote_row,
)

from audit_core.data.memory_backend import InMemoryBackend

__all__ = [
    "TABLES",
    "BaseRemoteBackend",
    "SupabaseBackend",
    "InMemoryBackend",
    "from_remote_row",
    "get_supabase_client",
    "to_remote_row",
]
