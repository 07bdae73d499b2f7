# =============================================================================
# audit_core/offline/identifiers.py
# Local vs. Backend Identifier Allocation
# =============================================================================
"""
Identifiers come in two variants:

- server ids: opaque strings issued by the backend (UUIDs)
- local ids:  ``offline_<epoch-ms>_<uuid4 hex>``, created on the device

``is_local`` is the only place that knows the local id format. Callers route
on it and never inspect id strings themselves.
"""

from __future__ import annotations
import time
import uuid
from typing import Any, Dict, Iterable, Optional

LOCAL_ID_PREFIX = "offline_"

# Namespace for deriving the backend key of a replayed local entity
_REMOTE_NAMESPACE = uuid.UUID("6f1c7d0e-5a3b-4f0e-9c6d-5e5a0d1f7b21")


def is_local(record_id: Optional[str]) -> bool:
    """Return True when the id was allocated on this device."""
    return isinstance(record_id, str) and record_id.startswith(LOCAL_ID_PREFIX)


def new_local_id() -> str:
    """
    Allocate a fresh local id.

    The prefix keeps it disjoint from backend UUIDs and the random part
    keeps it unique among local ids.
    """
    return f"{LOCAL_ID_PREFIX}{int(time.time() * 1000)}_{uuid.uuid4().hex}"


def server_id_for(local_id: str) -> str:
    """
    Backend key used when a locally created entity is replayed.

    Deterministic, so a replayed create is an upsert on the same key no
    matter how many times it runs.
    """
    if not is_local(local_id):
        raise ValueError(f"Not a local id: {local_id!r}")
    return str(uuid.uuid5(_REMOTE_NAMESPACE, local_id))


def resolve_remote_id(record_id: str) -> str:
    """Map any id to the key the backend knows it by."""
    return server_id_for(record_id) if is_local(record_id) else record_id


def translate_references(
    record: Dict[str, Any],
    fields: Iterable[str] = ("id", "audit_id"),
) -> Dict[str, Any]:
    """Copy of ``record`` with identifier fields mapped to backend keys."""
    translated = dict(record)
    for name in fields:
        value = translated.get(name)
        if value is not None:
            translated[name] = resolve_remote_id(value)
    return translated
