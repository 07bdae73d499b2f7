# =============================================================================
# audit_core/models.py
# Domain Records for 5S Audits
# =============================================================================
"""
Dataclasses for the records the core moves between the remote backend and
the local store. Dictionaries use the backend's snake_case row shape; local
only fields (display names, synced_id) ride along in the same document.
"""

from __future__ import annotations
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from audit_core.errors import DataValidationError


SENSO_KEYS = ("1S", "2S", "3S", "4S", "5S")

SENSO_NAMES = {
    "1S": "Seiri (Sort)",
    "2S": "Seiton (Set in order)",
    "3S": "Seiso (Shine)",
    "4S": "Seiketsu (Standardize)",
    "5S": "Shitsuke (Sustain)",
}

# Fields that only exist in the local store, never sent to the backend
LOCAL_ONLY_FIELDS = ("display_location_name", "display_company_name", "synced_id")


class AuditStatus(Enum):
    """Audit lifecycle states."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ScoreLevel(Enum):
    """Conformity bands used for the final audit score."""
    HIGH = "high"        # score >= 80
    MEDIUM = "medium"    # 50 <= score < 80
    LOW = "low"          # score < 50


class OperationKind(Enum):
    """Kinds of deferred mutation held in the pending queue."""
    CREATE = "create"
    UPDATE = "update"
    COMPLETE = "complete"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def normalize_senso_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """
    Validate and order a senso tag collection.

    Duplicates are dropped and tags are kept in 1S..5S order.
    """
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = [tags]
    unique = set(tags)
    unknown = unique - set(SENSO_KEYS)
    if unknown:
        raise DataValidationError(
            f"Unknown senso categories: {sorted(unknown)}",
            field="senso_tags",
            expected=", ".join(SENSO_KEYS),
        )
    return [key for key in SENSO_KEYS if key in unique]


@dataclass
class AuditRecord:
    """An audit of one location by one auditor."""
    id: str
    company_id: str
    location_id: str
    auditor_id: str
    status: str = AuditStatus.IN_PROGRESS.value
    started_at: str = field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None
    total_questions: int = 0
    total_yes: int = 0
    total_no: int = 0
    score: Optional[int] = None
    score_level: Optional[str] = None
    observations: Optional[str] = None
    next_audit_date: Optional[str] = None
    # Local-only fields (see LOCAL_ONLY_FIELDS)
    display_location_name: Optional[str] = None
    display_company_name: Optional[str] = None
    synced_id: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.status == AuditStatus.COMPLETED.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AuditRecord:
        return cls(**_known_fields(cls, data))


@dataclass
class AuditItemRecord:
    """One checklist question of an audit."""
    id: str
    audit_id: str
    criterion_id: str
    question: str
    answer: Optional[bool] = None
    photo_refs: List[str] = field(default_factory=list)
    comment: Optional[str] = None
    senso_tags: List[str] = field(default_factory=list)
    synced_id: Optional[str] = None

    def __post_init__(self):
        self.senso_tags = normalize_senso_tags(self.senso_tags)
        self.photo_refs = list(self.photo_refs or [])

    @property
    def has_photos(self) -> bool:
        return len(self.photo_refs) > 0

    @property
    def has_comment(self) -> bool:
        return bool(self.comment and self.comment.strip())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AuditItemRecord:
        data = dict(data)
        if "senso_tags" not in data and "senso" in data:
            data["senso_tags"] = data.get("senso") or []
        return cls(**_known_fields(cls, data))


@dataclass
class AuditAggregate:
    """An audit together with its items."""
    audit: AuditRecord
    items: List[AuditItemRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "audit": self.audit.to_dict(),
            "items": [item.to_dict() for item in self.items],
        }


@dataclass
class EnvironmentNode:
    """A node of a company's organizational tree; level 0 is the company root."""
    id: str
    name: str
    parent_id: Optional[str] = None
    company_id: Optional[str] = None
    status: str = "active"
    level: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> EnvironmentNode:
        return cls(**_known_fields(cls, data))


@dataclass
class PendingOperation:
    """A durable, self-contained mutation waiting for remote application."""
    id: str
    sequence: int
    kind: str
    target_collection: str
    target_id: str
    payload: Dict[str, Any]
    enqueued_at: str = field(default_factory=utc_now_iso)
    attempts: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PendingOperation:
        return cls(**_known_fields(cls, data))
