# =============================================================================
# audit_core/scoring/audit_score.py
# Final Score of a Single Audit
# =============================================================================

from __future__ import annotations
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Union

from audit_core.errors import AuditIncompleteError
from audit_core.models import AuditItemRecord, ScoreLevel

# Score thresholds (percent)
HIGH_THRESHOLD = 80
MEDIUM_THRESHOLD = 50


@dataclass
class AuditScore:
    """Totals stored on an audit when it is completed."""
    total_questions: int
    total_yes: int
    total_no: int
    score: int
    score_level: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _as_items(items: Iterable[Union[AuditItemRecord, Dict[str, Any]]]) -> List[AuditItemRecord]:
    return [i if isinstance(i, AuditItemRecord) else AuditItemRecord.from_dict(i) for i in items]


def score_level_for(score: int) -> ScoreLevel:
    """Map a 0-100 score to its conformity band."""
    if score >= HIGH_THRESHOLD:
        return ScoreLevel.HIGH
    if score >= MEDIUM_THRESHOLD:
        return ScoreLevel.MEDIUM
    return ScoreLevel.LOW


def validate_completion(items: Iterable[Union[AuditItemRecord, Dict[str, Any]]]) -> List[AuditItemRecord]:
    """
    Check that an audit can be completed.

    Every item must be answered, and every non-conforming item needs at
    least one photo and a comment.

    Raises:
        AuditIncompleteError: With the unanswered count or the offending item ids
    """
    records = _as_items(items)
    if not records:
        raise AuditIncompleteError("Audit has no items to complete")

    unanswered = sum(1 for item in records if item.answer is None)
    if unanswered:
        raise AuditIncompleteError(
            f"{unanswered} questions are still unanswered",
            unanswered=unanswered,
        )

    incomplete = [
        item.id for item in records
        if item.answer is False and not (item.has_photos and item.has_comment)
    ]
    if incomplete:
        raise AuditIncompleteError(
            f"{len(incomplete)} non-conforming items need a photo and a comment",
            incomplete_nonconformities=incomplete,
        )
    return records


def compute_audit_score(items: Iterable[Union[AuditItemRecord, Dict[str, Any]]]) -> AuditScore:
    """
    Compute the final totals of an audit.

    score = total_yes / total_questions * 100, rounded half up.

    Args:
        items: The audit's items (records or dicts)

    Returns:
        AuditScore
    """
    records = _as_items(items)
    total = len(records)
    if total == 0:
        raise AuditIncompleteError("Audit has no items to score")

    total_yes = sum(1 for item in records if item.answer is True)
    total_no = sum(1 for item in records if item.answer is False)
    # Integer half-up rounding of 100 * yes / total
    score = (200 * total_yes + total) // (2 * total)

    return AuditScore(
        total_questions=total,
        total_yes=total_yes,
        total_no=total_no,
        score=score,
        score_level=score_level_for(score).value,
    )
