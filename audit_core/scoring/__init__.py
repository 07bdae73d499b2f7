# =============================================================================
# audit_core/scoring/__init__.py
# Audit and Senso Scoring
# =============================================================================

from audit_core.scoring.audit_score import (
    AuditScore,
    compute_audit_score,
    score_level_for,
    validate_completion,
)

from audit_core.scoring.senso_aggregator import (
    SensoAggregator,
    SensoScoreRow,
    SensoTally,
    audit_senso_scores,
    build_tree,
    rows_to_dataframe,
)

from audit_core.scoring.score_cache import ScoreCache

__all__ = [
    # Single audit
    "AuditScore",
    "compute_audit_score",
    "score_level_for",
    "validate_completion",
    # Hierarchy
    "SensoAggregator",
    "SensoScoreRow",
    "SensoTally",
    "audit_senso_scores",
    "build_tree",
    "rows_to_dataframe",
    # Reuse
    "ScoreCache",
]
