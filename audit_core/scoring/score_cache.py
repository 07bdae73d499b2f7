# =============================================================================
# audit_core/scoring/score_cache.py
# Reuse of Aggregation Results per Data Refresh
# =============================================================================
"""
Aggregating a large tree is done once per data refresh and reused by every
consumer of that refresh. Entries are keyed by company and a refresh version
supplied by the caller; a new version replaces the old entry.
"""

from __future__ import annotations
from typing import Callable, Dict, Hashable, List, Optional, Tuple
import logging

from audit_core.scoring.senso_aggregator import SensoScoreRow

logger = logging.getLogger(__name__)


class ScoreCache:
    """In-memory memo of score rows per company."""

    def __init__(self):
        self._entries: Dict[str, Tuple[Hashable, List[SensoScoreRow]]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, company_id: str, version: Hashable) -> Optional[List[SensoScoreRow]]:
        entry = self._entries.get(company_id)
        if entry is None or entry[0] != version:
            self.misses += 1
            return None
        self.hits += 1
        return entry[1]

    def put(self, company_id: str, version: Hashable, rows: List[SensoScoreRow]) -> None:
        self._entries[company_id] = (version, rows)
        logger.debug(f"Cached {len(rows)} score rows for company {company_id} (version {version})")

    def get_or_compute(
        self,
        company_id: str,
        version: Hashable,
        compute: Callable[[], List[SensoScoreRow]],
    ) -> List[SensoScoreRow]:
        """
        Return cached rows for this refresh, computing them on first use.

        Args:
            company_id: Company the rows belong to
            version: Identifier of the data refresh the rows derive from
            compute: Produces the rows when not cached

        Returns:
            Score rows
        """
        rows = self.get(company_id, version)
        if rows is None:
            rows = compute()
            self.put(company_id, version, rows)
        return rows

    def invalidate(self, company_id: Optional[str] = None) -> None:
        """Drop one company's entry, or all entries."""
        if company_id is None:
            self._entries.clear()
        else:
            self._entries.pop(company_id, None)

    def get_cache_stats(self) -> Dict[str, int]:
        return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}
