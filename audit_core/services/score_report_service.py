# =============================================================================
# audit_core/services/score_report_service.py
# Senso Score Reports per Company
# =============================================================================

from __future__ import annotations
from typing import Dict, List, Optional

import pandas as pd

from audit_core.models import AuditStatus
from audit_core.offline.unified_data_service import UnifiedDataService
from audit_core.scoring.score_cache import ScoreCache
from audit_core.scoring.senso_aggregator import SensoAggregator, SensoScoreRow, rows_to_dataframe
from .base_service import BaseService


class ScoreReportService(BaseService):
    """
    Loads a company's tree and audits and aggregates senso scores.

    Rows are computed once per data refresh; call refresh() when the
    underlying data changed.
    """

    def __init__(
        self,
        data_service: UnifiedDataService,
        aggregator: Optional[SensoAggregator] = None,
        cache: Optional[ScoreCache] = None,
        completed_only: bool = True,
    ):
        super().__init__()
        self.data = data_service
        self.aggregator = aggregator or SensoAggregator()
        self.cache = cache or ScoreCache()
        self.completed_only = completed_only
        self._versions: Dict[str, int] = {}

    def refresh(self, company_id: str) -> int:
        """Start a new data refresh for a company; returns the new version."""
        version = self._versions.get(company_id, 0) + 1
        self._versions[company_id] = version
        self.cache.invalidate(company_id)
        return version

    async def _compute(self, company_id: str) -> List[SensoScoreRow]:
        environments = (await self.data.list_environments(company_id)).value
        status = AuditStatus.COMPLETED.value if self.completed_only else None
        audits = (await self.data.list_company_audits(company_id, status=status)).value
        items = (await self.data.list_audit_items([a["id"] for a in audits])).value

        self.logger.debug(
            f"Scoring company {company_id}: {len(environments)} nodes, "
            f"{len(audits)} audits, {len(items)} items"
        )
        return self.aggregator.aggregate(environments, audits, items)

    async def company_scores(self, company_id: str) -> List[SensoScoreRow]:
        """
        Score rows for a company, reused until the next refresh.

        Returns:
            Rows in depth-first tree order
        """
        version = self._versions.setdefault(company_id, 0)
        rows = self.cache.get(company_id, version)
        if rows is None:
            rows = await self._compute(company_id)
            self.cache.put(company_id, version, rows)
        return rows

    async def company_scores_dataframe(self, company_id: str) -> pd.DataFrame:
        """Score rows as a DataFrame for export collaborators."""
        return rows_to_dataframe(await self.company_scores(company_id))
