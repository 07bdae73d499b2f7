# =============================================================================
# audit_core/services/__init__.py
# Service Layer for the 5S Audit Core
# =============================================================================
"""
Service Layer

Usage Example:
-------------
    from audit_core.offline import get_data_service
    from audit_core.services import AuditService, ScoreReportService

    data = await get_data_service()

    audits = AuditService(data)
    aggregate = await audits.start_audit(company_id, location_id, auditor_id)
    for item in aggregate.items:
        await audits.answer_item(item.id, True)
    await audits.complete_audit(aggregate.audit.id)

    reports = ScoreReportService(data)
    rows = await reports.company_scores(company_id)
"""

from .base_service import BaseService, ServiceResult
from .audit_service import AuditService
from .score_report_service import ScoreReportService

__all__ = [
    # Base classes
    "BaseService",
    "ServiceResult",
    # Audit workflow
    "AuditService",
    # Reports
    "ScoreReportService",
]
