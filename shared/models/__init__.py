from shared.models.entity import ManagementEntity
from shared.models.fact import ExtractedFact
from shared.models.record import AuditKind, AuditRun, AuditStatus, ReconciliationRecord
from shared.models.verdict import ValidationVerdict

__all__ = [
    "AuditKind",
    "AuditRun",
    "AuditStatus",
    "ExtractedFact",
    "ManagementEntity",
    "ReconciliationRecord",
    "ValidationVerdict",
]
