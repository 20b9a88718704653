"""
Report models: one ReconciliationRecord per (entity, sub-entity, candidate)
and the AuditRun aggregate handed to the sinks.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, Tuple

from pydantic import BaseModel, ConfigDict, Field

from config import constants
from shared.models.verdict import ValidationVerdict


class AuditStatus(str, Enum):
    """Closed status taxonomy; exactly one applies to every record."""
    HEALTHY = constants.STATUS_HEALTHY
    EMPTY_OR_DISABLED = constants.STATUS_EMPTY_OR_DISABLED
    MISSING = constants.STATUS_MISSING
    NO_CANDIDATE = constants.STATUS_NO_CANDIDATE
    UNRECOGNIZED = constants.STATUS_UNRECOGNIZED


class AuditKind(str, Enum):
    CONTENT = "content"
    HOSTS = "hosts"


class ReconciliationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_name: str
    entity_id: str
    entity_kind: str
    sub_entity: str | None = None
    candidate: str = Field(..., description="Fact or identity string, or the no-candidate marker")
    verdict: ValidationVerdict | None = None
    status: AuditStatus


class AuditRun(BaseModel):
    model_config = ConfigDict(frozen=True)

    audit_kind: AuditKind
    backend: str
    started_at: datetime
    finished_at: datetime
    records: Tuple[ReconciliationRecord, ...] = ()
    counts: Dict[AuditStatus, int] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.records)
