from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, Iterable, List

from config.constants import NO_CANDIDATE_MARKER, NOTE_NO_CANDIDATE, REPORT_COLUMNS
from shared.models.entity import ManagementEntity
from shared.models.record import AuditKind, AuditRun, AuditStatus, ReconciliationRecord
from shared.models.verdict import ValidationVerdict


def build_record(
    entity: ManagementEntity,
    *,
    candidate: str,
    verdict: ValidationVerdict | None,
    status: AuditStatus,
    sub_entity: str | None = None,
) -> ReconciliationRecord:
    return ReconciliationRecord(
        entity_name=entity.name,
        entity_id=entity.entity_id,
        entity_kind=entity.kind,
        sub_entity=sub_entity,
        candidate=candidate,
        verdict=verdict,
        status=status,
    )


def no_candidate_record(
    entity: ManagementEntity,
    *,
    sub_entity: str | None = None,
    note: str = NOTE_NO_CANDIDATE,
    detail: str | None = None,
) -> ReconciliationRecord:
    """The single record an entity (or sub-entity) gets when it yields nothing to validate."""
    return build_record(
        entity,
        candidate=NO_CANDIDATE_MARKER,
        verdict=ValidationVerdict(exists=False, note=note, detail=detail),
        status=AuditStatus.NO_CANDIDATE,
        sub_entity=sub_entity,
    )


def aggregate(
    records: Iterable[ReconciliationRecord],
    *,
    audit_kind: AuditKind,
    backend: str,
    started_at: datetime | None = None,
) -> AuditRun:
    """Freeze records into an AuditRun, preserving order and counting statuses in one pass."""
    ordered: List[ReconciliationRecord] = []
    counts: Dict[AuditStatus, int] = {status: 0 for status in AuditStatus}
    for record in records:
        ordered.append(record)
        counts[record.status] += 1
    finished_at = datetime.now(UTC)
    return AuditRun(
        audit_kind=audit_kind,
        backend=backend,
        started_at=started_at or finished_at,
        finished_at=finished_at,
        records=tuple(ordered),
        counts=counts,
    )


def _flag(value: bool | None) -> str:
    if value is None:
        return ""
    return "True" if value else "False"


def report_rows(run: AuditRun) -> List[Dict[str, Any]]:
    """Flatten a run into rows keyed by REPORT_COLUMNS, in record order."""
    rows: List[Dict[str, Any]] = []
    for record in run.records:
        verdict = record.verdict
        row = {
            "entity_name": record.entity_name,
            "entity_id": record.entity_id,
            "sub_entity": record.sub_entity or "",
            "candidate": record.candidate,
            "exists": _flag(verdict.exists if verdict else None),
            "healthy": _flag(verdict.healthy if verdict else None),
            "status": record.status.value,
            "note": verdict.describe() if verdict else "",
        }
        rows.append({column: row[column] for column in REPORT_COLUMNS})
    return rows


def summary_rows(run: AuditRun) -> List[tuple[str, Any]]:
    rows: List[tuple[str, Any]] = [
        ("Audit", run.audit_kind.value),
        ("Backend", run.backend),
        ("Records", run.total),
    ]
    rows.extend((status.value, run.counts.get(status, 0)) for status in AuditStatus)
    elapsed = (run.finished_at - run.started_at).total_seconds()
    rows.append(("Elapsed", f"{elapsed:.1f}s"))
    return rows
