"""
Audit engine: enumerate, extract, validate, classify, aggregate.

The reference model is pull-based and single-threaded: one entity is fully
processed before the next is looked at. ``max_workers > 1`` validates
different entities in parallel and re-sorts the results into enumeration
order before aggregation.
"""
from __future__ import annotations

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import UTC, datetime
from functools import partial
import logging
import threading
import time
from typing import Callable, Dict, List, Sequence

from config.constants import NOTE_LOOKUP_FAILED
from shared.inventory.kind_loader import EntityKind, get_kind
from shared.models.entity import ManagementEntity
from shared.models.fact import ExtractedFact
from shared.models.record import AuditKind, AuditRun, ReconciliationRecord
from shared.tools.classifier import IdentityMatcher, classify
from shared.tools.cm_backend import CmBackend, Session, enumerate_entities
from shared.tools.errors import AuditCancelled, SecondaryLookupError
from shared.tools.filesystem_oracle import FilesystemOracle
from shared.tools.graph_walker import CONTENT_PATH_PATTERN, FactPattern, extract_with_fallback
from shared.tools.reporter import aggregate, build_record, no_candidate_record

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_KINDS = ("application", "package", "driver_package")

EntityHandler = Callable[[ManagementEntity], List[ReconciliationRecord]]


class RunControl:
    """Run-wide cancellation token with an optional deadline."""

    def __init__(self, timeout_seconds: float | None = None, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._event = threading.Event()
        self._deadline = clock() + timeout_seconds if timeout_seconds and timeout_seconds > 0 else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self._event.set()
            return True
        return False

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def check(self, records: Sequence[ReconciliationRecord] = ()) -> None:
        if self.cancelled:
            raise AuditCancelled("audit run cancelled or exceeded its deadline", list(records))


def _guarded(handler: EntityHandler, entity: ManagementEntity) -> List[ReconciliationRecord]:
    try:
        records = handler(entity)
    except AuditCancelled:
        raise
    except Exception as exc:
        logger.exception("audit_entity entity=%s kind=%s step=error error=%s", entity.name, entity.kind, exc)
        return [no_candidate_record(entity, note=NOTE_LOOKUP_FAILED, detail=str(exc))]
    if not records:
        return [no_candidate_record(entity)]
    return records


def process_entities(
    entities: Sequence[ManagementEntity],
    handler: EntityHandler,
    *,
    control: RunControl | None = None,
    max_workers: int = 1,
) -> List[ReconciliationRecord]:
    """Run ``handler`` over every entity; at least one record per entity, in enumeration order."""
    control = control or RunControl()
    if max_workers <= 1:
        records: List[ReconciliationRecord] = []
        for entity in entities:
            control.check(records)
            try:
                records.extend(_guarded(handler, entity))
            except AuditCancelled as exc:
                raise AuditCancelled(str(exc), records + exc.records) from None
        return records

    results: Dict[int, List[ReconciliationRecord]] = {}

    def completed() -> List[ReconciliationRecord]:
        return [record for index in sorted(results) for record in results[index]]

    pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="audit-worker")
    pending: Dict[Future, int] = {}
    queue = iter(enumerate(entities))

    def submit_next() -> bool:
        for index, entity in queue:
            pending[pool.submit(_guarded, handler, entity)] = index
            return True
        return False

    try:
        # Keep the queue bounded so cancellation never has a backlog to drain
        for _ in range(max_workers * 2):
            if not submit_next():
                break
        while pending:
            control.check(completed())
            remaining = control.remaining()
            done, _ = wait(list(pending), timeout=remaining, return_when=FIRST_COMPLETED)
            for future in done:
                index = pending.pop(future)
                try:
                    results[index] = future.result()
                except AuditCancelled as exc:
                    results[index] = exc.records
                    raise AuditCancelled(str(exc), completed()) from None
                submit_next()
        control.check(completed())
    except BaseException:
        # A hung worker must not hold the run open once it is cancelled
        for future in pending:
            future.cancel()
        pool.shutdown(wait=False, cancel_futures=True)
        raise
    pool.shutdown(wait=True)
    return completed()


def _dedupe(facts: List[ExtractedFact]) -> List[ExtractedFact]:
    seen: set[str] = set()
    unique: List[ExtractedFact] = []
    for fact in facts:
        if fact.value in seen:
            continue
        seen.add(fact.value)
        unique.append(fact)
    return unique


def audit_content_entity(
    entity: ManagementEntity,
    *,
    session: Session,
    backend: CmBackend,
    kind: EntityKind,
    oracle: FilesystemOracle,
    pattern: FactPattern = CONTENT_PATH_PATTERN,
    control: RunControl | None = None,
) -> List[ReconciliationRecord]:
    """Records for one content-bearing entity, one unit per sub-entity when it has any.

    With a ``control`` the deadline is checked before every fact and each
    filesystem check is bounded by the time left in the run.
    """
    units: List[tuple[str | None, ManagementEntity, EntityKind]] = [(None, entity, kind)]
    if kind.children:
        try:
            children = backend.children(session, kind, entity)
        except SecondaryLookupError as exc:
            logger.warning("audit_entity entity=%s step=children_error error=%s", entity.name, exc)
            return [no_candidate_record(entity, note=NOTE_LOOKUP_FAILED, detail=str(exc))]
        if children:
            child_kind = get_kind(kind.children)
            units = [(child.name or child.entity_id, child, child_kind) for child in children]

    records: List[ReconciliationRecord] = []
    for label, unit, unit_kind in units:
        lookup = partial(backend.content_metadata, session, unit_kind) if unit_kind.content_lookup else None
        try:
            facts = _dedupe(extract_with_fallback(unit, pattern, lookup, sub_entity=label))
        except SecondaryLookupError as exc:
            logger.warning(
                "audit_entity entity=%s sub_entity=%s step=content_lookup_error error=%s",
                entity.name,
                label or "-",
                exc,
            )
            records.append(no_candidate_record(entity, sub_entity=label, note=NOTE_LOOKUP_FAILED, detail=str(exc)))
            continue

        if not facts:
            logger.debug("audit_entity entity=%s sub_entity=%s step=no_candidate", entity.name, label or "-")
            records.append(no_candidate_record(entity, sub_entity=label))
            continue

        for fact in facts:
            if control is not None:
                control.check(records)
            verdict = oracle.validate(fact, timeout_seconds=control.remaining() if control else None)
            status = classify(verdict, recognized=fact.recognized)
            records.append(
                build_record(entity, candidate=fact.value, verdict=verdict, status=status, sub_entity=label)
            )
    return records


def audit_host_entity(
    entity: ManagementEntity,
    *,
    matcher: IdentityMatcher,
    ignore_disabled: bool = False,
) -> List[ReconciliationRecord]:
    candidate, verdict = matcher.resolve(entity)
    if candidate is None or verdict is None:
        return [no_candidate_record(entity)]
    status = classify(verdict, ignore_disabled=ignore_disabled)
    return [build_record(entity, candidate=candidate.value, verdict=verdict, status=status)]


def run_content_audit(
    session: Session,
    backend: CmBackend,
    *,
    kinds: Sequence[str] = DEFAULT_CONTENT_KINDS,
    oracle: FilesystemOracle | None = None,
    control: RunControl | None = None,
    max_workers: int = 1,
) -> AuditRun:
    started_at = datetime.now(UTC)
    oracle = oracle or FilesystemOracle(timeout_seconds=session.timeout_seconds)
    control = control or RunControl()
    records: List[ReconciliationRecord] = []
    logger.info("audit_start audit=content backend=%s kinds=%s workers=%s", session.backend, ",".join(kinds), max_workers)

    for kind_name in kinds:
        kind = get_kind(kind_name)
        control.check(records)
        entities = enumerate_entities(session, backend, kind.name)
        handler = partial(
            audit_content_entity, session=session, backend=backend, kind=kind, oracle=oracle, control=control
        )
        try:
            kind_records = process_entities(entities, handler, control=control, max_workers=max_workers)
        except AuditCancelled as exc:
            raise AuditCancelled(str(exc), records + exc.records) from None
        records.extend(kind_records)
        logger.info("audit_step audit=content kind=%s entities=%s records=%s", kind.name, len(entities), len(kind_records))

    run = aggregate(records, audit_kind=AuditKind.CONTENT, backend=session.backend, started_at=started_at)
    logger.info(
        "audit_complete audit=content records=%s %s",
        run.total,
        " ".join(f"{status.value}={count}" for status, count in run.counts.items()),
    )
    return run


def run_host_audit(
    session: Session,
    backend: CmBackend,
    matcher: IdentityMatcher,
    *,
    collection_id: str | None = None,
    ignore_disabled: bool = False,
    control: RunControl | None = None,
    max_workers: int = 1,
) -> AuditRun:
    started_at = datetime.now(UTC)
    control = control or RunControl()
    logger.info(
        "audit_start audit=hosts backend=%s resolver=%s collection=%s ignore_disabled=%s workers=%s",
        session.backend,
        matcher.resolver.name,
        collection_id or "-",
        ignore_disabled,
        max_workers,
    )
    control.check()
    entities = enumerate_entities(session, backend, "device", collection_id)
    handler = partial(audit_host_entity, matcher=matcher, ignore_disabled=ignore_disabled)
    records = process_entities(entities, handler, control=control, max_workers=max_workers)

    run = aggregate(records, audit_kind=AuditKind.HOSTS, backend=session.backend, started_at=started_at)
    logger.info(
        "audit_complete audit=hosts records=%s %s",
        run.total,
        " ".join(f"{status.value}={count}" for status, count in run.counts.items()),
    )
    return run
