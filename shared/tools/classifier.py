"""Identity matching for hosts and the status classification shared by both audits."""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, List

from config.constants import (
    NOTE_ABSENT,
    NOTE_DISABLED,
    NOTE_LOOKUP_FAILED,
    NOTE_TIMEOUT,
    NOTE_UNRECOGNIZED_FORMAT,
)
from shared.models.entity import ManagementEntity
from shared.models.record import AuditStatus
from shared.models.verdict import ValidationVerdict
from shared.tools.directory_oracle import DirectoryAccount, DirectoryResolver
from shared.tools.errors import DirectoryQueryError

logger = logging.getLogger(__name__)

STRATEGY_FQDN = "fqdn"
STRATEGY_SHORT_NAME = "short-name"


@dataclass(frozen=True)
class IdentityCandidate:
    strategy: str
    value: str


def _first_text(value: Any) -> str | None:
    if isinstance(value, (list, tuple)):
        for item in value:
            text = _first_text(item)
            if text:
                return text
        return None
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def identity_candidates(entity: ManagementEntity) -> List[IdentityCandidate]:
    """Ordered lookup strategies for a host record: FQDN first, then short name."""
    candidates: List[IdentityCandidate] = []
    name = _first_text(entity.get("Name")) or (entity.name.strip() or None)

    fqdn = _first_text(entity.get("ResourceNames"))
    # Workgroup clients report a bare host name in ResourceNames
    if fqdn is None or "." not in fqdn:
        domain = _first_text(entity.get("FullDomainName"))
        if name and domain and "." not in name:
            fqdn = f"{name}.{domain}"
        elif name and "." in name:
            fqdn = name
    if fqdn and "." in fqdn:
        candidates.append(IdentityCandidate(STRATEGY_FQDN, fqdn.lower()))

    short = _first_text(entity.get("NetbiosName")) or name
    if short:
        short = short.split(".", 1)[0]
        candidates.append(IdentityCandidate(STRATEGY_SHORT_NAME, short.upper()))
    return candidates


def _account_verdict(account: DirectoryAccount) -> ValidationVerdict:
    if account.enabled:
        return ValidationVerdict(exists=True, healthy=True, detail=account.distinguished_name)
    return ValidationVerdict(exists=True, healthy=False, note=NOTE_DISABLED, detail=account.distinguished_name)


class IdentityMatcher:
    """Resolve a host record to a directory account; the first strategy that matches wins."""

    def __init__(self, resolver: DirectoryResolver) -> None:
        self.resolver = resolver

    def _lookup(self, candidate: IdentityCandidate) -> DirectoryAccount | None:
        if candidate.strategy == STRATEGY_FQDN:
            return self.resolver.find_by_fqdn(candidate.value)
        return self.resolver.find_by_short_name(candidate.value)

    def resolve(self, entity: ManagementEntity) -> tuple[IdentityCandidate | None, ValidationVerdict | None]:
        candidates = identity_candidates(entity)
        if not candidates:
            return None, None

        failures: List[DirectoryQueryError] = []
        for candidate in candidates:
            try:
                account = self._lookup(candidate)
            except DirectoryQueryError as exc:
                logger.warning(
                    "directory_lookup entity=%s strategy=%s value=%s error=%s",
                    entity.name,
                    candidate.strategy,
                    candidate.value,
                    exc,
                )
                failures.append(exc)
                continue
            if account is not None:
                return candidate, _account_verdict(account)

        if failures:
            note = NOTE_TIMEOUT if any(exc.timed_out for exc in failures) else NOTE_LOOKUP_FAILED
            return candidates[0], ValidationVerdict(exists=False, note=note, detail=str(failures[-1]))
        return candidates[0], ValidationVerdict(exists=False, note=NOTE_ABSENT)


def classify(
    verdict: ValidationVerdict | None,
    *,
    fact_present: bool = True,
    recognized: bool = True,
    ignore_disabled: bool = False,
) -> AuditStatus:
    """Map one (fact, verdict, run configuration) triple onto exactly one status."""
    if not fact_present or verdict is None:
        return AuditStatus.NO_CANDIDATE
    if not recognized or verdict.note == NOTE_UNRECOGNIZED_FORMAT:
        return AuditStatus.UNRECOGNIZED
    if not verdict.exists:
        return AuditStatus.MISSING
    if verdict.healthy is True:
        return AuditStatus.HEALTHY
    if ignore_disabled and verdict.note == NOTE_DISABLED:
        return AuditStatus.HEALTHY
    # Disabled, empty, or health unknown (unreadable)
    return AuditStatus.EMPTY_OR_DISABLED
