"""
Exception taxonomy for the audit engine.

Only connection failures, primary enumeration failures and run cancellation
propagate to the caller. Everything else is captured as verdict notes and
status labels by the engine.
"""
from __future__ import annotations

from typing import Any, List


class AuditError(Exception):
    """Base class for audit engine errors."""


class BackendUnavailable(AuditError):
    """No systems-management or directory backend could be reached."""


class EnumerationError(AuditError):
    """The primary entity enumeration query failed."""


class SecondaryLookupError(AuditError):
    """A per-entity lookup (children, content metadata) failed."""


class DirectoryQueryError(AuditError):
    """A single directory search failed or timed out."""

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class KindConfigurationError(AuditError):
    """An entity kind is unknown or declared inconsistently."""


class AuditCancelled(AuditError):
    """The run was cancelled or exceeded its deadline.

    ``records`` holds whatever was completed before cancellation, in
    enumeration order, so callers can still persist a partial report.
    """

    def __init__(self, message: str, records: List[Any] | None = None) -> None:
        super().__init__(message)
        self.records = list(records or [])
