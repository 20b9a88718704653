"""Filesystem oracle: existence and non-emptiness of content source paths."""
from __future__ import annotations

from concurrent.futures import Future, TimeoutError as FutureTimeout
from enum import Enum
import logging
import os
import stat
import threading

from config import settings
from config.constants import (
    DRIVE_PATH_RE,
    NOTE_ABSENT,
    NOTE_ACCESS_DENIED,
    NOTE_EMPTY,
    NOTE_TIMEOUT,
    NOTE_UNREADABLE,
    NOTE_UNRECOGNIZED_FORMAT,
    UNC_PATH_RE,
)
from shared.models.fact import ExtractedFact
from shared.models.verdict import ValidationVerdict

logger = logging.getLogger(__name__)

# Win32 MAX_PATH minus the terminating NUL
_MAX_PATH = 259


class PathKind(str, Enum):
    UNC = "unc"
    DRIVE = "drive"
    UNRECOGNIZED = "unrecognized"


def classify_path(value: str) -> PathKind:
    candidate = value.strip()
    if UNC_PATH_RE.match(candidate):
        return PathKind.UNC
    if DRIVE_PATH_RE.match(candidate):
        return PathKind.DRIVE
    return PathKind.UNRECOGNIZED


def to_extended_path(path: str) -> str:
    """Convert an absolute Windows path to its \\\\?\\ extended-length form.

    Local:  C:\\foo -> \\\\?\\C:\\foo
    UNC:    \\\\server\\share\\foo -> \\\\?\\UNC\\server\\share\\foo
    """
    if path.startswith("\\\\?\\"):
        return path
    if path.startswith("\\\\"):
        return "\\\\?\\UNC\\" + path[2:]
    return "\\\\?\\" + path


def normalize_path(value: str) -> str:
    path = value.strip()
    # Keep the root of a drive ("C:\") intact
    if len(path) > 3 and path.endswith("\\"):
        path = path.rstrip("\\")
    if os.name == "nt" and len(path) > _MAX_PATH:
        path = to_extended_path(path)
    return path


class LocalFilesystem:
    """Thin adapter over os so the oracle can be tested with fakes."""

    def stat(self, path: str) -> os.stat_result:
        return os.stat(path)

    def first_entry(self, path: str) -> str | None:
        """Return the name of one child entry, or None when the directory is empty."""
        with os.scandir(path) as entries:
            for entry in entries:
                return entry.name
        return None


class FilesystemOracle:
    """Check content source paths on a daemon worker abandoned once its time runs out.

    ``timeout_seconds`` bounds every check (``None`` or ``0`` leaves it unbounded);
    a per-call ``timeout_seconds`` passed to :meth:`validate` can only shorten it.
    """

    def __init__(self, filesystem: LocalFilesystem | None = None, *, timeout_seconds: float | None = None) -> None:
        self.filesystem = filesystem or LocalFilesystem()
        self.timeout_seconds = (settings.CALL_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds) or None

    def validate(self, fact: ExtractedFact | str, *, timeout_seconds: float | None = None) -> ValidationVerdict:
        value = fact.value if isinstance(fact, ExtractedFact) else fact
        kind = classify_path(value)
        if kind is PathKind.UNRECOGNIZED:
            return ValidationVerdict(exists=False, note=NOTE_UNRECOGNIZED_FORMAT)

        path = normalize_path(value)
        limits = [bound for bound in (self.timeout_seconds, timeout_seconds) if bound is not None]
        if not limits:
            return self._inspect(path)
        limit = max(0.0, min(limits))

        outcome: Future = Future()

        def work() -> None:
            try:
                outcome.set_result(self._inspect(path))
            except Exception as exc:
                outcome.set_exception(exc)

        threading.Thread(target=work, name="filesystem-check", daemon=True).start()
        try:
            return outcome.result(timeout=limit)
        except FutureTimeout:
            logger.warning("filesystem_check path=%s result=timeout after=%.1fs", path, limit)
            return ValidationVerdict(exists=False, note=NOTE_TIMEOUT, detail=f"no answer after {limit:.1f}s")

    def _inspect(self, path: str) -> ValidationVerdict:
        try:
            info = self.filesystem.stat(path)
        except PermissionError as exc:
            logger.debug("filesystem_check path=%s result=access_denied error=%s", path, exc)
            return ValidationVerdict(exists=False, note=NOTE_ACCESS_DENIED, detail=str(exc))
        except OSError as exc:
            # Not found, bad network name, unreachable host: all read as absent
            logger.debug("filesystem_check path=%s result=absent error=%s", path, exc)
            detail = None if isinstance(exc, FileNotFoundError) else str(exc)
            return ValidationVerdict(exists=False, note=NOTE_ABSENT, detail=detail)

        if not stat.S_ISDIR(info.st_mode):
            if info.st_size > 0:
                return ValidationVerdict(exists=True, healthy=True)
            return ValidationVerdict(exists=True, healthy=False, note=NOTE_EMPTY)

        try:
            first = self.filesystem.first_entry(path)
        except OSError as exc:
            logger.debug("filesystem_check path=%s result=unreadable error=%s", path, exc)
            return ValidationVerdict(exists=True, healthy=None, note=NOTE_UNREADABLE, detail=str(exc))
        if first is None:
            return ValidationVerdict(exists=True, healthy=False, note=NOTE_EMPTY)
        return ValidationVerdict(exists=True, healthy=True)
