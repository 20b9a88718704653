"""CSV persistence and console display of a finished AuditRun."""
from __future__ import annotations

import csv
from datetime import datetime
import logging
from pathlib import Path
from typing import TextIO

from config.constants import REPORT_COLUMNS
from shared.models.record import AuditRun, AuditStatus
from shared.tools.reporter import report_rows, summary_rows
from shared.utils.terminal_ui import Ansi, print_panel

logger = logging.getLogger(__name__)


def report_path(report_dir: Path, audit_kind: str, when: datetime) -> Path:
    return report_dir / f"{audit_kind}_audit_{when.strftime('%Y%m%d_%H%M%S')}.csv"


def write_csv(run: AuditRun, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=list(REPORT_COLUMNS))
        writer.writeheader()
        writer.writerows(report_rows(run))
    logger.info("report_written path=%s records=%s", path, run.total)
    return path


def print_summary(run: AuditRun, *, partial: bool = False, stream: TextIO | None = None) -> None:
    problems = sum(
        run.counts.get(status, 0)
        for status in (AuditStatus.MISSING, AuditStatus.EMPTY_OR_DISABLED, AuditStatus.UNRECOGNIZED)
    )
    color_code = Ansi.YELLOW if partial or problems else Ansi.GREEN
    title = "Audit Summary (partial)" if partial else "Audit Summary"
    print_panel(title, summary_rows(run), color_code, stream)
