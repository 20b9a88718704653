"""
Command line entry point.

    inventory-audit content [--kinds application,package,driver_package]
    inventory-audit hosts [--collection-id SMS00001] [--ignore-disabled | --no-ignore-disabled]

Exit codes: 0 completed run (whatever the findings), 2 no backend reachable
or the primary enumeration failed, 3 cancelled or timed out (a partial
report is still written).
"""
from __future__ import annotations

import argparse
from datetime import UTC, datetime
import logging
from pathlib import Path
import sys
from typing import List, Sequence

from config import settings
from shared.models.record import AuditKind, AuditRun
from shared.tools.classifier import IdentityMatcher
from shared.tools.cm_backend import connect
from shared.tools.directory_oracle import select_resolver
from shared.tools.errors import AuditCancelled, BackendUnavailable, EnumerationError, KindConfigurationError
from shared.tools.reporter import aggregate
from shared.utils.logging import setup_logging
from shared.utils.terminal_ui import Ansi, print_panel

from audit_platform.orchestrator.engine import (
    DEFAULT_CONTENT_KINDS,
    RunControl,
    run_content_audit,
    run_host_audit,
)
from audit_platform.orchestrator.report_sink import print_summary, report_path, write_csv

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 2
EXIT_CANCELLED = 3


def _kind_list(raw: str) -> List[str]:
    kinds = [item.strip() for item in raw.split(",") if item.strip()]
    if not kinds:
        raise argparse.ArgumentTypeError("at least one entity kind is required")
    return kinds


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="inventory-audit",
        description="Reconcile Configuration Manager records against file shares and Active Directory.",
    )
    parser.add_argument("--namespace", default=settings.CM_TARGET_NAMESPACE,
                        help="CM namespace, e.g. root\\SMS or \\\\provider\\root\\SMS\\site_PS1")
    parser.add_argument("--provider", default=settings.CM_PROVIDER, help="SMS provider host")
    parser.add_argument("--site-code", default=settings.CM_SITE_CODE,
                        help="site code; skips sub-namespace auto-discovery")
    parser.add_argument("--powershell", default=settings.POWERSHELL_EXECUTABLE, help="PowerShell executable")
    parser.add_argument("--call-timeout", type=int, default=settings.CALL_TIMEOUT_SECONDS,
                        help="seconds allowed for each external call")
    parser.add_argument("--timeout", type=int, default=settings.RUN_TIMEOUT_SECONDS,
                        help="seconds allowed for the whole run (0 = no limit)")
    parser.add_argument("--max-workers", type=int, default=settings.MAX_WORKERS,
                        help="entities validated in parallel (1 = sequential)")
    parser.add_argument("--report-dir", type=Path, default=settings.report_dir())
    parser.add_argument("--log-level", default=settings.LOG_LEVEL)
    parser.add_argument("--log-file", default=settings.LOG_FILE)
    parser.add_argument("--quiet", action="store_true", help="skip the console summary")

    commands = parser.add_subparsers(dest="command", required=True)

    content = commands.add_parser("content", help="audit content source paths")
    content.add_argument("--kinds", type=_kind_list, default=list(DEFAULT_CONTENT_KINDS),
                         help="comma-separated entity kinds")

    hosts = commands.add_parser("hosts", help="audit host records against the directory")
    hosts.add_argument("--collection-id", default=None, help="restrict to members of this collection")
    hosts.add_argument("--search-base", default=settings.AD_SEARCH_BASE, help="LDAP search base DN")
    hosts.add_argument("--ignore-disabled", action=argparse.BooleanOptionalAction, default=settings.AD_IGNORE_DISABLED,
                       help="treat disabled directory accounts as healthy")
    return parser


def _print_configuration(args: argparse.Namespace) -> None:
    rows = [
        ("Audit", args.command),
        ("Namespace", args.namespace),
        ("Provider", args.provider or "local"),
        ("Site Code", args.site_code or "auto-discover"),
        ("Workers", args.max_workers),
        ("Run Timeout", f"{args.timeout}s" if args.timeout else "none"),
        ("Report Dir", args.report_dir),
    ]
    if args.command == "content":
        rows.append(("Kinds", ", ".join(args.kinds)))
    else:
        rows.append(("Collection", args.collection_id or "all devices"))
        rows.append(("Ignore Disabled", args.ignore_disabled))
    print_panel("Current Configuration", rows, Ansi.BLUE)


def _persist(run: AuditRun, args: argparse.Namespace, *, partial: bool = False) -> Path:
    path = write_csv(run, report_path(args.report_dir, run.audit_kind.value, run.started_at))
    if not args.quiet:
        print_summary(run, partial=partial)
        print_panel("Report", [("CSV", path)], Ansi.CYAN)
    return path


def run(args: argparse.Namespace) -> int:
    started_at = datetime.now(UTC)
    control = RunControl(args.timeout)
    audit_kind = AuditKind(args.command)
    backend_name = "-"
    try:
        session, backend = connect(
            args.namespace,
            provider=args.provider,
            site_code=args.site_code,
            executable=args.powershell,
            timeout_seconds=args.call_timeout,
        )
        backend_name = session.backend
        if audit_kind is AuditKind.CONTENT:
            audit = run_content_audit(
                session, backend, kinds=args.kinds, control=control, max_workers=args.max_workers
            )
        else:
            resolver = select_resolver(
                search_base=args.search_base,
                executable=args.powershell,
                timeout_seconds=args.call_timeout,
            )
            audit = run_host_audit(
                session,
                backend,
                IdentityMatcher(resolver),
                collection_id=args.collection_id,
                ignore_disabled=args.ignore_disabled,
                control=control,
                max_workers=args.max_workers,
            )
    except (BackendUnavailable, EnumerationError, KindConfigurationError) as exc:
        logger.error("audit_fatal audit=%s error=%s", audit_kind.value, exc)
        return EXIT_FATAL
    except AuditCancelled as exc:
        logger.error("audit_cancelled audit=%s completed_records=%s", audit_kind.value, len(exc.records))
        partial_run = aggregate(exc.records, audit_kind=audit_kind, backend=backend_name, started_at=started_at)
        _persist(partial_run, args, partial=True)
        return EXIT_CANCELLED

    _persist(audit, args)
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)
    if not args.quiet:
        _print_configuration(args)
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
