from __future__ import annotations

import csv

import pytest

from audit_platform.orchestrator import cli
from config.constants import REPORT_COLUMNS
from shared.models.entity import ManagementEntity
from shared.tools.cm_backend import Session
from shared.tools.directory_oracle import DirectoryAccount
from shared.tools.errors import AuditCancelled, BackendUnavailable, EnumerationError
from shared.tools.reporter import no_candidate_record

SESSION = Session(
    backend="cim",
    namespace="root\\SMS\\site_PS1",
    site_code="PS1",
    provider=None,
    executable="/usr/bin/pwsh",
    timeout_seconds=5,
)


class FakeBackend:
    name = "cim"

    def __init__(self, entities: dict[str, list[ManagementEntity]]) -> None:
        self.entities = entities

    def enumerate(self, session, kind, collection_id=None):
        return list(self.entities.get(kind.name, []))

    def children(self, session, kind, parent):
        return []

    def content_metadata(self, session, kind, entity):
        return None


class FakeResolver:
    name = "fake"

    def find_by_fqdn(self, fqdn):
        return None

    def find_by_short_name(self, short_name):
        return DirectoryAccount("WS01", None, "WS01$", enabled=True)


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch) -> None:
    monkeypatch.setattr(cli, "setup_logging", lambda level=None, log_file=None: None)


def _reports(tmp_path) -> list[list[dict]]:
    reports = []
    for path in sorted(tmp_path.glob("*.csv")):
        with open(path, newline="", encoding="utf-8") as fh:
            reader = csv.DictReader(fh)
            assert tuple(reader.fieldnames) == REPORT_COLUMNS
            reports.append(list(reader))
    return reports


def _connect_to(backend):
    return lambda *args, **kwargs: (SESSION, backend)


def test_parser_defaults() -> None:
    args = cli.build_parser().parse_args(["content"])

    assert args.kinds == ["application", "package", "driver_package"]
    assert cli.build_parser().parse_args(["content", "--kinds", "package, driver_package"]).kinds == [
        "package",
        "driver_package",
    ]
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_ignore_disabled_can_be_switched_off_when_enabled_by_default(monkeypatch) -> None:
    monkeypatch.setattr(cli.settings, "AD_IGNORE_DISABLED", True)
    parser = cli.build_parser()

    assert parser.parse_args(["hosts"]).ignore_disabled is True
    assert parser.parse_args(["hosts", "--no-ignore-disabled"]).ignore_disabled is False

    monkeypatch.setattr(cli.settings, "AD_IGNORE_DISABLED", False)
    parser = cli.build_parser()

    assert parser.parse_args(["hosts"]).ignore_disabled is False
    assert parser.parse_args(["hosts", "--ignore-disabled"]).ignore_disabled is True


def test_content_audit_writes_report(monkeypatch, tmp_path, capsys) -> None:
    backend = FakeBackend({"package": [ManagementEntity(
        entity_id="PS100001", name="Tools", kind="package", properties={"PkgSourcePath": "\\\\share1\\src"}
    )]})
    monkeypatch.setattr(cli, "connect", _connect_to(backend))

    code = cli.main(["--report-dir", str(tmp_path), "content", "--kinds", "package"])

    assert code == cli.EXIT_OK
    [rows] = _reports(tmp_path)
    assert [(row["entity_name"], row["candidate"], row["status"]) for row in rows] == [
        ("Tools", "\\\\share1\\src", "Missing")
    ]
    output = capsys.readouterr().out
    assert "Audit Summary" in output
    assert "Current Configuration" in output


def test_host_audit_uses_selected_resolver(monkeypatch, tmp_path) -> None:
    backend = FakeBackend({"device": [ManagementEntity(entity_id="16777220", name="WS01", kind="device")]})
    monkeypatch.setattr(cli, "connect", _connect_to(backend))
    monkeypatch.setattr(cli, "select_resolver", lambda **kwargs: FakeResolver())

    code = cli.main(["--report-dir", str(tmp_path), "--quiet", "hosts", "--collection-id", "PS100012"])

    assert code == cli.EXIT_OK
    [rows] = _reports(tmp_path)
    assert rows[0]["status"] == "Healthy"
    assert rows[0]["candidate"] == "WS01"


@pytest.mark.parametrize("error", [BackendUnavailable("no backend"), EnumerationError("access denied")])
def test_fatal_errors_write_no_report(monkeypatch, tmp_path, error) -> None:
    def fail(*args, **kwargs):
        raise error

    monkeypatch.setattr(cli, "connect", fail)

    assert cli.main(["--report-dir", str(tmp_path), "--quiet", "content"]) == cli.EXIT_FATAL
    assert list(tmp_path.iterdir()) == []


def test_cancelled_run_writes_partial_report(monkeypatch, tmp_path, capsys) -> None:
    completed = no_candidate_record(ManagementEntity(entity_id="APP-1", name="App-1", kind="application"))

    def cancelled(*args, **kwargs):
        raise AuditCancelled("deadline exceeded", [completed])

    monkeypatch.setattr(cli, "connect", _connect_to(FakeBackend({})))
    monkeypatch.setattr(cli, "run_content_audit", cancelled)

    code = cli.main(["--report-dir", str(tmp_path), "--timeout", "1", "content"])

    assert code == cli.EXIT_CANCELLED
    [rows] = _reports(tmp_path)
    assert [row["entity_name"] for row in rows] == ["App-1"]
    assert "Audit Summary (partial)" in capsys.readouterr().out
