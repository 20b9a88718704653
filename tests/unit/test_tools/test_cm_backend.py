from __future__ import annotations

import dataclasses
import logging

import pytest

from shared.inventory.kind_loader import get_kind
from shared.models.entity import ManagementEntity
from shared.tools import cm_backend
from shared.tools.classifier import identity_candidates
from shared.tools.cm_backend import CimQueryBackend, CmdletBackend, Session
from shared.tools.errors import (
    BackendUnavailable,
    EnumerationError,
    KindConfigurationError,
    SecondaryLookupError,
)

CM_PROBE = "Get-Module -ListAvailable -Name ConfigurationManager"
CIM_PROBE = "Get-Command Get-CimInstance"
CIM_SITES = "-ClassName __NAMESPACE"

SDM_XML = (
    '<AppMgmtDigest xmlns="http://schemas.microsoft.com/SystemCenterConfigurationManager/2009/AppMgmtDigest">'
    "<DeploymentType LogicalName=\"DeploymentType_1\"><Installer Technology=\"MSI\"><Contents>"
    '<Content ContentId="Content_1"><Location>\\\\srv\\apps\\viewer\\</Location></Content>'
    "</Contents></Installer></DeploymentType></AppMgmtDigest>"
)


class FakePowerShell:
    """Stands in for run_json: the first rule whose needle appears in the script answers."""

    def __init__(self, rules: list[tuple[str, tuple]] | None = None) -> None:
        self.rules = rules or []
        self.scripts: list[str] = []

    def __call__(self, script: str, *, executable: str, timeout_seconds: int = 120) -> tuple:
        self.scripts.append(script)
        for needle, result in self.rules:
            if needle in script:
                return result
        return None, None


def _session(backend: str = "cim") -> Session:
    return Session(
        backend=backend,
        namespace="root\\SMS\\site_PS1",
        site_code="PS1",
        provider=None,
        executable="/usr/bin/pwsh",
        timeout_seconds=5,
    )


@pytest.fixture
def powershell(monkeypatch) -> FakePowerShell:
    fake = FakePowerShell()
    monkeypatch.setattr(cm_backend, "run_json", fake)
    monkeypatch.setattr(cm_backend, "resolve_executable", lambda explicit=None: "/usr/bin/pwsh")
    monkeypatch.setattr(cm_backend.settings, "CM_SITE_CODE", None)
    monkeypatch.setattr(cm_backend.settings, "CM_PROVIDER", None)
    return fake


def test_parse_target_namespace() -> None:
    assert cm_backend.parse_target_namespace("root\\SMS") == (None, "root\\SMS")
    assert cm_backend.parse_target_namespace("\\\\cm01\\root\\SMS\\site_PS1") == ("cm01", "root\\SMS\\site_PS1")
    assert cm_backend.parse_target_namespace("root/SMS") == (None, "root\\SMS")
    assert cm_backend.site_code_from_namespace("root\\SMS\\site_ps1") == "PS1"
    assert cm_backend.site_code_from_namespace("root\\SMS") is None


def test_connect_falls_back_to_cim_and_takes_first_site(powershell, caplog) -> None:
    powershell.rules = [
        (CM_PROBE, (False, None)),
        (CIM_PROBE, (True, None)),
        (CIM_SITES, (["site_PS1", "site_PS2"], None)),
    ]

    with caplog.at_level(logging.WARNING, logger="shared.tools.cm_backend"):
        session, backend = cm_backend.connect("root\\SMS", timeout_seconds=5)

    assert isinstance(backend, CimQueryBackend)
    assert session.backend == "cim"
    assert session.site_code == "PS1"
    assert session.namespace == "root\\SMS\\site_PS1"
    assert "site_ambiguous" in caplog.text
    assert "PS2" in caplog.text


def test_connect_with_site_namespace_skips_discovery(powershell) -> None:
    powershell.rules = [(CM_PROBE, (True, None))]

    session, backend = cm_backend.connect("\\\\cm01\\root\\SMS\\site_xy1", timeout_seconds=5)

    assert isinstance(backend, CmdletBackend)
    assert session.provider == "cm01"
    assert session.site_code == "XY1"
    assert session.namespace == "root\\SMS\\site_XY1"
    assert len(powershell.scripts) == 1


def test_explicit_site_code_overrides_discovery(powershell) -> None:
    powershell.rules = [(CM_PROBE, (False, None)), (CIM_PROBE, (True, None))]

    session, _ = cm_backend.connect("root\\SMS", site_code="ab2", timeout_seconds=5)

    assert session.site_code == "AB2"
    assert not any(CIM_SITES in script for script in powershell.scripts)


def test_session_is_immutable() -> None:
    session = _session()

    with pytest.raises(dataclasses.FrozenInstanceError):
        session.site_code = "XYZ"  # type: ignore[misc]


def test_connect_without_powershell(monkeypatch) -> None:
    monkeypatch.setattr(cm_backend, "resolve_executable", lambda explicit=None: None)

    with pytest.raises(BackendUnavailable):
        cm_backend.connect("root\\SMS")


def test_connect_when_no_backend_answers(powershell) -> None:
    powershell.rules = [(CM_PROBE, (False, None)), (CIM_PROBE, (None, "The term 'Get-CimInstance' is not recognized"))]

    with pytest.raises(BackendUnavailable, match="cmdlet, cim"):
        cm_backend.connect("root\\SMS", site_code="PS1")


def test_no_site_namespace_found(powershell) -> None:
    powershell.rules = [(CM_PROBE, (False, None)), (CIM_PROBE, (True, None)), (CIM_SITES, (["Inventory"], None))]

    with pytest.raises(BackendUnavailable, match="no site namespace"):
        cm_backend.connect("root\\SMS")


def test_cim_collection_filter_joins_membership(powershell) -> None:
    powershell.rules = [
        (
            "SMS_FullCollectionMembership",
            (
                [
                    {"SMS_R_System": {"ResourceId": 16777220, "Name": "WS01", "CimClass": "SMS_R_System"}},
                    {"SMS_R_System": {"ResourceId": 16777221, "Name": "WS02"}},
                ],
                None,
            ),
        )
    ]

    entities = cm_backend.enumerate_entities(_session(), CimQueryBackend(), "device", "PS100012")

    script = powershell.scripts[0]
    assert "INNER JOIN SMS_FullCollectionMembership" in script
    assert "CollectionID = ''PS100012''" in script
    assert "AND (SMS_R_System.Obsolete = 0 OR SMS_R_System.Obsolete IS NULL)" in script
    assert [(entity.entity_id, entity.name) for entity in entities] == [("16777220", "WS01"), ("16777221", "WS02")]
    assert "CimClass" not in entities[0].properties
    assert entities[0].kind == "device"


def test_cim_enumeration_applies_kind_filter(powershell) -> None:
    powershell.rules = [("SMS_Application", ({"CI_UniqueID": "ScopeId_1/Application_1/1", "LocalizedDisplayName": "App-1"}, None))]

    entities = CimQueryBackend().enumerate(_session(), get_kind("application"))

    assert "SELECT * FROM SMS_Application WHERE IsLatest = TRUE" in powershell.scripts[0]
    assert "-Namespace 'root\\SMS\\site_PS1'" in powershell.scripts[0]
    assert entities[0].name == "App-1"


def test_cmdlet_collection_filter_joins_membership(powershell) -> None:
    CmdletBackend().enumerate(_session("cmdlet"), get_kind("device"), "PS100012")

    script = powershell.scripts[0]
    assert "Invoke-CMWmiQuery -Query 'SELECT SMS_R_System.* FROM SMS_R_System" in script
    assert "INNER JOIN SMS_FullCollectionMembership" in script
    assert "CollectionID = ''PS100012'' AND (SMS_R_System.Obsolete = 0 OR SMS_R_System.Obsolete IS NULL)" in script
    assert "Get-CMCollectionMember" not in script
    assert "New-PSDrive -Name 'PS1' -PSProvider CMSite -Root $env:COMPUTERNAME" in script
    assert "Set-Location ('PS1' + ':')" in script


def test_cmdlet_device_enumeration_lists_discovery_records(powershell) -> None:
    CmdletBackend().enumerate(_session("cmdlet"), get_kind("device"))

    assert "Get-CMResource -ResourceType System -Fast" in powershell.scripts[0]


@pytest.mark.parametrize("backend", [CmdletBackend(), CimQueryBackend()], ids=["cmdlet", "cim"])
def test_backends_yield_same_identity_strategies(powershell, backend) -> None:
    row = {
        "ResourceId": 16777230,
        "Name": "WS11",
        "ResourceNames": ["WS11.corp.example"],
        "FullDomainName": "CORP.EXAMPLE",
        "NetbiosName": "WS11",
    }
    powershell.rules = [("SMS_R_System", ([{"SMS_R_System": row}], None)), ("Get-CMResource", ([row], None))]

    entities = backend.enumerate(_session(backend.name), get_kind("device"))
    members = backend.enumerate(_session(backend.name), get_kind("device"), "PS100012")

    for entity in (*entities, *members):
        assert [candidate.strategy for candidate in identity_candidates(entity)] == ["fqdn", "short-name"]
        assert identity_candidates(entity)[0].value == "ws11.corp.example"


def test_cmdlet_enumeration_uses_fast_listing(powershell) -> None:
    CmdletBackend().enumerate(_session("cmdlet"), get_kind("package"))

    assert "Get-CMPackage -Fast" in powershell.scripts[0]


def test_collection_filter_rejected_for_content_kinds(powershell) -> None:
    with pytest.raises(KindConfigurationError):
        CimQueryBackend().enumerate(_session(), get_kind("application"), "PS100012")
    assert powershell.scripts == []


def test_primary_enumeration_failure_is_fatal(powershell) -> None:
    powershell.rules = [("SMS_Package", (None, "Access denied"))]

    with pytest.raises(EnumerationError, match="Access denied"):
        CimQueryBackend().enumerate(_session(), get_kind("package"))


def test_children_link_on_model_name(powershell) -> None:
    powershell.rules = [
        ("SMS_DeploymentType", ([{"CI_UniqueID": "DT-1", "LocalizedDisplayName": "App-1 MSI"}], None)),
    ]
    parent = ManagementEntity(
        entity_id="APP-1",
        name="App-1",
        kind="application",
        properties={"ModelName": "ScopeId_1/Application_1"},
    )

    children = CimQueryBackend().children(_session(), get_kind("application"), parent)

    assert "AppModelName = ''ScopeId_1/Application_1''" in powershell.scripts[0]
    assert [(child.entity_id, child.name, child.kind) for child in children] == [("DT-1", "App-1 MSI", "deployment_type")]


def test_cmdlet_children_pass_parent_name(powershell) -> None:
    parent = ManagementEntity(entity_id="APP-1", name="Bob's App", kind="application")

    CmdletBackend().children(_session("cmdlet"), get_kind("application"), parent)

    assert "Get-CMDeploymentType -ApplicationName 'Bob''s App'" in powershell.scripts[0]


def test_children_failure_is_secondary(powershell) -> None:
    powershell.rules = [("SMS_DeploymentType", (None, "timed out after 5s"))]
    parent = ManagementEntity(entity_id="APP-1", name="App-1", kind="application")

    with pytest.raises(SecondaryLookupError):
        CimQueryBackend().children(_session(), get_kind("application"), parent)


def test_kinds_without_children_return_nothing(powershell) -> None:
    parent = ManagementEntity(entity_id="P1", name="Tools", kind="package")

    assert CimQueryBackend().children(_session(), get_kind("package"), parent) == []
    assert powershell.scripts == []


def test_content_metadata_prefers_loaded_xml(powershell) -> None:
    entity = ManagementEntity(entity_id="DT-1", name="App-1 MSI", kind="deployment_type", properties={"SDMPackageXML": SDM_XML})

    metadata = CimQueryBackend().content_metadata(_session(), get_kind("deployment_type"), entity)

    assert powershell.scripts == []
    assert metadata["tag"] == "AppMgmtDigest"
    content = metadata["children"][0]["children"][0]["children"][0]["children"][0]
    assert content["attributes"] == {"ContentId": "Content_1"}
    assert content["children"][0] == {"tag": "Location", "text": "\\\\srv\\apps\\viewer\\"}


def test_content_metadata_fetches_lazy_xml(powershell) -> None:
    powershell.rules = [("Select-Object -Property SDMPackageXML", ({"SDMPackageXML": SDM_XML}, None))]
    entity = ManagementEntity(entity_id="DT-1", name="App-1 MSI", kind="deployment_type", properties={"CI_ID": 16777300})

    metadata = CimQueryBackend().content_metadata(_session(), get_kind("deployment_type"), entity)

    assert "CI_ID = 16777300" in powershell.scripts[0]
    assert "| Get-CimInstance |" in powershell.scripts[0]
    assert metadata["tag"] == "AppMgmtDigest"


def test_content_metadata_errors(powershell) -> None:
    kind = get_kind("deployment_type")
    broken = ManagementEntity(entity_id="DT-2", name="Broken", kind=kind.name, properties={"SDMPackageXML": "<AppMgmtDigest>"})
    keyless = ManagementEntity(entity_id="DT-3", name="Keyless", kind=kind.name, properties={"SDMPackageXML": ""})

    with pytest.raises(SecondaryLookupError, match="not valid XML"):
        CimQueryBackend().content_metadata(_session(), kind, broken)
    with pytest.raises(SecondaryLookupError, match="no content lookup key"):
        CimQueryBackend().content_metadata(_session(), kind, keyless)


def test_content_metadata_not_declared_for_packages(powershell) -> None:
    entity = ManagementEntity(entity_id="P1", name="Tools", kind="package")

    assert CimQueryBackend().content_metadata(_session(), get_kind("package"), entity) is None
