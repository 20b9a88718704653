"""
Configuration Manager backend connector.

Two implementations sit behind ``CmBackend``:

- ``CmdletBackend`` drives the ConfigurationManager PowerShell module.
- ``CimQueryBackend`` issues WQL queries against ``root\\SMS\\site_<code>``.

``connect`` probes them once, in that order, and returns an explicit
``Session`` that every later call receives. Nothing here keeps connection
state between calls.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
import re
from typing import Any, Dict, List, Sequence
import xml.etree.ElementTree as ET

from config import settings
from config.constants import (
    CIM_EXCLUDED_PROPERTIES,
    CM_POWERSHELL_MODULE,
    DEFAULT_CM_NAMESPACE,
    SITE_NAMESPACE_PREFIX,
)
from shared.inventory.kind_loader import EntityKind, get_kind
from shared.models.entity import ManagementEntity
from shared.tools.errors import (
    BackendUnavailable,
    EnumerationError,
    KindConfigurationError,
    SecondaryLookupError,
)
from shared.tools.powershell import as_records, ps_quote, resolve_executable, run_json, wql_quote

logger = logging.getLogger(__name__)

_SITE_NAMESPACE_RE = re.compile(r"\\site_([A-Za-z0-9]{3})$", re.IGNORECASE)
_PROVIDER_PREFIX_RE = re.compile(r"^\\\\([^\\]+)\\(.+)$")


@dataclass(frozen=True)
class Session:
    """An opened systems-management namespace. Immutable; safe to share across workers."""

    backend: str
    namespace: str
    site_code: str
    provider: str | None
    executable: str
    timeout_seconds: int


def parse_target_namespace(target: str) -> tuple[str | None, str]:
    """Split ``\\\\host\\root\\SMS...`` into (provider, namespace)."""
    cleaned = (target or DEFAULT_CM_NAMESPACE).strip().replace("/", "\\")
    match = _PROVIDER_PREFIX_RE.match(cleaned)
    if match:
        return match.group(1), match.group(2)
    return None, cleaned


def site_code_from_namespace(namespace: str) -> str | None:
    match = _SITE_NAMESPACE_RE.search(namespace)
    return match.group(1).upper() if match else None


def choose_site(candidates: Sequence[str]) -> str:
    """First-match policy over discovered site namespaces."""
    codes = [name[len(SITE_NAMESPACE_PREFIX):].upper() for name in candidates
             if name.lower().startswith(SITE_NAMESPACE_PREFIX)]
    if not codes:
        raise BackendUnavailable("no site namespace found under the SMS provider")
    if len(codes) > 1:
        logger.warning(
            "backend_discovery step=site_ambiguous candidates=%s chosen=%s hint=pass --site-code to select explicitly",
            ",".join(codes),
            codes[0],
        )
    return codes[0]


def _clean_properties(record: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in record.items() if key not in CIM_EXCLUDED_PROPERTIES}


def _unwrap_join(record: Dict[str, Any], cim_class: str) -> Dict[str, Any]:
    # WQL joins may nest the selected class under its own name
    nested = record.get(cim_class)
    if isinstance(nested, dict):
        return nested
    return record


def to_entity(record: Dict[str, Any], kind: EntityKind) -> ManagementEntity:
    properties = _clean_properties(record)
    probe = ManagementEntity(entity_id="", name="", kind=kind.name, properties=properties)
    entity_id = probe.get(kind.id_field)
    name = probe.get(kind.name_field)
    return ManagementEntity(
        entity_id="" if entity_id is None else str(entity_id),
        name="" if name is None else str(name),
        kind=kind.name,
        properties=properties,
    )


def collection_join_wql(kind: EntityKind, collection_id: str) -> str:
    """WQL selecting members of a collection as instances of the kind's own class."""
    cls = kind.cim_class
    wql = (
        f"SELECT {cls}.* FROM {cls} INNER JOIN SMS_FullCollectionMembership "
        f"ON SMS_FullCollectionMembership.ResourceID = {cls}.ResourceId "
        f"WHERE SMS_FullCollectionMembership.CollectionID = {wql_quote(collection_id)}"
    )
    if kind.cim_filter:
        wql += f" AND ({kind.cim_filter})"
    return wql


def xml_to_mapping(text: str) -> Dict[str, Any]:
    """Parse serialized XML (e.g. SDMPackageXML) into nested dicts and lists."""

    def convert(element: ET.Element) -> Dict[str, Any]:
        tag = element.tag.split("}", 1)[-1]
        node: Dict[str, Any] = {"tag": tag}
        if element.attrib:
            node["attributes"] = {key.split("}", 1)[-1]: value for key, value in element.attrib.items()}
        text_value = (element.text or "").strip()
        if text_value:
            node["text"] = text_value
        children = [convert(child) for child in element]
        if children:
            node["children"] = children
        return node

    return convert(ET.fromstring(text))


class CmBackend(ABC):
    """Uniform enumeration surface over one Configuration Manager access method."""

    name: str = "abstract"

    @abstractmethod
    def probe(self, executable: str, timeout_seconds: int) -> bool:
        """Return True when this backend's API surface is present."""

    @abstractmethod
    def discover_sites(self, executable: str, provider: str | None, timeout_seconds: int) -> List[str]:
        """Return candidate site namespace names (``site_XXX``)."""

    @abstractmethod
    def _enumerate_script(self, session: Session, kind: EntityKind, collection_id: str | None) -> str:
        ...

    @abstractmethod
    def _children_script(self, session: Session, child_kind: EntityKind, parent: ManagementEntity) -> str:
        ...

    @abstractmethod
    def _content_script(self, session: Session, kind: EntityKind, key: str) -> str:
        ...

    def open(
        self,
        namespace: str,
        *,
        provider: str | None,
        site_code: str | None,
        executable: str,
        timeout_seconds: int,
    ) -> Session:
        code = site_code or site_code_from_namespace(namespace)
        if code is None:
            code = choose_site(self.discover_sites(executable, provider, timeout_seconds))
            logger.info("backend_discovery backend=%s step=site_selected site_code=%s", self.name, code)
        root = namespace
        if site_code_from_namespace(root) is not None:
            root = root.rsplit("\\", 1)[0]
        return Session(
            backend=self.name,
            namespace=f"{root}\\{SITE_NAMESPACE_PREFIX}{code.upper()}",
            site_code=code.upper(),
            provider=provider,
            executable=executable,
            timeout_seconds=timeout_seconds,
        )

    def _run(self, session: Session, script: str) -> tuple[Any, str | None]:
        return run_json(script, executable=session.executable, timeout_seconds=session.timeout_seconds)

    def enumerate(
        self, session: Session, kind: EntityKind, collection_id: str | None = None
    ) -> List[ManagementEntity]:
        if collection_id and not kind.collection_join:
            raise KindConfigurationError(f"entity kind {kind.name!r} does not support a collection filter")
        payload, error = self._run(session, self._enumerate_script(session, kind, collection_id))
        if error:
            raise EnumerationError(f"{self.name} enumeration of {kind.name} failed: {error}")
        return [to_entity(_unwrap_join(record, kind.cim_class), kind) for record in as_records(payload)]

    def children(self, session: Session, kind: EntityKind, parent: ManagementEntity) -> List[ManagementEntity]:
        if not kind.children:
            return []
        child_kind = get_kind(kind.children)
        payload, error = self._run(session, self._children_script(session, child_kind, parent))
        if error:
            raise SecondaryLookupError(f"{child_kind.name} lookup for {parent.name!r} failed: {error}")
        return [to_entity(record, child_kind) for record in as_records(payload)]

    def content_metadata(self, session: Session, kind: EntityKind, entity: ManagementEntity) -> Any:
        """Return the kind-specific content metadata for ``entity`` as a walkable structure."""
        if kind.content_lookup != "sdm_package_xml":
            return None
        xml_text = entity.get("SDMPackageXML")
        if not isinstance(xml_text, str) or not xml_text.strip():
            key = entity.get(kind.content_key_field or kind.id_field)
            if key is None:
                raise SecondaryLookupError(f"{kind.name} {entity.name!r} has no content lookup key")
            payload, error = self._run(session, self._content_script(session, kind, str(key)))
            if error:
                raise SecondaryLookupError(f"content metadata for {entity.name!r} failed: {error}")
            records = as_records(payload)
            xml_text = records[0].get("SDMPackageXML") if records else None
        if not isinstance(xml_text, str) or not xml_text.strip():
            return None
        try:
            return xml_to_mapping(xml_text)
        except ET.ParseError as exc:
            raise SecondaryLookupError(f"content metadata for {entity.name!r} is not valid XML: {exc}") from exc


class CmdletBackend(CmBackend):
    name = "cmdlet"

    def probe(self, executable: str, timeout_seconds: int) -> bool:
        script = (
            f"[bool](Get-Module -ListAvailable -Name {CM_POWERSHELL_MODULE}) "
            "-or [bool]$env:SMS_ADMIN_UI_PATH"
        )
        payload, error = run_json(script, executable=executable, timeout_seconds=timeout_seconds)
        return error is None and payload is True

    def _preamble(self, site_code: str | None, provider: str | None) -> str:
        lines = [
            "if ($env:SMS_ADMIN_UI_PATH) { "
            f"Import-Module (Join-Path (Split-Path $env:SMS_ADMIN_UI_PATH) '{CM_POWERSHELL_MODULE}.psd1') "
            f"}} else {{ Import-Module {CM_POWERSHELL_MODULE} }}",
        ]
        if site_code:
            drive = ps_quote(site_code)
            root = ps_quote(provider) if provider else "$env:COMPUTERNAME"
            lines.append(
                f"if (-not (Get-PSDrive -Name {drive} -PSProvider CMSite -ErrorAction SilentlyContinue)) "
                f"{{ New-PSDrive -Name {drive} -PSProvider CMSite -Root {root} | Out-Null }}"
            )
            lines.append(f"Set-Location ({drive} + ':')")
        return "; ".join(lines)

    def _select(self) -> str:
        excluded = ",".join(CIM_EXCLUDED_PROPERTIES)
        return f"Select-Object -Property * -ExcludeProperty {excluded}"

    def discover_sites(self, executable: str, provider: str | None, timeout_seconds: int) -> List[str]:
        script = (
            f"{self._preamble(None, provider)}; "
            "Get-PSDrive -PSProvider CMSite | ForEach-Object { 'site_' + $_.Name }"
        )
        payload, error = run_json(script, executable=executable, timeout_seconds=timeout_seconds)
        if error:
            raise BackendUnavailable(f"cmdlet site discovery failed: {error}")
        items = payload if isinstance(payload, list) else [payload] if payload else []
        return [str(item) for item in items]

    def _enumerate_script(self, session: Session, kind: EntityKind, collection_id: str | None) -> str:
        if collection_id:
            wql = collection_join_wql(kind, collection_id)
            command = f"Invoke-CMWmiQuery -Query {ps_quote(wql)} -Option Fast"
        else:
            command = " ".join([kind.cmdlet, *kind.cmdlet_args])
        return f"{self._preamble(session.site_code, session.provider)}; {command} | {self._select()}"

    def _children_script(self, session: Session, child_kind: EntityKind, parent: ManagementEntity) -> str:
        if not child_kind.cmdlet_parent_arg:
            raise KindConfigurationError(f"entity kind {child_kind.name!r} declares no cmdlet_parent_arg")
        command = f"{child_kind.cmdlet} {child_kind.cmdlet_parent_arg} {ps_quote(parent.name)}"
        return f"{self._preamble(session.site_code, session.provider)}; {command} | {self._select()}"

    def _content_script(self, session: Session, kind: EntityKind, key: str) -> str:
        if not kind.content_cmdlet:
            raise KindConfigurationError(f"entity kind {kind.name!r} declares no content_cmdlet")
        command = kind.content_cmdlet.replace("{key}", ps_quote(key))
        return (
            f"{self._preamble(session.site_code, session.provider)}; "
            f"{command} | Select-Object -Property SDMPackageXML"
        )


class CimQueryBackend(CmBackend):
    name = "cim"

    def probe(self, executable: str, timeout_seconds: int) -> bool:
        payload, error = run_json(
            "[bool](Get-Command Get-CimInstance -ErrorAction SilentlyContinue)",
            executable=executable,
            timeout_seconds=timeout_seconds,
        )
        return error is None and payload is True

    @staticmethod
    def _target(namespace: str, provider: str | None) -> str:
        target = f"-Namespace {ps_quote(namespace)}"
        if provider:
            target += f" -ComputerName {ps_quote(provider)}"
        return target

    def discover_sites(self, executable: str, provider: str | None, timeout_seconds: int) -> List[str]:
        script = (
            f"Get-CimInstance {self._target(DEFAULT_CM_NAMESPACE, provider)} -ClassName __NAMESPACE "
            "| Select-Object -ExpandProperty Name"
        )
        payload, error = run_json(script, executable=executable, timeout_seconds=timeout_seconds)
        if error:
            raise BackendUnavailable(f"CIM site discovery failed: {error}")
        items = payload if isinstance(payload, list) else [payload] if payload else []
        return [str(item) for item in items]

    def _query(self, session: Session, wql: str) -> str:
        excluded = ",".join(CIM_EXCLUDED_PROPERTIES)
        return (
            f"Get-CimInstance {self._target(session.namespace, session.provider)} -Query {ps_quote(wql)} "
            f"| Select-Object -Property * -ExcludeProperty {excluded}"
        )

    def _enumerate_script(self, session: Session, kind: EntityKind, collection_id: str | None) -> str:
        if collection_id:
            wql = collection_join_wql(kind, collection_id)
        else:
            wql = f"SELECT * FROM {kind.cim_class}"
            if kind.cim_filter:
                wql += f" WHERE {kind.cim_filter}"
        return self._query(session, wql)

    def _children_script(self, session: Session, child_kind: EntityKind, parent: ManagementEntity) -> str:
        if not child_kind.child_field:
            raise KindConfigurationError(f"entity kind {child_kind.name!r} declares no child_field")
        parent_value = parent.get(child_kind.parent_key or "", parent.entity_id)
        wql = f"SELECT * FROM {child_kind.cim_class} WHERE {child_kind.child_field} = {wql_quote(str(parent_value))}"
        if child_kind.cim_filter:
            wql += f" AND ({child_kind.cim_filter})"
        return self._query(session, wql)

    def _content_script(self, session: Session, kind: EntityKind, key: str) -> str:
        field = kind.content_key_field or kind.id_field
        literal = key if key.isdigit() else wql_quote(key)
        wql = f"SELECT * FROM {kind.cim_class} WHERE {field} = {literal}"
        # Lazy properties such as SDMPackageXML only appear on a per-instance refresh
        return (
            f"Get-CimInstance {self._target(session.namespace, session.provider)} -Query {ps_quote(wql)} "
            "| Get-CimInstance | Select-Object -Property SDMPackageXML"
        )


def default_backends() -> List[CmBackend]:
    return [CmdletBackend(), CimQueryBackend()]


def connect(
    target_namespace: str | None = None,
    *,
    provider: str | None = None,
    site_code: str | None = None,
    executable: str | None = None,
    timeout_seconds: int | None = None,
    backends: Sequence[CmBackend] | None = None,
) -> tuple[Session, CmBackend]:
    """Open a session against the first backend whose API surface is present.

    Raises BackendUnavailable when PowerShell is missing or no backend answers.
    """
    namespace_provider, namespace = parse_target_namespace(target_namespace or settings.CM_TARGET_NAMESPACE)
    provider = provider or namespace_provider or settings.CM_PROVIDER
    site_code = site_code or settings.CM_SITE_CODE
    timeout = timeout_seconds or settings.CALL_TIMEOUT_SECONDS
    resolved = resolve_executable(executable or settings.POWERSHELL_EXECUTABLE)
    if resolved is None:
        raise BackendUnavailable("PowerShell is not installed; no Configuration Manager backend is reachable")

    tried: List[str] = []
    for backend in backends if backends is not None else default_backends():
        if not backend.probe(resolved, timeout):
            logger.info("backend_probe backend=%s available=no", backend.name)
            tried.append(backend.name)
            continue
        logger.info("backend_probe backend=%s available=yes", backend.name)
        session = backend.open(
            namespace,
            provider=provider,
            site_code=site_code,
            executable=resolved,
            timeout_seconds=timeout,
        )
        logger.info(
            "backend_connected backend=%s namespace=%s provider=%s site_code=%s",
            session.backend,
            session.namespace,
            session.provider or "local",
            session.site_code,
        )
        return session, backend

    raise BackendUnavailable(f"no Configuration Manager backend available (tried: {', '.join(tried) or 'none'})")


def enumerate_entities(
    session: Session,
    backend: CmBackend,
    kind_name: str,
    collection_id: str | None = None,
) -> List[ManagementEntity]:
    """Enumerate entities of one kind, optionally restricted to a collection's members."""
    kind = get_kind(kind_name)
    entities = backend.enumerate(session, kind, collection_id)
    logger.info(
        "backend_enumerate backend=%s kind=%s collection=%s count=%s",
        session.backend,
        kind.name,
        collection_id or "-",
        len(entities),
    )
    return entities
