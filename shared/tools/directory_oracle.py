"""
Directory-service oracle for managed hosts.

Two resolvers share one interface:

- ``ActiveDirectoryModuleResolver`` uses Get-ADComputer from the RSAT
  ActiveDirectory module.
- ``AdsiSearcherResolver`` performs a plain LDAP search through
  System.DirectoryServices when the module is not installed.

``select_resolver`` probes once per run. Resolvers raise DirectoryQueryError
for a failed search and return None when nothing matched.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
from typing import Any, Dict

from config import settings
from config.constants import AD_POWERSHELL_MODULE, UAC_ACCOUNTDISABLE
from shared.tools.errors import BackendUnavailable, DirectoryQueryError
from shared.tools.powershell import as_records, is_timeout, ldap_escape, ps_quote, resolve_executable, run_json

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DirectoryAccount:
    name: str
    dns_host_name: str | None
    sam_account_name: str | None
    enabled: bool
    distinguished_name: str | None = None


def fqdn_filter(fqdn: str) -> str:
    return f"(&(objectCategory=computer)(dNSHostName={ldap_escape(fqdn)}))"


def short_name_filter(short_name: str) -> str:
    account = short_name.upper()
    if not account.endswith("$"):
        account += "$"
    return f"(&(objectCategory=computer)(sAMAccountName={ldap_escape(account)}))"


def _text(record: Dict[str, Any], key: str) -> str | None:
    value = record.get(key)
    if value is None or value == "":
        return None
    return str(value)


class DirectoryResolver(ABC):
    name: str = "abstract"

    def __init__(self, *, executable: str, timeout_seconds: int, search_base: str | None = None) -> None:
        self.executable = executable
        self.timeout_seconds = timeout_seconds
        self.search_base = search_base

    @abstractmethod
    def _search_script(self, ldap_filter: str) -> str:
        ...

    @abstractmethod
    def _to_account(self, record: Dict[str, Any]) -> DirectoryAccount:
        ...

    def _search(self, ldap_filter: str) -> DirectoryAccount | None:
        payload, error = run_json(
            self._search_script(ldap_filter),
            executable=self.executable,
            timeout_seconds=self.timeout_seconds,
        )
        if error:
            raise DirectoryQueryError(f"{self.name} search {ldap_filter} failed: {error}", timed_out=is_timeout(error))
        records = as_records(payload)
        if not records:
            return None
        return self._to_account(records[0])

    def find_by_fqdn(self, fqdn: str) -> DirectoryAccount | None:
        return self._search(fqdn_filter(fqdn))

    def find_by_short_name(self, short_name: str) -> DirectoryAccount | None:
        return self._search(short_name_filter(short_name))


class ActiveDirectoryModuleResolver(DirectoryResolver):
    name = "ad-module"

    def _search_script(self, ldap_filter: str) -> str:
        scope = f" -SearchBase {ps_quote(self.search_base)}" if self.search_base else ""
        return (
            f"Import-Module {AD_POWERSHELL_MODULE}; "
            f"Get-ADComputer -LDAPFilter {ps_quote(ldap_filter)}{scope} "
            "-Properties DNSHostName,Enabled,SamAccountName,DistinguishedName "
            "| Select-Object -First 1 Name,DNSHostName,SamAccountName,Enabled,DistinguishedName"
        )

    def _to_account(self, record: Dict[str, Any]) -> DirectoryAccount:
        return DirectoryAccount(
            name=str(record.get("Name", "")),
            dns_host_name=_text(record, "DNSHostName"),
            sam_account_name=_text(record, "SamAccountName"),
            enabled=bool(record.get("Enabled", False)),
            distinguished_name=_text(record, "DistinguishedName"),
        )


class AdsiSearcherResolver(DirectoryResolver):
    name = "adsi-searcher"

    def _search_script(self, ldap_filter: str) -> str:
        root = ""
        if self.search_base:
            root = f"$s.SearchRoot = [ADSI]({ps_quote('LDAP://' + self.search_base)}); "
        return (
            "$s = New-Object System.DirectoryServices.DirectorySearcher; "
            f"{root}"
            f"$s.Filter = {ps_quote(ldap_filter)}; "
            "'name','dnshostname','samaccountname','useraccountcontrol','distinguishedname' "
            "| ForEach-Object { [void]$s.PropertiesToLoad.Add($_) }; "
            "$r = $s.FindOne(); "
            "if ($r) { [pscustomobject]@{ "
            "Name = [string]$r.Properties['name'][0]; "
            "DNSHostName = [string]$r.Properties['dnshostname'][0]; "
            "SamAccountName = [string]$r.Properties['samaccountname'][0]; "
            "UserAccountControl = [int]$r.Properties['useraccountcontrol'][0]; "
            "DistinguishedName = [string]$r.Properties['distinguishedname'][0] } }"
        )

    def _to_account(self, record: Dict[str, Any]) -> DirectoryAccount:
        try:
            uac = int(record.get("UserAccountControl") or 0)
        except (TypeError, ValueError):
            uac = 0
        return DirectoryAccount(
            name=str(record.get("Name", "")),
            dns_host_name=_text(record, "DNSHostName"),
            sam_account_name=_text(record, "SamAccountName"),
            enabled=not bool(uac & UAC_ACCOUNTDISABLE),
            distinguished_name=_text(record, "DistinguishedName"),
        )


def ad_module_available(executable: str, timeout_seconds: int) -> bool:
    payload, error = run_json(
        f"[bool](Get-Module -ListAvailable -Name {AD_POWERSHELL_MODULE})",
        executable=executable,
        timeout_seconds=timeout_seconds,
    )
    return error is None and payload is True


def select_resolver(
    *,
    search_base: str | None = None,
    executable: str | None = None,
    timeout_seconds: int | None = None,
) -> DirectoryResolver:
    """Pick the directory resolver for this run: the AD module if present, else an LDAP search."""
    resolved = resolve_executable(executable or settings.POWERSHELL_EXECUTABLE)
    if resolved is None:
        raise BackendUnavailable("PowerShell is not installed; no directory resolver is reachable")
    timeout = timeout_seconds or settings.CALL_TIMEOUT_SECONDS
    base = search_base if search_base is not None else settings.AD_SEARCH_BASE

    resolver_cls: type[DirectoryResolver] = AdsiSearcherResolver
    if ad_module_available(resolved, timeout):
        resolver_cls = ActiveDirectoryModuleResolver
    resolver = resolver_cls(executable=resolved, timeout_seconds=timeout, search_base=base)
    logger.info("directory_resolver resolver=%s search_base=%s", resolver.name, base or "-")
    return resolver
