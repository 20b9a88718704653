"""
Domain constants for the inventory auditor.

These values encode the audit taxonomy and Configuration Manager / Active
Directory knowledge. They don't change per deployment.

For runtime/deployment config, see config.settings.
"""
from __future__ import annotations

import re


# =============================================================================
# STATUS TAXONOMY
# =============================================================================

STATUS_HEALTHY: str = "Healthy"
STATUS_EMPTY_OR_DISABLED: str = "EmptyOrDisabled"
STATUS_MISSING: str = "Missing"
STATUS_NO_CANDIDATE: str = "NoCandidate"
STATUS_UNRECOGNIZED: str = "Unrecognized"

# Report order; every run summary carries all five counters
STATUS_ORDER: tuple[str, ...] = (
    STATUS_HEALTHY,
    STATUS_EMPTY_OR_DISABLED,
    STATUS_MISSING,
    STATUS_NO_CANDIDATE,
    STATUS_UNRECOGNIZED,
)


# =============================================================================
# VERDICT NOTE CODES
# =============================================================================

NOTE_ABSENT: str = "absent"
NOTE_ACCESS_DENIED: str = "access-denied"
NOTE_UNREADABLE: str = "unreadable"
NOTE_EMPTY: str = "empty"
NOTE_UNRECOGNIZED_FORMAT: str = "unrecognized-format"
NOTE_DISABLED: str = "disabled"
NOTE_TIMEOUT: str = "timeout"
NOTE_LOOKUP_FAILED: str = "lookup-failed"
NOTE_NO_CANDIDATE: str = "no-candidate"

NOTE_CODES: frozenset[str] = frozenset(
    {
        NOTE_ABSENT,
        NOTE_ACCESS_DENIED,
        NOTE_UNREADABLE,
        NOTE_EMPTY,
        NOTE_UNRECOGNIZED_FORMAT,
        NOTE_DISABLED,
        NOTE_TIMEOUT,
        NOTE_LOOKUP_FAILED,
        NOTE_NO_CANDIDATE,
    }
)

NO_CANDIDATE_MARKER: str = "<no-candidate>"


# =============================================================================
# PATH SYNTAX
# =============================================================================

# Anything that starts like a Windows path is a candidate worth reporting
CANDIDATE_PATH_RE = re.compile(r"^\s*(?:\\\\|//|[A-Za-z]:[\\/])")

# \\host\share[\...]
UNC_PATH_RE = re.compile(r'^\\\\[^\\/:*?"<>|]+\\[^\\/:*?"<>|]+(?:\\.*)?$')

# X:\...
DRIVE_PATH_RE = re.compile(r"^[A-Za-z]:\\")


# =============================================================================
# CONFIGURATION MANAGER
# =============================================================================

DEFAULT_CM_NAMESPACE: str = "root\\SMS"
SITE_NAMESPACE_PREFIX: str = "site_"
CM_POWERSHELL_MODULE: str = "ConfigurationManager"
AD_POWERSHELL_MODULE: str = "ActiveDirectory"

# CIM system properties carry no audit facts and bloat the JSON payload
CIM_EXCLUDED_PROPERTIES: tuple[str, ...] = (
    "CimClass",
    "CimInstanceProperties",
    "CimSystemProperties",
    "PSComputerName",
)

JSON_DEPTH: int = 8


# =============================================================================
# ACTIVE DIRECTORY
# =============================================================================

# userAccountControl flag for a disabled account
UAC_ACCOUNTDISABLE: int = 0x0002


# =============================================================================
# REPORTING
# =============================================================================

REPORT_COLUMNS: tuple[str, ...] = (
    "entity_name",
    "entity_id",
    "sub_entity",
    "candidate",
    "exists",
    "healthy",
    "status",
    "note",
)
