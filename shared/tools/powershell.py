"""
PowerShell runner shared by the Configuration Manager backends and the
directory resolvers.

Commands never raise: every call returns ``(payload, error)`` the way the
provider CLI helpers do, and callers decide whether an error is fatal.
"""
from __future__ import annotations

import json
import shutil
import subprocess
from typing import Any, Dict, List

from config.constants import JSON_DEPTH

TIMEOUT_PREFIX = "timed out"

_POWERSHELL_CANDIDATES = ("pwsh", "powershell")


def resolve_executable(explicit: str | None = None) -> str | None:
    """Return a usable PowerShell executable path, or None if none is installed."""
    candidates = (explicit,) if explicit else _POWERSHELL_CANDIDATES
    for candidate in candidates:
        path = shutil.which(candidate)
        if path is not None:
            return path
    return None


def ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted literal."""
    return "'" + str(value).replace("'", "''") + "'"


def wql_quote(value: str) -> str:
    """Quote a value as a WQL string literal."""
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def ldap_escape(value: str) -> str:
    """Escape a value for use inside an LDAP search filter (RFC 4515)."""
    replacements = {
        "\\": r"\5c",
        "*": r"\2a",
        "(": r"\28",
        ")": r"\29",
        "\x00": r"\00",
    }
    return "".join(replacements.get(ch, ch) for ch in str(value))


def _run_command(
    command: List[str], timeout_seconds: int
) -> tuple[subprocess.CompletedProcess[str] | None, str | None]:
    try:
        result = subprocess.run(
            command,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired:
        return None, f"{TIMEOUT_PREFIX} after {timeout_seconds}s"
    except (subprocess.SubprocessError, OSError) as exc:
        return None, f"command execution failed: {exc}"
    return result, None


def run_json(script: str, *, executable: str, timeout_seconds: int = 120) -> tuple[Any, str | None]:
    """Run a PowerShell script and decode its output as JSON.

    The script's pipeline output is piped through ConvertTo-Json; an empty
    pipeline decodes to None.
    """
    wrapped = (
        "$ErrorActionPreference = 'Stop'; "
        "$ProgressPreference = 'SilentlyContinue'; "
        f"& {{ {script} }} | ConvertTo-Json -Depth {JSON_DEPTH} -Compress"
    )
    command = [executable, "-NoProfile", "-NonInteractive", "-Command", wrapped]
    result, error = _run_command(command, timeout_seconds)
    if result is None:
        return None, error
    if result.returncode != 0:
        lines = [line.strip() for line in (result.stderr or result.stdout or "").splitlines() if line.strip()]
        message = lines[-1][:280] if lines else ""
        return None, message or f"command returned exit code {result.returncode}"
    output = (result.stdout or "").strip()
    if not output:
        return None, None
    try:
        return json.loads(output), None
    except json.JSONDecodeError:
        return None, "invalid json response"


def is_timeout(error: str | None) -> bool:
    return bool(error) and error.startswith(TIMEOUT_PREFIX)


def as_records(payload: Any) -> List[Dict[str, Any]]:
    """Normalize ConvertTo-Json output (None, one object, or a list) into a list of dicts."""
    if payload is None:
        return []
    items = payload if isinstance(payload, list) else [payload]
    return [item for item in items if isinstance(item, dict)]
