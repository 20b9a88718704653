"""
Runtime and deployment configuration for the inventory auditor.

Reads from environment variables with sensible defaults.
Endpoint selection, timeouts and logging knobs live here.

For domain constants (status labels, path syntax), see config.constants.
For credentials and site-specific values, see .env.
"""
from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv

from config.constants import DEFAULT_CM_NAMESPACE
from shared.utils.env import env_bool, env_int, env_value

load_dotenv()

ROOT_DIR = Path(__file__).resolve().parents[1]


# =============================================================================
# CONFIGURATION MANAGER ENDPOINT
# =============================================================================

# Namespace to connect to, e.g. root\SMS or root\SMS\site_PS1
CM_TARGET_NAMESPACE: str = env_value("CM_TARGET_NAMESPACE", DEFAULT_CM_NAMESPACE) or DEFAULT_CM_NAMESPACE

# SMS provider host; None means the local machine
CM_PROVIDER: str | None = env_value("CM_PROVIDER")

# Explicit site code skips sub-namespace auto-discovery
CM_SITE_CODE: str | None = env_value("CM_SITE_CODE")


# =============================================================================
# EXTERNAL CALLS
# =============================================================================

# PowerShell executable; resolved with shutil.which when not a path
POWERSHELL_EXECUTABLE: str | None = env_value("AUDIT_POWERSHELL")

# Per-call timeout applied to every PowerShell invocation
CALL_TIMEOUT_SECONDS: int = env_int("AUDIT_CALL_TIMEOUT_SECONDS", 120)

# Whole-run deadline; 0 disables it
RUN_TIMEOUT_SECONDS: int = env_int("AUDIT_RUN_TIMEOUT_SECONDS", 0)

# 1 keeps the reference single-threaded pull model
MAX_WORKERS: int = env_int("AUDIT_MAX_WORKERS", 1)


# =============================================================================
# DIRECTORY SERVICE
# =============================================================================

AD_SEARCH_BASE: str | None = env_value("AD_SEARCH_BASE")
AD_IGNORE_DISABLED: bool = env_bool("AD_IGNORE_DISABLED", False)


# =============================================================================
# LOGGING & OUTPUT
# =============================================================================

LOG_LEVEL: str = env_value("AUDIT_LOG_LEVEL", "INFO") or "INFO"
LOG_FILE: str | None = env_value("AUDIT_LOG_FILE")


def report_dir() -> Path:
    """Directory that receives CSV reports (created on demand by the sink)."""
    raw = env_value("AUDIT_REPORT_DIR", "./reports") or "./reports"
    path = Path(raw)
    if not path.is_absolute():
        path = ROOT_DIR / path
    return path


def entity_kinds_file() -> Path:
    raw = env_value("AUDIT_ENTITY_KINDS_FILE")
    if raw:
        return Path(raw)
    return ROOT_DIR / "config" / "entity_kinds.yaml"
