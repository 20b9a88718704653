"""Log setup shared by the CLI entry points."""
from __future__ import annotations

import logging
from pathlib import Path

from config import settings

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def setup_logging(level: str | None = None, log_file: str | Path | None = None) -> None:
    """Configure root logging: timestamped, leveled lines to stderr and optionally a file."""
    resolved_level = (level or settings.LOG_LEVEL).upper()
    numeric_level = getattr(logging, resolved_level, logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    target = log_file or settings.LOG_FILE
    if target:
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(numeric_level)
