"""
Console panels for the audit CLI: run configuration and the status summary.

Colors are plain ANSI escapes, disabled when stdout is not a terminal unless
AUDIT_FORCE_COLOR says otherwise.
"""
from __future__ import annotations

import shutil
import sys
import textwrap
from typing import Any, TextIO

from shared.utils.env import env_value


class Ansi:
    RESET  = "\033[0m"
    BOLD   = "\033[1m"
    GREEN  = "\033[32m"
    YELLOW = "\033[33m"
    RED    = "\033[31m"
    BLUE   = "\033[34m"
    CYAN   = "\033[36m"


def color_enabled(stream: TextIO | None = None) -> bool:
    force = (env_value("AUDIT_FORCE_COLOR", "auto") or "auto").lower()
    if force in {"0", "false", "no"}:
        return False
    if force in {"1", "true", "yes"}:
        return True
    return (stream or sys.stdout).isatty()


def color(text: str, color_code: str, stream: TextIO | None = None) -> str:
    if not color_enabled(stream):
        return text
    return f"{color_code}{text}{Ansi.RESET}"


def terminal_width() -> int:
    columns = shutil.get_terminal_size((100, 20)).columns
    return max(60, min(columns, 140))


def wrap_row(label: str, value: Any, width: int) -> list[str]:
    """``label: value`` with continuation lines indented under the value."""
    prefix = f"{label}: "
    chunks = textwrap.wrap(str(value).replace("\n", " | "), width=max(12, width - len(prefix))) or [""]
    indent = " " * len(prefix)
    return [f"{prefix}{chunks[0]}"] + [f"{indent}{chunk}" for chunk in chunks[1:]]


def render_panel(title: str, rows: list[tuple[str, Any]], width: int | None = None) -> list[str]:
    max_width = (width or terminal_width()) - 4
    body: list[str] = []
    for label, value in rows:
        body.extend(wrap_row(label, value, max_width))

    title_text = f" {title} "
    inner = min(max(len(title_text), max((len(line) for line in body), default=0), 32), max_width)
    lines = [f"╭─{title_text}{'─' * (inner - len(title_text))}╮"]
    lines.extend(f"│ {line.ljust(inner)}│" for line in body)
    lines.append(f"╰{'─' * (inner + 1)}╯")
    return lines


def print_panel(title: str, rows: list[tuple[str, Any]], color_code: str, stream: TextIO | None = None) -> None:
    out = stream or sys.stdout
    print("", file=out)
    for line in render_panel(title, rows):
        print(color(line, color_code, out), file=out)
