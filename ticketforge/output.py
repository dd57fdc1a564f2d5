"""
Rich Output Utilities
=====================

Terminal output for the ticketforge CLI using the Rich library.
Library modules log through ``logging``; this module owns the themed console
and the Rich logging handler the CLI installs.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text
from rich.theme import Theme


# =============================================================================
# Color Scheme & Theme
# =============================================================================

@dataclass(frozen=True)
class ForgeColors:
    """Palette using hex for truecolor terminal support."""
    ink: str = "#E6E6E6"       # primary text
    dim: str = "#9AA4B2"       # muted text
    accent: str = "#F59E0B"    # warm accent
    cool: str = "#22D3EE"      # cool accent
    steel: str = "#94A3B8"
    ok: str = "#22C55E"
    warn: str = "#FBBF24"
    err: str = "#EF4444"


def forge_theme(colors: ForgeColors = ForgeColors()) -> Theme:
    """
    Rich Theme for the ticketforge CLI.

    Style names are semantic so they can be used everywhere:
      console.print("...", style="tf.ok")
    """
    return Theme(
        {
            "tf.border": f"{colors.cool}",
            "tf.accent": f"bold {colors.accent}",
            "tf.muted": f"{colors.dim}",
            "tf.text": f"{colors.ink}",

            "tf.ok": f"bold {colors.ok}",
            "tf.warn": f"bold {colors.warn}",
            "tf.err": f"bold {colors.err}",
            "tf.info": f"{colors.cool}",

            "tf.key": f"{colors.steel}",
            "tf.value": f"{colors.ink}",
            "tf.number": f"bold {colors.accent}",
            "tf.path": f"{colors.cool}",
            "tf.timestamp": f"{colors.dim}",

            # Workflow phases
            "tf.phase.started": f"{colors.dim}",
            "tf.phase.implementation": f"bold {colors.accent}",
            "tf.phase.ai_review": f"bold {colors.cool}",
            "tf.phase.human_review": f"bold {colors.warn}",
            "tf.phase.done": f"bold {colors.ok}",

            "tf.table.header": f"bold {colors.cool}",
        }
    )


# =============================================================================
# Unicode / ASCII Fallbacks
# =============================================================================

def _can_use_unicode() -> bool:
    """Check if the terminal can handle Unicode characters."""
    if os.name == 'nt':
        try:
            encoding = sys.stdout.encoding or 'utf-8'
            "✓✗•".encode(encoding)
            return True
        except (UnicodeEncodeError, LookupError, AttributeError):
            return False
    return True


_UNICODE_ICONS = {
    "check": "✓",
    "cross": "✗",
    "blocked": "⛔",
    "warning": "⚠️",
    "info": "ℹ",
    "bullet": "•",
    "arrow_right": "→",
    "running": "●",
    "stopped": "○",
}

_ASCII_ICONS = {
    "check": "[OK]",
    "cross": "[X]",
    "blocked": "[BLOCKED]",
    "warning": "[!]",
    "info": "[i]",
    "bullet": "-",
    "arrow_right": "->",
    "running": "*",
    "stopped": "o",
}

_ICONS = _UNICODE_ICONS if _can_use_unicode() else _ASCII_ICONS


def icon(name: str) -> str:
    """Get an icon by name, using ASCII fallback if needed."""
    return _ICONS.get(name, "")


# =============================================================================
# Global Console Instance
# =============================================================================

console = Console(theme=forge_theme())

_VERBOSE = False


def set_verbose(verbose: bool) -> None:
    """Set global verbosity level."""
    global _VERBOSE
    _VERBOSE = verbose


def is_verbose() -> bool:
    return _VERBOSE


# =============================================================================
# Basic Message Functions
# =============================================================================

def print_success(message: str) -> None:
    """Print a success message with checkmark."""
    console.print(f"[tf.ok]{icon('check')} {message}[/]")


def print_error(message: str) -> None:
    """Print an error message with X."""
    console.print(f"[tf.err]{icon('cross')} {message}[/]")


def print_warning(message: str) -> None:
    console.print(f"[tf.warn]{icon('warning')} {message}[/]")


def print_info(message: str) -> None:
    console.print(f"[tf.info]{icon('info')} {message}[/]")


def print_muted(message: str) -> None:
    console.print(f"[tf.muted]{message}[/]")


def print_header(title: str, style: str = "tf.accent") -> None:
    """Print a prominent section header with rule lines."""
    console.print()
    console.print(Rule(f"[{style}]{title}[/]", style=style))
    console.print()


# =============================================================================
# Data Display Functions
# =============================================================================

def print_key_value_table(
    data: Dict[str, Any],
    *,
    title: Optional[str] = None,
    border_style: str = "tf.border",
) -> None:
    """Print multiple key-value pairs in a clean table format."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="tf.key")
    table.add_column("Value", style="tf.value")

    for key, value in data.items():
        table.add_row(key, str(value))

    if title:
        console.print(Panel(table, title=f"[bold]{title}[/]", border_style=border_style))
    else:
        console.print(table)


def print_json_data(data: Any, *, title: Optional[str] = None, indent: int = 2) -> None:
    """Print JSON data with syntax highlighting."""
    json_str = json.dumps(data, indent=indent, default=str)
    syntax = Syntax(json_str, "json", theme="monokai", line_numbers=False)

    if title:
        console.print(Panel(syntax, title=f"[bold]{title}[/]", border_style="tf.border"))
    else:
        console.print(syntax)


def print_code(code: str, *, language: str = "bash", title: Optional[str] = None) -> None:
    """Print a script with syntax highlighting."""
    syntax = Syntax(code, language, theme="monokai", line_numbers=True)
    if title:
        console.print(Panel(syntax, title=f"[bold]{title}[/]", border_style="tf.border"))
    else:
        console.print(syntax)


# =============================================================================
# Table Functions
# =============================================================================

def create_table(
    *,
    title: Optional[str] = None,
    columns: Optional[List[str]] = None,
    show_header: bool = True,
    border_style: str = "tf.border",
    header_style: str = "tf.table.header",
) -> Table:
    """Create a styled Rich Table."""
    table = Table(
        title=title,
        show_header=show_header,
        header_style=header_style,
        border_style=border_style,
        title_style="tf.accent",
    )

    if columns:
        for col in columns:
            table.add_column(col)

    return table


def print_table(table: Table) -> None:
    console.print(table)


# =============================================================================
# Panels
# =============================================================================

def print_error_panel(message: str, title: str = "Error") -> None:
    """Print an error panel with red border."""
    console.print(Panel(
        f"[tf.err]{icon('cross')} {message}[/]",
        title=f"[tf.err]{title}[/]",
        border_style="tf.err",
        padding=(1, 2),
    ))


def print_blocked_panel(message: str, title: str = "Blocked") -> None:
    """Print a policy block with its remediation text."""
    console.print(Panel(
        Text(message),
        title=f"[tf.err]{icon('blocked')} {title}[/]",
        border_style="tf.err",
        padding=(1, 2),
    ))


def status_marker(running: bool) -> str:
    """Colored running/stopped marker for table cells."""
    if running:
        return f"[tf.ok]{icon('running')} running[/]"
    return f"[tf.muted]{icon('stopped')} stopped[/]"


# =============================================================================
# Logging Integration
# =============================================================================

def setup_rich_logging(level: int = logging.INFO) -> None:
    """
    Configure Python logging to use Rich for log output.

    Usage:
        setup_rich_logging()
        logging.info("This will be pretty!")
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(
            console=console,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )],
    )
