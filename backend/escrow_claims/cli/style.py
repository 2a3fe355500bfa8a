# escrow_claims/cli/style.py
"""
Terminal styling for the escrow claims CLI.
Plain status lines, light panels and tables on a shared Rich console.
"""

from rich.console import Console
from rich.json import JSON
from rich.pretty import Pretty
from rich.progress import SpinnerColumn, TextColumn, TimeElapsedColumn, Progress
from rich.table import Table
import os
import sys

# ─────────────────────────────────────────────
# Console instance
# ─────────────────────────────────────────────

# Consoles that cannot encode the arrow fall back to ASCII symbols
_needs_ascii = False
if sys.platform == "win32":
    try:
        "→".encode(sys.stdout.encoding or "utf-8")
    except (UnicodeEncodeError, AttributeError):
        _needs_ascii = True

console = Console(highlight=False, soft_wrap=True, legacy_windows=False)

# ─────────────────────────────────────────────
# Color / symbol maps
# ─────────────────────────────────────────────
color_map = {
    "success": "green",
    "warn": "yellow",
    "error": "red",
    "info": "white",
    "highlight": "cyan",
    "title": "bold cyan",
}

symbol_map = {
    "success": "✓",
    "warn": "⚠",
    "error": "✗",
    "info": "ℹ",
    "arrow": "→",
    "pending": "…",
    "dot": "•",
}

TEXTMODE = os.environ.get("ESCROW_TEXTMODE", "").lower() in ("1", "true", "yes") or _needs_ascii
if TEXTMODE:
    symbol_map.update({
        "success": "OK",
        "warn": "!",
        "error": "X",
        "info": "i",
        "arrow": "->",
        "pending": "...",
        "dot": "*",
    })

# claim state -> status level
state_levels = {
    "idle": "info",
    "evaluating": "pending",
    "awaiting_approval": "pending",
    "submitting": "pending",
    "confirmed": "success",
    "failed": "error",
}


def print_status(message: str, level: str = "info", *, bold: bool = False, prefix: bool = True):
    """Print one colored status line, optionally prefixed with the level symbol."""
    color = color_map.get(level, "white")
    symbol = f"{symbol_map.get(level, '')} " if prefix else ""
    markup = f"[bold]{message}[/bold]" if bold else message
    console.print(f"[{color}]{symbol}{markup}[/{color}]")


def print_panel(body: str, tone: str = "info"):
    """Print a block of lines; the first one is accented in the tone's color."""
    colors = {"info": "cyan", "success": "green", "warn": "yellow", "error": "red"}
    color = colors.get(tone, "white")

    lines = [ln.rstrip() for ln in body.strip().splitlines() if ln.strip()]
    if not lines:
        return
    console.print(f"[bold {color}]{lines[0]}[/bold {color}]")
    for line in lines[1:]:
        console.print(line)


def print_transition(event):
    """Render a claim progress event."""
    state = event.state.value
    level = state_levels.get(state, "info")
    label = state.replace("_", " ")
    detail = f" {symbol_map['arrow']} {event.message}" if event.message else ""
    if level == "pending":
        console.print(f"[{color_map['highlight']}]{symbol_map['pending']} {label}[/]{detail}")
    else:
        print_status(f"{label}{detail}", level)


def print_reasons(reasons):
    for reason in reasons:
        code = reason.get("code") if isinstance(reason, dict) else reason.code
        message = reason.get("message") if isinstance(reason, dict) else reason.message
        console.print(f"  {symbol_map['dot']} [yellow]{code}[/yellow]: {message}")


def progress_bar():
    """Return a transient spinner for read-only work."""
    return Progress(
        SpinnerColumn(style=color_map["highlight"]),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        transient=True,
        console=console,
    )


def print_json(data, indent: int = 2):
    """Render a dict as JSON, or pretty-print it if it is not JSON-serializable."""
    try:
        console.print(JSON.from_data(data, indent=indent))
    except TypeError:
        console.print(Pretty(data))


def print_table(headers, rows, title=None):
    table = Table(show_header=True, header_style="bold cyan")
    for h in headers:
        table.add_column(h)
    for row in rows:
        table.add_row(*["" if c is None else str(c) for c in row])
    if title:
        table.title = f"[bold cyan]{title}[/bold cyan]"
    console.print()
    console.print(table)
    console.print()
