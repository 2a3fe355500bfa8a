"""Command line interface for the escrow claim engine."""
from .style import (
    console,
    print_status,
    print_panel,
    print_transition,
    print_reasons,
    progress_bar,
    print_json,
    print_table,
    symbol_map,
    color_map,
)

__all__ = [
    'console',
    'print_status',
    'print_panel',
    'print_transition',
    'print_reasons',
    'progress_bar',
    'print_json',
    'print_table',
    'symbol_map',
    'color_map',
]
