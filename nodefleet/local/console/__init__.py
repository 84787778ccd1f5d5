"""
This package holds the operator-facing side of NodeFleet: the startup banner,
status tables, and the handlers behind the command-line commands.

The command dispatcher lives in `nodefleet.local.console.process` and is
imported from there directly, since it depends on the supervisor package.
"""

from .handler import print_banner, format_status_table, display_status, print_help

__all__ = ["print_banner", "format_status_table", "display_status", "print_help"]
