"""CLI/runtime bootstrap helpers for crashguard commands."""

from __future__ import annotations

import argparse
import os
import sys
from typing import Any


def configure_windows_console_utf8() -> None:
    """Best-effort UTF-8 console setup for Windows terminals."""
    if sys.platform != "win32":
        return

    try:
        if hasattr(sys.stdout, "reconfigure"):
            stdout: Any = sys.stdout
            stderr: Any = sys.stderr
            stdout.reconfigure(encoding="utf-8")
            stderr.reconfigure(encoding="utf-8")
        os.system("chcp 65001 >nul 2>&1")
    except (OSError, ValueError):
        # Terminal-dependent; default encoding still works
        pass


def build_crashguard_arg_parser() -> argparse.ArgumentParser:
    """Create the crashguard CLI parser."""
    parser = argparse.ArgumentParser(
        prog="crashguard",
        description="Crash-safety guard and kill-injection verifier for SQLite data directories.",
        epilog="Examples:\n"
        "  crashguard list\n"
        "  crashguard run kill-during-transaction\n"
        "  crashguard run double-open --keep --json\n"
        "  crashguard run rapid-midwrite --cycles 20\n"
        "  crashguard verify /var/lib/app/data --write-probe\n"
        "  crashguard lock-status /var/lib/app/data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", "-c", help="Path to config.json file")
    parser.add_argument("--no-color", action="store_true", help="Disable ANSI colors (also respects NO_COLOR).")

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    commands.add_parser("list", help="List built-in scenarios")

    run = commands.add_parser("run", help="Run a scenario and classify the outcome")
    run.add_argument("scenario", help="Scenario name (see 'crashguard list')")
    run.add_argument("--data-dir", "-d", help="Use this data directory instead of a fresh temporary one")
    run.add_argument("--keep", action="store_true", help="Keep data directories after the run")
    run.add_argument("--json", action="store_true", help="Print the full result as JSON")
    run.add_argument("--no-progress", action="store_true", help="Hide the rapid-cycle progress bar")
    run.add_argument("--cycles", help="Override the cycle count of a rapid-cycle scenario")
    run.add_argument("--instances", help="Override the instance count of a concurrent scenario")

    verify = commands.add_parser("verify", help="Open a data directory and check its integrity")
    verify.add_argument("data_dir", help="Data directory to verify")
    verify.add_argument("--write-probe", action="store_true", help="Also prove the directory is writable")
    verify.add_argument("--json", action="store_true", help="Print the result as JSON")

    status = commands.add_parser("lock-status", help="Show who holds a data directory's lock")
    status.add_argument("data_dir", help="Data directory to inspect")
    status.add_argument("--json", action="store_true", help="Print the status as JSON")

    return parser
