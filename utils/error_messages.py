"""
Clear, actionable error message formatting.

All error messages follow the pattern:
  ERROR: [What failed]
    Reason: [Why it failed]
    Action: [What user should do]
    Location: [Where the problem is]
"""

import logging
from pathlib import Path
from typing import Optional


def format_error(
    what_failed: str,
    reason: str,
    action: str,
    location: Optional[Path] = None,
    details: Optional[str] = None
) -> str:
    """
    Format a clear, actionable error message.

    Args:
        what_failed: What operation failed (e.g., "Cannot open data directory")
        reason: Why it failed (e.g., "Locked by PID 4242")
        action: What user should do (e.g., "Close the other instance first")
        location: Where the problem occurred (file path, directory, etc.)
        details: Optional additional details

    Returns:
        Formatted error message
    """
    lines = [f"ERROR: {what_failed}"]
    lines.append(f"  Reason: {reason}")
    lines.append(f"  Action: {action}")

    if location:
        lines.append(f"  Location: {location}")

    if details:
        lines.append(f"  Details: {details}")

    return "\n".join(lines)


def log_error(
    what_failed: str,
    reason: str,
    action: str,
    location: Optional[Path] = None,
    details: Optional[str] = None
):
    """
    Log a clear, actionable error message.

    Same parameters as format_error, but logs it directly.
    """
    message = format_error(what_failed, reason, action, location, details)
    logging.error(message)


def format_lock_held_error(data_dir: Path, marker_path: Path, holder_pid: Optional[int]) -> str:
    """Format the error shown when another live process holds a data directory."""
    holder = f"PID {holder_pid}" if holder_pid is not None else "an unknown process"
    return format_error(
        what_failed=f"Data directory is locked by another instance ({holder})",
        reason="Only one process may open a data directory at a time",
        action=f"Close the other instance first, or delete {marker_path} "
               f"if the process is no longer running",
        location=data_dir
    )


def format_open_timeout_error(data_dir: Path, timeout_ms: int) -> str:
    """Format open timeout error. A timeout is ambiguous, so say so."""
    return format_error(
        what_failed="Opening data directory timed out",
        reason=f"Open did not complete within {timeout_ms}ms "
               f"(directory may be corrupted, or recovery may be slow)",
        action="Retry with a longer timeout; if it keeps hanging, inspect the directory with crashguard-doctor",
        location=data_dir
    )


def format_quarantine_notice(data_dir: Path, backup_path: Path) -> str:
    """Format the warning emitted when a partially initialized directory is moved aside."""
    return (
        f"Detected partially-initialized data directory {data_dir}. "
        f"Moved to \"{backup_path}\" for inspection. A fresh database will be created."
    )


def format_spawn_error(program: str, reason: str) -> str:
    """Format worker spawn error."""
    return format_error(
        what_failed=f"Failed to start worker {program}",
        reason=reason,
        action="Check the worker program path and the Python environment (this is not a crash-safety finding)"
    )


def format_integrity_error(data_dir: Path, issues: list) -> str:
    """Format integrity failure with the first few issues as details."""
    details = "; ".join(issues[:5])
    if len(issues) > 5:
        details += f" (+{len(issues) - 5} more)"

    return format_error(
        what_failed="Data directory failed integrity verification",
        reason=f"{len(issues)} structural issue(s) detected after open",
        action="Keep the directory for inspection; restore from backup if the data matters",
        location=data_dir,
        details=details
    )
