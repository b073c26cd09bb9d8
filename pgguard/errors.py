# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for pg-guard.

These helpers centralize wording for common operator-facing errors so that
the CLIs and the library present consistent, actionable messages.
"""

from pathlib import Path


def explain_invalid_int_env(name: str, value: str | None) -> str:
    """
    Explain that an integer environment variable is invalid.
    """

    return f"Invalid {name} value: {value!r}. It must be a non-negative integer."


def explain_invalid_bool_env(name: str, value: str | None) -> str:
    """
    Explain that a boolean environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "Expected one of: 1, 0, true, false, yes, no, on, off."
    )


def explain_not_root() -> str:
    """
    Explain that the tool must run with root privileges.
    """

    return (
        "This tool must be run as root (it stops services and runs client tools "
        "as the postgres user). Re-run with sudo, or set PGGUARD_REQUIRE_ROOT=0."
    )


def explain_postgres_inactive(service: str) -> str:
    """
    Explain that the PostgreSQL service is not running.
    """

    return f"PostgreSQL service '{service}' is not running. Start it with: systemctl start {service}"


def explain_no_backups(directory: Path, target: str | None = None) -> str:
    """
    Explain that no artifacts were found.
    """

    if target:
        return f"No backup files found for database '{target}' in {directory}"
    return f"No backup files found in {directory}"


def explain_unknown_selection(choice: str, count: int) -> str:
    """
    Explain that an interactive selection is out of range.
    """

    return f"Invalid selection {choice!r}. Enter a number between 1 and {count}."


def explain_safety_backup_failed(target: str) -> str:
    """
    Explain how to proceed when the pre-restore snapshot fails.
    """

    return (
        f"Could not take a safety backup of {target!r} before restoring. "
        "Fix the problem, or re-run with --allow-no-safety-backup to restore "
        "without one."
    )


def explain_replace_failed(safety_path: Path | None) -> str:
    """
    Explain the recovery path after a failed destructive replace.
    """

    if safety_path:
        return (
            "The restore failed after the target was modified. "
            f"The pre-restore state is saved in {safety_path}"
        )
    return (
        "The restore failed after the target was modified and no pre-restore "
        "snapshot exists. Restore from an older artifact."
    )


def explain_remediation_exhausted(service: str, cycles: int) -> str:
    """
    Explain that automatic remediation gave up.
    """

    return (
        f"{service} is still not healthy after {cycles} remediation cycles. "
        f"Check 'journalctl -u {service}' and the service credentials manually."
    )
