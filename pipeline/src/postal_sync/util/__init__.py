"""Utility helpers for postal-sync."""

from .ids import backup_table_name, generate_run_id, is_backup_table_name
from .versions import format_yymm, parse_yymm, previous_month, resolve_version

__all__ = [
    "backup_table_name",
    "format_yymm",
    "generate_run_id",
    "is_backup_table_name",
    "parse_yymm",
    "previous_month",
    "resolve_version",
]
