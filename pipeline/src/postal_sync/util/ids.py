"""ID generators: UUID run IDs and sortable backup table names."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Final
from uuid import uuid4

from postal_sync.db.identifiers import validate_identifier

BACKUP_TOKEN_FORMAT: Final[str] = "%Y%m%d_%H%M%S"
_BACKUP_TOKEN_RE: Final[str] = r"\d{8}_\d{6}"


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def generate_run_id() -> str:
    """Generate ingestion run ID as UUIDv4."""

    return str(uuid4())


def backup_table_name(prefix: str, *, created_at: datetime) -> str:
    """Generate a backup table name.

    Format:
        <prefix><yyyymmdd>_<hhmmss>

    The token is zero padded so lexicographic order is chronological order.
    """

    token = _to_utc(created_at).strftime(BACKUP_TOKEN_FORMAT)
    return validate_identifier(f"{prefix}{token}")


def is_backup_table_name(prefix: str, name: str) -> bool:
    return re.fullmatch(re.escape(prefix) + _BACKUP_TOKEN_RE, name) is not None


__all__ = [
    "backup_table_name",
    "generate_run_id",
    "is_backup_table_name",
]
