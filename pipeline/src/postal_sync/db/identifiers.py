"""Validated SQL identifiers for DDL composed at runtime."""

from __future__ import annotations

import re
from typing import Final

from psycopg import sql

from postal_sync.errors import IdentifierError

# PostgreSQL identifier max length is 63 bytes.
_IDENTIFIER_RE: Final[re.Pattern[str]] = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")

INDEX_COLUMNS: Final[dict[str, tuple[str, ...]]] = {
    "key": ("postal_code", "prefecture", "city", "town"),
    "prefecture": ("prefecture",),
    "city": ("city",),
}


def validate_identifier(name: str) -> str:
    if not isinstance(name, str) or _IDENTIFIER_RE.match(name) is None:
        raise IdentifierError(f"Invalid SQL identifier: {name!r}")
    return name


def table_ident(schema: str, table: str) -> sql.Composed:
    return sql.SQL("{}.{}").format(
        sql.Identifier(validate_identifier(schema)),
        sql.Identifier(validate_identifier(table)),
    )


def index_name(table: str, role: str) -> str:
    """Index names follow their table so a rename can carry them along."""

    if role not in INDEX_COLUMNS:
        raise IdentifierError(f"Unknown index role: {role!r}")
    return validate_identifier(f"{table}_{role}_idx")
