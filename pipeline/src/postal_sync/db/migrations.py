"""Versioned schema migrations for the sync tables."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List

import psycopg
from psycopg import sql

from postal_sync.config import SyncConfig
from postal_sync.db.identifiers import table_ident
from postal_sync.db.schema import (
    create_ledger_tables,
    create_postal_code_indexes,
    create_postal_code_table,
    create_schema,
    create_staging_table,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    version: str
    description: str
    apply: Callable[[psycopg.Cursor, SyncConfig], None]


def _postal_code_tables(cur: psycopg.Cursor, config: SyncConfig) -> None:
    create_postal_code_table(cur, config.schema, config.production_table, if_not_exists=True)
    create_postal_code_indexes(cur, config.schema, config.production_table)
    create_staging_table(cur, config.schema, config.staging_table)


def _ledger_tables(cur: psycopg.Cursor, config: SyncConfig) -> None:
    create_ledger_tables(cur, config.schema)


def discover_migrations() -> List[Migration]:
    """Return migrations in version order."""

    return [
        Migration("0001", "postal code and staging tables", _postal_code_tables),
        Migration("0002", "ingestion run ledger", _ledger_tables),
    ]


def apply_migrations(conn: psycopg.Connection, config: SyncConfig) -> int:
    """Apply unapplied migrations in version order and commit."""

    applied_count = 0
    migration_table = table_ident(config.schema, "schema_migration")

    with conn.cursor() as cur:
        create_schema(cur, config.schema)
        cur.execute(
            sql.SQL(
                """
                CREATE TABLE IF NOT EXISTS {} (
                    version text PRIMARY KEY,
                    applied_at timestamptz NOT NULL DEFAULT now()
                )
                """
            ).format(migration_table)
        )
        cur.execute(sql.SQL("SELECT version FROM {}").format(migration_table))
        applied_versions = {row[0] for row in cur.fetchall()}

        for migration in discover_migrations():
            if migration.version in applied_versions:
                continue
            logger.info("Applying migration %s: %s", migration.version, migration.description)
            migration.apply(cur, config)
            cur.execute(
                sql.SQL("INSERT INTO {} (version) VALUES (%s)").format(migration_table),
                (migration.version,),
            )
            applied_count += 1

    conn.commit()
    return applied_count
