"""DDL for the postal code, staging and run ledger tables."""

from __future__ import annotations

from psycopg import sql

from postal_sync.db.identifiers import INDEX_COLUMNS, index_name, table_ident, validate_identifier

_POSTAL_CODE_COLUMNS_SQL = """
    local_government_code text NOT NULL,
    old_postal_code text NOT NULL,
    postal_code text NOT NULL,
    prefecture_kana text NOT NULL,
    city_kana text NOT NULL,
    town_kana text NOT NULL,
    prefecture text NOT NULL,
    city text NOT NULL,
    town text NOT NULL,
    is_multi_zip boolean NOT NULL,
    is_koaza boolean NOT NULL,
    is_chome boolean NOT NULL,
    is_multi_town boolean NOT NULL,
    update_status integer NOT NULL,
    update_reason integer NOT NULL
"""


def create_schema(cur, schema: str) -> None:
    cur.execute(
        sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(sql.Identifier(validate_identifier(schema)))
    )


def create_staging_table(cur, schema: str, table: str) -> None:
    # No uniqueness: staging mirrors the feed exactly, duplicates included.
    cur.execute(
        sql.SQL("CREATE UNLOGGED TABLE IF NOT EXISTS {} (" + _POSTAL_CODE_COLUMNS_SQL + ")").format(
            table_ident(schema, table)
        )
    )


def create_postal_code_table(cur, schema: str, table: str, *, if_not_exists: bool = False) -> None:
    """Create a table with the production shape, without indexes."""

    prefix = "CREATE TABLE IF NOT EXISTS {} (" if if_not_exists else "CREATE TABLE {} ("
    cur.execute(
        sql.SQL(
            prefix
            + _POSTAL_CODE_COLUMNS_SQL
            + """,
            last_run_id uuid,
            updated_at timestamptz NOT NULL DEFAULT now()
            )"""
        ).format(table_ident(schema, table))
    )


def create_postal_code_indexes(cur, schema: str, table: str) -> None:
    """Create the logical-key unique index and the read-path indexes."""

    for role, columns in INDEX_COLUMNS.items():
        statement = "CREATE UNIQUE INDEX IF NOT EXISTS {} ON {} ({})" if role == "key" else (
            "CREATE INDEX IF NOT EXISTS {} ON {} ({})"
        )
        cur.execute(
            sql.SQL(statement).format(
                sql.Identifier(index_name(table, role)),
                table_ident(schema, table),
                sql.SQL(", ").join(sql.Identifier(column) for column in columns),
            )
        )


def create_ledger_tables(cur, schema: str) -> None:
    cur.execute(
        sql.SQL(
            """
            CREATE TABLE IF NOT EXISTS {} (
                run_id uuid PRIMARY KEY,
                source_system text NOT NULL,
                version_date date NOT NULL,
                mode text NOT NULL CHECK (mode IN ('Full', 'Differential')),
                status text NOT NULL CHECK (status IN ('Running', 'Succeeded', 'Failed', 'Skipped')),
                started_at timestamptz NOT NULL DEFAULT now(),
                finished_at timestamptz,
                landed_rows bigint NOT NULL DEFAULT 0,
                added_rows bigint,
                updated_rows bigint,
                deleted_rows bigint,
                notes text NOT NULL DEFAULT '',
                errors jsonb
            )
            """
        ).format(table_ident(schema, "ingestion_runs"))
    )
    cur.execute(
        sql.SQL(
            "CREATE INDEX IF NOT EXISTS ingestion_runs_version_mode_idx ON {} (version_date, mode, status)"
        ).format(table_ident(schema, "ingestion_runs"))
    )
    cur.execute(
        sql.SQL(
            """
            CREATE TABLE IF NOT EXISTS {} (
                file_id bigint GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
                run_id uuid NOT NULL REFERENCES {} (run_id),
                file_role text NOT NULL CHECK (file_role IN ('full', 'add', 'delete')),
                file_name text NOT NULL,
                source_uri text NOT NULL,
                size_bytes bigint NOT NULL,
                sha256 text NOT NULL,
                downloaded_at timestamptz NOT NULL,
                recorded_at timestamptz NOT NULL DEFAULT now()
            )
            """
        ).format(table_ident(schema, "ingestion_files"), table_ident(schema, "ingestion_runs"))
    )
