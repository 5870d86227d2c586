"""Differential merge: apply an add feed (upsert) or delete feed from staging."""

from __future__ import annotations

import logging

import psycopg
from psycopg import sql

from postal_sync.config import SyncConfig
from postal_sync.db.identifiers import table_ident
from postal_sync.errors import error_payload
from postal_sync.models import KEY_COLUMNS, MUTABLE_COLUMNS, STAGING_COLUMNS, MergeResult

logger = logging.getLogger(__name__)

STATE_IDLE = "Idle"
STATE_UPSERTING = "Upserting"
STATE_DELETING = "Deleting"
STATE_DONE = "Done"
STATE_FAILED = "Failed"


def _column_list(columns: tuple[str, ...], alias: str | None = None) -> sql.Composed:
    if alias is None:
        return sql.SQL(", ").join(sql.Identifier(column) for column in columns)
    return sql.SQL(", ").join(sql.Identifier(alias, column) for column in columns)


def _key_match(left: str, right: str) -> sql.Composed:
    return sql.SQL(" AND ").join(
        sql.SQL("{} = {}").format(sql.Identifier(left, column), sql.Identifier(right, column))
        for column in KEY_COLUMNS
    )


class DifferentialMergeEngine:
    """Matches staging rows against production by the logical key.

    The key ``(postal_code, prefecture, city, town)`` is never updated in
    place: a key change arrives as a delete feed row plus an add feed row.
    """

    def __init__(self, conn: psycopg.Connection, config: SyncConfig) -> None:
        self._conn = conn
        self._production = table_ident(config.schema, config.production_table)
        self._staging = table_ident(config.schema, config.staging_table)
        self.state = STATE_IDLE

    def apply(self, has_add_data: bool, has_delete_data: bool, *, run_id: str | None = None) -> MergeResult:
        self.state = STATE_IDLE
        added = updated = deleted = 0

        self.state = STATE_UPSERTING
        if has_add_data:
            try:
                added, updated = self._upsert(run_id)
            except psycopg.Error as exc:
                return self._fail(exc, "upsert")

        self.state = STATE_DELETING
        if has_delete_data:
            try:
                deleted = self._delete()
            except psycopg.Error as exc:
                return self._fail(exc, "delete")

        self.state = STATE_DONE
        logger.info(
            "Differential apply complete: added=%s updated=%s deleted=%s",
            added,
            updated,
            deleted,
            extra={"run_id": run_id or "-"},
        )
        return MergeResult(success=True, added=added, updated=updated, deleted=deleted)

    def _fail(self, exc: psycopg.Error, step: str) -> MergeResult:
        self._conn.rollback()
        self.state = STATE_FAILED
        logger.error("Differential %s step failed: %s", step, exc)
        return MergeResult(success=False, error=error_payload(exc, stage=f"differential_{step}"))

    def _deduplicated_staging(self) -> sql.Composed:
        # Duplicate keys keep the row that sorts first on the remaining columns.
        return sql.SQL(
            """
            SELECT DISTINCT ON ({key}) {columns}
            FROM {staging}
            ORDER BY {key}, {tiebreak}
            """
        ).format(
            key=_column_list(KEY_COLUMNS),
            tiebreak=_column_list(MUTABLE_COLUMNS),
            columns=_column_list(STAGING_COLUMNS),
            staging=self._staging,
        )

    def _upsert(self, run_id: str | None) -> tuple[int, int]:
        set_clause = sql.SQL(", ").join(
            sql.SQL("{} = {}").format(sql.Identifier(column), sql.Identifier("s", column))
            for column in MUTABLE_COLUMNS
        )
        update_sql = sql.SQL(
            """
            UPDATE {production} AS t
            SET {set_clause},
                last_run_id = %s,
                updated_at = now()
            FROM ({source}) AS s
            WHERE {match}
            """
        ).format(
            production=self._production,
            set_clause=set_clause,
            source=self._deduplicated_staging(),
            match=_key_match("t", "s"),
        )
        insert_sql = sql.SQL(
            """
            INSERT INTO {production} ({columns}, last_run_id)
            SELECT {source_columns}, %s
            FROM ({source}) AS s
            WHERE NOT EXISTS (
                SELECT 1 FROM {production} AS t WHERE {match}
            )
            """
        ).format(
            production=self._production,
            columns=_column_list(STAGING_COLUMNS),
            source_columns=_column_list(STAGING_COLUMNS, "s"),
            source=self._deduplicated_staging(),
            match=_key_match("t", "s"),
        )

        # Update before insert so freshly inserted rows are not counted as updated.
        with self._conn.cursor() as cur:
            cur.execute(update_sql, (run_id,))
            updated = max(cur.rowcount, 0)
            cur.execute(insert_sql, (run_id,))
            added = max(cur.rowcount, 0)
        self._conn.commit()

        logger.info("Upsert step: added=%s updated=%s", added, updated)
        return added, updated

    def _delete(self) -> int:
        delete_sql = sql.SQL(
            """
            DELETE FROM {production} AS t
            USING (SELECT DISTINCT {key} FROM {staging}) AS s
            WHERE {match}
            """
        ).format(
            production=self._production,
            key=_column_list(KEY_COLUMNS),
            staging=self._staging,
            match=_key_match("t", "s"),
        )
        with self._conn.cursor() as cur:
            cur.execute(delete_sql)
            deleted = max(cur.rowcount, 0)
        self._conn.commit()

        logger.info("Delete step: deleted=%s", deleted)
        return deleted
