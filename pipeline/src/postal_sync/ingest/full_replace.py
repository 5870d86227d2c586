"""Full replacement: build a shadow table from staging and swap it in."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable

import psycopg
from psycopg import sql

from postal_sync.config import SyncConfig
from postal_sync.db.identifiers import INDEX_COLUMNS, index_name, table_ident
from postal_sync.db.schema import create_postal_code_indexes, create_postal_code_table
from postal_sync.errors import IdentifierError, error_payload
from postal_sync.models import KEY_COLUMNS, MUTABLE_COLUMNS, STAGING_COLUMNS, ReplaceResult
from postal_sync.util.ids import backup_table_name, is_backup_table_name

logger = logging.getLogger(__name__)

STEP_ORDER = (
    "create_shadow",
    "copy_from_staging",
    "index_shadow",
    "atomic_swap",
    "rotate_backups",
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FullReplaceEngine:
    def __init__(
        self,
        conn: psycopg.Connection,
        config: SyncConfig,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._conn = conn
        self._config = config
        self._clock = clock
        self._schema = config.schema
        self._production_name = config.production_table
        self._shadow_name = config.shadow_table
        self._production = table_ident(config.schema, config.production_table)
        self._shadow = table_ident(config.schema, config.shadow_table)
        self._staging = table_ident(config.schema, config.staging_table)
        self.completed_steps: list[str] = []

    def perform_full_replacement(self, run_id: str) -> ReplaceResult:
        started = time.monotonic()
        self.completed_steps = []
        log_extra = {"run_id": run_id}
        step = STEP_ORDER[0]

        try:
            step = "create_shadow"
            self._create_shadow()
            self.completed_steps.append(step)

            step = "copy_from_staging"
            row_count = self._copy_from_staging(run_id)
            self.completed_steps.append(step)
            logger.info("Copied %s rows into %s", row_count, self._shadow_name, extra=log_extra)

            step = "index_shadow"
            self._index_shadow()
            self.completed_steps.append(step)

            step = "atomic_swap"
            backup_table = self._atomic_swap()
            self.completed_steps.append(step)
        except (psycopg.Error, IdentifierError) as exc:
            self._conn.rollback()
            logger.error("Full replacement failed at %s: %s", step, exc, extra=log_extra)
            return ReplaceResult(
                success=False,
                duration_seconds=time.monotonic() - started,
                error=error_payload(
                    exc,
                    stage=f"full_replace_{step}",
                    shadow_table=f"{self._schema}.{self._shadow_name}",
                ),
            )

        dropped = self._rotate_backups()
        self.completed_steps.append("rotate_backups")

        duration = time.monotonic() - started
        logger.info(
            "Full replacement complete: rows=%s backup=%s duration=%.2fs",
            row_count,
            backup_table,
            duration,
            extra=log_extra,
        )
        return ReplaceResult(
            success=True,
            row_count=row_count,
            duration_seconds=duration,
            backup_table=backup_table,
            dropped_backups=tuple(dropped),
        )

    def _create_shadow(self) -> None:
        with self._conn.cursor() as cur:
            # A shadow left behind by an aborted run must never block this one.
            cur.execute(sql.SQL("DROP TABLE IF EXISTS {}").format(self._shadow))
            create_postal_code_table(cur, self._schema, self._shadow_name)
        self._conn.commit()

    def _copy_from_staging(self, run_id: str) -> int:
        columns = sql.SQL(", ").join(sql.Identifier(column) for column in STAGING_COLUMNS)
        key = sql.SQL(", ").join(sql.Identifier(column) for column in KEY_COLUMNS)
        tiebreak = sql.SQL(", ").join(sql.Identifier(column) for column in MUTABLE_COLUMNS)
        with self._conn.cursor() as cur:
            cur.execute(
                sql.SQL(
                    """
                    INSERT INTO {shadow} ({columns}, last_run_id)
                    SELECT DISTINCT ON ({key}) {columns}, %s
                    FROM {staging}
                    ORDER BY {key}, {tiebreak}
                    """
                ).format(
                    shadow=self._shadow,
                    columns=columns,
                    key=key,
                    tiebreak=tiebreak,
                    staging=self._staging,
                ),
                (run_id,),
            )
            row_count = max(cur.rowcount, 0)
        self._conn.commit()
        return row_count

    def _index_shadow(self) -> None:
        # Indexes are built after the bulk copy, then statistics refreshed.
        with self._conn.cursor() as cur:
            create_postal_code_indexes(cur, self._schema, self._shadow_name)
            cur.execute(sql.SQL("ANALYZE {}").format(self._shadow))
        self._conn.commit()

    def _rename_table_and_indexes(self, cur: psycopg.Cursor, source: str, target: str) -> None:
        cur.execute(
            sql.SQL("ALTER TABLE {} RENAME TO {}").format(
                table_ident(self._schema, source),
                sql.Identifier(target),
            )
        )
        for role in INDEX_COLUMNS:
            cur.execute(
                sql.SQL("ALTER INDEX IF EXISTS {} RENAME TO {}").format(
                    table_ident(self._schema, index_name(source, role)),
                    sql.Identifier(index_name(target, role)),
                )
            )

    def _atomic_swap(self) -> str | None:
        """Rename production to a backup and the shadow to production.

        Both renames commit together; on any error the caller rolls back and
        production is untouched.
        """

        backup_name = backup_table_name(self._config.backup_prefix, created_at=self._clock())
        with self._conn.cursor() as cur:
            cur.execute(
                sql.SQL("SET LOCAL lock_timeout = {}").format(
                    sql.Literal(f"{self._config.lock_timeout_seconds}s")
                )
            )
            cur.execute(
                "SELECT to_regclass(%s)",
                (f"{self._schema}.{self._production_name}",),
            )
            production_exists = cur.fetchone()[0] is not None

            if production_exists:
                self._rename_table_and_indexes(cur, self._production_name, backup_name)
            else:
                logger.info("No production table yet; skipping backup rename")
                backup_name = None

            self._rename_table_and_indexes(cur, self._shadow_name, self._production_name)
        self._conn.commit()

        logger.info(
            "Swapped %s into %s (backup=%s)",
            self._shadow_name,
            self._production_name,
            backup_name,
        )
        return backup_name

    def list_backup_tables(self) -> list[str]:
        """Backup tables newest first."""

        prefix = self._config.backup_prefix
        like_pattern = prefix.replace("\\", "\\\\").replace("_", "\\_").replace("%", "\\%") + "%"
        with self._conn.cursor() as cur:
            cur.execute(
                """
                SELECT tablename
                FROM pg_tables
                WHERE schemaname = %s
                  AND tablename LIKE %s
                ORDER BY tablename DESC
                """,
                (self._schema, like_pattern),
            )
            names = [row[0] for row in cur.fetchall()]
        self._conn.commit()
        return [name for name in names if is_backup_table_name(prefix, name)]

    def _rotate_backups(self) -> list[str]:
        """Drop backups beyond the retention count; failures are logged only."""

        keep = self._config.keep_backup_tables
        try:
            backups = self.list_backup_tables()
        except psycopg.Error as exc:
            self._conn.rollback()
            logger.warning("Could not list backup tables: %s", exc)
            return []

        dropped: list[str] = []
        for name in backups[keep:]:
            try:
                with self._conn.cursor() as cur:
                    cur.execute(sql.SQL("DROP TABLE {}").format(table_ident(self._schema, name)))
                self._conn.commit()
                dropped.append(name)
                logger.info("Dropped old backup table %s.%s", self._schema, name)
            except psycopg.Error as exc:
                self._conn.rollback()
                logger.warning("Failed to drop backup table %s.%s: %s", self._schema, name, exc)
        return dropped
