"""Run ledger: one row per ingestion attempt, one row per archive consumed."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb

from postal_sync.config import SyncConfig
from postal_sync.db.identifiers import table_ident
from postal_sync.errors import LedgerError
from postal_sync.models import (
    MODES,
    STATUS_RUNNING,
    STATUS_SUCCEEDED,
    TERMINAL_STATUSES,
    IngestionFile,
    IngestionRun,
)
from postal_sync.util.ids import generate_run_id

logger = logging.getLogger(__name__)

_RUN_COLUMNS = sql.SQL(
    """
    run_id,
    source_system,
    version_date,
    mode,
    status,
    started_at,
    finished_at,
    landed_rows,
    added_rows,
    updated_rows,
    deleted_rows,
    notes,
    errors
    """
)


def _run_from_row(row: tuple[Any, ...]) -> IngestionRun:
    return IngestionRun(
        run_id=str(row[0]),
        source_system=row[1],
        version_date=row[2],
        mode=row[3],
        status=row[4],
        started_at=row[5],
        finished_at=row[6],
        landed_rows=int(row[7]),
        added_rows=row[8],
        updated_rows=row[9],
        deleted_rows=row[10],
        notes=row[11],
        errors=row[12],
    )


class RunLedger:
    """Reads and writes ``ingestion_runs`` / ``ingestion_files``.

    Every write commits immediately so a run is visible from the moment it is
    opened, independently of whatever the table-mutating stages do later.
    """

    def __init__(self, conn: psycopg.Connection, config: SyncConfig) -> None:
        self._conn = conn
        self._runs = table_ident(config.schema, "ingestion_runs")
        self._files = table_ident(config.schema, "ingestion_files")
        self._production_schema = config.schema
        self._production_table = config.production_table
        self._production = table_ident(config.schema, config.production_table)

    def open_run(self, source_system: str, version_date: date, mode: str) -> str:
        if mode not in MODES:
            raise LedgerError(f"Unknown ingestion mode: {mode}")

        run_id = generate_run_id()
        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    sql.SQL(
                        """
                        INSERT INTO {} (
                            run_id,
                            source_system,
                            version_date,
                            mode,
                            status,
                            started_at
                        ) VALUES (%s, %s, %s, %s, %s, now())
                        """
                    ).format(self._runs),
                    (run_id, source_system, version_date, mode, STATUS_RUNNING),
                )
            self._conn.commit()
        except psycopg.Error as exc:
            self._conn.rollback()
            raise LedgerError(f"Failed to open ingestion run: {exc}") from exc

        logger.info(
            "Opened ingestion run source=%s version=%s mode=%s",
            source_system,
            version_date.isoformat(),
            mode,
            extra={"run_id": run_id},
        )
        return run_id

    def close_run(
        self,
        run_id: str,
        status: str,
        landed_rows: int,
        notes: str = "",
        errors: dict[str, Any] | None = None,
        *,
        added_rows: int | None = None,
        updated_rows: int | None = None,
        deleted_rows: int | None = None,
    ) -> None:
        """Write the terminal state of a run. Calling again overwrites it."""

        if status not in TERMINAL_STATUSES:
            raise LedgerError(f"close_run requires a terminal status, got {status}")

        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    sql.SQL(
                        """
                        UPDATE {}
                        SET status = %s,
                            finished_at = now(),
                            landed_rows = %s,
                            added_rows = %s,
                            updated_rows = %s,
                            deleted_rows = %s,
                            notes = %s,
                            errors = %s
                        WHERE run_id = %s
                        """
                    ).format(self._runs),
                    (
                        status,
                        landed_rows,
                        added_rows,
                        updated_rows,
                        deleted_rows,
                        notes,
                        Jsonb(errors) if errors is not None else None,
                        run_id,
                    ),
                )
                updated = cur.rowcount
        except psycopg.Error as exc:
            self._conn.rollback()
            raise LedgerError(f"Failed to close ingestion run {run_id}: {exc}") from exc
        if updated != 1:
            self._conn.rollback()
            raise LedgerError(f"Ingestion run not found: {run_id}")
        self._conn.commit()

        logger.info(
            "Closed ingestion run status=%s landed=%s added=%s updated=%s deleted=%s",
            status,
            landed_rows,
            added_rows,
            updated_rows,
            deleted_rows,
            extra={"run_id": run_id},
        )

    def record_file(self, run_id: str, file: IngestionFile) -> None:
        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    sql.SQL(
                        """
                        INSERT INTO {} (
                            run_id,
                            file_role,
                            file_name,
                            source_uri,
                            size_bytes,
                            sha256,
                            downloaded_at
                        ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                        """
                    ).format(self._files),
                    (
                        run_id,
                        file.file_role,
                        file.file_name,
                        file.source_uri,
                        file.size_bytes,
                        file.sha256,
                        file.downloaded_at,
                    ),
                )
            self._conn.commit()
        except psycopg.Error as exc:
            self._conn.rollback()
            raise LedgerError(f"Failed to record file {file.file_name}: {exc}") from exc

        logger.info(
            "Recorded %s file %s (%s bytes, sha256=%s)",
            file.file_role,
            file.file_name,
            file.size_bytes,
            file.sha256,
            extra={"run_id": run_id},
        )

    def find_succeeded_run(self, version_date: date, mode: str) -> IngestionRun | None:
        with self._conn.cursor() as cur:
            cur.execute(
                sql.SQL(
                    """
                    SELECT {}
                    FROM {}
                    WHERE version_date = %s
                      AND mode = %s
                      AND status = %s
                    ORDER BY finished_at DESC NULLS LAST
                    LIMIT 1
                    """
                ).format(_RUN_COLUMNS, self._runs),
                (version_date, mode, STATUS_SUCCEEDED),
            )
            row = cur.fetchone()
        self._conn.commit()
        return _run_from_row(row) if row is not None else None

    def get_run(self, run_id: str) -> IngestionRun | None:
        with self._conn.cursor() as cur:
            cur.execute(
                sql.SQL("SELECT {} FROM {} WHERE run_id = %s").format(_RUN_COLUMNS, self._runs),
                (run_id,),
            )
            row = cur.fetchone()
        self._conn.commit()
        return _run_from_row(row) if row is not None else None

    def list_files(self, run_id: str) -> list[IngestionFile]:
        with self._conn.cursor() as cur:
            cur.execute(
                sql.SQL(
                    """
                    SELECT file_role, file_name, source_uri, size_bytes, sha256, downloaded_at
                    FROM {}
                    WHERE run_id = %s
                    ORDER BY file_id
                    """
                ).format(self._files),
                (run_id,),
            )
            rows = cur.fetchall()
        self._conn.commit()
        return [
            IngestionFile(
                file_role=row[0],
                file_name=row[1],
                source_uri=row[2],
                size_bytes=int(row[3]),
                sha256=row[4],
                downloaded_at=row[5],
            )
            for row in rows
        ]

    def has_any_data(self) -> bool:
        """True when the production table exists and holds at least one row."""

        with self._conn.cursor() as cur:
            cur.execute(
                "SELECT to_regclass(%s)",
                (f"{self._production_schema}.{self._production_table}",),
            )
            regclass = cur.fetchone()[0]
            if regclass is None:
                self._conn.commit()
                return False
            cur.execute(sql.SQL("SELECT EXISTS (SELECT 1 FROM {})").format(self._production))
            has_rows = bool(cur.fetchone()[0])
        self._conn.commit()
        return has_rows
