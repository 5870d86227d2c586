"""Staging table loader."""

from __future__ import annotations

import logging
from typing import Iterable

import psycopg
from psycopg import sql

from postal_sync.config import SyncConfig
from postal_sync.db.identifiers import table_ident
from postal_sync.errors import StagingError
from postal_sync.models import STAGING_COLUMNS, StagingRecord

logger = logging.getLogger(__name__)

PROGRESS_LOG_EVERY = 10_000


class StagingLoader:
    """Truncate-and-reload access to the staging table via COPY."""

    def __init__(self, conn: psycopg.Connection, config: SyncConfig) -> None:
        self._conn = conn
        self._staging = table_ident(config.schema, config.staging_table)
        self._table_name = f"{config.schema}.{config.staging_table}"

    def truncate(self) -> None:
        try:
            with self._conn.cursor() as cur:
                cur.execute(sql.SQL("TRUNCATE TABLE {}").format(self._staging))
            self._conn.commit()
        except psycopg.Error as exc:
            self._conn.rollback()
            raise StagingError(f"Failed to truncate {self._table_name}: {exc}") from exc
        logger.debug("Truncated %s", self._table_name)

    def load(self, records: Iterable[StagingRecord]) -> int:
        """Replace staging contents with ``records``; returns the row count.

        The truncate and the COPY share one transaction so a failed load
        leaves the previous contents in place.
        """

        copy_sql = sql.SQL("COPY {} ({}) FROM STDIN").format(
            self._staging,
            sql.SQL(", ").join(sql.Identifier(column) for column in STAGING_COLUMNS),
        )

        row_count = 0
        try:
            with self._conn.cursor() as cur:
                cur.execute(sql.SQL("TRUNCATE TABLE {}").format(self._staging))
                with cur.copy(copy_sql) as copy:
                    for record in records:
                        copy.write_row(record.as_row())
                        row_count += 1
                        if row_count % PROGRESS_LOG_EVERY == 0:
                            logger.debug("Staged %s rows into %s", row_count, self._table_name)
            self._conn.commit()
        except psycopg.Error as exc:
            self._conn.rollback()
            raise StagingError(
                f"Failed to load {self._table_name}: {exc}",
                rows_streamed=row_count,
            ) from exc
        except BaseException:
            self._conn.rollback()
            raise

        logger.info("Loaded %s rows into %s", row_count, self._table_name)
        return row_count

    def count(self) -> int:
        with self._conn.cursor() as cur:
            cur.execute(sql.SQL("SELECT count(*) FROM {}").format(self._staging))
            total = int(cur.fetchone()[0])
        self._conn.commit()
        return total
