"""Shared fixtures for database-backed tests.

Database tests need ``POSTAL_SYNC_TEST_DSN``; without it they are skipped.
Each test gets a private schema that is dropped afterwards.
"""

from __future__ import annotations

import os
import uuid
from typing import Iterator

import psycopg
import pytest
from psycopg import sql

from postal_sync.config import SyncConfig
from postal_sync.db.migrations import apply_migrations

TEST_DSN_ENV = "POSTAL_SYNC_TEST_DSN"


@pytest.fixture
def db_conn() -> Iterator[psycopg.Connection]:
    dsn = os.getenv(TEST_DSN_ENV)
    if not dsn:
        pytest.skip(f"{TEST_DSN_ENV} not set")
    try:
        conn = psycopg.connect(dsn, autocommit=False)
    except psycopg.OperationalError as exc:
        pytest.skip(f"Test database unavailable: {exc}")
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def sync_config(db_conn: psycopg.Connection, tmp_path) -> Iterator[SyncConfig]:
    schema = f"postal_sync_test_{uuid.uuid4().hex[:8]}"
    config = SyncConfig(schema=schema, work_dir=tmp_path)
    apply_migrations(db_conn, config)
    try:
        yield config
    finally:
        db_conn.rollback()
        with db_conn.cursor() as cur:
            cur.execute(sql.SQL("DROP SCHEMA IF EXISTS {} CASCADE").format(sql.Identifier(schema)))
        db_conn.commit()
