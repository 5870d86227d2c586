"""Database connection helpers."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

import psycopg

APPLICATION_NAME = "postal-sync"


@contextmanager
def connect(dsn: str) -> Iterator[psycopg.Connection]:
    """Open a non-autocommit connection; every stage commits its own work."""
    conn = psycopg.connect(dsn, application_name=APPLICATION_NAME, autocommit=False)
    try:
        yield conn
    finally:
        if not conn.closed:
            conn.rollback()
        conn.close()
