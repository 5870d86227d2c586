"""CLI entrypoint for postal-sync."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

import httpx
import psycopg

from postal_sync.config import default_dsn, load_sync_config
from postal_sync.db.connection import connect
from postal_sync.db.migrations import apply_migrations
from postal_sync.errors import ConfigError, SyncError, VersionError
from postal_sync.ingest.ledger import RunLedger
from postal_sync.ingest.sources import ArchiveRetriever
from postal_sync.ingest.workflows import SyncOrchestrator
from postal_sync.logging_setup import configure_logging
from postal_sync.models import MODE_DIFFERENTIAL, MODE_FULL
from postal_sync.util.versions import format_yymm, resolve_version

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="postal-sync")
    parser.add_argument("--dsn", default=default_dsn(), help="PostgreSQL DSN")
    parser.add_argument("--config", type=Path, default=None, help="JSON settings file")
    parser.add_argument("--log-level", default=None, help="Logging level (default INFO)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database operations")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_subparsers.add_parser("migrate", help="Create or upgrade the sync tables")

    run_parser = subparsers.add_parser("run", help="Synchronize postal codes")
    run_parser.add_argument("--full", action="store_true", help="Force a full import")
    run_parser.add_argument(
        "--yymm",
        default=None,
        help="Target year-month, e.g. 2508. Defaults to the previous month.",
    )
    run_parser.add_argument("--workdir", type=Path, default=None, help="Working directory override")
    run_parser.add_argument(
        "--force",
        action="store_true",
        help="Reprocess even if this version and mode already succeeded",
    )

    return parser


def _emit(payload: dict[str, object], *, error: bool = False) -> None:
    print(json.dumps(payload, ensure_ascii=False), file=sys.stderr if error else sys.stdout)


def _run(args: argparse.Namespace) -> int:
    config = load_sync_config(args.config).with_work_dir(args.workdir)
    version = resolve_version(args.yymm, now=datetime.now())
    mode_request = MODE_FULL if args.full else MODE_DIFFERENTIAL

    with connect(args.dsn) as conn, httpx.Client(
        timeout=config.http_timeout_seconds,
        follow_redirects=True,
    ) as client:
        orchestrator = SyncOrchestrator(conn, config, ArchiveRetriever(client))
        success = orchestrator.execute(mode_request, version, force=args.force)
        run = RunLedger(conn, config).get_run(orchestrator.last_run_id) if orchestrator.last_run_id else None

    payload: dict[str, object] = {
        "status": run.status if run is not None else ("ok" if success else "error"),
        "run_id": orchestrator.last_run_id,
        "mode": orchestrator.last_mode,
        "yymm": format_yymm(version),
    }
    if run is not None:
        payload.update(
            {
                "landed_rows": run.landed_rows,
                "added_rows": run.added_rows,
                "updated_rows": run.updated_rows,
                "deleted_rows": run.deleted_rows,
            }
        )
        if run.errors:
            payload["error"] = run.errors.get("message")
    _emit(payload, error=not success)
    return EXIT_OK if success else EXIT_FAILED


def main(argv: list[str] | None = None) -> int:
    parser = _parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        if args.command == "db" and args.db_command == "migrate":
            config = load_sync_config(args.config)
            with connect(args.dsn) as conn:
                applied = apply_migrations(conn, config)
            _emit({"status": "ok", "migrations_applied": applied})
            return EXIT_OK

        if args.command == "run":
            return _run(args)

        parser.print_help(sys.stderr)
        return EXIT_USAGE
    except (ConfigError, VersionError) as exc:
        _emit({"status": "error", "error": str(exc)}, error=True)
        return EXIT_USAGE
    except KeyboardInterrupt:
        _emit({"status": "error", "error": "interrupted"}, error=True)
        return EXIT_INTERRUPTED
    except (SyncError, RuntimeError, OSError, psycopg.Error) as exc:
        logger.error("postal-sync failed: %s", exc)
        _emit({"status": "error", "error": str(exc)}, error=True)
        return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
