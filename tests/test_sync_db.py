"""Database-backed behaviour of the staging, merge, replace and ledger stages."""

from __future__ import annotations

import hashlib
import zipfile
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import psycopg
import pytest
from psycopg import sql

from postal_sync.db.identifiers import table_ident
from postal_sync.db.migrations import apply_migrations
from postal_sync.errors import LedgerError
from postal_sync.ingest.differential import STATE_DONE, DifferentialMergeEngine
from postal_sync.ingest.full_replace import STEP_ORDER, FullReplaceEngine
from postal_sync.ingest.ledger import RunLedger
from postal_sync.ingest.staging import StagingLoader
from postal_sync.ingest.workflows import AUTO_FULL_NOTE, SyncOrchestrator
from postal_sync.models import (
    FILE_ROLE_FULL,
    MODE_DIFFERENTIAL,
    MODE_FULL,
    STATUS_FAILED,
    STATUS_SKIPPED,
    STATUS_SUCCEEDED,
    RetrievalResult,
    StagingRecord,
)
from postal_sync.util.ids import backup_table_name, generate_run_id

VERSION = date(2025, 8, 1)
FIXED_NOW = datetime(2025, 9, 1, 0, 0, 0, tzinfo=timezone.utc)


def _record(postal_code: str, town: str, town_kana: str = "ﾁﾖﾀﾞ") -> StagingRecord:
    return StagingRecord(
        local_government_code="13101",
        old_postal_code="100",
        postal_code=postal_code,
        prefecture_kana="ﾄｳｷｮｳﾄ",
        city_kana="ﾁﾖﾀﾞｸ",
        town_kana=town_kana,
        prefecture="東京都",
        city="千代田区",
        town=town,
        is_multi_zip=False,
        is_koaza=False,
        is_chome=False,
        is_multi_town=False,
        update_status=0,
        update_reason=0,
    )


def _csv_line(record: StagingRecord) -> str:
    values = [
        str(int(value)) if isinstance(value, bool) else str(value)
        for value in record.as_row()
    ]
    return ",".join(f'"{value}"' for value in values) + "\n"


def _production_rows(conn: psycopg.Connection, config) -> list[tuple[str, str, str]]:
    with conn.cursor() as cur:
        cur.execute(
            sql.SQL("SELECT postal_code, town, town_kana FROM {} ORDER BY postal_code, town").format(
                table_ident(config.schema, config.production_table)
            )
        )
        rows = cur.fetchall()
    conn.commit()
    return rows


def _table_exists(conn: psycopg.Connection, schema: str, table: str) -> bool:
    with conn.cursor() as cur:
        cur.execute("SELECT to_regclass(%s)", (f"{schema}.{table}",))
        exists = cur.fetchone()[0] is not None
    conn.commit()
    return exists


def _ticks(start: datetime = FIXED_NOW):
    current = start
    while True:
        yield current
        current += timedelta(seconds=1)


class ZipRetriever:
    """Writes a real archive for each requested URL."""

    def __init__(self, feeds: dict[str, list[StagingRecord]]) -> None:
        self.feeds = feeds

    def fetch(self, url: str, destination: Path) -> RetrievalResult:
        destination.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(destination, "w") as archive:
            archive.writestr(
                destination.stem.upper() + ".CSV",
                "".join(_csv_line(record) for record in self.feeds.get(destination.name, [])),
            )
        data = destination.read_bytes()
        return RetrievalResult(
            success=True,
            url=url,
            path=destination,
            size_bytes=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
            status_code=200,
            downloaded_at=datetime.now(timezone.utc),
        )


def test_migrations_are_idempotent(db_conn, sync_config) -> None:
    assert apply_migrations(db_conn, sync_config) == 0
    assert _table_exists(db_conn, sync_config.schema, "ingestion_runs")
    assert _table_exists(db_conn, sync_config.schema, "postal_codes_landed")


def test_single_row_full_replace(db_conn, sync_config) -> None:
    StagingLoader(db_conn, sync_config).load([_record("1000001", "千代田")])
    engine = FullReplaceEngine(db_conn, sync_config, clock=lambda: FIXED_NOW)

    result = engine.perform_full_replacement(generate_run_id())

    assert result.success
    assert result.row_count == 1
    assert result.backup_table == "postal_codes_old_20250901_000000"
    assert engine.completed_steps == list(STEP_ORDER)
    assert _production_rows(db_conn, sync_config) == [("1000001", "千代田", "ﾁﾖﾀﾞ")]
    assert not _table_exists(db_conn, sync_config.schema, sync_config.shadow_table)
    assert _table_exists(db_conn, sync_config.schema, "postal_codes_key_idx")
    assert StagingLoader(db_conn, sync_config).count() == 1


def test_kana_update_counts_as_update(db_conn, sync_config) -> None:
    staging = StagingLoader(db_conn, sync_config)
    engine = DifferentialMergeEngine(db_conn, sync_config)
    staging.load([_record("1000001", "千代田")])
    engine.apply(True, False)

    staging.load([_record("1000001", "千代田", town_kana="ﾁﾖﾀﾞﾁｮｳ")])
    result = engine.apply(True, False, run_id=generate_run_id())

    assert result.success
    assert (result.added, result.updated, result.deleted) == (0, 1, 0)
    assert engine.state == STATE_DONE
    assert _production_rows(db_conn, sync_config) == [("1000001", "千代田", "ﾁﾖﾀﾞﾁｮｳ")]


def test_delete_one_of_two(db_conn, sync_config) -> None:
    staging = StagingLoader(db_conn, sync_config)
    engine = DifferentialMergeEngine(db_conn, sync_config)
    staging.load([_record("1000001", "千代田"), _record("1000002", "皇居外苑")])
    engine.apply(True, False)

    staging.load([_record("1000002", "皇居外苑")])
    result = engine.apply(False, True)

    assert result.success
    assert result.deleted == 1
    assert _production_rows(db_conn, sync_config) == [("1000001", "千代田", "ﾁﾖﾀﾞ")]


def test_upsert_is_idempotent(db_conn, sync_config) -> None:
    StagingLoader(db_conn, sync_config).load([_record("1000001", "千代田"), _record("1000002", "皇居外苑")])
    engine = DifferentialMergeEngine(db_conn, sync_config)

    first = engine.apply(True, False)
    rows_after_first = _production_rows(db_conn, sync_config)
    second = engine.apply(True, False)

    assert (first.added, first.updated) == (2, 0)
    assert (second.added, second.updated) == (0, 2)
    assert _production_rows(db_conn, sync_config) == rows_after_first


def test_duplicate_staging_keys_never_duplicate_production(db_conn, sync_config) -> None:
    StagingLoader(db_conn, sync_config).load([_record("1000001", "千代田"), _record("1000001", "千代田")])

    merged = DifferentialMergeEngine(db_conn, sync_config).apply(True, False)
    replaced = FullReplaceEngine(db_conn, sync_config, clock=lambda: FIXED_NOW).perform_full_replacement(
        generate_run_id()
    )

    assert merged.added == 1
    assert replaced.row_count == 1
    assert len(_production_rows(db_conn, sync_config)) == 1
    with pytest.raises(psycopg.errors.UniqueViolation):
        with db_conn.cursor() as cur:
            cur.execute(
                sql.SQL("INSERT INTO {} SELECT * FROM {}").format(
                    table_ident(sync_config.schema, sync_config.production_table),
                    table_ident(sync_config.schema, sync_config.production_table),
                )
            )
    db_conn.rollback()


def test_duplicate_staging_keys_keep_the_same_row_in_both_modes(db_conn, sync_config) -> None:
    staging = StagingLoader(db_conn, sync_config)
    duplicates = [
        _record("1000001", "千代田", town_kana="ﾁﾖﾀﾞﾁｮｳ"),
        _record("1000001", "千代田", town_kana="ﾁﾖﾀﾞ"),
    ]

    staging.load(duplicates)
    DifferentialMergeEngine(db_conn, sync_config).apply(True, False)
    merged_rows = _production_rows(db_conn, sync_config)

    staging.load(list(reversed(duplicates)))
    FullReplaceEngine(db_conn, sync_config, clock=lambda: FIXED_NOW).perform_full_replacement(generate_run_id())

    assert merged_rows == [("1000001", "千代田", "ﾁﾖﾀﾞ")]
    assert _production_rows(db_conn, sync_config) == merged_rows


def test_backup_rotation_keeps_configured_count(db_conn, sync_config) -> None:
    StagingLoader(db_conn, sync_config).load([_record("1000001", "千代田")])
    ticks = _ticks()
    engine = FullReplaceEngine(db_conn, sync_config, clock=lambda: next(ticks))

    results = [engine.perform_full_replacement(generate_run_id()) for _ in range(5)]

    assert all(result.success for result in results)
    backups = engine.list_backup_tables()
    assert backups == [
        backup_table_name(sync_config.backup_prefix, created_at=FIXED_NOW + timedelta(seconds=offset))
        for offset in (4, 3, 2)
    ]
    assert results[-1].dropped_backups == ("postal_codes_old_20250901_000001",)
    assert _production_rows(db_conn, sync_config) == [("1000001", "千代田", "ﾁﾖﾀﾞ")]


def test_swap_failure_leaves_production_and_shadow(db_conn, sync_config) -> None:
    staging = StagingLoader(db_conn, sync_config)
    staging.load([_record("1000001", "千代田")])
    DifferentialMergeEngine(db_conn, sync_config).apply(True, False)
    before = _production_rows(db_conn, sync_config)

    # Occupy the backup name the swap will try to use.
    colliding = backup_table_name(sync_config.backup_prefix, created_at=FIXED_NOW)
    with db_conn.cursor() as cur:
        cur.execute(sql.SQL("CREATE TABLE {} (id int)").format(table_ident(sync_config.schema, colliding)))
    db_conn.commit()

    ledger = RunLedger(db_conn, sync_config)
    orchestrator = SyncOrchestrator(
        db_conn,
        sync_config,
        ZipRetriever({sync_config.full_file_name: [_record("1000002", "皇居外苑")]}),
        full_replace=FullReplaceEngine(db_conn, sync_config, clock=lambda: FIXED_NOW),
    )

    assert orchestrator.execute(MODE_FULL, VERSION) is False

    assert _production_rows(db_conn, sync_config) == before
    assert _table_exists(db_conn, sync_config.schema, sync_config.shadow_table)
    run = ledger.get_run(orchestrator.last_run_id)
    assert run.status == STATUS_FAILED
    assert run.errors["stage"] == "full_replace_atomic_swap"
    assert run.errors["shadow_table"] == f"{sync_config.schema}.{sync_config.shadow_table}"


def test_orchestrated_full_then_skip(db_conn, sync_config) -> None:
    ledger = RunLedger(db_conn, sync_config)
    retriever = ZipRetriever(
        {sync_config.full_file_name: [_record("1000001", "千代田"), _record("1000002", "皇居外苑")]}
    )
    orchestrator = SyncOrchestrator(db_conn, sync_config, retriever)

    assert orchestrator.execute(MODE_DIFFERENTIAL, VERSION) is True
    first = ledger.get_run(orchestrator.last_run_id)
    assert first.mode == MODE_FULL
    assert first.status == STATUS_SUCCEEDED
    assert AUTO_FULL_NOTE in first.notes
    assert first.landed_rows == 2
    assert [file.file_role for file in ledger.list_files(first.run_id)] == [FILE_ROLE_FULL]
    assert StagingLoader(db_conn, sync_config).count() == 0
    rows = _production_rows(db_conn, sync_config)

    assert orchestrator.execute(MODE_FULL, VERSION) is True
    second = ledger.get_run(orchestrator.last_run_id)
    assert second.status == STATUS_SKIPPED
    assert first.run_id in second.notes
    assert _production_rows(db_conn, sync_config) == rows


def test_orchestrated_differential(db_conn, sync_config) -> None:
    StagingLoader(db_conn, sync_config).load([_record("1000001", "千代田"), _record("1000002", "皇居外苑")])
    DifferentialMergeEngine(db_conn, sync_config).apply(True, False)

    retriever = ZipRetriever(
        {
            sync_config.add_file_name("2508"): [
                _record("1000001", "千代田", town_kana="ﾁﾖﾀﾞﾁｮｳ"),
                _record("1000003", "丸の内"),
            ],
            sync_config.del_file_name("2508"): [_record("1000002", "皇居外苑")],
        }
    )
    orchestrator = SyncOrchestrator(db_conn, sync_config, retriever)

    assert orchestrator.execute(MODE_DIFFERENTIAL, VERSION) is True

    run = RunLedger(db_conn, sync_config).get_run(orchestrator.last_run_id)
    assert run.status == STATUS_SUCCEEDED
    assert (run.added_rows, run.updated_rows, run.deleted_rows) == (1, 1, 1)
    assert _production_rows(db_conn, sync_config) == [
        ("1000001", "千代田", "ﾁﾖﾀﾞﾁｮｳ"),
        ("1000003", "丸の内", "ﾁﾖﾀﾞ"),
    ]


def test_ledger_close_run_requires_existing_run(db_conn, sync_config) -> None:
    ledger = RunLedger(db_conn, sync_config)

    with pytest.raises(LedgerError):
        ledger.close_run(generate_run_id(), STATUS_SUCCEEDED, 0)

    run_id = ledger.open_run("japanpost", VERSION, MODE_FULL)
    ledger.close_run(run_id, STATUS_FAILED, 3, errors={"type": "X", "message": "first"})
    ledger.close_run(run_id, STATUS_SUCCEEDED, 4, notes="second")

    run = ledger.get_run(run_id)
    assert run.status == STATUS_SUCCEEDED
    assert run.landed_rows == 4
    assert run.errors is None
    assert ledger.find_succeeded_run(VERSION, MODE_FULL).run_id == run_id
    assert ledger.find_succeeded_run(VERSION, MODE_DIFFERENTIAL) is None
