"""Sync orchestration: mode resolution, idempotency gate and the two pipelines."""

from __future__ import annotations

import logging
import shutil
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Callable

import psycopg

from postal_sync.config import SyncConfig
from postal_sync.errors import (
    EmptyFeedError,
    ExpansionError,
    RetrievalError,
    StagingError,
    SyncError,
    error_payload,
)
from postal_sync.ingest.differential import DifferentialMergeEngine
from postal_sync.ingest.full_replace import FullReplaceEngine
from postal_sync.ingest.ledger import RunLedger
from postal_sync.ingest.sources import (
    ArchiveRetriever,
    DecodeStats,
    csv_files,
    expand_archive,
    iter_feed,
)
from postal_sync.ingest.staging import StagingLoader
from postal_sync.models import (
    FILE_ROLE_ADD,
    FILE_ROLE_DELETE,
    FILE_ROLE_FULL,
    MODE_DIFFERENTIAL,
    MODE_FULL,
    MODES,
    STATUS_FAILED,
    STATUS_SKIPPED,
    STATUS_SUCCEEDED,
    RetrievalResult,
)
from postal_sync.util.versions import format_yymm

logger = logging.getLogger(__name__)

AUTO_FULL_NOTE = "Differential requested but production table is empty; switched to Full"


@dataclass
class StageOutcome:
    success: bool
    landed_rows: int = 0
    added_rows: int | None = None
    updated_rows: int | None = None
    deleted_rows: int | None = None
    error: dict[str, Any] | None = None
    notes: list[str] = field(default_factory=list)


def _empty_feed_error(role: str, lines: int) -> dict[str, Any]:
    return EmptyFeedError(
        f"{role} feed produced no valid records from {lines} lines",
        file_role=role,
        lines=lines,
    ).payload()


class SyncOrchestrator:
    """Runs one ingestion attempt end to end.

    ``execute`` never raises for stage failures: every exception is turned
    into a ``Failed`` run with a structured error payload and a ``False``
    return value. Interrupts are recorded and re-raised.
    """

    def __init__(
        self,
        conn: psycopg.Connection,
        config: SyncConfig,
        retriever: ArchiveRetriever,
        *,
        ledger: RunLedger | None = None,
        staging: StagingLoader | None = None,
        differential: DifferentialMergeEngine | None = None,
        full_replace: FullReplaceEngine | None = None,
        expander: Callable[[Path, Path], list[Path]] = expand_archive,
    ) -> None:
        self._conn = conn
        self._config = config
        self._retriever = retriever
        self._ledger = ledger or RunLedger(conn, config)
        self._staging = staging or StagingLoader(conn, config)
        self._differential = differential or DifferentialMergeEngine(conn, config)
        self._full_replace = full_replace or FullReplaceEngine(conn, config)
        self._expander = expander
        self._downloaded: list[Path] = []
        self.last_run_id: str | None = None
        self.last_mode: str | None = None

    def execute(self, mode_request: str, version: date, force: bool = False) -> bool:
        if mode_request not in MODES:
            raise ValueError(f"Unknown mode: {mode_request}")

        run_id: str | None = None
        notes: list[str] = []
        self._downloaded = []
        self.last_run_id = None
        self.last_mode = None

        try:
            mode = self._resolve_mode(mode_request, notes)
            self.last_mode = mode

            if not force and self._already_succeeded(version, mode, notes):
                run_id = self._ledger.open_run(self._config.source_system, version, mode)
                self.last_run_id = run_id
                self._ledger.close_run(run_id, STATUS_SKIPPED, 0, notes="; ".join(notes))
                return True

            run_id = self._ledger.open_run(self._config.source_system, version, mode)
            self.last_run_id = run_id

            if mode == MODE_FULL:
                outcome = self._run_full(run_id)
            else:
                outcome = self._run_differential(run_id, version)
            notes.extend(outcome.notes)

            if not outcome.success:
                self._mark_failed(run_id, outcome.error, notes, outcome.landed_rows)
                return False

            try:
                self._ledger.close_run(
                    run_id,
                    STATUS_SUCCEEDED,
                    outcome.landed_rows,
                    notes="; ".join(notes),
                    added_rows=outcome.added_rows,
                    updated_rows=outcome.updated_rows,
                    deleted_rows=outcome.deleted_rows,
                )
            except Exception:
                # The table mutation already committed; the ledger is left behind.
                logger.exception("Failed to record successful run", extra={"run_id": run_id})
            return True
        except KeyboardInterrupt as exc:
            self._mark_failed(run_id, error_payload(exc, stage="cancelled"), notes)
            raise
        except SyncError as exc:
            self._mark_failed(run_id, exc.payload(), notes)
            return False
        except Exception as exc:
            self._mark_failed(run_id, error_payload(exc, stage="unexpected"), notes)
            return False
        finally:
            self._cleanup(run_id)

    def _resolve_mode(self, mode_request: str, notes: list[str]) -> str:
        if mode_request == MODE_DIFFERENTIAL and not self._ledger.has_any_data():
            logger.info(AUTO_FULL_NOTE)
            notes.append(AUTO_FULL_NOTE)
            return MODE_FULL
        return mode_request

    def _already_succeeded(self, version: date, mode: str, notes: list[str]) -> bool:
        prior = self._ledger.find_succeeded_run(version, mode)
        if prior is None:
            return False
        # A succeeded full run whose output has since been dropped must rerun.
        if mode == MODE_FULL and not self._ledger.has_any_data():
            return False
        message = (
            f"Version {format_yymm(version)} ({mode}) already succeeded in run {prior.run_id}; skipped"
        )
        logger.info(message)
        notes.append(message)
        return True

    def _mark_failed(
        self,
        run_id: str | None,
        error: dict[str, Any] | None,
        notes: list[str],
        landed_rows: int = 0,
    ) -> None:
        try:
            self._conn.rollback()
        except psycopg.Error:
            logger.warning("Rollback before marking run failed did not succeed", exc_info=True)

        message = (error or {}).get("message", "unknown error")
        logger.error("Sync run failed: %s", message, extra={"run_id": run_id or "-"})
        if run_id is None:
            return
        try:
            self._ledger.close_run(
                run_id,
                STATUS_FAILED,
                landed_rows,
                notes="; ".join(notes),
                errors=error or {"type": "Unknown", "message": message},
            )
        except Exception:
            logger.exception("Failed to record failed run", extra={"run_id": run_id})

    def _extract_dir(self, run_id: str) -> Path:
        return self._config.work_dir / "extracted" / run_id

    def _download_path(self, file_name: str) -> Path:
        return self._config.work_dir / "downloads" / file_name

    def _record_retrieval(self, run_id: str, result: RetrievalResult, role: str) -> None:
        if result.success and result.path is not None:
            self._downloaded.append(result.path)
            self._ledger.record_file(run_id, result.as_file(role))

    @staticmethod
    def _raise_retrieval_failure(result: RetrievalResult) -> None:
        raise RetrievalError(
            f"Failed to retrieve {result.url}: {result.error}",
            url=result.url,
            status_code=result.status_code,
        )

    def _expand_csv(self, run_id: str, archive: Path, role: str) -> list[Path]:
        paths = csv_files(self._expander(archive, self._extract_dir(run_id) / role))
        if not paths:
            raise ExpansionError(f"{archive.name} contained no CSV files", archive=str(archive))
        return paths

    def _run_full(self, run_id: str) -> StageOutcome:
        log_extra = {"run_id": run_id}
        result = self._retriever.fetch(
            self._config.full_url(),
            self._download_path(self._config.full_file_name),
        )
        if not result.success:
            self._raise_retrieval_failure(result)
        self._record_retrieval(run_id, result, FILE_ROLE_FULL)

        paths = self._expand_csv(run_id, result.path, FILE_ROLE_FULL)
        stats = DecodeStats()
        landed = self._staging.load(iter_feed(paths, stats))
        if landed == 0:
            return StageOutcome(success=False, error=_empty_feed_error(FILE_ROLE_FULL, stats.lines))
        logger.info("Staged full snapshot: %s rows (%s malformed)", landed, stats.malformed, extra=log_extra)

        replaced = self._full_replace.perform_full_replacement(run_id)
        if not replaced.success:
            return StageOutcome(success=False, landed_rows=landed, error=replaced.error)

        notes = [f"Full replacement: {replaced.row_count} rows in {replaced.duration_seconds:.1f}s"]
        if replaced.backup_table:
            notes.append(f"backup={replaced.backup_table}")
        if stats.malformed:
            notes.append(f"malformed_lines={stats.malformed}")
        self._note_collapsed(landed, replaced.row_count, FILE_ROLE_FULL, notes, log_extra)
        self._truncate_staging(notes, log_extra)
        return StageOutcome(
            success=True,
            landed_rows=landed,
            added_rows=replaced.row_count,
            notes=notes,
        )

    def _run_differential(self, run_id: str, version: date) -> StageOutcome:
        log_extra = {"run_id": run_id}
        yymm = format_yymm(version)
        targets = {
            FILE_ROLE_ADD: (self._config.add_url(yymm), self._download_path(self._config.add_file_name(yymm))),
            FILE_ROLE_DELETE: (self._config.del_url(yymm), self._download_path(self._config.del_file_name(yymm))),
        }

        # The two downloads are independent; both finish before staging starts.
        pool = ThreadPoolExecutor(max_workers=len(targets), thread_name_prefix="postal-sync-fetch")
        try:
            futures = {
                role: pool.submit(self._retriever.fetch, url, destination)
                for role, (url, destination) in targets.items()
            }
            done, _ = wait(futures.values(), return_when=FIRST_EXCEPTION)
            for future in done:
                future.result()
            results = {role: future.result() for role, future in futures.items()}
        except BaseException:
            # Do not wait out the sibling download once one has raised.
            pool.shutdown(wait=False, cancel_futures=True)
            raise
        pool.shutdown(wait=True)

        for role, result in results.items():
            self._record_retrieval(run_id, result, role)
        for result in results.values():
            if not result.success:
                self._raise_retrieval_failure(result)

        outcome = StageOutcome(success=True, added_rows=0, updated_rows=0, deleted_rows=0)
        malformed = 0

        # Add then delete, each loaded, applied and truncated on its own.
        for role in (FILE_ROLE_ADD, FILE_ROLE_DELETE):
            paths = self._expand_csv(run_id, results[role].path, role)
            stats = DecodeStats()
            landed = self._staging.load(iter_feed(paths, stats))
            malformed += stats.malformed
            outcome.landed_rows += landed
            if landed == 0 and stats.lines > 0:
                return StageOutcome(
                    success=False,
                    landed_rows=outcome.landed_rows,
                    error=_empty_feed_error(role, stats.lines),
                )
            logger.info("Staged %s feed: %s rows", role, landed, extra=log_extra)

            merged = self._differential.apply(
                role == FILE_ROLE_ADD and landed > 0,
                role == FILE_ROLE_DELETE and landed > 0,
                run_id=run_id,
            )
            if not merged.success:
                return StageOutcome(success=False, landed_rows=outcome.landed_rows, error=merged.error)

            outcome.added_rows += merged.added
            outcome.updated_rows += merged.updated
            outcome.deleted_rows += merged.deleted

            if role == FILE_ROLE_ADD:
                self._note_collapsed(landed, merged.added + merged.updated, role, outcome.notes, log_extra)
            self._truncate_staging(outcome.notes, log_extra)

        outcome.notes.insert(
            0,
            f"Differential {yymm}: added={outcome.added_rows} "
            f"updated={outcome.updated_rows} deleted={outcome.deleted_rows}",
        )
        if malformed:
            outcome.notes.append(f"malformed_lines={malformed}")
        return outcome

    def _truncate_staging(self, notes: list[str], log_extra: dict[str, str]) -> None:
        """Empty staging after a committed apply; failure leaves the run successful."""

        if not self._config.truncate_staging_after_processing:
            return
        try:
            self._staging.truncate()
        except StagingError as exc:
            logger.warning("Staging truncate after apply failed: %s", exc, extra=log_extra)
            notes.append(f"staging_truncate_failed={exc}")

    @staticmethod
    def _note_collapsed(
        landed: int,
        applied: int,
        role: str,
        notes: list[str],
        log_extra: dict[str, str],
    ) -> None:
        collapsed = landed - applied
        if collapsed > 0:
            logger.warning(
                "%s feed held %s rows with duplicate keys; collapsed to one row per key",
                role,
                collapsed,
                extra=log_extra,
            )
            notes.append(f"duplicate_keys_collapsed={collapsed}")

    def _cleanup(self, run_id: str | None) -> None:
        """Remove working files per the cleanup policy; errors are only logged."""

        log_extra = {"run_id": run_id or "-"}
        if run_id is not None and self._config.delete_extracted_files:
            extract_dir = self._extract_dir(run_id)
            try:
                if extract_dir.exists():
                    shutil.rmtree(extract_dir)
                    logger.debug("Removed %s", extract_dir, extra=log_extra)
            except OSError as exc:
                logger.warning("Failed to remove %s: %s", extract_dir, exc, extra=log_extra)

        if self._config.delete_downloaded_files:
            for path in self._downloaded:
                try:
                    path.unlink(missing_ok=True)
                except OSError as exc:
                    logger.warning("Failed to remove %s: %s", path, exc, extra=log_extra)
