"""Records and run metadata shared across the sync stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any

MODE_FULL = "Full"
MODE_DIFFERENTIAL = "Differential"
MODES = (MODE_FULL, MODE_DIFFERENTIAL)

STATUS_RUNNING = "Running"
STATUS_SUCCEEDED = "Succeeded"
STATUS_FAILED = "Failed"
STATUS_SKIPPED = "Skipped"
TERMINAL_STATUSES = (STATUS_SUCCEEDED, STATUS_FAILED, STATUS_SKIPPED)

FILE_ROLE_FULL = "full"
FILE_ROLE_ADD = "add"
FILE_ROLE_DELETE = "delete"

# Column order shared by the staging COPY and the production insert paths.
STAGING_COLUMNS = (
    "local_government_code",
    "old_postal_code",
    "postal_code",
    "prefecture_kana",
    "city_kana",
    "town_kana",
    "prefecture",
    "city",
    "town",
    "is_multi_zip",
    "is_koaza",
    "is_chome",
    "is_multi_town",
    "update_status",
    "update_reason",
)

KEY_COLUMNS = ("postal_code", "prefecture", "city", "town")
MUTABLE_COLUMNS = tuple(column for column in STAGING_COLUMNS if column not in KEY_COLUMNS)


@dataclass(frozen=True)
class StagingRecord:
    local_government_code: str
    old_postal_code: str
    postal_code: str
    prefecture_kana: str
    city_kana: str
    town_kana: str
    prefecture: str
    city: str
    town: str
    is_multi_zip: bool
    is_koaza: bool
    is_chome: bool
    is_multi_town: bool
    update_status: int
    update_reason: int

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.postal_code, self.prefecture, self.city, self.town)

    def as_row(self) -> tuple[Any, ...]:
        return tuple(getattr(self, column) for column in STAGING_COLUMNS)


@dataclass(frozen=True)
class IngestionRun:
    run_id: str
    source_system: str
    version_date: date
    mode: str
    status: str
    started_at: datetime
    finished_at: datetime | None
    landed_rows: int
    added_rows: int | None
    updated_rows: int | None
    deleted_rows: int | None
    notes: str
    errors: dict[str, Any] | None


@dataclass(frozen=True)
class IngestionFile:
    file_role: str
    file_name: str
    source_uri: str
    size_bytes: int
    sha256: str
    downloaded_at: datetime


@dataclass(frozen=True)
class RetrievalResult:
    success: bool
    url: str
    path: Path | None = None
    size_bytes: int = 0
    sha256: str | None = None
    status_code: int | None = None
    downloaded_at: datetime | None = None
    error: str | None = None

    def as_file(self, file_role: str) -> IngestionFile:
        if not self.success or self.path is None or self.sha256 is None or self.downloaded_at is None:
            raise ValueError(f"Retrieval of {self.url} did not succeed")
        return IngestionFile(
            file_role=file_role,
            file_name=self.path.name,
            source_uri=self.url,
            size_bytes=self.size_bytes,
            sha256=self.sha256,
            downloaded_at=self.downloaded_at,
        )


@dataclass(frozen=True)
class MergeResult:
    success: bool
    added: int = 0
    updated: int = 0
    deleted: int = 0
    error: dict[str, Any] | None = None


@dataclass(frozen=True)
class ReplaceResult:
    success: bool
    row_count: int = 0
    duration_seconds: float = 0.0
    backup_table: str | None = None
    dropped_backups: tuple[str, ...] = field(default_factory=tuple)
    error: dict[str, Any] | None = None
