"""Error types shared by the sync stages."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


class SyncError(RuntimeError):
    """Raised when a sync stage fails."""

    stage = "sync"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.details = details

    def payload(self) -> dict[str, Any]:
        return error_payload(self, stage=self.stage, **self.details)


class RetrievalError(SyncError):
    """Raised when an archive cannot be fetched."""

    stage = "retrieve"


class ExpansionError(SyncError):
    """Raised when an archive cannot be expanded."""

    stage = "expand"


class StagingError(SyncError):
    """Raised when the staging table cannot be loaded."""

    stage = "stage"


class EmptyFeedError(StagingError):
    """Raised when a feed decodes to zero usable records."""


class LedgerError(SyncError):
    """Raised when the run ledger cannot be written or read."""

    stage = "ledger"


class IdentifierError(ValueError):
    """Raised when a table or index name fails validation."""


class ConfigError(ValueError):
    """Raised when sync configuration is invalid."""


class VersionError(ValueError):
    """Raised when a YYMM version token is invalid."""


def error_payload(exc: BaseException, *, stage: str, **details: Any) -> dict[str, Any]:
    """Build the structured error document stored in ``ingestion_runs.errors``."""

    payload: dict[str, Any] = {
        "type": type(exc).__name__,
        "message": str(exc),
        "stage": stage,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    for key, value in details.items():
        if value is not None:
            payload[key] = value if isinstance(value, (str, int, float, bool)) else str(value)
    return payload
