"""Archive retrieval, expansion and record decoding for Japan Post feeds."""

from __future__ import annotations

import csv
import hashlib
import logging
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import httpx

from postal_sync.errors import ExpansionError
from postal_sync.models import RetrievalResult, StagingRecord

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024
FIELD_COUNT = 15
_FLAG_VALUES = {"0": False, "1": True}
_REPLACEMENT_CHAR = "\ufffd"


class ArchiveRetriever:
    """Streams a URL to disk, hashing while writing."""

    def __init__(self, client: httpx.Client) -> None:
        self._client = client

    def fetch(self, url: str, destination: Path) -> RetrievalResult:
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".part")
        digest = hashlib.sha256()
        size_bytes = 0
        status_code: int | None = None

        logger.info("Downloading %s", url)
        try:
            with self._client.stream("GET", url) as response:
                status_code = response.status_code
                response.raise_for_status()
                with partial.open("wb") as handle:
                    for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                        handle.write(chunk)
                        digest.update(chunk)
                        size_bytes += len(chunk)
            partial.replace(destination)
        except (httpx.HTTPError, OSError) as exc:
            partial.unlink(missing_ok=True)
            logger.error("Download failed for %s: %s", url, exc)
            return RetrievalResult(success=False, url=url, status_code=status_code, error=str(exc))

        sha256 = digest.hexdigest()
        logger.info("Downloaded %s (%s bytes, sha256=%s)", destination.name, size_bytes, sha256)
        return RetrievalResult(
            success=True,
            url=url,
            path=destination,
            size_bytes=size_bytes,
            sha256=sha256,
            status_code=status_code,
            downloaded_at=datetime.now(timezone.utc),
        )


def expand_archive(archive_path: Path, target_dir: Path) -> list[Path]:
    """Extract ``archive_path`` into ``target_dir``.

    Entry directories are dropped, so every produced file sits directly in
    ``target_dir`` and nothing can be written outside it.
    """

    target_dir.mkdir(parents=True, exist_ok=True)
    produced: list[Path] = []
    seen: set[str] = set()
    try:
        with zipfile.ZipFile(archive_path) as archive:
            for entry in archive.infolist():
                if entry.is_dir():
                    continue
                name = Path(entry.filename.replace("\\", "/")).name
                if not name or name in {".", ".."}:
                    continue
                if name in seen:
                    raise ExpansionError(
                        f"{archive_path.name} holds more than one entry named {name}",
                        archive=str(archive_path),
                    )
                seen.add(name)
                output_path = target_dir / name
                with archive.open(entry) as source, output_path.open("wb") as sink:
                    while True:
                        chunk = source.read(DOWNLOAD_CHUNK_SIZE)
                        if not chunk:
                            break
                        sink.write(chunk)
                produced.append(output_path)
    except (zipfile.BadZipFile, OSError) as exc:
        raise ExpansionError(f"Failed to expand {archive_path}: {exc}", archive=str(archive_path)) from exc

    logger.info("Expanded %s into %s files", archive_path.name, len(produced))
    return produced


def csv_files(paths: list[Path]) -> list[Path]:
    return sorted(path for path in paths if path.suffix.lower() == ".csv")


def decode_fields(fields: list[str]) -> StagingRecord:
    """Decode one Japan Post UTF-8 row (15 columns) into a ``StagingRecord``."""

    if len(fields) != FIELD_COUNT:
        raise ValueError(f"expected {FIELD_COUNT} fields, got {len(fields)}")
    values = [value.strip() for value in fields]
    if any(_REPLACEMENT_CHAR in value for value in values):
        raise ValueError("line contains undecodable bytes")

    postal_code = values[2]
    if len(postal_code) != 7 or not postal_code.isdigit():
        raise ValueError(f"invalid postal code {postal_code!r}")

    flags: list[bool] = []
    for raw in values[9:13]:
        if raw not in _FLAG_VALUES:
            raise ValueError(f"invalid flag value {raw!r}")
        flags.append(_FLAG_VALUES[raw])

    return StagingRecord(
        local_government_code=values[0],
        old_postal_code=values[1],
        postal_code=postal_code,
        prefecture_kana=values[3],
        city_kana=values[4],
        town_kana=values[5],
        prefecture=values[6],
        city=values[7],
        town=values[8],
        is_multi_zip=flags[0],
        is_koaza=flags[1],
        is_chome=flags[2],
        is_multi_town=flags[3],
        update_status=int(values[13]),
        update_reason=int(values[14]),
    )


@dataclass
class DecodeStats:
    lines: int = 0
    decoded: int = 0
    malformed: int = 0


def iter_records(path: Path, stats: DecodeStats | None = None) -> Iterator[StagingRecord]:
    """Yield decoded records; malformed lines are logged and skipped."""

    stats = stats if stats is not None else DecodeStats()
    # Bad bytes become U+FFFD and are rejected per line by decode_fields.
    with path.open("r", encoding="utf-8-sig", errors="replace", newline="") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            stats.lines += 1
            try:
                record = decode_fields(next(csv.reader([line])))
            except (csv.Error, ValueError) as exc:
                stats.malformed += 1
                logger.warning("Skipping malformed line %s:%s: %s", path.name, line_number, exc)
                continue
            stats.decoded += 1
            yield record

    if stats.malformed:
        logger.warning(
            "Decoded %s of %s lines from %s (%s malformed)",
            stats.decoded,
            stats.lines,
            path.name,
            stats.malformed,
        )


def iter_feed(paths: list[Path], stats: DecodeStats) -> Iterator[StagingRecord]:
    for path in paths:
        yield from iter_records(path, stats)
