from __future__ import annotations

import re
import uuid
from datetime import date, datetime, timedelta, timezone

import pytest

from postal_sync.errors import IdentifierError, VersionError
from postal_sync.util import (
    backup_table_name,
    format_yymm,
    generate_run_id,
    is_backup_table_name,
    parse_yymm,
    previous_month,
    resolve_version,
)


def test_run_ids_are_uuids() -> None:
    run_id_1 = generate_run_id()
    run_id_2 = generate_run_id()

    assert run_id_1 != run_id_2
    assert str(uuid.UUID(run_id_1)) == run_id_1
    assert uuid.UUID(run_id_2).version == 4


def test_backup_table_name_is_sortable_and_pg_safe() -> None:
    earlier = backup_table_name("postal_codes_old_", created_at=datetime(2025, 9, 1, 8, 5, 3))
    later = backup_table_name("postal_codes_old_", created_at=datetime(2025, 10, 1, 0, 0, 0))

    assert earlier == "postal_codes_old_20250901_080503"
    assert earlier < later
    assert len(later) <= 63
    assert re.fullmatch(r"postal_codes_old_\d{8}_\d{6}", later)


def test_backup_table_name_normalises_aware_timestamps_to_utc() -> None:
    jst = timezone(timedelta(hours=9))
    name = backup_table_name("postal_codes_old_", created_at=datetime(2025, 9, 1, 9, 0, 0, tzinfo=jst))

    assert name == "postal_codes_old_20250901_000000"


def test_backup_table_name_rejects_invalid_prefix() -> None:
    with pytest.raises(IdentifierError):
        backup_table_name("Postal-Codes_", created_at=datetime(2025, 9, 1))


def test_is_backup_table_name_requires_exact_token() -> None:
    assert is_backup_table_name("postal_codes_old_", "postal_codes_old_20250901_080503")
    assert not is_backup_table_name("postal_codes_old_", "postal_codes_old_manual")
    assert not is_backup_table_name("postal_codes_old_", "postal_codes_old_20250901_080503_x")
    assert not is_backup_table_name("postal_codes_old_", "postal_codes_new")


def test_parse_yymm_maps_two_digit_years() -> None:
    assert parse_yymm("2508") == date(2025, 8, 1)
    assert parse_yymm("0001") == date(2000, 1, 1)
    assert parse_yymm("9912") == date(1999, 12, 1)


@pytest.mark.parametrize("value", ["", "250", "25081", "2513", "2500", "ab08"])
def test_parse_yymm_rejects_bad_tokens(value: str) -> None:
    with pytest.raises(VersionError):
        parse_yymm(value)


def test_format_yymm_zero_pads() -> None:
    assert format_yymm(date(2005, 3, 1)) == "0503"
    assert format_yymm(date(2025, 12, 1)) == "2512"


def test_previous_month_wraps_january() -> None:
    assert previous_month(datetime(2026, 1, 15)) == date(2025, 12, 1)
    assert previous_month(date(2025, 9, 30)) == date(2025, 8, 1)


def test_resolve_version_defaults_to_previous_month() -> None:
    now = datetime(2025, 9, 2, 3, 0, 0)

    assert resolve_version(None, now=now) == date(2025, 8, 1)
    assert resolve_version("2507", now=now) == date(2025, 7, 1)
