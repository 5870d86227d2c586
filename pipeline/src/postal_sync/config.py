"""Runtime configuration for postal-sync."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

from postal_sync.db.identifiers import INDEX_COLUMNS, index_name, validate_identifier
from postal_sync.errors import ConfigError, IdentifierError

ENV_PREFIX = "POSTAL_SYNC_"
YYMM_PLACEHOLDER = "{YYMM}"


def default_dsn() -> str:
    return os.getenv("POSTAL_SYNC_DSN", "dbname=postal_codes")


@dataclass(frozen=True)
class SyncConfig:
    base_url: str = "https://www.post.japanpost.jp/zipcode/dl/utf/zip/"
    full_file_name: str = "utf_ken_all.zip"
    add_pattern: str = "utf_add_{YYMM}.zip"
    del_pattern: str = "utf_del_{YYMM}.zip"
    work_dir: Path = Path("work")
    schema: str = "ext"
    production_table: str = "postal_codes"
    staging_table: str = "postal_codes_landed"
    keep_backup_tables: int = 3
    lock_timeout_seconds: int = 5
    http_timeout_seconds: float = 1800.0
    truncate_staging_after_processing: bool = True
    delete_downloaded_files: bool = False
    delete_extracted_files: bool = True
    source_system: str = "japanpost"

    @property
    def shadow_table(self) -> str:
        return f"{self.production_table}_new"

    @property
    def backup_prefix(self) -> str:
        return f"{self.production_table}_old_"

    def full_url(self) -> str:
        return _join_url(self.base_url, self.full_file_name)

    def add_file_name(self, yymm: str) -> str:
        return self.add_pattern.replace(YYMM_PLACEHOLDER, yymm)

    def del_file_name(self, yymm: str) -> str:
        return self.del_pattern.replace(YYMM_PLACEHOLDER, yymm)

    def add_url(self, yymm: str) -> str:
        return _join_url(self.base_url, self.add_file_name(yymm))

    def del_url(self, yymm: str) -> str:
        return _join_url(self.base_url, self.del_file_name(yymm))

    def with_work_dir(self, work_dir: Path | None) -> "SyncConfig":
        if work_dir is None:
            return self
        return replace(self, work_dir=Path(work_dir))

    def validate(self) -> "SyncConfig":
        if not self.base_url.strip():
            raise ConfigError("base_url must not be empty")
        for name in ("add_pattern", "del_pattern"):
            if YYMM_PLACEHOLDER not in getattr(self, name):
                raise ConfigError(f"{name} must contain {YYMM_PLACEHOLDER}")
        if self.keep_backup_tables < 0:
            raise ConfigError("keep_backup_tables must be >= 0")
        if self.lock_timeout_seconds <= 0:
            raise ConfigError("lock_timeout_seconds must be > 0")
        if self.http_timeout_seconds <= 0:
            raise ConfigError("http_timeout_seconds must be > 0")
        try:
            for name in (self.schema, self.production_table, self.staging_table, self.shadow_table):
                validate_identifier(name)
            # Backup names append a 15 character timestamp token; indexes follow the table name.
            sample_backup = validate_identifier(f"{self.backup_prefix}00000000_000000")
            for role in INDEX_COLUMNS:
                index_name(sample_backup, role)
        except IdentifierError as exc:
            raise ConfigError(str(exc)) from exc
        if self.staging_table == self.production_table:
            raise ConfigError("staging_table must differ from production_table")
        return self


def _join_url(base_url: str, file_name: str) -> str:
    return base_url.rstrip("/") + "/" + file_name


def _coerce(field_name: str, field_type: Any, raw: Any) -> Any:
    type_name = field_type if isinstance(field_type, str) else getattr(field_type, "__name__", "")
    try:
        if type_name == "bool":
            if isinstance(raw, bool):
                return raw
            text = str(raw).strip().lower()
            if text in {"1", "true", "yes", "on"}:
                return True
            if text in {"0", "false", "no", "off"}:
                return False
            raise ValueError(raw)
        if type_name == "int":
            if isinstance(raw, bool):
                raise ValueError(raw)
            return int(raw)
        if type_name == "float":
            return float(raw)
        if type_name == "Path":
            return Path(str(raw)).expanduser()
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {field_name}: {raw!r}") from exc
    if not isinstance(raw, str):
        raise ConfigError(f"Setting '{field_name}' must be a string")
    return raw


def _load_json_config(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON config: {path}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Config root must be an object: {path}")
    return payload


def load_sync_config(
    path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> SyncConfig:
    """Build a validated ``SyncConfig``.

    Precedence, lowest first: dataclass defaults, the JSON file named by
    ``path`` or ``POSTAL_SYNC_CONFIG``, then ``POSTAL_SYNC_<FIELD>`` variables.
    """

    env = os.environ if environ is None else environ
    config_path = path or (Path(env["POSTAL_SYNC_CONFIG"]) if env.get("POSTAL_SYNC_CONFIG") else None)

    known = {field.name: field.type for field in fields(SyncConfig)}
    overrides: dict[str, Any] = {}

    if config_path is not None:
        for key, value in _load_json_config(config_path).items():
            if key not in known:
                raise ConfigError(f"Unknown config setting '{key}' in {config_path}")
            overrides[key] = _coerce(key, known[key], value)

    for name, field_type in known.items():
        env_value = env.get(ENV_PREFIX + name.upper())
        if env_value is not None and env_value != "":
            overrides[name] = _coerce(name, field_type, env_value)

    return SyncConfig(**overrides).validate()
