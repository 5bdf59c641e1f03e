"""cardshare_etl.config

YAML configuration for ingestion runs (see config/ingest.yml).

Every key is optional; omitted keys keep their defaults.  The
CARDSHARE_LOG_LEVEL environment variable overrides ``log_level``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

LOG_LEVEL_ENV = "CARDSHARE_LOG_LEVEL"
DB_DSN_ENV = "CARDSHARE_DB_DSN"

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024


class ConfigValidationError(ValueError):
    """Raised when a configuration file fails validation."""


@dataclass
class IngestConfig:
    max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE
    private_batch_size: int = 100
    shared_batch_size: int = 50
    replace_private_when_all_new: bool = True
    archive_prefix: str = "csv-uploads"
    log_level: str = "INFO"


_INT_KEYS = ("max_file_size_bytes", "private_batch_size", "shared_batch_size")


def validate_config(data: dict[str, Any]) -> None:
    """Raise ConfigValidationError if data does not match the schema."""
    known = {f.name for f in fields(IngestConfig)}
    unknown = set(data) - known
    if unknown:
        raise ConfigValidationError(f"unknown config keys: {sorted(unknown)}")

    for key in _INT_KEYS:
        if key in data:
            value = data[key]
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigValidationError(f"{key} must be a positive integer, got {value!r}")

    flag = data.get("replace_private_when_all_new")
    if flag is not None and not isinstance(flag, bool):
        raise ConfigValidationError(
            f"replace_private_when_all_new must be a boolean, got {flag!r}"
        )

    level = data.get("log_level")
    if level is not None and not isinstance(logging.getLevelName(str(level).upper()), int):
        raise ConfigValidationError(f"unknown log_level {level!r}")


def load_config(path: Path | None = None) -> IngestConfig:
    """Load, validate, and return an IngestConfig.

    With no path the defaults are used.  Environment overrides are applied
    last.
    """
    data: dict[str, Any] = {}
    if path is not None:
        raw = path.read_text(encoding="utf-8")
        loaded = yaml.safe_load(raw)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigValidationError(f"{path}: top level must be a mapping")
        validate_config(loaded)
        data = loaded

    config = IngestConfig(**data)
    env_level = os.environ.get(LOG_LEVEL_ENV)
    if env_level:
        config.log_level = env_level
    config.log_level = config.log_level.upper()
    return config


def configure_logging(level_name: str) -> None:
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
