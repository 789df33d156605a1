"""Env config parsing and defaults for shift closing."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from station_ops.load_env import load_env_file
from station_ops.paths import OPS_DRAFTS_DIR

DEFAULT_VARIANCE_TOLERANCE_PCT = 5.0
DEFAULT_TANK_VARIANCE_LITERS = 20.0
DEFAULT_TANK_VARIANCE_PCT = 1.0
DEFAULT_DRAFT_TTL_SECONDS = 4 * 60 * 60
DEFAULT_AUTOSAVE_SECONDS = 30
DEFAULT_STATION_TOLERANCE = 1.0
DEFAULT_MAX_SHIFT_HOURS = 24
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_API_BASE_URL = "http://localhost:3001/api"
DEFAULT_API_TIMEOUT_SECONDS = 30
DEFAULT_DRAFT_DB_PATH = OPS_DRAFTS_DIR / "shift_drafts.sqlite"

_VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(frozen=True)
class ShiftClosingConfig:
    """Tolerances, draft lifetime and API settings for a closing session."""

    variance_tolerance_pct: float = DEFAULT_VARIANCE_TOLERANCE_PCT
    tank_variance_abs_liters: float = DEFAULT_TANK_VARIANCE_LITERS
    tank_variance_pct: float = DEFAULT_TANK_VARIANCE_PCT
    draft_ttl_seconds: int = DEFAULT_DRAFT_TTL_SECONDS
    autosave_interval_seconds: int = DEFAULT_AUTOSAVE_SECONDS
    draft_db_path: Path = DEFAULT_DRAFT_DB_PATH
    station_cross_check_tolerance: float = DEFAULT_STATION_TOLERANCE
    max_shift_hours: int = DEFAULT_MAX_SHIFT_HOURS
    log_level: str = DEFAULT_LOG_LEVEL
    api_base_url: str = DEFAULT_API_BASE_URL
    api_timeout_seconds: int = DEFAULT_API_TIMEOUT_SECONDS
    env_file: Optional[Path] = None  # .env the values were read from, if any


def _read_int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    if value < minimum:
        return default
    return value


def _read_float_env(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if value != value or value < minimum:
        return default
    return value


def _normalize_log_level(raw_level: str) -> str:
    level = (raw_level or DEFAULT_LOG_LEVEL).strip().upper()
    if level in _VALID_LOG_LEVELS:
        return level
    return DEFAULT_LOG_LEVEL


def load_shift_closing_config() -> ShiftClosingConfig:
    env_file = load_env_file()
    draft_db_raw = (os.getenv("SHIFT_CLOSING_DRAFT_DB") or "").strip()
    api_base_url = (os.getenv("SHIFT_CLOSING_API_BASE_URL") or "").strip() or DEFAULT_API_BASE_URL

    return ShiftClosingConfig(
        variance_tolerance_pct=_read_float_env(
            "SHIFT_CLOSING_VARIANCE_TOLERANCE_PCT", DEFAULT_VARIANCE_TOLERANCE_PCT
        ),
        tank_variance_abs_liters=_read_float_env(
            "SHIFT_CLOSING_TANK_VARIANCE_LITERS", DEFAULT_TANK_VARIANCE_LITERS
        ),
        tank_variance_pct=_read_float_env("SHIFT_CLOSING_TANK_VARIANCE_PCT", DEFAULT_TANK_VARIANCE_PCT),
        draft_ttl_seconds=_read_int_env(
            "SHIFT_CLOSING_DRAFT_TTL_SECONDS", DEFAULT_DRAFT_TTL_SECONDS, minimum=1
        ),
        autosave_interval_seconds=_read_int_env(
            "SHIFT_CLOSING_AUTOSAVE_SECONDS", DEFAULT_AUTOSAVE_SECONDS, minimum=1
        ),
        draft_db_path=Path(draft_db_raw) if draft_db_raw else DEFAULT_DRAFT_DB_PATH,
        station_cross_check_tolerance=_read_float_env(
            "SHIFT_CLOSING_STATION_TOLERANCE", DEFAULT_STATION_TOLERANCE
        ),
        max_shift_hours=_read_int_env("SHIFT_CLOSING_MAX_SHIFT_HOURS", DEFAULT_MAX_SHIFT_HOURS, minimum=1),
        log_level=_normalize_log_level(os.getenv("SHIFT_CLOSING_LOG_LEVEL", DEFAULT_LOG_LEVEL)),
        api_base_url=api_base_url.rstrip("/"),
        api_timeout_seconds=_read_int_env(
            "SHIFT_CLOSING_API_TIMEOUT", DEFAULT_API_TIMEOUT_SECONDS, minimum=1
        ),
        env_file=env_file,
    )


def resolve_logging_level(name: str) -> int:
    return getattr(logging, _normalize_log_level(name), logging.INFO)


def configure_logging(level_name: str) -> None:
    logging.basicConfig(
        level=resolve_logging_level(level_name),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )
