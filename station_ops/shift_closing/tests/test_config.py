"""Unit tests for env-driven shift-closing config."""

from __future__ import annotations

import logging
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from station_ops.load_env import load_env_file
from station_ops.shift_closing.config import (
    DEFAULT_DRAFT_DB_PATH,
    ShiftClosingConfig,
    load_shift_closing_config,
    resolve_logging_level,
)


def _load(env) -> ShiftClosingConfig:
    with mock.patch.dict(os.environ, env, clear=True), mock.patch(
        "station_ops.shift_closing.config.load_env_file", return_value=None
    ):
        return load_shift_closing_config()


class TestShiftClosingConfig(unittest.TestCase):
    def test_defaults(self) -> None:
        config = _load({})

        self.assertEqual(config, ShiftClosingConfig())
        self.assertEqual(config.variance_tolerance_pct, 5.0)
        self.assertEqual(config.draft_ttl_seconds, 4 * 60 * 60)
        self.assertEqual(config.autosave_interval_seconds, 30)
        self.assertEqual(config.draft_db_path, DEFAULT_DRAFT_DB_PATH)
        self.assertEqual(config.api_base_url, "http://localhost:3001/api")

    def test_environment_overrides(self) -> None:
        config = _load(
            {
                "SHIFT_CLOSING_VARIANCE_TOLERANCE_PCT": "2.5",
                "SHIFT_CLOSING_TANK_VARIANCE_LITERS": "50",
                "SHIFT_CLOSING_DRAFT_TTL_SECONDS": "7200",
                "SHIFT_CLOSING_AUTOSAVE_SECONDS": "10",
                "SHIFT_CLOSING_DRAFT_DB": "/tmp/drafts.sqlite",
                "SHIFT_CLOSING_LOG_LEVEL": "debug",
                "SHIFT_CLOSING_API_BASE_URL": "https://ops.example.com/api/",
                "SHIFT_CLOSING_API_TIMEOUT": "5",
            }
        )

        self.assertEqual(config.variance_tolerance_pct, 2.5)
        self.assertEqual(config.tank_variance_abs_liters, 50.0)
        self.assertEqual(config.draft_ttl_seconds, 7200)
        self.assertEqual(config.autosave_interval_seconds, 10)
        self.assertEqual(config.draft_db_path, Path("/tmp/drafts.sqlite"))
        self.assertEqual(config.log_level, "DEBUG")
        self.assertEqual(config.api_base_url, "https://ops.example.com/api")
        self.assertEqual(config.api_timeout_seconds, 5)

    def test_invalid_values_fall_back_to_defaults(self) -> None:
        config = _load(
            {
                "SHIFT_CLOSING_VARIANCE_TOLERANCE_PCT": "five",
                "SHIFT_CLOSING_TANK_VARIANCE_PCT": "-1",
                "SHIFT_CLOSING_DRAFT_TTL_SECONDS": "0",
                "SHIFT_CLOSING_MAX_SHIFT_HOURS": "abc",
                "SHIFT_CLOSING_LOG_LEVEL": "chatty",
            }
        )

        self.assertEqual(config.variance_tolerance_pct, 5.0)
        self.assertEqual(config.tank_variance_pct, 1.0)
        self.assertEqual(config.draft_ttl_seconds, 4 * 60 * 60)
        self.assertEqual(config.max_shift_hours, 24)
        self.assertEqual(config.log_level, "INFO")

    def test_resolve_logging_level(self) -> None:
        self.assertEqual(resolve_logging_level("warning"), logging.WARNING)
        self.assertEqual(resolve_logging_level("bogus"), logging.INFO)


class TestLoadEnvFile(unittest.TestCase):
    def test_env_file_fills_missing_variables_only(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            env_path = Path(tmp) / ".env"
            env_path.write_text(
                "# shift closing\n"
                "export SHIFT_CLOSING_AUTOSAVE_SECONDS=15\n"
                'SHIFT_CLOSING_API_BASE_URL="https://ops.example.com/api"\n'
                "SHIFT_CLOSING_LOG_LEVEL=DEBUG\n",
                encoding="utf-8",
            )
            with mock.patch.dict(os.environ, {"SHIFT_CLOSING_LOG_LEVEL": "ERROR"}, clear=True), mock.patch(
                "station_ops.load_env._candidate_paths", return_value=[env_path]
            ):
                self.assertEqual(load_env_file(), env_path)
                config = load_shift_closing_config()

        self.assertEqual(config.env_file, env_path)
        self.assertEqual(config.autosave_interval_seconds, 15)
        self.assertEqual(config.api_base_url, "https://ops.example.com/api")
        self.assertEqual(config.log_level, "ERROR")

    def test_no_env_file_returns_none(self) -> None:
        with tempfile.TemporaryDirectory() as tmp, mock.patch(
            "station_ops.load_env._candidate_paths", return_value=[Path(tmp) / ".env"]
        ):
            self.assertIsNone(load_env_file())


if __name__ == "__main__":
    unittest.main()
