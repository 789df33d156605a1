"""Lightweight .env loader for the shift-closing engine."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from station_ops.paths import BASE_DIR, OPS_ROOT

logger = logging.getLogger(__name__)


def _candidate_paths(env_file: str) -> list[Path]:
    return [
        OPS_ROOT / env_file,
        BASE_DIR / env_file,
    ]


def load_env_file(env_file: str = ".env") -> Optional[Path]:
    """
    Load environment variables from `.env`.

    Search order:
    1) `station_ops/.env`
    2) repo-root `.env`

    Variables already present in the process environment are never overwritten.
    Returns the file that was read, or None when there was none.
    """
    env_path = next((path for path in _candidate_paths(env_file) if path.exists()), None)
    if env_path is None:
        return None

    loaded = []
    try:
        with open(env_path, "r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue

                key, value = line.split("=", 1)
                key = key.strip()
                if key.startswith("export "):
                    key = key[len("export "):].strip()
                value = value.strip()
                if value.startswith('"') and value.endswith('"'):
                    value = value[1:-1]
                elif value.startswith("'") and value.endswith("'"):
                    value = value[1:-1]

                if key and key not in os.environ:
                    os.environ[key] = value
                    loaded.append(key)
    except OSError as exc:
        logger.warning("Could not read %s, using process environment only: %s", env_path, exc)
        return None

    logger.debug("Loaded %s variable(s) from %s", len(loaded), env_path)
    return env_path
