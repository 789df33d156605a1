from __future__ import annotations

from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent
OPS_ROOT = BASE_DIR / "station_ops"
OPS_DRAFTS_DIR = OPS_ROOT / "drafts"
OPS_REPORTS_DIR = OPS_ROOT / "reports"
