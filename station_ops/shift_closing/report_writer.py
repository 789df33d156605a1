"""Write shift-closing report CSV outputs and summary JSON."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from station_ops.paths import OPS_REPORTS_DIR
from station_ops.shift_closing.report import Report

ISLAND_COLUMNS = [
    "island_id", "island_name", "attendants", "total_sales", "receipts", "expenses",
    "cash_drops", "total_debts", "total_collected", "variance", "variance_percentage",
    "status", "actual_collection",
]
DEBTOR_COLUMNS = [
    "debtor_name", "debtor_id", "island_id", "island_name", "reference", "amount", "running_total",
]
PUMP_COLUMNS = [
    "pump_id", "pump_name", "island_id", "tank_id", "product_id", "unit_price",
    "opening_electric", "closing_electric", "opening_manual", "closing_manual",
    "opening_cash", "closing_cash", "liters", "sales", "anomalies",
]


def _opt_round(value: Optional[float], places: int = 3):
    return round(value, places) if value is not None else ""


def island_frame(report: Report) -> pd.DataFrame:
    rows = [
        {
            "island_id": r.island_id,
            "island_name": r.island_name,
            "attendants": ", ".join(r.attendants) or "No attendants",
            "total_sales": round(r.total_sales, 2),
            "receipts": round(r.receipts, 2),
            "expenses": round(r.expenses, 2),
            "cash_drops": round(r.cash_drops, 2),
            "total_debts": round(r.total_debts, 2),
            "total_collected": round(r.total_collected, 2),
            "variance": round(r.variance, 2),
            "variance_percentage": round(r.variance_percentage, 2),
            "status": r.status.value,
            "actual_collection": round(r.actual_collection, 2),
        }
        for r in report.islands
    ]
    if rows:
        t = report.totals
        rows.append({
            "island_id": "TOTAL",
            "island_name": "",
            "attendants": "",
            "total_sales": round(t.total_sales, 2),
            "receipts": round(t.receipts, 2),
            "expenses": round(t.expenses, 2),
            "cash_drops": round(t.cash_drops, 2),
            "total_debts": round(t.total_debts, 2),
            "total_collected": round(t.total_collected, 2),
            "variance": round(t.variance, 2),
            "variance_percentage": "",
            "status": "",
            "actual_collection": round(report.wallet.actual_collection, 2),
        })
    return pd.DataFrame(rows, columns=ISLAND_COLUMNS)


def debtor_frame(report: Report) -> pd.DataFrame:
    rows: List[Dict[str, object]] = []
    for debtor in report.debtors:
        for txn in debtor.transactions:
            rows.append({
                "debtor_name": debtor.debtor_name,
                "debtor_id": txn.debtor_id,
                "island_id": txn.island_id,
                "island_name": txn.island_name,
                "reference": txn.reference,
                "amount": round(txn.amount, 2),
                "running_total": round(txn.running_total, 2),
            })
    return pd.DataFrame(rows, columns=DEBTOR_COLUMNS)


def pump_frame(report: Report) -> pd.DataFrame:
    rows = [
        {
            "pump_id": p.pump_id,
            "pump_name": p.pump_name,
            "island_id": p.island_id or "UNASSIGNED",
            "tank_id": p.tank_id or "",
            "product_id": p.product_id,
            "unit_price": round(p.unit_price, 2),
            "opening_electric": round(p.opening_electric, 3),
            "closing_electric": _opt_round(p.closing_electric),
            "opening_manual": round(p.opening_manual, 3),
            "closing_manual": _opt_round(p.closing_manual),
            "opening_cash": round(p.opening_cash, 2),
            "closing_cash": _opt_round(p.closing_cash, 2),
            "liters": round(p.liters, 3),
            "sales": round(p.sales, 2),
            "anomalies": ";".join(p.anomalies),
        }
        for p in report.pumps
    ]
    return pd.DataFrame(rows, columns=PUMP_COLUMNS)


def write_island_rows(report: Report, path: Path) -> None:
    """Per-island reconciliation with a TOTAL row: island_reconciliation.csv."""
    path.parent.mkdir(parents=True, exist_ok=True)
    island_frame(report).to_csv(path, index=False, encoding="utf-8")


def write_debtor_breakdown(report: Report, path: Path) -> None:
    """Debt transactions grouped by debtor with running totals: debtor_breakdown.csv."""
    path.parent.mkdir(parents=True, exist_ok=True)
    debtor_frame(report).to_csv(path, index=False, encoding="utf-8")


def write_pump_rows(report: Report, path: Path) -> None:
    """Derived meter readings per pump: pump_readings.csv."""
    path.parent.mkdir(parents=True, exist_ok=True)
    pump_frame(report).to_csv(path, index=False, encoding="utf-8")


def write_report_summary(report: Report, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report.as_dict(), f, indent=2)


def write_report_bundle(report: Report, out_dir: Optional[Path] = None) -> Dict[str, Path]:
    """
    Write all report files under <out_dir>/<station>/<shift>/ and return their paths.
    """
    base = Path(out_dir) if out_dir is not None else OPS_REPORTS_DIR / "shift_closing"
    target = base / report.station_id / report.shift_id
    paths = {
        "islands": target / "island_reconciliation.csv",
        "debtors": target / "debtor_breakdown.csv",
        "pumps": target / "pump_readings.csv",
        "summary": target / "summary.json",
    }
    write_island_rows(report, paths["islands"])
    write_debtor_breakdown(report, paths["debtors"])
    write_pump_rows(report, paths["pumps"])
    write_report_summary(report, paths["summary"])
    return paths
