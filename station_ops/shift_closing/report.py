"""Read-only reconciliation report assembled from a closing session."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional

from station_ops.shift_closing.collection_reconciler import (
    StationCrossCheck,
    expected_sales_by_island,
    invert_island_mapping,
    reconcile_island,
    reconcile_station,
)
from station_ops.shift_closing.meter_math import liters_dispensed, sales_value
from station_ops.shift_closing.models import CollectionStatus, MeterType, TankStatus
from station_ops.shift_closing.tank_reconciler import (
    TankReconciliation,
    TankVariance,
    reconcile_tank,
    reconcile_tank_dispense,
)

if TYPE_CHECKING:
    from station_ops.shift_closing.session import ClosingSession


@dataclass
class PumpRow:
    pump_id: str
    pump_name: str
    island_id: Optional[str]
    tank_id: Optional[str]
    product_id: str
    unit_price: float
    opening_electric: float
    opening_manual: float
    opening_cash: float
    closing_electric: Optional[float]
    closing_manual: Optional[float]
    closing_cash: Optional[float]
    liters: float
    sales: float
    anomalies: List[str] = field(default_factory=list)


@dataclass
class IslandRow:
    island_id: str
    island_name: str
    attendants: List[str]
    total_sales: float  # expected sales from the island's pumps
    receipts: float
    expenses: float
    cash_drops: float
    total_debts: float
    total_collected: float
    variance: float
    variance_percentage: float
    status: CollectionStatus
    actual_collection: float  # sales actually collected, bounded by the count


@dataclass
class StationTotals:
    total_sales: float = 0.0
    receipts: float = 0.0
    expenses: float = 0.0
    cash_drops: float = 0.0
    total_debts: float = 0.0
    total_collected: float = 0.0
    variance: float = 0.0


@dataclass
class DebtTransaction:
    island_id: str
    island_name: str
    debtor_id: str
    amount: float
    running_total: float
    reference: str = ""


@dataclass
class DebtorSummary:
    debtor_name: str
    transactions: List[DebtTransaction] = field(default_factory=list)
    total: float = 0.0


@dataclass
class WalletProjection:
    previous_balance: float
    actual_collection: float
    new_balance: float


@dataclass
class Report:
    station_id: str
    shift_id: str
    meter_type: MeterType
    islands: List[IslandRow]
    totals: StationTotals
    station_cross_check: Optional[StationCrossCheck]
    debtors: List[DebtorSummary]
    wallet: WalletProjection
    pumps: List[PumpRow]
    tanks: List[TankReconciliation]
    tank_variances: List[TankVariance]
    unassigned_sales: Dict[str, float]
    total_liters: float
    non_fuel_total: float
    notes: str = ""
    has_issues: bool = False

    @property
    def requires_review(self) -> bool:
        if any(row.status == CollectionStatus.REVIEW for row in self.islands):
            return True
        if any(t.status == TankStatus.CHECK_REQUIRED or t.anomalies for t in self.tanks):
            return True
        if any(v.flagged for v in self.tank_variances):
            return True
        if any(p.anomalies for p in self.pumps):
            return True
        if self.station_cross_check is not None and not self.station_cross_check.consistent:
            return True
        return False

    def as_dict(self) -> Dict[str, object]:
        return {
            "station_id": self.station_id,
            "shift_id": self.shift_id,
            "meter_type": self.meter_type.value,
            "totals": {k: round(v, 2) for k, v in vars(self.totals).items()},
            "islands": [
                {
                    "island_id": r.island_id,
                    "island_name": r.island_name,
                    "attendants": list(r.attendants),
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
                for r in self.islands
            ],
            "station_cross_check": self.station_cross_check.as_dict() if self.station_cross_check else None,
            "debtors": [
                {"debtor_name": d.debtor_name, "total": round(d.total, 2), "transactions": len(d.transactions)}
                for d in self.debtors
            ],
            "wallet": {k: round(v, 2) for k, v in vars(self.wallet).items()},
            "tanks": [t.as_dict() for t in self.tanks],
            "tank_variances": [v.as_dict() for v in self.tank_variances],
            "unassigned_sales": {k: round(v, 2) for k, v in self.unassigned_sales.items()},
            "total_liters": round(self.total_liters, 3),
            "non_fuel_total": round(self.non_fuel_total, 2),
            "notes": self.notes,
            "has_issues": self.has_issues,
            "requires_review": self.requires_review,
        }


def _debtor_breakdown(islands) -> List[DebtorSummary]:
    by_name: "OrderedDict[str, DebtorSummary]" = OrderedDict()
    for island in islands:
        for debt in island.debts:
            name = debt.display_name
            summary = by_name.setdefault(name, DebtorSummary(debtor_name=name))
            summary.total += debt.amount
            summary.transactions.append(
                DebtTransaction(
                    island_id=island.island_id,
                    island_name=island.island_name,
                    debtor_id=debt.debtor_id,
                    amount=debt.amount,
                    running_total=summary.total,
                    reference=debt.reference,
                )
            )
    return list(by_name.values())


def build_report(session: "ClosingSession") -> Report:
    """Aggregate the session's current entries. Never mutates the session."""
    meter = session.selected_meter_type
    config = session.config
    pumps = list(session.pumps)
    islands = list(session.islands)
    tanks = list(session.tanks)

    expected = expected_sales_by_island(pumps, session.island_pump_mapping, meter)
    island_by_pump = invert_island_mapping(session.island_pump_mapping)

    island_rows: List[IslandRow] = []
    totals = StationTotals()
    for island in islands:
        expected_sales = expected.by_island.get(island.island_id, 0.0)
        rec = reconcile_island(island, expected_sales, config.variance_tolerance_pct)
        row = IslandRow(
            island_id=island.island_id,
            island_name=island.island_name,
            attendants=list(island.attendant_ids),
            total_sales=expected_sales,
            receipts=island.receipts,
            expenses=island.expenses,
            cash_drops=island.cash_amount,
            total_debts=island.debt_amount,
            total_collected=rec.total_collected,
            variance=rec.variance,
            variance_percentage=rec.variance_percentage,
            status=rec.status,
            actual_collection=max(0.0, min(expected_sales, rec.total_collected)),
        )
        island_rows.append(row)
        totals.total_sales += row.total_sales
        totals.receipts += row.receipts
        totals.expenses += row.expenses
        totals.cash_drops += row.cash_drops
        totals.total_debts += row.total_debts
        totals.total_collected += row.total_collected
        totals.variance += row.variance

    cross_check = reconcile_station(
        session.station_collection,
        islands,
        expected_total=expected.total_assigned,
        tolerance_pct=config.variance_tolerance_pct,
        cross_check_tolerance=config.station_cross_check_tolerance,
    )

    actual_collection = sum(r.actual_collection for r in island_rows)
    previous = session.previous_wallet_balance
    wallet = WalletProjection(
        previous_balance=previous,
        actual_collection=actual_collection,
        new_balance=previous + actual_collection,
    )

    pump_rows = [
        PumpRow(
            pump_id=p.pump_id,
            pump_name=p.pump_name,
            island_id=island_by_pump.get(p.pump_id),
            tank_id=p.tank_id,
            product_id=p.product_id,
            unit_price=p.unit_price,
            opening_electric=p.opening_electric,
            opening_manual=p.opening_manual,
            opening_cash=p.opening_cash,
            closing_electric=p.closing_electric,
            closing_manual=p.closing_manual,
            closing_cash=p.closing_cash,
            liters=liters_dispensed(p, meter),
            sales=sales_value(p, meter),
            anomalies=[a.value for a in p.anomalies],
        )
        for p in pumps
    ]

    return Report(
        station_id=session.station_id,
        shift_id=session.shift_id,
        meter_type=meter,
        islands=island_rows,
        totals=totals,
        station_cross_check=cross_check,
        debtors=_debtor_breakdown(islands),
        wallet=wallet,
        pumps=pump_rows,
        tanks=[reconcile_tank(t) for t in tanks],
        tank_variances=reconcile_tank_dispense(tanks, pumps, meter, config),
        unassigned_sales=dict(expected.unassigned),
        total_liters=sum(r.liters for r in pump_rows),
        non_fuel_total=sum(s.total for s in session.non_fuel_sales),
        notes=session.notes,
        has_issues=session.has_issues,
    )
