"""Island and station collections vs expected sales from pump meters."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from station_ops.shift_closing.meter_math import sales_value
from station_ops.shift_closing.models import (
    CollectionStatus,
    IslandCollection,
    MeterType,
    PumpMeterEntry,
    StationCollection,
)

logger = logging.getLogger(__name__)


@dataclass
class IslandReconciliation:
    island_id: str
    expected_sales: float
    total_collected: float
    variance: float  # positive = overage, negative = shortfall
    variance_percentage: float
    status: CollectionStatus

    @property
    def is_overage(self) -> bool:
        return self.variance > 0

    @property
    def is_shortfall(self) -> bool:
        return self.variance < 0

    def as_dict(self) -> Dict[str, object]:
        return {
            "island_id": self.island_id,
            "expected_sales": round(self.expected_sales, 2),
            "total_collected": round(self.total_collected, 2),
            "variance": round(self.variance, 2),
            "variance_percentage": round(self.variance_percentage, 2),
            "status": self.status.value,
        }


@dataclass
class ExpectedSales:
    """Expected sales per island plus sales of pumps with no island mapping."""

    by_island: Dict[str, float] = field(default_factory=dict)
    pumps_by_island: Dict[str, List[str]] = field(default_factory=dict)
    unassigned: Dict[str, float] = field(default_factory=dict)  # pump_id -> sales

    @property
    def total_assigned(self) -> float:
        return sum(self.by_island.values())

    @property
    def total_unassigned(self) -> float:
        return sum(self.unassigned.values())


@dataclass
class StationCrossCheck:
    """Independently counted station collection vs the sum of island collections."""

    station_total: float
    islands_total: float
    difference: float  # station_total - islands_total
    consistent: bool
    expected_sales: float
    variance: float  # station_total - expected_sales
    variance_percentage: float
    status: CollectionStatus

    def as_dict(self) -> Dict[str, object]:
        return {
            "station_total": round(self.station_total, 2),
            "islands_total": round(self.islands_total, 2),
            "difference": round(self.difference, 2),
            "consistent": self.consistent,
            "expected_sales": round(self.expected_sales, 2),
            "variance": round(self.variance, 2),
            "variance_percentage": round(self.variance_percentage, 2),
            "status": self.status.value,
        }


def variance_status(variance_percentage: float, tolerance_pct: float) -> CollectionStatus:
    if abs(variance_percentage) < tolerance_pct:
        return CollectionStatus.OK
    return CollectionStatus.REVIEW


def _variance_percentage(variance: float, expected: float) -> float:
    return (variance / expected * 100.0) if expected > 0 else 0.0


def reconcile_island(
    island: IslandCollection,
    expected_sales: float,
    tolerance_pct: float = 5.0,
) -> IslandReconciliation:
    total = island.total_collected
    variance = total - expected_sales
    variance_pct = _variance_percentage(variance, expected_sales)
    return IslandReconciliation(
        island_id=island.island_id,
        expected_sales=expected_sales,
        total_collected=total,
        variance=variance,
        variance_percentage=variance_pct,
        status=variance_status(variance_pct, tolerance_pct),
    )


def invert_island_mapping(island_pump_mapping: Mapping[str, Sequence[str]]) -> Dict[str, str]:
    """
    pump_id -> island_id. A pump listed under several islands stays with the first one.
    """
    island_by_pump: Dict[str, str] = {}
    for island_id, pump_ids in island_pump_mapping.items():
        for pump_id in pump_ids:
            current = island_by_pump.get(pump_id)
            if current is not None and current != island_id:
                logger.warning(
                    "Pump %s mapped to islands %s and %s; attributing to %s",
                    pump_id,
                    current,
                    island_id,
                    current,
                )
                continue
            island_by_pump[pump_id] = island_id
    return island_by_pump


def expected_sales_by_island(
    pumps: Iterable[PumpMeterEntry],
    island_pump_mapping: Mapping[str, Sequence[str]],
    meter_type: MeterType,
) -> ExpectedSales:
    """
    Sum each pump's sales value into the island that owns it.

    Every island in the mapping gets an entry (0 when it has no pumps).
    Pumps with no island are reported in `unassigned`.
    """
    island_by_pump = invert_island_mapping(island_pump_mapping)
    result = ExpectedSales(
        by_island={island_id: 0.0 for island_id in island_pump_mapping},
        pumps_by_island={island_id: [] for island_id in island_pump_mapping},
    )
    for pump in pumps:
        sales = sales_value(pump, meter_type)
        island_id = island_by_pump.get(pump.pump_id)
        if island_id is None:
            result.unassigned[pump.pump_id] = sales
            continue
        result.by_island[island_id] += sales
        result.pumps_by_island[island_id].append(pump.pump_id)
    return result


_TOTAL_COLUMNS = ("cash", "mobile_money", "card", "debt", "other", "receipts", "expenses", "total")


def collection_totals(islands: Iterable[IslandCollection]) -> Dict[str, float]:
    """Column sums per payment method across islands."""
    totals: Dict[str, float] = defaultdict(float)
    for column in _TOTAL_COLUMNS:
        totals[column] = 0.0
    for island in islands:
        totals["cash"] += island.cash_amount
        totals["mobile_money"] += island.mobile_money_amount
        totals["card"] += island.card_amount
        for scheme, amount in island.card_amounts.items():
            totals[f"card_{scheme}"] += amount
        totals["debt"] += island.debt_amount
        totals["other"] += island.other_amount
        totals["receipts"] += island.receipts
        totals["expenses"] += island.expenses
        totals["total"] += island.total_collected
    return dict(totals)


def reconcile_station(
    station_collection: Optional[StationCollection],
    islands: Sequence[IslandCollection],
    expected_total: float,
    tolerance_pct: float = 5.0,
    cross_check_tolerance: float = 1.0,
) -> Optional[StationCrossCheck]:
    """
    Cross-check the station-wide count against the islands. None when no station count was entered.
    """
    if station_collection is None:
        return None
    station_total = station_collection.total_collected
    islands_total = sum(i.total_collected for i in islands)
    difference = station_total - islands_total
    variance = station_total - expected_total
    variance_pct = _variance_percentage(variance, expected_total)
    return StationCrossCheck(
        station_total=station_total,
        islands_total=islands_total,
        difference=difference,
        consistent=abs(difference) <= cross_check_tolerance,
        expected_sales=expected_total,
        variance=variance,
        variance_percentage=variance_pct,
        status=variance_status(variance_pct, tolerance_pct),
    )
