"""Tank usage from dip/volume readings, compared against pump dispense."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from station_ops.shift_closing.config import ShiftClosingConfig
from station_ops.shift_closing.meter_math import liters_dispensed
from station_ops.shift_closing.models import (
    AnomalyCode,
    MeterType,
    PumpMeterEntry,
    TankDipEntry,
    TankStatus,
)


@dataclass
class TankReconciliation:
    tank_id: str
    usage: float
    status: TankStatus
    anomalies: Tuple[AnomalyCode, ...] = ()

    def as_dict(self) -> Dict[str, object]:
        return {
            "tank_id": self.tank_id,
            "usage": round(self.usage, 3),
            "status": self.status.value,
            "anomalies": [a.value for a in self.anomalies],
        }


@dataclass
class TankVariance:
    """Tank usage vs liters dispensed by the pumps drawing from the tank. Informational."""

    tank_id: str
    usage: float
    dispensed: float
    variance: float  # usage - dispensed
    variance_pct: float
    flagged: bool
    pump_ids: List[str]

    def as_dict(self) -> Dict[str, object]:
        return {
            "tank_id": self.tank_id,
            "usage": round(self.usage, 3),
            "dispensed": round(self.dispensed, 3),
            "variance": round(self.variance, 3),
            "variance_pct": round(self.variance_pct, 2),
            "flagged": self.flagged,
            "pump_ids": list(self.pump_ids),
        }


def reconcile_tank(entry: TankDipEntry) -> TankReconciliation:
    """
    usage = opening_volume - closing_volume.

    Negative usage (tank gained fuel without an offload) is flagged `check_required`;
    a tank without a closing volume is `pending`. An opening volume above
    capacity is reported as an anomaly whatever the status.
    """
    anomalies: List[AnomalyCode] = []
    if entry.capacity > 0 and entry.opening_volume > entry.capacity:
        anomalies.append(AnomalyCode.TANK_OVER_CAPACITY_OPENING)
    if entry.closing_volume is None:
        return TankReconciliation(
            tank_id=entry.tank_id, usage=0.0, status=TankStatus.PENDING, anomalies=tuple(anomalies)
        )
    usage = entry.opening_volume - entry.closing_volume
    status = TankStatus.NORMAL
    if usage < 0:
        status = TankStatus.CHECK_REQUIRED
        anomalies.append(AnomalyCode.NEGATIVE_TANK_USAGE)
    return TankReconciliation(tank_id=entry.tank_id, usage=usage, status=status, anomalies=tuple(anomalies))


def _is_flagged(variance: float, variance_pct: float, config: ShiftClosingConfig) -> bool:
    return (
        abs(variance) > config.tank_variance_abs_liters
        or abs(variance_pct) > config.tank_variance_pct
    )


def reconcile_tank_dispense(
    tanks: Iterable[TankDipEntry],
    pumps: Iterable[PumpMeterEntry],
    meter_type: MeterType,
    config: ShiftClosingConfig,
) -> List[TankVariance]:
    """
    Compare each tank's usage with the liters its pumps dispensed.

    Pumps without a tank are ignored here. A variance beyond the absolute
    or percentage threshold is flagged but never blocks completion.
    """
    dispensed_by_tank: Dict[str, float] = defaultdict(float)
    pumps_by_tank: Dict[str, List[str]] = defaultdict(list)
    for pump in pumps:
        if not pump.tank_id:
            continue
        dispensed_by_tank[pump.tank_id] += liters_dispensed(pump, meter_type)
        pumps_by_tank[pump.tank_id].append(pump.pump_id)

    out: List[TankVariance] = []
    for tank in tanks:
        result = reconcile_tank(tank)
        dispensed = dispensed_by_tank.get(tank.tank_id, 0.0)
        if result.status == TankStatus.PENDING:
            out.append(
                TankVariance(
                    tank_id=tank.tank_id,
                    usage=0.0,
                    dispensed=dispensed,
                    variance=0.0,
                    variance_pct=0.0,
                    flagged=False,
                    pump_ids=pumps_by_tank.get(tank.tank_id, []),
                )
            )
            continue
        variance = result.usage - dispensed
        variance_pct = (variance / dispensed * 100.0) if dispensed > 0 else 0.0
        out.append(
            TankVariance(
                tank_id=tank.tank_id,
                usage=result.usage,
                dispensed=dispensed,
                variance=variance,
                variance_pct=variance_pct,
                flagged=_is_flagged(variance, variance_pct, config),
                pump_ids=pumps_by_tank.get(tank.tank_id, []),
            )
        )
    return out
