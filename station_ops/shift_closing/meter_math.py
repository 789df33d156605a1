"""Derive liters and sales from pump meter triplets and back-fill the other channels."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional

from station_ops.shift_closing.models import (
    AnomalyCode,
    MeterType,
    PumpMeterEntry,
)

logger = logging.getLogger(__name__)


@dataclass
class PumpTotals:
    liters: float
    sales: float


def _other_volumetric(meter_type: MeterType) -> MeterType:
    return MeterType.MANUAL if meter_type == MeterType.ELECTRIC else MeterType.ELECTRIC


def derive_from_meter_type(
    entry: PumpMeterEntry,
    selected_meter_type: MeterType,
    entered_closing_value: Optional[float],
) -> PumpMeterEntry:
    """
    Return a copy of `entry` with all three closing channels populated from one entered value.

    Electric/manual: liters = max(0, closing - opening); the other volumetric
    channel becomes opening + liters and cash becomes opening_cash + liters * price.
    Cash: sales = max(0, closing - opening); liters = sales / price (0 when price is 0);
    both volumetric channels become opening + liters.

    Clamping and zero prices are reported through `anomalies`, never raised.
    """
    meter = MeterType(selected_meter_type)
    if entered_closing_value is None:
        return replace(
            entry,
            closing_electric=None,
            closing_manual=None,
            closing_cash=None,
            meter_used=meter,
            anomalies=(),
        )

    closing = float(entered_closing_value)
    anomalies: List[AnomalyCode] = []
    raw_delta = closing - entry.opening(meter)
    if raw_delta < 0:
        anomalies.append(AnomalyCode.NEGATIVE_DISPENSE)
    delta = max(0.0, raw_delta)
    if entry.unit_price <= 0:
        anomalies.append(AnomalyCode.ZERO_UNIT_PRICE)

    if meter == MeterType.CASH:
        liters = delta / entry.unit_price if entry.unit_price > 0 else 0.0
        derived = replace(
            entry,
            closing_cash=closing,
            closing_electric=entry.opening_electric + liters,
            closing_manual=entry.opening_manual + liters,
            meter_used=meter,
            anomalies=tuple(anomalies),
        )
    else:
        liters = delta
        other = _other_volumetric(meter)
        derived = replace(
            entry,
            meter_used=meter,
            anomalies=tuple(anomalies),
            closing_cash=entry.opening_cash + liters * entry.unit_price,
            **{
                f"closing_{meter.value}": closing,
                f"closing_{other.value}": entry.opening(other) + liters,
            },
        )

    if anomalies:
        logger.warning(
            "Pump %s derivation anomalies on %s meter: %s",
            entry.pump_id,
            meter.value,
            ", ".join(a.value for a in anomalies),
        )
    return derived


def liters_dispensed(entry: PumpMeterEntry, meter_type: MeterType) -> float:
    """Liters dispensed read through `meter_type`; 0 when the closing is not entered."""
    meter = MeterType(meter_type)
    closing = entry.closing(meter)
    if closing is None:
        return 0.0
    delta = max(0.0, closing - entry.opening(meter))
    if meter == MeterType.CASH:
        return delta / entry.unit_price if entry.unit_price > 0 else 0.0
    return delta


def sales_value(entry: PumpMeterEntry, meter_type: MeterType) -> float:
    """
    Sales value for the pump.

    liters * unit_price, except on the cash channel where the sales value is read
    directly from the cash totalizer.
    """
    meter = MeterType(meter_type)
    if meter == MeterType.CASH:
        closing = entry.closing_cash
        if closing is None:
            return 0.0
        return max(0.0, closing - entry.opening_cash)
    return liters_dispensed(entry, meter) * entry.unit_price


def derive_all(entries: Iterable[PumpMeterEntry], meter_type: MeterType) -> List[PumpMeterEntry]:
    """
    Re-derive every pump from its closing on `meter_type`.

    Used when the selected meter type changes; pumps with nothing entered on that
    channel are returned unchanged.
    """
    meter = MeterType(meter_type)
    out: List[PumpMeterEntry] = []
    for entry in entries:
        closing = entry.closing(meter)
        if closing is None:
            out.append(entry)
            continue
        out.append(derive_from_meter_type(entry, meter, closing))
    return out


def pump_totals(entries: Iterable[PumpMeterEntry], meter_type: MeterType) -> PumpTotals:
    liters = 0.0
    sales = 0.0
    for entry in entries:
        liters += liters_dispensed(entry, meter_type)
        sales += sales_value(entry, meter_type)
    return PumpTotals(liters=liters, sales=sales)
