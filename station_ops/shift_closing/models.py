"""Dataclasses for shift closing: pump meters, tank dips, collections, open-shift data."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


class MeterType(str, Enum):
    """Meter channel used as the source of truth for a pump's dispense."""

    ELECTRIC = "electric"
    MANUAL = "manual"
    CASH = "cash"


VOLUMETRIC_METERS = (MeterType.ELECTRIC, MeterType.MANUAL)


class AnomalyCode(str, Enum):
    """Derivation warnings. Never raised, always attached to results."""

    NEGATIVE_DISPENSE = "NEGATIVE_DISPENSE"  # closing entered below opening, clamped to 0
    ZERO_UNIT_PRICE = "ZERO_UNIT_PRICE"  # sales (or cash-derived liters) forced to 0
    NEGATIVE_TANK_USAGE = "NEGATIVE_TANK_USAGE"  # closing volume above opening volume
    TANK_OVER_CAPACITY_OPENING = "TANK_OVER_CAPACITY_OPENING"  # opening volume above tank capacity


class TankStatus(str, Enum):
    NORMAL = "normal"
    CHECK_REQUIRED = "check_required"
    PENDING = "pending"  # closing volume not entered yet


class CollectionStatus(str, Enum):
    OK = "ok"
    REVIEW = "review"


class ClosingStep(str, Enum):
    """Ordered steps of the shift-closing workflow."""

    VALIDATION = "validation"
    PUMP_READINGS = "pump_readings"
    TANK_DIPS = "tank_dips"
    COLLECTIONS = "collections"
    NON_FUEL = "non_fuel"
    REVIEW = "review"


STEP_ORDER: Tuple[ClosingStep, ...] = (
    ClosingStep.VALIDATION,
    ClosingStep.PUMP_READINGS,
    ClosingStep.TANK_DIPS,
    ClosingStep.COLLECTIONS,
    ClosingStep.NON_FUEL,
    ClosingStep.REVIEW,
)
OPTIONAL_STEPS = frozenset({ClosingStep.NON_FUEL})


def _require_id(value: object, name: str) -> str:
    text = str(value if value is not None else "").strip()
    if not text:
        raise ValueError(f"{name} is required")
    return text


def _to_float(value: object, name: str) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc
    if math.isnan(number) or math.isinf(number):
        raise ValueError(f"{name} must be finite, got {value!r}")
    return number


def _opt_float(value: object, name: str) -> Optional[float]:
    if value is None or value == "":
        return None
    return _to_float(value, name)


def _non_negative(value: object, name: str) -> float:
    number = _to_float(value, name)
    if number < 0:
        raise ValueError(f"{name} cannot be negative, got {number}")
    return number


@dataclass(frozen=True)
class PumpMeterEntry:
    """
    One pump's opening/closing meter triplet for the shift.

    Opening values come from the open shift and never change. Closing values
    are None until entered; after derivation all three are populated.
    """

    pump_id: str
    product_id: str
    unit_price: float
    opening_electric: float
    opening_manual: float
    opening_cash: float
    closing_electric: Optional[float] = None
    closing_manual: Optional[float] = None
    closing_cash: Optional[float] = None
    pump_name: str = ""
    tank_id: Optional[str] = None
    meter_used: Optional[MeterType] = None
    anomalies: Tuple[AnomalyCode, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "pump_id", _require_id(self.pump_id, "pump_id"))
        object.__setattr__(self, "product_id", str(self.product_id or "").strip())
        object.__setattr__(self, "unit_price", _non_negative(self.unit_price, "unit_price"))
        for name in ("opening_electric", "opening_manual", "opening_cash"):
            object.__setattr__(self, name, _non_negative(getattr(self, name), name))
        for name in ("closing_electric", "closing_manual", "closing_cash"):
            object.__setattr__(self, name, _opt_float(getattr(self, name), name))
        if self.meter_used is not None:
            object.__setattr__(self, "meter_used", MeterType(self.meter_used))
        object.__setattr__(self, "anomalies", tuple(AnomalyCode(a) for a in self.anomalies))

    def opening(self, meter_type: MeterType) -> float:
        return getattr(self, f"opening_{MeterType(meter_type).value}")

    def closing(self, meter_type: MeterType) -> Optional[float]:
        return getattr(self, f"closing_{MeterType(meter_type).value}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pumpId": self.pump_id,
            "pumpName": self.pump_name,
            "productId": self.product_id,
            "tankId": self.tank_id,
            "unitPrice": self.unit_price,
            "openingElectric": self.opening_electric,
            "openingManual": self.opening_manual,
            "openingCash": self.opening_cash,
            "closingElectric": self.closing_electric,
            "closingManual": self.closing_manual,
            "closingCash": self.closing_cash,
            "meterUsed": self.meter_used.value if self.meter_used else None,
            "anomalies": [a.value for a in self.anomalies],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PumpMeterEntry":
        return cls(
            pump_id=data.get("pumpId"),
            product_id=data.get("productId") or "",
            unit_price=data.get("unitPrice", 0.0),
            opening_electric=data.get("openingElectric", 0.0),
            opening_manual=data.get("openingManual", 0.0),
            opening_cash=data.get("openingCash", 0.0),
            closing_electric=data.get("closingElectric"),
            closing_manual=data.get("closingManual"),
            closing_cash=data.get("closingCash"),
            pump_name=data.get("pumpName") or "",
            tank_id=data.get("tankId"),
            meter_used=data.get("meterUsed"),
            anomalies=tuple(data.get("anomalies") or ()),
        )


@dataclass(frozen=True)
class TankDipEntry:
    """One tank's opening and closing volume/dip for the shift."""

    tank_id: str
    product_id: str
    capacity: float
    opening_volume: float
    opening_dip: float
    closing_volume: Optional[float] = None
    closing_dip: Optional[float] = None
    temperature: float = 25.0
    water_level: float = 0.0
    density: float = 0.85
    tank_name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "tank_id", _require_id(self.tank_id, "tank_id"))
        object.__setattr__(self, "product_id", str(self.product_id or "").strip())
        object.__setattr__(self, "capacity", _non_negative(self.capacity, "capacity"))
        object.__setattr__(self, "opening_volume", _non_negative(self.opening_volume, "opening_volume"))
        object.__setattr__(self, "opening_dip", _non_negative(self.opening_dip, "opening_dip"))
        object.__setattr__(self, "closing_volume", _opt_float(self.closing_volume, "closing_volume"))
        object.__setattr__(self, "closing_dip", _opt_float(self.closing_dip, "closing_dip"))
        object.__setattr__(self, "temperature", _to_float(self.temperature, "temperature"))
        object.__setattr__(self, "water_level", _to_float(self.water_level, "water_level"))
        object.__setattr__(self, "density", _to_float(self.density, "density"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tankId": self.tank_id,
            "tankName": self.tank_name,
            "productId": self.product_id,
            "capacity": self.capacity,
            "openingVolume": self.opening_volume,
            "openingDip": self.opening_dip,
            "closingVolume": self.closing_volume,
            "closingDip": self.closing_dip,
            "temperature": self.temperature,
            "waterLevel": self.water_level,
            "density": self.density,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TankDipEntry":
        return cls(
            tank_id=data.get("tankId"),
            product_id=data.get("productId") or "",
            capacity=data.get("capacity", 0.0),
            opening_volume=data.get("openingVolume", 0.0),
            opening_dip=data.get("openingDip", 0.0),
            closing_volume=data.get("closingVolume"),
            closing_dip=data.get("closingDip"),
            temperature=data.get("temperature", 25.0),
            water_level=data.get("waterLevel", 0.0),
            density=data.get("density", 0.85),
            tank_name=data.get("tankName") or "",
        )


@dataclass(frozen=True)
class DebtEntry:
    """Fuel issued on credit to a named debtor."""

    debtor_id: str
    debtor_name: str
    amount: float
    reference: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "debtor_id", _require_id(self.debtor_id, "debtor_id"))
        object.__setattr__(self, "debtor_name", str(self.debtor_name or "").strip())
        object.__setattr__(self, "amount", _to_float(self.amount, "amount"))

    @property
    def display_name(self) -> str:
        return self.debtor_name or f"Debtor {self.debtor_id[:8]}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "debtorId": self.debtor_id,
            "debtorName": self.debtor_name,
            "amount": self.amount,
            "reference": self.reference,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DebtEntry":
        return cls(
            debtor_id=data.get("debtorId"),
            debtor_name=data.get("debtorName") or "",
            amount=data.get("amount", 0.0),
            reference=data.get("reference") or "",
        )


def _card_amounts(value: Optional[Mapping[str, Any]]) -> Dict[str, float]:
    if value is not None and not isinstance(value, Mapping):
        raise ValueError(f"card_amounts must be a mapping, got {type(value).__name__}")
    return {str(k): _to_float(v, f"card_amounts[{k}]") for k, v in (value or {}).items()}


def payment_total(
    cash: float,
    mobile_money: float,
    card: float,
    debt: float,
    other: float,
    receipts: float,
    expenses: float,
) -> float:
    """cash + mobile + card + debt + other + receipts - expenses."""
    return cash + mobile_money + card + debt + other + receipts - expenses


@dataclass(frozen=True)
class IslandCollection:
    """Cashier collections for one island and its attendants."""

    island_id: str
    island_name: str = ""
    attendant_ids: Tuple[str, ...] = ()
    cash_amount: float = 0.0
    mobile_money_amount: float = 0.0
    card_amounts: Dict[str, float] = field(default_factory=dict)  # scheme -> amount, e.g. visa/mastercard
    debt_amount: float = 0.0
    debts: Tuple[DebtEntry, ...] = ()
    other_amount: float = 0.0
    receipts: float = 0.0
    expenses: float = 0.0
    recorded: bool = False  # True once the cashier has entered this island

    def __post_init__(self) -> None:
        object.__setattr__(self, "island_id", _require_id(self.island_id, "island_id"))
        object.__setattr__(self, "attendant_ids", tuple(str(a) for a in self.attendant_ids))
        object.__setattr__(self, "card_amounts", _card_amounts(self.card_amounts))
        for name in (
            "cash_amount",
            "mobile_money_amount",
            "debt_amount",
            "other_amount",
            "receipts",
            "expenses",
        ):
            object.__setattr__(self, name, _to_float(getattr(self, name), name))
        object.__setattr__(
            self,
            "debts",
            tuple(d if isinstance(d, DebtEntry) else DebtEntry.from_dict(d) for d in self.debts),
        )

    @property
    def card_amount(self) -> float:
        return sum(self.card_amounts.values())

    @property
    def debt_breakdown_total(self) -> float:
        return sum(d.amount for d in self.debts)

    @property
    def total_collected(self) -> float:
        return payment_total(
            self.cash_amount,
            self.mobile_money_amount,
            self.card_amount,
            self.debt_amount,
            self.other_amount,
            self.receipts,
            self.expenses,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "islandId": self.island_id,
            "islandName": self.island_name,
            "attendantIds": list(self.attendant_ids),
            "cashAmount": self.cash_amount,
            "mobileMoneyAmount": self.mobile_money_amount,
            "cardAmounts": dict(self.card_amounts),
            "debtAmount": self.debt_amount,
            "debts": [d.to_dict() for d in self.debts],
            "otherAmount": self.other_amount,
            "receipts": self.receipts,
            "expenses": self.expenses,
            "recorded": self.recorded,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IslandCollection":
        return cls(
            island_id=data.get("islandId"),
            island_name=data.get("islandName") or "",
            attendant_ids=tuple(data.get("attendantIds") or ()),
            cash_amount=data.get("cashAmount", 0.0),
            mobile_money_amount=data.get("mobileMoneyAmount", 0.0),
            card_amounts=data.get("cardAmounts") or {},
            debt_amount=data.get("debtAmount", 0.0),
            debts=tuple(DebtEntry.from_dict(d) for d in data.get("debts") or ()),
            other_amount=data.get("otherAmount", 0.0),
            receipts=data.get("receipts", 0.0),
            expenses=data.get("expenses", 0.0),
            recorded=bool(data.get("recorded", False)),
        )


@dataclass(frozen=True)
class StationCollection:
    """Station-wide collection totals entered independently of the islands."""

    cash_amount: float = 0.0
    mobile_money_amount: float = 0.0
    card_amounts: Dict[str, float] = field(default_factory=dict)
    debt_amount: float = 0.0
    other_amount: float = 0.0
    receipts: float = 0.0
    expenses: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "card_amounts", _card_amounts(self.card_amounts))
        for name in (
            "cash_amount",
            "mobile_money_amount",
            "debt_amount",
            "other_amount",
            "receipts",
            "expenses",
        ):
            object.__setattr__(self, name, _to_float(getattr(self, name), name))

    @property
    def card_amount(self) -> float:
        return sum(self.card_amounts.values())

    @property
    def total_collected(self) -> float:
        return payment_total(
            self.cash_amount,
            self.mobile_money_amount,
            self.card_amount,
            self.debt_amount,
            self.other_amount,
            self.receipts,
            self.expenses,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cashAmount": self.cash_amount,
            "mobileMoneyAmount": self.mobile_money_amount,
            "cardAmounts": dict(self.card_amounts),
            "debtAmount": self.debt_amount,
            "otherAmount": self.other_amount,
            "receipts": self.receipts,
            "expenses": self.expenses,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StationCollection":
        return cls(
            cash_amount=data.get("cashAmount", 0.0),
            mobile_money_amount=data.get("mobileMoneyAmount", 0.0),
            card_amounts=data.get("cardAmounts") or {},
            debt_amount=data.get("debtAmount", 0.0),
            other_amount=data.get("otherAmount", 0.0),
            receipts=data.get("receipts", 0.0),
            expenses=data.get("expenses", 0.0),
        )


@dataclass(frozen=True)
class NonFuelSale:
    """Shop/lubricant sale recorded during the optional non-fuel step."""

    item_id: str
    item_name: str
    quantity: float
    unit_price: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "item_id", _require_id(self.item_id, "item_id"))
        quantity = _to_float(self.quantity, "quantity")
        if quantity <= 0:
            raise ValueError(f"quantity must be greater than 0, got {quantity}")
        object.__setattr__(self, "quantity", quantity)
        object.__setattr__(self, "unit_price", _non_negative(self.unit_price, "unit_price"))

    @property
    def total(self) -> float:
        return self.quantity * self.unit_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "itemName": self.item_name,
            "quantity": self.quantity,
            "unitPrice": self.unit_price,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NonFuelSale":
        return cls(
            item_id=data.get("itemId"),
            item_name=data.get("itemName") or "",
            quantity=data.get("quantity", 0.0),
            unit_price=data.get("unitPrice", 0.0),
        )


@dataclass
class PumpOpeningReading:
    """Opening meters for one pump as supplied by the open shift."""

    pump_id: str
    electric: Optional[float] = None
    manual: Optional[float] = None
    cash: Optional[float] = None

    @property
    def complete(self) -> bool:
        return None not in (self.electric, self.manual, self.cash)


@dataclass
class TankOpeningReading:
    """Opening volume/dip for one tank as supplied by the open shift."""

    tank_id: str
    product_id: str = ""
    capacity: float = 0.0
    volume: Optional[float] = None
    dip: Optional[float] = None
    tank_name: str = ""

    @property
    def complete(self) -> bool:
        return self.volume is not None and self.dip is not None


@dataclass
class IslandAssignment:
    island_id: str
    island_name: str = ""
    attendant_ids: List[str] = field(default_factory=list)


@dataclass
class OpenShift:
    """Open-shift snapshot returned by the shift data source."""

    station_id: str
    shift_id: str
    started_at: Optional[datetime] = None
    pump_readings: List[PumpOpeningReading] = field(default_factory=list)
    tank_readings: List[TankOpeningReading] = field(default_factory=list)
    island_assignments: List[IslandAssignment] = field(default_factory=list)
    previous_wallet_balance: float = 0.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OpenShift":
        started_raw = data.get("startTime")
        started_at = None
        if started_raw:
            started_at = datetime.fromisoformat(str(started_raw).replace("Z", "+00:00"))
        return cls(
            station_id=str(data.get("stationId") or ""),
            shift_id=str(data.get("shiftId") or data.get("id") or ""),
            started_at=started_at,
            pump_readings=[
                PumpOpeningReading(
                    pump_id=str(r.get("pumpId")),
                    electric=_opt_float(r.get("electricMeter"), "electricMeter"),
                    manual=_opt_float(r.get("manualMeter"), "manualMeter"),
                    cash=_opt_float(r.get("cashMeter"), "cashMeter"),
                )
                for r in data.get("pumpReadings") or []
            ],
            tank_readings=[
                TankOpeningReading(
                    tank_id=str(r.get("tankId")),
                    product_id=str(r.get("productId") or ""),
                    capacity=_to_float(r.get("capacity") or 0.0, "capacity"),
                    volume=_opt_float(r.get("volume"), "volume"),
                    dip=_opt_float(r.get("dipValue"), "dipValue"),
                    tank_name=str(r.get("tankName") or ""),
                )
                for r in data.get("tankReadings") or []
            ],
            island_assignments=[
                IslandAssignment(
                    island_id=str(a.get("islandId")),
                    island_name=str(a.get("islandName") or ""),
                    attendant_ids=[str(x) for x in a.get("attendantIds") or []],
                )
                for a in data.get("islandAttendantAssignments") or []
            ],
            previous_wallet_balance=_to_float(data.get("walletBalance") or 0.0, "walletBalance"),
        )


@dataclass
class PumpDetails:
    """Per-pump product, price and tank lookup from the topology source."""

    pump_id: str
    product_id: str = ""
    unit_price: float = 0.0
    tank_id: Optional[str] = None
    pump_name: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PumpDetails":
        return cls(
            pump_id=str(data.get("pumpId")),
            product_id=str(data.get("productId") or ""),
            unit_price=_to_float(data.get("unitPrice") or 0.0, "unitPrice"),
            tank_id=data.get("tankId"),
            pump_name=str(data.get("pumpName") or ""),
        )
