"""
Shift-closing workflow as an explicit state machine.

Steps run in a fixed order (validation, pump readings, tank dips, collections,
non-fuel, review). Moving forward is gated by the current step's blocking
issues; moving back never drops entered values. Only `open` and `submit`
perform I/O. Every material change is autosaved to the draft store, and a
failed autosave only degrades the session, it never interrupts it.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from station_ops.shift_closing.collection_reconciler import (
    expected_sales_by_island,
    reconcile_island,
    reconcile_station,
)
from station_ops.shift_closing.config import ShiftClosingConfig
from station_ops.shift_closing.draft_store import (
    DraftAutosaver,
    DraftSnapshot,
    DraftStore,
    draft_key,
    station_prefix,
)
from station_ops.shift_closing.exceptions import (
    SEVERITY_WARNING,
    FieldIssue,
    PersistenceFailure,
    SessionBusyError,
    SessionClosedError,
    ShiftClosingError,
    StepValidationError,
    SubmissionFailure,
)
from station_ops.shift_closing.meter_math import (
    derive_all,
    derive_from_meter_type,
    liters_dispensed,
    sales_value,
)
from station_ops.shift_closing.models import (
    OPTIONAL_STEPS,
    STEP_ORDER,
    ClosingStep,
    CollectionStatus,
    DebtEntry,
    IslandCollection,
    MeterType,
    NonFuelSale,
    OpenShift,
    PumpDetails,
    PumpMeterEntry,
    StationCollection,
    TankDipEntry,
    TankStatus,
)
from station_ops.shift_closing.report import Report, build_report
from station_ops.shift_closing.services import (
    ShiftDataSource,
    ShiftSubmissionApi,
    TopologySource,
)
from station_ops.shift_closing.tank_reconciler import reconcile_tank, reconcile_tank_dispense

logger = logging.getLogger(__name__)

_ISLAND_AMOUNT_FIELDS = (
    "cash_amount",
    "mobile_money_amount",
    "debt_amount",
    "other_amount",
    "receipts",
    "expenses",
)
_ISLAND_EDITABLE_FIELDS = set(_ISLAND_AMOUNT_FIELDS) | {"card_amounts", "debts"}
_DEBT_MISMATCH_TOLERANCE = 0.01
_UNREADABLE = (ValueError, TypeError, KeyError, AttributeError)


def _label(kind: str, entity_id: str, name: str) -> str:
    return name or f"{kind} {entity_id}"


class StepState:
    """Completion state of one step, as shown on the step tabs."""

    def __init__(self, step: ClosingStep, required: bool, issues: List[FieldIssue]):
        self.step = step
        self.required = required
        self.issues = issues

    @property
    def complete(self) -> bool:
        return not any(i.blocking for i in self.issues)

    def __repr__(self) -> str:
        return f"StepState({self.step.value}, required={self.required}, complete={self.complete})"


class ClosingSession:
    """Working data and step transitions for closing one shift at one station."""

    def __init__(
        self,
        station_id: str,
        shift_id: str,
        *,
        pumps: Iterable[PumpMeterEntry],
        tanks: Iterable[TankDipEntry] = (),
        islands: Iterable[IslandCollection] = (),
        island_pump_mapping: Optional[Mapping[str, Sequence[str]]] = None,
        draft_store: Optional[DraftStore] = None,
        config: Optional[ShiftClosingConfig] = None,
        clock=time.time,
        started_at: Optional[datetime] = None,
        previous_wallet_balance: float = 0.0,
        missing_pump_openings: Iterable[str] = (),
        missing_tank_openings: Iterable[str] = (),
        selected_meter_type: MeterType = MeterType.ELECTRIC,
        autosave: bool = True,
    ):
        self.station_id = str(station_id)
        self.shift_id = str(shift_id)
        self.config = config or ShiftClosingConfig()
        self.draft_store = draft_store
        self.clock = clock
        self.started_at = started_at
        self.previous_wallet_balance = float(previous_wallet_balance or 0.0)
        self.island_pump_mapping: Dict[str, List[str]] = {
            str(k): [str(p) for p in v] for k, v in (island_pump_mapping or {}).items()
        }
        self.selected_meter_type = MeterType(selected_meter_type)
        self.current_step = ClosingStep.VALIDATION
        self.station_collection: Optional[StationCollection] = None
        self.notes = ""
        self.has_issues = False
        self.autosave_enabled = autosave
        self.autosave_degraded = False
        self.closed_result: Optional[Dict[str, Any]] = None

        self._pumps: "OrderedDict[str, PumpMeterEntry]" = OrderedDict((p.pump_id, p) for p in pumps)
        self._tanks: "OrderedDict[str, TankDipEntry]" = OrderedDict((t.tank_id, t) for t in tanks)
        self._islands: "OrderedDict[str, IslandCollection]" = OrderedDict((i.island_id, i) for i in islands)
        self._non_fuel: List[NonFuelSale] = []
        self._missing_pump_openings: Set[str] = set(missing_pump_openings)
        self._missing_tank_openings: Set[str] = set(missing_tank_openings)
        self._busy = False
        self._autosaver: Optional[DraftAutosaver] = None
        self._draft_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    async def open(
        cls,
        station_id: str,
        shift_id: str,
        shift_source: ShiftDataSource,
        topology_source: TopologySource,
        draft_store: Optional[DraftStore] = None,
        config: Optional[ShiftClosingConfig] = None,
        resume: bool = True,
        clock=time.time,
    ) -> "ClosingSession":
        """
        Start a session: sweep stale drafts, pull the open shift and topology once,
        then restore a valid draft for this shift when `resume` is set.
        """
        station_id = str(station_id)
        shift_id = str(shift_id)
        if draft_store is not None:
            try:
                draft_store.sweep(station_prefix(station_id), shift_id)
            except PersistenceFailure as exc:
                logger.warning("Draft sweep failed for station %s: %s", station_id, exc)

        open_shift = await shift_source.get_open_shift(station_id)
        if not open_shift.station_id:
            open_shift.station_id = station_id
        if open_shift.shift_id and open_shift.shift_id != shift_id:
            raise ShiftClosingError(
                f"Station {station_id} has open shift {open_shift.shift_id}, not {shift_id}"
            )
        mapping = await topology_source.get_island_pump_mapping(station_id)
        details = await topology_source.get_pump_details(station_id)

        session = cls.from_open_shift(
            open_shift,
            shift_id=shift_id,
            island_pump_mapping=mapping,
            pump_details=details,
            draft_store=draft_store,
            config=config,
            clock=clock,
        )
        resumed = session.resume_from_draft() if resume else False
        logger.info(
            "Opened closing session station=%s shift=%s pumps=%s tanks=%s islands=%s resumed=%s",
            station_id,
            shift_id,
            len(session._pumps),
            len(session._tanks),
            len(session._islands),
            resumed,
        )
        return session

    @classmethod
    def from_open_shift(
        cls,
        open_shift: OpenShift,
        *,
        shift_id: str,
        island_pump_mapping: Mapping[str, Sequence[str]],
        pump_details: Mapping[str, PumpDetails],
        draft_store: Optional[DraftStore] = None,
        config: Optional[ShiftClosingConfig] = None,
        clock=time.time,
    ) -> "ClosingSession":
        pumps: List[PumpMeterEntry] = []
        missing_pumps: List[str] = []
        for reading in open_shift.pump_readings:
            detail = pump_details.get(reading.pump_id) or PumpDetails(pump_id=reading.pump_id)
            if not reading.complete:
                missing_pumps.append(reading.pump_id)
            pumps.append(
                PumpMeterEntry(
                    pump_id=reading.pump_id,
                    product_id=detail.product_id,
                    unit_price=detail.unit_price,
                    opening_electric=reading.electric or 0.0,
                    opening_manual=reading.manual or 0.0,
                    opening_cash=reading.cash or 0.0,
                    pump_name=detail.pump_name,
                    tank_id=detail.tank_id,
                )
            )

        tanks: List[TankDipEntry] = []
        missing_tanks: List[str] = []
        for reading in open_shift.tank_readings:
            if not reading.complete:
                missing_tanks.append(reading.tank_id)
            tanks.append(
                TankDipEntry(
                    tank_id=reading.tank_id,
                    product_id=reading.product_id,
                    capacity=reading.capacity,
                    opening_volume=reading.volume or 0.0,
                    opening_dip=reading.dip or 0.0,
                    tank_name=reading.tank_name,
                )
            )

        islands: "OrderedDict[str, IslandCollection]" = OrderedDict()
        for assignment in open_shift.island_assignments:
            islands[assignment.island_id] = IslandCollection(
                island_id=assignment.island_id,
                island_name=assignment.island_name,
                attendant_ids=tuple(assignment.attendant_ids),
            )
        for island_id in island_pump_mapping:
            if island_id not in islands:
                islands[island_id] = IslandCollection(island_id=island_id)

        return cls(
            open_shift.station_id,
            shift_id,
            pumps=pumps,
            tanks=tanks,
            islands=islands.values(),
            island_pump_mapping=island_pump_mapping,
            draft_store=draft_store,
            config=config,
            clock=clock,
            started_at=open_shift.started_at,
            previous_wallet_balance=open_shift.previous_wallet_balance,
            missing_pump_openings=missing_pumps,
            missing_tank_openings=missing_tanks,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def pumps(self) -> List[PumpMeterEntry]:
        return list(self._pumps.values())

    @property
    def tanks(self) -> List[TankDipEntry]:
        return list(self._tanks.values())

    @property
    def islands(self) -> List[IslandCollection]:
        return list(self._islands.values())

    @property
    def non_fuel_sales(self) -> List[NonFuelSale]:
        return list(self._non_fuel)

    @property
    def draft_key(self) -> str:
        return draft_key(self.station_id, self.shift_id)

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def is_closed(self) -> bool:
        return self.closed_result is not None

    def pump(self, pump_id: str) -> PumpMeterEntry:
        try:
            return self._pumps[str(pump_id)]
        except KeyError:
            raise KeyError(f"Unknown pump {pump_id} for shift {self.shift_id}") from None

    def tank(self, tank_id: str) -> TankDipEntry:
        try:
            return self._tanks[str(tank_id)]
        except KeyError:
            raise KeyError(f"Unknown tank {tank_id} for shift {self.shift_id}") from None

    def island(self, island_id: str) -> IslandCollection:
        try:
            return self._islands[str(island_id)]
        except KeyError:
            raise KeyError(f"Unknown island {island_id} for shift {self.shift_id}") from None

    # ------------------------------------------------------------------
    # Edits (commit points)
    # ------------------------------------------------------------------

    def _ensure_editable(self) -> None:
        if self.is_closed:
            raise SessionClosedError(f"Shift {self.shift_id} is already closed")

    def _changed(self) -> None:
        if self.autosave_enabled:
            self.save_draft()

    def select_meter_type(self, meter_type: MeterType) -> None:
        """Switch the source-of-truth channel and re-derive every pump from it."""
        self._ensure_editable()
        meter = MeterType(meter_type)
        if meter == self.selected_meter_type:
            return
        self.selected_meter_type = meter
        self._pumps = OrderedDict((p.pump_id, p) for p in derive_all(self._pumps.values(), meter))
        logger.info("Shift %s: meter type set to %s", self.shift_id, meter.value)
        self._changed()

    def enter_pump_closing(self, pump_id: str, value: Optional[float]) -> PumpMeterEntry:
        """Commit a closing value on the selected channel and back-fill the other two."""
        self._ensure_editable()
        entry = self.pump(pump_id)
        derived = derive_from_meter_type(entry, self.selected_meter_type, value)
        self._pumps[entry.pump_id] = derived
        self._changed()
        return derived

    def enter_tank_reading(
        self,
        tank_id: str,
        *,
        closing_volume: Optional[float] = None,
        closing_dip: Optional[float] = None,
        temperature: Optional[float] = None,
        water_level: Optional[float] = None,
        density: Optional[float] = None,
    ) -> TankDipEntry:
        """Update the given closing fields of a tank; fields left as None are kept."""
        self._ensure_editable()
        entry = self.tank(tank_id)
        changes = {
            name: value
            for name, value in (
                ("closing_volume", closing_volume),
                ("closing_dip", closing_dip),
                ("temperature", temperature),
                ("water_level", water_level),
                ("density", density),
            )
            if value is not None
        }
        updated = replace(entry, **changes)
        self._tanks[entry.tank_id] = updated
        self._changed()
        return updated

    def update_island_collection(self, island_id: str, **changes: Any) -> IslandCollection:
        """Set payment fields of an island (cash_amount, card_amounts, ...); marks it recorded."""
        self._ensure_editable()
        unknown = set(changes) - _ISLAND_EDITABLE_FIELDS
        if unknown:
            raise TypeError(f"Unknown island collection field(s): {', '.join(sorted(unknown))}")
        entry = self.island(island_id)
        if "debts" in changes:
            changes["debts"] = tuple(changes["debts"] or ())
        updated = replace(entry, recorded=True, **changes)
        self._islands[entry.island_id] = updated
        self._changed()
        return updated

    def add_debt(
        self,
        island_id: str,
        debtor_id: str,
        debtor_name: str,
        amount: float,
        reference: str = "",
    ) -> IslandCollection:
        """Append a debtor line; the island's debt amount becomes the breakdown total."""
        self._ensure_editable()
        entry = self.island(island_id)
        debts = entry.debts + (DebtEntry(debtor_id, debtor_name, amount, reference),)
        updated = replace(
            entry,
            debts=debts,
            debt_amount=sum(d.amount for d in debts),
            recorded=True,
        )
        self._islands[entry.island_id] = updated
        self._changed()
        return updated

    def set_station_collection(self, collection: Optional[StationCollection]) -> None:
        self._ensure_editable()
        self.station_collection = collection
        self._changed()

    def add_non_fuel_sale(self, sale: NonFuelSale) -> None:
        self._ensure_editable()
        self._non_fuel.append(sale)
        self._changed()

    def remove_non_fuel_sale(self, item_id: str) -> bool:
        self._ensure_editable()
        before = len(self._non_fuel)
        self._non_fuel = [s for s in self._non_fuel if s.item_id != item_id]
        removed = len(self._non_fuel) != before
        if removed:
            self._changed()
        return removed

    def set_notes(self, notes: str) -> None:
        self._ensure_editable()
        self.notes = notes or ""
        self._changed()

    def flag_issues(self, has_issues: bool = True) -> None:
        self._ensure_editable()
        self.has_issues = bool(has_issues)
        self._changed()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def _validate_validation(self) -> List[FieldIssue]:
        step = ClosingStep.VALIDATION
        issues: List[FieldIssue] = []
        if not self._pumps:
            issues.append(FieldIssue(step, self.shift_id, "pumps", "No pumps found for the open shift"))
        for pump_id in sorted(self._missing_pump_openings):
            issues.append(
                FieldIssue(step, pump_id, "opening", f"Pump {pump_id}: opening meter readings are missing")
            )
        for tank_id in sorted(self._missing_tank_openings):
            issues.append(
                FieldIssue(step, tank_id, "opening", f"Tank {tank_id}: opening volume/dip is missing")
            )
        for pump in self._pumps.values():
            if pump.unit_price <= 0:
                issues.append(
                    FieldIssue(
                        step,
                        pump.pump_id,
                        "unit_price",
                        f"Pump {pump.pump_id}: unit price is 0, sales will be incomplete",
                        SEVERITY_WARNING,
                    )
                )
        for tank in self._tanks.values():
            if tank.capacity > 0 and tank.opening_volume > tank.capacity:
                issues.append(
                    FieldIssue(
                        step,
                        tank.tank_id,
                        "opening_volume",
                        f"Tank {tank.tank_id}: opening volume {tank.opening_volume:g} exceeds capacity {tank.capacity:g}",
                        SEVERITY_WARNING,
                    )
                )
        for island in self._islands.values():
            if not island.attendant_ids:
                issues.append(
                    FieldIssue(
                        step,
                        island.island_id,
                        "attendant_ids",
                        f"{_label('Island', island.island_id, island.island_name)}: no attendants assigned",
                        SEVERITY_WARNING,
                    )
                )
        if self.started_at is not None:
            started = self.started_at
            if started.tzinfo is None:
                started = started.replace(tzinfo=timezone.utc)
            hours_open = (self._now() - started).total_seconds() / 3600.0
            if hours_open > self.config.max_shift_hours:
                issues.append(
                    FieldIssue(
                        step,
                        self.shift_id,
                        "started_at",
                        f"Shift duration exceeds {self.config.max_shift_hours} hours ({hours_open:.1f}h)",
                        SEVERITY_WARNING,
                    )
                )
        return issues

    def _validate_pump_readings(self) -> List[FieldIssue]:
        step = ClosingStep.PUMP_READINGS
        meter = self.selected_meter_type
        issues: List[FieldIssue] = []
        for pump in self._pumps.values():
            closing = pump.closing(meter)
            label = _label("Pump", pump.pump_id, pump.pump_name)
            if closing is None:
                issues.append(
                    FieldIssue(step, pump.pump_id, f"closing_{meter.value}", f"{label}: closing {meter.value} meter is required")
                )
                continue
            if closing < 0:
                issues.append(
                    FieldIssue(step, pump.pump_id, f"closing_{meter.value}", f"{label}: {meter.value} meter cannot be negative")
                )
            for anomaly in pump.anomalies:
                issues.append(
                    FieldIssue(step, pump.pump_id, f"closing_{meter.value}", f"{label}: {anomaly.value}", SEVERITY_WARNING)
                )
        return issues

    def _validate_tank_dips(self) -> List[FieldIssue]:
        step = ClosingStep.TANK_DIPS
        issues: List[FieldIssue] = []
        for tank in self._tanks.values():
            label = _label("Tank", tank.tank_id, tank.tank_name)
            if tank.closing_volume is None:
                issues.append(FieldIssue(step, tank.tank_id, "closing_volume", f"{label}: closing volume is required"))
            elif tank.closing_volume < 0:
                issues.append(FieldIssue(step, tank.tank_id, "closing_volume", f"{label}: volume cannot be negative"))
            elif tank.capacity > 0 and tank.closing_volume > tank.capacity:
                issues.append(
                    FieldIssue(
                        step,
                        tank.tank_id,
                        "closing_volume",
                        f"{label}: closing volume {tank.closing_volume:g} exceeds capacity {tank.capacity:g}",
                    )
                )
            if tank.closing_dip is None:
                issues.append(FieldIssue(step, tank.tank_id, "closing_dip", f"{label}: closing dip is required"))
            elif tank.closing_dip < 0:
                issues.append(FieldIssue(step, tank.tank_id, "closing_dip", f"{label}: dip value cannot be negative"))
            if reconcile_tank(tank).status == TankStatus.CHECK_REQUIRED:
                issues.append(
                    FieldIssue(step, tank.tank_id, "closing_volume", f"{label}: negative usage, check required", SEVERITY_WARNING)
                )
        for variance in reconcile_tank_dispense(
            self._tanks.values(), self._pumps.values(), self.selected_meter_type, self.config
        ):
            if variance.flagged:
                issues.append(
                    FieldIssue(
                        step,
                        variance.tank_id,
                        "usage",
                        f"Tank {variance.tank_id}: usage {variance.usage:.2f}L vs dispensed {variance.dispensed:.2f}L "
                        f"(variance {variance.variance:+.2f}L)",
                        SEVERITY_WARNING,
                    )
                )
        return issues

    def _validate_collections(self) -> List[FieldIssue]:
        step = ClosingStep.COLLECTIONS
        issues: List[FieldIssue] = []
        expected = expected_sales_by_island(
            self._pumps.values(), self.island_pump_mapping, self.selected_meter_type
        )
        for island in self._islands.values():
            label = _label("Island", island.island_id, island.island_name)
            if expected.pumps_by_island.get(island.island_id) and not island.recorded:
                issues.append(
                    FieldIssue(step, island.island_id, "collections", f"{label}: collections have not been entered")
                )
            for name in _ISLAND_AMOUNT_FIELDS:
                if getattr(island, name) < 0:
                    issues.append(FieldIssue(step, island.island_id, name, f"{label}: {name} cannot be negative"))
            for scheme, amount in island.card_amounts.items():
                if amount < 0:
                    issues.append(
                        FieldIssue(step, island.island_id, f"card_amounts.{scheme}", f"{label}: {scheme} amount cannot be negative")
                    )
            for debt in island.debts:
                if debt.amount < 0:
                    issues.append(
                        FieldIssue(step, island.island_id, "debts", f"{label}: debt for {debt.display_name} cannot be negative")
                    )
            if island.debts and abs(island.debt_breakdown_total - island.debt_amount) > _DEBT_MISMATCH_TOLERANCE:
                issues.append(
                    FieldIssue(
                        step,
                        island.island_id,
                        "debt_amount",
                        f"{label}: debtor breakdown {island.debt_breakdown_total:.2f} "
                        f"does not match debt amount {island.debt_amount:.2f}",
                    )
                )
            if island.recorded:
                rec = reconcile_island(
                    island, expected.by_island.get(island.island_id, 0.0), self.config.variance_tolerance_pct
                )
                if rec.status == CollectionStatus.REVIEW:
                    kind = "overage" if rec.is_overage else "shortfall"
                    issues.append(
                        FieldIssue(
                            step,
                            island.island_id,
                            "variance",
                            f"{label}: {kind} of {abs(rec.variance):.2f} ({rec.variance_percentage:+.2f}%)",
                            SEVERITY_WARNING,
                        )
                    )
        for pump_id, sales in expected.unassigned.items():
            if sales > 0:
                issues.append(
                    FieldIssue(step, pump_id, "island", f"Pump {pump_id}: sales {sales:.2f} not attributed to any island", SEVERITY_WARNING)
                )
        cross_check = reconcile_station(
            self.station_collection,
            self.islands,
            expected_total=expected.total_assigned,
            tolerance_pct=self.config.variance_tolerance_pct,
            cross_check_tolerance=self.config.station_cross_check_tolerance,
        )
        if cross_check is not None and not cross_check.consistent:
            issues.append(
                FieldIssue(
                    step,
                    self.station_id,
                    "station_collection",
                    f"Station count {cross_check.station_total:.2f} differs from islands "
                    f"{cross_check.islands_total:.2f} by {cross_check.difference:+.2f}",
                    SEVERITY_WARNING,
                )
            )
        return issues

    def validate_step(self, step: Optional[ClosingStep] = None) -> List[FieldIssue]:
        """Blocking and non-blocking issues for `step` (default: the current step)."""
        step = ClosingStep(step) if step is not None else self.current_step
        validators = {
            ClosingStep.VALIDATION: self._validate_validation,
            ClosingStep.PUMP_READINGS: self._validate_pump_readings,
            ClosingStep.TANK_DIPS: self._validate_tank_dips,
            ClosingStep.COLLECTIONS: self._validate_collections,
        }
        validator = validators.get(step)
        return validator() if validator else []

    def is_step_complete(self, step: ClosingStep) -> bool:
        return not any(i.blocking for i in self.validate_step(step))

    def step_states(self) -> List[StepState]:
        return [
            StepState(step, step not in OPTIONAL_STEPS, self.validate_step(step))
            for step in STEP_ORDER
        ]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _step_index(self, step: ClosingStep) -> int:
        return STEP_ORDER.index(step)

    def _move_to(self, step: ClosingStep) -> ClosingStep:
        previous = self.current_step
        self.current_step = step
        logger.info("Shift %s: step %s -> %s", self.shift_id, previous.value, step.value)
        self._changed()
        return step

    def advance(self) -> ClosingStep:
        """Move to the next step when the current one has no blocking issues."""
        self._ensure_editable()
        if self._busy:
            raise SessionBusyError("Wait for the pending operation before moving forward")
        step = self.current_step
        if step == ClosingStep.REVIEW:
            raise ShiftClosingError("Review is the last step; submit to close the shift")
        issues = self.validate_step(step)
        if any(i.blocking for i in issues):
            raise StepValidationError(step, issues)
        return self._move_to(STEP_ORDER[self._step_index(step) + 1])

    def skip(self) -> ClosingStep:
        """Move past an optional step without validating it."""
        self._ensure_editable()
        if self._busy:
            raise SessionBusyError("Wait for the pending operation before moving forward")
        if self.current_step not in OPTIONAL_STEPS:
            raise ShiftClosingError(f"Step '{self.current_step.value}' is required and cannot be skipped")
        return self._move_to(STEP_ORDER[self._step_index(self.current_step) + 1])

    def back(self) -> ClosingStep:
        """Return to the previous step. Entered values are kept."""
        self._ensure_editable()
        index = self._step_index(self.current_step)
        if index == 0:
            return self.current_step
        return self._move_to(STEP_ORDER[index - 1])

    def go_to(self, step: ClosingStep) -> ClosingStep:
        """Jump back to an earlier step (forward jumps must go through `advance`)."""
        self._ensure_editable()
        step = ClosingStep(step)
        if self._step_index(step) > self._step_index(self.current_step):
            raise ShiftClosingError(f"Cannot jump forward to '{step.value}'; use advance()")
        if step == self.current_step:
            return step
        return self._move_to(step)

    # ------------------------------------------------------------------
    # Report, payload, submit
    # ------------------------------------------------------------------

    def build_report(self) -> Report:
        return build_report(self)

    def build_payload(self) -> Dict[str, Any]:
        meter = self.selected_meter_type
        expected = expected_sales_by_island(self._pumps.values(), self.island_pump_mapping, meter)
        pump_readings = [
            {
                "pumpId": p.pump_id,
                "electricMeter": p.closing_electric,
                "manualMeter": p.closing_manual,
                "cashMeter": p.closing_cash,
                "meterUsed": meter.value,
                "litersDispensed": round(liters_dispensed(p, meter), 3),
                "salesValue": round(sales_value(p, meter), 2),
                "unitPrice": p.unit_price,
            }
            for p in self._pumps.values()
        ]
        tank_readings = [
            {
                "tankId": t.tank_id,
                "dipValue": t.closing_dip,
                "volume": t.closing_volume,
                "temperature": t.temperature,
                "waterLevel": t.water_level,
                "density": t.density,
            }
            for t in self._tanks.values()
        ]
        island_collections = [
            {
                "islandId": i.island_id,
                "cashAmount": i.cash_amount,
                "mobileMoneyAmount": i.mobile_money_amount,
                "cardAmount": i.card_amount,
                "cardAmounts": dict(i.card_amounts),
                "debtAmount": i.debt_amount,
                "otherAmount": i.other_amount,
                "receipts": i.receipts,
                "expenses": i.expenses,
                "debts": [d.to_dict() for d in i.debts],
                "expectedAmount": round(expected.by_island.get(i.island_id, 0.0), 2),
            }
            for i in self._islands.values()
        ]
        station_collection: Dict[str, Any] = {}
        if self.station_collection is not None:
            station_collection = self.station_collection.to_dict()
            station_collection["cardAmount"] = self.station_collection.card_amount

        return {
            "shiftId": self.shift_id,
            "pumpReadings": pump_readings,
            "tankReadings": tank_readings,
            "islandCollections": island_collections,
            "stationCollection": station_collection,
            "reconciliationNotes": self.notes,
            "nonFuelSales": [s.to_dict() for s in self._non_fuel],
            "hasIssues": self.has_issues,
            "metadata": {
                "stationId": self.station_id,
                "meterType": meter.value,
                "totalPumps": len(pump_readings),
                "totalTanks": len(tank_readings),
                "totalIslands": len(island_collections),
                "generatedAt": self._now().isoformat(),
            },
        }

    def payload_summary(self) -> Dict[str, Any]:
        meter = self.selected_meter_type
        return {
            "pumps": len(self._pumps),
            "tanks": len(self._tanks),
            "islands": len(self._islands),
            "totalSales": sum(sales_value(p, meter) for p in self._pumps.values()),
            "totalCollections": sum(i.total_collected for i in self._islands.values()),
            "totalLiters": sum(liters_dispensed(p, meter) for p in self._pumps.values()),
        }

    def validate_all(self) -> List[FieldIssue]:
        issues: List[FieldIssue] = []
        for step in STEP_ORDER:
            if step in OPTIONAL_STEPS:
                continue
            issues.extend(self.validate_step(step))
        return issues

    async def submit(self, api: ShiftSubmissionApi) -> Dict[str, Any]:
        """
        Re-validate every required step and close the shift upstream.

        On success autosave stops, the draft is purged and the session becomes
        read-only. On failure a SubmissionFailure carries the upstream message
        and the session stays editable.
        """
        self._ensure_editable()
        if self._busy:
            raise SessionBusyError("A submission is already in progress")
        for step in STEP_ORDER:
            if step in OPTIONAL_STEPS:
                continue
            issues = self.validate_step(step)
            if any(i.blocking for i in issues):
                raise StepValidationError(step, issues)

        payload = self.build_payload()
        self._busy = True
        try:
            result = await api.close_shift(self.shift_id, payload)
        except Exception as exc:
            logger.exception("Closing shift %s failed", self.shift_id)
            self._busy = False
            self.save_draft()
            raise SubmissionFailure(str(exc) or exc.__class__.__name__, upstream=exc) from exc
        self._busy = False

        self.stop_autosave()
        with self._draft_lock:
            self.closed_result = dict(result or {})
            self.current_step = ClosingStep.REVIEW
            logger.info("Shift %s closed at station %s", self.shift_id, self.station_id)
            if self.draft_store is not None:
                try:
                    self.draft_store.invalidate(self.draft_key)
                except PersistenceFailure as exc:
                    logger.warning("Shift %s closed but draft %s could not be removed: %s", self.shift_id, self.draft_key, exc)
        return self.closed_result

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    def snapshot(self) -> DraftSnapshot:
        return DraftSnapshot(
            station_id=self.station_id,
            shift_id=self.shift_id,
            step=self.current_step.value,
            meter_type=self.selected_meter_type.value,
            pumps=[p.to_dict() for p in list(self._pumps.values())],
            tanks=[t.to_dict() for t in list(self._tanks.values())],
            islands=[i.to_dict() for i in list(self._islands.values())],
            station_collection=self.station_collection.to_dict() if self.station_collection else None,
            non_fuel=[s.to_dict() for s in list(self._non_fuel)],
            notes=self.notes,
            has_issues=self.has_issues,
            timestamp=int(round(self.clock() * 1000)),
        )

    def save_draft(self) -> bool:
        """Persist the current state. Never raises; a failure marks autosave as degraded."""
        if self.draft_store is None:
            return False
        with self._draft_lock:
            if self.is_closed:
                return False
            try:
                self.draft_store.save(self.draft_key, self.snapshot())
            except PersistenceFailure as exc:
                if not self.autosave_degraded:
                    logger.warning("Autosave degraded for %s: %s", self.draft_key, exc)
                self.autosave_degraded = True
                return False
            if self.autosave_degraded:
                logger.info("Autosave recovered for %s", self.draft_key)
            self.autosave_degraded = False
            return True

    def discard_draft(self) -> bool:
        if self.draft_store is None:
            return False
        return self.draft_store.invalidate(self.draft_key)

    def start_autosave(self) -> DraftAutosaver:
        """Save on a background interval until the shift is closed or `stop_autosave` is called."""
        self._ensure_editable()
        if self._autosaver is None:
            self._autosaver = DraftAutosaver(
                self.save_draft,
                interval_seconds=self.config.autosave_interval_seconds,
                job_id=f"autosave:{self.draft_key}",
            )
        self._autosaver.start()
        return self._autosaver

    def stop_autosave(self) -> None:
        if self._autosaver is not None:
            self._autosaver.stop()
            self._autosaver = None

    def resume_from_draft(self) -> bool:
        """Restore entered values from a valid draft for this shift. Returns True when restored."""
        if self.draft_store is None:
            return False
        try:
            snapshot = self.draft_store.load(self.draft_key, self.shift_id)
        except PersistenceFailure as exc:
            logger.warning("Could not read draft %s: %s", self.draft_key, exc)
            self.autosave_degraded = True
            return False
        if snapshot is None:
            return False
        self._apply_snapshot(snapshot)
        logger.info("Resumed draft %s at step %s", self.draft_key, self.current_step.value)
        return True

    def _apply_snapshot(self, snapshot: DraftSnapshot) -> None:
        unknown: List[str] = []

        if snapshot.meter_type:
            try:
                self.selected_meter_type = MeterType(snapshot.meter_type)
            except ValueError:
                logger.warning("Draft %s has unknown meter type %r", self.draft_key, snapshot.meter_type)

        for data in snapshot.pumps:
            try:
                saved = PumpMeterEntry.from_dict(data)
            except _UNREADABLE as exc:
                logger.warning("Skipping unreadable pump in draft %s: %s", self.draft_key, exc)
                continue
            current = self._pumps.get(saved.pump_id)
            if current is None:
                unknown.append(f"pump:{saved.pump_id}")
                continue
            # re-derive from the entered channel so back-filled values follow the current openings
            value = saved.closing(self.selected_meter_type)
            if value is not None:
                current = derive_from_meter_type(current, self.selected_meter_type, value)
            self._pumps[saved.pump_id] = current

        for data in snapshot.tanks:
            try:
                saved_tank = TankDipEntry.from_dict(data)
            except _UNREADABLE as exc:
                logger.warning("Skipping unreadable tank in draft %s: %s", self.draft_key, exc)
                continue
            current_tank = self._tanks.get(saved_tank.tank_id)
            if current_tank is None:
                unknown.append(f"tank:{saved_tank.tank_id}")
                continue
            self._tanks[saved_tank.tank_id] = replace(
                current_tank,
                closing_volume=saved_tank.closing_volume,
                closing_dip=saved_tank.closing_dip,
                temperature=saved_tank.temperature,
                water_level=saved_tank.water_level,
                density=saved_tank.density,
            )

        for data in snapshot.islands:
            try:
                saved_island = IslandCollection.from_dict(data)
            except _UNREADABLE as exc:
                logger.warning("Skipping unreadable island in draft %s: %s", self.draft_key, exc)
                continue
            current_island = self._islands.get(saved_island.island_id)
            if current_island is None:
                unknown.append(f"island:{saved_island.island_id}")
                continue
            self._islands[saved_island.island_id] = replace(
                current_island,
                cash_amount=saved_island.cash_amount,
                mobile_money_amount=saved_island.mobile_money_amount,
                card_amounts=dict(saved_island.card_amounts),
                debt_amount=saved_island.debt_amount,
                debts=saved_island.debts,
                other_amount=saved_island.other_amount,
                receipts=saved_island.receipts,
                expenses=saved_island.expenses,
                recorded=saved_island.recorded,
            )

        if snapshot.station_collection:
            try:
                self.station_collection = StationCollection.from_dict(snapshot.station_collection)
            except _UNREADABLE as exc:
                logger.warning("Skipping unreadable station collection in draft %s: %s", self.draft_key, exc)

        self._non_fuel = []
        for data in snapshot.non_fuel:
            try:
                self._non_fuel.append(NonFuelSale.from_dict(data))
            except _UNREADABLE as exc:
                logger.warning("Skipping unreadable non-fuel sale in draft %s: %s", self.draft_key, exc)

        self.notes = snapshot.notes
        self.has_issues = snapshot.has_issues
        try:
            self.current_step = ClosingStep(snapshot.step)
        except ValueError:
            self.current_step = ClosingStep.VALIDATION

        if unknown:
            logger.warning(
                "Draft %s references entries no longer in the shift; dropped: %s",
                self.draft_key,
                ", ".join(unknown),
            )
