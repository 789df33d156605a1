"""
Shift closing for fuel stations.

Derives pump dispense from meter readings, reconciles tank dips and cashier
collections against expected sales, keeps in-progress closings as drafts, and
submits the closed shift.
"""

from station_ops.shift_closing.models import (
    AnomalyCode,
    ClosingStep,
    CollectionStatus,
    DebtEntry,
    IslandCollection,
    MeterType,
    NonFuelSale,
    PumpMeterEntry,
    StationCollection,
    TankDipEntry,
    TankStatus,
)
from station_ops.shift_closing.exceptions import (
    FieldIssue,
    PersistenceFailure,
    SessionBusyError,
    SessionClosedError,
    ShiftClosingError,
    StepValidationError,
    SubmissionFailure,
)
from station_ops.shift_closing.session import ClosingSession

__all__ = [
    "AnomalyCode",
    "ClosingStep",
    "CollectionStatus",
    "DebtEntry",
    "IslandCollection",
    "MeterType",
    "NonFuelSale",
    "PumpMeterEntry",
    "StationCollection",
    "TankDipEntry",
    "TankStatus",
    "FieldIssue",
    "PersistenceFailure",
    "SessionBusyError",
    "SessionClosedError",
    "ShiftClosingError",
    "StepValidationError",
    "SubmissionFailure",
    "ClosingSession",
]
