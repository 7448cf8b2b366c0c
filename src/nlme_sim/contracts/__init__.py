"""Core contracts and shared types."""

from .errors import (
    NLMEError,
    ConfigError,
    ValidationError,
    ColumnMappingError,
    InvalidDosingScheduleError,
    CensoringInconsistencyError,
    ModelError,
    UnresolvedParameterError,
    SolverError,
    SimulationDivergedError,
)
from .types import (
    DoseEvent,
    ResetEvent,
    ObservationKind,
    ObservationRecord,
    RunStatus,
    Trajectory,
    IndividualResult,
)

__all__ = [
    "NLMEError",
    "ConfigError",
    "ValidationError",
    "ColumnMappingError",
    "InvalidDosingScheduleError",
    "CensoringInconsistencyError",
    "ModelError",
    "UnresolvedParameterError",
    "SolverError",
    "SimulationDivergedError",
    "DoseEvent",
    "ResetEvent",
    "ObservationKind",
    "ObservationRecord",
    "RunStatus",
    "Trajectory",
    "IndividualResult",
]
