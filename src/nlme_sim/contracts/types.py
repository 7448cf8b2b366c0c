"""Type definitions shared between the dosing, simulation and observation layers."""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple
import numpy as np


class ObservationKind(str, Enum):
    """Kinds of observed variables."""

    CONTINUOUS = "continuous"
    CATEGORICAL = "categorical"
    EVENT = "event"


class RunStatus(str, Enum):
    """Outcome of one individual/replicate simulation."""

    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class DoseEvent:
    """A single concrete dose after directive expansion."""

    time: float
    """Administration time"""

    amount: float
    """Dose amount"""

    target: str
    """Dose target (state or delay chain name)"""

    rate: Optional[float] = None
    """Zero-order input rate; None for a bolus"""

    duration: Optional[float] = None
    """Zero-order input duration; None for a bolus"""

    steady_state: bool = False
    """True if the system is at periodic steady state before this dose"""

    ii: Optional[float] = None
    """Inter-dose interval for steady-state / ADDL doses"""

    order: int = 0
    """Declaration order, used as a stable tie break"""

    @property
    def is_bolus(self) -> bool:
        return self.rate is None

    @property
    def end_time(self) -> float:
        return self.time if self.duration is None else self.time + self.duration


@dataclass(frozen=True)
class ResetEvent:
    """Force-reset of compartments to a value right after a record is processed."""

    time: float
    compartments: Optional[Tuple[str, ...]] = None
    """Compartments to reset; None resets every model state"""

    value: float = 0.0
    order: int = 0


@dataclass(frozen=True)
class ObservationRecord:
    """One simulated or predicted observation."""

    individual_id: Any
    time: float
    name: str
    kind: ObservationKind
    predicted: float
    """Individual prediction (probability of the drawn category for categorical)"""

    value: float
    """Value with residual error / sampled category / event indicator"""

    censored: bool = False
    replicate: int = 0

    def as_row(self) -> Dict[str, Any]:
        return {
            "ID": self.individual_id,
            "TIME": self.time,
            "NAME": self.name,
            "REPLICATE": self.replicate,
            "KIND": self.kind.value,
            "PRED": self.predicted,
            "DV": self.value,
            "CENSORED": self.censored,
        }


@dataclass(frozen=True)
class Trajectory:
    """Simulated outputs of one individual on the requested time grid."""

    t: np.ndarray
    """Output times"""

    values: Mapping[str, np.ndarray]
    """State and algebraic output values at each time in `t`"""

    event_times: Mapping[str, Tuple[float, ...]] = field(default_factory=dict)
    """Sampled event times per event variable"""

    metadata: Optional[Mapping[str, Any]] = None
    """Solver diagnostics and warnings"""

    def at(self, name: str, time: float) -> float:
        """Value of an output at a time that is part of the output grid."""
        idx = np.flatnonzero(np.isclose(self.t, time, rtol=0.0, atol=1e-12))
        if idx.size == 0:
            raise KeyError(f"time {time} is not on the output grid")
        return float(self.values[name][idx[-1]])

    def snapshot(self, time: float) -> Dict[str, float]:
        """All outputs at a grid time."""
        idx = np.flatnonzero(np.isclose(self.t, time, rtol=0.0, atol=1e-12))
        if idx.size == 0:
            raise KeyError(f"time {time} is not on the output grid")
        return {name: float(values[idx[-1]]) for name, values in self.values.items()}


@dataclass(frozen=True)
class IndividualResult:
    """Result of one individual/replicate run inside a population pass."""

    individual_id: Any
    replicate: int
    status: RunStatus
    records: Tuple[ObservationRecord, ...] = ()
    trajectory: Optional[Trajectory] = None
    parameters: Optional[Mapping[str, float]] = None
    tables: Mapping[str, Tuple[Mapping[str, Any], ...]] = field(default_factory=dict)
    """Simulation table rows by table name"""

    warnings: Tuple[str, ...] = ()
    error: Optional[str] = None
    error_details: Optional[Mapping[str, Any]] = None
    runtime_seconds: float = 0.0
