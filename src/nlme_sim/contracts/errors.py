"""Error definitions for the nlme_sim package."""

from __future__ import annotations
from typing import Dict, Optional, Sequence

import numpy as np


class NLMEError(Exception):
    """Base exception for all nlme_sim errors."""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigError(NLMEError):
    """Configuration-related errors."""
    pass


class ValidationError(ConfigError):
    """Input validation errors."""
    pass


class ColumnMappingError(ValidationError):
    """Model variables that cannot be bound to dataset columns."""
    pass


class InvalidDosingScheduleError(ValidationError):
    """Malformed dosing directive (bad interval, negative time, rate/duration clash)."""
    pass


class CensoringInconsistencyError(ValidationError):
    """BQL flag without a quantification limit, or a limit without BQL handling."""
    pass


class ModelError(NLMEError):
    """Model construction and evaluation errors."""
    pass


class UnresolvedParameterError(ModelError):
    """A formula references a symbol nothing defines."""

    def __init__(self, message: str, symbols: Sequence[str] = (), details: Optional[Dict] = None):
        details = dict(details or {})
        details.setdefault("symbols", sorted(symbols))
        super().__init__(message, details)
        self.symbols = tuple(sorted(symbols))


class SolverError(NLMEError):
    """ODE solver errors."""
    pass


class SimulationDivergedError(SolverError):
    """Integrator failure, reported with the time and state at failure."""

    def __init__(
        self,
        message: str,
        time: float,
        state: Optional[np.ndarray] = None,
        details: Optional[Dict] = None,
    ):
        details = dict(details or {})
        details.setdefault("time", float(time))
        if state is not None:
            details.setdefault("state", [float(v) for v in np.asarray(state, dtype=float)])
        super().__init__(message, details)
        self.time = float(time)
        self.state = None if state is None else np.asarray(state, dtype=float).copy()
