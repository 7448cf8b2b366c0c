"""Periodic steady-state initialisation for SS doses.

Two policies:

* ``superposition`` (linear systems): one dosing interval is an affine map
  ``x -> M x + c``. ``c`` and the columns of ``M`` come from integrating the
  interval from the zero state and from unit states; the periodic trough
  is ``(I - M)^-1 c``, the closed form of the geometric dose sum.
* ``periods``: repeat intervals until the relative change between
  successive troughs is below ``tolerance``, at most ``max_periods`` times.

Nonlinear systems always use ``periods``. States that accumulate without
bound (elimination compartment, cumulative hazards) are kept out of the solve.
"""

from __future__ import annotations
from typing import Callable, List, Mapping, Tuple

import numpy as np
import structlog

from ..contracts.types import DoseEvent
from ..solver.ode_solver import ODESolver
from ..solver.solver_config import SteadyStateSettings
from .system import ODESystem

logger = structlog.get_logger()

# (I - M) condition number above which superposition is not trusted
_MAX_CONDITION = 1e12


class SteadyStateInitializer:
    """Computes the pre-dose state of a system at periodic steady state."""

    def __init__(self, system: ODESystem, solver: ODESolver, settings: SteadyStateSettings):
        self.system = system
        self.solver = solver
        self.settings = settings
        self.mask = system.steady_state_mask()
        self.linear = system.is_linear()

    def one_interval(
        self, y0: np.ndarray, dose: DoseEvent, context: Mapping[str, float]
    ) -> np.ndarray:
        """State just before the next dose, starting from `y0` just before `dose`."""
        ii = float(dose.ii)
        t0 = dose.time - ii
        y = np.array(y0, dtype=float)
        if dose.is_bolus:
            self.system.apply_bolus(y, dose.target, dose.amount, context)
            return self._integrate(y, (t0, dose.time), context, {})

        t_off = t0 + dose.duration
        inputs = {dose.target: dose.rate}
        y = self._integrate(y, (t0, t_off), context, inputs)
        if t_off < dose.time:
            y = self._integrate(y, (t_off, dose.time), context, {})
        return y

    def _integrate(self, y0, span, context, inputs) -> np.ndarray:
        if span[1] <= span[0]:
            return y0
        rhs = lambda t, y: self.system.rhs(t, y, context, inputs)
        sol = self.solver.solve_ode(rhs, y0, span, t_eval=np.array([span[1]]))
        return self.solver.final_state(sol, span[1])

    def initialize(
        self,
        y_current: np.ndarray,
        dose: DoseEvent,
        context: Mapping[str, float],
    ) -> Tuple[np.ndarray, List[str]]:
        """Replace the state with the periodic steady-state trough for `dose`.

        Returns:
            New state vector and warnings (e.g. period cap reached)
        """
        base = np.array(y_current, dtype=float)

        def interval_map(x: np.ndarray) -> np.ndarray:
            y = base.copy()
            y[self.mask] = x
            return self.one_interval(y, dose, context)[self.mask]

        warnings: List[str] = []
        policy = self.settings.policy if self.linear else "periods"
        trough = None
        if policy == "superposition":
            trough = self._superposition(interval_map)
            if trough is None:
                warnings.append(
                    f"steady state at t={dose.time:g}: superposition ill-conditioned, iterated periods instead"
                )
        if trough is None:
            start = self.system.initial_state(context)[self.mask]
            trough, converged, n = self._periods(interval_map, start)
            if not converged:
                warnings.append(
                    f"steady state at t={dose.time:g} not reached within {n} periods "
                    f"(tolerance {self.settings.tolerance:g})"
                )

        result = base.copy()
        result[self.mask] = trough
        logger.debug("Steady state initialised", time=dose.time, policy=policy)
        return result, warnings

    def _superposition(self, interval_map: Callable[[np.ndarray], np.ndarray]):
        n = int(self.mask.sum())
        offset = interval_map(np.zeros(n))
        matrix = np.empty((n, n))
        for j in range(n):
            unit = np.zeros(n)
            unit[j] = 1.0
            matrix[:, j] = interval_map(unit) - offset
        system = np.eye(n) - matrix
        if np.linalg.cond(system) > _MAX_CONDITION:
            return None
        try:
            return np.linalg.solve(system, offset)
        except np.linalg.LinAlgError:
            return None

    def _periods(
        self, interval_map: Callable[[np.ndarray], np.ndarray], start: np.ndarray
    ) -> Tuple[np.ndarray, bool, int]:
        x = np.asarray(start, dtype=float)
        tol = self.settings.tolerance
        for n in range(1, self.settings.max_periods + 1):
            x_next = interval_map(x)
            scale = max(np.max(np.abs(x_next)), np.finfo(float).tiny)
            if np.max(np.abs(x_next - x)) <= tol * scale:
                return x_next, True, n
            x = x_next
        return x, False, self.settings.max_periods
