"""ODE solver used for piecewise (restarted) integration."""

from __future__ import annotations
import numpy as np
from typing import Dict, Any, Callable, Optional, Sequence, Tuple
from scipy.integrate import solve_ivp

from ..contracts.errors import SimulationDivergedError
from .base import ODESolverBase


class ODESolver(ODESolverBase):
    """Adaptive-step solver wrapping ``scipy.integrate.solve_ivp``.

    Every call integrates one smooth segment between two discontinuities;
    callers restart the solver at doses, resets and covariate changes.
    """

    def __init__(self, method: str = "RK45", **default_options):
        super().__init__("scipy_ode_solver", method)
        self.default_options.update(
            {k: v for k, v in default_options.items() if v is not None}
        )

    @classmethod
    def from_settings(cls, settings) -> "ODESolver":
        options = settings.get_scipy_options()
        method = options.pop("method")
        return cls(method=method, **options)

    def solve_ode(
        self,
        ode_func: Callable,
        y0: np.ndarray,
        t_span: Tuple[float, float],
        t_eval: Optional[np.ndarray] = None,
        events: Optional[Sequence[Callable]] = None,
        **options
    ) -> Any:
        """Solve an ODE system using scipy.integrate.solve_ivp.

        Args:
            ode_func: ODE function dy/dt = f(t, y)
            y0: Initial conditions
            t_span: (t_start, t_end) integration interval
            t_eval: Time points to evaluate solution at
            events: solve_ivp event functions
            **options: Solver options (rtol, atol, max_step, etc.)

        Returns:
            scipy solve_ivp result object

        Raises:
            SimulationDivergedError: If the integrator fails or the state
                becomes non-finite
        """
        solver_options = self.default_options.copy()
        solver_options.update(options)
        method = solver_options.pop('method', self.method)

        y0 = np.asarray(y0, dtype=float)
        if not np.all(np.isfinite(y0)):
            raise SimulationDivergedError(
                f"Non-finite state at t={t_span[0]}", time=t_span[0], state=y0
            )

        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            solution = solve_ivp(
                ode_func,
                t_span,
                y0,
                method=method,
                t_eval=t_eval,
                events=events,
                **solver_options
            )

        self.convergence_info = {
            'success': solution.success,
            'message': solution.message,
            'nfev': solution.nfev,
            'njev': getattr(solution, 'njev', None),
            'nlu': getattr(solution, 'nlu', None),
            't_events': getattr(solution, 't_events', None),
            'method': method
        }
        self.last_result = solution

        if not solution.success:
            t_fail, y_fail = _last_good_point(solution, t_span[0], y0)
            raise SimulationDivergedError(
                f"ODE solver failed at t={t_fail:g}: {solution.message}",
                time=t_fail,
                state=y_fail,
                details={'method': method, 'nfev': solution.nfev},
            )

        bad = ~np.all(np.isfinite(solution.y), axis=0)
        if bad.any():
            i = int(np.argmax(bad))
            raise SimulationDivergedError(
                f"Non-finite state at t={solution.t[i]:g}",
                time=float(solution.t[i]),
                state=solution.y[:, i],
                details={'method': method},
            )
        return solution

    def final_state(self, solution: Any, t_end: float) -> np.ndarray:
        """State at the end of a segment, whether or not t_end was in t_eval."""
        if solution.t.size and np.isclose(solution.t[-1], t_end, rtol=0.0, atol=1e-12):
            return solution.y[:, -1].copy()
        if solution.sol is not None:
            return np.asarray(solution.sol(t_end), dtype=float)
        raise SimulationDivergedError(
            f"No state available at t={t_end:g}", time=t_end, state=None
        )


def _last_good_point(solution: Any, t0: float, y0: np.ndarray) -> Tuple[float, np.ndarray]:
    if solution.t is not None and len(solution.t):
        return float(solution.t[-1]), solution.y[:, -1]
    return float(t0), y0
