"""Piecewise integration of one individual across its dosing timeline."""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import structlog

from ..contracts.errors import ModelError
from ..contracts.types import Trajectory
from ..data.dataset import Individual
from ..domain.model import EventObservation, ModelDefinition
from ..domain.parameters import ParameterResolver
from ..dosing.schedule import DosingSchedule, DosingScheduleBuilder
from ..solver.ode_solver import ODESolver
from ..solver.solver_config import SolverSettings, SteadyStateSettings
from .steady_state import SteadyStateInitializer
from .system import ODESystem

logger = structlog.get_logger()


@dataclass
class SimulationOutput:
    """Trajectory of one individual plus what produced it."""

    trajectory: Trajectory
    schedule: DosingSchedule
    parameters: Dict[str, float]
    warnings: List[str] = field(default_factory=list)


def _event_function(index: int, threshold: float) -> Callable:
    def event(t, y):
        return y[index] - threshold
    event.terminal = True
    event.direction = 1
    return event


class IndividualSimulator:
    """Integrates the composed ODE system for one individual.

    The integrator is restarted at every breakpoint (doses, infusion stops,
    resets, covariate changes). At a breakpoint, in order: steady-state
    initialisation, dose application, parameter refresh, output recording,
    resets. Integration itself draws no random numbers; event thresholds
    (unit exponentials) are drawn from ``rng`` between solver calls.
    """

    def __init__(
        self,
        model: ModelDefinition,
        resolver: ParameterResolver,
        solver_settings: Optional[SolverSettings] = None,
        steady_state: Optional[SteadyStateSettings] = None,
        system: Optional[ODESystem] = None,
    ):
        self.model = model
        self.resolver = resolver
        self.system = system or ODESystem.from_model(model)
        self.solver_settings = solver_settings or SolverSettings()
        self.steady_state_settings = steady_state or SteadyStateSettings()
        self.builder = DosingScheduleBuilder.from_model(model)
        self.events = [o for o in model.observations if isinstance(o, EventObservation)]
        self._targets = self.system.dose_targets()

    def build_schedule(
        self,
        individual: Individual,
        context_at: Callable[[float], Mapping[str, float]],
    ) -> DosingSchedule:
        duration_param = self.model.structure.duration_parameter
        duration_for = (lambda t: context_at(t)[duration_param]) if duration_param else None
        schedule = self.builder.build(individual, duration_for=duration_for)
        for dose in schedule.doses:
            if dose.target not in self._targets:
                raise ModelError(
                    f"Individual {individual.id}: no compartment accepts doses into {dose.target}",
                    details={"individual": individual.id, "target": dose.target},
                )
        return schedule

    def simulate(
        self,
        individual: Individual,
        fixed_effects: Mapping[str, float],
        random_effects: Optional[Mapping[str, float]] = None,
        occasion_etas: Optional[Mapping[str, Mapping[float, float]]] = None,
        output_times: Sequence[float] = (),
        rng: Optional[np.random.Generator] = None,
    ) -> SimulationOutput:
        """Simulate one individual.

        Args:
            individual: Dataset records of the individual
            fixed_effects: theta values
            random_effects: eta draws (missing etas are zero)
            occasion_etas: inter-occasion eta draws per occasion level
            output_times: Extra times to report besides observation times
            rng: Generator for event thresholds; None disables event sampling

        Returns:
            Trajectory on the union of observation and output times

        Raises:
            SimulationDivergedError: If the integrator fails
            UnresolvedParameterError: If a parameter cannot be resolved
        """
        random_effects = random_effects or {}
        cache: Dict[Tuple, Dict[str, float]] = {}

        def context_at(t: float) -> Dict[str, float]:
            covariates = individual.covariates_at(t)
            key = tuple(sorted(covariates.items()))
            if key not in cache:
                params = self.resolver.resolve(fixed_effects, random_effects, covariates, occasion_etas)
                cache[key] = {**covariates, **params}
            return cache[key]

        schedule = self.build_schedule(individual, context_at)
        solver = ODESolver.from_settings(self.solver_settings)
        steady = SteadyStateInitializer(self.system, solver, self.steady_state_settings)

        grid = np.unique(np.asarray(list(output_times) + individual.observation_times(), dtype=float))
        grid = grid[grid >= 0]
        t_end = float(grid[-1]) if grid.size else 0.0
        grid_set = set(grid.tolist())
        candidates = schedule.breakpoints() + individual.covariate_change_times() + [0.0, t_end]
        breaks = sorted({float(b) for b in candidates if 0.0 <= b <= t_end})

        records: Dict[float, Dict[str, float]] = {}
        warnings: List[str] = []
        event_times: Dict[str, List[float]] = {e.name: [] for e in self.events}
        event_cumulative: Dict[str, List[float]] = {e.name: [] for e in self.events}
        thresholds = {
            e.name: (float(rng.exponential()) if rng is not None else np.inf) for e in self.events
        }

        y = self.system.initial_state(context_at(0.0))
        infusions: List[Tuple[float, str, float]] = []
        for i, t in enumerate(breaks):
            ctx = context_at(t)
            for dose in schedule.doses_at(t):
                if dose.steady_state:
                    y, ss_warnings = steady.initialize(y, dose, ctx)
                    warnings.extend(ss_warnings)
                if dose.is_bolus:
                    self.system.apply_bolus(y, dose.target, dose.amount, ctx)
                else:
                    infusions.append((dose.end_time, dose.target, dose.rate))
            infusions = [inf for inf in infusions if inf[0] > t]
            if t in grid_set:
                records[t] = {**ctx, **self.system.evaluate(t, y, ctx)}
            for reset in schedule.resets_at(t):
                self.system.reset(y, reset.compartments, reset.value)
            if i == len(breaks) - 1:
                break

            inputs: Dict[str, float] = {}
            for _, target, rate in infusions:
                inputs[target] = inputs.get(target, 0.0) + rate
            y = self._advance(
                solver, y, t, breaks[i + 1], ctx, inputs, grid, records,
                thresholds, event_times, event_cumulative, rng,
            )

        names = sorted({name for row in records.values() for name in row})
        values = {
            name: np.array([records[t].get(name, np.nan) for t in grid], dtype=float) for name in names
        }
        parameters = dict(self.resolver.resolve(
            fixed_effects, random_effects, individual.covariates_at(0.0), occasion_etas
        ))
        trajectory = Trajectory(
            t=grid,
            values=values,
            event_times={k: tuple(v) for k, v in event_times.items()},
            metadata={
                "individual": individual.id,
                "warnings": tuple(warnings),
                "event_cumulative_hazard": {k: tuple(v) for k, v in event_cumulative.items()},
            },
        )
        return SimulationOutput(trajectory=trajectory, schedule=schedule, parameters=parameters, warnings=warnings)

    def _advance(
        self,
        solver: ODESolver,
        y: np.ndarray,
        t0: float,
        t1: float,
        ctx: Mapping[str, float],
        inputs: Mapping[str, float],
        grid: np.ndarray,
        records: Dict[float, Dict[str, float]],
        thresholds: Dict[str, float],
        event_times: Dict[str, List[float]],
        event_cumulative: Dict[str, List[float]],
        rng: Optional[np.random.Generator],
    ) -> np.ndarray:
        """Integrate one smooth segment, recording interior grid points and events."""
        rhs = lambda t, state: self.system.rhs(t, state, ctx, inputs)
        interior = grid[(grid > t0) & (grid < t1)]
        t_cur, y_cur = t0, y
        while True:
            active = [e for e in self.events if np.isfinite(thresholds[e.name])]
            events = [
                _event_function(self.system.hazard_index(e.name), thresholds[e.name]) for e in active
            ]
            t_eval = np.append(interior[interior > t_cur], t1)
            sol = solver.solve_ode(rhs, y_cur, (t_cur, t1), t_eval=t_eval, events=events or None)
            for k, tk in enumerate(sol.t):
                if tk < t1:
                    records[float(tk)] = {**ctx, **self.system.evaluate(float(tk), sol.y[:, k], ctx)}
            if sol.status != 1:
                return solver.final_state(sol, t1)

            fired = next(j for j, te in enumerate(sol.t_events) if len(te))
            event = active[fired]
            t_cur = float(sol.t_events[fired][0])
            y_cur = np.array(sol.y_events[fired][0], dtype=float)
            event_times[event.name].append(t_cur)
            event_cumulative[event.name].append(float(y_cur[self.system.hazard_index(event.name)]))
            if event.repeated and rng is not None:
                thresholds[event.name] += float(rng.exponential())
            else:
                thresholds[event.name] = np.inf
            if t_cur >= t1:
                return y_cur
