"""Population simulation: every individual x replicate on a thread pool."""

from __future__ import annotations
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from ..config.constants import PREDICTION_KEYS
from ..config.model import AppConfig
from ..config.validation import validate_config
from ..contracts.errors import CensoringInconsistencyError, NLMEError, ValidationError
from ..contracts.types import IndividualResult, ObservationKind, RunStatus
from ..data.dataset import ColumnMapping, Individual, covariate_centers
from ..domain.model import ContinuousObservation, ModelDefinition
from ..domain.parameters import ParameterResolver
from ..observation.models import EventModel, build_observation_models
from ..observation.records import generate_records
from .context import RunContext
from .simulator import IndividualSimulator
from .system import ODESystem
from .tasks import (
    SimulationTask,
    build_tasks,
    sample_occasion_effects,
    sample_random_effects,
    typical_effects,
)

# Per-individual failures that are isolated instead of aborting the run
_INDIVIDUAL_ERRORS = (NLMEError, ArithmeticError, ValueError)


@dataclass
class PopulationResult:
    """Results of one population pass, in task order."""

    run_id: str
    results: List[IndividualResult]
    centers: Dict[str, float] = field(default_factory=dict)
    secondary: Dict[str, float] = field(default_factory=dict)
    """Population-level secondary parameters"""

    warnings: List[str] = field(default_factory=list)
    runtime_seconds: float = 0.0

    def predictions_frame(self) -> pd.DataFrame:
        rows = [rec.as_row() for res in self.results for rec in res.records]
        columns = [*PREDICTION_KEYS, "KIND", "PRED", "DV", "CENSORED"]
        return pd.DataFrame(rows, columns=columns)

    def status_frame(self) -> pd.DataFrame:
        rows = [
            {
                "ID": res.individual_id,
                "REPLICATE": res.replicate,
                "STATUS": res.status.value,
                "ERROR": res.error or "",
                "WARNINGS": "; ".join(res.warnings),
                "RUNTIME_S": res.runtime_seconds,
            }
            for res in self.results
        ]
        return pd.DataFrame(rows, columns=["ID", "REPLICATE", "STATUS", "ERROR", "WARNINGS", "RUNTIME_S"])

    def parameters_frame(self) -> pd.DataFrame:
        rows = [
            {"ID": res.individual_id, "REPLICATE": res.replicate, **res.parameters}
            for res in self.results
            if res.parameters is not None
        ]
        return pd.DataFrame(rows)

    def table_frame(self, name: str) -> pd.DataFrame:
        rows = [row for res in self.results for row in res.tables.get(name, ())]
        return pd.DataFrame(rows)

    def table_names(self) -> List[str]:
        names: Dict[str, None] = {}
        for res in self.results:
            names.update(dict.fromkeys(res.tables))
        return list(names)

    def summary(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in RunStatus}
        for res in self.results:
            counts[res.status.value] += 1
        return counts


class PopulationSimulator:
    """Runs a model over a population dataset.

    ``prepare`` performs every static check (model, column mapping,
    censoring, dosing) before anything is integrated. ``run`` then simulates
    each individual x replicate independently; one individual failing does
    not stop the others.
    """

    def __init__(
        self,
        model: ModelDefinition,
        config: Optional[AppConfig] = None,
        run_id: Optional[str] = None,
        context: Optional[RunContext] = None,
    ):
        self.model = model
        self.config = config or AppConfig()
        run_id = run_id or f"run_{uuid.uuid4().hex[:8]}"
        self.context = context or RunContext(
            run_id,
            seed=self.config.run.seed,
            threads=self.config.run.threads,
            artifact_dir=self.config.run.artifact_dir,
        )
        self.observation_models = build_observation_models(model.observations)
        self.resolver: Optional[ParameterResolver] = None
        self.simulator: Optional[IndividualSimulator] = None
        self.centers: Dict[str, float] = {}
        self.secondary: Dict[str, float] = {}
        self.warnings: List[str] = []

    @property
    def run_id(self) -> str:
        return self.context.run_id

    def prepare(
        self,
        individuals: Sequence[Individual],
        frame: Optional[pd.DataFrame] = None,
        mapping: Optional[ColumnMapping] = None,
    ) -> None:
        """Validate everything that can be checked before integration.

        Args:
            individuals: Individuals to simulate
            frame: Source dataset, to re-check the column mapping against
            mapping: Column mapping used to build `individuals`

        Raises:
            ModelError: On structural or formula problems
            ColumnMappingError: If the mapping does not fit model and dataset
            CensoringInconsistencyError: On BQL rows without a usable limit
            InvalidDosingScheduleError: On malformed dosing directives
            ValidationError: On configuration errors
        """
        with self.context.time_stage("prepare"):
            if mapping is not None and frame is not None:
                mapping.validate_against(self.model, frame.columns)
            self.centers = covariate_centers(self.model, individuals)
            self.resolver = self.model.validate_model(self.centers)
            self.secondary = self.resolver.resolve_secondary(self.model.fixed_effect_values)
            self.warnings = validate_config(self.config, self.model)

            system = ODESystem.from_model(self.model)
            self.simulator = IndividualSimulator(
                self.model,
                self.resolver,
                solver_settings=self.config.solver,
                steady_state=self.config.steady_state,
                system=system,
            )
            _check_limits(self.model, individuals)
            for individual in individuals:
                self.simulator.builder.validate(individual.doses)

            known = set(system.state_names) | {o.name for o in self.model.observations}
            for table in self.config.tables:
                for variable in table.variables:
                    if variable not in known and variable not in self._output_names(system):
                        raise ValidationError(
                            f"Table {table.name} requests unknown variable {variable}",
                            details={"table": table.name, "variable": variable},
                        )
            self.context.logger.info(
                "Population prepared",
                individuals=len(individuals),
                model=self.model.name,
                version=self.model.version,
                states=len(system.state_names),
            )

    def _output_names(self, system: ODESystem) -> set:
        names = set(self.resolver.formulas) | {c.name for c in self.model.covariates}
        for component in system.components:
            names |= component.provides
        return names

    def run(
        self,
        individuals: Sequence[Individual],
        output_times: Sequence[float] = (),
        cancel: Optional[threading.Event] = None,
    ) -> PopulationResult:
        """Simulate every individual x replicate.

        Args:
            individuals: Individuals, already passed through ``prepare``
            output_times: Extra reporting times for every individual
            cancel: Set to stop scheduling new individuals

        Returns:
            Results in individual, then replicate order
        """
        if self.simulator is None:
            self.prepare(individuals)
        cancel = cancel or threading.Event()
        run = self.config.run
        budget = run.time_budget_s
        deadline = time.monotonic() + budget if budget is not None else None

        table_times = sorted({t for table in self.config.tables for t in table.times})
        times = sorted(set(output_times) | set(table_times))
        tasks = build_tasks(individuals, run.n_replicates, run.seed)

        self.context.start_run()
        with self.context.time_stage("simulate"):
            results = Parallel(n_jobs=run.threads, prefer="threads")(
                delayed(self._run_task)(task, times, cancel, deadline) for task in tasks
            )
        runtime = self.context.end_run()

        result = PopulationResult(
            run_id=self.run_id,
            results=list(results),
            centers=dict(self.centers),
            secondary=dict(self.secondary),
            warnings=list(self.warnings),
            runtime_seconds=runtime,
        )
        self.context.logger.info("Population summary", **result.summary())
        return result

    def _run_task(
        self,
        task: SimulationTask,
        output_times: Sequence[float],
        cancel: threading.Event,
        deadline: Optional[float],
    ) -> IndividualResult:
        individual = task.individual
        log = self.context.logger.bind(individual=individual.id, replicate=task.replicate)
        if cancel.is_set() or (deadline is not None and time.monotonic() > deadline):
            log.debug("Individual cancelled before start")
            return IndividualResult(individual.id, task.replicate, RunStatus.CANCELLED)

        start = time.perf_counter()
        rng = task.rng()
        run = self.config.run
        if run.sample_random_effects:
            etas = sample_random_effects(self.model, rng)
            iov = sample_occasion_effects(self.resolver.occasion_etas, individual, rng)
        else:
            etas, iov = typical_effects(self.model), {}

        try:
            output = self.simulator.simulate(
                individual,
                self.model.fixed_effect_values,
                etas,
                iov,
                output_times=output_times,
                rng=rng,
            )
            extra = self._table_observations(output_times)
            records = generate_records(
                self.observation_models,
                individual,
                output.trajectory,
                rng=rng,
                replicate=task.replicate,
                residual_error=run.residual_error,
                extra_times=extra,
            )
        except _INDIVIDUAL_ERRORS as e:
            details = getattr(e, "details", {}) or {}
            log.error("Individual simulation failed", error=str(e), error_type=type(e).__name__)
            return IndividualResult(
                individual.id,
                task.replicate,
                RunStatus.FAILED,
                parameters={**etas},
                error=f"{type(e).__name__}: {e}",
                error_details=details,
                runtime_seconds=time.perf_counter() - start,
            )

        tables = self._table_rows(task, output.trajectory, records)
        dataset_rows = {(o.name, o.time) for o in individual.observations}
        status = RunStatus.COMPLETED_WITH_WARNINGS if output.warnings else RunStatus.COMPLETED
        for warning in output.warnings:
            log.warning(warning)
        return IndividualResult(
            individual.id,
            task.replicate,
            status,
            records=tuple(r for r in records if not _is_table_only(r, dataset_rows)),
            trajectory=output.trajectory,
            parameters={**output.parameters, **etas},
            tables=tables,
            warnings=tuple(output.warnings),
            runtime_seconds=time.perf_counter() - start,
        )

    def _table_observations(self, output_times: Sequence[float]) -> Dict[str, List[float]]:
        """Observation variables requested by tables, with their times."""
        names = {o.name for o in self.observation_models if not isinstance(o, EventModel)}
        extra: Dict[str, set] = {}
        for table in self.config.tables:
            for variable in table.variables:
                if variable in names:
                    extra.setdefault(variable, set()).update(table.times)
        return {k: sorted(v) for k, v in extra.items()}

    def _table_rows(self, task: SimulationTask, trajectory, records) -> Dict[str, tuple]:
        simulated = {(r.name, r.time): r.value for r in records}
        tables: Dict[str, tuple] = {}
        for table in self.config.tables:
            rows = []
            for t in table.times:
                row: Dict[str, Any] = {"ID": task.individual.id, "REPLICATE": task.replicate, "TIME": t}
                for variable in table.variables:
                    if (variable, t) in simulated:
                        row[variable] = simulated[(variable, t)]
                    elif variable in trajectory.values:
                        row[variable] = trajectory.at(variable, t)
                    else:
                        row[variable] = np.nan
                rows.append(row)
            tables[table.name] = tuple(rows)
        return tables


def _check_limits(model: ModelDefinition, individuals: Sequence[Individual]) -> None:
    """Every censorable row needs a quantification limit, static or per row."""
    unlimited = {
        o.name for o in model.observations
        if isinstance(o, ContinuousObservation) and o.bql and o.lloq is None
    }
    seen = set()
    for individual in individuals:
        for obs in individual.observations:
            seen.add(obs.name)
            if obs.limit is None and (obs.bql or obs.name in unlimited):
                raise CensoringInconsistencyError(
                    f"Individual {individual.id}: {obs.name} at t={obs.time:g} can be censored "
                    "but no quantification limit is available",
                    details={"individual": individual.id, "observation": obs.name, "time": obs.time},
                )
    missing = sorted(unlimited - seen)
    if missing:
        raise CensoringInconsistencyError(
            f"BQL handling is on for {', '.join(missing)} but no quantification limit is configured",
            details={"observations": missing},
        )


def _is_table_only(record, dataset_rows: set) -> bool:
    """True for records simulated only to fill a table (no dataset row at that time)."""
    if record.kind is ObservationKind.EVENT:
        return False
    return (record.name, record.time) not in dataset_rows


def simulate_population(
    model: ModelDefinition,
    individuals: Sequence[Individual],
    config: Optional[AppConfig] = None,
    output_times: Sequence[float] = (),
    cancel: Optional[threading.Event] = None,
    run_id: Optional[str] = None,
) -> PopulationResult:
    """Prepare and run in one call."""
    simulator = PopulationSimulator(model, config, run_id=run_id)
    simulator.prepare(individuals)
    return simulator.run(individuals, output_times=output_times, cancel=cancel)
