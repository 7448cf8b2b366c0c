"""Turning a simulated trajectory into observation records and likelihoods."""

from __future__ import annotations
import math
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from ..contracts.types import ObservationRecord, Trajectory
from ..data.dataset import Individual
from .models import ContinuousModel, EventModel, ObservationModel


def _by_name(models: Iterable[ObservationModel]) -> Dict[str, ObservationModel]:
    return {m.name: m for m in models}


def _record_at(
    model: ObservationModel,
    individual_id,
    time: float,
    outputs: Mapping[str, float],
    rng: Optional[np.random.Generator],
    limit: Optional[float],
    replicate: int,
) -> ObservationRecord:
    if isinstance(model, ContinuousModel):
        predicted = model.predict(outputs)
        value, censored = model.simulate(predicted, rng, limit)
        return ObservationRecord(
            individual_id, time, model.name, model.kind, predicted, value, censored, replicate
        )
    probs = model.probabilities(outputs)
    value, probability = model.simulate(probs, rng)
    return ObservationRecord(
        individual_id, time, model.name, model.kind, probability, value, False, replicate
    )


def _event_records(
    model: EventModel,
    individual_id,
    trajectory: Trajectory,
    replicate: int,
) -> List[ObservationRecord]:
    times = trajectory.event_times.get(model.name, ())
    metadata = trajectory.metadata or {}
    cumulative = metadata.get("event_cumulative_hazard", {}).get(model.name, ())
    records = [
        ObservationRecord(individual_id, t, model.name, model.kind, lam, 1.0, False, replicate)
        for t, lam in zip(times, cumulative)
    ]
    if trajectory.t.size == 0:
        return records
    t_end = float(trajectory.t[-1])
    if not times or times[-1] < t_end:
        lam_end = trajectory.at(model.cumulative_name, t_end)
        # follow-up ends without an event: right-censored row
        records.append(
            ObservationRecord(individual_id, t_end, model.name, model.kind, lam_end, 0.0, True, replicate)
        )
    return records


def generate_records(
    models: Sequence[ObservationModel],
    individual: Individual,
    trajectory: Trajectory,
    rng: Optional[np.random.Generator] = None,
    replicate: int = 0,
    residual_error: bool = True,
    extra_times: Optional[Mapping[str, Sequence[float]]] = None,
) -> List[ObservationRecord]:
    """Simulated observations for the dataset rows of one individual.

    Args:
        models: Observation models of the model definition
        individual: Individual whose observation rows are reproduced
        trajectory: Simulated outputs covering every observation time
        rng: Generator for residual error and category draws
        replicate: Replicate index stamped on every record
        residual_error: If False, continuous values equal predictions
        extra_times: Additional (name -> times) observations, e.g. table times

    Returns:
        Records in dataset row order, then extra times, then event records
    """
    lookup = _by_name(models)
    continuous_rng = rng if residual_error else None
    records: List[ObservationRecord] = []

    for obs in sorted(individual.observations, key=lambda o: (o.order, o.time)):
        model = lookup.get(obs.name)
        if model is None or isinstance(model, EventModel):
            continue
        outputs = trajectory.snapshot(obs.time)
        draw = continuous_rng if isinstance(model, ContinuousModel) else rng
        records.append(_record_at(model, individual.id, obs.time, outputs, draw, obs.limit, replicate))

    in_dataset = {(o.name, o.time) for o in individual.observations}
    for name, times in (extra_times or {}).items():
        model = lookup.get(name)
        if model is None or isinstance(model, EventModel):
            continue
        draw = continuous_rng if isinstance(model, ContinuousModel) else rng
        for t in times:
            if (name, float(t)) in in_dataset:
                continue
            outputs = trajectory.snapshot(t)
            records.append(_record_at(model, individual.id, float(t), outputs, draw, None, replicate))

    if rng is not None:
        for model in models:
            if isinstance(model, EventModel):
                records.extend(_event_records(model, individual.id, trajectory, replicate))
    return records


def individual_log_likelihood(
    models: Sequence[ObservationModel],
    individual: Individual,
    trajectory: Trajectory,
) -> Dict[str, float]:
    """Log-likelihood of the observed values of one individual, per observation.

    Event rows are scored in time order; value 1 marks an event, anything
    else a censoring/no-event row.
    """
    lookup = _by_name(models)
    totals: Dict[str, float] = defaultdict(float)
    event_rows: Dict[str, List] = defaultdict(list)

    for obs in individual.observations:
        model = lookup.get(obs.name)
        if model is None:
            continue
        if isinstance(model, EventModel):
            event_rows[obs.name].append(obs)
            continue
        outputs = trajectory.snapshot(obs.time)
        if isinstance(model, ContinuousModel):
            predicted = model.predict(outputs)
            totals[obs.name] += model.log_likelihood(obs.value, predicted, obs.bql, obs.limit)
        else:
            totals[obs.name] += model.log_likelihood(obs.value, model.probabilities(outputs))

    for name, rows in event_rows.items():
        model = lookup[name]
        rows = sorted(rows, key=lambda o: (o.time, o.order))
        times = [r.time for r in rows]
        totals[name] += model.log_likelihood(
            times,
            [1.0 if r.value == 1 else 0.0 for r in rows],
            [trajectory.at(model.cumulative_name, t) for t in times],
            [trajectory.at(model.hazard_name, t) for t in times],
        )
    return dict(totals)


def total_log_likelihood(per_observation: Mapping[str, float]) -> float:
    total = float(sum(per_observation.values()))
    return total if not math.isnan(total) else -math.inf