"""Observation models: residual error, censoring, categories and events.

Each model maps the outputs of a trajectory to observation values
(``simulate``) and scores observed data against predictions
(``log_likelihood``). None of them touch model or dosing state.
"""

from __future__ import annotations
import math
from typing import List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.stats import norm

from ..contracts.types import ObservationKind
from ..domain.formula import Formula, ilogit
from ..domain.model import CategoricalObservation, ContinuousObservation, EventObservation
from ..models.pd import HazardIntegrator


class ContinuousModel:
    """Continuous observation with additive, proportional, combined or log-additive error.

    BQL handling: a simulated value below the quantification limit is
    replaced by the limit and flagged as censored; a censored observed value
    contributes ``P(Y < limit)`` to the likelihood (M3).
    """

    kind = ObservationKind.CONTINUOUS

    def __init__(self, config: ContinuousObservation):
        self.config = config
        self.name = config.name
        self.predictor = Formula(config.predictor)

    def predict(self, outputs: Mapping[str, float]) -> float:
        return self.predictor.evaluate(outputs)

    def standard_deviation(self, predicted: float) -> float:
        cfg = self.config
        if cfg.error == "proportional":
            return cfg.sigma * abs(predicted)
        if cfg.error == "combined":
            return math.hypot(cfg.sigma, cfg.sigma_proportional * predicted)
        return cfg.sigma

    def simulate(
        self,
        predicted: float,
        rng: Optional[np.random.Generator],
        limit: Optional[float] = None,
    ) -> Tuple[float, bool]:
        """Draw one observation; returns (value, censored)."""
        if rng is None:
            value = predicted
        elif self.config.error == "log_additive":
            value = predicted * math.exp(self.config.sigma * rng.standard_normal())
        else:
            value = predicted + self.standard_deviation(predicted) * rng.standard_normal()
        limit = limit if limit is not None else self.config.lloq
        if self.config.bql and limit is not None and value < limit:
            return float(limit), True
        return float(value), False

    def log_likelihood(
        self,
        observed: float,
        predicted: float,
        censored: bool = False,
        limit: Optional[float] = None,
    ) -> float:
        if self.config.error == "log_additive":
            if predicted <= 0:
                return -math.inf
            sd = self.config.sigma
            if censored:
                bound = limit if limit is not None else observed
                return float(norm.logcdf((math.log(bound) - math.log(predicted)) / sd))
            if observed <= 0:
                return -math.inf
            return float(norm.logpdf(math.log(observed), math.log(predicted), sd) - math.log(observed))

        sd = self.standard_deviation(predicted)
        if sd <= 0:
            return -math.inf
        if censored:
            bound = limit if limit is not None else observed
            return float(norm.logcdf((bound - predicted) / sd))
        return float(norm.logpdf(observed, predicted, sd))


class CategoricalModel:
    """Ordered categorical observation: ``P(Y <= c_i) = ilogit(cut_i)``."""

    kind = ObservationKind.CATEGORICAL

    def __init__(self, config: CategoricalObservation):
        self.config = config
        self.name = config.name
        self.cut_points = [Formula(text) for text in config.cut_points]
        self.categories = config.category_values

    def probabilities(self, outputs: Mapping[str, float]) -> np.ndarray:
        cumulative = np.array([ilogit(f.evaluate(outputs)) for f in self.cut_points])
        cumulative = np.clip(np.maximum.accumulate(cumulative), 0.0, 1.0)
        probs = np.diff(np.concatenate(([0.0], cumulative, [1.0])))
        return np.clip(probs, 0.0, 1.0)

    def predict(self, outputs: Mapping[str, float]) -> float:
        """Expected category value."""
        return float(np.dot(self.probabilities(outputs), self.categories))

    def simulate(self, probs: np.ndarray, rng: Optional[np.random.Generator]) -> Tuple[float, float]:
        """Draw a category; returns (category, probability of that category)."""
        if rng is None:
            idx = int(np.argmax(probs))
        else:
            cumulative = np.cumsum(probs)
            idx = int(np.searchsorted(cumulative, rng.random() * cumulative[-1], side="right"))
            idx = min(idx, len(probs) - 1)
        return float(self.categories[idx]), float(probs[idx])

    def log_likelihood(self, observed: float, probs: np.ndarray) -> float:
        try:
            idx = self.categories.index(int(round(observed)))
        except ValueError:
            return -math.inf
        p = probs[idx]
        return math.log(p) if p > 0 else -math.inf


class EventModel:
    """Time-to-event / repeated event driven by an integrated hazard."""

    kind = ObservationKind.EVENT

    def __init__(self, config: EventObservation):
        self.config = config
        self.name = config.name
        self.hazard = Formula(config.hazard)
        self.cumulative_name = HazardIntegrator.PREFIX + config.name
        self.hazard_name = f"h_{config.name}"

    def log_likelihood(
        self,
        times: Sequence[float],
        indicators: Sequence[float],
        cumulative: Sequence[float],
        hazards: Sequence[float],
    ) -> float:
        """Log-likelihood of event indicators observed at `times`.

        Each row contributes ``-(Lambda(t_i) - Lambda(t_{i-1}))`` plus
        ``log h(t_i)`` when an event is recorded.
        """
        total = 0.0
        previous = 0.0
        for lam, h, flag in zip(cumulative, hazards, indicators):
            total -= lam - previous
            previous = lam
            if flag:
                if h <= 0:
                    return -math.inf
                total += math.log(h)
        return total


ObservationModel = Union[ContinuousModel, CategoricalModel, EventModel]


def build_observation_models(
    configs: Sequence[Union[ContinuousObservation, CategoricalObservation, EventObservation]],
) -> List[ObservationModel]:
    models: List[ObservationModel] = []
    for cfg in configs:
        if isinstance(cfg, ContinuousObservation):
            models.append(ContinuousModel(cfg))
        elif isinstance(cfg, CategoricalObservation):
            models.append(CategoricalModel(cfg))
        else:
            models.append(EventModel(cfg))
    return models
