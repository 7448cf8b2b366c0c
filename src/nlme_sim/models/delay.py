"""Gamma-distributed delays via a linear chain of first-order stages.

The delayed signal is ``D(t) = int_0^inf g(u; tau, k) S(t - u) du`` with ``g``
the gamma density of mean ``tau`` and shape ``k``. A chain of ``N`` stages

    dX_1/dt = r (S(t) - X_1),   dX_i/dt = r (X_{i-1} - X_i)

makes ``X_j`` the convolution of ``S`` with an Erlang(j, r) density. Two
regimes share the same state layout:

* integer ``k <= N``: ``r = k / tau`` and ``D = X_k`` is exact.
* otherwise: ``D = sum_j w_j X_j`` is an Erlang mixture. Weights come from
  the gamma CDF ``G`` on a grid of step ``1/r0``,
  ``w_j = G(j/r0) - G((j-1)/r0)``, with the tail mass added to ``w_N``; then
  ``r = sum_j j w_j / tau`` so the mixture mean is exactly ``tau``. The
  mixture variance tends to ``tau^2 / k`` as ``N`` grows.

``N`` (``num_ode``) is the accuracy/cost knob. All stages start at ``hist``
and the weights sum to one, so ``D(0) = hist``.
"""

from __future__ import annotations
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Mapping, Set, Tuple

import numpy as np
from scipy.stats import gamma

from ..contracts.errors import ModelError
from ..domain.formula import Formula
from ..domain.model import DelayConfig
from .base import ComponentType, ModelComponent

# Upper gamma quantile covered by the mixture grid
GRID_QUANTILE = 0.999
_INTEGER_TOL = 1e-9


@dataclass(frozen=True)
class ChainCoefficients:
    rate: float
    weights: Tuple[float, ...]

    @property
    def mean(self) -> float:
        j = np.arange(1, len(self.weights) + 1)
        return float(np.dot(self.weights, j) / self.rate)

    @property
    def variance(self) -> float:
        j = np.arange(1, len(self.weights) + 1)
        w = np.asarray(self.weights)
        second = float(np.dot(w, j * (j + 1)) / self.rate**2)
        return second - self.mean**2


@lru_cache(maxsize=4096)
def chain_coefficients(mean_delay: float, shape: float, num_ode: int) -> ChainCoefficients:
    """Stage rate and output weights approximating a gamma(shape) delay of mean `mean_delay`.

    Raises:
        ModelError: If the mean delay or the shape is not positive
    """
    if not (mean_delay > 0 and np.isfinite(mean_delay)):
        raise ModelError(f"Mean delay time must be positive, got {mean_delay}")
    if not (shape > 0 and np.isfinite(shape)):
        raise ModelError(f"Gamma shape must be positive, got {shape}")

    k_int = round(shape)
    if abs(shape - k_int) < _INTEGER_TOL and k_int <= num_ode:
        weights = np.zeros(num_ode)
        weights[k_int - 1] = 1.0
        return ChainCoefficients(rate=k_int / mean_delay, weights=tuple(weights))

    dist = gamma(a=shape, scale=mean_delay / shape)
    grid_rate = num_ode / dist.ppf(GRID_QUANTILE)
    cdf = dist.cdf(np.arange(0, num_ode + 1) / grid_rate)
    weights = np.diff(cdf)
    weights[-1] += 1.0 - cdf[-1]
    weights = weights / weights.sum()
    rate = float(np.dot(weights, np.arange(1, num_ode + 1)) / mean_delay)
    return ChainCoefficients(rate=rate, weights=tuple(weights))


class DistributedDelay(ModelComponent):
    """Delay chain component.

    A response delay is driven by its ``signal`` formula. An absorption delay
    (``signal`` is None) is driven by doses: a bolus adds ``r * amount`` to
    the first stage and an infusion adds ``r * rate`` to its derivative, so
    the output is the delayed input rate into ``dose_target``.
    """

    def __init__(self, config: DelayConfig, dose_target: str = "A1"):
        self.config = config
        self.dose_target = dose_target
        self.absorption = config.signal is None
        self.signal = None if self.absorption else Formula(config.signal)
        self.mean_delay = Formula(config.mean_delay)
        self.shape = Formula(config.shape)
        self._names = [f"{config.name}_{i}" for i in range(1, config.num_ode + 1)]

    @property
    def name(self) -> str:
        return f"delay_{self.config.name}"

    @property
    def component_type(self) -> ComponentType:
        return ComponentType.ABSORPTION if self.absorption else ComponentType.DELAY

    @property
    def requires(self) -> Set[str]:
        names = set(self.mean_delay.symbols | self.shape.symbols)
        if self.signal is not None:
            names |= self.signal.symbols
        return names

    @property
    def provides(self) -> Set[str]:
        return {self.config.name}

    @property
    def state_names(self) -> List[str]:
        return list(self._names)

    def initialize_state(self, params) -> np.ndarray:
        return np.full(self.config.num_ode, float(self.config.hist))

    def coefficients(self, namespace: Mapping[str, float]) -> ChainCoefficients:
        tau = self.mean_delay.evaluate(namespace)
        k = self.shape.evaluate(namespace) + self.config.shape_offset
        return chain_coefficients(tau, k, self.config.num_ode)

    def compute_outputs(self, state, env, params) -> Dict[str, float]:
        coeffs = self.coefficients({**params, **env})
        return {self.config.name: float(np.dot(coeffs.weights, state))}

    def compute_derivatives(self, t, state, env, params, inputs) -> np.ndarray:
        namespace = {**params, **env}
        rate = self.coefficients(namespace).rate
        if self.absorption:
            source = inputs.get(self.dose_target, 0.0)
        else:
            source = self.signal.evaluate(namespace)
        upstream = np.empty_like(state)
        upstream[0] = source
        upstream[1:] = state[:-1]
        return rate * (upstream - state)

    def accepts_dose(self, target: str) -> bool:
        return self.absorption and target == self.dose_target

    def apply_bolus(self, state, target, amount, params) -> None:
        state[0] += self.coefficients(params).rate * amount

    def is_linear(self) -> bool:
        return self.absorption or self.signal.text in ("C", "A1", "A2", "A3", "Aa")
