"""Pharmacodynamic and hazard components."""

from __future__ import annotations
from typing import Dict, List, Sequence, Set

import numpy as np

from ..domain.formula import Formula
from ..domain.model import EmaxConfig, EventObservation, IndirectConfig
from .base import ComponentType, ModelComponent


def _hill(driver: float, potency: float, gam: float = 1.0) -> float:
    if gam == 1.0:
        return driver / (potency + driver)
    d = max(driver, 0.0) ** gam
    return d / (potency**gam + d)


class EmaxResponse(ModelComponent):
    """Direct Emax / Imax response, optionally sigmoid and with a baseline.

    Stimulatory: ``E = [E0 +] Emax D^Gam / (EC50^Gam + D^Gam)``.
    Inhibitory: ``E = [E0 or 1] - Imax D^Gam / (IC50^Gam + D^Gam)``.
    """

    def __init__(self, config: EmaxConfig):
        self.config = config
        self.driver = Formula(config.driver)

    @property
    def name(self) -> str:
        return "emax"

    @property
    def component_type(self) -> ComponentType:
        return ComponentType.PHARMACODYNAMIC

    @property
    def requires(self) -> Set[str]:
        return set(self.driver.symbols)

    @property
    def provides(self) -> Set[str]:
        return {self.config.name}

    @property
    def state_names(self) -> List[str]:
        return []

    def compute_outputs(self, state, env, params) -> Dict[str, float]:
        cfg = self.config
        drive = self.driver.evaluate({**params, **env})
        gam = params["Gam"] if cfg.sigmoid else 1.0
        if cfg.inhibitory:
            base = params["E0"] if cfg.baseline else 1.0
            value = base - params["Imax"] * _hill(drive, params["IC50"], gam)
        else:
            base = params["E0"] if cfg.baseline else 0.0
            value = base + params["Emax"] * _hill(drive, params["EC50"], gam)
        return {cfg.name: value}

    def compute_derivatives(self, t, state, env, params, inputs) -> np.ndarray:
        return np.zeros(0)


class IndirectResponse(ModelComponent):
    """Turnover model ``dE/dt = Kin f_in - Kout f_out E`` with ``E(0) = Kin/Kout``.

    The drug effect multiplies the production (``buildup``) or the loss
    (``loss``) term:

    * limited stimulation: ``1 + Emax D / (EC50 + D)``
    * infinite stimulation: ``1 + D / EC50``
    * limited inhibition: ``1 - Imax D / (IC50 + D)``
    * infinite inhibition: ``1 - D / (IC50 + D)``
    """

    def __init__(self, config: IndirectConfig):
        self.config = config
        self.driver = Formula(config.driver)

    @property
    def name(self) -> str:
        return "indirect_response"

    @property
    def component_type(self) -> ComponentType:
        return ComponentType.PHARMACODYNAMIC

    @property
    def requires(self) -> Set[str]:
        return set(self.driver.symbols)

    @property
    def provides(self) -> Set[str]:
        return {self.config.name}

    @property
    def state_names(self) -> List[str]:
        return [self.config.name]

    def initialize_state(self, params) -> np.ndarray:
        return np.array([params["Kin"] / params["Kout"]])

    def drug_effect(self, drive: float, params) -> float:
        cfg = self.config
        if cfg.effect == "stimulation":
            if cfg.limited:
                return 1.0 + params["Emax"] * drive / (params["EC50"] + drive)
            return 1.0 + drive / params["EC50"]
        if cfg.limited:
            return 1.0 - params["Imax"] * drive / (params["IC50"] + drive)
        return 1.0 - drive / (params["IC50"] + drive)

    def compute_outputs(self, state, env, params) -> Dict[str, float]:
        return {self.config.name: float(state[0])}

    def compute_derivatives(self, t, state, env, params, inputs) -> np.ndarray:
        effect = self.drug_effect(self.driver.evaluate({**params, **env}), params)
        if self.config.acts_on == "buildup":
            return np.array([params["Kin"] * effect - params["Kout"] * state[0]])
        return np.array([params["Kin"] - params["Kout"] * effect * state[0]])

    def is_linear(self) -> bool:
        return False


class HazardIntegrator(ModelComponent):
    """Cumulative hazard states ``Lambda_name`` with ``dLambda/dt = h(t, state)``."""

    PREFIX = "Lambda_"

    def __init__(self, events: Sequence[EventObservation]):
        self.events = list(events)
        self.hazards = [Formula(e.hazard) for e in self.events]

    @property
    def name(self) -> str:
        return "hazard"

    @property
    def component_type(self) -> ComponentType:
        return ComponentType.HAZARD

    @property
    def requires(self) -> Set[str]:
        names: Set[str] = set()
        for h in self.hazards:
            names |= h.symbols
        return names

    @property
    def provides(self) -> Set[str]:
        return set(self.state_names) | {f"h_{e.name}" for e in self.events}

    @property
    def state_names(self) -> List[str]:
        return [self.PREFIX + e.name for e in self.events]

    def compute_outputs(self, state, env, params) -> Dict[str, float]:
        out = {name: float(state[i]) for i, name in enumerate(self.state_names)}
        namespace = {**params, **env}
        for event, hazard in zip(self.events, self.hazards):
            out[f"h_{event.name}"] = hazard.evaluate(namespace)
        return out

    def compute_derivatives(self, t, state, env, params, inputs) -> np.ndarray:
        return np.array([max(env[f"h_{e.name}"], 0.0) for e in self.events])

    def is_linear(self) -> bool:
        return False

    def steady_state_excluded(self) -> Set[str]:
        return set(self.state_names)
