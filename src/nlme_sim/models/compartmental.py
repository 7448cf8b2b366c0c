"""Compartmental disposition and absorption components.

Amounts are integrated; concentrations are algebraic outputs recomputed at
every evaluation. Clearance parameterization throughout:

    dA1/dt = input - elim(C) - Cl2 (C - A2/V2) - Cl3 (C - A3/V3)
    dA2/dt = Cl2 (C - A2/V2)
    dA3/dt = Cl3 (C - A3/V3)
    dA0/dt = elim(C)            (optional elimination compartment)

with ``elim(C) = Cl C`` or ``Vmax C / (Km + C)``.
"""

from __future__ import annotations
from typing import Dict, List, Mapping, Optional, Set

import numpy as np

from .base import ComponentType, ModelComponent


# ============================================================================
# FIRST-ORDER ABSORPTION
# ============================================================================

class FirstOrderAbsorption(ModelComponent):
    """Depot compartment Aa emptying into the central compartment at rate Ka."""

    OUTPUT = "absorption_rate"

    @property
    def name(self) -> str:
        return "first_order_absorption"

    @property
    def component_type(self) -> ComponentType:
        return ComponentType.ABSORPTION

    @property
    def requires(self) -> Set[str]:
        return set()

    @property
    def provides(self) -> Set[str]:
        return {"Aa", self.OUTPUT}

    @property
    def state_names(self) -> List[str]:
        return ["Aa"]

    def compute_outputs(self, state, env, params) -> Dict[str, float]:
        return {"Aa": float(state[0]), self.OUTPUT: params["Ka"] * state[0]}

    def compute_derivatives(self, t, state, env, params, inputs) -> np.ndarray:
        return np.array([inputs.get("Aa", 0.0) - params["Ka"] * state[0]])

    def accepts_dose(self, target: str) -> bool:
        return target == "Aa"

    def apply_bolus(self, state, target, amount, params) -> None:
        state[0] += amount


# ============================================================================
# DISPOSITION (1-3 COMPARTMENTS)
# ============================================================================

class Disposition(ModelComponent):
    """Central compartment with up to two peripheral compartments.

    Args:
        compartments: Number of disposition compartments (1-3)
        elimination: ``linear`` or ``michaelis_menten``
        elimination_compartment: Track eliminated amount in A0
        input_name: Environment name of an absorption rate flowing into A1
        accept_doses: Whether A1 is a dose target (False when doses go
            through an absorption delay chain instead)
    """

    def __init__(
        self,
        compartments: int = 1,
        elimination: str = "linear",
        elimination_compartment: bool = False,
        input_name: Optional[str] = None,
        accept_doses: bool = True,
    ):
        if compartments not in (1, 2, 3):
            raise ValueError(f"compartments must be 1, 2 or 3, got {compartments}")
        if elimination not in ("linear", "michaelis_menten"):
            raise ValueError(f"Unknown elimination: {elimination}")
        self.compartments = compartments
        self.elimination = elimination
        self.elimination_compartment = elimination_compartment
        self.input_name = input_name
        self.accept_doses = accept_doses
        self._names = ["A1", "A2", "A3"][:compartments] + (["A0"] if elimination_compartment else [])

    @property
    def name(self) -> str:
        return f"disposition_{self.compartments}c"

    @property
    def component_type(self) -> ComponentType:
        return ComponentType.DISPOSITION

    @property
    def requires(self) -> Set[str]:
        return {self.input_name} if self.input_name else set()

    @property
    def provides(self) -> Set[str]:
        return set(self._names) | {"C"}

    @property
    def state_names(self) -> List[str]:
        return list(self._names)

    def compute_outputs(self, state, env, params) -> Dict[str, float]:
        out = {name: float(state[i]) for i, name in enumerate(self._names)}
        out["C"] = state[0] / params["V"]
        return out

    def _elimination_flux(self, conc: float, params: Mapping[str, float]) -> float:
        if self.elimination == "michaelis_menten":
            return params["Vmax"] * conc / (params["Km"] + conc)
        return params["Cl"] * conc

    def compute_derivatives(self, t, state, env, params, inputs) -> np.ndarray:
        deriv = np.zeros(len(self._names))
        conc = state[0] / params["V"]
        elim = self._elimination_flux(conc, params)

        d_central = inputs.get("A1", 0.0) - elim if self.accept_doses else -elim
        if self.input_name:
            d_central += env[self.input_name]

        if self.compartments >= 2:
            flux2 = params["Cl2"] * (conc - state[1] / params["V2"])
            d_central -= flux2
            deriv[1] = flux2
        if self.compartments == 3:
            flux3 = params["Cl3"] * (conc - state[2] / params["V3"])
            d_central -= flux3
            deriv[2] = flux3
        deriv[0] = d_central
        if self.elimination_compartment:
            deriv[-1] = elim
        return deriv

    def accepts_dose(self, target: str) -> bool:
        return self.accept_doses and target == "A1"

    def apply_bolus(self, state, target, amount, params) -> None:
        state[0] += amount

    def is_linear(self) -> bool:
        return self.elimination == "linear"

    def steady_state_excluded(self) -> Set[str]:
        return {"A0"} if self.elimination_compartment else set()
