"""Composition of model components into one ODE system."""

from __future__ import annotations
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np

from ..contracts.errors import ModelError
from ..domain.model import EmaxConfig, EventObservation, ModelDefinition
from ..models.base import ComponentType, ModelComponent
from ..models.compartmental import Disposition, FirstOrderAbsorption
from ..models.delay import DistributedDelay
from ..models.pd import EmaxResponse, HazardIntegrator, IndirectResponse

_ORDER = [
    ComponentType.ABSORPTION,
    ComponentType.DISPOSITION,
    ComponentType.DELAY,
    ComponentType.PHARMACODYNAMIC,
    ComponentType.HAZARD,
]

COMPARTMENTS = ("Aa", "A1", "A2", "A3", "A0")


class ODESystem:
    """Ordered components sharing one state vector.

    Args:
        components: Components in evaluation order
        external: Names supplied from outside the state (parameters, covariates)

    Raises:
        ModelError: If a component requires a name nothing earlier provides
    """

    def __init__(self, components: Sequence[ModelComponent], external: Iterable[str] = ()):
        self.components = list(components)
        self._validate_order(set(external) | {"t"})

        self.slices: List[slice] = []
        self.state_names: List[str] = []
        offset = 0
        for comp in self.components:
            size = comp.get_state_size()
            self.slices.append(slice(offset, offset + size))
            self.state_names.extend(comp.state_names)
            offset += size
        self.size = offset
        self._index = {name: i for i, name in enumerate(self.state_names)}

    def _validate_order(self, external: Set[str]) -> None:
        ranks = [_ORDER.index(c.component_type) for c in self.components]
        if ranks != sorted(ranks):
            raise ModelError(
                "Components are out of order: "
                + ", ".join(f"{c.name}({c.component_type.value})" for c in self.components)
            )
        available = set(external)
        for comp in self.components:
            missing = comp.requires - available
            if missing:
                raise ModelError(
                    f"Component {comp.name} requires {sorted(missing)} which no earlier component provides",
                    details={"component": comp.name, "missing": sorted(missing)},
                )
            available |= comp.provides

    @classmethod
    def from_model(cls, model: ModelDefinition) -> "ODESystem":
        structure = model.structure
        components: List[ModelComponent] = []
        input_name: Optional[str] = None
        accept_doses = True
        if structure.absorption == "first_order":
            components.append(FirstOrderAbsorption())
            input_name = FirstOrderAbsorption.OUTPUT
        elif structure.absorption == "gamma":
            delay = DistributedDelay(structure.absorption_delay, dose_target=structure.dose_target)
            components.append(delay)
            input_name = structure.absorption_delay.name
            accept_doses = False
        components.append(
            Disposition(
                compartments=structure.compartments,
                elimination=structure.elimination,
                elimination_compartment=structure.elimination_compartment,
                input_name=input_name,
                accept_doses=accept_doses,
            )
        )
        components.extend(DistributedDelay(d) for d in model.delays)
        if model.pd is not None:
            if isinstance(model.pd, EmaxConfig):
                components.append(EmaxResponse(model.pd))
            else:
                components.append(IndirectResponse(model.pd))
        events = [o for o in model.observations if isinstance(o, EventObservation)]
        if events:
            components.append(HazardIntegrator(events))

        external = {p.name for p in model.parameters} | {c.name for c in model.covariates}
        return cls(components, external)

    # State handling

    def index(self, name: str) -> int:
        return self._index[name]

    def initial_state(self, context: Mapping[str, float]) -> np.ndarray:
        y = np.zeros(self.size)
        for comp, sl in zip(self.components, self.slices):
            y[sl] = comp.initialize_state(context)
        return y

    def evaluate(self, t: float, y: np.ndarray, context: Mapping[str, float]) -> Dict[str, float]:
        """All states and algebraic outputs at (t, y)."""
        env: Dict[str, float] = {"t": t}
        for comp, sl in zip(self.components, self.slices):
            env.update(comp.compute_outputs(y[sl], {**context, **env}, context))
        return env

    def rhs(
        self,
        t: float,
        y: np.ndarray,
        context: Mapping[str, float],
        inputs: Mapping[str, float],
    ) -> np.ndarray:
        dy = np.empty(self.size)
        env: Dict[str, float] = dict(context)
        env["t"] = t
        for comp, sl in zip(self.components, self.slices):
            state = y[sl]
            env.update(comp.compute_outputs(state, env, context))
            dy[sl] = comp.compute_derivatives(t, state, env, context, inputs)
        return dy

    def dose_targets(self) -> Set[str]:
        return {t for t in COMPARTMENTS if any(c.accepts_dose(t) for c in self.components)}

    def apply_bolus(self, y: np.ndarray, target: str, amount: float, context: Mapping[str, float]) -> None:
        for comp, sl in zip(self.components, self.slices):
            if comp.accepts_dose(target):
                state = y[sl]
                comp.apply_bolus(state, target, amount, context)
                y[sl] = state
                return
        raise ModelError(f"No compartment accepts doses into {target}")

    def reset(self, y: np.ndarray, compartments: Optional[Sequence[str]], value: float) -> None:
        """Force compartments to `value`; None resets every amount and the absorption chain."""
        if compartments is None:
            for comp, sl in zip(self.components, self.slices):
                if comp.component_type in (ComponentType.ABSORPTION, ComponentType.DISPOSITION):
                    y[sl] = value
            return
        for name in compartments:
            if name not in self._index:
                raise ModelError(f"Cannot reset unknown compartment {name}")
            y[self._index[name]] = value

    def is_linear(self) -> bool:
        return all(c.is_linear() for c in self.components)

    def steady_state_mask(self) -> np.ndarray:
        """True for states that take part in steady-state solves."""
        excluded: Set[str] = set()
        for comp in self.components:
            excluded |= comp.steady_state_excluded()
        return np.array([name not in excluded for name in self.state_names], dtype=bool)

    def hazard_index(self, event_name: str) -> int:
        return self._index[HazardIntegrator.PREFIX + event_name]

    def describe(self) -> List[Tuple[str, str, int]]:
        return [(c.name, c.component_type.value, c.get_state_size()) for c in self.components]
