"""Immutable, versioned model definitions.

A ``ModelDefinition`` bundles the structural model (compartments, absorption,
elimination, delays, PD), the parameter model (structural parameters, fixed
and random effects, covariates) and the observation models. Definitions are
frozen; every ``with_*`` edit returns a new definition with ``version + 1``.
"""

from __future__ import annotations
from pathlib import Path
import sys
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence, Set, Union

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

import tomli_w
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..config.constants import DEFAULT_NUM_ODE
from ..contracts.errors import CensoringInconsistencyError, ModelError, UnresolvedParameterError
from .formula import Formula
from .parameters import (
    Covariate,
    FixedEffect,
    ParameterResolver,
    RandomEffectBlock,
    SecondaryParameter,
    StructuralParameter,
)


class DelayConfig(BaseModel):
    """Gamma-distributed delay approximated by a chain of ``num_ode`` stages."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Output symbol of the delayed signal")
    signal: Optional[str] = Field(
        None, description="Formula of the driving signal; None for absorption delays (dose input)"
    )
    mean_delay: str = Field(..., description="Formula for the mean delay time")
    shape: str = Field(..., description="Formula for the gamma shape")
    shape_offset: float = Field(0.0, description="Added to the shape formula (1.0 for ShapeParamMinusOne)")
    num_ode: int = Field(DEFAULT_NUM_ODE, ge=1, le=400, description="Number of chain stages")
    hist: float = Field(0.0, description="Pre-dose history value of the signal")


class StructureConfig(BaseModel):
    """Compartmental disposition and absorption."""

    model_config = ConfigDict(frozen=True)

    compartments: int = Field(1, ge=1, le=3)
    absorption: Literal["intravenous", "first_order", "gamma"] = "intravenous"
    elimination: Literal["linear", "michaelis_menten"] = "linear"
    elimination_compartment: bool = Field(False, description="Collect eliminated amount in A0")
    absorption_delay: Optional[DelayConfig] = None
    duration_parameter: Optional[str] = Field(
        None, description="Structural parameter giving the duration of every dose (zero-order absorption)"
    )

    @model_validator(mode="after")
    def _check_absorption(self) -> "StructureConfig":
        if self.absorption == "gamma" and self.absorption_delay is None:
            raise ValueError("gamma absorption requires absorption_delay")
        if self.absorption != "gamma" and self.absorption_delay is not None:
            raise ValueError("absorption_delay is only valid with absorption='gamma'")
        if self.absorption_delay is not None and self.absorption_delay.signal is not None:
            raise ValueError("absorption delays are driven by doses, not by a signal formula")
        return self

    @property
    def dose_target(self) -> str:
        return "Aa" if self.absorption == "first_order" else "A1"

    def compartment_names(self) -> List[str]:
        """Amount states this structure actually has."""
        names = ["Aa"] if self.absorption == "first_order" else []
        names += ["A1", "A2", "A3"][: self.compartments]
        if self.elimination_compartment:
            names.append("A0")
        return names

    def required_parameters(self) -> List[str]:
        names = ["V"]
        names += ["Vmax", "Km"] if self.elimination == "michaelis_menten" else ["Cl"]
        if self.compartments >= 2:
            names += ["V2", "Cl2"]
        if self.compartments == 3:
            names += ["V3", "Cl3"]
        if self.absorption == "first_order":
            names.append("Ka")
        if self.duration_parameter:
            names.append(self.duration_parameter)
        return names


class EmaxConfig(BaseModel):
    """Direct (algebraic) Emax/Imax response."""

    model_config = ConfigDict(frozen=True)

    type: Literal["emax"] = "emax"
    name: str = "E"
    driver: str = "C"
    inhibitory: bool = False
    sigmoid: bool = False
    baseline: bool = False

    def required_parameters(self) -> List[str]:
        names = ["Imax", "IC50"] if self.inhibitory else ["Emax", "EC50"]
        if self.sigmoid:
            names.append("Gam")
        if self.baseline:
            names.append("E0")
        return names


class IndirectConfig(BaseModel):
    """Indirect response model with turnover state E, baseline Kin/Kout."""

    model_config = ConfigDict(frozen=True)

    type: Literal["indirect"] = "indirect"
    name: str = "E"
    driver: str = "C"
    effect: Literal["stimulation", "inhibition"] = "inhibition"
    limited: bool = True
    acts_on: Literal["buildup", "loss"] = "loss"

    def required_parameters(self) -> List[str]:
        names = ["Kin", "Kout"]
        if self.effect == "stimulation":
            names += ["Emax", "EC50"] if self.limited else ["EC50"]
        else:
            names += ["Imax", "IC50"] if self.limited else ["IC50"]
        return names


PDConfig = Annotated[Union[EmaxConfig, IndirectConfig], Field(discriminator="type")]


class ContinuousObservation(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["continuous"] = "continuous"
    name: str
    predictor: str = Field(..., description="Formula for the individual prediction")
    error: Literal["additive", "proportional", "combined", "log_additive"] = "additive"
    sigma: float = Field(..., gt=0, description="Residual SD (additive part for combined)")
    sigma_proportional: Optional[float] = Field(None, gt=0)
    bql: bool = Field(False, description="Censor values below the quantification limit")
    lloq: Optional[float] = Field(None, gt=0, description="Static lower limit of quantification")
    reset_after: List[str] = Field(
        default_factory=list, description="Compartments zeroed after each observation"
    )

    @model_validator(mode="after")
    def _check_error(self) -> "ContinuousObservation":
        if self.error == "combined" and self.sigma_proportional is None:
            raise ValueError(f"{self.name}: combined error needs sigma_proportional")
        return self


class CategoricalObservation(BaseModel):
    """Ordered categories with P(Y <= c) = ilogit(cut_points[c])."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["categorical"] = "categorical"
    name: str
    cut_points: List[str] = Field(..., min_length=1)
    categories: Optional[List[int]] = None

    @model_validator(mode="after")
    def _check_categories(self) -> "CategoricalObservation":
        if self.categories is not None and len(self.categories) != len(self.cut_points) + 1:
            raise ValueError(
                f"{self.name}: {len(self.cut_points)} cut points define "
                f"{len(self.cut_points) + 1} categories"
            )
        return self

    @property
    def category_values(self) -> List[int]:
        return self.categories or list(range(len(self.cut_points) + 1))


class EventObservation(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["event"] = "event"
    name: str
    hazard: str = Field(..., description="Formula for the instantaneous hazard")
    repeated: bool = False


ObservationConfig = Annotated[
    Union[ContinuousObservation, CategoricalObservation, EventObservation],
    Field(discriminator="kind"),
]


class ResetRule(BaseModel):
    """Reset compartments when the reset column value lies in [low, high]."""

    model_config = ConfigDict(frozen=True)

    low: float
    high: float
    compartments: Optional[List[str]] = None
    value: float = 0.0

    @model_validator(mode="after")
    def _check_range(self) -> "ResetRule":
        if self.low > self.high:
            raise ValueError(f"reset range is empty: low={self.low} > high={self.high}")
        return self

    def triggers(self, flag: float) -> bool:
        return self.low <= flag <= self.high


class ModelDefinition(BaseModel):
    """Complete, immutable model definition."""

    model_config = ConfigDict(frozen=True)

    name: str = "model"
    version: int = Field(1, ge=1)
    structure: StructureConfig = Field(default_factory=StructureConfig)
    parameters: List[StructuralParameter] = Field(default_factory=list)
    fixed_effects: List[FixedEffect] = Field(default_factory=list)
    random_effects: List[RandomEffectBlock] = Field(default_factory=list)
    covariates: List[Covariate] = Field(default_factory=list)
    secondary: List[SecondaryParameter] = Field(default_factory=list)
    delays: List[DelayConfig] = Field(default_factory=list)
    pd: Optional[PDConfig] = None
    observations: List[ObservationConfig] = Field(default_factory=list)
    reset: Optional[ResetRule] = None

    @field_validator("parameters", "fixed_effects", "covariates", "observations", "delays")
    @classmethod
    def _unique_names(cls, items):
        seen: Set[str] = set()
        for item in items:
            if item.name in seen:
                raise ValueError(f"Duplicate name: {item.name}")
            seen.add(item.name)
        return items

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelDefinition":
        model = data.get("model", data)
        return cls.model_validate(model)

    @classmethod
    def from_toml_file(cls, path: Union[str, Path]) -> "ModelDefinition":
        """Load a model definition from a TOML file (optionally under a [model] table)."""
        path = Path(path)
        if not path.exists():
            raise ModelError(f"Model file not found: {path}")
        with open(path, "rb") as f:
            data = tomllib.load(f)
        return cls.from_dict(data)

    def to_toml(self) -> str:
        return tomli_w.dumps({"model": self.model_dump(mode="json", exclude_none=True)})

    # Versioned edits

    def revise(self, **changes: Any) -> "ModelDefinition":
        """Return a new definition with ``changes`` applied and the version bumped."""
        data = self.model_dump()
        data.update(changes)
        data["version"] = self.version + 1
        return type(self).model_validate(data)

    def with_fixed_effects(self, **values: float) -> "ModelDefinition":
        known = {fe.name for fe in self.fixed_effects}
        unknown = set(values) - known
        if unknown:
            raise UnresolvedParameterError(
                f"Unknown fixed effects: {', '.join(sorted(unknown))}", symbols=unknown
            )
        effects = [
            fe.model_copy(update={"value": float(values[fe.name])}) if fe.name in values else fe
            for fe in self.fixed_effects
        ]
        return self.revise(fixed_effects=[fe.model_dump() for fe in effects])

    def with_random_effects(self, blocks: Sequence[RandomEffectBlock]) -> "ModelDefinition":
        return self.revise(random_effects=[b.model_dump() for b in blocks])

    def with_parameter(self, parameter: StructuralParameter) -> "ModelDefinition":
        """Add a structural parameter or replace the one with the same name."""
        params = [p for p in self.parameters if p.name != parameter.name] + [parameter]
        return self.revise(parameters=[p.model_dump() for p in params])

    def with_observation(self, observation: BaseModel) -> "ModelDefinition":
        obs = [o for o in self.observations if o.name != observation.name] + [observation]
        return self.revise(observations=[o.model_dump() for o in obs])

    def with_covariate(self, covariate: Covariate) -> "ModelDefinition":
        covs = [c for c in self.covariates if c.name != covariate.name] + [covariate]
        return self.revise(covariates=[c.model_dump() for c in covs])

    # Derived views

    @property
    def fixed_effect_values(self) -> Dict[str, float]:
        return {fe.name: fe.value for fe in self.fixed_effects}

    @property
    def random_effect_names(self) -> List[str]:
        return [name for block in self.random_effects for name in block.names]

    def observation(self, name: str):
        for obs in self.observations:
            if obs.name == name:
                return obs
        raise KeyError(name)

    def delay_configs(self) -> List[DelayConfig]:
        delays = list(self.delays)
        if self.structure.absorption_delay is not None:
            delays.insert(0, self.structure.absorption_delay)
        return delays

    def is_linear(self) -> bool:
        """True if the state equations are linear in the state (superposition holds)."""
        if self.structure.elimination == "michaelis_menten":
            return False
        if isinstance(self.pd, IndirectConfig):
            return False
        if any(isinstance(o, EventObservation) for o in self.observations):
            return False
        # delayed signals keep the system linear only when they are a plain amount or C
        linear_signals = set(self.structure.compartment_names()) | {"C"}
        for delay in self.delays:
            if delay.signal is not None and delay.signal.strip() not in linear_signals:
                return False
        return True

    def build_resolver(self, centers: Optional[Dict[str, float]] = None) -> ParameterResolver:
        return ParameterResolver(self.parameters, self.covariates, centers, self.secondary)

    def required_parameters(self) -> List[str]:
        names = list(self.structure.required_parameters())
        if self.pd is not None:
            names += self.pd.required_parameters()
        return names

    def dataset_variables(self) -> Dict[str, bool]:
        """Model variables a dataset can bind to, mapped to whether they are required."""
        variables: Dict[str, bool] = {"id": True, "time": True, self.structure.dose_target: True}
        for cov in self.covariates:
            variables[cov.name] = True
        for obs in self.observations:
            variables[obs.name] = False
        if self.reset is not None:
            variables["reset"] = True
        return variables

    def validate_model(self, centers: Optional[Dict[str, float]] = None) -> ParameterResolver:
        """Static validation; returns the parameter resolver for these covariate centers.

        Raises:
            ModelError: On structural inconsistencies
            UnresolvedParameterError: If any formula references an undefined symbol
            CensoringInconsistencyError: On BQL settings that cannot be honoured
        """
        fixed = [fe.name for fe in self.fixed_effects]
        randoms = self.random_effect_names
        if len(set(randoms)) != len(randoms):
            raise ModelError("A random effect is declared in more than one block")

        declared = {p.name for p in self.parameters}
        missing = [n for n in self.required_parameters() if n not in declared]
        if missing:
            raise UnresolvedParameterError(
                f"Model structure needs parameters that are not declared: {', '.join(missing)}",
                symbols=missing,
            )

        covariates = {c.name: c for c in self.covariates}
        for p in self.parameters:
            for effect in p.covariate_effects:
                if effect.covariate not in covariates:
                    raise UnresolvedParameterError(
                        f"Parameter {p.name} uses undeclared covariate {effect.covariate}",
                        symbols=[effect.covariate],
                    )
            needed = set(p.covariate_fixed_effects(covariates)) | {p.fixed_effect_name}
            if p.style == "custom":
                needed = set()
            absent = needed - set(fixed)
            if absent:
                raise UnresolvedParameterError(
                    f"Parameter {p.name} needs fixed effects: {', '.join(sorted(absent))}",
                    symbols=absent,
                )
            eta = p.random_effect_name
            if eta and eta not in randoms:
                raise UnresolvedParameterError(
                    f"Parameter {p.name} needs random effect {eta}", symbols=[eta]
                )

        static_centers = dict(centers or {})
        for cov in self.covariates:
            if cov.center in ("mean", "median") and cov.name not in static_centers:
                # placeholder so the static check can compile the formula
                static_centers[cov.name] = 1.0
        resolver = self.build_resolver(static_centers)
        resolver.validate(fixed, randoms)

        self._check_runtime_formulas(declared)
        self._check_resets()
        self._check_censoring()
        return resolver

    def resettable_states(self) -> List[str]:
        names = self.structure.compartment_names()
        if isinstance(self.pd, IndirectConfig):
            names.append(self.pd.name)
        return names

    def _check_resets(self) -> None:
        resettable = set(self.resettable_states())
        requested = {"reset": list(self.reset.compartments or []) if self.reset else []}
        for obs in self.observations:
            if isinstance(obs, ContinuousObservation):
                requested[f"{obs.name} reset_after"] = list(obs.reset_after)
        for where, names in requested.items():
            bad = sorted(set(names) - resettable)
            if bad:
                raise ModelError(
                    f"{where}: cannot reset unknown compartments {bad}",
                    details={"where": where, "compartments": bad, "available": sorted(resettable)},
                )

    def _check_runtime_formulas(self, parameters: Set[str]) -> None:
        states = set(self.structure.compartment_names()) | {"C", "t"}
        if self.pd is not None:
            states.add(self.pd.name)
        covariate_names = {c.name for c in self.covariates}
        known = set(parameters) | states | covariate_names
        for delay in self.delay_configs():
            for text in filter(None, (delay.signal, delay.mean_delay, delay.shape)):
                _require_known(Formula(text), known, f"delay {delay.name}")
            known.add(delay.name)
        if self.pd is not None:
            _require_known(Formula(self.pd.driver), known, f"{self.pd.type} driver")
        for obs in self.observations:
            if isinstance(obs, ContinuousObservation):
                _require_known(Formula(obs.predictor), known, obs.name)
            elif isinstance(obs, CategoricalObservation):
                for text in obs.cut_points:
                    _require_known(Formula(text), known, obs.name)
            else:
                _require_known(Formula(obs.hazard), known, obs.name)

    def _check_censoring(self) -> None:
        for obs in self.observations:
            if isinstance(obs, ContinuousObservation) and obs.lloq is not None and not obs.bql:
                raise CensoringInconsistencyError(
                    f"{obs.name}: a quantification limit is set but BQL handling is off",
                    details={"observation": obs.name, "lloq": obs.lloq},
                )


def _require_known(formula: Formula, known: Set[str], where: str) -> None:
    missing = formula.unresolved(known)
    if missing:
        raise UnresolvedParameterError(
            f"{where} references undefined symbols: {', '.join(sorted(missing))}",
            symbols=missing,
            details={"where": where},
        )
