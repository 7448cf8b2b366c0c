"""Fixed effects, random effects, covariates and the structural parameter resolver."""

from __future__ import annotations
import math
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Tuple

import numpy as np
import sympy
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..contracts.errors import ModelError, UnresolvedParameterError
from .formula import FUNCTIONS, Formula


class FixedEffect(BaseModel):
    """Population typical value (theta)."""

    model_config = ConfigDict(frozen=True)

    name: str
    value: float
    frozen: bool = Field(False, description="Excluded from re-estimation")
    lower: Optional[float] = None
    upper: Optional[float] = None

    @model_validator(mode="after")
    def _check_bounds(self) -> "FixedEffect":
        if self.lower is not None and self.value < self.lower:
            raise ValueError(f"{self.name}: value {self.value} below lower bound {self.lower}")
        if self.upper is not None and self.value > self.upper:
            raise ValueError(f"{self.name}: value {self.value} above upper bound {self.upper}")
        return self


class RandomEffectBlock(BaseModel):
    """A block of random effects (etas) with a diagonal or full covariance."""

    model_config = ConfigDict(frozen=True)

    names: List[str] = Field(..., min_length=1)
    diagonal: Optional[List[float]] = None
    matrix: Optional[List[List[float]]] = None

    @model_validator(mode="after")
    def _check_covariance(self) -> "RandomEffectBlock":
        n = len(self.names)
        if (self.diagonal is None) == (self.matrix is None):
            raise ValueError("Specify exactly one of diagonal or matrix")
        if self.diagonal is not None:
            if len(self.diagonal) != n:
                raise ValueError(f"diagonal has {len(self.diagonal)} entries for {n} random effects")
            if any(v < 0 for v in self.diagonal):
                raise ValueError("Random effect variances must be non-negative")
        else:
            mat = np.asarray(self.matrix, dtype=float)
            if mat.shape != (n, n):
                raise ValueError(f"matrix must be {n}x{n}, got {mat.shape}")
            if not np.allclose(mat, mat.T):
                raise ValueError("Random effect covariance matrix must be symmetric")
            if np.min(np.linalg.eigvalsh(mat)) < -1e-10:
                raise ValueError("Random effect covariance matrix must be positive semi-definite")
        return self

    def covariance(self) -> np.ndarray:
        if self.diagonal is not None:
            return np.diag(np.asarray(self.diagonal, dtype=float))
        return np.asarray(self.matrix, dtype=float)

    def sample(self, rng: np.random.Generator) -> Dict[str, float]:
        """Draw one mean-zero eta vector for this block."""
        cov = self.covariance()
        if self.diagonal is not None:
            draws = rng.standard_normal(len(self.names)) * np.sqrt(np.diag(cov))
        else:
            draws = rng.multivariate_normal(np.zeros(len(self.names)), cov, method="eigh")
        return {name: float(v) for name, v in zip(self.names, draws)}


class Covariate(BaseModel):
    """Covariate declaration (dataset-driven, piecewise constant in time)."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: Literal["continuous", "categorical", "occasion"] = "continuous"
    center: Literal["none", "value", "mean", "median"] = "none"
    center_value: Optional[float] = None
    levels: List[float] = Field(default_factory=list)
    reference_level: Optional[float] = None

    @model_validator(mode="after")
    def _check_levels(self) -> "Covariate":
        if self.type == "continuous":
            if self.center == "value" and self.center_value is None:
                raise ValueError(f"Covariate {self.name}: center='value' requires center_value")
        else:
            if not self.levels:
                raise ValueError(f"Covariate {self.name}: {self.type} covariates require levels")
            if self.reference_level is not None and self.reference_level not in self.levels:
                raise ValueError(f"Covariate {self.name}: reference level not among levels")
        return self

    @property
    def reference(self) -> float:
        return self.levels[0] if self.reference_level is None else self.reference_level

    def non_reference_levels(self) -> List[float]:
        return [lvl for lvl in self.levels if lvl != self.reference]


def level_label(level: float) -> str:
    """Symbol-safe label for a categorical level (1.0 -> '1', 2.5 -> '2p5')."""
    if float(level).is_integer():
        return str(int(level))
    return str(level).replace(".", "p").replace("-", "m")


def indicator_symbol(covariate: str, level: float) -> str:
    return f"{covariate}__eq_{level_label(level)}"


class CovariateEffect(BaseModel):
    """Effect of one covariate on one structural parameter."""

    model_config = ConfigDict(frozen=True)

    covariate: str
    form: Literal["power", "exponential", "linear"] = "power"
    iov_variance: Optional[float] = Field(
        None, ge=0, description="Inter-occasion variance (occasion covariates only)"
    )


StyleName = Literal["lognormal", "lognormal2", "normal", "logitnormal", "custom"]

_MULTIPLICATIVE_STYLES = {"lognormal"}


class StructuralParameter(BaseModel):
    """Named per-individual model parameter (stparm)."""

    model_config = ConfigDict(frozen=True)

    name: str
    style: StyleName = "lognormal"
    fixed_effect: Optional[str] = None
    random_effect: Optional[str] = None
    has_random_effect: bool = True
    formula: Optional[str] = None
    covariate_effects: List[CovariateEffect] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_style(self) -> "StructuralParameter":
        if self.style == "custom":
            if not self.formula:
                raise ValueError(f"Parameter {self.name}: custom style requires a formula")
            if self.covariate_effects:
                raise ValueError(
                    f"Parameter {self.name}: write covariate effects into the custom formula"
                )
        elif self.formula:
            raise ValueError(f"Parameter {self.name}: formula is only valid with style='custom'")
        return self

    @property
    def fixed_effect_name(self) -> str:
        if self.fixed_effect:
            return self.fixed_effect
        if self.style == "lognormal2":
            return f"tvlog{self.name}"
        if self.style == "logitnormal":
            return f"tvlogit{self.name}"
        return f"tv{self.name}"

    @property
    def random_effect_name(self) -> Optional[str]:
        if self.style == "custom" or not self.has_random_effect:
            return None
        return self.random_effect or f"n{self.name}"

    def covariate_fixed_effects(self, covariates: Mapping[str, Covariate]) -> List[str]:
        """Fixed effect names introduced by this parameter's covariate effects."""
        names: List[str] = []
        for effect in self.covariate_effects:
            cov = covariates[effect.covariate]
            if cov.type == "continuous":
                names.append(f"d{self.name}d{cov.name}")
            elif cov.type == "categorical":
                names.extend(
                    f"d{self.name}d{cov.name}{level_label(lvl)}" for lvl in cov.non_reference_levels()
                )
        return names

    def occasion_random_effects(self, covariates: Mapping[str, Covariate]) -> Dict[str, Tuple[str, float]]:
        """Map of IOV eta symbol -> (occasion covariate, variance)."""
        out: Dict[str, Tuple[str, float]] = {}
        for effect in self.covariate_effects:
            cov = covariates[effect.covariate]
            if cov.type == "occasion":
                out[f"n{self.name}x{cov.name}"] = (cov.name, float(effect.iov_variance or 0.0))
        return out

    def build_formula(
        self,
        covariates: Mapping[str, Covariate],
        centers: Optional[Mapping[str, float]] = None,
    ) -> Formula:
        """Compile this parameter into a formula over effects and covariates."""
        if self.style == "custom":
            return Formula(self.formula)

        centers = centers or {}
        multiplicative = self.style in _MULTIPLICATIVE_STYLES
        tv = sympy.Symbol(self.fixed_effect_name)
        factors: List[sympy.Expr] = []
        terms: List[sympy.Expr] = []

        for effect in self.covariate_effects:
            if effect.covariate not in covariates:
                raise UnresolvedParameterError(
                    f"Parameter {self.name} uses undeclared covariate {effect.covariate}",
                    symbols=[effect.covariate],
                )
            cov = covariates[effect.covariate]
            x = sympy.Symbol(cov.name)

            if cov.type == "continuous":
                theta = sympy.Symbol(f"d{self.name}d{cov.name}")
                center = _center_for(cov, centers)
                if effect.form == "power":
                    ratio = x / center if center is not None else x
                    if multiplicative:
                        factors.append(ratio ** theta)
                    else:
                        terms.append(theta * sympy.log(ratio))
                else:
                    delta = x - center if center is not None else x
                    if multiplicative and effect.form == "exponential":
                        factors.append(sympy.exp(theta * delta))
                    elif multiplicative:
                        factors.append(1 + theta * delta)
                    else:
                        terms.append(theta * delta)

            elif cov.type == "categorical":
                for lvl in cov.non_reference_levels():
                    theta = sympy.Symbol(f"d{self.name}d{cov.name}{level_label(lvl)}")
                    indicator = sympy.Symbol(indicator_symbol(cov.name, lvl))
                    if multiplicative:
                        factors.append(sympy.exp(theta * indicator))
                    else:
                        terms.append(theta * indicator)

            else:
                eta = sympy.Symbol(f"n{self.name}x{cov.name}")
                if multiplicative:
                    factors.append(sympy.exp(eta))
                else:
                    terms.append(eta)

        eta_name = self.random_effect_name
        eta = sympy.Symbol(eta_name) if eta_name else sympy.Integer(0)

        if self.style == "lognormal":
            expr = tv * sympy.Mul(*factors) * sympy.exp(eta)
        elif self.style == "lognormal2":
            expr = sympy.exp(tv + sympy.Add(*terms) + eta)
        elif self.style == "normal":
            expr = tv + sympy.Add(*terms) + eta
        else:
            expr = FUNCTIONS["ilogit"](tv + sympy.Add(*terms) + eta)
        return Formula(expr)


def _center_for(cov: Covariate, centers: Mapping[str, float]) -> Optional[float]:
    if cov.center == "none":
        return None
    if cov.center == "value":
        return float(cov.center_value)
    if cov.name not in centers:
        raise ModelError(
            f"Covariate {cov.name} is centered on its {cov.center} but no population value was computed"
        )
    return float(centers[cov.name])


class SecondaryParameter(BaseModel):
    """Population-level derived quantity, e.g. tvMeanDelayTime = exp(tvlogMeanDelayTime)."""

    model_config = ConfigDict(frozen=True)

    name: str
    formula: str


class ParameterResolver:
    """Resolves structural parameters for one individual.

    The resolver is built once per model/dataset pair and is read-only
    afterwards; ``resolve`` is a pure function of its inputs.
    """

    def __init__(
        self,
        parameters: Sequence[StructuralParameter],
        covariates: Sequence[Covariate] = (),
        centers: Optional[Mapping[str, float]] = None,
        secondary: Sequence[SecondaryParameter] = (),
    ):
        self.covariates: Dict[str, Covariate] = {c.name: c for c in covariates}
        self.parameters: Dict[str, StructuralParameter] = {p.name: p for p in parameters}
        self.formulas: Dict[str, Formula] = {
            p.name: p.build_formula(self.covariates, centers) for p in parameters
        }
        self.secondary: Dict[str, Formula] = {s.name: Formula(s.formula) for s in secondary}
        self.occasion_etas: Dict[str, Tuple[str, float]] = {}
        for p in parameters:
            self.occasion_etas.update(p.occasion_random_effects(self.covariates))
        self.order: List[str] = self._dependency_order()

    def _dependency_order(self) -> List[str]:
        names = set(self.formulas)
        deps = {n: self.formulas[n].symbols & (names - {n}) for n in names}
        order: List[str] = []
        visiting: set = set()
        done: set = set()

        def visit(name: str, chain: Tuple[str, ...]) -> None:
            if name in done:
                return
            if name in visiting:
                raise ModelError(f"Circular parameter definition: {' -> '.join(chain + (name,))}")
            visiting.add(name)
            for dep in sorted(deps[name]):
                visit(dep, chain + (name,))
            visiting.discard(name)
            done.add(name)
            order.append(name)

        for name in sorted(names):
            visit(name, ())
        # keep declaration order where dependencies allow it
        position = {n: i for i, n in enumerate(self.parameters)}
        return _stable_topological(order, deps, position)

    def covariate_symbols(self) -> List[str]:
        """Names a covariate row contributes to the evaluation namespace."""
        symbols: List[str] = []
        for cov in self.covariates.values():
            if cov.type == "continuous":
                symbols.append(cov.name)
            elif cov.type == "categorical":
                symbols.extend(indicator_symbol(cov.name, lvl) for lvl in cov.non_reference_levels())
        return symbols

    def validate(self, fixed_effects: Iterable[str], random_effects: Iterable[str]) -> None:
        """Static check that every formula symbol is defined.

        Raises:
            UnresolvedParameterError: On the first formula with unknown symbols
        """
        known = set(fixed_effects) | set(random_effects) | set(self.formulas)
        known |= set(self.covariate_symbols()) | set(self.occasion_etas)
        for name, formula in self.formulas.items():
            missing = formula.unresolved(known)
            if missing:
                raise UnresolvedParameterError(
                    f"Parameter {name} references undefined symbols: {', '.join(sorted(missing))}",
                    symbols=missing,
                    details={"parameter": name},
                )
        fixed = set(fixed_effects) | set(self.secondary)
        for name, formula in self.secondary.items():
            missing = formula.unresolved(fixed)
            if missing:
                raise UnresolvedParameterError(
                    f"Secondary parameter {name} references undefined symbols: {', '.join(sorted(missing))}",
                    symbols=missing,
                    details={"parameter": name},
                )

    def covariate_namespace(
        self,
        covariate_values: Mapping[str, Any],
        occasion_etas: Optional[Mapping[str, Mapping[float, float]]] = None,
    ) -> Dict[str, float]:
        namespace: Dict[str, float] = {}
        for cov in self.covariates.values():
            raw = covariate_values.get(cov.name)
            if raw is None or (isinstance(raw, float) and math.isnan(raw)):
                continue
            value = float(raw)
            if cov.type == "continuous":
                namespace[cov.name] = value
            elif cov.type == "categorical":
                for lvl in cov.non_reference_levels():
                    namespace[indicator_symbol(cov.name, lvl)] = 1.0 if value == lvl else 0.0
            else:
                for eta_name, (occ_cov, _) in self.occasion_etas.items():
                    if occ_cov != cov.name:
                        continue
                    draws = (occasion_etas or {}).get(eta_name, {})
                    namespace[eta_name] = float(draws.get(value, 0.0))
        return namespace

    def resolve(
        self,
        fixed_effects: Mapping[str, float],
        random_effects: Mapping[str, float],
        covariate_values: Mapping[str, Any],
        occasion_etas: Optional[Mapping[str, Mapping[float, float]]] = None,
    ) -> Dict[str, float]:
        """Compute every structural parameter for one individual at one time.

        Args:
            fixed_effects: theta values by name
            random_effects: eta draws by name; declared etas not given are zero
            covariate_values: covariate values effective at this time
            occasion_etas: per IOV eta symbol, the draw for each occasion level

        Returns:
            Mapping of parameter name to value

        Raises:
            UnresolvedParameterError: If a formula references a symbol without a value
        """
        namespace: Dict[str, float] = {}
        for p in self.parameters.values():
            eta = p.random_effect_name
            if eta:
                namespace[eta] = 0.0
        namespace.update({k: float(v) for k, v in fixed_effects.items()})
        namespace.update({k: float(v) for k, v in random_effects.items()})
        namespace.update(self.covariate_namespace(covariate_values, occasion_etas))

        resolved: Dict[str, float] = {}
        for name in self.order:
            value = self.formulas[name].evaluate(namespace)
            namespace[name] = value
            resolved[name] = value
        return resolved

    def resolve_secondary(self, fixed_effects: Mapping[str, float]) -> Dict[str, float]:
        namespace = {k: float(v) for k, v in fixed_effects.items()}
        out: Dict[str, float] = {}
        for name, formula in self.secondary.items():
            out[name] = formula.evaluate(namespace)
            namespace[name] = out[name]
        return out


def _stable_topological(
    order: List[str], deps: Mapping[str, Iterable[str]], position: Mapping[str, int]
) -> List[str]:
    remaining = sorted(order, key=lambda n: position.get(n, len(position)))
    placed: List[str] = []
    placed_set: set = set()
    while remaining:
        for name in remaining:
            if set(deps[name]) <= placed_set:
                placed.append(name)
                placed_set.add(name)
                remaining.remove(name)
                break
    return placed
