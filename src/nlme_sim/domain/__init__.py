"""Model definition, formulas and the parameter resolver."""

from .formula import Formula, ilogit
from .parameters import (
    Covariate,
    CovariateEffect,
    FixedEffect,
    ParameterResolver,
    RandomEffectBlock,
    SecondaryParameter,
    StructuralParameter,
)
from .model import (
    CategoricalObservation,
    ContinuousObservation,
    DelayConfig,
    EmaxConfig,
    EventObservation,
    IndirectConfig,
    ModelDefinition,
    ResetRule,
    StructureConfig,
)

__all__ = [
    "Formula",
    "ilogit",
    "Covariate",
    "CovariateEffect",
    "FixedEffect",
    "ParameterResolver",
    "RandomEffectBlock",
    "SecondaryParameter",
    "StructuralParameter",
    "CategoricalObservation",
    "ContinuousObservation",
    "DelayConfig",
    "EmaxConfig",
    "EventObservation",
    "IndirectConfig",
    "ModelDefinition",
    "ResetRule",
    "StructureConfig",
]
