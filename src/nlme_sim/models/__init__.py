"""Model components composed into one ODE system."""

from .base import ComponentType, ModelComponent
from .compartmental import Disposition, FirstOrderAbsorption
from .delay import ChainCoefficients, DistributedDelay, chain_coefficients
from .pd import EmaxResponse, HazardIntegrator, IndirectResponse

__all__ = [
    "ComponentType",
    "ModelComponent",
    "Disposition",
    "FirstOrderAbsorption",
    "ChainCoefficients",
    "DistributedDelay",
    "chain_coefficients",
    "EmaxResponse",
    "HazardIntegrator",
    "IndirectResponse",
]
