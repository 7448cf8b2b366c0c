"""nlme_sim: compartmental PK/PD model compiler and population simulator."""

__version__ = "1.0.0"

from .contracts.errors import NLMEError
from .domain.model import ModelDefinition
from .simulation.population import PopulationResult, PopulationSimulator

__all__ = [
    "__version__",
    "NLMEError",
    "ModelDefinition",
    "PopulationResult",
    "PopulationSimulator",
]
