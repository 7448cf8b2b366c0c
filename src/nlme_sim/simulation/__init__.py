"""Simulation engine: ODE system assembly, integration and population runs."""

from .context import RunContext
from .population import PopulationResult, PopulationSimulator, simulate_population
from .simulator import IndividualSimulator, SimulationOutput
from .steady_state import SteadyStateInitializer
from .system import ODESystem
from .tasks import SimulationTask, build_tasks

__all__ = [
    "RunContext",
    "PopulationResult",
    "PopulationSimulator",
    "simulate_population",
    "IndividualSimulator",
    "SimulationOutput",
    "SteadyStateInitializer",
    "ODESystem",
    "SimulationTask",
    "build_tasks",
]
