"""Numerical solvers and their settings."""

from .base import SolverBase, ODESolverBase
from .ode_solver import ODESolver
from .solver_config import SolverSettings, SteadyStateSettings

__all__ = ["SolverBase", "ODESolverBase", "ODESolver", "SolverSettings", "SteadyStateSettings"]
