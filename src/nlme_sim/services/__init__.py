"""Services built on top of the simulation engine."""

from .artifacts import read_predictions, write_artifacts

__all__ = ["read_predictions", "write_artifacts"]
