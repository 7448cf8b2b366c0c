"""Observation models and record generation."""

from .models import (
    CategoricalModel,
    ContinuousModel,
    EventModel,
    ObservationModel,
    build_observation_models,
)
from .records import generate_records, individual_log_likelihood, total_log_likelihood

__all__ = [
    "CategoricalModel",
    "ContinuousModel",
    "EventModel",
    "ObservationModel",
    "build_observation_models",
    "generate_records",
    "individual_log_likelihood",
    "total_log_likelihood",
]
