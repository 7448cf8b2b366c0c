"""Dataset loading and column mapping."""

from .dataset import (
    ColumnMapping,
    DoseRecord,
    Individual,
    ObservedValue,
    covariate_centers,
    load_individuals,
    read_dataset,
)

__all__ = [
    "ColumnMapping",
    "DoseRecord",
    "Individual",
    "ObservedValue",
    "covariate_centers",
    "load_individuals",
    "read_dataset",
]
