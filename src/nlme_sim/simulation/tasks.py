"""Deterministic per-individual task descriptors."""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Mapping, Sequence

import numpy as np

from ..data.dataset import Individual
from ..domain.model import ModelDefinition


@dataclass(frozen=True)
class SimulationTask:
    """Descriptor for a single individual/replicate simulation run."""

    index: int
    """Position of the individual in the dataset"""

    individual: Individual
    replicate: int = 0
    seed: int = 123

    @property
    def key(self):
        return (self.individual.id, self.replicate)

    def rng(self) -> np.random.Generator:
        """Generator that depends only on (seed, index, replicate)."""
        sequence = np.random.SeedSequence(self.seed, spawn_key=(self.index, self.replicate))
        return np.random.default_rng(sequence)


def build_tasks(
    individuals: Sequence[Individual],
    n_replicates: int = 1,
    base_seed: int = 123,
) -> List[SimulationTask]:
    """Create deterministic tasks for every individual and replicate.

    Args:
        individuals: Individuals in dataset order
        n_replicates: Replicates per individual
        base_seed: Run seed; task streams are spawned from it

    Returns:
        Tasks ordered by individual, then replicate
    """
    return [
        SimulationTask(index=i, individual=ind, replicate=r, seed=base_seed)
        for i, ind in enumerate(individuals)
        for r in range(n_replicates)
    ]


def sample_random_effects(model: ModelDefinition, rng: np.random.Generator) -> Dict[str, float]:
    """One eta vector, block by block in declaration order."""
    etas: Dict[str, float] = {}
    for block in model.random_effects:
        etas.update(block.sample(rng))
    return etas


def sample_occasion_effects(
    occasion_etas: Mapping[str, tuple],
    individual: Individual,
    rng: np.random.Generator,
) -> Dict[str, Dict[float, float]]:
    """Independent draws per occasion level seen in the individual's records.

    Args:
        occasion_etas: IOV eta symbol -> (occasion covariate, variance)
        individual: Individual whose occasion levels are sampled
        rng: Task generator

    Returns:
        IOV eta symbol -> {occasion level: draw}
    """
    draws: Dict[str, Dict[float, float]] = {}
    for eta_name in sorted(occasion_etas):
        covariate, variance = occasion_etas[eta_name]
        levels = sorted({
            float(row[covariate]) for row in individual.covariate_rows
            if row.get(covariate) is not None and not np.isnan(row[covariate])
        })
        sd = float(np.sqrt(variance))
        draws[eta_name] = {lvl: sd * float(rng.standard_normal()) for lvl in levels}
    return draws


def typical_effects(model: ModelDefinition) -> Dict[str, float]:
    return {name: 0.0 for name in model.random_effect_names}
