"""Tests for task construction and random-effect sampling."""

import numpy as np
import pytest

from nlme_sim.data.dataset import Individual
from nlme_sim.simulation.tasks import (
    build_tasks,
    sample_occasion_effects,
    sample_random_effects,
    typical_effects,
)


@pytest.fixture
def individuals():
    return [Individual(id=i) for i in (11, 12, 13)]


def test_build_tasks_order(individuals):
    tasks = build_tasks(individuals, n_replicates=2, base_seed=5)
    assert [t.key for t in tasks] == [(11, 0), (11, 1), (12, 0), (12, 1), (13, 0), (13, 1)]
    assert {t.seed for t in tasks} == {5}


def test_task_streams_are_independent_of_scheduling(individuals):
    first = build_tasks(individuals, n_replicates=2, base_seed=5)
    second = list(reversed(build_tasks(individuals, n_replicates=2, base_seed=5)))
    draws_first = {t.key: t.rng().standard_normal(3).tolist() for t in first}
    draws_second = {t.key: t.rng().standard_normal(3).tolist() for t in second}
    assert draws_first == draws_second
    assert len({tuple(v) for v in draws_first.values()}) == len(draws_first)


def test_seed_changes_streams(individuals):
    a = build_tasks(individuals, base_seed=1)[0].rng().random()
    b = build_tasks(individuals, base_seed=2)[0].rng().random()
    assert a != b


def test_sample_random_effects(one_compartment):
    etas = sample_random_effects(one_compartment, np.random.default_rng(0))
    assert set(etas) == {"nV", "nCl"}
    again = sample_random_effects(one_compartment, np.random.default_rng(0))
    assert etas == again
    assert typical_effects(one_compartment) == {"nV": 0.0, "nCl": 0.0}


def test_sample_occasion_effects():
    individual = Individual(
        id=1,
        covariate_times=(0.0, 24.0, 48.0),
        covariate_rows=({"OCC": 1.0}, {"OCC": 2.0}, {"OCC": 1.0}),
    )
    draws = sample_occasion_effects({"nClxOCC": ("OCC", 0.04)}, individual, np.random.default_rng(3))
    assert set(draws["nClxOCC"]) == {1.0, 2.0}
    zero = sample_occasion_effects({"nClxOCC": ("OCC", 0.0)}, individual, np.random.default_rng(3))
    assert zero["nClxOCC"] == {1.0: 0.0, 2.0: 0.0}
