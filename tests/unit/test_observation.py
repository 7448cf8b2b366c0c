"""Tests for observation models, record generation and likelihoods."""

import math

import numpy as np
import pytest
from scipy.stats import norm

from nlme_sim.contracts.types import ObservationKind, Trajectory
from nlme_sim.data.dataset import Individual, ObservedValue
from nlme_sim.domain.model import CategoricalObservation, ContinuousObservation, EventObservation
from nlme_sim.observation import (
    CategoricalModel,
    ContinuousModel,
    EventModel,
    build_observation_models,
    generate_records,
    individual_log_likelihood,
    total_log_likelihood,
)


def continuous(**kwargs):
    options = {"name": "CObs", "predictor": "C", "sigma": 0.5}
    options.update(kwargs)
    return ContinuousModel(ContinuousObservation(**options))


@pytest.fixture
def trajectory():
    t = np.array([1.0, 2.0, 4.0])
    return Trajectory(
        t=t,
        values={
            "C": np.array([8.0, 4.0, 1.0]),
            "Lambda_AE": np.array([0.1, 0.2, 0.4]),
            "h_AE": np.array([0.1, 0.1, 0.1]),
        },
        event_times={"AE": (1.5,)},
        metadata={"event_cumulative_hazard": {"AE": (0.15,)}},
    )


class TestContinuousModel:
    def test_error_models(self):
        assert continuous().standard_deviation(10.0) == 0.5
        assert continuous(error="proportional", sigma=0.1).standard_deviation(-10.0) == pytest.approx(1.0)
        combined = continuous(error="combined", sigma=0.3, sigma_proportional=0.1)
        assert combined.standard_deviation(4.0) == pytest.approx(0.5)

    def test_combined_requires_proportional_part(self):
        with pytest.raises(ValueError):
            ContinuousObservation(name="CObs", predictor="C", sigma=0.3, error="combined")

    def test_no_rng_returns_prediction(self):
        assert continuous().simulate(3.0, None) == (3.0, False)

    def test_residual_draws_reproducible(self):
        model = continuous()
        a = [model.simulate(3.0, np.random.default_rng(1)) for _ in range(2)]
        assert a[0] == a[1]
        assert a[0][0] != 3.0

    def test_log_additive_stays_positive(self):
        model = continuous(error="log_additive", sigma=1.0)
        rng = np.random.default_rng(3)
        assert all(model.simulate(2.0, rng)[0] > 0 for _ in range(50))

    def test_bql_censors_simulated_values(self):
        model = continuous(bql=True, lloq=1.0)
        value, censored = model.simulate(0.2, None)
        assert (value, censored) == (1.0, True)
        # per-row limit overrides the static one
        assert model.simulate(0.2, None, limit=0.1) == (0.2, False)

    def test_uncensored_likelihood(self):
        assert continuous().log_likelihood(3.5, 3.0) == pytest.approx(norm.logpdf(3.5, 3.0, 0.5))

    def test_censored_likelihood_is_cdf_at_limit(self):
        model = continuous(bql=True)
        ll = model.log_likelihood(0.0, 1.0, censored=True, limit=0.5)
        assert ll == pytest.approx(norm.logcdf((0.5 - 1.0) / 0.5))

    def test_log_additive_likelihood(self):
        model = continuous(error="log_additive", sigma=0.2)
        expected = norm.logpdf(math.log(2.5), math.log(2.0), 0.2) - math.log(2.5)
        assert model.log_likelihood(2.5, 2.0) == pytest.approx(expected)
        assert model.log_likelihood(2.5, 0.0) == -math.inf


class TestCategoricalModel:
    model = CategoricalModel(
        CategoricalObservation(name="Score", cut_points=["-1 + C", "1 + C"], categories=[0, 1, 2])
    )

    def test_probabilities_sum_to_one(self):
        probs = self.model.probabilities({"C": 0.3})
        assert probs.sum() == pytest.approx(1.0)
        assert probs[0] == pytest.approx(1.0 / (1.0 + math.exp(0.7)))
        assert np.all(probs >= 0)

    def test_draws_are_reproducible(self):
        probs = self.model.probabilities({"C": 0.0})
        first = [self.model.simulate(probs, np.random.default_rng(9)) for _ in range(2)]
        assert first[0] == first[1]
        assert first[0][0] in (0.0, 1.0, 2.0)

    def test_draw_frequencies(self):
        probs = self.model.probabilities({"C": 0.0})
        rng = np.random.default_rng(4)
        draws = [self.model.simulate(probs, rng)[0] for _ in range(4000)]
        freq = np.bincount(np.asarray(draws, dtype=int), minlength=3) / len(draws)
        np.testing.assert_allclose(freq, probs, atol=0.03)

    def test_likelihood(self):
        probs = self.model.probabilities({"C": 0.0})
        assert self.model.log_likelihood(1.0, probs) == pytest.approx(math.log(probs[1]))
        assert self.model.log_likelihood(5.0, probs) == -math.inf

    def test_category_count_mismatch(self):
        with pytest.raises(ValueError):
            CategoricalObservation(name="Score", cut_points=["C"], categories=[0, 1, 2])


def test_event_log_likelihood():
    model = EventModel(EventObservation(name="AE", hazard="0.1"))
    ll = model.log_likelihood([1.5, 4.0], [1.0, 0.0], [0.15, 0.4], [0.1, 0.1])
    assert ll == pytest.approx(-0.4 + math.log(0.1))


class TestRecords:
    def individual(self, **kwargs):
        return Individual(
            id=3,
            observations=(
                ObservedValue(time=2.0, name="CObs", value=4.2, order=2),
                ObservedValue(time=1.0, name="CObs", value=7.5, order=1),
            ),
            **kwargs,
        )

    def test_dataset_rows_in_row_order(self, trajectory):
        records = generate_records([continuous()], self.individual(), trajectory)
        assert [(r.time, r.predicted, r.value) for r in records] == [(1.0, 8.0, 8.0), (2.0, 4.0, 4.0)]
        assert all(r.kind is ObservationKind.CONTINUOUS for r in records)

    def test_residual_error_switch(self, trajectory):
        records = generate_records(
            [continuous()], self.individual(), trajectory, rng=np.random.default_rng(0), residual_error=False
        )
        assert [r.value for r in records] == [8.0, 4.0]

    def test_extra_times_skip_dataset_rows(self, trajectory):
        records = generate_records(
            [continuous()], self.individual(), trajectory, extra_times={"CObs": [1.0, 4.0]}
        )
        assert [r.time for r in records] == [1.0, 2.0, 4.0]

    def test_event_records(self, trajectory):
        models = build_observation_models([EventObservation(name="AE", hazard="0.1")])
        records = generate_records(models, Individual(id=3), trajectory, rng=np.random.default_rng(0), replicate=2)
        assert [(r.time, r.value, r.censored) for r in records] == [(1.5, 1.0, False), (4.0, 0.0, True)]
        assert records[0].predicted == pytest.approx(0.15)
        assert records[1].predicted == pytest.approx(0.4)
        assert all(r.replicate == 2 for r in records)

    def test_event_records_need_rng(self, trajectory):
        models = build_observation_models([EventObservation(name="AE", hazard="0.1")])
        assert generate_records(models, Individual(id=3), trajectory) == []

    def test_log_likelihood_per_observation(self, trajectory):
        individual = Individual(
            id=3,
            observations=(
                ObservedValue(time=1.0, name="CObs", value=7.5),
                ObservedValue(time=4.0, name="CObs", value=0.0, bql=True, limit=0.5),
                ObservedValue(time=2.0, name="AE", value=1.0),
                ObservedValue(time=4.0, name="AE", value=0.0),
            ),
        )
        models = build_observation_models([
            ContinuousObservation(name="CObs", predictor="C", sigma=0.5, bql=True),
            EventObservation(name="AE", hazard="0.1"),
        ])
        per_obs = individual_log_likelihood(models, individual, trajectory)
        expected_c = norm.logpdf(7.5, 8.0, 0.5) + norm.logcdf((0.5 - 1.0) / 0.5)
        assert per_obs["CObs"] == pytest.approx(expected_c)
        assert per_obs["AE"] == pytest.approx(-0.4 + math.log(0.1))
        assert total_log_likelihood(per_obs) == pytest.approx(expected_c - 0.4 + math.log(0.1))

    def test_nan_total_is_minus_infinity(self):
        assert total_log_likelihood({"CObs": float("nan")}) == -math.inf
