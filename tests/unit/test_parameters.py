"""Tests for the parameter model and resolver."""

import math

import numpy as np
import pytest

from nlme_sim.contracts.errors import ModelError, UnresolvedParameterError
from nlme_sim.domain.parameters import (
    Covariate,
    CovariateEffect,
    FixedEffect,
    ParameterResolver,
    RandomEffectBlock,
    SecondaryParameter,
    StructuralParameter,
    indicator_symbol,
    level_label,
)


class TestRandomEffects:
    def test_diagonal_block(self):
        block = RandomEffectBlock(names=["nV", "nCl"], diagonal=[0.09, 0.04])
        np.testing.assert_allclose(block.covariance(), np.diag([0.09, 0.04]))

    def test_full_block_must_be_positive_semidefinite(self):
        with pytest.raises(ValueError, match="positive semi-definite"):
            RandomEffectBlock(names=["a", "b"], matrix=[[1.0, 2.0], [2.0, 1.0]])

    def test_full_block_must_be_symmetric(self):
        with pytest.raises(ValueError, match="symmetric"):
            RandomEffectBlock(names=["a", "b"], matrix=[[1.0, 0.1], [0.2, 1.0]])

    def test_sampling_is_reproducible(self):
        block = RandomEffectBlock(names=["a", "b"], matrix=[[0.1, 0.05], [0.05, 0.2]])
        first = block.sample(np.random.default_rng(5))
        second = block.sample(np.random.default_rng(5))
        assert first == second

    def test_sample_covariance(self):
        block = RandomEffectBlock(names=["a", "b"], matrix=[[0.1, 0.05], [0.05, 0.2]])
        rng = np.random.default_rng(0)
        draws = np.array([[d["a"], d["b"]] for d in (block.sample(rng) for _ in range(20000))])
        np.testing.assert_allclose(np.cov(draws.T), block.covariance(), atol=0.01)

    def test_fixed_effect_bounds(self):
        with pytest.raises(ValueError, match="below lower bound"):
            FixedEffect(name="tvV", value=-1.0, lower=0.0)


class TestStructuralParameter:
    def test_default_names(self):
        assert StructuralParameter(name="Cl").fixed_effect_name == "tvCl"
        assert StructuralParameter(name="Cl").random_effect_name == "nCl"
        assert StructuralParameter(name="F", style="logitnormal").fixed_effect_name == "tvlogitF"
        assert StructuralParameter(name="Ka", style="lognormal2").fixed_effect_name == "tvlogKa"
        assert StructuralParameter(name="Ka", has_random_effect=False).random_effect_name is None

    def test_custom_requires_formula(self):
        with pytest.raises(ValueError, match="requires a formula"):
            StructuralParameter(name="X", style="custom")

    def test_level_labels(self):
        assert level_label(1.0) == "1"
        assert level_label(2.5) == "2p5"
        assert indicator_symbol("SEX", 1.0) == "SEX__eq_1"


class TestParameterResolver:
    def test_lognormal_with_power_covariate(self):
        cov = Covariate(name="BW", center="value", center_value=70.0)
        cl = StructuralParameter(name="Cl", covariate_effects=[CovariateEffect(covariate="BW")])
        resolver = ParameterResolver([cl], [cov])

        out = resolver.resolve({"tvCl": 2.0, "dCldBW": 0.75}, {"nCl": 0.1}, {"BW": 140.0})
        assert out["Cl"] == pytest.approx(2.0 * 2 ** 0.75 * math.exp(0.1))

    def test_etas_default_to_zero(self):
        resolver = ParameterResolver([StructuralParameter(name="V")])
        assert resolver.resolve({"tvV": 10.0}, {}, {})["V"] == pytest.approx(10.0)

    def test_normal_and_logit_styles(self):
        params = [
            StructuralParameter(name="E0", style="normal"),
            StructuralParameter(name="F", style="logitnormal"),
        ]
        out = ParameterResolver(params).resolve({"tvE0": 5.0, "tvlogitF": 0.0}, {"nE0": 1.0}, {})
        assert out["E0"] == pytest.approx(6.0)
        assert out["F"] == pytest.approx(0.5)

    def test_categorical_covariate(self):
        sex = Covariate(name="SEX", type="categorical", levels=[0.0, 1.0])
        v = StructuralParameter(name="V", covariate_effects=[CovariateEffect(covariate="SEX")])
        resolver = ParameterResolver([v], [sex])
        theta = {"tvV": 10.0, "dVdSEX1": math.log(1.5)}

        assert resolver.resolve(theta, {}, {"SEX": 0.0})["V"] == pytest.approx(10.0)
        assert resolver.resolve(theta, {}, {"SEX": 1.0})["V"] == pytest.approx(15.0)

    def test_mean_center_needs_population_value(self):
        cov = Covariate(name="AGE", center="mean")
        p = StructuralParameter(name="Cl", covariate_effects=[CovariateEffect(covariate="AGE")])
        with pytest.raises(ModelError, match="no population value"):
            ParameterResolver([p], [cov])
        resolver = ParameterResolver([p], [cov], centers={"AGE": 40.0})
        out = resolver.resolve({"tvCl": 1.0, "dCldAGE": 1.0}, {}, {"AGE": 80.0})
        assert out["Cl"] == pytest.approx(2.0)

    def test_occasion_effects(self):
        occ = Covariate(name="OCC", type="occasion", levels=[1.0, 2.0])
        cl = StructuralParameter(
            name="Cl", covariate_effects=[CovariateEffect(covariate="OCC", iov_variance=0.05)]
        )
        resolver = ParameterResolver([cl], [occ])
        assert resolver.occasion_etas == {"nClxOCC": ("OCC", 0.05)}

        draws = {"nClxOCC": {1.0: 0.0, 2.0: math.log(2.0)}}
        assert resolver.resolve({"tvCl": 1.0}, {}, {"OCC": 1.0}, draws)["Cl"] == pytest.approx(1.0)
        assert resolver.resolve({"tvCl": 1.0}, {}, {"OCC": 2.0}, draws)["Cl"] == pytest.approx(2.0)

    def test_custom_parameters_resolve_in_dependency_order(self):
        params = [
            StructuralParameter(name="Ke", style="custom", formula="Cl / V"),
            StructuralParameter(name="Cl"),
            StructuralParameter(name="V"),
        ]
        resolver = ParameterResolver(params)
        assert resolver.order.index("Ke") > resolver.order.index("Cl")
        out = resolver.resolve({"tvCl": 2.0, "tvV": 10.0}, {}, {})
        assert out["Ke"] == pytest.approx(0.2)

    def test_circular_definition(self):
        params = [
            StructuralParameter(name="A", style="custom", formula="B + 1"),
            StructuralParameter(name="B", style="custom", formula="A + 1"),
        ]
        with pytest.raises(ModelError, match="Circular"):
            ParameterResolver(params)

    def test_validate_reports_unknown_symbols(self):
        p = StructuralParameter(name="X", style="custom", formula="tvX * unknownThing")
        resolver = ParameterResolver([p])
        with pytest.raises(UnresolvedParameterError) as exc:
            resolver.validate(["tvX"], [])
        assert exc.value.symbols == ("unknownThing",)

    def test_resolve_missing_fixed_effect(self):
        resolver = ParameterResolver([StructuralParameter(name="V")])
        with pytest.raises(UnresolvedParameterError):
            resolver.resolve({}, {}, {})

    def test_secondary_parameters(self):
        resolver = ParameterResolver(
            [StructuralParameter(name="V")],
            secondary=[SecondaryParameter(name="tvMeanDelay", formula="exp(tvlogMeanDelay)")],
        )
        out = resolver.resolve_secondary({"tvlogMeanDelay": math.log(3.0)})
        assert out["tvMeanDelay"] == pytest.approx(3.0)
