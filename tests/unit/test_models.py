"""Tests for model components and their composition."""

import math

import numpy as np
import pytest
from scipy.integrate import solve_ivp

from nlme_sim.contracts.errors import ModelError
from nlme_sim.domain import DelayConfig, EmaxConfig, IndirectConfig, ModelDefinition
from nlme_sim.models import (
    ChainCoefficients,
    Disposition,
    DistributedDelay,
    EmaxResponse,
    FirstOrderAbsorption,
    IndirectResponse,
    chain_coefficients,
)
from nlme_sim.simulation.system import ODESystem


class TestDisposition:
    def test_two_compartment_mass_balance(self):
        comp = Disposition(compartments=2, elimination_compartment=True)
        params = {"V": 10.0, "Cl": 1.0, "V2": 20.0, "Cl2": 2.0}
        state = np.array([50.0, 10.0, 0.0])
        deriv = comp.compute_derivatives(0.0, state, {}, params, {})
        assert deriv.sum() == pytest.approx(0.0)

    def test_michaelis_menten(self):
        comp = Disposition(elimination="michaelis_menten")
        params = {"V": 1.0, "Vmax": 10.0, "Km": 2.0}
        (deriv,) = comp.compute_derivatives(0.0, np.array([2.0]), {}, params, {})
        assert deriv == pytest.approx(-5.0)
        assert not comp.is_linear()

    def test_infusion_input(self):
        comp = Disposition()
        (deriv,) = comp.compute_derivatives(0.0, np.array([0.0]), {}, {"V": 1.0, "Cl": 1.0}, {"A1": 7.0})
        assert deriv == pytest.approx(7.0)

    def test_rejects_bad_compartment_count(self):
        with pytest.raises(ValueError):
            Disposition(compartments=4)


def test_first_order_absorption_publishes_rate():
    comp = FirstOrderAbsorption()
    out = comp.compute_outputs(np.array([10.0]), {}, {"Ka": 0.5})
    assert out[FirstOrderAbsorption.OUTPUT] == pytest.approx(5.0)
    assert comp.accepts_dose("Aa")


class TestDelayChain:
    def test_integer_shape_is_exact(self):
        coeffs = chain_coefficients(4.0, 2.0, 10)
        assert coeffs.rate == pytest.approx(0.5)
        assert coeffs.weights[1] == 1.0
        assert sum(coeffs.weights) == pytest.approx(1.0)

    @pytest.mark.parametrize("shape", [0.7, 2.5, 7.3])
    def test_mixture_preserves_mean(self, shape):
        coeffs = chain_coefficients(6.0, shape, 40)
        assert isinstance(coeffs, ChainCoefficients)
        assert sum(coeffs.weights) == pytest.approx(1.0)
        assert coeffs.mean == pytest.approx(6.0)

    def test_mixture_variance_approaches_gamma(self):
        coeffs = chain_coefficients(6.0, 2.5, 400)
        assert coeffs.variance == pytest.approx(6.0 ** 2 / 2.5, rel=0.05)

    def test_nonpositive_inputs(self):
        with pytest.raises(ModelError):
            chain_coefficients(0.0, 2.0, 10)
        with pytest.raises(ModelError):
            chain_coefficients(1.0, -1.0, 10)

    def test_history_value_at_time_zero(self):
        delay = DistributedDelay(DelayConfig(name="D", signal="S", mean_delay="tau", shape="k", hist=3.0))
        state = delay.initialize_state({})
        params = {"tau": 2.0, "k": 1.7}
        assert delay.compute_outputs(state, {"S": 3.0}, params)["D"] == pytest.approx(3.0)
        # constant signal equal to the history is an equilibrium
        deriv = delay.compute_derivatives(0.0, state, {"S": 3.0}, params, {})
        np.testing.assert_allclose(deriv, 0.0, atol=1e-12)

    def test_shape_one_matches_exponential_lag(self):
        delay = DistributedDelay(
            DelayConfig(name="D", signal="S", mean_delay="tau", shape="k", num_ode=5)
        )
        params = {"tau": 2.0, "k": 1.0}

        def rhs(t, y):
            return delay.compute_derivatives(t, y, {"S": 1.0}, params, {})

        sol = solve_ivp(rhs, (0.0, 5.0), delay.initialize_state(params), rtol=1e-10, atol=1e-12)
        out = delay.compute_outputs(sol.y[:, -1], {}, params)["D"]
        assert out == pytest.approx(1.0 - math.exp(-5.0 / 2.0), rel=1e-6)

    def test_shape_offset(self):
        delay = DistributedDelay(
            DelayConfig(name="D", signal="S", mean_delay="tau", shape="km1", shape_offset=1.0, num_ode=5)
        )
        coeffs = delay.coefficients({"tau": 3.0, "km1": 1.0})
        assert coeffs.weights[1] == 1.0


class TestPharmacodynamics:
    def test_sigmoid_emax_with_baseline(self):
        comp = EmaxResponse(EmaxConfig(sigmoid=True, baseline=True))
        params = {"E0": 10.0, "Emax": 100.0, "EC50": 2.0, "Gam": 2.0}
        assert comp.compute_outputs([], {"C": 2.0}, params)["E"] == pytest.approx(60.0)

    def test_imax(self):
        comp = EmaxResponse(EmaxConfig(inhibitory=True))
        params = {"Imax": 0.8, "IC50": 1.0}
        assert comp.compute_outputs([], {"C": 1.0}, params)["E"] == pytest.approx(0.6)

    def test_indirect_response_starts_at_baseline(self):
        comp = IndirectResponse(IndirectConfig(effect="inhibition", acts_on="buildup"))
        params = {"Kin": 10.0, "Kout": 0.5, "Imax": 1.0, "IC50": 1.0}
        state = comp.initialize_state(params)
        assert state[0] == pytest.approx(20.0)
        (deriv,) = comp.compute_derivatives(0.0, state, {"C": 0.0}, params, {})
        assert deriv == pytest.approx(0.0)
        (deriv,) = comp.compute_derivatives(0.0, state, {"C": 1.0}, params, {})
        assert deriv < 0


class TestODESystem:
    def test_one_compartment_layout(self, simple_model):
        system = ODESystem.from_model(simple_model)
        assert system.state_names == ["A1"]
        assert system.dose_targets() == {"A1"}
        assert system.is_linear()

    def test_gamma_absorption_routes_doses_through_chain(self, simple_model):
        model = simple_model.revise(structure={
            "absorption": "gamma",
            "absorption_delay": {"name": "Ain", "mean_delay": "V", "shape": "3", "num_ode": 4},
        })
        system = ODESystem.from_model(model)
        assert system.state_names[:4] == ["Ain_1", "Ain_2", "Ain_3", "Ain_4"]
        assert system.dose_targets() == {"A1"}

        y = system.initial_state({"V": 10.0, "Cl": 1.0})
        system.apply_bolus(y, "A1", 100.0, {"V": 10.0, "Cl": 1.0})
        assert y[system.index("A1")] == 0.0
        assert y[0] > 0

    def test_missing_dependency(self):
        delay = DistributedDelay(DelayConfig(name="D", signal="E", mean_delay="1", shape="1"))
        with pytest.raises(ModelError, match="requires"):
            ODESystem([Disposition(), delay], external={"V", "Cl"})

    def test_reset_all_amounts(self, simple_model):
        system = ODESystem.from_model(simple_model)
        y = np.array([42.0])
        system.reset(y, None, 0.0)
        assert y[0] == 0.0
        with pytest.raises(ModelError):
            system.reset(y, ["A3"], 0.0)

    def test_full_model_with_pd_and_events(self, simple_model):
        model = simple_model.revise(
            pd={"type": "indirect", "effect": "inhibition", "acts_on": "loss"},
            observations=[
                {"kind": "continuous", "name": "CObs", "predictor": "C", "sigma": 0.1},
                {"kind": "event", "name": "AE", "hazard": "0.01 * C"},
            ],
        )
        system = ODESystem.from_model(model)
        assert system.state_names == ["A1", "E", "Lambda_AE"]
        assert not system.is_linear()
        assert list(system.steady_state_mask()) == [True, True, False]
