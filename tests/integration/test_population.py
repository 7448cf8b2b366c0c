"""End-to-end population simulation tests."""

import math
import threading

import numpy as np
import pandas as pd
import pytest

from nlme_sim.config import AppConfig
from nlme_sim.contracts.errors import (
    CensoringInconsistencyError,
    ModelError,
    UnresolvedParameterError,
    ValidationError,
)
from nlme_sim.contracts.types import RunStatus
from nlme_sim.data.dataset import ColumnMapping, DoseRecord, Individual, ObservedValue, load_individuals
from nlme_sim.simulation import PopulationSimulator, simulate_population


def make_config(**run):
    data = {"solver": {"method": "LSODA", "rtol": 1e-8, "atol": 1e-10}, "run": {"seed": 42, **run}}
    return AppConfig.model_validate(data)


@pytest.fixture
def individuals(one_compartment, sample_dataset):
    mapping = ColumnMapping.automatic(one_compartment, sample_dataset.columns)
    return load_individuals(sample_dataset, one_compartment, mapping)


class TestPopulationRun:
    def test_every_individual_completes(self, one_compartment, individuals):
        result = simulate_population(one_compartment, individuals, make_config())
        assert [r.status for r in result.results] == [RunStatus.COMPLETED] * 3
        assert result.summary()["completed"] == 3
        assert result.summary()["failed"] == 0

        predictions = result.predictions_frame()
        assert len(predictions) == 15
        assert list(predictions["ID"].unique()) == [1, 2, 3]
        assert (predictions["PRED"] > 0).all()
        assert not (predictions["DV"] == predictions["PRED"]).all()

    def test_typical_predictions(self, one_compartment, individuals):
        config = make_config(sample_random_effects=False, residual_error=False)
        result = simulate_population(one_compartment, individuals, config)
        frame = result.predictions_frame()
        reference = frame[frame["ID"] == 2]
        expected = [10.0 * math.exp(-0.1 * t) for t in reference["TIME"]]
        np.testing.assert_allclose(reference["PRED"], expected, rtol=1e-5)
        assert (frame["DV"] == frame["PRED"]).all()
        params = result.parameters_frame().set_index("ID")
        assert params.loc[2, "Cl"] == pytest.approx(1.0)
        assert params.loc[3, "Cl"] == pytest.approx((85.0 / 70.0) ** 0.75)

    def test_replicates(self, one_compartment, individuals):
        result = simulate_population(one_compartment, individuals, make_config(n_replicates=2))
        assert [(r.individual_id, r.replicate) for r in result.results] == [
            (1, 0), (1, 1), (2, 0), (2, 1), (3, 0), (3, 1)
        ]
        params = result.parameters_frame()
        first = params[params["ID"] == 1].set_index("REPLICATE")
        assert first.loc[0, "nCl"] != first.loc[1, "nCl"]

    def test_results_do_not_depend_on_thread_count(self, one_compartment, individuals):
        serial = simulate_population(one_compartment, individuals, make_config(threads=1, n_replicates=2))
        threaded = simulate_population(one_compartment, individuals, make_config(threads=3, n_replicates=2))
        pd.testing.assert_frame_equal(serial.predictions_frame(), threaded.predictions_frame())
        pd.testing.assert_frame_equal(serial.parameters_frame(), threaded.parameters_frame())

    def test_seed_changes_results(self, one_compartment, individuals):
        a = simulate_population(one_compartment, individuals, make_config(seed=1)).predictions_frame()
        b = simulate_population(one_compartment, individuals, make_config(seed=2)).predictions_frame()
        assert not np.allclose(a["DV"], b["DV"])

    def test_failure_is_isolated(self, one_compartment, individuals):
        broken = Individual(
            id=99,
            doses=(DoseRecord(time=0.0, amount=100.0, target="Aa"),),
            observations=(ObservedValue(time=1.0, name="CObs", value=1.0),),
            covariate_times=(0.0,),
            covariate_rows=({"BW": 70.0},),
        )
        population = [individuals[0], broken, individuals[1]]
        result = simulate_population(one_compartment, population, make_config(threads=2))
        statuses = {r.individual_id: r.status for r in result.results}
        assert statuses == {1: RunStatus.COMPLETED, 99: RunStatus.FAILED, 2: RunStatus.COMPLETED}

        failed = result.results[1]
        assert "ModelError" in failed.error
        assert failed.records == ()
        status = result.status_frame().set_index("ID")
        assert status.loc[99, "STATUS"] == "failed"
        assert status.loc[1, "ERROR"] == ""

    def test_cancellation(self, one_compartment, individuals):
        cancel = threading.Event()
        cancel.set()
        result = simulate_population(one_compartment, individuals, make_config(), cancel=cancel)
        assert result.summary()["cancelled"] == 3
        assert result.predictions_frame().empty

    def test_steady_state_warning_status(self, simple_model):
        individual = Individual(
            id=1,
            doses=(DoseRecord(time=0.0, amount=100.0, target="A1", ii=24.0, ss=True),),
            observations=(ObservedValue(time=24.0, name="CObs", value=1.0),),
        )
        config = AppConfig.model_validate({
            "steady_state": {"policy": "periods", "tolerance": 1e-14, "max_periods": 2}
        })
        result = simulate_population(simple_model, [individual], config)
        assert result.results[0].status is RunStatus.COMPLETED_WITH_WARNINGS
        assert "not reached" in result.status_frame().loc[0, "WARNINGS"]


class TestPrepare:
    def test_bql_row_without_limit(self, simple_model):
        model = simple_model.revise(
            observations=[{"kind": "continuous", "name": "CObs", "predictor": "C", "sigma": 0.1, "bql": True}]
        )
        individual = Individual(
            id=5,
            doses=(DoseRecord(time=0.0, amount=1.0, target="A1"),),
            observations=(ObservedValue(time=1.0, name="CObs", value=0.0, bql=True),),
        )
        with pytest.raises(CensoringInconsistencyError, match="no quantification limit"):
            PopulationSimulator(model, make_config()).prepare([individual])

    def test_bql_without_any_limit(self, simple_model):
        model = simple_model.revise(
            observations=[{"kind": "continuous", "name": "CObs", "predictor": "C", "sigma": 0.1, "bql": True}]
        )
        observed = Individual(
            id=5,
            doses=(DoseRecord(time=0.0, amount=1.0, target="A1"),),
            observations=(ObservedValue(time=1.0, name="CObs", value=0.08),),
        )
        dose_only = Individual(id=6, doses=(DoseRecord(time=0.0, amount=1.0, target="A1"),))
        for individuals in ([observed], [dose_only]):
            with pytest.raises(CensoringInconsistencyError, match="no quantification limit"):
                PopulationSimulator(model, make_config()).prepare(individuals)

        limited = model.revise(
            observations=[{
                "kind": "continuous", "name": "CObs", "predictor": "C", "sigma": 0.1, "bql": True, "lloq": 0.1,
            }]
        )
        PopulationSimulator(limited, make_config()).prepare([observed, dose_only])

    @pytest.mark.parametrize("changes, error", [
        ({"observations": [{"kind": "continuous", "name": "CObs", "predictor": "A2 / 10", "sigma": 0.1}]},
         UnresolvedParameterError),
        ({"reset": {"low": 1, "high": 1, "compartments": ["A9"]}}, ModelError),
    ])
    def test_structural_errors_stop_before_integration(self, simple_model, changes, error):
        individual = Individual(
            id=1,
            doses=(DoseRecord(time=0.0, amount=1.0, target="A1"),),
            observations=(ObservedValue(time=1.0, name="CObs", value=0.1),),
            reset_flags=((1.0, 1.0, 2),),
        )
        simulator = PopulationSimulator(simple_model.revise(**changes), make_config())
        with pytest.raises(error):
            simulator.prepare([individual])
        assert simulator.simulator is None

    def test_unknown_table_variable(self, one_compartment, individuals):
        config = AppConfig.model_validate({"tables": [{"name": "t", "times": [1.0], "variables": ["Q"]}]})
        with pytest.raises(ValidationError, match="unknown variable Q"):
            PopulationSimulator(one_compartment, config).prepare(individuals)


class TestTables:
    def test_table_rows(self, one_compartment, individuals):
        config = AppConfig.model_validate({
            "run": {"seed": 3},
            "solver": {"method": "LSODA", "rtol": 1e-8, "atol": 1e-10},
            "tables": [{"name": "profile", "times": [0.5, 6.0, 24.0], "variables": ["C", "CObs", "Cl"]}],
        })
        result = simulate_population(one_compartment, individuals, config)
        assert result.table_names() == ["profile.csv"]

        table = result.table_frame("profile.csv")
        assert list(table.columns) == ["ID", "REPLICATE", "TIME", "C", "CObs", "Cl"]
        assert len(table) == 9
        assert table["C"].notna().all()
        assert (table["CObs"] != table["C"]).any()

        # table-only times do not leak into the dataset predictions
        assert len(result.predictions_frame()) == 15
        assert set(result.predictions_frame()["TIME"]) == {1.0, 2.0, 4.0, 8.0, 12.0}
