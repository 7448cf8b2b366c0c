"""Pytest configuration and fixtures."""

import sys
import tempfile
from pathlib import Path
from typing import Dict, Any

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

import pandas as pd
import pytest

from nlme_sim.config import AppConfig
from nlme_sim.domain import ModelDefinition


@pytest.fixture
def temp_dir():
    """Temporary directory for test artifacts."""
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def sample_config() -> AppConfig:
    """Sample configuration for testing."""
    return AppConfig()


@pytest.fixture
def one_compartment_dict() -> Dict[str, Any]:
    """One-compartment IV bolus model with body-weight covariate on Cl."""
    return {
        "name": "pk1c",
        "structure": {"compartments": 1, "absorption": "intravenous"},
        "parameters": [
            {"name": "V"},
            {"name": "Cl", "covariate_effects": [{"covariate": "BW", "form": "power"}]},
        ],
        "fixed_effects": [
            {"name": "tvV", "value": 10.0},
            {"name": "tvCl", "value": 1.0},
            {"name": "dCldBW", "value": 0.75},
        ],
        "random_effects": [{"names": ["nV", "nCl"], "diagonal": [0.09, 0.04]}],
        "covariates": [{"name": "BW", "center": "value", "center_value": 70.0}],
        "observations": [
            {"kind": "continuous", "name": "CObs", "predictor": "C", "error": "proportional", "sigma": 0.1}
        ],
    }


@pytest.fixture
def one_compartment(one_compartment_dict) -> ModelDefinition:
    return ModelDefinition.from_dict(one_compartment_dict)


@pytest.fixture
def simple_model() -> ModelDefinition:
    """One-compartment IV model without covariates, V=10, Cl=1."""
    return ModelDefinition.from_dict({
        "name": "simple",
        "parameters": [{"name": "V"}, {"name": "Cl"}],
        "fixed_effects": [{"name": "tvV", "value": 10.0}, {"name": "tvCl", "value": 1.0}],
        "random_effects": [{"names": ["nV", "nCl"], "diagonal": [0.0, 0.0]}],
        "observations": [
            {"kind": "continuous", "name": "CObs", "predictor": "C", "error": "additive", "sigma": 0.01}
        ],
    })


@pytest.fixture
def sample_dataset() -> pd.DataFrame:
    """Three individuals, 100 mg bolus at t=0, concentrations at 1, 2, 4, 8, 12 h."""
    rows = []
    for subject, bw in ((1, 60.0), (2, 70.0), (3, 85.0)):
        rows.append({"ID": subject, "TIME": 0.0, "A1": 100.0, "CObs": None, "BW": bw})
        for t in (1.0, 2.0, 4.0, 8.0, 12.0):
            rows.append({"ID": subject, "TIME": t, "A1": None, "CObs": 5.0, "BW": bw})
    return pd.DataFrame(rows)


@pytest.fixture
def sample_model_toml(temp_dir: Path, one_compartment: ModelDefinition) -> Path:
    path = temp_dir / "model.toml"
    path.write_text(one_compartment.to_toml())
    return path


@pytest.fixture
def sample_toml_config(temp_dir: Path, sample_model_toml: Path, sample_dataset: pd.DataFrame) -> Path:
    """Configuration file pointing at a model and dataset next to it."""
    sample_dataset.to_csv(temp_dir / "data.csv", index=False)
    config_content = f"""
model_path = "{sample_model_toml.name}"

[run]
seed = 42
threads = 2
artifact_dir = "{(temp_dir / 'results').as_posix()}"

[solver]
method = "LSODA"
rtol = 1e-8
atol = 1e-10

[data]
path = "data.csv"

[[tables]]
name = "profile"
times = [0.5, 6.0, 24.0]
variables = ["C", "CObs", "Cl"]
"""
    config_file = temp_dir / "nlme.toml"
    config_file.write_text(config_content)
    return config_file
