"""Main API facade for nlme_sim.

This module provides the primary interface used by the CLI and by
scripts. All high-level operations flow through these functions.
"""

from __future__ import annotations
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd
import pydantic
import structlog

from .config import AppConfig, default_config, load_config, validate_config
from .contracts.errors import ConfigError, ModelError
from .data.dataset import ColumnMapping, Individual, covariate_centers, load_individuals, read_dataset
from .domain.model import ModelDefinition
from .observation.models import build_observation_models
from .observation.records import individual_log_likelihood, total_log_likelihood
from .services.artifacts import write_artifacts
from .simulation.context import RunContext
from .simulation.population import PopulationResult, PopulationSimulator
from .simulation.simulator import IndividualSimulator
from .simulation.system import ODESystem

logger = structlog.get_logger()


def get_default_config() -> AppConfig:
    """Get default configuration."""
    return default_config()


def load_config_from_file(path: Union[str, Path]) -> AppConfig:
    """Load and validate configuration from file.

    Raises:
        ConfigError: If configuration cannot be loaded or is invalid
    """
    config = load_config(path)
    validate_config(config)
    return config


def validate_configuration(config: AppConfig, model: Optional[ModelDefinition] = None) -> List[str]:
    """Validate configuration, optionally against the model it will run.

    Returns:
        Warnings

    Raises:
        ValidationError: If configuration has errors
    """
    return validate_config(config, model)


def load_model(path: Union[str, Path]) -> ModelDefinition:
    """Load a model definition from TOML.

    Raises:
        ConfigError: If the file is missing or not valid TOML
        ModelError: If the definition is structurally invalid
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Model file not found: {path}", details={"path": str(path)})
    try:
        model = ModelDefinition.from_toml_file(path)
    except pydantic.ValidationError as e:
        raise ModelError(f"Invalid model definition in {path}: {e}", details={"path": str(path)}) from e
    except (OSError, ValueError) as e:
        raise ConfigError(f"Failed to read model from {path}: {e}", details={"path": str(path)}) from e
    logger.info("Model loaded", model=model.name, version=model.version, path=str(path))
    return model


def load_dataset(
    config: AppConfig,
    model: ModelDefinition,
    frame: Optional[pd.DataFrame] = None,
) -> Tuple[pd.DataFrame, ColumnMapping, List[Individual]]:
    """Read the dataset and bind it to the model through a column mapping.

    Args:
        config: Configuration (``data.path``, ``data.columns``)
        model: Model definition
        frame: Dataset already in memory; overrides ``data.path``

    Raises:
        ConfigError: If no dataset is available
        ColumnMappingError: If the mapping does not fit
    """
    if frame is None:
        if not config.data.path:
            raise ConfigError("No dataset configured (data.path)")
        frame = read_dataset(config.data.path)
    if config.data.automatic_mapping:
        mapping = ColumnMapping.automatic(model, frame.columns, **config.data.columns)
    else:
        mapping = ColumnMapping(columns=dict(config.data.columns))
    individuals = load_individuals(frame, model, mapping)
    return frame, mapping, individuals


def resolve_model(config: AppConfig, model: Optional[ModelDefinition] = None) -> ModelDefinition:
    if model is not None:
        return model
    if not config.model_path:
        raise ConfigError("No model given and model_path is not configured")
    return load_model(config.model_path)


def run_population(
    config: AppConfig,
    model: Optional[ModelDefinition] = None,
    frame: Optional[pd.DataFrame] = None,
    run_id: Optional[str] = None,
    artifact_directory: Optional[Union[str, Path]] = None,
    output_times: Sequence[float] = (),
    cancel: Optional[threading.Event] = None,
    write: bool = True,
) -> PopulationResult:
    """Run a population simulation end to end.

    Args:
        config: Application configuration
        model: Model definition (loaded from ``config.model_path`` if None)
        frame: Dataset (read from ``config.data.path`` if None)
        run_id: Optional run identifier (generated if not provided)
        artifact_directory: Directory for artifacts (config default if not provided)
        output_times: Extra reporting times for every individual
        cancel: Event that stops scheduling further individuals
        write: Write CSV/JSON artifacts

    Returns:
        Population result

    Raises:
        NLMEError: Any validation error found before integration
    """
    if run_id is None:
        run_id = f"run_{uuid.uuid4().hex[:8]}"
    model = resolve_model(config, model)
    frame, mapping, individuals = load_dataset(config, model, frame)

    artifact_dir = Path(artifact_directory) if artifact_directory else Path(config.run.artifact_dir)
    context = RunContext(run_id, seed=config.run.seed, threads=config.run.threads, artifact_dir=artifact_dir)
    context.logger.info("Starting population simulation", model=model.name, individuals=len(individuals))

    simulator = PopulationSimulator(model, config, context=context)
    simulator.prepare(individuals, frame=frame, mapping=mapping)
    result = simulator.run(individuals, output_times=output_times, cancel=cancel)

    if write:
        with context.time_stage("write"):
            write_artifacts(
                result,
                artifact_dir / run_id,
                metadata={
                    "model": model.name,
                    "model_version": model.version,
                    "config": config.model_dump(mode="json"),
                    **context.get_runtime_metadata(),
                },
            )
    return result


def compute_log_likelihood(
    model: ModelDefinition,
    individuals: Sequence[Individual],
    config: Optional[AppConfig] = None,
    random_effects: Optional[Mapping[Any, Mapping[str, float]]] = None,
) -> pd.DataFrame:
    """Observed-data log-likelihood per individual at given etas.

    Args:
        model: Model definition (its fixed effects are used)
        individuals: Individuals with observed values
        config: Solver and steady-state settings
        random_effects: Per individual id, eta values (zero if absent)

    Returns:
        One row per individual: ID, one column per observation, LL total
    """
    config = config or AppConfig()
    resolver = model.validate_model(covariate_centers(model, individuals))
    simulator = IndividualSimulator(
        model, resolver, config.solver, config.steady_state, ODESystem.from_model(model)
    )
    obs_models = build_observation_models(model.observations)
    rows = []
    for individual in individuals:
        etas = dict((random_effects or {}).get(individual.id, {}))
        output = simulator.simulate(individual, model.fixed_effect_values, etas)
        per_obs = individual_log_likelihood(obs_models, individual, output.trajectory)
        rows.append({"ID": individual.id, **per_obs, "LL": total_log_likelihood(per_obs)})
    return pd.DataFrame(rows)


def describe_model(model: ModelDefinition) -> Dict[str, Any]:
    """Summary of a model definition for display."""
    system = ODESystem.from_model(model)
    return {
        "name": model.name,
        "version": model.version,
        "linear": model.is_linear(),
        "states": list(system.state_names),
        "components": system.describe(),
        "parameters": [p.name for p in model.parameters],
        "fixed_effects": model.fixed_effect_values,
        "random_effects": model.random_effect_names,
        "observations": [o.name for o in model.observations],
        "dataset_variables": model.dataset_variables(),
    }
