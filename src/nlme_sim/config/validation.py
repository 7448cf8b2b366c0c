"""Configuration validation utilities."""

from typing import List, Optional
import structlog

from ..contracts.errors import ValidationError
from ..domain.model import ModelDefinition
from .model import AppConfig

logger = structlog.get_logger()


def validate_config(config: AppConfig, model: Optional[ModelDefinition] = None) -> List[str]:
    """Validate configuration for common issues and conflicts.

    Args:
        config: Configuration to validate
        model: Model definition the configuration will run, if known

    Returns:
        Warnings that were logged

    Raises:
        ValidationError: If configuration is invalid
    """
    errors: List[str] = []
    warnings: List[str] = []

    _validate_solver_config(config, warnings)
    _validate_resource_constraints(config, warnings)
    if model is not None:
        _validate_tables(config, model, errors)
        _validate_steady_state(config, model, warnings)

    for warning in warnings:
        logger.warning(warning)

    if errors:
        raise ValidationError(
            f"Configuration validation failed: {'; '.join(errors)}",
            details={"errors": errors},
        )
    return warnings


def _validate_solver_config(config: AppConfig, warnings: List[str]) -> None:
    """Validate solver configuration."""

    solver = config.solver

    if solver.rtol > 1e-3:
        warnings.append(f"solver rtol={solver.rtol} may be too loose for accurate results")

    if solver.atol > solver.rtol:
        warnings.append("solver atol should typically be smaller than rtol")

    if solver.method in ("RK45", "DOP853") and solver.rtol < 1e-10:
        warnings.append(f"{solver.method} with very tight tolerances may be inefficient")


def _validate_resource_constraints(config: AppConfig, warnings: List[str]) -> None:
    """Check resource usage settings."""

    if config.run.threads > 32:
        warnings.append(f"threads={config.run.threads} may cause performance issues")

    if config.run.time_budget_s is not None and config.run.time_budget_s < 1.0:
        warnings.append(
            f"time_budget_s={config.run.time_budget_s} is likely to cancel most individuals"
        )


def _validate_tables(config: AppConfig, model: ModelDefinition, errors: List[str]) -> None:
    names = set()
    for table in config.tables:
        if table.name in names:
            errors.append(f"duplicate table name {table.name}")
        names.add(table.name)
        if not table.variables:
            errors.append(f"table {table.name} lists no variables")


def _validate_steady_state(config: AppConfig, model: ModelDefinition, warnings: List[str]) -> None:
    if config.steady_state.policy == "superposition" and not model.is_linear():
        warnings.append(
            "steady_state.policy=superposition needs a linear model; "
            "nonlinear models iterate dosing periods instead"
        )
