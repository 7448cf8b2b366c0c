"""Configuration data models."""

from __future__ import annotations
import sys
from typing import Any, Dict, List, Optional, Union
from pathlib import Path
from pydantic import BaseModel, Field, field_validator

from ..solver.solver_config import SolverSettings, SteadyStateSettings

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

import tomli_w


class RunConfig(BaseModel):
    """Run execution configuration."""

    seed: int = 123
    threads: int = 1
    n_replicates: int = Field(default=1, ge=1, description="Replicates per individual")
    time_budget_s: Optional[float] = Field(
        default=None, gt=0, description="Wall-clock budget for the population pass"
    )
    artifact_dir: str = "results"
    sample_random_effects: bool = Field(
        default=True, description="Draw etas; False simulates typical (population) predictions"
    )
    residual_error: bool = Field(default=True, description="Add residual error to continuous observations")

    @field_validator("threads")
    @classmethod
    def validate_threads(cls, v: int) -> int:
        if v < 1:
            raise ValueError("threads must be positive")
        return v


class DataConfig(BaseModel):
    """Dataset location and column mapping."""

    path: Optional[str] = None
    automatic_mapping: bool = Field(
        default=True, description="Map model variables to same-named columns before applying `columns`"
    )
    columns: Dict[str, str] = Field(default_factory=dict, description="Model symbol -> dataset column")


class TableConfig(BaseModel):
    """Simulation output table: variables at requested times per individual."""

    name: str
    times: List[float] = Field(default_factory=list)
    variables: List[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.endswith(".csv"):
            v = f"{v}.csv"
        return v

    @field_validator("times")
    @classmethod
    def validate_times(cls, v: List[float]) -> List[float]:
        if any(t < 0 for t in v):
            raise ValueError("table times must be >= 0")
        return sorted(set(v))


class AppConfig(BaseModel):
    """Complete application configuration."""

    model_path: Optional[str] = Field(default=None, description="TOML model definition")
    run: RunConfig = Field(default_factory=RunConfig)
    solver: SolverSettings = Field(default_factory=SolverSettings)
    steady_state: SteadyStateSettings = Field(default_factory=SteadyStateSettings)
    data: DataConfig = Field(default_factory=DataConfig)
    tables: List[TableConfig] = Field(default_factory=list)

    def model_dump_toml(self) -> str:
        """Export configuration as TOML string."""
        return tomli_w.dumps(self.model_dump(exclude_none=True))

    @classmethod
    def from_toml_file(cls, path: Union[Path, str]) -> "AppConfig":
        """Load configuration from TOML file.

        Relative ``model_path`` and ``data.path`` entries are resolved
        against the directory of the file.
        """
        path = Path(path)
        with open(path, "rb") as f:
            data = tomllib.load(f)
        config = cls.model_validate(data)
        base = path.parent
        if config.model_path and not Path(config.model_path).is_absolute():
            config.model_path = str(base / config.model_path)
        if config.data.path and not Path(config.data.path).is_absolute():
            config.data.path = str(base / config.data.path)
        return config
