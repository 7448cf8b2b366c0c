"""Dataset column mapping and grouping of rows into individuals."""

from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import structlog
from pydantic import BaseModel, ConfigDict, Field

from ..contracts.errors import CensoringInconsistencyError, ColumnMappingError
from ..domain.model import ContinuousObservation, ModelDefinition

logger = structlog.get_logger()

# Dose modifiers a mapping may bind in addition to the model variables
DOSE_MODIFIERS = ("rate", "duration", "addl", "ii", "ss")


@dataclass(frozen=True)
class DoseRecord:
    """A dosing row as it appears in the dataset, before expansion."""

    time: float
    amount: float
    target: str
    rate: Optional[float] = None
    duration: Optional[float] = None
    addl: int = 0
    ii: Optional[float] = None
    ss: bool = False
    order: int = 0


@dataclass(frozen=True)
class ObservedValue:
    time: float
    name: str
    value: float
    bql: bool = False
    limit: Optional[float] = None
    order: int = 0


@dataclass(frozen=True)
class Individual:
    """All dataset records of one subject, in row order."""

    id: Any
    doses: Tuple[DoseRecord, ...] = ()
    observations: Tuple[ObservedValue, ...] = ()
    covariate_times: Tuple[float, ...] = ()
    covariate_rows: Tuple[Mapping[str, float], ...] = ()
    reset_flags: Tuple[Tuple[float, float, int], ...] = ()
    """(time, flag value, row order) for rows with a reset flag"""

    def covariates_at(self, time: float) -> Dict[str, float]:
        """Covariate values in effect at `time` (piecewise constant, carried forward)."""
        if not self.covariate_rows:
            return {}
        idx = int(np.searchsorted(np.asarray(self.covariate_times), time, side="right")) - 1
        return dict(self.covariate_rows[max(idx, 0)])

    def covariate_change_times(self) -> List[float]:
        changes: List[float] = []
        for i in range(1, len(self.covariate_rows)):
            if self.covariate_rows[i] != self.covariate_rows[i - 1]:
                changes.append(self.covariate_times[i])
        return changes

    def observation_times(self, name: Optional[str] = None) -> List[float]:
        return sorted({o.time for o in self.observations if name is None or o.name == name})

    def first_covariates(self) -> Dict[str, float]:
        return dict(self.covariate_rows[0]) if self.covariate_rows else {}


class ColumnMapping(BaseModel):
    """Explicit model-symbol to dataset-column table.

    Keys are model variables (``id``, ``time``, the dose target, covariates,
    observation names, ``reset``), dose modifiers (``rate``, ``duration``,
    ``addl``, ``ii``, ``ss``) or censoring columns (``<Obs>_bql`` flag,
    ``<Obs>_lloq`` per-row limit).
    """

    model_config = ConfigDict(frozen=True)

    columns: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def automatic(cls, model: ModelDefinition, available: Iterable[str], **overrides: str) -> "ColumnMapping":
        """Map model variables to same-named columns (case-insensitive), then apply overrides."""
        by_lower = {c.lower(): c for c in available}
        columns: Dict[str, str] = {}
        for symbol in _known_symbols(model):
            hit = by_lower.get(symbol.lower())
            if hit is not None:
                columns[symbol] = hit
        columns.update(overrides)
        return cls(columns=columns)

    def column(self, symbol: str) -> Optional[str]:
        return self.columns.get(symbol)

    def validate_against(self, model: ModelDefinition, available: Iterable[str]) -> None:
        """Check the mapping exhaustively against the model and the dataset.

        Raises:
            ColumnMappingError: Unmapped required variable, unknown symbol or missing column
            CensoringInconsistencyError: BQL columns that the observation model cannot honour
        """
        available = set(available)
        variables = model.dataset_variables()
        known = _known_symbols(model)

        unknown = sorted(set(self.columns) - known)
        if unknown:
            raise ColumnMappingError(
                f"Mapping binds symbols the model does not declare: {', '.join(unknown)}",
                details={"symbols": unknown},
            )
        unmapped = sorted(v for v, required in variables.items() if required and v not in self.columns)
        if unmapped:
            raise ColumnMappingError(
                f"Required model variables are not mapped: {', '.join(unmapped)}",
                details={"unmapped": unmapped},
            )
        if not any(o.name in self.columns for o in model.observations) and model.observations:
            logger.warning("No observation column is mapped; only requested output times will be simulated")
        missing = sorted(c for c in self.columns.values() if c not in available)
        if missing:
            raise ColumnMappingError(
                f"Mapped columns not found in dataset: {', '.join(missing)}",
                details={"missing_columns": missing},
            )

        for obs in model.observations:
            flag = self.columns.get(f"{obs.name}_bql")
            limit = self.columns.get(f"{obs.name}_lloq")
            bql = isinstance(obs, ContinuousObservation) and obs.bql
            if bql and limit is None and obs.lloq is None:
                raise CensoringInconsistencyError(
                    f"{obs.name}: BQL handling is on but no quantification limit is configured "
                    f"(set lloq or map {obs.name}_lloq)",
                    details={"observation": obs.name},
                )
            if (flag is not None or limit is not None) and not bql:
                raise CensoringInconsistencyError(
                    f"{obs.name}: BQL columns are mapped but the observation has no BQL handling",
                    details={"observation": obs.name},
                )


def _known_symbols(model: ModelDefinition) -> set:
    symbols = set(model.dataset_variables()) | set(DOSE_MODIFIERS)
    for obs in model.observations:
        symbols |= {f"{obs.name}_bql", f"{obs.name}_lloq"}
    return symbols


def read_dataset(path: Union[str, Path]) -> pd.DataFrame:
    """Read a CSV dataset; '.' and empty cells are missing values."""
    path = Path(path)
    if not path.exists():
        raise ColumnMappingError(f"Dataset not found: {path}")
    return pd.read_csv(path, na_values=["."])


def _numeric(frame: pd.DataFrame, column: Optional[str]) -> Optional[pd.Series]:
    if column is None:
        return None
    return pd.to_numeric(frame[column], errors="coerce")


def _value(series: Optional[pd.Series], i: int) -> Optional[float]:
    if series is None:
        return None
    v = series.iloc[i]
    return None if pd.isna(v) else float(v)


def load_individuals(
    frame: pd.DataFrame,
    model: ModelDefinition,
    mapping: ColumnMapping,
) -> List[Individual]:
    """Group dataset rows into individuals after validating the mapping.

    Rows keep their dataset order inside an individual; individuals keep
    first-appearance order.
    """
    mapping.validate_against(model, frame.columns)
    col = mapping.column
    target = model.structure.dose_target

    individuals: List[Individual] = []
    for subject_id, rows in frame.groupby(col("id"), sort=False):
        rows = rows.reset_index(drop=True)
        time = _numeric(rows, col("time"))
        if time.isna().any():
            raise ColumnMappingError(
                f"Individual {subject_id}: missing or non-numeric time values",
                details={"individual": subject_id},
            )
        amount = _numeric(rows, col(target))
        rate = _numeric(rows, col("rate"))
        duration = _numeric(rows, col("duration"))
        addl = _numeric(rows, col("addl"))
        ii = _numeric(rows, col("ii"))
        ss = _numeric(rows, col("ss"))
        reset = _numeric(rows, col("reset"))
        observed = {
            obs.name: (
                _numeric(rows, col(obs.name)),
                _numeric(rows, col(f"{obs.name}_bql")),
                _numeric(rows, col(f"{obs.name}_lloq")),
            )
            for obs in model.observations
        }

        covariate_frame = pd.DataFrame(
            {c.name: _numeric(rows, col(c.name)) for c in model.covariates}, index=rows.index
        ).ffill().bfill()

        doses: List[DoseRecord] = []
        observations: List[ObservedValue] = []
        resets: List[Tuple[float, float, int]] = []
        cov_times: List[float] = []
        cov_rows: List[Dict[str, float]] = []

        for i in range(len(rows)):
            t = float(time.iloc[i])
            amt = _value(amount, i)
            if amt is not None and amt != 0.0:
                doses.append(
                    DoseRecord(
                        time=t,
                        amount=amt,
                        target=target,
                        rate=_value(rate, i) or None,
                        duration=_value(duration, i) or None,
                        addl=int(_value(addl, i) or 0),
                        ii=_value(ii, i),
                        ss=bool(_value(ss, i) or 0),
                        order=i,
                    )
                )
            for obs in model.observations:
                values, flags, limits = observed[obs.name]
                value = _value(values, i)
                if value is None:
                    continue
                flag = _value(flags, i)
                limit = _value(limits, i)
                if isinstance(obs, ContinuousObservation) and limit is None:
                    limit = obs.lloq
                observations.append(
                    ObservedValue(time=t, name=obs.name, value=value, bql=bool(flag), limit=limit, order=i)
                )
            flag = _value(reset, i)
            if flag is not None:
                resets.append((t, flag, i))
            if model.covariates:
                cov_times.append(t)
                cov_rows.append(
                    {k: float(v) for k, v in covariate_frame.iloc[i].items() if not pd.isna(v)}
                )

        individuals.append(
            Individual(
                id=subject_id,
                doses=tuple(doses),
                observations=tuple(observations),
                covariate_times=tuple(cov_times),
                covariate_rows=tuple(cov_rows),
                reset_flags=tuple(resets),
            )
        )

    logger.info("Dataset loaded", individuals=len(individuals), rows=len(frame))
    return individuals


def covariate_centers(model: ModelDefinition, individuals: Sequence[Individual]) -> Dict[str, float]:
    """Population mean/median of each covariate centered on a statistic.

    Each individual contributes its first (baseline) value.
    """
    centers: Dict[str, float] = {}
    for cov in model.covariates:
        if cov.center not in ("mean", "median"):
            continue
        values = [ind.first_covariates().get(cov.name) for ind in individuals]
        values = np.array([v for v in values if v is not None], dtype=float)
        if values.size == 0:
            raise ColumnMappingError(
                f"Covariate {cov.name} has no values to compute its {cov.center}",
                details={"covariate": cov.name},
            )
        centers[cov.name] = float(np.mean(values) if cov.center == "mean" else np.median(values))
    return centers
