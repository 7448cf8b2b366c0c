"""Writing population results to the artifact directory."""

from __future__ import annotations
import json
from pathlib import Path
from typing import Any, Dict, Optional, Union

import pandas as pd
import structlog

from ..config.constants import PARAMETERS_TABLE, PREDICTIONS_TABLE, RUN_METADATA, STATUS_TABLE
from ..simulation.population import PopulationResult

logger = structlog.get_logger()


def write_artifacts(
    result: PopulationResult,
    directory: Union[str, Path],
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Path]:
    """Write predictions, status, parameters, simulation tables and run metadata.

    Args:
        result: Population result
        directory: Target directory (created if missing)
        metadata: Extra entries for the run metadata file

    Returns:
        Mapping of artifact name to written path
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    written: Dict[str, Path] = {}

    frames = {
        PREDICTIONS_TABLE: result.predictions_frame(),
        STATUS_TABLE: result.status_frame(),
        PARAMETERS_TABLE: result.parameters_frame(),
    }
    for name in result.table_names():
        frames[name] = result.table_frame(name)

    for name, frame in frames.items():
        path = directory / name
        frame.to_csv(path, index=False)
        written[name] = path

    payload = {
        "run_id": result.run_id,
        "runtime_s": result.runtime_seconds,
        "status_counts": result.summary(),
        "covariate_centers": result.centers,
        "secondary_parameters": result.secondary,
        "warnings": result.warnings,
        **(metadata or {}),
    }
    path = directory / RUN_METADATA
    with open(path, "w") as f:
        json.dump(payload, f, indent=2, default=str)
    written[RUN_METADATA] = path

    logger.info("Artifacts written", run_id=result.run_id, directory=str(directory), files=len(written))
    return written


def read_predictions(directory: Union[str, Path]) -> pd.DataFrame:
    return pd.read_csv(Path(directory) / PREDICTIONS_TABLE)
