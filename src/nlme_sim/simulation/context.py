"""Run context for population simulation."""

from __future__ import annotations
import time
from typing import Dict, Any, Optional
from pathlib import Path
import structlog


class RunContext:
    """Context for a population run with logging, timing and artifact paths."""

    def __init__(
        self,
        run_id: str,
        seed: int = 123,
        threads: int = 1,
        artifact_dir: Optional[Path] = None,
        logger: Optional[structlog.BoundLogger] = None
    ):
        self.run_id = run_id
        self.seed = seed
        self.threads = threads
        self.artifact_dir = Path(artifact_dir) if artifact_dir is not None else Path("results")

        if logger is None:
            self.logger = structlog.get_logger().bind(run_id=run_id)
        else:
            self.logger = logger.bind(run_id=run_id)

        self._start_time: Optional[float] = None
        self._stage_times: Dict[str, float] = {}

        self.metadata: Dict[str, Any] = {
            "run_id": run_id,
            "seed": seed,
            "threads": threads,
        }

    def start_run(self) -> None:
        """Mark start of run execution."""
        self._start_time = time.perf_counter()
        self.logger.info("Population run started")

    def end_run(self) -> float:
        """Mark end of run execution and return total runtime.

        Returns:
            Total runtime in seconds
        """
        if self._start_time is None:
            return 0.0

        runtime = time.perf_counter() - self._start_time
        self.logger.info("Population run completed", runtime_s=runtime)
        return runtime

    def time_stage(self, stage_name: str):
        """Context manager timing one phase of the run (prepare, simulate, write)."""
        return _StageTimer(self, stage_name)

    def get_runtime_metadata(self) -> Dict[str, Any]:
        metadata = self.metadata.copy()
        metadata.update({
            "stage_times": self._stage_times.copy(),
            "total_runtime_s": sum(self._stage_times.values())
        })
        return metadata


class _StageTimer:
    """Context manager for timing stage execution."""

    def __init__(self, context: RunContext, stage_name: str):
        self.context = context
        self.stage_name = stage_name
        self.start_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.context.logger.info("Stage started", stage=self.stage_name)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            runtime = time.perf_counter() - self.start_time
            self.context._stage_times[self.stage_name] = runtime

            if exc_type is None:
                self.context.logger.info(
                    "Stage completed",
                    stage=self.stage_name,
                    runtime_s=runtime
                )
            else:
                self.context.logger.error(
                    "Stage failed",
                    stage=self.stage_name,
                    runtime_s=runtime,
                    error=str(exc_val)
                )
