"""Main CLI application."""

import logging
from pathlib import Path
from typing import List, Optional

import structlog
import typer
from rich.console import Console
from rich.table import Table

from .. import app_api
from ..contracts.errors import NLMEError

app = typer.Typer(
    name="nlme",
    help="Population PK/PD simulation from compartmental model definitions",
    no_args_is_help=True
)
console = Console()


def configure_logging(verbose: bool = False, json_logs: bool = False) -> None:
    """Configure structlog for command line use."""
    level = logging.DEBUG if verbose else logging.WARNING
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.add_log_level,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def _parse_times(times: Optional[str]) -> List[float]:
    if not times:
        return []
    try:
        return sorted({float(t) for t in times.split(",") if t.strip()})
    except ValueError as e:
        console.print(f"❌ Invalid --times: {e}", style="red")
        raise typer.Exit(1)


@app.command()
def simulate(
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file path"
    ),
    model: Optional[Path] = typer.Option(
        None, "--model", "-m", help="Model definition (overrides model_path)"
    ),
    data: Optional[Path] = typer.Option(
        None, "--data", "-d", help="Dataset CSV (overrides data.path)"
    ),
    run_id: Optional[str] = typer.Option(
        None, "--run-id", help="Custom run identifier"
    ),
    output_dir: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Output directory for artifacts"
    ),
    seed: Optional[int] = typer.Option(None, "--seed", help="Run seed"),
    threads: Optional[int] = typer.Option(None, "--threads", "-j", help="Worker threads"),
    replicates: Optional[int] = typer.Option(None, "--replicates", "-n", help="Replicates per individual"),
    times: Optional[str] = typer.Option(
        None, "--times", help="Comma-separated extra output times"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Validate model, dataset and configuration without running"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Log as JSON lines"),
):
    """Simulate a population dataset with the given model."""

    configure_logging(verbose, json_logs)
    try:
        if config:
            cfg = app_api.load_config_from_file(config)
            console.print(f"✓ Loaded configuration from {config}")
        else:
            cfg = app_api.get_default_config()
            console.print("✓ Using default configuration")

        if model:
            cfg.model_path = str(model)
        if data:
            cfg.data.path = str(data)
        if output_dir:
            cfg.run.artifact_dir = str(output_dir)
        run_updates = {
            k: v for k, v in {"seed": seed, "threads": threads, "n_replicates": replicates}.items()
            if v is not None
        }
        if run_updates:
            cfg.run = cfg.run.model_validate({**cfg.run.model_dump(), **run_updates})
            console.print(f"✓ Run overrides: {run_updates}")

        definition = app_api.resolve_model(cfg)
        for warning in app_api.validate_configuration(cfg, definition):
            console.print(f"⚠ {warning}", style="yellow")

        if dry_run:
            _, _, individuals = app_api.load_dataset(cfg, definition)
            console.print(
                f"✓ Dry run completed: {len(individuals)} individuals bound to {definition.name}",
                style="green",
            )
            return

        with console.status("Running simulation..."):
            result = app_api.run_population(
                cfg,
                model=definition,
                run_id=run_id,
                output_times=_parse_times(times),
            )

        console.print(f"✅ Simulation completed: {result.run_id}", style="green")
        console.print(f"Runtime: {result.runtime_seconds:.2f}s")
        console.print(f"Artifacts: {Path(cfg.run.artifact_dir) / result.run_id}")

        table = Table(title="Status")
        table.add_column("Status")
        table.add_column("Count", justify="right")
        for status, count in result.summary().items():
            table.add_row(status, str(count))
        console.print(table)

    except NLMEError as e:
        console.print(f"❌ {e.message}", style="red")
        if e.details:
            console.print(f"Details: {e.details}")
        raise typer.Exit(1)


@app.command()
def validate(
    model: Path = typer.Argument(..., help="Model definition to validate"),
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file to validate against the model"
    ),
    data: Optional[Path] = typer.Option(
        None, "--data", "-d", help="Dataset to check the column mapping against"
    ),
):
    """Validate a model definition (and optionally a configuration and dataset)."""

    configure_logging()
    try:
        definition = app_api.load_model(model)
        definition.validate_model()
        cfg = app_api.load_config_from_file(config) if config else app_api.get_default_config()
        for warning in app_api.validate_configuration(cfg, definition):
            console.print(f"⚠ {warning}", style="yellow")
        if data:
            cfg.data.path = str(data)
        if cfg.data.path:
            _, mapping, individuals = app_api.load_dataset(cfg, definition)
            console.print(f"✓ Dataset mapping: {mapping.columns}")
            console.print(f"✓ {len(individuals)} individuals")
        console.print(f"✅ Model {definition.name} v{definition.version} is valid", style="green")

    except NLMEError as e:
        console.print(f"❌ {e.message}", style="red")
        raise typer.Exit(1)


@app.command()
def info(
    model: Optional[Path] = typer.Argument(None, help="Model definition to describe"),
):
    """Display package information, or the structure of a model."""

    from .. import __version__

    console.print(f"nlme_sim v{__version__}")
    if model is None:
        return

    configure_logging()
    try:
        summary = app_api.describe_model(app_api.load_model(model))
    except NLMEError as e:
        console.print(f"❌ {e.message}", style="red")
        raise typer.Exit(1)

    console.print(f"Model {summary['name']} v{summary['version']} (linear: {summary['linear']})")
    table = Table(title="Components")
    table.add_column("Component")
    table.add_column("Type")
    table.add_column("States", justify="right")
    for name, kind, size in summary["components"]:
        table.add_row(name, kind, str(size))
    console.print(table)

    theta = Table(title="Fixed effects")
    theta.add_column("Name")
    theta.add_column("Value", justify="right")
    for name, value in summary["fixed_effects"].items():
        theta.add_row(name, f"{value:.4g}")
    console.print(theta)
    console.print(f"Observations: {', '.join(summary['observations']) or '-'}")


if __name__ == "__main__":
    app()
