"""Typer CLI entry point for pipeline-resilience diagnostics."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated, Any

import structlog
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pipeline_resilience import __version__
from pipeline_resilience.config import Settings, format_validation_error
from pipeline_resilience.engine import ResilienceEngine
from pipeline_resilience.logging import configure_logging
from pipeline_resilience.models import RiskLevel, Stage

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="pipeline-resilience",
    help="Recovery strategies, circuit breakers and health for the diagram pipeline.",
    no_args_is_help=True,
)

_RISK_STYLE = {
    RiskLevel.LOW: "[green]low[/green]",
    RiskLevel.MEDIUM: "[yellow]medium[/yellow]",
    RiskLevel.HIGH: "[red]high[/red]",
    RiskLevel.CRITICAL: "[bold red]critical[/bold red]",
}

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to config YAML file."),
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_settings(config_path: Path | None = None, **overrides: Any) -> Settings:
    """Load settings with error handling and user-friendly messages."""
    from pydantic import ValidationError

    try:
        return Settings.load(config_path=config_path, **overrides)
    except ValidationError as exc:
        err_console.print(
            Panel(
                format_validation_error(exc),
                title="Configuration Error",
                border_style="red",
            )
        )
        raise typer.Exit(code=1) from exc


def _build_engine(config_path: Path | None) -> ResilienceEngine:
    settings = _load_settings(config_path)
    configure_logging(
        level=settings.logging.level,
        fmt=settings.logging.format,
        log_file=settings.logging.file,
    )
    return ResilienceEngine(settings)


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]pipeline-resilience[/bold] {__version__}")
        raise typer.Exit


@app.callback()
def common(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """pipeline-resilience global options."""


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def strategies(config: ConfigOption = None) -> None:
    """List recovery strategies in the order they are tried."""
    engine = _build_engine(config)

    table = Table(title="Recovery Strategies")
    table.add_column("Priority", justify="right")
    table.add_column("Id", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Prevention", justify="right")
    table.add_column("Stages")

    for strategy in engine.registry:
        spec = strategy.spec
        table.add_row(
            str(spec.priority),
            spec.id,
            spec.name,
            f"{spec.prevention_score:.2f}",
            ", ".join(sorted(str(stage) for stage in spec.stages)),
        )
    console.print(table)


@app.command()
def health(config: ConfigOption = None) -> None:
    """Run one health-monitor cycle against live resource probes."""
    engine = _build_engine(config)
    report = asyncio.run(engine.check_health())

    stage_table = Table(title=f"Stage Health (overall {report.overall:.0%})")
    stage_table.add_column("Stage", style="cyan", no_wrap=True)
    stage_table.add_column("Score", justify="right")
    for stage, score in report.stages.items():
        stage_table.add_row(str(stage), f"{score:.2f}")
    console.print(stage_table)

    indicator_table = Table(title="Predictive Indicators")
    indicator_table.add_column("Indicator", style="cyan", no_wrap=True)
    indicator_table.add_column("Value", justify="right")
    indicator_table.add_column("Threshold", justify="right")
    indicator_table.add_column("Trend")
    indicator_table.add_column("Risk", justify="center")
    for indicator in report.indicators:
        indicator_table.add_row(
            indicator.name,
            f"{indicator.current_value:.3f}",
            f"{indicator.threshold:g}",
            str(indicator.trend),
            _RISK_STYLE[indicator.risk_level],
        )
    console.print(indicator_table)

    for recommendation in report.recommendations:
        console.print(f"[yellow]-[/yellow] {recommendation}")


@app.command()
def assess(
    stage: Annotated[Stage, typer.Argument(help="Stage about to run.")],
    input_file: Annotated[
        Path | None,
        typer.Option("--input", "-i", help="JSON file with the stage input."),
    ] = None,
    config: ConfigOption = None,
) -> None:
    """Predict failure risk for a stage before running it."""
    payload: Any = None
    if input_file is not None:
        try:
            payload = json.loads(input_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            err_console.print(f"[red]Cannot read input:[/red] {exc}")
            raise typer.Exit(code=1) from exc

    engine = _build_engine(config)
    assessment = engine.predict_failure_risk(stage, payload)

    console.print(
        f"[bold]{stage}[/bold] risk: {_RISK_STYLE[assessment.risk_level]} "
        f"(score {assessment.score:.2f}, confidence {assessment.confidence:.0%})"
    )
    for indicator in assessment.indicators:
        console.print(f"  [dim]indicator:[/dim] {indicator}")
    for recommendation in assessment.recommendations:
        console.print(f"  [dim]recommend:[/dim] {recommendation}")


@app.command(name="config")
def show_config(config: ConfigOption = None) -> None:
    """Print the fully-resolved settings as JSON."""
    settings = _load_settings(config)
    console.print_json(settings.model_dump_json())


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
