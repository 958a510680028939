"""
Convoy CLI - dependency-ordered CI pipelines
Main entry point for the command-line interface

Usage:
    convoy run pipeline.yaml          # Run a pipeline, exit 0 on success / 1 on failure
    convoy validate pipeline.yaml     # Check a definition and print its execution plan
    convoy version                    # Show version information
"""

import asyncio
import contextlib
import json
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from convoy import __version__
from convoy.pipeline.application.engine import PipelineEngine
from convoy.pipeline.application.report import build_report
from convoy.pipeline.application.scheduler import execution_levels
from convoy.pipeline.domain.enums import PipelineVerdict, StageStatus
from convoy.pipeline.domain.exceptions import PipelineDefinitionError
from convoy.pipeline.domain.models import PipelineDefinition, PipelineResult
from convoy.pipeline.infrastructure.definition_loader import load_definition
from convoy.shared.domain.exceptions import ReportError
from convoy.shared.infrastructure.logging import configure_logging

EXIT_SUCCEEDED = 0
EXIT_FAILED = 1
EXIT_INVALID_DEFINITION = 2

app = typer.Typer(
    name="convoy",
    help="Convoy - run build/scan/analyze/test pipelines as a dependency graph",
    add_completion=False,
    no_args_is_help=True,
)
console = Console()

_STATUS_STYLE = {
    StageStatus.SUCCEEDED: "green",
    StageStatus.FAILED: "red",
    StageStatus.SKIPPED: "yellow",
    StageStatus.RUNNING: "cyan",
    StageStatus.PENDING: "dim",
}


def _load_or_exit(pipeline_file: Path) -> PipelineDefinition:
    try:
        return load_definition(pipeline_file)
    except PipelineDefinitionError as e:
        console.print(f"[red]Invalid pipeline definition:[/red] {e}")
        raise typer.Exit(EXIT_INVALID_DEFINITION)


async def _run_with_signals(engine: PipelineEngine, definition: PipelineDefinition) -> PipelineResult:
    """Run the pipeline; SIGINT/SIGTERM request a graceful cancellation."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, cancel_event.set)
            installed.append(sig)
    try:
        return await engine.run(definition, cancel_event=cancel_event)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def _render_result(result: PipelineResult) -> None:
    table = Table(title=f"Pipeline {result.pipeline_name} ({result.run_id})")
    table.add_column("Stage", style="bold")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Detail", overflow="fold")

    for record in result.records:
        style = _STATUS_STYLE.get(record.status, "white")
        detail = record.error or record.skip_reason or ""
        if record.teardown_error:
            detail = f"{detail} [yellow](teardown: {record.teardown_error})[/yellow]".strip()
        table.add_row(
            record.stage_id,
            f"[{style}]{record.status.value}[/{style}]",
            f"{record.duration:.1f}s",
            detail,
        )
    console.print(table)

    for warning in result.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")

    if result.verdict == PipelineVerdict.SUCCEEDED:
        console.print(Panel.fit("[bold green]Pipeline succeeded[/bold green]", border_style="green"))
    else:
        failure = result.first_failure
        body = "[bold red]Pipeline failed[/bold red]"
        if result.cancelled:
            body += " [yellow](cancelled)[/yellow]"
        if failure is not None:
            body += f"\n[dim]First failing stage:[/dim] {failure.stage_id} ({failure.error_kind})"
            if failure.error:
                body += f"\n{failure.error}"
        console.print(Panel.fit(body, border_style="red"))
        if failure is not None and failure.output:
            console.print(Panel(failure.output, title=f"{failure.stage_id} output", border_style="dim"))

    if result.report_path:
        console.print(f"[dim]Report:[/dim] {result.report_path}")


@app.command()
def run(
    pipeline_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Pipeline definition (YAML)"),
    parallel: Optional[int] = typer.Option(None, "--parallel", "-j", min=1, help="Max concurrently running stages"),
    fail_fast: bool = typer.Option(False, "--fail-fast", help="Stop dispatching after the first blocking failure"),
    reports_dir: Optional[Path] = typer.Option(None, "--reports-dir", help="Directory for run logs and reports"),
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON instead of a table"),
):
    """Run a pipeline definition"""
    configure_logging()
    definition = _load_or_exit(pipeline_file)
    engine = PipelineEngine(reports_dir=reports_dir, parallel_limit=parallel, fail_fast=fail_fast)

    try:
        result = asyncio.run(_run_with_signals(engine, definition))
    except ReportError as e:
        console.print(f"[red]Report error:[/red] {e}")
        raise typer.Exit(EXIT_FAILED)

    if json_output:
        typer.echo(json.dumps(build_report(result), indent=2))
    else:
        _render_result(result)

    raise typer.Exit(EXIT_SUCCEEDED if result.succeeded else EXIT_FAILED)


@app.command()
def validate(
    pipeline_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Pipeline definition (YAML)"),
):
    """Validate a pipeline definition and show its execution plan"""
    configure_logging()
    definition = _load_or_exit(pipeline_file)

    table = Table(title=f"Execution plan: {definition.name}")
    table.add_column("Wave", justify="right")
    table.add_column("Stage", style="bold")
    table.add_column("Needs")
    table.add_column("Gate")
    table.add_column("Actions", justify="right")
    table.add_column("Target")
    table.add_column("Secrets")

    for wave, stage_ids in enumerate(execution_levels(definition), start=1):
        for stage_id in stage_ids:
            stage = definition.stage(stage_id)
            table.add_row(
                str(wave),
                stage.id,
                ", ".join(stage.needs) or "-",
                stage.gate.value,
                str(len(stage.actions)),
                stage.target.mode.value if stage.target else "-",
                ", ".join(stage.secret_names()) or "-",
            )
    console.print(table)
    console.print(f"[green]✓[/green] {len(definition.stages)} stages, dependency graph is acyclic")


@app.command()
def version():
    """Show Convoy version information"""
    console.print(Panel.fit(
        "[bold cyan]Convoy[/bold cyan]\n"
        f"[dim]Version:[/dim] {__version__}\n",
        title="About Convoy",
        border_style="cyan"
    ))


def main():
    """Main entry point"""
    app()


if __name__ == "__main__":
    main()
