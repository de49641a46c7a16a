"""Click CLI: project init, pipeline driving, status, validation and checkpoints."""

import asyncio
import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from config.config_loader import AppConfig, load_config
from conductor.agents.anthropic import AnthropicAgent
from conductor.agents.base import AgentFailure
from conductor.errors import ConductorError
from conductor.models import DebateRound
from conductor.output import (
    console,
    print_checkpoints,
    print_compliance,
    print_round_summary,
    print_status,
    print_validation,
)
from conductor.pipeline import PipelineStateMachine
from conductor.registry import ResolvedModels
from conductor.resolver import ManifestAvailabilitySource, StaticAvailabilitySource
from conductor.validator import exit_code

logger = logging.getLogger(__name__)

MODEL_CACHE = Path("state") / "model_cache.json"


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _fail(message: str, code: int = 1) -> None:
    console.print(f"[bold red]Error:[/bold red] {message}")
    sys.exit(code)


def _config(ctx: click.Context) -> AppConfig:
    if "config" not in ctx.obj:
        try:
            ctx.obj["config"] = load_config()
        except (FileNotFoundError, ConductorError) as exc:
            console.print(f"[bold red]Config error:[/bold red] {exc}")
            sys.exit(1)
    return ctx.obj["config"]


def _resolve_models(ctx: click.Context) -> ResolvedModels:
    config = _config(ctx)
    source = ManifestAvailabilitySource(config.models, cache_path=ctx.obj["project"] / MODEL_CACHE)
    return source.resolve()


def _machine(ctx: click.Context, with_agent: bool = False, progress: Progress | None = None) -> PipelineStateMachine:
    config = _config(ctx)
    project: Path = ctx.obj["project"]
    if not with_agent:
        return PipelineStateMachine(project, config)

    resolved = _resolve_models(ctx)
    console.print(f"[dim]Model tiers from {resolved.source}[/dim]")
    try:
        agent = AnthropicAgent(config.agent, resolved)
    except AgentFailure as exc:
        _fail(f"{exc}. Set it in .env or the environment.")

    def on_round_complete(stage_id: str, rnd: DebateRound) -> None:
        if progress is not None:
            progress.print(
                f"[green]OK[/green] {stage_id} round {rnd.number} ({rnd.kind}, {len(rnd.artifacts)} artifacts)"
            )
        if ctx.obj["verbose"]:
            print_round_summary(stage_id, rnd)

    return PipelineStateMachine(
        project,
        config,
        agent=agent,
        availability=StaticAvailabilitySource(resolved),
        on_round_complete=on_round_complete,
    )


def _drive(ctx: click.Context, start: str | None, until: str | None) -> None:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        machine = _machine(ctx, with_agent=True, progress=progress)
        progress.add_task("Running pipeline...", total=None)
        results = asyncio.run(machine.run_pipeline(start=start, stop_after=until))

    for result in results:
        if result.success:
            console.print(
                f"[green]Completed[/green] {result.stage_id} in {result.duration_sec:.0f}s "
                f"(attempts {result.attempts}, score {result.validation_score:.2f})"
            )
        elif result.paused:
            console.print(f"[yellow]Paused[/yellow] at {result.stage_id}: {result.error or 'pause requested'}")
        else:
            console.print(f"[red]Failed[/red] {result.stage_id}: {result.error}")

    report = machine.status()
    print_status(report)
    if report.status == "completed":
        missing, skipped = machine.compliance()
        print_compliance(missing, skipped)
    if results and not results[-1].success:
        sys.exit(1)


@click.group()
@click.option(
    "--project", "project_dir", default=".", type=click.Path(file_okay=False, path_type=Path),
    help="Project root (default: current directory)",
)
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging and round previews")
@click.pass_context
def main(ctx: click.Context, project_dir: Path, verbose: bool) -> None:
    """Stage Conductor -- multi-agent pipeline orchestrator.

    \b
    Examples:
      conductor init my-app
      conductor run
      conductor run --from 02-ui-ux --until 03-implementation
      conductor checkpoint list
      conductor checkpoint restore checkpoint_01-planning_2025-05-01T10-00-00
    """
    # Model output can contain characters the Windows console code page rejects.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["project"] = project_dir.resolve()
    ctx.obj["verbose"] = verbose


@main.command()
@click.argument("name")
@click.option("--pipeline", "pipeline_version", default=None, help="Pipeline version (default: from config)")
@click.option("--sprints", default=3, show_default=True, type=click.IntRange(min=1))
@click.pass_context
def init(ctx: click.Context, name: str, pipeline_version: str | None, sprints: int) -> None:
    """Create the progress file and stage directories."""
    try:
        state = _machine(ctx).init_project(name, pipeline_version, total_sprints=sprints)
    except ConductorError as exc:
        _fail(str(exc))
    console.print(
        f"[green]Initialized[/green] {state.project_name}: pipeline {state.pipeline_version}, "
        f"{len(state.stages)} stages, starting at {state.pipeline.current_stage}"
    )


@main.command()
@click.option("--from", "start", default=None, help="Stage to start from (default: current stage)")
@click.option("--until", default=None, help="Stop after this stage")
@click.pass_context
def run(ctx: click.Context, start: str | None, until: str | None) -> None:
    """Run stages in order until done, paused or failed."""
    try:
        _drive(ctx, start, until)
    except ConductorError as exc:
        _fail(str(exc))


@main.command()
@click.option("--run/--no-run", "run_after", default=True, help="Continue running after resuming")
@click.pass_context
def resume(ctx: click.Context, run_after: bool) -> None:
    """Clear a pause and, by default, continue the pipeline."""
    try:
        state = _machine(ctx).resume_pipeline()
        console.print(f"Resumed at {state.pipeline.current_stage}")
        if run_after:
            _drive(ctx, None, None)
    except ConductorError as exc:
        _fail(str(exc))


@main.command()
@click.option("--reason", default="Paused by user", show_default=True)
@click.pass_context
def pause(ctx: click.Context, reason: str) -> None:
    """Request a pause. A running pipeline stops after its current round."""
    try:
        state = _machine(ctx).pause_pipeline(reason)
    except ConductorError as exc:
        _fail(str(exc))
    console.print(f"[yellow]Paused[/yellow] at {state.pipeline.current_stage}: {reason}")


@main.command()
@click.argument("stage_id")
@click.option("--reason", required=True, help="Why the stage is being skipped")
@click.pass_context
def skip(ctx: click.Context, stage_id: str, reason: str) -> None:
    """Mark a stage skipped and advance past it."""
    try:
        state = _machine(ctx).skip_stage(stage_id, reason)
    except ConductorError as exc:
        _fail(str(exc))
    console.print(f"[magenta]Skipped[/magenta] {stage_id}; current stage: {state.pipeline.current_stage}")


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Print pipeline progress."""
    try:
        print_status(_machine(ctx).status())
    except ConductorError as exc:
        _fail(str(exc))


@main.command()
@click.argument("stage_id", required=False)
@click.pass_context
def validate(ctx: click.Context, stage_id: str | None) -> None:
    """Validate a stage's outputs (default: current stage).

    Exit code 0 when every check passes, 1 on a critical failure, 2 when only
    high or medium findings remain.
    """
    try:
        machine = _machine(ctx)
        stage_id = stage_id or machine.load().pipeline.current_stage
        summary = machine.validator.validate(stage_id)
    except ConductorError as exc:
        _fail(str(exc))
    print_validation(summary)
    sys.exit(exit_code(summary))


@main.command()
@click.pass_context
def compliance(ctx: click.Context) -> None:
    """List stages that never recorded a debate or sequential execution."""
    try:
        missing, skipped = _machine(ctx).compliance()
    except ConductorError as exc:
        _fail(str(exc))
    print_compliance(missing, skipped)
    if missing:
        sys.exit(1)


@main.command()
@click.pass_context
def models(ctx: click.Context) -> None:
    """Show the resolved model tiers and where they came from."""
    resolved = _resolve_models(ctx)
    table = Table(show_header=True, header_style="bold")
    table.add_column("Tier")
    table.add_column("Model")
    table.add_column("Available")
    for name, tier in resolved.tiers.items():
        table.add_row(name, tier.id, "[green]yes[/green]" if tier.available else "[red]no[/red]")
    console.print(f"Source: [bold]{resolved.source}[/bold] {resolved.timestamp}")
    console.print(table)


@main.group()
def checkpoint() -> None:
    """Create, list, restore and prune checkpoints."""


@checkpoint.command("create")
@click.option("--stage", "stage_id", default=None, help="Owning stage (default: current stage)")
@click.option("-d", "--description", default=None)
@click.option("--include-config", is_flag=True, help="Also snapshot config/")
@click.pass_context
def checkpoint_create(ctx: click.Context, stage_id: str | None, description: str | None, include_config: bool) -> None:
    try:
        metadata = _machine(ctx).create_checkpoint(stage_id, description, include_config=include_config)
    except ConductorError as exc:
        _fail(str(exc))
    console.print(f"[green]Created[/green] {metadata.id} ({', '.join(metadata.files) or 'empty'})")


@checkpoint.command("list")
@click.pass_context
def checkpoint_list(ctx: click.Context) -> None:
    print_checkpoints(_machine(ctx).list_checkpoints())


@checkpoint.command("restore")
@click.argument("checkpoint_id")
@click.option("--safety/--no-safety", default=True, show_default=True,
              help="Snapshot the current state before restoring")
@click.option("--include-config", is_flag=True, help="Also restore config/")
@click.option("--file", "files", multiple=True, help="Restore only this path (repeatable)")
@click.pass_context
def checkpoint_restore(
    ctx: click.Context, checkpoint_id: str, safety: bool, include_config: bool, files: tuple[str, ...],
) -> None:
    """Roll the project back to CHECKPOINT_ID."""
    try:
        restored, safety_id = _machine(ctx).restore_checkpoint(
            checkpoint_id,
            safety_checkpoint=safety,
            restore_config=include_config,
            partial=bool(files),
            files=list(files) or None,
        )
    except ConductorError as exc:
        _fail(str(exc))
    if safety_id:
        console.print(f"[dim]Safety checkpoint: {safety_id}[/dim]")
    console.print(f"[green]Restored[/green] {checkpoint_id}: {', '.join(restored) or 'nothing'}")


@checkpoint.command("delete")
@click.argument("checkpoint_id")
@click.pass_context
def checkpoint_delete(ctx: click.Context, checkpoint_id: str) -> None:
    if not _machine(ctx).delete_checkpoint(checkpoint_id):
        _fail(f"No checkpoint {checkpoint_id}")
    console.print(f"Deleted {checkpoint_id}")


@checkpoint.command("cleanup")
@click.option("--keep", "max_retention", default=None, type=click.IntRange(min=0),
              help="Checkpoints to keep (default: from config)")
@click.option("--preserve-milestones/--no-preserve-milestones", default=None)
@click.pass_context
def checkpoint_cleanup(ctx: click.Context, max_retention: int | None, preserve_milestones: bool | None) -> None:
    deleted = _machine(ctx).cleanup_checkpoints(max_retention, preserve_milestones)
    console.print(f"Deleted {len(deleted)} checkpoint(s)")
    for checkpoint_id in deleted:
        console.print(f"  - {checkpoint_id}")


if __name__ == "__main__":
    main()
