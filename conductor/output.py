"""Rich console output and markdown file saves for stage runs."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from conductor.models import (
    CheckpointMetadata,
    DebateOutcome,
    DebateRound,
    PipelineStatusReport,
    ValidationSummary,
)

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_STATUS_STYLES = {
    "pending": "dim",
    "in_progress": "yellow",
    "completed": "green",
    "skipped": "magenta",
    "running": "cyan",
    "paused": "yellow",
    "failed": "red",
}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _preview(content: str, words: int = 50) -> str:
    """Return first N words of an artifact."""
    all_words = content.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def _styled(status: str) -> str:
    style = _STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def print_round_summary(stage_id: str, rnd: DebateRound) -> None:
    """Print a brief summary of one round's artifacts."""
    console.print(Rule(f"[bold cyan]{stage_id} round {rnd.number} ({rnd.kind})[/bold cyan]"))
    for artifact in rnd.artifacts:
        console.print(
            Panel(
                _preview(artifact.content),
                title=f"[bold]{artifact.agent_role}[/bold] ({artifact.model})",
                subtitle=f"{artifact.latency_sec:.1f}s",
                border_style="dim",
            )
        )


def print_status(report: PipelineStatusReport) -> None:
    """Print the pipeline progress table."""
    console.print(
        Text(
            f"{report.project_name} | pipeline {report.pipeline_version} | "
            f"sprint {report.current_sprint}/{report.total_sprints} | {report.progress_percent}% complete",
            style="bold",
        )
    )
    table = Table(show_header=True, header_style="bold")
    table.add_column("Stage")
    table.add_column("Name")
    table.add_column("Mode")
    table.add_column("Status")
    table.add_column("Checkpoint", style="dim")
    for line in report.stages:
        marker = "> " if line.id == report.current_stage else "  "
        table.add_row(marker + line.id, line.name, line.mode, _styled(line.status), line.checkpoint_id or "")
    console.print(table)
    console.print(f"Pipeline: {_styled(report.status)}")
    if report.pause_reason:
        console.print(f"[yellow]Paused:[/yellow] {report.pause_reason}")
    if report.retry_state:
        console.print(
            f"[dim]Retry state: {report.retry_state.stage} attempt {report.retry_state.attempt}[/dim]"
        )


def print_checkpoints(checkpoints: list[CheckpointMetadata]) -> None:
    if not checkpoints:
        console.print("No checkpoints.")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("ID")
    table.add_column("Stage")
    table.add_column("Created")
    table.add_column("Description")
    for cp in checkpoints:
        description = cp.description or ""
        if cp.is_milestone:
            description = f"[green]{description}[/green]"
        table.add_row(cp.id, cp.stage, cp.created_at, description)
    console.print(table)


def print_validation(summary: ValidationSummary) -> None:
    console.print(Rule(f"[bold]Validation: {summary.stage_id}[/bold]"))
    for check in summary.checks:
        if check.passed:
            mark = "[green]PASS[/green]"
        elif check.required:
            mark = "[red]FAIL[/red]"
        else:
            mark = "[yellow]WARN[/yellow]"
        console.print(f"  {mark} {escape(f'[{check.severity}]')} {escape(check.name)}: {escape(check.message)}")
    console.print(f"Score: {summary.score:.2f}")


def print_compliance(missing: list[str], skipped: list[str]) -> None:
    if not missing:
        console.print("[green]Compliant:[/green] every stage recorded an execution event.")
        return
    console.print("[bold red]Non-compliant stages[/bold red] (no debate/sequential event recorded):")
    for stage_id in missing:
        note = " (skipped)" if stage_id in skipped else ""
        console.print(f"  - {stage_id}{note}")


def save_round_artifacts(outputs_dir: Path, rnd: DebateRound) -> list[Path]:
    """Write each artifact of a round to outputs/debate/round-N/<role>.md."""
    round_dir = outputs_dir / "debate" / f"round-{rnd.number}"
    round_dir.mkdir(parents=True, exist_ok=True)
    paths: list[Path] = []
    for artifact in rnd.artifacts:
        path = round_dir / f"{_slug(artifact.agent_role) or 'agent'}.md"
        path.write_text(artifact.content, encoding="utf-8")
        paths.append(path)
    return paths


def write_stage_output(outputs_dir: Path, filename: str, content: str) -> Path:
    """Write the stage's primary deliverable."""
    outputs_dir.mkdir(parents=True, exist_ok=True)
    path = outputs_dir / filename
    path.write_text(content, encoding="utf-8")
    logger.info("Stage output saved to: %s", path)
    return path


def save_debate_record(outcome: DebateOutcome, outputs_dir: Path) -> Path:
    """Save the full execution transcript as a markdown file.

    Args:
        outcome: The finished DebateOutcome.
        outputs_dir: The stage's outputs directory.

    Returns:
        Path to the saved file.
    """
    outputs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filepath = outputs_dir / "debate" / f"{timestamp}_{outcome.mode}_record.md"
    filepath.parent.mkdir(parents=True, exist_ok=True)

    lines: list[str] = [
        f"# {outcome.stage_id}: {outcome.mode} record",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Mode:** {outcome.mode}",
        f"**Rounds:** {len(outcome.rounds)}",
        f"**Agents:** {outcome.agent_count}",
        "",
        "---",
        "",
    ]

    for rnd in outcome.rounds:
        lines.append(f"## Round {rnd.number}: {rnd.kind.title()}")
        lines.append("")
        for artifact in rnd.artifacts:
            lines.append(f"### {artifact.agent_role} ({artifact.model})")
            lines.append("")
            lines.append(artifact.content)
            lines.append("")
            lines.append(
                f"*Latency: {artifact.latency_sec:.2f}s"
                + (f" | Tokens: {artifact.token_count}" if artifact.token_count else "")
                + "*"
            )
            lines.append("")

    if outcome.scores:
        lines.append("## Contention")
        lines.append("")
        for i, score in enumerate(outcome.scores, start=1):
            value = "n/a" if score.score is None else f"{score.score:.2f}"
            lines.append(f"- Round {i}: {value} -> {score.recommendation}")
        lines.append("")

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Execution record saved to: %s", filepath)
    return filepath
