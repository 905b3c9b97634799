"""Rich formatting helpers for the Mender CLI.

Rich auto-detects TTY and degrades gracefully when piped (no ANSI codes).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from mender.history.models import COMPLETED_FAILED, COMPLETED_SUCCESS
from mender.repair.models import EventKind

if TYPE_CHECKING:
    from mender.capabilities.registry import CapabilityRegistry
    from mender.history.models import AttemptRecord, SessionInfo, SessionSummary
    from mender.repair.models import CorrectionResult, ProgressEvent

_EVENT_STYLES = {
    EventKind.BUILD_SUCCEEDED: "green",
    EventKind.BUILD_FAILED: "red",
    EventKind.FIXING_SUCCESS: "green",
    EventKind.FIXING_FAILED: "yellow",
    EventKind.PROJECT_COMPLETE: "bold green",
    EventKind.ERROR: "bold red",
}


def get_console() -> Console:
    """Create a Rich Console that auto-detects TTY for graceful pipe degradation."""
    return Console(stderr=False)


def _status_style(status: str) -> str:
    if status == COMPLETED_SUCCESS:
        return "green"
    if status == COMPLETED_FAILED:
        return "red"
    return "yellow"


def _first_line(text: str, width: int = 80) -> str:
    line = text.strip().splitlines()[0] if text.strip() else ""
    return line if len(line) <= width else line[: width - 3] + "..."


def format_event(event: ProgressEvent, console: Console) -> None:
    """Print one progress event as a single line."""
    style = _EVENT_STYLES.get(event.kind, "cyan")
    label = event.kind.value.replace("_", " ")
    console.print(
        f"[dim]#{event.attempt}[/dim] [{style}]{label}[/{style}] {escape(event.message)}",
        highlight=False,
    )


def format_result(result: CorrectionResult, console: Console) -> None:
    """Display the outcome of a correction loop."""
    style = "green" if result.succeeded else "red"
    console.print(f"[{style}]{result.state.value.upper()}[/{style}]", highlight=False)

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("#", justify="right", style="yellow")
    table.add_column("Build", width=6)
    table.add_column("Strategy", style="cyan")
    table.add_column("Fixes", justify="right", style="green")
    table.add_column("Diagnostic")
    for attempt in result.attempts:
        table.add_row(
            str(attempt.index),
            "[green]ok[/green]" if attempt.build_succeeded else "[red]fail[/red]",
            attempt.strategy.value,
            str(len(attempt.fixes_applied)),
            escape(_first_line(attempt.diagnostic_text)),
        )
    console.print(table)
    console.print(
        f"Builds: {result.build_calls}  Oracle calls: {result.oracle_calls}"
        + (f"  Session: {result.session_id}" if result.session_id else ""),
        highlight=False,
    )


def format_sessions(sessions: list[SessionInfo], console: Console) -> None:
    """Display recorded sessions in a compact table."""
    if not sessions:
        console.print("[dim]No sessions.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("Session", style="yellow")
    table.add_column("Started", style="dim")
    table.add_column("Project", style="cyan")
    table.add_column("Status")
    for info in sessions:
        style = _status_style(info.status)
        table.add_row(
            info.session_id,
            info.start_time.strftime("%Y-%m-%d %H:%M"),
            escape(info.project_identifier),
            f"[{style}]{info.status}[/{style}]",
        )
    console.print(table)


def format_session_detail(
    info: SessionInfo,
    attempts: list[AttemptRecord],
    summary: SessionSummary | None,
    console: Console,
) -> None:
    """Display one session with its attempts and outcome."""
    style = _status_style(info.status)
    console.print(f"[yellow]session {info.session_id}[/yellow]")
    console.print(f"  Project:   [cyan]{escape(info.project_identifier)}[/cyan]")
    if info.description:
        console.print(f"  About:     {escape(_first_line(info.description))}")
    console.print(f"  Workspace: {escape(info.workspace_path)}")
    if info.artifact_path:
        console.print(f"  Artifact:  {escape(info.artifact_path)}")
    console.print(f"  Status:    [{style}]{info.status}[/{style}]")
    console.print(f"  History:   {' -> '.join(info.status_history)}", highlight=False)
    console.print(f"  Started:   {info.start_time.strftime('%Y-%m-%d %H:%M:%S')}")

    if attempts:
        console.print()
        table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
        table.add_column("#", justify="right", style="yellow")
        table.add_column("Fixes", justify="right", style="green")
        table.add_column("Diagnostic")
        table.add_column("Analysis", style="dim")
        for record in attempts:
            table.add_row(
                str(record.attempt),
                str(len(record.fixes)),
                escape(_first_line(record.diagnostic, 60)),
                escape(_first_line(record.analysis, 60)),
            )
        console.print(table)

    if summary is not None:
        console.print()
        verdict = "[green]solved[/green]" if summary.success else "[red]failed[/red]"
        console.print(f"  Outcome:   {verdict} after {summary.total_attempts} attempt(s)")
        if summary.last_error:
            console.print(f"  Last error: {escape(_first_line(summary.last_error))}")


def format_capabilities(registry: CapabilityRegistry, console: Console) -> None:
    """Display registered capabilities and their parameters."""
    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("Capability", style="cyan")
    table.add_column("Parameters")
    table.add_column("Writes", width=6)
    table.add_column("Description", style="dim")
    for descriptor in registry.list_all():
        params = ", ".join(
            f"{p.name}:{p.semantic_type.value}" + ("" if p.required else "?")
            for p in descriptor.parameters
        )
        table.add_row(
            descriptor.name,
            escape(params) or "[dim]-[/dim]",
            "yes" if registry.is_mutating(descriptor.name) else "",
            escape(descriptor.description),
        )
    console.print(table)


def format_error(message: str, console: Console) -> None:
    """Display an error message."""
    console.print(f"[red]Error:[/red] {escape(message)}", highlight=False)
