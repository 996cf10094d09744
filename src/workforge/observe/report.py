"""Rich rendering of a run's step history."""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

from workforge.core.models import RunStatus, StepRun, StepStatus, WorkflowRun

STATUS_STYLES = {
    StepStatus.PENDING: "dim",
    StepStatus.RUNNING: "cyan",
    StepStatus.COMPLETED: "green",
    StepStatus.FAILED: "red",
    StepStatus.SKIPPED: "yellow",
}

RUN_STYLES = {
    RunStatus.PENDING: "dim",
    RunStatus.RUNNING: "cyan",
    RunStatus.BLOCKED: "yellow",
    RunStatus.COMPLETED: "green",
    RunStatus.FAILED: "red",
}


def _status(step_run: StepRun) -> str:
    style = STATUS_STYLES[step_run.status]
    return f"[{style}]{step_run.status.value}[/{style}]"


def _detail(step_run: StepRun) -> str:
    parts: list[str] = []
    if step_run.loop_state is not None:
        ls = step_run.loop_state
        parts.append(
            f"{ls.completed_iterations}/{ls.total_iterations} iterations"
            + (f", {ls.failed_iterations} failed" if ls.failed_iterations else "")
        )
    if step_run.escalation is not None:
        parts.append(f"escalated to {step_run.escalation.target} ({step_run.escalation.status.value})")
    if step_run.error:
        parts.append(step_run.error)
    return "; ".join(parts)


def build_run_table(run: WorkflowRun, show_children: bool = True) -> Table:
    table = Table(
        title=f"Run {run.id}",
        caption=f"{run.workflow_id} v{run.workflow_version}",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Step", style="white")
    table.add_column("Agent", style="dim")
    table.add_column("Status")
    table.add_column("Retries", justify="right", style="yellow")
    table.add_column("Duration", justify="right", style="green")
    table.add_column("Details", overflow="fold")

    def _row(step_run: StepRun, indent: str = "") -> None:
        table.add_row(
            f"{indent}{step_run.step_id}",
            step_run.agent or "—",
            _status(step_run),
            str(step_run.retries) if step_run.retries else "",
            f"{step_run.duration:.1f}s" if step_run.duration is not None else "",
            _detail(step_run),
        )

    for step_run in run.steps:
        _row(step_run)
        if show_children:
            for child in step_run.children:
                _row(child, indent="  ")
    return table


def print_run_report(run: WorkflowRun, console: Console | None = None, show_children: bool = True) -> None:
    console = console or Console()
    style = RUN_STYLES[run.status]
    console.print(
        f"[bold]Run[/bold] {run.id} [dim]|[/dim] {run.workflow_id} v{run.workflow_version} "
        f"[dim]|[/dim] [{style}]{run.status.value}[/{style}]"
    )
    if run.current_step:
        console.print(f"[dim]Current step:[/dim] {run.current_step}")
    if run.error:
        console.print(f"[{style}]{run.error}[/{style}]")
    console.print(build_run_table(run, show_children=show_children))
