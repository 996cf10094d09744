"""CLI entry points for workforge."""

from __future__ import annotations

import asyncio
import importlib
import inspect
from typing import Any, Optional

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from workforge._version import __version__

app = typer.Typer(
    name="workforge",
    help="Workforge — durable multi-agent workflow execution engine.",
    no_args_is_help=True,
)
console = Console()


def parse_vars(pairs: list[str] | None) -> dict[str, Any]:
    """``key=value`` pairs; values are read as YAML scalars so numbers and lists work."""
    result: dict[str, Any] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise typer.BadParameter(f"Expected key=value, got '{pair}'", param_hint="--var")
        key, _, raw = pair.partition("=")
        try:
            result[key.strip()] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            result[key.strip()] = raw
    return result


def load_executor(target: str):
    """Import ``module:attr``. A class is instantiated; a plain callable is wrapped."""
    from workforge.core.executor import CallableExecutor, StepExecutor

    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter(f"Expected module:attr, got '{target}'", param_hint="--executor")
    obj = getattr(importlib.import_module(module_name), attr)
    if inspect.isclass(obj) and issubclass(obj, StepExecutor):
        return obj()
    if isinstance(obj, StepExecutor):
        return obj
    if callable(obj):
        return CallableExecutor(obj)
    raise typer.BadParameter(f"'{target}' is not a StepExecutor or callable", param_hint="--executor")


def _build_supervisor(config_path: Optional[str], executor: Optional[str] = None):
    from workforge.config.loader import load_engine_config
    from workforge.core.supervisor import RunSupervisor
    from workforge.errors import DefinitionError
    from workforge.observe.logging import configure_logging

    try:
        config = load_engine_config(config_path)
    except DefinitionError as e:
        console.print(f"[red]Configuration Error:[/red] {e}")
        raise typer.Exit(code=1)
    configure_logging(config.observe.log_level, config.observe.log_format)
    return RunSupervisor.from_config(config, executor=load_executor(executor) if executor else None)


def _print_outcome(run) -> None:
    from workforge.core.models import RunStatus
    from workforge.observe.report import print_run_report

    console.print()
    print_run_report(run, console=console)
    if run.status == RunStatus.BLOCKED:
        console.print(
            Panel(
                f"{run.error or 'Waiting for a human decision.'}\n\n"
                f"Resume with: [bold]workforge resume {run.id}[/bold]",
                title="[bold yellow]Blocked[/bold yellow]",
                border_style="yellow",
            )
        )
    elif run.status == RunStatus.FAILED:
        console.print(f"\n[red]Run failed:[/red] {run.error or 'See step details'}")
        raise typer.Exit(code=1)
    else:
        console.print(f"\n[green]✅ Run {run.id} {run.status.value}[/green]")


def _subscribe_progress(supervisor) -> None:
    from workforge.observe.tracer import EventType, TraceEvent

    def on_event(event: TraceEvent):
        if event.event_type == EventType.STEP_START:
            agent = " [dim]" + escape(f"[{event.agent_name}]") + "[/dim]" if event.agent_name else ""
            console.print(f"  [bold]▸[/bold] [cyan]{event.step_id}[/cyan]{agent}...")
        elif event.event_type == EventType.STEP_END:
            duration = event.duration_ms / 1000 if event.duration_ms else 0
            if event.data.get("status") == "completed":
                console.print(f"    [green]✓[/green] Done ({duration:.1f}s)")
            else:
                console.print(f"    [red]✗[/red] {event.data.get('error', 'failed')}")
        elif event.event_type == EventType.RETRY:
            console.print(f"    [yellow]↻ retry {event.data.get('retries')}[/yellow]")
        elif event.event_type == EventType.ESCALATION:
            console.print(f"    [yellow]⚠ escalated to {event.data.get('target')}[/yellow]")
        elif event.event_type == EventType.ERROR:
            console.print(f"    [red]❌ Error: {event.data.get('error', 'Unknown')}[/red]")

    supervisor.events.subscribe_sync(
        on_event,
        event_types=[
            EventType.STEP_START, EventType.STEP_END, EventType.RETRY,
            EventType.ESCALATION, EventType.ERROR,
        ],
    )


@app.command()
def validate(
    workflow_path: str = typer.Argument(..., help="Path to a workflow definition YAML file"),
    config_path: str = typer.Option(None, "--config", "-c", help="Engine configuration file"),
):
    """Validate a workflow definition without executing it."""
    from workforge.config.loader import load_definition, load_engine_config
    from workforge.errors import DefinitionError

    try:
        config = load_engine_config(config_path)
        definition = load_definition(workflow_path, config.limits)
    except DefinitionError as e:
        console.print(f"[red]❌ Validation failed:[/red]\n{e}")
        raise typer.Exit(code=1)

    console.print(f"[green]✅ {workflow_path} is valid![/green]")
    console.print(f"  Workflow: {definition.name} ({definition.id} v{definition.version})")
    agents = ", ".join(f"{a.id} ({a.role})" for a in definition.agents)
    console.print(f"  Agents: {agents}")
    steps = ", ".join(f"{s.id} [{s.type}]" for s in definition.steps)
    console.print(f"  Steps: {escape(steps)}")


@app.command()
def run(
    workflow_path: str = typer.Argument(..., help="Path to a workflow definition YAML file"),
    var: list[str] = typer.Option(None, "--var", "-v", help="Seed context entry key=value"),
    task_id: str = typer.Option(None, "--task-id", help="Task id recorded on the run"),
    executor: str = typer.Option(None, "--executor", "-e", help="Step executor as module:attr"),
    config_path: str = typer.Option(None, "--config", "-c", help="Engine configuration file"),
    user: str = typer.Option("system", "--user", "-u", help="User id for access checks and audit"),
    trace_out: str = typer.Option(None, "--trace-out", help="Write the run trace as JSON to this path"),
):
    """Start a run and drive it until it completes, fails or blocks."""
    from workforge.config.loader import load_definition
    from workforge.errors import WorkforgeError

    seed = parse_vars(var)
    supervisor = _build_supervisor(config_path, executor)
    try:
        definition = load_definition(workflow_path, supervisor.config.limits)
    except WorkforgeError as e:
        console.print(f"[red]❌ Validation failed:[/red]\n{e}")
        raise typer.Exit(code=1)

    console.print(f"\n[bold]⚙ Workforge[/bold] v{__version__}")
    console.print(
        f"[dim]Workflow:[/dim] {definition.name} v{definition.version} "
        f"[dim]|[/dim] [dim]Agents:[/dim] {len(definition.agents)} "
        f"[dim]|[/dim] [dim]Steps:[/dim] {len(definition.steps)}"
    )
    console.print()
    _subscribe_progress(supervisor)

    async def _main():
        try:
            return await supervisor.arun(definition, seed=seed, task_id=task_id, user_id=user)
        finally:
            await supervisor.repository.close()

    try:
        result = asyncio.run(_main())
    except (WorkforgeError, PermissionError) as e:
        console.print(f"\n[red]Execution Error:[/red] {e}")
        raise typer.Exit(code=1)
    if trace_out and supervisor.tracer is not None:
        supervisor.tracer.export_json(trace_out, run_id=result.id)
        console.print(f"[dim]Trace written to {trace_out}[/dim]")
    _print_outcome(result)


@app.command()
def resume(
    run_id: str = typer.Argument(..., help="Run id"),
    var: list[str] = typer.Option(None, "--var", "-v", help="Context entry merged before resuming"),
    skip: bool = typer.Option(False, "--skip", help="Skip the blocked step"),
    executor: str = typer.Option(None, "--executor", "-e", help="Step executor as module:attr"),
    config_path: str = typer.Option(None, "--config", "-c", help="Engine configuration file"),
    user: str = typer.Option("system", "--user", "-u", help="User id for access checks and audit"),
):
    """Resume a blocked or interrupted run from its last checkpoint."""
    from workforge.core.models import RunStatus
    from workforge.errors import WorkforgeError

    context = parse_vars(var)
    supervisor = _build_supervisor(config_path, executor)
    _subscribe_progress(supervisor)

    async def _main():
        try:
            run = await supervisor.get_run(run_id)
            choice = "skip" if skip else "retry"
            if run.status == RunStatus.BLOCKED and not skip and not context:
                from rich.prompt import Prompt

                console.print(f"[yellow]Run {run_id} is blocked at {run.current_step}:[/yellow] {run.error}")
                choice = Prompt.ask(
                    "[bold cyan]How should the run continue?[/bold cyan]",
                    choices=["retry", "skip", "fail"],
                    default="retry",
                )
            if choice == "fail":
                return await supervisor.cancel_run(run_id, user_id=user)
            resumed = await supervisor.resume_run(
                run_id, context=context or None, skip=choice == "skip", user_id=user
            )
            return await supervisor.wait_for(resumed.id)
        finally:
            await supervisor.repository.close()

    try:
        result = asyncio.run(_main())
    except (WorkforgeError, PermissionError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    _print_outcome(result)


@app.command()
def cancel(
    run_id: str = typer.Argument(..., help="Run id"),
    config_path: str = typer.Option(None, "--config", "-c", help="Engine configuration file"),
    user: str = typer.Option("system", "--user", "-u", help="User id for access checks and audit"),
):
    """Cancel a run that has not finished."""
    from workforge.errors import WorkforgeError

    supervisor = _build_supervisor(config_path)

    async def _main():
        try:
            return await supervisor.cancel_run(run_id, user_id=user)
        finally:
            await supervisor.repository.close()

    try:
        result = asyncio.run(_main())
    except (WorkforgeError, PermissionError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    console.print(f"[yellow]Run {result.id} cancelled.[/yellow]")


@app.command()
def show(
    run_id: str = typer.Argument(..., help="Run id"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw run record"),
    config_path: str = typer.Option(None, "--config", "-c", help="Engine configuration file"),
):
    """Show a run's status and step history."""
    from workforge.errors import WorkforgeError
    from workforge.observe.report import print_run_report

    supervisor = _build_supervisor(config_path)

    async def _main():
        try:
            return await supervisor.get_run(run_id)
        finally:
            await supervisor.repository.close()

    try:
        result = asyncio.run(_main())
    except WorkforgeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    if as_json:
        console.print_json(result.to_json())
        return
    print_run_report(result, console=console)


@app.command()
def runs(
    workflow: str = typer.Option(None, "--workflow", "-w", help="Filter by workflow id"),
    status: str = typer.Option(None, "--status", "-s", help="Filter by run status"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum runs to list"),
    config_path: str = typer.Option(None, "--config", "-c", help="Engine configuration file"),
):
    """List runs, newest first."""
    from workforge.core.models import RunStatus
    from workforge.core.supervisor import RunSupervisor

    if status is not None and status not in {s.value for s in RunStatus}:
        console.print(f"[red]Error:[/red] unknown status '{status}'")
        raise typer.Exit(code=1)
    supervisor = _build_supervisor(config_path)

    async def _main():
        try:
            return await supervisor.list_runs(workflow_id=workflow, status=status, limit=limit)
        finally:
            await supervisor.repository.close()

    found = asyncio.run(_main())
    if not found:
        console.print("[dim]No runs found.[/dim]")
        return

    table = Table(title="Runs", show_header=True, header_style="bold cyan")
    table.add_column("Run", style="white")
    table.add_column("Workflow", style="dim")
    table.add_column("Status")
    table.add_column("Current step", style="dim")
    table.add_column("Started", style="dim")
    for item in found:
        table.add_row(
            item.id,
            f"{item.workflow_id} v{item.workflow_version}",
            item.status.value,
            item.current_step or "—",
            item.started_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)

    summary = RunSupervisor.stats(found)
    console.print(
        f"\n[dim]{summary['total']} runs, success rate "
        f"{summary['success_rate']:.0%}[/dim]"
    )


@app.command()
def version():
    """Show Workforge version."""
    console.print(f"⚙ Workforge v{__version__}")


if __name__ == "__main__":
    app()
