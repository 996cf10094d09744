#!/usr/bin/env python3
"""
Live demo of Workforge — runs the feature development workflow with a
scripted executor (no agent runtime needed), blocks at the sign-off gate,
then resumes it.
"""
import asyncio

from rich.console import Console

from workforge import CallableExecutor, EngineConfig, RunSupervisor, load_definition
from workforge.observe.report import print_run_report
from workforge.observe.tracer import EventType, TraceEvent

# ──── Scripted agent responses per role ────
RESPONSES = {
    "planner": (
        "## Plan: password reset\n\n"
        "1. Add a reset-token table with expiry.\n"
        "2. Email a signed link from the request endpoint.\n"
        "3. Validate the token and rotate the password hash.\n"
    ),
    "developer": "Implemented the story with unit tests.\n",
    "tester": "All 42 tests pass.\nSTATUS: done\n",
    "reviewer": "Approved with minor comments on error messages.\n",
}

console = Console()


async def scripted_agent(request):
    await asyncio.sleep(0.2)
    return RESPONSES.get(request.agent.role, "done")


def on_event(event: TraceEvent):
    if event.event_type == EventType.STEP_START:
        console.print(
            f"  [bold]▸[/bold] Running step [cyan]{event.step_id}[/cyan] "
            f"[dim]({event.agent_name})[/dim]..."
        )
    elif event.event_type == EventType.STEP_END:
        ms = event.duration_ms or 0
        if event.data.get("status") == "completed":
            console.print(f"    [green]✓[/green] Done ({ms/1000:.1f}s)")
        else:
            console.print(f"    [red]✗[/red] {event.data.get('error', 'failed')}")
    elif event.event_type == EventType.ESCALATION:
        console.print(f"    [yellow]⚠ escalated to {event.data.get('target')}[/yellow]")


async def main():
    print("=" * 60)
    print("  ⚙ Workforge — Live Demo (scripted agents)")
    print("=" * 60)
    print()

    config = EngineConfig.model_validate({"storage": {"backend": "memory"}})
    supervisor = RunSupervisor.from_config(config, executor=CallableExecutor(scripted_agent))
    supervisor.events.subscribe_sync(on_event)

    definition = load_definition("examples/01_feature_dev/workflow.yml")
    run = await supervisor.arun(definition, task_id="FEAT-42")

    print()
    console.print(f"[bold yellow]Blocked:[/bold yellow] {run.error}")
    console.print("[dim]Approving and resuming...[/dim]")
    print()

    await supervisor.resume_run(run.id, context={"approved": True})
    run = await supervisor.wait_for(run.id)

    print()
    console.print("[bold]━━━ RUN REPORT ━━━[/bold]")
    print_run_report(run, console=console)

    stats = supervisor.tracer.get_step_timings(run.id)
    console.print("[bold]━━━ STEP TIMINGS ━━━[/bold]")
    for step_id, timing in stats.items():
        console.print(f"  {step_id:<16} attempts={timing['attempts']}  last={timing['last_ms']:.0f}ms")
    print()

    await supervisor.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
