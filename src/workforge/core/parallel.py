"""Parallel coordinator: fans a group of sub-steps out and aggregates them."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from workforge.config.schema import ParallelStep, ParallelSubStep, WorkflowDefinition
from workforge.core.executor import CancellationToken, SessionSettings
from workforge.core.models import StepRun, StepStatus, WorkflowRun
from workforge.core.sessions import resolve_timeout
from workforge.core.state_machine import transition_step
from workforge.core.step_runner import DispatchOutcome, DispatchPlan, RunHooks, StepRunner
from workforge.errors import EvaluationError, ExecutorFailure, error_kind
from workforge.observe.tracer import EventType

_log = logging.getLogger(__name__)

_STEP_FAILURES = (EvaluationError, ExecutorFailure)


class ParallelCoordinator:
    """Each sub-step gets its own fresh session and a child ``StepRun`` named
    ``<step>.<sub>``. Cancellation of the losers is cooperative: their tokens
    are set and their tasks cancelled, but an adapter may still finish.

    When the group resolves early without ``fail_fast`` the remaining
    sub-steps keep running; their results are recorded by a drain task that
    the caller collects from ``background``.
    """

    def __init__(self, runner: StepRunner, default_timeout: float):
        self.runner = runner
        self.default_timeout = default_timeout

    async def run_parallel(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        step: ParallelStep,
        step_run: StepRun,
        cancel: CancellationToken,
        hooks: RunHooks,
        background: list[asyncio.Task],
    ) -> tuple[dict[str, Any], str]:
        cfg = step.parallel
        total = len(cfg.steps)
        required = cfg.required
        view = await self.runner.full_view(run)
        group_token = cancel.child()

        children = [StepRun(step_id=f"{step.id}.{sub.id}", agent=sub.agent) for sub in cfg.steps]
        step_run.children = children
        tasks: dict[asyncio.Task, tuple[ParallelSubStep, StepRun]] = {}
        for sub, child in zip(cfg.steps, children):
            transition_step(child, StepStatus.RUNNING)
            task = asyncio.create_task(
                self._run_substep(run, definition, step, sub, view, group_token),
                name=f"{run.id}:{step.id}.{sub.id}",
            )
            tasks[task] = (sub, child)
        await hooks.checkpoint(run)

        _log.info(
            "Parallel %s: %d sub-steps, need %d", step.id, total, required,
            extra={"run_id": run.id, "step_id": step.id},
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + cfg.timeout if cfg.timeout else None
        pending = set(tasks)
        succeeded = failed = 0
        timed_out = False
        resolved: bool | None = None
        outputs: dict[str, Any] = {}

        try:
            while pending:
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    timed_out = True
                    break
                done, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                if not done:
                    timed_out = True
                    break
                for task in done:
                    sub, child = tasks[task]
                    if await self._record(run, step, sub, child, task, outputs, hooks):
                        succeeded += 1
                    else:
                        failed += 1
                await hooks.checkpoint(run)

                if succeeded >= required:
                    resolved = True
                    break
                if total - failed < required and (cfg.completion != "all" or cfg.fail_fast):
                    resolved = False
                    break
        except BaseException:
            # Cancelled or fatal: stop every sibling still in flight.
            group_token.cancel("cancelled")
            await self._cancel({t for t in tasks if not t.done()}, tasks, "cancelled")
            raise

        if resolved is None:
            resolved = not timed_out and succeeded >= required

        if pending:
            if timed_out or cfg.fail_fast:
                reason = "timeout" if timed_out else "cancelled"
                group_token.cancel(reason)
                await self._cancel(pending, tasks, reason)
                await hooks.checkpoint(run)
            else:
                background.append(asyncio.create_task(
                    self._drain(run, step, pending, tasks, outputs, hooks),
                    name=f"{run.id}:{step.id}:drain",
                ))

        aggregate = {
            "subSteps": [
                {
                    "id": sub.id,
                    "status": child.status.value,
                    "output": outputs.get(sub.id),
                    "error": child.error,
                }
                for sub, child in zip(cfg.steps, children)
            ],
            "completed": succeeded,
            "failed": failed,
        }

        if timed_out:
            raise ExecutorFailure(
                f"Parallel step '{step.id}' timed out after {cfg.timeout}s "
                f"({succeeded}/{required} completed)",
                kind="timeout",
            )
        if not resolved:
            errors = "; ".join(
                f"{child.step_id}: {child.error}" for child in children
                if child.status == StepStatus.FAILED
            )
            raise ExecutorFailure(
                f"Parallel step '{step.id}' failed: completion criteria not met "
                f"({succeeded}/{required}). Failures: {errors or 'none'}"
            )

        path = await self.runner.artifacts.write_output(
            run.id,
            step.output.file if step.output else f"{step.id}-parallel.json",
            aggregate,
        )
        return aggregate, path

    async def _run_substep(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        step: ParallelStep,
        sub: ParallelSubStep,
        view: dict[str, Any],
        group_token: CancellationToken,
    ) -> DispatchOutcome:
        settings = SessionSettings(
            mode="fresh",
            context="full",
            cleanup="delete",
            timeout=resolve_timeout(sub.timeout, None, definition, self.default_timeout),
        )
        return await self.runner.dispatch(
            run,
            definition,
            DispatchPlan(
                step_id=f"{step.id}-{sub.id}",
                agent_id=sub.agent,
                input_template=sub.input,
                session=settings,
                view=view,
                output=sub.output,
                session_scope=f"{step.id}.{sub.id}",
                artifact_name=sub.output.file if sub.output else f"{step.id}-{sub.id}.md",
            ),
            group_token.child(),
        )

    async def _record(
        self,
        run: WorkflowRun,
        step: ParallelStep,
        sub: ParallelSubStep,
        child: StepRun,
        task: asyncio.Task,
        outputs: dict[str, Any],
        hooks: RunHooks,
    ) -> bool:
        """Copy a finished sub-step task onto its record. True on success."""
        if task.cancelled():
            child.error = "cancelled"
            child.error_kind = "cancelled"
            transition_step(child, StepStatus.SKIPPED)
            return False
        exc = task.exception()
        if exc is not None and not isinstance(exc, _STEP_FAILURES):
            child.error = str(exc)
            child.error_kind = error_kind(exc)
            transition_step(child, StepStatus.FAILED)
            raise exc
        if exc is not None:
            child.error = str(exc)
            child.error_kind = error_kind(exc)
            transition_step(child, StepStatus.FAILED)
            _log.warning(
                "Parallel sub-step %s failed: %s", child.step_id, exc,
                extra={"run_id": run.id, "step_id": step.id},
            )
            await hooks.emit(
                EventType.PARALLEL_SUBSTEP, run, child.step_id, sub.agent,
                data={"status": "failed", "error": str(exc)},
            )
            return False
        outcome: DispatchOutcome = task.result()
        child.output = outcome.output_path
        child.session_key = outcome.session_key
        transition_step(child, StepStatus.COMPLETED)
        outputs[sub.id] = outcome.parsed
        await hooks.emit(
            EventType.PARALLEL_SUBSTEP, run, child.step_id, sub.agent,
            data={"status": "completed"}, duration_ms=outcome.duration * 1000,
        )
        return True

    async def _cancel(
        self,
        pending: set[asyncio.Task],
        tasks: dict[asyncio.Task, tuple[ParallelSubStep, StepRun]],
        reason: str,
    ) -> None:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in pending:
            _, child = tasks[task]
            if child.is_terminal:
                continue
            child.error = reason
            child.error_kind = reason
            # A timed-out sub-step failed; one cancelled after the group resolved did not.
            transition_step(child, StepStatus.FAILED if reason == "timeout" else StepStatus.SKIPPED)

    async def _drain(
        self,
        run: WorkflowRun,
        step: ParallelStep,
        pending: set[asyncio.Task],
        tasks: dict[asyncio.Task, tuple[ParallelSubStep, StepRun]],
        outputs: dict[str, Any],
        hooks: RunHooks,
    ) -> None:
        remaining = set(pending)
        try:
            while remaining:
                done, remaining = await asyncio.wait(remaining, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    sub, child = tasks[task]
                    await self._record(run, step, sub, child, task, outputs, hooks)
                await hooks.checkpoint(run)
        except BaseException:
            await self._cancel({t for t in remaining if not t.done()}, tasks, "cancelled")
            raise
        _log.debug(
            "Parallel %s background sub-steps finished", step.id,
            extra={"run_id": run.id, "step_id": step.id},
        )
