"""Loop coordinator: runs a loop step's body once per collection item."""

from __future__ import annotations

import logging
from typing import Any

from workforge.config.schema import AgentStep, LimitsConfig, LoopStep, WorkflowDefinition
from workforge.core.context import ContextStore
from workforge.core.executor import CancellationToken, SessionSettings
from workforge.core.models import LoopState, StepRun, StepStatus, WorkflowRun
from workforge.core.sessions import resolve_session
from workforge.core.state_machine import transition_step
from workforge.core.step_runner import DispatchOutcome, DispatchPlan, RunHooks, StepRunner
from workforge.core.template import to_text
from workforge.errors import EvaluationError, ExecutorFailure, error_kind
from workforge.observe.tracer import EventType

_log = logging.getLogger(__name__)

SHORT_CIRCUIT = ("any_done", "first_success")


class LoopCoordinator:
    """Iterations run sequentially. Each one gets a child ``StepRun`` named
    ``<step>[<index>]`` under the loop's record.

    ``any_done`` and ``first_success`` behave the same: the loop completes
    with the first successful iteration and the rest are skipped.
    """

    def __init__(self, runner: StepRunner, limits: LimitsConfig, default_timeout: float):
        self.runner = runner
        self.limits = limits
        self.default_timeout = default_timeout

    def _collection(self, step: LoopStep, view: dict[str, Any]) -> list[Any]:
        value = self.runner.evaluator.evaluate(step.loop.over, view)
        if isinstance(value, dict):
            value = list(value.values())
        if not isinstance(value, (list, tuple)):
            raise EvaluationError(
                f"Loop '{step.id}' expression '{step.loop.over}' resolved to "
                f"{type(value).__name__}, expected a list"
            )
        cap = self.limits.max_loop_iterations
        if step.loop.max_iterations is not None:
            cap = min(cap, step.loop.max_iterations)
        if len(value) > cap:
            _log.warning(
                "Loop %s truncated from %d to %d items", step.id, len(value), cap,
                extra={"step_id": step.id},
            )
        return list(value[:cap])

    async def run_loop(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        step: LoopStep,
        step_run: StepRun,
        cancel: CancellationToken,
        hooks: RunHooks,
    ) -> tuple[dict[str, Any], str]:
        """Run every iteration and return the aggregate output and its artifact path.

        Raises ``ExecutorFailure`` when the completion policy is not met.
        """
        cfg = step.loop
        items = self._collection(step, await self.runner.full_view(run))
        total = len(items)

        state = LoopState(total_iterations=total)
        step_run.loop_state = state
        step_run.children = [StepRun(step_id=f"{step.id}[{i}]", agent=step.agent) for i in range(total)]
        await hooks.checkpoint(run)

        settings = resolve_session(step, definition, self.default_timeout)
        stable_key = None
        if not cfg.fresh_session_per_iteration:
            scope = step.agent if settings.mode == "reuse" else f"{step.id}:loop"
            stable_key = self.runner.sessions.acquire(run, scope, settings)
            step_run.session_key = stable_key
        iteration_settings = settings
        if cfg.fresh_session_per_iteration:
            iteration_settings = SessionSettings(
                mode="fresh",
                context=settings.context,
                cleanup=settings.cleanup,
                timeout=settings.timeout,
                include_outputs_from=settings.include_outputs_from,
            )

        _log.info(
            "Loop %s over %d items (completion=%s)", step.id, total, cfg.completion,
            extra={"run_id": run.id, "step_id": step.id},
        )

        results: list[Any] = []
        completed: list[str] = []
        try:
            for index, item in enumerate(items):
                child = step_run.children[index]
                if cfg.completion in SHORT_CIRCUIT and results:
                    self._skip_remaining(step_run, index)
                    break

                state.current_iteration = index + 1
                transition_step(child, StepStatus.RUNNING)
                await hooks.checkpoint(run)

                overlay = {
                    cfg.item_var: item,
                    cfg.index_var: index,
                    "loop": {
                        "index": index,
                        "number": index + 1,
                        "total": total,
                        "completed": list(completed),
                        "results": list(results),
                    },
                }
                try:
                    outcome = await self._iteration(
                        run, definition, step, iteration_settings, stable_key, overlay, index, cancel
                    )
                except (EvaluationError, ExecutorFailure) as e:
                    child.error = str(e)
                    child.error_kind = error_kind(e)
                    transition_step(child, StepStatus.FAILED)
                    state.failed_iterations += 1
                    _log.warning(
                        "Loop %s iteration %d/%d failed: %s", step.id, index + 1, total, e,
                        extra={"run_id": run.id, "step_id": step.id},
                    )
                    await hooks.emit(
                        EventType.LOOP_ITERATION, run, step.id, step.agent,
                        data={"index": index, "status": "failed", "error": str(e)},
                    )
                    if cfg.completion == "all_done" and not cfg.continue_on_error:
                        self._skip_remaining(step_run, index + 1)
                        await hooks.checkpoint(run)
                        raise ExecutorFailure(
                            f"Loop iteration {index + 1}/{total} failed: {e}",
                            kind=error_kind(e),
                        ) from e
                    await hooks.checkpoint(run)
                    continue

                child.output = outcome.output_path
                child.session_key = outcome.session_key
                transition_step(child, StepStatus.COMPLETED)
                state.completed_iterations += 1
                results.append(outcome.parsed)
                completed.append(to_text(item))
                await hooks.emit(
                    EventType.LOOP_ITERATION, run, step.id, step.agent,
                    data={"index": index, "status": "completed"},
                    duration_ms=outcome.duration * 1000,
                )
                await hooks.checkpoint(run)
        finally:
            if stable_key is not None:
                await self.runner.sessions.release(run, stable_key, settings)

        if cfg.completion in SHORT_CIRCUIT and not results:
            raise ExecutorFailure(
                f"Loop '{step.id}' finished without a successful iteration "
                f"({state.failed_iterations}/{total} failed)"
            )

        output = {"iterations": results, "completed": completed}
        path = await self.runner.artifacts.write_output(run.id, f"{step.id}-summary.json", output)
        _log.info(
            "Loop %s done: %d completed, %d failed, %d skipped", step.id,
            state.completed_iterations, state.failed_iterations, state.skipped_iterations,
            extra={"run_id": run.id, "step_id": step.id},
        )
        return output, path

    async def _iteration(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        step: LoopStep,
        settings: SessionSettings,
        stable_key: str | None,
        overlay: dict[str, Any],
        index: int,
        cancel: CancellationToken,
    ) -> DispatchOutcome:
        view = ContextStore.overlay(await self.runner.full_view(run), overlay)
        artifact = self.runner.evaluator.render(
            step.output.file if step.output else f"{step.id}-{{{{loop.index}}}}.md", view
        )
        outcome = await self.runner.dispatch(
            run,
            definition,
            DispatchPlan(
                step_id=step.id,
                agent_id=step.agent,
                input_template=step.input or "",
                session=settings,
                view=view,
                output=step.output,
                acceptance_criteria=list(step.acceptance_criteria),
                session_key=stable_key,
                session_scope=f"{step.id}:{index}",
                artifact_name=artifact,
                progress_label=f"{step.id}-iter-{index + 1}",
                iteration=index,
            ),
            cancel,
        )
        if step.loop.verify_each:
            await self._verify(run, definition, step, overlay, outcome, index, cancel)
        return outcome

    async def _verify(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        step: LoopStep,
        overlay: dict[str, Any],
        outcome: DispatchOutcome,
        index: int,
        cancel: CancellationToken,
    ) -> None:
        verify: AgentStep = definition.get_step(step.loop.verify_step)
        settings = resolve_session(verify, definition, self.default_timeout)
        view = ContextStore.overlay(
            await self.runner.session_view(run, settings),
            {**overlay, "iteration": {"output": outcome.parsed, "outputPath": outcome.output_path}},
        )
        await self.runner.dispatch(
            run,
            definition,
            DispatchPlan(
                step_id=verify.id,
                agent_id=verify.agent,
                input_template=verify.input or "",
                session=settings,
                view=view,
                output=verify.output,
                acceptance_criteria=list(verify.acceptance_criteria),
                artifact_name=f"{verify.id}-{step.id}-{index}.md",
                progress_label=f"{verify.id}-iter-{index + 1}",
                iteration=index,
            ),
            cancel,
        )

    @staticmethod
    def _skip_remaining(step_run: StepRun, start: int) -> None:
        for child in step_run.children[start:]:
            if child.status == StepStatus.PENDING:
                transition_step(child, StepStatus.SKIPPED)
                step_run.loop_state.skipped_iterations += 1
