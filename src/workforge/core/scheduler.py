"""Step scheduler: decides what a run does next.

The cursor is ``run.current_step``. Steps run in declaration order; gates
and failure policies may point the cursor at any declared step, earlier
ones included. When the final step completes the cursor stays on it and
the run is marked completed. A terminal run, completed or failed, has
nothing left to dispatch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from workforge.config.schema import (
    AgentStep,
    GateStep,
    LoopStep,
    ParallelStep,
    WorkflowDefinition,
)
from workforge.core.models import RunStatus, StepRun, StepStatus, WorkflowRun
from workforge.core.state_machine import transition_step
from workforge.errors import DefinitionError

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchAgent:
    step: AgentStep


@dataclass(frozen=True)
class DispatchLoop:
    step: LoopStep


@dataclass(frozen=True)
class DispatchParallel:
    step: ParallelStep


@dataclass(frozen=True)
class DispatchGate:
    step: GateStep


@dataclass(frozen=True)
class RunComplete:
    pass


@dataclass(frozen=True)
class RunBlocked:
    reason: str = ""


StepDirective = Union[DispatchAgent, DispatchLoop, DispatchParallel, DispatchGate, RunComplete, RunBlocked]

_DIRECTIVES = {
    AgentStep: DispatchAgent,
    LoopStep: DispatchLoop,
    ParallelStep: DispatchParallel,
    GateStep: DispatchGate,
}


class StepScheduler:

    def __init__(self, definition: WorkflowDefinition):
        self.definition = definition

    def next(self, run: WorkflowRun) -> StepDirective:
        if run.is_terminal:
            return RunComplete()
        if run.status == RunStatus.BLOCKED:
            return RunBlocked(run.error or "")
        if run.current_step is None:
            run.current_step = self.definition.steps[0].id
        step = self._step(run.current_step)
        return _DIRECTIVES[type(step)](step)

    def select(self, run: WorkflowRun, step_id: str) -> StepRun:
        """Record for the step about to be dispatched, re-armed if it already ran."""
        step_run = run.step_run_for(step_id)
        if step_run.is_terminal:
            _log.debug(
                "Re-arming step %s (was %s)", step_id, step_run.status.value,
                extra={"run_id": run.id, "step_id": step_id},
            )
            transition_step(step_run, StepStatus.PENDING)
        elif step_run.status == StepStatus.RUNNING:
            # Left running by an interrupted process.
            transition_step(step_run, StepStatus.PENDING, reset=False)
        return step_run

    def advance(self, run: WorkflowRun) -> bool:
        """Move the cursor to the next declared step. False when there is none."""
        index = self.definition.step_index(run.current_step) if run.current_step else -1
        if index + 1 >= len(self.definition.steps):
            return False
        run.current_step = self.definition.steps[index + 1].id
        return True

    def redirect(self, run: WorkflowRun, step_id: str) -> None:
        self._step(step_id)
        _log.info(
            "Redirecting %s → %s", run.current_step, step_id,
            extra={"run_id": run.id, "step_id": step_id},
        )
        run.current_step = step_id

    def _step(self, step_id: str):
        try:
            return self.definition.get_step(step_id)
        except KeyError as e:
            raise DefinitionError(
                f"Run cursor points at unknown step '{step_id}' in workflow "
                f"'{self.definition.id}' v{self.definition.version}"
            ) from e
