"""Context store: the run-owned key/value map that templates resolve against."""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Mapping

from workforge.config.schema import WorkflowDefinition
from workforge.core.models import StepStatus, WorkflowRun

_log = logging.getLogger(__name__)

RESERVED_KEYS = frozenset({
    "workflow",
    "run",
    "task",
    "steps",
    "progress",
    "_sessions",
    "_retry_context",
})


def to_jsonable(value: Any) -> Any:
    """Normalise ``value`` so the run record always serialises."""
    return json.loads(json.dumps(value, default=str))


def build_seed(
    definition: WorkflowDefinition,
    run: WorkflowRun,
    task: Mapping[str, Any] | None = None,
    seed: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Initial context for a new run.

    Later sources win: definition variables, the task payload, the caller's
    seed, then the engine's own keys.
    """
    context: dict[str, Any] = copy.deepcopy(definition.variables)
    if task is not None:
        context["task"] = dict(task)
    if seed:
        for key in seed:
            if key in ("workflow", "run", "_sessions"):
                _log.warning("Seed key '%s' is reserved and will be overwritten", key)
        context.update(seed)
    context["workflow"] = {
        "id": definition.id,
        "name": definition.name,
        "version": definition.version,
        "agents": [
            {"id": a.id, "name": a.name, "role": a.role, "model": a.model}
            for a in definition.agents
        ],
    }
    context["run"] = {"id": run.id, "startedAt": run.started_at.isoformat()}
    context["_sessions"] = {}
    return to_jsonable(context)


class ContextStore:
    """Mutating access to one run's context.

    Only the supervisor and coordinators of the owning run write here.
    Everything handed to executors or templates is a detached copy.
    """

    def __init__(self, run: WorkflowRun):
        self.run = run

    @property
    def data(self) -> dict[str, Any]:
        return self.run.context

    def get(self, key: str, default: Any = None) -> Any:
        return self.run.context.get(key, default)

    def merge(self, entries: Mapping[str, Any]) -> None:
        for key, value in entries.items():
            self.run.context[key] = to_jsonable(value)

    def set_step_output(self, step_id: str, output: Any) -> None:
        self.merge({step_id: output})

    def sessions(self) -> dict[str, str]:
        return self.run.context.setdefault("_sessions", {})

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self.run.context)

    def steps_view(self, only: list[str] | None = None) -> dict[str, Any]:
        """``steps.<id>`` entries for completed steps that produced output."""
        view: dict[str, Any] = {}
        for step_run in self.run.steps:
            if step_run.status != StepStatus.COMPLETED:
                continue
            if only is not None and step_run.step_id not in only:
                continue
            if step_run.step_id not in self.run.context:
                continue
            view[step_run.step_id] = {
                "output": copy.deepcopy(self.run.context[step_run.step_id]),
                "status": step_run.status.value,
                "duration": step_run.duration,
            }
        return view

    def full_view(self, progress: str = "") -> dict[str, Any]:
        view = self.snapshot()
        view["progress"] = progress
        view["steps"] = self.steps_view()
        return view

    def minimal_view(self, progress: str = "") -> dict[str, Any]:
        workflow = self.run.context.get("workflow", {})
        view = {
            "task": copy.deepcopy(self.run.context.get("task")),
            "workflow": {
                "id": self.run.workflow_id,
                "version": self.run.workflow_version,
                "name": workflow.get("name"),
                "runId": self.run.id,
            },
            "progress": progress,
        }
        # Why the step is running again after a redirect.
        if "_retry_context" in self.run.context:
            view["_retry_context"] = copy.deepcopy(self.run.context["_retry_context"])
        return view

    def session_view(
        self,
        mode: str,
        progress: str = "",
        include_outputs_from: list[str] | None = None,
    ) -> dict[str, Any]:
        """Context exposed to one dispatch according to its session context mode."""
        if mode == "full":
            return self.full_view(progress)
        view = self.minimal_view(progress)
        if mode == "custom":
            view["steps"] = self.steps_view(only=list(include_outputs_from or []))
        return view

    @staticmethod
    def overlay(view: Mapping[str, Any], extra: Mapping[str, Any]) -> dict[str, Any]:
        """Per-dispatch bindings layered over a view; the view is not modified."""
        merged = dict(view)
        merged.update(copy.deepcopy(dict(extra)))
        return merged
