"""Run persistence contract."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

import yaml

from workforge.config.schema import WorkflowDefinition
from workforge.core.models import RUN_ID_PATTERN, RunStatus, WorkflowRun, utcnow
from workforge.errors import RunNotFoundError


def validate_run_id(run_id: str) -> str:
    """Reject ids that are malformed or could escape the runs directory."""
    trimmed = (run_id or "").strip()
    if not trimmed:
        raise ValueError("Run id is required")
    if "/" in trimmed or "\\" in trimmed or ".." in trimmed or "\0" in trimmed:
        raise ValueError("Run id contains illegal path characters")
    if not RUN_ID_PATTERN.match(trimmed):
        raise ValueError(f"Run id format is invalid: '{trimmed}'")
    return trimmed


def checked_run_id(run_id: str) -> str:
    """``validate_run_id`` for lookups: a malformed id is simply not found."""
    try:
        return validate_run_id(run_id)
    except ValueError:
        raise RunNotFoundError(run_id) from None


def stamp_checkpoint(run: WorkflowRun) -> None:
    """Set ``lastCheckpoint`` to now, strictly after the previous stamp."""
    now = utcnow()
    if run.last_checkpoint is not None and now <= run.last_checkpoint:
        now = run.last_checkpoint + timedelta(microseconds=1)
    run.last_checkpoint = now


def definition_to_dict(definition: WorkflowDefinition) -> dict[str, Any]:
    return definition.model_dump(mode="json", by_alias=True, exclude_none=True)


def dump_definition(definition: WorkflowDefinition) -> str:
    return yaml.safe_dump(definition_to_dict(definition), sort_keys=False, allow_unicode=True)


@dataclass
class RunFilter:
    workflow_id: Optional[str] = None
    task_id: Optional[str] = None
    status: Optional[RunStatus] = None
    limit: Optional[int] = None

    def matches(self, run: WorkflowRun) -> bool:
        if self.workflow_id is not None and run.workflow_id != self.workflow_id:
            return False
        if self.task_id is not None and run.task_id != self.task_id:
            return False
        if self.status is not None and run.status != RunStatus(self.status):
            return False
        return True

    def apply(self, runs: list[WorkflowRun]) -> list[WorkflowRun]:
        selected = [r for r in runs if self.matches(r)]
        selected.sort(key=lambda r: r.started_at, reverse=True)
        if self.limit is not None:
            selected = selected[: self.limit]
        return selected


class RunRepository(ABC):
    """Checkpoint storage for ``WorkflowRun`` records.

    ``save_checkpoint`` stamps ``lastCheckpoint`` and writes the full record;
    what is stored is a copy, never a live reference. ``load_checkpoint``
    raises ``RunNotFoundError`` or ``CorruptCheckpointError``.
    """

    @abstractmethod
    async def save_checkpoint(self, run: WorkflowRun) -> None:
        ...

    @abstractmethod
    async def load_checkpoint(self, run_id: str) -> WorkflowRun:
        ...

    @abstractmethod
    async def list_runs(self, run_filter: RunFilter | None = None) -> list[WorkflowRun]:
        ...

    @abstractmethod
    async def save_definition_snapshot(self, run_id: str, definition: WorkflowDefinition) -> None:
        ...

    @abstractmethod
    async def load_definition_snapshot(self, run_id: str) -> WorkflowDefinition | None:
        ...

    @abstractmethod
    async def delete_run(self, run_id: str) -> None:
        ...

    async def close(self) -> None:
        return None
