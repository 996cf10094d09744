"""In-memory run repository."""

from __future__ import annotations

from pydantic import ValidationError

from workforge.config.schema import WorkflowDefinition
from workforge.core.models import WorkflowRun
from workforge.errors import CorruptCheckpointError, RunNotFoundError
from workforge.persistence.base import (
    RunFilter,
    RunRepository,
    checked_run_id,
    definition_to_dict,
    stamp_checkpoint,
    validate_run_id,
)


class InMemoryRunRepository(RunRepository):
    """Keep serialised checkpoints in a dict.

    Useful for tests or embedded use. Data is not persisted across process
    restarts.
    """

    def __init__(self) -> None:
        self._runs: dict[str, str] = {}
        self._definitions: dict[str, dict] = {}

    async def save_checkpoint(self, run: WorkflowRun) -> None:
        validate_run_id(run.id)
        stamp_checkpoint(run)
        self._runs[run.id] = run.to_json(indent=None)

    async def load_checkpoint(self, run_id: str) -> WorkflowRun:
        run_id = checked_run_id(run_id)
        raw = self._runs.get(run_id)
        if raw is None:
            raise RunNotFoundError(run_id)
        try:
            return WorkflowRun.from_json(raw)
        except ValidationError as e:
            raise CorruptCheckpointError(run_id, str(e)) from e

    async def list_runs(self, run_filter: RunFilter | None = None) -> list[WorkflowRun]:
        runs = [WorkflowRun.from_json(raw) for raw in self._runs.values()]
        return (run_filter or RunFilter()).apply(runs)

    async def save_definition_snapshot(self, run_id: str, definition: WorkflowDefinition) -> None:
        self._definitions[validate_run_id(run_id)] = definition_to_dict(definition)

    async def load_definition_snapshot(self, run_id: str) -> WorkflowDefinition | None:
        data = self._definitions.get(checked_run_id(run_id))
        if data is None:
            return None
        return WorkflowDefinition.model_validate(data)

    async def delete_run(self, run_id: str) -> None:
        run_id = checked_run_id(run_id)
        if self._runs.pop(run_id, None) is None:
            raise RunNotFoundError(run_id)
        self._definitions.pop(run_id, None)
