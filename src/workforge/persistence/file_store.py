"""JSON-file run repository.

Layout per run::

    <runs_dir>/<run_id>/run.json       full WorkflowRun checkpoint
    <runs_dir>/<run_id>/workflow.yml   pinned definition snapshot
    <runs_dir>/<run_id>/step-outputs/  artifacts (see artifacts.py)
    <runs_dir>/<run_id>/progress.md
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Union

import yaml
from pydantic import ValidationError

from workforge.config.schema import WorkflowDefinition
from workforge.core.models import WorkflowRun
from workforge.errors import CorruptCheckpointError, RunNotFoundError
from workforge.persistence.base import (
    RunFilter,
    RunRepository,
    checked_run_id,
    dump_definition,
    stamp_checkpoint,
    validate_run_id,
)

_log = logging.getLogger(__name__)

RUN_FILE = "run.json"
SNAPSHOT_FILE = "workflow.yml"


def atomic_write(path: Path, content: str) -> None:
    """Write via a temp file and rename so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class FileRunRepository(RunRepository):

    def __init__(self, runs_dir: Union[str, Path] = ".workforge/runs"):
        self.runs_dir = Path(runs_dir)
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def run_dir(self, run_id: str) -> Path:
        return self.runs_dir / validate_run_id(run_id)

    # ------------------------------------------------------------------
    def _write_run(self, run_id: str, payload: str) -> None:
        with self._lock:
            atomic_write(self.run_dir(run_id) / RUN_FILE, payload)

    def _read_run(self, run_id: str) -> WorkflowRun:
        path = self.runs_dir / run_id / RUN_FILE
        if not path.exists():
            raise RunNotFoundError(run_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise CorruptCheckpointError(run_id, str(e)) from e
        try:
            return WorkflowRun.from_json(raw)
        except ValidationError as e:
            raise CorruptCheckpointError(run_id, str(e)) from e

    def _list(self) -> list[WorkflowRun]:
        runs: list[WorkflowRun] = []
        if not self.runs_dir.exists():
            return runs
        for entry in self.runs_dir.iterdir():
            if not entry.is_dir() or not (entry / RUN_FILE).exists():
                continue
            try:
                runs.append(self._read_run(validate_run_id(entry.name)))
            except (ValueError, CorruptCheckpointError) as e:
                # Listing skips bad entries; loading them by id still raises.
                _log.warning("Skipping unreadable run directory '%s': %s", entry.name, e)
        return runs

    # ------------------------------------------------------------------
    async def save_checkpoint(self, run: WorkflowRun) -> None:
        validate_run_id(run.id)
        stamp_checkpoint(run)
        await asyncio.to_thread(self._write_run, run.id, run.to_json())

    async def load_checkpoint(self, run_id: str) -> WorkflowRun:
        return await asyncio.to_thread(self._read_run, checked_run_id(run_id))

    async def list_runs(self, run_filter: RunFilter | None = None) -> list[WorkflowRun]:
        runs = await asyncio.to_thread(self._list)
        return (run_filter or RunFilter()).apply(runs)

    async def save_definition_snapshot(self, run_id: str, definition: WorkflowDefinition) -> None:
        path = self.run_dir(run_id) / SNAPSHOT_FILE
        await asyncio.to_thread(atomic_write, path, dump_definition(definition))

    async def load_definition_snapshot(self, run_id: str) -> WorkflowDefinition | None:
        path = self.runs_dir / checked_run_id(run_id) / SNAPSHOT_FILE

        def _read() -> WorkflowDefinition | None:
            if not path.exists():
                return None
            try:
                return WorkflowDefinition.model_validate(yaml.safe_load(path.read_text(encoding="utf-8")))
            except (yaml.YAMLError, ValidationError) as e:
                raise CorruptCheckpointError(run_id, f"definition snapshot: {e}") from e

        return await asyncio.to_thread(_read)

    async def delete_run(self, run_id: str) -> None:
        path = self.runs_dir / checked_run_id(run_id)
        if not path.exists():
            raise RunNotFoundError(run_id)
        await asyncio.to_thread(shutil.rmtree, path)
