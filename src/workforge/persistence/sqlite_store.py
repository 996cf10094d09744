"""Run repository backed by SQLite."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from pathlib import Path
from typing import Union

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


class SQLiteRunRepository(RunRepository):

    def __init__(self, db_path: Union[str, Path] = ".workforge/runs.db"):
        self.db_path = str(db_path)

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._db_lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        """Create tables if they don't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                task_id TEXT,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                last_checkpoint TEXT,
                data TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_workflow ON runs(workflow_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status)
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS run_definitions (
                run_id TEXT PRIMARY KEY,
                data TEXT NOT NULL
            )
        """)
        self._conn.commit()

    async def _db_execute_commit(self, sql: str, params: tuple = ()) -> int:
        def _run():
            with self._db_lock:
                cursor = self._conn.execute(sql, params)
                self._conn.commit()
                return cursor.rowcount
        return await asyncio.to_thread(_run)

    async def _db_query(self, sql: str, params: tuple = ()) -> list:
        def _run():
            with self._db_lock:
                return self._conn.execute(sql, params).fetchall()
        return await asyncio.to_thread(_run)

    async def save_checkpoint(self, run: WorkflowRun) -> None:
        validate_run_id(run.id)
        stamp_checkpoint(run)
        await self._db_execute_commit(
            "INSERT OR REPLACE INTO runs "
            "(id, workflow_id, task_id, status, started_at, last_checkpoint, data) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                run.id,
                run.workflow_id,
                run.task_id,
                run.status.value,
                run.started_at.isoformat(),
                run.last_checkpoint.isoformat() if run.last_checkpoint else None,
                run.to_json(indent=None),
            ),
        )

    @staticmethod
    def _row_to_run(run_id: str, data: str) -> WorkflowRun:
        try:
            return WorkflowRun.from_json(data)
        except ValidationError as e:
            raise CorruptCheckpointError(run_id, str(e)) from e

    async def load_checkpoint(self, run_id: str) -> WorkflowRun:
        run_id = checked_run_id(run_id)
        rows = await self._db_query("SELECT data FROM runs WHERE id = ?", (run_id,))
        if not rows:
            raise RunNotFoundError(run_id)
        return self._row_to_run(run_id, rows[0]["data"])

    async def list_runs(self, run_filter: RunFilter | None = None) -> list[WorkflowRun]:
        run_filter = run_filter or RunFilter()
        sql = "SELECT id, data FROM runs"
        clauses: list[str] = []
        params: list = []
        if run_filter.workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(run_filter.workflow_id)
        if run_filter.task_id is not None:
            clauses.append("task_id = ?")
            params.append(run_filter.task_id)
        if run_filter.status is not None:
            clauses.append("status = ?")
            params.append(getattr(run_filter.status, "value", run_filter.status))
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        rows = await self._db_query(sql, tuple(params))
        return run_filter.apply([self._row_to_run(r["id"], r["data"]) for r in rows])

    async def save_definition_snapshot(self, run_id: str, definition: WorkflowDefinition) -> None:
        await self._db_execute_commit(
            "INSERT OR REPLACE INTO run_definitions (run_id, data) VALUES (?, ?)",
            (validate_run_id(run_id), json.dumps(definition_to_dict(definition))),
        )

    async def load_definition_snapshot(self, run_id: str) -> WorkflowDefinition | None:
        run_id = checked_run_id(run_id)
        rows = await self._db_query("SELECT data FROM run_definitions WHERE run_id = ?", (run_id,))
        if not rows:
            return None
        try:
            return WorkflowDefinition.model_validate_json(rows[0]["data"])
        except ValidationError as e:
            raise CorruptCheckpointError(run_id, f"definition snapshot: {e}") from e

    async def delete_run(self, run_id: str) -> None:
        run_id = checked_run_id(run_id)
        deleted = await self._db_execute_commit("DELETE FROM runs WHERE id = ?", (run_id,))
        if not deleted:
            raise RunNotFoundError(run_id)
        await self._db_execute_commit("DELETE FROM run_definitions WHERE run_id = ?", (run_id,))

    async def close(self) -> None:
        def _run():
            with self._db_lock:
                self._conn.close()
        await asyncio.to_thread(_run)
