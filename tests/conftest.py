"""Shared fixtures for Workforge tests."""

from __future__ import annotations

import asyncio
import time
from typing import Any

import pytest

from workforge.config.schema import EngineConfig, WorkflowDefinition
from workforge.control.acl import ACLStore
from workforge.core.executor import (
    CancellationToken,
    ExecutionRequest,
    StepExecutionResult,
    StepExecutor,
)
from workforge.core.supervisor import RunSupervisor
from workforge.observe.audit import AuditLog
from workforge.observe.events import EventBus
from workforge.observe.tracer import Tracer
from workforge.persistence.artifacts import ArtifactStore
from workforge.persistence.definitions import InMemoryDefinitionStore
from workforge.persistence.memory_store import InMemoryRunRepository


class ScriptedExecutor(StepExecutor):
    """Deterministic executor driven by a per-step script.

    Script entries are keyed by ``request.step_id``. An entry is an output,
    an exception instance to raise, a callable taking the request, or a list
    of those consumed one per call (the last one repeats).
    """

    def __init__(
        self,
        script: dict[str, Any] | None = None,
        default: Any = "done",
        delays: dict[str, float] | None = None,
    ):
        self.script = {k: list(v) if isinstance(v, list) else v for k, v in (script or {}).items()}
        self.default = default
        self.delays = delays or {}
        self.calls: list[ExecutionRequest] = []
        self.call_times: list[float] = []
        self.cleaned: list[str] = []
        self.cancelled: list[str] = []

    def _next(self, step_id: str) -> Any:
        entry = self.script.get(step_id, self.default)
        if isinstance(entry, list):
            return entry.pop(0) if len(entry) > 1 else entry[0]
        return entry

    async def execute(self, request: ExecutionRequest, cancel: CancellationToken) -> StepExecutionResult:
        self.calls.append(request)
        self.call_times.append(time.monotonic())
        delay = self.delays.get(request.step_id, 0)
        if delay:
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                self.cancelled.append(request.step_id)
                raise
        action = self._next(request.step_id)
        if isinstance(action, BaseException):
            raise action
        if callable(action):
            action = action(request)
        return StepExecutionResult(output=action)

    async def cleanup_session(self, session_key: str) -> None:
        self.cleaned.append(session_key)

    def attempts(self, step_id: str) -> int:
        return sum(1 for c in self.calls if c.step_id == step_id)


def build_definition(steps: list[dict], agents: list[dict] | None = None, **extra) -> WorkflowDefinition:
    data = {
        "id": extra.pop("id", "test-flow"),
        "name": extra.pop("name", "Test Flow"),
        "version": extra.pop("version", 1),
        "agents": agents or [
            {"id": "dev", "role": "developer"},
            {"id": "rev", "role": "reviewer"},
        ],
        "steps": steps,
    }
    data.update(extra)
    return WorkflowDefinition.model_validate(data)


@pytest.fixture
def executor():
    return ScriptedExecutor()


@pytest.fixture
def make_definition():
    return build_definition


@pytest.fixture
def engine_config():
    """Memory-backed configuration with small safety limits."""
    return EngineConfig.model_validate({
        "storage": {"backend": "memory"},
        "limits": {"max_concurrent_runs": 5},
        "defaults": {"step_timeout": 5.0},
    })


@pytest.fixture
def make_supervisor(engine_config):
    """Factory for a fully in-memory supervisor around a given executor."""

    def _make(executor: StepExecutor, **kwargs) -> RunSupervisor:
        options = {
            "definitions": InMemoryDefinitionStore(),
            "repository": InMemoryRunRepository(),
            "executor": executor,
            "acl": ACLStore(),
            "audit": AuditLog(),
            "tracer": Tracer(),
            "events": EventBus(),
            "artifacts": ArtifactStore(None),
            "config": engine_config,
        }
        options.update(kwargs)
        return RunSupervisor(**options)

    return _make


@pytest.fixture
def tracer():
    """A fresh tracer instance."""
    return Tracer()


@pytest.fixture
def event_bus():
    """A fresh event bus instance."""
    return EventBus()


@pytest.fixture
def scripted():
    """The ScriptedExecutor class, for tests that need a custom script."""
    return ScriptedExecutor
