"""Run-state records: the unit of persistence and recovery."""

from __future__ import annotations

import re
import secrets
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

RUN_ID_PATTERN = re.compile(r"^run_\d{10,}_[a-zA-Z0-9_-]{6,}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_run_id() -> str:
    return f"run_{int(time.time() * 1000)}_{secrets.token_urlsafe(6)}"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class LoopState(_Record):
    total_iterations: int = Field(default=0, alias="totalIterations")
    current_iteration: int = Field(default=0, alias="currentIteration")
    completed_iterations: int = Field(default=0, alias="completedIterations")
    failed_iterations: int = Field(default=0, alias="failedIterations")
    skipped_iterations: int = Field(default=0, alias="skippedIterations")


class EscalationRecord(_Record):
    target: str
    message: Optional[str] = None
    agent: Optional[str] = None
    session_key: Optional[str] = Field(default=None, alias="sessionKey")
    status: StepStatus = StepStatus.PENDING
    output: Optional[str] = None
    error: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)


class StepRun(_Record):
    step_id: str = Field(alias="stepId")
    status: StepStatus = StepStatus.PENDING
    agent: Optional[str] = None
    session_key: Optional[str] = Field(default=None, alias="sessionKey")
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")
    duration: Optional[float] = None
    retries: int = 0
    redirects: int = 0
    output: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = Field(default=None, alias="errorKind")
    loop_state: Optional[LoopState] = Field(default=None, alias="loopState")
    escalation: Optional[EscalationRecord] = None
    children: list[StepRun] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED)

    def rearm(self) -> None:
        """Reset for a fresh dispatch cycle, keeping the redirect counter."""
        self.status = StepStatus.PENDING
        self.retries = 0
        self.session_key = None
        self.started_at = None
        self.completed_at = None
        self.duration = None
        self.output = None
        self.error = None
        self.error_kind = None
        self.loop_state = None
        self.escalation = None
        self.children = []


class WorkflowRun(_Record):
    id: str = Field(default_factory=new_run_id)
    workflow_id: str = Field(alias="workflowId")
    workflow_version: int = Field(alias="workflowVersion")
    task_id: Optional[str] = Field(default=None, alias="taskId")
    status: RunStatus = RunStatus.PENDING
    current_step: Optional[str] = Field(default=None, alias="currentStep")
    context: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow, alias="startedAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")
    last_checkpoint: Optional[datetime] = Field(default=None, alias="lastCheckpoint")
    error: Optional[str] = None
    steps: list[StepRun] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.FAILED)

    def find_step(self, step_id: str) -> StepRun | None:
        for step_run in self.steps:
            if step_run.step_id == step_id:
                return step_run
        return None

    def step_run_for(self, step_id: str) -> StepRun:
        """Return the record for ``step_id``, appending a pending one on first selection."""
        step_run = self.find_step(step_id)
        if step_run is None:
            step_run = StepRun(step_id=step_id)
            self.steps.append(step_run)
        return step_run

    def to_json(self, indent: int | None = 2) -> str:
        return self.model_dump_json(by_alias=True, indent=indent)

    @classmethod
    def from_json(cls, data: str | bytes) -> "WorkflowRun":
        return cls.model_validate_json(data)

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflowId": self.workflow_id,
            "workflowVersion": self.workflow_version,
            "taskId": self.task_id,
            "status": self.status.value,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }
