"""Pydantic models for workflow definitions and engine configuration."""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

WORKFLOW_ID_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-_]*$")


def _check_escalation_target(v: str) -> str:
    if v in ("human", "skip"):
        return v
    if v.startswith("agent:") and len(v) > len("agent:"):
        return v
    raise ValueError(f"escalate_to must be 'human', 'skip' or 'agent:<id>', got '{v}'")


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class EscalationPolicy(_Model):
    escalate_to: str
    escalate_message: Optional[str] = None

    @field_validator("escalate_to")
    @classmethod
    def validate_target(cls, v: str) -> str:
        return _check_escalation_target(v)


class FailurePolicy(_Model):
    retry: int = Field(default=0, ge=0)
    retry_delay_ms: int = Field(default=0, ge=0)
    retry_step: Optional[str] = None
    escalate_to: Optional[str] = None
    escalate_message: Optional[str] = None
    on_exhausted: Optional[EscalationPolicy] = None

    @field_validator("escalate_to")
    @classmethod
    def validate_target(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _check_escalation_target(v)


def escalation_agent(target: str | None) -> str | None:
    """Return the agent id of an ``agent:<id>`` target, else None."""
    if target and target.startswith("agent:"):
        return target[len("agent:"):]
    return None


# ---------------------------------------------------------------------------
# Step configuration
# ---------------------------------------------------------------------------


class StepOutput(_Model):
    file: str
    schema_id: Optional[str] = Field(default=None, alias="schema")


class StepSessionConfig(_Model):
    mode: Literal["fresh", "reuse"] = "fresh"
    context: Literal["minimal", "full", "custom"] = "minimal"
    cleanup: Literal["delete", "keep"] = "delete"
    timeout: Optional[float] = Field(default=None, gt=0)
    include_outputs_from: list[str] = Field(default_factory=list, alias="includeOutputsFrom")


class LoopConfig(_Model):
    over: str
    item_var: str = "item"
    index_var: str = "index"
    completion: Literal["all_done", "any_done", "first_success"] = "all_done"
    fresh_session_per_iteration: bool = False
    verify_each: bool = False
    verify_step: Optional[str] = None
    max_iterations: Optional[int] = Field(default=None, ge=1)
    continue_on_error: bool = False

    @model_validator(mode="after")
    def verify_step_required(self) -> "LoopConfig":
        if self.verify_each and not self.verify_step:
            raise ValueError("loop.verify_each requires loop.verify_step")
        return self


class ParallelSubStep(_Model):
    id: str
    agent: str
    input: str = ""
    output: Optional[StepOutput] = None
    timeout: Optional[float] = Field(default=None, gt=0)


class ParallelConfig(_Model):
    steps: list[ParallelSubStep] = Field(min_length=1)
    completion: Union[Literal["all", "any"], int] = "all"
    fail_fast: bool = True
    timeout: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def validate_substeps(self) -> "ParallelConfig":
        ids = [s.id for s in self.steps]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate parallel sub-step ids: {duplicates}")
        if isinstance(self.completion, int) and not 1 <= self.completion <= len(self.steps):
            raise ValueError(
                f"parallel.completion must be between 1 and {len(self.steps)}, got {self.completion}"
            )
        return self

    @property
    def required(self) -> int:
        """Number of completed sub-steps that resolves the group."""
        if self.completion == "all":
            return len(self.steps)
        if self.completion == "any":
            return 1
        return self.completion


class _StepBase(_Model):
    id: str
    name: str = ""
    input: Optional[str] = None
    output: Optional[StepOutput] = None
    acceptance_criteria: list[str] = Field(default_factory=list)
    on_fail: Optional[FailurePolicy] = None
    timeout: Optional[float] = Field(default=None, gt=0)

    @property
    def label(self) -> str:
        return self.name or self.id


class _AgentBoundStep(_StepBase):
    agent: str
    session: Optional[StepSessionConfig] = None
    fresh_session: Optional[bool] = None  # legacy switch, superseded by session.mode


class AgentStep(_AgentBoundStep):
    type: Literal["agent"] = "agent"


class LoopStep(_AgentBoundStep):
    type: Literal["loop"] = "loop"
    loop: LoopConfig


class GateStep(_StepBase):
    type: Literal["gate"] = "gate"
    condition: str
    on_false: Optional[EscalationPolicy] = None


class ParallelStep(_StepBase):
    type: Literal["parallel"] = "parallel"
    parallel: ParallelConfig


WorkflowStep = Annotated[
    Union[AgentStep, LoopStep, GateStep, ParallelStep],
    Field(discriminator="type"),
]


def infer_step_type(step: dict) -> str:
    """Type of a raw step mapping that omits ``type``."""
    if "loop" in step:
        return "loop"
    if "parallel" in step:
        return "parallel"
    if "condition" in step:
        return "gate"
    return "agent"


# ---------------------------------------------------------------------------
# Workflow definition
# ---------------------------------------------------------------------------


class WorkflowAgent(_Model):
    id: str
    name: str = ""
    role: str
    model: Optional[str] = None
    description: str = ""
    tools: Optional[list[str]] = None


class WorkflowSettings(_Model):
    timeout: Optional[float] = Field(default=None, gt=0)
    fresh_session_default: bool = True
    progress_file: bool = True
    telemetry_tags: list[str] = Field(default_factory=list)


class WorkflowDefinition(_Model):
    id: str
    name: str
    version: int = Field(ge=1)
    description: str = ""
    config: WorkflowSettings = Field(default_factory=WorkflowSettings)
    agents: list[WorkflowAgent] = Field(min_length=1)
    steps: list[WorkflowStep] = Field(min_length=1)
    variables: dict[str, Any] = Field(default_factory=dict)
    schemas: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def default_step_types(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("steps"), list):
            data = {
                **data,
                "steps": [
                    {**s, "type": infer_step_type(s)} if isinstance(s, dict) and "type" not in s else s
                    for s in data["steps"]
                ],
            }
        return data

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not WORKFLOW_ID_PATTERN.match(v):
            raise ValueError(
                "workflow id must start with an alphanumeric character and may only "
                f"contain letters, numbers, hyphen, or underscore, got '{v}'"
            )
        return v

    @model_validator(mode="after")
    def validate_references(self) -> "WorkflowDefinition":
        agent_ids = [a.id for a in self.agents]
        step_ids = [s.id for s in self.steps]

        dup_agents = sorted({a for a in agent_ids if agent_ids.count(a) > 1})
        if dup_agents:
            raise ValueError(f"Duplicate agent ids found: {dup_agents}")
        dup_steps = sorted({s for s in step_ids if step_ids.count(s) > 1})
        if dup_steps:
            raise ValueError(f"Duplicate step ids found: {dup_steps}")

        known_agents = set(agent_ids)
        known_steps = set(step_ids)

        def _check_agent(step_id: str, agent: str, where: str = "") -> None:
            if agent not in known_agents:
                raise ValueError(
                    f"Step '{step_id}'{where} references agent '{agent}' "
                    f"which is not defined. Available: {sorted(known_agents)}"
                )

        def _check_target(step_id: str, target: str | None) -> None:
            agent = escalation_agent(target)
            if agent is not None:
                _check_agent(step_id, agent, " escalation")

        for step in self.steps:
            if isinstance(step, (AgentStep, LoopStep)):
                _check_agent(step.id, step.agent)
            if isinstance(step, ParallelStep):
                for sub in step.parallel.steps:
                    _check_agent(step.id, sub.agent, f" (sub-step '{sub.id}')")
            if isinstance(step, LoopStep) and step.loop.verify_step:
                verify = step.loop.verify_step
                if verify not in known_steps:
                    raise ValueError(
                        f"Step '{step.id}' verify_step references unknown step '{verify}'"
                    )
                if not isinstance(self.get_step(verify), AgentStep):
                    raise ValueError(
                        f"Step '{step.id}' verify_step '{verify}' must be an agent step"
                    )
            if isinstance(step, GateStep) and step.on_false:
                _check_target(step.id, step.on_false.escalate_to)
            if step.on_fail:
                if step.on_fail.retry_step and step.on_fail.retry_step not in known_steps:
                    raise ValueError(
                        f"Step '{step.id}' retry_step references unknown step "
                        f"'{step.on_fail.retry_step}'"
                    )
                _check_target(step.id, step.on_fail.escalate_to)
                if step.on_fail.on_exhausted:
                    _check_target(step.id, step.on_fail.on_exhausted.escalate_to)
        return self

    @property
    def step_ids(self) -> list[str]:
        return [s.id for s in self.steps]

    def get_step(self, step_id: str):
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(f"Step '{step_id}' not found in workflow '{self.id}'")

    def step_index(self, step_id: str) -> int:
        for i, step in enumerate(self.steps):
            if step.id == step_id:
                return i
        raise KeyError(f"Step '{step_id}' not found in workflow '{self.id}'")

    def get_agent(self, agent_id: str) -> WorkflowAgent:
        for agent in self.agents:
            if agent.id == agent_id:
                return agent
        raise KeyError(
            f"Agent '{agent_id}' not found in workflow '{self.id}'. "
            f"Available agents: {', '.join(sorted(a.id for a in self.agents))}"
        )


# ---------------------------------------------------------------------------
# Engine configuration
# ---------------------------------------------------------------------------


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    backend: str = "file"
    runs_dir: str = ".workforge/runs"
    workflows_dir: str = ".workforge/workflows"
    sqlite_path: str = ".workforge/runs.db"

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        allowed = ("memory", "file", "sqlite")
        if v not in allowed:
            raise ValueError(f"storage.backend must be one of {allowed}, got '{v}'")
        return v


class LimitsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_concurrent_runs: int = Field(default=10, ge=1)
    max_parallel_substeps: int = Field(default=50, ge=1)
    max_loop_iterations: int = Field(default=1000, ge=1)
    max_redirects: int = Field(default=10, ge=0)
    max_retry_delay_ms: int = Field(default=300_000, ge=0)
    max_steps: int = Field(default=50, ge=1)
    max_agents: int = Field(default=20, ge=1)
    max_tools_per_agent: int = Field(default=50, ge=1)
    max_progress_bytes: int = Field(default=10 * 1024 * 1024, ge=0)


class DefaultsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    step_timeout: float = Field(default=600.0, gt=0)


class ObserveConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    trace: bool = True
    log_level: str = "info"
    log_format: str = "pretty"
    audit_path: Optional[str] = None

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ("debug", "info", "warning", "error")
        if v not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got '{v}'")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        allowed = ("pretty", "json")
        if v not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got '{v}'")
        return v


class EngineConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    storage: StorageConfig = Field(default_factory=StorageConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    observe: ObserveConfig = Field(default_factory=ObserveConfig)
