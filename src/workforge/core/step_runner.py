"""Single agent dispatch: render input, open a session, call the executor
under a timeout, validate and store the output.

Agent steps, loop iterations, verify steps, escalation agents and parallel
sub-steps all go through ``StepRunner.dispatch``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

import yaml

from workforge.config.schema import StepOutput, WorkflowDefinition
from workforge.control.acceptance import validate_acceptance
from workforge.control.tool_policy import ToolPolicyRegistry
from workforge.core.context import ContextStore
from workforge.core.executor import (
    CancellationToken,
    ExecutionRequest,
    SessionSettings,
    StepExecutor,
)
from workforge.core.models import WorkflowRun
from workforge.core.sessions import SessionManager
from workforge.core.template import ExpressionEvaluator
from workforge.errors import StepTimeoutError
from workforge.observe.tracer import EventType
from workforge.persistence.artifacts import ArtifactStore, render_content

_log = logging.getLogger(__name__)


class RunHooks(Protocol):
    """Callbacks a coordinator uses to persist and report progress."""

    async def checkpoint(self, run: WorkflowRun) -> None: ...

    async def emit(
        self,
        event_type: EventType,
        run: WorkflowRun,
        step_id: str = "",
        agent: str = "",
        data: dict | None = None,
        duration_ms: float = 0.0,
    ) -> None: ...


@dataclass
class DispatchPlan:
    step_id: str
    agent_id: str
    input_template: str
    session: SessionSettings
    view: dict[str, Any]
    output: Optional[StepOutput] = None
    acceptance_criteria: list[str] = field(default_factory=list)
    session_key: Optional[str] = None  # pre-acquired by the caller, released by the caller
    session_scope: Optional[str] = None
    artifact_name: Optional[str] = None
    progress_label: Optional[str] = None
    iteration: Optional[int] = None
    attempt: int = 1

    @property
    def timeout(self) -> float:
        return self.session.timeout


@dataclass
class DispatchOutcome:
    raw: str
    parsed: Any
    output_path: str
    session_key: str
    duration: float


def parse_output(raw: str, output: StepOutput | None, step_id: str) -> Any:
    """Structured data for ``.json``/``.yml`` outputs; the raw text otherwise."""
    if not raw or output is None:
        return raw
    extension = Path(output.file).suffix.lower()
    try:
        if extension in (".yml", ".yaml"):
            return yaml.safe_load(raw)
        if extension == ".json":
            return json.loads(raw)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        _log.warning(
            "Failed to parse output of '%s' as %s: %s", step_id, extension, e,
            extra={"step_id": step_id},
        )
    return raw


class StepRunner:

    def __init__(
        self,
        executor: StepExecutor,
        sessions: SessionManager,
        evaluator: ExpressionEvaluator,
        tool_policies: ToolPolicyRegistry,
        artifacts: ArtifactStore,
    ):
        self.executor = executor
        self.sessions = sessions
        self.evaluator = evaluator
        self.tool_policies = tool_policies
        self.artifacts = artifacts

    async def full_view(self, run: WorkflowRun) -> dict[str, Any]:
        return ContextStore(run).full_view(await self.artifacts.read_progress(run.id))

    async def session_view(self, run: WorkflowRun, settings: SessionSettings) -> dict[str, Any]:
        progress = await self.artifacts.read_progress(run.id)
        return ContextStore(run).session_view(
            settings.context, progress, list(settings.include_outputs_from)
        )

    async def dispatch(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        plan: DispatchPlan,
        cancel: CancellationToken,
    ) -> DispatchOutcome:
        """Run one attempt. Raises ``ExecutorFailure`` (and subclasses) or
        ``EvaluationError`` for step-level failures; anything else is a bug."""
        agent = definition.get_agent(plan.agent_id)
        prompt = self.evaluator.render(plan.input_template or "", plan.view)
        policy = self.tool_policies.policy_for_agent(agent)

        owns_session = plan.session_key is None
        session_key = plan.session_key or self.sessions.acquire(
            run, plan.session_scope or agent.id, plan.session
        )
        request = ExecutionRequest(
            run_id=run.id,
            step_id=plan.step_id,
            agent=agent,
            input=prompt,
            session=plan.session,
            session_key=session_key,
            tool_policy=policy,
            timeout=plan.timeout,
            context=plan.view,
            model=agent.model,
            attempt=plan.attempt,
            iteration=plan.iteration,
        )

        _log.info(
            "Dispatching %s to agent %s", plan.step_id, agent.id,
            extra={
                "run_id": run.id,
                "step_id": plan.step_id,
                "agent": agent.id,
                "session_key": session_key,
                "tool_filter": policy.to_filter(),
            },
        )

        token = cancel.child()
        started = time.monotonic()
        try:
            try:
                result = await asyncio.wait_for(
                    self.executor.execute(request, token), timeout=plan.timeout
                )
            except asyncio.TimeoutError:
                token.cancel("timeout")
                raise StepTimeoutError(
                    f"Step '{plan.step_id}' timed out after {plan.timeout}s"
                ) from None
        finally:
            if owns_session:
                await self.sessions.release(run, session_key, plan.session)
        duration = time.monotonic() - started

        raw = render_content(result.output)
        parsed = result.output if not isinstance(result.output, str) else parse_output(
            raw, plan.output, plan.step_id
        )
        validate_acceptance(plan.step_id, plan.acceptance_criteria, raw, parsed, duration)

        output_path = result.output_path or await self.artifacts.write_output(
            run.id,
            plan.artifact_name or (plan.output.file if plan.output else f"{plan.step_id}.md"),
            raw,
        )
        if definition.config.progress_file:
            await self.artifacts.append_progress(run.id, plan.progress_label or plan.step_id, raw)

        return DispatchOutcome(
            raw=raw,
            parsed=parsed,
            output_path=output_path,
            session_key=session_key,
            duration=duration,
        )
