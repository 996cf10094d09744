"""Run supervisor: starts, drives, resumes and cancels workflow runs.

One coordinating asyncio task per active run. Every step transition is
followed by a checkpoint of the full ``WorkflowRun``, which is what
``resume_run`` restarts from.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Union

from workforge.config.loader import DefinitionLoader
from workforge.config.schema import (
    AgentStep,
    EngineConfig,
    GateStep,
    LoopStep,
    ParallelStep,
    WorkflowDefinition,
)
from workforge.control.acl import ACLStore, WorkflowACL, WorkflowPermission
from workforge.control.policy import (
    Continue,
    Escalate,
    Outcome,
    PolicyEngine,
    Redirect,
    Retry,
    RunFailed,
)
from workforge.control.tool_policy import ToolPolicyRegistry
from workforge.core.context import ContextStore, build_seed
from workforge.core.executor import (
    CancellationToken,
    SessionSettings,
    SimulatedExecutor,
    StepExecutor,
)
from workforge.core.gate import GateEvaluator
from workforge.core.loop import LoopCoordinator
from workforge.core.models import (
    EscalationRecord,
    RunStatus,
    StepRun,
    StepStatus,
    WorkflowRun,
)
from workforge.core.parallel import ParallelCoordinator
from workforge.core.scheduler import RunBlocked, RunComplete, StepScheduler
from workforge.core.sessions import SessionManager, resolve_session, resolve_timeout
from workforge.core.state_machine import transition_run, transition_step
from workforge.core.step_runner import DispatchPlan, StepRunner
from workforge.core.template import ExpressionEvaluator, TemplateEvaluator
from workforge.errors import (
    ConcurrencyLimitError,
    EvaluationError,
    ExecutorFailure,
    RunStateError,
    WorkforgeError,
    error_kind,
)
from workforge.observe.audit import AuditLog
from workforge.observe.events import EventBus
from workforge.observe.tracer import EventType, TraceEvent, Tracer
from workforge.persistence.artifacts import ArtifactStore
from workforge.persistence.base import RunFilter, RunRepository
from workforge.persistence.definitions import (
    DefinitionStore,
    FileDefinitionStore,
    InMemoryDefinitionStore,
)
from workforge.persistence.file_store import FileRunRepository
from workforge.persistence.memory_store import InMemoryRunRepository
from workforge.persistence.sqlite_store import SQLiteRunRepository

_log = logging.getLogger(__name__)

_STEP_FAILURES = (EvaluationError, ExecutorFailure)
CANCELLED_MESSAGE = "Run cancelled"


@dataclass
class _ActiveRun:
    run: WorkflowRun
    definition: WorkflowDefinition
    token: CancellationToken = field(default_factory=CancellationToken)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    task: Optional[asyncio.Task] = None
    background: list[asyncio.Task] = field(default_factory=list)
    drain: Optional[asyncio.Task] = None
    user_id: str = "system"


class RunSupervisor:
    """Owns every run it drives. Runs share nothing but read-only definitions.

    Collaborators are injected; ``from_config`` wires the defaults for an
    ``EngineConfig``.
    """

    def __init__(
        self,
        definitions: DefinitionStore,
        repository: RunRepository,
        executor: StepExecutor | None = None,
        evaluator: ExpressionEvaluator | None = None,
        tool_policies: ToolPolicyRegistry | None = None,
        acl: ACLStore | None = None,
        audit: AuditLog | None = None,
        tracer: Tracer | None = None,
        events: EventBus | None = None,
        artifacts: ArtifactStore | None = None,
        config: EngineConfig | None = None,
        task_loader: Callable[[str], Any] | None = None,
    ):
        self.config = config or EngineConfig()
        self.definitions = definitions
        self.repository = repository
        self.executor = executor or SimulatedExecutor()
        self.evaluator = evaluator or TemplateEvaluator()
        self.tool_policies = tool_policies or ToolPolicyRegistry()
        self.acl = acl or ACLStore()
        self.audit = audit or AuditLog()
        self.tracer = tracer
        self.events = events or EventBus()
        self.artifacts = artifacts or ArtifactStore(
            max_progress_bytes=self.config.limits.max_progress_bytes
        )
        self.task_loader = task_loader

        limits = self.config.limits
        default_timeout = self.config.defaults.step_timeout
        self.loader = DefinitionLoader(limits)
        self.policy = PolicyEngine(limits.max_redirects, limits.max_retry_delay_ms)
        self.sessions = SessionManager(self.executor)
        self.runner = StepRunner(
            self.executor, self.sessions, self.evaluator, self.tool_policies, self.artifacts
        )
        self.loops = LoopCoordinator(self.runner, limits, default_timeout)
        self.parallel = ParallelCoordinator(self.runner, default_timeout)
        self.gates = GateEvaluator(self.evaluator)
        self._active: dict[str, _ActiveRun] = {}
        # Runs that stopped driving while parallel stragglers still record into them.
        self._draining: dict[str, _ActiveRun] = {}

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        executor: StepExecutor | None = None,
        **kwargs,
    ) -> "RunSupervisor":
        storage = config.storage
        limits = config.limits
        audit = kwargs.pop("audit", None) or AuditLog(config.observe.audit_path)
        if storage.backend == "memory":
            repository: RunRepository = InMemoryRunRepository()
            definitions: DefinitionStore = InMemoryDefinitionStore(audit=audit)
            artifacts = ArtifactStore(None, limits.max_progress_bytes)
        else:
            if storage.backend == "sqlite":
                repository = SQLiteRunRepository(storage.sqlite_path)
            else:
                repository = FileRunRepository(storage.runs_dir)
            definitions = FileDefinitionStore(storage.workflows_dir, limits, audit)
            artifacts = ArtifactStore(storage.runs_dir, limits.max_progress_bytes)
        return cls(
            definitions=kwargs.pop("definitions", definitions),
            repository=kwargs.pop("repository", repository),
            executor=executor,
            audit=audit,
            tracer=kwargs.pop("tracer", Tracer() if config.observe.trace else None),
            artifacts=kwargs.pop("artifacts", artifacts),
            config=config,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def publish(self, definition: WorkflowDefinition, user_id: str = "system") -> list[dict[str, Any]]:
        """Validate limits, check permission and publish a new definition version."""
        self.loader.check_limits(definition)
        permission = WorkflowPermission.CREATE
        if await self.definitions.versions(definition.id):
            permission = WorkflowPermission.EDIT
        self.acl.assert_permission(definition.id, user_id, permission)
        changes = await self.definitions.publish(definition, user_id=user_id)
        if permission == WorkflowPermission.CREATE and self.acl.get(definition.id) is None:
            self.acl.set(WorkflowACL(workflow_id=definition.id, owner=user_id))
        return changes

    async def start_run(
        self,
        workflow: Union[str, WorkflowDefinition],
        seed: Mapping[str, Any] | None = None,
        task_id: str | None = None,
        user_id: str = "system",
        version: int | None = None,
    ) -> WorkflowRun:
        """Create a run pinned to one definition version and start driving it.

        Returns as soon as the run is ``running``; use ``wait_for`` to await
        its terminal or blocked state.
        """
        if isinstance(workflow, WorkflowDefinition):
            definition = workflow
            self.loader.check_limits(definition)
        else:
            definition = await self.definitions.get_definition(workflow, version)
        self.acl.assert_permission(definition.id, user_id, WorkflowPermission.EXECUTE)
        self._check_capacity()

        task = await self._load_task(task_id) if task_id and self.task_loader else None
        run = WorkflowRun(
            workflow_id=definition.id,
            workflow_version=definition.version,
            task_id=task_id,
        )
        run.context = build_seed(definition, run, task, seed)
        run.current_step = definition.steps[0].id

        handle = _ActiveRun(run=run, definition=definition, user_id=user_id)
        self._active[run.id] = handle
        try:
            await self.repository.save_definition_snapshot(run.id, definition)
            await self.checkpoint(run)
            self.audit.record(
                "run", definition.id, user_id=user_id,
                workflow_version=definition.version, run_id=run.id,
            )
            transition_run(run, RunStatus.RUNNING)
            await self.checkpoint(run)
        except BaseException:
            self._active.pop(run.id, None)
            raise

        _log.info(
            "Run %s started for %s v%d", run.id, definition.id, definition.version,
            extra={"run_id": run.id, "workflow_id": definition.id, "task_id": task_id},
        )
        await self.emit(
            EventType.RUN_START, run,
            data={"workflow_id": definition.id, "version": definition.version, "user_id": user_id},
        )
        self._launch(handle)
        return run

    async def resume_run(
        self,
        run_id: str,
        context: Mapping[str, Any] | None = None,
        skip: bool = False,
        user_id: str = "system",
    ) -> WorkflowRun:
        """Continue a blocked or interrupted run from its last checkpoint.

        ``context`` is merged before continuing. ``skip`` marks the blocked
        step skipped and moves past it. A run found ``running`` on disk was
        interrupted; its current step is dispatched again. Parallel
        sub-steps still finishing from the previous drive carry over to the
        resumed one.
        """
        if run_id in self._active:
            raise RunStateError(f"Run '{run_id}' is already active")
        parked = self._draining.get(run_id)
        if parked is not None:
            run = parked.run
        else:
            run = await self.repository.load_checkpoint(run_id)
        if run.is_terminal:
            raise RunStateError(f"Run '{run_id}' is {run.status.value} and cannot be resumed")
        if skip and run.status != RunStatus.BLOCKED:
            raise RunStateError(f"Run '{run_id}' is {run.status.value}; only a blocked step can be skipped")

        definition = await self.repository.load_definition_snapshot(run.id)
        if definition is None:
            definition = await self.definitions.get_definition(run.workflow_id, run.workflow_version)
        self.acl.assert_permission(definition.id, user_id, WorkflowPermission.EXECUTE)
        self._check_capacity()

        previous = run.status
        handle = _ActiveRun(run=run, definition=definition, user_id=user_id)
        if parked is not None:
            self._draining.pop(run_id, None)
            parked.drain.cancel()
            handle.background = [task for task in parked.background if not task.done()]
        self._active[run.id] = handle
        try:
            if context:
                ContextStore(run).merge(context)
            if previous in (RunStatus.BLOCKED, RunStatus.PENDING):
                transition_run(run, RunStatus.RUNNING)
            if skip:
                self._skip_current(run, StepScheduler(definition))
            await self.checkpoint(run)
            self.audit.record(
                "resume", definition.id, user_id=user_id,
                workflow_version=definition.version, run_id=run.id,
            )
        except BaseException:
            self._active.pop(run.id, None)
            self._park(handle)
            raise

        _log.info(
            "Run %s resumed from %s at step %s", run.id, previous.value, run.current_step,
            extra={"run_id": run.id, "step_id": run.current_step, "skip": skip},
        )
        await self.emit(
            EventType.RUN_STATUS, run, run.current_step or "",
            data={"status": run.status.value, "from": previous.value, "skip": skip},
        )
        self._launch(handle)
        return run

    async def cancel_run(self, run_id: str, user_id: str = "system") -> WorkflowRun:
        """Fail the run with a cancellation error and release its sessions."""
        handle = self._active.get(run_id)
        if handle is not None and handle.task is not None and not handle.task.done():
            if handle.run.is_terminal:
                raise RunStateError(f"Run '{run_id}' is already {handle.run.status.value}")
            self.acl.assert_permission(handle.run.workflow_id, user_id, WorkflowPermission.EXECUTE)
            handle.token.cancel("cancelled")
            handle.task.cancel()
            run = await handle.task
        else:
            parked = self._draining.get(run_id)
            if parked is not None:
                run = parked.run
            else:
                run = await self.repository.load_checkpoint(run_id)
            if run.is_terminal:
                raise RunStateError(f"Run '{run_id}' is already {run.status.value}")
            self.acl.assert_permission(run.workflow_id, user_id, WorkflowPermission.EXECUTE)
            if parked is not None:
                self._draining.pop(run_id, None)
                await self._stop_background(parked)
            self._mark_cancelled(run)
            await self.sessions.release_all(run, force=True)
            await self.checkpoint(run)
            await self.emit(EventType.RUN_END, run, data={"status": run.status.value, "error": run.error})

        self.audit.record(
            "cancel", run.workflow_id, user_id=user_id,
            workflow_version=run.workflow_version, run_id=run.id,
        )
        _log.warning("Run %s cancelled by %s", run.id, user_id, extra={"run_id": run.id})
        return run

    async def get_run(self, run_id: str) -> WorkflowRun:
        handle = self._active.get(run_id) or self._draining.get(run_id)
        if handle is not None:
            return handle.run
        return await self.repository.load_checkpoint(run_id)

    async def list_runs(
        self,
        workflow_id: str | None = None,
        task_id: str | None = None,
        status: RunStatus | str | None = None,
        limit: int | None = None,
    ) -> list[WorkflowRun]:
        return await self.repository.list_runs(
            RunFilter(
                workflow_id=workflow_id,
                task_id=task_id,
                status=RunStatus(status) if status is not None else None,
                limit=limit,
            )
        )

    async def wait_for(self, run_id: str) -> WorkflowRun:
        """Wait until the run stops driving (terminal or blocked) and its
        parallel stragglers have recorded their results."""
        run = None
        handle = self._active.get(run_id)
        if handle is not None and handle.task is not None:
            run = await asyncio.shield(handle.task)
        parked = self._draining.get(run_id)
        if parked is not None:
            await asyncio.wait({parked.drain})
            run = parked.run
        return run if run is not None else await self.get_run(run_id)

    async def arun(
        self,
        workflow: Union[str, WorkflowDefinition],
        seed: Mapping[str, Any] | None = None,
        task_id: str | None = None,
        user_id: str = "system",
    ) -> WorkflowRun:
        run = await self.start_run(workflow, seed=seed, task_id=task_id, user_id=user_id)
        return await self.wait_for(run.id)

    @property
    def active_runs(self) -> list[str]:
        return list(self._active)

    async def shutdown(self) -> None:
        """Cancel every active run, stop parked stragglers and close the repository."""
        for run_id in list(self._active):
            handle = self._active.get(run_id)
            if handle is not None and handle.task is not None and not handle.task.done():
                await self.cancel_run(run_id)
        while self._draining:
            _, parked = self._draining.popitem()
            await self._stop_background(parked)
        await self.repository.close()

    @staticmethod
    def stats(runs: list[WorkflowRun], since: datetime | None = None) -> dict[str, Any]:
        """Aggregate counts, success rate and mean duration over ``runs``."""
        if since is not None:
            runs = [r for r in runs if r.started_at >= since]
        by_status = {status.value: 0 for status in RunStatus}
        by_workflow: dict[str, dict[str, int]] = {}
        durations: list[float] = []
        for run in runs:
            by_status[run.status.value] += 1
            entry = by_workflow.setdefault(run.workflow_id, {"total": 0, "completed": 0, "failed": 0})
            entry["total"] += 1
            if run.status == RunStatus.COMPLETED:
                entry["completed"] += 1
                if run.completed_at is not None:
                    durations.append((run.completed_at - run.started_at).total_seconds())
            elif run.status == RunStatus.FAILED:
                entry["failed"] += 1

        finished = by_status["completed"] + by_status["failed"]
        return {
            "total": len(runs),
            "by_status": by_status,
            "success_rate": by_status["completed"] / finished if finished else 0.0,
            "mean_duration_seconds": sum(durations) / len(durations) if durations else None,
            "by_workflow": by_workflow,
        }

    # ------------------------------------------------------------------
    # Hooks used by the coordinators
    # ------------------------------------------------------------------

    async def checkpoint(self, run: WorkflowRun) -> None:
        handle = self._active.get(run.id)
        try:
            if handle is None:
                await self.repository.save_checkpoint(run)
            else:
                async with handle.lock:
                    await self.repository.save_checkpoint(run)
        except Exception:
            _log.error("Checkpoint failed for run %s", run.id, extra={"run_id": run.id})
            raise
        if self.tracer is not None:
            self.tracer.record(TraceEvent(
                event_type=EventType.CHECKPOINT,
                run_id=run.id,
                data={"status": run.status.value, "current_step": run.current_step},
            ))

    async def emit(
        self,
        event_type: EventType,
        run: WorkflowRun,
        step_id: str = "",
        agent: str = "",
        data: dict | None = None,
        duration_ms: float = 0.0,
    ) -> None:
        event = TraceEvent(
            event_type=event_type,
            run_id=run.id,
            step_id=step_id,
            agent_name=agent or "",
            data=data or {},
            duration_ms=duration_ms,
        )
        if self.tracer is not None:
            self.tracer.record(event)
        await self.events.emit(event)

    # ------------------------------------------------------------------
    # Driving a run
    # ------------------------------------------------------------------

    def _check_capacity(self) -> None:
        limit = self.config.limits.max_concurrent_runs
        if len(self._active) >= limit:
            raise ConcurrencyLimitError(f"Concurrent run limit reached ({limit})")

    async def _load_task(self, task_id: str) -> dict[str, Any]:
        task = self.task_loader(task_id)
        if inspect.isawaitable(task):
            task = await task
        if task is None:
            raise WorkforgeError(f"Task '{task_id}' not found")
        return dict(task)

    def _launch(self, handle: _ActiveRun) -> None:
        handle.task = asyncio.create_task(self._drive(handle), name=f"workforge:{handle.run.id}")

    async def _drive(self, handle: _ActiveRun) -> WorkflowRun:
        run = handle.run
        scheduler = StepScheduler(handle.definition)
        try:
            await self._drive_steps(handle, scheduler)
        except asyncio.CancelledError:
            if not handle.token.cancelled:
                raise
            await self._finish_cancelled(handle)
        except Exception as e:
            await self._fail_fatal(handle, e)
        finally:
            self._active.pop(run.id, None)
            if not self._park(handle):
                await self._collect_background(handle)
        return run

    async def _drive_steps(self, handle: _ActiveRun, scheduler: StepScheduler) -> None:
        run = handle.run
        while True:
            directive = scheduler.next(run)
            if isinstance(directive, RunComplete):
                break
            if isinstance(directive, RunBlocked):
                _log.warning(
                    "Run %s blocked at %s: %s", run.id, run.current_step, directive.reason,
                    extra={"run_id": run.id, "step_id": run.current_step},
                )
                return
            step_run = scheduler.select(run, directive.step.id)
            await self._execute_step(handle, scheduler, directive.step, step_run)
        await self._finalize(handle)

    async def _execute_step(self, handle: _ActiveRun, scheduler: StepScheduler, step, step_run: StepRun) -> None:
        run = handle.run
        while True:
            step_run.agent = getattr(step, "agent", None)
            step_run.error = None
            step_run.error_kind = None
            transition_step(step_run, StepStatus.RUNNING)
            await self.checkpoint(run)
            await self.emit(
                EventType.STEP_START, run, step.id, step_run.agent or "",
                data={"type": step.type, "attempt": step_run.retries + 1},
            )

            try:
                if isinstance(step, GateStep):
                    decision = await self._run_gate(handle, scheduler, step, step_run)
                else:
                    output, path = await self._dispatch(handle, step, step_run)
                    await self._complete(handle, scheduler, step, step_run, output, path)
                    decision = Continue()
            except _STEP_FAILURES as e:
                await self._fail_step(handle, step, step_run, e)
                decision = self.policy.classify(step_run, step.on_fail)

            if not await self._apply(handle, scheduler, step, step_run, decision):
                return

    async def _dispatch(self, handle: _ActiveRun, step, step_run: StepRun) -> tuple[Any, str]:
        run, definition = handle.run, handle.definition
        if isinstance(step, AgentStep):
            settings = resolve_session(step, definition, self.config.defaults.step_timeout)
            outcome = await self.runner.dispatch(
                run,
                definition,
                DispatchPlan(
                    step_id=step.id,
                    agent_id=step.agent,
                    input_template=step.input or "",
                    session=settings,
                    view=await self.runner.session_view(run, settings),
                    output=step.output,
                    acceptance_criteria=list(step.acceptance_criteria),
                    attempt=step_run.retries + 1,
                ),
                handle.token,
            )
            step_run.session_key = outcome.session_key
            return outcome.parsed, outcome.output_path
        if isinstance(step, LoopStep):
            return await self.loops.run_loop(run, definition, step, step_run, handle.token, self)
        if isinstance(step, ParallelStep):
            return await self.parallel.run_parallel(
                run, definition, step, step_run, handle.token, self, handle.background
            )
        raise TypeError(f"Unsupported step type: {type(step).__name__}")

    async def _run_gate(
        self, handle: _ActiveRun, scheduler: StepScheduler, step: GateStep, step_run: StepRun
    ) -> Outcome:
        run = handle.run
        passed = self.gates.evaluate_gate(step, await self.runner.full_view(run))
        await self.emit(
            EventType.GATE_EVALUATED, run, step.id,
            data={"condition": step.condition, "passed": passed},
        )
        if passed:
            output = self.gates.output(step, passed)
            path = await self.artifacts.write_output(
                run.id, step.output.file if step.output else f"{step.id}.json", output
            )
            await self._complete(handle, scheduler, step, step_run, output, path)
            return Continue()

        step_run.error = f"Gate condition not met: {step.condition}"
        transition_step(step_run, StepStatus.FAILED)
        _log.info(
            "Gate %s closed: %s", step.id, step.condition,
            extra={"run_id": run.id, "step_id": step.id},
        )
        await self.checkpoint(run)
        await self.emit(EventType.STEP_END, run, step.id, data={"status": "failed", "error": step_run.error})
        return self.policy.classify_gate(False, step.on_false, step.condition)

    async def _complete(
        self,
        handle: _ActiveRun,
        scheduler: StepScheduler,
        step,
        step_run: StepRun,
        output: Any,
        path: str,
    ) -> None:
        """Record success, merge the output and move the cursor in one checkpoint."""
        run = handle.run
        step_run.output = path
        ContextStore(run).set_step_output(step.id, output)
        transition_step(step_run, StepStatus.COMPLETED)
        _log.info(
            "Step %s completed in %.2fs", step.id, step_run.duration or 0.0,
            extra={"run_id": run.id, "step_id": step.id},
        )
        await self.emit(
            EventType.STEP_END, run, step.id, step_run.agent or "",
            data={"status": "completed", "output_path": path},
            duration_ms=(step_run.duration or 0.0) * 1000,
        )
        await self._advance(handle, scheduler)

    async def _advance(self, handle: _ActiveRun, scheduler: StepScheduler) -> None:
        run = handle.run
        if not scheduler.advance(run):
            transition_run(run, RunStatus.COMPLETED)
        await self.checkpoint(run)

    async def _fail_step(self, handle: _ActiveRun, step, step_run: StepRun, exc: Exception) -> None:
        run = handle.run
        step_run.error = str(exc)
        step_run.error_kind = error_kind(exc)
        transition_step(step_run, StepStatus.FAILED)
        _log.warning(
            "Step %s failed (%s, attempt %d): %s", step.id, step_run.error_kind,
            step_run.retries + 1, exc,
            extra={"run_id": run.id, "step_id": step.id},
        )
        await self.checkpoint(run)
        await self.emit(
            EventType.STEP_END, run, step.id, step_run.agent or "",
            data={"status": "failed", "error": step_run.error, "kind": step_run.error_kind},
            duration_ms=(step_run.duration or 0.0) * 1000,
        )

    async def _apply(
        self,
        handle: _ActiveRun,
        scheduler: StepScheduler,
        step,
        step_run: StepRun,
        decision: Outcome,
    ) -> bool:
        """Carry out a policy decision. True when the step should be dispatched again."""
        run = handle.run
        if isinstance(decision, Continue):
            return False

        if isinstance(decision, Retry):
            step_run.retries += 1
            _log.info(
                "Retrying %s (%d) in %dms", step.id, step_run.retries, decision.delay_ms,
                extra={"run_id": run.id, "step_id": step.id},
            )
            await self.emit(
                EventType.RETRY, run, step.id, step_run.agent or "",
                data={"retries": step_run.retries, "delay_ms": decision.delay_ms},
            )
            await self.checkpoint(run)
            if decision.delay_ms:
                await asyncio.sleep(decision.delay_ms / 1000)
            return True

        if isinstance(decision, Redirect):
            step_run.redirects += 1
            ContextStore(run).merge({
                "_retry_context": {
                    "failedStep": step.id,
                    "error": step_run.error,
                    "errorKind": step_run.error_kind,
                    "retries": step_run.retries,
                },
            })
            scheduler.redirect(run, decision.step_id)
            await self.emit(
                EventType.REDIRECT, run, step.id,
                data={"target": decision.step_id, "redirects": step_run.redirects},
            )
            await self.checkpoint(run)
            return False

        if isinstance(decision, Escalate):
            return await self._escalate(handle, scheduler, step, step_run, decision)

        if isinstance(decision, RunFailed):
            transition_run(run, RunStatus.FAILED, error=decision.reason)
            await self.checkpoint(run)
            return False

        raise TypeError(f"Unknown policy outcome: {decision!r}")

    async def _escalate(
        self,
        handle: _ActiveRun,
        scheduler: StepScheduler,
        step,
        step_run: StepRun,
        decision: Escalate,
    ) -> bool:
        run = handle.run
        record = EscalationRecord(target=decision.target, message=decision.message, agent=decision.agent_id)
        step_run.escalation = record
        _log.warning(
            "Escalating %s to %s", step.id, decision.target,
            extra={"run_id": run.id, "step_id": step.id, "exhausted": decision.exhausted},
        )
        await self.emit(
            EventType.ESCALATION, run, step.id,
            data={"target": decision.target, "message": decision.message, "exhausted": decision.exhausted},
        )

        if decision.target == "human":
            message = decision.message or f"Step '{step.id}' requires human attention: {step_run.error}"
            transition_run(run, RunStatus.BLOCKED, error=message)
            await self.checkpoint(run)
            await self.emit(EventType.RUN_STATUS, run, step.id, data={"status": "blocked", "error": message})
            return False

        if decision.target == "skip":
            transition_step(step_run, StepStatus.SKIPPED)
            record.status = StepStatus.SKIPPED
            await self._advance(handle, scheduler)
            return False

        try:
            outcome = await self._dispatch_escalation(handle, step, step_run, decision)
        except _STEP_FAILURES as e:
            record.status = StepStatus.FAILED
            record.error = str(e)
            _log.warning(
                "Escalation agent %s could not resolve %s: %s", decision.agent_id, step.id, e,
                extra={"run_id": run.id, "step_id": step.id},
            )
            await self.checkpoint(run)
            reason = f"Escalation to {decision.target} failed for step '{step.id}': {e}"
            follow_up = RunFailed(reason) if decision.exhausted else self.policy.exhausted(step.on_fail, reason)
            return await self._apply(handle, scheduler, step, step_run, follow_up)

        record.status = StepStatus.COMPLETED
        record.output = outcome.output_path
        record.session_key = outcome.session_key
        await self._complete(handle, scheduler, step, step_run, outcome.parsed, outcome.output_path)
        return False

    async def _dispatch_escalation(self, handle: _ActiveRun, step, step_run: StepRun, decision: Escalate):
        run, definition = handle.run, handle.definition
        failure = {
            "stepId": step.id,
            "error": step_run.error,
            "errorKind": step_run.error_kind,
            "retries": step_run.retries,
        }
        prompt = "\n\n".join(part for part in (
            decision.message,
            f"Step '{step.id}' failed: {step_run.error}",
            "Resolve the failure and produce the step's output.",
        ) if part)
        settings = SessionSettings(
            mode="fresh",
            context="full",
            cleanup="delete",
            timeout=resolve_timeout(step.timeout, None, definition, self.config.defaults.step_timeout),
        )
        view = ContextStore.overlay(await self.runner.full_view(run), {"failure": failure})
        return await self.runner.dispatch(
            run,
            definition,
            DispatchPlan(
                step_id=step.id,
                agent_id=decision.agent_id,
                input_template=prompt,
                session=settings,
                view=view,
                output=step.output,
                session_scope=f"escalation:{step.id}",
                artifact_name=f"{step.id}-escalation.md",
                progress_label=f"{step.id}-escalation",
            ),
            handle.token,
        )

    # ------------------------------------------------------------------
    # Ending a run
    # ------------------------------------------------------------------

    async def _finalize(self, handle: _ActiveRun) -> None:
        run = handle.run
        await self.sessions.release_all(run)
        await self.checkpoint(run)
        if run.status == RunStatus.COMPLETED:
            _log.info("Run %s completed", run.id, extra={"run_id": run.id})
        else:
            _log.error("Run %s failed: %s", run.id, run.error, extra={"run_id": run.id})
        await self.emit(EventType.RUN_END, run, data={"status": run.status.value, "error": run.error})

    async def _finish_cancelled(self, handle: _ActiveRun) -> None:
        run = handle.run
        await self._stop_background(handle)
        self._mark_cancelled(run)
        await self.sessions.release_all(run, force=True)
        await self.checkpoint(run)
        await self.emit(EventType.RUN_END, run, data={"status": run.status.value, "error": run.error})

    async def _fail_fatal(self, handle: _ActiveRun, exc: Exception) -> None:
        run = handle.run
        _log.exception("Run %s aborted by an unexpected error", run.id, extra={"run_id": run.id})
        await self.emit(EventType.ERROR, run, run.current_step or "", data={"error": str(exc), "type": type(exc).__name__})
        for step_run in run.steps:
            if step_run.status == StepStatus.RUNNING:
                step_run.error = str(exc)
                step_run.error_kind = error_kind(exc)
                transition_step(step_run, StepStatus.FAILED)
        if not run.is_terminal:
            transition_run(run, RunStatus.FAILED, error=f"{type(exc).__name__}: {exc}")
        try:
            await self._finalize(handle)
        except Exception:
            _log.exception("Could not persist failed run %s", run.id, extra={"run_id": run.id})

    def _park(self, handle: _ActiveRun) -> bool:
        """Keep collecting stragglers after the run stops driving.

        Returns False when nothing is left in flight.
        """
        if all(task.done() for task in handle.background):
            return False
        self._draining[handle.run.id] = handle
        handle.drain = asyncio.create_task(
            self._collect_background(handle), name=f"workforge:{handle.run.id}:drain"
        )
        return True

    async def _collect_background(self, handle: _ActiveRun) -> None:
        try:
            if handle.background:
                # asyncio.wait leaves the sub-steps running if this collector is cancelled.
                await asyncio.wait(handle.background)
        finally:
            if self._draining.get(handle.run.id) is handle:
                del self._draining[handle.run.id]
        for task in handle.background:
            if not task.cancelled() and isinstance(task.exception(), Exception):
                _log.error(
                    "Background sub-step recording failed: %s", task.exception(),
                    extra={"run_id": handle.run.id},
                )

    async def _stop_background(self, handle: _ActiveRun) -> None:
        if handle.drain is not None:
            handle.drain.cancel()
        pending = [task for task in handle.background if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)

    @staticmethod
    def _mark_cancelled(run: WorkflowRun) -> None:
        def _interrupt(step_run: StepRun) -> None:
            for child in step_run.children:
                _interrupt(child)
            if step_run.status == StepStatus.RUNNING:
                step_run.error = "cancelled"
                step_run.error_kind = "cancelled"
                transition_step(step_run, StepStatus.FAILED)

        for step_run in run.steps:
            _interrupt(step_run)
        transition_run(run, RunStatus.FAILED, error=CANCELLED_MESSAGE)

    @staticmethod
    def _skip_current(run: WorkflowRun, scheduler: StepScheduler) -> None:
        step_run = run.step_run_for(run.current_step)
        if step_run.status in (StepStatus.PENDING, StepStatus.FAILED):
            transition_step(step_run, StepStatus.SKIPPED)
        if step_run.escalation is not None:
            step_run.escalation.status = StepStatus.SKIPPED
        _log.info("Skipping blocked step %s", run.current_step, extra={"run_id": run.id})
        if not scheduler.advance(run):
            transition_run(run, RunStatus.COMPLETED)
