"""End-to-end tests for the run supervisor."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from workforge.config.schema import EngineConfig
from workforge.control.acl import WorkflowACL
from workforge.core.context import build_seed
from workforge.core.models import RunStatus, StepStatus, WorkflowRun, utcnow
from workforge.core.supervisor import CANCELLED_MESSAGE, RunSupervisor
from workforge.errors import (
    ConcurrencyLimitError,
    DefinitionError,
    ExecutorFailure,
    PermissionDenied,
    RunStateError,
    WorkforgeError,
)
from workforge.observe.tracer import EventType
from workforge.persistence.definitions import InMemoryDefinitionStore
from workforge.persistence.memory_store import InMemoryRunRepository


class RecordingRepository(InMemoryRunRepository):
    """Remembers every distinct run status it was asked to persist."""

    def __init__(self):
        super().__init__()
        self.statuses: list[RunStatus] = []
        self.saves = 0

    async def save_checkpoint(self, run):
        await super().save_checkpoint(run)
        self.saves += 1
        if not self.statuses or self.statuses[-1] != run.status:
            self.statuses.append(run.status)


FULL = {"context": "full"}


def gated_steps(on_false=None):
    gate = {"id": "approve", "condition": "{{ approved }}"}
    if on_false is not None:
        gate["on_false"] = on_false
    return [
        {"id": "build", "agent": "dev", "input": "Build it"},
        gate,
        {"id": "deploy", "agent": "dev", "input": "Ship it"},
    ]


class TestLinearRun:
    @pytest.mark.asyncio
    async def test_single_step_completes(self, make_supervisor, make_definition, executor):
        repo = RecordingRepository()
        definition = make_definition(
            [{"id": "build", "agent": "dev", "input": "Build {{ feature }}", "session": FULL}],
            variables={"feature": "login"},
        )
        sup = make_supervisor(executor, repository=repo)

        run = await sup.arun(definition)

        assert run.status == RunStatus.COMPLETED
        assert len(run.steps) == 1
        assert run.steps[0].status == StepStatus.COMPLETED
        assert run.steps[0].retries == 0
        assert run.completed_at is not None
        assert repo.statuses == [RunStatus.PENDING, RunStatus.RUNNING, RunStatus.COMPLETED]
        assert executor.calls[0].input == "Build login"
        assert run.context["build"] == "done"

    @pytest.mark.asyncio
    async def test_checkpoint_matches_returned_run(self, make_supervisor, make_definition, executor):
        sup = make_supervisor(executor)
        run = await sup.arun(make_definition([{"id": "build", "agent": "dev"}]))

        stored = await sup.repository.load_checkpoint(run.id)
        assert stored.status == RunStatus.COMPLETED
        assert stored.current_step == "build"
        assert stored.last_checkpoint is not None

    @pytest.mark.asyncio
    async def test_steps_run_in_declaration_order(self, make_supervisor, make_definition, executor):
        definition = make_definition([
            {"id": "plan", "agent": "dev"},
            {"id": "build", "agent": "dev"},
            {"id": "review", "agent": "rev"},
        ])
        sup = make_supervisor(executor)

        run = await sup.arun(definition)

        assert [c.step_id for c in executor.calls] == ["plan", "build", "review"]
        assert [s.step_id for s in run.steps] == ["plan", "build", "review"]
        assert run.current_step == "review"

    @pytest.mark.asyncio
    async def test_structured_output_reaches_later_step(self, make_supervisor, make_definition, scripted):
        executor = scripted({"plan": '{"title": "login form"}'})
        definition = make_definition([
            {"id": "plan", "agent": "dev", "output": {"file": "plan.json"}},
            {
                "id": "build",
                "agent": "dev",
                "input": "Implement {{ steps.plan.output.title }}",
                "session": {"context": "custom", "includeOutputsFrom": ["plan"]},
            },
        ])
        sup = make_supervisor(executor)

        run = await sup.arun(definition)

        assert run.status == RunStatus.COMPLETED
        assert run.context["plan"] == {"title": "login form"}
        assert executor.calls[1].input == "Implement login form"
        assert set(executor.calls[1].context["steps"]) == {"plan"}

    @pytest.mark.asyncio
    async def test_minimal_context_hides_variables(self, make_supervisor, make_definition, executor):
        definition = make_definition(
            [{"id": "build", "agent": "dev", "input": "Build {{ feature }}"}],
            variables={"feature": "login"},
        )
        sup = make_supervisor(executor)

        await sup.arun(definition)

        request = executor.calls[0]
        assert request.input == "Build {{ feature }}"
        assert "feature" not in request.context
        assert request.context["workflow"]["id"] == "test-flow"

    @pytest.mark.asyncio
    async def test_seed_and_task_loader(self, make_supervisor, make_definition, executor):
        definition = make_definition([
            {"id": "build", "agent": "dev", "input": "{{ task.title }} for {{ customer }}", "session": FULL},
        ])
        sup = make_supervisor(executor, task_loader=lambda task_id: {"id": task_id, "title": "Add login"})

        run = await sup.arun(definition, seed={"customer": "acme"}, task_id="T-1")

        assert run.task_id == "T-1"
        assert executor.calls[0].input == "Add login for acme"

    @pytest.mark.asyncio
    async def test_missing_task_rejected(self, make_supervisor, make_definition, executor):
        sup = make_supervisor(executor, task_loader=lambda task_id: None)
        with pytest.raises(WorkforgeError, match="not found"):
            await sup.start_run(make_definition([{"id": "build", "agent": "dev"}]), task_id="T-404")
        assert sup.active_runs == []

    @pytest.mark.asyncio
    async def test_events_bracket_the_run(self, make_supervisor, make_definition, executor):
        seen = []
        sup = make_supervisor(executor)
        sup.events.subscribe_sync(lambda e: seen.append(e.event_type))

        await sup.arun(make_definition([{"id": "build", "agent": "dev"}]))

        assert seen[0] == EventType.RUN_START
        assert seen[-1] == EventType.RUN_END
        assert EventType.STEP_START in seen and EventType.STEP_END in seen

    @pytest.mark.asyncio
    async def test_limits_checked_before_start(self, make_supervisor, make_definition, executor):
        config = EngineConfig.model_validate({"storage": {"backend": "memory"}, "limits": {"max_steps": 1}})
        sup = make_supervisor(executor, config=config)
        definition = make_definition([{"id": "a", "agent": "dev"}, {"id": "b", "agent": "dev"}])

        with pytest.raises(DefinitionError, match="maximum of 1 steps"):
            await sup.start_run(definition)
        assert await sup.list_runs() == []


class TestRetries:
    @pytest.mark.asyncio
    async def test_retries_exhausted_fail_run(self, make_supervisor, make_definition, scripted):
        executor = scripted({"build": ExecutorFailure("boom")})
        definition = make_definition([
            {"id": "build", "agent": "dev", "on_fail": {"retry": 2, "retry_delay_ms": 20}},
        ])
        sup = make_supervisor(executor)

        run = await sup.arun(definition)

        assert run.status == RunStatus.FAILED
        assert executor.attempts("build") == 3
        assert run.steps[0].retries == 2
        assert run.steps[0].error == "boom"
        assert "boom" in run.error
        gaps = [b - a for a, b in zip(executor.call_times, executor.call_times[1:])]
        assert all(gap >= 0.015 for gap in gaps)

        timings = sup.tracer.get_step_timings(run.id)
        assert timings["build"]["attempts"] == 3
        assert timings["build"]["retries"] == 2

    @pytest.mark.asyncio
    async def test_retry_then_success(self, make_supervisor, make_definition, scripted):
        executor = scripted({"build": [ExecutorFailure("flaky"), "ok"]})
        definition = make_definition([{"id": "build", "agent": "dev", "on_fail": {"retry": 3}}])
        sup = make_supervisor(executor)

        run = await sup.arun(definition)

        assert run.status == RunStatus.COMPLETED
        assert run.steps[0].retries == 1
        assert run.steps[0].error is None
        assert run.context["build"] == "ok"

    @pytest.mark.asyncio
    async def test_no_policy_fails_immediately(self, make_supervisor, make_definition, scripted):
        executor = scripted({"build": ExecutorFailure("nope")})
        sup = make_supervisor(executor)

        run = await sup.arun(make_definition([{"id": "build", "agent": "dev"}, {"id": "ship", "agent": "dev"}]))

        assert run.status == RunStatus.FAILED
        assert run.current_step == "build"
        assert executor.attempts("ship") == 0

    @pytest.mark.asyncio
    async def test_timeout_is_a_step_failure(self, make_supervisor, make_definition, scripted):
        executor = scripted(delays={"build": 1.0})
        definition = make_definition([
            {"id": "build", "agent": "dev", "timeout": 0.05, "on_fail": {"retry": 1}},
        ])
        sup = make_supervisor(executor)

        run = await sup.arun(definition)

        assert run.status == RunStatus.FAILED
        assert run.steps[0].error_kind == "timeout"
        assert executor.attempts("build") == 2

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_fatal(self, make_supervisor, make_definition, scripted):
        executor = scripted({"build": RuntimeError("kaboom")})
        definition = make_definition([{"id": "build", "agent": "dev", "on_fail": {"retry": 3}}])
        sup = make_supervisor(executor)

        run = await sup.arun(definition)

        assert run.status == RunStatus.FAILED
        assert run.error == "RuntimeError: kaboom"
        assert executor.attempts("build") == 1
        assert run.steps[0].status == StepStatus.FAILED
        assert any(e.event_type == EventType.ERROR for e in sup.tracer.for_run(run.id))


class TestRedirects:
    @pytest.mark.asyncio
    async def test_failed_step_redirects_to_earlier_step(self, make_supervisor, make_definition, scripted):
        executor = scripted({"test": [ExecutorFailure("red"), "green"]})
        definition = make_definition([
            {"id": "build", "agent": "dev"},
            {"id": "test", "agent": "rev", "on_fail": {"retry_step": "build"}},
        ])
        sup = make_supervisor(executor)

        run = await sup.arun(definition)

        assert run.status == RunStatus.COMPLETED
        assert [c.step_id for c in executor.calls] == ["build", "test", "build", "test"]
        assert run.find_step("test").redirects == 1
        assert run.find_step("build").status == StepStatus.COMPLETED
        first_build, _, rebuild, _ = executor.calls
        assert "_retry_context" not in first_build.context
        assert rebuild.context["_retry_context"] == {
            "failedStep": "test",
            "error": "red",
            "errorKind": "executor",
            "retries": 0,
        }
        assert run.context["_retry_context"]["failedStep"] == "test"

    @pytest.mark.asyncio
    async def test_redirect_limit_fails_run(self, make_supervisor, make_definition, scripted):
        config = EngineConfig.model_validate({"storage": {"backend": "memory"}, "limits": {"max_redirects": 2}})
        executor = scripted({"test": ExecutorFailure("still red")})
        definition = make_definition([
            {"id": "build", "agent": "dev"},
            {"id": "test", "agent": "rev", "on_fail": {"retry_step": "build"}},
        ])
        sup = make_supervisor(executor, config=config)

        run = await sup.arun(definition)

        assert run.status == RunStatus.FAILED
        assert executor.attempts("test") == 3
        assert executor.attempts("build") == 3
        assert run.find_step("test").redirects == 2


class TestEscalation:
    @pytest.mark.asyncio
    async def test_escalate_to_skip_moves_on(self, make_supervisor, make_definition, scripted):
        executor = scripted({"build": ExecutorFailure("broken")})
        definition = make_definition([
            {"id": "build", "agent": "dev", "on_fail": {"escalate_to": "skip"}},
            {"id": "deploy", "agent": "dev"},
        ])
        sup = make_supervisor(executor)

        run = await sup.arun(definition)

        assert run.status == RunStatus.COMPLETED
        build = run.find_step("build")
        assert build.status == StepStatus.SKIPPED
        assert build.escalation.target == "skip"
        assert executor.attempts("deploy") == 1

    @pytest.mark.asyncio
    async def test_escalate_to_human_blocks(self, make_supervisor, make_definition, scripted):
        executor = scripted({"build": ExecutorFailure("broken")})
        definition = make_definition([
            {"id": "build", "agent": "dev", "on_fail": {"retry": 1, "escalate_to": "human"}},
        ])
        sup = make_supervisor(executor)

        run = await sup.arun(definition)

        assert run.status == RunStatus.BLOCKED
        assert run.current_step == "build"
        assert "requires human attention" in run.error
        assert run.completed_at is None
        assert executor.attempts("build") == 2

    @pytest.mark.asyncio
    async def test_escalation_agent_resolves_failure(self, make_supervisor, make_definition, scripted):
        def build(request):
            if request.agent.id == "rev":
                return "fixed by reviewer"
            raise ExecutorFailure("compile error")

        executor = scripted({"build": build})
        definition = make_definition([
            {
                "id": "build",
                "agent": "dev",
                "on_fail": {"escalate_to": "agent:rev", "escalate_message": "Please fix the build"},
            },
            {"id": "deploy", "agent": "dev"},
        ])
        sup = make_supervisor(executor)

        run = await sup.arun(definition)

        assert run.status == RunStatus.COMPLETED
        record = run.find_step("build")
        assert record.status == StepStatus.COMPLETED
        assert record.escalation.status == StepStatus.COMPLETED
        assert run.context["build"] == "fixed by reviewer"

        escalation_call = executor.calls[1]
        assert escalation_call.agent.id == "rev"
        assert "Please fix the build" in escalation_call.input
        assert "compile error" in escalation_call.input
        assert escalation_call.context["failure"]["errorKind"] == "executor"
        assert sup.artifacts.read_output(run.id, "build-escalation.md") == "fixed by reviewer"

    @pytest.mark.asyncio
    async def test_failed_escalation_falls_back_to_on_exhausted(
        self, make_supervisor, make_definition, scripted
    ):
        executor = scripted({"build": ExecutorFailure("compile error")})
        definition = make_definition([
            {
                "id": "build",
                "agent": "dev",
                "on_fail": {"escalate_to": "agent:rev", "on_exhausted": {"escalate_to": "human"}},
            },
        ])
        sup = make_supervisor(executor)

        run = await sup.arun(definition)

        assert run.status == RunStatus.BLOCKED
        assert run.find_step("build").escalation.target == "human"
        assert executor.attempts("build") == 2

    @pytest.mark.asyncio
    async def test_failed_escalation_without_fallback_fails_run(
        self, make_supervisor, make_definition, scripted
    ):
        executor = scripted({"build": ExecutorFailure("compile error")})
        definition = make_definition([
            {"id": "build", "agent": "dev", "on_fail": {"escalate_to": "agent:rev"}},
        ])
        sup = make_supervisor(executor)

        run = await sup.arun(definition)

        assert run.status == RunStatus.FAILED
        assert run.error.startswith("Escalation to agent:rev failed")
        assert run.find_step("build").escalation.status == StepStatus.FAILED


class TestGates:
    @pytest.mark.asyncio
    async def test_closed_gate_blocks_at_gate(self, make_supervisor, make_definition, executor):
        definition = make_definition(
            gated_steps({"escalate_to": "human", "escalate_message": "Needs sign-off"}),
            variables={"approved": False},
        )
        sup = make_supervisor(executor)

        run = await sup.arun(definition)

        assert run.status == RunStatus.BLOCKED
        assert run.current_step == "approve"
        assert run.error == "Needs sign-off"
        assert run.find_step("approve").status == StepStatus.FAILED
        assert executor.attempts("deploy") == 0

    @pytest.mark.asyncio
    async def test_open_gate_passes(self, make_supervisor, make_definition, executor):
        definition = make_definition(gated_steps(), variables={"approved": True})
        sup = make_supervisor(executor)

        run = await sup.arun(definition)

        assert run.status == RunStatus.COMPLETED
        assert run.context["approve"] == {"passed": True, "condition": "{{ approved }}"}
        assert executor.attempts("deploy") == 1

    @pytest.mark.asyncio
    async def test_closed_gate_without_policy_fails(self, make_supervisor, make_definition, executor):
        definition = make_definition(gated_steps(), variables={"approved": False})
        sup = make_supervisor(executor)

        run = await sup.arun(definition)

        assert run.status == RunStatus.FAILED
        assert "Gate condition not met" in run.error

    @pytest.mark.asyncio
    async def test_closed_gate_skip(self, make_supervisor, make_definition, executor):
        definition = make_definition(gated_steps({"escalate_to": "skip"}), variables={"approved": False})
        sup = make_supervisor(executor)

        run = await sup.arun(definition)

        assert run.status == RunStatus.COMPLETED
        assert run.find_step("approve").status == StepStatus.SKIPPED
        assert executor.attempts("deploy") == 1

    @pytest.mark.asyncio
    async def test_unresolvable_condition_fails_step(self, make_supervisor, make_definition, executor):
        definition = make_definition(gated_steps())
        sup = make_supervisor(executor)

        run = await sup.arun(definition)

        assert run.status == RunStatus.FAILED
        assert run.find_step("approve").error_kind == "evaluation"


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_with_context_reopens_gate(self, make_supervisor, make_definition, executor):
        definition = make_definition(
            gated_steps({"escalate_to": "human"}), variables={"approved": False}
        )
        sup = make_supervisor(executor)
        blocked = await sup.arun(definition)

        await sup.resume_run(blocked.id, context={"approved": True})
        run = await sup.wait_for(blocked.id)

        assert run.status == RunStatus.COMPLETED
        assert run.find_step("approve").status == StepStatus.COMPLETED
        assert executor.attempts("build") == 1
        assert executor.attempts("deploy") == 1
        actions = [e.action for e in sup.audit.events(run_id=run.id)]
        assert actions == ["run", "resume"]

    @pytest.mark.asyncio
    async def test_resume_with_skip(self, make_supervisor, make_definition, executor):
        definition = make_definition(
            gated_steps({"escalate_to": "human"}), variables={"approved": False}
        )
        sup = make_supervisor(executor)
        blocked = await sup.arun(definition)

        await sup.resume_run(blocked.id, skip=True)
        run = await sup.wait_for(blocked.id)

        assert run.status == RunStatus.COMPLETED
        assert run.find_step("approve").status == StepStatus.SKIPPED
        assert executor.attempts("deploy") == 1

    @pytest.mark.asyncio
    async def test_resume_retries_blocked_agent_step(self, make_supervisor, make_definition, scripted):
        executor = scripted({"build": [ExecutorFailure("broken"), "fixed"]})
        definition = make_definition([
            {"id": "build", "agent": "dev", "on_fail": {"escalate_to": "human"}},
        ])
        sup = make_supervisor(executor)
        blocked = await sup.arun(definition)
        assert blocked.status == RunStatus.BLOCKED

        await sup.resume_run(blocked.id)
        run = await sup.wait_for(blocked.id)

        assert run.status == RunStatus.COMPLETED
        assert run.find_step("build").escalation is None
        assert run.context["build"] == "fixed"

    @pytest.mark.asyncio
    async def test_resume_interrupted_run(self, make_supervisor, make_definition, executor):
        definition = make_definition([{"id": "plan", "agent": "dev"}, {"id": "build", "agent": "dev"}])
        sup = make_supervisor(executor)

        crashed = WorkflowRun(workflow_id=definition.id, workflow_version=1, status=RunStatus.RUNNING)
        crashed.context = build_seed(definition, crashed)
        crashed.context["plan"] = "earlier output"
        crashed.current_step = "build"
        done = crashed.step_run_for("plan")
        done.status = StepStatus.COMPLETED
        interrupted = crashed.step_run_for("build")
        interrupted.status = StepStatus.RUNNING
        interrupted.retries = 1
        await sup.repository.save_definition_snapshot(crashed.id, definition)
        await sup.repository.save_checkpoint(crashed)

        await sup.resume_run(crashed.id)
        run = await sup.wait_for(crashed.id)

        assert run.status == RunStatus.COMPLETED
        assert executor.attempts("plan") == 0
        assert executor.attempts("build") == 1
        assert run.find_step("build").retries == 1

    @pytest.mark.asyncio
    async def test_terminal_run_cannot_resume(self, make_supervisor, make_definition, executor):
        sup = make_supervisor(executor)
        run = await sup.arun(make_definition([{"id": "build", "agent": "dev"}]))

        with pytest.raises(RunStateError):
            await sup.resume_run(run.id)

    @pytest.mark.asyncio
    async def test_resume_pins_definition_version(self, make_supervisor, make_definition, executor):
        store = InMemoryDefinitionStore()
        sup = make_supervisor(executor, definitions=store)
        v1 = make_definition(gated_steps({"escalate_to": "human"}), variables={"approved": False})
        await sup.publish(v1)

        started = await sup.start_run("test-flow")
        await sup.wait_for(started.id)
        await sup.publish(make_definition([{"id": "other", "agent": "dev"}], version=2))

        await sup.resume_run(started.id, context={"approved": True})
        run = await sup.wait_for(started.id)

        assert run.workflow_version == 1
        assert run.status == RunStatus.COMPLETED
        assert executor.attempts("other") == 0

        fresh = await sup.arun("test-flow")
        assert fresh.workflow_version == 2
        assert executor.attempts("other") == 1


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_active_run(self, make_supervisor, make_definition, scripted):
        executor = scripted(delays={"build": 5.0})
        sup = make_supervisor(executor)
        started = await sup.start_run(make_definition([{"id": "build", "agent": "dev"}]))
        await asyncio.sleep(0.05)

        run = await sup.cancel_run(started.id)

        assert run.status == RunStatus.FAILED
        assert run.error == CANCELLED_MESSAGE
        assert run.steps[0].status == StepStatus.FAILED
        assert run.steps[0].error_kind == "cancelled"
        assert executor.cancelled == ["build"]
        assert executor.cleaned
        assert sup.active_runs == []
        stored = await sup.repository.load_checkpoint(started.id)
        assert stored.status == RunStatus.FAILED
        assert "cancel" in [e.action for e in sup.audit.events(run_id=run.id)]

    @pytest.mark.asyncio
    async def test_cancel_blocked_run(self, make_supervisor, make_definition, executor):
        definition = make_definition(gated_steps({"escalate_to": "human"}), variables={"approved": False})
        sup = make_supervisor(executor)
        blocked = await sup.arun(definition)

        run = await sup.cancel_run(blocked.id)

        assert run.status == RunStatus.FAILED
        assert run.error == CANCELLED_MESSAGE

    @pytest.mark.asyncio
    async def test_cancel_finished_run_rejected(self, make_supervisor, make_definition, executor):
        sup = make_supervisor(executor)
        run = await sup.arun(make_definition([{"id": "build", "agent": "dev"}]))

        with pytest.raises(RunStateError):
            await sup.cancel_run(run.id)


class TestAdmission:
    @pytest.mark.asyncio
    async def test_concurrent_run_limit(self, make_supervisor, make_definition, scripted):
        config = EngineConfig.model_validate({
            "storage": {"backend": "memory"},
            "limits": {"max_concurrent_runs": 1},
        })
        executor = scripted(delays={"build": 5.0})
        sup = make_supervisor(executor, config=config)
        definition = make_definition([{"id": "build", "agent": "dev"}])

        first = await sup.start_run(definition)
        with pytest.raises(ConcurrencyLimitError):
            await sup.start_run(definition)

        await sup.cancel_run(first.id)
        assert sup.active_runs == []

    @pytest.mark.asyncio
    async def test_execute_permission_required(self, make_supervisor, make_definition, executor):
        sup = make_supervisor(executor)
        sup.acl.set(WorkflowACL(workflow_id="test-flow", owner="alice"))
        definition = make_definition([{"id": "build", "agent": "dev"}])

        with pytest.raises(PermissionDenied):
            await sup.start_run(definition, user_id="bob")
        assert await sup.list_runs() == []

        run = await sup.arun(definition, user_id="alice")
        assert run.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_publish_requires_edit_permission(self, make_supervisor, make_definition, executor):
        sup = make_supervisor(executor)
        await sup.publish(make_definition([{"id": "build", "agent": "dev"}]), user_id="alice")
        sup.acl.set(WorkflowACL(workflow_id="test-flow", owner="alice"))

        with pytest.raises(PermissionDenied):
            await sup.publish(make_definition([{"id": "build", "agent": "dev"}], version=2), user_id="bob")


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_runs_filters(self, make_supervisor, make_definition, scripted):
        executor = scripted({"bad": ExecutorFailure("no")})
        sup = make_supervisor(executor)
        good = make_definition([{"id": "build", "agent": "dev"}])
        bad = make_definition([{"id": "bad", "agent": "dev"}], id="bad-flow")

        await sup.arun(good, task_id="T-1")
        await sup.arun(good, task_id="T-2")
        await sup.arun(bad)

        assert len(await sup.list_runs()) == 3
        assert len(await sup.list_runs(workflow_id="test-flow")) == 2
        assert len(await sup.list_runs(status="failed")) == 1
        assert [r.task_id for r in await sup.list_runs(task_id="T-2")] == ["T-2"]
        assert len(await sup.list_runs(limit=1)) == 1

    def test_stats(self):
        now = utcnow()
        done = WorkflowRun(workflow_id="a", workflow_version=1, status=RunStatus.COMPLETED)
        done.started_at = now - timedelta(seconds=10)
        done.completed_at = now
        failed = WorkflowRun(workflow_id="a", workflow_version=1, status=RunStatus.FAILED)
        blocked = WorkflowRun(workflow_id="b", workflow_version=1, status=RunStatus.BLOCKED)

        stats = RunSupervisor.stats([done, failed, blocked])

        assert stats["total"] == 3
        assert stats["by_status"]["blocked"] == 1
        assert stats["success_rate"] == 0.5
        assert stats["mean_duration_seconds"] == pytest.approx(10.0)
        assert stats["by_workflow"]["a"] == {"total": 2, "completed": 1, "failed": 1}

    def test_stats_empty(self):
        stats = RunSupervisor.stats([])
        assert stats["total"] == 0
        assert stats["success_rate"] == 0.0
        assert stats["mean_duration_seconds"] is None
