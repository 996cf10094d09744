"""Tests for the run context store."""

from __future__ import annotations

from datetime import datetime

import pytest

from workforge.core.context import ContextStore, build_seed, to_jsonable
from workforge.core.models import StepStatus, WorkflowRun


@pytest.fixture
def definition(make_definition):
    return make_definition(
        [{"id": "plan", "agent": "dev"}, {"id": "build", "agent": "dev"}],
        variables={"feature": "login", "nested": {"a": 1}},
    )


@pytest.fixture
def run(definition):
    run = WorkflowRun(workflow_id=definition.id, workflow_version=definition.version)
    run.context = build_seed(definition, run, task={"id": "T-1"}, seed={"feature": "signup"})
    return run


class TestSeed:
    def test_sources_layered(self, run):
        assert run.context["feature"] == "signup"
        assert run.context["nested"] == {"a": 1}
        assert run.context["task"] == {"id": "T-1"}
        assert run.context["workflow"]["id"] == "test-flow"
        assert run.context["run"]["id"] == run.id
        assert run.context["_sessions"] == {}

    def test_reserved_seed_keys_overwritten(self, definition):
        run = WorkflowRun(workflow_id=definition.id, workflow_version=1)
        context = build_seed(definition, run, seed={"workflow": "mine"})
        assert context["workflow"]["name"] == "Test Flow"

    def test_variables_not_shared(self, definition):
        first = WorkflowRun(workflow_id=definition.id, workflow_version=1)
        first.context = build_seed(definition, first)
        first.context["nested"]["a"] = 99
        assert definition.variables["nested"]["a"] == 1


class TestContextStore:
    def test_merge_normalises_values(self, run):
        ContextStore(run).merge({"when": datetime(2024, 1, 1)})
        assert isinstance(run.context["when"], str)

    def test_snapshot_is_detached(self, run):
        snapshot = ContextStore(run).snapshot()
        snapshot["nested"]["a"] = 42
        assert run.context["nested"]["a"] == 1

    def test_steps_view_only_completed(self, run):
        store = ContextStore(run)
        store.set_step_output("plan", {"title": "x"})
        run.step_run_for("plan").status = StepStatus.COMPLETED
        store.set_step_output("build", "partial")
        run.step_run_for("build").status = StepStatus.FAILED

        view = store.steps_view()
        assert set(view) == {"plan"}
        assert view["plan"]["output"] == {"title": "x"}

    def test_minimal_view(self, run):
        view = ContextStore(run).minimal_view("notes")
        assert set(view) == {"task", "workflow", "progress"}
        assert view["workflow"]["runId"] == run.id
        assert view["progress"] == "notes"

    def test_custom_view_limits_steps(self, run):
        store = ContextStore(run)
        for step_id in ("plan", "build"):
            store.set_step_output(step_id, step_id.upper())
            run.step_run_for(step_id).status = StepStatus.COMPLETED

        view = store.session_view("custom", include_outputs_from=["build"])
        assert set(view["steps"]) == {"build"}
        assert "feature" not in view

    def test_full_view(self, run):
        view = ContextStore(run).session_view("full", progress="p")
        assert view["feature"] == "signup"
        assert view["progress"] == "p"
        assert view["steps"] == {}

    def test_overlay_leaves_view_untouched(self):
        view = {"a": 1}
        merged = ContextStore.overlay(view, {"b": {"c": 2}})
        assert merged == {"a": 1, "b": {"c": 2}}
        assert view == {"a": 1}


def test_to_jsonable_stringifies_unknown_types():
    assert to_jsonable({"d": datetime(2024, 1, 1)})["d"].startswith("2024-01-01")
