"""Tests for failure classification."""

from __future__ import annotations

import pytest

from workforge.config.schema import EscalationPolicy, FailurePolicy
from workforge.control.policy import (
    Continue,
    Escalate,
    PolicyEngine,
    Redirect,
    Retry,
    RunFailed,
)
from workforge.core.models import StepRun, StepStatus


@pytest.fixture
def engine():
    return PolicyEngine(max_redirects=2, max_retry_delay_ms=1000)


def failed(retries=0, redirects=0, error="boom"):
    return StepRun(step_id="build", status=StepStatus.FAILED, retries=retries, redirects=redirects, error=error)


class TestClassify:
    def test_completed_continues(self, engine):
        step_run = StepRun(step_id="build", status=StepStatus.COMPLETED)
        assert engine.classify(step_run, FailurePolicy(retry=3)) == Continue()

    def test_no_policy_fails_run(self, engine):
        assert engine.classify(failed(), None) == RunFailed("boom")

    def test_retry_until_budget_spent(self, engine):
        policy = FailurePolicy(retry=2, retry_delay_ms=50)
        assert engine.classify(failed(retries=0), policy) == Retry(50)
        assert engine.classify(failed(retries=1), policy) == Retry(50)
        assert engine.classify(failed(retries=2), policy) == RunFailed("boom")

    def test_retry_delay_capped(self, engine):
        policy = FailurePolicy(retry=1, retry_delay_ms=60_000)
        assert engine.classify(failed(), policy) == Retry(1000)

    def test_redirect_after_retries(self, engine):
        policy = FailurePolicy(retry=1, retry_step="plan")
        assert engine.classify(failed(retries=1), policy) == Redirect("plan")

    def test_redirect_cap_falls_through_to_escalation(self, engine):
        policy = FailurePolicy(retry_step="plan", escalate_to="human", escalate_message="Stuck")
        assert engine.classify(failed(redirects=2), policy) == Escalate("human", "Stuck")

    def test_escalation_after_retries(self, engine):
        policy = FailurePolicy(retry=1, escalate_to="agent:fixer")
        outcome = engine.classify(failed(retries=1), policy)
        assert outcome == Escalate("agent:fixer", None)
        assert outcome.agent_id == "fixer"
        assert not outcome.exhausted

    def test_on_exhausted_when_nothing_else_applies(self, engine):
        policy = FailurePolicy(on_exhausted=EscalationPolicy(escalate_to="skip"))
        assert engine.classify(failed(), policy) == Escalate("skip", None, exhausted=True)

    def test_default_reason(self, engine):
        assert engine.classify(failed(error=None), FailurePolicy()) == RunFailed("Step 'build' failed")


class TestGateAndExhaustion:
    def test_open_gate(self, engine):
        assert engine.classify_gate(True, None, "{{ ok }}") == Continue()

    def test_closed_gate_without_policy(self, engine):
        assert engine.classify_gate(False, None, "{{ ok }}") == RunFailed("Gate condition not met: {{ ok }}")

    def test_closed_gate_escalates(self, engine):
        on_false = EscalationPolicy(escalate_to="human", escalate_message="Sign off")
        assert engine.classify_gate(False, on_false, "{{ ok }}") == Escalate("human", "Sign off")

    def test_exhausted_without_fallback(self, engine):
        assert engine.exhausted(None, "gave up") == RunFailed("gave up")
        assert engine.exhausted(FailurePolicy(), "gave up") == RunFailed("gave up")

    def test_human_target_has_no_agent(self):
        assert Escalate("human").agent_id is None
