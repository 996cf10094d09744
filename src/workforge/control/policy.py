"""Failure and escalation policy engine.

Turns a finished step attempt into the next scheduling decision. Pure and
synchronous: sleeping, dispatching and persisting are the caller's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from workforge.config.schema import EscalationPolicy, FailurePolicy
from workforge.core.models import StepRun, StepStatus

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Continue:
    pass


@dataclass(frozen=True)
class Retry:
    delay_ms: int = 0


@dataclass(frozen=True)
class Redirect:
    step_id: str


@dataclass(frozen=True)
class Escalate:
    target: str
    message: Optional[str] = None
    exhausted: bool = False  # came from on_exhausted

    @property
    def agent_id(self) -> str | None:
        if self.target.startswith("agent:"):
            return self.target[len("agent:"):]
        return None


@dataclass(frozen=True)
class RunFailed:
    reason: str


Outcome = Union[Continue, Retry, Redirect, Escalate, RunFailed]


class PolicyEngine:

    def __init__(self, max_redirects: int = 10, max_retry_delay_ms: int = 300_000):
        self.max_redirects = max_redirects
        self.max_retry_delay_ms = max_retry_delay_ms

    def classify(self, step_run: StepRun, policy: FailurePolicy | None) -> Outcome:
        """Rules, first match wins: completed, retry, redirect, escalate, on_exhausted, fail."""
        if step_run.status == StepStatus.COMPLETED:
            return Continue()

        reason = step_run.error or f"Step '{step_run.step_id}' failed"
        if policy is None:
            return RunFailed(reason)

        if step_run.retries < policy.retry:
            return Retry(min(policy.retry_delay_ms, self.max_retry_delay_ms))

        if policy.retry_step:
            if step_run.redirects < self.max_redirects:
                return Redirect(policy.retry_step)
            _log.warning(
                "Redirect limit reached for step '%s' (%d)", step_run.step_id, self.max_redirects,
                extra={"step_id": step_run.step_id},
            )

        if policy.escalate_to:
            return Escalate(policy.escalate_to, policy.escalate_message)

        return self.exhausted(policy, reason)

    def classify_gate(self, passed: bool, on_false: EscalationPolicy | None, condition: str) -> Outcome:
        if passed:
            return Continue()
        if on_false is None:
            return RunFailed(f"Gate condition not met: {condition}")
        return Escalate(on_false.escalate_to, on_false.escalate_message)

    def exhausted(self, policy: FailurePolicy | None, reason: str) -> Outcome:
        """Fallback once the primary escalation could not resolve the failure."""
        if policy is not None and policy.on_exhausted is not None:
            return Escalate(
                policy.on_exhausted.escalate_to,
                policy.on_exhausted.escalate_message,
                exhausted=True,
            )
        return RunFailed(reason)
