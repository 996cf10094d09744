"""
Run and step status state machines.

Run lifecycle:
    pending  → running    (supervisor begins dispatching)
    pending  → failed     (rejected before the first dispatch)
    running  → blocked    (escalated to a human)
    running  → completed  (final step succeeded)
    running  → failed     (unrecoverable error or policy resolved to failure)
    blocked  → running    (resumed)
    blocked  → failed     (cancelled or resolved as failure)

Step lifecycle:
    pending   → running | skipped
    running   → completed | failed | skipped (cancelled) | pending (crash recovery)
    failed    → running   (retry in place)
    failed    → completed (escalation agent resolved the failure)
    failed    → skipped   (escalation resolved to skip)
    any terminal → pending (re-armed by a redirect or a human retry)

Invalid transitions raise InvalidTransitionError. They indicate an engine
bug and are fatal to the run.
"""

from __future__ import annotations

from workforge.core.models import RunStatus, StepRun, StepStatus, WorkflowRun, utcnow
from workforge.errors import InvalidTransitionError

RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset([RunStatus.RUNNING, RunStatus.FAILED]),
    RunStatus.RUNNING: frozenset([RunStatus.BLOCKED, RunStatus.COMPLETED, RunStatus.FAILED]),
    RunStatus.BLOCKED: frozenset([RunStatus.RUNNING, RunStatus.FAILED]),
    # Terminal states: no outgoing transitions
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}

STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset([StepStatus.RUNNING, StepStatus.SKIPPED]),
    StepStatus.RUNNING: frozenset([
        StepStatus.COMPLETED,
        StepStatus.FAILED,
        StepStatus.SKIPPED,
        StepStatus.PENDING,
    ]),
    StepStatus.FAILED: frozenset([
        StepStatus.RUNNING,
        StepStatus.COMPLETED,
        StepStatus.SKIPPED,
        StepStatus.PENDING,
    ]),
    StepStatus.COMPLETED: frozenset([StepStatus.PENDING]),
    StepStatus.SKIPPED: frozenset([StepStatus.PENDING]),
}


def can_transition_run(from_status: RunStatus, to_status: RunStatus) -> bool:
    return to_status in RUN_TRANSITIONS.get(from_status, frozenset())


def can_transition_step(from_status: StepStatus, to_status: StepStatus) -> bool:
    return to_status in STEP_TRANSITIONS.get(from_status, frozenset())


def validate_run_transition(from_status: RunStatus, to_status: RunStatus) -> None:
    if not can_transition_run(from_status, to_status):
        raise InvalidTransitionError(
            "run",
            from_status.value,
            to_status.value,
            frozenset(s.value for s in RUN_TRANSITIONS.get(from_status, frozenset())),
        )


def validate_step_transition(from_status: StepStatus, to_status: StepStatus) -> None:
    if not can_transition_step(from_status, to_status):
        raise InvalidTransitionError(
            "step",
            from_status.value,
            to_status.value,
            frozenset(s.value for s in STEP_TRANSITIONS.get(from_status, frozenset())),
        )


def transition_run(run: WorkflowRun, to_status: RunStatus, error: str | None = None) -> None:
    """Move ``run`` to ``to_status``, stamping ``completedAt`` on terminal states."""
    validate_run_transition(run.status, to_status)
    run.status = to_status
    if to_status in (RunStatus.COMPLETED, RunStatus.FAILED):
        run.completed_at = utcnow()
    if to_status == RunStatus.RUNNING:
        run.error = None
    if error is not None:
        run.error = error


def transition_step(step_run: StepRun, to_status: StepStatus, reset: bool = True) -> None:
    """Move ``step_run`` to ``to_status``, keeping timestamps consistent.

    Moving back to ``pending`` re-arms the record (counters cleared, redirects
    kept) unless ``reset`` is False, which only clears the in-flight marker.
    """
    validate_step_transition(step_run.status, to_status)
    now = utcnow()
    if to_status == StepStatus.PENDING:
        if reset:
            step_run.rearm()
        else:
            step_run.status = StepStatus.PENDING
            step_run.started_at = None
        return
    step_run.status = to_status
    if to_status == StepStatus.RUNNING:
        step_run.started_at = now
        step_run.completed_at = None
        step_run.duration = None
        return
    step_run.completed_at = now
    if step_run.started_at is not None:
        step_run.duration = (now - step_run.started_at).total_seconds()
