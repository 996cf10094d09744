"""Exception hierarchy for the workflow engine."""

from __future__ import annotations


class WorkforgeError(Exception):
    pass


class DefinitionError(WorkforgeError):
    """A workflow definition is missing or malformed. Fatal before a run starts."""


class EvaluationError(WorkforgeError):
    """A template or condition could not be resolved against the run context."""

    kind = "evaluation"


class ExecutorFailure(WorkforgeError):
    """The step executor reported that it could not produce an output."""

    def __init__(self, message: str, kind: str = "executor"):
        self.kind = kind
        super().__init__(message)


class StepTimeoutError(ExecutorFailure):

    def __init__(self, message: str):
        super().__init__(message, kind="timeout")


class AcceptanceError(ExecutorFailure):

    def __init__(self, message: str):
        super().__init__(message, kind="acceptance")


class PermissionDenied(WorkforgeError, PermissionError):
    """ACL check failed. Never retried."""


class CorruptCheckpointError(WorkforgeError):
    """A persisted run could not be read back."""

    def __init__(self, run_id: str, reason: str):
        self.run_id = run_id
        self.reason = reason
        super().__init__(f"Checkpoint for run '{run_id}' is unreadable: {reason}")


class RunNotFoundError(WorkforgeError, KeyError):

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(run_id)

    def __str__(self) -> str:
        return f"Run '{self.run_id}' not found"


class RunStateError(WorkforgeError):
    """Operation not allowed while the run is in its current status."""


class ConcurrencyLimitError(WorkforgeError):
    pass


class InvalidTransitionError(WorkforgeError, ValueError):

    def __init__(self, entity: str, from_status: str, to_status: str, allowed: frozenset[str]):
        self.entity = entity
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid {entity} transition: '{from_status}' -> '{to_status}'. "
            f"Valid transitions from '{from_status}': {sorted(allowed)}"
        )


def error_kind(exc: BaseException) -> str:
    """Classify a step-level exception for the StepRun record."""
    kind = getattr(exc, "kind", None)
    if isinstance(kind, str):
        return kind
    return "executor"
