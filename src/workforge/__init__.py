"""Workforge — durable multi-agent workflow execution engine."""

from workforge.config.loader import load_definition, load_engine_config
from workforge.config.schema import EngineConfig, WorkflowDefinition
from workforge.core.executor import (
    CallableExecutor,
    CancellationToken,
    ExecutionRequest,
    SimulatedExecutor,
    StepExecutionResult,
    StepExecutor,
)
from workforge.core.models import RunStatus, StepRun, StepStatus, WorkflowRun
from workforge.core.supervisor import RunSupervisor
from workforge.errors import (
    DefinitionError,
    EvaluationError,
    ExecutorFailure,
    WorkforgeError,
)
from workforge._version import __version__

__all__ = [
    "RunSupervisor",
    "WorkflowDefinition",
    "EngineConfig",
    "WorkflowRun",
    "StepRun",
    "RunStatus",
    "StepStatus",
    "StepExecutor",
    "SimulatedExecutor",
    "CallableExecutor",
    "ExecutionRequest",
    "StepExecutionResult",
    "CancellationToken",
    "WorkforgeError",
    "DefinitionError",
    "EvaluationError",
    "ExecutorFailure",
    "load_definition",
    "load_engine_config",
    "__version__",
]
