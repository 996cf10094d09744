"""YAML loading and validation for workflow definitions and engine config."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import ValidationError

from workforge.config.defaults import merge_with_defaults
from workforge.config.schema import (
    EngineConfig,
    LimitsConfig,
    ParallelStep,
    WorkflowDefinition,
)
from workforge.errors import DefinitionError

CONFIG_ENV_VAR = "WORKFORGE_CONFIG"
DEFAULT_CONFIG_FILE = "workforge.yaml"


def format_validation_error(exc: ValidationError) -> str:
    lines = []
    for err in exc.errors():
        loc = " → ".join(str(p) for p in err["loc"])
        lines.append(f"  - {loc}: {err['msg']}" if loc else f"  - {err['msg']}")
    return "\n".join(lines)


def read_yaml(path: Union[str, Path]) -> Any:
    path = Path(path)
    if not path.exists():
        raise DefinitionError(f"File not found at '{path}'.")

    try:
        raw_text = path.read_text(encoding="utf-8")
    except PermissionError:
        raise DefinitionError(f"Permission denied reading '{path}'.")
    except OSError as e:
        raise DefinitionError(f"Error reading '{path}': {e}")

    try:
        return yaml.safe_load(raw_text)
    except yaml.YAMLError as e:
        if hasattr(e, "problem_mark"):
            mark = e.problem_mark
            raise DefinitionError(
                f"YAML syntax error in '{path}' on line {mark.line + 1}, "
                f"column {mark.column + 1}: {e.problem}"
            )
        raise DefinitionError(f"YAML syntax error in '{path}': {e}")


class DefinitionLoader:

    def __init__(self, limits: LimitsConfig | None = None):
        self.limits = limits or LimitsConfig()

    def load(self, path: Union[str, Path]) -> WorkflowDefinition:
        raw = read_yaml(path)
        if not isinstance(raw, dict):
            raise DefinitionError(
                f"Workflow file '{path}' must be a YAML mapping, got {type(raw).__name__}."
            )
        return self.validate(raw)

    def validate(self, data: dict) -> WorkflowDefinition:
        try:
            definition = WorkflowDefinition.model_validate(data)
        except ValidationError as e:
            raise DefinitionError(
                f"Workflow validation failed:\n{format_validation_error(e)}"
            ) from e
        self.check_limits(definition)
        return definition

    def check_limits(self, definition: WorkflowDefinition) -> None:
        limits = self.limits
        if len(definition.steps) > limits.max_steps:
            raise DefinitionError(
                f"Workflow '{definition.id}' exceeds maximum of {limits.max_steps} steps"
            )
        if len(definition.agents) > limits.max_agents:
            raise DefinitionError(
                f"Workflow '{definition.id}' exceeds maximum of {limits.max_agents} agents"
            )
        for agent in definition.agents:
            if agent.tools and len(agent.tools) > limits.max_tools_per_agent:
                raise DefinitionError(
                    f"Agent '{agent.id}' exceeds maximum of {limits.max_tools_per_agent} tools "
                    f"(has {len(agent.tools)})"
                )
        for step in definition.steps:
            if step.on_fail and step.on_fail.retry_delay_ms > limits.max_retry_delay_ms:
                raise DefinitionError(
                    f"Step '{step.id}' retry_delay_ms exceeds maximum of "
                    f"{limits.max_retry_delay_ms}ms"
                )
            if isinstance(step, ParallelStep) and len(step.parallel.steps) > limits.max_parallel_substeps:
                raise DefinitionError(
                    f"Parallel step '{step.id}' has {len(step.parallel.steps)} sub-steps, "
                    f"exceeding maximum of {limits.max_parallel_substeps}"
                )


def load_definition(path: Union[str, Path], limits: LimitsConfig | None = None) -> WorkflowDefinition:
    return DefinitionLoader(limits).load(path)


def load_engine_config(path: Optional[Union[str, Path]] = None) -> EngineConfig:
    """Load engine configuration.

    Falls back to the ``WORKFORGE_CONFIG`` environment variable, then to
    ``workforge.yaml`` in the current directory. A missing file yields the
    defaults.
    """
    config_path = Path(path or os.getenv(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILE))
    data: dict = {}
    if config_path.exists():
        raw = read_yaml(config_path)
        if raw is not None and not isinstance(raw, dict):
            raise DefinitionError(
                f"Configuration file '{config_path}' must be a YAML mapping, "
                f"got {type(raw).__name__}."
            )
        data = raw or {}
    elif path is not None:
        raise DefinitionError(f"Configuration file not found at '{config_path}'.")

    try:
        return EngineConfig.model_validate(merge_with_defaults(data))
    except ValidationError as e:
        raise DefinitionError(
            f"Configuration validation failed:\n{format_validation_error(e)}"
        ) from e
