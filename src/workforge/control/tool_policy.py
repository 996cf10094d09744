"""Role-based tool access policies handed to the step executor."""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from workforge.config.schema import WorkflowAgent

_log = logging.getLogger(__name__)

MAX_POLICIES = 50
MAX_TOOLS_PER_POLICY = 100
ALL_TOOLS = "*"


class ToolPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    role: str = Field(min_length=1, max_length=50)
    allowed: list[str] = Field(default_factory=lambda: [ALL_TOOLS], max_length=MAX_TOOLS_PER_POLICY)
    denied: list[str] = Field(default_factory=list, max_length=MAX_TOOLS_PER_POLICY)
    description: str = Field(default="", max_length=500)

    @field_validator("role")
    @classmethod
    def normalize_role(cls, v: str) -> str:
        return v.strip().lower()

    @model_validator(mode="after")
    def no_overlap(self) -> "ToolPolicy":
        overlap = sorted(set(self.allowed) & set(self.denied))
        if overlap:
            raise ValueError(f"Tools cannot be both allowed and denied: {', '.join(overlap)}")
        return self

    @property
    def allows_all(self) -> bool:
        return ALL_TOOLS in self.allowed

    def is_tool_allowed(self, tool_name: str) -> bool:
        if tool_name in self.denied:
            return False
        if self.allows_all:
            return True
        return tool_name in self.allowed

    def filter_tools(self, tool_names: list[str]) -> list[str]:
        return [t for t in tool_names if self.is_tool_allowed(t)]

    def narrowed_to(self, tools: list[str]) -> "ToolPolicy":
        """Restrict ``allowed`` to ``tools`` without ever lifting a denial."""
        allowed = [t for t in tools if self.is_tool_allowed(t)]
        return ToolPolicy(
            role=self.role,
            allowed=allowed,
            denied=list(self.denied),
            description=self.description,
        )

    def to_filter(self) -> dict[str, list[str]]:
        """Compact allow/deny filter; an empty dict means unrestricted."""
        result: dict[str, list[str]] = {}
        if self.denied:
            result["denied"] = list(self.denied)
        if not self.allows_all:
            result["allowed"] = list(self.allowed)
        return result


DEFAULT_POLICIES: list[ToolPolicy] = [
    ToolPolicy(
        role="planner",
        allowed=["Read", "web_search", "web_fetch", "browser", "image", "nodes"],
        denied=["Write", "Edit", "exec", "message"],
        description="Read-only access for planning and analysis.",
    ),
    ToolPolicy(
        role="developer",
        allowed=[ALL_TOOLS],
        description="Full access to all tools.",
    ),
    ToolPolicy(
        role="reviewer",
        allowed=["Read", "exec", "web_search", "web_fetch", "browser", "image", "nodes"],
        denied=["Write", "Edit", "message"],
        description="Read and execute access for code review.",
    ),
    ToolPolicy(
        role="tester",
        allowed=["Read", "exec", "browser", "web_search", "web_fetch", "image", "nodes"],
        denied=["Write", "Edit", "message"],
        description="Read, execute and browser access for testing.",
    ),
    ToolPolicy(
        role="deployer",
        allowed=[ALL_TOOLS],
        description="Full access for deployment operations.",
    ),
    ToolPolicy(
        role="researcher",
        allowed=["Read", "web_search", "web_fetch", "browser", "image", "memory_search", "memory_get"],
        denied=["Write", "Edit", "exec", "message", "cron", "nodes"],
        description="Research-focused access.",
    ),
    ToolPolicy(
        role="orchestrator",
        allowed=[
            "Read", "web_search", "web_fetch", "browser", "image", "message", "cron",
            "memory_search", "memory_get", "sessions_spawn", "sessions_send",
            "sessions_list", "sessions_history", "session_status", "nodes",
        ],
        denied=["Write", "Edit", "exec"],
        description="Coordinates other agents; delegates writing and execution.",
    ),
    ToolPolicy(
        role="content-writer",
        allowed=[
            "Read", "Write", "Edit", "web_search", "web_fetch", "browser", "image",
            "memory_search", "memory_get", "tts",
        ],
        denied=["exec", "message", "cron", "nodes"],
        description="Content creation access.",
    ),
    ToolPolicy(
        role="intern",
        allowed=["Read", "web_search", "web_fetch", "image", "memory_search", "memory_get"],
        denied=["Write", "Edit", "exec", "browser", "message", "cron", "nodes", "tts"],
        description="Observation-only access.",
    ),
]

PROTECTED_ROLES = frozenset({"planner", "developer", "reviewer", "tester", "deployer"})


class ToolPolicyRegistry:
    """Role name → ToolPolicy. Unknown roles are unrestricted."""

    def __init__(self, policies: list[ToolPolicy] | None = None, include_defaults: bool = True):
        self._policies: dict[str, ToolPolicy] = {}
        if include_defaults:
            for policy in DEFAULT_POLICIES:
                self._policies[policy.role] = policy
        for policy in policies or []:
            self._policies[policy.role] = policy

    def get(self, role: str) -> ToolPolicy | None:
        return self._policies.get(role.strip().lower())

    def policies(self) -> list[ToolPolicy]:
        return sorted(self._policies.values(), key=lambda p: p.role)

    def save(self, policy: ToolPolicy) -> None:
        if policy.role not in self._policies and len(self._policies) >= MAX_POLICIES:
            raise ValueError(
                f"Maximum policy limit ({MAX_POLICIES}) reached. "
                "Delete unused policies before creating new ones."
            )
        self._policies[policy.role] = policy
        _log.info("Tool policy saved", extra={"role": policy.role})

    def delete(self, role: str) -> None:
        normalized = role.strip().lower()
        if normalized in PROTECTED_ROLES:
            raise ValueError(f"Cannot delete default policy: {normalized}")
        if self._policies.pop(normalized, None) is None:
            raise KeyError(f"No tool policy for role '{normalized}'")

    def policy_for_agent(self, agent: WorkflowAgent) -> ToolPolicy:
        policy = self.get(agent.role)
        if policy is None:
            _log.warning(
                "No tool policy for role '%s'; allowing all tools", agent.role,
                extra={"agent": agent.id},
            )
            policy = ToolPolicy(role=agent.role)
        if agent.tools is not None:
            policy = policy.narrowed_to(agent.tools)
        return policy
