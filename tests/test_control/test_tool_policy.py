"""Tests for role-based tool policies."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from workforge.config.schema import WorkflowAgent
from workforge.control.tool_policy import ToolPolicy, ToolPolicyRegistry


@pytest.fixture
def registry():
    return ToolPolicyRegistry()


class TestToolPolicy:
    def test_denied_beats_allowed_all(self):
        policy = ToolPolicy(role="custom", allowed=["*"], denied=["exec"])
        assert not policy.is_tool_allowed("exec")
        assert policy.is_tool_allowed("Write")

    def test_overlap_rejected(self):
        with pytest.raises(ValidationError, match="both allowed and denied"):
            ToolPolicy(role="custom", allowed=["Read"], denied=["Read"])

    def test_role_normalised(self):
        assert ToolPolicy(role="  Tester ").role == "tester"

    def test_filter_tools(self):
        policy = ToolPolicy(role="custom", allowed=["Read", "exec"])
        assert policy.filter_tools(["Read", "Write", "exec"]) == ["Read", "exec"]

    def test_unrestricted_filter_is_empty(self):
        assert ToolPolicy(role="custom").to_filter() == {}

    def test_narrowing_never_lifts_denial(self):
        policy = ToolPolicy(role="custom", allowed=["*"], denied=["exec"])
        narrowed = policy.narrowed_to(["Read", "exec"])
        assert narrowed.allowed == ["Read"]
        assert narrowed.denied == ["exec"]


class TestRegistry:
    @pytest.mark.parametrize(
        "role,tool,allowed",
        [
            ("planner", "Write", False),
            ("planner", "Read", True),
            ("developer", "exec", True),
            ("reviewer", "exec", True),
            ("reviewer", "Edit", False),
            ("orchestrator", "exec", False),
            ("intern", "browser", False),
        ],
    )
    def test_default_policies(self, registry, role, tool, allowed):
        assert registry.get(role).is_tool_allowed(tool) is allowed

    def test_unknown_role_unrestricted(self, registry):
        policy = registry.policy_for_agent(WorkflowAgent(id="x", role="wizard"))
        assert policy.is_tool_allowed("exec")
        assert policy.to_filter() == {}

    def test_agent_tools_narrow_role(self, registry):
        agent = WorkflowAgent(id="r", role="reviewer", tools=["Read", "Write"])
        policy = registry.policy_for_agent(agent)
        assert policy.allowed == ["Read"]
        assert not policy.is_tool_allowed("Write")

    def test_override_default(self):
        registry = ToolPolicyRegistry([ToolPolicy(role="developer", allowed=["Read"])])
        assert not registry.get("developer").is_tool_allowed("exec")

    def test_protected_roles_cannot_be_deleted(self, registry):
        with pytest.raises(ValueError, match="Cannot delete default policy"):
            registry.delete("developer")

    def test_custom_role_lifecycle(self, registry):
        registry.save(ToolPolicy(role="auditor", allowed=["Read"]))
        assert registry.get("Auditor") is not None
        registry.delete("auditor")
        assert registry.get("auditor") is None
        with pytest.raises(KeyError):
            registry.delete("auditor")

    def test_policies_sorted(self, registry):
        roles = [p.role for p in registry.policies()]
        assert roles == sorted(roles)
