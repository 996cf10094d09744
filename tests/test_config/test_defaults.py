"""Tests for defaults merge."""

from __future__ import annotations

import copy

from workforge.config.defaults import DEFAULTS, deep_merge, merge_with_defaults


class TestDeepMerge:
    def test_defaults_not_mutated(self):
        """Merging should never modify DEFAULTS in place."""
        original = copy.deepcopy(DEFAULTS)
        merge_with_defaults({"storage": {"backend": "sqlite"}})
        assert DEFAULTS == original

    def test_override_nested_key(self):
        result = merge_with_defaults({"limits": {"max_redirects": 3}})
        assert result["limits"]["max_redirects"] == 3
        # Sibling keys keep their defaults
        assert result["limits"]["max_loop_iterations"] == 1000

    def test_override_replaces_non_dict(self):
        result = deep_merge({"a": {"b": 1}}, {"a": [1, 2]})
        assert result == {"a": [1, 2]}

    def test_override_not_aliased(self):
        override = {"observe": {"audit_path": "audit.jsonl"}, "extra": {"k": [1]}}
        result = merge_with_defaults(override)
        result["extra"]["k"].append(2)
        assert override["extra"]["k"] == [1]

    def test_repeated_merges_independent(self):
        r1 = merge_with_defaults({"storage": {"runs_dir": "a"}})
        r2 = merge_with_defaults({"storage": {"runs_dir": "b"}})
        assert r1["storage"]["runs_dir"] == "a"
        assert r2["storage"]["runs_dir"] == "b"
