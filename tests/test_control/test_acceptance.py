"""Tests for acceptance criteria."""

from __future__ import annotations

import pytest

from workforge.control.acceptance import check_criterion, validate_acceptance
from workforge.errors import AcceptanceError


class TestCheckCriterion:
    def test_substring(self):
        assert check_criterion("All tests pass", "Result: All tests pass", None)
        assert not check_criterion("All tests pass", "3 failures", None)

    def test_regex_with_flags(self):
        assert check_criterion("/status:\\s*done/i", "STATUS: DONE", None)
        assert not check_criterion("/status:\\s*done/", "STATUS: DONE", None)

    def test_unsupported_flags_match_literally(self):
        assert not check_criterion("/done/x", "done", None)
        assert check_criterion("/done/x", "it is /done/x", None)

    def test_invalid_regex_falls_back(self):
        assert check_criterion("/(unclosed/", "has (unclosed text", None)

    def test_equality_on_parsed_output(self):
        parsed = {"review": {"decision": "approved"}}
        assert check_criterion("output.review.decision == approved", "", parsed)
        assert check_criterion('output.review.decision == "approved"', "", parsed)
        assert not check_criterion("output.review.decision == rejected", "", parsed)

    def test_duration(self):
        assert check_criterion("duration < 5", "", None, duration=1.2)
        assert not check_criterion("duration < 1", "", None, duration=1.2)
        assert check_criterion("duration < 1", "", None)


class TestValidateAcceptance:
    def test_all_pass(self):
        validate_acceptance("build", ["ok", "/\\d+ files/"], "ok: 3 files", None)

    def test_first_failure_raised(self):
        with pytest.raises(AcceptanceError, match='criterion not met: "coverage"') as exc_info:
            validate_acceptance("build", ["ok", "coverage"], "ok", None)
        assert exc_info.value.kind == "acceptance"

    def test_no_criteria(self):
        validate_acceptance("build", [], "", None)
