"""Tests for the audit log and its hash chain."""

from __future__ import annotations

import json

import pytest

from workforge.observe.audit import AuditLog


@pytest.fixture
def audit_path(tmp_path):
    return tmp_path / "audit" / "workflow-audit.jsonl"


class TestRecord:
    def test_fields(self):
        audit = AuditLog()
        event = audit.record("run", "deploy", user_id="alice", workflow_version=2, run_id="r1")
        assert event.action == "run"
        assert event.integrity == ""

        (stored,) = audit.events()
        assert stored.user_id == "alice"
        assert stored.workflow_version == 2

    def test_unknown_action(self):
        with pytest.raises(ValueError, match="audit action must be one of"):
            AuditLog().record("launch", "deploy")

    def test_filters(self):
        audit = AuditLog()
        audit.record("create", "a")
        audit.record("run", "a", run_id="r1")
        audit.record("run", "b", run_id="r2")

        assert len(audit.events(workflow_id="a")) == 2
        assert [e.workflow_id for e in audit.events(run_id="r2")] == ["b"]

    def test_chain_links_entries(self):
        audit = AuditLog()
        audit.record("create", "a")
        second = audit.record("edit", "a")
        assert second.integrity != ""


class TestPersistence:
    def test_appends_jsonl(self, audit_path):
        audit = AuditLog(audit_path)
        audit.record("create", "a", changes=[{"field": "workflow", "old_value": None, "new_value": "created"}])
        audit.record("delete", "a")

        lines = audit_path.read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[0])["workflowId"] == "a"
        assert "runId" not in json.loads(lines[1])

    def test_reopen_continues_chain(self, audit_path):
        AuditLog(audit_path).record("create", "a")
        reopened = AuditLog(audit_path)
        reopened.record("edit", "a")

        assert len(reopened.events()) == 2
        assert reopened.verify().valid


class TestVerify:
    def test_valid_chain(self, audit_path):
        audit = AuditLog(audit_path)
        for action in ("create", "run", "cancel"):
            audit.record(action, "a")
        result = audit.verify()
        assert result.valid
        assert result.entries == 3
        assert result.first_broken is None

    def test_edited_line_detected(self, audit_path):
        audit = AuditLog(audit_path)
        for user in ("alice", "bob", "carol"):
            audit.record("run", "a", user_id=user)

        lines = audit_path.read_text().splitlines()
        lines[1] = lines[1].replace("bob", "mallory")
        audit_path.write_text("\n".join(lines) + "\n")

        result = audit.verify()
        assert not result.valid
        assert result.first_broken == 2

    def test_removed_line_detected(self, audit_path):
        audit = AuditLog(audit_path)
        for action in ("create", "edit", "run"):
            audit.record(action, "a")

        lines = audit_path.read_text().splitlines()
        audit_path.write_text("\n".join([lines[0], lines[2]]) + "\n")

        assert audit.verify().first_broken == 1

    def test_garbage_line(self, audit_path):
        audit = AuditLog(audit_path)
        audit.record("create", "a")
        with audit_path.open("a") as f:
            f.write("not json\n")
        assert audit.verify().first_broken == 1

    def test_in_memory(self):
        audit = AuditLog()
        audit.record("create", "a")
        audit.record("run", "a")
        assert audit.verify().valid
