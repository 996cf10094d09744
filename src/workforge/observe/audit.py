"""Append-only workflow audit log with a SHA-256 hash chain.

Each line is one JSON object. Its ``integrity`` field holds the hash of the
previous line, so editing or dropping any line breaks ``verify()``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

_log = logging.getLogger(__name__)

AUDIT_ACTIONS = ("create", "edit", "delete", "run", "resume", "cancel")


def _sha256(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


class WorkflowAuditEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    user_id: str = Field(alias="userId")
    action: str
    workflow_id: str = Field(alias="workflowId")
    workflow_version: Optional[int] = Field(default=None, alias="workflowVersion")
    run_id: Optional[str] = Field(default=None, alias="runId")
    changes: Optional[list[dict[str, Any]]] = None
    integrity: str = ""


@dataclass
class VerifyResult:
    valid: bool
    entries: int
    first_broken: Optional[int] = None


class AuditLog:
    """Audit trail kept in memory and, when ``path`` is set, appended to a JSONL file."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self._lines: list[str] = []
        self._lock = threading.Lock()
        self._last_hash = ""
        if self.path and self.path.exists():
            existing = [l for l in self.path.read_text(encoding="utf-8").splitlines() if l]
            self._lines = existing
            if existing:
                self._last_hash = _sha256(existing[-1])

    def record(
        self,
        action: str,
        workflow_id: str,
        user_id: str = "system",
        workflow_version: int | None = None,
        run_id: str | None = None,
        changes: list[dict[str, Any]] | None = None,
    ) -> WorkflowAuditEvent:
        if action not in AUDIT_ACTIONS:
            raise ValueError(f"audit action must be one of {AUDIT_ACTIONS}, got '{action}'")

        with self._lock:
            event = WorkflowAuditEvent(
                user_id=user_id,
                action=action,
                workflow_id=workflow_id,
                workflow_version=workflow_version,
                run_id=run_id,
                changes=changes,
                integrity=self._last_hash,
            )
            line = json.dumps(
                event.model_dump(by_alias=True, exclude_none=True), default=str
            )
            if self.path is not None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            self._lines.append(line)
            self._last_hash = _sha256(line)
        _log.debug("Audit event recorded", extra={"action": action, "workflow_id": workflow_id})
        return event

    def events(
        self,
        workflow_id: str | None = None,
        run_id: str | None = None,
    ) -> list[WorkflowAuditEvent]:
        with self._lock:
            lines = list(self._lines)
        events = [WorkflowAuditEvent.model_validate_json(line) for line in lines]
        if workflow_id is not None:
            events = [e for e in events if e.workflow_id == workflow_id]
        if run_id is not None:
            events = [e for e in events if e.run_id == run_id]
        return events

    def verify(self) -> VerifyResult:
        if self.path is not None and self.path.exists():
            lines = [l for l in self.path.read_text(encoding="utf-8").splitlines() if l]
        else:
            with self._lock:
                lines = list(self._lines)

        previous = ""
        for index, line in enumerate(lines):
            try:
                integrity = json.loads(line).get("integrity", "")
            except json.JSONDecodeError:
                return VerifyResult(valid=False, entries=len(lines), first_broken=index)
            if integrity != previous:
                return VerifyResult(valid=False, entries=len(lines), first_broken=index)
            previous = _sha256(line)
        return VerifyResult(valid=True, entries=len(lines))
