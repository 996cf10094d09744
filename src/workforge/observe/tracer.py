"""Execution tracing for observability and postmortems."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class EventType(str, Enum):
    RUN_START = "run_start"
    RUN_STATUS = "run_status"
    RUN_END = "run_end"
    STEP_START = "step_start"
    STEP_END = "step_end"
    RETRY = "retry"
    REDIRECT = "redirect"
    ESCALATION = "escalation"
    LOOP_ITERATION = "loop_iteration"
    PARALLEL_SUBSTEP = "parallel_substep"
    GATE_EVALUATED = "gate_evaluated"
    CHECKPOINT = "checkpoint"
    ERROR = "error"


@dataclass
class TraceEvent:
    event_type: EventType
    timestamp: float = field(default_factory=time.time)
    run_id: str = ""
    step_id: str = ""
    agent_name: str = ""
    data: dict = field(default_factory=dict)
    duration_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "run_id": self.run_id,
            "step_id": self.step_id,
            "agent_name": self.agent_name,
            "data": self.data,
            "duration_ms": self.duration_ms,
        }


class Tracer:

    def __init__(self):
        self.events: list[TraceEvent] = []
        self.start_time: float = 0.0
        self._lock = threading.Lock()

    def record(self, event: TraceEvent):
        with self._lock:
            if not self.start_time:
                self.start_time = event.timestamp
            self.events.append(event)

    def start(self):
        self.start_time = time.time()

    def elapsed(self) -> float:
        if self.start_time:
            return time.time() - self.start_time
        return 0.0

    def for_run(self, run_id: str) -> list[TraceEvent]:
        with self._lock:
            return [e for e in self.events if e.run_id == run_id]

    def get_timeline(self, run_id: str | None = None) -> list[dict]:
        events = self.for_run(run_id) if run_id else list(self.events)
        return [e.to_dict() for e in events]

    def get_step_timings(self, run_id: str | None = None) -> dict:
        """Per step: attempts, retries, total and last duration, final outcome."""
        events = self.for_run(run_id) if run_id else list(self.events)
        by_step: dict[str, dict] = {}

        for e in events:
            if not e.step_id:
                continue
            if e.step_id not in by_step:
                by_step[e.step_id] = {
                    "attempts": 0,
                    "retries": 0,
                    "total_ms": 0.0,
                    "last_ms": 0.0,
                    "status": None,
                }
            entry = by_step[e.step_id]
            if e.event_type == EventType.STEP_START:
                entry["attempts"] += 1
            elif e.event_type == EventType.STEP_END:
                entry["total_ms"] += e.duration_ms
                entry["last_ms"] = e.duration_ms
                entry["status"] = e.data.get("status")
            elif e.event_type == EventType.RETRY:
                entry["retries"] += 1

        return by_step

    def get_run_summary(self, run_id: str) -> dict:
        """Counts of the control-flow events of one run and its last known status."""
        counted = {
            EventType.RETRY: "retries",
            EventType.REDIRECT: "redirects",
            EventType.ESCALATION: "escalations",
            EventType.CHECKPOINT: "checkpoints",
            EventType.ERROR: "errors",
        }
        summary: dict = {name: 0 for name in counted.values()}
        summary["status"] = None
        summary["wall_ms"] = 0.0
        events = self.for_run(run_id)
        for e in events:
            if e.event_type in counted:
                summary[counted[e.event_type]] += 1
            if e.event_type in (EventType.RUN_STATUS, EventType.RUN_END):
                summary["status"] = e.data.get("status", summary["status"])
        if events:
            summary["wall_ms"] = (events[-1].timestamp - events[0].timestamp) * 1000
        return summary

    def export_json(self, path: str, run_id: str | None = None):
        data = {
            "start_time": self.start_time,
            "duration": self.elapsed(),
            "events": self.get_timeline(run_id),
            "step_timings": self.get_step_timings(run_id),
        }
        if run_id:
            data["summary"] = self.get_run_summary(run_id)
        out_path = Path(path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(json.dumps(data, indent=2, default=str))
