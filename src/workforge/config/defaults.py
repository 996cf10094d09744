"""Default engine configuration values."""

from __future__ import annotations

import copy

DEFAULTS = {
    "storage": {
        "backend": "file",
        "runs_dir": ".workforge/runs",
        "workflows_dir": ".workforge/workflows",
        "sqlite_path": ".workforge/runs.db",
    },
    "limits": {
        "max_concurrent_runs": 10,
        "max_parallel_substeps": 50,
        "max_loop_iterations": 1000,
        "max_redirects": 10,
        "max_retry_delay_ms": 300_000,
        "max_steps": 50,
        "max_agents": 20,
        "max_tools_per_agent": 50,
        "max_progress_bytes": 10 * 1024 * 1024,
    },
    "defaults": {
        "step_timeout": 600.0,
    },
    "observe": {
        "trace": True,
        "log_level": "info",
        "log_format": "pretty",
        "audit_path": None,
    },
}


def merge_with_defaults(config: dict) -> dict:
    return deep_merge(DEFAULTS, config)


def deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge ``override`` into ``base``. Neither input is modified."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged
