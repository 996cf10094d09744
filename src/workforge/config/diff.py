"""Field-level comparison of two workflow definitions."""

from __future__ import annotations

from typing import Any

from workforge.config.schema import WorkflowDefinition


def diff_definitions(
    old: WorkflowDefinition | None,
    new: WorkflowDefinition,
) -> list[dict[str, Any]]:
    if old is None:
        return [{"field": "workflow", "old_value": None, "new_value": "created"}]

    changes: list[dict[str, Any]] = []
    for name in ("name", "description", "version"):
        before, after = getattr(old, name), getattr(new, name)
        if before != after:
            changes.append({"field": name, "old_value": before, "new_value": after})

    if old.config != new.config:
        changes.append({
            "field": "config",
            "old_value": old.config.model_dump(),
            "new_value": new.config.model_dump(),
        })

    # Collections are summarised by size; the full payload lives in the definition store.
    if old.agents != new.agents:
        changes.append({
            "field": "agents",
            "old_value": f"{len(old.agents)} agents",
            "new_value": f"{len(new.agents)} agents",
        })
    if old.steps != new.steps:
        changes.append({
            "field": "steps",
            "old_value": f"{len(old.steps)} steps",
            "new_value": f"{len(new.steps)} steps",
        })

    if old.variables != new.variables:
        changes.append({"field": "variables", "old_value": old.variables, "new_value": new.variables})

    return changes
