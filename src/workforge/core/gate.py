"""Gate evaluation."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from workforge.config.schema import GateStep
from workforge.core.template import ExpressionEvaluator, truthy

_log = logging.getLogger(__name__)


class GateEvaluator:
    """Evaluates a gate's condition against a context view.

    Evaluation is pure: the same condition over an unchanged view always
    yields the same result. ``EvaluationError`` propagates to the caller,
    which treats it as a step failure.
    """

    def __init__(self, evaluator: ExpressionEvaluator):
        self.evaluator = evaluator

    def evaluate_gate(self, step: GateStep, view: Mapping[str, Any]) -> bool:
        passed = truthy(self.evaluator.evaluate(step.condition, view))
        _log.debug(
            "Gate %s evaluated to %s", step.id, passed,
            extra={"step_id": step.id, "condition": step.condition},
        )
        return passed

    @staticmethod
    def output(step: GateStep, passed: bool) -> dict[str, Any]:
        return {"passed": passed, "condition": step.condition}
