"""Condition Evaluator — decides whether a gated step runs.

A gate compares the captured output of one earlier step with a literal.
The evaluator reads that output from a :class:`WorkflowRun` snapshot and
never touches the store, so the same snapshot always gives the same answer.

Captured output is text from the executable unit; trailing whitespace and
newlines are trimmed before the comparison::

    echo true   →  "true\\n"  →  "true"  ==  Condition.equals("check", True)

A skipped referenced step has no output. What that means for the gate is
the evaluator's :class:`SkippedOutputPolicy`.
"""

from __future__ import annotations

from enum import Enum

from dagrun.core.logging import get_logger
from dagrun.orchestration.exceptions import OutputNotReadyError, SkippedReferenceError
from dagrun.orchestration.models import Condition, ConditionOperator
from dagrun.orchestration.state import StepStatus, WorkflowRun

logger = get_logger(__name__)


class SkippedOutputPolicy(str, Enum):
    """How a gate treats a reference to a skipped step."""

    FALSE = "false"  # gate is false whatever the operator
    EMPTY = "empty"  # compare against ""
    ERROR = "error"  # SkippedReferenceError


class ConditionEvaluator:
    """Evaluates :class:`Condition` gates against a run snapshot."""

    def __init__(self, policy: SkippedOutputPolicy | str = SkippedOutputPolicy.FALSE) -> None:
        self.policy = SkippedOutputPolicy(policy)

    def captured_output(self, condition: Condition, run: WorkflowRun) -> str | None:
        """
        Trimmed output of the referenced step, ``""`` when it was skipped.

        Raises:
            OutputNotReadyError: If the referenced step is not terminal
        """
        instance = run.get(condition.step)
        if instance is None:
            raise OutputNotReadyError(condition.step, "missing")
        if not instance.is_terminal:
            raise OutputNotReadyError(condition.step, instance.status.value)
        if instance.status == StepStatus.SKIPPED:
            return ""
        return (instance.output or "").rstrip()

    def evaluate(self, condition: Condition, run: WorkflowRun) -> bool:
        """
        Evaluate *condition* against *run*.

        Raises:
            OutputNotReadyError: If the referenced step is not terminal
            SkippedReferenceError: If it was skipped and the policy is ``error``
        """
        output = self.captured_output(condition, run)
        referenced = run.instances[condition.step]

        if referenced.status == StepStatus.SKIPPED:
            if self.policy == SkippedOutputPolicy.ERROR:
                raise SkippedReferenceError(condition.step)
            if self.policy == SkippedOutputPolicy.FALSE:
                return False

        if condition.operator == ConditionOperator.EQ:
            result = output == condition.expected
        else:
            result = output != condition.expected

        logger.debug(
            "condition.evaluated",
            run_id=run.run_id,
            condition=str(condition),
            output=output,
            result=result,
        )
        return result


__all__ = ["SkippedOutputPolicy", "ConditionEvaluator"]
