"""Orchestration exceptions — structured error hierarchy.

All orchestration exceptions inherit from one of the category bases in
:mod:`dagrun.core.errors` so that callers can catch a whole family with a
single ``except`` clause.

Hierarchy::

    DefinitionError  (detected before dispatch, run never starts)
      ├── DuplicateNameError        ── template name registered twice
      ├── DanglingDependencyError   ── depends_on names an unknown step
      ├── CyclicDependencyError     ── dependency graph has a cycle
      ├── UnresolvedParameterError  ── a parameter cannot be resolved
      ├── InvalidGateReferenceError ── gate reads a step outside its ancestry
      ├── InvalidTemplateError      ── template fields are inconsistent
      ├── RegistryFrozenError       ── register() after finalize()
      └── InvalidWorkflowSpecError  ── YAML/dict spec is invalid

    NotFoundError
      ├── StepNotFoundError         ── registry has no such template
      ├── WorkflowNotFoundError     ── service has no such definition
      └── RunNotFoundError          ── store has no such run

    EvaluationError  (fatal to the run)
      ├── OutputNotReadyError       ── gate read a non-terminal step
      └── SkippedReferenceError     ── gate read a skipped step (policy "error")

    StoreError  (fatal to the run)
      └── IllegalTransitionError    ── optimistic-concurrency guard tripped
"""

from __future__ import annotations

from dagrun.core.errors import DagrunError, DefinitionError, ErrorCategory, EvaluationError, StoreError


class DuplicateNameError(DefinitionError):
    """Raised when a step template name is registered twice."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Step template already registered: {name}")


class DanglingDependencyError(DefinitionError):
    """Raised when ``depends_on`` references an unregistered step."""

    def __init__(self, step_name: str, missing_deps: list[str]):
        self.step_name = step_name
        self.missing_deps = missing_deps
        deps_str = ", ".join(missing_deps)
        super().__init__(f"Step '{step_name}' depends on unknown steps: {deps_str}")


class CyclicDependencyError(DefinitionError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        cycle_str = " -> ".join(cycle)
        super().__init__(f"Cycle detected in dependency graph: {cycle_str}")


class UnresolvedParameterError(DefinitionError):
    """Raised when a parameter reference has no value in any scope."""

    def __init__(self, step_name: str, key: str, iteration_index: int | None = None):
        self.step_name = step_name
        self.key = key
        self.iteration_index = iteration_index
        where = f"'{step_name}'" if iteration_index is None else f"'{step_name}' (iteration {iteration_index})"
        super().__init__(f"Unresolved parameter '{key}' in step {where}")


class InvalidGateReferenceError(DefinitionError):
    """Raised when a gate references a step that is not an ancestor."""

    def __init__(self, step_name: str, referenced: str):
        self.step_name = step_name
        self.referenced = referenced
        super().__init__(
            f"Gate of step '{step_name}' references '{referenced}', "
            "which is not reachable through its depends_on chain"
        )


class InvalidTemplateError(DefinitionError):
    """Raised when a step template is internally inconsistent."""

    def __init__(self, step_name: str, message: str):
        self.step_name = step_name
        super().__init__(f"Invalid step template '{step_name}': {message}")


class RegistryFrozenError(DefinitionError):
    """Raised when a finalized registry is mutated."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Registry is finalized; cannot register '{name}'")


class InvalidWorkflowSpecError(DefinitionError):
    """Raised when a workflow specification document is invalid."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class NotFoundError(DagrunError):
    """Base for lookups that found nothing."""

    default_category = ErrorCategory.DEFINITION


class StepNotFoundError(NotFoundError):
    """Raised when a step template is not registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Step template not found: {name}")


class WorkflowNotFoundError(NotFoundError):
    """Raised when no workflow definition is registered under a name."""

    def __init__(self, name: str, available: list[str] | None = None):
        self.workflow_name = name
        listing = ", ".join(sorted(available)) if available else "(none)"
        super().__init__(f"Workflow '{name}' not found. Available: {listing}")


class RunNotFoundError(NotFoundError):
    """Raised when a run id is unknown to the store."""

    default_category = ErrorCategory.STORE

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Workflow run not found: {run_id}")


class OutputNotReadyError(EvaluationError):
    """Raised when a gate reads a step that has not reached a terminal state."""

    def __init__(self, step_name: str, status: str):
        self.step_name = step_name
        self.status = status
        super().__init__(f"Output of step '{step_name}' is not ready (status: {status})")


class SkippedReferenceError(EvaluationError):
    """Raised when a gate reads a skipped step and the policy forbids it."""

    def __init__(self, step_name: str):
        self.step_name = step_name
        super().__init__(f"Gate references skipped step '{step_name}'")


class IllegalTransitionError(StoreError):
    """Raised when a status transition is rejected by the run state store.

    Either ``expected`` does not match the stored status (another writer got
    there first) or ``expected -> target`` is not an edge of the lifecycle.
    """

    def __init__(self, instance_id: str, expected: str, actual: str | None, target: str):
        self.instance_id = instance_id
        self.expected = expected
        self.actual = actual
        self.target = target
        if actual is None or actual == expected:
            detail = f"{expected} → {target} is not a valid transition"
        else:
            detail = f"expected {expected}, found {actual}"
        super().__init__(f"Illegal transition for '{instance_id}' to {target}: {detail}")


__all__ = [
    "DuplicateNameError",
    "DanglingDependencyError",
    "CyclicDependencyError",
    "UnresolvedParameterError",
    "InvalidGateReferenceError",
    "InvalidTemplateError",
    "RegistryFrozenError",
    "InvalidWorkflowSpecError",
    "NotFoundError",
    "StepNotFoundError",
    "WorkflowNotFoundError",
    "RunNotFoundError",
    "OutputNotReadyError",
    "SkippedReferenceError",
    "IllegalTransitionError",
]
