"""
Orchestration - workflow definitions and the engine that runs them.

Manifesto:
A workflow is a DAG of named steps. Some steps are gated on what an
earlier step printed; some fan out over a list with bounded parallelism.
This package turns templates into a validated definition, and a definition
plus arguments into a run whose every transition is recorded.

ARCHITECTURE
────────────
::

    StepRegistry ── finalize() ──► WorkflowDefinition
                                        │
    ExecutionScheduler.create_run(definition, args)
      ├── ParameterResolver     static pass, then materialize per dispatch
      ├── ConditionEvaluator    gates against a run snapshot
      ├── RunStateStore         InMemoryRunStateStore | SqliteRunStateStore
      └── ExecutableUnitRunner  SubprocessRunner | CallableRunner

    WorkflowService   submit / status / cancel / wait
    WorkflowSpec      YAML files → WorkflowDefinition

Tags:
    dagrun, orchestration, workflow, dag
"""

from dagrun.orchestration.exceptions import (
    CyclicDependencyError,
    DanglingDependencyError,
    DuplicateNameError,
    IllegalTransitionError,
    InvalidGateReferenceError,
    InvalidTemplateError,
    InvalidWorkflowSpecError,
    NotFoundError,
    OutputNotReadyError,
    RegistryFrozenError,
    RunNotFoundError,
    SkippedReferenceError,
    StepNotFoundError,
    UnresolvedParameterError,
    WorkflowNotFoundError,
)
from dagrun.orchestration.models import (
    Condition,
    ConditionOperator,
    ExecutableSpec,
    GroupSpec,
    ParamRef,
    ParamSource,
    ResourceLimits,
    RetryPolicy,
    StepKind,
    StepTemplate,
)
from dagrun.orchestration.registry import StepRegistry, WorkflowDefinition
from dagrun.orchestration.params import ConcreteArgs, ParameterResolver
from dagrun.orchestration.state import (
    InMemoryRunStateStore,
    Reason,
    RunStateStore,
    RunStatus,
    StepInstance,
    StepStatus,
    TransitionRecord,
    WorkflowRun,
)
from dagrun.orchestration.conditions import ConditionEvaluator, SkippedOutputPolicy
from dagrun.orchestration.sqlite_store import SqliteRunStateStore
from dagrun.orchestration.scheduler import ExecutionScheduler
from dagrun.orchestration.service import WorkflowService
from dagrun.orchestration.workflow_yaml import WorkflowSpec, load_definition

__all__ = [
    # Errors
    "CyclicDependencyError",
    "DanglingDependencyError",
    "DuplicateNameError",
    "IllegalTransitionError",
    "InvalidGateReferenceError",
    "InvalidTemplateError",
    "InvalidWorkflowSpecError",
    "NotFoundError",
    "OutputNotReadyError",
    "RegistryFrozenError",
    "RunNotFoundError",
    "SkippedReferenceError",
    "StepNotFoundError",
    "UnresolvedParameterError",
    "WorkflowNotFoundError",
    # Templates
    "Condition",
    "ConditionOperator",
    "ExecutableSpec",
    "GroupSpec",
    "ParamRef",
    "ParamSource",
    "ResourceLimits",
    "RetryPolicy",
    "StepKind",
    "StepTemplate",
    # Definition
    "StepRegistry",
    "WorkflowDefinition",
    # Engine
    "ConcreteArgs",
    "ParameterResolver",
    "ConditionEvaluator",
    "SkippedOutputPolicy",
    "ExecutionScheduler",
    "WorkflowService",
    # State
    "InMemoryRunStateStore",
    "SqliteRunStateStore",
    "Reason",
    "RunStateStore",
    "RunStatus",
    "StepInstance",
    "StepStatus",
    "TransitionRecord",
    "WorkflowRun",
    # YAML
    "WorkflowSpec",
    "load_definition",
]
