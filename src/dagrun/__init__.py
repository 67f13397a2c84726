"""
dagrun - an in-process engine for DAG workflows of gated, parallel steps.

Packages:
- dagrun.core: errors, logging, settings, secrets
- dagrun.orchestration: templates, registry, resolver, evaluator, scheduler, stores
- dagrun.execution: executable unit runners and retry strategies
- dagrun.cli: the ``dagrun`` command
"""

__version__ = "0.1.0"

from dagrun.orchestration import (  # noqa: E402
    Condition,
    ExecutionScheduler,
    ParamRef,
    StepRegistry,
    StepTemplate,
    WorkflowDefinition,
    WorkflowService,
)

__all__ = [
    "__version__",
    "Condition",
    "ExecutionScheduler",
    "ParamRef",
    "StepRegistry",
    "StepTemplate",
    "WorkflowDefinition",
    "WorkflowService",
]
