"""
Structured error types for the dagrun engine.

Every error the engine raises on purpose derives from :class:`DagrunError`
and carries a category, a retry flag, structured context and an optional
chained cause. Callers can catch a whole family (``DefinitionError``,
``StoreError``, ...) with a single ``except`` clause.

Manifesto:
    - **Typed hierarchy:** one base class per failure family
    - **Explicit retry semantics:** each error knows whether retrying helps
    - **Rich context:** run id, step and instance travel with the error
    - **Error chaining:** the original exception is kept as ``cause``

Architecture:
    ::

        ┌────────────────────────────────────────────────────────────────┐
        │                         DagrunError                             │
        │        (category, retryable, context, cause)                    │
        ├────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  DefinitionError    EvaluationError    RunnerError              │
        │  (DEFINITION)       (EVALUATION)       (RUNNER)                 │
        │                                             │                    │
        │                                        RunnerFailure            │
        │                                                                  │
        │  StoreError         ConfigError        SecretError              │
        │  (STORE)            (CONFIG)           (SECRET)                 │
        └────────────────────────────────────────────────────────────────┘

    The concrete orchestration errors (``CyclicDependencyError``,
    ``IllegalTransitionError``, ...) live in
    :mod:`dagrun.orchestration.exceptions` and subclass these bases.

Examples:
    >>> error = RunnerFailure(2, "pg_dump exited with 2")
    >>> error.exit_status
    2
    >>> error.category
    <ErrorCategory.RUNNER: 'RUNNER'>

    >>> error = DefinitionError("bad step").with_context(step="backup")
    >>> error.context.step
    'backup'

Tags:
    error-handling, exception-hierarchy, dagrun, observability

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing.

    Categories follow the engine's failure taxonomy:

    - **DEFINITION:** detected statically, the run never starts
    - **EVALUATION:** a scheduler ordering bug, fatal to the run
    - **RUNNER:** expected operational failure of an executable unit
    - **STORE:** concurrency violation in the run state store, fatal
    - **CONFIG / SECRET:** settings or credential lookups
    - **INTERNAL:** bugs, unexpected state
    """

    DEFINITION = "DEFINITION"
    EVALUATION = "EVALUATION"
    RUNNER = "RUNNER"
    STORE = "STORE"
    CONFIG = "CONFIG"
    SECRET = "SECRET"
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        run_id: Workflow run the error belongs to
        workflow: Workflow definition name
        step: Step template name
        instance_id: Step instance identifier (``name`` or ``name[i]``)
        extra: Free-form additional fields
    """

    run_id: str | None = None
    workflow: str | None = None
    step: str | None = None
    instance_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize non-empty fields."""
        result: dict[str, Any] = {}
        for key in ("run_id", "workflow", "step", "instance_id"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.extra:
            result.update(self.extra)
        return result


class DagrunError(Exception):
    """
    Base exception for all dagrun errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that
    most call sites only pass a message.

    Example:
        >>> err = DagrunError("boom")
        >>> err.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> err.retryable
        False
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> DagrunError:
        """
        Add context to this error (fluent API).

        Unknown keys go into ``context.extra``.

        Usage:
            raise DefinitionError("bad gate").with_context(step="report")
        """
        for key, value in kwargs.items():
            if key != "extra" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.extra[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize for structured logging."""
        result: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context = self.context.to_dict()
        if context:
            result["context"] = context
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CATEGORY BASES
# =============================================================================


class DefinitionError(DagrunError):
    """Workflow definition is invalid; detected before any dispatch."""

    default_category = ErrorCategory.DEFINITION


class EvaluationError(DagrunError):
    """Gate evaluation was attempted on state that does not allow it."""

    default_category = ErrorCategory.EVALUATION


class RunnerError(DagrunError):
    """Executable unit could not be run to a successful completion."""

    default_category = ErrorCategory.RUNNER


class RunnerFailure(RunnerError):
    """An executable unit finished with a non-zero exit status."""

    default_retryable = True

    def __init__(self, exit_status: int, message: str | None = None, *, output: str = "", **kwargs: Any):
        self.exit_status = exit_status
        self.output = output
        super().__init__(message or f"Executable unit failed with exit status {exit_status}", **kwargs)


class StoreError(DagrunError):
    """Run state store rejected an operation."""

    default_category = ErrorCategory.STORE


class ConfigError(DagrunError):
    """Missing or invalid configuration."""

    default_category = ErrorCategory.CONFIG


class SecretError(DagrunError):
    """Credential reference could not be resolved."""

    default_category = ErrorCategory.SECRET


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, DagrunError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, DagrunError):
        return error.category
    if isinstance(error, (KeyError, AttributeError)):
        return ErrorCategory.CONFIG
    if isinstance(error, OSError):
        return ErrorCategory.RUNNER
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "DagrunError",
    "DefinitionError",
    "EvaluationError",
    "RunnerError",
    "RunnerFailure",
    "StoreError",
    "ConfigError",
    "SecretError",
    "is_retryable",
    "categorize_error",
]
