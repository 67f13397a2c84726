"""dagrun core -- errors, logging, settings and secrets shared by every layer.

Architecture::

    errors.py     Structured error hierarchy (DagrunError + category bases)
    logging.py    structlog configuration, get_logger, LogContext
    settings.py   DagrunSettings (pydantic-settings, DAGRUN_ env prefix)
    secrets.py    SecretRef, SecretValue, SecretProvider and its backends
"""

from dagrun.core.errors import (
    ConfigError,
    DagrunError,
    DefinitionError,
    ErrorCategory,
    ErrorContext,
    EvaluationError,
    RunnerError,
    RunnerFailure,
    SecretError,
    StoreError,
    categorize_error,
    is_retryable,
)
from dagrun.core.logging import LogContext, configure_logging, get_logger
from dagrun.core.secrets import SecretProvider, SecretRef, SecretValue
from dagrun.core.settings import DagrunSettings, get_settings, reset_settings

__all__ = [
    "ConfigError",
    "DagrunError",
    "DefinitionError",
    "ErrorCategory",
    "ErrorContext",
    "EvaluationError",
    "RunnerError",
    "RunnerFailure",
    "SecretError",
    "StoreError",
    "categorize_error",
    "is_retryable",
    "LogContext",
    "configure_logging",
    "get_logger",
    "SecretProvider",
    "SecretRef",
    "SecretValue",
    "DagrunSettings",
    "get_settings",
    "reset_settings",
]
