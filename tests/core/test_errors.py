"""Tests for dagrun.core.errors — hierarchy, context, helpers."""

from __future__ import annotations

import pytest

from dagrun.core.errors import (
    DagrunError,
    DefinitionError,
    ErrorCategory,
    EvaluationError,
    RunnerFailure,
    SecretError,
    StoreError,
    categorize_error,
    is_retryable,
)
from dagrun.orchestration.exceptions import (
    CyclicDependencyError,
    IllegalTransitionError,
    OutputNotReadyError,
    RunNotFoundError,
    UnresolvedParameterError,
)


class TestDagrunError:
    def test_defaults(self):
        err = DagrunError("boom")
        assert err.message == "boom"
        assert err.category == ErrorCategory.INTERNAL
        assert err.retryable is False
        assert str(err) == "boom"

    def test_cause_is_chained(self):
        cause = ValueError("inner")
        err = DagrunError("outer", cause=cause)
        assert err.__cause__ is cause
        assert "ValueError: inner" in err.to_dict()["cause"]

    def test_with_context_known_and_extra_keys(self):
        err = DefinitionError("bad").with_context(step="report", run_id="r1", attempt=2)
        assert err.context.step == "report"
        assert err.context.run_id == "r1"
        assert err.context.extra == {"attempt": 2}

    def test_to_dict(self):
        err = StoreError("conflict").with_context(instance_id="load[0]")
        data = err.to_dict()
        assert data["error_type"] == "StoreError"
        assert data["category"] == "STORE"
        assert data["context"] == {"instance_id": "load[0]"}

    def test_repr(self):
        assert repr(EvaluationError("x")) == "EvaluationError('x', category=EVALUATION)"


class TestCategories:
    @pytest.mark.parametrize(
        ("error", "category"),
        [
            (CyclicDependencyError(["a", "b", "a"]), ErrorCategory.DEFINITION),
            (UnresolvedParameterError("s", "db-host"), ErrorCategory.DEFINITION),
            (OutputNotReadyError("a", "running"), ErrorCategory.EVALUATION),
            (IllegalTransitionError("a", "pending", "running", "running"), ErrorCategory.STORE),
            (RunNotFoundError("r1"), ErrorCategory.STORE),
            (RunnerFailure(2), ErrorCategory.RUNNER),
            (SecretError("nope"), ErrorCategory.SECRET),
        ],
    )
    def test_category(self, error, category):
        assert error.category == category
        assert categorize_error(error) == category

    def test_categorize_foreign_errors(self):
        assert categorize_error(KeyError("k")) == ErrorCategory.CONFIG
        assert categorize_error(FileNotFoundError("f")) == ErrorCategory.RUNNER
        assert categorize_error(RuntimeError("r")) == ErrorCategory.UNKNOWN


class TestRunnerFailure:
    def test_carries_exit_status_and_output(self):
        err = RunnerFailure(3, output="partial")
        assert err.exit_status == 3
        assert err.output == "partial"
        assert "exit status 3" in err.message

    def test_is_retryable_by_default(self):
        assert is_retryable(RunnerFailure(1))
        assert not is_retryable(RunnerFailure(1, retryable=False))


class TestIsRetryable:
    def test_definition_errors_are_not_retryable(self):
        assert not is_retryable(DefinitionError("bad"))

    def test_transient_builtins(self):
        assert is_retryable(ConnectionError())
        assert is_retryable(TimeoutError())
        assert not is_retryable(ValueError())


class TestMessages:
    def test_cycle_message_shows_path(self):
        err = CyclicDependencyError(["a", "b", "a"])
        assert err.cycle == ["a", "b", "a"]
        assert "a -> b -> a" in err.message

    def test_unresolved_parameter_names_key(self):
        err = UnresolvedParameterError("vacuum", "db-host")
        assert err.step_name == "vacuum"
        assert err.key == "db-host"
        assert "db-host" in err.message

    def test_illegal_transition_reports_actual(self):
        err = IllegalTransitionError("load", "pending", "running", "running")
        assert err.actual == "running"
        assert "expected pending, found running" in err.message
