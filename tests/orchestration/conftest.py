"""Shared fixtures for orchestration tests."""

import pytest

from dagrun.orchestration.scheduler import ExecutionScheduler
from tests._support import ScriptedRunner


@pytest.fixture
def scripted():
    """Factory: ``scripted({"A": "true"}, delay=0.01)`` -> ScriptedRunner."""
    return ScriptedRunner


@pytest.fixture
def make_scheduler(secrets):
    """Factory building a scheduler around a runner, with test secrets wired in."""

    def _make(runner, **kwargs) -> ExecutionScheduler:
        kwargs.setdefault("secrets", secrets)
        kwargs.setdefault("poll_interval", 0.01)
        return ExecutionScheduler(runner, **kwargs)

    return _make
