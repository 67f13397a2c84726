"""
Test support utilities for dagrun tests.

Runners and template helpers that are useful across test modules but are
not fixtures themselves.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from dagrun.execution.runner import RunnerResult
from dagrun.orchestration.models import Condition, ParamRef, StepTemplate
from dagrun.orchestration.params import ConcreteArgs
from dagrun.orchestration.registry import WorkflowDefinition


def leaf(name: str, *, depends_on: Iterable[str] = (), gate: Condition | None = None, **kwargs: Any) -> StepTemplate:
    """A leaf template whose command is its own name (``[name]``)."""
    return StepTemplate.leaf(name, [name], depends_on=depends_on, gate=gate, **kwargs)


def member(name: str, key: str = "item") -> StepTemplate:
    """A group member template that passes its iteration value as ``argv[1]``."""
    return StepTemplate.leaf(name, [name, "{{ value }}"], params=[ParamRef.iteration("value", key=key)])


def definition(*templates: StepTemplate, name: str = "test.wf", defaults: Mapping[str, Any] | None = None) -> WorkflowDefinition:
    return WorkflowDefinition.from_templates(name, templates, defaults)


class ScriptedRunner:
    """Runner driven by a table of ``command[0]`` -> behaviour.

    A behaviour is output text, a :class:`RunnerResult`, an exception to
    raise, or a callable taking the :class:`ConcreteArgs`. Unknown commands
    succeed with empty output. Every call is recorded, and the number of
    units running at once is tracked overall and per command name.
    """

    def __init__(self, behaviours: Mapping[str, Any] | None = None, *, delay: float = 0.0) -> None:
        self.behaviours = dict(behaviours or {})
        self.delay = delay
        self.calls: list[ConcreteArgs] = []
        self.active = 0
        self.max_active = 0
        self.active_by_name: dict[str, int] = {}
        self.max_active_by_name: dict[str, int] = {}
        self._lock = threading.Lock()

    def calls_for(self, name: str) -> list[ConcreteArgs]:
        return [c for c in self.calls if c.command[0] == name]

    def run(self, args: ConcreteArgs, stop_event: threading.Event) -> RunnerResult:
        name = args.command[0]
        with self._lock:
            self.calls.append(args)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.active_by_name[name] = self.active_by_name.get(name, 0) + 1
            self.max_active_by_name[name] = max(self.max_active_by_name.get(name, 0), self.active_by_name[name])
        try:
            if self.delay:
                time.sleep(self.delay)
            behaviour = self.behaviours.get(name, "")
            if isinstance(behaviour, BaseException):
                raise behaviour
            if callable(behaviour):
                behaviour = behaviour(args)
            if isinstance(behaviour, RunnerResult):
                return behaviour
            return RunnerResult(0, behaviour)
        finally:
            with self._lock:
                self.active -= 1
                self.active_by_name[name] -= 1


class BlockingRunner:
    """Runner whose units block until released or stopped.

    ``started`` is set once the first unit is running.
    """

    def __init__(self, block: Callable[[ConcreteArgs], bool] | None = None) -> None:
        self.block = block or (lambda args: True)
        self.started = threading.Event()
        self.release = threading.Event()
        self.stopped: list[str] = []

    def run(self, args: ConcreteArgs, stop_event: threading.Event) -> RunnerResult:
        if not self.block(args):
            return RunnerResult(0, "ok")
        self.started.set()
        while not self.release.is_set():
            if stop_event.wait(0.01):
                self.stopped.append(args.step)
                return RunnerResult(-15, "", "stopped")
        return RunnerResult(0, "released")


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll *predicate* until it holds or *timeout* elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
