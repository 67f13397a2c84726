"""Executable unit runners.

The scheduler hands a runner one :class:`~dagrun.orchestration.params.ConcreteArgs`
per dispatch and gets back a :class:`RunnerResult`. A runner either returns
the result (any exit status) or raises
:class:`~dagrun.core.errors.RunnerFailure`; the scheduler maps both onto
the step instance.

Runners:

    SubprocessRunner  ── local OS process, stdout captured as the step output
    CallableRunner    ── in-process functions keyed by ``command[0]``

A runner is called from a worker thread and must honour ``stop_event``:
once it is set (run cancelled) the unit should stop as soon as it can.

Tags:
    dagrun, execution, runner, subprocess
"""

from __future__ import annotations

import os
import subprocess
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from dagrun.core.logging import get_logger
from dagrun.orchestration.params import ConcreteArgs

logger = get_logger(__name__)

COMMAND_NOT_FOUND = 127
TIMED_OUT = -1


@dataclass(frozen=True)
class RunnerResult:
    """Outcome of one executable unit."""

    exit_status: int
    output: str = ""
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_status == 0


@runtime_checkable
class ExecutableUnitRunner(Protocol):
    """Anything that can run one materialized step."""

    def run(self, args: ConcreteArgs, stop_event: threading.Event) -> RunnerResult: ...


class SubprocessRunner:
    """Runs each unit as a local subprocess.

    ``command`` is the argv. The child's stdout becomes the captured output;
    the tail of stderr is kept as the error text when the exit status is
    non-zero. ``resource_limits.timeout_seconds`` is enforced by killing
    the child; cpu and memory limits are not enforced locally.
    """

    def __init__(
        self,
        *,
        inherit_env: bool = True,
        kill_timeout_seconds: float = 5.0,
        poll_interval: float = 0.1,
        cwd: str | None = None,
    ) -> None:
        """
        Args:
            inherit_env: If True, children inherit the current environment
                with the step env overlaid. If False, only the step env is passed.
            kill_timeout_seconds: Seconds to wait after SIGTERM before SIGKILL.
            poll_interval: How often to check for cancellation.
            cwd: Working directory for every child.
        """
        self._inherit_env = inherit_env
        self._kill_timeout = kill_timeout_seconds
        self._poll_interval = poll_interval
        self._cwd = cwd

    def _build_env(self, args: ConcreteArgs) -> dict[str, str]:
        env = dict(os.environ) if self._inherit_env else {}
        env.update(args.process_env())
        env["DAGRUN_STEP"] = args.step
        if args.iteration_index is not None:
            env["DAGRUN_ITERATION_INDEX"] = str(args.iteration_index)
        return env

    def run(self, args: ConcreteArgs, stop_event: threading.Event) -> RunnerResult:
        timeout = args.resource_limits.timeout_seconds if args.resource_limits else None
        deadline = time.monotonic() + timeout if timeout else None

        try:
            process = subprocess.Popen(
                list(args.command),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self._build_env(args),
                cwd=self._cwd,
                text=True,
                errors="replace",
            )
        except FileNotFoundError as exc:
            return RunnerResult(COMMAND_NOT_FOUND, error=f"Command not found: {args.command[0]} ({exc})")

        logger.debug("runner.process_started", step=args.step, pid=process.pid)

        while True:
            try:
                stdout, stderr = process.communicate(timeout=self._poll_interval)
                break
            except subprocess.TimeoutExpired:
                if stop_event.is_set():
                    stdout, stderr = self._stop(process)
                    return RunnerResult(process.returncode, stdout or "", "cancelled")
                if deadline is not None and time.monotonic() >= deadline:
                    logger.warning("runner.timed_out", step=args.step, timeout_seconds=timeout)
                    process.kill()
                    stdout, _ = process.communicate()
                    return RunnerResult(
                        TIMED_OUT,
                        stdout or "",
                        f"Process killed: exceeded timeout of {timeout}s",
                    )

        error = None
        if process.returncode != 0 and stderr:
            error = "\n".join(stderr.strip().splitlines()[-20:])
        return RunnerResult(process.returncode, stdout or "", error)

    def _stop(self, process: subprocess.Popen) -> tuple[str, str]:
        """SIGTERM, then SIGKILL after the grace period."""
        process.terminate()
        try:
            return process.communicate(timeout=self._kill_timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            return process.communicate()


UnitFunction = Callable[[ConcreteArgs], "str | RunnerResult | None"]


class CallableRunner:
    """Runs in-process functions, selected by ``command[0]``.

    A function returns the output text, a :class:`RunnerResult`, or None
    (empty output); raising :class:`~dagrun.core.errors.RunnerFailure`
    fails the step with that exit status.

    Example::

        runner = CallableRunner({"check": lambda args: "true"})
    """

    def __init__(self, functions: Mapping[str, UnitFunction] | None = None) -> None:
        self._functions: dict[str, UnitFunction] = dict(functions or {})

    def register(self, name: str, fn: UnitFunction) -> None:
        self._functions[name] = fn

    def run(self, args: ConcreteArgs, stop_event: threading.Event) -> RunnerResult:
        fn = self._functions.get(args.command[0])
        if fn is None:
            return RunnerResult(COMMAND_NOT_FOUND, error=f"No function registered for '{args.command[0]}'")
        result = fn(args)
        if isinstance(result, RunnerResult):
            return result
        return RunnerResult(0, "" if result is None else str(result))


__all__ = [
    "RunnerResult",
    "ExecutableUnitRunner",
    "SubprocessRunner",
    "CallableRunner",
    "COMMAND_NOT_FOUND",
    "TIMED_OUT",
]
