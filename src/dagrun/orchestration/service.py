"""Workflow service — the submission surface of the engine.

Callers submit a definition (or the name of a registered one) plus workflow
arguments and get a run id back. The run executes either inline or on a
background thread; its state is always readable through :meth:`status`.

::

    service = WorkflowService(ExecutionScheduler(SubprocessRunner()))
    service.register(definition)
    run_id = service.submit("db.maintenance", {"db-host": "db1"}, wait=False)
    service.status(run_id).status   # RunStatus.RUNNING
    service.wait(run_id)            # WorkflowRun, terminal

Definition errors surface from :meth:`submit` itself, before a run id
exists. Errors that halt a background run are re-raised by :meth:`wait`.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from typing import Any

from dagrun.core.logging import get_logger
from dagrun.orchestration.exceptions import RunNotFoundError, WorkflowNotFoundError
from dagrun.orchestration.registry import WorkflowDefinition
from dagrun.orchestration.scheduler import ExecutionScheduler
from dagrun.orchestration.state import TransitionRecord, WorkflowRun

logger = get_logger(__name__)


class _Execution:
    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self.thread: threading.Thread | None = None
        self.result: WorkflowRun | None = None
        self.error: BaseException | None = None
        self.done = threading.Event()


class WorkflowService:
    """Submit, inspect and cancel workflow runs."""

    def __init__(self, scheduler: ExecutionScheduler) -> None:
        self._scheduler = scheduler
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._executions: dict[str, _Execution] = {}
        self._lock = threading.Lock()

    @property
    def scheduler(self) -> ExecutionScheduler:
        return self._scheduler

    # -- definitions ---------------------------------------------------------

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Make *definition* submittable by name (replaces a same-named one)."""
        with self._lock:
            self._definitions[definition.name] = definition
        logger.debug("service.workflow_registered", workflow=definition.name)
        return definition

    def get_definition(self, name: str) -> WorkflowDefinition:
        with self._lock:
            definition = self._definitions.get(name)
            available = list(self._definitions)
        if definition is None:
            raise WorkflowNotFoundError(name, available)
        return definition

    def definitions(self) -> list[str]:
        with self._lock:
            return sorted(self._definitions)

    # -- runs ----------------------------------------------------------------

    def submit(
        self,
        workflow: WorkflowDefinition | str,
        args: Mapping[str, Any] | None = None,
        *,
        wait: bool = True,
        run_id: str | None = None,
    ) -> str:
        """
        Validate and start a run, returning its id.

        Args:
            workflow: Definition, or the name of a registered one
            args: Workflow arguments (merged over the definition defaults)
            wait: Execute inline; otherwise on a background thread
            run_id: Explicit run id (default: random)

        Raises:
            WorkflowNotFoundError: If *workflow* names no registered definition
            DefinitionError: If the run fails static validation
        """
        definition = self.get_definition(workflow) if isinstance(workflow, str) else workflow
        run_id = self._scheduler.create_run(definition, args, run_id)
        execution = _Execution(run_id)
        with self._lock:
            self._executions[run_id] = execution

        logger.info("service.run_submitted", run_id=run_id, workflow=definition.name, wait=wait)

        if wait:
            self._execute(execution)
            self._forget(run_id)
            if execution.error is not None:
                raise execution.error
        else:
            execution.thread = threading.Thread(
                target=self._execute,
                args=(execution,),
                name=f"dagrun-run-{run_id[:8]}",
                daemon=True,
            )
            execution.thread.start()
        return run_id

    def _forget(self, run_id: str) -> None:
        with self._lock:
            self._executions.pop(run_id, None)

    def _execute(self, execution: _Execution) -> None:
        try:
            execution.result = self._scheduler.execute(execution.run_id)
        except Exception as e:
            execution.error = e
        finally:
            execution.done.set()

    def status(self, run_id: str) -> WorkflowRun:
        """Current snapshot of the run. Raises RunNotFoundError."""
        return self._scheduler.store.snapshot(run_id)

    def history(self, run_id: str) -> list[TransitionRecord]:
        return self._scheduler.store.transitions(run_id)

    def cancel(self, run_id: str) -> WorkflowRun:
        """Request cancellation and return the current snapshot."""
        self._scheduler.cancel(run_id)
        return self.status(run_id)

    def wait(self, run_id: str, timeout: float | None = None) -> WorkflowRun:
        """
        Block until the run finishes.

        A background run is forgotten once waited on; later calls return the
        stored snapshot.

        Raises:
            RunNotFoundError: If the run is unknown, or still running elsewhere
            TimeoutError: If *timeout* elapses first
            DagrunError: Whatever halted the run
        """
        with self._lock:
            execution = self._executions.get(run_id)
        if execution is None:
            run = self.status(run_id)
            if not run.is_terminal:
                raise RunNotFoundError(run_id)
            return run
        if not execution.done.wait(timeout):
            raise TimeoutError(f"Run {run_id} did not finish within {timeout}s")
        self._forget(run_id)
        if execution.error is not None:
            raise execution.error
        return execution.result


__all__ = ["WorkflowService"]
