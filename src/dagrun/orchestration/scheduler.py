"""Execution Scheduler — drives a workflow run to a terminal state.

Manifesto:
One coordinator thread owns the decisions of a run: which pending step is
ready, which is skipped, which group member is admitted next. Worker
threads only run executable units and commit the outcome of their own
instance. Every decision is made against one store snapshot, so two gates
evaluated in the same pass see the same outputs.

ARCHITECTURE
────────────
::

    create_run(definition, args)
      ├── topological order        ── CyclicDependencyError, nothing created
      ├── static parameter pass    ── UnresolvedParameterError / secret errors
      └── one PENDING instance per template

    execute(run_id)
      loop:
        snapshot ─► resolve pending steps in topological order
                      deps not terminal     → wait
                      dep failed            → SKIPPED(upstream_failed)
                      all deps skipped      → SKIPPED(upstream_skipped)
                      gate false            → SKIPPED(gate_false)
                      leaf                  → RUNNING, submit to pool
                      group                 → RUNNING, expand members
                 ─► admit group members     ≤ parallelism_limit, iteration order
                 ─► finalize groups         all members terminal
        wait(FIRST_COMPLETED)

    worker: materialize ─► runner.run ─► SUCCEEDED | retry | FAILED

Concurrency is bounded twice: per group by ``parallelism_limit`` and for the
whole run by ``max_concurrency`` (or the worker pool size).

Example::

    scheduler = ExecutionScheduler(SubprocessRunner())
    run = scheduler.run(definition, {"db-host": "db1"})
    run.status  # RunStatus.SUCCEEDED

Tags:
    dagrun, orchestration, scheduler, dag, thread-pool

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from dagrun.core.errors import DagrunError, ErrorCategory, RunnerFailure, categorize_error, is_retryable
from dagrun.core.logging import LogContext, get_logger
from dagrun.core.secrets import SecretProvider
from dagrun.core.settings import DagrunSettings, get_settings
from dagrun.execution.retry import NoRetry
from dagrun.execution.runner import ExecutableUnitRunner
from dagrun.orchestration.conditions import ConditionEvaluator, SkippedOutputPolicy
from dagrun.orchestration.exceptions import IllegalTransitionError, RunNotFoundError
from dagrun.orchestration.models import StepTemplate
from dagrun.orchestration.params import ParameterResolver
from dagrun.orchestration.registry import WorkflowDefinition
from dagrun.orchestration.state import (
    InMemoryRunStateStore,
    Reason,
    RunStateStore,
    StepInstance,
    StepStatus,
    WorkflowRun,
)

logger = get_logger(__name__)

_RUN = "run"


@dataclass
class _RunContext:
    """Coordinator-side state of one run that is not kept in the store."""

    run_id: str
    definition: WorkflowDefinition
    arguments: dict[str, Any]
    order: list[str]
    templates: dict[str, StepTemplate]
    stop: threading.Event = field(default_factory=threading.Event)
    bindings: dict[str, list[dict[str, Any]]] = field(default_factory=dict)


@dataclass(frozen=True)
class _Dispatch:
    instance_id: str
    template: StepTemplate
    binding: Mapping[str, Any] | None = None
    index: int | None = None


@dataclass(frozen=True)
class _Outcome:
    exit_status: int
    output: str = ""
    error: str | None = None
    exception: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_status == 0 and self.exception is None


class ExecutionScheduler:
    """Runs workflow definitions on a thread pool, recording state in a store."""

    def __init__(
        self,
        runner: ExecutableUnitRunner,
        store: RunStateStore | None = None,
        secrets: SecretProvider | None = None,
        *,
        max_concurrency: int | None = None,
        max_workers: int | None = None,
        skipped_output_policy: SkippedOutputPolicy | str = SkippedOutputPolicy.FALSE,
        evaluator: ConditionEvaluator | None = None,
        poll_interval: float = 0.05,
    ) -> None:
        """
        Args:
            runner: Executes each materialized leaf step
            store: Run state store (default: in-memory)
            secrets: Secret provider for ``secrets:`` references
            max_concurrency: Global cap on leaf units running at once
            max_workers: Pool size when no global cap is given
            skipped_output_policy: How gates read a skipped step
            evaluator: Custom condition evaluator (overrides the policy)
            poll_interval: Seconds between checks for cancellation while waiting
        """
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")

        self._runner = runner
        self._store = store or InMemoryRunStateStore()
        self._resolver = ParameterResolver(secrets)
        self._evaluator = evaluator or ConditionEvaluator(skipped_output_policy)
        self._limit = max_concurrency or max_workers or 32
        self._poll_interval = poll_interval
        self._runs: dict[str, _RunContext] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        runner: ExecutableUnitRunner,
        store: RunStateStore | None = None,
        secrets: SecretProvider | None = None,
        settings: DagrunSettings | None = None,
    ) -> ExecutionScheduler:
        settings = settings or get_settings()
        return cls(
            runner,
            store,
            secrets or SecretProvider.default(settings.secrets_dir),
            max_concurrency=settings.max_concurrency,
            max_workers=settings.max_workers,
            skipped_output_policy=settings.skipped_output_policy,
        )

    @property
    def store(self) -> RunStateStore:
        return self._store

    # =========================================================================
    # Public API
    # =========================================================================

    def create_run(
        self,
        definition: WorkflowDefinition,
        args: Mapping[str, Any] | None = None,
        run_id: str | None = None,
    ) -> str:
        """
        Validate *definition* against *args* and create the run's instances.

        Definition defaults are merged under *args*. Nothing is written to
        the store when validation fails.

        Raises:
            CyclicDependencyError: If the step graph has a cycle
            UnresolvedParameterError: If any dispatch could not be materialized
            MissingSecretError / UnknownSecretStoreError: Unresolvable secret
        """
        arguments = {**definition.defaults, **(args or {})}
        order = definition.topological_order()
        self._resolver.validate(list(definition.templates), arguments)

        run_id = run_id or uuid.uuid4().hex
        instances = [StepInstance.pending(run_id, t.name) for t in definition.templates]
        self._store.create_run(run_id, definition.name, instances, arguments=arguments)

        with self._lock:
            self._runs[run_id] = _RunContext(
                run_id=run_id,
                definition=definition,
                arguments=arguments,
                order=order,
                templates={t.name: t for t in definition.templates},
            )

        logger.info(
            "scheduler.run_created",
            run_id=run_id,
            workflow=definition.name,
            step_count=len(instances),
        )
        return run_id

    def run(
        self,
        definition: WorkflowDefinition,
        args: Mapping[str, Any] | None = None,
        run_id: str | None = None,
    ) -> WorkflowRun:
        """Create and execute a run, returning its final snapshot."""
        return self.execute(self.create_run(definition, args, run_id))

    def cancel(self, run_id: str) -> None:
        """
        Cancel a run: pending and running instances become FAILED(cancelled).

        Running units get the stop signal; terminal instances are untouched.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        self._store.request_cancel(run_id)
        with self._lock:
            ctx = self._runs.get(run_id)
        if ctx is not None:
            ctx.stop.set()
        logger.info("scheduler.cancel_requested", run_id=run_id)

    def snapshot(self, run_id: str) -> WorkflowRun:
        return self._store.snapshot(run_id)

    def execute(self, run_id: str) -> WorkflowRun:
        """
        Drive a created run until nothing is pending or running.

        Raises:
            RunNotFoundError: If the run was not created by this scheduler
            EvaluationError: A gate was evaluated on a non-terminal step
            StoreError: A transition was rejected (concurrent writer)
        """
        with self._lock:
            ctx = self._runs.get(run_id)
        if ctx is None:
            raise RunNotFoundError(run_id)

        with LogContext(run_id=run_id, workflow=ctx.definition.name):
            logger.info("scheduler.run_started", limit=self._limit)
            try:
                self._loop(ctx)
            except Exception as e:
                ctx.stop.set()
                if isinstance(e, DagrunError):
                    e.with_context(run_id=run_id, workflow=ctx.definition.name)
                logger.error(
                    "scheduler.run_halted",
                    error=str(e),
                    error_type=type(e).__name__,
                    category=categorize_error(e).value,
                )
                raise
            finally:
                with self._lock:
                    self._runs.pop(run_id, None)

            run = self._store.snapshot(run_id)
            logger.info(
                "scheduler.run_completed",
                status=run.status.value,
                succeeded=len(run.by_status(StepStatus.SUCCEEDED)),
                failed=len(run.by_status(StepStatus.FAILED)),
                skipped=len(run.by_status(StepStatus.SKIPPED)),
            )
            return run

    # =========================================================================
    # Coordinator
    # =========================================================================

    def _loop(self, ctx: _RunContext) -> None:
        try:
            self._drive(ctx)
        except BaseException:
            # Workers have drained; nothing may stay pending or running
            try:
                self._cancel_remaining(ctx, Reason.HALTED, "run halted")
            except DagrunError:
                logger.exception("scheduler.halt_cleanup_failed")
            raise

    def _drive(self, ctx: _RunContext) -> None:
        futures: dict[Future, _Dispatch] = {}
        cancelled = False

        with ThreadPoolExecutor(max_workers=self._limit, thread_name_prefix="dagrun") as executor:
            try:
                while True:
                    run = self._store.snapshot(ctx.run_id)

                    if not cancelled and (ctx.stop.is_set() or run.cancel_requested):
                        cancelled = True
                        ctx.stop.set()
                        self._cancel_remaining(ctx)
                        continue

                    progressed = False if cancelled else self._advance(ctx, run, executor, futures)
                    if progressed:
                        continue

                    if not futures:
                        if cancelled:
                            self._cancel_remaining(ctx)
                        elif not run.is_terminal:
                            raise DagrunError(
                                f"Run {ctx.run_id} stalled with non-terminal steps: "
                                f"{[i.instance_id for i in run.instances.values() if not i.is_terminal]}",
                                category=ErrorCategory.INTERNAL,
                            )
                        return

                    done, _ = wait(futures, timeout=self._poll_interval, return_when=FIRST_COMPLETED)
                    for future in done:
                        futures.pop(future)
                        # Worker errors are store errors; they halt the run
                        future.result()
            except BaseException:
                ctx.stop.set()
                raise

    def _advance(
        self,
        ctx: _RunContext,
        run: WorkflowRun,
        executor: ThreadPoolExecutor,
        futures: dict[Future, _Dispatch],
    ) -> bool:
        """One pass over the snapshot. Returns True if anything was committed or submitted."""
        progressed = False
        in_flight = {d.instance_id for d in futures.values()}

        for name in ctx.order:
            template = ctx.templates[name]
            instance = run.instances[name]

            if instance.status == StepStatus.PENDING and name not in in_flight:
                decision = self._resolve_pending(template, run)
                if decision is None:
                    continue
                if decision != _RUN:
                    self._skip_step(ctx, template, decision)
                    progressed = True
                elif template.is_group:
                    self._start_group(ctx, template)
                    progressed = True
                elif len(futures) < self._limit:
                    self._dispatch(ctx, executor, futures, _Dispatch(name, template), StepStatus.PENDING)
                    in_flight.add(name)
                    progressed = True

            elif instance.status == StepStatus.RUNNING and template.is_group:
                progressed |= self._advance_group(ctx, template, run, executor, futures, in_flight)

        return progressed

    def _resolve_pending(self, template: StepTemplate, run: WorkflowRun) -> str | Reason | None:
        """None = wait, Reason = skip, ``_RUN`` = dispatch."""
        deps = [run.instances[name] for name in template.depends_on]
        if any(not dep.is_terminal for dep in deps):
            return None

        if not template.ignore_dependency_failure and any(
            dep.status == StepStatus.FAILED
            or (dep.status == StepStatus.SKIPPED and dep.reason == Reason.UPSTREAM_FAILED.value)
            for dep in deps
        ):
            return Reason.UPSTREAM_FAILED

        if deps and all(dep.status == StepStatus.SKIPPED for dep in deps) and not template.run_if_dependencies_skipped:
            return Reason.UPSTREAM_SKIPPED

        if template.gate is not None and not self._evaluator.evaluate(template.gate, run):
            return Reason.GATE_FALSE

        return _RUN

    def _skip_step(self, ctx: _RunContext, template: StepTemplate, reason: Reason) -> None:
        if template.is_group:
            # Members are recorded so the run shows what was not executed
            members = self._expand(ctx, template)
            for member in members:
                self._store.record_transition(
                    ctx.run_id, member.instance_id, StepStatus.PENDING, StepStatus.SKIPPED, reason=reason.value
                )

        self._store.record_transition(
            ctx.run_id, template.name, StepStatus.PENDING, StepStatus.SKIPPED, reason=reason.value
        )
        logger.info("scheduler.step_skipped", step=template.name, reason=reason.value)

    # =========================================================================
    # Groups
    # =========================================================================

    def _expand(self, ctx: _RunContext, template: StepTemplate) -> list[StepInstance]:
        bindings = self._resolver.iteration_bindings(template, ctx.arguments)
        ctx.bindings[template.name] = bindings
        members = [
            StepInstance.pending(ctx.run_id, template.group_spec.member.name, group=template.name, iteration_index=i)
            for i in range(len(bindings))
        ]
        self._store.add_instances(ctx.run_id, members)
        return members

    def _start_group(self, ctx: _RunContext, template: StepTemplate) -> None:
        self._store.record_transition(ctx.run_id, template.name, StepStatus.PENDING, StepStatus.RUNNING)
        members = self._expand(ctx, template)
        logger.info(
            "scheduler.group_expanded",
            step=template.name,
            members=len(members),
            parallelism=template.parallelism_limit,
        )

    def _advance_group(
        self,
        ctx: _RunContext,
        template: StepTemplate,
        run: WorkflowRun,
        executor: ThreadPoolExecutor,
        futures: dict[Future, _Dispatch],
        in_flight: set[str],
    ) -> bool:
        progressed = False
        members = run.members(template.name)
        group_spec = template.group_spec

        if group_spec.fail_fast and any(m.status == StepStatus.FAILED for m in members):
            for member in members:
                if member.status == StepStatus.PENDING and member.instance_id not in in_flight:
                    self._store.record_transition(
                        ctx.run_id,
                        member.instance_id,
                        StepStatus.PENDING,
                        StepStatus.SKIPPED,
                        reason=Reason.GROUP_FAIL_FAST.value,
                    )
                    progressed = True
            if progressed:
                logger.warning("scheduler.group_fail_fast", step=template.name)
                return True

        if all(m.is_terminal for m in members):
            self._finish_group(ctx, template, members)
            return True

        running = sum(1 for m in members if m.instance_id in in_flight)
        limit = template.parallelism_limit
        bindings = ctx.bindings[template.name]

        for member in members:
            if limit is not None and running >= limit:
                break
            if len(futures) >= self._limit:
                break
            if member.status != StepStatus.PENDING or member.instance_id in in_flight:
                continue
            index = member.iteration_index or 0
            dispatch = _Dispatch(member.instance_id, group_spec.member, bindings[index], index)
            self._dispatch(ctx, executor, futures, dispatch, StepStatus.PENDING)
            in_flight.add(member.instance_id)
            running += 1
            progressed = True

        return progressed

    def _finish_group(self, ctx: _RunContext, template: StepTemplate, members: list[StepInstance]) -> None:
        ok = all(m.status in (StepStatus.SUCCEEDED, StepStatus.SKIPPED) for m in members)
        output = "\n".join(m.output.rstrip("\n") for m in members if m.output)
        status = StepStatus.SUCCEEDED if ok else StepStatus.FAILED
        failed = [m.instance_id for m in members if m.status == StepStatus.FAILED]

        self._store.record_transition(
            ctx.run_id,
            template.name,
            StepStatus.RUNNING,
            status,
            output=output,
            error=f"failed members: {failed}" if failed else None,
        )
        logger.info("scheduler.group_finished", step=template.name, status=status.value, failed=failed)

    # =========================================================================
    # Dispatch / workers
    # =========================================================================

    def _dispatch(
        self,
        ctx: _RunContext,
        executor: ThreadPoolExecutor,
        futures: dict[Future, _Dispatch],
        dispatch: _Dispatch,
        from_status: StepStatus,
    ) -> None:
        updated = self._store.record_transition(ctx.run_id, dispatch.instance_id, from_status, StepStatus.RUNNING)
        future = executor.submit(self._run_instance, ctx, dispatch)
        futures[future] = dispatch

        logger.debug(
            "scheduler.step_dispatched",
            instance=dispatch.instance_id,
            attempt=updated.attempt,
            active=len(futures),
        )

    def _run_instance(self, ctx: _RunContext, dispatch: _Dispatch) -> None:
        """Worker: run one instance to a terminal state, retrying per policy."""
        with LogContext(run_id=ctx.run_id, instance=dispatch.instance_id):
            policy = dispatch.template.retry_policy
            strategy = policy.strategy() if policy else NoRetry()
            retries = 0

            while True:
                outcome = self._invoke(ctx, dispatch)

                if outcome.succeeded:
                    self._commit(ctx, dispatch, StepStatus.RUNNING, StepStatus.SUCCEEDED, output=outcome.output)
                    logger.info("scheduler.step_succeeded", attempt=retries + 1)
                    return

                if ctx.stop.is_set():
                    self._commit(
                        ctx,
                        dispatch,
                        StepStatus.RUNNING,
                        StepStatus.FAILED,
                        output=outcome.output,
                        reason=Reason.CANCELLED.value,
                        error=outcome.error,
                    )
                    return

                retryable = outcome.exception is None or is_retryable(outcome.exception)
                if retryable and strategy.should_retry(retries, outcome.exception):
                    delay = strategy.next_delay(retries)
                    retries += 1
                    if not self._commit(
                        ctx,
                        dispatch,
                        StepStatus.RUNNING,
                        StepStatus.PENDING,
                        output=outcome.output,
                        reason=Reason.RETRY.value,
                        error=outcome.error,
                    ):
                        return
                    logger.warning(
                        "scheduler.step_retry",
                        exit_status=outcome.exit_status,
                        retry=retries,
                        delay_seconds=delay,
                    )
                    if ctx.stop.wait(delay):
                        return
                    if not self._commit(ctx, dispatch, StepStatus.PENDING, StepStatus.RUNNING):
                        return
                    continue

                internal = outcome.exception is not None and not isinstance(outcome.exception, DagrunError)
                self._commit(
                    ctx,
                    dispatch,
                    StepStatus.RUNNING,
                    StepStatus.FAILED,
                    output=outcome.output,
                    reason=(Reason.INTERNAL if internal else Reason.RUNNER_FAILED).value,
                    error=outcome.error,
                )
                logger.warning(
                    "scheduler.step_failed",
                    exit_status=outcome.exit_status,
                    error=outcome.error,
                    attempts=retries + 1,
                )
                return

    def _invoke(self, ctx: _RunContext, dispatch: _Dispatch) -> _Outcome:
        """Materialize and run once; every runner-side failure becomes an outcome."""
        try:
            args = self._resolver.materialize(
                dispatch.template,
                ctx.arguments,
                dispatch.binding,
                iteration_index=dispatch.index,
            )
            result = self._runner.run(args, ctx.stop)
        except RunnerFailure as e:
            return _Outcome(e.exit_status, e.output, e.message, e)
        except DagrunError as e:
            e.with_context(step=dispatch.template.name, instance_id=dispatch.instance_id)
            return _Outcome(-1, "", e.message, e)
        except Exception as e:
            logger.exception(
                "scheduler.runner_crashed",
                error_type=type(e).__name__,
                category=categorize_error(e).value,
            )
            return _Outcome(-1, "", f"{type(e).__name__}: {e}", e)

        return _Outcome(result.exit_status, result.output, result.error)

    def _commit(
        self,
        ctx: _RunContext,
        dispatch: _Dispatch,
        from_status: StepStatus,
        to_status: StepStatus,
        **kwargs: Any,
    ) -> bool:
        """Commit a worker transition. A rejection after cancellation returns False."""
        try:
            self._store.record_transition(ctx.run_id, dispatch.instance_id, from_status, to_status, **kwargs)
        except IllegalTransitionError:
            if not ctx.stop.is_set():
                raise
            logger.debug("scheduler.commit_superseded", to_status=to_status.value)
            return False
        return True

    def _cancel_remaining(
        self,
        ctx: _RunContext,
        reason: Reason = Reason.CANCELLED,
        error: str = "run cancelled",
    ) -> None:
        """Fail every non-terminal instance with *reason*."""
        while True:
            run = self._store.snapshot(ctx.run_id)
            remaining = [i for i in run.instances.values() if not i.is_terminal]
            if not remaining:
                return
            for instance in remaining:
                try:
                    self._store.record_transition(
                        ctx.run_id,
                        instance.instance_id,
                        instance.status,
                        StepStatus.FAILED,
                        reason=reason.value,
                        error=error,
                    )
                except IllegalTransitionError:
                    # A worker moved it first; the next pass re-reads it
                    logger.debug("scheduler.cancel_raced", instance=instance.instance_id)
            logger.info("scheduler.remaining_failed", reason=reason.value, count=len(remaining))


__all__ = ["ExecutionScheduler"]
