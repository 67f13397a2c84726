"""Run State Store — the single mutable record of a workflow run.

Every step instance of a run lives here, and every status change is an
append to the run's transition log, committed with an optimistic
``from_status`` check::

    store.record_transition(run_id, "backup", StepStatus.PENDING, StepStatus.RUNNING)

If the stored status is not ``from_status`` the commit is rejected with
:class:`~dagrun.orchestration.exceptions.IllegalTransitionError`. Two
schedulers racing on the same run cannot both win a transition.

Valid transition graph::

    PENDING  → RUNNING | SKIPPED | FAILED (cancelled)
    RUNNING  → SUCCEEDED | FAILED | PENDING (retry)
    SUCCEEDED, FAILED, SKIPPED → (terminal, immutable)

Readers call :meth:`RunStateStore.snapshot`, which returns an immutable
:class:`WorkflowRun`. The run's overall status is derived from its
instances and never stored.

Implementations:

- :class:`InMemoryRunStateStore` ── this module, a lock around each commit
- :class:`~dagrun.orchestration.sqlite_store.SqliteRunStateStore` ── durable

Tags:
    dagrun, orchestration, state, store, optimistic-concurrency
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from dagrun.core.errors import StoreError
from dagrun.core.logging import get_logger
from dagrun.orchestration.exceptions import IllegalTransitionError, RunNotFoundError

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class StepStatus(str, Enum):
    """Lifecycle status of a step instance."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED})

STEP_VALID_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({
        StepStatus.RUNNING,
        StepStatus.SKIPPED,
        StepStatus.FAILED,  # cancelled before dispatch
    }),
    StepStatus.RUNNING: frozenset({
        StepStatus.SUCCEEDED,
        StepStatus.FAILED,
        StepStatus.PENDING,  # retry
    }),
    StepStatus.SUCCEEDED: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}


def is_valid_transition(current: StepStatus, target: StepStatus) -> bool:
    return target in STEP_VALID_TRANSITIONS.get(current, frozenset())


class Reason(str, Enum):
    """Sub-reason recorded with a transition."""

    GATE_FALSE = "gate_false"
    UPSTREAM_FAILED = "upstream_failed"
    UPSTREAM_SKIPPED = "upstream_skipped"
    GROUP_FAIL_FAST = "group_fail_fast"
    CANCELLED = "cancelled"
    HALTED = "halted"
    RETRY = "retry"
    RUNNER_FAILED = "runner_failed"
    INTERNAL = "internal"


class RunStatus(str, Enum):
    """Derived status of a whole workflow run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class StepInstance:
    """One execution slot of a step template within a run.

    Leaf and group templates own one instance named after the template;
    each group member gets ``"<group>[<index>]"``.
    """

    run_id: str
    instance_id: str
    template_name: str
    status: StepStatus = StepStatus.PENDING
    group: str | None = None
    iteration_index: int | None = None
    output: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    attempt: int = 0
    reason: str | None = None
    error: str | None = None

    @classmethod
    def pending(
        cls,
        run_id: str,
        template_name: str,
        *,
        group: str | None = None,
        iteration_index: int | None = None,
    ) -> StepInstance:
        """A fresh PENDING instance (members are keyed ``group[index]``)."""
        instance_id = template_name if group is None else member_instance_id(group, iteration_index or 0)
        return cls(
            run_id=run_id,
            instance_id=instance_id,
            template_name=template_name,
            group=group,
            iteration_index=iteration_index,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def advance(
        self,
        target: StepStatus,
        *,
        timestamp: datetime,
        output: str | None = None,
        reason: str | None = None,
        error: str | None = None,
    ) -> StepInstance:
        """Return the instance after moving to *target* (no validation)."""
        changes: dict[str, Any] = {"status": target, "reason": reason}
        if target == StepStatus.RUNNING:
            changes["attempt"] = self.attempt + 1
            changes["error"] = None
            if self.started_at is None:
                changes["started_at"] = timestamp
        else:
            changes["output"] = output if output is not None else self.output
            changes["error"] = error
        if target.is_terminal:
            changes["finished_at"] = timestamp
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging/storage."""
        return {
            "instance_id": self.instance_id,
            "template_name": self.template_name,
            "group": self.group,
            "iteration_index": self.iteration_index,
            "status": self.status.value,
            "output": self.output,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "attempt": self.attempt,
            "reason": self.reason,
            "error": self.error,
        }


def member_instance_id(group: str, index: int) -> str:
    return f"{group}[{index}]"


@dataclass(frozen=True)
class TransitionRecord:
    """One entry of a run's append-only transition log."""

    run_id: str
    instance_id: str
    from_status: StepStatus | None
    to_status: StepStatus
    timestamp: datetime
    attempt: int = 0
    reason: str | None = None
    output: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "from": self.from_status.value if self.from_status else None,
            "to": self.to_status.value,
            "timestamp": self.timestamp.isoformat(),
            "attempt": self.attempt,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class WorkflowRun:
    """Immutable snapshot of a run and all of its step instances."""

    run_id: str
    workflow_name: str
    instances: Mapping[str, StepInstance]
    created_at: datetime
    arguments: Mapping[str, Any] = field(default_factory=dict)
    cancel_requested: bool = False

    @property
    def status(self) -> RunStatus:
        """Derived: FAILED as soon as any instance failed, else RUNNING until all are terminal."""
        instances = self.instances.values()
        if any(i.status == StepStatus.FAILED for i in instances):
            return RunStatus.FAILED
        if any(not i.is_terminal for i in instances):
            return RunStatus.RUNNING
        return RunStatus.SUCCEEDED

    @property
    def is_terminal(self) -> bool:
        """True once no instance is pending or running."""
        return all(i.is_terminal for i in self.instances.values())

    def get(self, instance_id: str) -> StepInstance | None:
        return self.instances.get(instance_id)

    def members(self, group: str) -> list[StepInstance]:
        """Member instances of *group* in iteration order."""
        members = [i for i in self.instances.values() if i.group == group]
        return sorted(members, key=lambda i: i.iteration_index or 0)

    def by_status(self, status: StepStatus) -> list[str]:
        return [i.instance_id for i in self.instances.values() if i.status == status]

    @property
    def finished_at(self) -> datetime | None:
        if not self.is_terminal:
            return None
        stamps = [i.finished_at for i in self.instances.values() if i.finished_at]
        return max(stamps) if stamps else self.created_at

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging/storage."""
        finished = self.finished_at
        return {
            "run_id": self.run_id,
            "workflow_name": self.workflow_name,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "finished_at": finished.isoformat() if finished else None,
            "arguments": dict(self.arguments),
            "cancel_requested": self.cancel_requested,
            "instances": [i.to_dict() for i in self.instances.values()],
        }


# =============================================================================
# Store contract
# =============================================================================


class RunStateStore(ABC):
    """Contract shared by every run state store."""

    @abstractmethod
    def create_run(
        self,
        run_id: str,
        workflow_name: str,
        instances: Iterable[StepInstance],
        *,
        arguments: Mapping[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> WorkflowRun:
        """Persist a new run with its initial PENDING instances."""
        ...

    @abstractmethod
    def add_instances(self, run_id: str, instances: Iterable[StepInstance]) -> None:
        """Add PENDING instances to a live run (group expansion)."""
        ...

    @abstractmethod
    def record_transition(
        self,
        run_id: str,
        instance_id: str,
        from_status: StepStatus,
        to_status: StepStatus,
        *,
        output: str | None = None,
        timestamp: datetime | None = None,
        reason: str | None = None,
        error: str | None = None,
    ) -> StepInstance:
        """Commit one transition, guarded by ``from_status``.

        Raises:
            IllegalTransitionError: If the stored status is not ``from_status``
                or the edge is not part of the lifecycle
            RunNotFoundError: If the run does not exist
        """
        ...

    @abstractmethod
    def snapshot(self, run_id: str) -> WorkflowRun:
        """Immutable view of the run. Raises RunNotFoundError."""
        ...

    @abstractmethod
    def transitions(self, run_id: str, instance_id: str | None = None) -> list[TransitionRecord]:
        """The append-only log, oldest first."""
        ...

    @abstractmethod
    def request_cancel(self, run_id: str) -> None:
        """Flag the run for cancellation; the owning scheduler acts on it."""
        ...

    @abstractmethod
    def list_runs(self) -> list[str]:
        """Known run ids, oldest first."""
        ...


def check_transition(current: StepInstance, from_status: StepStatus, to_status: StepStatus) -> None:
    """Apply the optimistic guard and the lifecycle graph."""
    if current.status != from_status:
        raise IllegalTransitionError(current.instance_id, from_status.value, current.status.value, to_status.value)
    if not is_valid_transition(from_status, to_status):
        raise IllegalTransitionError(current.instance_id, from_status.value, None, to_status.value)


@dataclass
class _RunRecord:
    workflow_name: str
    created_at: datetime
    arguments: dict[str, Any]
    instances: dict[str, StepInstance]
    log: list[TransitionRecord] = field(default_factory=list)
    cancel_requested: bool = False


class InMemoryRunStateStore(RunStateStore):
    """Thread-safe in-process store.

    Instances are immutable, so a snapshot is a shallow copy of the
    instance map taken under the commit lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[str, _RunRecord] = {}

    def _get(self, run_id: str) -> _RunRecord:
        record = self._runs.get(run_id)
        if record is None:
            raise RunNotFoundError(run_id)
        return record

    def create_run(self, run_id, workflow_name, instances, *, arguments=None, created_at=None) -> WorkflowRun:
        created_at = created_at or utcnow()
        with self._lock:
            if run_id in self._runs:
                raise StoreError(f"Run already exists: {run_id}")
            record = _RunRecord(
                workflow_name=workflow_name,
                created_at=created_at,
                arguments=dict(arguments or {}),
                instances={},
            )
            self._runs[run_id] = record
            self._insert(run_id, record, instances, created_at)
        return self.snapshot(run_id)

    def add_instances(self, run_id: str, instances: Iterable[StepInstance]) -> None:
        with self._lock:
            self._insert(run_id, self._get(run_id), instances, utcnow())

    def _insert(self, run_id: str, record: _RunRecord, instances: Iterable[StepInstance], now: datetime) -> None:
        for instance in instances:
            if instance.instance_id in record.instances:
                raise StoreError(f"Step instance already exists: {instance.instance_id}")
            record.instances[instance.instance_id] = instance
            record.log.append(TransitionRecord(run_id, instance.instance_id, None, instance.status, now))

    def record_transition(
        self,
        run_id: str,
        instance_id: str,
        from_status: StepStatus,
        to_status: StepStatus,
        *,
        output: str | None = None,
        timestamp: datetime | None = None,
        reason: str | None = None,
        error: str | None = None,
    ) -> StepInstance:
        timestamp = timestamp or utcnow()
        with self._lock:
            record = self._get(run_id)
            current = record.instances.get(instance_id)
            if current is None:
                raise StoreError(f"Unknown step instance '{instance_id}' in run {run_id}")
            check_transition(current, from_status, to_status)
            updated = current.advance(to_status, timestamp=timestamp, output=output, reason=reason, error=error)
            record.instances[instance_id] = updated
            record.log.append(
                TransitionRecord(
                    run_id=run_id,
                    instance_id=instance_id,
                    from_status=from_status,
                    to_status=to_status,
                    timestamp=timestamp,
                    attempt=updated.attempt,
                    reason=reason,
                    output=output,
                )
            )

        logger.debug(
            "store.transition",
            run_id=run_id,
            instance=instance_id,
            from_status=from_status.value,
            to_status=to_status.value,
            reason=reason,
        )
        return updated

    def snapshot(self, run_id: str) -> WorkflowRun:
        with self._lock:
            record = self._get(run_id)
            instances = dict(record.instances)
            cancel_requested = record.cancel_requested
        return WorkflowRun(
            run_id=run_id,
            workflow_name=record.workflow_name,
            instances=instances,
            created_at=record.created_at,
            arguments=record.arguments,
            cancel_requested=cancel_requested,
        )

    def transitions(self, run_id: str, instance_id: str | None = None) -> list[TransitionRecord]:
        with self._lock:
            log = list(self._get(run_id).log)
        if instance_id is not None:
            log = [entry for entry in log if entry.instance_id == instance_id]
        return log

    def request_cancel(self, run_id: str) -> None:
        with self._lock:
            self._get(run_id).cancel_requested = True

    def list_runs(self) -> list[str]:
        with self._lock:
            return list(self._runs)


__all__ = [
    "StepStatus",
    "TERMINAL_STATUSES",
    "STEP_VALID_TRANSITIONS",
    "is_valid_transition",
    "Reason",
    "RunStatus",
    "StepInstance",
    "member_instance_id",
    "TransitionRecord",
    "WorkflowRun",
    "RunStateStore",
    "check_transition",
    "InMemoryRunStateStore",
]
