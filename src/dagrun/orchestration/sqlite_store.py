"""SQLite-backed Run State Store.

Durable implementation of :class:`~dagrun.orchestration.state.RunStateStore`.
A run survives the process that executed it, so ``dagrun status`` and
``dagrun history`` can inspect it later.

Tables::

    dagrun_runs             one row per run (arguments as JSON)
    dagrun_step_instances   current state of every instance (seq keeps creation order)
    dagrun_transitions      append-only transition log

Every commit is a conditional update::

    UPDATE dagrun_step_instances SET ... WHERE run_id = ? AND instance_id = ? AND status = ?

A row count of zero means another writer moved the instance first, and the
commit fails with :class:`~dagrun.orchestration.exceptions.IllegalTransitionError`.
The guard therefore holds across processes sharing one database file, not
only across threads of one process.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from dagrun.core.errors import StoreError
from dagrun.core.logging import get_logger
from dagrun.orchestration.exceptions import IllegalTransitionError, RunNotFoundError
from dagrun.orchestration.state import (
    RunStateStore,
    StepInstance,
    StepStatus,
    TransitionRecord,
    WorkflowRun,
    check_transition,
    utcnow,
)

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS dagrun_runs (
    run_id TEXT PRIMARY KEY,
    workflow TEXT NOT NULL,
    arguments TEXT,
    created_at TEXT NOT NULL,
    cancel_requested INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS dagrun_step_instances (
    run_id TEXT NOT NULL REFERENCES dagrun_runs(run_id),
    instance_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    template_name TEXT NOT NULL,
    group_name TEXT,
    iteration_index INTEGER,
    status TEXT NOT NULL,
    output TEXT,
    started_at TEXT,
    finished_at TEXT,
    attempt INTEGER NOT NULL DEFAULT 0,
    reason TEXT,
    error TEXT,
    PRIMARY KEY (run_id, instance_id)
);

CREATE TABLE IF NOT EXISTS dagrun_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES dagrun_runs(run_id),
    instance_id TEXT NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    attempt INTEGER NOT NULL DEFAULT 0,
    reason TEXT,
    output TEXT
);

CREATE INDEX IF NOT EXISTS idx_dagrun_transitions_run ON dagrun_transitions(run_id);
"""

_INSTANCE_COLUMNS = (
    "instance_id, template_name, group_name, iteration_index, status, output, "
    "started_at, finished_at, attempt, reason, error"
)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SqliteRunStateStore(RunStateStore):
    """Run State Store on a SQLite database file (or ``:memory:``)."""

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.path = str(path)
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock:
            self._conn.executescript(SCHEMA)
            self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __repr__(self) -> str:
        return f"SqliteRunStateStore({self.path!r})"

    # =========================================================================
    # WRITES
    # =========================================================================

    def create_run(self, run_id, workflow_name, instances, *, arguments=None, created_at=None) -> WorkflowRun:
        created_at = created_at or utcnow()
        with self._lock:
            cursor = self._conn.cursor()
            try:
                cursor.execute(
                    """
                    INSERT INTO dagrun_runs (run_id, workflow, arguments, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (run_id, workflow_name, json.dumps(dict(arguments or {}), default=str), created_at.isoformat()),
                )
            except sqlite3.IntegrityError as e:
                self._conn.rollback()
                raise StoreError(f"Run already exists: {run_id}", cause=e) from e
            self._insert(cursor, run_id, instances, created_at)
            self._conn.commit()
        return self.snapshot(run_id)

    def add_instances(self, run_id: str, instances: Iterable[StepInstance]) -> None:
        with self._lock:
            cursor = self._conn.cursor()
            self._require_run(cursor, run_id)
            self._insert(cursor, run_id, instances, utcnow())
            self._conn.commit()

    def _insert(self, cursor: sqlite3.Cursor, run_id: str, instances: Iterable[StepInstance], now: datetime) -> None:
        cursor.execute("SELECT COALESCE(MAX(seq), -1) FROM dagrun_step_instances WHERE run_id = ?", (run_id,))
        seq = cursor.fetchone()[0]
        for instance in instances:
            seq += 1
            try:
                cursor.execute(
                    f"""
                    INSERT INTO dagrun_step_instances (run_id, seq, {_INSTANCE_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        seq,
                        instance.instance_id,
                        instance.template_name,
                        instance.group,
                        instance.iteration_index,
                        instance.status.value,
                        instance.output,
                        _ts(instance.started_at),
                        _ts(instance.finished_at),
                        instance.attempt,
                        instance.reason,
                        instance.error,
                    ),
                )
            except sqlite3.IntegrityError as e:
                self._conn.rollback()
                raise StoreError(f"Step instance already exists: {instance.instance_id}", cause=e) from e
            self._append(cursor, run_id, instance.instance_id, None, instance.status, now, 0, None, None)

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
            cursor = self._conn.cursor()
            current = self._fetch_instance(cursor, run_id, instance_id)
            check_transition(current, from_status, to_status)
            updated = current.advance(to_status, timestamp=timestamp, output=output, reason=reason, error=error)

            cursor.execute(
                """
                UPDATE dagrun_step_instances
                SET status = ?, output = ?, started_at = ?, finished_at = ?,
                    attempt = ?, reason = ?, error = ?
                WHERE run_id = ? AND instance_id = ? AND status = ?
                """,
                (
                    updated.status.value,
                    updated.output,
                    _ts(updated.started_at),
                    _ts(updated.finished_at),
                    updated.attempt,
                    updated.reason,
                    updated.error,
                    run_id,
                    instance_id,
                    from_status.value,
                ),
            )
            if cursor.rowcount == 0:
                self._conn.rollback()
                actual = self._fetch_instance(cursor, run_id, instance_id).status.value
                raise IllegalTransitionError(instance_id, from_status.value, actual, to_status.value)

            self._append(cursor, run_id, instance_id, from_status, to_status, timestamp, updated.attempt, reason, output)
            self._conn.commit()

        logger.debug(
            "store.transition",
            run_id=run_id,
            instance=instance_id,
            from_status=from_status.value,
            to_status=to_status.value,
            reason=reason,
        )
        return updated

    def _append(
        self,
        cursor: sqlite3.Cursor,
        run_id: str,
        instance_id: str,
        from_status: StepStatus | None,
        to_status: StepStatus,
        timestamp: datetime,
        attempt: int,
        reason: str | None,
        output: str | None,
    ) -> None:
        cursor.execute(
            """
            INSERT INTO dagrun_transitions
                (run_id, instance_id, from_status, to_status, timestamp, attempt, reason, output)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                instance_id,
                from_status.value if from_status else None,
                to_status.value,
                timestamp.isoformat(),
                attempt,
                reason,
                output,
            ),
        )

    def request_cancel(self, run_id: str) -> None:
        with self._lock:
            cursor = self._conn.cursor()
            self._require_run(cursor, run_id)
            cursor.execute("UPDATE dagrun_runs SET cancel_requested = 1 WHERE run_id = ?", (run_id,))
            self._conn.commit()

    # =========================================================================
    # READS
    # =========================================================================

    def snapshot(self, run_id: str) -> WorkflowRun:
        with self._lock:
            cursor = self._conn.cursor()
            run_row = self._require_run(cursor, run_id)
            cursor.execute(
                f"SELECT {_INSTANCE_COLUMNS} FROM dagrun_step_instances WHERE run_id = ? ORDER BY seq",
                (run_id,),
            )
            rows = cursor.fetchall()

        instances = {row[0]: self._row_to_instance(run_id, row) for row in rows}
        return WorkflowRun(
            run_id=run_id,
            workflow_name=run_row[0],
            instances=instances,
            created_at=datetime.fromisoformat(run_row[2]),
            arguments=json.loads(run_row[1]) if run_row[1] else {},
            cancel_requested=bool(run_row[3]),
        )

    def transitions(self, run_id: str, instance_id: str | None = None) -> list[TransitionRecord]:
        query = """
            SELECT instance_id, from_status, to_status, timestamp, attempt, reason, output
            FROM dagrun_transitions
            WHERE run_id = ?
        """
        params: list[Any] = [run_id]
        if instance_id is not None:
            query += " AND instance_id = ?"
            params.append(instance_id)
        query += " ORDER BY id"

        with self._lock:
            cursor = self._conn.cursor()
            self._require_run(cursor, run_id)
            cursor.execute(query, tuple(params))
            rows = cursor.fetchall()

        return [
            TransitionRecord(
                run_id=run_id,
                instance_id=row[0],
                from_status=StepStatus(row[1]) if row[1] else None,
                to_status=StepStatus(row[2]),
                timestamp=datetime.fromisoformat(row[3]),
                attempt=row[4] or 0,
                reason=row[5],
                output=row[6],
            )
            for row in rows
        ]

    def list_runs(self) -> list[str]:
        with self._lock:
            cursor = self._conn.cursor()
            cursor.execute("SELECT run_id FROM dagrun_runs ORDER BY created_at, rowid")
            return [row[0] for row in cursor.fetchall()]

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _require_run(self, cursor: sqlite3.Cursor, run_id: str) -> tuple:
        cursor.execute(
            "SELECT workflow, arguments, created_at, cancel_requested FROM dagrun_runs WHERE run_id = ?",
            (run_id,),
        )
        row = cursor.fetchone()
        if row is None:
            raise RunNotFoundError(run_id)
        return row

    def _fetch_instance(self, cursor: sqlite3.Cursor, run_id: str, instance_id: str) -> StepInstance:
        cursor.execute(
            f"SELECT {_INSTANCE_COLUMNS} FROM dagrun_step_instances WHERE run_id = ? AND instance_id = ?",
            (run_id, instance_id),
        )
        row = cursor.fetchone()
        if row is None:
            self._require_run(cursor, run_id)
            raise StoreError(f"Unknown step instance '{instance_id}' in run {run_id}")
        return self._row_to_instance(run_id, row)

    def _row_to_instance(self, run_id: str, row: tuple) -> StepInstance:
        """Convert a database row to a StepInstance."""
        return StepInstance(
            run_id=run_id,
            instance_id=row[0],
            template_name=row[1],
            group=row[2],
            iteration_index=row[3],
            status=StepStatus(row[4]),
            output=row[5],
            started_at=_parse_ts(row[6]),
            finished_at=_parse_ts(row[7]),
            attempt=row[8] or 0,
            reason=row[9],
            error=row[10],
        )


__all__ = ["SqliteRunStateStore", "SCHEMA"]
