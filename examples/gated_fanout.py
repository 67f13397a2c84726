#!/usr/bin/env python3
"""Gated Fan-out — a check step gates a backup and a bounded fan-out.

Builds the same shape as ``db_maintenance.yaml`` in Python and runs it
in-process with a :class:`CallableRunner`, so nothing is spawned.

Demonstrates:
    1. ``StepTemplate.leaf`` / ``StepTemplate.group`` construction
    2. ``Condition.equals`` gating on a previous step's output
    3. ``ParamRef.workflow_arg`` / ``ParamRef.iteration`` placeholders
    4. Group ``parallelism`` (never more than 2 vacuums at once)
    5. Inspecting the run: statuses, reasons, group output

Architecture::

    check ──► backup (when check == "true") ──► vacuum[0..n] (2 at a time) ──► report

Run:
    python examples/gated_fanout.py
    python examples/gated_fanout.py --skip     # check prints "false"

Expected Output:
    One line per step instance with its status and reason, then the
    group's combined output.
"""

from __future__ import annotations

import sys
import threading
import time

from dagrun import Condition, ExecutionScheduler, ParamRef, StepTemplate, WorkflowDefinition
from dagrun.core.logging import configure_logging
from dagrun.execution.runner import CallableRunner

running = 0
peak = 0
lock = threading.Lock()


def vacuum(args):
    global running, peak
    with lock:
        running += 1
        peak = max(peak, running)
    time.sleep(0.1)
    with lock:
        running -= 1
    return f"vacuumed {args.command[1]}"


def build() -> WorkflowDefinition:
    return WorkflowDefinition.from_templates(
        "db.maintenance",
        [
            StepTemplate.leaf("check", ["check"]),
            StepTemplate.leaf(
                "backup",
                ["backup", "{{ host }}"],
                params=[ParamRef.workflow_arg("host", key="db-host")],
                depends_on=["check"],
                gate=Condition.equals("check", True),
            ),
            StepTemplate.group(
                "vacuum",
                StepTemplate.leaf(
                    "vacuum-replica",
                    ["vacuum", "{{ host }}"],
                    params=[ParamRef.iteration("host", key="item")],
                ),
                "hosts",
                parallelism=2,
                depends_on=["backup"],
            ),
            StepTemplate.leaf("report", ["report"], depends_on=["vacuum"]),
        ],
        defaults={"hosts": ["replica-1", "replica-2", "replica-3", "replica-4", "replica-5"]},
    )


def main() -> None:
    configure_logging(level="WARNING", json_format=False)
    due = "--skip" not in sys.argv

    runner = CallableRunner(
        {
            "check": lambda args: "true\n" if due else "false\n",
            "backup": lambda args: f"dumped {args.command[1]}",
            "vacuum": vacuum,
            "report": lambda args: "done",
        }
    )
    scheduler = ExecutionScheduler(runner, max_concurrency=4)
    run = scheduler.run(build(), {"db-host": "db1.internal"})

    print(f"run {run.run_id}: {run.status.value}")
    for instance in run.instances.values():
        print(f"  {instance.instance_id:<12} {instance.status.value:<10} {instance.reason or ''}")
    print(f"peak concurrent vacuums: {peak}")
    print(run.get("vacuum").output or "(vacuum skipped)")


if __name__ == "__main__":
    main()
