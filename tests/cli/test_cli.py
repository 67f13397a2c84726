"""Tests for dagrun.cli — commands driven through typer's CliRunner.

Workflows here run real subprocesses (``sys.executable -c ...``), so the
``run`` tests are integration tests.
"""

from __future__ import annotations

import json
import sys

import pytest
import typer
import yaml
from typer.testing import CliRunner

from dagrun import __version__
from dagrun.cli.app import EXIT_INVALID, EXIT_RUN_FAILED, app
from dagrun.cli.utils import parse_args

runner = CliRunner()


def py(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def write_workflow(tmp_path, steps, name="cli.test", defaults=None):
    document = {
        "apiVersion": "dagrun.io/v1",
        "kind": "Workflow",
        "metadata": {"name": name},
        "spec": {"defaults": defaults or {}, "steps": steps},
    }
    path = tmp_path / "workflow.yaml"
    path.write_text(yaml.safe_dump(document, sort_keys=False))
    return str(path)


@pytest.fixture
def gated_workflow(tmp_path):
    return write_workflow(
        tmp_path,
        [
            {"name": "check", "command": py("print('true')")},
            {
                "name": "greet",
                "depends_on": ["check"],
                "when": {"step": "check", "equals": True},
                "command": py("import sys; print('hello', sys.argv[1])") + ["{{ who }}"],
                "params": {"who": {"arg": "who"}},
            },
            {
                "name": "fanout",
                "kind": "group",
                "depends_on": ["greet"],
                "items": "hosts",
                "parallelism": 2,
                "member": {
                    "name": "touch",
                    "command": py("import sys; print(sys.argv[1])") + ["{{ host }}"],
                    "params": {"host": {"item": "item"}},
                },
            },
        ],
        defaults={"hosts": ["db1", "db2", "db3"]},
    )


class TestVersion:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"dagrun {__version__}" in result.output


class TestParseArgs:
    def test_json_values(self):
        assert parse_args(["hosts=[\"a\", \"b\"]", "n=3", "flag=true"]) == {
            "hosts": ["a", "b"],
            "n": 3,
            "flag": True,
        }

    def test_plain_strings(self):
        assert parse_args(["db-host=db1.internal", "empty="]) == {"db-host": "db1.internal", "empty": ""}

    def test_missing_separator(self):
        with pytest.raises(typer.BadParameter):
            parse_args(["novalue"])


class TestValidate:
    def test_ok(self, gated_workflow):
        result = runner.invoke(app, ["validate", gated_workflow, "--arg", "who=world"])
        assert result.exit_code == 0, result.output
        assert "cli.test: 3 steps OK" in result.output

    def test_unresolved_argument(self, gated_workflow):
        result = runner.invoke(app, ["validate", gated_workflow])
        assert result.exit_code == EXIT_INVALID

    def test_missing_file(self, tmp_path):
        result = runner.invoke(app, ["validate", str(tmp_path / "nope.yaml")])
        assert result.exit_code == EXIT_INVALID

    def test_invalid_document(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("metadata: {name: x}\nspec: {steps: [{name: a}]}\n")
        result = runner.invoke(app, ["validate", str(path)])
        assert result.exit_code == EXIT_INVALID

    def test_cycle(self, tmp_path):
        path = write_workflow(
            tmp_path,
            [
                {"name": "a", "command": ["a"], "depends_on": ["b"]},
                {"name": "b", "command": ["b"], "depends_on": ["a"]},
            ],
        )
        assert runner.invoke(app, ["validate", path]).exit_code == EXIT_INVALID


@pytest.mark.integration
class TestRun:
    def test_run_json(self, gated_workflow):
        result = runner.invoke(
            app, ["--log-level", "ERROR", "run", gated_workflow, "--arg", "who=world", "--json", "--run-id", "r1"]
        )
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["run_id"] == "r1"
        assert data["status"] == "succeeded"
        outputs = {i["instance_id"]: i["output"] for i in data["instances"]}
        assert outputs["greet"] == "hello world\n"
        assert outputs["fanout"] == "db1\ndb2\ndb3"

    def test_run_with_default_log_level(self, gated_workflow):
        result = runner.invoke(app, ["run", gated_workflow, "-a", "who=x"])
        assert result.exit_code == 0, result.output
        assert "succeeded" in result.output

    def test_run_table(self, gated_workflow):
        result = runner.invoke(app, ["--log-level", "ERROR", "run", gated_workflow, "-a", "who=x"])
        assert result.exit_code == 0, result.output
        assert "succeeded" in result.output
        assert "cli.test" in result.output

    def test_failed_run_exit_code(self, tmp_path):
        path = write_workflow(
            tmp_path,
            [
                {"name": "boom", "command": py("import sys; sys.exit(4)")},
                {"name": "after", "depends_on": ["boom"], "command": py("print('never')")},
            ],
        )
        result = runner.invoke(app, ["--log-level", "ERROR", "run", path, "--json"])
        assert result.exit_code == EXIT_RUN_FAILED
        data = json.loads(result.stdout)
        reasons = {i["instance_id"]: i["reason"] for i in data["instances"]}
        assert reasons == {"boom": "runner_failed", "after": "upstream_failed"}

    def test_invalid_arguments_exit_before_running(self, gated_workflow):
        result = runner.invoke(app, ["--log-level", "ERROR", "run", gated_workflow])
        assert result.exit_code == EXIT_INVALID

    def test_persisted_state(self, gated_workflow, tmp_path):
        database = str(tmp_path / "runs.db")
        result = runner.invoke(
            app, ["--log-level", "ERROR", "run", gated_workflow, "-a", "who=db", "-d", database, "--run-id", "nightly"]
        )
        assert result.exit_code == 0, result.output

        runs = runner.invoke(app, ["runs", "-d", database])
        assert runs.stdout.split() == ["nightly"]

        status = runner.invoke(app, ["--log-level", "ERROR", "status", "nightly", "-d", database, "--json"])
        assert status.exit_code == 0
        assert json.loads(status.stdout)["status"] == "succeeded"

        history = runner.invoke(
            app, ["--log-level", "ERROR", "history", "nightly", "-d", database, "--step", "check", "--json"]
        )
        assert [r["to"] for r in json.loads(history.stdout)] == ["pending", "running", "succeeded"]


class TestInspectionErrors:
    def test_status_requires_database(self):
        result = runner.invoke(app, ["status", "r1"])
        assert result.exit_code == EXIT_INVALID
        assert "[CONFIG] (ConfigError)" in result.output

    def test_unknown_run(self, tmp_path):
        result = runner.invoke(app, ["status", "ghost", "-d", str(tmp_path / "runs.db")])
        assert result.exit_code == 1
