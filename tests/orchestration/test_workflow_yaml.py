"""Tests for YAML workflow loading."""

from __future__ import annotations

import textwrap

import pytest

from dagrun.core.secrets import SecretRef
from dagrun.orchestration.exceptions import (
    DanglingDependencyError,
    InvalidGateReferenceError,
    InvalidTemplateError,
    InvalidWorkflowSpecError,
)
from dagrun.orchestration.models import ConditionOperator, ParamSource, StepKind
from dagrun.orchestration.workflow_yaml import WorkflowSpec, load_definition

DB_MAINTENANCE = textwrap.dedent(
    """
    apiVersion: dagrun.io/v1
    kind: Workflow
    metadata:
      name: db.maintenance
      description: Nightly database maintenance
    spec:
      defaults:
        timezone: UTC
      steps:
        - name: check
          command: ["./needs-maintenance.sh", "{{ host }}"]
          params:
            host: {arg: db-host}
        - name: backup
          depends_on: [check]
          when: {step: check, equals: true}
          command: [pg_dump]
          args: ["-h", "{{ host }}"]
          env: {TZ: "{{ tz }}"}
          secrets: {PGPASSWORD: "vault:db-password"}
          params:
            host: {arg: db-host}
            tz: {arg: timezone, default: Europe/Berlin}
          retry: {max_attempts: 3, delay_seconds: 1}
          resources: {timeout_seconds: 600, memory: 512Mi}
        - name: vacuum
          kind: group
          depends_on: [backup]
          items: hosts
          parallelism: 2
          fail_fast: true
          member:
            name: vacuum-host
            command: ["vacuumdb", "-h", "{{ host }}"]
            params:
              host: {item: item}
        - name: report
          depends_on: [vacuum]
          when: {step: check, not_equals: "skip"}
          ignore_dependency_failure: true
          command: [echo, "{{ message }}"]
          params:
            message: done
    """
)


class TestLoad:
    def test_full_document(self):
        definition = WorkflowSpec.from_yaml(DB_MAINTENANCE).to_definition()
        assert definition.name == "db.maintenance"
        assert definition.description == "Nightly database maintenance"
        assert definition.defaults == {"timezone": "UTC"}
        assert definition.step_names() == ["check", "backup", "vacuum", "report"]

    def test_leaf_fields(self):
        backup = WorkflowSpec.from_yaml(DB_MAINTENANCE).to_definition().get("backup")
        assert backup.gate.step == "check"
        assert backup.gate.expected == "true"
        assert backup.executable.args == ("-h", "{{ host }}")
        assert backup.executable.secrets == {"PGPASSWORD": SecretRef("vault", "db-password")}
        assert backup.executable.resource_limits.timeout_seconds == 600
        assert backup.retry_policy.max_attempts == 3
        tz = next(p for p in backup.input_params if p.name == "tz")
        assert (tz.source, tz.lookup_key, tz.value) == (ParamSource.WORKFLOW_ARG, "timezone", "Europe/Berlin")

    def test_group_fields(self):
        vacuum = WorkflowSpec.from_yaml(DB_MAINTENANCE).to_definition().get("vacuum")
        assert vacuum.kind == StepKind.GROUP
        assert vacuum.parallelism_limit == 2
        assert vacuum.group_spec.iteration_source == "hosts"
        assert vacuum.group_spec.fail_fast
        assert vacuum.group_spec.member.input_params[0].source == ParamSource.ITERATION

    def test_scalar_param_is_literal(self):
        report = WorkflowSpec.from_yaml(DB_MAINTENANCE).to_definition().get("report")
        assert report.input_params[0].source == ParamSource.LITERAL
        assert report.input_params[0].value == "done"
        assert report.gate.operator == ConditionOperator.NE
        assert report.ignore_dependency_failure

    def test_literal_items(self):
        spec = WorkflowSpec.from_dict(
            {
                "metadata": {"name": "wf"},
                "spec": {
                    "steps": [
                        {
                            "name": "g",
                            "kind": "group",
                            "items": ["db1", {"item": "db2", "port": 5433}],
                            "member": {"name": "m", "command": ["m"]},
                        }
                    ]
                },
            }
        )
        source = spec.to_definition().get("g").group_spec.iteration_source
        assert source == ({"item": "db1"}, {"item": "db2", "port": 5433})

    def test_from_file(self, tmp_path):
        path = tmp_path / "wf.yaml"
        path.write_text(DB_MAINTENANCE)
        assert load_definition(path).name == "db.maintenance"

    def test_round_trip_through_scheduler(self, make_scheduler, scripted):
        definition = WorkflowSpec.from_yaml(DB_MAINTENANCE).to_definition()
        runner = scripted({"./needs-maintenance.sh": "true\n"})
        run = make_scheduler(runner).run(definition, {"db-host": "db1", "hosts": ["db1", "db2"]})
        assert run.status.value == "succeeded"
        backup = runner.calls_for("pg_dump")[0]
        assert backup.command == ("pg_dump", "-h", "db1")
        assert backup.env == {"TZ": "UTC"}
        assert sorted(c.command[2] for c in runner.calls_for("vacuumdb")) == ["db1", "db2"]


class TestInvalid:
    def _steps(self, *steps):
        return {"metadata": {"name": "wf"}, "spec": {"steps": list(steps)}}

    def test_malformed_yaml(self):
        with pytest.raises(InvalidWorkflowSpecError, match="Invalid YAML"):
            WorkflowSpec.from_yaml("metadata: [unclosed")

    def test_wrong_api_version(self):
        with pytest.raises(InvalidWorkflowSpecError) as exc_info:
            WorkflowSpec.from_dict({"apiVersion": "v2", **self._steps({"name": "a", "command": ["a"]})})
        assert exc_info.value.field == "apiVersion"

    def test_unknown_field(self):
        with pytest.raises(InvalidWorkflowSpecError):
            WorkflowSpec.from_dict(self._steps({"name": "a", "command": ["a"], "image": "alpine"}))

    def test_no_steps(self):
        with pytest.raises(InvalidWorkflowSpecError):
            WorkflowSpec.from_dict(self._steps())

    def test_leaf_without_command(self):
        with pytest.raises(InvalidWorkflowSpecError, match="requires 'command'"):
            WorkflowSpec.from_dict(self._steps({"name": "a"}))

    def test_group_without_member(self):
        with pytest.raises(InvalidWorkflowSpecError, match="requires 'member' and 'items'"):
            WorkflowSpec.from_dict(self._steps({"name": "g", "kind": "group", "items": "hosts"}))

    def test_param_needs_one_source(self):
        with pytest.raises(InvalidWorkflowSpecError):
            WorkflowSpec.from_dict(self._steps({"name": "a", "command": ["a"], "params": {"x": {"arg": "a", "item": "b"}}}))

    def test_default_only_with_arg(self):
        with pytest.raises(InvalidWorkflowSpecError):
            WorkflowSpec.from_dict(self._steps({"name": "a", "command": ["a"], "params": {"x": {"item": "i", "default": 1}}}))

    def test_gate_needs_one_operator(self):
        with pytest.raises(InvalidWorkflowSpecError):
            WorkflowSpec.from_dict(self._steps({"name": "a", "command": ["a"], "when": {"step": "b"}}))

    def test_bad_secret_ref(self):
        with pytest.raises(InvalidWorkflowSpecError):
            WorkflowSpec.from_dict(self._steps({"name": "a", "command": ["a"], "secrets": {"P": "no-store"}}))

    def test_dangling_dependency(self):
        spec = WorkflowSpec.from_dict(self._steps({"name": "a", "command": ["a"], "depends_on": ["ghost"]}))
        with pytest.raises(DanglingDependencyError):
            spec.to_definition()

    def test_gate_on_non_ancestor(self):
        spec = WorkflowSpec.from_dict(
            self._steps(
                {"name": "a", "command": ["a"]},
                {"name": "b", "command": ["b"]},
                {"name": "c", "command": ["c"], "depends_on": ["a"], "when": {"step": "b", "equals": True}},
            )
        )
        with pytest.raises(InvalidGateReferenceError):
            spec.to_definition()

    def test_member_with_dependencies(self):
        spec = WorkflowSpec.from_dict(
            self._steps(
                {"name": "a", "command": ["a"]},
                {
                    "name": "g",
                    "kind": "group",
                    "items": "hosts",
                    "member": {"name": "m", "command": ["m"], "depends_on": ["a"]},
                },
            )
        )
        with pytest.raises(InvalidTemplateError):
            spec.to_definition()
