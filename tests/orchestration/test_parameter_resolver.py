"""Tests for ParameterResolver — scopes, placeholders, secrets, validation."""

from __future__ import annotations

import pytest

from dagrun.core.secrets import MissingSecretError, SecretRef, SecretValue, UnknownSecretStoreError
from dagrun.orchestration.exceptions import InvalidTemplateError, UnresolvedParameterError
from dagrun.orchestration.models import ParamRef, StepTemplate
from dagrun.orchestration.params import ParameterResolver, render_value
from tests._support import leaf, member


@pytest.fixture
def resolver(secrets):
    return ParameterResolver(secrets)


class TestPrecedence:
    def test_workflow_arg_beats_literal(self, resolver):
        template = StepTemplate.leaf(
            "s", ["echo", "{{ host }}"], params=[ParamRef.literal("host", "fallback"), ParamRef.workflow_arg("host")]
        )
        assert resolver.materialize(template, {"host": "db1"}).command == ("echo", "db1")
        assert resolver.materialize(template, {}).command == ("echo", "fallback")

    def test_iteration_beats_workflow_arg(self, resolver):
        template = StepTemplate.leaf(
            "m", ["vacuum", "{{ host }}"], params=[ParamRef.workflow_arg("host"), ParamRef.iteration("host")]
        )
        args = resolver.materialize(template, {"host": "global"}, {"host": "db2"}, iteration_index=1)
        assert args.command == ("vacuum", "db2")
        assert args.iteration_index == 1

    def test_lookup_key_differs_from_name(self, resolver):
        template = StepTemplate.leaf("s", ["x", "{{ host }}"], params=[ParamRef.workflow_arg("host", key="db-host")])
        assert resolver.materialize(template, {"db-host": "db1"}).command == ("x", "db1")

    def test_default_used_when_argument_absent(self, resolver):
        template = StepTemplate.leaf("s", ["x", "{{ tz }}"], params=[ParamRef.workflow_arg("tz", default="UTC")])
        assert resolver.materialize(template, {}).command == ("x", "UTC")
        assert resolver.materialize(template, {"tz": "CET"}).command == ("x", "CET")


class TestSubstitution:
    def test_args_and_env(self, resolver):
        template = StepTemplate.leaf(
            "s",
            ["psql"],
            args=["-h", "{{ host }}", "-c", "CALL {{ proc }}()"],
            env={"TZ": "{{ tz }}"},
            params=[ParamRef.workflow_arg("host"), ParamRef.literal("proc", "refresh"), ParamRef.literal("tz", "UTC")],
        )
        args = resolver.materialize(template, {"host": "db1"})
        assert args.command == ("psql", "-h", "db1", "-c", "CALL refresh()")
        assert args.env == {"TZ": "UTC"}
        assert args.params == {"host": "db1", "proc": "refresh", "tz": "UTC"}

    def test_no_placeholders_untouched(self, resolver):
        assert resolver.materialize(leaf("plain"), {}).command == ("plain",)

    @pytest.mark.parametrize(("value", "text"), [(True, "true"), (False, "false"), (None, ""), (3, "3")])
    def test_render_value(self, value, text):
        assert render_value(value) == text


class TestUnresolved:
    def test_missing_workflow_arg(self, resolver):
        template = StepTemplate.leaf("vacuum", ["x", "{{ host }}"], params=[ParamRef.workflow_arg("host", key="db-host")])
        with pytest.raises(UnresolvedParameterError) as exc_info:
            resolver.materialize(template, {})
        assert exc_info.value.key == "db-host"
        assert exc_info.value.step_name == "vacuum"

    def test_undeclared_placeholder(self, resolver):
        template = StepTemplate.leaf("s", ["x", "{{ mystery }}"])
        with pytest.raises(UnresolvedParameterError, match="mystery"):
            resolver.materialize(template, {"mystery": "present but undeclared"})

    def test_missing_iteration_key_reports_index(self, resolver):
        with pytest.raises(UnresolvedParameterError) as exc_info:
            resolver.materialize(member("m", key="host"), {}, {"item": "x"}, iteration_index=2)
        assert exc_info.value.iteration_index == 2

    def test_group_cannot_be_materialized(self, resolver):
        group = StepTemplate.group("g", member("m"), [{"item": 1}])
        with pytest.raises(InvalidTemplateError):
            resolver.materialize(group, {})


class TestSecrets:
    def test_resolved_and_redacted(self, resolver):
        template = leaf("backup", secrets={"PGPASSWORD": SecretRef("vault", "db-password")})
        args = resolver.materialize(template, {})
        assert isinstance(args.secret_env["PGPASSWORD"], SecretValue)
        assert args.process_env() == {"PGPASSWORD": "hunter2"}
        assert "hunter2" not in repr(args)
        assert args.to_dict()["secret_env"] == {"PGPASSWORD": "[REDACTED]"}

    def test_missing_secret(self, resolver):
        template = leaf("backup", secrets={"PGPASSWORD": SecretRef("vault", "nope")})
        with pytest.raises(MissingSecretError):
            resolver.materialize(template, {})

    def test_no_provider(self):
        template = leaf("backup", secrets={"PGPASSWORD": SecretRef("vault", "db-password")})
        with pytest.raises(UnknownSecretStoreError):
            ParameterResolver().materialize(template, {})


class TestIterationBindings:
    def test_literal_bindings(self, resolver):
        group = StepTemplate.group("g", member("m"), [{"item": "a"}, {"item": "b"}])
        assert resolver.iteration_bindings(group, {}) == [{"item": "a"}, {"item": "b"}]

    def test_scalar_items_from_argument(self, resolver):
        group = StepTemplate.group("g", member("m"), "hosts")
        assert resolver.iteration_bindings(group, {"hosts": ["db1", "db2"]}) == [{"item": "db1"}, {"item": "db2"}]

    def test_missing_argument(self, resolver):
        group = StepTemplate.group("g", member("m"), "hosts")
        with pytest.raises(UnresolvedParameterError):
            resolver.iteration_bindings(group, {})

    def test_argument_must_be_list(self, resolver):
        group = StepTemplate.group("g", member("m"), "hosts")
        with pytest.raises(InvalidTemplateError, match="must be a list"):
            resolver.iteration_bindings(group, {"hosts": "db1"})


class TestValidate:
    def test_passes(self, resolver):
        templates = [
            StepTemplate.leaf("a", ["a", "{{ h }}"], params=[ParamRef.workflow_arg("h")]),
            StepTemplate.group("g", member("m"), "hosts"),
        ]
        resolver.validate(templates, {"h": "x", "hosts": ["1", "2"]})

    def test_checks_every_member_binding(self, resolver):
        group = StepTemplate.group("g", member("m", key="host"), [{"host": "a"}, {"item": "b"}])
        with pytest.raises(UnresolvedParameterError) as exc_info:
            resolver.validate([group], {})
        assert exc_info.value.iteration_index == 1

    def test_secret_presence_checked(self, resolver):
        template = leaf("a", secrets={"P": SecretRef("vault", "missing")})
        with pytest.raises(MissingSecretError):
            resolver.validate([template], {})

    def test_unknown_store(self, resolver):
        template = leaf("a", secrets={"P": SecretRef("aws", "k")})
        with pytest.raises(UnknownSecretStoreError):
            resolver.validate([template], {})
