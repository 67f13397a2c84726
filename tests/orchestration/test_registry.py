"""Tests for StepRegistry and WorkflowDefinition."""

from __future__ import annotations

import dataclasses

import pytest

from dagrun.orchestration.exceptions import (
    CyclicDependencyError,
    DanglingDependencyError,
    DuplicateNameError,
    InvalidGateReferenceError,
    RegistryFrozenError,
    StepNotFoundError,
)
from dagrun.orchestration.models import Condition
from dagrun.orchestration.registry import StepRegistry, WorkflowDefinition
from tests._support import definition, leaf


class TestRegister:
    def test_register_and_resolve(self):
        registry = StepRegistry("wf")
        template = registry.register(leaf("a"))
        assert registry.resolve("a") is template
        assert "a" in registry
        assert len(registry) == 1

    def test_duplicate_name(self):
        registry = StepRegistry("wf")
        registry.register(leaf("a"))
        with pytest.raises(DuplicateNameError):
            registry.register(leaf("a"))

    def test_resolve_unknown(self):
        with pytest.raises(StepNotFoundError):
            StepRegistry("wf").resolve("nope")

    def test_names_keep_declaration_order(self):
        registry = StepRegistry("wf")
        registry.register_all([leaf("b"), leaf("a"), leaf("c")])
        assert registry.names() == ["b", "a", "c"]


class TestFinalize:
    def test_dangling_dependency(self):
        registry = StepRegistry("wf")
        registry.register(leaf("b", depends_on=["a"]))
        with pytest.raises(DanglingDependencyError) as exc_info:
            registry.finalize()
        assert exc_info.value.missing_deps == ["a"]

    def test_gate_must_reference_ancestor(self):
        with pytest.raises(InvalidGateReferenceError):
            definition(leaf("a"), leaf("b"), leaf("c", depends_on=["a"], gate=Condition.equals("b", True)))

    def test_gate_may_reference_transitive_ancestor(self):
        wf = definition(
            leaf("a"),
            leaf("b", depends_on=["a"]),
            leaf("c", depends_on=["b"], gate=Condition.equals("a", True)),
        )
        assert wf.get("c").gate.step == "a"

    def test_frozen_after_finalize(self):
        registry = StepRegistry("wf")
        registry.register(leaf("a"))
        first = registry.finalize()
        assert registry.finalized
        assert registry.finalize() is first
        with pytest.raises(RegistryFrozenError):
            registry.register(leaf("b"))

    def test_cycle_not_detected_at_finalize(self):
        wf = definition(leaf("a", depends_on=["b"]), leaf("b", depends_on=["a"]))
        with pytest.raises(CyclicDependencyError):
            wf.topological_order()


class TestWorkflowDefinition:
    def test_immutable(self):
        wf = definition(leaf("a"))
        with pytest.raises(dataclasses.FrozenInstanceError):
            wf.name = "other"

    def test_accessors(self):
        wf = definition(leaf("a"), leaf("b", depends_on=["a"]), leaf("c", depends_on=["a"]), defaults={"x": 1})
        assert wf.step_names() == ["a", "b", "c"]
        assert wf.dependents("a") == ["b", "c"]
        assert wf.dependency_map()["b"] == ("a",)
        assert wf.defaults == {"x": 1}
        with pytest.raises(StepNotFoundError):
            wf.get("zzz")

    def test_to_dict(self):
        wf = WorkflowDefinition.from_templates("db", [leaf("a")], {"tz": "UTC"}, "nightly")
        data = wf.to_dict()
        assert data["name"] == "db"
        assert data["defaults"] == {"tz": "UTC"}
        assert data["description"] == "nightly"
        assert data["steps"][0]["command"] == ["a"]
