"""Pydantic models for workflow YAML files.

Lets workflow authors write definitions as YAML; :meth:`WorkflowSpec.to_definition`
turns a validated file into the same :class:`WorkflowDefinition` that
code-first authors build with :class:`StepRegistry`.

Usage::

    from dagrun.orchestration.workflow_yaml import WorkflowSpec

    definition = WorkflowSpec.from_yaml_file("workflows/db-maintenance.yaml").to_definition()

Example YAML::

    apiVersion: dagrun.io/v1
    kind: Workflow
    metadata:
      name: db.maintenance
    spec:
      defaults:
        timezone: UTC
      steps:
        - name: check
          command: ["./needs-maintenance.sh", "{{ host }}"]
          params:
            host: {arg: db-host}
        - name: vacuum
          kind: group
          depends_on: [check]
          when: {step: check, equals: true}
          items: hosts
          parallelism: 2
          member:
            name: vacuum-host
            command: ["vacuumdb", "-h", "{{ host }}"]
            params:
              host: {item: item}

Gates are typed (``when: {step, equals | not_equals}``) rather than
interpolated expression strings, so a gate is checked when the file loads.
Parameters take exactly one source: ``arg`` (workflow argument, optional
``default``), ``item`` (iteration binding key) or ``value`` (literal); a
bare scalar is shorthand for ``value``.

Tags:
    dagrun, orchestration, yaml, declarative

Doc-Types:
    api-reference
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from dagrun.core.errors import SecretError
from dagrun.core.secrets import SecretRef
from dagrun.orchestration.exceptions import InvalidWorkflowSpecError
from dagrun.orchestration.models import Condition, ParamRef, ResourceLimits, RetryPolicy, StepTemplate
from dagrun.orchestration.registry import StepRegistry, WorkflowDefinition

Literalish = str | bool | int | float


class ParamSpec(BaseModel):
    """One input parameter: exactly one of ``arg``, ``item`` or ``value``."""

    model_config = ConfigDict(extra="forbid")

    arg: str | None = Field(default=None, description="Workflow argument key")
    item: str | None = Field(default=None, description="Iteration binding key")
    value: Any = Field(default=None, description="Literal value")
    default: Any = Field(default=None, description="Fallback when the argument is absent")

    @model_validator(mode="after")
    def _one_source(self) -> ParamSpec:
        sources = [s for s in ("arg", "item", "value") if getattr(self, s) is not None]
        if len(sources) != 1:
            raise ValueError(f"parameter needs exactly one of arg/item/value, got {sources or 'none'}")
        if self.default is not None and self.arg is None:
            raise ValueError("'default' is only valid with 'arg'")
        return self

    def to_ref(self, name: str) -> ParamRef:
        if self.arg is not None:
            return ParamRef.workflow_arg(name, key=self.arg, default=self.default)
        if self.item is not None:
            return ParamRef.iteration(name, key=self.item)
        return ParamRef.literal(name, self.value)


class WhenSpec(BaseModel):
    """Typed gate: ``{step, equals}`` or ``{step, not_equals}``."""

    model_config = ConfigDict(extra="forbid")

    step: str = Field(..., min_length=1)
    equals: Literalish | None = None
    not_equals: Literalish | None = None

    @model_validator(mode="after")
    def _one_operator(self) -> WhenSpec:
        if (self.equals is None) == (self.not_equals is None):
            raise ValueError("gate needs exactly one of 'equals' / 'not_equals'")
        return self

    def to_condition(self) -> Condition:
        if self.equals is not None:
            return Condition.equals(self.step, _literal(self.equals))
        return Condition.not_equals(self.step, _literal(self.not_equals))


def _literal(value: Literalish) -> str | bool:
    return value if isinstance(value, bool | str) else str(value)


class ResourcesSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cpu: str | None = None
    memory: str | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)


class RetrySpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=1, ge=1)
    delay_seconds: float = Field(default=0.0, ge=0)
    backoff_multiplier: float = Field(default=1.0, ge=1)
    max_delay_seconds: float = Field(default=60.0, ge=0)


class StepSpec(BaseModel):
    """One step. ``kind: leaf`` needs ``command``; ``kind: group`` needs ``member`` and ``items``."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, description="Unique step name within the workflow")
    kind: Literal["leaf", "group"] = "leaf"
    description: str = ""
    depends_on: list[str] = Field(default_factory=list)
    when: WhenSpec | None = None
    ignore_dependency_failure: bool = False
    run_if_dependencies_skipped: bool = False

    # Leaf fields
    command: list[str] | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    secrets: dict[str, str] = Field(default_factory=dict, description="ENV_NAME: store:key")
    params: dict[str, ParamSpec | Literalish] = Field(default_factory=dict)
    resources: ResourcesSpec | None = None
    retry: RetrySpec | None = None

    # Group fields
    member: StepSpec | None = None
    items: str | list[Any] | None = None
    parallelism: int | None = Field(default=None, ge=1)
    fail_fast: bool = False

    @field_validator("secrets")
    @classmethod
    def _secret_refs(cls, value: dict[str, str]) -> dict[str, str]:
        for ref in value.values():
            try:
                SecretRef.parse(ref)
            except SecretError as e:
                raise ValueError(e.message) from e
        return value

    @model_validator(mode="after")
    def _kind_fields(self) -> StepSpec:
        if self.kind == "leaf":
            if not self.command:
                raise ValueError(f"leaf step '{self.name}' requires 'command'")
            if self.member is not None or self.items is not None:
                raise ValueError(f"leaf step '{self.name}' cannot declare 'member' or 'items'")
        else:
            if self.member is None or self.items is None:
                raise ValueError(f"group step '{self.name}' requires 'member' and 'items'")
            if self.command:
                raise ValueError(f"group step '{self.name}' cannot declare 'command'")
        return self

    def to_template(self) -> StepTemplate:
        common: dict[str, Any] = {
            "depends_on": self.depends_on,
            "gate": self.when.to_condition() if self.when else None,
            "ignore_dependency_failure": self.ignore_dependency_failure,
            "run_if_dependencies_skipped": self.run_if_dependencies_skipped,
            "description": self.description,
        }

        if self.kind == "group":
            items = self.items
            if not isinstance(items, str):
                items = [dict(i) if isinstance(i, dict) else {"item": i} for i in items]
            return StepTemplate.group(
                self.name,
                self.member.to_template(),
                items,
                parallelism=self.parallelism,
                fail_fast=self.fail_fast,
                **common,
            )

        params = [
            spec.to_ref(name) if isinstance(spec, ParamSpec) else ParamRef.literal(name, spec)
            for name, spec in self.params.items()
        ]
        return StepTemplate.leaf(
            self.name,
            self.command,
            args=self.args,
            env=self.env,
            secrets={env_name: SecretRef.parse(ref) for env_name, ref in self.secrets.items()},
            params=params,
            retry=RetryPolicy(**self.retry.model_dump()) if self.retry else None,
            resource_limits=ResourceLimits(**self.resources.model_dump()) if self.resources else None,
            **common,
        )


class WorkflowMetadataSpec(BaseModel):
    """Metadata section of a workflow spec."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, description="Unique workflow name")
    description: str = ""
    tags: list[str] = Field(default_factory=list)


class WorkflowSpecSection(BaseModel):
    """The 'spec' section: default arguments and steps."""

    model_config = ConfigDict(extra="forbid")

    defaults: dict[str, Any] = Field(default_factory=dict, description="Default workflow arguments")
    steps: list[StepSpec] = Field(..., min_length=1)


class WorkflowSpec(BaseModel):
    """Root model of a workflow YAML file."""

    model_config = ConfigDict(extra="forbid")

    apiVersion: Literal["dagrun.io/v1"] = "dagrun.io/v1"
    kind: Literal["Workflow"] = "Workflow"
    metadata: WorkflowMetadataSpec
    spec: WorkflowSpecSection

    def to_definition(self) -> WorkflowDefinition:
        """
        Build and finalize the definition.

        Raises:
            DuplicateNameError / DanglingDependencyError / InvalidGateReferenceError /
            InvalidTemplateError: As raised by the registry and templates
        """
        registry = StepRegistry(
            self.metadata.name,
            defaults=self.spec.defaults,
            description=self.metadata.description,
        )
        registry.register_all(step.to_template() for step in self.spec.steps)
        return registry.finalize()

    @classmethod
    def from_dict(cls, data: Any) -> WorkflowSpec:
        """
        Validate a parsed document.

        Raises:
            InvalidWorkflowSpecError: If the document does not match the schema
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            raise InvalidWorkflowSpecError(
                f"Invalid workflow spec at '{location}': {first['msg']} ({e.error_count()} error(s))",
                field=location,
            ) from e

    @classmethod
    def from_yaml(cls, yaml_content: str) -> WorkflowSpec:
        """
        Parse and validate YAML content.

        Raises:
            InvalidWorkflowSpecError: If the YAML is malformed or invalid
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise InvalidWorkflowSpecError(f"Invalid YAML: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def from_yaml_file(cls, path: str | Path) -> WorkflowSpec:
        """Load and validate a YAML file."""
        content = Path(path).read_text(encoding="utf-8")
        return cls.from_yaml(content)


def load_definition(path: str | Path) -> WorkflowDefinition:
    """Shortcut: YAML file to finalized definition."""
    return WorkflowSpec.from_yaml_file(path).to_definition()


__all__ = [
    "ParamSpec",
    "WhenSpec",
    "ResourcesSpec",
    "RetrySpec",
    "StepSpec",
    "WorkflowMetadataSpec",
    "WorkflowSpecSection",
    "WorkflowSpec",
    "load_definition",
]
