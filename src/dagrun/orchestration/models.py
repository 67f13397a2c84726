"""Step templates — the immutable building blocks of a workflow definition.

Manifesto:
A workflow definition is a DAG of named step templates. A template says
**what** a step runs (an :class:`ExecutableSpec`), **when** it may run
(``depends_on`` plus an optional typed :class:`Condition` gate) and
**with what** (:class:`ParamRef` inputs resolved per dispatch). Group
templates fan a member template out over an iteration source with a
bounded number of members running at once.

ARCHITECTURE
────────────
::

    StepTemplate
      ├── .leaf(name, command, ...)          ── one executable unit
      └── .group(name, member, items, ...)   ── N member instances, bounded

    ExecutableSpec  ── command + args + env + secret refs + resource limits
    ParamRef        ── literal | workflow_arg | iteration
    Condition       ── step.output == / != literal
    RetryPolicy     ── bounded, deterministic re-dispatch
    GroupSpec       ── member template + iteration source + fail_fast

Placeholders in commands, args and env values use ``{{ name }}`` where
``name`` is one of the template's declared input parameters.

Example::

    from dagrun.orchestration.models import Condition, ParamRef, StepTemplate

    check = StepTemplate.leaf("check", ["./needs-maintenance.sh", "{{ host }}"],
                              params=[ParamRef.workflow_arg("host", key="db-host")])
    vacuum = StepTemplate.leaf("vacuum", ["vacuumdb", "-h", "{{ host }}"],
                               params=[ParamRef.iteration("host")],
                               depends_on=["check"],
                               gate=Condition.equals("check", True))

Tags:
    dagrun, orchestration, step-templates, conditions, parameters

Doc-Types:
    api-reference
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from dagrun.core.secrets import SecretRef
from dagrun.execution.retry import ConstantBackoff, ExponentialBackoff, NoRetry, RetryStrategy
from dagrun.orchestration.exceptions import InvalidTemplateError

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][\w.-]*)\s*\}\}")


def find_placeholders(text: str) -> list[str]:
    """Return parameter names referenced by ``{{ name }}`` in *text*."""
    return PLACEHOLDER_RE.findall(text)


class StepKind(str, Enum):
    """Kind of step template."""

    LEAF = "leaf"
    GROUP = "group"


class ParamSource(str, Enum):
    """Where a parameter's value comes from, least to most specific."""

    LITERAL = "literal"
    WORKFLOW_ARG = "workflow_arg"
    ITERATION = "iteration"


@dataclass(frozen=True)
class ParamRef:
    """A declared input parameter of a step template.

    Attributes:
        name: Parameter name used in ``{{ name }}`` placeholders
        source: Scope the value is read from
        value: Literal value (``LITERAL``) or fallback when the scope lacks the key
        key: Lookup key in the workflow args / iteration binding (default: ``name``)
    """

    name: str
    source: ParamSource = ParamSource.WORKFLOW_ARG
    value: Any = None
    key: str | None = None

    @classmethod
    def literal(cls, name: str, value: Any) -> ParamRef:
        return cls(name=name, source=ParamSource.LITERAL, value=value)

    @classmethod
    def workflow_arg(cls, name: str, key: str | None = None, default: Any = None) -> ParamRef:
        return cls(name=name, source=ParamSource.WORKFLOW_ARG, value=default, key=key)

    @classmethod
    def iteration(cls, name: str, key: str | None = None) -> ParamRef:
        return cls(name=name, source=ParamSource.ITERATION, key=key)

    @property
    def lookup_key(self) -> str:
        return self.key or self.name

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name, "source": self.source.value}
        if self.value is not None:
            result["value"] = self.value
        if self.key:
            result["key"] = self.key
        return result


@dataclass(frozen=True)
class ResourceLimits:
    """Resource limits passed through to the runner.

    ``timeout_seconds`` is enforced by the subprocess runner; ``cpu`` and
    ``memory`` are advisory and only meaningful to runners that schedule
    onto a substrate that understands them.
    """

    cpu: str | None = None
    memory: str | None = None
    timeout_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in (("cpu", self.cpu), ("memory", self.memory),
                                  ("timeout_seconds", self.timeout_seconds)) if v is not None}


@dataclass(frozen=True)
class ExecutableSpec:
    """The side-effecting unit a leaf step runs."""

    command: tuple[str, ...]
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, SecretRef] = field(default_factory=dict)
    resource_limits: ResourceLimits | None = None

    def placeholders(self) -> set[str]:
        """All parameter names referenced anywhere in the spec."""
        names: set[str] = set()
        for part in (*self.command, *self.args, *self.env.values()):
            names.update(find_placeholders(part))
        return names

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"command": list(self.command)}
        if self.args:
            result["args"] = list(self.args)
        if self.env:
            result["env"] = dict(self.env)
        if self.secrets:
            result["secrets"] = {name: str(ref) for name, ref in self.secrets.items()}
        if self.resource_limits:
            result["resources"] = self.resource_limits.to_dict()
        return result


class ConditionOperator(str, Enum):
    """Comparison operators allowed in a gate."""

    EQ = "=="
    NE = "!="


@dataclass(frozen=True)
class Condition:
    """Gate comparing one prior step's captured output with a literal.

    Booleans compare as their lowercase text (``True`` matches ``"true"``),
    the form a shell step prints.
    """

    step: str
    operator: ConditionOperator = ConditionOperator.EQ
    value: str | bool = True

    @classmethod
    def equals(cls, step: str, value: str | bool) -> Condition:
        return cls(step=step, operator=ConditionOperator.EQ, value=value)

    @classmethod
    def not_equals(cls, step: str, value: str | bool) -> Condition:
        return cls(step=step, operator=ConditionOperator.NE, value=value)

    @property
    def expected(self) -> str:
        """The literal as the text it is compared against."""
        if isinstance(self.value, bool):
            return "true" if self.value else "false"
        return str(self.value)

    def to_dict(self) -> dict[str, Any]:
        return {"step": self.step, "operator": self.operator.value, "value": self.value}

    def __str__(self) -> str:
        return f"{self.step}.output {self.operator.value} {self.expected!r}"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration for a leaf step.

    ``max_attempts`` counts the first dispatch, so ``1`` means no retry.
    Delays grow by ``backoff_multiplier`` and are capped at
    ``max_delay_seconds``; there is no jitter.
    """

    max_attempts: int = 1
    delay_seconds: float = 0.0
    backoff_multiplier: float = 1.0
    max_delay_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.delay_seconds < 0 or self.backoff_multiplier < 1:
            raise ValueError("delay_seconds must be >= 0 and backoff_multiplier >= 1")

    def strategy(self) -> RetryStrategy:
        retries = self.max_attempts - 1
        if retries == 0:
            return NoRetry()
        if self.backoff_multiplier == 1:
            return ConstantBackoff(max_retries=retries, delay=min(self.delay_seconds, self.max_delay_seconds))
        return ExponentialBackoff(
            max_retries=retries,
            base_delay=self.delay_seconds,
            max_delay=self.max_delay_seconds,
            multiplier=self.backoff_multiplier,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "delay_seconds": self.delay_seconds,
            "backoff_multiplier": self.backoff_multiplier,
            "max_delay_seconds": self.max_delay_seconds,
        }


@dataclass(frozen=True)
class GroupSpec:
    """Fan-out configuration of a group template.

    Attributes:
        member: Leaf template instantiated once per iteration binding
        iteration_source: Literal bindings, or the name of a workflow
            argument holding a list (scalar items bind as ``item``)
        fail_fast: Stop admitting new members after the first member failure
    """

    member: StepTemplate
    iteration_source: tuple[Mapping[str, Any], ...] | str
    fail_fast: bool = False


@dataclass(frozen=True)
class StepTemplate:
    """
    A single step of a workflow definition.

    Use the factory methods rather than the constructor:
    - StepTemplate.leaf() for an executable unit
    - StepTemplate.group() for a bounded fan-out over a member template
    """

    name: str
    kind: StepKind = StepKind.LEAF
    depends_on: tuple[str, ...] = ()
    gate: Condition | None = None
    executable: ExecutableSpec | None = None
    input_params: tuple[ParamRef, ...] = ()
    parallelism_limit: int | None = None
    group_spec: GroupSpec | None = None
    retry_policy: RetryPolicy | None = None
    ignore_dependency_failure: bool = False
    run_if_dependencies_skipped: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise InvalidTemplateError("<unnamed>", "name must not be empty")
        if self.name in self.depends_on:
            raise InvalidTemplateError(self.name, "step depends on itself")
        if self.parallelism_limit is not None and self.parallelism_limit < 1:
            raise InvalidTemplateError(self.name, f"parallelism_limit must be >= 1, got {self.parallelism_limit}")

        # One name may appear once per scope; across scopes precedence decides.
        scoped = [(p.name, p.source) for p in self.input_params]
        if len(scoped) != len(set(scoped)):
            duplicates = sorted({name for name, source in scoped if scoped.count((name, source)) > 1})
            raise InvalidTemplateError(self.name, f"parameter declared twice in one scope: {duplicates}")

        if self.kind == StepKind.LEAF:
            if self.executable is None or not self.executable.command:
                raise InvalidTemplateError(self.name, "leaf step requires a command")
            if self.group_spec is not None:
                raise InvalidTemplateError(self.name, "leaf step cannot carry a group spec")
        else:
            if self.group_spec is None:
                raise InvalidTemplateError(self.name, "group step requires a member template")
            if self.executable is not None:
                raise InvalidTemplateError(self.name, "group step runs its member, not a command")
            member = self.group_spec.member
            if member.kind != StepKind.LEAF:
                raise InvalidTemplateError(self.name, "group member must be a leaf template")
            if member.depends_on or member.gate is not None:
                raise InvalidTemplateError(self.name, "group member cannot declare depends_on or a gate")

    # =========================================================================
    # Factory Methods
    # =========================================================================

    @classmethod
    def leaf(
        cls,
        name: str,
        command: Sequence[str],
        *,
        args: Sequence[str] | None = None,
        env: Mapping[str, str] | None = None,
        secrets: Mapping[str, SecretRef] | None = None,
        params: Iterable[ParamRef] | None = None,
        depends_on: Iterable[str] | None = None,
        gate: Condition | None = None,
        retry: RetryPolicy | None = None,
        resource_limits: ResourceLimits | None = None,
        ignore_dependency_failure: bool = False,
        run_if_dependencies_skipped: bool = False,
        description: str = "",
    ) -> StepTemplate:
        """
        Create a leaf step.

        Args:
            name: Unique step name within the definition
            command: Executable and leading arguments
            args: Additional arguments appended to ``command``
            env: Extra environment for the unit (placeholders allowed)
            secrets: Env var name -> secret reference, resolved per dispatch
            params: Declared input parameters
            depends_on: Step names this step depends on
            gate: Condition that must hold for the step to run
            retry: Retry policy (default: no retry)
            resource_limits: Limits handed to the runner
            ignore_dependency_failure: Run even when a dependency failed
            run_if_dependencies_skipped: Run even when every dependency was skipped
        """
        return cls(
            name=name,
            kind=StepKind.LEAF,
            depends_on=tuple(depends_on or ()),
            gate=gate,
            executable=ExecutableSpec(
                command=tuple(command),
                args=tuple(args or ()),
                env=dict(env or {}),
                secrets=dict(secrets or {}),
                resource_limits=resource_limits,
            ),
            input_params=tuple(params or ()),
            retry_policy=retry,
            ignore_dependency_failure=ignore_dependency_failure,
            run_if_dependencies_skipped=run_if_dependencies_skipped,
            description=description,
        )

    @classmethod
    def group(
        cls,
        name: str,
        member: StepTemplate,
        iteration_source: Iterable[Mapping[str, Any]] | str,
        *,
        parallelism: int | None = None,
        depends_on: Iterable[str] | None = None,
        gate: Condition | None = None,
        fail_fast: bool = False,
        ignore_dependency_failure: bool = False,
        run_if_dependencies_skipped: bool = False,
        description: str = "",
    ) -> StepTemplate:
        """
        Create a group step (bounded fan-out).

        Args:
            name: Unique step name within the definition
            member: Leaf template run once per iteration binding
            iteration_source: Bindings, or the workflow argument that holds them
            parallelism: Max members running at once (None = unbounded)
            depends_on: Step names this step depends on
            gate: Condition that must hold for the group to run
            fail_fast: Stop admitting members after the first failure
        """
        source = iteration_source if isinstance(iteration_source, str) else tuple(
            dict(binding) for binding in iteration_source
        )
        return cls(
            name=name,
            kind=StepKind.GROUP,
            depends_on=tuple(depends_on or ()),
            gate=gate,
            parallelism_limit=parallelism,
            group_spec=GroupSpec(member=member, iteration_source=source, fail_fast=fail_fast),
            ignore_dependency_failure=ignore_dependency_failure,
            run_if_dependencies_skipped=run_if_dependencies_skipped,
            description=description,
        )

    # =========================================================================
    # Utilities
    # =========================================================================

    @property
    def is_group(self) -> bool:
        return self.kind == StepKind.GROUP

    def to_dict(self) -> dict[str, Any]:
        """Serialize for YAML/JSON."""
        result: dict[str, Any] = {"name": self.name, "kind": self.kind.value}
        if self.description:
            result["description"] = self.description
        if self.depends_on:
            result["depends_on"] = list(self.depends_on)
        if self.gate:
            result["when"] = self.gate.to_dict()
        if self.executable:
            result.update(self.executable.to_dict())
        if self.input_params:
            result["params"] = [p.to_dict() for p in self.input_params]
        if self.retry_policy:
            result["retry"] = self.retry_policy.to_dict()
        if self.ignore_dependency_failure:
            result["ignore_dependency_failure"] = True
        if self.run_if_dependencies_skipped:
            result["run_if_dependencies_skipped"] = True
        if self.group_spec:
            source = self.group_spec.iteration_source
            result["member"] = self.group_spec.member.to_dict()
            result["items"] = source if isinstance(source, str) else [dict(b) for b in source]
            if self.parallelism_limit is not None:
                result["parallelism"] = self.parallelism_limit
            if self.group_spec.fail_fast:
                result["fail_fast"] = True
        return result

    def __repr__(self) -> str:
        if self.is_group:
            return f"StepTemplate.group({self.name!r}, member={self.group_spec.member.name!r})"
        return f"StepTemplate.leaf({self.name!r}, {list(self.executable.command)!r})"


__all__ = [
    "PLACEHOLDER_RE",
    "find_placeholders",
    "StepKind",
    "ParamSource",
    "ParamRef",
    "ResourceLimits",
    "ExecutableSpec",
    "ConditionOperator",
    "Condition",
    "RetryPolicy",
    "GroupSpec",
    "StepTemplate",
]
