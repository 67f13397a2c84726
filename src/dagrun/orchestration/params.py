"""Parameter Resolver — turns a step template into concrete runner arguments.

Every ``{{ name }}`` placeholder in a template's command, args and env is
replaced with the value of the declared input parameter ``name``. Values
come from three scopes, least to most specific::

    literal  <  workflow_arg  <  iteration binding

so a member of a group sees its own iteration value even when a literal or
a workflow argument uses the same parameter name. Secret references are
resolved through the :class:`~dagrun.core.secrets.SecretProvider` into a
separate, redacting mapping of the result.

The resolver also runs the **static validation pass**: before a run
creates any step instance, :meth:`ParameterResolver.validate` materializes
every template (and every group member for every iteration binding)
against the submitted arguments without resolving secret values. An
unresolvable parameter therefore stops the run before anything executes.

Example::

    resolver = ParameterResolver(SecretProvider.default())
    args = resolver.materialize(template, {"db-host": "db1", "timezone": "UTC"})
    args.command     # ('psql', '-h', 'db1', ...)
    args.secret_env  # {'PGPASSWORD': SecretValue('[REDACTED]')}
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from dagrun.core.logging import get_logger
from dagrun.core.secrets import (
    MissingSecretError,
    SecretProvider,
    SecretRef,
    SecretValue,
    UnknownSecretStoreError,
)
from dagrun.orchestration.exceptions import InvalidTemplateError, UnresolvedParameterError
from dagrun.orchestration.models import PLACEHOLDER_RE, ParamSource, ResourceLimits, StepTemplate

logger = get_logger(__name__)


def render_value(value: Any) -> str:
    """Text form of a parameter value inside a command line."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


@dataclass(frozen=True)
class ConcreteArgs:
    """Fully materialized arguments for one dispatch of one step instance."""

    step: str
    command: tuple[str, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    secret_env: Mapping[str, SecretValue] = field(default_factory=dict)
    params: Mapping[str, Any] = field(default_factory=dict)
    resource_limits: ResourceLimits | None = None
    iteration_index: int | None = None

    def process_env(self) -> dict[str, str]:
        """Environment for the child process, secrets unwrapped."""
        env = dict(self.env)
        env.update({name: value.get_secret() for name, value in self.secret_env.items()})
        return env

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging; secret values stay redacted."""
        return {
            "step": self.step,
            "command": list(self.command),
            "env": dict(self.env),
            "secret_env": {name: str(value) for name, value in self.secret_env.items()},
            "params": dict(self.params),
            "iteration_index": self.iteration_index,
        }


class ParameterResolver:
    """Materializes step templates into :class:`ConcreteArgs`."""

    def __init__(self, secrets: SecretProvider | None = None) -> None:
        self._secrets = secrets

    # =========================================================================
    # Resolution
    # =========================================================================

    def resolve_params(
        self,
        template: StepTemplate,
        workflow_args: Mapping[str, Any],
        iteration_binding: Mapping[str, Any] | None = None,
        iteration_index: int | None = None,
    ) -> dict[str, Any]:
        """
        Compute the value of every declared parameter of *template*.

        Raises:
            UnresolvedParameterError: If a declared parameter has no value in
                any scope, or a placeholder names an undeclared parameter
        """
        scopes: dict[ParamSource, dict[str, Any]] = {source: {} for source in ParamSource}
        fallbacks: dict[str, Any] = {}

        for ref in template.input_params:
            if ref.source == ParamSource.LITERAL:
                scopes[ParamSource.LITERAL][ref.name] = ref.value
                continue
            scope = workflow_args if ref.source == ParamSource.WORKFLOW_ARG else (iteration_binding or {})
            if ref.lookup_key in scope:
                scopes[ref.source][ref.name] = scope[ref.lookup_key]
            elif ref.value is not None:
                fallbacks[ref.name] = ref.value

        values: dict[str, Any] = dict(fallbacks)
        for source in (ParamSource.LITERAL, ParamSource.WORKFLOW_ARG, ParamSource.ITERATION):
            values.update(scopes[source])

        for ref in template.input_params:
            if ref.name not in values:
                raise UnresolvedParameterError(template.name, ref.lookup_key, iteration_index)

        if template.executable is not None:
            for name in sorted(template.executable.placeholders()):
                if name not in values:
                    raise UnresolvedParameterError(template.name, name, iteration_index)

        return values

    def materialize(
        self,
        template: StepTemplate,
        workflow_args: Mapping[str, Any],
        iteration_binding: Mapping[str, Any] | None = None,
        *,
        iteration_index: int | None = None,
    ) -> ConcreteArgs:
        """
        Produce the concrete arguments for one dispatch of a leaf template.

        Raises:
            UnresolvedParameterError: If a parameter cannot be resolved
            MissingSecretError: If a referenced secret is absent
            UnknownSecretStoreError: If a secret names an unregistered store
        """
        if template.executable is None:
            raise InvalidTemplateError(template.name, "only leaf templates can be materialized")

        values = self.resolve_params(template, workflow_args, iteration_binding, iteration_index)
        spec = template.executable

        def substitute(text: str) -> str:
            return PLACEHOLDER_RE.sub(lambda m: render_value(values[m.group(1)]), text)

        secret_env = {name: self._resolve_secret(ref) for name, ref in spec.secrets.items()}

        return ConcreteArgs(
            step=template.name,
            command=tuple(substitute(part) for part in (*spec.command, *spec.args)),
            env={name: substitute(value) for name, value in spec.env.items()},
            secret_env=secret_env,
            params=values,
            resource_limits=spec.resource_limits,
            iteration_index=iteration_index,
        )

    def _resolve_secret(self, ref: SecretRef) -> SecretValue:
        if self._secrets is None:
            raise UnknownSecretStoreError(ref.store)
        return self._secrets.resolve(ref)

    # =========================================================================
    # Group iteration
    # =========================================================================

    def iteration_bindings(self, template: StepTemplate, workflow_args: Mapping[str, Any]) -> list[dict[str, Any]]:
        """
        Expand a group template's iteration source into bindings.

        Scalar items bind as ``{"item": value}``.

        Raises:
            UnresolvedParameterError: If the source names a missing argument
            InvalidTemplateError: If the source is not a list
        """
        if template.group_spec is None:
            raise InvalidTemplateError(template.name, "only group templates have an iteration source")

        source = template.group_spec.iteration_source
        if isinstance(source, str):
            if source not in workflow_args:
                raise UnresolvedParameterError(template.name, source)
            items = workflow_args[source]
            if isinstance(items, (str, bytes, Mapping)) or not hasattr(items, "__iter__"):
                raise InvalidTemplateError(template.name, f"iteration source '{source}' must be a list")
        else:
            items = source

        return [dict(item) if isinstance(item, Mapping) else {"item": item} for item in items]

    # =========================================================================
    # Static validation
    # =========================================================================

    def validate(self, templates: list[StepTemplate], workflow_args: Mapping[str, Any]) -> None:
        """
        Check that every dispatch the run could make is materializable.

        Secrets are checked for presence only; no value is read into any
        argument.

        Raises:
            UnresolvedParameterError: First unresolvable parameter found
            MissingSecretError / UnknownSecretStoreError: Unresolvable secret
        """
        for template in templates:
            if template.is_group:
                member = template.group_spec.member
                for index, binding in enumerate(self.iteration_bindings(template, workflow_args)):
                    self.resolve_params(member, workflow_args, binding, index)
                self._check_secrets(member)
            else:
                self.resolve_params(template, workflow_args)
                self._check_secrets(template)

        logger.debug("params.validated", step_count=len(templates))

    def _check_secrets(self, template: StepTemplate) -> None:
        if template.executable is None:
            return
        for ref in template.executable.secrets.values():
            if self._secrets is None:
                raise UnknownSecretStoreError(ref.store)
            if ref.store not in self._secrets.stores():
                raise UnknownSecretStoreError(ref.store, self._secrets.stores())
            if not self._secrets.contains(ref):
                raise MissingSecretError(ref.store, ref.key)


__all__ = ["ConcreteArgs", "ParameterResolver", "render_value"]
