"""Step Registry — builds an immutable WorkflowDefinition from templates.

Templates are registered one by one, then :meth:`StepRegistry.finalize`
validates the whole set and freezes it into a :class:`WorkflowDefinition`.
After finalization the registry rejects further registrations; the
definition itself is a frozen dataclass shared read-only by every run.

Validation split:

- ``register()``  ── duplicate names
- ``finalize()``  ── dangling ``depends_on`` entries, gates that read a
  step outside the ``depends_on`` ancestry
- run start       ── cycles (see :class:`~dagrun.orchestration.scheduler.ExecutionScheduler`)

Example::

    registry = StepRegistry("db.maintenance", defaults={"timezone": "UTC"})
    registry.register(StepTemplate.leaf("check", ["./check.sh"]))
    registry.register(StepTemplate.leaf("vacuum", ["./vacuum.sh"], depends_on=["check"],
                                        gate=Condition.equals("check", True)))
    definition = registry.finalize()

Tags:
    dagrun, orchestration, registry, definition
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from dagrun.core.logging import get_logger
from dagrun.orchestration import dag
from dagrun.orchestration.exceptions import (
    DanglingDependencyError,
    DuplicateNameError,
    InvalidGateReferenceError,
    RegistryFrozenError,
    StepNotFoundError,
)
from dagrun.orchestration.models import StepTemplate

logger = get_logger(__name__)


@dataclass(frozen=True)
class WorkflowDefinition:
    """
    An ordered, validated, immutable set of step templates.

    Attributes:
        name: Workflow name (e.g. "db.maintenance")
        templates: Step templates in declaration order
        defaults: Default workflow arguments, overridden by submitted ones
        description: Human-readable description
    """

    name: str
    templates: tuple[StepTemplate, ...]
    defaults: Mapping[str, Any] = field(default_factory=dict)
    description: str = ""

    @classmethod
    def from_templates(
        cls,
        name: str,
        templates: Iterable[StepTemplate],
        defaults: Mapping[str, Any] | None = None,
        description: str = "",
    ) -> WorkflowDefinition:
        """Register *templates* into a fresh registry and finalize it."""
        registry = StepRegistry(name, defaults=defaults, description=description)
        registry.register_all(templates)
        return registry.finalize()

    # =========================================================================
    # Accessors
    # =========================================================================

    def get(self, name: str) -> StepTemplate:
        """Get a template by name.

        Raises:
            StepNotFoundError: If no template has that name
        """
        for template in self.templates:
            if template.name == name:
                return template
        raise StepNotFoundError(name)

    def step_names(self) -> list[str]:
        return [t.name for t in self.templates]

    def dependency_map(self) -> dict[str, tuple[str, ...]]:
        """``{name: depends_on}`` in declaration order."""
        return {t.name: t.depends_on for t in self.templates}

    def dependents(self, name: str) -> list[str]:
        """Steps that list *name* in their ``depends_on``."""
        return dag.dependents_map(self.dependency_map()).get(name, [])

    def topological_order(self) -> list[str]:
        """Step names in dependency order.

        Raises:
            CyclicDependencyError: If the graph has a cycle
        """
        return dag.topological_order(self.dependency_map())

    def groups(self) -> list[StepTemplate]:
        return [t for t in self.templates if t.is_group]

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "steps": [t.to_dict() for t in self.templates],
        }
        if self.defaults:
            result["defaults"] = dict(self.defaults)
        if self.description:
            result["description"] = self.description
        return result

    def __repr__(self) -> str:
        return f"WorkflowDefinition({self.name!r}, steps={len(self.templates)})"


class StepRegistry:
    """Collects step templates for one workflow definition."""

    def __init__(
        self,
        name: str = "workflow",
        *,
        defaults: Mapping[str, Any] | None = None,
        description: str = "",
    ) -> None:
        self.name = name
        self._defaults = dict(defaults or {})
        self._description = description
        self._templates: dict[str, StepTemplate] = {}
        self._definition: WorkflowDefinition | None = None

    @property
    def finalized(self) -> bool:
        return self._definition is not None

    def register(self, template: StepTemplate) -> StepTemplate:
        """
        Register a step template.

        Raises:
            DuplicateNameError: If a template with the same name exists
            RegistryFrozenError: If the registry was already finalized
        """
        if self._definition is not None:
            raise RegistryFrozenError(template.name)
        if template.name in self._templates:
            raise DuplicateNameError(template.name)

        self._templates[template.name] = template

        logger.debug(
            "registry.step_registered",
            workflow=self.name,
            step=template.name,
            kind=template.kind.value,
            depends_on=list(template.depends_on),
        )
        return template

    def register_all(self, templates: Iterable[StepTemplate]) -> None:
        for template in templates:
            self.register(template)

    def resolve(self, name: str) -> StepTemplate:
        """
        Get a registered template by name.

        Raises:
            StepNotFoundError: If the template is not registered
        """
        try:
            return self._templates[name]
        except KeyError:
            raise StepNotFoundError(name) from None

    def names(self) -> list[str]:
        return list(self._templates)

    def __contains__(self, name: object) -> bool:
        return name in self._templates

    def __len__(self) -> int:
        return len(self._templates)

    def finalize(self) -> WorkflowDefinition:
        """
        Validate the registered templates and freeze them.

        Calling ``finalize()`` again returns the same definition.

        Raises:
            DanglingDependencyError: If a ``depends_on`` entry is unregistered
            InvalidGateReferenceError: If a gate reads a non-ancestor step
        """
        if self._definition is not None:
            return self._definition

        for template in self._templates.values():
            missing = [dep for dep in template.depends_on if dep not in self._templates]
            if missing:
                raise DanglingDependencyError(template.name, missing)

        deps = {name: t.depends_on for name, t in self._templates.items()}
        for template in self._templates.values():
            if template.gate is None:
                continue
            if template.gate.step not in dag.ancestors(deps, template.name):
                raise InvalidGateReferenceError(template.name, template.gate.step)

        self._definition = WorkflowDefinition(
            name=self.name,
            templates=tuple(self._templates.values()),
            defaults=dict(self._defaults),
            description=self._description,
        )

        logger.debug(
            "registry.finalized",
            workflow=self.name,
            step_count=len(self._templates),
        )
        return self._definition


__all__ = ["StepRegistry", "WorkflowDefinition"]
